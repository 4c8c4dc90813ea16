from __future__ import annotations

import os
import threading
from dataclasses import dataclass
from typing import Callable, List, Optional

from creastudio.tools import messages
from creastudio.tools.base import setup_logger
from creastudio.utils.genai_client import ErrorKind, MediaAPI, classify_error
from creastudio.utils.media import InvalidMediaError

logger = setup_logger(__name__)

ChunkCallback = Callable[[str, str], None]


@dataclass
class StreamOutcome:
    text: str
    error: Optional[str] = None
    kind: Optional[ErrorKind] = None
    chunks: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None


class StreamingTextWorkflow:
    """
    Appends streamed fragments to one accumulator string, in arrival order.
    A failed stream keeps whatever text arrived before the error.
    """

    def __init__(self, api: MediaAPI, model: str, error_message: str = messages.TEXT_FAILED):
        self.api = api
        self.model = model
        self.error_message = error_message
        self.text = ""
        self.error: Optional[str] = None
        self._lock = threading.Lock()

    @property
    def is_loading(self) -> bool:
        return self._lock.locked()

    def run(
        self,
        prompt: str,
        system_instruction: Optional[str] = None,
        on_chunk: Optional[ChunkCallback] = None,
    ) -> Optional[StreamOutcome]:
        if not prompt or not prompt.strip():
            return None
        if not self._lock.acquire(blocking=False):
            return None
        try:
            self.text = ""
            self.error = None
            chunks = 0
            try:
                for fragment in self.api.stream_text(prompt, model=self.model, system_instruction=system_instruction):
                    self.text += fragment
                    chunks += 1
                    if on_chunk is not None:
                        on_chunk(fragment, self.text)
            except Exception as exc:
                kind = classify_error(exc)
                logger.error(f"Stream failed after {chunks} chunks: {exc}")
                self.error = messages.INVALID_API_KEY if kind == ErrorKind.INVALID_CREDENTIAL else self.error_message
                return StreamOutcome(text=self.text, error=self.error, kind=kind, chunks=chunks)
            return StreamOutcome(text=self.text, chunks=chunks)
        finally:
            self._lock.release()


@dataclass
class ChatMessage:
    role: str  # "user" | "model"
    text: str
    local: bool = False  # shown to the user, never sent to the model
    sent: Optional[str] = None  # what the model received, when it differs from text

    def to_dict(self):
        return {"role": self.role, "text": self.text}


@dataclass
class Attachment:
    name: str
    content: str

    @classmethod
    def from_path(cls, path: str) -> "Attachment":
        """Read a plain-text file to attach to a chat message."""
        if not str(path).lower().endswith(".txt"):
            raise InvalidMediaError(messages.NOT_A_TEXT_FILE)
        with open(path, "r", encoding="utf-8") as f:
            return cls(name=os.path.basename(path), content=f.read())


class ChatSession:
    """Ordered chat transcript whose last model message grows as chunks arrive."""

    def __init__(
        self,
        api: MediaAPI,
        model: str,
        system_instruction: str = messages.CHAT_SYSTEM_INSTRUCTION,
        greeting: Optional[str] = messages.CHAT_GREETING,
    ):
        self.api = api
        self.model = model
        self.system_instruction = system_instruction
        self.messages: List[ChatMessage] = []
        if greeting:
            self.messages.append(ChatMessage(role="model", text=greeting, local=True))
        self.error: Optional[str] = None
        self._lock = threading.Lock()

    @property
    def is_loading(self) -> bool:
        return self._lock.locked()

    def history(self) -> List[tuple]:
        return [(m.role, m.sent or m.text) for m in self.messages if not m.local and m.text]

    @staticmethod
    def build_prompt(text: str, attachment: Optional[Attachment]) -> str:
        if attachment is None:
            return text
        return (
            f'Com base no arquivo "{attachment.name}", responda à seguinte pergunta:\n\n'
            f"{text}\n\nConteúdo do arquivo:\n{attachment.content}"
        )

    def send(
        self,
        text: str,
        attachment: Optional[Attachment] = None,
        on_chunk: Optional[ChunkCallback] = None,
    ) -> Optional[ChatMessage]:
        if not text or not text.strip():
            return None
        if not self._lock.acquire(blocking=False):
            return None
        try:
            history = self.history()
            prompt = self.build_prompt(text, attachment)
            self.error = None
            self.messages.append(ChatMessage(role="user", text=text, sent=prompt if attachment else None))
            reply = ChatMessage(role="model", text="")
            self.messages.append(reply)
            try:
                for fragment in self.api.stream_chat(
                    history,
                    prompt,
                    model=self.model,
                    system_instruction=self.system_instruction,
                ):
                    reply.text += fragment
                    if on_chunk is not None:
                        on_chunk(fragment, reply.text)
            except Exception as exc:
                logger.error(f"Chat stream failed: {exc}")
                self.error = messages.CHAT_FAILED
            return reply
        finally:
            self._lock.release()
