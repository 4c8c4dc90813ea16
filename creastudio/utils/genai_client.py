from __future__ import annotations

import enum
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Iterator, List, Optional, Sequence, Tuple

import requests
from google import genai
from google.genai import errors, types

from creastudio.utils.media import InlineImage, MediaBlob, pcm_to_wav


class ErrorKind(str, enum.Enum):
    INVALID_CREDENTIAL = "invalid_credential"
    MISSING_RESULT_URI = "missing_result_uri"
    NO_OUTPUT = "no_output"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"
    GENERIC = "generic"


class MediaAPIError(Exception):
    kind = ErrorKind.GENERIC


class CredentialRejectedError(MediaAPIError):
    kind = ErrorKind.INVALID_CREDENTIAL


class NoOutputError(MediaAPIError):
    kind = ErrorKind.NO_OUTPUT


def classify_error(exc: BaseException) -> ErrorKind:
    if isinstance(exc, MediaAPIError):
        return exc.kind
    return ErrorKind.GENERIC


CREDENTIAL_CODES = {401, 403, 404}
CREDENTIAL_STATUSES = {"UNAUTHENTICATED", "PERMISSION_DENIED", "NOT_FOUND"}


@contextmanager
def translate_api_errors(action: str) -> Iterator[None]:
    """Re-raise SDK errors as MediaAPIError subclasses keyed by HTTP code/status."""
    try:
        yield
    except errors.ClientError as exc:
        status = (getattr(exc, "status", None) or "").upper()
        if getattr(exc, "code", None) in CREDENTIAL_CODES or status in CREDENTIAL_STATUSES:
            raise CredentialRejectedError(f"{action} rejected the API key: {exc}") from exc
        raise MediaAPIError(f"{action} failed: {exc}") from exc
    except errors.APIError as exc:
        raise MediaAPIError(f"{action} failed: {exc}") from exc


@dataclass
class VideoJobHandle:
    """Opaque handle for an in-progress video render."""

    name: str
    done: bool = False
    result_uri: Optional[str] = None
    raw: Any = None


class MediaAPI(ABC):
    """Generative media collaborator. Workflows depend only on this port."""

    @abstractmethod
    def generate_text(
        self,
        prompt: str,
        model: str,
        system_instruction: Optional[str] = None,
        temperature: Optional[float] = None,
        top_p: Optional[float] = None,
    ) -> str:
        pass

    @abstractmethod
    def stream_text(self, prompt: str, model: str, system_instruction: Optional[str] = None) -> Iterator[str]:
        pass

    @abstractmethod
    def stream_chat(
        self,
        history: Sequence[Tuple[str, str]],
        message: str,
        model: str,
        system_instruction: Optional[str] = None,
    ) -> Iterator[str]:
        """Stream the model's reply to `message` given earlier (role, text) turns."""
        pass

    @abstractmethod
    def generate_images(
        self,
        prompt: str,
        model: str,
        aspect_ratio: str = "1:1",
        number_of_images: int = 1,
        mime_type: str = "image/png",
    ) -> List[MediaBlob]:
        pass

    @abstractmethod
    def edit_image(self, image: InlineImage, instruction: str, model: str) -> MediaBlob:
        pass

    @abstractmethod
    def generate_speech(self, prompt: str, model: str, voice_name: str = "Kore") -> MediaBlob:
        pass

    @abstractmethod
    def start_video(
        self,
        prompt: str,
        image: InlineImage,
        model: str,
        aspect_ratio: str = "9:16",
        resolution: str = "720p",
    ) -> VideoJobHandle:
        pass

    @abstractmethod
    def poll_video(self, handle: VideoJobHandle) -> VideoJobHandle:
        pass

    @abstractmethod
    def download(self, uri: str) -> bytes:
        pass


class GeminiMediaAPI(MediaAPI):
    def __init__(self, api_key: str, download_chunk_size: int = 8192, download_timeout: float = 60):
        self.api_key = (api_key or "").strip()
        self.download_chunk_size = download_chunk_size
        self.download_timeout = download_timeout
        self._client: Optional[genai.Client] = None

    @property
    def client(self) -> genai.Client:
        if not self.api_key:
            raise CredentialRejectedError("No API key configured (set GEMINI_API_KEY in .env).")
        if self._client is None:
            self._client = genai.Client(api_key=self.api_key)
        return self._client

    # --- text ---
    def generate_text(self, prompt, model, system_instruction=None, temperature=None, top_p=None):
        cfg = types.GenerateContentConfig(
            system_instruction=system_instruction,
            temperature=temperature,
            top_p=top_p,
        )
        with translate_api_errors("generate_content"):
            response = self.client.models.generate_content(model=model, contents=prompt, config=cfg)
        return response.text or ""

    def stream_text(self, prompt, model, system_instruction=None):
        cfg = types.GenerateContentConfig(system_instruction=system_instruction)
        with translate_api_errors("generate_content_stream"):
            for chunk in self.client.models.generate_content_stream(model=model, contents=prompt, config=cfg):
                text = chunk.text or ""
                if text:
                    yield text

    def stream_chat(self, history, message, model, system_instruction=None):
        contents = [
            types.Content(role=role, parts=[types.Part.from_text(text=text)])
            for role, text in history
        ]
        contents.append(types.Content(role="user", parts=[types.Part.from_text(text=message)]))
        cfg = types.GenerateContentConfig(system_instruction=system_instruction)
        with translate_api_errors("chat"):
            for chunk in self.client.models.generate_content_stream(model=model, contents=contents, config=cfg):
                text = chunk.text or ""
                if text:
                    yield text

    # --- images ---
    def generate_images(self, prompt, model, aspect_ratio="1:1", number_of_images=1, mime_type="image/png"):
        cfg = types.GenerateImagesConfig(
            number_of_images=number_of_images,
            output_mime_type=mime_type,
            aspect_ratio=aspect_ratio,
        )
        with translate_api_errors("generate_images"):
            response = self.client.models.generate_images(model=model, prompt=prompt, config=cfg)
        blobs = []
        for generated in response.generated_images or []:
            image = generated.image
            if image is not None and image.image_bytes:
                blobs.append(MediaBlob(data=image.image_bytes, mime_type=image.mime_type or mime_type))
        if not blobs:
            raise NoOutputError("Nenhuma imagem foi gerada.")
        return blobs

    def edit_image(self, image, instruction, model):
        contents = [
            types.Part.from_bytes(data=image.to_bytes(), mime_type=image.mime_type),
            instruction,
        ]
        cfg = types.GenerateContentConfig(response_modalities=["IMAGE"])
        with translate_api_errors("edit_image"):
            response = self.client.models.generate_content(model=model, contents=contents, config=cfg)
        blob = _first_inline_blob(response)
        if blob is None:
            raise NoOutputError("Nenhuma imagem foi editada.")
        return blob

    # --- audio ---
    def generate_speech(self, prompt, model, voice_name="Kore"):
        cfg = types.GenerateContentConfig(
            response_modalities=["AUDIO"],
            speech_config=types.SpeechConfig(
                voice_config=types.VoiceConfig(
                    prebuilt_voice_config=types.PrebuiltVoiceConfig(voice_name=voice_name)
                )
            ),
        )
        with translate_api_errors("generate_speech"):
            response = self.client.models.generate_content(model=model, contents=prompt, config=cfg)
        blob = _first_inline_blob(response)
        if blob is None:
            raise NoOutputError("Nenhum dado de áudio recebido.")
        # TTS answers with raw 24kHz mono 16-bit PCM
        return MediaBlob(data=pcm_to_wav(blob.data), mime_type="audio/wav")

    # --- video ---
    def start_video(self, prompt, image, model, aspect_ratio="9:16", resolution="720p"):
        cfg = types.GenerateVideosConfig(
            number_of_videos=1,
            resolution=resolution,
            aspect_ratio=aspect_ratio,
        )
        with translate_api_errors("generate_videos"):
            operation = self.client.models.generate_videos(
                model=model,
                prompt=prompt,
                image=types.Image(image_bytes=image.to_bytes(), mime_type=image.mime_type),
                config=cfg,
            )
        return _handle_from_operation(operation)

    def poll_video(self, handle):
        with translate_api_errors("get_videos_operation"):
            operation = self.client.operations.get(handle.raw)
        return _handle_from_operation(operation)

    def download(self, uri):
        try:
            with requests.get(
                uri,
                params={"key": self.api_key},
                stream=True,
                timeout=self.download_timeout,
            ) as resp:
                if resp.status_code in (401, 403):
                    raise CredentialRejectedError(f"Download rejected: {resp.status_code} {resp.text}")
                if resp.status_code != 200:
                    raise MediaAPIError(f"Download failed: {resp.status_code} {resp.text}")
                return b"".join(chunk for chunk in resp.iter_content(self.download_chunk_size) if chunk)
        except requests.RequestException as e:
            raise MediaAPIError(f"Download failed: {e}") from e


def _first_inline_blob(response) -> Optional[MediaBlob]:
    for candidate in response.candidates or []:
        content = candidate.content
        for part in (content.parts if content else None) or []:
            inline = part.inline_data
            if inline is not None and inline.data:
                return MediaBlob(data=inline.data, mime_type=inline.mime_type or "application/octet-stream")
    return None


def _handle_from_operation(operation) -> VideoJobHandle:
    uri = None
    result = getattr(operation, "response", None) or getattr(operation, "result", None)
    videos = getattr(result, "generated_videos", None) if result is not None else None
    if videos:
        video = videos[0].video
        uri = video.uri if video is not None else None
    return VideoJobHandle(
        name=operation.name or "",
        done=bool(operation.done),
        result_uri=uri,
        raw=operation,
    )
