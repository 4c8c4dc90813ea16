from typing import List, Optional

import pytest

from creastudio.utils.genai_client import MediaAPI, VideoJobHandle
from creastudio.utils.media import MediaBlob


class FakeMediaAPI(MediaAPI):
    """In-memory MediaAPI recording every call; no network."""

    def __init__(self):
        self.calls: List[tuple] = []
        self.error: Optional[Exception] = None  # raised by every call when set
        self.text = "Primeira linha\n\n  Segunda linha  \nTerceira linha"
        self.chunks = ["Era ", "uma ", "vez"]
        self.stream_error: Optional[Exception] = None  # raised after all chunks
        self.images = [MediaBlob(data=b"\x89PNG-fake", mime_type="image/png")]
        self.edited = MediaBlob(data=b"\x89PNG-edited", mime_type="image/png")
        self.speech = MediaBlob(data=b"RIFF-fake", mime_type="audio/wav")
        self.polls_until_done = 2
        self.video_uri: Optional[str] = "https://generativelanguage.example/files/v1:download?alt=media"
        self.video_bytes = b"\x00\x00\x00\x18ftypmp42"
        self.poll_error: Optional[Exception] = None
        self.polls = 0

    def _record(self, call, /, **kwargs):
        self.calls.append((call, kwargs))
        if self.error is not None:
            raise self.error

    def call_names(self):
        return [name for name, _ in self.calls]

    def generate_text(self, prompt, model, system_instruction=None, temperature=None, top_p=None):
        self._record("generate_text", prompt=prompt, model=model, temperature=temperature, top_p=top_p)
        return self.text

    def stream_text(self, prompt, model, system_instruction=None):
        self._record("stream_text", prompt=prompt, model=model, system_instruction=system_instruction)
        for chunk in self.chunks:
            yield chunk
        if self.stream_error is not None:
            raise self.stream_error

    def stream_chat(self, history, message, model, system_instruction=None):
        self._record("stream_chat", history=list(history), message=message, model=model)
        for chunk in self.chunks:
            yield chunk
        if self.stream_error is not None:
            raise self.stream_error

    def generate_images(self, prompt, model, aspect_ratio="1:1", number_of_images=1, mime_type="image/png"):
        self._record("generate_images", prompt=prompt, model=model, aspect_ratio=aspect_ratio,
                     number_of_images=number_of_images)
        return list(self.images)

    def edit_image(self, image, instruction, model):
        self._record("edit_image", image=image, instruction=instruction, model=model)
        return self.edited

    def generate_speech(self, prompt, model, voice_name="Kore"):
        self._record("generate_speech", prompt=prompt, model=model, voice_name=voice_name)
        return self.speech

    def _handle(self):
        done = self.polls >= self.polls_until_done
        return VideoJobHandle(
            name="models/veo/operations/op-1",
            done=done,
            result_uri=self.video_uri if done else None,
        )

    def start_video(self, prompt, image, model, aspect_ratio="9:16", resolution="720p"):
        self._record("start_video", prompt=prompt, image=image, model=model,
                     aspect_ratio=aspect_ratio, resolution=resolution)
        self.polls = 0
        return self._handle()

    def poll_video(self, handle):
        self._record("poll_video", job=handle.name)
        if self.poll_error is not None:
            raise self.poll_error
        self.polls += 1
        return self._handle()

    def download(self, uri):
        self._record("download", uri=uri)
        return self.video_bytes


@pytest.fixture
def fake_api():
    return FakeMediaAPI()
