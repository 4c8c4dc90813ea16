import base64
import io
import mimetypes
import re
import wave
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional


class InvalidMediaError(ValueError):
    pass


@dataclass
class InlineImage:
    """An image attached to a request as an inline base64 payload."""

    data: str
    mime_type: str = "image/png"

    @classmethod
    def from_bytes(cls, raw: bytes, mime_type: str = "image/png") -> "InlineImage":
        return cls(data=base64.b64encode(raw).decode("ascii"), mime_type=mime_type)

    @classmethod
    def from_path(cls, path: str) -> "InlineImage":
        mime_type, _ = mimetypes.guess_type(str(path))
        if not mime_type or not mime_type.startswith("image/"):
            raise InvalidMediaError(f"Not an image file: {path}")
        with open(path, "rb") as f:
            return cls.from_bytes(f.read(), mime_type=mime_type)

    @classmethod
    def from_data_url(cls, data_url: str) -> "InlineImage":
        # data:image/png;base64,<payload>
        match = re.match(r"^data:([^;,]+);base64,(.*)$", data_url.strip(), re.DOTALL)
        if not match:
            raise InvalidMediaError("Expected a base64 data URL")
        mime_type, payload = match.group(1), match.group(2)
        if not mime_type.startswith("image/"):
            raise InvalidMediaError(f"Not an image payload: {mime_type}")
        return cls(data=payload, mime_type=mime_type)

    def to_bytes(self) -> bytes:
        return base64.b64decode(self.data)

    @property
    def data_url(self) -> str:
        return f"data:{self.mime_type};base64,{self.data}"


@dataclass
class MediaBlob:
    """Binary output returned by the generative API (image, audio or video)."""

    data: bytes
    mime_type: str

    def to_inline(self) -> InlineImage:
        return InlineImage.from_bytes(self.data, mime_type=self.mime_type)

    def b64(self) -> str:
        return base64.b64encode(self.data).decode("ascii")


def pcm_to_wav(pcm: bytes, channels: int = 1, rate: int = 24000, sample_width: int = 2) -> bytes:
    buf = io.BytesIO()
    with wave.open(buf, "wb") as wf:
        wf.setnchannels(channels)
        wf.setsampwidth(sample_width)
        wf.setframerate(rate)
        wf.writeframes(pcm)
    return buf.getvalue()


def slugify(text: str, max_len: int = 30) -> str:
    s = re.sub(r"[^a-zA-Z0-9_-]+", "_", text.strip())[:max_len]
    return s.strip("_") or "output"


EXTENSIONS = {
    "image/png": ".png",
    "image/jpeg": ".jpg",
    "image/webp": ".webp",
    "audio/wav": ".wav",
    "video/mp4": ".mp4",
}


def make_save_path(base_dir: str, label: str, mime_type: str) -> Path:
    ext = EXTENSIONS.get(mime_type) or mimetypes.guess_extension(mime_type) or ".bin"
    stamp = datetime.now().strftime("%Y%m%d%H%M%S%f")
    save_dir = Path(base_dir)
    save_dir.mkdir(parents=True, exist_ok=True)
    return save_dir / f"{stamp}_{slugify(label)}{ext}"


def save_blob(blob: MediaBlob, base_dir: Optional[str], label: str) -> Optional[str]:
    if not base_dir:
        return None
    path = make_save_path(base_dir, label, blob.mime_type)
    with open(path, "wb") as f:
        f.write(blob.data)
    return str(path)
