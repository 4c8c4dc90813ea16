from __future__ import annotations

import threading
from typing import Any, List, Mapping, Optional

from creastudio.tools import messages
from creastudio.tools.base import ToolResponse, setup_logger
from creastudio.tools.catalog import ToolSpec
from creastudio.utils.genai_client import ErrorKind, MediaAPI, NoOutputError, classify_error
from creastudio.utils.media import InlineImage, MediaBlob, save_blob

logger = setup_logger(__name__)

SINGLE_SHOT_KINDS = ("text", "list", "image", "image_edit", "audio")


def split_items(text: str, separator: Optional[str] = None) -> List[str]:
    """Split a model answer into trimmed, non-empty items (one per line by default)."""
    parts = text.split(separator) if separator else text.splitlines()
    return [p.strip() for p in parts if p.strip()]


class SingleShotWorkflow:
    """
    One request, one response: text, a list of lines, an image, an edited
    image or an audio clip, depending on the catalog entry's kind.
    """

    def __init__(self, api: MediaAPI, spec: ToolSpec, model: Optional[str] = None, results_dir: Optional[str] = None):
        if spec.kind not in SINGLE_SHOT_KINDS:
            raise ValueError(f"{spec.tool_id} is a {spec.kind} tool, not a single-shot one")
        self.api = api
        self.spec = spec
        self.model = model or spec.model
        self.results_dir = results_dir
        self.error: Optional[str] = None
        self.result: Optional[ToolResponse] = None
        self._lock = threading.Lock()

    @property
    def is_loading(self) -> bool:
        return self._lock.locked()

    def run(self, values: Mapping[str, Any], images: Optional[Mapping[str, InlineImage]] = None) -> Optional[ToolResponse]:
        images = images or {}
        missing = self.spec.missing_fields(values, images)
        if missing:
            logger.debug(f"{self.spec.tool_id}: missing fields {missing}, nothing to do")
            return None
        if not self._lock.acquire(blocking=False):
            return None
        try:
            self.error = None
            self.result = None
            prompt = self.spec.render(values)
            try:
                response = self._call(prompt, images)
            except Exception as exc:
                kind = classify_error(exc)
                logger.error(f"{self.spec.tool_id} failed ({kind.value}): {exc}", exc_info=kind == ErrorKind.GENERIC)
                self.error = messages.INVALID_API_KEY if kind == ErrorKind.INVALID_CREDENTIAL else self.spec.failure_message
                response = ToolResponse(success=False, error=self.error, kind=kind.value)
            self.result = response
            return response
        finally:
            self._lock.release()

    def _call(self, prompt: str, images: Mapping[str, InlineImage]) -> ToolResponse:
        kind = self.spec.kind
        options = self.spec.options

        if kind in ("text", "list"):
            text = self.api.generate_text(
                prompt,
                model=self.model,
                system_instruction=self.spec.system_instruction,
                temperature=options.get("temperature"),
                top_p=options.get("top_p"),
            )
            if kind == "text":
                return ToolResponse(success=True, message="Text generated", content=text)
            items = split_items(text, options.get("separator"))
            return ToolResponse(success=True, message=f"{len(items)} items generated", content=items)

        if kind == "image":
            blobs = self.api.generate_images(
                prompt,
                model=self.model,
                aspect_ratio=options.get("aspect_ratio", "1:1"),
                number_of_images=1,
            )
            return self._media_response(blobs[0], "Image generated")

        if kind == "image_edit":
            image = images[self.spec.image_fields[0].name]
            blob = self.api.edit_image(image, prompt, model=self.model)
            return self._media_response(blob, "Image edited")

        # audio
        blob = self.api.generate_speech(prompt, model=self.model, voice_name=options.get("voice_name", "Kore"))
        return self._media_response(blob, "Audio generated")

    def _media_response(self, blob: MediaBlob, message: str) -> ToolResponse:
        if not blob.data:
            raise NoOutputError(f"{self.spec.tool_id} returned an empty payload")
        output_path = save_blob(blob, self.results_dir, self.spec.tool_id)
        logger.info(f"{self.spec.tool_id}: {blob.mime_type} {len(blob.data)} bytes path={output_path}")
        return ToolResponse(
            success=True,
            message=message,
            content={"mime_type": blob.mime_type, "data": blob.b64()},
            output_path=output_path,
        )
