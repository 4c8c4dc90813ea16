"""Builds the workflow behind a catalog entry and the requests it consumes."""

from __future__ import annotations

import time
from typing import Any, Callable, Mapping, Optional, Union

from creastudio.tools.catalog import ToolSpec
from creastudio.utils.genai_client import MediaAPI
from creastudio.utils.media import InlineImage
from creastudio.workflows.single_shot import SingleShotWorkflow
from creastudio.workflows.streaming import StreamingTextWorkflow
from creastudio.workflows.video_job import CredentialState, VideoGenerationWorkflow, VideoRequest

Workflow = Union[SingleShotWorkflow, StreamingTextWorkflow, VideoGenerationWorkflow]


def build_workflow(
    spec: ToolSpec,
    api: MediaAPI,
    config: Mapping[str, Any],
    credentials: Optional[CredentialState] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> Workflow:
    model = spec.resolve_model(config)
    if spec.kind == "stream":
        return StreamingTextWorkflow(api, model=model, error_message=spec.failure_message)
    if spec.kind == "video":
        return VideoGenerationWorkflow(
            api=api,
            poll_interval_sec=float(config.get("poll_interval_sec", 10)),
            max_poll_sec=float(config.get("max_poll_sec") or 0) or None,
            credentials=credentials,
            results_dir=config.get("results_dir"),
            sleep=sleep,
        )
    return SingleShotWorkflow(api, spec, model=model, results_dir=config.get("results_dir"))


def build_video_request(
    spec: ToolSpec,
    values: Mapping[str, Any],
    images: Mapping[str, InlineImage],
    config: Mapping[str, Any],
) -> Optional[VideoRequest]:
    """None when a required field or the reference image is missing."""
    if spec.kind != "video":
        raise ValueError(f"{spec.tool_id} is not a video tool")
    if spec.missing_fields(values, images):
        return None
    image = images.get(spec.image_fields[0].name)
    return VideoRequest(
        prompt=spec.render(values),
        image=image,
        model=spec.resolve_model(config),
        aspect_ratio=spec.options.get("aspect_ratio", "9:16"),
        resolution=spec.options.get("resolution") or config.get("video_resolution", "720p"),
        label=spec.tool_id,
    )
