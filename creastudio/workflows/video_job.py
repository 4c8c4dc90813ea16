"""
Long-running video generation: submit, poll until done, fetch the binary.

    idle -> submitted -> polling (-> polling ...) -> fetching -> complete
    any state -> failed

The sleep and clock are injectable so tests can run many poll cycles
without real delays.
"""

from __future__ import annotations

import enum
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from creastudio.tools import messages
from creastudio.tools.base import setup_logger
from creastudio.utils.genai_client import (
    ErrorKind,
    MediaAPI,
    MediaAPIError,
    VideoJobHandle,
    classify_error,
)
from creastudio.utils.media import InlineImage, MediaBlob, save_blob
from creastudio.utils.logging_setup import log_context

logger = setup_logger(__name__)


class JobState(str, enum.Enum):
    IDLE = "idle"
    SUBMITTED = "submitted"
    POLLING = "polling"
    FETCHING = "fetching"
    COMPLETE = "complete"
    FAILED = "failed"


ERROR_MESSAGES = {
    ErrorKind.INVALID_CREDENTIAL: messages.INVALID_API_KEY,
    ErrorKind.MISSING_RESULT_URI: messages.VIDEO_NO_DOWNLOAD_LINK,
    ErrorKind.CANCELLED: messages.VIDEO_CANCELLED,
    ErrorKind.TIMED_OUT: messages.VIDEO_TIMED_OUT,
    ErrorKind.NO_OUTPUT: messages.VIDEO_FAILED,
    ErrorKind.GENERIC: messages.VIDEO_FAILED,
}


class JobCancelled(MediaAPIError):
    kind = ErrorKind.CANCELLED


class JobTimedOut(MediaAPIError):
    kind = ErrorKind.TIMED_OUT


class MissingResultURI(MediaAPIError):
    kind = ErrorKind.MISSING_RESULT_URI


class CancelToken:
    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass
class CredentialState:
    """The "API key selected" flag behind the key-selection screen."""

    selected: bool = False

    def select(self) -> None:
        self.selected = True

    def reset(self) -> None:
        self.selected = False


@dataclass
class VideoRequest:
    prompt: str
    image: Optional[InlineImage]
    model: str = "veo-3.1-fast-generate-preview"
    aspect_ratio: str = "9:16"
    resolution: str = "720p"
    label: str = "video"


@dataclass
class JobOutcome:
    state: JobState
    kind: Optional[ErrorKind] = None
    message: Optional[str] = None
    video: Optional[MediaBlob] = None
    output_path: Optional[str] = None
    polls: int = 0
    job_name: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.state == JobState.COMPLETE


@dataclass
class VideoGenerationWorkflow:
    api: MediaAPI
    poll_interval_sec: float = 10.0
    max_poll_sec: Optional[float] = None
    credentials: Optional[CredentialState] = None
    results_dir: Optional[str] = None
    sleep: Callable[[float], None] = time.sleep
    clock: Callable[[], float] = time.monotonic
    on_state_change: Optional[Callable[[JobState], None]] = None

    state: JobState = field(default=JobState.IDLE, init=False)
    error: Optional[str] = field(default=None, init=False)
    result: Optional[JobOutcome] = field(default=None, init=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)
    _run_listener: Optional[Callable[[JobState], None]] = field(default=None, init=False, repr=False)

    @property
    def is_loading(self) -> bool:
        return self._lock.locked()

    def _set_state(self, state: JobState) -> None:
        self.state = state
        logger.info(f"Video job state -> {state.value}")
        if self.on_state_change is not None:
            self.on_state_change(state)
        if self._run_listener is not None:
            self._run_listener(state)

    def submit(
        self,
        request: VideoRequest,
        cancel_token: Optional[CancelToken] = None,
        on_state_change: Optional[Callable[[JobState], None]] = None,
    ) -> Optional[JobOutcome]:
        """
        Run one generation to completion or failure.

        Returns None without touching the API when the prompt or image is
        missing, or when a submission from this instance is still running.
        `on_state_change` only hears the transitions of this run.

        When `results_dir` is set the video is written there and the outcome
        carries only `output_path`; otherwise the bytes stay on `outcome.video`.
        """
        if not request.prompt or not request.prompt.strip() or request.image is None:
            return None
        if not self._lock.acquire(blocking=False):
            logger.info("Video job already in flight, ignoring submit")
            return None
        try:
            self.error = None
            self.result = None
            self._run_listener = on_state_change
            outcome = self._run(request, cancel_token or CancelToken())
            self.result = outcome
            if not outcome.ok:
                self.error = outcome.message
            return outcome
        finally:
            self._run_listener = None
            self._lock.release()

    def _run(self, request: VideoRequest, token: CancelToken) -> JobOutcome:
        polls = 0
        handle: Optional[VideoJobHandle] = None
        try:
            self._set_state(JobState.SUBMITTED)
            handle = self.api.start_video(
                prompt=request.prompt,
                image=request.image,
                model=request.model,
                aspect_ratio=request.aspect_ratio,
                resolution=request.resolution,
            )
            self._set_state(JobState.POLLING)
            started = self.clock()
            with log_context(job_id=handle.name or None):
                while not handle.done:
                    self._check(token, started)
                    self.sleep(self.poll_interval_sec)
                    self._check(token, started)
                    handle = self.api.poll_video(handle)
                    polls += 1
                    logger.debug(f"Poll {polls}: done={handle.done}")

                if not handle.result_uri:
                    raise MissingResultURI("Video job finished without a download link")

                self._set_state(JobState.FETCHING)
                data = self.api.download(handle.result_uri)
                video = MediaBlob(data=data, mime_type="video/mp4")
                output_path = save_blob(video, self.results_dir, request.label)
                self._set_state(JobState.COMPLETE)
                logger.info(f"Video ready after {polls} polls ({len(data)} bytes) path={output_path}")
                return JobOutcome(
                    state=JobState.COMPLETE,
                    video=None if output_path else video,
                    output_path=output_path,
                    polls=polls,
                    job_name=handle.name,
                )
        except Exception as exc:
            kind = classify_error(exc)
            logger.error(f"Video job failed ({kind.value}): {exc}", exc_info=kind == ErrorKind.GENERIC)
            if kind == ErrorKind.INVALID_CREDENTIAL and self.credentials is not None:
                self.credentials.reset()
            self._set_state(JobState.FAILED)
            return JobOutcome(
                state=JobState.FAILED,
                kind=kind,
                message=ERROR_MESSAGES[kind],
                polls=polls,
                job_name=handle.name if handle else None,
            )

    def _check(self, token: CancelToken, started: float) -> None:
        if token.cancelled:
            raise JobCancelled("Video job cancelled")
        if self.max_poll_sec and self.clock() - started > self.max_poll_sec:
            raise JobTimedOut(f"Video job exceeded {self.max_poll_sec}s")
