import json
import os
import queue
import threading
import time
import traceback
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, Response, StreamingResponse
from pydantic import BaseModel

from creastudio.config.config import config
from creastudio.storage import StudioStorage
from creastudio.storage.models import ScriptDocuments
from creastudio.storage.stores import (
    AVATAR_PHOTO_KEY,
    HEADSHOT_SELFIES_KEY,
    PHOTO_STUDIO_SELFIES_KEY,
    DuplicateUserError,
    InvalidLoginError,
    NotFoundError,
    StorageValidationError,
)
from creastudio.tools import messages
from creastudio.tools.base import setup_logger
from creastudio.tools.catalog import ToolSpec, load_catalog
from creastudio.tools.runner import build_video_request, build_workflow
from creastudio.utils.genai_client import GeminiMediaAPI, MediaAPI
from creastudio.utils.logging_setup import log_context
from creastudio.utils.media import InlineImage, InvalidMediaError
from creastudio.workflows.streaming import Attachment, ChatSession, StreamingTextWorkflow
from creastudio.workflows.video_job import CancelToken, CredentialState, JobOutcome, JobState, VideoGenerationWorkflow

logger = setup_logger(__name__)

app = FastAPI(title="Creative Studio API", version="0.1.0")

# CORS middleware setting
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

CACHED_IMAGE_KEYS = (AVATAR_PHOTO_KEY, HEADSHOT_SELFIES_KEY, PHOTO_STUDIO_SELFIES_KEY)

# In-memory bounds: finished video jobs per panel, chat sessions, panel workflows
MAX_FINISHED_JOBS_PER_PANEL = 5
MAX_CHAT_SESSIONS = 200
MAX_PANELS = 200


@dataclass
class VideoJob:
    job_id: str
    tool_id: str
    panel_id: str
    workflow: VideoGenerationWorkflow
    token: CancelToken = field(default_factory=CancelToken)
    running: bool = True
    # follows this job only; the panel workflow is shared across its jobs
    state: JobState = JobState.SUBMITTED
    outcome: Optional[JobOutcome] = None
    created_at: str = field(default_factory=lambda: datetime.now().isoformat())

    def set_state(self, state: JobState) -> None:
        self.state = state

    def to_dict(self) -> Dict[str, Any]:
        outcome = self.outcome
        return {
            "job_id": self.job_id,
            "tool_id": self.tool_id,
            "panel_id": self.panel_id,
            "state": self.state.value,
            "running": self.running,
            "error": outcome.message if outcome else None,
            "kind": outcome.kind.value if outcome and outcome.kind else None,
            "polls": outcome.polls if outcome else 0,
            "output_path": outcome.output_path if outcome else None,
            "created_at": self.created_at,
        }


@dataclass
class StudioState:
    """Process-wide state shared by the endpoints."""

    api: MediaAPI
    storage: StudioStorage
    catalog: Dict[str, ToolSpec]
    settings: Dict[str, Any]
    credentials: CredentialState
    sleep: Callable[[float], None] = time.sleep
    panels: Dict[str, Any] = field(default_factory=dict)
    chat_sessions: Dict[str, ChatSession] = field(default_factory=dict)
    video_jobs: Dict[str, VideoJob] = field(default_factory=dict)
    lock: threading.Lock = field(default_factory=threading.Lock)

    @classmethod
    def from_config(cls, settings: Dict[str, Any]) -> "StudioState":
        api_key = settings.get("api_key", "")
        return cls(
            api=GeminiMediaAPI(api_key, download_timeout=float(settings.get("download_timeout_sec") or 60)),
            storage=StudioStorage.open(settings["storage_path"]),
            catalog=load_catalog(settings["catalog_file"]),
            settings=settings,
            credentials=CredentialState(selected=bool(api_key)),
        )

    def tool(self, tool_id: str) -> ToolSpec:
        spec = self.catalog.get(tool_id)
        if spec is None:
            raise HTTPException(status_code=404, detail=f"Unknown tool: {tool_id}")
        return spec

    def panel(self, spec: ToolSpec, panel_id: Optional[str]):
        """One workflow instance per panel, so the in-flight guard applies per panel."""
        key = f"{spec.tool_id}:{panel_id or 'default'}"
        with self.lock:
            workflow = self.panels.get(key)
            if workflow is None:
                idle = [k for k, w in self.panels.items() if not w.is_loading]
                for stale in idle[: max(0, len(self.panels) - MAX_PANELS + 1)]:
                    del self.panels[stale]
                workflow = build_workflow(spec, self.api, self.settings, credentials=self.credentials, sleep=self.sleep)
                self.panels[key] = workflow
            return workflow


_state: Optional[StudioState] = None
_state_lock = threading.Lock()


def get_state() -> StudioState:
    global _state
    with _state_lock:
        if _state is None:
            _state = StudioState.from_config(config)
            logger.info(f"Studio initialized: {len(_state.catalog)} tools, storage={_state.storage.db_path}")
        return _state


def set_state(state: Optional[StudioState]) -> None:
    global _state
    with _state_lock:
        _state = state


# --- request models ---
class ToolRunRequest(BaseModel):
    values: Dict[str, Any] = {}
    images: Dict[str, str] = {}  # field name -> data URL
    panel_id: Optional[str] = None


class ChatRequest(BaseModel):
    prompt: str
    session_id: Optional[str] = None
    attachment_name: Optional[str] = None
    attachment_content: Optional[str] = None


class VideoJobRequest(BaseModel):
    tool_id: str
    values: Dict[str, Any] = {}
    images: Dict[str, str] = {}
    panel_id: Optional[str] = None


class CredentialsRequest(BaseModel):
    api_key: Optional[str] = None


class ScriptCreateRequest(BaseModel):
    title: str
    status: str = "current"
    documents: Optional[Dict[str, str]] = None


class ScriptUpdateRequest(BaseModel):
    title: Optional[str] = None
    status: Optional[str] = None
    documents: Optional[Dict[str, str]] = None


class BrandVoiceRequest(BaseModel):
    name: str
    description: str = ""
    content: str = ""


class RegisterRequest(BaseModel):
    username: str = ""
    email: str = ""
    password: str = ""


class LoginRequest(BaseModel):
    username: str = ""  # username or email
    password: str = ""


class CachedImagesRequest(BaseModel):
    images: List[str] = []


class HealthResponse(BaseModel):
    status: str
    timestamp: str


# --- helpers ---
def _sse(event: Dict[str, Any]) -> str:
    return f"data: {json.dumps(event, ensure_ascii=False)}\n\n"


def _decode_images(images: Dict[str, str]) -> Dict[str, InlineImage]:
    try:
        return {name: InlineImage.from_data_url(url) for name, url in images.items() if url}
    except InvalidMediaError as e:
        raise HTTPException(status_code=400, detail=f"{messages.NOT_AN_IMAGE} ({e})")


def _require_fields(spec: ToolSpec, values: Dict[str, Any], images: Dict[str, InlineImage]) -> None:
    missing = spec.missing_fields(values, images)
    if missing:
        raise HTTPException(status_code=422, detail={"message": "Missing required fields", "fields": missing})


def _stream_events(start: Callable[[Callable[[str, str], None]], Dict[str, Any]], tag: str):
    """
    Run `start` on a worker thread and relay its chunks as SSE.

    `start` receives the per-chunk callback and returns the final event.
    """
    events: "queue.Queue[Optional[Dict[str, Any]]]" = queue.Queue()

    def on_chunk(fragment: str, _text: str) -> None:
        events.put({"type": "content", "content": fragment})

    def worker() -> None:
        try:
            events.put(start(on_chunk))
        except Exception as e:
            logger.error(f"Error in {tag} stream: {e}")
            logger.error(traceback.format_exc())
            events.put({"type": "error", "message": str(e)})
        finally:
            events.put(None)

    threading.Thread(target=worker, name=f"sse-{tag}", daemon=True).start()
    while True:
        event = events.get()
        if event is None:
            break
        logger.debug(f"Sending SSE event: {event.get('type', 'unknown')}")
        yield _sse(event)


# --- misc ---
@app.get("/health")
async def health():
    return HealthResponse(status="healthy", timestamp=datetime.now().isoformat())


@app.get("/")
async def root():
    return {"message": "Creative Studio API is running"}


@app.get("/credentials")
def credentials_status():
    return {"selected": get_state().credentials.selected}


@app.post("/credentials/select")
def select_credentials(request: CredentialsRequest):
    state = get_state()
    with state.lock:
        if request.api_key and request.api_key.strip():
            state.api = GeminiMediaAPI(
                request.api_key,
                download_timeout=float(state.settings.get("download_timeout_sec") or 60),
            )
            state.panels.clear()
            state.chat_sessions.clear()
        state.credentials.select()
    logger.info("API key selected")
    return {"selected": True}


# --- tools ---
@app.get("/tools")
def list_tools():
    return [spec.to_dict() for spec in get_state().catalog.values()]


@app.post("/tools/{tool_id}/run")
def run_tool(tool_id: str, request: ToolRunRequest):
    state = get_state()
    spec = state.tool(tool_id)
    if spec.kind in ("stream", "video"):
        raise HTTPException(status_code=400, detail=f"{tool_id} is a {spec.kind} tool")
    images = _decode_images(request.images)
    _require_fields(spec, request.values, images)

    workflow = state.panel(spec, request.panel_id)
    with log_context(tool=tool_id, panel_id=request.panel_id):
        response = workflow.run(request.values, images)
    if response is None:
        raise HTTPException(status_code=409, detail="A request for this panel is already running")
    return response.model_dump()


@app.post("/tools/{tool_id}/stream")
def stream_tool(tool_id: str, request: ToolRunRequest):
    state = get_state()
    spec = state.tool(tool_id)
    if spec.kind != "stream":
        raise HTTPException(status_code=400, detail=f"{tool_id} is not a streaming tool")
    _require_fields(spec, request.values, {})

    workflow: StreamingTextWorkflow = state.panel(spec, request.panel_id)
    if workflow.is_loading:
        raise HTTPException(status_code=409, detail="A request for this panel is already running")
    prompt = spec.render(request.values)

    def start(on_chunk):
        with log_context(tool=tool_id, panel_id=request.panel_id):
            outcome = workflow.run(prompt, system_instruction=spec.system_instruction, on_chunk=on_chunk)
        if outcome is None:
            return {"type": "error", "message": "A request for this panel is already running"}
        if not outcome.ok:
            return {"type": "error", "message": outcome.error, "content": outcome.text}
        return {"type": "finish", "content": outcome.text}

    return StreamingResponse(_stream_events(start, tool_id), media_type="text/event-stream", headers=SSE_HEADERS)


# --- chat ---
def _evict_idle_sessions(state: StudioState) -> None:
    """Make room for one more session, oldest idle ones first. Caller holds `state.lock`."""
    overflow = len(state.chat_sessions) - MAX_CHAT_SESSIONS + 1
    if overflow <= 0:
        return
    idle = [sid for sid, s in state.chat_sessions.items() if not s.is_loading]
    for sid in idle[:overflow]:
        del state.chat_sessions[sid]
        logger.debug(f"Evicted chat session {sid}")


@app.post("/chat/stream")
def chat(request: ChatRequest):
    """Chat with the studio assistant; the reply is streamed as SSE."""
    state = get_state()
    if not request.prompt or not request.prompt.strip():
        raise HTTPException(status_code=422, detail="prompt is required")
    session_id = request.session_id or str(uuid.uuid4())
    with state.lock:
        session = state.chat_sessions.get(session_id)
        if session is None:
            _evict_idle_sessions(state)
            session = ChatSession(state.api, model=state.settings["fast_text_model"])
            state.chat_sessions[session_id] = session
    if session.is_loading:
        raise HTTPException(status_code=409, detail="A message for this session is already being answered")

    attachment = None
    if request.attachment_name and request.attachment_content is not None:
        attachment = Attachment(name=request.attachment_name, content=request.attachment_content)

    logger.info(f"POST /chat/stream - session: {session_id}, prompt: {request.prompt[:50]}...")

    def start(on_chunk):
        with log_context(session_id=session_id):
            reply = session.send(request.prompt, attachment=attachment, on_chunk=on_chunk)
        if reply is None:
            return {"type": "error", "message": "A message for this session is already being answered"}
        if session.error:
            return {"type": "error", "message": session.error, "session_id": session_id}
        return {"type": "finish", "content": reply.text, "session_id": session_id}

    return StreamingResponse(_stream_events(start, "chat"), media_type="text/event-stream", headers=SSE_HEADERS)


@app.get("/chat/{session_id}")
def chat_history(session_id: str):
    session = get_state().chat_sessions.get(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Unknown session")
    return {"session_id": session_id, "messages": [m.to_dict() for m in session.messages], "error": session.error}


# --- video jobs ---
def _run_video_job(job: VideoJob, request) -> None:
    try:
        with log_context(tool=job.tool_id, panel_id=job.panel_id):
            job.outcome = job.workflow.submit(request, cancel_token=job.token, on_state_change=job.set_state)
    except Exception as e:
        logger.error(f"Video job {job.job_id} crashed: {e}")
        logger.error(traceback.format_exc())
    finally:
        # no outcome means the submit was refused or crashed
        job.set_state(job.outcome.state if job.outcome is not None else JobState.FAILED)
        job.running = False


def _evict_finished_jobs(state: StudioState, tool_id: str, panel_id: str) -> None:
    """Drop the oldest finished jobs of a panel. Caller holds `state.lock`."""
    finished = [
        j for j in state.video_jobs.values()
        if j.tool_id == tool_id and j.panel_id == panel_id and not j.running
    ]
    for job in finished[:-MAX_FINISHED_JOBS_PER_PANEL]:
        del state.video_jobs[job.job_id]
        logger.debug(f"Evicted finished video job {job.job_id}")


@app.post("/video/jobs")
def create_video_job(request: VideoJobRequest):
    state = get_state()
    spec = state.tool(request.tool_id)
    if spec.kind != "video":
        raise HTTPException(status_code=400, detail=f"{request.tool_id} is not a video tool")
    if not state.credentials.selected:
        raise HTTPException(status_code=412, detail="Select an API key before generating videos")
    images = _decode_images(request.images)
    _require_fields(spec, request.values, images)
    video_request = build_video_request(spec, request.values, images, state.settings)

    panel_id = request.panel_id or "default"
    workflow = state.panel(spec, panel_id)
    with state.lock:
        for existing in state.video_jobs.values():
            if existing.tool_id == spec.tool_id and existing.panel_id == panel_id and existing.running:
                raise HTTPException(status_code=409, detail=f"Job {existing.job_id} is still running for this panel")
        _evict_finished_jobs(state, spec.tool_id, panel_id)
        job = VideoJob(
            job_id=uuid.uuid4().hex,
            tool_id=spec.tool_id,
            panel_id=panel_id,
            workflow=workflow,
        )
        state.video_jobs[job.job_id] = job

    threading.Thread(target=_run_video_job, args=(job, video_request), name=f"video-{job.job_id[:8]}", daemon=True).start()
    logger.info(f"Video job {job.job_id} started for {spec.tool_id} panel={panel_id}")
    return job.to_dict()


def _job(job_id: str) -> VideoJob:
    job = get_state().video_jobs.get(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Unknown job")
    return job


@app.get("/video/jobs/{job_id}")
def get_video_job(job_id: str):
    return _job(job_id).to_dict()


@app.get("/video/jobs/{job_id}/result")
def get_video_result(job_id: str):
    job = _job(job_id)
    if job.running:
        raise HTTPException(status_code=409, detail="Job is still running")
    outcome = job.outcome
    if outcome is None or not outcome.ok:
        raise HTTPException(status_code=404, detail=outcome.message if outcome else "No result")
    if outcome.output_path and os.path.isfile(outcome.output_path):
        return FileResponse(outcome.output_path, media_type="video/mp4")
    if outcome.video is not None:
        return Response(content=outcome.video.data, media_type=outcome.video.mime_type)
    raise HTTPException(status_code=404, detail="Result file is no longer available")


@app.post("/video/jobs/{job_id}/cancel")
def cancel_video_job(job_id: str):
    job = _job(job_id)
    job.token.cancel()
    logger.info(f"Cancel requested for video job {job_id}")
    return job.to_dict()


# --- scripts ---
@app.get("/scripts")
def list_scripts(status: Optional[str] = None):
    return [p.to_dict() for p in get_state().storage.projects.list(status=status)]


@app.post("/scripts")
def create_script(request: ScriptCreateRequest):
    documents = ScriptDocuments.from_dict(request.documents) if request.documents else None
    try:
        project = get_state().storage.projects.create(request.title, status=request.status, documents=documents)
    except StorageValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return project.to_dict()


@app.get("/scripts/{project_id}")
def get_script(project_id: str):
    project = get_state().storage.projects.get(project_id)
    if project is None:
        raise HTTPException(status_code=404, detail="Unknown script project")
    return project.to_dict()


@app.put("/scripts/{project_id}")
def update_script(project_id: str, request: ScriptUpdateRequest):
    projects = get_state().storage.projects
    project = projects.get(project_id)
    if project is None:
        raise HTTPException(status_code=404, detail="Unknown script project")
    if request.title is not None:
        project.title = request.title
    if request.status is not None:
        project.status = request.status
    if request.documents is not None:
        project.documents = ScriptDocuments.from_dict({**asdict(project.documents), **request.documents})
    try:
        return projects.update(project).to_dict()
    except StorageValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Unknown script project")


@app.delete("/scripts/{project_id}")
def delete_script(project_id: str):
    if not get_state().storage.projects.delete(project_id):
        raise HTTPException(status_code=404, detail="Unknown script project")
    return {"deleted": project_id}


# --- brand voices ---
@app.get("/brand-voices")
def list_brand_voices():
    return [v.to_dict() for v in get_state().storage.voices.list()]


@app.post("/brand-voices")
def create_brand_voice(request: BrandVoiceRequest):
    try:
        voice = get_state().storage.voices.save(request.name, request.description, request.content)
    except StorageValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return voice.to_dict()


@app.put("/brand-voices/{voice_id}")
def update_brand_voice(voice_id: str, request: BrandVoiceRequest):
    voices = get_state().storage.voices
    if voices.get(voice_id) is None:
        raise HTTPException(status_code=404, detail="Unknown brand voice")
    try:
        return voices.save(request.name, request.description, request.content, voice_id=voice_id).to_dict()
    except StorageValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.delete("/brand-voices/{voice_id}")
def delete_brand_voice(voice_id: str):
    if not get_state().storage.voices.delete(voice_id):
        raise HTTPException(status_code=404, detail="Unknown brand voice")
    return {"deleted": voice_id}


# --- users ---
@app.post("/users/register")
def register(request: RegisterRequest):
    try:
        return get_state().storage.users.register(request.username, request.email, request.password)
    except DuplicateUserError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except StorageValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.post("/users/login")
def login(request: LoginRequest):
    try:
        return get_state().storage.users.login(request.username, request.password)
    except InvalidLoginError as e:
        raise HTTPException(status_code=401, detail=str(e))
    except StorageValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.post("/users/logout")
def logout():
    get_state().storage.users.logout()
    return {"logged_out": True}


@app.get("/users/current")
def current_user():
    user = get_state().storage.users.current_user()
    if user is None:
        raise HTTPException(status_code=404, detail="No user logged in")
    return user


# --- cached images ---
def _cache_key(key: str) -> str:
    if key not in CACHED_IMAGE_KEYS:
        raise HTTPException(status_code=404, detail=f"Unknown image cache: {key}")
    return key


@app.get("/cache/images/{key}")
def get_cached_images(key: str):
    images = get_state().storage.images
    key = _cache_key(key)
    if key == AVATAR_PHOTO_KEY:
        photo = images.get_image(key)
        return {"images": [photo] if photo else []}
    return {"images": images.get_images(key)}


@app.put("/cache/images/{key}")
def put_cached_images(key: str, request: CachedImagesRequest):
    images = get_state().storage.images
    key = _cache_key(key)
    for url in request.images:
        _decode_images({"image": url})
    if key == AVATAR_PHOTO_KEY:
        if request.images:
            images.set_image(request.images[0], key)
        else:
            images.clear(key)
    else:
        images.set_images(key, request.images)
    return {"images": request.images}


def main():
    import uvicorn
    uvicorn.run(app, host=config["server_host"], port=int(config["server_port"]))


if __name__ == "__main__":
    main()
