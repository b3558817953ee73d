"""FastAPI application powering the Exam Coach web UI."""

from __future__ import annotations

import contextvars
import json
import logging
import uuid
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Literal, Optional, Tuple

from fastapi import FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, HTMLResponse, Response
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, Field
from starlette.types import ASGIApp, Receive, Scope, Send

from ..config import AppConfig
from ..errors import CaptureError, ErrorKind
from ..services.events import EventKind, emit_structured_event
from ..services.session import NoActiveMaterialError, StudySession
from ..services.views import TabKind


_STATIC_ROOT = Path(__file__).parent / "static"
_TEMPLATE_PATH = Path(__file__).parent / "templates" / "index.html"
_ROOT_PATH_PLACEHOLDER = "__EXAM_COACH_ROOT_PATH__"
_MAX_RECORDING_BYTES = 25 * 1024 * 1024


_REQUEST_ID_VAR: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "exam_coach_request_id",
    default=None,
)
_ACTOR_VAR: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "exam_coach_actor",
    default=None,
)


def _new_correlation_id() -> str:
    return uuid.uuid4().hex


def _format_actor_label(role: str, detail: Optional[str] = None) -> str:
    base = role.strip() if role else "actor"
    if detail is None:
        return base
    suffix = str(detail).strip()
    return f"{base}:{suffix}" if suffix else base


def _collect_correlation_context() -> Dict[str, str]:
    context: Dict[str, str] = {}
    request_id = _REQUEST_ID_VAR.get()
    if request_id:
        context["request_id"] = str(request_id)
    actor = _ACTOR_VAR.get()
    if actor:
        context["actor"] = str(actor)
    return context


class RequestContextMiddleware:
    """Assign a correlation identifier to each request and expose it via contextvars."""

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope.get("type") != "http":
            await self.app(scope, receive, send)
            return

        request_id = _new_correlation_id()
        scope_state = scope.get("state")
        if scope_state is None:
            scope_state = {}
            scope["state"] = scope_state
        if isinstance(scope_state, dict):
            scope_state["request_id"] = request_id
        else:
            setattr(scope_state, "request_id", request_id)

        method = scope.get("method")
        actor_hint = _format_actor_label("request", method.upper() if isinstance(method, str) else None)
        request_token = _REQUEST_ID_VAR.set(request_id)
        actor_token = _ACTOR_VAR.set(actor_hint)

        try:
            await self.app(scope, receive, send)
        finally:
            _ACTOR_VAR.reset(actor_token)
            _REQUEST_ID_VAR.reset(request_token)


class ContextualLoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that injects correlation context into records."""

    def process(self, msg: Any, kwargs: Dict[str, Any]) -> tuple[Any, Dict[str, Any]]:  # type: ignore[override]
        extra: Dict[str, Any] = dict(self.extra)
        provided = kwargs.get("extra")
        if isinstance(provided, dict):
            extra.update(provided)
        correlation = _collect_correlation_context()
        for key, value in correlation.items():
            extra.setdefault(key, value)
        kwargs["extra"] = extra
        return msg, kwargs


LOGGER = ContextualLoggerAdapter(logging.getLogger(__name__), {})
EVENT_LOGGER = ContextualLoggerAdapter(logging.getLogger("exam_coach.ui.events"), {})


def _log_event(message: str, **context: Any) -> None:
    emit_structured_event(
        EventKind.APP,
        message,
        context=context,
        correlation=_collect_correlation_context(),
        logger=EVENT_LOGGER,
    )


# Paths the app serves; anything in front of them is a proxy prefix.
_ROUTE_MARKERS: Tuple[str, ...] = ("/api/", "/media/", "/static/")


def normalize_root_path(value: Optional[str]) -> str:
    """Return *value* as ``/prefix`` without a trailing slash, or ``""``."""

    candidate = (value or "").split(",", 1)[0].strip()
    if not candidate:
        return ""
    if not candidate.startswith("/"):
        candidate = f"/{candidate}"
    return candidate.rstrip("/")


def _forwarded_prefix(scope: Scope) -> str:
    # First occurrence of a repeated header wins.
    headers = {
        key.decode("latin-1").lower(): value.decode("latin-1")
        for key, value in reversed(scope.get("headers", []))
    }
    path = scope.get("path") or "/"

    prefix = normalize_root_path(headers.get("x-forwarded-prefix"))
    if prefix:
        return prefix

    forwarded_path = headers.get("x-forwarded-path", "").split(",", 1)[0].strip()
    if forwarded_path and forwarded_path.endswith(path) and forwarded_path != path:
        return normalize_root_path(forwarded_path[: -len(path)])

    index = min((path.find(marker) for marker in _ROUTE_MARKERS if marker in path), default=-1)
    return normalize_root_path(path[:index]) if index > 0 else ""


def _strip_prefix(path: str, prefix: str) -> str:
    if path == prefix or path.startswith(f"{prefix}/"):
        return path[len(prefix) :] or "/"
    return path


class ForwardedRootPathMiddleware:
    """Serve requests forwarded by a proxy that mounts the app under a prefix."""

    def __init__(self, app: ASGIApp) -> None:
        self._app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        prefix = _forwarded_prefix(scope) if scope.get("type") == "http" else ""
        if not prefix:
            await self._app(scope, receive, send)
            return

        adjusted_scope = dict(scope)
        adjusted_scope["root_path"] = prefix
        adjusted_scope["path"] = _strip_prefix(scope.get("path") or "/", prefix)
        raw_path = scope.get("raw_path")
        if isinstance(raw_path, (bytes, bytearray)):
            adjusted_scope["raw_path"] = _strip_prefix(raw_path.decode("latin-1"), prefix).encode("latin-1")
        await self._app(adjusted_scope, receive, send)


class StudyRequest(BaseModel):
    topic: str


class TabRequest(BaseModel):
    tab: TabKind


class StepRequest(BaseModel):
    index: int


class QuizModeRequest(BaseModel):
    mode: Literal["blanks", "cards"]


class BlankAnswerRequest(BaseModel):
    answer: str = ""


class SpeechRequest(BaseModel):
    text: str = Field(min_length=1)
    clip_id: str = "default"


def _http_error(error: Exception) -> HTTPException:
    """Translate a session-level refusal into an HTTP status."""

    LOGGER.info("Request refused: %s", error)
    if isinstance(error, NoActiveMaterialError):
        return HTTPException(status_code=409, detail=str(error))
    if isinstance(error, CaptureError):
        status_code = 409 if error.kind is ErrorKind.INVALID_STATE else 400
        return HTTPException(status_code=status_code, detail=error.message)
    if isinstance(error, IndexError):
        return HTTPException(status_code=404, detail=str(error))
    return HTTPException(status_code=400, detail=str(error))


def create_app(
    session: StudySession,
    *,
    config: AppConfig,
    root_path: str | None = None,
) -> FastAPI:
    """Return a configured FastAPI application."""

    normalized_root = normalize_root_path(root_path)

    @asynccontextmanager
    async def _lifespan(_app: FastAPI) -> AsyncIterator[None]:
        try:
            yield
        finally:
            session.close()

    app = FastAPI(
        title="Exam Coach",
        description="Generated study packages for exam topics",
        root_path=normalized_root,
        lifespan=_lifespan,
    )
    app.state.server = None
    app.state.session = session
    app.add_middleware(RequestContextMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(ForwardedRootPathMiddleware)

    app.mount(
        "/static",
        StaticFiles(directory=_STATIC_ROOT, check_dir=False),
        name="assets",
    )

    index_html = _TEMPLATE_PATH.read_text(encoding="utf-8")
    media_root = config.media_root

    def _render_index_html(request: Request | None = None) -> str:
        candidates: List[str] = []
        if request is not None:
            scope_root = request.scope.get("root_path")
            if isinstance(scope_root, str):
                candidates.append(scope_root)
        if normalized_root:
            candidates.append(normalized_root)

        resolved = ""
        for candidate in candidates:
            normalized = normalize_root_path(candidate)
            if normalized:
                resolved = normalized
                break
        static_base = f"{resolved}/static" if resolved else "/static"
        rendered = index_html.replace("__EXAM_COACH_STATIC_BASE__", static_base)
        if not resolved:
            return rendered
        safe_value = json.dumps(resolved)[1:-1]
        return rendered.replace(_ROOT_PATH_PLACEHOLDER, safe_value)

    def _state(**extra: Any) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"session": session.snapshot()}
        payload.update(extra)
        return payload

    @app.get("/", response_class=HTMLResponse)
    async def index(request: Request) -> HTMLResponse:
        return HTMLResponse(_render_index_html(request))

    @app.get("/api/session")
    async def get_session() -> Dict[str, Any]:
        return _state()

    @app.post("/api/study")
    async def submit_topic(payload: StudyRequest) -> Dict[str, Any]:
        _log_event("Study material requested", topic=payload.topic)
        try:
            material = await session.submit(payload.topic)
        except ValueError as error:
            raise _http_error(error) from error
        _log_event("Study material request finished", generated=material is not None)
        return _state()

    @app.delete("/api/session/error")
    async def dismiss_error() -> Dict[str, Any]:
        session.dismiss_error()
        return _state()

    @app.put("/api/tabs/active")
    async def select_tab(payload: TabRequest) -> Dict[str, Any]:
        session.select_tab(payload.tab)
        return _state()

    @app.put("/api/breakdown/step")
    async def select_step(payload: StepRequest) -> Dict[str, Any]:
        try:
            step = session.select_step(payload.index)
        except NoActiveMaterialError as error:
            raise _http_error(error) from error
        return _state(step=step)

    @app.put("/api/quiz/mode")
    async def set_quiz_mode(payload: QuizModeRequest) -> Dict[str, Any]:
        try:
            session.set_quiz_mode(payload.mode)
        except (NoActiveMaterialError, ValueError) as error:
            raise _http_error(error) from error
        return _state()

    @app.put("/api/quiz/blanks/{index}")
    async def answer_blank(index: int, payload: BlankAnswerRequest) -> Dict[str, Any]:
        try:
            session.answer_blank(index, payload.answer)
        except (NoActiveMaterialError, IndexError) as error:
            raise _http_error(error) from error
        return _state()

    @app.post("/api/quiz/blanks/{index}/check")
    async def check_blank(index: int) -> Dict[str, Any]:
        try:
            result = session.check_blank(index)
        except (NoActiveMaterialError, IndexError) as error:
            raise _http_error(error) from error
        return _state(result={"answer": result.answer, "correct": result.correct})

    @app.post("/api/quiz/cards/{index}/flip")
    async def flip_card(index: int) -> Dict[str, Any]:
        try:
            active_card = session.flip_card(index)
        except (NoActiveMaterialError, IndexError) as error:
            raise _http_error(error) from error
        return _state(activeCard=active_card)

    @app.post("/api/speech")
    async def play_speech(payload: SpeechRequest) -> Dict[str, Any]:
        try:
            played = await session.play_speech(payload.text, payload.clip_id)
        except ValueError as error:
            raise _http_error(error) from error
        return _state(played=played)

    @app.post("/api/speech/wav")
    async def speech_wav(payload: SpeechRequest) -> Response:
        try:
            audio = await session.speech_wav(payload.text)
        except ValueError as error:
            raise _http_error(error) from error
        if audio is None:
            raise HTTPException(status_code=502, detail=session.error or "Speech generation failed")
        return Response(content=audio, media_type="audio/wav")

    @app.post("/api/image")
    async def generate_image() -> Dict[str, Any]:
        try:
            await session.generate_image()
        except NoActiveMaterialError as error:
            raise _http_error(error) from error
        return _state()

    @app.get("/api/image")
    async def get_image() -> Response:
        image = session.image
        if image is None:
            raise HTTPException(status_code=404, detail="No image has been generated")
        return Response(
            content=image.data,
            media_type=image.mime_type,
            headers={"Cache-Control": "no-store"},
        )

    @app.post("/api/video")
    async def generate_video() -> Dict[str, Any]:
        _log_event("Video generation requested")
        try:
            video = await session.generate_video()
        except NoActiveMaterialError as error:
            raise _http_error(error) from error
        _log_event("Video generation finished", available=video is not None)
        return _state()

    @app.get("/media/{name}")
    async def serve_media(name: str) -> FileResponse:
        if Path(name).name != name or name.startswith("."):
            raise HTTPException(status_code=404, detail="File not found")
        target = media_root / name
        if not target.is_file():
            raise HTTPException(status_code=404, detail="File not found")
        return FileResponse(target)

    @app.post("/api/recording/start")
    async def start_recording() -> Dict[str, Any]:
        try:
            started = session.start_recording()
        except (NoActiveMaterialError, CaptureError) as error:
            raise _http_error(error) from error
        return _state(started=started)

    @app.post("/api/recording/stop")
    async def stop_recording() -> Dict[str, Any]:
        stopped = session.stop_recording()
        return _state(stopped=stopped)

    @app.post("/api/recording/reset")
    async def reset_recording() -> Dict[str, Any]:
        session.reset_recording()
        return _state()

    @app.post("/api/recording/upload")
    async def upload_recording(
        file: UploadFile = File(...),
        mime_type: Optional[str] = Form(None),
    ) -> Dict[str, Any]:
        data = await file.read(_MAX_RECORDING_BYTES + 1)
        if len(data) > _MAX_RECORDING_BYTES:
            raise HTTPException(status_code=413, detail="Recording is too large")
        resolved_mime = (mime_type or file.content_type or "audio/webm").split(";", 1)[0].strip()
        try:
            session.upload_recording(data, resolved_mime)
        except (NoActiveMaterialError, CaptureError, ValueError) as error:
            raise _http_error(error) from error
        _log_event("Recording uploaded", bytes=len(data), mime_type=resolved_mime)
        return _state()

    @app.post("/api/recording/evaluate")
    async def evaluate_recording() -> Dict[str, Any]:
        try:
            evaluation = await session.submit_recording()
        except (NoActiveMaterialError, CaptureError) as error:
            raise _http_error(error) from error
        _log_event(
            "Spoken explanation evaluated",
            score=evaluation.score if evaluation is not None else None,
        )
        return _state()

    return app


__all__ = ["create_app"]
