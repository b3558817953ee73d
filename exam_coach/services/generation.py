"""Gateway to the Gemini generation service.

Every public coroutine maps one typed request to exactly one provider call
(the video operation adds polling and a download) and either returns a typed
result or raises :class:`~exam_coach.errors.GenerationError`. There are no
retries and no caching at this layer.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterator, Optional, Type, TypeVar

import httpx
from google import genai
from google.genai import errors as genai_errors
from google.genai import types
from pydantic import BaseModel, ValidationError

from ..config import GenerationSettings
from ..errors import ErrorKind, GenerationError, TranscodeError
from ..models import SpokenEvaluation, StudyMaterial, response_schema_for
from ..processing.transcoder import decode_base64_to_bytes
from .events import emit_generation_event
from .prompts import (
    IMAGE_PROMPT_PREFIX,
    VIDEO_PROMPT_PREFIX,
    build_evaluation_prompt,
    build_study_material_prompt,
)


LOGGER = logging.getLogger(__name__)

T = TypeVar("T")
ModelT = TypeVar("ModelT", bound=BaseModel)

StatusCallback = Callable[[str], None]

_STUDY_MATERIAL_SCHEMA = response_schema_for(StudyMaterial)
_EVALUATION_SCHEMA = response_schema_for(SpokenEvaluation)


@dataclass(frozen=True)
class GeneratedImage:
    data: bytes
    mime_type: str = "image/png"


def _default_http_client_factory(settings: GenerationSettings) -> Callable[[], httpx.AsyncClient]:
    def _factory() -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=settings.download_timeout, follow_redirects=True)

    return _factory


def build_client(settings: GenerationSettings) -> genai.Client:
    """Create the SDK client, failing if no credential is configured."""

    if not settings.api_key:
        raise GenerationError(
            ErrorKind.PROVIDER_UNAVAILABLE,
            "No Gemini API key configured; set GEMINI_API_KEY.",
        )
    return genai.Client(api_key=settings.api_key)


def _inline_blobs(response: Any) -> Iterator[Any]:
    for candidate in getattr(response, "candidates", None) or []:
        content = getattr(candidate, "content", None)
        for part in getattr(content, "parts", None) or []:
            inline = getattr(part, "inline_data", None)
            if inline is not None and getattr(inline, "data", None):
                yield inline


def _blob_bytes(data: bytes | str) -> bytes:
    if isinstance(data, str):
        return decode_base64_to_bytes(data)
    return bytes(data)


def _parse_structured(model: Type[ModelT], response: Any, operation: str) -> ModelT:
    text = getattr(response, "text", None)
    if not text or not str(text).strip():
        raise GenerationError(ErrorKind.MALFORMED_RESPONSE, f"{operation}: provider returned no content")
    try:
        return model.model_validate_json(text)
    except ValidationError as error:
        LOGGER.warning(
            "%s response failed validation with %s error(s): %s",
            operation,
            error.error_count(),
            error.errors(include_url=False)[:3],
        )
        raise GenerationError(
            ErrorKind.MALFORMED_RESPONSE,
            f"{operation}: response does not match the expected schema",
        ) from error


class GenerationGateway:
    """Typed, stateless access to the five provider operations."""

    def __init__(
        self,
        settings: GenerationSettings,
        *,
        client: Any = None,
        http_client_factory: Optional[Callable[[], httpx.AsyncClient]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._settings = settings
        self._client_instance = client
        self._http_client_factory = http_client_factory or _default_http_client_factory(settings)
        self._sleep = sleep
        self._clock = clock

    @property
    def settings(self) -> GenerationSettings:
        return self._settings

    def _client(self) -> Any:
        if self._client_instance is None:
            self._client_instance = build_client(self._settings)
        return self._client_instance

    async def _invoke(
        self,
        operation: str,
        call: Callable[[], Awaitable[T]],
        *,
        context: Optional[dict] = None,
        level: int = logging.INFO,
    ) -> T:
        started = time.perf_counter()
        try:
            result = await call()
        except genai_errors.APIError as error:
            duration_ms = (time.perf_counter() - started) * 1_000
            emit_generation_event(
                f"{operation} failed",
                payload={"code": getattr(error, "code", None), "error": getattr(error, "message", None)},
                context=context,
                duration_ms=duration_ms,
                level=logging.WARNING,
            )
            message = getattr(error, "message", None) or str(error)
            raise GenerationError(ErrorKind.PROVIDER_UNAVAILABLE, message) from error
        except httpx.HTTPError as error:
            emit_generation_event(
                f"{operation} failed",
                payload={"error": str(error)},
                context=context,
                duration_ms=(time.perf_counter() - started) * 1_000,
                level=logging.WARNING,
            )
            raise GenerationError(ErrorKind.PROVIDER_UNAVAILABLE, str(error) or type(error).__name__) from error
        emit_generation_event(
            f"{operation} completed",
            context=context,
            duration_ms=(time.perf_counter() - started) * 1_000,
            level=level,
        )
        return result

    async def request_study_material(self, topic: str) -> StudyMaterial:
        """Generate the full study package for *topic*.

        The caller trims and rejects empty topics. Either every field validates
        or :class:`GenerationError` is raised; no partial material is returned.
        """

        client = self._client()
        config = types.GenerateContentConfig(
            response_mime_type="application/json",
            response_schema=_STUDY_MATERIAL_SCHEMA,
            temperature=self._settings.temperature,
        )
        response = await self._invoke(
            "study_material",
            functools.partial(
                client.aio.models.generate_content,
                model=self._settings.text_model,
                contents=build_study_material_prompt(topic),
                config=config,
            ),
            context={"topic": topic, "model": self._settings.text_model},
        )
        return _parse_structured(StudyMaterial, response, "study_material")

    async def request_speech(self, text: str) -> bytes:
        """Return raw 16-bit little-endian mono PCM at 24 kHz for *text*."""

        client = self._client()
        config = types.GenerateContentConfig(
            response_modalities=["AUDIO"],
            speech_config=types.SpeechConfig(
                voice_config=types.VoiceConfig(
                    prebuilt_voice_config=types.PrebuiltVoiceConfig(
                        voice_name=self._settings.voice_name,
                    )
                )
            ),
        )
        response = await self._invoke(
            "speech",
            functools.partial(
                client.aio.models.generate_content,
                model=self._settings.speech_model,
                contents=[types.Content(role="user", parts=[types.Part.from_text(text=text)])],
                config=config,
            ),
            context={"characters": len(text)},
        )
        for blob in _inline_blobs(response):
            try:
                return _blob_bytes(blob.data)
            except TranscodeError as error:
                raise GenerationError(ErrorKind.NO_AUDIO_RETURNED, error.message) from error
        raise GenerationError(ErrorKind.NO_AUDIO_RETURNED, "Provider returned no inline audio")

    async def request_image(self, scene_prompt: str) -> GeneratedImage:
        client = self._client()
        config = types.GenerateContentConfig(
            image_config=types.ImageConfig(aspect_ratio=self._settings.image_aspect_ratio),
        )
        response = await self._invoke(
            "image",
            functools.partial(
                client.aio.models.generate_content,
                model=self._settings.image_model,
                contents=[types.Part.from_text(text=IMAGE_PROMPT_PREFIX + scene_prompt)],
                config=config,
            ),
            context={"model": self._settings.image_model},
        )
        for blob in _inline_blobs(response):
            try:
                data = _blob_bytes(blob.data)
            except TranscodeError as error:
                raise GenerationError(ErrorKind.NO_IMAGE_RETURNED, error.message) from error
            return GeneratedImage(data=data, mime_type=getattr(blob, "mime_type", None) or "image/png")
        raise GenerationError(ErrorKind.NO_IMAGE_RETURNED, "Provider returned no inline image")

    async def request_video(
        self,
        scene_prompt: str,
        *,
        destination: Path,
        on_status: Optional[StatusCallback] = None,
    ) -> Path:
        """Create a video, poll until the operation finishes and download it.

        Polling happens every ``video_poll_interval`` seconds and gives up with
        ``VIDEO_TIMED_OUT`` after ``video_timeout`` seconds. Abandoning the
        wait does not cancel the job on the provider side.
        """

        def _report(message: str) -> None:
            if on_status is not None:
                on_status(message)

        client = self._client()
        config = types.GenerateVideosConfig(
            number_of_videos=1,
            resolution=self._settings.video_resolution,
            aspect_ratio=self._settings.image_aspect_ratio,
        )
        _report("正在请求视频生成（可能需要 1-2 分钟）…")
        operation = await self._invoke(
            "video.create",
            functools.partial(
                client.aio.models.generate_videos,
                model=self._settings.video_model,
                prompt=VIDEO_PROMPT_PREFIX + scene_prompt,
                config=config,
            ),
            context={"model": self._settings.video_model},
        )

        started = self._clock()
        deadline = started + self._settings.video_timeout
        polls = 0
        while not getattr(operation, "done", False):
            if self._clock() >= deadline:
                raise GenerationError(
                    ErrorKind.VIDEO_TIMED_OUT,
                    f"Video was not ready after {self._settings.video_timeout:.0f}s ({polls} polls)",
                )
            await self._sleep(self._settings.video_poll_interval)
            polls += 1
            operation = await self._invoke(
                "video.poll",
                functools.partial(client.aio.operations.get, operation),
                context={"polls": polls},
                level=logging.DEBUG,
            )
            _report(f"视频生成中，已等待 {int(self._clock() - started)} 秒…")

        failure = getattr(operation, "error", None)
        if failure:
            message = failure.get("message") if isinstance(failure, dict) else str(failure)
            raise GenerationError(ErrorKind.PROVIDER_UNAVAILABLE, message or "Video operation failed")

        result = getattr(operation, "response", None) or getattr(operation, "result", None)
        videos = getattr(result, "generated_videos", None) or []
        video = getattr(videos[0], "video", None) if videos else None
        uri = getattr(video, "uri", None)
        if not uri:
            raise GenerationError(ErrorKind.NO_VIDEO_LINK, "Video operation finished without a download URI")

        _report("正在下载视频…")
        return await self._download(uri, destination)

    async def _download(self, uri: str, destination: Path) -> Path:
        try:
            url = httpx.URL(uri)
        except httpx.InvalidURL as error:
            raise GenerationError(ErrorKind.NO_VIDEO_LINK, f"Invalid video URI: {error}") from error
        # The URI carries its own query (alt=media); the key is appended to it.
        if self._settings.api_key:
            url = url.copy_add_param("key", self._settings.api_key)
        started = time.perf_counter()
        async with self._http_client_factory() as http:
            try:
                response = await http.get(url)
            except httpx.HTTPError as error:
                raise GenerationError(ErrorKind.DOWNLOAD_FAILED, str(error) or type(error).__name__) from error
        if not response.is_success:
            raise GenerationError(
                ErrorKind.DOWNLOAD_FAILED,
                f"Video download returned HTTP {response.status_code}",
            )
        destination.parent.mkdir(parents=True, exist_ok=True)
        destination.write_bytes(response.content)
        emit_generation_event(
            "video.download completed",
            payload={"bytes": len(response.content), "path": destination},
            duration_ms=(time.perf_counter() - started) * 1_000,
        )
        return destination

    async def request_evaluation(
        self,
        reference_definition: str,
        audio: bytes,
        mime_type: str,
    ) -> SpokenEvaluation:
        """Score a spoken explanation of *reference_definition*."""

        client = self._client()
        config = types.GenerateContentConfig(
            response_mime_type="application/json",
            response_schema=_EVALUATION_SCHEMA,
        )
        contents = [
            types.Part.from_text(text=build_evaluation_prompt(reference_definition)),
            types.Part.from_bytes(data=audio, mime_type=mime_type),
        ]
        response = await self._invoke(
            "evaluation",
            functools.partial(
                client.aio.models.generate_content,
                model=self._settings.text_model,
                contents=contents,
                config=config,
            ),
            context={"audio_bytes": len(audio), "mime_type": mime_type},
        )
        return _parse_structured(SpokenEvaluation, response, "evaluation")


__all__ = ["GeneratedImage", "GenerationGateway", "build_client"]
