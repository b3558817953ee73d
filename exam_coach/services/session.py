"""Server-side state for the study page.

:class:`StudySession` owns everything the page renders: the active study
package, per-tab view state, generated media and the Feynman recording. User
actions arrive as method calls; failures of a single action are stored as a
user-facing message instead of propagating, so one failed request never
clears unrelated state.

Artifacts derived from a study package (image, video, evaluation) are tagged
with the package token captured before the provider call. A result whose
token no longer matches the active package is dropped on arrival.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

from ..config import PlaybackSettings
from ..errors import CaptureError, ErrorKind, ExamCoachError, GenerationError, user_message
from ..models import SpokenEvaluation, StudyMaterial
from ..processing.capture import RecordingController
from ..processing.playback import AudioOutput
from ..processing.transcoder import pcm_bytes_to_sample_buffer, sample_buffer_to_wav_bytes
from .generation import GeneratedImage, GenerationGateway
from .views import QUIZ_MODES, BlankResult, BreakdownView, QuizView, TabKind, TabView, build_views


LOGGER = logging.getLogger(__name__)

PLAYBACK_UNAVAILABLE_MESSAGE = "无法使用扬声器播放音频，请检查音频设备。"
PLAYBACK_BUSY_MESSAGE = "正在播放其他音频，请稍后再试。"


class NoActiveMaterialError(LookupError):
    """Raised when an action needs a study package but none is loaded."""


@dataclass(frozen=True)
class ActiveMaterial:
    topic: str
    material: StudyMaterial
    token: str


@dataclass(frozen=True)
class GeneratedVideo:
    path: Path
    url: str


def _new_token() -> str:
    return uuid.uuid4().hex


class StudySession:
    """One user's study page, shared by every request to the server."""

    def __init__(
        self,
        gateway: GenerationGateway,
        *,
        recorder: RecordingController,
        audio_output: AudioOutput,
        media_root: Path,
        playback: Optional[PlaybackSettings] = None,
    ) -> None:
        self._gateway = gateway
        self._recorder = recorder
        self._audio_output = audio_output
        self._media_root = media_root
        self._playback = playback or audio_output.settings

        self._active: Optional[ActiveMaterial] = None
        self._pending_topic: Optional[str] = None
        self._submission = 0
        self._loading = False
        self._error: Optional[str] = None

        self._active_tab = TabKind.THEORY
        self._views: Dict[TabKind, TabView] = build_views(0)

        self._speech_busy: Optional[str] = None
        self._image: Optional[GeneratedImage] = None
        self._image_loading = False
        self._video: Optional[GeneratedVideo] = None
        self._video_loading = False
        self._video_status = ""
        self._evaluation: Optional[SpokenEvaluation] = None

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------
    @property
    def material(self) -> Optional[StudyMaterial]:
        return self._active.material if self._active else None

    @property
    def token(self) -> Optional[str]:
        return self._active.token if self._active else None

    @property
    def loading(self) -> bool:
        return self._loading

    @property
    def error(self) -> Optional[str]:
        return self._error

    @property
    def image(self) -> Optional[GeneratedImage]:
        return self._image

    @property
    def video(self) -> Optional[GeneratedVideo]:
        return self._video

    @property
    def evaluation(self) -> Optional[SpokenEvaluation]:
        return self._evaluation

    @property
    def speech_busy(self) -> Optional[str]:
        return self._speech_busy

    @property
    def recorder(self) -> RecordingController:
        return self._recorder

    def view(self, kind: TabKind | str) -> TabView:
        return self._views[TabKind(kind)]

    def _is_current(self, token: str) -> bool:
        return self._active is not None and self._active.token == token

    def _require_material(self) -> ActiveMaterial:
        if self._active is None:
            raise NoActiveMaterialError("No study material is loaded")
        return self._active

    def _report(self, error: ExamCoachError) -> None:
        LOGGER.warning("Action failed: %r", error)
        self._error = user_message(error)

    # ------------------------------------------------------------------
    # Topic submission
    # ------------------------------------------------------------------
    def _clear_material(self) -> None:
        self._audio_output.suspend()
        if self._video is not None:
            self._video.path.unlink(missing_ok=True)
        self._active = None
        self._image = None
        self._image_loading = False
        self._video = None
        self._video_loading = False
        self._video_status = ""
        self._evaluation = None
        self._recorder.reset()
        self._active_tab = TabKind.THEORY
        self._views = build_views(0)
        self._error = None

    async def submit(self, topic: str) -> Optional[StudyMaterial]:
        """Replace the current package with one generated for *topic*."""

        cleaned = (topic or "").strip()
        if not cleaned:
            raise ValueError("Topic must not be empty")

        self._clear_material()
        self._submission += 1
        submission = self._submission
        self._pending_topic = cleaned
        self._loading = True
        LOGGER.info("Generating study material for topic '%s'", cleaned)
        try:
            material = await self._gateway.request_study_material(cleaned)
        except GenerationError as error:
            if submission == self._submission:
                self._report(error)
            return None
        finally:
            if submission == self._submission:
                self._loading = False
                self._pending_topic = None

        if submission != self._submission:
            LOGGER.info("Discarding study material for superseded topic '%s'", cleaned)
            return None

        self._active = ActiveMaterial(topic=cleaned, material=material, token=_new_token())
        self._views = build_views(len(material.deconstruction.steps))
        return material

    def dismiss_error(self) -> None:
        self._error = None

    # ------------------------------------------------------------------
    # Speech
    # ------------------------------------------------------------------
    async def play_speech(self, text: str, clip_id: str) -> bool:
        """Synthesize *text* and play it on the host speaker.

        Only one synthesis request runs at a time; a request made while
        another clip is busy is ignored.
        """

        cleaned = (text or "").strip()
        if not cleaned:
            raise ValueError("Text to speak must not be empty")
        if self._speech_busy is not None:
            LOGGER.info("Speech for '%s' ignored; '%s' is in flight", clip_id, self._speech_busy)
            return False

        self._speech_busy = clip_id
        try:
            pcm = await self._gateway.request_speech(cleaned)
            buffer = pcm_bytes_to_sample_buffer(
                pcm,
                sample_rate=self._playback.sample_rate,
                channels=self._playback.channels,
            )
            started = self._audio_output.play(buffer)
        except ExamCoachError as error:
            self._report(error)
            return False
        except OSError as error:
            LOGGER.warning("Audio output unavailable: %s", error)
            self._error = PLAYBACK_UNAVAILABLE_MESSAGE
            return False
        finally:
            self._speech_busy = None

        if not started:
            self._error = PLAYBACK_BUSY_MESSAGE
        return started

    async def speech_wav(self, text: str) -> Optional[bytes]:
        """Return synthesized speech for *text* as WAV bytes for the browser."""

        cleaned = (text or "").strip()
        if not cleaned:
            raise ValueError("Text to speak must not be empty")
        try:
            pcm = await self._gateway.request_speech(cleaned)
        except GenerationError as error:
            self._report(error)
            return None
        buffer = pcm_bytes_to_sample_buffer(
            pcm,
            sample_rate=self._playback.sample_rate,
            channels=self._playback.channels,
        )
        return sample_buffer_to_wav_bytes(buffer)

    # ------------------------------------------------------------------
    # Memory palace media
    # ------------------------------------------------------------------
    async def generate_image(self) -> Optional[GeneratedImage]:
        active = self._require_material()
        if self._image is not None or self._image_loading:
            return self._image

        token = active.token
        self._image_loading = True
        try:
            image = await self._gateway.request_image(active.material.memory_palace)
        except GenerationError as error:
            if self._is_current(token):
                self._report(error)
            return None
        finally:
            if self._is_current(token):
                self._image_loading = False

        if not self._is_current(token):
            LOGGER.info("Discarding image generated for a replaced study package")
            return None
        self._image = image
        return image

    def _set_video_status(self, token: str, message: str) -> None:
        if self._is_current(token):
            self._video_status = message

    async def generate_video(self) -> Optional[GeneratedVideo]:
        active = self._require_material()
        if self._video is not None or self._video_loading:
            return self._video

        token = active.token
        name = f"palace-{token[:12]}.mp4"
        destination = self._media_root / name
        self._video_loading = True
        try:
            path = await self._gateway.request_video(
                active.material.memory_palace,
                destination=destination,
                on_status=lambda message: self._set_video_status(token, message),
            )
        except GenerationError as error:
            if self._is_current(token):
                self._report(error)
            return None
        finally:
            if self._is_current(token):
                self._video_loading = False
                self._video_status = ""

        if not self._is_current(token):
            LOGGER.info("Discarding video generated for a replaced study package")
            path.unlink(missing_ok=True)
            return None
        self._video = GeneratedVideo(path=path, url=f"/media/{name}")
        return self._video

    # ------------------------------------------------------------------
    # Feynman recording
    # ------------------------------------------------------------------
    def start_recording(self) -> bool:
        self._require_material()
        self._evaluation = None
        try:
            self._recorder.start_recording()
        except CaptureError as error:
            if error.kind is not ErrorKind.PERMISSION_DENIED:
                raise
            self._report(error)
            return False
        return True

    def stop_recording(self) -> bool:
        return self._recorder.stop_recording() is not None

    def reset_recording(self) -> None:
        self._recorder.reset()

    def upload_recording(self, data: bytes, mime_type: str) -> None:
        self._require_material()
        self._recorder.load_recording(data, mime_type)
        self._evaluation = None

    async def submit_recording(self) -> Optional[SpokenEvaluation]:
        """Score the finished recording against the package definition."""

        active = self._require_material()
        recording = self._recorder.begin_evaluation()
        token = active.token
        failure: Optional[GenerationError] = None
        evaluation: Optional[SpokenEvaluation] = None
        try:
            evaluation = await self._gateway.request_evaluation(
                active.material.definition,
                recording.data,
                recording.mime_type,
            )
        except GenerationError as error:
            failure = error
        finally:
            finished = self._recorder.finish_evaluation(recording)

        if not finished or not self._is_current(token):
            LOGGER.info("Discarding evaluation for a replaced recording")
            return None
        if failure is not None:
            self._report(failure)
            return None
        self._evaluation = evaluation
        return evaluation

    # ------------------------------------------------------------------
    # Local view state
    # ------------------------------------------------------------------
    def select_tab(self, tab: TabKind | str) -> TabKind:
        self._active_tab = TabKind(tab)
        return self._active_tab

    def select_step(self, index: int) -> int:
        self._require_material()
        view = self._views[TabKind.BREAKDOWN]
        assert isinstance(view, BreakdownView)
        return view.select(index)

    def _quiz(self) -> QuizView:
        view = self._views[TabKind.QUIZ]
        assert isinstance(view, QuizView)
        return view

    def set_quiz_mode(self, mode: str) -> str:
        self._require_material()
        if mode not in QUIZ_MODES:
            raise ValueError(f"Unknown quiz mode '{mode}'")
        quiz = self._quiz()
        quiz.mode = mode  # type: ignore[assignment]
        return quiz.mode

    def _blank_index(self, index: int) -> int:
        blanks = self._require_material().material.fill_in_the_blanks
        if not 0 <= index < len(blanks):
            raise IndexError(f"No fill-in-the-blank item at index {index}")
        return index

    def answer_blank(self, index: int, answer: str) -> None:
        self._blank_index(index)
        quiz = self._quiz()
        if index in quiz.revealed:
            return
        quiz.blank_answers[index] = answer or ""

    def check_blank(self, index: int) -> BlankResult:
        """Reveal the expected answer; correctness is a trimmed exact match."""

        self._blank_index(index)
        quiz = self._quiz()
        if index in quiz.revealed:
            return quiz.revealed[index]
        expected = self.material.fill_in_the_blanks[index].answer  # type: ignore[union-attr]
        given = quiz.blank_answers.get(index, "")
        result = BlankResult(answer=expected, correct=given.strip() == expected.strip())
        quiz.revealed[index] = result
        return result

    def flip_card(self, index: int) -> Optional[int]:
        cards = self._require_material().material.flashcards
        if not 0 <= index < len(cards):
            raise IndexError(f"No flashcard at index {index}")
        return self._quiz().toggle_card(index)

    # ------------------------------------------------------------------
    # Rendering
    # ------------------------------------------------------------------
    def snapshot(self) -> dict:
        active = self._active
        return {
            "topic": active.topic if active else self._pending_topic,
            "token": active.token if active else None,
            "loading": self._loading,
            "error": self._error,
            "material": active.material.model_dump(by_alias=True, mode="json") if active else None,
            "activeTab": self._active_tab.value,
            "views": {kind.value: view.describe() for kind, view in self._views.items()},
            "speech": {"busy": self._speech_busy},
            "image": {
                "loading": self._image_loading,
                "available": self._image is not None,
                "mimeType": self._image.mime_type if self._image else None,
                "url": f"/api/image?v={active.token}" if active and self._image else None,
            },
            "video": {
                "loading": self._video_loading,
                "status": self._video_status,
                "url": self._video.url if self._video else None,
            },
            "recording": self._recorder.describe(),
            "evaluation": self._evaluation.model_dump(by_alias=True, mode="json") if self._evaluation else None,
        }

    def close(self) -> None:
        self._recorder.reset()
        self._audio_output.close()


__all__ = [
    "ActiveMaterial",
    "GeneratedVideo",
    "NoActiveMaterialError",
    "StudySession",
]
