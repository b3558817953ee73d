"""Microphone capture for spoken explanations."""

from __future__ import annotations

import io
import logging
import threading
import time
import wave
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, List, Optional, Protocol

from ..config import CaptureSettings
from ..errors import CaptureError, ErrorKind
from ..services.events import emit_device_event


LOGGER = logging.getLogger(__name__)

ChunkCallback = Callable[[bytes], None]


class CaptureState(str, Enum):
    IDLE = "idle"
    RECORDING = "recording"
    STOPPED = "stopped"
    EVALUATING = "evaluating"


@dataclass(frozen=True)
class RecordedExplanation:
    """One finished recording, ready to be sent for evaluation."""

    data: bytes
    mime_type: str
    duration: Optional[float] = None
    created_at: float = field(default_factory=time.time)

    @property
    def size(self) -> int:
        return len(self.data)


class AudioStream(Protocol):
    def close(self) -> None:
        ...


class AudioSource(Protocol):
    """A microphone that delivers 16-bit PCM chunks through a callback."""

    sample_rate: int
    channels: int

    def open(self, on_chunk: ChunkCallback) -> AudioStream:
        ...


def encode_wav_blob(chunks: List[bytes], *, sample_rate: int, channels: int) -> bytes:
    """Join PCM *chunks* in order and wrap them in a WAV container."""

    payload = b"".join(chunks)
    frame_bytes = 2 * channels
    payload = payload[: len(payload) - (len(payload) % frame_bytes)]
    buffer = io.BytesIO()
    with wave.open(buffer, "wb") as handle:
        handle.setnchannels(channels)
        handle.setsampwidth(2)
        handle.setframerate(sample_rate)
        handle.writeframes(payload)
    return buffer.getvalue()


class RecordingController:
    """State machine driving one microphone recording session at a time.

    ``IDLE -> RECORDING -> STOPPED -> IDLE`` on reset, or
    ``STOPPED -> EVALUATING -> IDLE`` when the recording is submitted.
    """

    def __init__(self, source: AudioSource) -> None:
        self._source = source
        self._state = CaptureState.IDLE
        self._stream: Optional[AudioStream] = None
        self._chunks: List[bytes] = []
        self._chunks_lock = threading.Lock()
        self._recording: Optional[RecordedExplanation] = None
        self._started_at: Optional[float] = None

    @property
    def state(self) -> CaptureState:
        return self._state

    @property
    def recording(self) -> Optional[RecordedExplanation]:
        return self._recording

    @property
    def has_recording(self) -> bool:
        return self._recording is not None

    def _on_chunk(self, chunk: bytes) -> None:
        # Invoked from the audio driver's thread.
        if not chunk:
            return
        with self._chunks_lock:
            if self._state is CaptureState.RECORDING:
                self._chunks.append(bytes(chunk))

    def start_recording(self) -> None:
        if self._state is CaptureState.RECORDING:
            LOGGER.debug("Recording already in progress; ignoring start request")
            return
        if self._state is CaptureState.EVALUATING:
            raise CaptureError(ErrorKind.INVALID_STATE, "Recording is being evaluated")

        self._recording = None
        with self._chunks_lock:
            self._chunks = []
        try:
            stream = self._source.open(self._on_chunk)
        except (PermissionError, OSError) as error:
            LOGGER.warning("Microphone unavailable: %s", error)
            self._state = CaptureState.IDLE
            raise CaptureError(ErrorKind.PERMISSION_DENIED, str(error) or "Microphone unavailable") from error

        with self._chunks_lock:
            self._stream = stream
            self._state = CaptureState.RECORDING
        self._started_at = time.monotonic()
        emit_device_event(
            "Microphone recording started",
            payload={"sample_rate": self._source.sample_rate, "channels": self._source.channels},
        )

    def stop_recording(self) -> Optional[RecordedExplanation]:
        if self._state is not CaptureState.RECORDING:
            LOGGER.debug("Stop requested while %s; ignoring", self._state.value)
            return None

        with self._chunks_lock:
            self._state = CaptureState.STOPPED
            chunks = self._chunks
            self._chunks = []
        self._release_stream()

        duration = time.monotonic() - self._started_at if self._started_at is not None else None
        self._started_at = None
        blob = encode_wav_blob(
            chunks,
            sample_rate=self._source.sample_rate,
            channels=self._source.channels,
        )
        self._recording = RecordedExplanation(data=blob, mime_type="audio/wav", duration=duration)
        emit_device_event(
            "Microphone recording stopped",
            payload={"chunks": len(chunks), "bytes": len(blob)},
            duration_ms=duration * 1_000 if duration is not None else None,
        )
        return self._recording

    def reset(self) -> None:
        self._release_stream()
        with self._chunks_lock:
            self._chunks = []
            self._state = CaptureState.IDLE
        self._recording = None
        self._started_at = None

    def load_recording(self, data: bytes, mime_type: str) -> RecordedExplanation:
        """Adopt an externally recorded blob as the current recording."""

        if self._state in {CaptureState.RECORDING, CaptureState.EVALUATING}:
            raise CaptureError(
                ErrorKind.INVALID_STATE,
                f"Cannot replace the recording while {self._state.value}",
            )
        if not data:
            raise ValueError("Recording is empty")
        self._recording = RecordedExplanation(data=bytes(data), mime_type=mime_type or "audio/webm")
        self._state = CaptureState.STOPPED
        return self._recording

    def begin_evaluation(self) -> RecordedExplanation:
        if self._state is not CaptureState.STOPPED or self._recording is None:
            raise CaptureError(ErrorKind.INVALID_STATE, "No finished recording to evaluate")
        self._state = CaptureState.EVALUATING
        return self._recording

    def finish_evaluation(self, recording: RecordedExplanation) -> bool:
        """Return to ``IDLE`` after a submission, whatever its outcome.

        Nothing happens unless *recording* is still the one under evaluation;
        a reset or a new take since :meth:`begin_evaluation` wins.
        """

        if self._state is not CaptureState.EVALUATING or self._recording is not recording:
            LOGGER.debug("Evaluation finished for a replaced recording; state kept as %s", self._state.value)
            return False
        self._recording = None
        self._state = CaptureState.IDLE
        return True

    def _release_stream(self) -> None:
        stream = self._stream
        self._stream = None
        if stream is None:
            return
        try:
            stream.close()
        except Exception:  # noqa: BLE001 - releasing must not mask the caller's outcome
            LOGGER.exception("Failed to release microphone stream")
        else:
            emit_device_event("Microphone released")

    def describe(self) -> dict:
        recording = self._recording
        return {
            "state": self._state.value,
            "hasRecording": self.has_recording,
            "mimeType": recording.mime_type if recording else None,
            "bytes": recording.size if recording else 0,
            "duration": recording.duration if recording else None,
        }


class _PyAudioInputStream:
    def __init__(self, audio: Any, stream: Any) -> None:
        self._audio = audio
        self._stream = stream

    def close(self) -> None:
        try:
            if self._stream.is_active():
                self._stream.stop_stream()
            self._stream.close()
        finally:
            # Terminating the PortAudio session releases the device.
            self._audio.terminate()


class PyAudioMicrophone:
    """Host microphone backed by PyAudio."""

    def __init__(self, settings: CaptureSettings) -> None:
        self.sample_rate = settings.sample_rate
        self.channels = settings.channels
        self._frames_per_buffer = settings.frames_per_buffer

    def open(self, on_chunk: ChunkCallback) -> AudioStream:
        try:
            import pyaudio  # type: ignore[import-not-found]
        except ImportError as error:
            raise PermissionError("PyAudio is not installed; microphone capture is unavailable") from error

        audio = pyaudio.PyAudio()

        def _callback(in_data, frame_count, time_info, status):  # noqa: ANN001 - PyAudio signature
            on_chunk(in_data)
            return (None, pyaudio.paContinue)

        try:
            stream = audio.open(
                format=pyaudio.paInt16,
                channels=self.channels,
                rate=self.sample_rate,
                input=True,
                frames_per_buffer=self._frames_per_buffer,
                stream_callback=_callback,
            )
        except OSError:
            audio.terminate()
            raise
        stream.start_stream()
        return _PyAudioInputStream(audio, stream)


__all__ = [
    "AudioSource",
    "AudioStream",
    "CaptureState",
    "PyAudioMicrophone",
    "RecordedExplanation",
    "RecordingController",
    "encode_wav_blob",
]
