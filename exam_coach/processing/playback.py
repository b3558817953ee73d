"""Speaker output shared by every playback request in the process."""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, List, Optional, Protocol

from ..config import PlaybackSettings
from ..services.events import emit_device_event
from .transcoder import SampleBuffer, describe_sample_buffer, encode_sample_buffer


LOGGER = logging.getLogger(__name__)


class PlaybackHandle(Protocol):
    def is_active(self) -> bool:
        ...

    def stop(self) -> None:
        ...


class OutputDevice(Protocol):
    """An audio output that starts clips without blocking the caller."""

    @property
    def suspended(self) -> bool:
        ...

    def resume(self) -> None:
        ...

    def suspend(self) -> None:
        ...

    def start(self, buffer: SampleBuffer) -> PlaybackHandle:
        ...

    def close(self) -> None:
        ...


DeviceFactory = Callable[[PlaybackSettings], OutputDevice]


class AudioOutput:
    """Owns the lazily created output device and applies the overlap policy.

    One instance is created at start-up and handed to every component that
    plays audio. The device is created on the first :meth:`play` call and
    reused afterwards.
    """

    def __init__(
        self,
        settings: PlaybackSettings,
        device_factory: Optional[DeviceFactory] = None,
    ) -> None:
        self._settings = settings
        self._device_factory = device_factory or PyAudioOutputDevice
        self._device: Optional[OutputDevice] = None
        self._handles: List[PlaybackHandle] = []
        self._lock = threading.Lock()

    @property
    def settings(self) -> PlaybackSettings:
        return self._settings

    def _ensure_device(self) -> OutputDevice:
        if self._device is None:
            self._device = self._device_factory(self._settings)
            emit_device_event("Audio output device created", payload={"sample_rate": self._settings.sample_rate})
        return self._device

    def _prune(self) -> List[PlaybackHandle]:
        self._handles = [handle for handle in self._handles if handle.is_active()]
        return self._handles

    def active_count(self) -> int:
        with self._lock:
            return len(self._prune())

    def play(self, buffer: SampleBuffer) -> bool:
        """Start playing *buffer*; return ``False`` when the policy refuses it."""

        with self._lock:
            device = self._ensure_device()
            if device.suspended:
                device.resume()
                emit_device_event("Audio output resumed")

            active = self._prune()
            policy = self._settings.overlap_policy
            if active:
                if policy == "reject":
                    LOGGER.info("Playback refused; %s clip(s) still playing", len(active))
                    return False
                if policy == "interrupt":
                    for handle in active:
                        handle.stop()
                    self._handles = []
                elif len(active) >= self._settings.max_overlapping:
                    LOGGER.warning(
                        "Playback refused; %s overlapping clip(s) already playing",
                        len(active),
                    )
                    return False

            LOGGER.debug("Starting playback: %s", describe_sample_buffer(buffer))
            self._handles.append(device.start(buffer))
            return True

    def suspend(self) -> None:
        """Stop every clip and park the device until the next :meth:`play`."""

        with self._lock:
            for handle in self._handles:
                handle.stop()
            self._handles = []
            if self._device is not None and not self._device.suspended:
                self._device.suspend()
                emit_device_event("Audio output suspended")

    def close(self) -> None:
        with self._lock:
            for handle in self._handles:
                handle.stop()
            self._handles = []
            device = self._device
            self._device = None
        if device is not None:
            device.close()
            emit_device_event("Audio output device closed")


class _PyAudioClip:
    def __init__(self, stream: Any) -> None:
        self._stream = stream
        self._closed = False

    def is_active(self) -> bool:
        if self._closed:
            return False
        try:
            active = bool(self._stream.is_active())
        except OSError:
            active = False
        if not active:
            self._release()
        return active

    def stop(self) -> None:
        if self._closed:
            return
        try:
            self._stream.stop_stream()
        finally:
            self._release()

    def _release(self) -> None:
        if not self._closed:
            self._closed = True
            self._stream.close()


class PyAudioOutputDevice:
    """Host speaker backed by a single PyAudio session."""

    def __init__(self, settings: PlaybackSettings) -> None:
        try:
            import pyaudio  # type: ignore[import-not-found]
        except ImportError as error:
            raise OSError("PyAudio is not installed; host playback is unavailable") from error

        self._pyaudio = pyaudio
        self._audio = pyaudio.PyAudio()
        self._suspended = False

    @property
    def suspended(self) -> bool:
        return self._suspended

    def suspend(self) -> None:
        self._suspended = True

    def resume(self) -> None:
        self._suspended = False

    def start(self, buffer: SampleBuffer) -> PlaybackHandle:
        pcm = encode_sample_buffer(buffer)
        frame_bytes = 2 * buffer.channels
        cursor = {"offset": 0}
        pyaudio = self._pyaudio

        def _callback(in_data, frame_count, time_info, status):  # noqa: ANN001 - PyAudio signature
            start = cursor["offset"]
            end = start + frame_count * frame_bytes
            chunk = pcm[start:end]
            cursor["offset"] = end
            if len(chunk) < frame_count * frame_bytes:
                chunk = chunk + b"\x00" * (frame_count * frame_bytes - len(chunk))
                return (chunk, pyaudio.paComplete)
            return (chunk, pyaudio.paContinue)

        stream = self._audio.open(
            format=pyaudio.paInt16,
            channels=buffer.channels,
            rate=buffer.sample_rate,
            output=True,
            stream_callback=_callback,
        )
        stream.start_stream()
        return _PyAudioClip(stream)

    def close(self) -> None:
        self._audio.terminate()


__all__ = [
    "AudioOutput",
    "DeviceFactory",
    "OutputDevice",
    "PlaybackHandle",
    "PyAudioOutputDevice",
]
