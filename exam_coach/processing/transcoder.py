"""Conversions between base64 text, 16-bit PCM bytes and sample buffers."""

from __future__ import annotations

import base64
import binascii
import io
import wave
from dataclasses import dataclass
from typing import Tuple

import numpy as np

from ..errors import ErrorKind, TranscodeError


DEFAULT_SAMPLE_RATE = 24_000
DEFAULT_CHANNELS = 1

_PCM_SCALE = 32_768.0
_SAMPLE_WIDTH = 2


@dataclass(frozen=True)
class SampleBuffer:
    """Playable audio: ``float32`` samples shaped ``(channels, frames)``."""

    samples: np.ndarray
    sample_rate: int

    @property
    def channels(self) -> int:
        return int(self.samples.shape[0])

    @property
    def frame_count(self) -> int:
        return int(self.samples.shape[1])

    @property
    def duration(self) -> float:
        if self.sample_rate <= 0:
            return 0.0
        return self.frame_count / float(self.sample_rate)

    def interleaved(self) -> np.ndarray:
        """Return samples as a ``(frames, channels)`` array."""

        return np.ascontiguousarray(self.samples.T)


def decode_base64_to_bytes(payload: str | bytes) -> bytes:
    """Decode standard base64 text, rejecting malformed input."""

    if isinstance(payload, str):
        try:
            payload = payload.strip().encode("ascii")
        except UnicodeEncodeError as error:
            raise TranscodeError(ErrorKind.INVALID_ENCODING, "Base64 payload is not ASCII") from error
    try:
        return base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as error:
        raise TranscodeError(ErrorKind.INVALID_ENCODING, f"Invalid base64 payload: {error}") from error


def pcm_bytes_to_sample_buffer(
    data: bytes,
    sample_rate: int = DEFAULT_SAMPLE_RATE,
    channels: int = DEFAULT_CHANNELS,
) -> SampleBuffer:
    """Interpret *data* as signed 16-bit little-endian PCM.

    Samples are de-interleaved per channel and scaled by ``1/32768`` so every
    value lies in ``[-1.0, 1.0)``. A trailing partial frame is dropped.
    """

    if channels <= 0:
        raise ValueError("channels must be positive")
    if sample_rate <= 0:
        raise ValueError("sample_rate must be positive")

    frame_bytes = _SAMPLE_WIDTH * channels
    frame_count = len(data) // frame_bytes
    usable = memoryview(data)[: frame_count * frame_bytes]
    ints = np.frombuffer(usable, dtype="<i2")
    samples = ints.astype(np.float32) / np.float32(_PCM_SCALE)
    samples = samples.reshape(frame_count, channels).T
    return SampleBuffer(samples=np.ascontiguousarray(samples), sample_rate=sample_rate)


def encode_sample_buffer(buffer: SampleBuffer) -> bytes:
    """Return interleaved 16-bit little-endian PCM for *buffer*."""

    interleaved = buffer.interleaved().astype(np.float64)
    scaled = np.round(interleaved * _PCM_SCALE)
    clipped = np.clip(scaled, -32_768, 32_767)
    return clipped.astype("<i2").tobytes()


def sample_buffer_to_wav_bytes(buffer: SampleBuffer) -> bytes:
    """Wrap *buffer* in a 16-bit PCM WAV container."""

    stream = io.BytesIO()
    with wave.open(stream, "wb") as handle:
        handle.setnchannels(buffer.channels)
        handle.setsampwidth(_SAMPLE_WIDTH)
        handle.setframerate(buffer.sample_rate)
        handle.writeframes(encode_sample_buffer(buffer))
    return stream.getvalue()


def _summarise_buffer(buffer: SampleBuffer) -> Tuple[int, int, np.ndarray]:
    flattened = np.asarray(buffer.samples, dtype=np.float32).reshape(-1)
    return buffer.frame_count, buffer.channels, flattened


def describe_sample_buffer(buffer: SampleBuffer) -> str:
    """Return a human-readable summary of *buffer* for debug logging."""

    frames, channels, flattened = _summarise_buffer(buffer)
    if flattened.size:
        abs_peak = float(np.max(np.abs(flattened)))
        rms = float(np.sqrt(np.mean(np.square(flattened))))
        clipped = int(np.count_nonzero(np.abs(flattened) >= 0.999))
    else:
        abs_peak = rms = 0.0
        clipped = 0

    return (
        "sample_rate={rate}Hz, channels={channels}, frames={frames}, duration={duration:.3f}s, "
        "abs_peak={abs_peak:.4f}, rms={rms:.4f}, clipped_samples={clipped}/{total}"
    ).format(
        rate=buffer.sample_rate,
        channels=channels,
        frames=frames,
        duration=buffer.duration,
        abs_peak=abs_peak,
        rms=rms,
        clipped=clipped,
        total=flattened.size,
    )


__all__ = [
    "DEFAULT_CHANNELS",
    "DEFAULT_SAMPLE_RATE",
    "SampleBuffer",
    "decode_base64_to_bytes",
    "describe_sample_buffer",
    "encode_sample_buffer",
    "pcm_bytes_to_sample_buffer",
    "sample_buffer_to_wav_bytes",
]
