"""Audio capture, transcoding and playback backends."""

from .capture import (
    AudioSource,
    CaptureState,
    PyAudioMicrophone,
    RecordedExplanation,
    RecordingController,
    encode_wav_blob,
)
from .playback import AudioOutput, OutputDevice, PyAudioOutputDevice
from .transcoder import (
    SampleBuffer,
    decode_base64_to_bytes,
    describe_sample_buffer,
    encode_sample_buffer,
    pcm_bytes_to_sample_buffer,
    sample_buffer_to_wav_bytes,
)

__all__ = [
    "AudioOutput",
    "AudioSource",
    "CaptureState",
    "OutputDevice",
    "PyAudioMicrophone",
    "PyAudioOutputDevice",
    "RecordedExplanation",
    "RecordingController",
    "SampleBuffer",
    "decode_base64_to_bytes",
    "describe_sample_buffer",
    "encode_sample_buffer",
    "encode_wav_blob",
    "pcm_bytes_to_sample_buffer",
    "sample_buffer_to_wav_bytes",
]
