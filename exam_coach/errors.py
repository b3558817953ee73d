"""Error taxonomy shared by the gateway, capture and transcoding layers."""

from __future__ import annotations

from enum import Enum
from typing import Dict


class ErrorKind(str, Enum):
    PERMISSION_DENIED = "permission_denied"
    PROVIDER_UNAVAILABLE = "provider_unavailable"
    MALFORMED_RESPONSE = "malformed_response"
    NO_AUDIO_RETURNED = "no_audio_returned"
    NO_IMAGE_RETURNED = "no_image_returned"
    NO_VIDEO_LINK = "no_video_link"
    DOWNLOAD_FAILED = "download_failed"
    VIDEO_TIMED_OUT = "video_timed_out"
    INVALID_ENCODING = "invalid_encoding"
    INVALID_STATE = "invalid_state"


class ExamCoachError(RuntimeError):
    """Base class for failures scoped to a single user action."""

    def __init__(self, kind: ErrorKind, message: str = "") -> None:
        super().__init__(message or kind.value)
        self.kind = kind
        self.message = message or kind.value

    def __repr__(self) -> str:
        return f"{type(self).__name__}(kind={self.kind.value!r}, message={self.message!r})"


class GenerationError(ExamCoachError):
    """Raised when a call to the generation provider fails."""


class CaptureError(ExamCoachError):
    """Raised when the microphone cannot be used."""


class TranscodeError(ExamCoachError):
    """Raised when audio payloads cannot be decoded."""


_USER_MESSAGES: Dict[ErrorKind, str] = {
    ErrorKind.PERMISSION_DENIED: "无法访问麦克风，请检查权限设置后重试。",
    ErrorKind.PROVIDER_UNAVAILABLE: "AI 服务暂时不可用，请稍后重试。",
    ErrorKind.MALFORMED_RESPONSE: "AI 返回的内容格式不正确，请重新提交。",
    ErrorKind.NO_AUDIO_RETURNED: "语音生成失败：没有返回音频数据。",
    ErrorKind.NO_IMAGE_RETURNED: "图片生成失败：没有返回图片数据。",
    ErrorKind.NO_VIDEO_LINK: "视频生成未能返回下载链接。",
    ErrorKind.DOWNLOAD_FAILED: "无法下载生成的视频。",
    ErrorKind.VIDEO_TIMED_OUT: "视频生成超时，请稍后重试。",
    ErrorKind.INVALID_ENCODING: "音频数据编码无效。",
    ErrorKind.INVALID_STATE: "当前录音状态不允许此操作。",
}


def user_message(error: ExamCoachError) -> str:
    """Return the user-facing message for *error*."""

    return _USER_MESSAGES.get(error.kind, "出错了，请重试。")


__all__ = [
    "CaptureError",
    "ErrorKind",
    "ExamCoachError",
    "GenerationError",
    "TranscodeError",
    "user_message",
]
