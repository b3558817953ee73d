"""Structured log events for provider calls, audio devices and the web UI.

Every event is a single log line ``[KIND] message (key=value, ...)``; the same
details are attached to the record under ``event_*`` attributes so handlers can
pick them up without parsing the message.
"""

from __future__ import annotations

import logging
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Mapping, Optional


DEFAULT_EVENT_LOGGER = logging.getLogger("exam_coach.events")

_MAX_VALUE_LENGTH = 200


class EventKind(str, Enum):
    GENERATION = "GENERATION"
    DEVICE = "DEVICE"
    APP = "APP_EVENT"


def _render_value(value: Any) -> Any:
    if value is None or isinstance(value, (bool, int)):
        return value
    if isinstance(value, float):
        return round(value, 3)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (bytes, bytearray)):
        return f"<{len(value)} bytes>"
    if isinstance(value, Path):
        text = str(value)
    elif isinstance(value, (list, tuple, set)):
        text = ", ".join(str(item) for item in value)
    else:
        text = str(value)
    text = text.strip()
    if len(text) > _MAX_VALUE_LENGTH:
        text = text[:_MAX_VALUE_LENGTH] + "…"
    return text or None


def _clean(values: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    cleaned: Dict[str, Any] = {}
    for key, raw in (values or {}).items():
        value = _render_value(raw)
        if key and value is not None:
            cleaned[str(key)] = value
    return cleaned


def emit_structured_event(
    event_type: EventKind | str,
    message: str,
    *,
    payload: Optional[Mapping[str, Any]] = None,
    context: Optional[Mapping[str, Any]] = None,
    correlation: Optional[Mapping[str, Any]] = None,
    duration_ms: Optional[float] = None,
    level: int = logging.INFO,
    logger: logging.Logger | logging.LoggerAdapter = DEFAULT_EVENT_LOGGER,
) -> None:
    kind = event_type.value if isinstance(event_type, EventKind) else str(event_type)
    details = {**_clean(correlation), **_clean(context), **_clean(payload)}
    if duration_ms is not None:
        details["duration_ms"] = round(float(duration_ms), 1)

    text = f"[{kind}] {str(message).strip()}" if kind else str(message).strip()
    if details:
        text = f"{text} ({', '.join(f'{key}={value}' for key, value in details.items())})"
    logger.log(
        level,
        text,
        extra={"event_kind": kind, "event_message": str(message).strip(), "event_details": details},
    )


def emit_generation_event(operation: str, **kwargs: Any) -> None:
    """Log one provider call: its outcome, duration and request metadata."""

    emit_structured_event(EventKind.GENERATION, operation, **kwargs)


def emit_device_event(action: str, **kwargs: Any) -> None:
    emit_structured_event(EventKind.DEVICE, action, **kwargs)


__all__ = [
    "DEFAULT_EVENT_LOGGER",
    "EventKind",
    "emit_device_event",
    "emit_generation_event",
    "emit_structured_event",
]
