"""Configuration loading utilities for the Exam Coach application."""

from __future__ import annotations

import contextlib
import json
import logging
import os
from dataclasses import dataclass, field
from importlib import resources
from pathlib import Path
from typing import Any, Dict, Iterable, Literal, Mapping, Optional, Tuple


LOGGER = logging.getLogger(__name__)


_PERMISSION_SENTINEL = ".exam_coach_write_check"
_DEFAULTS_RESOURCE = "defaults.json"

API_KEY_ENV_VARS: Tuple[str, ...] = ("GEMINI_API_KEY", "API_KEY")

OverlapPolicy = Literal["overlap", "interrupt", "reject"]
_OVERLAP_POLICIES: Tuple[str, ...] = ("overlap", "interrupt", "reject")


def _ensure_writable_directory(path: Path) -> bool:
    """Return ``True`` if *path* can be created and written to."""

    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError:
        return False

    test_file = path / _PERMISSION_SENTINEL
    try:
        with test_file.open("w", encoding="utf-8") as handle:
            handle.write("ok")
    except OSError:
        return False
    finally:
        with contextlib.suppress(OSError):
            test_file.unlink()

    return True


def _select_writable_directory(
    preferred: Path,
    *,
    label: str,
    fallbacks: Iterable[Path] = (),
) -> Tuple[Path, bool]:
    """Return a usable directory based on ``preferred`` and ``fallbacks``.

    The first writable candidate wins, together with a flag telling whether a
    fallback was used. When nothing can be prepared the original ``preferred``
    path is returned so that the bootstrapper can report the failure.
    """

    preferred = preferred.resolve()
    if _ensure_writable_directory(preferred):
        return preferred, False

    for fallback in fallbacks:
        candidate = fallback.resolve()
        if candidate == preferred:
            continue
        if _ensure_writable_directory(candidate):
            LOGGER.warning(
                "Preferred %s directory '%s' is not writable; using fallback '%s'.",
                label,
                preferred,
                candidate,
            )
            return candidate, True

    LOGGER.warning(
        "%s directory '%s' is not writable and no fallback is available.",
        label.capitalize(),
        preferred,
    )
    return preferred, False


def resolve_api_key(environ: Optional[Mapping[str, str]] = None) -> str:
    """Return the provider credential from the process environment."""

    source = os.environ if environ is None else environ
    for name in API_KEY_ENV_VARS:
        value = (source.get(name) or "").strip()
        if value:
            return value
    return ""


@dataclass(frozen=True)
class GenerationSettings:
    """Models and sampling options used for each provider call."""

    api_key: str = ""
    text_model: str = "gemini-2.5-flash"
    speech_model: str = "gemini-2.5-flash-preview-tts"
    image_model: str = "gemini-2.5-flash-image"
    video_model: str = "veo-3.1-fast-generate-preview"
    voice_name: str = "Kore"
    temperature: float = 0.3
    image_aspect_ratio: str = "16:9"
    video_resolution: str = "720p"
    video_poll_interval: float = 5.0
    video_timeout: float = 600.0
    download_timeout: float = 120.0


@dataclass(frozen=True)
class PlaybackSettings:
    sample_rate: int = 24_000
    channels: int = 1
    overlap_policy: OverlapPolicy = "overlap"
    max_overlapping: int = 4


@dataclass(frozen=True)
class CaptureSettings:
    sample_rate: int = 16_000
    channels: int = 1
    frames_per_buffer: int = 1_024


_ENV_OVERRIDES: Dict[str, str] = {
    "text_model": "EXAM_COACH_TEXT_MODEL",
    "speech_model": "EXAM_COACH_SPEECH_MODEL",
    "image_model": "EXAM_COACH_IMAGE_MODEL",
    "video_model": "EXAM_COACH_VIDEO_MODEL",
    "voice_name": "EXAM_COACH_VOICE",
}


def _build_generation_settings(
    mapping: Mapping[str, Any], environ: Optional[Mapping[str, str]]
) -> GenerationSettings:
    source = os.environ if environ is None else environ
    values: Dict[str, Any] = {}
    defaults = GenerationSettings()
    for name in GenerationSettings.__dataclass_fields__:
        if name == "api_key":
            continue
        if name in mapping:
            values[name] = type(getattr(defaults, name))(mapping[name])
    for name, variable in _ENV_OVERRIDES.items():
        override = (source.get(variable) or "").strip()
        if override:
            values[name] = override
    return GenerationSettings(api_key=resolve_api_key(source), **values)


def _build_playback_settings(mapping: Mapping[str, Any]) -> PlaybackSettings:
    policy = str(mapping.get("overlap_policy", "overlap")).strip().lower()
    if policy not in _OVERLAP_POLICIES:
        LOGGER.warning("Unknown playback overlap policy '%s'; using 'overlap'.", policy)
        policy = "overlap"
    return PlaybackSettings(
        sample_rate=int(mapping.get("sample_rate", 24_000)),
        channels=int(mapping.get("channels", 1)),
        overlap_policy=policy,  # type: ignore[arg-type]
        max_overlapping=max(int(mapping.get("max_overlapping", 4)), 1),
    )


def _build_capture_settings(mapping: Mapping[str, Any]) -> CaptureSettings:
    return CaptureSettings(
        sample_rate=int(mapping.get("sample_rate", 16_000)),
        channels=int(mapping.get("channels", 1)),
        frames_per_buffer=int(mapping.get("frames_per_buffer", 1_024)),
    )


@dataclass(frozen=True)
class AppConfig:
    """Runtime paths and provider options for the application."""

    storage_root: Path
    media_root: Path
    generation: GenerationSettings = field(default_factory=GenerationSettings)
    playback: PlaybackSettings = field(default_factory=PlaybackSettings)
    capture: CaptureSettings = field(default_factory=CaptureSettings)

    @classmethod
    def from_mapping(
        cls,
        mapping: Dict[str, Any],
        *,
        base_path: Path,
        environ: Optional[Mapping[str, str]] = None,
    ) -> "AppConfig":
        preferred_storage = (base_path / mapping["storage_root"]).resolve()
        storage_fallback = Path.home() / ".exam_coach" / "storage"
        storage_root, _ = _select_writable_directory(
            preferred_storage,
            label="storage",
            fallbacks=(storage_fallback,),
        )

        media_setting = mapping.get("media_root")
        if media_setting:
            preferred_media = (base_path / media_setting).resolve()
        else:
            preferred_media = storage_root / "media"
        media_root, _ = _select_writable_directory(
            preferred_media,
            label="media",
            fallbacks=(storage_root / "_media",),
        )

        return cls(
            storage_root=storage_root,
            media_root=media_root,
            generation=_build_generation_settings(mapping.get("generation", {}), environ),
            playback=_build_playback_settings(mapping.get("playback", {})),
            capture=_build_capture_settings(mapping.get("capture", {})),
        )


def load_config(config_path: Path | None = None) -> AppConfig:
    """Load the application configuration.

    Without *config_path* the defaults bundled with the package are used and
    relative paths resolve under ``~/.exam_coach``. Relative paths in an
    explicit file resolve against that file's directory.
    """

    if config_path is None:
        raw_text = resources.files("exam_coach").joinpath(_DEFAULTS_RESOURCE).read_text(encoding="utf-8")
        base_path = Path.home() / ".exam_coach"
    else:
        config_path = config_path.expanduser()
        raw_text = config_path.read_text(encoding="utf-8")
        base_path = config_path.resolve().parent

    return AppConfig.from_mapping(json.loads(raw_text), base_path=base_path)


__all__ = [
    "AppConfig",
    "CaptureSettings",
    "GenerationSettings",
    "OverlapPolicy",
    "PlaybackSettings",
    "load_config",
    "resolve_api_key",
]
