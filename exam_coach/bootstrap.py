"""Bootstrap logic that prepares runtime directories."""

from __future__ import annotations

import logging
import shutil
from pathlib import Path

from . import config as config_module
from .config import AppConfig, load_config

LOGGER = logging.getLogger(__name__)


class BootstrapError(RuntimeError):
    """Raised when initialization cannot be completed."""


class Bootstrapper:
    """High level object orchestrating initialization steps."""

    def __init__(self, config: AppConfig) -> None:
        self._config = config

    @property
    def config(self) -> AppConfig:
        return self._config

    def initialize(self) -> None:
        """Run all bootstrap tasks."""

        LOGGER.debug("Starting bootstrap sequence")
        self._ensure_directories()
        self._clear_generated_media()
        if not self._config.generation.api_key:
            LOGGER.warning(
                "No Gemini API key found; set GEMINI_API_KEY before generating study material."
            )
        LOGGER.info("Bootstrap completed successfully")

    def _ensure_directories(self) -> None:
        for label, path in (
            ("storage", self._config.storage_root),
            ("media", self._config.media_root),
        ):
            if not config_module._ensure_writable_directory(path):
                raise BootstrapError(f"The {label} directory '{path}' is not writable.")
            LOGGER.debug("Ensured directory exists: %s", path)

    def _clear_generated_media(self) -> None:
        # Generated artifacts belong to a single session; nothing survives a restart.
        media_root = self._config.media_root
        for child in media_root.iterdir():
            try:
                if child.is_dir():
                    shutil.rmtree(child)
                else:
                    child.unlink()
            except OSError as error:  # pragma: no cover - best effort cleanup
                LOGGER.warning("Could not remove generated media %s: %s", child, error)
        LOGGER.debug("Cleared media directory: %s", media_root)


def initialize_app(config_path: Path | None = None) -> AppConfig:
    """Convenience helper that loads configuration and runs initialization."""

    config = load_config(config_path=config_path)
    bootstrapper = Bootstrapper(config)
    bootstrapper.initialize()
    return config


__all__ = ["BootstrapError", "Bootstrapper", "initialize_app"]
