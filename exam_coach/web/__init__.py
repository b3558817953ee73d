"""Web interface for Exam Coach."""

from .server import create_app

__all__ = ["create_app"]
