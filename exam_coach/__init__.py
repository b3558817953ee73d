"""Exam Coach: generated study packages for exam topics."""

__version__ = "0.1.0"
