"""Support ticket workflow engine with realtime collaboration."""

__version__ = "0.1.0"
