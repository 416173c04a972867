"""Thread-pool task scheduling, I/O readiness dispatch, logging and servlet routing."""

__version__ = "0.1.0"
__all__ = ["formatter", "iomanager", "logger", "scheduler", "servlet", "sync"]