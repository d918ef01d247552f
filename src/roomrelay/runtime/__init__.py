"""Container runtimes that host relay workers."""

from .api import RuntimeUnavailable, WorkerConflict, WorkerRuntime

__all__ = ["RuntimeUnavailable", "WorkerConflict", "WorkerRuntime"]
