"""Polling worker."""

from scheduler_service.worker.loop import WorkerLoop, WorkerState

__all__ = ["WorkerLoop", "WorkerState"]
