"""
Scheduling core: debounced request queue, batch state machine, dispatch
pipeline and pending-state tracking.
"""

from __future__ import annotations

from .batch import Batch, BatchState, InvalidTransition
from .dispatch import DispatchPipeline
from .pending import PendingStateTracker
from .queue import RequestQueue
from .scheduler import AsyncioScheduler, Scheduler, TimerHandle

__all__ = [
    "Batch",
    "BatchState",
    "InvalidTransition",
    "DispatchPipeline",
    "PendingStateTracker",
    "RequestQueue",
    "AsyncioScheduler",
    "Scheduler",
    "TimerHandle",
]
