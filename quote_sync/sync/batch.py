"""
Batch state machine.

    PENDING -> DISPATCHED -> SUCCEEDED
                          -> RETRYING -> DISPATCHED ...
                          -> FAILED

A batch is an ephemeral group of symbols handed to one dispatch run. The
pipeline moves it between states; the request queue reads the outcome and
decides what to schedule. Batches are never persisted.
"""
from __future__ import annotations

import enum
import itertools
from dataclasses import dataclass, field
from typing import List, Optional, Set

from ..providers.base import ErrorKind

_batch_ids = itertools.count(1)


class BatchState(enum.Enum):
    PENDING = "PENDING"
    DISPATCHED = "DISPATCHED"
    SUCCEEDED = "SUCCEEDED"
    RETRYING = "RETRYING"
    FAILED = "FAILED"


_ALLOWED = {
    BatchState.PENDING: {BatchState.DISPATCHED},
    BatchState.DISPATCHED: {BatchState.SUCCEEDED, BatchState.RETRYING, BatchState.FAILED},
    BatchState.RETRYING: {BatchState.DISPATCHED},
    BatchState.SUCCEEDED: set(),
    BatchState.FAILED: set(),
}


class InvalidTransition(RuntimeError):
    pass


@dataclass
class Batch:
    """Symbols dispatched together, with retry bookkeeping."""

    symbols: List[str]
    batch_id: int = field(default_factory=lambda: next(_batch_ids))
    state: BatchState = BatchState.PENDING
    attempt: int = 0
    retry_in: Optional[float] = None
    last_error: Optional[str] = None
    last_error_kind: Optional[ErrorKind] = None
    provider_name: Optional[str] = None
    succeeded: Set[str] = field(default_factory=set)
    failed: Set[str] = field(default_factory=set)

    def _move(self, new_state: BatchState) -> None:
        if new_state not in _ALLOWED[self.state]:
            raise InvalidTransition(f"batch {self.batch_id}: {self.state.value} -> {new_state.value}")
        self.state = new_state

    def dispatch(self) -> None:
        """Start a run. Per-run outcome sets are cleared; the retry counter is kept."""
        self._move(BatchState.DISPATCHED)
        self.retry_in = None
        self.succeeded = set()
        self.failed = set()

    def succeed(self, symbols: Set[str]) -> None:
        """Record delivered symbols; the batch shrinks to what is still outstanding."""
        if not symbols:
            return
        self.succeeded |= symbols
        self.symbols = [s for s in self.symbols if s not in symbols]
        self.attempt = 0

    def finish(self) -> None:
        self._move(BatchState.SUCCEEDED)

    def record_attempt(self) -> int:
        """Count one failed run toward the retry cap and return the new count."""
        self.attempt += 1
        return self.attempt

    def retry(self, delay_s: float) -> None:
        self.retry_in = max(0.0, delay_s)
        self._move(BatchState.RETRYING)

    def fail(self) -> None:
        self.failed |= set(self.symbols)
        self._move(BatchState.FAILED)

    def note_error(self, kind: ErrorKind, message: str) -> None:
        self.last_error_kind = kind
        self.last_error = message[:500]

    @property
    def done(self) -> bool:
        return self.state in (BatchState.SUCCEEDED, BatchState.FAILED)
