"""Engine-scoped audit logging."""

from __future__ import annotations

import itertools
import threading
import time
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any
from uuid import uuid4

from invoice_memory.models import AuditOperation, AuditStep

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping


def uuid_ids(prefix: str) -> str:
    """Default id factory: prefix plus a random hex suffix."""
    return f"{prefix}-{uuid4().hex}"


class SequentialIds:
    """Deterministic id factory backed by a monotonic counter."""

    def __init__(self, start: int = 1) -> None:
        self._counter = itertools.count(start)
        self._lock = threading.Lock()

    def __call__(self, prefix: str) -> str:
        with self._lock:
            n = next(self._counter)
        return f"{prefix}-{n:06d}"


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


class AuditLog:
    """Append-only log of the steps one engine instance performed.

    Timestamps are forced to be non-decreasing even if the clock steps
    backwards. The log is reset with ``clear()`` or ``drain()`` at
    pipeline-run boundaries.
    """

    def __init__(
        self,
        actor: str,
        *,
        id_factory: Callable[[str], str] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.actor = actor
        self.id_factory = id_factory or uuid_ids
        self.clock = clock or utc_now
        self._steps: list[AuditStep] = []
        self._last: datetime | None = None
        self._lock = threading.RLock()

    def now(self) -> datetime:
        with self._lock:
            ts = self.clock()
            if self._last is not None and ts < self._last:
                ts = self._last
            self._last = ts
            return ts

    def record(
        self,
        operation: AuditOperation,
        description: str,
        *,
        input: Mapping[str, Any] | None = None,  # noqa: A002
        output: Mapping[str, Any] | None = None,
        started: float | None = None,
        prefix: str | None = None,
    ) -> AuditStep:
        """Append a step and return it.

        ``started`` is a ``time.perf_counter()`` reading; the duration is
        reported in milliseconds.
        """
        duration = 0.0
        if started is not None:
            duration = max(0.0, (time.perf_counter() - started) * 1000.0)
        with self._lock:
            step = AuditStep(
                id=self.id_factory(prefix or operation.value),
                timestamp=self.now(),
                operation=operation,
                description=description,
                input=dict(input or {}),
                output=dict(output or {}),
                actor=self.actor,
                duration=duration,
            )
            self._steps.append(step)
        return step

    def mark(self) -> int:
        """Position marker for ``since()``."""
        with self._lock:
            return len(self._steps)

    def since(self, marker: int) -> list[AuditStep]:
        with self._lock:
            return list(self._steps[marker:])

    def steps(self) -> list[AuditStep]:
        with self._lock:
            return list(self._steps)

    def clear(self) -> None:
        with self._lock:
            self._steps = []

    def drain(self) -> list[AuditStep]:
        """Return every buffered step and empty the log in one operation."""
        with self._lock:
            steps, self._steps = self._steps, []
        return steps

    def __len__(self) -> int:
        with self._lock:
            return len(self._steps)
