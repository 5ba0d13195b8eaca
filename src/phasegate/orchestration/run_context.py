"""
Run Context - identity, clock, logger and cancellation for one execution.

A ``RunContext`` is created once per run (by the executor, or by the caller
when it needs a handle to cancel the run from another thread).  Its identity
is immutable; the only mutable part is the cancellation flag.

Design Principles:
- Immutable identity: ``run_id`` and ``process`` never change
- Cooperative cancellation: a ``threading.Event`` checked between phases and
  between fan-out dispatches; in-flight units are never killed
- Correlated logging: ``ctx.logger`` is bound with ``run_id`` and ``process``

Example:
    ctx = RunContext.create("auto-scaling")
    threading.Timer(30, ctx.cancel, kwargs={"reason": "deadline"}).start()
    outcome = PhaseExecutor(invoker).run(definition, params, context=ctx)
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from phasegate.core.logging import get_logger
from phasegate.core.timestamps import generate_run_id, utc_now


@dataclass(eq=False)
class RunContext:
    """
    Per-run identity and control surface.

    Attributes:
        run_id: Opaque identifier, unique per execution
        process: Name of the process definition being run
        clock: Wall-clock source (injectable for deterministic tests)
        started_at: Wall-clock start time
        started_monotonic: ``time.monotonic()`` at creation
        metadata: Caller-supplied metadata (e.g. who started the run)
    """

    run_id: str = field(default_factory=generate_run_id)
    process: str = ""
    clock: Callable[[], datetime] = utc_now
    started_at: datetime | None = None
    started_monotonic: float = field(default_factory=time.monotonic)
    metadata: dict[str, Any] = field(default_factory=dict)
    _cancel_event: threading.Event = field(default_factory=threading.Event, repr=False)
    _cancel_reason: str | None = field(default=None, repr=False)

    def __post_init__(self):
        if self.started_at is None:
            self.started_at = self.clock()
        self.logger = get_logger("phasegate.run").bind(run_id=self.run_id, process=self.process)

    @classmethod
    def create(
        cls,
        process: str,
        *,
        run_id: str | None = None,
        clock: Callable[[], datetime] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> RunContext:
        """Create a context for a new run of ``process``."""
        return cls(
            run_id=run_id or generate_run_id(),
            process=process,
            clock=clock or utc_now,
            metadata=dict(metadata or {}),
        )

    # =========================================================================
    # Cancellation
    # =========================================================================

    def cancel(self, reason: str = "cancelled") -> None:
        """Request cooperative cancellation. Safe to call from any thread."""
        if not self._cancel_event.is_set():
            self._cancel_reason = reason
            self._cancel_event.set()
            self.logger.warning("run.cancel_requested", reason=reason)

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    @property
    def cancel_reason(self) -> str | None:
        return self._cancel_reason

    # =========================================================================
    # Clock
    # =========================================================================

    def now(self) -> datetime:
        return self.clock()

    @property
    def elapsed_seconds(self) -> float:
        """Monotonic seconds since the context was created."""
        return time.monotonic() - self.started_monotonic

    def __repr__(self) -> str:
        return f"RunContext(run_id={self.run_id!r}, process={self.process!r}, cancelled={self.cancelled})"
