"""Run journal — ordered record of everything that happened during a run.

Every run appends events (``run.started``, ``phase.started``,
``unit.completed``, ``breakpoint.requested`` ...) with a sequence number and
a timestamp.  The journal is returned on the ``RunOutcome`` and can be
mirrored to a JSON-lines file so a run can be audited after the process
has exited.

Architecture::

    RunJournal(run_id, clock, path=None)
    ├── record(type, **data) → JournalEvent(seq, type, at, data)
    ├── events / of_type(type)
    ├── to_list() / to_json()
    └── path → <journal_dir>/<run_id>.jsonl (one event per line, appended)
"""

from __future__ import annotations

import json
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from phasegate.core.timestamps import utc_now

RUN_STARTED = "run.started"
PHASE_STARTED = "phase.started"
PHASE_SKIPPED = "phase.skipped"
UNIT_COMPLETED = "unit.completed"
PHASE_COMPLETED = "phase.completed"
PHASE_FAILED = "phase.failed"
BREAKPOINT_REQUESTED = "breakpoint.requested"
BREAKPOINT_RESOLVED = "breakpoint.resolved"
RUN_FINISHED = "run.finished"


@dataclass(frozen=True)
class JournalEvent:
    """One journal entry."""

    seq: int
    type: str
    at: datetime
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"seq": self.seq, "type": self.type, "at": self.at.isoformat(), "data": self.data}


class RunJournal:
    """Append-only event list for one run, optionally mirrored to disk."""

    def __init__(
        self,
        run_id: str,
        *,
        clock: Callable[[], datetime] = utc_now,
        directory: Path | str | None = None,
    ) -> None:
        self.run_id = run_id
        self._clock = clock
        self._events: list[JournalEvent] = []
        self._lock = threading.Lock()
        self.path: Path | None = None
        if directory is not None:
            root = Path(directory)
            root.mkdir(parents=True, exist_ok=True)
            self.path = root / f"{run_id}.jsonl"

    def record(self, type: str, **data: Any) -> JournalEvent:
        with self._lock:
            event = JournalEvent(seq=len(self._events) + 1, type=type, at=self._clock(), data=data)
            self._events.append(event)
            if self.path is not None:
                with self.path.open("a", encoding="utf-8") as fh:
                    fh.write(json.dumps(event.to_dict(), default=str) + "\n")
        return event

    @property
    def events(self) -> tuple[JournalEvent, ...]:
        with self._lock:
            return tuple(self._events)

    def of_type(self, type: str) -> list[JournalEvent]:
        return [e for e in self.events if e.type == type]

    def types(self) -> list[str]:
        return [e.type for e in self.events]

    def to_list(self) -> list[dict[str, Any]]:
        return [e.to_dict() for e in self.events]

    def to_json(self, indent: int | None = None) -> str:
        return json.dumps(self.to_list(), indent=indent, default=str)

    def __len__(self) -> int:
        return len(self._events)

    @staticmethod
    def read(path: Path | str) -> list[dict[str, Any]]:
        """Load a JSON-lines journal written by a previous run."""
        with Path(path).open(encoding="utf-8") as fh:
            return [json.loads(line) for line in fh if line.strip()]
