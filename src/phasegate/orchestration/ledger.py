"""Artifact ledger — append-only record of everything a run emitted.

Phases emit artifacts (reports, manifests, generated configs) as opaque
records.  The ledger never interprets, validates or de-duplicates them; it
only preserves insertion order so the run report and later gate snapshots
list them exactly as they were produced.
"""

from __future__ import annotations

import threading
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass
from typing import Any

from phasegate.core.errors import ValidationError


@dataclass(frozen=True)
class Artifact:
    """
    An opaque output record.

    Attributes:
        path: Where the artifact lives (or would live)
        format: Free-form format tag (``json``, ``markdown``, ``yaml`` ...)
        label: Human-readable label
        content: Inline content, if any
        reference: External reference (URL, object key), if any
        phase: Name of the phase that emitted it
    """

    path: str
    format: str = "json"
    label: str = ""
    content: Any = None
    reference: str | None = None
    phase: str | None = None

    @classmethod
    def from_value(cls, value: Artifact | Mapping[str, Any], phase: str | None = None) -> Artifact:
        """Coerce a unit's artifact entry into an ``Artifact``.

        Accepts an ``Artifact`` or a mapping with at least ``path``.
        """
        if isinstance(value, Artifact):
            if phase and value.phase is None:
                return cls(value.path, value.format, value.label, value.content, value.reference, phase)
            return value
        if not isinstance(value, Mapping) or not value.get("path"):
            raise ValidationError("Artifact entries must be mappings with a 'path'", field="artifacts", value=value)
        return cls(
            path=str(value["path"]),
            format=str(value.get("format") or "json"),
            label=str(value.get("label") or ""),
            content=value.get("content"),
            reference=value.get("reference"),
            phase=phase,
        )

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"path": self.path, "format": self.format, "label": self.label}
        if self.content is not None:
            result["content"] = self.content
        if self.reference is not None:
            result["reference"] = self.reference
        if self.phase is not None:
            result["phase"] = self.phase
        return result


class ArtifactLedger:
    """Append-only, insertion-ordered collection of :class:`Artifact`."""

    def __init__(self) -> None:
        self._items: list[Artifact] = []
        self._lock = threading.Lock()

    def append(self, artifact: Artifact) -> None:
        with self._lock:
            self._items.append(artifact)

    def extend(self, artifacts: Iterable[Artifact]) -> None:
        with self._lock:
            self._items.extend(artifacts)

    def snapshot(self) -> tuple[Artifact, ...]:
        """Return the artifacts recorded so far, in insertion order."""
        with self._lock:
            return tuple(self._items)

    def for_phase(self, phase: str) -> list[Artifact]:
        return [a for a in self.snapshot() if a.phase == phase]

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[Artifact]:
        return iter(self.snapshot())

    def to_list(self) -> list[dict[str, Any]]:
        return [a.to_dict() for a in self.snapshot()]
