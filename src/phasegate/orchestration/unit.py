"""Units of work and their results.

Manifesto:
    A phase never performs work itself; it submits named units to a
    :class:`~phasegate.orchestration.invoker.TaskInvoker` and receives a
    uniform envelope back.  ``UnitResult`` is that envelope: a tagged union
    of ``Success(output)`` and ``Failure(kind, message)`` so the executor
    can decide hard-fail vs soft-fail without inspecting payloads.

ARCHITECTURE
────────────
::

    UnitOfWork (frozen)
      ├── name            ── task name the invoker dispatches on
      ├── payload         ── opaque input (JSON-like)
      ├── output_shape    ── opaque expected-output schema
      └── correlation_id  ── generated, used for logs and idempotency

    UnitResult
      ├── .success(output)             → Success
      ├── .failure(kind, message)      → Failure
      └── .cancelled(unit)             → Failure(CANCELLED)

    FailureKind ── VALIDATION, EXECUTION, CANCELLED, GATE_REJECTED

Example::

    unit = UnitOfWork(name="analyze-workload", payload={"services": ["api"]})
    result = UnitResult.success({"patterns": ["bursty"]})
    if result.ok:
        patterns = result.output["patterns"]

Tags:
    phasegate, orchestration, unit-of-work, result, envelope
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class FailureKind(str, Enum):
    """Why a unit (or a phase, or a run) did not succeed."""

    VALIDATION = "VALIDATION"  # Malformed unit input/output
    EXECUTION = "EXECUTION"  # Collaborator-reported failure
    CANCELLED = "CANCELLED"  # Run cancelled before the unit was dispatched
    GATE_REJECTED = "GATE_REJECTED"  # Blocking breakpoint denied


@dataclass(frozen=True)
class UnitOfWork:
    """
    A named request submitted to the task invoker.

    Attributes:
        name: Task name the invoker dispatches on
        payload: Input payload, opaque to the engine
        output_shape: Expected output description (e.g. a JSON schema)
        correlation_id: Identity used for logging and idempotency tracking
        labels: Free-form tags forwarded to the invoker
    """

    name: str
    payload: dict[str, Any] = field(default_factory=dict)
    output_shape: dict[str, Any] | None = None
    correlation_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    labels: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "name": self.name,
            "correlation_id": self.correlation_id,
            "payload": self.payload,
        }
        if self.output_shape is not None:
            result["output_shape"] = self.output_shape
        if self.labels:
            result["labels"] = list(self.labels)
        return result


@dataclass(frozen=True)
class UnitResult:
    """
    Tagged result of one unit of work.

    Prefer the :meth:`success` / :meth:`failure` factories.

    Attributes:
        ok: True for ``Success``, False for ``Failure``
        output: Typed output (successes only)
        kind: Failure kind (failures only)
        message: Human-readable failure message (failures only)
        unit: Name of the unit that produced the result
        correlation_id: Correlation id of that unit
    """

    ok: bool
    output: dict[str, Any] = field(default_factory=dict)
    kind: FailureKind | None = None
    message: str | None = None
    unit: str | None = None
    correlation_id: str | None = None

    def __post_init__(self):
        if self.ok and self.kind is not None:
            raise ValueError("A successful UnitResult cannot carry a failure kind")
        if not self.ok:
            if self.kind is None:
                object.__setattr__(self, "kind", FailureKind.EXECUTION)
            elif not isinstance(self.kind, FailureKind):
                object.__setattr__(self, "kind", FailureKind(self.kind))
            if not self.message:
                object.__setattr__(self, "message", "Unit failed without error message")

    # =========================================================================
    # Factories
    # =========================================================================

    @classmethod
    def success(
        cls,
        output: dict[str, Any] | None = None,
        *,
        unit: str | None = None,
        correlation_id: str | None = None,
    ) -> UnitResult:
        """Create a ``Success`` result."""
        return cls(ok=True, output=output or {}, unit=unit, correlation_id=correlation_id)

    @classmethod
    def failure(
        cls,
        kind: FailureKind | str,
        message: str,
        *,
        unit: str | None = None,
        correlation_id: str | None = None,
    ) -> UnitResult:
        """Create a ``Failure`` result."""
        return cls(
            ok=False,
            kind=FailureKind(kind),
            message=message,
            unit=unit,
            correlation_id=correlation_id,
        )

    @classmethod
    def cancelled(cls, unit: UnitOfWork) -> UnitResult:
        """Result recorded for a unit that was never dispatched."""
        return cls.failure(
            FailureKind.CANCELLED,
            f"Run cancelled before unit '{unit.name}' was dispatched",
            unit=unit.name,
            correlation_id=unit.correlation_id,
        )

    def for_unit(self, unit: UnitOfWork) -> UnitResult:
        """Return a copy stamped with ``unit``'s name and correlation id."""
        return UnitResult(
            ok=self.ok,
            output=self.output,
            kind=self.kind,
            message=self.message,
            unit=unit.name,
            correlation_id=unit.correlation_id,
        )

    @property
    def failed(self) -> bool:
        return not self.ok

    def to_dict(self) -> dict[str, Any]:
        """Serialize for journals/reports."""
        result: dict[str, Any] = {"ok": self.ok}
        if self.unit:
            result["unit"] = self.unit
        if self.correlation_id:
            result["correlation_id"] = self.correlation_id
        if self.ok:
            result["output"] = self.output
        else:
            result["kind"] = self.kind.value if self.kind else None
            result["message"] = self.message
        return result

    def __repr__(self) -> str:
        if self.ok:
            return f"Success({self.unit!r}, output_keys={list(self.output.keys())})"
        kind = self.kind.value if self.kind else None
        return f"Failure({self.unit!r}, {kind}, {self.message!r})"


def Success(output: dict[str, Any] | None = None, **kwargs: Any) -> UnitResult:  # noqa: N802
    """Shorthand for :meth:`UnitResult.success`."""
    return UnitResult.success(output, **kwargs)


def Failure(kind: FailureKind | str, message: str, **kwargs: Any) -> UnitResult:  # noqa: N802
    """Shorthand for :meth:`UnitResult.failure`."""
    return UnitResult.failure(kind, message, **kwargs)
