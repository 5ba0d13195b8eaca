"""
Run State - the append-only record of one workflow execution.

``RunState`` is owned by exactly one writer, the
:class:`~phasegate.orchestration.phase_executor.PhaseExecutor`, which commits
to it single-threaded after each phase (or fan-out batch) completes.
Everything else - activation predicates, gate predicates, unit payload
builders, report generation - only ever sees a :class:`RunStateView`: an
immutable, deep-copied snapshot.

Design Principles:
- Monotonic: phases only add entries; committing a phase twice is an error
- Snapshot reads: views never alias the live state, so units dispatched in a
  fan-out batch cannot observe each other or later phases
- No forward references: a view taken before phase N contains nothing from
  phase N or later, because nothing from them has been committed yet

Example:
    def needs_review(view: RunStateView) -> bool:
        return view.output("scan", "critical_count", 0) > 0
"""

from __future__ import annotations

import copy
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from functools import cached_property
from types import MappingProxyType
from typing import Any

from phasegate.core.errors import OrchestrationError
from phasegate.orchestration.ledger import Artifact, ArtifactLedger
from phasegate.orchestration.scoring import ScoreAggregator, ScoreComponent, clamp_score
from phasegate.orchestration.unit import FailureKind

_MISSING = object()


class PhaseStatus(str, Enum):
    """Terminal status of a phase within a run."""

    COMPLETED = "completed"
    SKIPPED = "skipped"
    FAILED = "failed"  # optional phase failed; run continued
    ABORTED = "aborted"  # required phase failed, or its blocking gate was rejected


@dataclass(frozen=True)
class ErrorRecord:
    """A recorded (usually non-fatal) failure."""

    phase: str
    kind: FailureKind
    message: str
    unit: str | None = None
    fatal: bool = False

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "phase": self.phase,
            "kind": self.kind.value,
            "message": self.message,
            "fatal": self.fatal,
        }
        if self.unit:
            result["unit"] = self.unit
        return result


@dataclass(frozen=True)
class DecisionRecord:
    """Outcome of one breakpoint, as recorded in run state."""

    phase: str
    gate: str
    title: str
    question: str
    decision: str
    policy: str
    notes: str | None = None
    decided_by: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase,
            "gate": self.gate,
            "title": self.title,
            "question": self.question,
            "decision": self.decision,
            "policy": self.policy,
            "notes": self.notes,
            "decided_by": self.decided_by,
        }


def _freeze(value: Any) -> Any:
    """Deep-copy ``value`` and wrap mappings read-only."""
    if isinstance(value, Mapping):
        return MappingProxyType({k: _freeze(v) for k, v in value.items()})
    if isinstance(value, list | tuple):
        return tuple(_freeze(v) for v in value)
    return copy.deepcopy(value)


def to_plain(value: Any) -> Any:
    """Convert view values (read-only mappings, tuples) back into plain dicts and lists."""
    if isinstance(value, Mapping):
        return {k: to_plain(v) for k, v in value.items()}
    if isinstance(value, tuple):
        return [to_plain(v) for v in value]
    return value


@dataclass(frozen=True)
class RunStateView:
    """
    Immutable snapshot of run state.

    Attributes:
        params: Initial input of the run
        outputs: Phase name → merged output, completed phases only
        statuses: Phase name → :class:`PhaseStatus`, every phase seen so far
        artifacts: Artifacts emitted so far, in order
        score_components: Score components registered so far
        decisions: Breakpoint decisions recorded so far
        errors: Errors recorded so far
    """

    params: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    outputs: Mapping[str, Mapping[str, Any]] = field(default_factory=lambda: MappingProxyType({}))
    statuses: Mapping[str, PhaseStatus] = field(default_factory=lambda: MappingProxyType({}))
    artifacts: tuple[Artifact, ...] = ()
    score_components: tuple[ScoreComponent, ...] = ()
    decisions: tuple[DecisionRecord, ...] = ()
    errors: tuple[ErrorRecord, ...] = ()

    # =========================================================================
    # Accessors
    # =========================================================================

    def param(self, key: str, default: Any = None) -> Any:
        return self.params.get(key, default)

    def output(self, phase: str, key: str | None = None, default: Any = None) -> Any:
        """Output of a completed phase, or one key of it."""
        phase_output = self.outputs.get(phase)
        if phase_output is None:
            return default
        if key is None:
            return phase_output
        return phase_output.get(key, default)

    def has_output(self, phase: str) -> bool:
        return phase in self.outputs

    def status(self, phase: str) -> PhaseStatus | None:
        return self.statuses.get(phase)

    @property
    def phase_names(self) -> tuple[str, ...]:
        """Names of all phases seen so far, in execution order."""
        return tuple(self.statuses.keys())

    @property
    def score(self) -> float:
        """Clamped weighted sum of the components registered so far."""
        return clamp_score(sum(c.contribution for c in self.score_components))

    @cached_property
    def _plain(self) -> dict[str, Any]:
        return {
            "params": to_plain(self.params),
            "phases": {
                name: {
                    "status": status.value,
                    "output": to_plain(self.outputs.get(name, {})),
                }
                for name, status in self.statuses.items()
            },
            "artifacts": [a.to_dict() for a in self.artifacts],
            "score": {
                "value": self.score,
                "components": [c.to_dict() for c in self.score_components],
            },
            "decisions": [d.to_dict() for d in self.decisions],
            "errors": [e.to_dict() for e in self.errors],
        }

    def to_dict(self) -> dict[str, Any]:
        """Plain, JSON-friendly snapshot (also the predicate path namespace)."""
        return copy.deepcopy(self._plain)

    def lookup(self, path: str, default: Any = None) -> Any:
        """Resolve a dotted path against :meth:`to_dict`.

        Missing segments resolve to ``default``; list segments accept
        integer indexes (``artifacts.0.path``).
        """
        node: Any = self._plain
        for part in path.split("."):
            if isinstance(node, Mapping):
                node = node.get(part, _MISSING)
            elif isinstance(node, list) and part.lstrip("-").isdigit():
                index = int(part)
                node = node[index] if -len(node) <= index < len(node) else _MISSING
            else:
                node = _MISSING
            if node is _MISSING:
                return default
        return copy.deepcopy(node) if isinstance(node, dict | list) else node

    def __repr__(self) -> str:
        return f"RunStateView(phases={list(self.statuses.keys())}, errors={len(self.errors)})"


class RunState:
    """
    Mutable run state with a single writer.

    Only the executor holds a ``RunState``; it hands out
    :class:`RunStateView` snapshots to everyone else.
    """

    def __init__(
        self,
        params: Mapping[str, Any] | None = None,
        ledger: ArtifactLedger | None = None,
        scores: ScoreAggregator | None = None,
    ) -> None:
        self._params = copy.deepcopy(to_plain(dict(params or {})))
        self._outputs: dict[str, dict[str, Any]] = {}
        self._statuses: dict[str, PhaseStatus] = {}
        self._decisions: list[DecisionRecord] = []
        self._errors: list[ErrorRecord] = []
        self.ledger = ledger or ArtifactLedger()
        self.scores = scores or ScoreAggregator()

    # =========================================================================
    # Writes (executor only)
    # =========================================================================

    def _claim(self, phase: str, status: PhaseStatus) -> None:
        if phase in self._statuses:
            raise OrchestrationError(f"Phase '{phase}' already committed to run state")
        self._statuses[phase] = status

    def commit_output(self, phase: str, output: Mapping[str, Any]) -> None:
        plain = copy.deepcopy(to_plain(dict(output)))
        self._claim(phase, PhaseStatus.COMPLETED)
        self._outputs[phase] = plain

    def mark_skipped(self, phase: str) -> None:
        self._claim(phase, PhaseStatus.SKIPPED)

    def mark_failed(self, phase: str, *, fatal: bool) -> None:
        self._claim(phase, PhaseStatus.ABORTED if fatal else PhaseStatus.FAILED)

    def mark_aborted(self, phase: str) -> None:
        """Downgrade a committed phase to ABORTED (blocking gate rejected)."""
        if phase not in self._statuses:
            raise OrchestrationError(f"Phase '{phase}' has not been committed")
        self._statuses[phase] = PhaseStatus.ABORTED

    def record_error(self, error: ErrorRecord) -> None:
        self._errors.append(error)

    def record_decision(self, decision: DecisionRecord) -> None:
        self._decisions.append(decision)

    # =========================================================================
    # Reads
    # =========================================================================

    @property
    def errors(self) -> tuple[ErrorRecord, ...]:
        return tuple(self._errors)

    @property
    def decisions(self) -> tuple[DecisionRecord, ...]:
        return tuple(self._decisions)

    def status(self, phase: str) -> PhaseStatus | None:
        return self._statuses.get(phase)

    def view(self) -> RunStateView:
        """Take an immutable snapshot."""
        return RunStateView(
            params=_freeze(self._params),
            outputs=MappingProxyType({k: _freeze(v) for k, v in self._outputs.items()}),
            statuses=MappingProxyType(dict(self._statuses)),
            artifacts=self.ledger.snapshot(),
            score_components=self.scores.components,
            decisions=tuple(self._decisions),
            errors=tuple(self._errors),
        )

    def __repr__(self) -> str:
        return f"RunState(phases={list(self._statuses.keys())}, errors={len(self._errors)})"
