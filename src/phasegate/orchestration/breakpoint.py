"""Breakpoint gates — the run's single cooperative suspension point.

Manifesto:
    Quality gates ("critical vulnerabilities found", "budget below
    threshold", "review the DR plan") pause the run and hand a question plus
    a snapshot of everything accumulated so far to an external decider.
    Suspension is an explicit, inspectable state machine rather than an
    implicit pause buried in control flow, and the executor thread blocks on
    an event, never a polling loop.

ARCHITECTURE
────────────
::

    GateState machine (one BreakpointGate per triggered gate):

      IDLE ─trigger()─▶ TRIGGERED ─▶ AWAITING_DECISION ─resolve()─▶ APPROVED ─┐
                                                       └──────────▶ REJECTED ─┤
                                                                              ▼
                                           complete(): RESUMED | ABORTED (blocking + rejected)

    DecisionChannel (Protocol)
      └── present(question, title, context_snapshot) → Decision

    Stock channels:
      AutoApproveChannel        ── approves everything (note recorded)
      ScriptedDecisionChannel   ── decisions keyed by title or gate name
      DecisionQueue             ── blocks until another thread resolves a ticket

Invariants:
    - a breakpoint's decision is set exactly once
    - blocking + rejected → ABORTED; every other combination → RESUMED
    - no implicit timeout; a channel that never answers blocks forever

Tags:
    phasegate, orchestration, breakpoint, quality-gate, hitl, state-machine
"""

from __future__ import annotations

import threading
import uuid
from collections import OrderedDict
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Protocol, runtime_checkable

from phasegate.core.errors import IllegalTransitionError, OrchestrationError, ValidationError
from phasegate.core.logging import get_logger
from phasegate.core.timestamps import utc_now
from phasegate.orchestration.phase import GatePolicy

logger = get_logger(__name__)


class GateState(str, Enum):
    IDLE = "idle"
    TRIGGERED = "triggered"
    AWAITING_DECISION = "awaiting_decision"
    APPROVED = "approved"
    REJECTED = "rejected"
    RESUMED = "resumed"
    ABORTED = "aborted"


# {from_state: [valid_to_states]}
VALID_TRANSITIONS: dict[GateState, tuple[GateState, ...]] = {
    GateState.IDLE: (GateState.TRIGGERED,),
    GateState.TRIGGERED: (GateState.AWAITING_DECISION,),
    GateState.AWAITING_DECISION: (GateState.APPROVED, GateState.REJECTED),
    GateState.APPROVED: (GateState.RESUMED,),
    GateState.REJECTED: (GateState.RESUMED, GateState.ABORTED),
    GateState.RESUMED: (),
    GateState.ABORTED: (),
}


class DecisionStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


@dataclass(frozen=True)
class Decision:
    """An external actor's answer to a breakpoint."""

    approved: bool
    notes: str | None = None
    decided_by: str | None = None

    @classmethod
    def approve(cls, notes: str | None = None, decided_by: str | None = None) -> Decision:
        return cls(approved=True, notes=notes, decided_by=decided_by)

    @classmethod
    def reject(cls, notes: str | None = None, decided_by: str | None = None) -> Decision:
        return cls(approved=False, notes=notes, decided_by=decided_by)

    @classmethod
    def coerce(cls, value: Any) -> Decision:
        """Build a decision from ``True``/``"approve"``/``{"approved": ..., "notes": ...}``."""
        if isinstance(value, Decision):
            return value
        if isinstance(value, bool):
            return cls(approved=value)
        if isinstance(value, str):
            word = value.strip().lower()
            if word in {"approve", "approved", "yes", "y"}:
                return cls.approve()
            if word in {"reject", "rejected", "no", "n"}:
                return cls.reject()
        if isinstance(value, Mapping) and "approved" in value:
            return cls(
                approved=bool(value["approved"]),
                notes=value.get("notes"),
                decided_by=value.get("decided_by"),
            )
        raise ValidationError(f"Cannot interpret {value!r} as a decision", field="decision", value=value)

    @property
    def status(self) -> DecisionStatus:
        return DecisionStatus.APPROVED if self.approved else DecisionStatus.REJECTED


@dataclass
class Breakpoint:
    """
    A triggered gate awaiting (or holding) its decision.

    Attributes:
        id: Unique breakpoint id
        gate: Gate name
        phase: Phase the gate is attached to
        title: Rendered title
        question: Rendered question
        context_snapshot: Plain snapshot of run state at trigger time
        policy: BLOCKING or ADVISORY
        decision: PENDING until resolved, then APPROVED / REJECTED
    """

    id: str
    gate: str
    phase: str | None
    title: str
    question: str
    context_snapshot: dict[str, Any]
    policy: GatePolicy = GatePolicy.BLOCKING
    decision: DecisionStatus = DecisionStatus.PENDING
    notes: str | None = None
    decided_by: str | None = None
    created_at: datetime = field(default_factory=utc_now)
    decided_at: datetime | None = None

    @property
    def pending(self) -> bool:
        return self.decision is DecisionStatus.PENDING

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "gate": self.gate,
            "phase": self.phase,
            "title": self.title,
            "question": self.question,
            "policy": self.policy.value,
            "decision": self.decision.value,
            "notes": self.notes,
            "decided_by": self.decided_by,
            "created_at": self.created_at.isoformat(),
            "decided_at": self.decided_at.isoformat() if self.decided_at else None,
        }


@dataclass(frozen=True)
class TransitionRecord:
    from_state: GateState
    to_state: GateState
    at: datetime


class BreakpointGate:
    """
    State machine for one breakpoint.

    The executor creates a fresh gate each time a gate predicate fires,
    calls :meth:`trigger`, asks a :class:`DecisionChannel`, calls
    :meth:`resolve`, then :meth:`complete` to learn whether the run resumes.
    """

    def __init__(
        self,
        name: str,
        policy: GatePolicy | str = GatePolicy.BLOCKING,
        *,
        phase: str | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.name = name
        self.policy = GatePolicy(policy)
        self.phase = phase
        self._clock = clock
        self._state = GateState.IDLE
        self._history: list[TransitionRecord] = []
        self._breakpoint: Breakpoint | None = None
        self._lock = threading.RLock()

    @property
    def state(self) -> GateState:
        with self._lock:
            return self._state

    @property
    def breakpoint(self) -> Breakpoint | None:
        return self._breakpoint

    @property
    def history(self) -> list[TransitionRecord]:
        with self._lock:
            return list(self._history)

    def _transition(self, to_state: GateState) -> None:
        with self._lock:
            if to_state not in VALID_TRANSITIONS[self._state]:
                raise IllegalTransitionError(
                    self._state.value,
                    to_state.value,
                    breakpoint_id=self._breakpoint.id if self._breakpoint else None,
                )
            self._history.append(TransitionRecord(self._state, to_state, self._clock()))
            logger.debug("breakpoint.transition", gate=self.name, from_state=self._state.value, to_state=to_state.value)
            self._state = to_state

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def trigger(self, question: str, context_snapshot: Mapping[str, Any], title: str = "") -> Breakpoint:
        """``IDLE → TRIGGERED → AWAITING_DECISION``; returns the pending breakpoint."""
        with self._lock:
            self._transition(GateState.TRIGGERED)
            self._breakpoint = Breakpoint(
                id=uuid.uuid4().hex,
                gate=self.name,
                phase=self.phase,
                title=title or self.name,
                question=question,
                context_snapshot=dict(context_snapshot),
                policy=self.policy,
                created_at=self._clock(),
            )
            self._transition(GateState.AWAITING_DECISION)
        logger.info("breakpoint.triggered", gate=self.name, phase=self.phase, policy=self.policy.value)
        return self._breakpoint

    def resolve(self, breakpoint: Breakpoint, decision: Decision) -> Breakpoint:
        """``AWAITING_DECISION → APPROVED | REJECTED``; allowed exactly once."""
        with self._lock:
            if breakpoint is not self._breakpoint:
                raise OrchestrationError(f"Breakpoint {breakpoint.id} does not belong to gate '{self.name}'")
            if not breakpoint.pending:
                raise IllegalTransitionError(breakpoint.decision.value, decision.status.value, breakpoint_id=breakpoint.id)
            self._transition(GateState.APPROVED if decision.approved else GateState.REJECTED)
            breakpoint.decision = decision.status
            breakpoint.notes = decision.notes
            breakpoint.decided_by = decision.decided_by
            breakpoint.decided_at = self._clock()
        logger.info(
            "breakpoint.resolved",
            gate=self.name,
            decision=breakpoint.decision.value,
            decided_by=decision.decided_by,
        )
        return breakpoint

    def complete(self) -> GateState:
        """Apply the gate policy: ``RESUMED`` or ``ABORTED``."""
        with self._lock:
            if self._state is GateState.REJECTED and self.policy is GatePolicy.BLOCKING:
                self._transition(GateState.ABORTED)
            else:
                self._transition(GateState.RESUMED)
            return self._state

    def run(
        self,
        channel: DecisionChannel,
        question: str,
        context_snapshot: Mapping[str, Any],
        title: str = "",
    ) -> GateState:
        """Trigger, block on ``channel``, resolve, complete."""
        bp = self.trigger(question, context_snapshot, title=title)
        decision = channel.present(bp.question, bp.title, bp.context_snapshot)
        self.resolve(bp, Decision.coerce(decision))
        return self.complete()

    def __repr__(self) -> str:
        return f"BreakpointGate({self.name!r}, state={self._state.value}, policy={self.policy.value})"


# =============================================================================
# Decision channels
# =============================================================================


@runtime_checkable
class DecisionChannel(Protocol):
    """Presents a breakpoint to a decider and blocks until it answers."""

    def present(self, question: str, title: str, context_snapshot: Mapping[str, Any]) -> Decision: ...


class AutoApproveChannel:
    """Approves every breakpoint; keeps a log of what it approved."""

    def __init__(self, decided_by: str = "auto-approve") -> None:
        self.decided_by = decided_by
        self.presented: list[str] = []

    def present(self, question: str, title: str, context_snapshot: Mapping[str, Any]) -> Decision:
        self.presented.append(title)
        return Decision.approve(notes="auto-approved", decided_by=self.decided_by)


class ScriptedDecisionChannel:
    """
    Pre-seeded decisions for tests and replays.

    Decisions are looked up by title first, then by the ``gate`` key of the
    context snapshot.  Unmatched breakpoints use ``default``; without a
    default they raise.
    """

    def __init__(
        self,
        decisions: Mapping[str, Any] | None = None,
        default: Any = None,
        decided_by: str = "script",
    ) -> None:
        self._decisions = {k: Decision.coerce(v) for k, v in (decisions or {}).items()}
        self._default = Decision.coerce(default) if default is not None else None
        self.decided_by = decided_by
        self.presented: list[tuple[str, str]] = []

    def present(self, question: str, title: str, context_snapshot: Mapping[str, Any]) -> Decision:
        self.presented.append((title, question))
        decision = self._decisions.get(title) or self._decisions.get(str(context_snapshot.get("gate", "")))
        if decision is None:
            decision = self._default
        if decision is None:
            raise OrchestrationError(f"No scripted decision for breakpoint '{title}'")
        if decision.decided_by is None:
            decision = Decision(decision.approved, decision.notes, self.decided_by)
        return decision


@dataclass
class DecisionRequest:
    """A breakpoint waiting in a :class:`DecisionQueue`."""

    ticket: str
    question: str
    title: str
    context_snapshot: Mapping[str, Any]
    requested_at: datetime = field(default_factory=utc_now)
    _event: threading.Event = field(default_factory=threading.Event, repr=False)
    _decision: Decision | None = field(default=None, repr=False)

    @property
    def gate(self) -> str | None:
        return self.context_snapshot.get("gate")


class DecisionQueue:
    """
    Hand breakpoints to another thread (a UI, an API handler, a test).

    ``present`` blocks the executor thread on a ``threading.Event`` until
    :meth:`resolve` is called with the request's ticket.  The last
    ``history`` answered tickets are remembered so a second answer is
    reported as an illegal transition; older ones are forgotten.

    Example:
        queue = DecisionQueue()
        worker = threading.Thread(target=executor.run, args=(definition, params))
        worker.start()
        request = queue.wait_for_request(timeout=5)
        queue.resolve(request.ticket, Decision.approve(decided_by="alice"))
    """

    def __init__(self, history: int = 256) -> None:
        if history < 0:
            raise ValueError("history must be >= 0")
        self._pending: dict[str, DecisionRequest] = {}
        self._resolved: OrderedDict[str, None] = OrderedDict()
        self._history = history
        self._cond = threading.Condition()

    def present(self, question: str, title: str, context_snapshot: Mapping[str, Any]) -> Decision:
        request = DecisionRequest(
            ticket=uuid.uuid4().hex,
            question=question,
            title=title,
            context_snapshot=context_snapshot,
        )
        with self._cond:
            self._pending[request.ticket] = request
            self._cond.notify_all()
        logger.info("decision_queue.waiting", ticket=request.ticket, title=title)
        request._event.wait()
        return request._decision  # type: ignore[return-value]

    def pending(self) -> list[DecisionRequest]:
        """Requests awaiting a decision, oldest first."""
        with self._cond:
            return list(self._pending.values())

    def wait_for_request(self, timeout: float | None = None) -> DecisionRequest | None:
        """Block until at least one request is pending; ``None`` on timeout."""
        with self._cond:
            if not self._cond.wait_for(lambda: bool(self._pending), timeout=timeout):
                return None
            return next(iter(self._pending.values()))

    def resolve(self, ticket: str, decision: Decision | Any) -> None:
        """Answer a pending request; each ticket can be resolved once."""
        decision = Decision.coerce(decision)
        with self._cond:
            if ticket in self._resolved:
                raise IllegalTransitionError("resolved", decision.status.value, breakpoint_id=ticket)
            request = self._pending.pop(ticket, None)
            if request is None:
                raise OrchestrationError(f"Unknown decision ticket: {ticket}")
            self._resolved[ticket] = None
            while len(self._resolved) > self._history:
                self._resolved.popitem(last=False)
            request._decision = decision
        request._event.set()
        logger.info("decision_queue.resolved", ticket=ticket, decision=decision.status.value)

    def approve(self, ticket: str, notes: str | None = None, decided_by: str | None = None) -> None:
        self.resolve(ticket, Decision.approve(notes, decided_by))

    def reject(self, ticket: str, notes: str | None = None, decided_by: str | None = None) -> None:
        self.resolve(ticket, Decision.reject(notes, decided_by))


__all__ = [
    "GateState",
    "VALID_TRANSITIONS",
    "DecisionStatus",
    "Decision",
    "Breakpoint",
    "TransitionRecord",
    "BreakpointGate",
    "DecisionChannel",
    "AutoApproveChannel",
    "ScriptedDecisionChannel",
    "DecisionRequest",
    "DecisionQueue",
]
