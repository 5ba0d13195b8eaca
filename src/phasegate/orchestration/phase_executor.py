"""Phase Executor — drives a process definition to a RunOutcome.

The PhaseExecutor takes a :class:`~phasegate.orchestration.phase.ProcessDefinition`
and runs each phase in declared order against a single-writer
:class:`~phasegate.orchestration.run_state.RunState`.  For every phase it:

1. evaluates the activation predicate on a fresh snapshot (false → SKIPPED)
2. builds the phase's units from that snapshot and submits them through the
   :class:`~phasegate.orchestration.invoker.TaskInvoker` (directly, or via
   :class:`~phasegate.orchestration.fan_out.FanOutJoin`)
3. on success, commits the merged output, moves artifacts to the ledger and
   score components to the aggregator
4. on failure, aborts the run (required phase) or records the error and
   continues (optional phase)
5. evaluates the phase's gates; a firing gate suspends the run on a
   :class:`~phasegate.orchestration.breakpoint.BreakpointGate` until the
   decision channel answers

Cancellation (``RunContext.cancel``) is checked between phases and before
every fan-out dispatch.

Example::

    from phasegate.orchestration import (
        CallableInvoker, PhaseExecutor, PhaseSpec, ProcessDefinition, UnitTemplate,
    )

    invoker = CallableInvoker({"analyze": lambda payload: {"score_components": {"analysis": 80}}})
    definition = ProcessDefinition(
        name="demo",
        phases=[PhaseSpec.task("analyze", UnitTemplate("analyze"))],
        score_weights={"analysis": 1.0},
    )

    outcome = PhaseExecutor(invoker).run(definition, {"services": ["api"]})
    if outcome.completed:
        print(outcome.final_score.score, outcome.verdict)
    else:
        print(f"Aborted at {outcome.failure.phase}: {outcome.failure.message}")
"""

from __future__ import annotations

import json
import threading
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

from phasegate.core.errors import InvalidConfigError, PhasegateError, ValidationError
from phasegate.core.logging import LogContext
from phasegate.core.settings import EngineSettings, get_settings
from phasegate.orchestration.breakpoint import (
    Breakpoint,
    BreakpointGate,
    Decision,
    DecisionChannel,
    DecisionQueue,
    GateState,
)
from phasegate.orchestration.fan_out import FanOutJoin
from phasegate.orchestration.invoker import TaskInvoker, invoke_unit
from phasegate.orchestration.journal import (
    BREAKPOINT_REQUESTED,
    BREAKPOINT_RESOLVED,
    PHASE_COMPLETED,
    PHASE_FAILED,
    PHASE_SKIPPED,
    PHASE_STARTED,
    RUN_FINISHED,
    RUN_STARTED,
    UNIT_COMPLETED,
    RunJournal,
)
from phasegate.orchestration.ledger import Artifact
from phasegate.orchestration.phase import GateSpec, JoinPolicy, PhaseSpec, ProcessDefinition
from phasegate.orchestration.run_context import RunContext
from phasegate.orchestration.run_state import (
    DecisionRecord,
    ErrorRecord,
    PhaseStatus,
    RunState,
    RunStateView,
)
from phasegate.orchestration.scoring import FinalScore, ScoreAggregator, ScoreComponent, components_from_output
from phasegate.orchestration.unit import FailureKind, UnitResult


class RunStatus(str, Enum):
    """Terminal status of a run."""

    COMPLETED = "completed"
    ABORTED = "aborted"


@dataclass(frozen=True)
class RunFailure:
    """Where and why a run stopped."""

    phase: str
    kind: FailureKind
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {"phase": self.phase, "kind": self.kind.value, "message": self.message}


@dataclass
class PhaseRecord:
    """Execution record of a single phase."""

    name: str
    status: PhaseStatus
    started_at: datetime | None = None
    completed_at: datetime | None = None
    unit_results: list[UnitResult] = field(default_factory=list)
    error: str | None = None

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    @property
    def failed_units(self) -> list[UnitResult]:
        return [r for r in self.unit_results if r.failed]

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status.value,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_seconds": self.duration_seconds,
            "units": [r.to_dict() for r in self.unit_results],
            "error": self.error,
        }


@dataclass
class RunOutcome:
    """
    Terminal, serializable report of a run.

    Attributes:
        status: COMPLETED or ABORTED
        run_id: Run identifier
        process: Process definition name
        run_state: Snapshot of run state at termination
        artifacts: Every artifact emitted, in emission order
        final_score: Clamped score, verdict and component breakdown
        errors: Every recorded error (fatal and non-fatal)
        failure: Failing phase, kind and message (aborted runs only)
        phase_records: One record per phase that was reached
        breakpoints: Every breakpoint that was triggered
        journal: Ordered run events
    """

    status: RunStatus
    run_id: str
    process: str
    run_state: RunStateView
    artifacts: tuple[Artifact, ...]
    final_score: FinalScore
    errors: tuple[ErrorRecord, ...]
    started_at: datetime
    completed_at: datetime
    failure: RunFailure | None = None
    phase_records: list[PhaseRecord] = field(default_factory=list)
    breakpoints: list[Breakpoint] = field(default_factory=list)
    journal: RunJournal | None = None

    @property
    def completed(self) -> bool:
        return self.status is RunStatus.COMPLETED

    @property
    def aborted(self) -> bool:
        return self.status is RunStatus.ABORTED

    @property
    def verdict(self) -> str:
        return self.final_score.verdict

    @property
    def score(self) -> float:
        return self.final_score.score

    @property
    def decisions(self) -> tuple[DecisionRecord, ...]:
        return self.run_state.decisions

    @property
    def duration_seconds(self) -> float:
        return (self.completed_at - self.started_at).total_seconds()

    def phase(self, name: str) -> PhaseRecord | None:
        for record in self.phase_records:
            if record.name == name:
                return record
        return None

    @property
    def executed_phases(self) -> list[str]:
        """Phases that ran (not skipped), in order."""
        return [r.name for r in self.phase_records if r.status is not PhaseStatus.SKIPPED]

    def to_dict(self) -> dict[str, Any]:
        """Serialize the full report."""
        return {
            "status": self.status.value,
            "run_id": self.run_id,
            "process": self.process,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat(),
            "duration_seconds": self.duration_seconds,
            "phases": [r.to_dict() for r in self.phase_records],
            "run_state": self.run_state.to_dict(),
            "artifacts": [a.to_dict() for a in self.artifacts],
            "score": self.final_score.to_dict(),
            "verdict": self.verdict,
            "decisions": [d.to_dict() for d in self.decisions],
            "breakpoints": [b.to_dict() for b in self.breakpoints],
            "errors": [e.to_dict() for e in self.errors],
            "failure": self.failure.to_dict() if self.failure else None,
            "journal": self.journal.to_list() if self.journal is not None else [],
        }

    def to_json(self, indent: int | None = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent, default=str)

    def __repr__(self) -> str:
        return (
            f"RunOutcome({self.process!r}, status={self.status.value}, "
            f"score={self.score:.1f}, verdict={self.verdict!r}, errors={len(self.errors)})"
        )


@dataclass
class _PhaseResult:
    """What one phase did; internal to the executor."""

    record: PhaseRecord
    failure: RunFailure | None = None


class PhaseExecutor:
    """Runs process definitions phase by phase.

    The executor is reusable across runs; all per-run state lives in the
    ``RunState`` created by :meth:`run`.
    """

    def __init__(
        self,
        invoker: TaskInvoker,
        decisions: DecisionChannel | None = None,
        *,
        max_concurrency: int | None = None,
        weight_tolerance: float | None = None,
        journal_dir: Path | str | None = None,
        settings: EngineSettings | None = None,
    ) -> None:
        """Initialise the executor.

        Args:
            invoker: Performs every unit of work
            decisions: Answers breakpoints; defaults to a :class:`DecisionQueue`
                that blocks until another thread resolves the request
            max_concurrency: Default fan-out width (settings when omitted)
            weight_tolerance: Allowed |Σ weights − 1| (settings when omitted)
            journal_dir: Directory for JSON-lines journals (settings when omitted)
            settings: Settings to read defaults from instead of the cached ones
        """
        settings = settings or get_settings()
        self._invoker = invoker
        self._decisions: DecisionChannel = decisions if decisions is not None else DecisionQueue()
        self._max_concurrency = max_concurrency if max_concurrency is not None else settings.max_concurrency
        if self._max_concurrency < 1:
            raise InvalidConfigError("max_concurrency", self._max_concurrency, "max_concurrency must be >= 1")
        self._weight_tolerance = weight_tolerance if weight_tolerance is not None else settings.weight_tolerance
        self._journal_dir = journal_dir if journal_dir is not None else settings.journal_dir
        self._active: dict[str, BreakpointGate] = {}
        self._active_lock = threading.Lock()

    @property
    def invoker(self) -> TaskInvoker:
        return self._invoker

    @property
    def decisions(self) -> DecisionChannel:
        return self._decisions

    def active_gates(self) -> list[BreakpointGate]:
        """Gates currently awaiting a decision, one per suspended run."""
        with self._active_lock:
            return list(self._active.values())

    # =========================================================================
    # Run
    # =========================================================================

    def run(
        self,
        definition: ProcessDefinition,
        params: Mapping[str, Any] | None = None,
        context: RunContext | None = None,
    ) -> RunOutcome:
        """
        Execute ``definition`` to completion or abort.

        Args:
            definition: The process to run
            params: Initial input, merged over ``definition.defaults``
            context: Run context (create one yourself to cancel from another
                thread or to inject a clock)

        Returns:
            RunOutcome; invoker exceptions never escape this method
        """
        ctx = context or RunContext.create(definition.name)
        if not ctx.process:
            ctx.process = definition.name
            ctx.logger = ctx.logger.bind(process=definition.name)
        log = ctx.logger
        journal = RunJournal(ctx.run_id, clock=ctx.clock, directory=self._journal_dir)
        scores = ScoreAggregator(
            verdicts=definition.verdicts,
            weights=definition.score_weights,
            weight_tolerance=self._weight_tolerance,
        )
        state = RunState({**definition.defaults, **dict(params or {})}, scores=scores)
        records: list[PhaseRecord] = []
        breakpoints: list[Breakpoint] = []
        failure: RunFailure | None = None
        started_at = ctx.started_at or ctx.now()

        log.info("run.start", phases=len(definition.phases))
        journal.record(RUN_STARTED, process=definition.name, params=state.view().to_dict()["params"])

        with LogContext(run_id=ctx.run_id, process=definition.name):
            for phase in definition.phases:
                if ctx.cancelled:
                    failure = RunFailure(
                        phase.name,
                        FailureKind.CANCELLED,
                        f"Run cancelled before phase '{phase.name}': {ctx.cancel_reason}",
                    )
                    state.record_error(ErrorRecord(phase.name, FailureKind.CANCELLED, failure.message, fatal=True))
                    log.error("run.cancelled", phase=phase.name, reason=ctx.cancel_reason)
                    break

                with LogContext(phase=phase.name):
                    result = self._run_phase(phase, state, ctx, journal, breakpoints)
                records.append(result.record)
                if result.failure is not None:
                    failure = result.failure
                    break

        final_score = scores.finalize()
        status = RunStatus.ABORTED if failure is not None else RunStatus.COMPLETED
        completed_at = ctx.now()

        journal.record(
            RUN_FINISHED,
            status=status.value,
            score=final_score.score,
            verdict=final_score.verdict,
            failure=failure.to_dict() if failure else None,
        )
        log_fn = log.error if failure is not None else log.info
        log_fn(
            "run.complete",
            status=status.value,
            score=round(final_score.score, 2),
            verdict=final_score.verdict,
            errors=len(state.errors),
            failed_phase=failure.phase if failure else None,
            duration_seconds=round(ctx.elapsed_seconds, 3),
        )

        return RunOutcome(
            status=status,
            run_id=ctx.run_id,
            process=definition.name,
            run_state=state.view(),
            artifacts=state.ledger.snapshot(),
            final_score=final_score,
            errors=state.errors,
            started_at=started_at,
            completed_at=completed_at,
            failure=failure,
            phase_records=records,
            breakpoints=breakpoints,
            journal=journal,
        )

    # =========================================================================
    # Phase
    # =========================================================================

    def _run_phase(
        self,
        phase: PhaseSpec,
        state: RunState,
        ctx: RunContext,
        journal: RunJournal,
        breakpoints: list[Breakpoint],
    ) -> _PhaseResult:
        log = ctx.logger.bind(phase=phase.name)
        view = state.view()
        record = PhaseRecord(name=phase.name, status=PhaseStatus.COMPLETED, started_at=ctx.now())

        # 1. Activation
        try:
            active = bool(phase.activation(view))
        except Exception as e:
            log.exception("phase.activation_error")
            return self._fail_phase(
                phase,
                state,
                ctx,
                journal,
                record,
                FailureKind.VALIDATION,
                f"Activation predicate raised: {e}",
                record_error=True,
            )

        if not active:
            state.mark_skipped(phase.name)
            record.status = PhaseStatus.SKIPPED
            record.completed_at = ctx.now()
            journal.record(PHASE_SKIPPED, phase=phase.name)
            log.info("phase.skipped")
            return _PhaseResult(record)

        journal.record(PHASE_STARTED, phase=phase.name, required=phase.required)
        log.info("phase.start", required=phase.required)

        # 2. Units
        try:
            units = phase.build_units(view)
        except Exception as e:
            log.exception("phase.build_error")
            kind = FailureKind.VALIDATION if isinstance(e, PhasegateError) else FailureKind.EXECUTION
            return self._fail_phase(
                phase, state, ctx, journal, record, kind, f"Could not build units: {e}", record_error=True
            )

        def on_result(index: int, result: UnitResult) -> None:
            journal.record(UNIT_COMPLETED, phase=phase.name, index=index, **result.to_dict())

        if phase.is_fan_out:
            join = FanOutJoin(self._invoker, self._max_concurrency)
            results = join.join_all(units, ctx, max_concurrency=phase.max_concurrency, on_result=on_result)
        else:
            results = []
            for index, unit in enumerate(units):
                result = invoke_unit(self._invoker, unit)
                on_result(index, result)
                results.append(result)
        record.unit_results = results

        # 3/4. Join, then commit or fail
        failed = [r for r in results if r.failed]
        for r in failed:
            state.record_error(
                ErrorRecord(phase.name, r.kind or FailureKind.EXECUTION, r.message or "", unit=r.unit)
            )

        phase_failed = False
        if failed:
            if phase.join is JoinPolicy.ALL_MUST_SUCCEED or len(failed) == len(results):
                phase_failed = True

        if any(r.kind is FailureKind.CANCELLED for r in failed) and ctx.cancelled:
            return self._fail_phase(
                phase,
                state,
                ctx,
                journal,
                record,
                FailureKind.CANCELLED,
                f"Run cancelled during phase '{phase.name}': {ctx.cancel_reason}",
                fatal=True,
            )

        if phase_failed:
            first = failed[0]
            message = first.message or "unit failed"
            if len(failed) > 1:
                message = f"{len(failed)} of {len(results)} units failed; first: {message}"
            result = self._fail_phase(phase, state, ctx, journal, record, first.kind or FailureKind.EXECUTION, message)
            if result.failure is not None:
                return result
        else:
            try:
                self._commit(phase, state, results)
            except ValidationError as e:
                log.warning("phase.invalid_output", error=str(e))
                result = self._fail_phase(
                    phase, state, ctx, journal, record, FailureKind.VALIDATION, str(e), record_error=True
                )
                if result.failure is not None:
                    return result
            except Exception as e:
                # merge and scores callables may raise anything
                log.exception("phase.commit_error")
                result = self._fail_phase(
                    phase,
                    state,
                    ctx,
                    journal,
                    record,
                    FailureKind.EXECUTION,
                    f"Could not commit phase output: {type(e).__name__}: {e}",
                    record_error=True,
                )
                if result.failure is not None:
                    return result
            else:
                journal.record(
                    PHASE_COMPLETED,
                    phase=phase.name,
                    units=len(results),
                    failed_units=len(failed),
                )
                log.info("phase.complete", units=len(results), failed_units=len(failed))

        record.completed_at = ctx.now()

        # 5. Gates
        for gate in phase.gates:
            failure = self._evaluate_gate(gate, phase, state, ctx, journal, breakpoints)
            if failure is not None:
                record.status = PhaseStatus.ABORTED
                record.error = failure.message
                return _PhaseResult(record, failure)

        return _PhaseResult(record)

    def _commit(self, phase: PhaseSpec, state: RunState, results: list[UnitResult]) -> None:
        """Validate conventions, then merge output, artifacts and scores into run state."""
        succeeded = [r for r in results if r.ok]
        if phase.merge is not None:
            output = dict(phase.merge(results))
        elif not phase.is_fan_out:
            output = dict(succeeded[0].output) if succeeded else {}
        else:
            output = {
                "results": [r.output if r.ok else None for r in results],
                "succeeded": len(succeeded),
                "failed": len(results) - len(succeeded),
            }

        artifacts: list[Artifact] = []
        components: list[ScoreComponent] = []
        for r in succeeded:
            raw_artifacts = r.output.get("artifacts") or []
            if not isinstance(raw_artifacts, list | tuple):
                raise ValidationError("'artifacts' must be a list", field="artifacts", value=raw_artifacts)
            artifacts.extend(Artifact.from_value(a, phase=phase.name) for a in raw_artifacts)
            for name, weight, value in components_from_output(r.output):
                components.append(state.scores.build_component(name, weight, value, phase=phase.name))
        if phase.scores is not None:
            for name, weight, value in phase.scores(output):
                components.append(state.scores.build_component(name, weight, value, phase=phase.name))

        state.commit_output(phase.name, output)
        state.ledger.extend(artifacts)
        state.scores.extend(components)

    def _fail_phase(
        self,
        phase: PhaseSpec,
        state: RunState,
        ctx: RunContext,
        journal: RunJournal,
        record: PhaseRecord,
        kind: FailureKind,
        message: str,
        *,
        fatal: bool | None = None,
        record_error: bool = False,
    ) -> _PhaseResult:
        """Record a phase failure; fatal for required phases (or when forced).

        Unit failures are already in the error list; ``record_error`` adds a
        non-fatal entry for failures that happened outside any unit.
        """
        fatal = phase.required if fatal is None else fatal
        if state.status(phase.name) is None:
            state.mark_failed(phase.name, fatal=fatal)
        elif fatal:
            state.mark_aborted(phase.name)
        record.status = PhaseStatus.ABORTED if fatal else PhaseStatus.FAILED
        record.error = message
        record.completed_at = ctx.now()
        journal.record(PHASE_FAILED, phase=phase.name, kind=kind.value, message=message, fatal=fatal)

        if fatal:
            state.record_error(ErrorRecord(phase.name, kind, message, fatal=True))
            ctx.logger.error("phase.failed", phase=phase.name, kind=kind.value, message=message, required=phase.required)
            return _PhaseResult(record, RunFailure(phase.name, kind, message))

        if record_error:
            state.record_error(ErrorRecord(phase.name, kind, message))
        ctx.logger.warning("phase.failed_optional", phase=phase.name, kind=kind.value, message=message)
        return _PhaseResult(record)

    # =========================================================================
    # Gates
    # =========================================================================

    def _evaluate_gate(
        self,
        gate: GateSpec,
        phase: PhaseSpec,
        state: RunState,
        ctx: RunContext,
        journal: RunJournal,
        breakpoints: list[Breakpoint],
    ) -> RunFailure | None:
        """Evaluate one gate; returns a failure when a blocking gate aborts the run."""
        log = ctx.logger.bind(phase=phase.name, gate=gate.name)
        view = state.view()
        try:
            fires = bool(gate.predicate(view))
        except Exception:
            # Broken predicate: ask the decider rather than pass silently.
            log.exception("breakpoint.predicate_error")
            fires = True
        if not fires:
            log.debug("breakpoint.not_triggered")
            return None

        try:
            title, question = gate.render(view)
        except Exception:
            log.exception("breakpoint.render_error")
            title = gate.title if isinstance(gate.title, str) and gate.title else gate.name
            question = gate.question if isinstance(gate.question, str) else f"Approve gate '{gate.name}'?"
        snapshot = view.to_dict()
        snapshot.update(gate=gate.name, phase=phase.name, policy=gate.policy.value)
        if gate.context is not None:
            try:
                snapshot.update(dict(gate.context(view)))
            except Exception as e:
                log.exception("breakpoint.context_error")
                snapshot["context_error"] = f"{type(e).__name__}: {e}"

        bp_gate = BreakpointGate(gate.name, gate.policy, phase=phase.name, clock=ctx.clock)
        bp = bp_gate.trigger(question, snapshot, title=title)
        breakpoints.append(bp)
        journal.record(
            BREAKPOINT_REQUESTED,
            phase=phase.name,
            gate=gate.name,
            breakpoint_id=bp.id,
            title=title,
            question=question,
            policy=gate.policy.value,
        )

        with self._active_lock:
            self._active[ctx.run_id] = bp_gate
        try:
            decision = Decision.coerce(self._decisions.present(bp.question, bp.title, bp.context_snapshot))
        except Exception as e:
            log.exception("breakpoint.channel_error")
            message = f"Decision channel failed at gate '{gate.name}': {e}"
            state.record_error(ErrorRecord(phase.name, FailureKind.EXECUTION, message, fatal=True))
            state.mark_aborted(phase.name)
            return RunFailure(phase.name, FailureKind.EXECUTION, message)
        finally:
            with self._active_lock:
                self._active.pop(ctx.run_id, None)

        bp_gate.resolve(bp, decision)
        outcome = bp_gate.complete()
        state.record_decision(
            DecisionRecord(
                phase=phase.name,
                gate=gate.name,
                title=title,
                question=question,
                decision=bp.decision.value,
                policy=gate.policy.value,
                notes=decision.notes,
                decided_by=decision.decided_by,
            )
        )
        journal.record(
            BREAKPOINT_RESOLVED,
            phase=phase.name,
            gate=gate.name,
            breakpoint_id=bp.id,
            decision=bp.decision.value,
            outcome=outcome.value,
            decided_by=decision.decided_by,
        )

        if decision.approved:
            return None

        message = f"Gate '{gate.name}' rejected" + (f": {decision.notes}" if decision.notes else "")
        if outcome is GateState.ABORTED:
            state.record_error(ErrorRecord(phase.name, FailureKind.GATE_REJECTED, message, fatal=True))
            state.mark_aborted(phase.name)
            log.error("breakpoint.rejected", policy=gate.policy.value)
            return RunFailure(phase.name, FailureKind.GATE_REJECTED, message)

        state.record_error(ErrorRecord(phase.name, FailureKind.GATE_REJECTED, message))
        log.warning("breakpoint.rejected_advisory", policy=gate.policy.value)
        return None


__all__ = [
    "RunStatus",
    "RunFailure",
    "PhaseRecord",
    "RunOutcome",
    "PhaseExecutor",
]
