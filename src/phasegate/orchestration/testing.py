"""Test Harness — utilities for testing process definitions.

Manifesto:
Testing a process requires invoker doubles, a deterministic clock, and
assertions on the RunOutcome.  This module provides off-the-shelf helpers
so test code is concise and expressive.

ARCHITECTURE
────────────
::

    Test doubles (TaskInvoker implementations):
      StubInvoker              → always succeeds (configurable outputs)
      FailingInvoker           → fails every unit, or only the named ones
      ScriptedInvoker          → pre-configured results per unit, optional delays

    Assertion helpers:
      assert_run_completed(outcome)
      assert_run_aborted(outcome, phase=None, kind=None)
      assert_phase_skipped(outcome, phase)
      assert_phase_output(outcome, phase, key, value)
      assert_phases_ran(outcome, *phases)

    Factories:
      make_definition(*phases)   → quick ProcessDefinition
      make_executor(invoker)     → PhaseExecutor with auto-approval
      FixedClock                 → deterministic, steppable timestamps

Example::

    from phasegate.orchestration import PhaseSpec
    from phasegate.orchestration.testing import (
        StubInvoker, assert_run_completed, make_definition, make_executor,
    )

    def test_simple_process():
        definition = make_definition(PhaseSpec.task("analyze", "analyze"))
        outcome = make_executor(StubInvoker({"analyze": {"count": 42}})).run(definition)
        assert_run_completed(outcome)
        assert_phase_output(outcome, "analyze", "count", 42)

Tags:
    phasegate, orchestration, testing, harness, assertions
"""

from __future__ import annotations

import threading
import time
from collections.abc import Mapping
from datetime import UTC, datetime, timedelta
from typing import Any

from phasegate.orchestration.breakpoint import AutoApproveChannel, DecisionChannel
from phasegate.orchestration.phase import PhaseSpec, ProcessDefinition
from phasegate.orchestration.phase_executor import PhaseExecutor, RunOutcome, RunStatus
from phasegate.orchestration.run_state import PhaseStatus
from phasegate.orchestration.unit import FailureKind, UnitResult

# ---------------------------------------------------------------------------
# Test doubles (TaskInvoker implementations for testing)
# ---------------------------------------------------------------------------


class _RecordingInvoker:
    def __init__(self) -> None:
        self.calls: list[dict[str, Any]] = []
        self._lock = threading.Lock()

    def _record(self, unit_name: str, payload: Mapping[str, Any]) -> None:
        with self._lock:
            self.calls.append({"unit": unit_name, "payload": dict(payload)})

    def called(self, unit_name: str) -> int:
        """Number of times ``unit_name`` was invoked."""
        return sum(1 for c in self.calls if c["unit"] == unit_name)

    @property
    def unit_names(self) -> list[str]:
        return [c["unit"] for c in self.calls]


class StubInvoker(_RecordingInvoker):
    """Invoker that always returns success.

    Parameters
    ----------
    outputs
        Mapping of ``unit_name → output dict``.  Units not in the map
        return an empty output.
    """

    def __init__(self, outputs: Mapping[str, Mapping[str, Any]] | None = None) -> None:
        super().__init__()
        self._outputs = {k: dict(v) for k, v in (outputs or {}).items()}

    def invoke(
        self,
        unit_name: str,
        payload: Mapping[str, Any],
        output_shape: Mapping[str, Any] | None,
    ) -> UnitResult:
        self._record(unit_name, payload)
        return UnitResult.success(dict(self._outputs.get(unit_name, {})))


class FailingInvoker(_RecordingInvoker):
    """Invoker that returns failures.

    Parameters
    ----------
    message
        Failure message.
    kind
        Failure kind.
    fail_units
        If set, only these units fail; others succeed with an empty output.
    """

    def __init__(
        self,
        message: str = "Simulated failure",
        kind: FailureKind = FailureKind.EXECUTION,
        fail_units: set[str] | None = None,
    ) -> None:
        super().__init__()
        self._message = message
        self._kind = kind
        self._fail_units = fail_units

    def invoke(
        self,
        unit_name: str,
        payload: Mapping[str, Any],
        output_shape: Mapping[str, Any] | None,
    ) -> UnitResult:
        self._record(unit_name, payload)
        if self._fail_units is None or unit_name in self._fail_units:
            return UnitResult.failure(self._kind, self._message)
        return UnitResult.success({})


class ScriptedInvoker(_RecordingInvoker):
    """Invoker that returns pre-configured results per unit.

    A script entry may be a ``UnitResult``, an output mapping (wrapped as a
    success), an exception instance (raised), or a callable of the payload
    returning any of those.  Unscripted units succeed with an empty output.

    Parameters
    ----------
    scripts
        Mapping of ``unit_name → entry``.
    delays
        Mapping of ``unit_name → seconds`` slept before answering.

    Example::

        invoker = ScriptedInvoker(
            scripts={
                "scan": lambda p: UnitResult.failure("execution", "boom") if p["item"] == "arm64" else {"ok": 1},
            },
            delays={"scan": 0.01},
        )
    """

    def __init__(
        self,
        scripts: Mapping[str, Any] | None = None,
        delays: Mapping[str, float] | None = None,
    ) -> None:
        super().__init__()
        self._scripts = dict(scripts or {})
        self._delays = dict(delays or {})

    def invoke(
        self,
        unit_name: str,
        payload: Mapping[str, Any],
        output_shape: Mapping[str, Any] | None,
    ) -> UnitResult:
        self._record(unit_name, payload)
        delay = self._delays.get(unit_name)
        if delay:
            time.sleep(delay)
        entry = self._scripts.get(unit_name)
        if callable(entry) and not isinstance(entry, UnitResult):
            entry = entry(dict(payload))
        if isinstance(entry, BaseException):
            raise entry
        if isinstance(entry, UnitResult):
            return entry
        return UnitResult.success(dict(entry or {}))


class FixedClock:
    """Deterministic clock; each call advances by ``step``.

    Example::

        clock = FixedClock(datetime(2026, 1, 1, tzinfo=UTC))
        ctx = RunContext.create("demo", clock=clock)
    """

    def __init__(
        self,
        start: datetime | None = None,
        step: timedelta = timedelta(seconds=1),
    ) -> None:
        self._now = start or datetime(2026, 1, 1, tzinfo=UTC)
        self._step = step
        self._lock = threading.Lock()

    def __call__(self) -> datetime:
        with self._lock:
            current = self._now
            self._now = current + self._step
            return current

    def peek(self) -> datetime:
        return self._now


# ---------------------------------------------------------------------------
# Assertion helpers
# ---------------------------------------------------------------------------


class RunAssertionError(AssertionError):
    """Raised when a run assertion fails; carries the outcome."""

    def __init__(self, message: str, outcome: RunOutcome) -> None:
        self.outcome = outcome
        super().__init__(f"{message}\n  Process: {outcome.process}\n  Status: {outcome.status.value}")


def assert_run_completed(outcome: RunOutcome) -> None:
    """Assert that a run completed (no fatal failure)."""
    if outcome.status is not RunStatus.COMPLETED:
        detail = f" (aborted at '{outcome.failure.phase}': {outcome.failure.message})" if outcome.failure else ""
        raise RunAssertionError(f"Expected COMPLETED, got {outcome.status.value}{detail}", outcome)


def assert_run_aborted(
    outcome: RunOutcome,
    phase: str | None = None,
    kind: FailureKind | str | None = None,
    message_contains: str | None = None,
) -> None:
    """Assert that a run aborted, optionally at ``phase`` with ``kind``."""
    if outcome.status is not RunStatus.ABORTED or outcome.failure is None:
        raise RunAssertionError(f"Expected ABORTED, got {outcome.status.value}", outcome)
    if phase and outcome.failure.phase != phase:
        raise RunAssertionError(f"Expected abort at '{phase}', got '{outcome.failure.phase}'", outcome)
    if kind and outcome.failure.kind is not FailureKind(kind):
        raise RunAssertionError(f"Expected failure kind {FailureKind(kind).value}, got {outcome.failure.kind.value}", outcome)
    if message_contains and message_contains not in outcome.failure.message:
        raise RunAssertionError(
            f"Expected failure message containing '{message_contains}', got: {outcome.failure.message}",
            outcome,
        )


def assert_phase_skipped(outcome: RunOutcome, phase: str) -> None:
    """Assert that ``phase`` was reached and skipped."""
    record = outcome.phase(phase)
    if record is None:
        raise RunAssertionError(f"Phase '{phase}' was never reached", outcome)
    if record.status is not PhaseStatus.SKIPPED:
        raise RunAssertionError(f"Expected '{phase}' SKIPPED, got {record.status.value}", outcome)


def assert_phase_output(outcome: RunOutcome, phase: str, key: str, expected: Any) -> None:
    """Assert that a completed phase committed ``output[key] == expected``."""
    if not outcome.run_state.has_output(phase):
        raise RunAssertionError(
            f"Phase '{phase}' has no committed output. Available: {sorted(outcome.run_state.outputs)}",
            outcome,
        )
    output = outcome.run_state.output(phase)
    if key not in output:
        raise RunAssertionError(f"Phase '{phase}' output missing key '{key}'. Available keys: {list(output)}", outcome)
    if output[key] != expected:
        raise RunAssertionError(f"Phase '{phase}' output['{key}']: expected {expected!r}, got {output[key]!r}", outcome)


def assert_phases_ran(outcome: RunOutcome, *phases: str) -> None:
    """Assert that the named phases executed (not skipped)."""
    missing = set(phases) - set(outcome.executed_phases)
    if missing:
        raise RunAssertionError(
            f"Phases not executed: {sorted(missing)}. Executed: {outcome.executed_phases}",
            outcome,
        )


# ---------------------------------------------------------------------------
# Factory helpers
# ---------------------------------------------------------------------------


def make_definition(
    *phases: PhaseSpec,
    name: str = "test.process",
    **kwargs: Any,
) -> ProcessDefinition:
    """Create a quick test definition; bare strings become single-unit phases."""
    specs = [PhaseSpec.task(p, p) if isinstance(p, str) else p for p in phases]
    return ProcessDefinition(name=name, phases=specs, **kwargs)


def make_executor(
    invoker: Any | None = None,
    decisions: DecisionChannel | None = None,
    **kwargs: Any,
) -> PhaseExecutor:
    """Create a PhaseExecutor; defaults to ``StubInvoker`` and auto-approval."""
    return PhaseExecutor(
        invoker if invoker is not None else StubInvoker(),
        decisions if decisions is not None else AutoApproveChannel(),
        **kwargs,
    )


__all__ = [
    "StubInvoker",
    "FailingInvoker",
    "ScriptedInvoker",
    "FixedClock",
    "RunAssertionError",
    "assert_run_completed",
    "assert_run_aborted",
    "assert_phase_skipped",
    "assert_phase_output",
    "assert_phases_ran",
    "make_definition",
    "make_executor",
]
