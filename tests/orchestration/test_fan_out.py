"""Tests for FanOutJoin — bounded concurrency, ordering and cancellation."""

from __future__ import annotations

import threading
import time

import pytest
import structlog

from phasegate.core.logging import LogContext
from phasegate.orchestration.fan_out import FanOutJoin
from phasegate.orchestration.run_context import RunContext
from phasegate.orchestration.testing import ScriptedInvoker, StubInvoker
from phasegate.orchestration.unit import FailureKind, UnitOfWork, UnitResult


class ConcurrencyTracker:
    """Invoker that tracks how many units run at once."""

    def __init__(self, delay: float = 0.02) -> None:
        self.delay = delay
        self.active = 0
        self.peak = 0
        self._lock = threading.Lock()

    def invoke(self, unit_name, payload, output_shape):
        with self._lock:
            self.active += 1
            self.peak = max(self.peak, self.active)
        time.sleep(self.delay)
        with self._lock:
            self.active -= 1
        return UnitResult.success({"item": payload.get("item")})


def _units(n: int, name: str = "scan") -> list[UnitOfWork]:
    return [UnitOfWork(name, payload={"item": i}) for i in range(n)]


class TestJoinAll:
    def test_empty(self):
        assert FanOutJoin(StubInvoker()).join_all([]) == []

    def test_results_in_input_order(self):
        # Earlier units sleep longer, so they finish last.
        delays = {f"u{i}": 0.05 - i * 0.01 for i in range(5)}
        invoker = ScriptedInvoker({f"u{i}": {"i": i} for i in range(5)}, delays=delays)
        units = [UnitOfWork(f"u{i}") for i in range(5)]
        results = FanOutJoin(invoker, max_concurrency=5).join_all(units)
        assert [r.output["i"] for r in results] == [0, 1, 2, 3, 4]
        assert [r.unit for r in results] == [u.name for u in units]

    def test_each_unit_gets_its_own_payload(self):
        invoker = ScriptedInvoker({"scan": lambda payload: {"echo": payload["item"]}})
        results = FanOutJoin(invoker, max_concurrency=3).join_all(_units(6))
        assert [r.output["echo"] for r in results] == list(range(6))

    @pytest.mark.slow
    def test_concurrency_is_bounded(self):
        tracker = ConcurrencyTracker()
        FanOutJoin(tracker, max_concurrency=2).join_all(_units(8))
        assert tracker.peak <= 2

    @pytest.mark.slow
    def test_per_call_override(self):
        tracker = ConcurrencyTracker()
        FanOutJoin(tracker, max_concurrency=8).join_all(_units(6), max_concurrency=1)
        assert tracker.peak == 1

    def test_failures_do_not_stop_siblings(self):
        invoker = ScriptedInvoker(
            {"scan": lambda payload: RuntimeError("arm64 broke") if payload["item"] == 1 else {"ok": True}}
        )
        # Raising instances come back from the callable; ScriptedInvoker raises them.
        results = FanOutJoin(invoker, max_concurrency=2).join_all(_units(3))
        assert [r.ok for r in results] == [True, False, True]
        assert results[1].kind is FailureKind.EXECUTION
        assert invoker.called("scan") == 3

    def test_on_result_sees_every_unit(self):
        seen: list[int] = []
        FanOutJoin(StubInvoker(), max_concurrency=2).join_all(_units(4), on_result=lambda i, r: seen.append(i))
        assert sorted(seen) == [0, 1, 2, 3]

    def test_invalid_width(self):
        with pytest.raises(ValueError):
            FanOutJoin(StubInvoker(), max_concurrency=0)


class TestCancellation:
    def test_cancelled_before_start(self):
        ctx = RunContext.create("p")
        ctx.cancel("stop")
        invoker = StubInvoker()
        results = FanOutJoin(invoker).join_all(_units(3), ctx)
        assert all(r.kind is FailureKind.CANCELLED for r in results)
        assert invoker.calls == []

    def test_cancel_mid_batch_stops_new_dispatches(self):
        ctx = RunContext.create("p")

        def first_cancels(payload):
            if payload["item"] == 0:
                ctx.cancel("operator abort")
            return {"item": payload["item"]}

        invoker = ScriptedInvoker({"scan": first_cancels})
        results = FanOutJoin(invoker, max_concurrency=1).join_all(_units(4), ctx)

        assert len(results) == 4
        assert results[0].ok
        assert all(r.kind is FailureKind.CANCELLED for r in results[1:])
        assert invoker.called("scan") == 1


class TestLogContext:
    def test_workers_inherit_bound_context(self):
        seen: list[dict] = []
        lock = threading.Lock()

        def scan(payload):
            with lock:
                seen.append(dict(structlog.contextvars.get_contextvars()))
            return {"item": payload["item"]}

        with LogContext(run_id="r1", process="demo", phase="scan"):
            FanOutJoin(ScriptedInvoker({"scan": scan}), max_concurrency=3).join_all(_units(5))

        assert len(seen) == 5
        assert all(ctx == {"run_id": "r1", "process": "demo", "phase": "scan"} for ctx in seen)

    def test_worker_bindings_do_not_leak_back(self):
        def scan(payload):
            structlog.contextvars.bind_contextvars(item=payload["item"])
            return {}

        with LogContext(phase="scan"):
            FanOutJoin(ScriptedInvoker({"scan": scan}), max_concurrency=2).join_all(_units(3))
            assert "item" not in structlog.contextvars.get_contextvars()
