"""Tests for PhaseExecutor — phase ordering, failure policy, gates, cancellation.

Covers:
- sequential phases, activation predicates and skipping
- required vs optional failures
- fan-out joins (all-must-succeed and best-effort)
- output conventions: artifacts and score components
- gates: blocking/advisory, suspension on a DecisionQueue, channel errors
- merge, scores and gate callables that raise
- cooperative cancellation
- RunOutcome serialization and the run journal
"""

from __future__ import annotations

import json
import threading

import pytest
import structlog

from phasegate.core.errors import InvalidConfigError
from phasegate.core.logging import configure_logging
from phasegate.core.settings import EngineSettings
from phasegate.orchestration import (
    AutoApproveChannel,
    Condition,
    DecisionQueue,
    GatePolicy,
    GateSpec,
    GateState,
    PhaseExecutor,
    PhaseSpec,
    PhaseStatus,
    ProcessDefinition,
    RunContext,
    RunStatus,
    ScriptedDecisionChannel,
    UnitTemplate,
    param_is,
)
from phasegate.orchestration.journal import (
    BREAKPOINT_REQUESTED,
    BREAKPOINT_RESOLVED,
    PHASE_SKIPPED,
    RUN_FINISHED,
    RUN_STARTED,
    RunJournal,
)
from phasegate.orchestration.testing import (
    FailingInvoker,
    FixedClock,
    ScriptedInvoker,
    StubInvoker,
    assert_phase_output,
    assert_phase_skipped,
    assert_phases_ran,
    assert_run_aborted,
    assert_run_completed,
    make_definition,
    make_executor,
)
from phasegate.orchestration.unit import FailureKind, UnitResult

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class _BrokenChannel:
    def present(self, question, title, context_snapshot):
        raise ConnectionError("review service unavailable")


def _raise(view):
    raise RuntimeError("predicate exploded")


def _run_in_thread(executor, definition, params=None, context=None):
    box: dict = {}

    def target():
        box["outcome"] = executor.run(definition, params, context=context)

    worker = threading.Thread(target=target, daemon=True)
    worker.start()
    return worker, box


# ---------------------------------------------------------------------------
# Sequential execution
# ---------------------------------------------------------------------------


class TestSequentialExecution:
    def test_phases_run_in_order(self):
        invoker = StubInvoker({"a": {"n": 1}, "b": {"n": 2}, "c": {"n": 3}})
        outcome = make_executor(invoker).run(make_definition("a", "b", "c"))
        assert_run_completed(outcome)
        assert invoker.unit_names == ["a", "b", "c"]
        assert outcome.executed_phases == ["a", "b", "c"]
        assert_phase_output(outcome, "b", "n", 2)

    def test_params_merge_over_defaults(self):
        invoker = ScriptedInvoker({"a": lambda payload: {"env": payload["env"]}})
        definition = make_definition(
            PhaseSpec.task("a", UnitTemplate("a", payload=lambda v: {"env": v.param("env")})),
            defaults={"env": "staging", "region": "eu"},
        )
        outcome = make_executor(invoker).run(definition, {"env": "prod"})
        assert_phase_output(outcome, "a", "env", "prod")
        assert outcome.run_state.params["region"] == "eu"

    def test_later_phase_sees_earlier_output(self):
        invoker = ScriptedInvoker(
            {
                "analyze": {"replicas": 4},
                "configure": lambda payload: {"configured": payload["replicas"] * 2},
            }
        )
        definition = make_definition(
            "analyze",
            PhaseSpec.task(
                "configure",
                UnitTemplate("configure", payload=lambda v: {"replicas": v.output("analyze", "replicas")}),
            ),
        )
        outcome = make_executor(invoker).run(definition)
        assert_phase_output(outcome, "configure", "configured", 8)

    def test_payload_builder_cannot_see_later_phases(self):
        seen = {}

        def payload(view):
            seen["phases"] = list(view.phase_names)
            return {}

        definition = make_definition("a", PhaseSpec.task("b", UnitTemplate("b", payload=payload)), "c")
        make_executor().run(definition)
        assert seen["phases"] == ["a"]

    def test_executor_is_reusable(self, simple_definition, stub_invoker):
        executor = make_executor(stub_invoker)
        first = executor.run(simple_definition)
        second = executor.run(simple_definition)
        assert first.run_id != second.run_id
        assert first.score == second.score


# ---------------------------------------------------------------------------
# Activation
# ---------------------------------------------------------------------------


class TestActivation:
    def test_inactive_phase_is_skipped(self):
        invoker = StubInvoker()
        definition = make_definition(
            "analyze",
            PhaseSpec.task("vpa", "configure-vpa", activation=param_is("enable_vpa")),
            "policies",
        )
        outcome = make_executor(invoker).run(definition, {"enable_vpa": False})
        assert_run_completed(outcome)
        assert_phase_skipped(outcome, "vpa")
        assert invoker.called("configure-vpa") == 0
        assert not outcome.run_state.has_output("vpa")
        assert outcome.executed_phases == ["analyze", "policies"]
        assert outcome.journal.of_type(PHASE_SKIPPED)[0].data == {"phase": "vpa"}

    def test_activation_sees_prior_outputs(self):
        definition = make_definition(
            "scan",
            PhaseSpec.task("remediate", "fix", activation=Condition("phases.scan.output.critical", "gt", 0)),
        )
        clean = make_executor(StubInvoker({"scan": {"critical": 0}})).run(definition)
        dirty = make_executor(StubInvoker({"scan": {"critical": 2}})).run(definition)
        assert_phase_skipped(clean, "remediate")
        assert_phases_ran(dirty, "remediate")

    def test_activation_error_fails_required_phase(self):
        definition = make_definition("a", PhaseSpec.task("b", "b", activation=_raise), "c")
        outcome = make_executor().run(definition)
        assert_run_aborted(outcome, phase="b", kind=FailureKind.VALIDATION, message_contains="predicate exploded")

    def test_activation_error_on_optional_phase_continues(self):
        definition = make_definition("a", PhaseSpec.task("b", "b", activation=_raise, required=False), "c")
        outcome = make_executor().run(definition)
        assert_run_completed(outcome)
        assert outcome.phase("b").status is PhaseStatus.FAILED
        assert [e.phase for e in outcome.errors] == ["b"]


# ---------------------------------------------------------------------------
# Failure policy
# ---------------------------------------------------------------------------


class TestFailurePolicy:
    def test_optional_failure_continues(self):
        """Three phases, the optional middle one fails, the third still runs."""
        invoker = FailingInvoker("vpa unavailable", fail_units={"b"})
        definition = make_definition("a", PhaseSpec.task("b", "b", required=False), "c")
        outcome = make_executor(invoker).run(definition)

        assert_run_completed(outcome)
        assert outcome.status is RunStatus.COMPLETED
        assert [e.phase for e in outcome.errors] == ["b"]
        assert outcome.errors[0].kind is FailureKind.EXECUTION
        assert not outcome.errors[0].fatal
        assert outcome.phase("b").status is PhaseStatus.FAILED
        assert invoker.called("c") == 1
        assert outcome.failure is None

    def test_required_failure_aborts(self):
        invoker = FailingInvoker("cluster unreachable", fail_units={"b"})
        outcome = make_executor(invoker).run(make_definition("a", "b", "c"))

        assert_run_aborted(outcome, phase="b", kind=FailureKind.EXECUTION, message_contains="cluster unreachable")
        assert invoker.called("c") == 0
        assert outcome.phase("c") is None
        assert outcome.phase("b").status is PhaseStatus.ABORTED
        assert outcome.run_state.status("b") is PhaseStatus.ABORTED
        assert [e.fatal for e in outcome.errors] == [False, True]

    def test_invoker_exception_is_contained(self):
        invoker = ScriptedInvoker({"b": RuntimeError("segfault in agent")})
        outcome = make_executor(invoker).run(make_definition("a", "b"))
        assert_run_aborted(outcome, phase="b", kind=FailureKind.EXECUTION, message_contains="segfault")

    def test_validation_failure_kind_is_preserved(self):
        invoker = FailingInvoker("bad payload", kind=FailureKind.VALIDATION)
        outcome = make_executor(invoker).run(make_definition("a"))
        assert_run_aborted(outcome, phase="a", kind=FailureKind.VALIDATION)

    def test_aborted_run_keeps_partial_results(self):
        invoker = ScriptedInvoker(
            {
                "a": {"artifacts": [{"path": "a.json"}], "score_components": [{"name": "a", "weight": 0.5, "value": 80}]},
                "b": UnitResult.failure("EXECUTION", "boom"),
            }
        )
        outcome = make_executor(invoker).run(make_definition("a", "b"))
        assert outcome.aborted
        assert [a.path for a in outcome.artifacts] == ["a.json"]
        assert outcome.score == pytest.approx(40.0)


# ---------------------------------------------------------------------------
# Fan-out
# ---------------------------------------------------------------------------


class TestFanOut:
    def _scan_invoker(self, failing: set[int]) -> ScriptedInvoker:
        def scan(payload):
            if payload["item"] in failing:
                return UnitResult.failure("EXECUTION", f"scan {payload['item']} failed")
            return {"item": payload["item"]}

        return ScriptedInvoker({"scan": scan})

    def test_best_effort_keeps_partial_results(self):
        """Five units, the second and fourth fail: results stay in input order."""
        definition = make_definition(
            PhaseSpec.fan_out("scan", "scan", items="params.items", join="best_effort"),
            "report",
        )
        outcome = make_executor(self._scan_invoker({1, 3})).run(definition, {"items": [0, 1, 2, 3, 4]})

        assert_run_completed(outcome)
        record = outcome.phase("scan")
        assert len(record.unit_results) == 5
        assert [r.ok for r in record.unit_results] == [True, False, True, False, True]
        assert len(outcome.errors) == 2
        assert {e.unit for e in outcome.errors} == {"scan"}

        output = outcome.run_state.output("scan")
        assert output["succeeded"] == 3
        assert output["failed"] == 2
        assert output["results"][0] == {"item": 0}
        assert output["results"][1] is None
        assert_phases_ran(outcome, "report")

    def test_best_effort_fails_when_nothing_succeeds(self):
        definition = make_definition(PhaseSpec.fan_out("scan", "scan", items="params.items", join="best_effort"))
        outcome = make_executor(self._scan_invoker({0, 1})).run(definition, {"items": [0, 1]})
        assert_run_aborted(outcome, phase="scan", message_contains="2 of 2 units failed")

    def test_all_must_succeed(self):
        definition = make_definition(PhaseSpec.fan_out("scan", "scan", items="params.items"), "report")
        outcome = make_executor(self._scan_invoker({2})).run(definition, {"items": [0, 1, 2]})
        assert_run_aborted(outcome, phase="scan", kind=FailureKind.EXECUTION, message_contains="scan 2 failed")

    def test_empty_fan_out_completes(self):
        definition = make_definition(PhaseSpec.fan_out("scan", "scan", items="params.items"))
        outcome = make_executor().run(definition, {"items": []})
        assert_run_completed(outcome)
        assert outcome.run_state.to_dict()["phases"]["scan"]["output"] == {"results": [], "succeeded": 0, "failed": 0}

    def test_static_parallel_units(self):
        invoker = StubInvoker({"hpa": {"kind": "hpa"}, "vpa": {"kind": "vpa"}})
        definition = make_definition(PhaseSpec.parallel("configure", ["hpa", "vpa"]))
        outcome = make_executor(invoker).run(definition)
        results = outcome.run_state.output("configure", "results")
        assert [r["kind"] for r in results] == ["hpa", "vpa"]

    def test_custom_merge(self):
        def merge(results):
            return {"total": sum(r.output["n"] for r in results if r.ok)}

        invoker = ScriptedInvoker({"count": lambda payload: {"n": payload["item"]}})
        definition = make_definition(PhaseSpec.fan_out("count", "count", items="params.items", merge=merge))
        outcome = make_executor(invoker).run(definition, {"items": [1, 2, 3]})
        assert_phase_output(outcome, "count", "total", 6)

    def test_units_do_not_share_nested_payload(self):
        template = UnitTemplate("scan", payload={"tags": ["base"]})

        def scan(payload):
            payload["tags"].append(payload["item"])
            return {"tags": payload["tags"]}

        definition = make_definition(PhaseSpec.fan_out("scan", template, items="params.items"))
        executor = make_executor(ScriptedInvoker({"scan": scan}), max_concurrency=1)
        for _ in range(2):
            outcome = executor.run(definition, {"items": [1, 2]})
            results = outcome.run_state.to_dict()["phases"]["scan"]["output"]["results"]
            assert results == [{"tags": ["base", 1]}, {"tags": ["base", 2]}]
        assert template.payload == {"tags": ["base"]}

    def test_workers_see_run_log_context(self):
        seen: list[dict] = []
        lock = threading.Lock()

        def scan(payload):
            with lock:
                seen.append(dict(structlog.contextvars.get_contextvars()))
            return {}

        definition = make_definition(PhaseSpec.fan_out("scan", "scan", items="params.items"))
        outcome = make_executor(ScriptedInvoker({"scan": scan})).run(definition, {"items": [0, 1, 2]})

        assert len(seen) == 3
        for bound in seen:
            assert bound["run_id"] == outcome.run_id
            assert bound["process"] == "test.process"
            assert bound["phase"] == "scan"

    def test_worker_errors_are_logged_with_run_context(self, capsys):
        configure_logging(level="INFO", json_format=True)
        definition = make_definition(PhaseSpec.fan_out("scan", "scan", items="params.items", join="best_effort"))
        outcome = make_executor(self._scan_invoker_raising({1})).run(definition, {"items": [0, 1]})

        lines = [json.loads(line) for line in capsys.readouterr().err.splitlines() if line.startswith("{")]
        (error_line,) = [line for line in lines if line["event"] == "unit.error"]
        assert error_line["run_id"] == outcome.run_id
        assert error_line["phase"] == "scan"

    def _scan_invoker_raising(self, failing: set[int]) -> ScriptedInvoker:
        def scan(payload):
            if payload["item"] in failing:
                raise RuntimeError(f"scan {payload['item']} crashed")
            return {"item": payload["item"]}

        return ScriptedInvoker({"scan": scan})


# ---------------------------------------------------------------------------
# Output conventions
# ---------------------------------------------------------------------------


class TestArtifactsAndScores:
    def test_artifacts_keep_emission_order(self):
        invoker = StubInvoker(
            {
                "a": {"artifacts": [{"path": "a1.json"}, {"path": "a2.yaml", "format": "yaml"}]},
                "b": {"artifacts": [{"path": "b1.md", "format": "markdown", "label": "Report"}]},
            }
        )
        outcome = make_executor(invoker).run(make_definition("a", "b"))
        assert [a.path for a in outcome.artifacts] == ["a1.json", "a2.yaml", "b1.md"]
        assert [a.phase for a in outcome.artifacts] == ["a", "a", "b"]

    def test_score_and_verdict(self, simple_definition, stub_invoker):
        outcome = make_executor(stub_invoker).run(simple_definition)
        assert outcome.score == pytest.approx(86.0)
        assert outcome.verdict == "good"
        assert [c.name for c in outcome.final_score.components] == ["analysis", "configuration"]

    def test_phase_scores_callable(self):
        definition = make_definition(
            PhaseSpec.task("lint", "lint", scores=lambda output: [("lint", 1.0, 100 - output["warnings"] * 10)])
        )
        outcome = make_executor(StubInvoker({"lint": {"warnings": 3}})).run(definition)
        assert outcome.score == pytest.approx(70.0)
        assert outcome.verdict == "acceptable"

    def test_unknown_component_fails_phase(self):
        definition = make_definition("a", score_weights={"known": 1.0})
        outcome = make_executor(StubInvoker({"a": {"score_components": {"unknown": 50}}})).run(definition)
        assert_run_aborted(outcome, phase="a", kind=FailureKind.VALIDATION)
        assert outcome.final_score.components == ()

    def test_malformed_artifacts_fail_phase(self):
        outcome = make_executor(StubInvoker({"a": {"artifacts": "a.json"}})).run(make_definition("a"))
        assert_run_aborted(outcome, phase="a", kind=FailureKind.VALIDATION)

    def test_failed_units_contribute_nothing(self):
        invoker = ScriptedInvoker(
            {
                "scan": lambda payload: UnitResult.failure("EXECUTION", "x")
                if payload["item"] == 1
                else {"artifacts": [{"path": f"scan-{payload['item']}.json"}]}
            }
        )
        definition = make_definition(PhaseSpec.fan_out("scan", "scan", items="params.items", join="best_effort"))
        outcome = make_executor(invoker).run(definition, {"items": [0, 1, 2]})
        assert [a.path for a in outcome.artifacts] == ["scan-0.json", "scan-2.json"]

    def test_weight_mismatch_is_a_warning(self):
        definition = make_definition("a")
        outcome = make_executor(StubInvoker({"a": {"score_components": [{"name": "a", "weight": 0.5, "value": 100}]}})).run(
            definition
        )
        assert_run_completed(outcome)
        assert outcome.final_score.weight_mismatch
        assert outcome.score == 50.0


# ---------------------------------------------------------------------------
# Gates
# ---------------------------------------------------------------------------


class TestGates:
    def test_unconditional_gate_is_presented(self, simple_definition, stub_invoker):
        channel = ScriptedDecisionChannel({"analysis-review": "approve"})
        outcome = make_executor(stub_invoker, channel).run(simple_definition)
        assert_run_completed(outcome)
        assert channel.presented == [("analysis-review", "Approve the analysis?")]
        decision = outcome.decisions[0]
        assert (decision.gate, decision.decision, decision.decided_by) == ("analysis-review", "approved", "script")
        assert outcome.breakpoints[0].decision.value == "approved"

    def test_gate_not_fired(self):
        gate = GateSpec.when("issues", Condition("phases.a.output.issues", "gt", 0), "Issues found. Continue?")
        channel = ScriptedDecisionChannel({})
        outcome = make_executor(StubInvoker({"a": {"issues": 0}}), channel).run(
            make_definition(PhaseSpec.task("a", "a", gates=[gate]))
        )
        assert_run_completed(outcome)
        assert channel.presented == []
        assert outcome.breakpoints == []

    def test_blocking_rejection_aborts(self, simple_definition, stub_invoker):
        channel = ScriptedDecisionChannel({"analysis-review": {"approved": False, "notes": "wrong services"}})
        outcome = make_executor(stub_invoker, channel).run(simple_definition)

        assert_run_aborted(outcome, phase="analyze", kind=FailureKind.GATE_REJECTED, message_contains="wrong services")
        assert stub_invoker.called("configure") == 0
        assert outcome.run_state.status("analyze") is PhaseStatus.ABORTED
        assert outcome.phase("analyze").status is PhaseStatus.ABORTED
        assert outcome.run_state.has_output("analyze")

    def test_advisory_rejection_is_recorded(self):
        gate = GateSpec.review("advice", "Proceed?", policy=GatePolicy.ADVISORY)
        definition = make_definition(PhaseSpec.task("a", "a", gates=[gate]), "b")
        outcome = make_executor(StubInvoker(), ScriptedDecisionChannel(default="reject")).run(definition)

        assert_run_completed(outcome)
        assert_phases_ran(outcome, "b")
        assert [(e.kind, e.fatal) for e in outcome.errors] == [(FailureKind.GATE_REJECTED, False)]
        assert outcome.decisions[0].decision == "rejected"

    def test_gates_run_in_declared_order(self):
        gates = [GateSpec.review("first", "1?"), GateSpec.review("second", "2?")]
        channel = ScriptedDecisionChannel(default=True)
        make_executor(StubInvoker(), channel).run(make_definition(PhaseSpec.task("a", "a", gates=gates)))
        assert [title for title, _ in channel.presented] == ["first", "second"]

    def test_gate_after_optional_failure(self):
        gate = GateSpec.review("after-vpa", "VPA failed. Continue?")
        definition = make_definition(PhaseSpec.task("vpa", "vpa", required=False, gates=[gate]), "c")
        channel = ScriptedDecisionChannel(default=True)
        outcome = make_executor(FailingInvoker(fail_units={"vpa"}), channel).run(definition)
        assert_run_completed(outcome)
        assert channel.presented == [("after-vpa", "VPA failed. Continue?")]

    def test_skipped_phase_gates_do_not_fire(self):
        gate = GateSpec.review("vpa-review", "Review VPA?")
        definition = make_definition(PhaseSpec.task("vpa", "vpa", activation=param_is("enable_vpa"), gates=[gate]))
        channel = ScriptedDecisionChannel({})
        outcome = make_executor(StubInvoker(), channel).run(definition, {"enable_vpa": False})
        assert_run_completed(outcome)
        assert channel.presented == []

    def test_broken_predicate_fires_gate(self):
        gate = GateSpec.when("fragile", _raise, "Predicate broke. Continue?")
        channel = ScriptedDecisionChannel(default=True)
        outcome = make_executor(StubInvoker(), channel).run(make_definition(PhaseSpec.task("a", "a", gates=[gate])))
        assert_run_completed(outcome)
        assert len(channel.presented) == 1

    def test_channel_error_aborts(self, simple_definition, stub_invoker):
        outcome = make_executor(stub_invoker, _BrokenChannel()).run(simple_definition)
        assert_run_aborted(outcome, phase="analyze", kind=FailureKind.EXECUTION, message_contains="unavailable")

    def test_snapshot_and_rendered_question(self):
        gate = GateSpec.when(
            "budget",
            Condition("phases.plan.output.cost", "gt", 100),
            "Cost {phases[plan][cost]} exceeds {budget}. Proceed?",
            title="Budget Alert",
            context=lambda view: {"budget_source": "finance"},
        )
        captured = {}

        class Capture:
            def present(self, question, title, context_snapshot):
                captured.update(question=question, title=title, snapshot=context_snapshot)
                return True

        definition = make_definition(PhaseSpec.task("plan", "plan", gates=[gate]))
        make_executor(StubInvoker({"plan": {"cost": 250}}), Capture()).run(definition, {"budget": 100})

        assert captured["title"] == "Budget Alert"
        assert captured["question"] == "Cost 250 exceeds 100. Proceed?"
        snapshot = captured["snapshot"]
        assert snapshot["gate"] == "budget"
        assert snapshot["phase"] == "plan"
        assert snapshot["policy"] == "blocking"
        assert snapshot["budget_source"] == "finance"
        assert snapshot["phases"]["plan"]["output"] == {"cost": 250}

    def test_checkpoint_phase(self):
        definition = make_definition("a", PhaseSpec.checkpoint("review", GateSpec.review("final-review", "Ship?")))
        channel = ScriptedDecisionChannel({"final-review": True})
        outcome = make_executor(StubInvoker(), channel).run(definition)
        assert_run_completed(outcome)
        assert outcome.run_state.status("review") is PhaseStatus.COMPLETED


class TestCallableErrors:
    """Merge, scores, gate text and gate context callables that raise."""

    def test_required_merge_error_aborts(self):
        def merge(results):
            return {"total": results[0].output["missing"]}

        definition = make_definition(PhaseSpec.parallel("scan", ["a", "b"], merge=merge), "report")
        invoker = StubInvoker()
        outcome = make_executor(invoker).run(definition)

        assert_run_aborted(outcome, phase="scan", kind=FailureKind.EXECUTION, message_contains="KeyError")
        assert invoker.called("report") == 0
        assert not outcome.run_state.has_output("scan")

    def test_optional_scores_error_warns_and_continues(self):
        definition = make_definition(
            PhaseSpec.task("vpa", "vpa", required=False, scores=lambda output: [("vpa", 1.0, 1 / 0)]),
            "report",
        )
        outcome = make_executor().run(definition)

        assert_run_completed(outcome)
        assert_phases_ran(outcome, "report")
        assert outcome.phase("vpa").status is PhaseStatus.FAILED
        assert outcome.run_state.status("vpa") is PhaseStatus.FAILED
        assert [(e.phase, e.kind, e.fatal) for e in outcome.errors] == [("vpa", FailureKind.EXECUTION, False)]
        assert "ZeroDivisionError" in outcome.errors[0].message
        assert outcome.final_score.components == ()

    def test_gate_context_error_is_recorded_in_snapshot(self):
        gate = GateSpec.review("g", "ok?", context=lambda view: {"x": 1 / 0})
        captured = {}

        class Capture:
            def present(self, question, title, context_snapshot):
                captured.update(context_snapshot)
                return True

        outcome = make_executor(StubInvoker(), Capture()).run(make_definition(PhaseSpec.task("a", "a", gates=[gate])))

        assert_run_completed(outcome)
        assert captured["gate"] == "g"
        assert captured["context_error"].startswith("ZeroDivisionError")
        assert "x" not in captured

    def test_gate_text_error_falls_back(self):
        gate = GateSpec.review("fragile", _raise, title=_raise)
        channel = ScriptedDecisionChannel(default=True)
        outcome = make_executor(StubInvoker(), channel).run(make_definition(PhaseSpec.task("a", "a", gates=[gate])))

        assert_run_completed(outcome)
        assert channel.presented == [("fragile", "Approve gate 'fragile'?")]
        assert outcome.decisions[0].question == "Approve gate 'fragile'?"

    def test_gate_title_error_keeps_template_question(self):
        gate = GateSpec.review("fragile", "Ship it?", title=_raise)
        channel = ScriptedDecisionChannel(default=True)
        make_executor(StubInvoker(), channel).run(make_definition(PhaseSpec.task("a", "a", gates=[gate])))
        assert channel.presented == [("fragile", "Ship it?")]


@pytest.mark.slow
class TestSuspension:
    def test_run_suspends_until_resolved(self):
        """A score gate fires and the run waits on the queue until resolve()."""
        gate = GateSpec.when(
            "quality",
            lambda view: view.score < 80,
            "Score {score} is below 80. Continue?",
            title="Quality gate",
        )
        definition = make_definition(PhaseSpec.task("assess", "assess", gates=[gate]), "publish", name="suspend.demo")
        invoker = StubInvoker({"assess": {"score_components": [{"name": "quality", "weight": 1.0, "value": 60}]}})
        queue = DecisionQueue()
        executor = make_executor(invoker, queue)

        worker, box = _run_in_thread(executor, definition)
        request = queue.wait_for_request(timeout=5)
        assert request is not None
        assert request.title == "Quality gate"
        assert request.question == "Score 60.0 is below 80. Continue?"

        (active,) = executor.active_gates()
        assert active.state is GateState.AWAITING_DECISION
        assert active.name == "quality"
        assert invoker.called("publish") == 0
        assert worker.is_alive()

        queue.approve(request.ticket, decided_by="alice")
        worker.join(timeout=5)
        assert not worker.is_alive()

        outcome = box["outcome"]
        assert_run_completed(outcome)
        assert invoker.called("publish") == 1
        assert executor.active_gates() == []
        assert outcome.decisions[0].decided_by == "alice"

    def test_rejection_through_queue(self):
        definition = make_definition(PhaseSpec.checkpoint("review", GateSpec.review("final-review", "Ship?")), "deploy")
        queue = DecisionQueue()
        invoker = StubInvoker()
        worker, box = _run_in_thread(make_executor(invoker, queue), definition)
        request = queue.wait_for_request(timeout=5)
        queue.reject(request.ticket, notes="not today")
        worker.join(timeout=5)

        assert_run_aborted(box["outcome"], phase="review", kind=FailureKind.GATE_REJECTED)
        assert invoker.called("deploy") == 0


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


class TestCancellation:
    def test_cancelled_between_phases(self):
        ctx = RunContext.create("test.process")
        invoker = ScriptedInvoker({"a": lambda payload: ctx.cancel("operator") or {}})
        outcome = make_executor(invoker).run(make_definition("a", "b"), context=ctx)

        assert_run_aborted(outcome, phase="b", kind=FailureKind.CANCELLED, message_contains="operator")
        assert invoker.called("b") == 0
        assert_phases_ran(outcome, "a")
        assert outcome.errors[-1].fatal

    def test_cancelled_mid_fan_out(self):
        ctx = RunContext.create("test.process")

        def scan(payload):
            if payload["item"] == 0:
                ctx.cancel("deadline")
            return {}

        invoker = ScriptedInvoker({"scan": scan})
        definition = make_definition(
            PhaseSpec.fan_out("scan", "scan", items="params.items", join="best_effort", max_concurrency=1, required=False),
            "after",
        )
        outcome = make_executor(invoker).run(definition, {"items": [0, 1, 2]}, context=ctx)

        assert_run_aborted(outcome, phase="scan", kind=FailureKind.CANCELLED)
        assert invoker.called("scan") == 1
        assert invoker.called("after") == 0
        kinds = [r.kind for r in outcome.phase("scan").unit_results]
        assert kinds == [None, FailureKind.CANCELLED, FailureKind.CANCELLED]


# ---------------------------------------------------------------------------
# RunOutcome and journal
# ---------------------------------------------------------------------------


class TestOutcomeReport:
    def test_to_dict_is_json_serializable(self, simple_definition, stub_invoker):
        ctx = RunContext.create(simple_definition.name, run_id="run-1", clock=FixedClock())
        outcome = make_executor(stub_invoker).run(simple_definition, {"services": ["api"]}, context=ctx)
        data = json.loads(outcome.to_json())

        assert data["status"] == "completed"
        assert data["run_id"] == "run-1"
        assert data["process"] == "test.simple"
        assert [p["name"] for p in data["phases"]] == ["analyze", "configure"]
        assert data["verdict"] == "good"
        assert data["failure"] is None
        assert data["run_state"]["params"] == {"services": ["api"]}
        assert data["decisions"][0]["gate"] == "analysis-review"
        assert data["journal"][0]["type"] == RUN_STARTED

    def test_journal_sequence(self, simple_definition, stub_invoker):
        outcome = make_executor(stub_invoker).run(simple_definition)
        assert outcome.journal.types() == [
            "run.started",
            "phase.started",
            "unit.completed",
            "phase.completed",
            BREAKPOINT_REQUESTED,
            BREAKPOINT_RESOLVED,
            "phase.started",
            "unit.completed",
            "phase.completed",
            RUN_FINISHED,
        ]

    def test_journal_written_to_directory(self, tmp_path, simple_definition, stub_invoker):
        outcome = make_executor(stub_invoker, journal_dir=tmp_path).run(simple_definition)
        path = tmp_path / f"{outcome.run_id}.jsonl"
        assert RunJournal.read(path)[-1]["data"]["status"] == "completed"

    def test_duration_with_fixed_clock(self, simple_definition, stub_invoker):
        ctx = RunContext.create(simple_definition.name, clock=FixedClock())
        outcome = make_executor(stub_invoker).run(simple_definition, context=ctx)
        assert outcome.duration_seconds > 0
        assert outcome.started_at < outcome.completed_at

    def test_repr(self, simple_definition, stub_invoker):
        outcome = make_executor(stub_invoker).run(simple_definition)
        assert "status=completed" in repr(outcome)


class TestExecutorConfig:
    def test_invalid_width(self):
        with pytest.raises(InvalidConfigError):
            PhaseExecutor(StubInvoker(), max_concurrency=0)

    def test_defaults_from_settings(self, tmp_path):
        settings = EngineSettings(_env_file=None, max_concurrency=2, journal_dir=tmp_path)
        outcome = PhaseExecutor(StubInvoker(), AutoApproveChannel(), settings=settings).run(make_definition("a"))
        assert outcome.journal.path == tmp_path / f"{outcome.run_id}.jsonl"

    def test_default_channel_is_queue(self):
        assert isinstance(PhaseExecutor(StubInvoker()).decisions, DecisionQueue)


class TestDefinitionFromCode:
    def test_definition_object_is_not_mutated(self, simple_definition, stub_invoker):
        before = simple_definition.to_dict()
        make_executor(stub_invoker).run(simple_definition, {"x": 1})
        assert simple_definition.to_dict() == before
        assert isinstance(simple_definition, ProcessDefinition)
