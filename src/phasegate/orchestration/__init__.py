"""
Phasegate Orchestration — phase-gated workflow engine.

WHY
───
Every operational process (auto-scaling setup, DR planning, supply-chain
hardening, IAM review) has the same shape: ordered phases, some skipped by
configuration, work fanned out to independent units, quality gates that
pause for a human decision, artifacts accumulated along the way, and a
weighted score at the end.  This package is that substrate, with the
domain content (task names, payloads, weights) supplied as data.

ARCHITECTURE
────────────
::

    ProcessDefinition (ordered PhaseSpec list)
      ├── PhaseSpec.task()        ─ one unit
      ├── PhaseSpec.parallel()    ─ static fan-out
      ├── PhaseSpec.fan_out()     ─ one unit per run-state item
      └── PhaseSpec.checkpoint()  ─ gate only

    PhaseExecutor          ─ drives phases, single writer of RunState
    FanOutJoin             ─ bounded concurrent units, input-order results
    BreakpointGate         ─ Idle → Triggered → AwaitingDecision → Resumed|Aborted
    ArtifactLedger         ─ append-only artifact list
    ScoreAggregator        ─ weighted components → score + verdict
    RunOutcome             ─ terminal, serializable report

MODULE MAP (recommended reading order)
──────────────────────────────────────
1. unit.py            ─ UnitOfWork, UnitResult, FailureKind
2. run_context.py     ─ run identity, clock, cancellation
3. ledger.py          ─ Artifact + ArtifactLedger
4. scoring.py         ─ ScoreAggregator + VerdictTable
5. run_state.py       ─ RunState + immutable RunStateView
6. predicates.py      ─ declarative activation / gate conditions
7. phase.py           ─ PhaseSpec, GateSpec, ProcessDefinition
8. invoker.py         ─ TaskInvoker protocol + stock invokers
9. fan_out.py         ─ FanOutJoin
10. breakpoint.py     ─ BreakpointGate + decision channels
11. journal.py        ─ run event journal
12. phase_executor.py ─ PhaseExecutor + RunOutcome
13. process_yaml.py   ─ YAML process definitions
14. testing.py        ─ test doubles and assertions
"""

from phasegate.orchestration.breakpoint import (
    AutoApproveChannel,
    Breakpoint,
    BreakpointGate,
    Decision,
    DecisionChannel,
    DecisionQueue,
    DecisionRequest,
    DecisionStatus,
    GateState,
    ScriptedDecisionChannel,
)
from phasegate.orchestration.fan_out import FanOutJoin
from phasegate.orchestration.invoker import (
    CallableInvoker,
    DryRunInvoker,
    SchemaValidatingInvoker,
    TaskInvoker,
    invoke_unit,
)
from phasegate.orchestration.journal import JournalEvent, RunJournal
from phasegate.orchestration.ledger import Artifact, ArtifactLedger
from phasegate.orchestration.phase import (
    FanOutTemplate,
    GatePolicy,
    GateSpec,
    JoinPolicy,
    PhaseSpec,
    ProcessDefinition,
    UnitTemplate,
    resolve_callable_ref,
)
from phasegate.orchestration.phase_executor import (
    PhaseExecutor,
    PhaseRecord,
    RunFailure,
    RunOutcome,
    RunStatus,
)
from phasegate.orchestration.predicates import (
    Condition,
    all_of,
    always,
    any_of,
    never,
    not_,
    param_is,
)
from phasegate.orchestration.process_yaml import ProcessSpec, load_process
from phasegate.orchestration.run_context import RunContext
from phasegate.orchestration.run_state import (
    DecisionRecord,
    ErrorRecord,
    PhaseStatus,
    RunState,
    RunStateView,
)
from phasegate.orchestration.scoring import (
    FinalScore,
    ScoreAggregator,
    ScoreComponent,
    VerdictTable,
)
from phasegate.orchestration.unit import (
    Failure,
    FailureKind,
    Success,
    UnitOfWork,
    UnitResult,
)

__all__ = [
    # Units
    "UnitOfWork",
    "UnitResult",
    "FailureKind",
    "Success",
    "Failure",
    # Context / state
    "RunContext",
    "RunState",
    "RunStateView",
    "PhaseStatus",
    "ErrorRecord",
    "DecisionRecord",
    # Definition
    "ProcessDefinition",
    "PhaseSpec",
    "GateSpec",
    "UnitTemplate",
    "FanOutTemplate",
    "JoinPolicy",
    "GatePolicy",
    "resolve_callable_ref",
    "Condition",
    "all_of",
    "any_of",
    "not_",
    "param_is",
    "always",
    "never",
    # Invokers
    "TaskInvoker",
    "CallableInvoker",
    "SchemaValidatingInvoker",
    "DryRunInvoker",
    "invoke_unit",
    # Execution
    "FanOutJoin",
    "PhaseExecutor",
    "PhaseRecord",
    "RunOutcome",
    "RunStatus",
    "RunFailure",
    # Gates
    "BreakpointGate",
    "Breakpoint",
    "GateState",
    "Decision",
    "DecisionStatus",
    "DecisionChannel",
    "AutoApproveChannel",
    "ScriptedDecisionChannel",
    "DecisionQueue",
    "DecisionRequest",
    # Ledger / scoring / journal
    "Artifact",
    "ArtifactLedger",
    "ScoreAggregator",
    "ScoreComponent",
    "FinalScore",
    "VerdictTable",
    "RunJournal",
    "JournalEvent",
    # YAML
    "ProcessSpec",
    "load_process",
]
