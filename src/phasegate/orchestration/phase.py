"""Process definitions — ordered phases, their work, and their gates.

Manifesto:
    A process (auto-scaling setup, DR planning, IAM review ...) is a fixed,
    ordered list of phases.  Each phase declares **what** work to submit,
    **when** it applies, whether its failure is fatal, and which quality
    gates follow it.  It never declares **how** work is executed (that is
    the invoker's job) nor how phases are driven (the executor's job).

ARCHITECTURE
────────────
::

    ProcessDefinition
      ├── phases[]          ── ordered PhaseSpec list, never reordered
      ├── defaults{}        ── default params merged under the run input
      ├── score_weights{}   ── component name → weight
      └── verdicts          ── VerdictTable

    PhaseSpec
      ├── .task(name, unit)                   ── one unit
      ├── .parallel(name, [units])            ── static fan-out
      ├── .fan_out(name, unit, items=...)     ── one unit per item
      ├── .checkpoint(name, gate)             ── no work, just a gate
      ├── activation  ── predicate over RunStateView
      ├── required    ── hard-fail vs continue-and-warn
      └── gates[]     ── GateSpec evaluated after the phase

    GateSpec ── predicate, title/question, BLOCKING | ADVISORY

Example::

    definition = ProcessDefinition(
        name="auto-scaling",
        phases=[
            PhaseSpec.task("analyze", UnitTemplate("analyze-workload"),
                           gates=[GateSpec.review("workload-review", "Approve workload analysis?")]),
            PhaseSpec.task("vpa", UnitTemplate("configure-vpa"), required=False,
                           activation=param_is("enable_vpa")),
        ],
        score_weights={"analysis": 0.4, "configuration": 0.6},
    )

Tags:
    phasegate, orchestration, definition, phases, gates
"""

from __future__ import annotations

import copy
import importlib
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from phasegate.core.errors import DefinitionError
from phasegate.orchestration.predicates import Predicate, always, describe
from phasegate.orchestration.scoring import VerdictTable
from phasegate.orchestration.unit import UnitOfWork, UnitResult

if TYPE_CHECKING:
    from phasegate.orchestration.run_state import RunStateView


def resolve_callable_ref(ref: str) -> Callable[..., Any]:
    """Import and return the callable identified by ``'module:qualname'``.

    Raises:
        DefinitionError: If the reference is malformed, cannot be imported,
            or does not resolve to a callable.
    """
    module_path, _, attr_path = ref.partition(":")
    if not attr_path:
        raise DefinitionError(f"Invalid callable ref (missing ':'): {ref!r}")
    try:
        obj: Any = importlib.import_module(module_path)
        for part in attr_path.split("."):
            obj = getattr(obj, part)
    except (ImportError, AttributeError) as e:
        raise DefinitionError(f"Cannot resolve callable ref {ref!r}: {e}", cause=e) from e
    if not callable(obj):
        raise DefinitionError(f"{ref!r} resolved to non-callable: {type(obj)}")
    return obj


class JoinPolicy(str, Enum):
    """How a multi-unit phase turns unit results into a phase result."""

    ALL_MUST_SUCCEED = "all"  # any unit failure fails the phase
    BEST_EFFORT = "best_effort"  # unit failures are recorded; phase fails only if none succeeded


class GatePolicy(str, Enum):
    """What a rejected breakpoint does to the run."""

    BLOCKING = "blocking"  # rejection aborts the run
    ADVISORY = "advisory"  # rejection is recorded, run continues


# =============================================================================
# Units
# =============================================================================

PayloadFn = Callable[["RunStateView"], Mapping[str, Any]]
ItemPayloadFn = Callable[[Any, "RunStateView"], Mapping[str, Any]]


@dataclass(frozen=True)
class UnitTemplate:
    """
    Blueprint for one unit of work.

    Attributes:
        name: Task name passed to the invoker
        payload: Static mapping, or callable building the payload from the
            run-state snapshot
        output_shape: Expected output description (e.g. JSON schema)
        labels: Free-form tags
    """

    name: str
    payload: Mapping[str, Any] | PayloadFn | None = None
    output_shape: Mapping[str, Any] | None = None
    labels: tuple[str, ...] = ()

    def build(self, view: RunStateView, extra: Mapping[str, Any] | None = None) -> UnitOfWork:
        from phasegate.orchestration.run_state import to_plain

        if callable(self.payload):
            payload = dict(self.payload(view))
        else:
            payload = dict(self.payload or {})
        if extra:
            payload.update(extra)
        # every unit gets its own copy; templates are shared across units and runs
        return UnitOfWork(
            name=self.name,
            payload=copy.deepcopy(to_plain(payload)),
            output_shape=copy.deepcopy(to_plain(self.output_shape)) if self.output_shape is not None else None,
            labels=tuple(self.labels),
        )


@dataclass(frozen=True)
class FanOutTemplate:
    """
    One unit per item of a collection resolved from run state.

    ``items`` is either a dotted path into the run-state snapshot
    (``params.architectures``) or a callable of the view.  Each unit's
    payload is the template payload plus ``{item_key: item}``.
    """

    unit: UnitTemplate
    items: str | Callable[[RunStateView], Sequence[Any]]
    item_key: str = "item"

    def resolve_items(self, view: RunStateView) -> list[Any]:
        raw = view.lookup(self.items) if isinstance(self.items, str) else self.items(view)
        if raw is None:
            return []
        if isinstance(raw, str | bytes) or not isinstance(raw, Sequence):
            raise DefinitionError(f"Fan-out items for unit '{self.unit.name}' must be a sequence, got {type(raw).__name__}")
        return list(raw)

    def build(self, view: RunStateView) -> list[UnitOfWork]:
        return [self.unit.build(view, {self.item_key: item}) for item in self.resolve_items(view)]


# =============================================================================
# Gates
# =============================================================================

TextFn = Callable[["RunStateView"], str]


class _TemplateNamespace(dict):
    """``str.format_map`` namespace; missing keys raise KeyError."""


def render_text(text: str | TextFn, view: RunStateView) -> str:
    """Render a title/question for ``view``.

    Callables are called with the view; strings are formatted against the
    params, the phase outputs (``{phases[scan][critical_count]}``) and the
    current ``{score}``. If formatting fails the raw text is returned.
    """
    if callable(text):
        return str(text(view))
    snapshot = view.to_dict()
    namespace = _TemplateNamespace(snapshot["params"])
    namespace["phases"] = {name: info["output"] for name, info in snapshot["phases"].items()}
    namespace["score"] = round(snapshot["score"]["value"], 2)
    namespace["artifact_count"] = len(snapshot["artifacts"])
    try:
        return text.format_map(namespace)
    except (KeyError, IndexError, ValueError, AttributeError, TypeError):
        return text


@dataclass(frozen=True)
class GateSpec:
    """
    A quality gate attached to a phase.

    Attributes:
        name: Gate name, unique within the process
        question: Question shown to the decider (template or callable)
        title: Short title (template or callable)
        predicate: Fires the gate when true; defaults to always (checkpoint)
        policy: BLOCKING (reject aborts) or ADVISORY (reject is recorded)
        context: Optional callable adding extra keys to the context snapshot
    """

    name: str
    question: str | TextFn
    title: str | TextFn = ""
    predicate: Predicate = always
    policy: GatePolicy = GatePolicy.BLOCKING
    context: Callable[[RunStateView], Mapping[str, Any]] | None = None

    def __post_init__(self):
        if not self.name:
            raise DefinitionError("Gate name must not be empty")
        if not callable(self.predicate):
            raise DefinitionError(f"Gate '{self.name}' predicate is not callable")
        object.__setattr__(self, "policy", GatePolicy(self.policy))

    @classmethod
    def review(cls, name: str, question: str | TextFn, title: str | TextFn = "", **kwargs: Any) -> GateSpec:
        """Unconditional checkpoint."""
        return cls(name=name, question=question, title=title or name, **kwargs)

    @classmethod
    def when(
        cls,
        name: str,
        predicate: Predicate,
        question: str | TextFn,
        title: str | TextFn = "",
        **kwargs: Any,
    ) -> GateSpec:
        """Conditional gate, fires only when ``predicate`` holds."""
        return cls(name=name, question=question, title=title or name, predicate=predicate, **kwargs)

    @property
    def unconditional(self) -> bool:
        return self.predicate is always

    def render(self, view: RunStateView) -> tuple[str, str]:
        """Return ``(title, question)`` rendered against ``view``."""
        title = render_text(self.title, view) if self.title else self.name
        return title, render_text(self.question, view)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "title": self.title if isinstance(self.title, str) else describe(self.title),
            "question": self.question if isinstance(self.question, str) else describe(self.question),
            "when": describe(self.predicate),
            "policy": self.policy.value,
        }


# =============================================================================
# Phases
# =============================================================================

MergeFn = Callable[[list[UnitResult]], Mapping[str, Any]]
ScoresFn = Callable[[Mapping[str, Any]], Sequence[tuple[str, float | None, float]]]


@dataclass
class PhaseSpec:
    """
    One ordered step of a process.

    Use the factory methods:
    - PhaseSpec.task() for a single unit
    - PhaseSpec.parallel() for a static set of independent units
    - PhaseSpec.fan_out() for one unit per item resolved from run state
    - PhaseSpec.checkpoint() for a gate without work
    """

    name: str
    units: tuple[UnitTemplate, ...] = ()
    fan_out_over: FanOutTemplate | None = None
    required: bool = True
    activation: Predicate = always
    join: JoinPolicy = JoinPolicy.ALL_MUST_SUCCEED
    max_concurrency: int | None = None
    gates: tuple[GateSpec, ...] = ()
    merge: MergeFn | None = None
    scores: ScoresFn | None = None
    description: str = ""

    def __post_init__(self):
        if not self.name:
            raise DefinitionError("Phase name must not be empty")
        self.units = tuple(self.units)
        self.gates = tuple(self.gates)
        self.join = JoinPolicy(self.join)
        if self.units and self.fan_out_over is not None:
            raise DefinitionError(f"Phase '{self.name}' declares both units and a fan-out", phase=self.name)
        if not callable(self.activation):
            raise DefinitionError(f"Phase '{self.name}' activation predicate is not callable", phase=self.name)
        if self.max_concurrency is not None and self.max_concurrency < 1:
            raise DefinitionError(f"Phase '{self.name}' max_concurrency must be >= 1", phase=self.name)
        gate_names = [g.name for g in self.gates]
        if len(gate_names) != len(set(gate_names)):
            raise DefinitionError(f"Phase '{self.name}' has duplicate gate names", phase=self.name)

    # =========================================================================
    # Factory Methods
    # =========================================================================

    @classmethod
    def task(cls, name: str, unit: UnitTemplate | str, **kwargs: Any) -> PhaseSpec:
        """Phase that submits exactly one unit."""
        if isinstance(unit, str):
            unit = UnitTemplate(unit)
        return cls(name=name, units=(unit,), **kwargs)

    @classmethod
    def parallel(cls, name: str, units: Sequence[UnitTemplate | str], **kwargs: Any) -> PhaseSpec:
        """Phase that fans out a static set of units and joins on them."""
        templates = tuple(UnitTemplate(u) if isinstance(u, str) else u for u in units)
        return cls(name=name, units=templates, **kwargs)

    @classmethod
    def fan_out(
        cls,
        name: str,
        unit: UnitTemplate | str,
        items: str | Callable[[RunStateView], Sequence[Any]],
        item_key: str = "item",
        **kwargs: Any,
    ) -> PhaseSpec:
        """Phase that submits one unit per item resolved from run state."""
        if isinstance(unit, str):
            unit = UnitTemplate(unit)
        return cls(name=name, fan_out_over=FanOutTemplate(unit=unit, items=items, item_key=item_key), **kwargs)

    @classmethod
    def checkpoint(cls, name: str, gate: GateSpec, **kwargs: Any) -> PhaseSpec:
        """Phase with no work, only a gate."""
        return cls(name=name, gates=(gate,), **kwargs)

    # =========================================================================
    # Accessors
    # =========================================================================

    @property
    def is_fan_out(self) -> bool:
        """Whether units run through FanOutJoin (more than one, or dynamic)."""
        return self.fan_out_over is not None or len(self.units) > 1

    def build_units(self, view: RunStateView) -> list[UnitOfWork]:
        """Materialise this phase's units from the run-state snapshot."""
        if self.fan_out_over is not None:
            return self.fan_out_over.build(view)
        return [template.build(view) for template in self.units]

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "name": self.name,
            "required": self.required,
            "when": describe(self.activation),
        }
        if self.fan_out_over is not None:
            items = self.fan_out_over.items
            result["fan_out"] = {
                "unit": self.fan_out_over.unit.name,
                "items": items if isinstance(items, str) else describe(items),
            }
        else:
            result["units"] = [u.name for u in self.units]
        if self.is_fan_out:
            result["join"] = self.join.value
        if self.gates:
            result["gates"] = [g.to_dict() for g in self.gates]
        if self.description:
            result["description"] = self.description
        return result

    def __repr__(self) -> str:
        kind = "fan-out" if self.is_fan_out else "task"
        return f"PhaseSpec({self.name!r}, {kind}, required={self.required})"


# =============================================================================
# Process
# =============================================================================


@dataclass
class ProcessDefinition:
    """
    A named, ordered list of phases.

    Attributes:
        name: Unique process name (e.g. ``devops/auto-scaling``)
        phases: Ordered phases; order is fixed at definition time
        description: Human-readable description
        version: Definition version
        defaults: Default params, overridden by the run input
        score_weights: Component name → weight table
        verdicts: Verdict table applied to the final score
        tags: Optional tags
    """

    name: str
    phases: list[PhaseSpec]
    description: str = ""
    version: int = 1
    defaults: dict[str, Any] = field(default_factory=dict)
    score_weights: dict[str, float] = field(default_factory=dict)
    verdicts: VerdictTable = field(default_factory=VerdictTable.default)
    tags: list[str] = field(default_factory=list)

    def __post_init__(self):
        """Validate definition structure."""
        if not self.name:
            raise DefinitionError("Process name must not be empty")
        self.phases = list(self.phases)
        if not self.phases:
            raise DefinitionError("Process must declare at least one phase", process=self.name)
        self._validate_names()
        self._validate_weights()

    def _validate_names(self) -> None:
        seen: set[str] = set()
        gates: set[str] = set()
        for phase in self.phases:
            if phase.name in seen:
                raise DefinitionError(f"Duplicate phase name: {phase.name}", process=self.name, phase=phase.name)
            seen.add(phase.name)
            for gate in phase.gates:
                if gate.name in gates:
                    raise DefinitionError(f"Duplicate gate name: {gate.name}", process=self.name, phase=phase.name)
                gates.add(gate.name)

    def _validate_weights(self) -> None:
        for key, weight in self.score_weights.items():
            if isinstance(weight, bool) or not isinstance(weight, int | float):
                raise DefinitionError(f"Score weight for '{key}' must be a number, got {weight!r}", process=self.name)

    # =========================================================================
    # Accessors
    # =========================================================================

    def phase_names(self) -> list[str]:
        return [p.name for p in self.phases]

    def get_phase(self, name: str) -> PhaseSpec | None:
        for phase in self.phases:
            if phase.name == name:
                return phase
        return None

    def phase_index(self, name: str) -> int:
        """Index of a phase by name, or -1 if not found."""
        for i, phase in enumerate(self.phases):
            if phase.name == name:
                return i
        return -1

    def gate_names(self) -> list[str]:
        return [g.name for p in self.phases for g in p.gates]

    @property
    def weight_sum(self) -> float:
        return float(sum(self.score_weights.values()))

    def to_dict(self) -> dict[str, Any]:
        """Serialise a summary (predicates and callables rendered as text)."""
        result: dict[str, Any] = {
            "name": self.name,
            "version": self.version,
            "phases": [p.to_dict() for p in self.phases],
            "verdicts": self.verdicts.to_dict(),
        }
        if self.description:
            result["description"] = self.description
        if self.defaults:
            result["defaults"] = self.defaults
        if self.score_weights:
            result["score_weights"] = self.score_weights
        if self.tags:
            result["tags"] = self.tags
        return result

    def __repr__(self) -> str:
        return f"ProcessDefinition({self.name!r}, phases={len(self.phases)})"
