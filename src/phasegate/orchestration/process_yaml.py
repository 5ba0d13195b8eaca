"""Pydantic models for Process YAML definitions.

Provides strong typing and validation for YAML-based process definitions,
so the same engine serves every domain workflow without Python code for
the phase sequence itself.

Usage::

    from phasegate.orchestration.process_yaml import ProcessSpec

    spec = ProcessSpec.from_yaml_file("processes/auto-scaling.yaml")
    definition = spec.to_definition()

Example YAML::

    apiVersion: phasegate.io/v1
    kind: Process
    metadata:
      name: devops/auto-scaling
      description: Auto-scaling configuration and optimization
    spec:
      defaults:
        infrastructure: kubernetes
        enable_vpa: false
      score_weights:
        analysis: 0.4
        configuration: 0.6
      verdicts:
        thresholds: {excellent: 90, good: 75, acceptable: 60}
      phases:
        - name: analyze
          unit:
            name: analyze-workload
            inputs: {services: params.services}
          gates:
            - name: workload-review
              title: Workload analysis
              question: "Approve the analysis for {infrastructure}?"
        - name: vpa
          unit: configure-vpa
          required: false
          when:
            all:
              - {path: params.enable_vpa, op: truthy}
              - {path: params.infrastructure, op: eq, value: kubernetes}
        - name: scan
          fan_out:
            unit: scan-image
            items: params.architectures
            item_key: architecture
          join: best_effort

Manifesto:
    Process authors should be able to declare phases, gates and weights in
    YAML without writing Python.  This module parses YAML definitions into
    the same ProcessDefinition used by code-first authors, keeping both
    paths first-class.

Tags:
    phasegate, orchestration, yaml, declarative, config-driven
"""

from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from phasegate.core.errors import DefinitionError
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
from phasegate.orchestration.predicates import always, predicate_from_data
from phasegate.orchestration.run_state import RunStateView
from phasegate.orchestration.scoring import VerdictTable


class PathPayload:
    """Payload builder: static values plus values looked up in run state."""

    def __init__(self, static: Mapping[str, Any], inputs: Mapping[str, str]) -> None:
        self.static = dict(static)
        self.inputs = dict(inputs)

    def __call__(self, view: RunStateView) -> dict[str, Any]:
        payload = dict(self.static)
        for key, path in self.inputs.items():
            payload[key] = view.lookup(path)
        return payload

    def describe(self) -> str:
        return f"payload(inputs={sorted(self.inputs)})"


class ProcessMetadataSpec(BaseModel):
    """Metadata section of a process spec."""

    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=1, description="Unique process name")
    version: int = Field(default=1, ge=1, description="Definition version")
    description: str = Field(default="", description="Human-readable description")
    tags: list[str] = Field(default_factory=list, description="Optional tags for filtering")


class UnitSpec(BaseModel):
    """One unit of work.  A bare string is shorthand for ``{name: ...}``."""

    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=1, description="Task name passed to the invoker")
    payload: dict[str, Any] = Field(default_factory=dict, description="Static payload")
    inputs: dict[str, str] = Field(
        default_factory=dict,
        description="Payload keys resolved from run-state paths (e.g. params.services)",
    )
    payload_ref: str | None = Field(default=None, description="Payload builder (module:qualname)")
    output_shape: dict[str, Any] | None = Field(default=None, description="Expected output (JSON schema)")
    labels: list[str] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _from_string(cls, data: Any) -> Any:
        if isinstance(data, str):
            return {"name": data}
        return data

    @model_validator(mode="after")
    def _one_payload_source(self) -> UnitSpec:
        if self.payload_ref and (self.payload or self.inputs):
            raise ValueError(f"Unit '{self.name}' cannot combine payload_ref with payload/inputs")
        return self

    def to_template(self) -> UnitTemplate:
        if self.payload_ref:
            payload: Any = resolve_callable_ref(self.payload_ref)
        elif self.inputs:
            payload = PathPayload(self.payload, self.inputs)
        else:
            payload = self.payload or None
        return UnitTemplate(
            name=self.name,
            payload=payload,
            output_shape=self.output_shape,
            labels=tuple(self.labels),
        )


class FanOutSpec(BaseModel):
    """One unit per item of a run-state collection."""

    model_config = ConfigDict(extra="forbid")

    unit: UnitSpec
    items: str = Field(..., min_length=1, description="Run-state path of the item list")
    item_key: str = Field(default="item", min_length=1)


class GateYamlSpec(BaseModel):
    """A quality gate attached to a phase."""

    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=1)
    question: str = Field(..., min_length=1, description="Question template")
    title: str = Field(default="", description="Title template")
    when: Any = Field(default=None, description="Predicate data; omitted means unconditional")
    policy: GatePolicy = Field(default=GatePolicy.BLOCKING)

    def to_gate(self) -> GateSpec:
        predicate = always if self.when is None else predicate_from_data(self.when)
        return GateSpec(
            name=self.name,
            question=self.question,
            title=self.title or self.name,
            predicate=predicate,
            policy=self.policy,
        )


class PhaseYamlSpec(BaseModel):
    """Phase specification.  Exactly one of ``unit``, ``units``, ``fan_out``
    may be given; none at all declares a checkpoint phase."""

    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=1, description="Unique phase name within the process")
    description: str = ""
    unit: UnitSpec | None = None
    units: list[UnitSpec] = Field(default_factory=list)
    fan_out: FanOutSpec | None = None
    required: bool = Field(default=True, description="Failure aborts the run when true")
    when: Any = Field(default=None, description="Activation predicate data")
    join: JoinPolicy = Field(default=JoinPolicy.ALL_MUST_SUCCEED)
    max_concurrency: int | None = Field(default=None, ge=1)
    gates: list[GateYamlSpec] = Field(default_factory=list)
    merge_ref: str | None = Field(default=None, description="Output merger (module:qualname)")
    scores_ref: str | None = Field(default=None, description="Score extractor (module:qualname)")

    @model_validator(mode="after")
    def _one_work_source(self) -> PhaseYamlSpec:
        sources = sum(1 for present in (self.unit is not None, bool(self.units), self.fan_out is not None) if present)
        if sources > 1:
            raise ValueError(f"Phase '{self.name}' must declare only one of unit, units, fan_out")
        return self

    def to_phase(self) -> PhaseSpec:
        units: tuple[UnitTemplate, ...] = ()
        if self.unit is not None:
            units = (self.unit.to_template(),)
        elif self.units:
            units = tuple(u.to_template() for u in self.units)
        fan_out = None
        if self.fan_out is not None:
            fan_out = FanOutTemplate(
                unit=self.fan_out.unit.to_template(),
                items=self.fan_out.items,
                item_key=self.fan_out.item_key,
            )
        return PhaseSpec(
            name=self.name,
            units=units,
            fan_out_over=fan_out,
            required=self.required,
            activation=always if self.when is None else predicate_from_data(self.when),
            join=self.join,
            max_concurrency=self.max_concurrency,
            gates=tuple(g.to_gate() for g in self.gates),
            merge=resolve_callable_ref(self.merge_ref) if self.merge_ref else None,
            scores=resolve_callable_ref(self.scores_ref) if self.scores_ref else None,
            description=self.description,
        )


class VerdictSpec(BaseModel):
    """Verdict table: label → minimum score."""

    model_config = ConfigDict(extra="forbid")

    thresholds: dict[str, float] = Field(
        default_factory=lambda: {"excellent": 90, "good": 75, "acceptable": 60},
    )
    fallback: str = "needs-improvement"

    def to_table(self) -> VerdictTable:
        return VerdictTable.from_mapping(self.thresholds, fallback=self.fallback)


class ProcessSpecSection(BaseModel):
    """The 'spec' section containing phases, defaults, weights and verdicts."""

    model_config = ConfigDict(extra="forbid")

    defaults: dict[str, Any] = Field(default_factory=dict, description="Default run params")
    score_weights: dict[str, float] = Field(default_factory=dict, description="Component weights")
    verdicts: VerdictSpec = Field(default_factory=VerdictSpec)
    phases: list[PhaseYamlSpec] = Field(..., min_length=1, description="Ordered phases")

    @field_validator("phases")
    @classmethod
    def validate_unique_names(cls, v: list[PhaseYamlSpec]) -> list[PhaseYamlSpec]:
        """Ensure phase and gate names are unique."""
        names = [p.name for p in v]
        if len(names) != len(set(names)):
            duplicates = {n for n in names if names.count(n) > 1}
            raise ValueError(f"Duplicate phase names: {sorted(duplicates)}")
        gates = [g.name for p in v for g in p.gates]
        if len(gates) != len(set(gates)):
            duplicates = {n for n in gates if gates.count(n) > 1}
            raise ValueError(f"Duplicate gate names: {sorted(duplicates)}")
        return v


class ProcessSpec(BaseModel):
    """Complete YAML process specification; the root model for parsing."""

    model_config = ConfigDict(extra="forbid")

    apiVersion: Literal["phasegate.io/v1"] = Field(default="phasegate.io/v1")
    kind: Literal["Process"] = Field(default="Process")
    metadata: ProcessMetadataSpec
    spec: ProcessSpecSection

    def to_definition(self) -> ProcessDefinition:
        """Convert the validated spec to a ProcessDefinition."""
        return ProcessDefinition(
            name=self.metadata.name,
            phases=[p.to_phase() for p in self.spec.phases],
            description=self.metadata.description,
            version=self.metadata.version,
            defaults=dict(self.spec.defaults),
            score_weights=dict(self.spec.score_weights),
            verdicts=self.spec.verdicts.to_table(),
            tags=list(self.metadata.tags),
        )

    @classmethod
    def from_data(cls, data: Any) -> ProcessSpec:
        """Validate already-parsed data, raising ``DefinitionError`` on mismatch."""
        if not isinstance(data, Mapping):
            raise DefinitionError(f"Process definition must be a mapping, got {type(data).__name__}")
        try:
            return cls.model_validate(data)
        except PydanticValidationError as e:
            name = data.get("metadata", {}).get("name") if isinstance(data.get("metadata"), Mapping) else None
            raise DefinitionError(f"Invalid process definition: {e}", process=name, cause=e) from e

    @classmethod
    def from_yaml(cls, yaml_content: str) -> ProcessSpec:
        """Parse and validate YAML content."""
        try:
            data = yaml.safe_load(yaml_content)
        except yaml.YAMLError as e:
            raise DefinitionError(f"Invalid YAML: {e}", cause=e) from e
        return cls.from_data(data)

    @classmethod
    def from_yaml_file(cls, path: str | Path) -> ProcessSpec:
        """Load and validate from a YAML file."""
        try:
            content = Path(path).read_text(encoding="utf-8")
        except OSError as e:
            raise DefinitionError(f"Cannot read process definition {path}: {e}", cause=e) from e
        return cls.from_yaml(content)


def load_process(path: str | Path) -> ProcessDefinition:
    """Load a YAML process definition file into a ProcessDefinition."""
    return ProcessSpec.from_yaml_file(path).to_definition()


__all__ = [
    "ProcessSpec",
    "ProcessSpecSection",
    "ProcessMetadataSpec",
    "PhaseYamlSpec",
    "GateYamlSpec",
    "UnitSpec",
    "FanOutSpec",
    "VerdictSpec",
    "PathPayload",
    "load_process",
]
