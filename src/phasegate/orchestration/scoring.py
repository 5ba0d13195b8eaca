"""Score aggregation — weighted components to a 0-100 score and a verdict.

Manifesto:
    Every workflow ends the same way: a handful of weighted component scores
    (workload analysis 15%, configuration 30%, ...) collapse into a single
    number and a categorical verdict.  The weights and the verdict table are
    domain content; the arithmetic, the clamping and the configuration
    warnings live here.

ARCHITECTURE
────────────
::

    ScoreAggregator
      ├── add_component(name, weight, value)
      ├── finalize() → FinalScore(score, verdict, components, weight_sum)
      └── weight_sum / components

    VerdictTable ── ordered (threshold, label) pairs + fallback label

Invariants:
    - ``finalize()`` is idempotent: calling it twice without adding
      components returns an equal ``FinalScore``
    - the score is clamped into [0, 100] whatever the weights/values
    - Σ weights away from 1.0 is a logged configuration warning, never an error

Example::

    agg = ScoreAggregator(verdicts=VerdictTable.default())
    agg.add_component("scaling_configuration", 0.30, 88)
    agg.add_component("monitoring", 0.20, 70)
    final = agg.finalize()
    final.score, final.verdict

Tags:
    phasegate, orchestration, scoring, verdict
"""

from __future__ import annotations

import math
import threading
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from phasegate.core.errors import ValidationError
from phasegate.core.logging import get_logger

logger = get_logger(__name__)

SCORE_MIN = 0.0
SCORE_MAX = 100.0


@dataclass(frozen=True)
class ScoreComponent:
    """
    One weighted contribution to the final score.

    Attributes:
        name: Component name (e.g. ``monitoring``)
        weight: Nominally in [0, 1]; not enforced
        value: Nominally in [0, 100]; not enforced
        phase: Phase that registered the component
    """

    name: str
    weight: float
    value: float
    phase: str | None = None

    @property
    def contribution(self) -> float:
        return self.weight * self.value

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "name": self.name,
            "weight": self.weight,
            "value": self.value,
            "contribution": self.contribution,
        }
        if self.phase is not None:
            result["phase"] = self.phase
        return result


@dataclass(frozen=True)
class VerdictTable:
    """
    Ordered threshold table mapping a score to a label.

    Thresholds are checked highest first; the first threshold the score
    reaches wins, otherwise ``fallback`` applies.
    """

    thresholds: tuple[tuple[float, str], ...]
    fallback: str = "needs-improvement"

    def __post_init__(self):
        ordered = tuple(sorted(((float(t), str(label)) for t, label in self.thresholds), key=lambda p: -p[0]))
        object.__setattr__(self, "thresholds", ordered)

    @classmethod
    def default(cls) -> VerdictTable:
        """≥90 excellent, ≥75 good, ≥60 acceptable, else needs-improvement."""
        return cls(thresholds=((90, "excellent"), (75, "good"), (60, "acceptable")))

    @classmethod
    def from_mapping(cls, data: Mapping[str, float], fallback: str = "needs-improvement") -> VerdictTable:
        """Build from ``{"excellent": 90, "good": 75, ...}``."""
        return cls(thresholds=tuple((v, k) for k, v in data.items()), fallback=fallback)

    def verdict_for(self, score: float) -> str:
        for threshold, label in self.thresholds:
            if score >= threshold:
                return label
        return self.fallback

    def to_dict(self) -> dict[str, Any]:
        return {"thresholds": [[t, label] for t, label in self.thresholds], "fallback": self.fallback}


@dataclass(frozen=True)
class FinalScore:
    """Result of :meth:`ScoreAggregator.finalize`."""

    score: float
    verdict: str
    components: tuple[ScoreComponent, ...] = ()
    weight_sum: float = 0.0
    raw_score: float = 0.0
    weight_mismatch: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "score": self.score,
            "verdict": self.verdict,
            "raw_score": self.raw_score,
            "weight_sum": self.weight_sum,
            "weight_mismatch": self.weight_mismatch,
            "components": [c.to_dict() for c in self.components],
        }


def clamp_score(value: float) -> float:
    """Clamp into [0, 100]; NaN becomes 0."""
    if math.isnan(value):
        return SCORE_MIN
    return max(SCORE_MIN, min(SCORE_MAX, value))


class ScoreAggregator:
    """Accumulates :class:`ScoreComponent` and produces a :class:`FinalScore`.

    Parameters
    ----------
    verdicts
        Verdict table; defaults to :meth:`VerdictTable.default`.
    weights
        Optional name → weight table used when a component is registered
        without an explicit weight.
    weight_tolerance
        Allowed |Σ weights − 1| before a configuration warning is logged.
    """

    def __init__(
        self,
        verdicts: VerdictTable | None = None,
        weights: Mapping[str, float] | None = None,
        weight_tolerance: float = 0.01,
    ) -> None:
        self._verdicts = verdicts or VerdictTable.default()
        self._weights = dict(weights or {})
        self._tolerance = weight_tolerance
        self._components: list[ScoreComponent] = []
        self._lock = threading.Lock()

    @property
    def verdicts(self) -> VerdictTable:
        return self._verdicts

    @property
    def components(self) -> tuple[ScoreComponent, ...]:
        with self._lock:
            return tuple(self._components)

    @property
    def weight_sum(self) -> float:
        return sum(c.weight for c in self.components)

    def weight_for(self, name: str) -> float:
        """Look up ``name`` in the weight table."""
        if name not in self._weights:
            raise ValidationError(
                f"No weight registered for score component '{name}'",
                field="score_components",
                value=name,
            )
        return self._weights[name]

    def build_component(
        self,
        name: str,
        weight: float | None,
        value: float,
        phase: str | None = None,
    ) -> ScoreComponent:
        """Validate a component without registering it; ``weight=None`` uses the weight table."""
        if weight is None:
            weight = self.weight_for(name)
        try:
            return ScoreComponent(name=name, weight=float(weight), value=float(value), phase=phase)
        except (TypeError, ValueError) as e:
            raise ValidationError(
                f"Score component '{name}' must have numeric weight and value",
                field="score_components",
                value={"weight": weight, "value": value},
                cause=e,
            ) from e

    def add_component(
        self,
        name: str,
        weight: float | None,
        value: float,
        phase: str | None = None,
    ) -> ScoreComponent:
        """Register a component; ``weight=None`` uses the weight table."""
        component = self.build_component(name, weight, value, phase)
        with self._lock:
            self._components.append(component)
        return component

    def extend(self, components: Iterable[ScoreComponent]) -> None:
        for c in components:
            self.add_component(c.name, c.weight, c.value, phase=c.phase)

    def current_score(self) -> float:
        """Clamped weighted sum of the components registered so far."""
        return clamp_score(sum(c.contribution for c in self.components))

    def finalize(self) -> FinalScore:
        """Compute the clamped score and verdict.

        Pure with respect to the registered components; safe to call again.
        """
        components = self.components
        weight_sum = sum(c.weight for c in components)
        raw = sum(c.contribution for c in components)
        score = clamp_score(raw)
        mismatch = bool(components) and abs(weight_sum - 1.0) > self._tolerance

        if mismatch:
            logger.warning(
                "score.weight_mismatch",
                weight_sum=round(weight_sum, 6),
                tolerance=self._tolerance,
                components=[c.name for c in components],
            )

        return FinalScore(
            score=score,
            verdict=self._verdicts.verdict_for(score),
            components=components,
            weight_sum=weight_sum,
            raw_score=raw,
            weight_mismatch=mismatch,
        )


def components_from_output(
    output: Mapping[str, Any],
    key: str = "score_components",
) -> list[tuple[str, float | None, float]]:
    """Read ``(name, weight, value)`` triples from a unit output.

    Accepts a list of ``{"name", "value", "weight"?}`` mappings or a plain
    ``{name: value}`` mapping (weights then come from the weight table).
    """
    raw = output.get(key)
    if raw is None:
        return []
    triples: list[tuple[str, float | None, float]] = []
    if isinstance(raw, Mapping):
        for name, value in raw.items():
            triples.append((str(name), None, value))
        return triples
    if not isinstance(raw, Sequence) or isinstance(raw, str):
        raise ValidationError(f"'{key}' must be a list or mapping", field=key, value=raw)
    for entry in raw:
        if not isinstance(entry, Mapping) or "name" not in entry or "value" not in entry:
            raise ValidationError(
                f"Each '{key}' entry needs 'name' and 'value'", field=key, value=entry
            )
        triples.append((str(entry["name"]), entry.get("weight"), entry["value"]))
    return triples


__all__ = [
    "ScoreComponent",
    "VerdictTable",
    "FinalScore",
    "ScoreAggregator",
    "clamp_score",
    "components_from_output",
]
