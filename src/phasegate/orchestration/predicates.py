"""Predicates over run state — activation and gate conditions as data.

A predicate is any pure callable ``(RunStateView) -> bool``.  Hand-written
conditions like ``enable_vpa and infrastructure == "kubernetes"`` become::

    all_of(
        Condition("params.enable_vpa", "truthy"),
        Condition("params.infrastructure", "eq", "kubernetes"),
    )

which can be validated statically, rendered in reports, and loaded from
YAML (:func:`predicate_from_data`).  Paths resolve with
:meth:`RunStateView.lookup`; a missing path yields ``None`` rather than an
exception, so ``Condition("phases.scan.output.critical", "gt", 0)`` is simply
false while the scan phase has not run.
"""

from __future__ import annotations

import operator
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from phasegate.core.errors import DefinitionError

if TYPE_CHECKING:
    from phasegate.orchestration.run_state import RunStateView

Predicate = Callable[["RunStateView"], bool]


def _compare(op: Callable[[Any, Any], bool]) -> Callable[[Any, Any], bool]:
    def check(left: Any, right: Any) -> bool:
        if left is None:
            return False
        try:
            return bool(op(left, right))
        except TypeError:
            return False

    return check


def _contains(left: Any, right: Any) -> bool:
    try:
        return left in right
    except TypeError:
        return False


OPERATORS: dict[str, Callable[[Any, Any], bool]] = {
    "eq": operator.eq,
    "ne": operator.ne,
    "gt": _compare(operator.gt),
    "ge": _compare(operator.ge),
    "lt": _compare(operator.lt),
    "le": _compare(operator.le),
    "in": _contains,
    "contains": lambda left, right: _contains(right, left),
    "truthy": lambda left, _right: bool(left),
    "falsy": lambda left, _right: not left,
    "exists": lambda left, _right: left is not None,
}


@dataclass(frozen=True)
class Condition:
    """``lookup(path) <op> value``."""

    path: str
    op: str = "truthy"
    value: Any = None

    def __post_init__(self):
        if self.op not in OPERATORS:
            raise DefinitionError(f"Unknown condition operator '{self.op}' (path={self.path!r})")

    def __call__(self, view: RunStateView) -> bool:
        return OPERATORS[self.op](view.lookup(self.path), self.value)

    def describe(self) -> str:
        if self.op in {"truthy", "falsy", "exists"}:
            return f"{self.path} {self.op}"
        return f"{self.path} {self.op} {self.value!r}"


@dataclass(frozen=True)
class AllOf:
    predicates: tuple[Predicate, ...]

    def __call__(self, view: RunStateView) -> bool:
        return all(p(view) for p in self.predicates)

    def describe(self) -> str:
        return "(" + " and ".join(describe(p) for p in self.predicates) + ")"


@dataclass(frozen=True)
class AnyOf:
    predicates: tuple[Predicate, ...]

    def __call__(self, view: RunStateView) -> bool:
        return any(p(view) for p in self.predicates)

    def describe(self) -> str:
        return "(" + " or ".join(describe(p) for p in self.predicates) + ")"


@dataclass(frozen=True)
class Not:
    predicate: Predicate

    def __call__(self, view: RunStateView) -> bool:
        return not self.predicate(view)

    def describe(self) -> str:
        return f"not {describe(self.predicate)}"


@dataclass(frozen=True)
class Constant:
    result: bool

    def __call__(self, view: RunStateView) -> bool:
        return self.result

    def describe(self) -> str:
        return "always" if self.result else "never"


always = Constant(True)
never = Constant(False)


def all_of(*predicates: Predicate) -> AllOf:
    return AllOf(tuple(predicates))


def any_of(*predicates: Predicate) -> AnyOf:
    return AnyOf(tuple(predicates))


def not_(predicate: Predicate) -> Not:
    return Not(predicate)


def param_is(key: str, value: Any = True) -> Condition:
    """Shorthand for ``Condition("params.<key>", "eq", value)``."""
    return Condition(f"params.{key}", "eq", value)


def describe(predicate: Predicate) -> str:
    """Human-readable rendering for reports and the CLI."""
    if hasattr(predicate, "describe"):
        return predicate.describe()
    return getattr(predicate, "__qualname__", None) or repr(predicate)


def predicate_from_data(data: Any) -> Predicate:
    """Build a predicate from YAML-shaped data.

    Accepted forms::

        true / false
        {path: params.enable_hpa, op: truthy}
        {all: [...]} / {any: [...]} / {not: {...}}
        {ref: "package.module:function"}
    """
    from phasegate.orchestration.phase import resolve_callable_ref

    if isinstance(data, bool):
        return Constant(data)
    if not isinstance(data, Mapping):
        raise DefinitionError(f"Cannot build a predicate from {data!r}")
    if "all" in data:
        return all_of(*(predicate_from_data(d) for d in _as_list(data["all"])))
    if "any" in data:
        return any_of(*(predicate_from_data(d) for d in _as_list(data["any"])))
    if "not" in data:
        return not_(predicate_from_data(data["not"]))
    if "ref" in data:
        return resolve_callable_ref(str(data["ref"]))
    if "path" in data:
        return Condition(path=str(data["path"]), op=str(data.get("op", "truthy")), value=data.get("value"))
    raise DefinitionError(f"Unrecognised predicate mapping: {dict(data)!r}")


def _as_list(value: Any) -> Sequence[Any]:
    if isinstance(value, Sequence) and not isinstance(value, str):
        return value
    raise DefinitionError(f"Expected a list of predicates, got {value!r}")
