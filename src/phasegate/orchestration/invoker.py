"""Task invoker contract — the boundary between the engine and whatever does the work.

Manifesto:
    The engine never knows how a unit of work is performed: an LLM agent
    call, a subprocess, an RPC.  It only needs ``invoke(name, payload,
    output_shape) -> UnitResult``.  Anything that satisfies this protocol
    can drive any process definition.

ARCHITECTURE
────────────
::

    TaskInvoker (Protocol)
      └── invoke(unit_name, payload, output_shape) → UnitResult

    Stock implementations:
      CallableInvoker          ── registry: unit name → python callable
      SchemaValidatingInvoker  ── jsonschema checks around another invoker
      DryRunInvoker            ── placeholder success, nothing executed

    invoke_unit(invoker, unit) ── boundary conversion used by the engine
      ValidationError  → Failure(VALIDATION)
      CancelledError   → Failure(CANCELLED)
      other Exception  → Failure(EXECUTION)

Retries are not handled here.  An invoker that wants retry/backoff
implements it before returning its result.

Tags:
    phasegate, orchestration, invoker, boundary, protocol
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from typing import Any, Protocol, runtime_checkable

from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError as JsonSchemaError

from phasegate.core.errors import CancelledError, SchemaError, ValidationError
from phasegate.core.logging import get_logger
from phasegate.orchestration.unit import FailureKind, UnitOfWork, UnitResult

logger = get_logger(__name__)


@runtime_checkable
class TaskInvoker(Protocol):
    """Executes one named unit of work."""

    def invoke(
        self,
        unit_name: str,
        payload: Mapping[str, Any],
        output_shape: Mapping[str, Any] | None,
    ) -> UnitResult: ...


def invoke_unit(invoker: TaskInvoker, unit: UnitOfWork) -> UnitResult:
    """Invoke ``unit`` and convert every outcome into a ``UnitResult``.

    Exceptions never escape: validation errors become
    ``Failure(VALIDATION)``, a ``CancelledError`` ``Failure(CANCELLED)``,
    anything else ``Failure(EXECUTION)``.  The returned result is stamped
    with the unit's name and correlation id.
    """
    try:
        result = invoker.invoke(unit.name, unit.payload, unit.output_shape)
    except ValidationError as e:
        logger.warning("unit.invalid", unit=unit.name, correlation_id=unit.correlation_id, error=str(e))
        return UnitResult.failure(FailureKind.VALIDATION, str(e)).for_unit(unit)
    except CancelledError as e:
        logger.warning("unit.cancelled", unit=unit.name, correlation_id=unit.correlation_id, reason=str(e))
        return UnitResult.failure(FailureKind.CANCELLED, str(e)).for_unit(unit)
    except Exception as e:
        logger.exception("unit.error", unit=unit.name, correlation_id=unit.correlation_id)
        return UnitResult.failure(FailureKind.EXECUTION, f"{type(e).__name__}: {e}").for_unit(unit)

    if not isinstance(result, UnitResult):
        return UnitResult.failure(
            FailureKind.VALIDATION,
            f"Invoker returned {type(result).__name__}, expected UnitResult",
        ).for_unit(unit)
    if not isinstance(result.output, Mapping):
        return UnitResult.failure(
            FailureKind.VALIDATION,
            f"Unit output must be a mapping, got {type(result.output).__name__}",
        ).for_unit(unit)
    return result.for_unit(unit)


# =============================================================================
# Stock invokers
# =============================================================================

UnitHandler = Callable[[dict[str, Any]], Any]


class CallableInvoker:
    """
    Dispatch units to registered Python callables.

    A handler receives the payload and returns either a ``UnitResult``, a
    mapping (wrapped as ``Success``) or ``None`` (``Success({})``).
    Raising is allowed; the engine converts exceptions into failures.

    Example:
        invoker = CallableInvoker()

        @invoker.register("analyze-workload")
        def analyze(payload):
            return {"patterns": ["bursty"]}
    """

    def __init__(self, handlers: Mapping[str, UnitHandler] | None = None) -> None:
        self._handlers: dict[str, UnitHandler] = dict(handlers or {})

    def register(self, name: str, handler: UnitHandler | None = None) -> Any:
        """Register a handler directly or as a decorator."""
        if handler is not None:
            self._handlers[name] = handler
            return handler

        def decorator(fn: UnitHandler) -> UnitHandler:
            self._handlers[name] = fn
            return fn

        return decorator

    @property
    def names(self) -> list[str]:
        return sorted(self._handlers)

    def invoke(
        self,
        unit_name: str,
        payload: Mapping[str, Any],
        output_shape: Mapping[str, Any] | None,
    ) -> UnitResult:
        handler = self._handlers.get(unit_name)
        if handler is None:
            return UnitResult.failure(FailureKind.EXECUTION, f"No handler registered for unit '{unit_name}'")
        outcome = handler(dict(payload))
        if isinstance(outcome, UnitResult):
            return outcome
        if outcome is None:
            return UnitResult.success({})
        if isinstance(outcome, Mapping):
            return UnitResult.success(dict(outcome))
        raise ValidationError(
            f"Handler for '{unit_name}' returned {type(outcome).__name__}, expected a mapping",
            field="output",
            value=outcome,
        )


class SchemaValidatingInvoker:
    """
    Validate payloads and outputs with JSON Schema around another invoker.

    ``output_shape`` is treated as a JSON Schema for the output of a
    successful result.  Input schemas are registered per unit name.
    Violations become ``Failure(VALIDATION)``.
    """

    def __init__(
        self,
        inner: TaskInvoker,
        input_schemas: Mapping[str, Mapping[str, Any]] | None = None,
    ) -> None:
        self._inner = inner
        self._input_schemas = dict(input_schemas or {})
        for schema in self._input_schemas.values():
            self._check_schema(schema)

    @staticmethod
    def _check_schema(schema: Mapping[str, Any]) -> None:
        try:
            Draft202012Validator.check_schema(schema)
        except JsonSchemaError as e:
            raise SchemaError(f"Invalid JSON schema: {e.message}", cause=e) from e

    @classmethod
    def _errors(cls, schema: Mapping[str, Any], instance: Any) -> list[str]:
        cls._check_schema(schema)
        validator = Draft202012Validator(schema)
        errors = sorted(validator.iter_errors(instance), key=lambda err: list(err.absolute_path))
        return [f"{'/'.join(str(p) for p in err.absolute_path) or '<root>'}: {err.message}" for err in errors]

    def invoke(
        self,
        unit_name: str,
        payload: Mapping[str, Any],
        output_shape: Mapping[str, Any] | None,
    ) -> UnitResult:
        input_schema = self._input_schemas.get(unit_name)
        if input_schema is not None:
            problems = self._errors(input_schema, dict(payload))
            if problems:
                return UnitResult.failure(
                    FailureKind.VALIDATION,
                    f"Invalid input for '{unit_name}': " + "; ".join(problems),
                )

        result = self._inner.invoke(unit_name, payload, output_shape)
        if result.ok and output_shape:
            problems = self._errors(output_shape, result.output)
            if problems:
                return UnitResult.failure(
                    FailureKind.VALIDATION,
                    f"Invalid output from '{unit_name}': " + "; ".join(problems),
                )
        return result


class DryRunInvoker:
    """Returns ``Success`` with a placeholder output; executes nothing."""

    def __init__(self) -> None:
        self.calls: list[str] = []

    def invoke(
        self,
        unit_name: str,
        payload: Mapping[str, Any],
        output_shape: Mapping[str, Any] | None,
    ) -> UnitResult:
        self.calls.append(unit_name)
        return UnitResult.success({"dry_run": True, "unit": unit_name})


__all__ = [
    "TaskInvoker",
    "invoke_unit",
    "CallableInvoker",
    "SchemaValidatingInvoker",
    "DryRunInvoker",
]
