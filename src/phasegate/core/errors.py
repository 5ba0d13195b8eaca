"""
Structured error types for phasegate.

Every error raised by the engine (or by a collaborator that wants its failure
classified precisely) extends :class:`PhasegateError`. Errors carry a
category, structured context and an optional cause so that logs and run
reports can say exactly where and why a workflow stopped.

Manifesto:
    - **Typed hierarchy:** validation vs execution vs configuration failures
      are different types, not different strings
    - **Rich context:** process and phase names travel with the error
    - **Error chaining:** the original exception is preserved as ``cause``

Architecture:
    ::

        PhasegateError  (category, context, cause)
          ├── ValidationError        VALIDATION   malformed unit input/output
          │     └── SchemaError
          ├── ExecutionError         EXECUTION    collaborator-reported failure
          ├── ConfigError            CONFIG
          │     └── InvalidConfigError
          └── OrchestrationError     ORCHESTRATION
                ├── DefinitionError         bad ProcessDefinition
                ├── IllegalTransitionError  breakpoint state misuse
                └── CancelledError          run cancelled

Usage:
    from phasegate.core.errors import ValidationError

    if "services" not in payload:
        raise ValidationError("payload is missing 'services'", field="services")

Tags:
    error-handling, exception-hierarchy, phasegate-core
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Standard error categories for classification and routing."""

    VALIDATION = "VALIDATION"
    EXECUTION = "EXECUTION"
    CONFIG = "CONFIG"
    ORCHESTRATION = "ORCHESTRATION"
    CANCELLED = "CANCELLED"
    INTERNAL = "INTERNAL"


@dataclass
class ErrorContext:
    """
    Structured context attached to an error.

    Attributes:
        process: Name of the process definition
        phase: Name of the phase the error concerns
    """

    process: str | None = None
    phase: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result = {}
        for key in ["process", "phase"]:
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        return result


class PhasegateError(Exception):
    """
    Base exception for all phasegate errors.

    Subclasses set ``default_category`` so callers rarely need to pass it
    explicitly.
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        context: ErrorContext | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
        }
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# VALIDATION ERRORS
# =============================================================================


class ValidationError(PhasegateError):
    """Malformed unit input or output."""

    default_category = ErrorCategory.VALIDATION

    def __init__(
        self,
        message: str,
        *,
        field: str | None = None,
        value: Any = None,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.field = field
        self.value = value

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        if self.field:
            result["field"] = self.field
        if self.value is not None:
            result["value"] = repr(self.value)
        return result


class SchemaError(ValidationError):
    """Payload does not conform to its JSON schema."""

    pass


# =============================================================================
# EXECUTION ERRORS
# =============================================================================


class ExecutionError(PhasegateError):
    """A collaborator reported that it could not perform the unit of work."""

    default_category = ErrorCategory.EXECUTION


# =============================================================================
# CONFIGURATION ERRORS
# =============================================================================


class ConfigError(PhasegateError):
    """Configuration error."""

    default_category = ErrorCategory.CONFIG


class InvalidConfigError(ConfigError):
    """Configuration value is invalid."""

    def __init__(self, key: str, value: Any, message: str | None = None):
        self.key = key
        self.value = value
        super().__init__(message or f"Invalid configuration for {key}: {value!r}")


# =============================================================================
# ORCHESTRATION ERRORS
# =============================================================================


class OrchestrationError(PhasegateError):
    """Engine-level error."""

    default_category = ErrorCategory.ORCHESTRATION


class DefinitionError(OrchestrationError):
    """A process definition is structurally invalid."""

    def __init__(
        self,
        message: str,
        *,
        process: str | None = None,
        phase: str | None = None,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        if process:
            self.context.process = process
        if phase:
            self.context.phase = phase


class IllegalTransitionError(OrchestrationError):
    """A breakpoint was driven through a transition its state does not allow."""

    def __init__(self, from_state: str, to_state: str, breakpoint_id: str | None = None):
        self.from_state = from_state
        self.to_state = to_state
        self.breakpoint_id = breakpoint_id
        super().__init__(f"Illegal breakpoint transition: {from_state} -> {to_state}")


class CancelledError(OrchestrationError):
    """The run was cancelled cooperatively."""

    default_category = ErrorCategory.CANCELLED


__all__ = [
    "ErrorCategory",
    "ErrorContext",
    "PhasegateError",
    "ValidationError",
    "SchemaError",
    "ExecutionError",
    "ConfigError",
    "InvalidConfigError",
    "OrchestrationError",
    "DefinitionError",
    "IllegalTransitionError",
    "CancelledError",
]
