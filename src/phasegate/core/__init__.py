"""phasegate core -- platform primitives shared by every layer.

- errors      ─ typed exception hierarchy
- logging     ─ structlog configuration
- settings    ─ pydantic-settings engine configuration
- timestamps  ─ run ids and UTC helpers
"""

from phasegate.core.errors import (
    CancelledError,
    ConfigError,
    DefinitionError,
    ErrorCategory,
    ErrorContext,
    ExecutionError,
    IllegalTransitionError,
    InvalidConfigError,
    OrchestrationError,
    PhasegateError,
    SchemaError,
    ValidationError,
)
from phasegate.core.logging import LogContext, configure_logging, get_logger
from phasegate.core.settings import EngineSettings, get_settings, reset_settings
from phasegate.core.timestamps import generate_run_id, utc_now

__all__ = [
    "CancelledError",
    "ConfigError",
    "DefinitionError",
    "ErrorCategory",
    "ErrorContext",
    "ExecutionError",
    "IllegalTransitionError",
    "InvalidConfigError",
    "OrchestrationError",
    "PhasegateError",
    "SchemaError",
    "ValidationError",
    "LogContext",
    "configure_logging",
    "get_logger",
    "EngineSettings",
    "get_settings",
    "reset_settings",
    "generate_run_id",
    "utc_now",
]
