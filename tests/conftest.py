"""
Shared pytest fixtures and configuration for phasegate tests.

This module provides:
- Settings and logging isolation between tests
- Sample process definitions
- Deterministic clocks

Usage:
    Fixtures are auto-discovered by pytest; request them as arguments.

    def test_something(simple_definition, stub_invoker):
        ...
"""

from __future__ import annotations

from pathlib import Path

import pytest
import structlog

from phasegate.core.settings import reset_settings
from phasegate.orchestration import GateSpec, PhaseSpec, ProcessDefinition, UnitTemplate
from phasegate.orchestration.testing import FixedClock, StubInvoker

PROCESSES_DIR = Path(__file__).parent.parent / "processes"


# =============================================================================
# Test Markers Configuration
# =============================================================================


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Auto-mark tests based on their location."""
    for item in items:
        test_path = Path(item.fspath).relative_to(Path(__file__).parent)

        if "cli" in test_path.parts or "integration" in item.name:
            item.add_marker(pytest.mark.integration)

        markers = {mark.name for mark in item.iter_markers()}
        if not markers.intersection({"unit", "integration", "slow"}):
            item.add_marker(pytest.mark.unit)


# =============================================================================
# Isolation
# =============================================================================


@pytest.fixture(autouse=True)
def _isolate_settings(monkeypatch):
    """Drop cached settings and PHASEGATE_* overrides around every test."""
    for key in (
        "PHASEGATE_LOG_LEVEL",
        "PHASEGATE_JSON_LOGS",
        "PHASEGATE_SERVICE_NAME",
        "PHASEGATE_MAX_CONCURRENCY",
        "PHASEGATE_WEIGHT_TOLERANCE",
        "PHASEGATE_JOURNAL_DIR",
    ):
        monkeypatch.delenv(key, raising=False)
    reset_settings()
    yield
    reset_settings()


@pytest.fixture(autouse=True)
def _reset_structlog():
    """Each test starts from structlog defaults."""
    yield
    structlog.reset_defaults()
    structlog.contextvars.clear_contextvars()


# =============================================================================
# Sample definitions
# =============================================================================


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def stub_invoker() -> StubInvoker:
    return StubInvoker(
        {
            "analyze": {"patterns": ["bursty"], "score_components": {"analysis": 80}},
            "configure": {"replicas": 3, "score_components": {"configuration": 90}},
        }
    )


@pytest.fixture
def simple_definition() -> ProcessDefinition:
    """analyze → configure, with a review gate after analyze."""
    return ProcessDefinition(
        name="test.simple",
        phases=[
            PhaseSpec.task(
                "analyze",
                UnitTemplate("analyze"),
                gates=[GateSpec.review("analysis-review", "Approve the analysis?")],
            ),
            PhaseSpec.task("configure", UnitTemplate("configure")),
        ],
        score_weights={"analysis": 0.4, "configuration": 0.6},
    )


@pytest.fixture
def auto_scaling_yaml() -> Path:
    return PROCESSES_DIR / "auto-scaling.yaml"


@pytest.fixture
def auto_scaling_handlers(monkeypatch):
    """Make ``auto_scaling_handlers`` importable."""
    monkeypatch.syspath_prepend(str(PROCESSES_DIR))
    import auto_scaling_handlers

    return auto_scaling_handlers
