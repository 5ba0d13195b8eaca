"""
CLI utility helpers — output formatting, input parsing and the console decision channel.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from phasegate.core.errors import ConfigError
from phasegate.orchestration.breakpoint import Decision
from phasegate.orchestration.phase import ProcessDefinition
from phasegate.orchestration.phase_executor import RunOutcome, RunStatus
from phasegate.orchestration.run_state import PhaseStatus

console = Console()
err_console = Console(stderr=True)

_STATUS_STYLE = {
    PhaseStatus.COMPLETED: "green",
    PhaseStatus.SKIPPED: "dim",
    PhaseStatus.FAILED: "yellow",
    PhaseStatus.ABORTED: "bold red",
}


# ── Input helpers ────────────────────────────────────────────────────────


def parse_params(pairs: list[str] | None) -> dict[str, Any]:
    """Parse ``key=value`` pairs; values are JSON when they parse as JSON."""
    params: dict[str, Any] = {}
    for pair in pairs or []:
        key, sep, raw = pair.partition("=")
        if not sep or not key:
            raise typer.BadParameter(f"Expected key=value, got {pair!r}", param_hint="--param")
        try:
            params[key] = json.loads(raw)
        except json.JSONDecodeError:
            params[key] = raw
    return params


def load_json_file(path: Path) -> Any:
    """Read a JSON file, raising ``ConfigError`` with the path on failure."""
    try:
        return json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigError(f"Cannot read JSON from {path}: {e}", cause=e) from e


def fail(message: str, code: int = 1) -> typer.Exit:
    """Print an error to stderr and return the Exit to raise."""
    err_console.print(f"[bold red]Error[/bold red]: {message}")
    return typer.Exit(code=code)


# ── Output helpers ───────────────────────────────────────────────────────


def print_json(data: Any) -> None:
    console.print_json(json.dumps(data, default=str))


def print_definition(definition: ProcessDefinition) -> None:
    """Render a process definition as a phase table plus weights."""
    console.print(f"[bold]{definition.name}[/bold] v{definition.version}")
    if definition.description:
        console.print(f"[dim]{definition.description}[/dim]")

    table = Table(title="Phases", show_lines=False, pad_edge=False)
    table.add_column("#", justify="right")
    table.add_column("phase")
    table.add_column("work", overflow="fold")
    table.add_column("required")
    table.add_column("when", overflow="fold")
    table.add_column("gates", overflow="fold")
    for i, phase in enumerate(definition.phases, 1):
        info = phase.to_dict()
        if "fan_out" in info:
            work = f"fan-out {info['fan_out']['unit']} over {info['fan_out']['items']}"
        else:
            work = ", ".join(info["units"]) or "-"
        gates = ", ".join(f"{g['name']} ({g['policy']})" for g in info.get("gates", [])) or "-"
        table.add_row(str(i), phase.name, work, "yes" if phase.required else "no", info["when"], gates)
    console.print(table)

    if definition.score_weights:
        weights = Table(title="Score weights", pad_edge=False)
        weights.add_column("component")
        weights.add_column("weight", justify="right")
        for name, weight in definition.score_weights.items():
            weights.add_row(name, f"{weight:g}")
        weights.add_row("[bold]total[/bold]", f"[bold]{definition.weight_sum:g}[/bold]")
        console.print(weights)


def print_outcome(outcome: RunOutcome) -> None:
    """Render a RunOutcome summary."""
    table = Table(title=f"{outcome.process} · {outcome.run_id}", pad_edge=False)
    table.add_column("phase")
    table.add_column("status")
    table.add_column("units", justify="right")
    table.add_column("error", overflow="fold")
    for record in outcome.phase_records:
        style = _STATUS_STYLE.get(record.status, "")
        failed = len(record.failed_units)
        units = f"{len(record.unit_results) - failed}/{len(record.unit_results)}" if record.unit_results else "-"
        table.add_row(record.name, f"[{style}]{record.status.value}[/{style}]", units, record.error or "")
    console.print(table)

    for decision in outcome.decisions:
        console.print(f"  [cyan]gate[/cyan] {decision.gate}: {decision.decision} ({decision.policy})")
    for artifact in outcome.artifacts:
        console.print(f"  [cyan]artifact[/cyan] {artifact.path} [dim]{artifact.format} {artifact.label}[/dim]")
    if outcome.errors:
        console.print(f"  [yellow]{len(outcome.errors)} error(s) recorded[/yellow]")

    status_style = "bold green" if outcome.status is RunStatus.COMPLETED else "bold red"
    console.print(
        f"[{status_style}]{outcome.status.value.upper()}[/{status_style}]  "
        f"score {outcome.score:.1f}  verdict [bold]{outcome.verdict}[/bold]"
    )
    if outcome.failure is not None:
        console.print(
            f"[red]stopped at '{outcome.failure.phase}' ({outcome.failure.kind.value}): "
            f"{outcome.failure.message}[/red]"
        )


# ── Interactive decisions ────────────────────────────────────────────────


class ConsoleDecisionChannel:
    """Ask the operator at the terminal; blocks until they answer."""

    def __init__(self, decided_by: str = "console") -> None:
        self.decided_by = decided_by

    def present(self, question: str, title: str, context_snapshot: Mapping[str, Any]) -> Decision:
        phases = context_snapshot.get("phases", {})
        score = context_snapshot.get("score", {}).get("value")
        summary = ", ".join(f"{name}={info.get('status')}" for name, info in phases.items()) or "none"
        body = f"{question}\n\n[dim]phases: {summary}"
        if score is not None:
            body += f"\nscore so far: {score:.1f}"
        body += "[/dim]"
        err_console.print(Panel(body, title=title, border_style="yellow"))
        approved = typer.confirm("Approve?", default=False, err=True)
        notes = typer.prompt("Notes", default="", show_default=False, err=True)
        return Decision(approved=approved, notes=notes or None, decided_by=self.decided_by)
