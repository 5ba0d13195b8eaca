"""
Root Typer application for the phasegate CLI.

Commands:
    validate  ─ load a YAML process definition and report problems
    show      ─ render a definition (phases, gates, weights)
    run       ─ execute a definition and render the RunOutcome
"""

from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path

import typer
from typer import Typer

from phasegate.cli.utils import (
    ConsoleDecisionChannel,
    console,
    fail,
    load_json_file,
    parse_params,
    print_definition,
    print_json,
    print_outcome,
)
from phasegate.core.errors import PhasegateError
from phasegate.core.logging import configure_logging, get_logger
from phasegate.core.settings import LOG_LEVELS, get_settings
from phasegate.orchestration.breakpoint import AutoApproveChannel, DecisionChannel, ScriptedDecisionChannel
from phasegate.orchestration.invoker import CallableInvoker, DryRunInvoker, TaskInvoker
from phasegate.orchestration.phase import ProcessDefinition, resolve_callable_ref
from phasegate.orchestration.phase_executor import PhaseExecutor, RunStatus
from phasegate.orchestration.process_yaml import load_process

EXIT_ABORTED = 2

log = get_logger(__name__)

app = Typer(
    name="phasegate",
    help="phasegate — phase-gated workflow engine.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


# ── Version callback ─────────────────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        from importlib.metadata import PackageNotFoundError
        from importlib.metadata import version as pkg_version

        from phasegate import __version__

        try:
            v = pkg_version("phasegate")
        except PackageNotFoundError:
            v = __version__
        typer.echo(f"phasegate {v}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(  # noqa: UP007
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
    log_level: str | None = typer.Option(None, "--log-level", help="DEBUG, INFO, WARNING, ERROR, CRITICAL."),
    json_logs: bool | None = typer.Option(None, "--json-logs/--console-logs", help="Log format (auto when unset)."),
) -> None:
    """phasegate CLI — validate, inspect and run process definitions."""
    if log_level is not None and log_level.upper() not in LOG_LEVELS:
        raise typer.BadParameter(f"Unknown log level: {log_level}", param_hint="--log-level")
    settings = get_settings()
    configure_logging(
        level=(log_level or settings.log_level).upper(),
        json_format=json_logs if json_logs is not None else settings.json_logs,
        service=settings.service_name,
    )


# ── Helpers ──────────────────────────────────────────────────────────────


def _load(file: Path) -> ProcessDefinition:
    try:
        return load_process(file)
    except PhasegateError as e:
        log.error("process.load_failed", path=str(file), **e.to_dict())
        raise fail(str(e)) from e


def _make_invoker(ref: str | None, dry_run: bool) -> TaskInvoker:
    if dry_run:
        return DryRunInvoker()
    if not ref:
        raise fail("Specify --invoker module:factory or --dry-run")
    try:
        built = resolve_callable_ref(ref)()
    except PhasegateError as e:
        raise fail(str(e)) from e
    if isinstance(built, Mapping):
        return CallableInvoker(built)
    if not isinstance(built, TaskInvoker):
        raise fail(f"{ref} returned {type(built).__name__}, which has no invoke() method")
    return built


def _make_channel(auto_approve: bool, decisions: Path | None) -> DecisionChannel:
    if auto_approve:
        return AutoApproveChannel(decided_by="cli")
    if decisions is not None:
        try:
            data = load_json_file(decisions)
        except PhasegateError as e:
            raise fail(str(e)) from e
        if not isinstance(data, Mapping):
            raise fail(f"{decisions} must contain a JSON object of gate → decision")
        data = dict(data)
        default = data.pop("*", None)
        try:
            return ScriptedDecisionChannel(data, default=default, decided_by="cli")
        except PhasegateError as e:
            raise fail(str(e)) from e
    return ConsoleDecisionChannel()


# ── Commands ─────────────────────────────────────────────────────────────


@app.command("validate")
def validate(
    file: Path = typer.Argument(..., help="Process definition (YAML)"),
) -> None:
    """Validate a process definition."""
    definition = _load(file)
    print_definition(definition)
    if definition.score_weights and abs(definition.weight_sum - 1.0) > get_settings().weight_tolerance:
        console.print(f"[yellow]warning[/yellow]: score weights sum to {definition.weight_sum:g}, not 1.0")
    console.print(f"[green]valid[/green]: {len(definition.phases)} phases, {len(definition.gate_names())} gates")


@app.command("show")
def show(
    file: Path = typer.Argument(..., help="Process definition (YAML)"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Show a process definition."""
    definition = _load(file)
    if json_out:
        print_json(definition.to_dict())
        return
    print_definition(definition)


@app.command("run")
def run(
    file: Path = typer.Argument(..., help="Process definition (YAML)"),
    input_file: Path | None = typer.Option(None, "--input", "-i", help="JSON file with run params"),
    param: list[str] | None = typer.Option(None, "--param", "-p", help="key=value (repeatable)"),
    invoker: str | None = typer.Option(None, "--invoker", help="module:factory returning an invoker"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Execute nothing; every unit succeeds"),
    auto_approve: bool = typer.Option(False, "--auto-approve", help="Approve every breakpoint"),
    decisions: Path | None = typer.Option(None, "--decisions", help="JSON file: gate name/title → decision"),
    json_out: bool = typer.Option(False, "--json"),
    journal_dir: Path | None = typer.Option(None, "--journal-dir", help="Write the run journal here"),
) -> None:
    """Run a process definition.  Exit code 2 when the run aborts."""
    definition = _load(file)

    params: dict = {}
    if input_file is not None:
        try:
            data = load_json_file(input_file)
        except PhasegateError as e:
            raise fail(str(e)) from e
        if not isinstance(data, Mapping):
            raise fail(f"{input_file} must contain a JSON object")
        params.update(data)
    params.update(parse_params(param))

    executor = PhaseExecutor(
        _make_invoker(invoker, dry_run),
        _make_channel(auto_approve, decisions),
        journal_dir=journal_dir,
    )
    outcome = executor.run(definition, params)

    if json_out:
        print_json(outcome.to_dict())
    else:
        print_outcome(outcome)

    if outcome.status is RunStatus.ABORTED:
        raise typer.Exit(code=EXIT_ABORTED)


if __name__ == "__main__":  # pragma: no cover
    app()
