from __future__ import annotations

import asyncio
import json
import re
import stat
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.table import Table

from gsdrun.budget.guard import BudgetGuard
from gsdrun.config.loader import dump_workflow, load_workflow
from gsdrun.config.schema import WorkflowSpec
from gsdrun.config.settings import RunnerConfig
from gsdrun.dag.build import build_adjacency
from gsdrun.dag.validate import topological_order
from gsdrun.exec.executor import StepExecutor
from gsdrun.exec.provider import build_completion_service
from gsdrun.exec.scheduler import RunOutcome, RunStatus, run_workflow
from gsdrun.notify.telegram import build_notifier, send_test_message
from gsdrun.report.render_md import render_markdown
from gsdrun.report.summarize import build_summary
from gsdrun.state.lock import run_lock
from gsdrun.state.store import StateStore, write_text_atomic
from gsdrun.util.errors import (
    ConfigError,
    NotificationError,
    RunConflictError,
    StateError,
    WorkflowError,
)
from gsdrun.util.logging import setup_logging
from gsdrun.util.paths import ensure_run_layout, run_dir, usage_dir

app = typer.Typer(help="Run YAML task DAGs against a completion service under a daily budget")
console = Console()

EXIT_COMPLETE = 0
EXIT_USAGE = 2
EXIT_STUCK = 3
EXIT_BUDGET_EXCEEDED = 4

_RUN_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
_RUN_NAME_MAX_LEN = 128
_STATUS_STYLE = {"DONE": "green", "FAILED": "red", "PENDING": "yellow"}


def _exit_code_for_status(status: RunStatus) -> int:
    if status == "COMPLETE":
        return EXIT_COMPLETE
    if status == "BUDGET_EXCEEDED":
        return EXIT_BUDGET_EXCEEDED
    return EXIT_STUCK


def _validate_run_name_or_exit(run_name: str) -> None:
    if len(run_name) > _RUN_NAME_MAX_LEN or _RUN_NAME_PATTERN.fullmatch(run_name) is None:
        console.print(f"[red]Invalid run name:[/red] {run_name}")
        raise typer.Exit(EXIT_USAGE)


def _resolve_workdir_or_exit(workdir: Path) -> Path:
    try:
        resolved = workdir.resolve()
        meta = resolved.lstat()
    except (OSError, RuntimeError) as exc:
        console.print(f"[red]Invalid workdir:[/red] {workdir}")
        raise typer.Exit(EXIT_USAGE) from exc
    if not stat.S_ISDIR(meta.st_mode):
        console.print(f"[red]Invalid workdir:[/red] {workdir}")
        raise typer.Exit(EXIT_USAGE)
    return resolved


def _load_config_or_exit(**overrides: object) -> RunnerConfig:
    try:
        return RunnerConfig.from_env().with_overrides(**overrides)
    except ConfigError as exc:
        console.print(f"[red]Configuration error:[/red] {exc}")
        raise typer.Exit(EXIT_USAGE) from exc


def _write_report(workflow: WorkflowSpec, outcome: RunOutcome, current_run_dir: Path) -> Path:
    summary = build_summary(workflow, outcome, run_name=current_run_dir.name)
    report_path = current_run_dir / "report" / "final_report.md"
    write_text_atomic(report_path, render_markdown(summary) + "\n")
    return report_path


async def _execute(
    workflow: WorkflowSpec,
    config: RunnerConfig,
    store: StateStore,
    *,
    workdir: Path,
    label: str,
    retry_failed: bool,
) -> RunOutcome:
    period_key = config.resolved_period_key()
    guard = BudgetGuard(store, limit=config.token_limit, period_key=period_key)
    executor = StepExecutor(
        store,
        build_completion_service(config, cwd=workdir),
        period_key=period_key,
        chars_per_unit=config.chars_per_unit,
        prompt_preamble=config.prompt_preamble,
        transcripts_dir=config.transcripts_dir,
    )
    notifier = build_notifier(config)
    try:
        return await run_workflow(
            workflow,
            store=store,
            executor=executor,
            guard=guard,
            notifier=notifier,
            label=label,
            max_parallel=config.max_parallel,
            retry_failed=retry_failed,
        )
    finally:
        await notifier.aclose()


def _load_run_or_exit(home: Path, run_name: str) -> tuple[Path, WorkflowSpec, StateStore]:
    _validate_run_name_or_exit(run_name)
    current_run_dir = run_dir(home, run_name)
    try:
        workflow = load_workflow(current_run_dir / "workflow.yaml")
    except WorkflowError as exc:
        console.print(f"[red]Run not found or broken:[/red] {exc}")
        raise typer.Exit(EXIT_USAGE) from exc
    return current_run_dir, workflow, StateStore(current_run_dir, usage_dir(home))


@app.command()
def run(
    workflow_path: Annotated[Path, typer.Argument(exists=True, dir_okay=False)],
    home: Annotated[Path, typer.Option("--home")] = Path(".gsd"),
    run_name: Annotated[str | None, typer.Option("--run-name")] = None,
    workdir: Annotated[Path, typer.Option("--workdir")] = Path("."),
    max_parallel: Annotated[int | None, typer.Option("--max-parallel", min=1)] = None,
    token_limit: Annotated[int | None, typer.Option("--token-limit", min=0)] = None,
    period: Annotated[str | None, typer.Option("--period")] = None,
    retry_failed: Annotated[bool, typer.Option("--retry-failed")] = False,
    dry_run: Annotated[bool, typer.Option("--dry-run")] = False,
    log_level: Annotated[str, typer.Option("--log-level")] = "INFO",
) -> None:
    """Execute a workflow, resuming any earlier run with the same name."""
    try:
        setup_logging(log_level)
    except ValueError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(EXIT_USAGE) from exc
    config = _load_config_or_exit(
        max_parallel=max_parallel, token_limit=token_limit, period_key=period
    )
    try:
        workflow = load_workflow(workflow_path)
    except WorkflowError as exc:
        console.print(f"[red]Workflow validation error:[/red] {exc}")
        raise typer.Exit(EXIT_USAGE) from exc

    if dry_run:
        dependents, in_degree = build_adjacency(workflow)
        order = topological_order(workflow.step_ids(), dependents, in_degree)
        table = Table(title="Dry Run - Topological Order")
        table.add_column("#")
        table.add_column("step_id")
        table.add_column("depends_on")
        deps_by_id = {step.id: step.depends_on for step in workflow.steps}
        for idx, step_id in enumerate(order, start=1):
            table.add_row(str(idx), step_id, ", ".join(deps_by_id[step_id]) or "-")
        console.print(table)
        raise typer.Exit(EXIT_COMPLETE)

    name = run_name or workflow_path.stem
    _validate_run_name_or_exit(name)
    resolved_workdir = _resolve_workdir_or_exit(workdir)
    current_run_dir = run_dir(home, name)
    store = StateStore(current_run_dir, usage_dir(home))
    console.print(f"=== Task Runner: {workflow_path} ===")
    try:
        ensure_run_layout(current_run_dir, store.usage_dir)
        with run_lock(current_run_dir):
            write_text_atomic(current_run_dir / "workflow.yaml", dump_workflow(workflow))
            outcome = asyncio.run(
                _execute(
                    workflow,
                    config,
                    store,
                    workdir=resolved_workdir,
                    label=workflow_path.name,
                    retry_failed=retry_failed,
                )
            )
    except RunConflictError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(EXIT_USAGE) from exc
    except (ConfigError, StateError) as exc:
        console.print(f"[red]Run execution failed:[/red] {exc}")
        raise typer.Exit(EXIT_USAGE) from exc
    except (OSError, RuntimeError, ValueError) as exc:
        console.print(f"[red]Run execution failed:[/red] {exc}")
        raise typer.Exit(EXIT_USAGE) from exc

    try:
        report_path: Path | None = _write_report(workflow, outcome, current_run_dir)
    except OSError as exc:
        console.print(f"[yellow]Warning:[/yellow] failed to write report: {exc}")
        report_path = None
    console.print(f"run: [bold]{name}[/bold]")
    console.print(f"state: [bold]{outcome.status}[/bold]")
    console.print(f"budget: {outcome.used_units} / {outcome.limit} ({outcome.period_key})")
    if outcome.status == "STUCK":
        for step_id, deps in outcome.blocked.items():
            reason = "FAILED" if step_id in outcome.failed else f"waiting on {', '.join(deps)}"
            console.print(f"  [red]{step_id}[/red]: {reason}")
    if report_path is not None:
        console.print(f"report: {report_path}")
    raise typer.Exit(_exit_code_for_status(outcome.status))


@app.command()
def status(
    run_name: Annotated[str, typer.Argument()],
    home: Annotated[Path, typer.Option("--home")] = Path(".gsd"),
    as_json: Annotated[bool, typer.Option("--json")] = False,
) -> None:
    """Show the recorded state of every step in a run."""
    _, workflow, store = _load_run_or_exit(home, run_name)
    try:
        records = store.load_records(workflow.step_ids())
    except StateError as exc:
        console.print(f"[red]Failed to load state:[/red] {exc}")
        raise typer.Exit(EXIT_USAGE) from exc

    if as_json:
        payload = {
            "run_name": run_name,
            "steps": {
                step.id: records[step.id].to_dict() if step.id in records else None
                for step in workflow.steps
            },
        }
        typer.echo(json.dumps(payload, ensure_ascii=False, indent=2))
        raise typer.Exit(EXIT_COMPLETE)

    table = Table(title=f"Run Status: {run_name}")
    table.add_column("step_id")
    table.add_column("status")
    table.add_column("attempts", justify="right")
    table.add_column("units", justify="right")
    table.add_column("duration_sec", justify="right")
    for step in workflow.steps:
        record = records.get(step.id)
        step_status = "PENDING" if record is None else record.status
        style = _STATUS_STYLE[step_status]
        table.add_row(
            step.id,
            f"[{style}]{step_status}[/{style}]",
            "0" if record is None else str(record.attempts),
            "-" if record is None else str(record.consumed_units),
            "-" if record is None or record.duration_sec is None else str(record.duration_sec),
        )
    console.print(table)


@app.command()
def show(
    run_name: Annotated[str, typer.Argument()],
    step_id: Annotated[str, typer.Argument()],
    home: Annotated[Path, typer.Option("--home")] = Path(".gsd"),
    tail: Annotated[int, typer.Option("--tail", min=1)] = 100,
    prompt: Annotated[bool, typer.Option("--prompt")] = False,
) -> None:
    """Print the recorded response (or prompt) of one step."""
    _, workflow, store = _load_run_or_exit(home, run_name)
    if step_id not in workflow.step_ids():
        console.print(f"[yellow]unknown step:[/yellow] {step_id}")
        raise typer.Exit(EXIT_USAGE)
    name = "prompt.txt" if prompt else "response.md"
    try:
        lines = store.tail_artifact(step_id, name, tail)
    except StateError as exc:
        console.print(f"[red]Failed to read {name}:[/red] {exc}")
        raise typer.Exit(EXIT_USAGE) from exc
    console.rule(f"{step_id} :: {name}")
    console.print("\n".join(lines) if lines else "(empty)", markup=False)


@app.command()
def usage(
    home: Annotated[Path, typer.Option("--home")] = Path(".gsd"),
    period: Annotated[str | None, typer.Option("--period")] = None,
) -> None:
    """Show consumption for the current accounting period."""
    config = _load_config_or_exit(period_key=period)
    period_key = config.resolved_period_key()
    store = StateStore(run_dir(home, "_"), usage_dir(home))
    try:
        guard = BudgetGuard(store, limit=config.token_limit, period_key=period_key)
        used = guard.used()
    except (StateError, ValueError) as exc:
        console.print(f"[red]Failed to load usage:[/red] {exc}")
        raise typer.Exit(EXIT_USAGE) from exc
    console.print(f"Budget: {used} / {config.token_limit} tokens used in {period_key}.")
    if used >= config.token_limit:
        console.print("[red]BUDGET EXCEEDED[/red]")


@app.command("notify-test")
def notify_test(
    message: Annotated[str, typer.Argument()] = "Test message from gsd-run",
) -> None:
    """Send a test notification to the configured Telegram chat."""
    config = _load_config_or_exit()
    try:
        asyncio.run(send_test_message(config, message))
    except NotificationError as exc:
        console.print(f"[red]Notification failed:[/red] {exc}")
        raise typer.Exit(1) from exc
    console.print("[green]Message sent.[/green] Check your Telegram app for the message.")


if __name__ == "__main__":
    app()
