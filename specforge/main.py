"""CLI entry point for the workflow engine."""

import asyncio
import json
import signal
import sys
from pathlib import Path
from typing import Any

import click
import structlog

from specforge.config.settings import EngineSettings
from specforge.engine.cancellation import CancellationToken
from specforge.engine.workflow_engine import WorkflowEngine
from specforge.enums import RunStatus
from specforge.exceptions import ConfigurationError, SpecforgeError
from specforge.models.domain import RunResult
from specforge.models.specification import RunSpecification
from specforge.utils.logging_config import configure_logging

log = structlog.get_logger(__name__)

DEFAULT_CONFIG = "specforge.yaml"

EXIT_COMPLETED = 0
EXIT_FAILED = 1
EXIT_ESCALATED = 2
EXIT_INTERRUPTED = 130


@click.group()
@click.option("--config", default=None, help=f"Path to configuration file (default: {DEFAULT_CONFIG} if present)")
@click.option("--log-level", default=None, help="Logging level (overrides configuration)")
@click.option("--console-logs", is_flag=True, help="Human-readable logs instead of JSON")
@click.pass_context
def cli(ctx: click.Context, config: str | None, log_level: str | None, console_logs: bool) -> None:
    """specforge: phased workflow orchestration with bounded retries."""
    try:
        if config is not None:
            settings = EngineSettings.from_yaml(config)
        elif Path(DEFAULT_CONFIG).exists():
            settings = EngineSettings.from_yaml(DEFAULT_CONFIG)
        else:
            settings = EngineSettings()
    except ConfigurationError as e:
        click.echo(f"Error: {e.message}", err=True)
        sys.exit(EXIT_FAILED)
    except Exception as e:
        click.echo(f"Unexpected error loading configuration: {e}", err=True)
        sys.exit(EXIT_FAILED)

    configure_logging(log_level or settings.log_level, json_output=not console_logs)
    ctx.obj = {"settings": settings}


@cli.command()
@click.argument("spec_file", type=click.Path(dir_okay=False))
@click.option("--run-id", default=None, help="Override the run id declared in the file")
@click.pass_context
def run(ctx: click.Context, spec_file: str, run_id: str | None) -> None:
    """Run (or continue) the workflow described in SPEC_FILE."""
    settings = ctx.obj["settings"]
    try:
        specification = RunSpecification.from_yaml(spec_file)
        if run_id:
            specification.run_id = run_id
        result = asyncio.run(_drive(settings, specification=specification))
    except SpecforgeError as e:
        click.echo(f"Error: {e.message}", err=True)
        log.debug("run_error", exc_info=True)
        sys.exit(EXIT_FAILED)
    except KeyboardInterrupt:
        click.echo("\nInterrupted by user", err=True)
        sys.exit(EXIT_INTERRUPTED)

    _echo_result(result)
    sys.exit(_exit_code(result))


@cli.command()
@click.argument("run_id")
@click.pass_context
def resume(ctx: click.Context, run_id: str) -> None:
    """Resume a stored run after fixing its input or raising limits."""
    settings = ctx.obj["settings"]
    try:
        result = asyncio.run(_drive(settings, run_id=run_id))
    except SpecforgeError as e:
        click.echo(f"Error: {e.message}", err=True)
        log.debug("resume_error", exc_info=True)
        sys.exit(EXIT_FAILED)
    except KeyboardInterrupt:
        click.echo("\nInterrupted by user", err=True)
        sys.exit(EXIT_INTERRUPTED)

    _echo_result(result)
    sys.exit(_exit_code(result))


@cli.command()
@click.argument("run_id")
@click.option("--json", "as_json", is_flag=True, help="Print the report as JSON")
@click.pass_context
def show(ctx: click.Context, run_id: str, as_json: bool) -> None:
    """Show the status of a stored run."""
    engine = _engine_or_exit(ctx.obj["settings"])
    try:
        result = asyncio.run(engine.report(run_id))
    except SpecforgeError as e:
        click.echo(f"Error: {e.message}", err=True)
        sys.exit(EXIT_FAILED)

    if as_json:
        click.echo(json.dumps(_result_to_dict(result), indent=2, default=str))
    else:
        _echo_result(result)


@cli.command("list")
@click.pass_context
def list_runs(ctx: click.Context) -> None:
    """List stored runs and their status."""
    engine = _engine_or_exit(ctx.obj["settings"])

    async def _collect() -> list[RunResult]:
        return [await engine.report(run_id) for run_id in await engine.store.list_runs()]

    try:
        results = asyncio.run(_collect())
    except SpecforgeError as e:
        click.echo(f"Error: {e.message}", err=True)
        sys.exit(EXIT_FAILED)

    if not results:
        click.echo("No stored runs")
        return
    for result in results:
        suffix = f"  (blocked in {result.blocked_phase})" if result.blocked_phase else ""
        click.echo(f"{result.run_id}  {result.status}{suffix}")


@cli.command()
@click.argument("run_id")
@click.pass_context
def abandon(ctx: click.Context, run_id: str) -> None:
    """Give up on a run; it cannot be resumed afterwards."""
    engine = _engine_or_exit(ctx.obj["settings"])
    try:
        asyncio.run(engine.abandon(run_id))
    except SpecforgeError as e:
        click.echo(f"Error: {e.message}", err=True)
        sys.exit(EXIT_FAILED)
    click.echo(f"Run {run_id} abandoned")


@cli.command()
@click.argument("run_id")
@click.pass_context
def acknowledge(ctx: click.Context, run_id: str) -> None:
    """Archive a run that reached a terminal status."""
    engine = _engine_or_exit(ctx.obj["settings"])
    try:
        path = asyncio.run(engine.acknowledge(run_id))
    except SpecforgeError as e:
        click.echo(f"Error: {e.message}", err=True)
        sys.exit(EXIT_FAILED)
    click.echo(f"Run {run_id} archived to {path}")


@cli.command("raise-limit")
@click.argument("run_id")
@click.argument("task_id")
@click.argument("max_attempts", type=click.IntRange(min=1))
@click.pass_context
def raise_limit(ctx: click.Context, run_id: str, task_id: str, max_attempts: int) -> None:
    """Set the attempt limit of TASK_ID to MAX_ATTEMPTS."""
    engine = _engine_or_exit(ctx.obj["settings"])
    try:
        asyncio.run(engine.raise_attempt_limit(run_id, task_id, max_attempts))
    except SpecforgeError as e:
        click.echo(f"Error: {e.message}", err=True)
        sys.exit(EXIT_FAILED)
    click.echo(f"Task {task_id} of run {run_id} may now use {max_attempts} attempts")


def _engine_or_exit(settings: EngineSettings) -> WorkflowEngine:
    try:
        return WorkflowEngine.from_settings(settings)
    except SpecforgeError as e:
        click.echo(f"Error: {e.message}", err=True)
        sys.exit(EXIT_FAILED)


async def _drive(
    settings: EngineSettings,
    specification: RunSpecification | None = None,
    run_id: str | None = None,
) -> RunResult:
    """Run or resume with Ctrl-C wired to the cancellation token."""
    engine = WorkflowEngine.from_settings(settings)
    token = CancellationToken()
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, token.cancel, "interrupted")
    except (NotImplementedError, RuntimeError):
        log.debug("signal_handler_unavailable")

    try:
        if specification is not None:
            return await engine.run(specification, cancellation=token)
        assert run_id is not None
        return await engine.resume(run_id, cancellation=token)
    finally:
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except (NotImplementedError, RuntimeError):
            log.debug("signal_handler_unavailable")


def _exit_code(result: RunResult) -> int:
    if result.cancelled:
        return EXIT_INTERRUPTED
    if result.status is RunStatus.COMPLETED:
        return EXIT_COMPLETED
    if result.status is RunStatus.ESCALATED:
        return EXIT_ESCALATED
    return EXIT_FAILED


def _echo_result(result: RunResult) -> None:
    click.echo(f"Run {result.run_id}: {result.status}")
    if result.error:
        click.echo(f"Reason: {result.error}")
    if result.blocked_phase:
        click.echo(f"Blocked phase: {result.blocked_phase}")
    for escalated in result.escalated_tasks:
        task = escalated.task
        click.echo(
            f"  {task.id} ({task.complexity_class}): "
            f"{len(escalated.attempts)}/{task.max_attempts} attempts"
        )
        for attempt in escalated.attempts:
            detail = json.dumps(attempt.error_detail, default=str) if attempt.error_detail else ""
            click.echo(f"    #{attempt.attempt_number} {attempt.outcome} {detail}".rstrip())
        if escalated.diagnosis:
            click.echo(f"    diagnosis: {json.dumps(escalated.diagnosis, default=str)}")


def _result_to_dict(result: RunResult) -> dict[str, Any]:
    return {
        "run_id": result.run_id,
        "status": result.status.value,
        "blocked_phase": result.blocked_phase,
        "error": result.error,
        "cancelled": result.cancelled,
        "escalated_tasks": [
            {
                "task": escalated.task.to_dict(),
                "attempts": [attempt.to_dict() for attempt in escalated.attempts],
                "diagnosis": escalated.diagnosis,
            }
            for escalated in result.escalated_tasks
        ],
    }


if __name__ == "__main__":
    cli()
