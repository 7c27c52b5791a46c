"""CLI entrypoint for plan-runner."""

import logging
from pathlib import Path

import rich_click as click

from plan_runner import __version__
from plan_runner.orchestrator.controllers import (
    PlanCliController,
    PlanCommandResult,
    PlanEventsCommand,
    PlanListCommand,
    PlanMaintenanceCommand,
    PlanRunCommand,
    PlanTargetCommand,
)

click.rich_click.USE_MARKDOWN = True
PLAN_CONTROLLER = PlanCliController()

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@click.group()
@click.version_option(version=__version__, prog_name="plan-runner")
@click.option("--verbose", "-v", is_flag=True, default=False, help="Log debug output.")
def plan_runner(verbose: bool) -> None:  # noqa: FBT001
    """Dependency-driven execution of agent plans with checkpoint/resume."""

    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO, format=_LOG_FORMAT)


@plan_runner.command("run")
@click.argument("plan_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def run_plan(plan_file: Path, db_path: Path | None) -> None:
    """Create a plan from a JSON submission file and run it to completion.

    Ctrl-C checkpoints the plan and leaves it **paused**; continue with `resume`.
    """

    _emit_result(
        PLAN_CONTROLLER.run(PlanRunCommand(db_path=db_path, plan_file=plan_file)),
        failure_message="Plan did not complete successfully.",
    )


@plan_runner.command("resume")
@click.argument("plan_id")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def resume_plan(plan_id: str, db_path: Path | None) -> None:
    """Resume a paused plan from its latest checkpoint."""

    _emit_result(
        PLAN_CONTROLLER.resume(PlanTargetCommand(db_path=db_path, plan_id=plan_id)),
        failure_message="Resumed plan did not complete successfully.",
    )


@plan_runner.command("cancel")
@click.argument("plan_id")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def cancel_plan(plan_id: str, db_path: Path | None) -> None:
    """Cancel a plan and discard its checkpoint."""

    _emit_result(
        PLAN_CONTROLLER.cancel(PlanTargetCommand(db_path=db_path, plan_id=plan_id)),
        failure_message="Plan could not be canceled.",
    )


@plan_runner.command("status")
@click.argument("plan_id")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def plan_status(plan_id: str, db_path: Path | None) -> None:
    """Show plan status and per-subtask progress."""

    _emit_result(
        PLAN_CONTROLLER.status(PlanTargetCommand(db_path=db_path, plan_id=plan_id)),
        failure_message="Plan status unavailable.",
    )


@plan_runner.command("events")
@click.argument("plan_id")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=10_000),
    default=200,
    show_default=True,
    help="Maximum events to display.",
)
def plan_events(plan_id: str, db_path: Path | None, limit: int) -> None:
    """Show the archived event log of a plan."""

    _emit_result(
        PLAN_CONTROLLER.events(PlanEventsCommand(db_path=db_path, plan_id=plan_id, limit=limit)),
        failure_message="Plan events unavailable.",
    )


@plan_runner.command("resumable")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def resumable_plans(db_path: Path | None) -> None:
    """List paused or interrupted plans that still have a checkpoint."""

    _emit_result(
        PLAN_CONTROLLER.resumable(PlanListCommand(db_path=db_path)),
        failure_message="Resumable plans unavailable.",
    )


@plan_runner.command("maintenance")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def maintenance(db_path: Path | None) -> None:
    """Prune finished plans past retention and reclaim orphaned checkpoints."""

    _emit_result(
        PLAN_CONTROLLER.maintenance(PlanMaintenanceCommand(db_path=db_path)),
        failure_message="Maintenance failed.",
    )


def _emit_result(result: PlanCommandResult, *, failure_message: str) -> None:
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException(failure_message)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    plan_runner()
