# cli.py
from __future__ import annotations

import logging
import sys
from pathlib import Path

import click

from .config import EngineConfig
from .context import EventContext, RunContext
from .dag import ExecutionPlan, build
from .errors import DocumentError, GraphError
from .executor import local_executor
from .loader import load_workflow
from .results import Outcome, RunReport
from .runner import run_plan
from .ui.console import Console

EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_ABORTED = 3  # document/graph error, nothing ran (2 is click's usage error)
EXIT_INTERRUPTED = 130


class _Abort(Exception):
    """Loading or planning failed; the error has already been printed."""


def _console(ctx: click.Context) -> Console:
    return ctx.obj["console"]


def _load_plan(ctx: click.Context, document: Path, max_matrix: int) -> ExecutionPlan:
    """Load + build, printing a structured error (and exiting 3) on failure."""
    console = _console(ctx)
    try:
        doc = load_workflow(document)
        plan = build(doc, max_matrix=max_matrix)
        console.print_debug(f"Loaded {document}: {len(doc.jobs)} job(s), {len(plan.instances)} instance(s)")
        return plan
    except DocumentError as e:
        console.print_error(
            "Invalid workflow document",
            f"{document}: {e.message}",
            details=[f"at {e.location}"],
        )
        raise _Abort(str(e))
    except GraphError as e:
        console.print_error(
            "Cannot build execution plan",
            f"{document}: {e.message}",
            details=[f"kind: {e.kind}"],
        )
        raise _Abort(str(e))


def _parse_actions(values: tuple[str, ...]) -> dict[str, str]:
    actions: dict[str, str] = {}
    for item in values:
        name, sep, command = item.partition("=")
        if not sep or not name:
            raise click.BadParameter(f"expected NAME=COMMAND, got {item!r}", param_hint="--action")
        actions[name.strip()] = command
    return actions


def _write_report(path: str | None, report: RunReport) -> None:
    if path is None:
        return
    if path == "-":
        click.echo(report.to_json())
        return
    out = Path(path)
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_text(report.to_json(), encoding="utf-8")


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """flowci: run CI workflow documents locally and deterministically."""
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug
    ctx.obj["console"] = Console(debug=debug)


@cli.command()
@click.argument("document", type=click.Path(path_type=Path))
@click.option("--event", "event_kind", default="push", show_default=True, help="Triggering event kind (push, pull_request, ...)")
@click.option("--branch", default=None, help="Branch the event is for")
@click.option("--workers", default=None, type=click.IntRange(min=1), help="Number of parallel workers")
@click.option("--fail-fast/--no-fail-fast", default=None, help="Cancel remaining jobs after the first failure")
@click.option("--grace-period", default=None, type=float, help="Seconds a cancelled job gets to stop")
@click.option("--timeout", default=None, type=float, help="Pipeline timeout in seconds")
@click.option("--max-matrix", default=None, type=click.IntRange(min=1), help="Max instances per matrix job")
@click.option("--report", "report_path", default=None, help="Write the JSON run report here ('-' for stdout)")
@click.option("--action", "actions", multiple=True, help="Map an action to a shell command: NAME=COMMAND")
@click.option("--stub-actions", is_flag=True, default=False, help="Treat unmapped actions as successful no-ops")
@click.option("--repo-root", default=".", type=click.Path(file_okay=False, path_type=Path), help="Working directory for steps")
@click.pass_context
def run(
    ctx,
    document,
    event_kind,
    branch,
    workers,
    fail_fast,
    grace_period,
    timeout,
    max_matrix,
    report_path,
    actions,
    stub_actions,
    repo_root,
):
    """Run a workflow document."""
    console = _console(ctx)
    event = EventContext(kind=event_kind, branch=branch)

    try:
        config = EngineConfig.from_env().override(
            workers=workers,
            fail_fast=fail_fast,
            grace_period=grace_period,
            timeout=timeout,
            max_matrix=max_matrix,
        )
    except ValueError as e:
        console.print_error("Invalid configuration", str(e), suggestion="Check the FLOWCI_* environment variables.")
        sys.exit(EXIT_ABORTED)

    console.print_debug(f"Config: {config}")
    action_map = _parse_actions(actions)

    try:
        plan = _load_plan(ctx, document, config.max_matrix)
    except _Abort as e:
        _write_report(report_path, RunReport.aborted(str(e), event=event.as_dict()))
        sys.exit(EXIT_ABORTED)

    executor = local_executor(
        shell=config.shell,
        repo_root=repo_root,
        # the shell escalates to SIGKILL before the scheduler gives up on the job
        grace_period=config.grace_period / 2,
        actions=action_map,
        stub_actions=stub_actions,
    )
    run_ctx = RunContext(
        document=plan.document,
        plan=plan,
        executor=executor,
        config=config,
        event=event,
        console=console,
    )

    try:
        report = run_plan(run_ctx)
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(EXIT_INTERRUPTED)
    except Exception as e:
        console.print_exception(e)
        sys.exit(EXIT_FAILURE)

    console.print_results(report)
    _write_report(report_path, report)
    sys.exit(EXIT_SUCCESS if report.outcome is Outcome.SUCCESS else EXIT_FAILURE)


@cli.command()
@click.argument("document", type=click.Path(path_type=Path))
@click.option("--max-matrix", default=None, type=click.IntRange(min=1), help="Max instances per matrix job")
@click.pass_context
def validate(ctx, document, max_matrix):
    """Check that a workflow document loads and forms a valid plan."""
    config = EngineConfig.from_env().override(max_matrix=max_matrix)
    try:
        plan = _load_plan(ctx, document, config.max_matrix)
    except _Abort:
        sys.exit(EXIT_ABORTED)
    _console(ctx).print_info(f"OK: {len(plan.document.jobs)} job(s), {len(plan.instances)} instance(s)")


@cli.command()
@click.argument("document", type=click.Path(path_type=Path))
@click.option("--max-matrix", default=None, type=click.IntRange(min=1), help="Max instances per matrix job")
@click.pass_context
def plan(ctx, document, max_matrix):
    """Print the execution plan as parallel stages."""
    config = EngineConfig.from_env().override(max_matrix=max_matrix)
    try:
        execution_plan = _load_plan(ctx, document, config.max_matrix)
    except _Abort:
        sys.exit(EXIT_ABORTED)
    _console(ctx).print_plan(execution_plan.levels())


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
