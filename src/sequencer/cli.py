"""CLI entry point for sequencer."""

from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from sequencer.errors import ConfigurationError
from sequencer.models import PipelineRun, RunOutcome, RunStatus, TriggerContext, TriggerEvent

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2
EXIT_INTERRUPTED = 3


def _add_trigger_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("pipeline", type=Path, help="Pipeline definition (TOML)")
    parser.add_argument(
        "--event",
        choices=[e.value for e in TriggerEvent],
        default=TriggerEvent.MANUAL.value,
        help="Trigger event kind (default: manual)",
    )
    parser.add_argument("--action", default="plan", help="Requested action (default: plan)")
    parser.add_argument("--environment", default="default", help="Target environment")
    parser.add_argument("--actor", default=None, help="Who triggered the run")
    parser.add_argument("--ref", default=None, help="Git ref being built")
    parser.add_argument(
        "--param",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Run parameter (repeatable)",
    )
    parser.add_argument(
        "--secret",
        action="append",
        default=[],
        metavar="NAME=ENVVAR",
        help="Expose environment variable ENVVAR as secret NAME (repeatable)",
    )


def _parse_pairs(pairs: list[str], flag: str) -> dict[str, str]:
    result: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise ConfigurationError(f"{flag} expects KEY=VALUE, got {pair!r}")
        result[key] = value
    return result


def _build_trigger(args: argparse.Namespace) -> TriggerContext:
    secrets: dict[str, str] = {}
    for name, env_var in _parse_pairs(args.secret, "--secret").items():
        if env_var not in os.environ:
            raise ConfigurationError(f"secret {name!r}: environment variable {env_var} is not set")
        secrets[name] = os.environ[env_var]
    return TriggerContext(
        event=TriggerEvent(args.event),
        action=args.action,
        environment=args.environment,
        actor=args.actor,
        ref=args.ref,
        params=_parse_pairs(args.param, "--param"),
        secrets=secrets,
    )


def exit_code_for(run: PipelineRun) -> int:
    if run.outcome is RunOutcome.CONFIGURATION_ERROR:
        return EXIT_CONFIG
    if run.outcome is RunOutcome.INTERRUPTED:
        return EXIT_INTERRUPTED
    if run.status is RunStatus.FAILED:
        return EXIT_FAILED
    return EXIT_OK


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
    )


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the sequencer CLI."""
    parser = argparse.ArgumentParser(
        prog="sequencer",
        description="Deployment pipeline executor: gated stages, typed artifacts",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {_get_version()}",
    )
    parser.add_argument(
        "--init",
        action="store_true",
        help="Generate .sequencer/sequencer.toml from source defaults",
    )

    subparsers = parser.add_subparsers(dest="command")

    validate_parser = subparsers.add_parser(
        "validate", help="Check a pipeline definition without running it"
    )
    _add_trigger_arguments(validate_parser)

    run_parser = subparsers.add_parser("run", help="Run a pipeline")
    _add_trigger_arguments(run_parser)
    run_parser.add_argument(
        "--summary",
        type=Path,
        default=None,
        help="Append the markdown run summary to this file",
    )
    run_parser.add_argument(
        "--no-state",
        action="store_true",
        help="Do not record the run in the state database",
    )

    history_parser = subparsers.add_parser("history", help="Show recent runs")
    history_parser.add_argument(
        "--limit", type=int, default=20, help="Number of runs (default: 20)"
    )
    history_parser.add_argument("--pipeline", default=None, help="Filter by pipeline name")

    _args = parser.parse_args(argv)

    if _args.init:
        from sequencer.config import init_config

        path = init_config(Path.cwd())
        print(f"Wrote {path}")
        return EXIT_OK

    if _args.command == "validate":
        return _validate(_args)
    if _args.command == "run":
        return _run(_args)
    if _args.command == "history":
        return _history(_args)

    parser.print_help()
    return EXIT_OK


def _validate(args: argparse.Namespace) -> int:
    from sequencer.loader import load_pipeline
    from sequencer.validation import validate_pipeline

    console = Console()
    try:
        pipeline = load_pipeline(args.pipeline)
        trigger = _build_trigger(args)
        graph = validate_pipeline(pipeline, trigger.with_defaults(pipeline.parameters))
    except ConfigurationError as exc:
        console.print(f"[bold red]Invalid pipeline {args.pipeline}[/bold red]")
        for problem in exc.problems:
            console.print(f"  - {problem}")
        return EXIT_CONFIG

    console.print(f"[bold green]{pipeline.name} is valid[/bold green]")
    for number, tier in enumerate(graph.execution_tiers(), start=1):
        console.print(f"  tier {number}: {', '.join(tier)}")
    return EXIT_OK


def _run(args: argparse.Namespace) -> int:
    from sequencer.config import load_config
    from sequencer.loader import load_pipeline
    from sequencer.scheduler import PipelineScheduler
    from sequencer.state_db import StateDB
    from sequencer.summary import RunSummary, render_table

    project_root = Path.cwd()
    config = load_config(project_root)
    _configure_logging(config.logging.level)
    console = Console()

    try:
        pipeline = load_pipeline(args.pipeline)
        trigger = _build_trigger(args)
    except ConfigurationError as exc:
        console.print(f"[bold red]Configuration error:[/bold red] {exc}")
        return EXIT_CONFIG

    summary_path = args.summary or (Path(config.summary.path) if config.summary.path else None)
    state = None
    if config.state.enabled and not args.no_state:
        state = StateDB(project_root / config.state.path)

    scheduler = PipelineScheduler(
        config=config,
        state=state,
        summary=RunSummary(summary_path),
    )
    scheduler.install_signal_handlers()
    try:
        run = scheduler.run(pipeline, trigger)
    finally:
        if state is not None:
            state.close()

    console.print(render_table(run))
    return exit_code_for(run)


def _history(args: argparse.Namespace) -> int:
    from sequencer.config import load_config
    from sequencer.state_db import StateDB

    project_root = Path.cwd()
    config = load_config(project_root)
    db_path = project_root / config.state.path
    console = Console()
    if not db_path.is_file():
        console.print("No runs recorded yet.")
        return EXIT_OK

    with StateDB(db_path) as db:
        runs = db.list_runs(limit=args.limit, pipeline=args.pipeline)

    table = Table(title="Recent runs")
    table.add_column("Run", style="cyan")
    table.add_column("Pipeline")
    table.add_column("Trigger", style="dim")
    table.add_column("Status", style="green")
    table.add_column("Outcome")
    table.add_column("Started", style="dim")
    for run in runs:
        table.add_row(
            run["run_id"],
            run["pipeline"],
            f"{run['event']}/{run['action']}@{run['environment']}",
            run["status"],
            run["outcome"],
            run["started_at"],
        )
    console.print(table)
    return EXIT_OK


def _get_version() -> str:
    from sequencer import __version__

    return __version__


if __name__ == "__main__":
    sys.exit(main())
