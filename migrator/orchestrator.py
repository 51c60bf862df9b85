"""Orchestrator: run a migration campaign across many repositories in parallel."""

import argparse
import asyncio
import logging
import os
import sys
from dataclasses import replace
from pathlib import Path

from rich.console import Console
from rich.live import Live
from rich.table import Table

from migrator.followup import run_followup
from migrator.github import GitHubClient
from migrator.migration import ExecutionOptions, MigrationTask, PipelineResult
from migrator.models import (
    CampaignState,
    backup_state,
    example_state,
    load_state,
    save_state,
    write_error_log,
)
from migrator.scheduler import MAX_WORKERS, Job, ResultMap, schedule
from migrator.status import check_status
from migrator.steps import Abort, Failure
from migrator.workspace import DEFAULT_COMMAND_TIMEOUT

log = logging.getLogger("orchestrator")
console = Console()


# ---------------------------------------------------------------------------
# Result handling
# ---------------------------------------------------------------------------

def _migration_jobs(tasks: list[MigrationTask], results: ResultMap) -> dict[str, Job]:
    jobs: dict[str, Job] = {}
    for task in tasks:
        if task.target.skip:
            results.record(task.name, PipelineResult(step="skip", outcome=Abort("skip")))
            continue
        jobs[task.name] = task.run
    return jobs


def merge_results(
    state: CampaignState, results: dict[str, PipelineResult]
) -> tuple[CampaignState, list[str]]:
    """Fold pipeline results back into the campaign state.

    Targets that produced a pull request get it recorded; everything else
    keeps its previous record.  Returns the new state and one error line per
    failed target.
    """
    targets = dict(state.targets)
    errors: list[str] = []
    for name in sorted(results):
        result = results[name]
        outcome = result.outcome
        if isinstance(outcome, Failure):
            log.warning("%s: Unable to run migration because of %s", name, outcome.error)
            errors.append(f"{name}: {outcome.error}")
        elif result.pull_request is not None and name in targets:
            targets[name] = targets[name].with_pull_request(result.pull_request)
        elif isinstance(outcome, Abort):
            log.info("%s: Exited early at step `%s` (%s)", name, result.step, outcome.reason)
        else:
            log.info("%s: Exited successfully with step `%s`", name, result.step)
    return replace(state, targets=targets), errors


# ---------------------------------------------------------------------------
# Rich display
# ---------------------------------------------------------------------------

def _format_duration(seconds: float) -> str:
    """Format elapsed seconds as 'Xm YYs' or 'Xs'."""
    if seconds < 60:
        return f"{seconds:.0f}s"
    mins = int(seconds // 60)
    secs = int(seconds % 60)
    return f"{mins}m {secs:02d}s"


def _status_cell(result: PipelineResult | None, running: bool) -> str:
    if running:
        return "[yellow]running[/yellow]"
    if result is None:
        return "[dim]queued[/dim]"
    outcome = result.outcome
    if isinstance(outcome, Failure):
        return f"[red]failed ({result.step})[/red]"
    if isinstance(outcome, Abort):
        return f"[blue]stopped ({outcome.reason})[/blue]"
    return "[green]done[/green]"


def build_table(names: list[str], results: ResultMap) -> Table:
    table = Table(title="Migration Status", expand=True)
    table.add_column("Target", style="cyan", no_wrap=True)
    table.add_column("Status", justify="center")
    table.add_column("Pull Request", style="white")
    table.add_column("Duration", justify="right")

    finished = results.snapshot()
    running = results.running()
    failed = 0
    for name in names:
        result = finished.get(name)
        if result is not None and result.failed:
            failed += 1
        pr = result.pull_request if result is not None else None
        elapsed = results.elapsed(name)
        table.add_row(
            name,
            _status_cell(result, name in running),
            pr.url if pr else "",
            _format_duration(elapsed) if elapsed is not None else "",
        )

    table.caption = (
        f"Total: {len(names)}  "
        f"Running: {len(running)}  "
        f"Finished: {len(finished)}  "
        f"Failed: {failed}"
    )
    return table


async def run_with_progress(
    jobs: dict[str, Job],
    results: ResultMap,
    names: list[str],
    max_workers: int = MAX_WORKERS,
    show_progress: bool = True,
) -> ResultMap:
    if not show_progress:
        return await schedule(jobs, results, max_workers)

    with Live(build_table(names, results), console=console, refresh_per_second=2) as live:
        runner = asyncio.ensure_future(schedule(jobs, results, max_workers))
        while not runner.done():
            live.update(build_table(names, results))
            await asyncio.sleep(0.5)
        live.update(build_table(names, results))
        return runner.result()


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def run_init(path: str | Path = "migration.yaml") -> Path:
    path = Path(path)
    if path.exists():
        raise FileExistsError(f"{path} already exists")
    save_state(example_state(), path)
    console.print(f"Wrote example campaign to [cyan]{path}[/cyan]")
    return path


def run_migration(
    migration_definition: str | Path,
    github_token: str | None,
    options: ExecutionOptions,
    max_workers: int = MAX_WORKERS,
    show_progress: bool = True,
    client: GitHubClient | None = None,
) -> tuple[CampaignState, list[str]]:
    """Run the campaign in *migration_definition* and rewrite it with the results."""
    path = Path(migration_definition)
    state = load_state(path)
    backup_state(path)

    log.info("Processing %d repos", len(state.targets))
    options.work_dir.mkdir(parents=True, exist_ok=True)

    client = client or GitHubClient(token=github_token)
    tasks = [
        MigrationTask(target, state.definition, client, options)
        for target in state.targets.values()
    ]

    results = ResultMap()
    jobs = _migration_jobs(tasks, results)
    asyncio.run(run_with_progress(
        jobs, results, sorted(state.targets), max_workers, show_progress
    ))

    new_state, errors = merge_results(state, results.snapshot())
    save_state(new_state, path)
    write_error_log(path, errors)
    return new_state, errors


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------

def _log_level(args: argparse.Namespace) -> int:
    if args.error:
        return logging.ERROR
    if args.warn:
        return logging.WARNING
    if args.debug:
        return logging.DEBUG
    return logging.INFO


def _positive_int(value: str) -> int:
    number = int(value)
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be at least 1, got {value}")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="migrator",
        description=(
            "Apply a scripted change to many repositories and publish the "
            "results as pull requests"
        ),
    )
    logging_group = parser.add_mutually_exclusive_group()
    logging_group.add_argument(
        "-d", "--debug", action="count", default=0, help="Enable debug logging"
    )
    logging_group.add_argument(
        "-w", "--warn", action="store_true", help="Only log warnings and errors"
    )
    logging_group.add_argument(
        "-e", "--error", action="store_true", help="Only log errors"
    )

    sub = parser.add_subparsers(dest="command", required=True)

    init = sub.add_parser("init", help="Write an example campaign file")
    init.add_argument(
        "--migration-definition",
        default="migration.yaml",
        help="Where to write the example (default: migration.yaml)",
    )

    def add_common(p: argparse.ArgumentParser) -> None:
        p.add_argument(
            "--migration-definition",
            required=True,
            help="Campaign YAML file; run-migration updates it with the results",
        )
        p.add_argument(
            "--github-token",
            default=os.environ.get("GITHUB_TOKEN"),
            help="Token used when talking to GitHub (default: $GITHUB_TOKEN)",
        )

    run = sub.add_parser("run-migration", help="Run a migration and record the results")
    add_common(run)
    run.add_argument(
        "--work-directory",
        default="work-dir",
        help="Folder where the work will take place (default: work-dir)",
    )
    run.add_argument(
        "--max-workers",
        type=_positive_int,
        default=MAX_WORKERS,
        help=f"Max parallel pipelines (default: {MAX_WORKERS})",
    )
    run.add_argument(
        "--command-timeout",
        type=_positive_int,
        default=DEFAULT_COMMAND_TIMEOUT,
        help=f"Per-command timeout in seconds (default: {DEFAULT_COMMAND_TIMEOUT})",
    )
    run.add_argument(
        "--no-progress",
        action="store_true",
        default=False,
        help="Do not render the live status table",
    )
    modes = run.add_mutually_exclusive_group()
    modes.add_argument(
        "--skip-pull-request",
        action="store_true",
        help="Push the branch but do not create or update the PR",
    )
    modes.add_argument(
        "--skip-push",
        action="store_true",
        help="Leave the remote alone; an existing PR is still updated",
    )
    modes.add_argument(
        "--dry-run",
        action="store_true",
        help="Run the scripts locally without pushing or touching PRs",
    )

    status = sub.add_parser("check-status", help="Report on the PRs a migration created")
    add_common(status)

    followup = sub.add_parser("run-followup", help="Run a script against each open PR")
    add_common(followup)
    followup.add_argument(
        "--work-directory",
        default="follow-up-dir",
        help="Folder where the work will take place (default: follow-up-dir)",
    )
    followup.add_argument("followup_script", help="Script to run in each repository")
    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=_log_level(args),
        format="%(asctime)s [%(name)s] %(levelname)s %(message)s",
        datefmt="%H:%M:%S",
    )

    if args.command != "init" and not args.github_token:
        parser.error("--github-token or GITHUB_TOKEN is required")

    try:
        if args.command == "init":
            run_init(args.migration_definition)
        elif args.command == "run-migration":
            options = ExecutionOptions(
                dry_run=args.dry_run,
                skip_push=args.skip_push,
                skip_pull_request=args.skip_pull_request,
                work_dir=Path(args.work_directory),
                command_timeout=args.command_timeout,
            )
            _, errors = run_migration(
                args.migration_definition,
                args.github_token,
                options,
                max_workers=args.max_workers,
                show_progress=not args.no_progress,
            )
            if errors:
                console.print(f"[bold red]{len(errors)} target(s) failed[/bold red]")
        elif args.command == "check-status":
            print(check_status(args.migration_definition, args.github_token))
        elif args.command == "run-followup":
            run_followup(
                args.migration_definition,
                args.github_token,
                args.followup_script,
                work_dir=Path(args.work_directory),
            )
    except KeyboardInterrupt:
        console.print("\n[bold red]Interrupted![/bold red]")
        log.warning("KeyboardInterrupt, shutting down")
        sys.exit(130)


if __name__ == "__main__":
    main()
