"""Run a follow-up script against every open pull request of a campaign.

The script runs in a fresh workspace per target with two extra environment
variables: ``MIGRATOR_PULL_REQUEST_URL`` and ``MIGRATOR_CLONE_URL``.
"""

import asyncio
import logging
from pathlib import Path

from migrator.github import GitHubClient, GitHubError, PullStatus, extract_github_info
from migrator.migration import PipelineResult, run_steps
from migrator.models import Target, load_state
from migrator.scheduler import MAX_WORKERS, ResultMap, schedule
from migrator.steps import (
    Abort,
    CommandFailed,
    Failure,
    FollowUpStep,
    InvalidGitRepo,
    UnableToFetchPullRequest,
)
from migrator.workspace import DEFAULT_COMMAND_TIMEOUT, Workspace, WorkspaceError

logger = logging.getLogger(__name__)


class FollowUpTask:
    def __init__(
        self,
        target: Target,
        client: GitHubClient,
        script: str,
        work_dir: Path,
        timeout: int = DEFAULT_COMMAND_TIMEOUT,
    ):
        self.target = target
        self.client = client
        self.script = script
        self.work_dir = work_dir
        self.timeout = timeout

    @property
    def name(self) -> str:
        return self.target.name

    def run(self) -> PipelineResult:
        pull_request = self.target.pull_request
        if pull_request is None:
            return PipelineResult(step="no-pull-request", outcome=Abort("no-pull-request"))

        try:
            repo = extract_github_info(self.target.clone_url)
        except GitHubError as e:
            return PipelineResult(step="invalid-url", outcome=Failure(InvalidGitRepo(e)))

        try:
            state = self.client.fetch_pull_state(repo, pull_request.number)
        except GitHubError as e:
            logger.warning("Unable to get pull request %d: %s", pull_request.number, e)
            return PipelineResult(
                step="no-pull-request",
                outcome=Failure(UnableToFetchPullRequest(pull_request.number, e)),
            )

        if state.status == PullStatus.MERGED:
            return PipelineResult(step="merged", outcome=Abort("merged"))

        env = dict(self.target.env)
        env["MIGRATOR_PULL_REQUEST_URL"] = state.permalink
        env["MIGRATOR_CLONE_URL"] = self.target.clone_url
        try:
            workspace = Workspace.create(self.work_dir, self.name, env=env, timeout=self.timeout)
        except (WorkspaceError, OSError) as e:
            return PipelineResult(step="workspace", outcome=Failure(CommandFailed(e)))

        with workspace:
            return run_steps([FollowUpStep(self.script)], workspace)


def run_followup(
    migration_definition: str | Path,
    github_token: str | None,
    followup_script: str,
    work_dir: Path = Path("follow-up-dir"),
    max_workers: int = MAX_WORKERS,
    client: GitHubClient | None = None,
) -> dict[str, PipelineResult]:
    state = load_state(migration_definition)
    client = client or GitHubClient(token=github_token)
    work_dir.mkdir(parents=True, exist_ok=True)

    jobs = {
        target.name: FollowUpTask(target, client, followup_script, work_dir).run
        for target in state.targets.values()
        if target.pull_request is not None
    }
    results = asyncio.run(schedule(jobs, ResultMap(), max_workers)).snapshot()

    for name in sorted(results):
        outcome = results[name].outcome
        if isinstance(outcome, Failure):
            logger.warning("%s did not run follow-up successfully: %s", name, outcome.error)
        elif isinstance(outcome, Abort):
            logger.info("%s: follow-up not run (%s)", name, outcome.reason)
        else:
            logger.info("%s ran follow up successfully", name)
    return results
