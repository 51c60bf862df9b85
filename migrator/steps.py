"""Pipeline steps and the outcome each one reports.

Every step exposes ``run(workspace) -> StepOutcome``.  A step never raises:
whatever goes wrong is reported as a ``Failure`` carrying a MigrationError,
and a deliberate early stop is an ``Abort``.
"""

import logging
import shlex
from dataclasses import dataclass
from typing import Any, Protocol

from migrator.github import (
    GitHubClient,
    GitHubError,
    GitHubRepo,
    PullRequestDescription,
)
from migrator.models import CreatedPullRequest, StepDefinition
from migrator.workspace import CommandError, Workspace, WorkspaceError, make_script_absolute

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class MigrationError(Exception):
    """Base class for everything that fails a target's pipeline."""


class UnableToCheckoutRepo(MigrationError):
    def __init__(self, repo: str, source: Exception):
        self.repo = repo
        self.source = source
        super().__init__(f"Unable to checkout {repo}. Got error: {source}")


class MigrationStepErrored(MigrationError):
    def __init__(self, step_name: str, source: Exception | None = None):
        self.step_name = step_name
        self.source = source
        super().__init__(f"Migration step {step_name} failed")


class WorkingDirNotClean(MigrationError):
    def __init__(self, step_name: str, files: list[str]):
        self.step_name = step_name
        self.files = files
        super().__init__(
            f"Migration step {step_name} left uncommitted changes: {', '.join(files)}"
        )


class UnableToCreatePullRequest(MigrationError):
    def __init__(self, source: Exception):
        self.source = source
        super().__init__(f"Unable to create pull request: {source}")


class UnableToFetchPullRequest(MigrationError):
    def __init__(self, number: int, source: Exception):
        self.number = number
        self.source = source
        super().__init__(f"Unable to get pull request {number}: {source}")


class InvalidGitRepo(MigrationError):
    def __init__(self, source: Exception):
        self.source = source
        super().__init__(f"Unable to parse Git Repo: {source}")


class CommandFailed(MigrationError):
    def __init__(self, source: Exception):
        self.source = source
        super().__init__(str(source))


class UnexpectedError(MigrationError):
    def __init__(self, source: Exception):
        self.source = source
        super().__init__(f"Unexpected error: {source!r}")


# ---------------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Continue:
    value: Any = None


@dataclass(frozen=True)
class Abort:
    reason: str


@dataclass(frozen=True)
class Failure:
    error: MigrationError


StepOutcome = Continue | Abort | Failure


class Step(Protocol):
    name: str

    def run(self, workspace: Workspace) -> StepOutcome: ...


# ---------------------------------------------------------------------------
# Git
# ---------------------------------------------------------------------------

def untracked_files(workspace: Workspace) -> list[str]:
    """Return every path ``git status`` reports as modified or untracked."""
    proc = workspace.run_command_successfully(
        "git status --porcelain --untracked-files=all"
    )
    files = []
    for line in proc.stdout.splitlines():
        if len(line) > 3:
            files.append(line[3:].strip())
    return files


class CloneRepoStep:
    name = "clone"

    def __init__(self, branch_name: str, repo: GitHubRepo):
        self.branch_name = branch_name
        self.repo = repo

    def run(self, workspace: Workspace) -> StepOutcome:
        try:
            self._clone(workspace)
        except WorkspaceError as e:
            return Failure(UnableToCheckoutRepo(str(self.repo), e))
        return Continue()

    def _clone(self, workspace: Workspace) -> None:
        git_repo = workspace.root_dir / "repo"
        logger.info("Cloning %s into %s", self.repo, git_repo)
        workspace.run_command_successfully(
            f"git clone {shlex.quote(self.repo.clone_url)} {shlex.quote(str(git_repo))}"
        )
        workspace.set_working_dir("repo")

        logger.info("Creating %s branch", self.branch_name)
        workspace.run_command_successfully(
            f"git checkout -B {shlex.quote(self.branch_name)}"
        )
        workspace.run_command_successfully("git config push.default current")


class PushRepoStep:
    """Force-push the branch, refusing if the remote moved underneath us.

    With ``publish`` off (dry run) the pipeline stops here.  With ``push``
    off the remote is left alone but the pipeline carries on so an existing
    PR can still be refreshed.
    """

    name = "push"

    def __init__(self, branch_name: str, publish: bool = True, push: bool = True):
        self.branch_name = branch_name
        self.publish = publish
        self.push = push

    def run(self, workspace: Workspace) -> StepOutcome:
        if not self.publish:
            logger.info("Dry run, not pushing %s", self.branch_name)
            return Abort("push")
        if not self.push:
            logger.info("Skipping push of %s", self.branch_name)
            return Continue()
        try:
            workspace.run_command_successfully(
                "git push --force-with-lease --set-upstream origin "
                + shlex.quote(self.branch_name)
            )
        except WorkspaceError as e:
            return Failure(CommandFailed(e))
        return Continue()


# ---------------------------------------------------------------------------
# Scripts
# ---------------------------------------------------------------------------

class PreFlightCheckStep:
    name = "pre-flight"

    def __init__(self, command: str):
        self.command = command

    def run(self, workspace: Workspace) -> StepOutcome:
        logger.info("Running pre-flight check for %s", workspace.name)
        try:
            workspace.run_command_successfully(make_script_absolute(self.command))
        except CommandError as e:
            if e.code is None:
                logger.warning("Preflight check timed out: %s", e)
                return Failure(CommandFailed(e))
            logger.info("Preflight check determined the migration is complete (%s)", e)
            return Abort("pre-flight")
        except WorkspaceError as e:
            return Failure(CommandFailed(e))
        logger.info("Preflight check determined the migration should be run.")
        return Continue()


class MigrationScriptStep:
    def __init__(self, step_name: str, command: str):
        self.step_name = step_name
        self.command = command
        self.name = f"migration-step:{step_name}"

    @classmethod
    def from_definition(cls, step: StepDefinition) -> "MigrationScriptStep":
        return cls(step.name, step.migration_script)

    def run(self, workspace: Workspace) -> StepOutcome:
        logger.info("Running migration script %s for %s", self.step_name, workspace.name)
        try:
            workspace.run_command_successfully(make_script_absolute(self.command))
        except WorkspaceError as e:
            logger.warning("Migration script %s failed: %s", self.step_name, e)
            return Failure(MigrationStepErrored(self.step_name, e))

        try:
            files = untracked_files(workspace)
        except WorkspaceError as e:
            return Failure(CommandFailed(e))
        if files:
            logger.warning(
                "Migration script %s left %d uncommitted files", self.step_name, len(files)
            )
            return Failure(WorkingDirNotClean(self.step_name, files))

        logger.info("Migration script %s finished successfully", self.step_name)
        return Continue()


class FollowUpStep:
    name = "follow-up"

    def __init__(self, command: str):
        self.command = command

    def run(self, workspace: Workspace) -> StepOutcome:
        try:
            workspace.run_command_successfully(make_script_absolute(self.command))
        except WorkspaceError as e:
            return Failure(CommandFailed(e))
        return Continue()


# ---------------------------------------------------------------------------
# GitHub
# ---------------------------------------------------------------------------

class UpdateGithubStep:
    name = "pull-request"

    def __init__(
        self,
        client: GitHubClient,
        repo: GitHubRepo,
        description: PullRequestDescription,
        existing_pr: CreatedPullRequest | None = None,
        enabled: bool = True,
    ):
        self.client = client
        self.repo = repo
        self.description = description
        self.existing_pr = existing_pr
        self.enabled = enabled

    def run(self, workspace: Workspace) -> StepOutcome:
        if not self.enabled:
            logger.info("Skipping pull request for %s", self.repo)
            return Abort("pull-request")
        number = self.existing_pr.number if self.existing_pr else None
        try:
            output = self.client.sync_pull_request(self.repo, self.description, number)
        except GitHubError as e:
            return Failure(UnableToCreatePullRequest(e))
        return Continue(CreatedPullRequest(number=output.number, url=output.permalink))
