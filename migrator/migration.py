"""Run one target through the migration pipeline.

The pipeline is Clone -> PreFlight -> each migration script -> Push ->
Publish.  It stops at the first step that does not report ``Continue``.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path

from migrator.github import (
    GitHubClient,
    GitHubError,
    PullRequestDescription,
    extract_github_info,
)
from migrator.models import CampaignDefinition, CreatedPullRequest, Target
from migrator.steps import (
    Abort,
    CloneRepoStep,
    CommandFailed,
    Continue,
    Failure,
    InvalidGitRepo,
    MigrationScriptStep,
    PreFlightCheckStep,
    PushRepoStep,
    Step,
    StepOutcome,
    UpdateGithubStep,
)
from migrator.workspace import DEFAULT_COMMAND_TIMEOUT, Workspace, WorkspaceError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExecutionOptions:
    dry_run: bool = False
    skip_push: bool = False
    skip_pull_request: bool = False
    work_dir: Path = field(default_factory=lambda: Path("work-dir"))
    command_timeout: int = DEFAULT_COMMAND_TIMEOUT

    def __post_init__(self):
        modes = [self.dry_run, self.skip_push, self.skip_pull_request]
        if sum(modes) > 1:
            raise ValueError(
                "Only one of dry_run, skip_push and skip_pull_request may be set"
            )

    @property
    def is_publish_enabled(self) -> bool:
        return not self.dry_run

    @property
    def is_push_enabled(self) -> bool:
        return not self.dry_run and not self.skip_push

    @property
    def is_pr_enabled(self) -> bool:
        return not self.dry_run and not self.skip_pull_request


@dataclass(frozen=True)
class PipelineResult:
    """The last step a pipeline ran and what it reported."""

    step: str
    outcome: StepOutcome

    @property
    def failed(self) -> bool:
        return isinstance(self.outcome, Failure)

    @property
    def pull_request(self) -> CreatedPullRequest | None:
        if isinstance(self.outcome, Continue) and isinstance(
            self.outcome.value, CreatedPullRequest
        ):
            return self.outcome.value
        return None


def run_steps(steps: list[Step], workspace: Workspace) -> PipelineResult:
    """Run *steps* in order, stopping at the first non-Continue outcome."""
    result = PipelineResult(step="none", outcome=Continue())
    for step in steps:
        logger.debug("[%s] running step %s", workspace.name, step.name)
        outcome = step.run(workspace)
        result = PipelineResult(step=step.name, outcome=outcome)
        if not isinstance(outcome, Continue):
            break
    return result


class MigrationTask:
    def __init__(
        self,
        target: Target,
        definition: CampaignDefinition,
        client: GitHubClient,
        options: ExecutionOptions,
    ):
        self.target = target
        self.definition = definition
        self.client = client
        self.options = options

    @property
    def name(self) -> str:
        return self.target.name

    def build_steps(self, repo) -> list[Step]:
        definition = self.definition
        steps: list[Step] = [
            CloneRepoStep(definition.branch_name, repo),
            PreFlightCheckStep(definition.pre_flight),
        ]
        steps += [MigrationScriptStep.from_definition(s) for s in definition.steps]
        steps.append(PushRepoStep(
            definition.branch_name,
            publish=self.options.is_publish_enabled,
            push=self.options.is_push_enabled,
        ))
        steps.append(UpdateGithubStep(
            self.client,
            repo,
            PullRequestDescription(
                branch=definition.branch_name,
                title=definition.pr_title,
                body=definition.pr_description,
            ),
            existing_pr=self.target.pull_request,
            enabled=self.options.is_pr_enabled,
        ))
        return steps

    def run(self) -> PipelineResult:
        if self.target.skip:
            logger.info("%s: skipped", self.name)
            return PipelineResult(step="skip", outcome=Abort("skip"))

        try:
            repo = extract_github_info(self.target.clone_url)
        except GitHubError as e:
            return PipelineResult(step="invalid-url", outcome=Failure(InvalidGitRepo(e)))

        logger.info("Processing %s", self.name)
        try:
            workspace = Workspace.create(
                self.options.work_dir,
                self.name,
                env=self.target.env,
                timeout=self.options.command_timeout,
            )
        except (WorkspaceError, OSError) as e:
            return PipelineResult(step="workspace", outcome=Failure(CommandFailed(e)))

        with workspace:
            result = run_steps(self.build_steps(repo), workspace)

        logger.info("%s: finished at step `%s` with %s", self.name, result.step,
                    type(result.outcome).__name__)
        return result
