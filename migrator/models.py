"""Load, save and back up campaign files.

A campaign file is YAML with the recipe at the top level and one entry per
target repository under ``targets``::

    checkout:
      branch-name: demo
      pre-flight: /usr/bin/true
    pr:
      title: Example Title
      description: Body of the PR
    steps:
      - name: rename
        migration-script: rename.sh
    targets:
      repo-a:
        repo: git@github.com:org/repo-a.git
        env: {KEY: value}
        skip: false
        pull-request:
          pr-number: 12
          url: https://github.com/org/repo-a/pull/12

``env``, ``skip`` and ``pull-request`` are optional.  ``pull-request`` is
written back by ``run-migration`` so that a re-run updates the existing PR
instead of opening a new one.
"""

import logging
import shutil
import time
from dataclasses import dataclass, field, replace
from pathlib import Path

import yaml

logger = logging.getLogger(__name__)

ERROR_LOG_NAME = "migration.errors.txt"


@dataclass(frozen=True)
class StepDefinition:
    name: str
    migration_script: str


@dataclass(frozen=True)
class CampaignDefinition:
    branch_name: str
    pre_flight: str
    pr_title: str
    pr_description: str
    steps: tuple[StepDefinition, ...] = ()


@dataclass(frozen=True)
class CreatedPullRequest:
    number: int
    url: str = ""


@dataclass
class Target:
    name: str
    clone_url: str
    env: dict[str, str] = field(default_factory=dict)
    pull_request: CreatedPullRequest | None = None
    skip: bool = False

    def with_pull_request(self, pull_request: CreatedPullRequest) -> "Target":
        """Return a copy of this target that remembers *pull_request*."""
        return replace(self, env=dict(self.env), pull_request=pull_request)


@dataclass
class CampaignState:
    definition: CampaignDefinition
    targets: dict[str, Target] = field(default_factory=dict)


def _require(data: dict, key: str, where: str):
    if not isinstance(data, dict) or key not in data:
        raise ValueError(f"Missing required key '{key}' in {where}")
    return data[key]


def _parse_definition(data: dict) -> CampaignDefinition:
    checkout = _require(data, "checkout", "campaign file")
    pr = _require(data, "pr", "campaign file")
    steps = []
    for index, entry in enumerate(data.get("steps") or []):
        where = f"steps[{index}]"
        steps.append(StepDefinition(
            name=str(_require(entry, "name", where)),
            migration_script=str(_require(entry, "migration-script", where)),
        ))
    return CampaignDefinition(
        branch_name=str(_require(checkout, "branch-name", "checkout")),
        pre_flight=str(_require(checkout, "pre-flight", "checkout")),
        pr_title=str(_require(pr, "title", "pr")),
        pr_description=str(_require(pr, "description", "pr")),
        steps=tuple(steps),
    )


def _parse_target(name: str, entry: dict) -> Target:
    where = f"targets.{name}"
    env = entry.get("env") or {}
    if not isinstance(env, dict):
        raise ValueError(f"'env' in {where} must be a mapping")

    pull_request = None
    raw_pr = entry.get("pull-request")
    if raw_pr:
        pull_request = CreatedPullRequest(
            number=int(_require(raw_pr, "pr-number", f"{where}.pull-request")),
            url=str(raw_pr.get("url", "")),
        )

    return Target(
        name=name,
        clone_url=str(_require(entry, "repo", where)),
        env={str(k): str(v) for k, v in env.items()},
        pull_request=pull_request,
        skip=bool(entry.get("skip", False)),
    )


def parse_state(data: dict) -> CampaignState:
    """Build a CampaignState from the decoded YAML document.

    Raises ValueError when a required key is missing or a target name is
    repeated or cannot be used as a directory name.
    """
    if not isinstance(data, dict):
        raise ValueError("Campaign file must contain a mapping at the top level")

    definition = _parse_definition(data)

    raw_targets = data.get("targets") or {}
    if isinstance(raw_targets, list):
        # list form: [{name: ..., repo: ...}, ...]
        pairs = [(_require(e, "name", "targets"), e) for e in raw_targets]
    else:
        pairs = list(raw_targets.items())

    targets: dict[str, Target] = {}
    for name, entry in pairs:
        name = str(name)
        # names become workspace directories
        if name in ("", ".", "..") or "/" in name or "\\" in name:
            raise ValueError(f"Invalid target name: {name!r}")
        if name in targets:
            raise ValueError(f"Duplicate target name: {name}")
        targets[name] = _parse_target(name, entry or {})

    return CampaignState(definition=definition, targets=targets)


def load_state(path: str | Path) -> CampaignState:
    path = Path(path)
    with open(path) as f:
        data = yaml.safe_load(f)
    state = parse_state(data)
    logger.debug("Loaded %d targets from %s", len(state.targets), path)
    return state


def dump_state(state: CampaignState) -> dict:
    definition = state.definition
    targets: dict[str, dict] = {}
    for name in sorted(state.targets):
        target = state.targets[name]
        entry: dict = {"repo": target.clone_url}
        if target.env:
            entry["env"] = dict(target.env)
        if target.skip:
            entry["skip"] = True
        if target.pull_request is not None:
            entry["pull-request"] = {
                "pr-number": target.pull_request.number,
                "url": target.pull_request.url,
            }
        targets[name] = entry

    return {
        "checkout": {
            "branch-name": definition.branch_name,
            "pre-flight": definition.pre_flight,
        },
        "pr": {
            "title": definition.pr_title,
            "description": definition.pr_description,
        },
        "steps": [
            {"name": s.name, "migration-script": s.migration_script}
            for s in definition.steps
        ],
        "targets": targets,
    }


def save_state(state: CampaignState, path: str | Path) -> None:
    path = Path(path)
    tmp_path = path.with_name(path.name + ".tmp")
    with open(tmp_path, "w") as f:
        yaml.safe_dump(dump_state(state), f, sort_keys=False, default_flow_style=False)
    tmp_path.replace(path)
    logger.info("Wrote campaign state to %s", path)


def backup_state(path: str | Path) -> Path:
    """Copy the campaign file to ``<path>.<epoch>.bck`` and return the copy."""
    path = Path(path)
    backup = path.with_name(f"{path.name}.{int(time.time())}.bck")
    shutil.copyfile(path, backup)
    logger.info("Backed up %s to %s", path, backup)
    return backup


def write_error_log(campaign_path: str | Path, errors: list[str]) -> Path | None:
    """Write the failure summary next to the campaign file.

    Returns the path written, or None when there is nothing to report.
    """
    if not errors:
        return None
    error_path = Path(campaign_path).with_name(ERROR_LOG_NAME)
    error_path.write_text("\n".join(errors) + "\n")
    logger.error("Created %s with the summary of errors", error_path)
    return error_path


def example_state() -> CampaignState:
    """The campaign written by ``init``."""
    definition = CampaignDefinition(
        branch_name="migrator/example-migration",
        pre_flight="/usr/bin/true",
        pr_title="Example Title",
        pr_description="This is a YAML file\n\nSo you can add newlines between the PR's",
        steps=(StepDefinition(name="Example", migration_script="examples/example-migration.sh"),),
    )
    target = Target(name="dummy-repo", clone_url="git@github.com:example-org/dummy-repo.git")
    return CampaignState(definition=definition, targets={target.name: target})
