"""Report where each pull request from a campaign stands."""

import logging
from pathlib import Path

from migrator.github import GitHubClient, PullStatus, extract_github_info
from migrator.models import load_state

logger = logging.getLogger(__name__)

_SECTIONS = [
    (PullStatus.CHECKS_FAILED, "Checks Failed"),
    (PullStatus.NEEDS_APPROVAL, "Not Approved"),
    (PullStatus.MERGEABLE, "Mergeable"),
    (PullStatus.MERGED, "Merged"),
]


def collect_statuses(
    migration_definition: str | Path, client: GitHubClient
) -> dict[PullStatus, list[str]]:
    """Bucket the permalink of every recorded pull request by its status."""
    state = load_state(migration_definition)
    buckets: dict[PullStatus, list[str]] = {status: [] for status, _ in _SECTIONS}
    for target in state.targets.values():
        if target.pull_request is None:
            continue
        repo = extract_github_info(target.clone_url)
        pull = client.fetch_pull_state(repo, target.pull_request.number)
        logger.debug("%s#%d is %s", repo, target.pull_request.number, pull.status.value)
        buckets[pull.status].append(pull.permalink or target.pull_request.url)
    for links in buckets.values():
        links.sort()
    return buckets


def render_report(buckets: dict[PullStatus, list[str]]) -> str:
    lines = ["# Migration Results"]
    for status, title in _SECTIONS:
        lines += ["", f"## {title}", ""]
        lines += [f"- {link}" for link in buckets.get(status, [])]
    return "\n".join(lines)


def check_status(
    migration_definition: str | Path,
    github_token: str | None,
    client: GitHubClient | None = None,
) -> str:
    client = client or GitHubClient(token=github_token)
    return render_report(collect_statuses(migration_definition, client))
