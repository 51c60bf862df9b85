"""GitHub access through the ``gh`` CLI's GraphQL endpoint.

Pull requests are created, updated and inspected with ``gh api graphql`` so
that authentication follows the usual ``gh``/``GH_TOKEN`` rules.
"""

import json
import logging
import os
import re
import subprocess
from dataclasses import dataclass
from enum import Enum

logger = logging.getLogger(__name__)

GH_TIMEOUT = 60  # seconds

_REPO_URL = re.compile(
    r"^(https://github\.com/|git@github\.com:)(?P<owner>.+?)/(?P<repo>.+?)(\.git)?$"
)

PULL_REQUEST_STATUS_QUERY = """
query($owner: String!, $repo: String!, $number: Int!) {
  repository(owner: $owner, name: $repo) {
    pullRequest(number: $number) {
      id
      number
      permalink
      state
      merged
      mergeable
      reviewDecision
      commits(last: 1) {
        nodes {
          commit {
            statusCheckRollup {
              state
            }
          }
        }
      }
    }
  }
}
"""

REPOSITORY_QUERY = """
query($owner: String!, $repo: String!) {
  repository(owner: $owner, name: $repo) {
    id
    defaultBranchRef {
      name
    }
  }
}
"""

CREATE_PULL_REQUEST_MUTATION = """
mutation($repositoryId: ID!, $baseRefName: String!, $headRefName: String!, $title: String!, $body: String!) {
  createPullRequest(input: {
    repositoryId: $repositoryId,
    baseRefName: $baseRefName,
    headRefName: $headRefName,
    title: $title,
    body: $body
  }) {
    pullRequest {
      number
      permalink
    }
  }
}
"""

UPDATE_PULL_REQUEST_MUTATION = """
mutation($pullRequestId: ID!, $title: String!, $body: String!) {
  updatePullRequest(input: {pullRequestId: $pullRequestId, title: $title, body: $body}) {
    pullRequest {
      number
      permalink
    }
  }
}
"""


class GitHubError(Exception):
    """Base class for errors talking to GitHub."""


class UnableToDetermineRepo(GitHubError):
    def __init__(self, url: str):
        self.url = url
        super().__init__(f"Unable to determine GitHub owner/repo from {url}")


class GraphQlError(GitHubError):
    """GitHub answered with a GraphQL ``errors`` payload."""


class NoSuchRepository(GitHubError):
    def __init__(self, owner: str, repo: str):
        super().__init__(f"Repository {owner}/{repo} does not exist")


class NoSuchPullRequest(GitHubError):
    def __init__(self, owner: str, repo: str, number: int):
        super().__init__(f"Pull Request {owner}/{repo}/{number} does not exist")


class NoDefaultBranch(GitHubError):
    def __init__(self, owner: str, repo: str):
        super().__init__(f"Repository {owner}/{repo} has no default branch")


class PullStatus(str, Enum):
    CHECKS_FAILED = "checks-failed"
    NEEDS_APPROVAL = "needs-approval"
    MERGEABLE = "mergeable"
    MERGED = "merged"


@dataclass(frozen=True)
class GitHubRepo:
    owner: str
    repo: str
    clone_url: str

    def __str__(self) -> str:
        return f"{self.owner}/{self.repo}"


@dataclass(frozen=True)
class PullRequestDescription:
    branch: str
    title: str
    body: str


@dataclass(frozen=True)
class PullRequestOutput:
    number: int
    permalink: str


@dataclass(frozen=True)
class PullState:
    status: PullStatus
    permalink: str


def extract_github_info(url: str) -> GitHubRepo:
    """Parse an HTTPS or SSH GitHub clone URL into owner and repo."""
    match = _REPO_URL.match(url)
    if not match:
        raise UnableToDetermineRepo(url)
    return GitHubRepo(owner=match.group("owner"), repo=match.group("repo"), clone_url=url)


def classify_pull_request(pull: dict) -> PullStatus:
    """Decide how close a pull request is to landing.

    The checks are ordered: a merged PR is reported as merged regardless of
    stale check data, and GitHub's own ``mergeable`` flag wins over the
    latest commit's check rollup.  The rollup is only consulted when the
    flag is missing or not yet computed.  ``NEEDS_APPROVAL`` is reported
    when checks would pass but the review decision still blocks the merge.
    """
    if pull.get("merged"):
        return PullStatus.MERGED

    if pull.get("mergeable") == "MERGEABLE":
        return PullStatus.MERGEABLE

    nodes = (pull.get("commits") or {}).get("nodes") or []
    latest = nodes[0] if nodes else None
    if not latest:
        return PullStatus.CHECKS_FAILED

    rollup = (latest.get("commit") or {}).get("statusCheckRollup")
    if not rollup:
        return PullStatus.CHECKS_FAILED

    if rollup.get("state") not in ("SUCCESS", "PENDING"):
        return PullStatus.CHECKS_FAILED

    if pull.get("reviewDecision") in ("REVIEW_REQUIRED", "CHANGES_REQUESTED"):
        return PullStatus.NEEDS_APPROVAL
    return PullStatus.MERGEABLE


class GitHubClient:
    def __init__(self, token: str | None = None, timeout: int = GH_TIMEOUT):
        self.token = token
        self.timeout = timeout

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def fetch_pull_state(self, repo: GitHubRepo, number: int) -> PullState:
        pull = self._fetch_pr_details(repo, number)
        status = classify_pull_request(pull)
        logger.debug("PR %s#%d classified as %s", repo, number, status.value)
        return PullState(status=status, permalink=pull.get("permalink", ""))

    def sync_pull_request(
        self,
        repo: GitHubRepo,
        description: PullRequestDescription,
        number: int | None = None,
    ) -> PullRequestOutput:
        """Update the remembered PR while it is open, otherwise open a new one."""
        if number is not None:
            pull = self._fetch_pr_details(repo, number)
            if pull.get("state") == "OPEN":
                return self.update_pull_request(repo, description, pull)
            logger.info(
                "PR %s#%d is %s, creating a new one",
                repo,
                number,
                str(pull.get("state", "unknown")).lower(),
            )
        return self.create_pull_request(repo, description)

    def update_pull_request(
        self, repo: GitHubRepo, description: PullRequestDescription, pull: dict
    ) -> PullRequestOutput:
        logger.info("Updating PR for %s", repo)
        data = self._graphql(
            UPDATE_PULL_REQUEST_MUTATION,
            strings={
                "pullRequestId": pull["id"],
                "title": description.title,
                "body": description.body,
            },
        )
        pr = (data.get("updatePullRequest") or {}).get("pullRequest")
        if not pr:
            raise GitHubError(f"Unable to update pull request for {repo}")
        logger.info("Updated PR %s", pr["permalink"])
        return PullRequestOutput(number=int(pr["number"]), permalink=pr["permalink"])

    def create_pull_request(
        self, repo: GitHubRepo, description: PullRequestDescription
    ) -> PullRequestOutput:
        repository = self._fetch_repo_details(repo)
        default_branch = repository.get("defaultBranchRef")
        if not default_branch:
            raise NoDefaultBranch(repo.owner, repo.repo)

        logger.info(
            "Creating PR for %s (%s -> %s)", repo, description.branch, default_branch["name"]
        )
        data = self._graphql(
            CREATE_PULL_REQUEST_MUTATION,
            strings={
                "repositoryId": repository["id"],
                "baseRefName": default_branch["name"],
                "headRefName": description.branch,
                "title": description.title,
                "body": description.body,
            },
        )
        pr = (data.get("createPullRequest") or {}).get("pullRequest")
        if not pr:
            raise GitHubError(f"Unable to create pull request for {repo}")
        logger.info("Created PR at %s", pr["permalink"])
        return PullRequestOutput(number=int(pr["number"]), permalink=pr["permalink"])

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _fetch_pr_details(self, repo: GitHubRepo, number: int) -> dict:
        logger.info("Getting PR details for %s#%d", repo, number)
        data = self._graphql(
            PULL_REQUEST_STATUS_QUERY,
            strings={"owner": repo.owner, "repo": repo.repo},
            fields={"number": number},
        )
        repository = data.get("repository")
        if not repository:
            raise NoSuchRepository(repo.owner, repo.repo)
        pull = repository.get("pullRequest")
        if not pull:
            raise NoSuchPullRequest(repo.owner, repo.repo, number)
        return pull

    def _fetch_repo_details(self, repo: GitHubRepo) -> dict:
        data = self._graphql(
            REPOSITORY_QUERY, strings={"owner": repo.owner, "repo": repo.repo}
        )
        repository = data.get("repository")
        if not repository:
            raise NoSuchRepository(repo.owner, repo.repo)
        logger.debug("Repo ID: %s", repository.get("id"))
        return repository

    def _graphql(
        self,
        query: str,
        strings: dict[str, str] | None = None,
        fields: dict[str, int] | None = None,
    ) -> dict:
        """Run a GraphQL document and return its ``data`` payload.

        ``strings`` are passed verbatim (``-f``); ``fields`` go through gh's
        type conversion (``-F``) so integers arrive as Int.
        """
        args = ["api", "graphql", "-f", f"query={query}"]
        for key, value in (strings or {}).items():
            args += ["-f", f"{key}={value}"]
        for key, value in (fields or {}).items():
            args += ["-F", f"{key}={value}"]

        output = self._run_gh(args)
        try:
            response = json.loads(output)
        except json.JSONDecodeError as e:
            raise GraphQlError(f"Could not parse GitHub response: {output[:200]!r}") from e

        if response.get("errors"):
            raise GraphQlError(f"GraphQL responded with errors: {response['errors']}")
        data = response.get("data")
        if data is None:
            raise GraphQlError("GraphQL response had no data")
        return data

    def _run_gh(self, args: list[str]) -> str:
        cmd = ["gh"] + args
        env = dict(os.environ)
        if self.token:
            env["GH_TOKEN"] = self.token
        summary = " ".join(args[:2])
        logger.debug("Running gh %s", summary)
        try:
            proc = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                env=env,
            )
        except subprocess.TimeoutExpired as exc:
            raise GitHubError(f"gh {summary} timed out after {self.timeout}s") from exc
        except OSError as exc:
            raise GitHubError(f"Unable to run gh: {exc}") from exc
        if proc.returncode != 0:
            raise GitHubError(
                f"gh {summary} failed (code {proc.returncode}): {(proc.stderr or '')[:500]}"
            )
        return proc.stdout
