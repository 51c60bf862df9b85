"""Tests for the GitHub client and pull request classification."""

import json
import subprocess
from unittest.mock import MagicMock, patch

import pytest

from migrator.github import (
    GitHubClient,
    GitHubError,
    GitHubRepo,
    GraphQlError,
    NoDefaultBranch,
    NoSuchPullRequest,
    PullRequestDescription,
    PullStatus,
    UnableToDetermineRepo,
    classify_pull_request,
    extract_github_info,
)

REPO = GitHubRepo(owner="org", repo="repo-a", clone_url="git@github.com:org/repo-a.git")
DESCRIPTION = PullRequestDescription(branch="demo", title="Rename", body="Renames things")


def gh_ok(data: dict) -> MagicMock:
    return MagicMock(returncode=0, stdout=json.dumps({"data": data}), stderr="")


def pr_payload(state: str = "OPEN", **extra) -> dict:
    pull = {
        "id": "PR_kwDO123",
        "number": 12,
        "permalink": "https://github.com/org/repo-a/pull/12",
        "state": state,
        "merged": False,
        "mergeable": "UNKNOWN",
        "reviewDecision": None,
        "commits": {"nodes": []},
    }
    pull.update(extra)
    return {"repository": {"pullRequest": pull}}


def rollup(state: str) -> dict:
    return {"nodes": [{"commit": {"statusCheckRollup": {"state": state}}}]}


# ---------------------------------------------------------------------------
# extract_github_info
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "url",
    [
        "https://github.com/ethankhall/clu",
        "https://github.com/ethankhall/clu.git",
        "git@github.com:ethankhall/clu.git",
    ],
)
def test_extract_github_info(url):
    repo = extract_github_info(url)
    assert repo.owner == "ethankhall"
    assert repo.repo == "clu"
    assert repo.clone_url == url
    assert str(repo) == "ethankhall/clu"


@pytest.mark.parametrize(
    "url",
    ["https://gitlab.com/org/repo.git", "not a url", "git@bitbucket.org:org/repo.git"],
)
def test_extract_github_info_rejects_other_hosts(url):
    with pytest.raises(UnableToDetermineRepo):
        extract_github_info(url)


# ---------------------------------------------------------------------------
# classify_pull_request
# ---------------------------------------------------------------------------


def test_merged_wins_over_failing_checks():
    pull = pr_payload(state="MERGED", merged=True, commits=rollup("FAILURE"))["repository"]["pullRequest"]
    assert classify_pull_request(pull) == PullStatus.MERGED


def test_mergeable_flag_wins_over_failing_checks():
    pull = pr_payload(mergeable="MERGEABLE", commits=rollup("FAILURE"))["repository"]["pullRequest"]
    assert classify_pull_request(pull) == PullStatus.MERGEABLE


@pytest.mark.parametrize("state", ["SUCCESS", "PENDING"])
def test_passing_rollup_is_mergeable(state):
    pull = pr_payload(commits=rollup(state))["repository"]["pullRequest"]
    assert classify_pull_request(pull) == PullStatus.MERGEABLE


@pytest.mark.parametrize("state", ["FAILURE", "ERROR", "EXPECTED"])
def test_failing_rollup_is_checks_failed(state):
    pull = pr_payload(commits=rollup(state))["repository"]["pullRequest"]
    assert classify_pull_request(pull) == PullStatus.CHECKS_FAILED


def test_no_commits_is_checks_failed():
    pull = pr_payload(commits={"nodes": []})["repository"]["pullRequest"]
    assert classify_pull_request(pull) == PullStatus.CHECKS_FAILED


def test_no_rollup_is_checks_failed():
    commits = {"nodes": [{"commit": {"statusCheckRollup": None}}]}
    pull = pr_payload(commits=commits)["repository"]["pullRequest"]
    assert classify_pull_request(pull) == PullStatus.CHECKS_FAILED


def test_review_required_with_passing_checks_needs_approval():
    pull = pr_payload(commits=rollup("SUCCESS"), reviewDecision="REVIEW_REQUIRED")
    assert classify_pull_request(pull["repository"]["pullRequest"]) == PullStatus.NEEDS_APPROVAL


def test_review_required_does_not_hide_failing_checks():
    pull = pr_payload(commits=rollup("FAILURE"), reviewDecision="CHANGES_REQUESTED")
    assert classify_pull_request(pull["repository"]["pullRequest"]) == PullStatus.CHECKS_FAILED


def test_review_required_does_not_override_mergeable_flag():
    pull = pr_payload(mergeable="MERGEABLE", reviewDecision="REVIEW_REQUIRED")
    assert classify_pull_request(pull["repository"]["pullRequest"]) == PullStatus.MERGEABLE


# ---------------------------------------------------------------------------
# GitHubClient
# ---------------------------------------------------------------------------


@patch("migrator.github.subprocess.run")
def test_fetch_pull_state(mock_run: MagicMock) -> None:
    mock_run.return_value = gh_ok(pr_payload(commits=rollup("SUCCESS")))
    state = GitHubClient(token="t0ken").fetch_pull_state(REPO, 12)
    assert state.status == PullStatus.MERGEABLE
    assert state.permalink == "https://github.com/org/repo-a/pull/12"

    cmd = mock_run.call_args.args[0]
    assert cmd[:3] == ["gh", "api", "graphql"]
    assert "owner=org" in cmd
    assert "repo=repo-a" in cmd
    assert "number=12" in cmd
    assert mock_run.call_args.kwargs["env"]["GH_TOKEN"] == "t0ken"


@patch("migrator.github.subprocess.run")
def test_sync_updates_open_pull_request(mock_run: MagicMock) -> None:
    mock_run.side_effect = [
        gh_ok(pr_payload(state="OPEN")),
        gh_ok({"updatePullRequest": {"pullRequest": {
            "number": 12, "permalink": "https://github.com/org/repo-a/pull/12",
        }}}),
    ]
    out = GitHubClient().sync_pull_request(REPO, DESCRIPTION, 12)

    assert out.number == 12
    assert mock_run.call_count == 2
    update_cmd = " ".join(mock_run.call_args_list[1].args[0])
    assert "updatePullRequest" in update_cmd
    assert "createPullRequest" not in update_cmd
    assert "pullRequestId=PR_kwDO123" in update_cmd
    assert "title=Rename" in update_cmd


@patch("migrator.github.subprocess.run")
def test_sync_creates_when_remembered_pull_request_closed(mock_run: MagicMock) -> None:
    mock_run.side_effect = [
        gh_ok(pr_payload(state="CLOSED")),
        gh_ok({"repository": {"id": "R_1", "defaultBranchRef": {"name": "trunk"}}}),
        gh_ok({"createPullRequest": {"pullRequest": {
            "number": 13, "permalink": "https://github.com/org/repo-a/pull/13",
        }}}),
    ]
    out = GitHubClient().sync_pull_request(REPO, DESCRIPTION, 12)

    assert out.number == 13
    assert out.permalink.endswith("/13")
    create_cmd = mock_run.call_args_list[2].args[0]
    assert "createPullRequest" in " ".join(create_cmd)
    assert "baseRefName=trunk" in create_cmd
    assert "headRefName=demo" in create_cmd
    assert "repositoryId=R_1" in create_cmd


@patch("migrator.github.subprocess.run")
def test_sync_creates_without_remembered_pull_request(mock_run: MagicMock) -> None:
    mock_run.side_effect = [
        gh_ok({"repository": {"id": "R_1", "defaultBranchRef": {"name": "main"}}}),
        gh_ok({"createPullRequest": {"pullRequest": {
            "number": 1, "permalink": "https://github.com/org/repo-a/pull/1",
        }}}),
    ]
    out = GitHubClient().sync_pull_request(REPO, DESCRIPTION)
    assert out.number == 1
    assert mock_run.call_count == 2


@patch("migrator.github.subprocess.run")
def test_create_without_default_branch_raises(mock_run: MagicMock) -> None:
    mock_run.return_value = gh_ok({"repository": {"id": "R_1", "defaultBranchRef": None}})
    with pytest.raises(NoDefaultBranch):
        GitHubClient().create_pull_request(REPO, DESCRIPTION)


@patch("migrator.github.subprocess.run")
def test_missing_pull_request_raises(mock_run: MagicMock) -> None:
    mock_run.return_value = gh_ok({"repository": {"pullRequest": None}})
    with pytest.raises(NoSuchPullRequest):
        GitHubClient().fetch_pull_state(REPO, 99)


@patch("migrator.github.subprocess.run")
def test_graphql_errors_raise(mock_run: MagicMock) -> None:
    mock_run.return_value = MagicMock(
        returncode=0, stdout=json.dumps({"errors": [{"message": "bad"}]}), stderr=""
    )
    with pytest.raises(GraphQlError):
        GitHubClient().fetch_pull_state(REPO, 12)


@patch("migrator.github.subprocess.run")
def test_gh_failure_is_not_retried(mock_run: MagicMock) -> None:
    mock_run.return_value = MagicMock(returncode=1, stdout="", stderr="HTTP 502")
    with pytest.raises(GitHubError, match="HTTP 502"):
        GitHubClient().fetch_pull_state(REPO, 12)
    assert mock_run.call_count == 1


@patch("migrator.github.subprocess.run")
def test_gh_timeout_raises(mock_run: MagicMock) -> None:
    mock_run.side_effect = subprocess.TimeoutExpired(cmd="gh", timeout=60)
    with pytest.raises(GitHubError, match="timed out"):
        GitHubClient().fetch_pull_state(REPO, 12)
