"""Tests for rally.lib.github module."""

import json
import subprocess
from unittest.mock import MagicMock, patch

import pytest

from rally.lib.github import (
    GH_TIMEOUT_SECONDS,
    BotFilter,
    GitHubClient,
    GitHubError,
)
from rally.lib.types import ReviewAction


def _gh_ok(stdout=""):
    return MagicMock(returncode=0, stdout=stdout, stderr="")


class TestBotFilter:
    """Tests for bot author detection."""

    def test_default_suffix(self):
        assert BotFilter().is_bot("copilot-pull-request-reviewer[bot]")

    def test_default_logins(self):
        assert BotFilter().is_bot("github-actions")
        assert BotFilter().is_bot("dependabot")

    def test_humans_are_not_bots(self):
        assert not BotFilter().is_bot("octocat")

    def test_custom_filter(self):
        bot_filter = BotFilter(suffixes=["-ci"], logins=["reviewbot"])
        assert bot_filter.is_bot("lint-ci")
        assert bot_filter.is_bot("reviewbot")
        assert not bot_filter.is_bot("coderabbitai[bot]")


class TestRunGh:
    """Tests for gh failure handling."""

    @patch("rally.lib.github.subprocess.run")
    def test_nonzero_exit_raises(self, mock_run):
        mock_run.return_value = MagicMock(returncode=1, stdout="", stderr="HTTP 404")
        with pytest.raises(GitHubError) as exc_info:
            GitHubClient().fetch_pr_diff("o/r", 1)
        assert "HTTP 404" in str(exc_info.value)
        assert exc_info.value.command == ["pr", "diff", "1", "-R", "o/r"]

    @patch("rally.lib.github.subprocess.run")
    def test_timeout_raises(self, mock_run):
        mock_run.side_effect = subprocess.TimeoutExpired(cmd="gh", timeout=GH_TIMEOUT_SECONDS)
        with pytest.raises(GitHubError, match="timed out"):
            GitHubClient().fetch_pr_diff("o/r", 1)

    @patch("rally.lib.github.subprocess.run")
    def test_missing_gh_raises(self, mock_run):
        mock_run.side_effect = FileNotFoundError("gh")
        with pytest.raises(GitHubError):
            GitHubClient().fetch_pr_diff("o/r", 1)


class TestGitHubClient:
    """Tests for the gh calls the rally makes."""

    @patch("rally.lib.github.subprocess.run")
    def test_fetch_pr(self, mock_run):
        mock_run.return_value = _gh_ok(json.dumps({
            "number": 7,
            "title": "Add cache",
            "body": None,
            "head": {"sha": "deadbeef"},
            "base": {"ref": "main"},
        }))
        pr = GitHubClient().fetch_pr("o/r", 7)
        assert pr.title == "Add cache"
        assert pr.body is None
        assert pr.head_sha == "deadbeef"
        assert pr.base_branch == "main"
        assert mock_run.call_args[0][0] == ["gh", "api", "repos/o/r/pulls/7"]

    @patch("rally.lib.github.subprocess.run")
    def test_fetch_pr_bad_shape(self, mock_run):
        mock_run.return_value = _gh_ok(json.dumps({"number": 7}))
        with pytest.raises(GitHubError):
            GitHubClient().fetch_pr("o/r", 7)

    @patch("rally.lib.github.subprocess.run")
    def test_submit_review_flags(self, mock_run):
        mock_run.return_value = _gh_ok()
        client = GitHubClient()
        client.submit_review("o/r", 3, ReviewAction.REQUEST_CHANGES, "body text")
        assert mock_run.call_args[0][0] == [
            "gh", "pr", "review", "3", "--request-changes", "-b", "body text", "-R", "o/r",
        ]
        client.submit_review("o/r", 3, ReviewAction.APPROVE, "ok")
        assert "--approve" in mock_run.call_args[0][0]

    @patch("rally.lib.github.subprocess.run")
    def test_create_review_comment(self, mock_run):
        mock_run.return_value = _gh_ok("{}")
        GitHubClient().create_review_comment("o/r", 3, "sha1", "src/a.py", 12, "nit")
        args = mock_run.call_args[0][0]
        assert args[:5] == ["gh", "api", "--method", "POST", "repos/o/r/pulls/3/comments"]
        assert "commit_id=sha1" in args
        assert "line=12" in args
        assert "side=RIGHT" in args

    @patch("rally.lib.github.subprocess.run")
    def test_fetch_external_comments_filters_and_caps(self, mock_run):
        review_comments = [
            {"user": {"login": "copilot[bot]"}, "body": "inline 1", "path": "a.py", "line": 1},
            {"user": {"login": "octocat"}, "body": "human", "path": "a.py", "line": 2},
            {"user": {"login": "coderabbitai[bot]"}, "body": "inline 2", "path": "b.py", "line": None},
        ]
        discussion = [
            {"user": {"login": "github-actions"}, "body": "CI failed"},
            {"user": None, "body": "ghost"},
        ]
        mock_run.side_effect = [_gh_ok(json.dumps(review_comments)), _gh_ok(json.dumps(discussion))]

        comments = GitHubClient().fetch_external_comments("o/r", 5, limit=2)

        assert [c.body for c in comments] == ["inline 1", "inline 2"]
        assert comments[0].path == "a.py"
        assert comments[1].line is None

    @patch("rally.lib.github.subprocess.run")
    def test_fetch_external_comments_includes_discussion(self, mock_run):
        mock_run.side_effect = [
            _gh_ok("[]"),
            _gh_ok(json.dumps([{"user": {"login": "github-actions"}, "body": "CI failed"}])),
        ]
        comments = GitHubClient().fetch_external_comments("o/r", 5, limit=20)
        assert len(comments) == 1
        assert comments[0].location == "general"
