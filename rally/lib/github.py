"""
GitHub integration for the rally via the gh CLI.

All calls are synchronous and raise GitHubError on failure. The orchestrator
runs them in a worker thread and treats every failure as non-fatal.
"""

import json
import logging
import subprocess
from dataclasses import dataclass, field

from rally.lib.config import DEFAULT_BOT_LOGINS, DEFAULT_BOT_SUFFIXES
from rally.lib.errors import RallyError
from rally.lib.types import ExternalComment, ReviewAction

logger = logging.getLogger(__name__)


# Timeout for GitHub CLI operations (seconds)
GH_TIMEOUT_SECONDS = 30

_REVIEW_FLAGS = {
    ReviewAction.APPROVE: "--approve",
    ReviewAction.REQUEST_CHANGES: "--request-changes",
    ReviewAction.COMMENT: "--comment",
}


class GitHubError(RallyError):
    """A gh invocation failed."""

    def __init__(self, args: list[str], message: str):
        self.command = args
        super().__init__(f"gh {' '.join(args[:3])} failed: {message}")


@dataclass
class BotFilter:
    """Decides which comment authors count as automated review tools."""
    suffixes: list[str] = field(default_factory=lambda: list(DEFAULT_BOT_SUFFIXES))
    logins: list[str] = field(default_factory=lambda: list(DEFAULT_BOT_LOGINS))

    def is_bot(self, login: str) -> bool:
        return login in self.logins or any(login.endswith(s) for s in self.suffixes)


@dataclass
class PullRequest:
    number: int
    title: str
    body: str | None
    head_sha: str
    base_branch: str


def _run_gh(args: list[str]) -> str:
    """Run gh and return stdout.

    Raises:
        GitHubError: On non-zero exit, timeout, or missing gh binary
    """
    try:
        result = subprocess.run(
            ["gh"] + args,
            capture_output=True,
            text=True,
            timeout=GH_TIMEOUT_SECONDS,
        )
    except subprocess.TimeoutExpired:
        raise GitHubError(args, f"timed out after {GH_TIMEOUT_SECONDS}s") from None
    except OSError as e:
        raise GitHubError(args, str(e)) from None

    if result.returncode != 0:
        raise GitHubError(args, result.stderr.strip() or f"exit code {result.returncode}")
    return result.stdout


def _run_gh_json(args: list[str]):
    stdout = _run_gh(args)
    try:
        return json.loads(stdout)
    except json.JSONDecodeError as e:
        raise GitHubError(args, f"invalid JSON: {e}") from None


class GitHubClient:
    """Thin wrapper over `gh` for the PR calls the rally makes."""

    def __init__(self, bot_filter: BotFilter | None = None):
        self.bot_filter = bot_filter or BotFilter()

    def fetch_pr(self, repo: str, pr_number: int) -> PullRequest:
        data = _run_gh_json(["api", f"repos/{repo}/pulls/{pr_number}"])
        try:
            return PullRequest(
                number=data["number"],
                title=data["title"],
                body=data.get("body"),
                head_sha=data["head"]["sha"],
                base_branch=data["base"]["ref"],
            )
        except (KeyError, TypeError) as e:
            raise GitHubError(["api", f"repos/{repo}/pulls/{pr_number}"], f"unexpected response: {e}") from None

    def fetch_pr_diff(self, repo: str, pr_number: int) -> str:
        return _run_gh(["pr", "diff", str(pr_number), "-R", repo])

    def submit_review(self, repo: str, pr_number: int, action: ReviewAction, body: str) -> None:
        _run_gh(["pr", "review", str(pr_number), _REVIEW_FLAGS[action], "-b", body, "-R", repo])

    def create_review_comment(
        self,
        repo: str,
        pr_number: int,
        commit_sha: str,
        path: str,
        line: int,
        body: str,
    ) -> None:
        """Post an inline comment on the RIGHT side of the diff at path:line."""
        _run_gh([
            "api", "--method", "POST",
            f"repos/{repo}/pulls/{pr_number}/comments",
            "-f", f"body={body}",
            "-f", f"commit_id={commit_sha}",
            "-f", f"path={path}",
            "-F", f"line={line}",
            "-f", "side=RIGHT",
        ])

    def fetch_review_comments(self, repo: str, pr_number: int) -> list[ExternalComment]:
        """Inline (file/line) comments on the PR, from every author."""
        data = _run_gh_json(["api", f"repos/{repo}/pulls/{pr_number}/comments?per_page=100"])
        return [
            ExternalComment(
                source=(item.get("user") or {}).get("login", ""),
                body=item.get("body") or "",
                path=item.get("path"),
                line=item.get("line"),
            )
            for item in data
        ]

    def fetch_discussion_comments(self, repo: str, pr_number: int) -> list[ExternalComment]:
        """Conversation-tab comments on the PR, from every author."""
        data = _run_gh_json(["api", f"repos/{repo}/issues/{pr_number}/comments?per_page=100"])
        return [
            ExternalComment(
                source=(item.get("user") or {}).get("login", ""),
                body=item.get("body") or "",
            )
            for item in data
        ]

    def fetch_external_comments(self, repo: str, pr_number: int, limit: int) -> list[ExternalComment]:
        """Bot comments (inline first, then discussion), capped at limit."""
        comments = self.fetch_review_comments(repo, pr_number)
        comments += self.fetch_discussion_comments(repo, pr_number)
        bots = [c for c in comments if self.bot_filter.is_bot(c.source)]
        if len(bots) > limit:
            logger.debug(f"Keeping {limit} of {len(bots)} external comments")
        return bots[:limit]
