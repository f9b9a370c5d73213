"""Local git queries for building review diffs.

Nothing here raises. Every call is bounded by GIT_TIMEOUT_SECONDS, and
failures come back as an unsuccessful GitResult or an empty value.
"""

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

GIT_TIMEOUT_SECONDS = 30


@dataclass
class GitResult:
    returncode: int
    output: str = ""
    error: str = ""
    timed_out: bool = False

    @property
    def success(self) -> bool:
        return not self.timed_out and self.returncode == 0


def run_git(cwd: Path, *args: str, timeout: int = GIT_TIMEOUT_SECONDS) -> GitResult:
    """Run ``git -C <cwd> <args>`` and capture its text output."""
    try:
        proc = subprocess.run(
            ["git", "-C", str(cwd), *args],
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired:
        logger.debug(f"git {' '.join(args)} timed out after {timeout}s")
        return GitResult(-1, error=f"git {args[0]} timed out after {timeout}s", timed_out=True)
    except OSError as e:
        return GitResult(-1, error=str(e))
    return GitResult(proc.returncode, proc.stdout, proc.stderr)


def _range(base_branch: str) -> str:
    return f"origin/{base_branch}...HEAD"


def branch_diff(cwd: Path, base_branch: str) -> str | None:
    """Diff of HEAD against origin/<base>, refreshed with a fetch first.

    A failed fetch still lets a stale origin/<base> produce a diff. Returns
    None when the diff itself fails.
    """
    fetched = run_git(cwd, "fetch", "origin", base_branch)
    if not fetched.success:
        logger.debug(f"Fetching {base_branch} failed: {fetched.error.strip()}")

    diff = run_git(cwd, "diff", _range(base_branch))
    if diff.success:
        return diff.output
    logger.debug(f"Branch diff against {base_branch} failed: {diff.error.strip()}")
    return None


def local_diff(cwd: Path, base_branch: str) -> str:
    """Uncommitted changes if there are any, else the branch diff, else ""."""
    uncommitted = run_git(cwd, "diff", "HEAD")
    if uncommitted.success and uncommitted.output.strip():
        return uncommitted.output

    committed = run_git(cwd, "diff", _range(base_branch))
    return committed.output if committed.success else ""


def head_sha(cwd: Path) -> str:
    result = run_git(cwd, "rev-parse", "HEAD")
    return result.output.strip() if result.success else ""
