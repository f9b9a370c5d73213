"""Rally session and history persistence.

Layout under the cache root:

    rally/<sanitized repo>_<pr>/session.json
    rally/<sanitized repo>_<pr>/history/001_review.json
    rally/<sanitized repo>_<pr>/history/001_fix.json
    ...

session.json is rewritten atomically (temp file + rename) on every mutation.
History files are one per (iteration, kind); rewriting the same pair
replaces that file.
"""

import json
import logging
import os
import shutil
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path

from rally.lib.types import RevieweeOutput, ReviewerOutput
from rally.workflow.state_machine import RallyState, parse_state

logger = logging.getLogger(__name__)

REVIEW = "review"
FIX = "fix"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def sanitize_repo_name(repo: str) -> str:
    """Turn "owner/name" into a single safe path component ("owner_name").

    Raises:
        ValueError: If the name could escape the cache directory
    """
    if ".." in repo or repo.startswith(("/", "\\")):
        raise ValueError(f"Invalid repository name: {repo!r}")
    safe = repo.replace("/", "_")
    if not safe or safe.startswith("."):
        raise ValueError(f"Invalid repository name: {repo!r}")
    if not all(ch.isalnum() or ch in "_-." for ch in safe):
        raise ValueError(f"Invalid repository name: {repo!r}")
    return safe


@dataclass
class RallySession:
    """Current state of one rally. Mutated only by the orchestrator."""
    repo: str
    pr_number: int
    iteration: int
    state: RallyState
    started_at: datetime
    updated_at: datetime

    @classmethod
    def new(cls, repo: str, pr_number: int) -> "RallySession":
        now = _now()
        return cls(
            repo=repo,
            pr_number=pr_number,
            iteration=0,
            state=RallyState.INITIALIZING,
            started_at=now,
            updated_at=now,
        )

    def touch(self) -> None:
        """Refresh updated_at, keeping it strictly later than the previous value."""
        now = _now()
        if now <= self.updated_at:
            now = self.updated_at + timedelta(microseconds=1)
        self.updated_at = now

    def update_state(self, state: RallyState) -> None:
        self.state = state
        self.touch()

    def increment_iteration(self) -> None:
        self.iteration += 1
        self.touch()

    def to_dict(self) -> dict:
        return {
            "repo": self.repo,
            "pr_number": self.pr_number,
            "iteration": self.iteration,
            "state": self.state.value,
            "started_at": self.started_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "RallySession":
        state = parse_state(data.get("state"))
        if state is None:
            raise ValueError(f"Unknown rally state: {data.get('state')!r}")
        return cls(
            repo=data["repo"],
            pr_number=data["pr_number"],
            iteration=data["iteration"],
            state=state,
            started_at=datetime.fromisoformat(data["started_at"]),
            updated_at=datetime.fromisoformat(data["updated_at"]),
        )


@dataclass
class RallyHistoryEntry:
    iteration: int
    kind: str  # REVIEW or FIX
    output: ReviewerOutput | RevieweeOutput
    timestamp: datetime

    def to_dict(self) -> dict:
        return {
            "iteration": self.iteration,
            "kind": self.kind,
            "output": self.output.to_dict(),
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "RallyHistoryEntry":
        kind = data["kind"]
        if kind == REVIEW:
            output = ReviewerOutput.from_dict(data["output"])
        elif kind == FIX:
            output = RevieweeOutput.from_dict(data["output"])
        else:
            raise ValueError(f"Unknown history entry kind: {kind!r}")
        return cls(
            iteration=data["iteration"],
            kind=kind,
            output=output,
            timestamp=datetime.fromisoformat(data["timestamp"]),
        )


class SessionStore:
    """File-backed store for rally sessions and their per-iteration history."""

    def __init__(self, cache_dir: Path):
        self.cache_dir = cache_dir

    def rally_dir(self, repo: str, pr_number: int) -> Path:
        return self.cache_dir / "rally" / f"{sanitize_repo_name(repo)}_{pr_number}"

    def session_path(self, repo: str, pr_number: int) -> Path:
        return self.rally_dir(repo, pr_number) / "session.json"

    def history_dir(self, repo: str, pr_number: int) -> Path:
        return self.rally_dir(repo, pr_number) / "history"

    def write_session(self, session: RallySession) -> None:
        """Atomically replace session.json.

        Raises:
            OSError: If the directory or file can't be written
        """
        path = self.session_path(session.repo, session.pr_number)
        path.parent.mkdir(parents=True, exist_ok=True)

        temp_path = path.with_suffix(".json.tmp")
        temp_path.write_text(json.dumps(session.to_dict(), indent=2))
        try:
            os.replace(temp_path, path)
        except OSError:
            temp_path.unlink(missing_ok=True)
            raise

    def read_session(self, repo: str, pr_number: int) -> RallySession | None:
        """Load the stored session, or None if there isn't a readable one."""
        path = self.session_path(repo, pr_number)
        if not path.exists():
            return None
        try:
            return RallySession.from_dict(json.loads(path.read_text()))
        except (OSError, json.JSONDecodeError, KeyError, ValueError) as e:
            logger.warning(f"Failed to read rally session {path}: {e}")
            return None

    def write_history_entry(
        self,
        repo: str,
        pr_number: int,
        iteration: int,
        output: ReviewerOutput | RevieweeOutput,
    ) -> Path:
        """Write the review or fix record for an iteration.

        Returns:
            Path of the written file
        """
        kind = REVIEW if isinstance(output, ReviewerOutput) else FIX
        directory = self.history_dir(repo, pr_number)
        directory.mkdir(parents=True, exist_ok=True)

        entry = RallyHistoryEntry(iteration=iteration, kind=kind, output=output, timestamp=_now())
        path = directory / f"{iteration:03d}_{kind}.json"
        path.write_text(json.dumps(entry.to_dict(), indent=2))
        return path

    def read_history(self, repo: str, pr_number: int) -> list[RallyHistoryEntry]:
        """All readable history entries, ordered by iteration (review before fix)."""
        directory = self.history_dir(repo, pr_number)
        if not directory.is_dir():
            return []

        entries = []
        for path in sorted(directory.glob("*.json")):
            try:
                entries.append(RallyHistoryEntry.from_dict(json.loads(path.read_text())))
            except (OSError, json.JSONDecodeError, KeyError, ValueError) as e:
                logger.warning(f"Skipping unreadable history entry {path}: {e}")

        entries.sort(key=lambda e: (e.iteration, 0 if e.kind == REVIEW else 1))
        return entries

    def cleanup_session(self, repo: str, pr_number: int) -> bool:
        """Delete everything stored for the rally. Returns False if nothing existed."""
        directory = self.rally_dir(repo, pr_number)
        if not directory.exists():
            return False
        shutil.rmtree(directory)
        return True
