"""
Shared data types for rally.

Reviewer/reviewee outputs, review comments and the PR context handed to the
agents. Kept in one module so adapters, prompts, session storage and the
orchestrator can import them without cycles.
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path


class ReviewAction(Enum):
    APPROVE = "approve"
    REQUEST_CHANGES = "request_changes"
    COMMENT = "comment"

    @property
    def label(self) -> str:
        """CamelCase name used in prompts and UI ("RequestChanges")."""
        return "".join(part.capitalize() for part in self.value.split("_"))


class CommentSeverity(Enum):
    CRITICAL = "critical"
    MAJOR = "major"
    MINOR = "minor"
    SUGGESTION = "suggestion"

    @classmethod
    def parse(cls, value: str) -> "CommentSeverity":
        """Unrecognized severities fall back to MINOR."""
        for severity in cls:
            if severity.value == value:
                return severity
        return cls.MINOR


class RevieweeStatus(Enum):
    COMPLETED = "completed"
    NEEDS_CLARIFICATION = "needs_clarification"
    NEEDS_PERMISSION = "needs_permission"
    ERROR = "error"


@dataclass
class ReviewComment:
    path: str
    line: int
    body: str
    severity: CommentSeverity = CommentSeverity.MINOR

    def to_dict(self) -> dict:
        return {
            "path": self.path,
            "line": self.line,
            "body": self.body,
            "severity": self.severity.value,
        }


@dataclass
class ReviewerOutput:
    """Structured verdict from the reviewer agent."""
    action: ReviewAction
    summary: str
    comments: list[ReviewComment] = field(default_factory=list)
    blocking_issues: list[str] = field(default_factory=list)
    session_id: str | None = None  # Agent session that produced this output

    def to_dict(self) -> dict:
        data = {
            "action": self.action.value,
            "summary": self.summary,
            "comments": [c.to_dict() for c in self.comments],
            "blocking_issues": list(self.blocking_issues),
        }
        if self.session_id:
            data["session_id"] = self.session_id
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "ReviewerOutput":
        """Rebuild from a persisted history entry (already validated when written)."""
        return cls(
            action=ReviewAction(data["action"]),
            summary=data["summary"],
            comments=[
                ReviewComment(
                    path=c["path"],
                    line=c["line"],
                    body=c["body"],
                    severity=CommentSeverity.parse(c.get("severity", "")),
                )
                for c in data.get("comments", [])
            ],
            blocking_issues=list(data.get("blocking_issues", [])),
            session_id=data.get("session_id"),
        )


@dataclass
class PermissionRequest:
    action: str
    reason: str


@dataclass
class RevieweeOutput:
    """Structured report from the reviewee agent after a fix attempt."""
    status: RevieweeStatus
    summary: str
    files_modified: list[str] = field(default_factory=list)
    question: str | None = None
    permission_request: PermissionRequest | None = None
    error_details: str | None = None
    session_id: str | None = None

    def to_dict(self) -> dict:
        data = {
            "status": self.status.value,
            "summary": self.summary,
            "files_modified": list(self.files_modified),
        }
        if self.question is not None:
            data["question"] = self.question
        if self.permission_request is not None:
            data["permission_request"] = {
                "action": self.permission_request.action,
                "reason": self.permission_request.reason,
            }
        if self.error_details is not None:
            data["error_details"] = self.error_details
        if self.session_id:
            data["session_id"] = self.session_id
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "RevieweeOutput":
        permission = data.get("permission_request")
        return cls(
            status=RevieweeStatus(data["status"]),
            summary=data["summary"],
            files_modified=list(data.get("files_modified", [])),
            question=data.get("question"),
            permission_request=PermissionRequest(**permission) if permission else None,
            error_details=data.get("error_details"),
            session_id=data.get("session_id"),
        )


@dataclass
class ExternalComment:
    """PR comment left by a bot (Copilot, CodeRabbit, ...) rather than a human."""
    source: str  # Bot login
    body: str
    path: str | None = None
    line: int | None = None

    @property
    def location(self) -> str:
        if self.path is None:
            return "general"
        if self.line is None:
            return self.path
        return f"{self.path}:{self.line}"


@dataclass
class Context:
    """Everything the agents need to know about the PR under review.

    Built once by the caller. The orchestrator refreshes head_sha and
    external_comments between iterations.
    """
    repo: str
    pr_number: int
    pr_title: str
    diff: str
    head_sha: str
    base_branch: str
    pr_body: str | None = None
    working_dir: Path | None = None
    external_comments: list[ExternalComment] = field(default_factory=list)
    local_mode: bool = False  # Skip every GitHub call; review the local checkout
