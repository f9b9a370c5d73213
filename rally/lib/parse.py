"""
Structured-result parsing shared by the claude and codex adapters.

Both CLIs end a run with a JSON object matching reviewer.schema.json or
reviewee.schema.json. Parsing is strict about action/status (an unknown value
fails the call) and lenient about comment severity (unknown -> minor).
"""

import json
import logging
from typing import Any

from rally.lib.errors import StructuredOutputError, UnknownEnumValue
from rally.lib.types import (
    CommentSeverity,
    PermissionRequest,
    ReviewAction,
    ReviewComment,
    ReviewerOutput,
    RevieweeOutput,
    RevieweeStatus,
)
from rally.lib.validate import ValidationError, validate

logger = logging.getLogger(__name__)

SUMMARY_MAX_CHARS = 60


def extract_json(text: str) -> Any:
    """Parse JSON from agent text, tolerating prose around a ``` fence.

    Raises:
        json.JSONDecodeError: If no JSON can be decoded
    """
    inner = text.strip()

    # Look for ```json or ``` code block anywhere in the response
    if "```" in inner:
        start_match = inner.find("```json")
        if start_match == -1:
            start_match = inner.find("```")
        newline_after_open = inner.find("\n", start_match)
        if newline_after_open != -1:
            close_match = inner.find("\n```", newline_after_open)
            if close_match != -1:
                inner = inner[newline_after_open + 1:close_match].strip()

    return json.loads(inner)


def _coerce_payload(agent: str, payload: Any) -> dict:
    if isinstance(payload, str):
        try:
            payload = extract_json(payload)
        except json.JSONDecodeError as e:
            raise StructuredOutputError(agent, f"result is not JSON: {e}") from None
    if not isinstance(payload, dict):
        raise StructuredOutputError(agent, f"expected a JSON object, got {type(payload).__name__}")
    return payload


def _check_enum(agent: str, data: dict, field: str, allowed: set[str]) -> None:
    value = data.get(field)
    if isinstance(value, str) and value not in allowed:
        raise UnknownEnumValue(agent, field, value)


def _validate(agent: str, data: dict, schema_name: str) -> None:
    try:
        validate(data, schema_name)
    except ValidationError as e:
        raise StructuredOutputError(agent, str(e)) from None


def parse_reviewer_output(agent: str, payload: Any, session_id: str | None = None) -> ReviewerOutput:
    """Turn a reviewer result payload into a ReviewerOutput.

    Args:
        agent: Agent name, used in error messages
        payload: Decoded JSON object, or text containing one
        session_id: Session/thread that produced the payload

    Raises:
        UnknownEnumValue: action is not approve/request_changes/comment
        StructuredOutputError: payload is not JSON or violates the schema
    """
    data = _coerce_payload(agent, payload)
    _check_enum(agent, data, "action", {a.value for a in ReviewAction})

    known_severities = {s.value for s in CommentSeverity}
    comments = data.get("comments")
    if isinstance(comments, list):
        normalized = []
        for comment in comments:
            if isinstance(comment, dict):
                severity = comment.get("severity")
                if not isinstance(severity, str) or severity not in known_severities:
                    logger.debug(f"Unknown comment severity {severity!r}, using minor")
                    comment = {**comment, "severity": CommentSeverity.MINOR.value}
            normalized.append(comment)
        data = {**data, "comments": normalized}

    _validate(agent, data, "reviewer")

    return ReviewerOutput(
        action=ReviewAction(data["action"]),
        summary=data["summary"],
        comments=[
            ReviewComment(
                path=c["path"],
                line=c["line"],
                body=c["body"],
                severity=CommentSeverity.parse(c["severity"]),
            )
            for c in data["comments"]
        ],
        blocking_issues=list(data["blocking_issues"]),
        session_id=session_id,
    )


def parse_reviewee_output(agent: str, payload: Any, session_id: str | None = None) -> RevieweeOutput:
    """Turn a reviewee result payload into a RevieweeOutput.

    Raises:
        UnknownEnumValue: status is not one of the four known values
        StructuredOutputError: payload is not JSON or violates the schema
    """
    data = _coerce_payload(agent, payload)
    _check_enum(agent, data, "status", {s.value for s in RevieweeStatus})
    _validate(agent, data, "reviewee")

    permission = data.get("permission_request")
    return RevieweeOutput(
        status=RevieweeStatus(data["status"]),
        summary=data["summary"],
        files_modified=list(data["files_modified"]),
        question=data.get("question"),
        permission_request=PermissionRequest(permission["action"], permission["reason"]) if permission else None,
        error_details=data.get("error_details"),
        session_id=session_id,
    )


def summarize_text(text: str) -> str:
    """Trim text to one display line of at most 60 characters."""
    text = text.strip()
    if len(text) <= SUMMARY_MAX_CHARS:
        return text
    return text[:SUMMARY_MAX_CHARS - 3] + "..."


def summarize_json(value: Any) -> str:
    """Short display form of a tool input: first keys of an object, item count of a list."""
    if isinstance(value, dict):
        keys = list(value.keys())[:3]
        if not keys:
            return "{}"
        return "{" + ", ".join(keys) + ": ...}"
    if isinstance(value, str):
        return summarize_text(value)
    if isinstance(value, list):
        return f"[{len(value)} items]"
    return json.dumps(value)


def truncate(text: str, max_len: int) -> str:
    text = text.strip()
    if len(text) <= max_len:
        return text
    if max_len <= 3:
        return text[:max_len]
    return text[:max_len - 3] + "..."
