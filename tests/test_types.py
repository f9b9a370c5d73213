"""Tests for rally.lib.types module."""

from rally.lib.types import (
    CommentSeverity,
    ExternalComment,
    PermissionRequest,
    ReviewAction,
    ReviewComment,
    RevieweeOutput,
    RevieweeStatus,
    ReviewerOutput,
)


class TestReviewAction:
    """Tests for ReviewAction labels."""

    def test_labels_are_camel_case(self):
        assert ReviewAction.APPROVE.label == "Approve"
        assert ReviewAction.REQUEST_CHANGES.label == "RequestChanges"
        assert ReviewAction.COMMENT.label == "Comment"


class TestCommentSeverity:
    """Tests for lenient severity parsing."""

    def test_known_values(self):
        assert CommentSeverity.parse("critical") is CommentSeverity.CRITICAL
        assert CommentSeverity.parse("suggestion") is CommentSeverity.SUGGESTION

    def test_unknown_falls_back_to_minor(self):
        assert CommentSeverity.parse("blocker") is CommentSeverity.MINOR
        assert CommentSeverity.parse("") is CommentSeverity.MINOR


class TestReviewerOutput:
    """Tests for ReviewerOutput serialization."""

    def test_to_dict_uses_wire_values(self):
        review = ReviewerOutput(
            action=ReviewAction.REQUEST_CHANGES,
            summary="Needs work",
            comments=[ReviewComment("src/a.py", 3, "Off by one", CommentSeverity.MAJOR)],
            blocking_issues=["Off by one in loop"],
        )
        data = review.to_dict()
        assert data["action"] == "request_changes"
        assert data["comments"][0]["severity"] == "major"
        assert "session_id" not in data

    def test_from_dict_restores_session_id(self):
        data = {
            "action": "approve",
            "summary": "LGTM",
            "comments": [],
            "blocking_issues": [],
            "session_id": "sess-1",
        }
        review = ReviewerOutput.from_dict(data)
        assert review.action is ReviewAction.APPROVE
        assert review.session_id == "sess-1"

    def test_from_dict_tolerates_unknown_severity(self):
        data = {
            "action": "comment",
            "summary": "s",
            "comments": [{"path": "a", "line": 1, "body": "b", "severity": "nit"}],
            "blocking_issues": [],
        }
        review = ReviewerOutput.from_dict(data)
        assert review.comments[0].severity is CommentSeverity.MINOR


class TestRevieweeOutput:
    """Tests for RevieweeOutput serialization."""

    def test_optional_fields_omitted_when_unset(self):
        fix = RevieweeOutput(status=RevieweeStatus.COMPLETED, summary="Done", files_modified=["a.py"])
        assert fix.to_dict() == {"status": "completed", "summary": "Done", "files_modified": ["a.py"]}

    def test_permission_request_survives_dict_form(self):
        fix = RevieweeOutput(
            status=RevieweeStatus.NEEDS_PERMISSION,
            summary="Need to push",
            permission_request=PermissionRequest("git push", "publish fix"),
            session_id="abc",
        )
        restored = RevieweeOutput.from_dict(fix.to_dict())
        assert restored == fix


class TestExternalComment:
    """Tests for ExternalComment.location."""

    def test_general_comment(self):
        assert ExternalComment(source="copilot[bot]", body="hi").location == "general"

    def test_file_comment_without_line(self):
        assert ExternalComment(source="bot", body="x", path="a.py").location == "a.py"

    def test_file_comment_with_line(self):
        assert ExternalComment(source="bot", body="x", path="a.py", line=7).location == "a.py:7"
