"""Tests for rally.lib.validate module."""

import json

import pytest

from rally.lib.validate import ValidationError, load_schema, schema_text, validate


class TestLoadSchema:
    """Tests for packaged schema loading."""

    def test_reviewer_schema_requires_core_fields(self):
        schema = load_schema("reviewer")
        assert set(schema["required"]) == {"action", "summary", "comments", "blocking_issues"}

    def test_reviewee_schema_status_enum(self):
        schema = load_schema("reviewee")
        assert schema["properties"]["status"]["enum"] == [
            "completed", "needs_clarification", "needs_permission", "error",
        ]

    def test_missing_schema(self):
        with pytest.raises(ValidationError):
            load_schema("nonexistent")

    def test_schema_text_is_compact_json(self):
        text = schema_text("reviewer")
        assert "\n" not in text
        assert json.loads(text) == load_schema("reviewer")


class TestValidate:
    """Tests for validate()."""

    def test_valid_reviewee(self):
        validate({"status": "error", "summary": "x", "files_modified": [], "error_details": "boom"}, "reviewee")

    def test_error_reports_path(self):
        data = {
            "action": "comment",
            "summary": "s",
            "comments": [{"path": "a", "line": "ten", "body": "b", "severity": "minor"}],
            "blocking_issues": [],
        }
        with pytest.raises(ValidationError) as exc_info:
            validate(data, "reviewer")
        assert exc_info.value.path == "comments.0.line"
        assert exc_info.value.schema_name == "reviewer"

    def test_root_error_path(self):
        with pytest.raises(ValidationError) as exc_info:
            validate({"summary": "s"}, "reviewee")
        assert exc_info.value.path == "(root)"
