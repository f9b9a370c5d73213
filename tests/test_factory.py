"""Tests for rally.agents.factory and rally.agents.adapter modules."""

from unittest.mock import patch

import pytest

from rally.agents import (
    ClaudeAdapter,
    CodexAdapter,
    SupportedAgent,
    check_agent_available,
    create_adapter,
)
from rally.lib.config import RallyConfig
from rally.lib.errors import UnsupportedAgent


class TestSupportedAgent:
    """Tests for agent name parsing."""

    def test_parse_known(self):
        assert SupportedAgent.parse("claude") is SupportedAgent.CLAUDE
        assert SupportedAgent.parse("codex") is SupportedAgent.CODEX

    def test_parse_unknown(self):
        with pytest.raises(UnsupportedAgent) as exc_info:
            SupportedAgent.parse("gemini")
        assert exc_info.value.supported == ["claude", "codex"]
        assert "gemini" in str(exc_info.value)


class TestCreateAdapter:
    """Tests for create_adapter."""

    def test_claude_gets_configured_tools(self):
        config = RallyConfig(reviewer_additional_tools=["WebFetch"], reviewee_additional_tools=["Bash(make:*)"])
        adapter = create_adapter("claude", config)
        assert isinstance(adapter, ClaudeAdapter)
        assert adapter.name() == "claude"
        assert "WebFetch" in adapter.reviewer_allowed_tools
        assert "Bash(make:*)" in adapter.reviewee_allowed_tools

    def test_codex(self):
        adapter = create_adapter("codex", RallyConfig())
        assert isinstance(adapter, CodexAdapter)
        assert adapter.name() == "codex"

    def test_unknown(self):
        with pytest.raises(UnsupportedAgent):
            create_adapter("copilot", RallyConfig())


class TestCheckAgentAvailable:
    """Tests for check_agent_available."""

    @patch("rally.agents.adapter.shutil.which")
    def test_available(self, mock_which):
        mock_which.return_value = "/usr/local/bin/claude"
        assert check_agent_available("claude") is True
        mock_which.assert_called_once_with("claude")

    @patch("rally.agents.adapter.shutil.which")
    def test_missing(self, mock_which):
        mock_which.return_value = None
        assert check_agent_available("codex") is False

    def test_unknown_agent(self):
        with pytest.raises(UnsupportedAgent):
            check_agent_available("gemini")
