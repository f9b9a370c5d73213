"""Build agent adapters from config selector strings."""

from rally.agents.adapter import AgentAdapter, SupportedAgent
from rally.agents.claude import ClaudeAdapter
from rally.agents.codex import CodexAdapter
from rally.lib.config import RallyConfig


def create_adapter(name: str, config: RallyConfig) -> AgentAdapter:
    """Create the adapter for an agent name ("claude" or "codex").

    Raises:
        UnsupportedAgent: If name isn't a known agent
    """
    agent = SupportedAgent.parse(name)
    if agent is SupportedAgent.CLAUDE:
        return ClaudeAdapter(
            reviewer_additional_tools=config.reviewer_additional_tools,
            reviewee_additional_tools=config.reviewee_additional_tools,
        )
    return CodexAdapter()
