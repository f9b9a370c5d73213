"""Agent adapters for rally.

Each adapter drives one agent CLI as a subprocess and exposes the same
capabilities (see AgentAdapter). Use create_adapter() to pick one by name.
"""

from rally.agents.adapter import (
    AgentAdapter,
    SupportedAgent,
    check_agent_available,
)
from rally.agents.claude import ClaudeAdapter
from rally.agents.codex import CodexAdapter
from rally.agents.factory import create_adapter

__all__ = [
    "AgentAdapter",
    "SupportedAgent",
    "check_agent_available",
    "ClaudeAdapter",
    "CodexAdapter",
    "create_adapter",
]
