"""
Agent adapter contract.

One adapter instance backs one role's CLI (reviewer or reviewee may be the
same instance). Adapters own their subprocesses and session ids; nothing is
shared between adapters or between calls except the ids needed to resume.
"""

import shutil
from enum import Enum
from typing import Protocol

from rally.lib.errors import UnsupportedAgent
from rally.lib.types import Context, RevieweeOutput, ReviewerOutput
from rally.workflow.events import Channel


class SupportedAgent(Enum):
    CLAUDE = "claude"
    CODEX = "codex"

    @classmethod
    def parse(cls, name: str) -> "SupportedAgent":
        """
        Raises:
            UnsupportedAgent: If name isn't a known agent
        """
        for agent in cls:
            if agent.value == name:
                return agent
        raise UnsupportedAgent(name, [a.value for a in cls])


class AgentAdapter(Protocol):
    """Capabilities every agent backend provides."""

    def name(self) -> str:
        ...

    def set_event_sender(self, channel: Channel) -> None:
        """Stream UI events (thinking, tool use, text) into channel, best-effort."""
        ...

    async def run_reviewer(self, prompt: str, context: Context) -> ReviewerOutput:
        ...

    async def run_reviewee(self, prompt: str, context: Context) -> RevieweeOutput:
        ...

    async def continue_reviewer(self, message: str) -> ReviewerOutput:
        """Send a follow-up to the last reviewer session.

        Raises:
            NoActiveSession: If run_reviewer hasn't produced a session yet
        """
        ...

    async def continue_reviewee(self, message: str) -> RevieweeOutput:
        ...

    def add_reviewee_allowed_tool(self, tool: str) -> None:
        """Allow the reviewee one more tool. Adding the same tool twice is a no-op."""
        ...


def check_agent_available(name: str) -> bool:
    """Check if the agent's CLI binary is in PATH."""
    return shutil.which(SupportedAgent.parse(name).value) is not None
