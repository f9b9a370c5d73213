"""
Claude Code agent adapter.

Runs `claude -p --output-format stream-json` with the prompt on stdin, a
JSON schema for the final answer, and an explicit --allowedTools list per
role. The reviewer only gets read-only tools. The reviewee can edit files,
make local commits and run builds/tests, but never push, reset, clean,
checkout or restore.
"""

import logging
from pathlib import Path

from rally.agents.stream import run_streaming
from rally.lib.errors import MissingResult, NoActiveSession, ProcessExitFailure, TurnFailed
from rally.lib.parse import parse_reviewee_output, parse_reviewer_output, summarize_json, summarize_text
from rally.lib.types import Context, RevieweeOutput, ReviewerOutput
from rally.lib.validate import schema_text
from rally.workflow.events import (
    AgentText,
    AgentThinking,
    AgentToolResult,
    AgentToolUse,
    Channel,
    RallyEvent,
)

logger = logging.getLogger(__name__)

AGENT_NAME = "claude"

# gh api needs an explicit GET so the reviewer can't POST/PUT/DELETE
REVIEWER_BASE_TOOLS = [
    "Read",
    "Glob",
    "Grep",
    "Bash(gh pr view:*)",
    "Bash(gh pr diff:*)",
    "Bash(gh pr checks:*)",
    "Bash(gh api --method GET:*)",
    "Bash(gh api -X GET:*)",
]

# No git push/reset/clean/checkout/restore: the reviewee works on local
# commits only and must never discard work.
REVIEWEE_BASE_TOOLS = [
    "Read",
    "Edit",
    "Write",
    "Glob",
    "Grep",
    "Bash(git status:*)",
    "Bash(git diff:*)",
    "Bash(git add:*)",
    "Bash(git commit:*)",
    "Bash(git log:*)",
    "Bash(git show:*)",
    "Bash(git branch:*)",
    "Bash(git switch:*)",
    "Bash(git stash:*)",
    "Bash(gh pr view:*)",
    "Bash(gh pr diff:*)",
    "Bash(gh pr checks:*)",
    "Bash(gh api --method GET:*)",
    "Bash(gh api -X GET:*)",
    "Bash(cargo build:*)",
    "Bash(cargo test:*)",
    "Bash(cargo check:*)",
    "Bash(cargo clippy:*)",
    "Bash(cargo fmt:*)",
    "Bash(cargo run:*)",
    "Bash(npm install:*)",
    "Bash(npm test:*)",
    "Bash(npm run:*)",
    "Bash(npm ci:*)",
    "Bash(pnpm install:*)",
    "Bash(pnpm test:*)",
    "Bash(pnpm run:*)",
    "Bash(bun install:*)",
    "Bash(bun test:*)",
    "Bash(bun run:*)",
]


def _merge_tools(base: list[str], extra: list[str]) -> list[str]:
    tools = list(base)
    for tool in extra:
        if tool not in tools:
            tools.append(tool)
    return tools


class _StreamState:
    """What one claude run has told us so far."""

    def __init__(self, session_id: str | None):
        self.session_id = session_id
        self.result = None
        self.tool_names: dict[str, str] = {}  # tool_use id -> tool name


def _as_dict(value) -> dict:
    return value if isinstance(value, dict) else {}


def _content_blocks(event: dict) -> list:
    """Content blocks of an assistant/user message; [] for any other shape."""
    content = _as_dict(event.get("message")).get("content")
    return content if isinstance(content, list) else []


class ClaudeAdapter:
    """AgentAdapter for the Claude Code CLI."""

    def __init__(
        self,
        reviewer_additional_tools: list[str] | None = None,
        reviewee_additional_tools: list[str] | None = None,
        binary: str = AGENT_NAME,
    ):
        self.binary = binary
        self._reviewer_tools = _merge_tools(REVIEWER_BASE_TOOLS, reviewer_additional_tools or [])
        self._reviewee_tools = _merge_tools(REVIEWEE_BASE_TOOLS, reviewee_additional_tools or [])
        self.reviewer_allowed_tools = ",".join(self._reviewer_tools)
        self.reviewee_allowed_tools = ",".join(self._reviewee_tools)

        self.reviewer_session_id: str | None = None
        self.reviewee_session_id: str | None = None
        self._reviewer_cwd: Path | None = None
        self._reviewee_cwd: Path | None = None
        self._events: Channel | None = None

    def name(self) -> str:
        return AGENT_NAME

    def set_event_sender(self, channel: Channel) -> None:
        self._events = channel

    def add_reviewee_allowed_tool(self, tool: str) -> None:
        if tool in self._reviewee_tools:
            return
        self._reviewee_tools.append(tool)
        self.reviewee_allowed_tools = ",".join(self._reviewee_tools)
        logger.info(f"Reviewee may now use: {tool}")

    def build_command(self, schema_name: str, allowed_tools: str, session_id: str | None = None) -> list[str]:
        cmd = [
            self.binary,
            "-p",
            "--verbose",
            "--output-format", "stream-json",
            "--json-schema", schema_text(schema_name),
            "--allowedTools", allowed_tools,
        ]
        if session_id:
            cmd += ["--resume", session_id]
        return cmd

    async def run_reviewer(self, prompt: str, context: Context) -> ReviewerOutput:
        self._reviewer_cwd = context.working_dir
        payload, session_id = await self._run("reviewer", self.reviewer_allowed_tools, prompt, self._reviewer_cwd)
        self.reviewer_session_id = session_id
        return parse_reviewer_output(AGENT_NAME, payload, session_id)

    async def run_reviewee(self, prompt: str, context: Context) -> RevieweeOutput:
        self._reviewee_cwd = context.working_dir
        payload, session_id = await self._run("reviewee", self.reviewee_allowed_tools, prompt, self._reviewee_cwd)
        self.reviewee_session_id = session_id
        return parse_reviewee_output(AGENT_NAME, payload, session_id)

    async def continue_reviewer(self, message: str) -> ReviewerOutput:
        if not self.reviewer_session_id:
            raise NoActiveSession(AGENT_NAME, "reviewer")
        payload, session_id = await self._run(
            "reviewer", self.reviewer_allowed_tools, message, self._reviewer_cwd, self.reviewer_session_id,
        )
        self.reviewer_session_id = session_id
        return parse_reviewer_output(AGENT_NAME, payload, session_id)

    async def continue_reviewee(self, message: str) -> RevieweeOutput:
        if not self.reviewee_session_id:
            raise NoActiveSession(AGENT_NAME, "reviewee")
        payload, session_id = await self._run(
            "reviewee", self.reviewee_allowed_tools, message, self._reviewee_cwd, self.reviewee_session_id,
        )
        self.reviewee_session_id = session_id
        return parse_reviewee_output(AGENT_NAME, payload, session_id)

    async def _run(
        self,
        schema_name: str,
        allowed_tools: str,
        prompt: str,
        cwd: Path | None,
        session_id: str | None = None,
    ):
        """Run one claude turn. Returns (result payload, session id)."""
        state = _StreamState(session_id)
        cmd = self.build_command(schema_name, allowed_tools, session_id)

        def on_event(event: dict) -> None:
            self._handle_event(event, state)

        outcome = await run_streaming(AGENT_NAME, cmd, prompt, on_event, cwd=cwd)

        if not outcome.success:
            raise ProcessExitFailure(AGENT_NAME, outcome.returncode, outcome.stderr)
        if state.result is None:
            raise MissingResult(AGENT_NAME)
        return state.result, state.session_id

    def _emit(self, event: RallyEvent) -> None:
        if self._events is not None:
            self._events.send(event)

    def _handle_event(self, event: dict, state: _StreamState) -> None:
        sid = event.get("session_id")
        if isinstance(sid, str) and sid:
            state.session_id = sid

        event_type = event.get("type")

        # --include-partial-messages wraps raw API events
        if event_type == "stream_event" and isinstance(event.get("event"), dict):
            event = event["event"]
            event_type = event.get("type")

        if event_type == "assistant":
            for block in _content_blocks(event):
                self._handle_content_block(block, state)
        elif event_type == "user":
            for block in _content_blocks(event):
                if isinstance(block, dict) and block.get("type") == "tool_result":
                    tool_use_id = block.get("tool_use_id")
                    name = state.tool_names.get(tool_use_id, "tool") if isinstance(tool_use_id, str) else "tool"
                    content = block.get("content")
                    summary = summarize_text(content) if isinstance(content, str) and content.strip() else "completed"
                    self._emit(AgentToolResult(name, summary))
        elif event_type == "content_block_start":
            block = _as_dict(event.get("content_block"))
            if block.get("type") == "tool_use" and block.get("name"):
                self._emit(AgentToolUse(block["name"], "starting..."))
            elif block.get("type") == "thinking":
                self._emit(AgentThinking("Thinking..."))
        elif event_type == "content_block_delta":
            delta = _as_dict(event.get("delta"))
            if delta.get("type") == "thinking_delta" and delta.get("thinking"):
                self._emit(AgentThinking(delta["thinking"]))
            elif delta.get("type") == "text_delta" and delta.get("text"):
                self._emit(AgentText(delta["text"]))
        elif event_type == "tool_use":
            if event.get("tool_name"):
                summary = summarize_json(event["tool_input"]) if "tool_input" in event else ""
                self._emit(AgentToolUse(event["tool_name"], summary))
        elif event_type == "tool_result":
            if event.get("tool_name"):
                result = event.get("tool_result")
                summary = summarize_text(result) if isinstance(result, str) else "completed"
                self._emit(AgentToolResult(event["tool_name"], summary))
        elif event_type == "result":
            if event.get("is_error"):
                raise TurnFailed(AGENT_NAME, str(event.get("result") or event.get("subtype") or "unknown error"))
            # --json-schema puts the answer in structured_output
            value = event.get("structured_output")
            if value is None:
                value = event.get("result")
            if value is not None:
                state.result = value

    def _handle_content_block(self, block, state: _StreamState) -> None:
        if not isinstance(block, dict):
            return
        block_type = block.get("type")
        if block_type == "thinking" and block.get("thinking"):
            self._emit(AgentThinking(block["thinking"]))
        elif block_type == "text" and block.get("text"):
            self._emit(AgentText(block["text"]))
        elif block_type == "tool_use" and block.get("name"):
            if isinstance(block.get("id"), str):
                state.tool_names[block["id"]] = block["name"]
            self._emit(AgentToolUse(block["name"], summarize_json(block.get("input", {}))))
