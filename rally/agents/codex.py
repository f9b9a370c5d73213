"""
Codex agent adapter.

Runs `codex exec -` (or `codex exec resume <session> -` for follow-ups) with
the prompt on stdin and --json event output. Codex has no per-tool
allowlist: the reviewer runs in the default read-only sandbox, the reviewee
with --full-auto (workspace-write sandbox).

--output-schema only takes a file path, so the schema is written to a
temporary directory for the duration of each run.
"""

import json
import logging
import tempfile
from pathlib import Path

from rally.agents.stream import run_streaming
from rally.lib.errors import (
    AuthenticationFailure,
    MissingResult,
    NoActiveSession,
    ProcessExitFailure,
    TurnFailed,
)
from rally.lib.parse import parse_reviewee_output, parse_reviewer_output, summarize_text
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

AGENT_NAME = "codex"

_AUTH_MARKERS = ("auth", "unauthorized")


class _StreamState:
    def __init__(self, role: str, session_id: str | None):
        self.role = role
        # Resumed runs may not announce the thread again; keep the known id
        self.thread_id = session_id
        self.result = None


class CodexAdapter:
    """AgentAdapter for the Codex CLI."""

    def __init__(self, binary: str = AGENT_NAME):
        self.binary = binary
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
        # Sandbox mode, not an allowlist, decides what codex may run
        logger.debug(f"codex has no tool allowlist; ignoring {tool}")

    def build_command(
        self,
        schema_path: Path,
        cwd: Path | None,
        writable: bool,
        session_id: str | None = None,
    ) -> list[str]:
        cmd = [self.binary, "exec"]
        if session_id:
            cmd += ["resume", session_id]
        cmd.append("-")
        cmd += ["--json", "--output-schema", str(schema_path)]
        if cwd:
            cmd += ["--cd", str(cwd)]
        if writable:
            cmd.append("--full-auto")
        return cmd

    async def run_reviewer(self, prompt: str, context: Context) -> ReviewerOutput:
        self._reviewer_cwd = context.working_dir
        payload, session_id = await self._run("reviewer", prompt, self._reviewer_cwd)
        self.reviewer_session_id = session_id
        return parse_reviewer_output(AGENT_NAME, payload, session_id)

    async def run_reviewee(self, prompt: str, context: Context) -> RevieweeOutput:
        self._reviewee_cwd = context.working_dir
        payload, session_id = await self._run("reviewee", prompt, self._reviewee_cwd)
        self.reviewee_session_id = session_id
        return parse_reviewee_output(AGENT_NAME, payload, session_id)

    async def continue_reviewer(self, message: str) -> ReviewerOutput:
        if not self.reviewer_session_id:
            raise NoActiveSession(AGENT_NAME, "reviewer")
        payload, session_id = await self._run("reviewer", message, self._reviewer_cwd, self.reviewer_session_id)
        self.reviewer_session_id = session_id
        return parse_reviewer_output(AGENT_NAME, payload, session_id)

    async def continue_reviewee(self, message: str) -> RevieweeOutput:
        if not self.reviewee_session_id:
            raise NoActiveSession(AGENT_NAME, "reviewee")
        payload, session_id = await self._run("reviewee", message, self._reviewee_cwd, self.reviewee_session_id)
        self.reviewee_session_id = session_id
        return parse_reviewee_output(AGENT_NAME, payload, session_id)

    async def _run(self, role: str, prompt: str, cwd: Path | None, session_id: str | None = None):
        """Run one codex turn. Returns (result payload, thread id)."""
        state = _StreamState(role, session_id)

        def on_event(event: dict) -> None:
            self._handle_event(event, state)

        with tempfile.TemporaryDirectory(prefix="rally-codex-") as tmpdir:
            schema_path = Path(tmpdir) / f"{role}.schema.json"
            schema_path.write_text(schema_text(role))
            cmd = self.build_command(schema_path, cwd, writable=(role == "reviewee"), session_id=session_id)
            outcome = await run_streaming(AGENT_NAME, cmd, prompt, on_event, cwd=cwd)

        if not outcome.success:
            lowered = outcome.stderr.lower()
            if any(marker in lowered for marker in _AUTH_MARKERS):
                raise AuthenticationFailure(AGENT_NAME, "Run 'codex login' to authenticate")
            raise ProcessExitFailure(AGENT_NAME, outcome.returncode, outcome.stderr)
        if state.result is None:
            raise MissingResult(AGENT_NAME)
        return state.result, state.thread_id

    def _emit(self, event: RallyEvent) -> None:
        if self._events is not None:
            self._events.send(event)

    def _handle_event(self, event: dict, state: _StreamState) -> None:
        event_type = event.get("type")

        if event_type == "thread.started":
            if event.get("thread_id"):
                state.thread_id = event["thread_id"]
            self._emit(AgentThinking("Starting..."))
        elif event_type == "turn.started":
            self._emit(AgentThinking("Processing..."))
        elif event_type == "turn.completed":
            # Usage only; the answer arrives as an agent_message item
            pass
        elif event_type == "turn.failed":
            error = event.get("error")
            reason = error.get("message") if isinstance(error, dict) else error
            raise TurnFailed(AGENT_NAME, reason or "Unknown error")
        elif event_type == "error":
            raise TurnFailed(AGENT_NAME, event.get("message") or "Unknown error")
        elif event_type in ("item.started", "item.updated", "item.completed"):
            item = event.get("item")
            if isinstance(item, dict):
                self._handle_item(item, state, completed=(event_type == "item.completed"))

    def _handle_item(self, item: dict, state: _StreamState, completed: bool) -> None:
        item_type = item.get("type")
        text = item.get("text")
        if not isinstance(text, str):
            text = ""

        if item_type == "reasoning":
            if text:
                self._emit(AgentThinking(text))
        elif item_type == "agent_message":
            if not text:
                return
            if not completed:
                self._emit(AgentThinking(text))
                return
            try:
                result = json.loads(text)
            except json.JSONDecodeError:
                result = None
            if not isinstance(result, dict):
                self._emit(AgentText(text))
                return
            self._emit(AgentText("Review completed." if state.role == "reviewer" else "Fix completed."))
            if not state.thread_id:
                # No thread.started and nothing to resume from
                raise NoActiveSession(AGENT_NAME, state.role)
            state.result = result
        elif item_type in ("function_call", "command", "command_execution"):
            tool = item.get("name") or item.get("command") or "tool"
            if completed:
                output = item.get("output") or item.get("aggregated_output") or "completed"
                self._emit(AgentToolResult(tool, summarize_text(str(output))))
            else:
                self._emit(AgentToolUse(tool, "running..."))
        elif item_type in ("file_edit", "file_change"):
            label = f"edit:{item.get('path') or 'file'}"
            if completed:
                self._emit(AgentToolResult(label, "file modified"))
            else:
                self._emit(AgentToolUse(label, "modifying..."))
