"""
Subprocess plumbing shared by the agent adapters.

An agent CLI is started with the prompt on stdin. stdout and stderr are
pumped by two tasks into one queue, so lines are handled in arrival order
whichever stream they come from. stdout EOF ends the read loop; the process
is always waited for before returning, and killed if the caller is
cancelled (timeout) or anything else goes wrong.
"""

import asyncio
import json
import logging
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from rally.lib.errors import AgentError, SpawnFailure, StreamReadError

logger = logging.getLogger(__name__)

# Agent events can carry whole file contents in a single line
STREAM_LIMIT = 16 * 1024 * 1024

MAX_STDERR_LINES = 200
MAX_STDERR_CHARS = 8192

PUMP_GRACE_SECONDS = 5

_EOF = None


class StderrTail:
    """Keeps only the last lines/characters of a process's stderr."""

    def __init__(self, max_lines: int = MAX_STDERR_LINES, max_chars: int = MAX_STDERR_CHARS):
        self.max_chars = max_chars
        self._lines: deque[str] = deque(maxlen=max_lines)

    def append(self, line: str) -> None:
        self._lines.append(line)

    def text(self) -> str:
        joined = "\n".join(self._lines)
        if len(joined) > self.max_chars:
            joined = joined[-self.max_chars:]
        return joined


@dataclass
class ProcessOutcome:
    returncode: int
    stderr: str

    @property
    def success(self) -> bool:
        return self.returncode == 0


async def _pump(stream: asyncio.StreamReader, name: str, queue: asyncio.Queue) -> None:
    """Copy decoded lines from stream into queue, then an EOF marker."""
    try:
        while True:
            raw = await stream.readline()
            if not raw:
                break
            await queue.put((name, raw.decode("utf-8", errors="replace").rstrip("\r\n")))
    except (ValueError, asyncio.LimitOverrunError, OSError) as e:
        await queue.put(("error", f"{name}: {e}"))
    finally:
        await queue.put((name, _EOF))


async def _write_stdin(proc: asyncio.subprocess.Process, text: str) -> None:
    if proc.stdin is None:
        return
    try:
        proc.stdin.write(text.encode("utf-8"))
        await proc.stdin.drain()
        proc.stdin.close()
        await proc.stdin.wait_closed()
    except (BrokenPipeError, ConnectionResetError) as e:
        # Child exited before reading its prompt; the exit status says why
        logger.debug(f"stdin closed early: {e}")


async def _terminate(proc: asyncio.subprocess.Process, pumps: list[asyncio.Task]) -> None:
    if proc.returncode is None:
        try:
            proc.kill()
        except ProcessLookupError:
            pass
        await proc.wait()
    for task in pumps:
        task.cancel()
    await asyncio.gather(*pumps, return_exceptions=True)


async def run_streaming(
    agent: str,
    cmd: list[str],
    prompt: str,
    on_event: Callable[[dict], None],
    cwd: Path | None = None,
) -> ProcessOutcome:
    """
    Run an agent CLI and feed each NDJSON stdout object to on_event.

    Lines that aren't JSON objects are skipped. If on_event raises an
    AgentError the read loop stops, the process is still waited for, and
    the error is raised afterwards.

    Args:
        agent: Agent name for error messages
        cmd: Command and arguments (the prompt is never one of them)
        prompt: Text written to the process's stdin
        on_event: Called for every decoded event object, in order
        cwd: Working directory for the process

    Returns:
        ProcessOutcome with exit code and the tail of stderr

    Raises:
        SpawnFailure: The process could not be started
        StreamReadError: stdout/stderr could not be read
        AgentError: Whatever on_event raised
    """
    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(cwd) if cwd else None,
            limit=STREAM_LIMIT,
        )
    except OSError as e:
        raise SpawnFailure(agent, str(e)) from e

    logger.debug(f"Started {agent} (pid {proc.pid}): {' '.join(cmd[:3])}")

    queue: asyncio.Queue = asyncio.Queue()
    pumps = [
        asyncio.create_task(_pump(proc.stdout, "stdout", queue)),
        asyncio.create_task(_pump(proc.stderr, "stderr", queue)),
    ]
    stderr = StderrTail()
    stream_error: AgentError | None = None

    try:
        await _write_stdin(proc, prompt)

        while True:
            source, line = await queue.get()
            if source == "error":
                stream_error = StreamReadError(agent, line.split(":", 1)[0], line)
                break
            if source == "stderr":
                if line is not _EOF:
                    stderr.append(line)
                continue
            if line is _EOF:
                break
            if not line.strip():
                continue
            try:
                event = json.loads(line)
            except json.JSONDecodeError:
                logger.debug(f"Skipping non-JSON line from {agent}: {line[:80]}")
                continue
            if not isinstance(event, dict):
                continue
            try:
                on_event(event)
            except AgentError as e:
                stream_error = e
                break

        returncode = await proc.wait()
        # A grandchild can keep the pipes open after the agent exits
        _, still_running = await asyncio.wait(pumps, timeout=PUMP_GRACE_SECONDS)
        for task in still_running:
            task.cancel()
    except BaseException:
        await _terminate(proc, pumps)
        raise

    # Anything stderr produced after stdout closed
    while not queue.empty():
        source, line = queue.get_nowait()
        if source == "stderr" and line is not _EOF:
            stderr.append(line)

    if stream_error is not None:
        raise stream_error

    return ProcessOutcome(returncode=returncode, stderr=stderr.text())
