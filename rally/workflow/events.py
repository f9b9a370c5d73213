"""Messages flowing in and out of a running rally.

RallyEvent variants go out to whoever is watching (UI, CLI printer).
OrchestratorCommand variants come back in while the rally waits on a human.
RallyResult variants are what Orchestrator.run() returns.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Generic, TypeVar, Union

from rally.lib.types import RevieweeOutput, ReviewerOutput
from rally.workflow.state_machine import RallyState

logger = logging.getLogger(__name__)

DEFAULT_EVENT_CAPACITY = 256


# --- Events (orchestrator/adapters -> UI) ---

@dataclass(frozen=True)
class StateChanged:
    state: RallyState


@dataclass(frozen=True)
class IterationStarted:
    iteration: int


@dataclass(frozen=True)
class ReviewCompleted:
    review: ReviewerOutput


@dataclass(frozen=True)
class FixCompleted:
    fix: RevieweeOutput


@dataclass(frozen=True)
class ClarificationNeeded:
    question: str


@dataclass(frozen=True)
class PermissionNeeded:
    action: str
    reason: str


@dataclass(frozen=True)
class ReviewApproved:
    summary: str


@dataclass(frozen=True)
class ErrorRaised:
    message: str


@dataclass(frozen=True)
class Log:
    message: str


@dataclass(frozen=True)
class AgentThinking:
    text: str


@dataclass(frozen=True)
class AgentToolUse:
    name: str
    summary: str


@dataclass(frozen=True)
class AgentToolResult:
    name: str
    summary: str


@dataclass(frozen=True)
class AgentText:
    text: str


RallyEvent = Union[
    StateChanged, IterationStarted, ReviewCompleted, FixCompleted,
    ClarificationNeeded, PermissionNeeded, ReviewApproved, ErrorRaised, Log,
    AgentThinking, AgentToolUse, AgentToolResult, AgentText,
]


# --- Commands (human -> orchestrator) ---

@dataclass(frozen=True)
class ClarificationResponse:
    answer: str


@dataclass(frozen=True)
class PermissionResponse:
    granted: bool


@dataclass(frozen=True)
class SkipClarification:
    pass


@dataclass(frozen=True)
class Abort:
    pass


OrchestratorCommand = Union[ClarificationResponse, PermissionResponse, SkipClarification, Abort]


# --- Results ---

@dataclass(frozen=True)
class Approved:
    iteration: int
    summary: str


@dataclass(frozen=True)
class MaxIterationsReached:
    iteration: int


@dataclass(frozen=True)
class Aborted:
    iteration: int
    reason: str


@dataclass(frozen=True)
class Errored:
    iteration: int
    error: str


RallyResult = Union[Approved, MaxIterationsReached, Aborted, Errored]


# --- Channels ---

T = TypeVar("T")

_CLOSED = object()


class Channel(Generic[T]):
    """Single-consumer async queue with non-blocking sends.

    With a capacity, sends beyond it are dropped (returns False) so a slow
    consumer can never stall the sender. capacity=0 means unbounded.
    """

    def __init__(self, capacity: int = 0):
        self.capacity = capacity
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False
        self._pending = 0  # items queued, excluding the close marker

    @property
    def closed(self) -> bool:
        return self._closed

    def send(self, item: T) -> bool:
        """Queue item without waiting. Returns False if it was dropped."""
        if self._closed:
            logger.debug(f"Channel closed, dropping {type(item).__name__}")
            return False
        if self.capacity and self._pending >= self.capacity:
            logger.debug(f"Channel full, dropping {type(item).__name__}")
            return False
        self._pending += 1
        self._queue.put_nowait(item)
        return True

    def close(self) -> None:
        """Stop accepting items. The consumer still gets everything queued before close."""
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(_CLOSED)

    async def recv(self) -> T | None:
        """Next item, or None once the channel is closed and drained."""
        item = await self._queue.get()
        if item is _CLOSED:
            # Leave the marker for any later recv() call
            self._queue.put_nowait(_CLOSED)
            return None
        self._pending -= 1
        return item

    def drain(self) -> list[T]:
        """Remove and return everything currently queued, without waiting."""
        items = []
        while not self._queue.empty():
            item = self._queue.get_nowait()
            if item is _CLOSED:
                self._queue.put_nowait(_CLOSED)
                break
            self._pending -= 1
            items.append(item)
        return items


def event_channel(capacity: int = DEFAULT_EVENT_CAPACITY) -> "Channel[RallyEvent]":
    """Bounded, lossy channel for UI events."""
    return Channel(capacity)


def command_channel() -> "Channel[OrchestratorCommand]":
    """Unbounded channel for human commands. A command is never dropped."""
    return Channel(0)
