"""
Message sinks for progress, content and error events.

The orchestrator never stores a sink; one is passed into every call
that emits. Implementations must tolerate emits from concurrent
pooled requests.
"""

import asyncio
import re
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from essayfeed.models import utcnow

_NON_ALNUM = re.compile(r"[^A-Za-z0-9]+")


def step_event_name(step_type: str) -> str:
    """
    Convert a step type into its content event name.

    Example:
        >>> step_event_name("chain-of-thought")
        'CHAIN_OF_THOUGHT'
    """
    words = _NON_ALNUM.sub(" ", step_type).split()
    return "_".join(word.upper() for word in words)


class SinkEvent(BaseModel):
    """A single emitted event."""

    model_config = ConfigDict(frozen=True)

    event_type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    is_error: bool = False
    emitted_at: datetime = Field(default_factory=utcnow)


class MessageSink(ABC):
    """Receiver of orchestrator events."""

    @abstractmethod
    def emit(self, event_type: str, payload: dict[str, Any], is_error: bool = False) -> None:
        """
        Deliver one event.

        Args:
            event_type: Event name (e.g. 'feed_start', 'SCORING').
            payload: JSON-serialisable event data.
            is_error: Whether the event reports a failure.
        """
        ...


class CollectingSink(MessageSink):
    """Keeps every event in memory, in emit order."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._events: list[SinkEvent] = []

    def emit(self, event_type: str, payload: dict[str, Any], is_error: bool = False) -> None:
        event = SinkEvent(event_type=event_type, payload=dict(payload), is_error=is_error)
        with self._lock:
            self._events.append(event)

    @property
    def events(self) -> list[SinkEvent]:
        """A snapshot of the collected events."""
        with self._lock:
            return list(self._events)

    def of_type(self, event_type: str) -> list[SinkEvent]:
        """Events with a given type, in emit order."""
        return [e for e in self.events if e.event_type == event_type]

    @property
    def event_types(self) -> list[str]:
        """Event types in emit order."""
        return [e.event_type for e in self.events]


class QueueSink(MessageSink):
    """
    Puts events on an asyncio queue for a single consumer.

    Emits must come from the event loop thread that owns the queue.
    """

    def __init__(self, queue: "asyncio.Queue[SinkEvent] | None" = None):
        self.queue: asyncio.Queue[SinkEvent] = queue or asyncio.Queue()

    def emit(self, event_type: str, payload: dict[str, Any], is_error: bool = False) -> None:
        self.queue.put_nowait(
            SinkEvent(event_type=event_type, payload=dict(payload), is_error=is_error)
        )

    async def get(self) -> SinkEvent:
        """Wait for the next event."""
        return await self.queue.get()
