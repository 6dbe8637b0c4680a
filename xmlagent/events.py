"""Notification sinks for the agent's output message stream."""

import asyncio
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Protocol


@dataclass(frozen=True)
class AgentEvent:
    """One message published to stream consumers.

    ``text`` is always a well-formed protocol envelope; ``final`` marks the
    last event of an exchange.
    """

    thread_id: str
    kind: str
    text: str
    final: bool = False
    timestamp: str = field(default_factory=lambda: datetime.now(UTC).isoformat())


class NotificationSink(Protocol):
    def publish(self, event: AgentEvent) -> None: ...


class NullSink:
    """Drops every event."""

    def publish(self, event: AgentEvent) -> None:
        return None


class CollectingSink:
    """Keeps events in memory, in publish order."""

    def __init__(self):
        self.events: list[AgentEvent] = []

    def publish(self, event: AgentEvent) -> None:
        self.events.append(event)


class QueueSink:
    """Feeds events into an asyncio queue for streaming consumers."""

    def __init__(self, queue: asyncio.Queue[AgentEvent] | None = None):
        self.queue: asyncio.Queue[AgentEvent] = queue or asyncio.Queue()

    def publish(self, event: AgentEvent) -> None:
        self.queue.put_nowait(event)


class FanoutSink:
    """Publishes to several sinks."""

    def __init__(self, *sinks: NotificationSink):
        self.sinks = list(sinks)

    def publish(self, event: AgentEvent) -> None:
        for sink in self.sinks:
            sink.publish(event)
