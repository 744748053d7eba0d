"""
Standardized event system for experiment runs.
"""

from __future__ import annotations

import json
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from .config import settings


class EventType(str, Enum):
    EXPERIMENT_STARTED = "experiment.started"
    EXPERIMENT_PAUSED = "experiment.paused"
    EXPERIMENT_STOPPED = "experiment.stopped"

    TICK_COMPLETED = "tick.completed"
    TICK_SKIPPED = "tick.skipped"
    AGENT_FAILED = "agent.failed"

    TOOL_FAILED = "tool.failed"

    PR_CREATED = "pr.created"
    PR_REVIEWED = "pr.reviewed"
    PR_FULLY_APPROVED = "pr.fully_approved"
    PR_MERGED = "pr.merged"
    PR_CLOSED = "pr.closed"
    VOTE_CAST = "vote.cast"

    STATUS_PUBLISHED = "status.published"

    HUMAN_INPUT_REQUESTED = "human.input_requested"
    HUMAN_INPUT_RECEIVED = "human.input_received"
    HUMAN_INPUT_TIMEOUT = "human.input_timeout"


@dataclass
class SwarmEvent:
    """Standardized event for the swarm."""

    id: UUID = field(default_factory=uuid4)
    type: EventType = EventType.EXPERIMENT_STARTED
    experiment_id: int | None = None
    agent: int | None = None
    message: str = ""
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    duration_ms: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "type": self.type.value,
            "experiment_id": self.experiment_id,
            "agent": self.agent,
            "message": self.message,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
            "duration_ms": self.duration_ms,
        }


EventHandler = Callable[[SwarmEvent], Awaitable[None] | None]


class EventEmitter:
    """Emits events to registered handlers."""

    def __init__(self) -> None:
        self._handlers: list[EventHandler] = []

    def on_event(self, handler: EventHandler) -> None:
        self._handlers.append(handler)

    def remove_handler(self, handler: EventHandler) -> None:
        if handler in self._handlers:
            self._handlers.remove(handler)

    async def emit(self, event: SwarmEvent) -> None:
        for handler in self._handlers:
            try:
                result = handler(event)
                if hasattr(result, "__await__"):
                    await result
            except Exception as exc:
                print(f"Event handler error: {exc}")


event_bus = EventEmitter()


async def emit(
    type_: EventType,
    experiment_id: int,
    message: str,
    *,
    agent: int | None = None,
    data: dict[str, Any] | None = None,
    duration_ms: int | None = None,
) -> SwarmEvent:
    event = SwarmEvent(
        type=type_,
        experiment_id=experiment_id,
        agent=agent,
        message=message,
        data=data or {},
        duration_ms=duration_ms,
    )
    await event_bus.emit(event)
    return event


async def persist_event_handler(event: SwarmEvent) -> None:
    """Handler that persists events to the database."""
    from .db import get_session, log_event

    if event.experiment_id is None:
        return

    async with get_session() as session:
        await log_event(
            session,
            event.experiment_id,
            event.type.value,
            agent=event.agent,
            message=event.message,
            details=event.data,
            duration_ms=event.duration_ms,
        )


event_bus.on_event(persist_event_handler)


async def publish_event_handler(event: SwarmEvent) -> None:
    """Handler that publishes events to Redis Pub/Sub."""
    if not settings.redis_events_enabled or event.experiment_id is None:
        return

    try:
        from .redis_client import get_redis_client

        redis = get_redis_client()
        channel = f"channel:experiment:{event.experiment_id}"
        await redis.publish(channel, json.dumps(event.to_dict()))
    except Exception as exc:
        print(f"Redis publish failed: {exc}")


event_bus.on_event(publish_event_handler)
