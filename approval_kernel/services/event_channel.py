"""
EventChannel -- in-process publish/subscribe for approval events.

Responsibility:
    Carries real-time alerts (emergency bypasses) from the audit ledger to
    monitoring subscribers, and workflow status changes to the invoicing
    subsystem.

Architecture position:
    Kernel > Services.  One instance is created by the application and
    injected into AuditLedger and WorkflowService; there is no global
    singleton.

Failure modes:
    - A failing subscriber is logged with its traceback and the remaining
      subscribers still run.  Publishing never raises into the workflow
      transaction that produced the event.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from approval_kernel.logging_config import get_logger

logger = get_logger("services.event_channel")


class ChannelTopic(str, Enum):
    EMERGENCY_BYPASS = "audit.emergency_bypass"
    WORKFLOW_STATUS_CHANGED = "workflow.status_changed"


@dataclass(frozen=True)
class ChannelMessage:
    topic: ChannelTopic
    payload: Any
    published_at: datetime


Handler = Callable[[ChannelMessage], None]


class EventChannel:
    """
    Synchronous pub/sub channel.

    Contract:
        ``publish`` calls every handler subscribed to the topic, in
        subscription order, on the caller's thread.

    Guarantees:
        - The last ``max_history`` messages are retained for inspection.
    """

    def __init__(self, max_history: int = 1000):
        self._subscribers: dict[ChannelTopic, list[Handler]] = {}
        self._history: list[ChannelMessage] = []
        self._max_history = max_history

    def subscribe(self, topic: ChannelTopic, handler: Handler) -> None:
        self._subscribers.setdefault(topic, []).append(handler)
        logger.debug(
            "channel_subscribed",
            extra={"topic": topic.value, "handler": getattr(handler, "__name__", repr(handler))},
        )

    def unsubscribe(self, topic: ChannelTopic, handler: Handler) -> None:
        if topic in self._subscribers:
            self._subscribers[topic] = [h for h in self._subscribers[topic] if h != handler]

    def publish(self, topic: ChannelTopic, payload: Any, published_at: datetime) -> ChannelMessage:
        message = ChannelMessage(topic=topic, payload=payload, published_at=published_at)
        self._history.append(message)
        if len(self._history) > self._max_history:
            self._history = self._history[-self._max_history:]

        handlers = list(self._subscribers.get(topic, ()))
        logger.info(
            "channel_message_published",
            extra={"topic": topic.value, "subscriber_count": len(handlers)},
        )
        for handler in handlers:
            try:
                handler(message)
            except Exception:
                logger.exception(
                    "channel_handler_failed",
                    extra={
                        "topic": topic.value,
                        "handler": getattr(handler, "__name__", repr(handler)),
                    },
                )
        return message

    def history(self, topic: ChannelTopic | None = None, limit: int = 100) -> list[ChannelMessage]:
        messages = self._history
        if topic is not None:
            messages = [m for m in messages if m.topic == topic]
        return messages[-limit:]
