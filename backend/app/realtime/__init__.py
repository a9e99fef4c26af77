"""Realtime status delivery for workflow executions."""

from .channel import (
    LastSeenFilter,
    StatusChannel,
    StatusEvent,
    Subscription,
    execution_channel,
    workflow_channel,
)

__all__ = [
    "LastSeenFilter",
    "StatusChannel",
    "StatusEvent",
    "Subscription",
    "execution_channel",
    "workflow_channel",
]
