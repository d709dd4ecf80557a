"""HTTP surface for OpsKit."""

from opskit.api.events import EventBus, EventBusSink

__all__ = ["EventBus", "EventBusSink"]
