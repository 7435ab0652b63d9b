"""Lifecycle event bus."""

from ally_agent.events.bus import EventBus

__all__ = ["EventBus"]
