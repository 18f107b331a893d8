"""Event bus package.

Exposes the EventBus class and the CoreEvents name constants used by the
webmention pipeline and the content subsystem.
"""
from events.bus import CoreEvents, EventBus

__all__ = ["CoreEvents", "EventBus"]
