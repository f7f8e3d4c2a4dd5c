from .broadcaster import AUTHENTICATED, Broadcaster, EventType

__all__ = ["AUTHENTICATED", "Broadcaster", "EventType"]
