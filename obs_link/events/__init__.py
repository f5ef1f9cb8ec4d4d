"""events — Subscriptions, typed domain events and the frame router."""
from .bus import EventBus, Subscription
from .types import DomainEvent, EventCategory

__all__ = ["EventBus", "Subscription", "DomainEvent", "EventCategory"]
