"""state — Single-writer mirror of remote OBS state."""
from .cache import Field, StateCache, StateKey

__all__ = ["Field", "StateCache", "StateKey"]
