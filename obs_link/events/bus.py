"""
events/bus.py — Explicit publish/subscribe registry.

Subscribers keep the Subscription they get back and cancel it when they are
torn down; nothing is collected automatically.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import defaultdict
from typing import Any, Callable, Hashable, Optional

log = logging.getLogger(__name__)

Callback = Callable[[Any], Any]

ALL = object()  # wildcard topic for subscribe_all


class Subscription:
    def __init__(self, bus: "EventBus", topic: Any, callback: Callback):
        self._bus = bus
        self.topic = topic
        self.callback = callback
        self.active = True

    def cancel(self) -> None:
        self._bus.unsubscribe(self)

    def __repr__(self) -> str:
        name = getattr(self.callback, "__qualname__", repr(self.callback))
        return f"<Subscription {self.topic!r} → {name}{'' if self.active else ' (cancelled)'}>"


class EventBus:
    """
    Topic-keyed fan-out. Plain callbacks run inline, in publish order;
    coroutine callbacks are scheduled as tasks on the running loop.
    A failing subscriber is logged and never stops delivery to the others.
    """

    def __init__(self, name: str = "events"):
        self.name = name
        self._subs: dict[Any, list[Subscription]] = defaultdict(list)
        self._tasks: set[asyncio.Task] = set()

    def subscribe(self, topic: Hashable, callback: Callback) -> Subscription:
        sub = Subscription(self, topic, callback)
        self._subs[topic].append(sub)
        return sub

    def subscribe_all(self, callback: Callback) -> Subscription:
        return self.subscribe(ALL, callback)

    def unsubscribe(self, sub: Subscription) -> bool:
        subs = self._subs.get(sub.topic, [])
        sub.active = False
        if sub in subs:
            subs.remove(sub)
            if not subs:
                del self._subs[sub.topic]
            return True
        return False

    def subscriber_count(self, topic: Optional[Hashable] = None) -> int:
        if topic is None:
            return sum(len(s) for s in self._subs.values())
        return len(self._subs.get(topic, []))

    def publish(self, topic: Hashable, event: Any) -> None:
        # Copy: a callback may cancel its own subscription.
        for sub in list(self._subs.get(topic, [])) + list(self._subs.get(ALL, [])):
            if sub.active:
                self._deliver(sub, event)

    def _deliver(self, sub: Subscription, event: Any) -> None:
        try:
            result = sub.callback(event)
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._tasks.add(task)
                task.add_done_callback(self._task_done)
        except Exception as e:
            log.error(f"{self.name}: subscriber {sub!r} failed: {e}", exc_info=True)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            log.error(f"{self.name}: async subscriber failed: {task.exception()!r}")

    def clear(self) -> None:
        for subs in self._subs.values():
            for sub in subs:
                sub.active = False
        self._subs.clear()
