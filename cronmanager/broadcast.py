"""
Best-effort real-time broadcast of activity events and stats.

Subscribers are plain callables receiving a message dict
({"type": "log" | "stats", "data": ...}). Nothing is buffered: with no
subscriber connected a message is simply dropped. A subscriber that raises
is removed, the way a dead websocket client would be.
"""

import itertools
import logging
import threading
from typing import Any, Callable, Dict

from cronmanager.models import ActivityLogEvent

logger = logging.getLogger(__name__)

Subscriber = Callable[[Dict[str, Any]], None]


class EventBroadcaster:
    """Fan-out of messages to live subscribers."""

    def __init__(self):
        self._subscribers: Dict[int, Subscriber] = {}
        self._lock = threading.Lock()
        self._ids = itertools.count(1)

    def subscribe(self, callback: Subscriber) -> int:
        """Register a subscriber and return its token."""
        with self._lock:
            token = next(self._ids)
            self._subscribers[token] = callback
        logger.debug(f"Subscriber {token} connected")
        return token

    def unsubscribe(self, token: int) -> bool:
        with self._lock:
            return self._subscribers.pop(token, None) is not None

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def publish(self, event: ActivityLogEvent) -> int:
        """Push an activity event to every subscriber; returns deliveries."""
        return self._send({'type': 'log', 'data': event.to_dict()})

    def publish_stats(self, stats: Dict[str, Any]) -> int:
        return self._send({'type': 'stats', 'data': dict(stats)})

    def _send(self, message: Dict[str, Any]) -> int:
        with self._lock:
            targets = list(self._subscribers.items())

        delivered = 0
        for token, callback in targets:
            try:
                callback(message)
                delivered += 1
            except Exception as e:
                logger.warning(f"Dropping subscriber {token}: {e}")
                self.unsubscribe(token)
        return delivered
