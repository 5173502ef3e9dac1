"""In-process alert fan-out.

Newly created alerts are handed to every subscriber. Delivery is
best-effort: a failing subscriber is logged and skipped, publishes are not
retried and never wait for acknowledgement.
"""
from __future__ import annotations

import logging
import threading
from typing import Callable

from dropwatch.schemas.alerts import AlertMessage

logger = logging.getLogger(__name__)

Subscriber = Callable[[AlertMessage], None]


class AlertPublisher:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: list[Subscriber] = []

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register callback; returns a function that unsubscribes it."""
        with self._lock:
            self._subscribers.append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return _unsubscribe

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def publish(self, message: AlertMessage) -> int:
        """Deliver message to all current subscribers. Returns successful deliveries."""
        with self._lock:
            subscribers = list(self._subscribers)
        delivered = 0
        for callback in subscribers:
            try:
                callback(message)
                delivered += 1
            except Exception:
                logger.exception("Alert subscriber failed for alert %d", message.id)
        return delivered


alert_publisher = AlertPublisher()
