"""
In-process publish/subscribe topics.

A Topic delivers each published message synchronously to its current
subscribers and reports subscriber count changes through connect and
disconnect callbacks, which is what drives lazy activation.
"""

import logging
import threading
from typing import Any, Callable, List, Optional

from .errors import SubscriptionError

logger = logging.getLogger(__name__)

StatusCallback = Callable[['Topic'], None]


class Subscription:
    """Handle for one subscriber on a topic."""

    def __init__(self, topic: 'Topic', callback: Callable[[Any], None]):
        self.topic = topic
        self.callback = callback
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def shutdown(self):
        """Stop receiving messages. Safe to call more than once."""
        if self._active:
            self._active = False
            self.topic._remove(self)


class Topic:
    """Named message channel."""

    def __init__(
        self,
        name: str,
        on_connect: Optional[StatusCallback] = None,
        on_disconnect: Optional[StatusCallback] = None
    ):
        self.name = name
        self.on_connect = on_connect
        self.on_disconnect = on_disconnect
        self._subscribers: List[Subscription] = []
        self._lock = threading.Lock()
        self._closed = False

    def subscribe(self, callback: Callable[[Any], None]) -> Subscription:
        """
        Register a callback for every message published on this topic.

        Raises:
            SubscriptionError: If the topic has been closed
        """
        with self._lock:
            if self._closed:
                raise SubscriptionError(f"Topic {self.name} is closed")
            subscription = Subscription(self, callback)
            self._subscribers.append(subscription)
            count = len(self._subscribers)

        logger.debug(f"Subscription detected on {self.name} ({count} subscribers)")
        if self.on_connect is not None:
            self.on_connect(self)
        return subscription

    def _remove(self, subscription: Subscription):
        with self._lock:
            if subscription not in self._subscribers:
                return
            self._subscribers.remove(subscription)
            count = len(self._subscribers)

        logger.debug(f"Unsubscription detected on {self.name} ({count} subscribers)")
        if self.on_disconnect is not None:
            self.on_disconnect(self)

    def get_num_subscribers(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def publish(self, message: Any) -> int:
        """
        Deliver a message to all current subscribers.

        Returns:
            Number of subscribers the message was delivered to
        """
        with self._lock:
            subscribers = list(self._subscribers)

        for subscription in subscribers:
            subscription.callback(message)
        return len(subscribers)

    def close(self):
        """Drop all subscribers and refuse new ones."""
        with self._lock:
            self._closed = True
            subscribers = list(self._subscribers)
        for subscription in subscribers:
            subscription.shutdown()
