"""Change feed: ordered, at-least-once events scoped to a topic.

Two kinds of topics exist:

- ``conversation:<id>`` carries ``message.created`` and ``message.read``
  events for one conversation.
- ``user:<id>`` carries ``conversation.created`` and
  ``conversation.updated`` events for every conversation the user is a
  party of.

Writers never publish directly; they call ``publish_on_commit`` so that a
rolled-back write produces no event. Consumers must tolerate duplicates,
reordering and silent gaps (see django_direct_messages.sync).

Usage:
    from django_direct_messages.feed import get_change_feed, conversation_topic

    subscription = get_change_feed().subscribe(
        conversation_topic(conv.pk),
        handler=on_event,
        on_status=on_status_change,
    )
"""

import itertools
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional

from django.db import transaction
from django.utils import timezone

from .conf import load_class
from .exceptions import SyncChannelDown

logger = logging.getLogger(__name__)

MESSAGE_CREATED = "message.created"
MESSAGE_READ = "message.read"
CONVERSATION_CREATED = "conversation.created"
CONVERSATION_UPDATED = "conversation.updated"

CONNECTED = "connected"
DISCONNECTED = "disconnected"
CLOSED = "closed"


def conversation_topic(conversation_id) -> str:
    return f"conversation:{conversation_id}"


def user_topic(user_id) -> str:
    return f"user:{user_id}"


@dataclass(frozen=True)
class ChangeEvent:
    """One event on a topic."""

    topic: str
    kind: str
    payload: dict[str, Any]
    sequence: int
    emitted_at: datetime = field(default_factory=timezone.now)


class Subscription:
    """Handle for a live subscription to one topic.

    A subscription can be silently cut (``disconnect``), in which case
    events published meanwhile are lost for it; the subscriber is told via
    its status callback and is expected to repair the gap after
    ``reconnect``.
    """

    def __init__(self, feed: "ChangeFeed", topic: str, handler, on_status=None):
        self.feed = feed
        self.topic = topic
        self.handler = handler
        self.on_status = on_status
        self.state = CONNECTED

    def __repr__(self):
        return f"<Subscription {self.topic} {self.state}>"

    @property
    def is_connected(self) -> bool:
        return self.state == CONNECTED

    def _set_state(self, state: str) -> None:
        if self.state == state or self.state == CLOSED:
            return
        self.state = state
        if self.on_status is not None:
            self.on_status(state)

    def disconnect(self) -> None:
        """Drop the connection; events are not delivered until reconnect."""
        self._set_state(DISCONNECTED)

    def reconnect(self) -> None:
        """Re-establish delivery.

        Raises:
            SyncChannelDown: If the feed is unavailable
        """
        if self.state == CLOSED:
            raise SyncChannelDown(self.topic, "subscription is closed")
        self.feed.ensure_available(self.topic)
        self._set_state(CONNECTED)

    def close(self) -> None:
        self.feed.unsubscribe(self)
        self.state = CLOSED


class ChangeFeed(ABC):
    """Abstract base class for change feed backends."""

    @abstractmethod
    def publish(self, topic: str, kind: str, payload: dict[str, Any]) -> ChangeEvent:
        raise NotImplementedError

    @abstractmethod
    def subscribe(
        self,
        topic: str,
        handler: Callable[[ChangeEvent], None],
        on_status: Optional[Callable[[str], None]] = None,
    ) -> Subscription:
        """Subscribe handler to topic.

        Raises:
            SyncChannelDown: If the subscription cannot be established
        """
        raise NotImplementedError

    @abstractmethod
    def unsubscribe(self, subscription: Subscription) -> None:
        raise NotImplementedError

    def ensure_available(self, topic: str) -> None:
        """Raise SyncChannelDown if topic cannot currently be subscribed to."""


class InProcessChangeFeed(ChangeFeed):
    """Thread-safe in-memory fan-out.

    Suitable for a single process (development, tests, a server that hosts
    the sync engine next to the store). ``set_available(False)`` simulates a
    feed outage: new subscriptions and reconnects fail with SyncChannelDown
    and existing subscriptions are disconnected.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._subscriptions: dict[str, list[Subscription]] = {}
        self._sequence = itertools.count(1)
        self._available = True

    def publish(self, topic, kind, payload):
        with self._lock:
            event = ChangeEvent(
                topic=topic,
                kind=kind,
                payload=payload,
                sequence=next(self._sequence),
            )
            targets = [s for s in self._subscriptions.get(topic, []) if s.is_connected]

        logger.debug("Publishing %s #%d to %s (%d subscriber(s))", kind, event.sequence, topic, len(targets))
        for subscription in targets:
            try:
                subscription.handler(event)
            except Exception:
                logger.exception("Change feed handler failed for %s on %s", kind, topic)
        return event

    def subscribe(self, topic, handler, on_status=None):
        self.ensure_available(topic)
        subscription = Subscription(self, topic, handler, on_status=on_status)
        with self._lock:
            self._subscriptions.setdefault(topic, []).append(subscription)
        return subscription

    def unsubscribe(self, subscription):
        with self._lock:
            subscriptions = self._subscriptions.get(subscription.topic, [])
            if subscription in subscriptions:
                subscriptions.remove(subscription)
            if not subscriptions:
                self._subscriptions.pop(subscription.topic, None)

    def ensure_available(self, topic):
        if not self._available:
            raise SyncChannelDown(topic, "change feed unavailable")

    def set_available(self, available: bool) -> None:
        with self._lock:
            self._available = available
            affected = [] if available else [s for subs in self._subscriptions.values() for s in subs]
        for subscription in affected:
            subscription.disconnect()

    def subscriptions(self, topic: str) -> list[Subscription]:
        with self._lock:
            return list(self._subscriptions.get(topic, []))


_feed = None
_feed_lock = threading.Lock()


def get_change_feed() -> ChangeFeed:
    """Return the process-wide feed configured in DIRECT_MESSAGES_CHANGE_FEED."""
    global _feed
    with _feed_lock:
        if _feed is None:
            feed_class = load_class("DIRECT_MESSAGES_CHANGE_FEED")
            _feed = feed_class()
            logger.debug("Loaded change feed %s", feed_class.__name__)
        return _feed


def reset_change_feed() -> None:
    """Drop the cached feed so the next call builds a fresh one."""
    global _feed
    with _feed_lock:
        _feed = None


def publish_on_commit(topic: str, kind: str, payload: dict[str, Any]) -> None:
    """Publish once the current transaction commits (immediately in autocommit)."""
    transaction.on_commit(lambda: get_change_feed().publish(topic, kind, payload))


def message_payload(message) -> dict[str, Any]:
    return {
        "id": message.pk,
        "conversation_id": str(message.conversation_id),
        "sender_id": str(message.sender_id),
        "body": message.body,
        "created_at": message.created_at.isoformat(),
        "client_ref": str(message.client_ref) if message.client_ref else None,
        "read_by": sorted(str(uid) for uid in message.read_by),
    }


def conversation_payload(conversation) -> dict[str, Any]:
    last_at = conversation.last_message_at
    return {
        "id": str(conversation.pk),
        "youth_id": str(conversation.youth_id),
        "worker_id": str(conversation.worker_id),
        "last_message": conversation.last_message,
        "last_message_at": last_at.isoformat() if last_at else None,
        "last_message_id": conversation.last_message_id,
        "created_at": conversation.created_at.isoformat(),
    }
