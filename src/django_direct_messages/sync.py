"""Realtime sync: keeps open conversation and inbox views consistent.

A view never polls on its own. It subscribes to the change feed, merges
pushed events into a local buffer, and repairs gaps with a pull whenever its
subscription comes back after a disconnect.

Reconciliation rules for ConversationBuffer:

1. A message already in the buffer (same server id) is a duplicate; only its
   read receipts are merged.
2. A pushed message carrying the client_ref of a pending local entry
   confirms that entry in place.
3. A pushed message without client_ref matches the oldest pending entry with
   the same sender and body sent within DIRECT_MESSAGES_ECHO_WINDOW seconds.
4. Anything else is inserted at its (created_at, id) position; an
   out-of-order arrival is placed into the tail instead of being appended.

Confirmed entries always precede pending ones, which keep local send order.

Usage:
    from django_direct_messages.sync import ConversationSync

    view = ConversationSync(session, conversation_id, listener=render).open()
    view.send("Hallo")
    ...
    view.close()
"""

import bisect
import logging
import threading
import time
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone as dt_timezone
from typing import Callable, Optional

from django.utils import timezone
from django.utils.dateparse import parse_datetime

from . import conf
from .exceptions import MessagingError, StorageUnavailable, SyncChannelDown
from .feed import (
    CONNECTED,
    CONVERSATION_CREATED,
    CONVERSATION_UPDATED,
    DISCONNECTED,
    MESSAGE_CREATED,
    MESSAGE_READ,
    ChangeEvent,
    conversation_topic,
    get_change_feed,
    user_topic,
)
from .retry import backoff_delays
from .services.conversations import get_conversation_for
from .services.inbox import InboxSnapshot, list_conversations
from .services.messages import Cursor, append_message, list_messages, validate_body
from .session import Session

logger = logging.getLogger(__name__)

# Cursor that precedes every message
ORIGIN = Cursor(created_at=datetime.min.replace(tzinfo=dt_timezone.utc), message_id=0)

PENDING = "pending"
CONFIRMED = "confirmed"
FAILED = "failed"


@dataclass(frozen=True)
class RenderedMessage:
    """One entry of a conversation view."""

    key: str
    sender_id: uuid.UUID
    body: str
    state: str
    message_id: Optional[int] = None
    client_ref: Optional[uuid.UUID] = None
    created_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    read_by: frozenset = field(default_factory=frozenset)
    error: str = ""

    @staticmethod
    def confirmed_key(message_id) -> str:
        return f"m:{message_id}"

    @staticmethod
    def pending_key(client_ref) -> str:
        return f"c:{client_ref}"

    @property
    def sort_key(self) -> tuple:
        return (self.created_at, self.message_id)

    @classmethod
    def from_message(cls, message) -> "RenderedMessage":
        return cls(
            key=cls.confirmed_key(message.pk),
            sender_id=message.sender_id,
            body=message.body,
            state=CONFIRMED,
            message_id=message.pk,
            client_ref=message.client_ref,
            created_at=message.created_at,
            read_by=message.read_by,
        )

    @classmethod
    def from_payload(cls, payload: dict) -> "RenderedMessage":
        client_ref = payload.get("client_ref")
        return cls(
            key=cls.confirmed_key(payload["id"]),
            sender_id=uuid.UUID(payload["sender_id"]),
            body=payload["body"],
            state=CONFIRMED,
            message_id=payload["id"],
            client_ref=uuid.UUID(client_ref) if client_ref else None,
            created_at=parse_datetime(payload["created_at"]),
            read_by=frozenset(uuid.UUID(uid) for uid in payload.get("read_by", [])),
        )


class ConversationBuffer:
    """Ordered, deduplicating buffer of a conversation's rendered entries.

    Thread-safe; every public method holds the buffer lock for its
    duration.
    """

    def __init__(self, echo_window: Optional[float] = None):
        self._lock = threading.RLock()
        self._confirmed: list[RenderedMessage] = []
        self._sort_keys: list[tuple] = []
        self._pending: list[RenderedMessage] = []
        self._by_id: dict[int, RenderedMessage] = {}
        self.echo_window = conf.echo_window() if echo_window is None else echo_window

    def __len__(self):
        with self._lock:
            return len(self._confirmed) + len(self._pending)

    def entries(self) -> list[RenderedMessage]:
        with self._lock:
            return self._confirmed + self._pending

    def pending(self) -> list[RenderedMessage]:
        with self._lock:
            return [e for e in self._pending if e.state == PENDING]

    def failed(self) -> list[RenderedMessage]:
        with self._lock:
            return [e for e in self._pending if e.state == FAILED]

    def get(self, key: str) -> Optional[RenderedMessage]:
        with self._lock:
            for entry in self._confirmed + self._pending:
                if entry.key == key:
                    return entry
            return None

    def last_confirmed_cursor(self) -> Optional[Cursor]:
        with self._lock:
            if not self._confirmed:
                return None
            last = self._confirmed[-1]
            return Cursor(created_at=last.created_at, message_id=last.message_id)

    def add_pending(self, sender_id, body: str, client_ref=None, sent_at=None) -> RenderedMessage:
        """Add an optimistic entry for a message that is being sent."""
        client_ref = client_ref or uuid.uuid4()
        entry = RenderedMessage(
            key=RenderedMessage.pending_key(client_ref),
            sender_id=sender_id,
            body=body,
            state=PENDING,
            client_ref=client_ref,
            sent_at=sent_at or timezone.now(),
            read_by=frozenset({sender_id}),
        )
        with self._lock:
            self._pending.append(entry)
        return entry

    def confirm(self, client_ref, confirmed: RenderedMessage) -> RenderedMessage:
        """Replace the pending entry for client_ref with its stored message.

        If a pushed echo already confirmed it, the existing entry is kept.
        """
        with self._lock:
            self._drop_pending(client_ref)
            existing = self._by_id.get(confirmed.message_id)
            if existing is not None:
                return self._merge_receipts(existing, confirmed.read_by)
            return self._insert_confirmed(confirmed)

    def apply_remote(self, incoming: RenderedMessage) -> str:
        """Merge a pushed or pulled message.

        Returns:
            "duplicate", "confirmed_pending" or "inserted"
        """
        with self._lock:
            existing = self._by_id.get(incoming.message_id)
            if existing is not None:
                self._merge_receipts(existing, incoming.read_by)
                return "duplicate"

            match = self._match_pending(incoming)
            if match is not None:
                self._drop_pending(match.client_ref)
                self._insert_confirmed(replace(incoming, client_ref=match.client_ref))
                return "confirmed_pending"

            self._insert_confirmed(incoming)
            return "inserted"

    def apply_read(self, message_ids, reader_id) -> int:
        """Add reader_id to read_by of the given messages; returns entries changed."""
        changed = 0
        with self._lock:
            for message_id in message_ids:
                entry = self._by_id.get(message_id)
                if entry is not None and reader_id not in entry.read_by:
                    self._merge_receipts(entry, frozenset({reader_id}))
                    changed += 1
        return changed

    def mark_failed(self, client_ref, error: str = "") -> Optional[RenderedMessage]:
        return self._set_pending_state(client_ref, FAILED, error)

    def mark_retrying(self, client_ref) -> Optional[RenderedMessage]:
        return self._set_pending_state(client_ref, PENDING, "")

    def remove(self, key: str) -> bool:
        """Remove a local entry (only pending/failed entries can be removed)."""
        with self._lock:
            for index, entry in enumerate(self._pending):
                if entry.key == key:
                    del self._pending[index]
                    return True
            return False

    def _set_pending_state(self, client_ref, state, error):
        with self._lock:
            for index, entry in enumerate(self._pending):
                if entry.client_ref == client_ref:
                    updated = replace(entry, state=state, error=error)
                    self._pending[index] = updated
                    return updated
            return None

    def _match_pending(self, incoming: RenderedMessage) -> Optional[RenderedMessage]:
        if incoming.client_ref is not None:
            for entry in self._pending:
                if entry.client_ref == incoming.client_ref:
                    return entry
            return None

        for entry in self._pending:
            if entry.sender_id != incoming.sender_id or entry.body != incoming.body:
                continue
            if incoming.created_at is None or entry.sent_at is None:
                continue
            if abs((incoming.created_at - entry.sent_at).total_seconds()) <= self.echo_window:
                return entry
        return None

    def _drop_pending(self, client_ref) -> None:
        self._pending = [e for e in self._pending if e.client_ref != client_ref]

    def _insert_confirmed(self, entry: RenderedMessage) -> RenderedMessage:
        sort_key = entry.sort_key
        if not self._sort_keys or self._sort_keys[-1] < sort_key:
            self._confirmed.append(entry)
            self._sort_keys.append(sort_key)
        else:
            # Out-of-order arrival: place it inside the tail
            index = bisect.bisect_left(self._sort_keys, sort_key)
            self._confirmed.insert(index, entry)
            self._sort_keys.insert(index, sort_key)
            logger.debug("Re-sorted tail for message %s at position %d", entry.message_id, index)
        self._by_id[entry.message_id] = entry
        return entry

    def _merge_receipts(self, existing: RenderedMessage, read_by: frozenset) -> RenderedMessage:
        if read_by <= existing.read_by:
            return existing
        merged = replace(existing, read_by=existing.read_by | read_by)
        index = self._confirmed.index(existing)
        self._confirmed[index] = merged
        self._by_id[merged.message_id] = merged
        return merged


def subscribe_with_backoff(feed, topic: str, handler, on_status=None):
    """Subscribe to topic, retrying with exponential backoff.

    Returns:
        Subscription, or None if every attempt failed
    """
    attempts = conf.sync_retries()
    delays = backoff_delays(attempts, conf.sync_backoff())
    for attempt in range(1, attempts + 1):
        try:
            return feed.subscribe(topic, handler, on_status=on_status)
        except SyncChannelDown as e:
            if attempt == attempts:
                logger.warning("Giving up subscribing to %s after %d attempt(s): %s", topic, attempts, e)
                return None
            delay = next(delays)
            logger.warning("Subscribe to %s failed (attempt %d/%d), retrying in %.2fs", topic, attempt, attempts, delay)
            time.sleep(delay)
    return None


def reconnect_with_backoff(subscription) -> bool:
    """Re-establish a dropped subscription; returns whether it succeeded."""
    attempts = conf.sync_retries()
    delays = backoff_delays(attempts, conf.sync_backoff())
    for attempt in range(1, attempts + 1):
        try:
            subscription.reconnect()
            return True
        except SyncChannelDown as e:
            if attempt == attempts:
                logger.warning("Giving up reconnecting %s: %s", subscription.topic, e)
                return False
            time.sleep(next(delays))
    return False


class ConversationSync:
    """Live view of one conversation for one session.

    Call ``open()`` to subscribe and load, ``send()`` to post with an
    optimistic entry, and ``close()`` when the view goes away.

    A dropped feed only opens a gap: the view records where the live stream
    stopped and sets ``needs_repair``, but it does not resubscribe on its own.
    The host drives recovery by calling ``reconnect()`` (for example when the
    app returns to the foreground or connectivity comes back). ``reconnect()``
    retries the subscription with backoff before repairing the gap from the
    store. If the feed stays down it still repairs by pulling.
    """

    def __init__(
        self,
        session: Session,
        conversation_id,
        listener: Optional[Callable[[list], None]] = None,
        feed=None,
    ):
        self.session = session
        self.conversation_id = conversation_id
        self.listener = listener
        self.feed = feed or get_change_feed()
        self.buffer = ConversationBuffer()
        self.subscription = None
        self.needs_repair = False
        self._repair_from: Optional[Cursor] = None
        self._lock = threading.RLock()

    @property
    def entries(self) -> list[RenderedMessage]:
        return self.buffer.entries()

    @property
    def is_live(self) -> bool:
        return self.subscription is not None and self.subscription.is_connected

    def open(self) -> "ConversationSync":
        """Authorize, subscribe, then load the current history.

        Subscribing before loading means nothing committed in between is
        missed; anything seen twice is deduplicated. If the feed cannot be
        reached the view still loads and works by pulling.

        Raises:
            Unauthorized, NotParticipant, ConversationNotFound
            StorageUnavailable: The initial load failed
        """
        conversation = get_conversation_for(self.session, self.conversation_id)
        self.conversation_id = conversation.pk
        self.subscription = subscribe_with_backoff(
            self.feed,
            conversation_topic(conversation.pk),
            self.handle_event,
            on_status=self._on_status,
        )
        self._merge(list_messages(self.session, self.conversation_id))
        if self.subscription is None:
            self._mark_gap()
        return self

    def close(self) -> None:
        if self.subscription is not None:
            self.subscription.close()
            self.subscription = None

    def send(self, body) -> RenderedMessage:
        """Send a message with an optimistic local entry.

        Validation errors are raised before anything is rendered or sent. A
        transient storage failure leaves the entry in the view marked failed
        (retry with ``retry(key)``); other errors remove the entry and raise.

        Returns:
            The confirmed entry, or the failed entry when storage was down
        """
        clean = validate_body(body)
        pending = self.buffer.add_pending(self.session.user_id, clean)
        self._notify()
        return self._deliver(pending)

    def retry(self, key: str) -> RenderedMessage:
        """Resend a failed entry under its original client_ref."""
        entry = self.buffer.get(key)
        if entry is None or entry.state != FAILED:
            raise ValueError(f"No failed entry with key {key!r}")
        pending = self.buffer.mark_retrying(entry.client_ref)
        self._notify()
        return self._deliver(pending)

    def discard(self, key: str) -> bool:
        """Drop a failed entry the user chose not to resend."""
        entry = self.buffer.get(key)
        if entry is None or entry.state != FAILED:
            return False
        removed = self.buffer.remove(key)
        self._notify()
        return removed

    def _deliver(self, pending: RenderedMessage) -> RenderedMessage:
        try:
            message = append_message(
                self.session,
                self.conversation_id,
                pending.body,
                client_ref=pending.client_ref,
            )
        except StorageUnavailable as e:
            logger.warning("Send of %s failed, keeping it for retry: %s", pending.client_ref, e)
            failed = self.buffer.mark_failed(pending.client_ref, str(e))
            self._notify()
            return failed
        except MessagingError:
            self.buffer.remove(pending.key)
            self._notify()
            raise

        confirmed = self.buffer.confirm(pending.client_ref, RenderedMessage.from_message(message))
        self._notify()
        return confirmed

    def handle_event(self, event: ChangeEvent) -> None:
        """Apply one change-feed event to the view."""
        with self._lock:
            if event.kind == MESSAGE_CREATED:
                outcome = self.buffer.apply_remote(RenderedMessage.from_payload(event.payload))
                logger.debug("Event #%d for %s: %s", event.sequence, event.topic, outcome)
            elif event.kind == MESSAGE_READ:
                self.buffer.apply_read(event.payload["message_ids"], uuid.UUID(event.payload["reader_id"]))
            else:
                return
        self._notify()

    def _mark_gap(self) -> None:
        # Entries confirmed locally after this point may sit past missed ones
        if not self.needs_repair:
            self._repair_from = self.buffer.last_confirmed_cursor()
            self.needs_repair = True

    def _on_status(self, state: str) -> None:
        if state == DISCONNECTED:
            logger.info("Conversation %s feed disconnected", self.conversation_id)
            self._mark_gap()
        elif state == CONNECTED and self.needs_repair:
            self.repair_gap()

    def reconnect(self) -> None:
        """Restore the live stream, repair anything missed and resend failed entries.

        Falls back to a pull when the feed stays unreachable.

        Raises:
            StorageUnavailable: Gap repair itself could not reach the store
        """
        if self.subscription is None:
            self.subscription = subscribe_with_backoff(
                self.feed,
                conversation_topic(self.conversation_id),
                self.handle_event,
                on_status=self._on_status,
            )
        elif not self.subscription.is_connected:
            if not reconnect_with_backoff(self.subscription):
                logger.warning("Conversation %s stays on pull fallback", self.conversation_id)

        # A successful reconnect already repaired via _on_status
        if self.needs_repair:
            self.repair_gap()
        self.resend_failed()

    def resend_failed(self) -> list[RenderedMessage]:
        """Retry every failed entry; entries that fail again stay failed."""
        return [self.retry(entry.key) for entry in self.buffer.failed()]

    def repair_gap(self) -> int:
        """Pull everything missed since the gap opened and merge it.

        Outside a gap this pulls everything after the last confirmed entry.

        Returns:
            Number of entries added

        Raises:
            StorageUnavailable: Every pull attempt failed
        """
        attempts = conf.sync_retries()
        delays = backoff_delays(attempts, conf.sync_backoff())
        for attempt in range(1, attempts + 1):
            try:
                added, reached = self._pull_after(self._gap_start())
            except StorageUnavailable as e:
                if attempt == attempts:
                    logger.error("Gap repair for %s failed after %d attempt(s)", self.conversation_id, attempts)
                    raise StorageUnavailable("repair_gap", attempts=attempts, original_error=e)
                time.sleep(next(delays))
                continue

            self.needs_repair = not self.is_live
            self._repair_from = reached if self.needs_repair else None
            if added:
                logger.info("Gap repair added %d message(s) to %s", added, self.conversation_id)
            return added
        return 0

    def _gap_start(self) -> Cursor:
        start = self._repair_from if self.needs_repair else self.buffer.last_confirmed_cursor()
        return start or ORIGIN

    def _pull_after(self, cursor: Cursor) -> tuple[int, Cursor]:
        limit = conf.page_size()
        added = 0
        while True:
            page = list_messages(self.session, self.conversation_id, after=cursor, limit=limit)
            added += self._merge(page)
            if page:
                cursor = Cursor.of(page[-1])
            if not limit or len(page) < limit:
                return added, cursor

    def _merge(self, messages) -> int:
        added = 0
        with self._lock:
            for message in messages:
                if self.buffer.apply_remote(RenderedMessage.from_message(message)) != "duplicate":
                    added += 1
        if messages:
            self._notify()
        return added

    def _notify(self) -> None:
        if self.listener is not None:
            self.listener(self.buffer.entries())


class InboxSync:
    """Live inbox for one session.

    Every conversation-level event on the user's topic recomputes the inbox
    through list_conversations; nothing is patched locally. As with
    ConversationSync, the host calls ``reconnect()`` after the feed drops.
    """

    def __init__(
        self,
        session: Session,
        listener: Optional[Callable[[InboxSnapshot], None]] = None,
        feed=None,
    ):
        self.session = session
        self.listener = listener
        self.feed = feed or get_change_feed()
        self.snapshot: Optional[InboxSnapshot] = None
        self.subscription = None

    @property
    def is_live(self) -> bool:
        return self.subscription is not None and self.subscription.is_connected

    def open(self) -> "InboxSync":
        """Load the inbox and subscribe to changes.

        Raises:
            Unauthorized: Role may not view an inbox
            StorageUnavailable: Nothing could be loaded or served from cache
        """
        self.refresh(raise_errors=True)
        self.subscription = subscribe_with_backoff(
            self.feed,
            user_topic(self.session.user_id),
            self.handle_event,
            on_status=self._on_status,
        )
        return self

    def close(self) -> None:
        if self.subscription is not None:
            self.subscription.close()
            self.subscription = None

    def handle_event(self, event: ChangeEvent) -> None:
        if event.kind in (CONVERSATION_CREATED, CONVERSATION_UPDATED):
            self.refresh()

    def reconnect(self) -> None:
        if self.subscription is None:
            self.subscription = subscribe_with_backoff(
                self.feed,
                user_topic(self.session.user_id),
                self.handle_event,
                on_status=self._on_status,
            )
            self.refresh()
        elif not self.subscription.is_connected:
            if not reconnect_with_backoff(self.subscription):
                self.refresh()

    def _on_status(self, state: str) -> None:
        if state == CONNECTED:
            self.refresh()

    def refresh(self, raise_errors: bool = False) -> Optional[InboxSnapshot]:
        try:
            snapshot = list_conversations(self.session)
        except StorageUnavailable:
            if raise_errors or self.snapshot is None:
                raise
            logger.warning("Inbox refresh for %s failed, keeping previous rows", self.session.user_id)
            snapshot = replace(self.snapshot, stale=True)
        self.snapshot = snapshot
        if self.listener is not None:
            self.listener(snapshot)
        return snapshot
