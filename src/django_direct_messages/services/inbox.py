"""Inbox aggregator: per-user list of conversations with peer and preview.

Rows are derived on every call and never treated as authoritative. The last
successful snapshot per user is kept in the Django cache purely as a
fallback for when the store is unreachable; such a fallback is always
returned with ``stale=True``.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from django.core.cache import cache
from django.db.models import F
from django.utils import timezone

from .. import conf
from ..access import Operation, require
from ..exceptions import StorageUnavailable
from ..profiles import PeerSnapshot, resolve_peers
from ..retry import with_storage_retry
from ..session import Session
from .conversations import conversations_for_user
from .messages import unread_counts

logger = logging.getLogger(__name__)

INBOX_CACHE_PREFIX = "direct_messages:inbox:"


@dataclass(frozen=True)
class InboxRow:
    """One conversation as shown in a user's inbox."""

    conversation_id: uuid.UUID
    peer: PeerSnapshot
    preview: str
    preview_at: datetime
    last_message_at: Optional[datetime]
    created_at: datetime
    unread_count: int = 0
    preview_is_placeholder: bool = False

    @property
    def has_unread(self) -> bool:
        return self.unread_count > 0


@dataclass(frozen=True)
class InboxSnapshot:
    """Inbox rows at a point in time."""

    rows: tuple
    generated_at: datetime = field(default_factory=timezone.now)
    stale: bool = False

    def __iter__(self):
        return iter(self.rows)

    def __len__(self):
        return len(self.rows)

    @property
    def conversation_ids(self) -> list:
        return [row.conversation_id for row in self.rows]


def inbox_cache_key(user_id) -> str:
    return f"{INBOX_CACHE_PREFIX}{user_id}"


def _build_rows(user_id: uuid.UUID) -> tuple:
    conversations = list(
        conversations_for_user(user_id).order_by(
            F("last_message_at").desc(nulls_last=True),
            F("created_at").desc(),
        )
    )
    if not conversations:
        return ()

    peers = resolve_peers(conv.peer_of(user_id) for conv in conversations)
    unread = unread_counts([conv.pk for conv in conversations], user_id)
    placeholder = conf.empty_preview()

    rows = []
    for conv in conversations:
        has_message = conv.last_message_at is not None
        rows.append(
            InboxRow(
                conversation_id=conv.pk,
                peer=peers[conv.peer_of(user_id)],
                preview=conv.last_message if has_message else placeholder,
                preview_at=conv.last_message_at if has_message else conv.created_at,
                last_message_at=conv.last_message_at,
                created_at=conv.created_at,
                unread_count=unread.get(conv.pk, 0),
                preview_is_placeholder=not has_message,
            )
        )
    return tuple(rows)


def list_conversations(session: Session) -> InboxSnapshot:
    """Get the caller's inbox.

    Conversations are ordered by last_message_at descending, conversations
    without messages last, ties broken by created_at descending.

    Returns:
        InboxSnapshot; ``stale`` is True when the store was unreachable and
        the last known snapshot is returned instead

    Raises:
        Unauthorized: Role may not view an inbox (managers)
        StorageUnavailable: Store unreachable and no earlier snapshot cached
    """
    require(session.role, Operation.VIEW_INBOX)
    key = inbox_cache_key(session.user_id)

    try:
        rows = with_storage_retry("list_conversations", _build_rows, session.user_id)
    except StorageUnavailable:
        cached = cache.get(key)
        if cached is None:
            raise
        logger.warning("Serving stale inbox for %s from %s", session.user_id, cached.generated_at)
        return InboxSnapshot(rows=cached.rows, generated_at=cached.generated_at, stale=True)

    snapshot = InboxSnapshot(rows=rows)
    cache.set(key, snapshot, conf.inbox_cache_timeout())
    return snapshot
