"""Message store: append-only message log, previews and read receipts.

This module provides the write and read paths for messages:
- Appending a message and advancing the conversation preview
- Marking messages read
- Listing a conversation's messages in (created_at, id) order, optionally
  only those after a cursor so callers can merge with a cached prefix
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from django.db import IntegrityError, transaction
from django.db.models import Count, Q
from django.utils import timezone

from .. import conf
from ..access import Operation, require
from ..exceptions import (
    BodyTooLong,
    EmptyBody,
    InvalidClientRef,
    InvalidSender,
    MessageNotFound,
    NotParticipant,
)
from ..feed import (
    CONVERSATION_UPDATED,
    MESSAGE_CREATED,
    MESSAGE_READ,
    conversation_payload,
    conversation_topic,
    message_payload,
    publish_on_commit,
    user_topic,
)
from ..models import Conversation, Message, ReadReceipt
from ..retry import with_storage_retry
from ..session import Session
from .conversations import get_conversation_for, load_conversation

logger = logging.getLogger(__name__)


@dataclass(frozen=True, order=True)
class Cursor:
    """Position in a conversation's (created_at, id) order."""

    created_at: datetime
    message_id: int

    @classmethod
    def of(cls, message) -> "Cursor":
        return cls(created_at=message.created_at, message_id=message.pk)

    def after_q(self) -> Q:
        """Filter for messages strictly after this position."""
        return Q(created_at__gt=self.created_at) | Q(
            created_at=self.created_at, pk__gt=self.message_id
        )

    def upto_q(self) -> Q:
        """Filter for messages at or before this position."""
        return Q(created_at__lt=self.created_at) | Q(
            created_at=self.created_at, pk__lte=self.message_id
        )


def validate_body(body) -> str:
    """Trim body and check it against the length limit.

    Runs before any storage access so invalid input never costs a round-trip.

    Raises:
        EmptyBody: Body is missing or only whitespace
        BodyTooLong: Body exceeds DIRECT_MESSAGES_MAX_BODY_LENGTH
    """
    clean = body.strip() if isinstance(body, str) else ""
    if not clean:
        raise EmptyBody()
    limit = conf.max_body_length()
    if len(clean) > limit:
        raise BodyTooLong(len(clean), limit)
    return clean


def advance_preview(conversation_id, message: Message) -> bool:
    """Move the conversation preview to message if it is newer.

    Compare-and-set on (last_message_at, last_message_id): the update only
    applies when the stored preview is older than message, so concurrent
    appends applied out of order can never move the preview backwards.

    Returns:
        True if the preview now points at message
    """
    newer = (
        Q(last_message_at__isnull=True)
        | Q(last_message_at__lt=message.created_at)
        | Q(last_message_at=message.created_at, last_message_id__lt=message.pk)
    )
    updated = Conversation.objects.filter(pk=conversation_id).filter(newer).update(
        last_message=message.body,
        last_message_at=message.created_at,
        last_message_id=message.pk,
        last_sender_id=message.sender_id,
        updated_at=timezone.now(),
    )
    if not updated:
        logger.debug("Preview of %s already past message %s", conversation_id, message.pk)
    return bool(updated)


def _existing_for_ref(conversation: Conversation, client_ref) -> Optional[Message]:
    if client_ref is None:
        return None
    return Message.objects.filter(conversation=conversation, client_ref=client_ref).first()


def _insert_message(conversation: Conversation, sender_id, body: str, client_ref) -> tuple[Message, bool]:
    existing = _existing_for_ref(conversation, client_ref)
    if existing is not None:
        return existing, False

    try:
        with transaction.atomic():
            message = Message.objects.create(
                conversation=conversation,
                sender_id=sender_id,
                body=body,
                client_ref=client_ref,
            )
            # A sender has implicitly read their own message
            ReadReceipt.objects.create(message=message, reader_id=sender_id)
            advance_preview(conversation.pk, message)
            conversation.refresh_from_db()

            publish_on_commit(conversation_topic(conversation.pk), MESSAGE_CREATED, message_payload(message))
            payload = conversation_payload(conversation)
            for user_id in conversation.participant_ids:
                publish_on_commit(user_topic(user_id), CONVERSATION_UPDATED, payload)
    except IntegrityError:
        # Same client_ref sent twice concurrently; the first insert won
        existing = _existing_for_ref(conversation, client_ref)
        if existing is None:
            raise
        return existing, False

    return message, True


def append_message(session: Session, conversation_id, body, client_ref=None) -> Message:
    """Append a message to a conversation.

    - Stores the message with a server-assigned id and created_at
    - Records the sender's own read receipt
    - Advances the conversation preview (never backwards)
    - Publishes message.created / conversation.updated after commit

    Resending with the same client_ref returns the stored message rather than
    creating a second one, so a client may retry a send whose outcome it never
    saw.

    Args:
        session: Sending user
        conversation_id: Target conversation
        body: Message text (trimmed before storage)
        client_ref: Optional client-generated id of the optimistic entry

    Returns:
        The stored Message

    Raises:
        EmptyBody, BodyTooLong: Invalid body (checked before any storage access)
        Unauthorized: Sender's role may not send messages
        InvalidClientRef: client_ref is not a UUID
        ConversationNotFound: Unknown conversation
        InvalidSender: Sender is not one of the conversation's parties
        StorageUnavailable: The store stayed unreachable after retrying
    """
    clean = validate_body(body)
    require(session.role, Operation.SEND_MESSAGE)
    if client_ref is not None and not isinstance(client_ref, uuid.UUID):
        try:
            client_ref = uuid.UUID(str(client_ref))
        except ValueError:
            raise InvalidClientRef(client_ref) from None

    conversation = load_conversation(conversation_id)
    if not conversation.has_participant(session.user_id):
        raise InvalidSender(session.user_id, conversation.pk)

    message, created = with_storage_retry(
        "append_message", _insert_message, conversation, session.user_id, clean, client_ref
    )
    if created:
        logger.debug("Appended message %s to conversation %s", message.pk, conversation.pk)
    else:
        logger.debug("Resend of client_ref %s matched message %s", client_ref, message.pk)
    return message


def _insert_receipts(conversation: Conversation, reader_id, target: Message) -> list[int]:
    unread_ids = list(
        Message.objects.filter(conversation=conversation)
        .filter(Cursor.of(target).upto_q())
        .exclude(receipts__reader_id=reader_id)
        .order_by("created_at", "id")
        .values_list("pk", flat=True)
    )
    if not unread_ids:
        return []

    with transaction.atomic():
        ReadReceipt.objects.bulk_create(
            [ReadReceipt(message_id=pk, reader_id=reader_id) for pk in unread_ids],
            ignore_conflicts=True,
        )
        publish_on_commit(
            conversation_topic(conversation.pk),
            MESSAGE_READ,
            {
                "conversation_id": str(conversation.pk),
                "reader_id": str(reader_id),
                "message_ids": unread_ids,
            },
        )
        publish_on_commit(user_topic(reader_id), CONVERSATION_UPDATED, conversation_payload(conversation))
    return unread_ids


def mark_read(session: Session, conversation_id, upto_message_id) -> int:
    """Mark every message up to and including upto_message_id as read.

    Idempotent: messages the reader already acknowledged are skipped and
    receipts are never removed.

    Returns:
        Number of messages newly marked read (0 when nothing changed)

    Raises:
        Unauthorized: Role may not mark messages read
        ConversationNotFound: Unknown conversation
        NotParticipant: Reader is not one of the parties
        MessageNotFound: upto_message_id is not a message id in this conversation
    """
    require(session.role, Operation.MARK_READ)
    conversation = load_conversation(conversation_id)
    if not conversation.has_participant(session.user_id):
        raise NotParticipant(session.user_id, conversation.pk)

    try:
        upto_message_id = int(upto_message_id)
    except (TypeError, ValueError):
        raise MessageNotFound(upto_message_id, conversation.pk) from None

    target = with_storage_retry(
        "mark_read",
        lambda: Message.objects.filter(conversation=conversation, pk=upto_message_id).first(),
    )
    if target is None:
        raise MessageNotFound(upto_message_id, conversation.pk)

    marked = with_storage_retry("mark_read", _insert_receipts, conversation, session.user_id, target)
    if marked:
        logger.debug("User %s read %d message(s) in %s", session.user_id, len(marked), conversation.pk)
    return len(marked)


def list_messages(
    session: Session,
    conversation_id,
    after: Optional[Cursor] = None,
    limit: Optional[int] = None,
) -> list[Message]:
    """Get messages in a conversation in (created_at, id) order.

    Without a cursor the newest ``limit`` messages are returned (still in
    chronological order). With a cursor, the first ``limit`` messages
    strictly after it are returned, so repeated calls page forward and can be
    merged onto a cached prefix.

    Args:
        session: Viewing user
        conversation_id: Conversation to read
        after: Only return messages after this position
        limit: Page size; defaults to DIRECT_MESSAGES_PAGE_SIZE, 0 = all

    Raises:
        Unauthorized: Role may not view conversations
        ConversationNotFound: Unknown conversation
        NotParticipant: Viewer is not a party (admins excepted)
        StorageUnavailable: The store stayed unreachable after retrying
    """
    conversation = get_conversation_for(session, conversation_id)
    if limit is None:
        limit = conf.page_size()

    def fetch():
        qs = conversation.messages.prefetch_related("receipts")
        if after is not None:
            qs = qs.filter(after.after_q()).order_by("created_at", "id")
            return list(qs[:limit] if limit else qs)
        if not limit:
            return list(qs.order_by("created_at", "id"))
        newest = list(qs.order_by("-created_at", "-id")[:limit])
        newest.reverse()
        return newest

    return with_storage_retry("list_messages", fetch)


def unread_counts(conversation_ids, user_id) -> dict:
    """Count messages from the peer that user_id has not read, per conversation."""
    rows = (
        Message.objects.filter(conversation_id__in=list(conversation_ids))
        .exclude(sender_id=user_id)
        .exclude(receipts__reader_id=user_id)
        .values("conversation_id")
        .annotate(unread=Count("id"))
    )
    return {row["conversation_id"]: row["unread"] for row in rows}
