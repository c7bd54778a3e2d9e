"""UI-facing entry points.

Every function returns an OperationResult instead of raising messaging
errors, so screens can branch on ``result.success`` / ``result.locked``
without try/except. Unexpected exceptions (bugs) still propagate.

Usage:
    from django_direct_messages import api

    result = api.list_inbox(session)
    if result.locked:
        render_locked_state()
    elif result.success:
        render_rows(result.value.rows)
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional

from .exceptions import MessagingError, Unauthorized
from .services import conversations, inbox, messages
from .session import Session
from .sync import ConversationSync, InboxSync

logger = logging.getLogger(__name__)


@dataclass
class OperationResult:
    """Typed outcome of a UI-facing operation."""

    success: bool
    value: Any = None
    error: Optional[MessagingError] = None

    @classmethod
    def ok(cls, value=None) -> "OperationResult":
        return cls(success=True, value=value)

    @classmethod
    def fail(cls, error: MessagingError) -> "OperationResult":
        return cls(success=False, error=error)

    @property
    def error_code(self) -> Optional[str]:
        return self.error.code if self.error is not None else None

    @property
    def locked(self) -> bool:
        """Role policy denied the operation; show a locked state, not an error."""
        return isinstance(self.error, Unauthorized)

    @property
    def retryable(self) -> bool:
        return self.error is not None and self.error.retryable


def _run(operation: str, func, *args, **kwargs) -> OperationResult:
    try:
        return OperationResult.ok(func(*args, **kwargs))
    except MessagingError as e:
        logger.debug("%s failed with %s: %s", operation, e.code, e)
        return OperationResult.fail(e)


def start_conversation(session: Session, target_id, target_role) -> OperationResult:
    """Open (creating if needed) the conversation with target. Value: Conversation."""
    return _run("start_conversation", conversations.start_conversation, session, target_id, target_role)


def send_message(session: Session, conversation_id, body, client_ref=None) -> OperationResult:
    """Append a message. Value: Message."""
    return _run("send_message", messages.append_message, session, conversation_id, body, client_ref=client_ref)


def open_conversation(session: Session, conversation_id, listener=None, feed=None) -> OperationResult:
    """Subscribe to a conversation and load it. Value: opened ConversationSync."""
    view = ConversationSync(session, conversation_id, listener=listener, feed=feed)
    return _run("open_conversation", view.open)


def open_inbox(session: Session, listener=None, feed=None) -> OperationResult:
    """Load the inbox and keep it live. Value: opened InboxSync."""
    view = InboxSync(session, listener=listener, feed=feed)
    return _run("open_inbox", view.open)


def list_inbox(session: Session) -> OperationResult:
    """One-off inbox load. Value: InboxSnapshot (check ``stale``)."""
    return _run("list_inbox", inbox.list_conversations, session)


def mark_read(session: Session, conversation_id, upto_message_id) -> OperationResult:
    """Mark messages read up to upto_message_id. Value: number newly marked."""
    return _run("mark_read", messages.mark_read, session, conversation_id, upto_message_id)


def session_for(user_id, role) -> OperationResult:
    """Build a Session from identity provider values. Value: Session."""
    return _run("session_for", Session.for_user, user_id, role)
