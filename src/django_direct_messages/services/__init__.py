"""django-direct-messages services.

Re-exports all services for convenient importing.
"""

from .conversations import (
    find_conversation,
    get_conversation_for,
    get_or_create_conversation,
    load_conversation,
    resolve_pair,
    start_conversation,
)
from .inbox import InboxRow, InboxSnapshot, list_conversations
from .messages import (
    Cursor,
    advance_preview,
    append_message,
    list_messages,
    mark_read,
    unread_counts,
    validate_body,
)

__all__ = [
    # Conversation registry
    "find_conversation",
    "get_conversation_for",
    "get_or_create_conversation",
    "load_conversation",
    "resolve_pair",
    "start_conversation",
    # Message store
    "Cursor",
    "advance_preview",
    "append_message",
    "list_messages",
    "mark_read",
    "unread_counts",
    "validate_body",
    # Inbox
    "InboxRow",
    "InboxSnapshot",
    "list_conversations",
]
