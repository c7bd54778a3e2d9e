"""Django Direct Messages - youth/worker private messaging primitive."""

__version__ = "0.1.0"

__all__ = [
    # Models
    "Conversation",
    "Message",
    "ReadReceipt",
    "Role",
    # Context
    "Session",
    # Access control
    "Operation",
    "permit",
    # Services
    "get_or_create_conversation",
    "append_message",
    "mark_read",
    "list_messages",
    "list_conversations",
    # Sync
    "ConversationSync",
    "InboxSync",
    # Exceptions
    "MessagingError",
    "Unauthorized",
    "RoleMismatch",
    "InvalidSender",
    "EmptyBody",
    "BodyTooLong",
    "StorageUnavailable",
]

_MODELS = ("Conversation", "Message", "ReadReceipt", "Role")
_SERVICES = (
    "get_or_create_conversation",
    "append_message",
    "mark_read",
    "list_messages",
    "list_conversations",
)
_EXCEPTIONS = (
    "MessagingError",
    "Unauthorized",
    "RoleMismatch",
    "InvalidSender",
    "EmptyBody",
    "BodyTooLong",
    "StorageUnavailable",
)


def __getattr__(name: str):
    """Lazy import to avoid AppRegistryNotReady errors."""
    if name in _MODELS:
        from . import models

        return getattr(models, name)
    if name == "Session":
        from .session import Session

        return Session
    if name in ("Operation", "permit"):
        from . import access

        return getattr(access, name)
    if name in _SERVICES:
        from . import services

        return getattr(services, name)
    if name in ("ConversationSync", "InboxSync"):
        from . import sync

        return getattr(sync, name)
    if name in _EXCEPTIONS:
        from . import exceptions

        return getattr(exceptions, name)

    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
