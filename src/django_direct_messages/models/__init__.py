"""django-direct-messages models.

Re-exports all models for convenient importing:
    from django_direct_messages.models import Conversation, Message, Role
"""

from .conversation import Conversation
from .message import Message, ReadReceipt
from .role import LEGACY_ROLE_LABELS, Role

__all__ = [
    "Conversation",
    "LEGACY_ROLE_LABELS",
    "Message",
    "ReadReceipt",
    "Role",
]
