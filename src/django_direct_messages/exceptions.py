"""Exceptions for django-direct-messages.

Every error carries a stable ``code`` so callers (and the UI facade in
``django_direct_messages.api``) can branch on the kind of failure, and a
``retryable`` flag that tells the caller whether trying again can help.
"""


class MessagingError(Exception):
    """Base exception for direct messaging errors."""

    code = "messaging_error"
    retryable = False


class MessagingConfigError(MessagingError):
    """Raised when DIRECT_MESSAGES_* settings are invalid."""

    code = "config_error"


class Unauthorized(MessagingError):
    """The caller's role may not perform the operation."""

    code = "unauthorized"

    def __init__(self, role, operation):
        self.role = role
        self.operation = operation
        super().__init__(f"Role '{role}' may not perform '{operation}'")


class UnknownRole(MessagingError):
    """A role value could not be mapped onto a known Role."""

    code = "unknown_role"

    def __init__(self, value):
        self.value = value
        super().__init__(f"Unknown role: {value!r}")


class InvalidUserId(MessagingError):
    """A user identifier is not a valid UUID."""

    code = "invalid_user_id"

    def __init__(self, value):
        self.value = value
        super().__init__(f"Invalid user id: {value!r}")


class InvalidClientRef(MessagingError):
    """A message's client_ref is not a valid UUID."""

    code = "invalid_client_ref"

    def __init__(self, value):
        self.value = value
        super().__init__(f"Invalid client_ref: {value!r}")


class RoleMismatch(MessagingError):
    """A conversation needs exactly one youth and one worker."""

    code = "role_mismatch"

    def __init__(self, initiator_role, target_role):
        self.initiator_role = initiator_role
        self.target_role = target_role
        super().__init__(
            "A conversation needs exactly one youth and one worker, "
            f"got '{initiator_role}' and '{target_role}'"
        )


class InvalidSender(MessagingError):
    """Sender is not one of the conversation's two parties."""

    code = "invalid_sender"

    def __init__(self, sender_id, conversation_id):
        self.sender_id = sender_id
        self.conversation_id = conversation_id
        super().__init__(
            f"User {sender_id} is not a party of conversation {conversation_id}"
        )


class NotParticipant(MessagingError):
    """Caller is not a participant of the conversation."""

    code = "not_participant"

    def __init__(self, user_id, conversation_id):
        self.user_id = user_id
        self.conversation_id = conversation_id
        super().__init__(
            f"User {user_id} is not a participant of conversation {conversation_id}"
        )


class ConversationNotFound(MessagingError):
    """Requested conversation does not exist."""

    code = "conversation_not_found"

    def __init__(self, conversation_id):
        self.conversation_id = conversation_id
        super().__init__(f"Conversation {conversation_id} does not exist")


class MessageNotFound(MessagingError):
    """Requested message does not exist in the conversation."""

    code = "message_not_found"

    def __init__(self, message_id, conversation_id=None):
        self.message_id = message_id
        self.conversation_id = conversation_id
        super().__init__(f"Message {message_id} not found in conversation {conversation_id}")


class EmptyBody(MessagingError):
    """Message body is empty after trimming whitespace."""

    code = "empty_body"

    def __init__(self):
        super().__init__("Message body cannot be empty")


class BodyTooLong(MessagingError):
    """Message body exceeds DIRECT_MESSAGES_MAX_BODY_LENGTH."""

    code = "body_too_long"

    def __init__(self, length: int, limit: int):
        self.length = length
        self.limit = limit
        super().__init__(f"Message body is {length} characters, limit is {limit}")


class StorageUnavailable(MessagingError):
    """Durable store could not be reached after retrying."""

    code = "storage_unavailable"
    retryable = True

    def __init__(self, operation: str, attempts: int = 1, original_error: Exception = None):
        self.operation = operation
        self.attempts = attempts
        self.original_error = original_error
        super().__init__(f"Storage unavailable during {operation} after {attempts} attempt(s)")


class SyncChannelDown(MessagingError):
    """Push subscription for a topic is down.

    Never surfaced to users directly: the sync engine falls back to pulls and
    converts it to StorageUnavailable only when gap repair gives up.
    """

    code = "sync_channel_down"
    retryable = True

    def __init__(self, topic: str, reason: str = ""):
        self.topic = topic
        self.reason = reason
        message = f"Change feed subscription for '{topic}' is down"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
