"""Access control for messaging operations.

``permit`` is a pure function of (role, operation). Messaging is limited to
the two parties a conversation can have (youth and worker) plus admins as a
superuser escape hatch. Managers are denied every messaging operation: the
inbox is a privacy boundary, not a management tool.

A denial is an answer, not an error. Service layers that must stop on a
denial call ``require`` instead, which raises Unauthorized.
"""

from enum import Enum

from .exceptions import Unauthorized
from .models.role import Role


class Operation(str, Enum):
    """Messaging operations subject to role policy."""

    START_CONVERSATION = "start_conversation"
    SEND_MESSAGE = "send_message"
    VIEW_INBOX = "view_inbox"
    VIEW_CONVERSATION = "view_conversation"
    MARK_READ = "mark_read"


# Roles that can be a party of a conversation
PARTY_ROLES = frozenset({Role.YOUTH, Role.WORKER})

# Roles allowed to use messaging at all
MESSAGING_ROLES = PARTY_ROLES | {Role.ADMIN}

POLICY = {
    Role.YOUTH: frozenset(Operation),
    Role.WORKER: frozenset(Operation),
    Role.MANAGER: frozenset(),
    Role.ADMIN: frozenset(Operation),
}


def permit(role, operation) -> bool:
    """Return whether role may perform operation.

    Args:
        role: Role member or raw role value
        operation: Operation member or its string value

    Raises:
        UnknownRole: If role cannot be parsed
        ValueError: If operation is not a known Operation
    """
    return Operation(operation) in POLICY[Role.parse(role)]


def require(role, operation) -> None:
    """Raise Unauthorized unless role may perform operation."""
    if not permit(role, operation):
        raise Unauthorized(Role.parse(role).value, Operation(operation).value)
