"""Explicit caller context passed into every messaging operation."""

import uuid
from dataclasses import dataclass

from .exceptions import InvalidUserId
from .models.role import Role


def coerce_user_id(value) -> uuid.UUID:
    """Return value as a UUID.

    Raises:
        InvalidUserId: If value is not a UUID or a UUID string
    """
    if isinstance(value, uuid.UUID):
        return value
    if not isinstance(value, str):
        raise InvalidUserId(value)
    try:
        return uuid.UUID(value.strip())
    except ValueError:
        raise InvalidUserId(value)


@dataclass(frozen=True)
class Session:
    """Authenticated caller as reported by the identity provider.

    A role change takes effect on the next operation that is given a new
    Session, never in the middle of one.
    """

    user_id: uuid.UUID
    role: Role

    @classmethod
    def for_user(cls, user_id, role) -> "Session":
        """Build a Session from loosely-typed identity provider values.

        Raises:
            InvalidUserId: If user_id is not a UUID
            UnknownRole: If role is not a known role value
        """
        return cls(user_id=coerce_user_id(user_id), role=Role.parse(role))
