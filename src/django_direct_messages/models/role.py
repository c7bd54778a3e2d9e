"""Platform roles as seen by the messaging core."""

from django.db import models

from ..exceptions import UnknownRole


class Role(models.TextChoices):
    """Closed set of platform roles.

    Roles are assigned by the identity provider; the messaging core only
    reads them to apply access policy.
    """

    YOUTH = "youth", "Youth"
    WORKER = "worker", "Outreach worker"
    MANAGER = "manager", "Manager"
    ADMIN = "admin", "Administrator"

    @classmethod
    def parse(cls, value) -> "Role":
        """Map a loosely-typed role value onto a Role.

        Accepts Role members, their string values and the legacy Dutch
        labels stored by older profile records. Matching ignores case and
        surrounding whitespace.

        Raises:
            UnknownRole: For None, empty strings and anything unrecognised
        """
        if isinstance(value, cls):
            return value
        if not isinstance(value, str) or not value.strip():
            raise UnknownRole(value)
        key = value.strip().lower()
        key = LEGACY_ROLE_LABELS.get(key, key)
        try:
            return cls(key)
        except ValueError:
            raise UnknownRole(value)


LEGACY_ROLE_LABELS = {
    "jongere": Role.YOUTH.value,
    "jongerenwerker": Role.WORKER.value,
}
