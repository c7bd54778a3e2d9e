"""Configuration for django-direct-messages.

All values are read from Django settings at call time so that
``override_settings`` in tests (and settings changes between requests)
take effect without reimporting anything.
"""

from django.conf import settings
from django.utils.module_loading import import_string

from django_direct_messages.exceptions import MessagingConfigError

DEFAULTS = {
    "DIRECT_MESSAGES_MAX_BODY_LENGTH": 2000,
    "DIRECT_MESSAGES_PAGE_SIZE": 200,
    "DIRECT_MESSAGES_EMPTY_PREVIEW": "No messages yet",
    "DIRECT_MESSAGES_ECHO_WINDOW": 10,
    "DIRECT_MESSAGES_STORAGE_RETRIES": 3,
    "DIRECT_MESSAGES_STORAGE_BACKOFF": 0.05,
    "DIRECT_MESSAGES_SYNC_RETRIES": 5,
    "DIRECT_MESSAGES_SYNC_BACKOFF": 0.2,
    "DIRECT_MESSAGES_INBOX_CACHE_TIMEOUT": 300,
    "DIRECT_MESSAGES_PROFILE_DIRECTORY": "django_direct_messages.profiles.StaticProfileDirectory",
    "DIRECT_MESSAGES_CHANGE_FEED": "django_direct_messages.feed.InProcessChangeFeed",
}


def get_setting(name: str):
    """Return a DIRECT_MESSAGES_* setting, falling back to its default."""
    return getattr(settings, name, DEFAULTS[name])


def _positive_int(name: str, allow_zero: bool = False) -> int:
    value = get_setting(name)
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise MessagingConfigError(f"{name} must be an integer, got {value!r}")
    if number < 0 or (number == 0 and not allow_zero):
        raise MessagingConfigError(f"{name} must be positive, got {number}")
    return number


def _non_negative_float(name: str) -> float:
    value = get_setting(name)
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise MessagingConfigError(f"{name} must be a number, got {value!r}")
    if number < 0:
        raise MessagingConfigError(f"{name} cannot be negative, got {number}")
    return number


def max_body_length() -> int:
    return _positive_int("DIRECT_MESSAGES_MAX_BODY_LENGTH")


def page_size() -> int:
    """Default number of messages returned by list_messages (0 = unbounded)."""
    return _positive_int("DIRECT_MESSAGES_PAGE_SIZE", allow_zero=True)


def empty_preview() -> str:
    return str(get_setting("DIRECT_MESSAGES_EMPTY_PREVIEW"))


def echo_window() -> float:
    """Seconds within which a pushed echo may match a pending local send."""
    return _non_negative_float("DIRECT_MESSAGES_ECHO_WINDOW")


def storage_retries() -> int:
    return _positive_int("DIRECT_MESSAGES_STORAGE_RETRIES")


def storage_backoff() -> float:
    return _non_negative_float("DIRECT_MESSAGES_STORAGE_BACKOFF")


def sync_retries() -> int:
    return _positive_int("DIRECT_MESSAGES_SYNC_RETRIES")


def sync_backoff() -> float:
    return _non_negative_float("DIRECT_MESSAGES_SYNC_BACKOFF")


def inbox_cache_timeout() -> int:
    """Seconds an inbox snapshot stays cached (0 = not cached, so no stale fallback)."""
    return _positive_int("DIRECT_MESSAGES_INBOX_CACHE_TIMEOUT", allow_zero=True)


def load_class(name: str):
    """Import the class configured under a dotted-path setting.

    Raises:
        MessagingConfigError: If the path is empty or cannot be imported
    """
    path = get_setting(name)
    if not path:
        raise MessagingConfigError(f"{name} setting is required")
    try:
        return import_string(path)
    except ImportError as e:
        raise MessagingConfigError(f"{name}={path!r} could not be imported: {e}")
