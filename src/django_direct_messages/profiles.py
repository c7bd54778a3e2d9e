"""Profile directory used to show who is on the other side of a conversation.

Profiles are display data only. Nothing in the messaging core authorizes
against them; roles for access control always come from the Session.
"""

import logging
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Iterable, Optional

from .conf import load_class

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PeerSnapshot:
    """Display identity of a user at lookup time."""

    user_id: uuid.UUID
    display_name: str = ""
    avatar_url: str = ""
    role: Optional[str] = None

    @classmethod
    def unknown(cls, user_id: uuid.UUID) -> "PeerSnapshot":
        return cls(user_id=user_id)


class ProfileDirectory(ABC):
    """Abstract base class for profile lookups."""

    @abstractmethod
    def lookup(self, user_ids: Iterable[uuid.UUID]) -> dict[uuid.UUID, PeerSnapshot]:
        """Return snapshots for the given ids.

        Ids without a profile may be left out of the result; callers fall
        back to PeerSnapshot.unknown().
        """
        raise NotImplementedError


class StaticProfileDirectory(ProfileDirectory):
    """In-memory directory for development and tests."""

    def __init__(self, profiles: Iterable[PeerSnapshot] = ()):
        self._lock = threading.Lock()
        self._profiles = {p.user_id: p for p in profiles}

    def register(self, snapshot: PeerSnapshot) -> None:
        with self._lock:
            self._profiles[snapshot.user_id] = snapshot

    def clear(self) -> None:
        with self._lock:
            self._profiles.clear()

    def lookup(self, user_ids):
        with self._lock:
            return {uid: self._profiles[uid] for uid in user_ids if uid in self._profiles}


_directory = None
_directory_lock = threading.Lock()


def get_profile_directory() -> ProfileDirectory:
    """Return the process-wide directory configured in DIRECT_MESSAGES_PROFILE_DIRECTORY."""
    global _directory
    with _directory_lock:
        if _directory is None:
            directory_class = load_class("DIRECT_MESSAGES_PROFILE_DIRECTORY")
            _directory = directory_class()
            logger.debug("Loaded profile directory %s", directory_class.__name__)
        return _directory


def reset_profile_directory() -> None:
    """Drop the cached directory so the next call reloads it from settings."""
    global _directory
    with _directory_lock:
        _directory = None


def resolve_peers(user_ids: Iterable[uuid.UUID]) -> dict[uuid.UUID, PeerSnapshot]:
    """Look up snapshots for user_ids, filling gaps with placeholders."""
    ids = set(user_ids)
    if not ids:
        return {}
    found = get_profile_directory().lookup(ids)
    return {uid: found.get(uid) or PeerSnapshot.unknown(uid) for uid in ids}
