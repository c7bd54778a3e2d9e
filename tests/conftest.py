"""Pytest configuration for django-direct-messages tests."""

import uuid

import pytest


def _session(role_value):
    from django_direct_messages.models import Role
    from django_direct_messages.session import Session

    return Session(user_id=uuid.uuid4(), role=Role(role_value))


@pytest.fixture(autouse=True)
def fresh_backends():
    """Every test gets its own change feed, profile directory and cache."""
    from django.core.cache import cache

    from django_direct_messages.feed import reset_change_feed
    from django_direct_messages.profiles import reset_profile_directory

    reset_change_feed()
    reset_profile_directory()
    cache.clear()
    yield
    reset_change_feed()
    reset_profile_directory()
    cache.clear()


@pytest.fixture
def feed():
    """The in-process change feed used by services during the test."""
    from django_direct_messages.feed import get_change_feed

    return get_change_feed()


@pytest.fixture
def youth():
    return _session("youth")


@pytest.fixture
def youth2():
    return _session("youth")


@pytest.fixture
def worker():
    return _session("worker")


@pytest.fixture
def worker2():
    return _session("worker")


@pytest.fixture
def manager():
    return _session("manager")


@pytest.fixture
def admin():
    return _session("admin")


@pytest.fixture
def profiles(youth, youth2, worker, worker2):
    """Register display profiles for the party sessions."""
    from django_direct_messages.profiles import PeerSnapshot, get_profile_directory

    directory = get_profile_directory()
    directory.register(PeerSnapshot(youth.user_id, "Sanne", "https://cdn.example.com/sanne.png", "youth"))
    directory.register(PeerSnapshot(youth2.user_id, "Daan", "", "youth"))
    directory.register(PeerSnapshot(worker.user_id, "Fatima", "https://cdn.example.com/fatima.png", "worker"))
    directory.register(PeerSnapshot(worker2.user_id, "Joris", "", "worker"))
    return directory


@pytest.fixture
def conversation(db, youth, worker):
    """Conversation between youth and worker, started by the youth."""
    from django_direct_messages.services import start_conversation

    return start_conversation(youth, worker.user_id, "worker")


@pytest.fixture
def collect():
    """Subscribe to a topic and collect the events delivered to it."""

    def _collect(feed, topic):
        events = []
        feed.subscribe(topic, events.append)
        return events

    return _collect
