"""Tests for client-side reconciliation and live conversation/inbox views."""

import uuid
from datetime import timedelta
from unittest import mock

import pytest
from django.utils import timezone

from django_direct_messages import sync
from django_direct_messages.exceptions import (
    EmptyBody,
    InvalidSender,
    NotParticipant,
    StorageUnavailable,
    Unauthorized,
)
from django_direct_messages.feed import (
    MESSAGE_CREATED,
    ChangeEvent,
    conversation_topic,
    message_payload,
)
from django_direct_messages.models import Message
from django_direct_messages.services.messages import append_message
from django_direct_messages.sync import (
    CONFIRMED,
    FAILED,
    PENDING,
    ConversationBuffer,
    ConversationSync,
    InboxSync,
    RenderedMessage,
)


def confirmed(message_id, sender_id, body, created_at, client_ref=None, read_by=()):
    return RenderedMessage(
        key=RenderedMessage.confirmed_key(message_id),
        sender_id=sender_id,
        body=body,
        state=CONFIRMED,
        message_id=message_id,
        client_ref=client_ref,
        created_at=created_at,
        read_by=frozenset(read_by) or frozenset({sender_id}),
    )


class TestConversationBuffer:
    """Reconciliation of local sends with pushed and pulled messages."""

    def setup_method(self):
        self.buffer = ConversationBuffer(echo_window=10)
        self.me = uuid.uuid4()
        self.peer = uuid.uuid4()
        self.now = timezone.now()

    def test_echo_confirms_pending_entry(self):
        """An optimistic send followed by its own echo renders one entry."""
        pending = self.buffer.add_pending(self.me, "Hallo")
        echo = confirmed(7, self.me, "Hallo", self.now, client_ref=pending.client_ref)

        assert self.buffer.apply_remote(echo) == "confirmed_pending"
        self.buffer.confirm(pending.client_ref, echo)

        entries = self.buffer.entries()
        assert len(entries) == 1
        assert entries[0].key == "m:7"
        assert entries[0].state == CONFIRMED

    def test_echo_after_confirm_is_duplicate(self):
        pending = self.buffer.add_pending(self.me, "Hallo")
        stored = confirmed(7, self.me, "Hallo", self.now, client_ref=pending.client_ref)
        self.buffer.confirm(pending.client_ref, stored)

        assert self.buffer.apply_remote(stored) == "duplicate"
        assert len(self.buffer) == 1

    def test_echo_without_client_ref_matches_within_window(self):
        pending = self.buffer.add_pending(self.me, "Hallo", sent_at=self.now)
        echo = confirmed(7, self.me, "Hallo", self.now + timedelta(seconds=3))

        assert self.buffer.apply_remote(echo) == "confirmed_pending"
        [entry] = self.buffer.entries()
        assert entry.client_ref == pending.client_ref
        assert entry.message_id == 7

    def test_echo_outside_window_is_a_new_message(self):
        self.buffer.add_pending(self.me, "Hallo", sent_at=self.now)
        echo = confirmed(7, self.me, "Hallo", self.now + timedelta(seconds=30))

        assert self.buffer.apply_remote(echo) == "inserted"
        assert len(self.buffer) == 2

    def test_same_text_from_peer_is_not_an_echo(self):
        self.buffer.add_pending(self.me, "ok", sent_at=self.now)

        assert self.buffer.apply_remote(confirmed(7, self.peer, "ok", self.now)) == "inserted"
        assert len(self.buffer.pending()) == 1

    def test_out_of_order_arrival_is_sorted(self):
        """Hoi! arrives before Hallo but is rendered after it."""
        hallo = confirmed(1, self.me, "Hallo", self.now)
        hoi = confirmed(2, self.peer, "Hoi!", self.now + timedelta(seconds=1))

        self.buffer.apply_remote(hoi)
        self.buffer.apply_remote(hallo)

        assert [e.body for e in self.buffer.entries()] == ["Hallo", "Hoi!"]

    def test_pending_entries_follow_confirmed(self):
        self.buffer.add_pending(self.me, "still sending")
        self.buffer.apply_remote(confirmed(1, self.peer, "Hoi!", self.now))

        assert [e.state for e in self.buffer.entries()] == [CONFIRMED, PENDING]

    def test_duplicate_merges_read_receipts(self):
        self.buffer.apply_remote(confirmed(1, self.me, "Hallo", self.now))
        self.buffer.apply_remote(confirmed(1, self.me, "Hallo", self.now, read_by={self.me, self.peer}))

        [entry] = self.buffer.entries()
        assert entry.read_by == {self.me, self.peer}

    def test_apply_read(self):
        self.buffer.apply_remote(confirmed(1, self.me, "one", self.now))
        self.buffer.apply_remote(confirmed(2, self.me, "two", self.now + timedelta(seconds=1)))

        assert self.buffer.apply_read([1, 2, 99], self.peer) == 2
        assert self.buffer.apply_read([1], self.peer) == 0
        assert all(self.peer in e.read_by for e in self.buffer.entries())

    def test_failed_and_retry_states(self):
        pending = self.buffer.add_pending(self.me, "Hallo")

        failed = self.buffer.mark_failed(pending.client_ref, "offline")
        assert failed.state == FAILED
        assert self.buffer.failed() == [failed]
        assert self.buffer.pending() == []

        retrying = self.buffer.mark_retrying(pending.client_ref)
        assert retrying.state == PENDING
        assert retrying.error == ""

    def test_only_local_entries_can_be_removed(self):
        pending = self.buffer.add_pending(self.me, "Hallo")
        self.buffer.apply_remote(confirmed(1, self.peer, "Hoi!", self.now))

        assert self.buffer.remove("m:1") is False
        assert self.buffer.remove(pending.key) is True
        assert len(self.buffer) == 1

    def test_last_confirmed_cursor(self):
        assert self.buffer.last_confirmed_cursor() is None
        self.buffer.apply_remote(confirmed(4, self.me, "x", self.now))

        cursor = self.buffer.last_confirmed_cursor()
        assert cursor.message_id == 4
        assert cursor.created_at == self.now


@pytest.mark.django_db
class TestConversationSync:
    """Tests for the live conversation view."""

    def test_open_loads_history_and_subscribes(self, conversation, youth, worker, feed):
        append_message(worker, conversation.pk, "Welkom")
        renders = []

        view = ConversationSync(youth, conversation.pk, listener=renders.append).open()

        assert [e.body for e in view.entries] == ["Welkom"]
        assert view.is_live
        assert len(feed.subscriptions(conversation_topic(conversation.pk))) == 1
        assert renders

    def test_open_checks_access(self, conversation, worker2, manager):
        with pytest.raises(NotParticipant):
            ConversationSync(worker2, conversation.pk).open()
        with pytest.raises(Unauthorized):
            ConversationSync(manager, conversation.pk).open()

    def test_send_confirms_entry(self, conversation, youth):
        view = ConversationSync(youth, conversation.pk).open()

        entry = view.send("Hallo")

        assert entry.state == CONFIRMED
        assert entry.message_id == Message.objects.get().pk
        assert [e.key for e in view.entries] == [entry.key]

    def test_send_then_echo_renders_once(self, conversation, youth, django_capture_on_commit_callbacks):
        view = ConversationSync(youth, conversation.pk).open()

        with django_capture_on_commit_callbacks(execute=True):
            view.send("Hallo")

        assert len(view.entries) == 1
        assert view.entries[0].body == "Hallo"

    def test_echo_before_send_returns_renders_once(self, conversation, youth):
        view = ConversationSync(youth, conversation.pk).open()

        def append_and_echo(*args, **kwargs):
            message = append_message(*args, **kwargs)
            view.handle_event(
                ChangeEvent(
                    topic=conversation_topic(conversation.pk),
                    kind=MESSAGE_CREATED,
                    payload=message_payload(message),
                    sequence=1,
                )
            )
            return message

        with mock.patch.object(sync, "append_message", side_effect=append_and_echo):
            entry = view.send("Hallo")

        assert entry.state == CONFIRMED
        assert len(view.entries) == 1

    def test_peer_message_arrives_live(self, conversation, youth, worker, django_capture_on_commit_callbacks):
        renders = []
        view = ConversationSync(youth, conversation.pk, listener=renders.append).open()

        with django_capture_on_commit_callbacks(execute=True):
            append_message(worker, conversation.pk, "Hoi!")

        assert [e.body for e in view.entries] == ["Hoi!"]
        assert renders[-1][0].sender_id == worker.user_id

    def test_read_receipts_arrive_live(self, conversation, youth, worker, django_capture_on_commit_callbacks):
        from django_direct_messages.services.messages import mark_read

        view = ConversationSync(youth, conversation.pk).open()
        entry = view.send("Hallo")

        with django_capture_on_commit_callbacks(execute=True):
            mark_read(worker, conversation.pk, entry.message_id)

        assert worker.user_id in view.entries[0].read_by

    def test_invalid_body_never_rendered(self, conversation, youth):
        renders = []
        view = ConversationSync(youth, conversation.pk, listener=renders.append).open()
        renders.clear()

        with pytest.raises(EmptyBody):
            view.send("   ")

        assert view.entries == []
        assert renders == []

    def test_rejected_send_removes_entry(self, conversation, youth):
        view = ConversationSync(youth, conversation.pk).open()

        with mock.patch.object(sync, "append_message", side_effect=InvalidSender(youth.user_id, conversation.pk)):
            with pytest.raises(InvalidSender):
                view.send("Hallo")

        assert view.entries == []

    def test_storage_failure_keeps_failed_entry(self, conversation, youth):
        view = ConversationSync(youth, conversation.pk).open()

        with mock.patch.object(sync, "append_message", side_effect=StorageUnavailable("append_message")):
            entry = view.send("Hallo")

        assert entry.state == FAILED
        assert view.entries == [entry]

        confirmed_entry = view.retry(entry.key)
        assert confirmed_entry.state == CONFIRMED
        assert confirmed_entry.body == "Hallo"
        assert len(view.entries) == 1

    def test_retry_requires_failed_entry(self, conversation, youth):
        view = ConversationSync(youth, conversation.pk).open()
        entry = view.send("Hallo")

        with pytest.raises(ValueError):
            view.retry(entry.key)

    def test_discard_failed_entry(self, conversation, youth):
        view = ConversationSync(youth, conversation.pk).open()
        with mock.patch.object(sync, "append_message", side_effect=StorageUnavailable("append_message")):
            entry = view.send("Hallo")

        assert view.discard(entry.key) is True
        assert view.entries == []
        assert Message.objects.count() == 0

    def test_disconnect_waits_for_host_reconnect(self, conversation, youth, feed):
        """A dropped feed opens a gap; only reconnect() restores the stream."""
        view = ConversationSync(youth, conversation.pk).open()

        feed.set_available(False)
        assert view.needs_repair is True
        assert view.is_live is False

        feed.set_available(True)
        assert view.is_live is False
        assert view.needs_repair is True

        view.reconnect()
        assert view.is_live is True
        assert view.needs_repair is False

    def test_offline_send_completes_on_reconnect(self, conversation, youth, feed, django_capture_on_commit_callbacks):
        """Sent while offline: shown at once, confirmed on reconnect, never duplicated."""
        view = ConversationSync(youth, conversation.pk).open()
        feed.set_available(False)

        with mock.patch.object(sync, "append_message", side_effect=StorageUnavailable("append_message")):
            offline = view.send("Ben je er?")

        assert [e.state for e in view.entries] == [FAILED]
        assert view.needs_repair is True

        feed.set_available(True)
        with django_capture_on_commit_callbacks(execute=True):
            view.reconnect()

        [entry] = view.entries
        assert entry.state == CONFIRMED
        assert entry.body == "Ben je er?"
        assert entry.client_ref == offline.client_ref
        assert entry.message_id == Message.objects.get().pk
        assert view.is_live

    def test_gap_repaired_after_reconnect(self, conversation, youth, worker, feed, django_capture_on_commit_callbacks):
        """Messages sent while disconnected show up, in order, after reconnect."""
        view = ConversationSync(youth, conversation.pk).open()
        view.send("Hallo")
        feed.set_available(False)

        with django_capture_on_commit_callbacks(execute=True):
            for body in ("een", "twee", "drie"):
                append_message(worker, conversation.pk, body)

        assert [e.body for e in view.entries] == ["Hallo"]

        feed.set_available(True)
        view.reconnect()

        assert [e.body for e in view.entries] == ["Hallo", "een", "twee", "drie"]
        assert view.needs_repair is False

        with django_capture_on_commit_callbacks(execute=True):
            append_message(worker, conversation.pk, "vier")
        assert [e.body for e in view.entries][-1] == "vier"

    def test_own_send_during_gap_does_not_hide_missed_messages(
        self, conversation, youth, worker, feed, django_capture_on_commit_callbacks
    ):
        view = ConversationSync(youth, conversation.pk).open()
        feed.set_available(False)

        with django_capture_on_commit_callbacks(execute=True):
            append_message(worker, conversation.pk, "een")
        view.send("twee")

        feed.set_available(True)
        view.reconnect()

        assert [e.body for e in view.entries] == ["een", "twee"]

    def test_gap_repair_pages_forward(self, conversation, youth, worker, settings):
        settings.DIRECT_MESSAGES_PAGE_SIZE = 2
        view = ConversationSync(youth, conversation.pk).open()
        for index in range(5):
            append_message(worker, conversation.pk, f"m{index}")

        assert view.repair_gap() == 5
        assert [e.body for e in view.entries] == [f"m{index}" for index in range(5)]

    def test_open_without_feed_falls_back_to_pull(self, conversation, youth, worker, feed):
        feed.set_available(False)
        append_message(worker, conversation.pk, "Hoi!")

        view = ConversationSync(youth, conversation.pk).open()

        assert not view.is_live
        assert view.needs_repair is True
        assert [e.body for e in view.entries] == ["Hoi!"]

        feed.set_available(True)
        view.reconnect()
        assert view.is_live
        assert view.needs_repair is False

    def test_repair_gives_up_with_storage_unavailable(self, conversation, youth, settings):
        settings.DIRECT_MESSAGES_SYNC_RETRIES = 2
        view = ConversationSync(youth, conversation.pk).open()

        with mock.patch.object(sync, "list_messages", side_effect=StorageUnavailable("list_messages")) as pull:
            with pytest.raises(StorageUnavailable) as exc_info:
                view.repair_gap()

        assert pull.call_count == 2
        assert exc_info.value.operation == "repair_gap"

    def test_close_unsubscribes(self, conversation, youth, feed):
        view = ConversationSync(youth, conversation.pk).open()
        view.close()

        assert feed.subscriptions(conversation_topic(conversation.pk)) == []
        assert not view.is_live


@pytest.mark.django_db
class TestInboxSync:
    """Tests for the live inbox."""

    def test_open_loads_inbox(self, conversation, worker):
        view = InboxSync(worker).open()

        assert view.snapshot.conversation_ids == [conversation.pk]
        assert view.is_live

    def test_new_message_refreshes_inbox(self, conversation, youth, worker, django_capture_on_commit_callbacks):
        snapshots = []
        InboxSync(worker, listener=snapshots.append).open()

        with django_capture_on_commit_callbacks(execute=True):
            append_message(youth, conversation.pk, "Hallo")

        [row] = snapshots[-1].rows
        assert row.preview == "Hallo"
        assert row.unread_count == 1

    def test_new_conversation_appears(self, youth, worker, django_capture_on_commit_callbacks):
        from django_direct_messages.services import start_conversation

        view = InboxSync(worker).open()
        assert len(view.snapshot) == 0

        with django_capture_on_commit_callbacks(execute=True):
            start_conversation(youth, worker.user_id, "worker")

        assert len(view.snapshot) == 1

    def test_failed_refresh_keeps_previous_rows(self, conversation, worker):
        view = InboxSync(worker).open()

        with mock.patch.object(sync, "list_conversations", side_effect=StorageUnavailable("list_conversations")):
            snapshot = view.refresh()

        assert snapshot.stale is True
        assert snapshot.conversation_ids == [conversation.pk]

    def test_manager_cannot_open(self, manager):
        with pytest.raises(Unauthorized):
            InboxSync(manager).open()

    def test_reconnect_refreshes(self, conversation, youth, worker, feed):
        view = InboxSync(worker).open()
        feed.set_available(False)
        append_message(youth, conversation.pk, "Hallo")

        feed.set_available(True)
        view.reconnect()

        assert view.is_live
        assert view.snapshot.rows[0].preview == "Hallo"
