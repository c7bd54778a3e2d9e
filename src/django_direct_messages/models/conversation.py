"""Conversation model: the single thread between one youth and one worker."""

import uuid

from django.db import models
from django.db.models import F, Q


class Conversation(models.Model):
    """Two-party thread between a youth and an outreach worker.

    Exactly one Conversation exists per (youth_id, worker_id) pair; the
    database enforces this with ``unique_conversation_pair`` and
    ``get_or_create_conversation`` relies on it to resolve creation races.

    The ``last_message*`` fields are a denormalized preview of the newest
    message. Only the Message Store writes them, through a conditional
    update that never moves the preview backwards in (created_at, id) order.

    Usage:
        from django_direct_messages.services.conversations import get_or_create_conversation

        conv, created = get_or_create_conversation(
            youth.id, "youth", worker.id, "worker",
        )
    """

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    # === Parties (opaque ids owned by the identity provider) ===
    youth_id = models.UUIDField(
        db_index=True,
        help_text="User id of the youth party",
    )
    worker_id = models.UUIDField(
        db_index=True,
        help_text="User id of the outreach worker party",
    )

    # === Preview (denormalized from the newest message) ===
    last_message = models.TextField(
        null=True,
        blank=True,
        help_text="Body of the most recent message",
    )
    last_message_at = models.DateTimeField(
        null=True,
        blank=True,
        db_index=True,
        help_text="Timestamp of the most recent message (inbox sort key)",
    )
    last_message_id = models.BigIntegerField(
        null=True,
        blank=True,
        help_text="Id of the message the preview was taken from",
    )
    last_sender_id = models.UUIDField(
        null=True,
        blank=True,
        help_text="Sender of the most recent message",
    )

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = "Conversation"
        verbose_name_plural = "Conversations"
        ordering = ["-last_message_at", "-created_at"]
        constraints = [
            models.UniqueConstraint(
                fields=["youth_id", "worker_id"],
                name="unique_conversation_pair",
            ),
            models.CheckConstraint(
                condition=~Q(youth_id=F("worker_id")),
                name="conversation_distinct_parties",
            ),
        ]
        indexes = [
            models.Index(fields=["youth_id", "-last_message_at"], name="dm_conv_youth_recent_idx"),
            models.Index(fields=["worker_id", "-last_message_at"], name="dm_conv_worker_recent_idx"),
        ]

    def __str__(self):
        return f"Conversation {str(self.pk)[:8]} (youth {self.youth_id} / worker {self.worker_id})"

    @property
    def participant_ids(self) -> tuple:
        return (self.youth_id, self.worker_id)

    @property
    def topic(self) -> str:
        """Change-feed topic carrying this conversation's message events."""
        from ..feed import conversation_topic

        return conversation_topic(self.pk)

    def has_participant(self, user_id) -> bool:
        return user_id in self.participant_ids

    def peer_of(self, user_id):
        """Return the other party's id, or None if user_id is not a party."""
        if user_id == self.youth_id:
            return self.worker_id
        if user_id == self.worker_id:
            return self.youth_id
        return None
