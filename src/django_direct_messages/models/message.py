"""Message and read receipt models."""

from django.db import models


class Message(models.Model):
    """One immutable unit of conversation content.

    Messages are append-only: once stored only their read receipts grow.
    Within a conversation messages are totally ordered by (created_at, id);
    ``id`` is a monotonically increasing integer so it doubles as the
    tie-break.

    ``client_ref`` is the temporary id the sending client gave its
    optimistic entry. It is unique per conversation, which makes resending
    the same entry (after a timeout or a dropped connection) return the
    already stored message instead of a duplicate.
    """

    id = models.BigAutoField(primary_key=True)

    conversation = models.ForeignKey(
        "django_direct_messages.Conversation",
        on_delete=models.PROTECT,
        related_name="messages",
        help_text="Conversation this message belongs to",
    )
    sender_id = models.UUIDField(
        help_text="User id of the sender (youth or worker of the conversation)",
    )
    body = models.TextField(
        help_text="Plain text content, stripped of surrounding whitespace",
    )
    client_ref = models.UUIDField(
        null=True,
        blank=True,
        help_text="Client-generated id of the optimistic entry this message confirms",
    )
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        verbose_name = "Message"
        verbose_name_plural = "Messages"
        ordering = ["created_at", "id"]
        constraints = [
            models.UniqueConstraint(
                fields=["conversation", "client_ref"],
                name="unique_message_client_ref",
            ),
        ]
        indexes = [
            models.Index(fields=["conversation", "created_at", "id"], name="dm_message_order_idx"),
        ]

    def __str__(self):
        return f"Message {self.pk} from {self.sender_id} in {self.conversation_id}"

    @property
    def read_by(self) -> frozenset:
        """User ids that have acknowledged this message.

        Uses prefetched receipts when available (see list_messages).
        """
        return frozenset(receipt.reader_id for receipt in self.receipts.all())

    @property
    def sort_key(self) -> tuple:
        return (self.created_at, self.pk)


class ReadReceipt(models.Model):
    """A reader's acknowledgement of one message.

    Receipts are only ever inserted, so a message's read_by set can only
    grow. The unique constraint turns concurrent or repeated mark_read
    calls into no-ops.
    """

    message = models.ForeignKey(
        Message,
        on_delete=models.CASCADE,
        related_name="receipts",
    )
    reader_id = models.UUIDField()
    read_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        verbose_name = "Read Receipt"
        verbose_name_plural = "Read Receipts"
        constraints = [
            models.UniqueConstraint(
                fields=["message", "reader_id"],
                name="unique_receipt_per_reader",
            ),
        ]
        indexes = [
            models.Index(fields=["reader_id", "message"], name="dm_receipt_reader_idx"),
        ]

    def __str__(self):
        return f"{self.reader_id} read message {self.message_id}"
