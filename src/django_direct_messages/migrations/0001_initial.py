# Generated manually for standalone django-direct-messages package

import uuid

import django.db.models.deletion
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="Conversation",
            fields=[
                (
                    "id",
                    models.UUIDField(
                        default=uuid.uuid4,
                        editable=False,
                        primary_key=True,
                        serialize=False,
                    ),
                ),
                (
                    "youth_id",
                    models.UUIDField(db_index=True, help_text="User id of the youth party"),
                ),
                (
                    "worker_id",
                    models.UUIDField(
                        db_index=True, help_text="User id of the outreach worker party"
                    ),
                ),
                (
                    "last_message",
                    models.TextField(
                        blank=True, help_text="Body of the most recent message", null=True
                    ),
                ),
                (
                    "last_message_at",
                    models.DateTimeField(
                        blank=True,
                        db_index=True,
                        help_text="Timestamp of the most recent message (inbox sort key)",
                        null=True,
                    ),
                ),
                (
                    "last_message_id",
                    models.BigIntegerField(
                        blank=True,
                        help_text="Id of the message the preview was taken from",
                        null=True,
                    ),
                ),
                (
                    "last_sender_id",
                    models.UUIDField(
                        blank=True, help_text="Sender of the most recent message", null=True
                    ),
                ),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "verbose_name": "Conversation",
                "verbose_name_plural": "Conversations",
                "ordering": ["-last_message_at", "-created_at"],
                "indexes": [
                    models.Index(
                        fields=["youth_id", "-last_message_at"],
                        name="dm_conv_youth_recent_idx",
                    ),
                    models.Index(
                        fields=["worker_id", "-last_message_at"],
                        name="dm_conv_worker_recent_idx",
                    ),
                ],
                "constraints": [
                    models.UniqueConstraint(
                        fields=("youth_id", "worker_id"),
                        name="unique_conversation_pair",
                    ),
                    models.CheckConstraint(
                        condition=models.Q(("youth_id", models.F("worker_id")), _negated=True),
                        name="conversation_distinct_parties",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="Message",
            fields=[
                ("id", models.BigAutoField(primary_key=True, serialize=False)),
                (
                    "sender_id",
                    models.UUIDField(
                        help_text="User id of the sender (youth or worker of the conversation)"
                    ),
                ),
                (
                    "body",
                    models.TextField(
                        help_text="Plain text content, stripped of surrounding whitespace"
                    ),
                ),
                (
                    "client_ref",
                    models.UUIDField(
                        blank=True,
                        help_text="Client-generated id of the optimistic entry this message confirms",
                        null=True,
                    ),
                ),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                (
                    "conversation",
                    models.ForeignKey(
                        help_text="Conversation this message belongs to",
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="messages",
                        to="django_direct_messages.conversation",
                    ),
                ),
            ],
            options={
                "verbose_name": "Message",
                "verbose_name_plural": "Messages",
                "ordering": ["created_at", "id"],
                "indexes": [
                    models.Index(
                        fields=["conversation", "created_at", "id"],
                        name="dm_message_order_idx",
                    ),
                ],
                "constraints": [
                    models.UniqueConstraint(
                        fields=("conversation", "client_ref"),
                        name="unique_message_client_ref",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="ReadReceipt",
            fields=[
                (
                    "id",
                    models.BigAutoField(
                        auto_created=True,
                        primary_key=True,
                        serialize=False,
                        verbose_name="ID",
                    ),
                ),
                ("reader_id", models.UUIDField()),
                ("read_at", models.DateTimeField(auto_now_add=True)),
                (
                    "message",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="receipts",
                        to="django_direct_messages.message",
                    ),
                ),
            ],
            options={
                "verbose_name": "Read Receipt",
                "verbose_name_plural": "Read Receipts",
                "indexes": [
                    models.Index(
                        fields=["reader_id", "message"],
                        name="dm_receipt_reader_idx",
                    ),
                ],
                "constraints": [
                    models.UniqueConstraint(
                        fields=("message", "reader_id"),
                        name="unique_receipt_per_reader",
                    ),
                ],
            },
        ),
    ]
