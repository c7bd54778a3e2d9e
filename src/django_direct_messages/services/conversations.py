"""Conversation registry: creation and lookup of youth/worker conversations.

The registry owns the one-conversation-per-pair rule. Both parties may try
to start the conversation at the same moment; the database unique
constraint decides the winner and the loser re-reads it, so every caller
ends up with the same conversation.
"""

import logging
import uuid

from django.db import IntegrityError, transaction
from django.db.models import Q

from ..access import Operation, require
from ..exceptions import ConversationNotFound, NotParticipant, RoleMismatch
from ..feed import CONVERSATION_CREATED, conversation_payload, publish_on_commit, user_topic
from ..models import Conversation, Role
from ..retry import with_storage_retry
from ..session import Session, coerce_user_id

logger = logging.getLogger(__name__)


def resolve_pair(initiator_id, initiator_role, target_id, target_role) -> tuple[uuid.UUID, uuid.UUID]:
    """Order two parties as (youth_id, worker_id).

    Raises:
        InvalidUserId: If either id is not a UUID
        UnknownRole: If either role is unknown
        RoleMismatch: Unless exactly one side is youth and the other worker
    """
    initiator_id = coerce_user_id(initiator_id)
    target_id = coerce_user_id(target_id)
    initiator_role = Role.parse(initiator_role)
    target_role = Role.parse(target_role)

    if initiator_id == target_id:
        raise RoleMismatch(initiator_role.value, target_role.value)
    if initiator_role == Role.YOUTH and target_role == Role.WORKER:
        return initiator_id, target_id
    if initiator_role == Role.WORKER and target_role == Role.YOUTH:
        return target_id, initiator_id
    raise RoleMismatch(initiator_role.value, target_role.value)


def find_conversation(youth_id, worker_id) -> Conversation | None:
    """Return the conversation for a (youth, worker) pair, if any."""
    return with_storage_retry(
        "find_conversation",
        lambda: Conversation.objects.filter(
            youth_id=coerce_user_id(youth_id),
            worker_id=coerce_user_id(worker_id),
        ).first(),
    )


def _read_or_insert(youth_id: uuid.UUID, worker_id: uuid.UUID) -> tuple[Conversation, bool]:
    existing = Conversation.objects.filter(youth_id=youth_id, worker_id=worker_id).first()
    if existing is not None:
        return existing, False

    try:
        with transaction.atomic():
            conv = Conversation.objects.create(youth_id=youth_id, worker_id=worker_id)
    except IntegrityError:
        # Concurrent first contact: the other caller's insert won
        logger.debug("Conversation insert lost race for youth=%s worker=%s", youth_id, worker_id)
        return Conversation.objects.get(youth_id=youth_id, worker_id=worker_id), False

    payload = conversation_payload(conv)
    for user_id in conv.participant_ids:
        publish_on_commit(user_topic(user_id), CONVERSATION_CREATED, payload)
    logger.info("Created conversation %s for youth=%s worker=%s", conv.pk, youth_id, worker_id)
    return conv, True


def get_or_create_conversation(
    initiator_id,
    initiator_role,
    target_id,
    target_role,
) -> tuple[Conversation, bool]:
    """Return the single conversation between a youth and a worker.

    Idempotent and safe under concurrent invocation from both sides: all
    callers for the same pair receive the same conversation, and at most one
    row is ever created for it.

    Args:
        initiator_id: User starting the conversation
        initiator_role: Initiator's role (must be permitted start_conversation)
        target_id: The other party
        target_role: The other party's role

    Returns:
        Tuple of (Conversation, created_bool)

    Raises:
        UnknownRole: A role value is not recognised
        InvalidUserId: An id is not a UUID
        Unauthorized: Initiator's role may not start conversations
        RoleMismatch: The pair is not exactly one youth and one worker
        StorageUnavailable: The store stayed unreachable after retrying
    """
    require(initiator_role, Operation.START_CONVERSATION)
    youth_id, worker_id = resolve_pair(initiator_id, initiator_role, target_id, target_role)
    return with_storage_retry("get_or_create_conversation", _read_or_insert, youth_id, worker_id)


def start_conversation(session: Session, target_id, target_role) -> Conversation:
    """Start (or reopen) a conversation between the caller and target."""
    conv, _ = get_or_create_conversation(session.user_id, session.role, target_id, target_role)
    return conv


def get_conversation_for(session: Session, conversation_id, operation=Operation.VIEW_CONVERSATION) -> Conversation:
    """Load a conversation the caller may access.

    Admins may open any conversation; everyone else must be one of its
    parties.

    Raises:
        Unauthorized: Role may not perform operation
        ConversationNotFound: No conversation with that id
        NotParticipant: Caller is not a party (and not admin)
    """
    require(session.role, operation)
    conv = load_conversation(conversation_id)
    if session.role != Role.ADMIN and not conv.has_participant(session.user_id):
        raise NotParticipant(session.user_id, conv.pk)
    return conv


def load_conversation(conversation_id) -> Conversation:
    """Fetch a conversation by id.

    Raises:
        ConversationNotFound: Unknown or malformed id
    """
    try:
        pk = uuid.UUID(str(conversation_id))
    except ValueError:
        raise ConversationNotFound(conversation_id)

    conv = with_storage_retry(
        "load_conversation",
        lambda: Conversation.objects.filter(pk=pk).first(),
    )
    if conv is None:
        raise ConversationNotFound(conversation_id)
    return conv


def conversations_for_user(user_id):
    """QuerySet of conversations where user_id is youth or worker."""
    user_id = coerce_user_id(user_id)
    return Conversation.objects.filter(Q(youth_id=user_id) | Q(worker_id=user_id))
