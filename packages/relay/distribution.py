"""Queue distribution of newly created conversations.

Strategies (``Queue.distribution_type``):

- ``sequencial``: round robin over the active members, advancing
  ``last_assigned_user_index`` with a compare-and-swap update.
- ``aleatoria``: uniformly random member.
- ``ordenada``: always the first member by ``order_position``.
- ``nao_distribuir``: leave the conversation unassigned.
"""
import logging
import random
import uuid

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from .models import Connection, Conversation, ConversationAssignment, Queue, QueueUser, User, utcnow

logger = logging.getLogger(__name__)

SEQUENTIAL = "sequencial"
RANDOM = "aleatoria"
ORDERED = "ordenada"
NO_DISTRIBUTION = "nao_distribuir"

_CAS_ATTEMPTS = 5


def active_members(db: Session, queue_id: str) -> list[str]:
    rows = db.execute(
        select(QueueUser.user_id)
        .join(User, User.id == QueueUser.user_id)
        .where(QueueUser.queue_id == queue_id)
        .where(User.status == "active")
        .order_by(QueueUser.order_position, QueueUser.id)
    )
    return [r[0] for r in rows]


def advance_sequential_index(db: Session, queue_id: str, member_count: int) -> int:
    """Atomically move the queue's rotation index one step forward and return it."""
    for _ in range(_CAS_ATTEMPTS):
        seen = db.execute(
            select(Queue.last_assigned_user_index).where(Queue.id == queue_id)
        ).scalar_one()
        seen = seen or 0
        new_index = (seen + 1) % member_count
        res = db.execute(
            update(Queue)
            .where(Queue.id == queue_id)
            .where(Queue.last_assigned_user_index == seen)
            .values(last_assigned_user_index=new_index)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount == 1:
            return new_index
        logger.info("rotation index for queue %s moved concurrently, retrying", queue_id)
    raise RuntimeError(f"could not advance rotation index for queue {queue_id}")


def select_assignee(db: Session, queue: Queue, members: list[str], rng=None) -> str | None:
    if not members:
        return None
    strategy = queue.distribution_type
    if strategy == SEQUENTIAL:
        index = advance_sequential_index(db, queue.id, len(members))
        db.expire(queue, ["last_assigned_user_index"])
        return members[index]
    if strategy == RANDOM:
        return members[(rng or random).randrange(len(members))]
    if strategy == ORDERED:
        return members[0]
    if strategy == NO_DISTRIBUTION:
        return None
    logger.warning("unknown distribution type %r on queue %s", strategy, queue.id)
    return None


def distribute_conversation(db: Session, conversation: Conversation, connection: Connection, rng=None) -> str | None:
    """Assign a freshly created conversation from the connection's queue.

    Commits on success and returns the assigned user id; returns None when no
    queue, no active member, or the strategy does not distribute. Errors
    propagate so the caller can roll back and log them.
    """
    if not connection or not connection.queue_id:
        logger.info("no queue configured for connection %s", getattr(connection, "id", None))
        return None
    queue = db.get(Queue, connection.queue_id)
    if not queue or not queue.is_active:
        logger.info("queue %s missing or inactive", connection.queue_id)
        return None
    members = active_members(db, queue.id)
    if not members:
        logger.warning("queue %s has no active members", queue.id)
        return None
    assignee = select_assignee(db, queue, members, rng=rng)
    if not assignee:
        db.commit()
        return None
    now = utcnow()
    conversation.assigned_user_id = assignee
    conversation.assigned_at = now
    conversation.queue_id = queue.id
    conversation.status = "open"
    conversation.agente_ativo = bool(queue.ai_agent_id)
    conversation.agent_active_id = queue.ai_agent_id or None
    conversation.updated_at = now
    db.add(ConversationAssignment(
        id=str(uuid.uuid4()),
        conversation_id=conversation.id,
        from_assigned_user_id=None,
        to_assigned_user_id=assignee,
        from_queue_id=None,
        to_queue_id=queue.id,
        action="assign",
        changed_by=None,
        changed_at=now,
    ))
    db.commit()
    logger.info("conversation %s assigned to %s via queue %s (%s)", conversation.id, assignee, queue.id, queue.distribution_type)
    return assignee
