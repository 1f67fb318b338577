import logging
import uuid
from dataclasses import dataclass

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .distribution import distribute_conversation
from .models import Connection, Message, utcnow
from .payloads import WebhookEnvelope
from .resolvers import find_or_create_contact, find_or_create_conversation

logger = logging.getLogger(__name__)

# statuses only move forward; "failed" is terminal for the send path
_STATUS_RANK = {
    "sending": 0,
    "sent": 1,
    "delivered": 2,
    "read": 3,
}


class IngestSkipped(Exception):
    """Payload that is intentionally not persisted (group chat, no sender)."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


@dataclass
class IngestResult:
    message_id: str
    conversation_id: str
    contact_id: str | None = None
    duplicate: bool = False
    contact_created: bool = False
    conversation_created: bool = False
    assigned_user_id: str | None = None

    def as_dict(self) -> dict:
        return {
            "message_id": self.message_id,
            "conversation_id": self.conversation_id,
            "contact_id": self.contact_id,
            "duplicate": self.duplicate,
        }


def apply_status(message: Message, status: str, now=None) -> bool:
    """Move a message to ``status`` and stamp delivery/read times without overwriting them.

    Returns False (and changes nothing) when it would move the status backwards.
    """
    now = now or utcnow()
    current = _STATUS_RANK.get(message.status or "")
    target = _STATUS_RANK.get(status)
    if current is not None and target is not None and target < current:
        return False
    message.status = status
    if status == "delivered" and not message.delivered_at:
        message.delivered_at = now
    if status == "read":
        if not message.read_at:
            message.read_at = now
        if not message.delivered_at:
            message.delivered_at = now
    return True


class MessageIngestor:
    def __init__(self, distribute=distribute_conversation, rng=None):
        self.distribute = distribute
        self.rng = rng

    def _existing(self, db: Session, external_id: str) -> Message | None:
        # external_id is unique across workspaces
        return db.query(Message).filter(Message.external_id == external_id).first()

    def _duplicate(self, msg: Message, workspace_id: str, request_id: str | None = None) -> IngestResult:
        if msg.workspace_id != workspace_id:
            logger.warning(
                "provider message %s already stored for workspace %s", msg.external_id, msg.workspace_id,
                extra={"request_id": request_id},
            )
            raise IngestSkipped("external-id-conflict")
        return IngestResult(message_id=msg.id, conversation_id=msg.conversation_id, duplicate=True)

    def ingest(self, db: Session, envelope: WebhookEnvelope, connection: Connection, request_id: str | None = None) -> IngestResult:
        """Persist one inbound provider message at most once.

        Contact, conversation, message and activity timestamp commit together;
        queue distribution runs afterwards in its own transaction and only for a
        conversation this call created.
        """
        if envelope.is_group:
            raise IngestSkipped("group-chat")
        if not envelope.message_id:
            raise IngestSkipped("missing-message-id")
        phone = envelope.phone
        if not phone:
            raise IngestSkipped("missing-phone")
        workspace_id = connection.workspace_id

        existing = self._existing(db, envelope.message_id)
        if existing:
            logger.info("duplicate provider message %s skipped", envelope.message_id, extra={"request_id": request_id})
            return self._duplicate(existing, workspace_id, request_id)

        contact, contact_created = find_or_create_contact(db, workspace_id, phone, name=envelope.push_name)
        conv, conv_created = find_or_create_conversation(db, workspace_id, contact.id, connection.id)
        now = utcnow()
        body = envelope.body
        msg = Message(
            id=str(uuid.uuid4()),
            conversation_id=conv.id,
            workspace_id=workspace_id,
            content=body.content,
            message_type=body.message_type,
            sender_type="contact",
            status="received",
            external_id=envelope.message_id,
            file_url=getattr(body, "url", None),
            file_name=getattr(body, "file_name", None),
            mime_type=getattr(body, "mime_type", None),
            meta={"source": "evolution", "instance": envelope.instance, "request_id": request_id},
            created_at=now,
        )
        db.add(msg)
        conv.last_activity_at = now
        conv.updated_at = now
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            winner = db.query(Message).filter(Message.external_id == envelope.message_id).first()
            if winner is None:
                raise
            logger.info("concurrent delivery of %s lost to %s", envelope.message_id, winner.id, extra={"request_id": request_id})
            return self._duplicate(winner, workspace_id, request_id)

        result = IngestResult(
            message_id=msg.id,
            conversation_id=conv.id,
            contact_id=contact.id,
            contact_created=contact_created,
            conversation_created=conv_created,
        )
        if conv_created:
            try:
                result.assigned_user_id = self.distribute(db, conv, connection, rng=self.rng)
            except Exception:
                db.rollback()
                logger.exception("queue distribution failed for conversation %s", conv.id, extra={"request_id": request_id})
        return result

    def find_message(self, db: Session, provider_id: str) -> Message | None:
        return (
            db.query(Message)
            .filter(or_(Message.external_id == provider_id, Message.evolution_key_id == provider_id))
            .first()
        )

    def apply_ack(self, db: Session, envelope: WebhookEnvelope, request_id: str | None = None) -> Message | None:
        """Reconcile a delivery/read receipt; never creates a message."""
        status = envelope.ack_status
        if status is None:
            logger.info("ignoring unrecognized ack %r for %s", envelope.ack, envelope.message_id, extra={"request_id": request_id})
            return None
        if not envelope.message_id:
            logger.info("ack without message id dropped", extra={"request_id": request_id})
            return None
        msg = self.find_message(db, envelope.message_id)
        if not msg:
            logger.info("ack for unknown message %s dropped", envelope.message_id, extra={"request_id": request_id})
            return None
        if apply_status(msg, status):
            db.commit()
        else:
            logger.info("ack %s older than current status %s for %s", status, msg.status, msg.id, extra={"request_id": request_id})
        return msg

