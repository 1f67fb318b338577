import logging
import uuid

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .models import Contact, Conversation, utcnow

logger = logging.getLogger(__name__)


def find_or_create_contact(
    db: Session,
    workspace_id: str,
    phone: str,
    name: str | None = None,
    extra_info: dict | None = None,
) -> tuple[Contact, bool]:
    """Find the contact for (workspace, phone) or add a new one to the session.

    An existing contact's name is left untouched. The caller owns the commit.
    """
    if not phone:
        raise ValueError("phone is required")
    contact = (
        db.query(Contact)
        .filter(Contact.workspace_id == workspace_id)
        .filter(Contact.phone == phone)
        .first()
    )
    if contact:
        return contact, False
    contact = Contact(
        id=str(uuid.uuid4()),
        workspace_id=workspace_id,
        phone=phone,
        name=name or phone,
        extra_info=dict(extra_info or {}),
        created_at=utcnow(),
    )
    db.add(contact)
    try:
        db.flush()
    except IntegrityError:
        # lost the (workspace_id, phone) race; pending work in the session is discarded
        db.rollback()
        winner = (
            db.query(Contact)
            .filter(Contact.workspace_id == workspace_id)
            .filter(Contact.phone == phone)
            .one()
        )
        return winner, False
    return contact, True


def find_or_create_conversation(
    db: Session,
    workspace_id: str,
    contact_id: str,
    connection_id: str | None,
    require_open: bool = False,
) -> tuple[Conversation, bool]:
    """Reuse the contact's most recent conversation, re-linked to ``connection_id``.

    With ``require_open`` only open conversations are reused.
    """
    q = (
        db.query(Conversation)
        .filter(Conversation.workspace_id == workspace_id)
        .filter(Conversation.contact_id == contact_id)
    )
    if require_open:
        q = q.filter(Conversation.status == "open")
    conv = q.order_by(Conversation.created_at.desc(), Conversation.id.desc()).first()
    if conv:
        if connection_id and conv.connection_id != connection_id:
            logger.info("relinking conversation %s to connection %s", conv.id, connection_id)
            conv.connection_id = connection_id
        return conv, False
    now = utcnow()
    conv = Conversation(
        id=str(uuid.uuid4()),
        workspace_id=workspace_id,
        contact_id=contact_id,
        connection_id=connection_id,
        status="open",
        agente_ativo=False,
        last_activity_at=now,
        created_at=now,
        updated_at=now,
    )
    db.add(conv)
    return conv, True
