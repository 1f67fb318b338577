import os
import logging
import re
import uuid
from contextlib import asynccontextmanager
from typing import List, Optional

import jwt
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from pydantic import BaseModel, ConfigDict
from sqlalchemy.orm import Session

from packages.relay.config import ConfigResolver
from packages.relay.db import engine, get_db
from packages.relay.errors import RelayError
from packages.relay.evolution import EvolutionClient
from packages.relay.models import Base, Connection, Conversation, ConversationAssignment, Queue, utcnow
from packages.relay.phone import normalize_phone
from packages.relay.resolvers import find_or_create_contact, find_or_create_conversation


logger = logging.getLogger(__name__)

SKIP_DDL = os.getenv("CRM_SKIP_DDL", "true").lower() == "true"


@asynccontextmanager
async def lifespan(app: FastAPI):
    # dev convenience; real deployments run the alembic migrations
    if not SKIP_DDL:
        Base.metadata.create_all(bind=engine)
    yield


app = FastAPI(title="Relay CRM API", lifespan=lifespan)

JWT_SECRET = os.getenv("JWT_SECRET", "devsecret")
REQUIRE_AUTH = os.getenv("CRM_REQUIRE_AUTH", "false").lower() == "true"

config = ConfigResolver.from_env()
# Tests swap this for a fake client class
evolution_client_factory = EvolutionClient


def decode_bearer_token(request: Request) -> dict | None:
    auth = request.headers.get("Authorization")
    if not auth or not auth.startswith("Bearer "):
        return None
    token = auth.split(" ", 1)[1]
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=["HS256"])
    except jwt.PyJWTError:
        if REQUIRE_AUTH:
            raise HTTPException(status_code=401, detail="invalid-token")
        return None


def current_user_optional(request: Request):
    user = decode_bearer_token(request)
    if REQUIRE_AUTH and not user:
        raise HTTPException(status_code=401, detail="unauthorized")
    return user


def _check_workspace(user: dict | None, workspace_id: str) -> None:
    if user and user.get("workspace_id") and user.get("workspace_id") != workspace_id:
        raise HTTPException(status_code=403, detail="forbidden: workspace mismatch")


def _load_conversation(db: Session, conversation_id: str, user: dict | None) -> Conversation:
    conv = db.get(Conversation, conversation_id)
    if not conv:
        raise HTTPException(status_code=404, detail="conversation not found")
    if user and user.get("workspace_id") and conv.workspace_id != user.get("workspace_id"):
        raise HTTPException(status_code=404, detail="conversation not found")
    return conv


# Pydantic schemas ---------------------------------------------------------
class QuickConversationIn(BaseModel):
    phone: Optional[str] = None
    name: Optional[str] = None
    connection_id: Optional[str] = None


class QueueTransferIn(BaseModel):
    queue_id: Optional[str] = None
    assigned_user_id: Optional[str] = None
    changed_by: Optional[str] = None


class ConnectionIn(BaseModel):
    workspace_id: str
    instance_name: str
    phone_number: Optional[str] = None
    queue_id: Optional[str] = None
    webhook_url: Optional[str] = None


class AssignmentOut(BaseModel):
    id: str
    conversation_id: str
    from_assigned_user_id: Optional[str] = None
    to_assigned_user_id: Optional[str] = None
    from_queue_id: Optional[str] = None
    to_queue_id: Optional[str] = None
    action: str
    changed_by: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


# Routes -------------------------------------------------------------------
@app.post("/api/conversations/quick")
def quick_conversation(
    payload: QuickConversationIn,
    x_workspace_id: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
    user: dict | None = Depends(current_user_optional),
):
    if not x_workspace_id:
        raise HTTPException(status_code=400, detail="missing-workspace")
    _check_workspace(user, x_workspace_id)
    phone = re.sub(r"\D", "", payload.phone or "")
    if not phone:
        raise HTTPException(status_code=400, detail="missing-phone")

    connections = db.query(Connection).filter(Connection.workspace_id == x_workspace_id).all()
    if any(c.phone_number and normalize_phone(c.phone_number) == phone for c in connections):
        raise HTTPException(status_code=400, detail="phone-belongs-to-connection")
    connection_id = payload.connection_id
    if not connection_id:
        connected = [c for c in connections if c.status == "connected"]
        connection_id = connected[0].id if connected else None

    contact, contact_created = find_or_create_contact(
        db, x_workspace_id, phone, name=payload.name, extra_info={"temporary": True}
    )
    conv, conv_created = find_or_create_conversation(
        db, x_workspace_id, contact.id, connection_id, require_open=True
    )
    db.commit()
    logger.info("quick conversation %s for contact %s (new=%s)", conv.id, contact.id, conv_created)
    return {
        "conversation_id": conv.id,
        "contact_id": contact.id,
        "contact_created": contact_created,
        "conversation_created": conv_created,
    }


@app.post("/api/conversations/{conversation_id}/queue")
def transfer_to_queue(
    conversation_id: str,
    payload: QueueTransferIn,
    db: Session = Depends(get_db),
    user: dict | None = Depends(current_user_optional),
):
    conv = _load_conversation(db, conversation_id, user)
    sent = payload.model_fields_set
    queue = None
    if payload.queue_id:
        queue = db.get(Queue, payload.queue_id)
        if not queue or queue.workspace_id != conv.workspace_id:
            raise HTTPException(status_code=404, detail="queue not found")

    from_queue, from_user = conv.queue_id, conv.assigned_user_id
    # fields left out of the body keep their current value
    queue_changed = "queue_id" in sent and payload.queue_id != from_queue
    now = utcnow()
    if queue_changed:
        conv.queue_id = payload.queue_id
        # the queue decides whether its AI agent owns the conversation
        conv.agente_ativo = bool(queue and queue.ai_agent_id)
        conv.agent_active_id = queue.ai_agent_id if queue else None
    if "assigned_user_id" in sent:
        conv.assigned_user_id = payload.assigned_user_id or None
        conv.assigned_at = now if payload.assigned_user_id else None
    conv.updated_at = now

    user_changed = conv.assigned_user_id != from_user
    if queue_changed or user_changed:
        db.add(ConversationAssignment(
            id=str(uuid.uuid4()),
            conversation_id=conv.id,
            from_assigned_user_id=from_user,
            to_assigned_user_id=conv.assigned_user_id,
            from_queue_id=from_queue,
            to_queue_id=conv.queue_id,
            action="queue_transfer" if queue_changed else "transfer",
            changed_by=payload.changed_by or (user or {}).get("sub"),
            changed_at=now,
        ))
    db.commit()
    return {
        "ok": True,
        "conversation_id": conv.id,
        "queue_id": conv.queue_id,
        "assigned_user_id": conv.assigned_user_id,
        "agente_ativo": conv.agente_ativo,
    }


@app.get("/api/conversations/{conversation_id}/assignments", response_model=List[AssignmentOut])
def list_assignments(
    conversation_id: str,
    db: Session = Depends(get_db),
    user: dict | None = Depends(current_user_optional),
):
    conv = _load_conversation(db, conversation_id, user)
    return (
        db.query(ConversationAssignment)
        .filter(ConversationAssignment.conversation_id == conv.id)
        .order_by(ConversationAssignment.changed_at, ConversationAssignment.id)
        .all()
    )


@app.post("/api/connections", status_code=201)
async def create_connection(
    payload: ConnectionIn,
    db: Session = Depends(get_db),
    user: dict | None = Depends(current_user_optional),
):
    _check_workspace(user, payload.workspace_id)
    creds = config.provider_credentials(db, payload.workspace_id)
    if creds is None:
        raise HTTPException(status_code=424, detail="provider-credentials-missing")
    client = evolution_client_factory(creds)
    try:
        created = await client.create_instance(payload.instance_name, webhook_url=payload.webhook_url)
    except RelayError as exc:
        logger.error("instance creation failed for %s: %s", payload.instance_name, exc.detail)
        raise HTTPException(status_code=exc.status_code, detail=exc.detail)

    connection = Connection(
        id=str(uuid.uuid4()),
        workspace_id=payload.workspace_id,
        instance_name=payload.instance_name,
        phone_number=normalize_phone(payload.phone_number) if payload.phone_number else None,
        status="connected" if created.get("state") == "open" else "qr",
        queue_id=payload.queue_id,
        provider=config.provider,
        created_at=utcnow(),
    )
    db.add(connection)
    db.commit()
    return {"id": connection.id, "status": connection.status, "qrcode": created.get("qrcode")}


@app.get("/healthz")
async def healthz():
    return {"ok": True}
