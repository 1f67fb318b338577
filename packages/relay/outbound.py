"""Outbound send path: agent replies and automation messages.

The message row is committed with status ``sending`` before the workflow
engine is called, so a provider ack can always find it no matter which
update lands first.
"""
import logging
import os
import re
import uuid
from dataclasses import dataclass

import httpx
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .config import ConfigResolver
from .errors import NotFoundError, ConfigurationError, PersistenceError, TransportError, ValidationError
from .models import Connection, Contact, Conversation, Message, utcnow

logger = logging.getLogger(__name__)

try:
    SEND_TIMEOUT = float(os.getenv("SEND_TIMEOUT_SECONDS", "30"))
except Exception:
    SEND_TIMEOUT = 30.0

_PLACEHOLDER = re.compile(r"^\[.*\]$")


@dataclass
class SendRequest:
    conversation_id: str | None
    content: str | None = None
    message_type: str = "text"
    file_url: str | None = None
    file_name: str | None = None
    mime_type: str | None = None
    client_message_id: str | None = None
    sender_id: str | None = None
    sender_type: str = "agent"

    @property
    def is_media(self) -> bool:
        return bool(self.message_type) and self.message_type != "text"

    @property
    def effective_content(self) -> str:
        # media sends from the UI carry "[IMAGE]"-style placeholders
        if self.is_media and self.content and _PLACEHOLDER.match(self.content):
            return ""
        return self.content or ""


@dataclass
class SendResult:
    message_id: str
    external_id: str
    status: str
    duplicate: bool = False
    evolution_key_id: str | None = None

    def as_dict(self) -> dict:
        return {
            "success": True,
            "message_id": self.message_id,
            "external_id": self.external_id,
            "status": "duplicate" if self.duplicate else self.status,
            "evolution_key_id": self.evolution_key_id,
        }


@dataclass
class TransportResponse:
    status_code: int
    body: dict | None
    text: str = ""

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


class WorkflowTransport:
    """POSTs JSON to the workflow engine webhook."""

    def __init__(self, timeout: float = SEND_TIMEOUT):
        self.timeout = timeout

    async def post(self, url: str, payload: dict, secret: str | None = None) -> TransportResponse:
        headers = {"Content-Type": "application/json"}
        if secret:
            headers["Authorization"] = f"Bearer {secret}"
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            resp = await client.post(url, json=payload, headers=headers)
        try:
            body = resp.json()
        except ValueError:
            body = None
        return TransportResponse(status_code=resp.status_code, body=body if isinstance(body, dict) else None, text=resp.text)


def provider_message_id(body: dict | None) -> str | None:
    if not body:
        return None
    key = body.get("key") if isinstance(body.get("key"), dict) else {}
    return body.get("evolution_key_id") or key.get("id") or body.get("keyId")


class OutboundGateway:
    def __init__(self, config: ConfigResolver | None = None, transport: WorkflowTransport | None = None):
        self.config = config or ConfigResolver.from_env()
        self.transport = transport or WorkflowTransport()

    def _validate(self, req: SendRequest) -> None:
        if req.is_media and not req.file_url:
            raise ValidationError("file_url-required-for-media")
        if not req.conversation_id:
            raise ValidationError("missing-conversation_id")
        if not req.is_media and not req.effective_content:
            raise ValidationError("missing-content")

    def _resolve_connection(self, db: Session, conv: Conversation) -> Connection:
        if conv.connection_id:
            connection = db.get(Connection, conv.connection_id)
            if not connection:
                raise NotFoundError("connection-not-found")
            return connection
        connection = (
            db.query(Connection)
            .filter(Connection.workspace_id == conv.workspace_id)
            .filter(Connection.status == "connected")
            .order_by(Connection.created_at)
            .first()
        )
        if not connection:
            raise NotFoundError("connection-not-found")
        logger.info("conversation %s had no connection, using default %s", conv.id, connection.id)
        conv.connection_id = connection.id
        db.commit()
        return connection

    def _find_by_external_id(self, db: Session, external_id: str) -> Message | None:
        return db.query(Message).filter(Message.external_id == external_id).first()

    async def send(self, db: Session, req: SendRequest, request_id: str | None = None) -> SendResult:
        request_id = request_id or str(uuid.uuid4())
        log_extra = {"request_id": request_id}
        self._validate(req)

        if req.client_message_id:
            existing = self._find_by_external_id(db, req.client_message_id)
            if existing:
                logger.info("send deduplicated by client id %s", req.client_message_id, extra=log_extra)
                return SendResult(existing.id, existing.external_id, existing.status, duplicate=True,
                                  evolution_key_id=existing.evolution_key_id)

        conv = db.get(Conversation, req.conversation_id)
        if not conv:
            raise NotFoundError("conversation-not-found")
        contact = db.get(Contact, conv.contact_id)
        if not contact:
            raise NotFoundError("contact-not-found")
        connection = self._resolve_connection(db, conv)
        webhook = self.config.webhook_settings(db, conv.workspace_id)
        if webhook is None:
            raise ConfigurationError("webhook-not-configured")
        creds = self.config.provider_credentials(db, conv.workspace_id)
        if creds is None:
            raise ConfigurationError("provider-credentials-missing")

        content = req.effective_content
        external_id = req.client_message_id or str(uuid.uuid4())
        msg = Message(
            id=str(uuid.uuid4()),
            conversation_id=conv.id,
            workspace_id=conv.workspace_id,
            content=content,
            message_type=req.message_type,
            sender_type=req.sender_type or "agent",
            sender_id=req.sender_id,
            status="sending",
            external_id=external_id,
            file_url=req.file_url,
            file_name=req.file_name,
            mime_type=req.mime_type,
            meta={"source": "send-gateway", "request_id": request_id, "client_message_id": req.client_message_id},
            created_at=utcnow(),
        )
        db.add(msg)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            existing = self._find_by_external_id(db, external_id)
            if existing is None:
                logger.exception("pre-save failed", extra=log_extra)
                raise PersistenceError("message-save-failed")
            return SendResult(existing.id, existing.external_id, existing.status, duplicate=True,
                              evolution_key_id=existing.evolution_key_id)
        except Exception:
            db.rollback()
            logger.exception("pre-save failed", extra=log_extra)
            raise PersistenceError("message-save-failed")

        payload = {
            "direction": "outbound",
            "external_id": external_id,
            "phone_number": contact.phone,
            "message_type": req.message_type,
            "content": content,
            "file_url": req.file_url,
            "file_name": req.file_name,
            "mime_type": req.mime_type,
            "workspace_id": conv.workspace_id,
            "connection_id": connection.id,
            "conversation_id": conv.id,
            "contact_name": contact.name,
            "instance_name": connection.instance_name,
            "evolution_url": creds.base_url,
            "evolution_api_key": creds.api_key,
            "request_id": request_id,
        }
        try:
            resp = await self.transport.post(webhook.url, payload, webhook.secret)
        except httpx.HTTPError as exc:
            self._mark_failed(db, msg.id, f"{type(exc).__name__}: {exc}", None)
            logger.error("workflow engine unreachable: %s", exc, extra=log_extra)
            raise TransportError("workflow-engine-unreachable", message_id=msg.id)
        if not resp.ok:
            self._mark_failed(db, msg.id, resp.text[:500], resp.status_code)
            logger.error("workflow engine answered %s", resp.status_code, extra=log_extra)
            raise TransportError("workflow-engine-error", message_id=msg.id, upstream_status=resp.status_code)

        key_id = provider_message_id(resp.body)
        # an ack may already have moved the row past "sending"
        db.execute(
            update(Message)
            .where(Message.id == msg.id)
            .where(Message.status == "sending")
            .values(status="sent")
            .execution_options(synchronize_session=False)
        )
        if key_id:
            db.execute(
                update(Message)
                .where(Message.id == msg.id)
                .values(evolution_key_id=key_id)
                .execution_options(synchronize_session=False)
            )
        conv.last_activity_at = utcnow()
        db.commit()
        db.refresh(msg)
        logger.info("message %s handed to workflow engine (%s)", msg.id, msg.status, extra=log_extra)
        return SendResult(msg.id, external_id, msg.status, evolution_key_id=msg.evolution_key_id)

    def _mark_failed(self, db: Session, message_id: str, error: str, upstream_status: int | None) -> None:
        msg = db.get(Message, message_id)
        if not msg:
            return
        meta = dict(msg.meta or {})
        meta["error"] = error
        if upstream_status is not None:
            meta["upstream_status"] = upstream_status
        msg.status = "failed"
        msg.meta = meta
        db.commit()
