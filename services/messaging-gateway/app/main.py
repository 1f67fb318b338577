import os
import logging
import uuid
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import Response
from pydantic import BaseModel, Field
from prometheus_client import CollectorRegistry, Gauge, generate_latest, CONTENT_TYPE_LATEST
from redis import Redis
from sqlalchemy.orm import Session

from packages.relay.config import ConfigResolver
from packages.relay.db import get_db
from packages.relay.errors import RelayError
from packages.relay.outbound import SEND_TIMEOUT, OutboundGateway, SendRequest


app = FastAPI(title="Relay Messaging Gateway")
logger = logging.getLogger(__name__)

redis = Redis.from_url(
    os.getenv("REDIS_URL", "redis://redis:6379/0"), decode_responses=True
)

config = ConfigResolver.from_env()
# Tests replace the gateway (and its transport) with fakes
gateway = OutboundGateway(config=config)


class SendBody(BaseModel):
    conversation_id: Optional[str] = None
    content: Optional[str] = None
    message_type: str = "text"
    file_url: Optional[str] = None
    file_name: Optional[str] = None
    mime_type: Optional[str] = None
    sender_id: Optional[str] = None
    sender_type: Optional[str] = None
    client_message_id: Optional[str] = Field(default=None, alias="clientMessageId")

    model_config = {"populate_by_name": True}


def _incr(name: str) -> None:
    try:
        redis.incr(f"mgw:metrics:{name}")
    except Exception:
        pass


@app.post("/api/messages/send")
async def send_message(body: SendBody, request: Request, db: Session = Depends(get_db)):
    request_id = request.headers.get("X-Request-Id") or str(uuid.uuid4())
    req = SendRequest(
        conversation_id=body.conversation_id,
        content=body.content,
        message_type=body.message_type or "text",
        file_url=body.file_url,
        file_name=body.file_name,
        mime_type=body.mime_type,
        client_message_id=body.client_message_id,
        sender_id=body.sender_id,
        sender_type=body.sender_type or "agent",
    )
    try:
        result = await gateway.send(db, req, request_id=request_id)
    except RelayError as exc:
        _incr("failed_total")
        logger.info("send rejected: %s (%s)", exc.detail, exc.status_code, extra={"request_id": request_id})
        raise HTTPException(exc.status_code, exc.detail)
    except Exception:
        _incr("failed_total")
        logger.exception("send failed", extra={"request_id": request_id})
        raise HTTPException(500, "internal-error")
    _incr("duplicate_total" if result.duplicate else "sent_total")
    return {**result.as_dict(), "request_id": request_id}


@app.get("/internal/status")
async def status():
    """Basic gateway configuration, without secrets."""
    return {
        "send_timeout_seconds": SEND_TIMEOUT,
        "has_fallback_webhook": bool(config.fallback_webhook_url),
        "has_fallback_provider": bool(config.fallback_provider_url and config.fallback_provider_key),
    }


@app.get("/healthz")
async def healthz():
    return {"ok": True}


@app.get("/metrics")
async def metrics_prom():
    reg = CollectorRegistry()
    gauges = {
        "sent_total": Gauge('relay_mgw_sent_total', 'Messages handed to the workflow engine', registry=reg),
        "failed_total": Gauge('relay_mgw_failed_total', 'Sends rejected or failed', registry=reg),
        "duplicate_total": Gauge('relay_mgw_duplicate_total', 'Sends suppressed by clientMessageId', registry=reg),
    }
    g_forward = Gauge('relay_forward_stream_len', 'Length of relay:forward stream', registry=reg)
    for name, gauge in gauges.items():
        try:
            gauge.set(int(redis.get(f"mgw:metrics:{name}") or 0))
        except Exception:
            gauge.set(0)
    try:
        g_forward.set(redis.xlen("relay:forward"))
    except Exception:
        g_forward.set(0)
    return Response(content=generate_latest(reg), media_type=CONTENT_TYPE_LATEST)
