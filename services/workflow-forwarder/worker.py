import os, json, asyncio, time
import httpx
from redis import Redis

from packages.relay.config import ConfigResolver
from packages.relay.db import SessionLocal
from packages.relay.logs import json_logger
from packages.relay.models import WebhookLog
from packages.relay.streams import ensure_group, read_group

redis = Redis.from_url(os.getenv("REDIS_URL", "redis://redis:6379/0"), decode_responses=True)

STREAM = os.getenv("RELAY_FORWARD_STREAM", "relay:forward")
CONSUMER_GROUP = os.getenv("FORWARDER_GROUP", "forwarder")
CONSUMER_NAME = os.getenv("FORWARDER_CONSUMER", None) or os.getenv("HOSTNAME", "forwarder-1")
try:
    MAX_RETRIES = int(os.getenv("FORWARDER_MAX_RETRIES", "3"))
except Exception:
    MAX_RETRIES = 3
try:
    TIMEOUT = float(os.getenv("FORWARDER_TIMEOUT_SECONDS", "10"))
except Exception:
    TIMEOUT = 10.0

logger = json_logger("workflow_forwarder")
config = ConfigResolver.from_env()


async def _deliver(url: str, body: dict, secret: str | None) -> httpx.Response:
    headers = {"Content-Type": "application/json"}
    if secret:
        headers["Authorization"] = f"Bearer {secret}"
    resp = await asyncio.to_thread(httpx.post, url, content=json.dumps(body).encode("utf-8"), headers=headers, timeout=TIMEOUT)
    resp.raise_for_status()
    return resp


def _update_log(log_id: str | None, status: str, response_status: int | None = None, response_body: str | None = None) -> None:
    if not log_id:
        return
    try:
        with SessionLocal() as db:
            row = db.get(WebhookLog, log_id)
            if row:
                row.status = status
                row.response_status = response_status
                row.response_body = (response_body or "")[:2000] or None
                db.commit()
    except Exception:
        logger.exception("webhook log update failed for %s", log_id)


async def process_event(fields: dict) -> str:
    """Deliver one forward event to the workspace's workflow engine; returns the final log status."""
    workspace_id = fields.get("workspace_id") or ""
    log_id = fields.get("log_id") or None
    request_id = fields.get("request_id")
    body_raw = fields.get("payload") or "{}"
    try:
        body = json.loads(body_raw)
    except Exception:
        body = {"raw": body_raw}

    with SessionLocal() as db:
        settings = config.webhook_settings(db, workspace_id) if workspace_id else None
    if settings is None:
        logger.warning("no workflow webhook configured for workspace %s", workspace_id, extra={"request_id": request_id})
        _update_log(log_id, "skipped_no_webhook")
        return "skipped_no_webhook"

    for attempt in range(MAX_RETRIES):
        try:
            resp = await _deliver(settings.url, body, settings.secret)
            _update_log(log_id, "forwarded", resp.status_code, resp.text)
            try:
                redis.xadd("relay:forwarded", {
                    "workspace_id": workspace_id,
                    "event_type": fields.get("event_type") or "",
                    "request_id": request_id or "",
                    "ts": str(int(time.time()*1000)),
                })
            except Exception:
                logger.exception("relay:forwarded publish failed")
            logger.info("forwarded %s event", fields.get("event_type"), extra={"request_id": request_id, "workspace_id": workspace_id})
            return "forwarded"
        except Exception as exc:
            logger.exception("forward failed (attempt %s)", attempt+1, extra={"request_id": request_id})
            if attempt < MAX_RETRIES-1:
                await asyncio.sleep(2 ** attempt)
                continue
            status_code = None
            text = str(exc)
            if isinstance(exc, httpx.HTTPStatusError):
                status_code = exc.response.status_code
                text = exc.response.text
            _update_log(log_id, "forward_failed", status_code, text)
            try:
                redis.xadd(f"{STREAM}:dlq", {**{k: str(v) for k, v in fields.items()}, "error": "forward_failed"})
            except Exception:
                logger.exception("dlq publish failed")
    return "forward_failed"


async def loop():
    await ensure_group(redis, STREAM, CONSUMER_GROUP)
    logger.info("workflow forwarder starting (group=%s consumer=%s)", CONSUMER_GROUP, CONSUMER_NAME)
    while True:
        try:
            entries = await read_group(redis, STREAM, CONSUMER_GROUP, CONSUMER_NAME)
            if not entries:
                await asyncio.sleep(0.1)
                continue
            for msg_id, fields in entries:
                if fields is not None:
                    await process_event(fields)
                try:
                    redis.xack(STREAM, CONSUMER_GROUP, msg_id)
                except Exception:
                    logger.exception("xack failed")
        except Exception:
            logger.exception("forwarder loop error")
            await asyncio.sleep(1)


if __name__ == "__main__":
    asyncio.run(loop())
