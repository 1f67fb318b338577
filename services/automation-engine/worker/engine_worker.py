import os, asyncio

from prometheus_client import Counter, start_http_server
from redis import Redis

from packages.relay.automations import AutomationEngine
from packages.relay.db import SessionLocal
from packages.relay.logs import json_logger
from packages.relay.streams import ensure_group, read_group

redis = Redis.from_url(os.getenv("REDIS_URL", "redis://redis:6379/0"), decode_responses=True)
logger = json_logger("automation_worker")

# Metrics are opt-in so tests can import the module repeatedly
_METRICS_ENABLED = os.getenv("AUTOMATION_ENGINE_METRICS", "false").lower() == "true"
STREAM = os.getenv("RELAY_AUTOMATION_STREAM", "relay:automations")
DLQ_STREAM = f"{STREAM}:dlq"
CONSUMER_GROUP = os.getenv("AUTOMATION_ENGINE_GROUP", "automations")
CONSUMER_NAME = os.getenv("AUTOMATION_ENGINE_CONSUMER", None) or os.getenv("HOSTNAME", "automations-1")
try:
    MAX_RETRIES = int(os.getenv("AUTOMATION_ENGINE_MAX_RETRIES", "2"))
except Exception:
    MAX_RETRIES = 2
try:
    _SCHED_POLL_MS = int(os.getenv("AUTOMATION_SCHED_POLL_MS", "60000"))
except Exception:
    _SCHED_POLL_MS = 60000


class _Noop:
    def inc(self, *args, **kwargs):
        return None


if _METRICS_ENABLED:
    CHECKS = Counter('relay_automation_checks_total', 'Message automation checks processed')
    FIRED = Counter('relay_automation_fired_total', 'Automations fired')
    ERRORS = Counter('relay_automation_errors_total', 'Automation worker errors')
    RETRIED = Counter('relay_automation_retries_total', 'Automation checks requeued')
    DLQ = Counter('relay_automation_dlq_total', 'Automation checks dead-lettered')
else:
    CHECKS = _Noop()
    FIRED = _Noop()
    ERRORS = _Noop()
    RETRIED = _Noop()
    DLQ = _Noop()

# Tests replace the engine (gateway transport, sleep) with fakes
engine = AutomationEngine()


async def handle_check(msg_id: str, fields: dict) -> bool:
    """Run message_received automations for one ingested message. False means retry."""
    workspace_id = fields.get("workspace_id")
    contact_id = fields.get("contact_id")
    request_id = fields.get("request_id")
    if not workspace_id or not contact_id:
        logger.warning("automation check %s without workspace/contact, dropped", msg_id)
        return True
    try:
        with SessionLocal() as db:
            fired = await engine.check_message_automations(db, workspace_id, contact_id)
    except Exception:
        logger.exception("automation check failed", extra={"request_id": request_id, "contact_id": contact_id})
        ERRORS.inc()
        return False
    CHECKS.inc()
    for _ in fired:
        FIRED.inc()
    logger.info("automation check %s done", msg_id, extra={"request_id": request_id, "contact_id": contact_id, "fired": fired})
    return True


async def run_time_based_once() -> list:
    with SessionLocal() as db:
        fired = await engine.check_time_based_automations(db)
    for _ in fired:
        FIRED.inc()
    return fired


def _retry_or_dlq(fields: dict) -> None:
    try:
        retries = int(fields.get("retries", "0"))
    except Exception:
        retries = 0
    if retries < MAX_RETRIES:
        fields["retries"] = str(retries + 1)
        try:
            redis.xadd(STREAM, {k: str(v) for k, v in fields.items()})
            RETRIED.inc()
        except Exception:
            logger.exception("requeue failed")
        return
    try:
        redis.xadd(DLQ_STREAM, {**{k: str(v) for k, v in fields.items()}, "error": "max-retries-exceeded"})
        DLQ.inc()
    except Exception:
        logger.exception("dlq publish failed")


async def loop():
    await ensure_group(redis, STREAM, CONSUMER_GROUP)
    logger.info("automation worker starting (group=%s consumer=%s)", CONSUMER_GROUP, CONSUMER_NAME)
    while True:
        try:
            entries = await read_group(redis, STREAM, CONSUMER_GROUP, CONSUMER_NAME)
            if not entries:
                await asyncio.sleep(0.1)
                continue
            for msg_id, fields in entries:
                if fields is None:
                    ERRORS.inc()
                elif not await handle_check(msg_id, fields):
                    _retry_or_dlq(fields)
                # acked either way; failures were requeued or dead-lettered
                try:
                    redis.xack(STREAM, CONSUMER_GROUP, msg_id)
                except Exception:
                    logger.exception("xack failed")
        except Exception:
            logger.exception("automation worker loop error")
            ERRORS.inc()
            await asyncio.sleep(1)


async def scheduler_loop():
    logger.info("time-in-column scheduler starting (poll=%sms)", _SCHED_POLL_MS)
    while True:
        try:
            fired = await run_time_based_once()
            if fired:
                logger.info("time-based automations fired: %s", fired)
        except Exception:
            logger.exception("scheduler loop error")
            ERRORS.inc()
        await asyncio.sleep(_SCHED_POLL_MS / 1000.0)


if __name__ == "__main__":
    try:
        port = int(os.getenv("AUTOMATION_ENGINE_METRICS_PORT", "0") or 0)
        if port > 0 and _METRICS_ENABLED:
            start_http_server(port)
    except Exception:
        logger.exception("metrics server failed to start")

    async def _main():
        await asyncio.gather(loop(), scheduler_loop())
    asyncio.run(_main())
