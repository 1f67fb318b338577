"""Redis stream helpers shared by the relay workers."""
import asyncio
import logging

logger = logging.getLogger(__name__)


def parse_kvs(kvs):
    """Normalize redis XREADGROUP key/value payloads into a dict of strings.

    Accepts either a dict or a flat list (k, v, k, v, ...), with bytes or str values.
    Returns None on malformed input.
    """
    try:
        fields = {}
        if isinstance(kvs, dict):
            items = kvs.items()
        else:
            items = zip(kvs[0::2], kvs[1::2])
        for k, v in items:
            k = k.decode() if isinstance(k, bytes) else k
            v = v.decode() if isinstance(v, bytes) else v
            fields[str(k)] = str(v)
        return fields
    except Exception:
        logger.exception("parse_kvs failed")
        return None


async def ensure_group(redis, stream: str, group: str) -> None:
    try:
        await asyncio.to_thread(redis.execute_command, 'XGROUP', 'CREATE', stream, group, '$', 'MKSTREAM')
        logger.info("created consumer group %s on %s", group, stream)
    except Exception as e:
        if "BUSYGROUP" in str(e).upper():
            return
        logger.warning("could not create consumer group %s on %s: %s", group, stream, e)


async def read_group(redis, stream: str, group: str, consumer: str, block_ms: int = 5000):
    """Return (entry_id, fields) pairs from one blocking XREADGROUP call."""
    raw = await asyncio.to_thread(
        redis.execute_command,
        'XREADGROUP', 'GROUP', group, consumer,
        'BLOCK', block_ms, 'COUNT', 1, 'STREAMS', stream, '>'
    )
    out = []
    for stream_item in raw or []:
        for msg in stream_item[1]:
            msg_id = msg[0].decode() if isinstance(msg[0], bytes) else msg[0]
            out.append((msg_id, parse_kvs(msg[1])))
    return out
