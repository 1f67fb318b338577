"""WhatsApp JID / phone number normalization.

The canonical phone key is the digit-only form of the number; it is the
identity used for contact deduplication inside a workspace.
"""
import re

_JID_SUFFIX = re.compile(r"@(s\.whatsapp\.net|lid|g\.us|broadcast|c\.us)$", re.IGNORECASE)
_DEVICE_PART = re.compile(r":\d+$")
_NON_DIGITS = re.compile(r"\D")


def normalize_phone(raw: str | None) -> str:
    """Return the digits of a JID or free-form phone; empty input gives ""."""
    if not raw:
        return ""
    value = _JID_SUFFIX.sub("", str(raw).strip())
    # multi-device JIDs look like 5511999998888:12@s.whatsapp.net
    value = _DEVICE_PART.sub("", value)
    return _NON_DIGITS.sub("", value)


def is_group_jid(jid: str | None) -> bool:
    """Group and broadcast chats are not ingested."""
    if not jid:
        return False
    lowered = jid.strip().lower()
    return lowered.endswith("@g.us") or lowered.endswith("@broadcast")
