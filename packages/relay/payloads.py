"""Decoding of Evolution API webhook payloads.

Message bodies are decoded into one variant per populated sub-object of
``data.message`` instead of probing keys at every call site.
"""
from dataclasses import dataclass, field
from typing import Any, Union

from .phone import is_group_jid, normalize_phone

EVENT_UPSERT = "MESSAGES_UPSERT"
EVENT_UPDATE = "MESSAGES_UPDATE"
MESSAGE_EVENTS = (EVENT_UPSERT, EVENT_UPDATE)

MEDIA_KINDS = ("image", "video", "audio", "document")
UNKNOWN_TYPE = "file"


@dataclass(frozen=True)
class TextBody:
    text: str
    message_type: str = "text"

    @property
    def content(self) -> str:
        return self.text


@dataclass(frozen=True)
class MediaBody:
    kind: str
    caption: str = ""
    url: str | None = None
    mime_type: str | None = None
    file_name: str | None = None

    @property
    def message_type(self) -> str:
        return self.kind

    @property
    def content(self) -> str:
        return self.caption


@dataclass(frozen=True)
class UnknownBody:
    keys: tuple = ()
    message_type: str = UNKNOWN_TYPE
    content: str = ""


MessageBody = Union[TextBody, MediaBody, UnknownBody]


def decode_message(message: dict | None) -> MessageBody:
    message = message if isinstance(message, dict) else {}
    if isinstance(message.get("conversation"), str):
        return TextBody(message["conversation"])
    extended = message.get("extendedTextMessage")
    if isinstance(extended, dict) and isinstance(extended.get("text"), str):
        return TextBody(extended["text"])
    for kind in MEDIA_KINDS:
        sub = message.get(f"{kind}Message")
        if isinstance(sub, dict):
            return MediaBody(
                kind=kind,
                caption=sub.get("caption") or "",
                url=sub.get("url"),
                mime_type=sub.get("mimetype"),
                file_name=sub.get("fileName"),
            )
    return UnknownBody(keys=tuple(sorted(message.keys())))


def normalize_event(event: str | None) -> str:
    """``messages.upsert`` and ``MESSAGES_UPSERT`` name the same event."""
    return (event or "").strip().upper().replace(".", "_")


_ACK_LEVELS = {
    1: "sent",
    2: "delivered",
    3: "read",
}
_ACK_NAMES = {
    "SERVER_ACK": "sent",
    "DELIVERY_ACK": "delivered",
    "READ": "read",
}


def ack_to_status(value: Any) -> str | None:
    """Map a provider ack level (numeric or named) to a message status, or None if unrecognized."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return _ACK_LEVELS.get(value)
    text = str(value).strip()
    if text.isdigit():
        return _ACK_LEVELS.get(int(text))
    return _ACK_NAMES.get(text.upper())


@dataclass
class WebhookEnvelope:
    event: str
    instance: str
    remote_jid: str = ""
    from_me: bool = False
    message_id: str | None = None
    push_name: str | None = None
    body: MessageBody = field(default_factory=UnknownBody)
    ack: Any = None
    raw: dict = field(default_factory=dict)

    @property
    def is_group(self) -> bool:
        return is_group_jid(self.remote_jid)

    @property
    def phone(self) -> str:
        return normalize_phone(self.remote_jid)

    @property
    def is_message_event(self) -> bool:
        return self.event in MESSAGE_EVENTS

    @property
    def ack_status(self) -> str | None:
        return ack_to_status(self.ack)


def parse_envelope(payload: dict) -> WebhookEnvelope:
    """Build an envelope from an Evolution webhook body; tolerates missing keys."""
    data = payload.get("data")
    # some Evolution versions wrap updates in a one-element list
    if isinstance(data, list):
        data = data[0] if data else {}
    if not isinstance(data, dict):
        data = {}
    key = data.get("key") if isinstance(data.get("key"), dict) else {}
    remote_jid = key.get("remoteJid") or data.get("remoteJid") or ""
    message_id = key.get("id") or data.get("keyId") or data.get("id")
    from_me = key.get("fromMe", data.get("fromMe", False))
    ack = data.get("ack")
    if ack is None:
        ack = data.get("status")
    return WebhookEnvelope(
        event=normalize_event(payload.get("event")),
        instance=payload.get("instance") or payload.get("instanceName") or "",
        remote_jid=remote_jid,
        from_me=bool(from_me),
        message_id=str(message_id) if message_id else None,
        push_name=data.get("pushName"),
        body=decode_message(data.get("message")),
        ack=ack,
        raw=payload,
    )
