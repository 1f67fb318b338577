"""Media files handed over by the workflow engine.

The engine posts either base64 content or a download URL for a message's
media; the bytes are stored in object storage and the message row is
pointed at the stored object.
"""
import base64
import binascii
import io
import logging
import os
import time
import uuid

import httpx
from minio import Minio
from sqlalchemy.orm import Session

from .errors import NotFoundError, TransportError, ValidationError
from .models import Message

logger = logging.getLogger(__name__)

MINIO_ENDPOINT = os.getenv("MINIO_ENDPOINT", "minio:9000")
MINIO_ACCESS_KEY = os.getenv("MINIO_ACCESS_KEY", "minio")
MINIO_SECRET_KEY = os.getenv("MINIO_SECRET_KEY", "minio12345")
MINIO_SECURE = os.getenv("MINIO_SECURE", "false").lower() == "true"
MINIO_BUCKET = os.getenv("MINIO_BUCKET", "whatsapp-media")
MINIO_PUBLIC_URL = os.getenv("MINIO_PUBLIC_URL", "")
try:
    DOWNLOAD_TIMEOUT = float(os.getenv("MEDIA_DOWNLOAD_TIMEOUT_SECONDS", "30"))
except Exception:
    DOWNLOAD_TIMEOUT = 30.0

_EXTENSION_MIME = {
    "jpg": "image/jpeg", "jpeg": "image/jpeg", "png": "image/png", "gif": "image/gif", "webp": "image/webp",
    "mp4": "video/mp4", "mov": "video/quicktime", "avi": "video/x-msvideo", "webm": "video/webm", "3gp": "video/3gpp",
    "mp3": "audio/mpeg", "ogg": "audio/ogg", "wav": "audio/wav", "m4a": "audio/mp4", "aac": "audio/aac",
    "pdf": "application/pdf",
    "doc": "application/msword",
    "docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "xls": "application/vnd.ms-excel",
    "xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "ppt": "application/vnd.ms-powerpoint",
    "pptx": "application/vnd.openxmlformats-officedocument.presentationml.presentation",
    "txt": "text/plain", "xml": "application/xml", "json": "application/json",
}
_MIME_EXTENSION = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/gif": "gif",
    "image/webp": "webp",
    "video/mp4": "mp4",
    "video/webm": "webm",
    "video/quicktime": "mov",
    "audio/mpeg": "mp3",
    "audio/ogg": "ogg",
    "audio/wav": "wav",
    "audio/mp4": "m4a",
    "application/pdf": "pdf",
    "text/plain": "txt",
    "application/xml": "xml",
    "application/json": "json",
}


def decode_base64(data: str) -> tuple[bytes, str | None]:
    """Decode raw base64 or a ``data:<mime>;base64,<payload>`` URL."""
    mime = None
    if data.startswith("data:") and "," in data:
        header, data = data.split(",", 1)
        mime = header[5:].split(";", 1)[0] or None
    try:
        return base64.b64decode(data, validate=False), mime
    except (binascii.Error, ValueError):
        raise ValidationError("invalid-base64")


def detect_mime(buf: bytes) -> str | None:
    """Sniff the content type from magic numbers; zip-based office files fall through to the extension."""
    head = buf[:12].hex()
    if head.startswith("ffd8ff"):
        return "image/jpeg"
    if head.startswith("89504e47"):
        return "image/png"
    if head.startswith("47494638"):
        return "image/gif"
    if head.startswith("52494646") and "57454250" in head:
        return "image/webp"
    if "667479706d703432" in head or "667479706d703431" in head or "6674797069736f6d" in head:
        return "video/mp4"
    if "667479703367" in head:
        return "video/3gpp"
    if head.startswith("1a45dfa3"):
        return "video/webm"
    if "667479707174" in head:
        return "video/quicktime"
    if "667479704d344120" in head:
        return "audio/mp4"
    if head.startswith("494433") or head.startswith("fff3") or head.startswith("fff2") or head.startswith("fffb"):
        return "audio/mpeg"
    if head.startswith("4f676753"):
        return "audio/ogg"
    if head.startswith("52494646") and "57415645" in head:
        return "audio/wav"
    if head.startswith("25504446"):
        return "application/pdf"
    return None


def mime_from_extension(file_name: str | None) -> str:
    ext = (file_name or "").rsplit(".", 1)[-1].lower() if file_name and "." in file_name else ""
    return _EXTENSION_MIME.get(ext, "application/octet-stream")


def extension_for(mime: str, file_name: str | None = None) -> str:
    if mime in _MIME_EXTENSION:
        return _MIME_EXTENSION[mime]
    if "wordprocessingml" in mime:
        return "docx"
    if "spreadsheetml" in mime:
        return "xlsx"
    if "presentationml" in mime:
        return "pptx"
    if file_name and "." in file_name:
        return file_name.rsplit(".", 1)[-1].lower()
    return "bin"


class MediaStore:
    def __init__(self, client: Minio, bucket: str = MINIO_BUCKET, public_url: str = MINIO_PUBLIC_URL):
        self.client = client
        self.bucket = bucket
        scheme = "https" if MINIO_SECURE else "http"
        self.public_url = (public_url or f"{scheme}://{MINIO_ENDPOINT}").rstrip("/")
        self._bucket_checked = False

    @classmethod
    def from_env(cls) -> "MediaStore":
        host = MINIO_ENDPOINT
        secure = MINIO_SECURE
        if host.startswith("http://"):
            host = host[len("http://"):]
            secure = False
        if host.startswith("https://"):
            host = host[len("https://"):]
            secure = True
        return cls(Minio(host, access_key=MINIO_ACCESS_KEY, secret_key=MINIO_SECRET_KEY, secure=secure))

    def put(self, path: str, data: bytes, content_type: str) -> str:
        if not self._bucket_checked:
            if not self.client.bucket_exists(self.bucket):
                self.client.make_bucket(self.bucket)
            self._bucket_checked = True
        self.client.put_object(self.bucket, path, io.BytesIO(data), len(data), content_type=content_type)
        return f"{self.public_url}/{self.bucket}/{path}"


async def download(url: str, timeout: float = DOWNLOAD_TIMEOUT) -> bytes:
    try:
        async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as client:
            resp = await client.get(url)
    except httpx.HTTPError as exc:
        raise TransportError("media-download-failed", error=str(exc))
    if resp.status_code != 200:
        raise TransportError("media-download-failed", upstream_status=resp.status_code)
    return resp.content


async def process_media(
    db: Session,
    store: MediaStore,
    message_id: str,
    data_base64: str | None = None,
    media_url: str | None = None,
    mime_type: str | None = None,
    file_name: str | None = None,
    downloader=download,
) -> dict:
    """Store a message's media and point the message row at it."""
    if not message_id:
        raise ValidationError("missing-messageId")
    msg = db.get(Message, message_id)
    if not msg:
        msg = db.query(Message).filter(Message.external_id == message_id).first()
    if not msg:
        raise NotFoundError("message-not-found")

    if data_base64:
        payload, data_mime = decode_base64(data_base64)
        mime_type = mime_type or data_mime
    elif media_url:
        payload = await downloader(media_url)
    else:
        raise ValidationError("missing-media-source")
    if not payload:
        raise ValidationError("empty-media")

    final_mime = detect_mime(payload) or mime_type
    if not final_mime or final_mime == "application/octet-stream":
        final_mime = mime_from_extension(file_name)
    ext = extension_for(final_mime, file_name)
    stored_name = f"{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}_{file_name or f'media.{ext}'}"
    url = store.put(f"messages/{stored_name}", payload, final_mime)

    meta = dict(msg.meta or {})
    meta.update({"media_processed": True, "original_mime_type": mime_type, "size": len(payload), "storage_path": f"messages/{stored_name}"})
    msg.file_url = url
    msg.mime_type = final_mime
    msg.file_name = file_name or msg.file_name or f"media.{ext}"
    msg.meta = meta
    db.commit()
    logger.info("stored %s bytes of %s for message %s", len(payload), final_mime, msg.id)
    return {"message_id": msg.id, "file_url": url, "mime_type": final_mime, "size": len(payload)}
