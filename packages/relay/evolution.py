import logging
import os

import httpx

from .config import ProviderCredentials
from .errors import TransportError

logger = logging.getLogger(__name__)

try:
    PROVIDER_TIMEOUT = float(os.getenv("EVOLUTION_TIMEOUT_SECONDS", "30"))
except Exception:
    PROVIDER_TIMEOUT = 30.0

WEBHOOK_EVENTS = ["MESSAGES_UPSERT", "MESSAGES_UPDATE", "CONNECTION_UPDATE", "QRCODE_UPDATED"]


class EvolutionClient:
    """Thin async client for the Evolution API endpoints the relay calls."""

    def __init__(self, credentials: ProviderCredentials, timeout: float = PROVIDER_TIMEOUT):
        self.base_url = credentials.base_url.rstrip("/")
        self.api_key = credentials.api_key
        self.timeout = timeout

    def _headers(self) -> dict:
        return {"apikey": self.api_key, "Content-Type": "application/json"}

    async def fetch_profile_picture(self, instance_name: str, phone: str) -> str | None:
        url = f"{self.base_url}/chat/fetchProfilePictureUrl/{instance_name}"
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            resp = await client.post(url, json={"number": phone}, headers=self._headers())
        if resp.status_code != 200:
            logger.info("profile picture lookup for %s returned %s", phone, resp.status_code)
            return None
        data = resp.json()
        if not isinstance(data, dict):
            return None
        return data.get("profilePictureUrl") or data.get("picture") or None

    async def create_instance(self, instance_name: str, webhook_url: str | None = None, events: list | None = None) -> dict:
        """Create a Baileys instance; returns state, base64 QR code (when sent) and the raw body."""
        payload = {
            "instanceName": instance_name,
            "integration": "WHATSAPP-BAILEYS",
            "qrcode": True,
        }
        if webhook_url:
            payload["webhook"] = {
                "url": webhook_url,
                "byEvents": False,
                "base64": True,
                "events": events or WEBHOOK_EVENTS,
            }
        url = f"{self.base_url}/instance/create"
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(url, json=payload, headers=self._headers())
        except httpx.HTTPError as exc:
            raise TransportError("provider-unreachable", error=str(exc))
        if resp.status_code >= 300:
            raise TransportError("provider-error", upstream_status=resp.status_code, body=resp.text[:500])
        data = resp.json() if resp.content else {}
        instance = data.get("instance") if isinstance(data.get("instance"), dict) else {}
        qr = data.get("qrcode") or instance.get("qrcode")
        qr = qr if isinstance(qr, dict) else {}
        return {
            "state": instance.get("status") or instance.get("state"),
            "qrcode": qr.get("base64") or qr.get("code"),
            "raw": data,
        }
