"""Per-workspace configuration lookup.

Webhook endpoints and provider credentials live in their own tables; the
resolver turns them into typed values or None so callers decide whether a
missing piece is fatal. Environment values act as deployment-wide fallbacks.
"""
import os
from dataclasses import dataclass

from sqlalchemy.orm import Session

from .models import ProviderCredentials as DBProviderCredentials, WorkspaceWebhookSettings


@dataclass(frozen=True)
class WebhookSettings:
    url: str
    secret: str | None = None


@dataclass(frozen=True)
class ProviderCredentials:
    base_url: str
    api_key: str


class ConfigResolver:
    def __init__(
        self,
        fallback_webhook_url: str | None = None,
        fallback_webhook_secret: str | None = None,
        fallback_provider_url: str | None = None,
        fallback_provider_key: str | None = None,
        provider: str = "evolution",
    ):
        self.fallback_webhook_url = fallback_webhook_url or None
        self.fallback_webhook_secret = fallback_webhook_secret or None
        self.fallback_provider_url = fallback_provider_url or None
        self.fallback_provider_key = fallback_provider_key or None
        self.provider = provider

    @classmethod
    def from_env(cls) -> "ConfigResolver":
        return cls(
            fallback_webhook_url=os.getenv("N8N_INBOUND_WEBHOOK_URL", ""),
            fallback_webhook_secret=os.getenv("N8N_WEBHOOK_SECRET", ""),
            fallback_provider_url=os.getenv("EVOLUTION_API_URL", ""),
            fallback_provider_key=os.getenv("EVOLUTION_API_KEY", ""),
        )

    def webhook_settings(self, db: Session, workspace_id: str) -> WebhookSettings | None:
        row = (
            db.query(WorkspaceWebhookSettings)
            .filter(WorkspaceWebhookSettings.workspace_id == workspace_id)
            .first()
        )
        if row and row.webhook_url:
            return WebhookSettings(url=row.webhook_url, secret=row.webhook_secret or None)
        if self.fallback_webhook_url:
            return WebhookSettings(url=self.fallback_webhook_url, secret=self.fallback_webhook_secret)
        return None

    def provider_credentials(self, db: Session, workspace_id: str) -> ProviderCredentials | None:
        row = (
            db.query(DBProviderCredentials)
            .filter(DBProviderCredentials.workspace_id == workspace_id)
            .filter(DBProviderCredentials.provider == self.provider)
            .first()
        )
        if row and row.base_url and row.api_key:
            return ProviderCredentials(base_url=row.base_url.rstrip("/"), api_key=row.api_key)
        if self.fallback_provider_url and self.fallback_provider_key:
            return ProviderCredentials(base_url=self.fallback_provider_url.rstrip("/"), api_key=self.fallback_provider_key)
        return None
