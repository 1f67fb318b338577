import importlib.util
from pathlib import Path

import httpx
import pytest
from fastapi.testclient import TestClient

from packages.relay.config import ConfigResolver
from packages.relay.outbound import OutboundGateway, TransportResponse


WS = "ws-1"


class FakeRedis:
    def __init__(self):
        self.counters = {}

    def incr(self, key):
        self.counters[key] = self.counters.get(key, 0) + 1
        return self.counters[key]

    def get(self, key):
        value = self.counters.get(key)
        return None if value is None else str(value)

    def xlen(self, stream):
        return 0


class FakeTransport:
    def __init__(self, status_code=200, body=None, on_post=None, error=None):
        self.status_code = status_code
        self.body = body if body is not None else {"key": {"id": "3EB0PROVIDER"}}
        self.on_post = on_post
        self.error = error
        self.calls = []

    async def post(self, url, payload, secret=None):
        self.calls.append((url, payload, secret))
        if self.error is not None:
            raise self.error
        if self.on_post:
            self.on_post(payload)
        return TransportResponse(status_code=self.status_code, body=self.body, text="upstream says no")


def load_gateway():
    service_root = Path(__file__).resolve().parents[1]
    spec = importlib.util.spec_from_file_location("messaging_gateway_main", str(service_root / "app" / "main.py"))
    mod = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(mod)  # type: ignore
    return mod


def seed(webhook=True, credentials=True):
    from packages.relay.db import SessionLocal
    from packages.relay.models import (
        Connection,
        Contact,
        Conversation,
        ProviderCredentials,
        Workspace,
        WorkspaceWebhookSettings,
    )

    with SessionLocal() as db:
        db.add(Workspace(id=WS, name="Acme"))
        db.add(Connection(id="conn-1", workspace_id=WS, instance_name="inst-1", status="connected"))
        db.add(Contact(id="c-1", workspace_id=WS, phone="5511999998888", name="Maria"))
        db.add(Conversation(id="cv-1", workspace_id=WS, contact_id="c-1", connection_id="conn-1", status="open"))
        db.add(Conversation(id="cv-2", workspace_id=WS, contact_id="c-1", connection_id=None, status="open"))
        if webhook:
            db.add(WorkspaceWebhookSettings(id="wh-1", workspace_id=WS, webhook_url="https://n8n.test/hook", webhook_secret="whs"))
        if credentials:
            db.add(ProviderCredentials(id="pc-1", workspace_id=WS, provider="evolution", base_url="https://evo.test/", api_key="evo-key"))
        db.commit()


@pytest.fixture
def gw(tmp_path, monkeypatch):
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{(tmp_path / 'test.db').as_posix()}")
    from packages.relay.db import get_engine
    from packages.relay.models import Base

    Base.metadata.create_all(bind=get_engine())
    mod = load_gateway()
    mod.redis = FakeRedis()
    mod.transport = FakeTransport()
    mod.gateway = OutboundGateway(config=ConfigResolver(), transport=mod.transport)
    return mod


def messages():
    from packages.relay.db import SessionLocal
    from packages.relay.models import Message

    with SessionLocal() as db:
        return db.query(Message).all()


def test_send_presaves_and_marks_sent(gw):
    seed()
    client = TestClient(gw.app)
    r = client.post("/api/messages/send", json={"conversation_id": "cv-1", "content": "hello"}, headers={"X-Request-Id": "req-1"})
    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "sent"
    assert body["evolution_key_id"] == "3EB0PROVIDER"
    assert body["request_id"] == "req-1"

    url, payload, secret = gw.transport.calls[0]
    assert url == "https://n8n.test/hook"
    assert secret == "whs"
    assert payload["phone_number"] == "5511999998888"
    assert payload["instance_name"] == "inst-1"
    assert payload["evolution_url"] == "https://evo.test"
    assert payload["external_id"] == body["external_id"]

    (msg,) = messages()
    assert msg.status == "sent"
    assert msg.sender_type == "agent"
    assert msg.evolution_key_id == "3EB0PROVIDER"


def test_ack_arriving_during_send_is_not_overwritten(gw):
    seed()
    from packages.relay.db import SessionLocal
    from packages.relay.ingest import apply_status
    from packages.relay.models import Message

    def deliver_before_response(payload):
        # the provider acks while the workflow engine call is still open
        with SessionLocal() as db:
            msg = db.query(Message).filter(Message.external_id == payload["external_id"]).one()
            assert msg.status == "sending"
            apply_status(msg, "delivered")
            db.commit()

    gw.transport.on_post = deliver_before_response
    client = TestClient(gw.app)
    r = client.post("/api/messages/send", json={"conversation_id": "cv-1", "content": "hello"})
    assert r.status_code == 200
    assert r.json()["status"] == "delivered"
    rows = messages()
    assert len(rows) == 1
    assert rows[0].status == "delivered"
    assert rows[0].delivered_at is not None


def test_client_message_id_deduplicates(gw):
    seed()
    client = TestClient(gw.app)
    body = {"conversation_id": "cv-1", "content": "hello", "clientMessageId": "client-123"}
    first = client.post("/api/messages/send", json=body).json()
    second = client.post("/api/messages/send", json=body).json()
    assert second["status"] == "duplicate"
    assert second["message_id"] == first["message_id"]
    assert first["external_id"] == "client-123"
    assert len(gw.transport.calls) == 1
    assert len(messages()) == 1
    assert gw.redis.counters["mgw:metrics:duplicate_total"] == 1


@pytest.mark.parametrize(
    "body,detail",
    [
        ({"conversation_id": "cv-1"}, "missing-content"),
        ({"content": "hello"}, "missing-conversation_id"),
        ({"conversation_id": "cv-1", "message_type": "image"}, "file_url-required-for-media"),
    ],
)
def test_invalid_requests_are_rejected(gw, body, detail):
    seed()
    client = TestClient(gw.app)
    r = client.post("/api/messages/send", json=body)
    assert r.status_code == 400
    assert r.json()["detail"] == detail
    assert messages() == []


def test_unknown_conversation(gw):
    seed()
    client = TestClient(gw.app)
    r = client.post("/api/messages/send", json={"conversation_id": "nope", "content": "hello"})
    assert r.status_code == 404


def test_missing_webhook_configuration(gw):
    seed(webhook=False)
    client = TestClient(gw.app)
    r = client.post("/api/messages/send", json={"conversation_id": "cv-1", "content": "hello"})
    assert r.status_code == 424
    assert r.json()["detail"] == "webhook-not-configured"
    assert messages() == []


def test_missing_provider_credentials(gw):
    seed(credentials=False)
    client = TestClient(gw.app)
    r = client.post("/api/messages/send", json={"conversation_id": "cv-1", "content": "hello"})
    assert r.status_code == 424
    assert r.json()["detail"] == "provider-credentials-missing"


def test_env_fallback_configuration(gw):
    seed(webhook=False, credentials=False)
    gw.gateway.config = ConfigResolver(
        fallback_webhook_url="https://n8n.fallback/hook",
        fallback_provider_url="https://evo.fallback",
        fallback_provider_key="k",
    )
    client = TestClient(gw.app)
    r = client.post("/api/messages/send", json={"conversation_id": "cv-1", "content": "hello"})
    assert r.status_code == 200
    assert gw.transport.calls[0][0] == "https://n8n.fallback/hook"


def test_upstream_error_marks_message_failed(gw):
    seed()
    gw.transport.status_code = 500
    client = TestClient(gw.app)
    r = client.post("/api/messages/send", json={"conversation_id": "cv-1", "content": "hello"})
    assert r.status_code == 502
    (msg,) = messages()
    assert msg.status == "failed"
    assert msg.meta["upstream_status"] == 500
    assert gw.redis.counters["mgw:metrics:failed_total"] == 1


def test_unreachable_workflow_engine(gw):
    seed()
    gw.transport.error = httpx.ConnectError("connection refused")
    client = TestClient(gw.app)
    r = client.post("/api/messages/send", json={"conversation_id": "cv-1", "content": "hello"})
    assert r.status_code == 502
    assert r.json()["detail"] == "workflow-engine-unreachable"
    (msg,) = messages()
    assert msg.status == "failed"


def test_media_placeholder_content_is_dropped(gw):
    seed()
    client = TestClient(gw.app)
    r = client.post("/api/messages/send", json={
        "conversation_id": "cv-1",
        "content": "[IMAGE]",
        "message_type": "image",
        "file_url": "https://cdn.test/p.jpg",
        "mime_type": "image/jpeg",
    })
    assert r.status_code == 200
    payload = gw.transport.calls[0][1]
    assert payload["content"] == ""
    assert payload["file_url"] == "https://cdn.test/p.jpg"
    (msg,) = messages()
    assert msg.content == ""
    assert msg.message_type == "image"


def test_conversation_without_connection_uses_default(gw):
    seed()
    client = TestClient(gw.app)
    r = client.post("/api/messages/send", json={"conversation_id": "cv-2", "content": "hello"})
    assert r.status_code == 200
    from packages.relay.db import SessionLocal
    from packages.relay.models import Conversation

    with SessionLocal() as db:
        assert db.get(Conversation, "cv-2").connection_id == "conn-1"


def test_metrics_reflect_counters(gw):
    seed()
    client = TestClient(gw.app)
    client.post("/api/messages/send", json={"conversation_id": "cv-1", "content": "hello"})
    text = client.get("/metrics").text
    assert "relay_mgw_sent_total 1.0" in text
    assert "relay_mgw_failed_total 0.0" in text
