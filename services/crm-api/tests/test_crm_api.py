import importlib.util
from pathlib import Path

import jwt
import pytest
from fastapi.testclient import TestClient

from packages.relay.config import ConfigResolver
from packages.relay.errors import TransportError


WS = "ws-1"


def load_crm():
    service_root = Path(__file__).resolve().parents[1]
    spec = importlib.util.spec_from_file_location("crm_api_main", str(service_root / "app" / "main.py"))
    mod = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(mod)  # type: ignore
    return mod


class FakeEvolution:
    created = []
    state = "close"
    fail = False

    def __init__(self, credentials):
        self.credentials = credentials

    async def create_instance(self, instance_name, webhook_url=None, events=None):
        if self.fail:
            raise TransportError("provider-error", upstream_status=500)
        FakeEvolution.created.append((self.credentials.base_url, instance_name, webhook_url))
        return {"state": self.state, "qrcode": "data:image/png;base64,QRDATA", "raw": {}}


@pytest.fixture
def crm(tmp_path, monkeypatch):
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{(tmp_path / 'test.db').as_posix()}")
    monkeypatch.delenv("CRM_REQUIRE_AUTH", raising=False)
    from packages.relay.db import SessionLocal, get_engine
    from packages.relay.models import Base, Connection, Queue, User, Workspace

    Base.metadata.create_all(bind=get_engine())
    with SessionLocal() as db:
        db.add(Workspace(id=WS, name="Acme"))
        db.add(Connection(id="conn-1", workspace_id=WS, instance_name="inst-1", phone_number="5511911112222", status="connected"))
        db.add(Queue(id="q-ai", workspace_id=WS, name="Bot", distribution_type="nao_distribuir", ai_agent_id="agent-9"))
        db.add(Queue(id="q-humans", workspace_id=WS, name="Support", distribution_type="aleatoria"))
        db.add(User(id="u-1", workspace_id=WS, name="Ana", email="ana@acme.test"))
        db.commit()

    FakeEvolution.created = []
    FakeEvolution.state = "close"
    FakeEvolution.fail = False
    mod = load_crm()
    mod.evolution_client_factory = FakeEvolution
    mod.config = ConfigResolver()
    return mod


def quick(client, phone, workspace=WS, **extra):
    headers = {"X-Workspace-Id": workspace} if workspace else {}
    return client.post("/api/conversations/quick", json={"phone": phone, **extra}, headers=headers)


def test_quick_conversation_creates_temporary_contact(crm):
    client = TestClient(crm.app)
    r = quick(client, "+55 (11) 98888-7777")
    assert r.status_code == 200
    body = r.json()
    assert body["contact_created"] is True
    assert body["conversation_created"] is True

    from packages.relay.db import SessionLocal
    from packages.relay.models import Contact, Conversation

    with SessionLocal() as db:
        contact = db.get(Contact, body["contact_id"])
        assert contact.phone == "5511988887777"
        assert contact.extra_info == {"temporary": True}
        conv = db.get(Conversation, body["conversation_id"])
        assert conv.status == "open"
        assert conv.agente_ativo is False
        assert conv.connection_id == "conn-1"

    again = quick(client, "5511988887777").json()
    assert again["conversation_id"] == body["conversation_id"]
    assert again["contact_created"] is False


def test_quick_conversation_opens_new_when_previous_closed(crm):
    client = TestClient(crm.app)
    first = quick(client, "5511988887777").json()
    from packages.relay.db import SessionLocal
    from packages.relay.models import Conversation

    with SessionLocal() as db:
        db.get(Conversation, first["conversation_id"]).status = "closed"
        db.commit()
    second = quick(client, "5511988887777").json()
    assert second["conversation_created"] is True
    assert second["conversation_id"] != first["conversation_id"]


def test_quick_conversation_validation(crm):
    client = TestClient(crm.app)
    assert quick(client, "5511988887777", workspace=None).status_code == 400
    assert quick(client, "").status_code == 400
    assert quick(client, "abc").status_code == 400
    r = quick(client, "+55 11 91111-2222")
    assert r.status_code == 400
    assert r.json()["detail"] == "phone-belongs-to-connection"


def test_queue_transfer_toggles_ai_agent_and_records_history(crm):
    client = TestClient(crm.app)
    conv_id = quick(client, "5511988887777").json()["conversation_id"]

    r = client.post(f"/api/conversations/{conv_id}/queue", json={"queue_id": "q-ai", "changed_by": "u-admin"})
    assert r.status_code == 200
    assert r.json()["agente_ativo"] is True

    r = client.post(f"/api/conversations/{conv_id}/queue", json={"queue_id": "q-humans", "assigned_user_id": "u-1"})
    assert r.json()["agente_ativo"] is False
    assert r.json()["assigned_user_id"] == "u-1"

    # only the user changes
    r = client.post(f"/api/conversations/{conv_id}/queue", json={"assigned_user_id": ""})
    assert r.json()["queue_id"] == "q-humans"

    history = client.get(f"/api/conversations/{conv_id}/assignments").json()
    assert [h["action"] for h in history] == ["queue_transfer", "queue_transfer", "transfer"]
    assert history[0]["to_queue_id"] == "q-ai"
    assert history[0]["changed_by"] == "u-admin"
    assert history[1]["from_queue_id"] == "q-ai"
    assert history[1]["to_assigned_user_id"] == "u-1"
    assert history[2]["from_assigned_user_id"] == "u-1"
    assert history[2]["to_assigned_user_id"] is None


def test_user_only_transfer_keeps_queue_and_ai_agent(crm):
    client = TestClient(crm.app)
    conv_id = quick(client, "5511988887777").json()["conversation_id"]
    client.post(f"/api/conversations/{conv_id}/queue", json={"queue_id": "q-ai"})

    r = client.post(f"/api/conversations/{conv_id}/queue", json={"assigned_user_id": "u-1"})
    assert r.status_code == 200
    assert r.json()["queue_id"] == "q-ai"
    assert r.json()["agente_ativo"] is True
    assert r.json()["assigned_user_id"] == "u-1"

    history = client.get(f"/api/conversations/{conv_id}/assignments").json()
    assert [h["action"] for h in history] == ["queue_transfer", "transfer"]
    assert history[1]["from_queue_id"] == "q-ai"
    assert history[1]["to_queue_id"] == "q-ai"

    from packages.relay.db import SessionLocal
    from packages.relay.models import Conversation

    with SessionLocal() as db:
        assert db.get(Conversation, conv_id).agent_active_id == "agent-9"


def test_queue_transfer_unknown_targets(crm):
    client = TestClient(crm.app)
    assert client.post("/api/conversations/nope/queue", json={"queue_id": "q-ai"}).status_code == 404
    conv_id = quick(client, "5511988887777").json()["conversation_id"]
    assert client.post(f"/api/conversations/{conv_id}/queue", json={"queue_id": "nope"}).status_code == 404


def test_create_connection_requires_credentials(crm):
    client = TestClient(crm.app)
    r = client.post("/api/connections", json={"workspace_id": WS, "instance_name": "inst-2"})
    assert r.status_code == 424


def test_create_connection_returns_qrcode(crm):
    from packages.relay.db import SessionLocal
    from packages.relay.models import Connection, ProviderCredentials

    with SessionLocal() as db:
        db.add(ProviderCredentials(id="pc-1", workspace_id=WS, provider="evolution", base_url="https://evo.test", api_key="k"))
        db.commit()
    client = TestClient(crm.app)
    r = client.post("/api/connections", json={
        "workspace_id": WS, "instance_name": "inst-2", "webhook_url": "https://relay.test/api/webhooks/evolution",
    })
    assert r.status_code == 201
    assert r.json()["status"] == "qr"
    assert r.json()["qrcode"].startswith("data:image/png")
    assert FakeEvolution.created == [("https://evo.test", "inst-2", "https://relay.test/api/webhooks/evolution")]

    FakeEvolution.state = "open"
    r = client.post("/api/connections", json={"workspace_id": WS, "instance_name": "inst-3"})
    assert r.json()["status"] == "connected"
    with SessionLocal() as db:
        assert db.query(Connection).filter(Connection.instance_name == "inst-3").one().status == "connected"


def test_create_connection_provider_failure(crm):
    crm.config = ConfigResolver(fallback_provider_url="https://evo.test", fallback_provider_key="k")
    FakeEvolution.fail = True
    client = TestClient(crm.app)
    r = client.post("/api/connections", json={"workspace_id": WS, "instance_name": "inst-4"})
    assert r.status_code == 502


def test_required_auth_checks_workspace_claim(crm):
    crm.REQUIRE_AUTH = True
    client = TestClient(crm.app)
    assert quick(client, "5511988887777").status_code == 401

    other = jwt.encode({"sub": "u-1", "workspace_id": "ws-other"}, crm.JWT_SECRET, algorithm="HS256")
    r = client.post("/api/conversations/quick", json={"phone": "5511988887777"},
                    headers={"X-Workspace-Id": WS, "Authorization": f"Bearer {other}"})
    assert r.status_code == 403

    mine = jwt.encode({"sub": "u-1", "workspace_id": WS}, crm.JWT_SECRET, algorithm="HS256")
    r = client.post("/api/conversations/quick", json={"phone": "5511988887777"},
                    headers={"X-Workspace-Id": WS, "Authorization": f"Bearer {mine}"})
    assert r.status_code == 200
