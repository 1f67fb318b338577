import importlib.util
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import text


WS = "ws-1"
INSTANCE = "inst-1"


class FakeRedis:
    def __init__(self):
        self.streams = {}

    def xadd(self, stream, mapping):
        self.streams.setdefault(stream, []).append(dict(mapping))
        return f"{len(self.streams[stream])}-0"


class DownRedis:
    def xadd(self, *args, **kwargs):
        raise ConnectionError("redis down")


def load_receiver():
    service_root = Path(__file__).resolve().parents[1]
    spec = importlib.util.spec_from_file_location("webhook_receiver_main", str(service_root / "app" / "main.py"))
    mod = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(mod)  # type: ignore
    return mod


@pytest.fixture
def receiver(tmp_path, monkeypatch):
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{(tmp_path / 'test.db').as_posix()}")
    monkeypatch.delenv("EVOLUTION_WEBHOOK_SECRET", raising=False)
    monkeypatch.delenv("EVOLUTION_API_URL", raising=False)
    monkeypatch.delenv("EVOLUTION_API_KEY", raising=False)
    from packages.relay.db import SessionLocal, get_engine
    from packages.relay.models import Base, Connection, Workspace

    Base.metadata.create_all(bind=get_engine())
    with SessionLocal() as db:
        db.add(Workspace(id=WS, name="Acme"))
        db.add(Connection(id="conn-1", workspace_id=WS, instance_name=INSTANCE, status="connected"))
        db.commit()

    mod = load_receiver()
    mod.redis = FakeRedis()
    return mod


def upsert(msg_id, jid="5511999998888@s.whatsapp.net", text_body="oi", from_me=False, instance=INSTANCE):
    return {
        "event": "messages.upsert",
        "instance": instance,
        "data": {
            "key": {"remoteJid": jid, "fromMe": from_me, "id": msg_id},
            "pushName": "Maria",
            "message": {"conversation": text_body},
        },
    }


def ack(msg_id, status):
    return {
        "event": "messages.update",
        "instance": INSTANCE,
        "data": {"keyId": msg_id, "remoteJid": "5511999998888@s.whatsapp.net", "fromMe": True, "status": status},
    }


def count(sql):
    from packages.relay.db import SessionLocal

    with SessionLocal() as db:
        return db.execute(text(sql)).scalar()


def test_inbound_message_creates_contact_conversation_and_message(receiver):
    client = TestClient(receiver.app)
    r = client.post("/api/webhooks/evolution", json=upsert("WAID-1"))
    assert r.status_code == 200
    body = r.json()
    assert body["ok"] is True
    assert body["duplicate"] is False

    from packages.relay.db import SessionLocal
    from packages.relay.models import Contact, Message

    with SessionLocal() as db:
        contact = db.query(Contact).one()
        assert contact.phone == "5511999998888"
        assert contact.name == "Maria"
        msg = db.query(Message).one()
        assert msg.external_id == "WAID-1"
        assert msg.sender_type == "contact"
        assert msg.status == "received"
        assert msg.content == "oi"

    assert len(receiver.redis.streams["relay:forward"]) == 1
    assert receiver.redis.streams["relay:automations"][0]["contact_id"] == contact.id
    assert count("SELECT status FROM webhook_logs") == "received"


def test_redelivered_message_is_stored_once(receiver):
    client = TestClient(receiver.app)
    first = client.post("/api/webhooks/evolution", json=upsert("WAID-2")).json()
    second = client.post("/api/webhooks/evolution", json=upsert("WAID-2")).json()

    assert second["duplicate"] is True
    assert second["message_id"] == first["message_id"]
    assert count("SELECT COUNT(*) FROM messages") == 1
    assert count("SELECT COUNT(*) FROM contacts") == 1
    assert count("SELECT COUNT(*) FROM conversations") == 1
    # duplicates are not forwarded again
    assert len(receiver.redis.streams["relay:forward"]) == 1


def test_provider_id_stored_for_another_workspace_is_not_reported_as_duplicate(receiver):
    from packages.relay.db import SessionLocal
    from packages.relay.models import Connection, Workspace

    with SessionLocal() as db:
        db.add(Workspace(id="ws-2", name="Other"))
        db.add(Connection(id="conn-2", workspace_id="ws-2", instance_name="inst-2", status="connected"))
        db.commit()
    client = TestClient(receiver.app)
    client.post("/api/webhooks/evolution", json=upsert("WAID-X"))

    r = client.post("/api/webhooks/evolution", json=upsert("WAID-X", instance="inst-2"))
    assert r.status_code == 200
    assert r.json()["skipped"] == "external-id-conflict"
    assert count("SELECT COUNT(*) FROM messages") == 1
    assert count("SELECT COUNT(*) FROM contacts WHERE workspace_id = 'ws-2'") == 0


def test_jid_and_formatted_number_resolve_to_one_contact(receiver):
    client = TestClient(receiver.app)
    client.post("/api/webhooks/evolution", json=upsert("WAID-3", jid="5511999998888@s.whatsapp.net"))
    client.post("/api/webhooks/evolution", json=upsert("WAID-4", jid="5511999998888:7@s.whatsapp.net"))
    assert count("SELECT COUNT(*) FROM contacts") == 1
    assert count("SELECT COUNT(*) FROM conversations") == 1
    assert count("SELECT COUNT(*) FROM messages") == 2


def test_group_messages_are_not_persisted(receiver):
    client = TestClient(receiver.app)
    r = client.post("/api/webhooks/evolution", json=upsert("WAID-G", jid="120363025246125888@g.us"))
    assert r.json() == {"ok": True, "skipped": "group-chat"}
    assert count("SELECT COUNT(*) FROM contacts") == 0
    assert count("SELECT COUNT(*) FROM conversations") == 0
    assert count("SELECT COUNT(*) FROM messages") == 0
    assert count("SELECT status FROM webhook_logs") == "skipped_group"
    assert "relay:forward" not in receiver.redis.streams


def test_unknown_instance_is_acknowledged(receiver):
    client = TestClient(receiver.app)
    r = client.post("/api/webhooks/evolution", json=upsert("WAID-5", instance="ghost"))
    assert r.status_code == 200
    assert r.json()["warning"] == "unknown-instance"
    assert count("SELECT COUNT(*) FROM messages") == 0
    assert count("SELECT status FROM webhook_logs") == "skipped_unknown_instance"


def test_non_message_event_is_skipped(receiver):
    client = TestClient(receiver.app)
    r = client.post("/api/webhooks/evolution", json={"event": "connection.update", "instance": INSTANCE, "data": {"state": "open"}})
    assert r.json()["skipped"] == "not-message"


def test_invalid_json_is_acknowledged(receiver):
    client = TestClient(receiver.app)
    r = client.post("/api/webhooks/evolution", content=b"{not json", headers={"Content-Type": "application/json"})
    assert r.status_code == 200
    assert r.json() == {"ok": True, "warning": "invalid-json"}


def test_webhook_secret_is_enforced(receiver):
    receiver.WEBHOOK_SECRET = "s3cret"
    client = TestClient(receiver.app)
    assert client.post("/api/webhooks/evolution", json=upsert("WAID-6")).status_code == 403
    assert client.post("/api/webhooks/evolution", json=upsert("WAID-6"), headers={"apikey": "nope"}).status_code == 403
    ok = client.post("/api/webhooks/evolution", json=upsert("WAID-6"), headers={"apikey": "s3cret"})
    assert ok.status_code == 200


def test_from_me_upsert_is_forwarded_without_persisting(receiver):
    client = TestClient(receiver.app)
    r = client.post("/api/webhooks/evolution", json=upsert("WAID-7", from_me=True))
    assert r.json()["direction"] == "outbound"
    assert count("SELECT COUNT(*) FROM messages") == 0
    assert len(receiver.redis.streams["relay:forward"]) == 1


def test_redis_outage_still_persists(receiver):
    receiver.redis = DownRedis()
    client = TestClient(receiver.app)
    r = client.post("/api/webhooks/evolution", json=upsert("WAID-8"))
    assert r.status_code == 200
    assert r.json()["warning"] == "redis-unavailable"
    assert count("SELECT COUNT(*) FROM messages") == 1


def _seed_outbound(external_id, status="sent"):
    from packages.relay.db import SessionLocal
    from packages.relay.models import Contact, Conversation, Message

    with SessionLocal() as db:
        db.add(Contact(id="c-1", workspace_id=WS, phone="5511999998888", name="Maria"))
        db.add(Conversation(id="cv-1", workspace_id=WS, contact_id="c-1", connection_id="conn-1", status="open"))
        db.add(Message(
            id="m-1", conversation_id="cv-1", workspace_id=WS, content="hello",
            sender_type="agent", status=status, external_id=external_id,
        ))
        db.commit()


def test_acks_move_status_forward_only(receiver):
    _seed_outbound("OUT-1")
    client = TestClient(receiver.app)

    r = client.post("/api/webhooks/evolution", json=ack("OUT-1", "DELIVERY_ACK"))
    assert r.json()["updated"] is True
    assert count("SELECT status FROM messages WHERE id = 'm-1'") == "delivered"
    assert count("SELECT delivered_at IS NOT NULL FROM messages WHERE id = 'm-1'") == 1

    client.post("/api/webhooks/evolution", json=ack("OUT-1", 3))
    assert count("SELECT status FROM messages WHERE id = 'm-1'") == "read"
    assert count("SELECT read_at IS NOT NULL FROM messages WHERE id = 'm-1'") == 1

    # a late delivery receipt does not move the message back
    client.post("/api/webhooks/evolution", json=ack("OUT-1", 2))
    assert count("SELECT status FROM messages WHERE id = 'm-1'") == "read"


def test_unrecognized_ack_leaves_message_untouched(receiver):
    _seed_outbound("OUT-2")
    client = TestClient(receiver.app)
    r = client.post("/api/webhooks/evolution", json=ack("OUT-2", "PLAYED_TWICE"))
    assert r.json()["updated"] is False
    assert count("SELECT status FROM messages WHERE id = 'm-1'") == "sent"


def test_ack_matches_provider_key_id(receiver):
    _seed_outbound("client-uuid-1")
    from packages.relay.db import SessionLocal
    from packages.relay.models import Message

    with SessionLocal() as db:
        db.get(Message, "m-1").evolution_key_id = "3EB0ABC"
        db.commit()
    client = TestClient(receiver.app)
    client.post("/api/webhooks/evolution", json=ack("3EB0ABC", "READ"))
    assert count("SELECT status FROM messages WHERE id = 'm-1'") == "read"


def test_ack_for_unknown_message_creates_nothing(receiver):
    client = TestClient(receiver.app)
    r = client.post("/api/webhooks/evolution", json=ack("NOPE", 2))
    assert r.json()["updated"] is False
    assert count("SELECT COUNT(*) FROM messages") == 0


def test_new_conversations_rotate_through_sequential_queue(receiver):
    from packages.relay.db import SessionLocal
    from packages.relay.models import Connection, Contact, Conversation, Queue, QueueUser, User

    with SessionLocal() as db:
        db.add(Queue(id="q-1", workspace_id=WS, name="Sales", distribution_type="sequencial", last_assigned_user_index=0))
        for i in range(3):
            db.add(User(id=f"u-{i}", workspace_id=WS, name=f"agent {i}", email=f"a{i}@acme.test", status="active"))
            db.add(QueueUser(id=f"qu-{i}", queue_id="q-1", user_id=f"u-{i}", order_position=i))
        db.get(Connection, "conn-1").queue_id = "q-1"
        db.commit()

    client = TestClient(receiver.app)
    for i, phone in enumerate(["5511900000001", "5511900000002", "5511900000003"]):
        client.post("/api/webhooks/evolution", json=upsert(f"WAID-Q{i}", jid=f"{phone}@s.whatsapp.net"))

    with SessionLocal() as db:
        convs = db.query(Conversation).order_by(Conversation.created_at, Conversation.id).all()
        by_phone = {}
        for conv in convs:
            by_phone[db.get(Contact, conv.contact_id).phone] = conv.assigned_user_id
        assert by_phone == {"5511900000001": "u-1", "5511900000002": "u-2", "5511900000003": "u-0"}
        assert db.get(Queue, "q-1").last_assigned_user_index == 0
    assert count("SELECT COUNT(*) FROM conversation_assignments WHERE action = 'assign'") == 3

    # a follow-up message reuses the conversation and does not redistribute
    client.post("/api/webhooks/evolution", json=upsert("WAID-Q9", jid="5511900000001@s.whatsapp.net"))
    assert count("SELECT COUNT(*) FROM conversation_assignments") == 3
    assert count("SELECT last_assigned_user_index FROM queues") == 0


def test_distribution_error_still_acknowledges_webhook(receiver):
    from packages.relay.ingest import MessageIngestor

    def broken(db, conv, connection, rng=None):
        raise RuntimeError("queue table locked")

    receiver.ingestor = MessageIngestor(distribute=broken)
    r = TestClient(receiver.app).post("/api/webhooks/evolution", json=upsert("WAID-DX"))
    assert r.status_code == 200
    assert r.json()["duplicate"] is False
    assert count("SELECT COUNT(*) FROM messages") == 1
    assert len(receiver.redis.streams["relay:automations"]) == 1


class FakeAvatarClient:
    calls = []
    seen_streams = []
    redis = None

    def __init__(self, credentials):
        self.credentials = credentials

    async def fetch_profile_picture(self, instance_name, phone):
        FakeAvatarClient.calls.append((instance_name, phone))
        FakeAvatarClient.seen_streams.append(sorted(FakeAvatarClient.redis.streams))
        return "https://pps.test/maria.jpg"


def test_avatar_is_fetched_after_events_are_published(receiver):
    from packages.relay.config import ConfigResolver

    receiver.config = ConfigResolver(fallback_provider_url="https://evo.test", fallback_provider_key="k")
    receiver.evolution_client_factory = FakeAvatarClient
    FakeAvatarClient.calls = []
    FakeAvatarClient.seen_streams = []
    FakeAvatarClient.redis = receiver.redis
    client = TestClient(receiver.app)

    assert client.post("/api/webhooks/evolution", json=upsert("WAID-AV-1")).status_code == 200
    client.post("/api/webhooks/evolution", json=upsert("WAID-AV-2"))

    # only the first message creates the contact
    assert FakeAvatarClient.calls == [(INSTANCE, "5511999998888")]
    assert FakeAvatarClient.seen_streams == [["relay:automations", "relay:forward"]]
    assert count("SELECT avatar_url FROM contacts") == "https://pps.test/maria.jpg"
