import os
import hmac
import json
import logging
import uuid
from json import JSONDecodeError
from fastapi import BackgroundTasks, FastAPI, HTTPException, Request
from redis import Redis
from sqlalchemy.exc import IntegrityError
from packages.relay.config import ConfigResolver
from packages.relay.db import SessionLocal
from packages.relay.errors import RelayError
from packages.relay.evolution import EvolutionClient
from packages.relay.ingest import IngestSkipped, MessageIngestor, apply_status
from packages.relay.media import MediaStore, process_media
from packages.relay.models import Connection, Contact, Message, WebhookLog, utcnow
from packages.relay.payloads import EVENT_UPSERT, EVENT_UPDATE, parse_envelope
from packages.relay.phone import normalize_phone
from packages.relay.resolvers import find_or_create_contact, find_or_create_conversation

app = FastAPI(title="Relay Webhook Receiver")
redis = Redis.from_url(os.getenv("REDIS_URL", "redis://redis:6379/0"), decode_responses=True)
WEBHOOK_SECRET = os.getenv("EVOLUTION_WEBHOOK_SECRET", "")
N8N_SECRET = os.getenv("N8N_WEBHOOK_SECRET", "")
FORWARD_STREAM = os.getenv("RELAY_FORWARD_STREAM", "relay:forward")
AUTOMATION_STREAM = os.getenv("RELAY_AUTOMATION_STREAM", "relay:automations")
logger = logging.getLogger(__name__)

# Tests swap these for fakes
ingestor = MessageIngestor()
config = ConfigResolver.from_env()
evolution_client_factory = EvolutionClient
media_store = None


def _secret_ok(provided: str, expected: str) -> bool:
	return bool(provided) and hmac.compare_digest(provided, expected)


def _check_n8n_auth(req: Request) -> None:
	if not N8N_SECRET:
		return
	auth = req.headers.get("Authorization", "")
	token = auth.split(" ", 1)[1] if auth.startswith("Bearer ") else ""
	if not _secret_ok(token, N8N_SECRET):
		raise HTTPException(401, "unauthorized")


async def _json_body(req: Request) -> dict:
	try:
		body = await req.json()
	except (JSONDecodeError, UnicodeDecodeError):
		raise HTTPException(400, "invalid-json")
	if not isinstance(body, dict):
		raise HTTPException(400, "invalid-json")
	return body


def _log_webhook(db, workspace_id, instance, event, status, payload) -> str | None:
	try:
		row = WebhookLog(
			id=str(uuid.uuid4()),
			workspace_id=workspace_id,
			instance_name=instance,
			event_type=event,
			status=status,
			payload=payload,
			created_at=utcnow(),
		)
		db.add(row)
		db.commit()
		return row.id
	except Exception:
		db.rollback()
		logger.exception("webhook log write failed")
		return None


def _publish(stream: str, mapping: dict) -> bool:
	try:
		redis.xadd(stream, {k: "" if v is None else str(v) for k, v in mapping.items()})
		return True
	except Exception:
		logger.exception("redis unavailable when publishing to %s", stream)
		return False


def _enqueue_forward(payload: dict, workspace_id: str, log_id, request_id: str, event_type: str, direction: str, phone: str, processed: dict | None) -> bool:
	body = {
		**payload,
		"workspace_id": workspace_id,
		"source": "evolution",
		"request_id": request_id,
		"event_type": event_type,
		"message_direction": direction,
		"phone_number": phone,
		"processed_data": processed or {},
	}
	return _publish(FORWARD_STREAM, {
		"workspace_id": workspace_id,
		"log_id": log_id,
		"request_id": request_id,
		"event_type": event_type,
		"payload": json.dumps(body),
	})


async def _fetch_avatar(contact_id: str, connection_id: str, instance: str, phone: str) -> None:
	"""Best-effort profile picture for a contact seen for the first time."""
	try:
		with SessionLocal() as db:
			connection = db.get(Connection, connection_id)
			creds = config.provider_credentials(db, connection.workspace_id) if connection else None
			if creds is None:
				return
			url = await evolution_client_factory(creds).fetch_profile_picture(instance, phone)
			if url:
				contact = db.get(Contact, contact_id)
				if contact and not contact.avatar_url:
					contact.avatar_url = url
					db.commit()
	except Exception:
		logger.exception("profile picture fetch failed for contact %s", contact_id)


@app.get("/healthz")
async def healthz():
	return {"ok": True}


@app.post("/api/webhooks/evolution")
async def receive_evolution(req: Request, background: BackgroundTasks):
	if WEBHOOK_SECRET:
		provided = req.headers.get("apikey") or req.headers.get("X-Webhook-Secret") or ""
		if not _secret_ok(provided, WEBHOOK_SECRET):
			raise HTTPException(403, "Invalid secret")

	body = await req.body()
	raw_text = body.decode(errors="replace")
	request_id = req.headers.get("X-Request-Id") or str(uuid.uuid4())
	# Malformed bodies are acknowledged so the provider stops retrying them
	try:
		payload = json.loads(raw_text)
	except JSONDecodeError:
		logger.error("invalid JSON webhook body", extra={"request_id": request_id})
		return {"ok": True, "warning": "invalid-json"}
	if not isinstance(payload, dict):
		return {"ok": True, "warning": "invalid-json"}

	envelope = parse_envelope(payload)
	with SessionLocal() as db:
		connection = db.query(Connection).filter(Connection.instance_name == envelope.instance).first()
		if not connection:
			logger.warning("webhook for unknown instance %r", envelope.instance, extra={"request_id": request_id})
			_log_webhook(db, None, envelope.instance, envelope.event, "skipped_unknown_instance", payload)
			return {"ok": True, "warning": "unknown-instance"}
		workspace_id = connection.workspace_id
		connection_id = connection.id

		if not envelope.is_message_event:
			_log_webhook(db, workspace_id, envelope.instance, envelope.event, "skipped_not_message", payload)
			return {"ok": True, "skipped": "not-message"}
		if envelope.is_group:
			logger.info("group/broadcast message dropped (%s)", envelope.remote_jid, extra={"request_id": request_id})
			_log_webhook(db, workspace_id, envelope.instance, envelope.event, "skipped_group", payload)
			return {"ok": True, "skipped": "group-chat"}

		log_id = _log_webhook(db, workspace_id, envelope.instance, envelope.event, "received", payload)
		phone = envelope.phone

		if envelope.event == EVENT_UPDATE:
			msg = ingestor.apply_ack(db, envelope, request_id=request_id)
			processed = {"message_id": msg.id, "status": msg.status} if msg else None
			direction = "outbound" if envelope.from_me else "inbound"
			queued = _enqueue_forward(payload, workspace_id, log_id, request_id, "update", direction, phone, processed)
			return {"ok": True, "updated": bool(msg), **({} if queued else {"warning": "redis-unavailable"})}

		if envelope.from_me:
			# echo of a message sent from the phone or by the workflow engine
			queued = _enqueue_forward(payload, workspace_id, log_id, request_id, "upsert", "outbound", phone, None)
			return {"ok": True, "direction": "outbound", **({} if queued else {"warning": "redis-unavailable"})}

		try:
			result = ingestor.ingest(db, envelope, connection, request_id=request_id)
		except IngestSkipped as skip:
			logger.info("message not ingested: %s", skip.reason, extra={"request_id": request_id})
			return {"ok": True, "skipped": skip.reason}
		except Exception:
			db.rollback()
			logger.exception("inbound persistence failed", extra={"request_id": request_id})
			raise HTTPException(500, "ingest-failed")

	if result.duplicate:
		return {"ok": True, **result.as_dict()}

	processed = {**result.as_dict(), "connection_id": connection_id, "workspace_id": workspace_id}
	queued = _enqueue_forward(payload, workspace_id, log_id, request_id, "upsert", "inbound", phone, processed)
	queued = _publish(AUTOMATION_STREAM, {
		"workspace_id": workspace_id,
		"contact_id": result.contact_id,
		"message_id": result.message_id,
		"request_id": request_id,
	}) and queued
	# runs after the response; a slow provider must not hold the webhook
	if result.contact_created:
		background.add_task(_fetch_avatar, result.contact_id, connection_id, envelope.instance, phone)
	out = {"ok": True, **result.as_dict()}
	if not queued:
		out["warning"] = "redis-unavailable"
	return out


@app.post("/api/webhooks/n8n/status")
async def n8n_status(req: Request):
	_check_n8n_auth(req)
	body = await _json_body(req)
	ref = body.get("external_id") or body.get("message_id") or body.get("messageId")
	status = str(body.get("status") or "").strip().lower()
	if not ref or not status:
		raise HTTPException(400, "missing-fields")
	with SessionLocal() as db:
		msg = db.get(Message, ref) or ingestor.find_message(db, ref)
		if not msg:
			raise HTTPException(404, "message-not-found")
		changed = apply_status(msg, status)
		if changed:
			db.commit()
		return {
			"ok": True,
			"message_id": msg.id,
			"status": msg.status,
			"changed": changed,
		}


@app.post("/api/webhooks/n8n/messages")
async def n8n_message(req: Request):
	"""Messages produced or rewritten by the workflow engine (AI replies, media captions)."""
	_check_n8n_auth(req)
	body = await _json_body(req)
	direction = body.get("direction")
	if direction not in ("inbound", "outbound"):
		raise HTTPException(400, "invalid-direction")
	phone = normalize_phone(body.get("phone_number"))
	if not phone:
		raise HTTPException(400, "missing-phone_number")
	external_id = body.get("external_id")
	request_id = body.get("request_id") or str(uuid.uuid4())

	with SessionLocal() as db:
		if external_id:
			existing = db.get(Message, external_id) or db.query(Message).filter(Message.external_id == external_id).first()
			if existing:
				for field in ("content", "file_url", "file_name", "mime_type"):
					if body.get(field):
						setattr(existing, field, body[field])
				meta = dict(existing.meta or {})
				meta.update(body.get("metadata") or {})
				meta["n8n_request_id"] = request_id
				existing.meta = meta
				db.commit()
				return {"ok": True, "action": "updated", "message_id": existing.id}

		workspace_id = body.get("workspace_id")
		if not workspace_id:
			raise HTTPException(400, "missing-workspace_id")
		if not body.get("content") and not body.get("file_url"):
			raise HTTPException(400, "missing-content")
		contact, _ = find_or_create_contact(db, workspace_id, phone, name=body.get("contact_name"))
		conv, _ = find_or_create_conversation(db, workspace_id, contact.id, body.get("connection_id"))
		now = utcnow()
		msg = Message(
			id=str(uuid.uuid4()),
			conversation_id=conv.id,
			workspace_id=workspace_id,
			content=body.get("content") or "",
			message_type=body.get("message_type") or "text",
			sender_type="agent" if direction == "outbound" else "contact",
			status="sent" if direction == "outbound" else "received",
			external_id=external_id or None,
			file_url=body.get("file_url"),
			file_name=body.get("file_name"),
			mime_type=body.get("mime_type"),
			meta={**(body.get("metadata") or {}), "source": "n8n", "request_id": request_id},
			created_at=now,
		)
		db.add(msg)
		conv.last_activity_at = now
		try:
			db.commit()
		except IntegrityError:
			db.rollback()
			winner = db.query(Message).filter(Message.external_id == external_id).first()
			if winner is None:
				raise HTTPException(500, "message-save-failed")
			return {"ok": True, "action": "duplicate", "message_id": winner.id}
		message_id, contact_id = msg.id, contact.id

	if direction == "inbound":
		_publish(AUTOMATION_STREAM, {
			"workspace_id": workspace_id,
			"contact_id": contact_id,
			"message_id": message_id,
			"request_id": request_id,
		})
	return {"ok": True, "action": "created", "message_id": message_id}


@app.post("/api/media/process")
async def media_process(req: Request):
	global media_store
	_check_n8n_auth(req)
	body = await _json_body(req)
	if media_store is None:
		media_store = MediaStore.from_env()
	with SessionLocal() as db:
		try:
			result = await process_media(
				db,
				media_store,
				body.get("messageId") or body.get("message_id") or body.get("external_id"),
				data_base64=body.get("base64"),
				media_url=body.get("mediaUrl"),
				mime_type=body.get("mimeType") or body.get("mime_type"),
				file_name=body.get("fileName") or body.get("file_name"),
			)
		except RelayError as exc:
			raise HTTPException(exc.status_code, exc.detail)
	return {"ok": True, **result}
