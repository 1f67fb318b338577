"""Kanban column automations.

An automation belongs to a pipeline column, has triggers and an ordered list
of actions. It fires at most once per (card, column, automation, trigger):
the execution marker row is inserted before any action runs, and losing that
insert means another evaluation already fired it.
"""
import asyncio
import logging
import uuid
from datetime import datetime, timedelta

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .errors import RelayError
from .models import (
    AutomationExecution,
    ColumnAutomation,
    ColumnAutomationAction,
    ColumnAutomationTrigger,
    ContactTag,
    Conversation,
    Message,
    Pipeline,
    PipelineCard,
    PipelineCardHistory,
    QuickFunnel,
    QuickItem,
    utcnow,
)
from .outbound import OutboundGateway, SendRequest

logger = logging.getLogger(__name__)

MESSAGE_RECEIVED = "message_received"
TIME_IN_COLUMN = "time_in_column"

_STEP_KINDS = {
    "message": "message",
    "messages": "message",
    "audio": "audio",
    "audios": "audio",
    "media": "media",
    "midias": "media",
    "document": "document",
    "documents": "document",
    "documentos": "document",
}
_VIDEO_EXTENSIONS = (".mp4", ".mov", ".avi")
_UNIT_MINUTES = {"minutes": 1, "hours": 60, "days": 1440}


def _as_int(value, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def message_threshold(trigger: ColumnAutomationTrigger) -> int:
    return max(_as_int((trigger.trigger_config or {}).get("message_count"), 1), 1)


def time_threshold_minutes(trigger: ColumnAutomationTrigger) -> int | None:
    cfg = trigger.trigger_config or {}
    if cfg.get("time_in_minutes") is not None:
        return _as_int(cfg.get("time_in_minutes"), 0) or None
    value = _as_int(cfg.get("time_value"), 0)
    unit = str(cfg.get("time_unit") or "minutes").lower()
    if not value or unit not in _UNIT_MINUTES:
        return None
    return value * _UNIT_MINUTES[unit]


def quick_item_request(card: PipelineCard, item: QuickItem) -> SendRequest:
    """Translate a saved quick item into a send request for the card's conversation."""
    if item.kind == "message":
        return SendRequest(conversation_id=card.conversation_id, content=item.content or "", message_type="text")
    if item.kind == "audio":
        return SendRequest(
            conversation_id=card.conversation_id,
            content="",
            message_type="audio",
            file_url=item.file_url,
            file_name=item.file_name or item.title or "audio.mp3",
        )
    if item.kind == "media":
        media_type = "image"
        if (item.file_type or "").startswith("video/"):
            media_type = "video"
        elif item.file_url and item.file_url.lower().endswith(_VIDEO_EXTENSIONS):
            media_type = "video"
        return SendRequest(
            conversation_id=card.conversation_id,
            content=item.title or "",
            message_type=media_type,
            file_url=item.file_url,
            file_name=item.file_name or item.title or f"media.{'mp4' if media_type == 'video' else 'jpg'}",
            mime_type=item.file_type,
        )
    return SendRequest(
        conversation_id=card.conversation_id,
        content=item.title or "",
        message_type="document",
        file_url=item.file_url,
        file_name=item.file_name or item.title or "document.pdf",
        mime_type=item.file_type,
    )


class AutomationEngine:
    def __init__(self, gateway: OutboundGateway | None = None, sleep=asyncio.sleep):
        self.gateway = gateway or OutboundGateway()
        self.sleep = sleep
        self._actions = {
            "send_message": self._send_message,
            "send_funnel": self._send_funnel,
            "change_column": self._move_card,
            "move_to_column": self._move_card,
            "add_tag": self._add_tag,
            "add_agent": self._add_agent,
            "remove_agent": self._remove_agent,
        }

    # -- evaluation -------------------------------------------------------

    def open_cards(self, db: Session, workspace_id: str, contact_id: str) -> list[PipelineCard]:
        return (
            db.query(PipelineCard)
            .join(Pipeline, Pipeline.id == PipelineCard.pipeline_id)
            .filter(Pipeline.workspace_id == workspace_id)
            .filter(PipelineCard.contact_id == contact_id)
            .filter(PipelineCard.status == "open")
            .all()
        )

    def active_automations(self, db: Session, column_id: str) -> list[ColumnAutomation]:
        return (
            db.query(ColumnAutomation)
            .filter(ColumnAutomation.column_id == column_id)
            .filter(ColumnAutomation.is_active.is_(True))
            .order_by(ColumnAutomation.name, ColumnAutomation.id)
            .all()
        )

    def triggers(self, db: Session, automation_id: str, trigger_type: str) -> list[ColumnAutomationTrigger]:
        return (
            db.query(ColumnAutomationTrigger)
            .filter(ColumnAutomationTrigger.automation_id == automation_id)
            .filter(ColumnAutomationTrigger.trigger_type == trigger_type)
            .all()
        )

    def column_entry_date(self, db: Session, card: PipelineCard) -> datetime:
        """When the card last entered its current column, from history; else its creation time."""
        history = (
            db.query(PipelineCardHistory)
            .filter(PipelineCardHistory.card_id == card.id)
            .order_by(PipelineCardHistory.changed_at.desc())
            .all()
        )
        for entry in history:
            if (entry.meta or {}).get("new_column_id") == card.column_id:
                return entry.changed_at
        return card.created_at

    def count_inbound_since(self, db: Session, conversation_id: str, since: datetime) -> int:
        q = (
            db.query(func.count(Message.id))
            .filter(Message.conversation_id == conversation_id)
            .filter(Message.sender_type == "contact")
        )
        if since is not None:
            q = q.filter(Message.created_at >= since)
        return q.scalar() or 0

    def already_executed(self, db: Session, card: PipelineCard, automation: ColumnAutomation, trigger_type: str) -> bool:
        return (
            db.query(AutomationExecution.id)
            .filter(AutomationExecution.card_id == card.id)
            .filter(AutomationExecution.column_id == card.column_id)
            .filter(AutomationExecution.automation_id == automation.id)
            .filter(AutomationExecution.trigger_type == trigger_type)
            .first()
            is not None
        )

    def acquire_marker(self, db: Session, card: PipelineCard, automation: ColumnAutomation, trigger_type: str) -> bool:
        db.add(AutomationExecution(
            id=str(uuid.uuid4()),
            card_id=card.id,
            column_id=card.column_id,
            automation_id=automation.id,
            trigger_type=trigger_type,
            executed_at=utcnow(),
        ))
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            logger.info("automation %s already fired for card %s", automation.id, card.id)
            return False
        return True

    async def check_message_automations(self, db: Session, workspace_id: str, contact_id: str) -> list[str]:
        """Evaluate message_received triggers for the contact's open cards; returns fired automation ids."""
        fired = []
        for card in self.open_cards(db, workspace_id, contact_id):
            if not card.conversation_id:
                continue
            column_id = card.column_id
            for automation in self.active_automations(db, column_id):
                if card.column_id != column_id:
                    # an earlier automation moved the card
                    break
                for trigger in self.triggers(db, automation.id, MESSAGE_RECEIVED):
                    if self.already_executed(db, card, automation, MESSAGE_RECEIVED):
                        break
                    entry = self.column_entry_date(db, card)
                    count = self.count_inbound_since(db, card.conversation_id, entry)
                    threshold = message_threshold(trigger)
                    if count < threshold:
                        logger.debug("automation %s: %s/%s messages on card %s", automation.id, count, threshold, card.id)
                        continue
                    if not self.acquire_marker(db, card, automation, MESSAGE_RECEIVED):
                        break
                    logger.info("automation %s fired for card %s after %s messages", automation.id, card.id, count)
                    await self.run_actions(db, card, automation)
                    fired.append(automation.id)
                    break
        return fired

    async def check_time_based_automations(self, db: Session, now: datetime | None = None) -> list[str]:
        """Fire time_in_column automations for cards idle in their column long enough."""
        now = now or utcnow()
        fired = []
        rows = (
            db.query(ColumnAutomationTrigger, ColumnAutomation)
            .join(ColumnAutomation, ColumnAutomation.id == ColumnAutomationTrigger.automation_id)
            .filter(ColumnAutomationTrigger.trigger_type == TIME_IN_COLUMN)
            .filter(ColumnAutomation.is_active.is_(True))
            .all()
        )
        for trigger, automation in rows:
            minutes = time_threshold_minutes(trigger)
            if not minutes:
                logger.warning("time trigger %s has no usable threshold", trigger.id)
                continue
            cutoff = now - timedelta(minutes=minutes)
            cards = (
                db.query(PipelineCard)
                .filter(PipelineCard.column_id == automation.column_id)
                .filter(PipelineCard.status == "open")
                .filter(PipelineCard.moved_to_column_at <= cutoff)
                .all()
            )
            for card in cards:
                if self.already_executed(db, card, automation, TIME_IN_COLUMN):
                    continue
                if not self.acquire_marker(db, card, automation, TIME_IN_COLUMN):
                    continue
                logger.info("time automation %s fired for card %s (%s min)", automation.id, card.id, minutes)
                await self.run_actions(db, card, automation)
                fired.append(automation.id)
        return fired

    # -- actions ----------------------------------------------------------

    async def run_actions(self, db: Session, card: PipelineCard, automation: ColumnAutomation) -> None:
        actions = (
            db.query(ColumnAutomationAction)
            .filter(ColumnAutomationAction.automation_id == automation.id)
            .order_by(ColumnAutomationAction.action_order)
            .all()
        )
        for action in actions:
            handler = self._actions.get(action.action_type)
            if handler is None:
                logger.warning("unknown action type %s on automation %s", action.action_type, automation.id)
                continue
            try:
                await handler(db, card, action.action_config or {})
            except Exception:
                db.rollback()
                logger.exception("action %s (%s) failed for card %s", action.id, action.action_type, card.id)

    async def _send_message(self, db: Session, card: PipelineCard, config: dict) -> None:
        text = config.get("message") or ""
        if not text:
            logger.warning("send_message without message text")
            return
        await self.gateway.send(db, SendRequest(conversation_id=card.conversation_id, content=text, message_type="text"))

    async def _send_funnel(self, db: Session, card: PipelineCard, config: dict) -> None:
        funnel = db.get(QuickFunnel, config.get("funnel_id")) if config.get("funnel_id") else None
        if not funnel:
            logger.warning("send_funnel: funnel %s not found", config.get("funnel_id"))
            return
        steps = sorted(funnel.steps or [], key=lambda s: _as_int(s.get("order"), 0))
        for i, step in enumerate(steps):
            delay = _as_int(step.get("delay"), 0)
            if i > 0 and delay > 0:
                await self.sleep(delay)
            kind = _STEP_KINDS.get(str(step.get("type") or "").lower())
            item = db.get(QuickItem, step.get("item_id")) if step.get("item_id") else None
            if not kind or not item or item.kind != kind:
                logger.warning("funnel %s step %s skipped (type=%s item=%s)", funnel.id, i + 1, step.get("type"), step.get("item_id"))
                continue
            try:
                await self.gateway.send(db, quick_item_request(card, item))
            except RelayError as exc:
                logger.error("funnel %s step %s/%s failed: %s", funnel.id, i + 1, len(steps), exc.detail)

    async def _move_card(self, db: Session, card: PipelineCard, config: dict) -> None:
        target = config.get("column_id")
        if not target:
            logger.warning("move action without column_id")
            return
        # raw column update; history rows come from manual moves only
        card.column_id = target
        card.moved_to_column_at = utcnow()
        db.commit()

    async def _add_tag(self, db: Session, card: PipelineCard, config: dict) -> None:
        tag_id = config.get("tag_id")
        if not tag_id or not card.contact_id:
            logger.warning("add_tag without tag_id or contact")
            return
        db.add(ContactTag(id=str(uuid.uuid4()), contact_id=card.contact_id, tag_id=tag_id, created_at=utcnow()))
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            logger.info("contact %s already has tag %s", card.contact_id, tag_id)

    async def _add_agent(self, db: Session, card: PipelineCard, config: dict) -> None:
        agent_id = config.get("agent_id")
        conv = db.get(Conversation, card.conversation_id) if card.conversation_id else None
        if not conv or not agent_id:
            logger.warning("add_agent without conversation or agent_id")
            return
        conv.agente_ativo = True
        conv.agent_active_id = agent_id
        conv.status = "open"
        db.commit()

    async def _remove_agent(self, db: Session, card: PipelineCard, config: dict) -> None:
        conv = db.get(Conversation, card.conversation_id) if card.conversation_id else None
        if not conv:
            logger.warning("remove_agent without conversation")
            return
        conv.agente_ativo = False
        conv.agent_active_id = None
        db.commit()
