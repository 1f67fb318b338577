from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base
from sqlalchemy.types import JSON as SAJSON

Base = declarative_base()

# Portable JSON column so the same models run on SQLite (tests/dev) and Postgres.
JSONType = SAJSON


def utcnow() -> datetime:
    """Naive UTC timestamp; SQLite drops tzinfo so all stored values stay naive."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Workspace(Base):
    __tablename__ = "workspaces"
    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    created_at = Column(DateTime, default=utcnow)


class User(Base):
    __tablename__ = "users"
    id = Column(String, primary_key=True)
    workspace_id = Column(ForeignKey("workspaces.id"))
    name = Column(String)
    email = Column(String, unique=True)
    status = Column(String, default="active")
    created_at = Column(DateTime, default=utcnow)


class Connection(Base):
    __tablename__ = "connections"
    id = Column(String, primary_key=True)
    workspace_id = Column(ForeignKey("workspaces.id"), nullable=False)
    instance_name = Column(String, unique=True, nullable=False)
    phone_number = Column(String)
    status = Column(String, default="disconnected")
    queue_id = Column(ForeignKey("queues.id"))
    provider = Column(String, default="evolution")
    created_at = Column(DateTime, default=utcnow)


class WorkspaceWebhookSettings(Base):
    __tablename__ = "workspace_webhook_settings"
    id = Column(String, primary_key=True)
    workspace_id = Column(ForeignKey("workspaces.id"), unique=True, nullable=False)
    webhook_url = Column(String)
    webhook_secret = Column(String)


class ProviderCredentials(Base):
    __tablename__ = "provider_credentials"
    __table_args__ = (UniqueConstraint("workspace_id", "provider", name="uq_provider_credentials_ws_provider"),)
    id = Column(String, primary_key=True)
    workspace_id = Column(ForeignKey("workspaces.id"), nullable=False)
    provider = Column(String, nullable=False, default="evolution")
    base_url = Column(String)
    api_key = Column(String)


class Contact(Base):
    __tablename__ = "contacts"
    __table_args__ = (UniqueConstraint("workspace_id", "phone", name="uq_contacts_ws_phone"),)
    id = Column(String, primary_key=True)
    workspace_id = Column(ForeignKey("workspaces.id"), nullable=False)
    phone = Column(String, nullable=False)
    name = Column(String)
    avatar_url = Column(String)
    extra_info = Column(JSONType, default=dict)
    created_at = Column(DateTime, default=utcnow)


class Conversation(Base):
    __tablename__ = "conversations"
    id = Column(String, primary_key=True)
    workspace_id = Column(ForeignKey("workspaces.id"), nullable=False)
    contact_id = Column(ForeignKey("contacts.id"), nullable=False)
    connection_id = Column(ForeignKey("connections.id"))
    status = Column(String, default="open")
    assigned_user_id = Column(ForeignKey("users.id"))
    assigned_at = Column(DateTime)
    queue_id = Column(ForeignKey("queues.id"))
    agente_ativo = Column(Boolean, default=False)
    agent_active_id = Column(String)
    last_activity_at = Column(DateTime, default=utcnow)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class Message(Base):
    __tablename__ = "messages"
    id = Column(String, primary_key=True)
    conversation_id = Column(ForeignKey("conversations.id"), nullable=False)
    workspace_id = Column(ForeignKey("workspaces.id"), nullable=False)
    content = Column(Text)
    message_type = Column(String, default="text")
    sender_type = Column(String, nullable=False)
    sender_id = Column(String)
    status = Column(String)
    # provider message id (or client-generated id for outbound); dedup key
    external_id = Column(String, unique=True)
    evolution_key_id = Column(String, index=True)
    file_url = Column(String)
    file_name = Column(String)
    mime_type = Column(String)
    # "metadata" is reserved on declarative classes
    meta = Column("metadata", JSONType, default=dict)
    delivered_at = Column(DateTime)
    read_at = Column(DateTime)
    created_at = Column(DateTime, default=utcnow)


class Queue(Base):
    __tablename__ = "queues"
    id = Column(String, primary_key=True)
    workspace_id = Column(ForeignKey("workspaces.id"), nullable=False)
    name = Column(String)
    distribution_type = Column(String, default="aleatoria")
    last_assigned_user_index = Column(Integer, nullable=False, default=0)
    ai_agent_id = Column(String)
    is_active = Column(Boolean, default=True)


class QueueUser(Base):
    __tablename__ = "queue_users"
    __table_args__ = (UniqueConstraint("queue_id", "user_id", name="uq_queue_users_queue_user"),)
    id = Column(String, primary_key=True)
    queue_id = Column(ForeignKey("queues.id"), nullable=False)
    user_id = Column(ForeignKey("users.id"), nullable=False)
    order_position = Column(Integer, default=0)


class ConversationAssignment(Base):
    __tablename__ = "conversation_assignments"
    id = Column(String, primary_key=True)
    conversation_id = Column(ForeignKey("conversations.id"), nullable=False)
    from_assigned_user_id = Column(String)
    to_assigned_user_id = Column(String)
    from_queue_id = Column(String)
    to_queue_id = Column(String)
    action = Column(String, nullable=False)
    changed_by = Column(String)
    changed_at = Column(DateTime, default=utcnow)


class Pipeline(Base):
    __tablename__ = "pipelines"
    id = Column(String, primary_key=True)
    workspace_id = Column(ForeignKey("workspaces.id"), nullable=False)
    name = Column(String)


class PipelineColumn(Base):
    __tablename__ = "pipeline_columns"
    id = Column(String, primary_key=True)
    pipeline_id = Column(ForeignKey("pipelines.id"), nullable=False)
    name = Column(String)
    order_position = Column(Integer, default=0)


class PipelineCard(Base):
    __tablename__ = "pipeline_cards"
    id = Column(String, primary_key=True)
    pipeline_id = Column(ForeignKey("pipelines.id"))
    column_id = Column(ForeignKey("pipeline_columns.id"), nullable=False)
    contact_id = Column(ForeignKey("contacts.id"))
    conversation_id = Column(ForeignKey("conversations.id"))
    title = Column(String)
    status = Column(String, default="open")
    moved_to_column_at = Column(DateTime, default=utcnow)
    created_at = Column(DateTime, default=utcnow)


class PipelineCardHistory(Base):
    __tablename__ = "pipeline_card_history"
    id = Column(String, primary_key=True)
    card_id = Column(ForeignKey("pipeline_cards.id"), nullable=False)
    action = Column(String)
    meta = Column("metadata", JSONType, default=dict)
    changed_at = Column(DateTime, default=utcnow)


class ColumnAutomation(Base):
    __tablename__ = "column_automations"
    id = Column(String, primary_key=True)
    column_id = Column(ForeignKey("pipeline_columns.id"), nullable=False)
    workspace_id = Column(ForeignKey("workspaces.id"))
    name = Column(String)
    is_active = Column(Boolean, default=True)


class ColumnAutomationTrigger(Base):
    __tablename__ = "column_automation_triggers"
    id = Column(String, primary_key=True)
    automation_id = Column(ForeignKey("column_automations.id"), nullable=False)
    trigger_type = Column(String, nullable=False)
    trigger_config = Column(JSONType, default=dict)


class ColumnAutomationAction(Base):
    __tablename__ = "column_automation_actions"
    id = Column(String, primary_key=True)
    automation_id = Column(ForeignKey("column_automations.id"), nullable=False)
    action_type = Column(String, nullable=False)
    action_config = Column(JSONType, default=dict)
    action_order = Column(Integer, default=0)


class AutomationExecution(Base):
    __tablename__ = "automation_executions"
    __table_args__ = (
        UniqueConstraint("card_id", "column_id", "automation_id", "trigger_type", name="uq_automation_executions_once"),
    )
    id = Column(String, primary_key=True)
    card_id = Column(ForeignKey("pipeline_cards.id"), nullable=False)
    column_id = Column(String, nullable=False)
    automation_id = Column(ForeignKey("column_automations.id"), nullable=False)
    trigger_type = Column(String, nullable=False)
    executed_at = Column(DateTime, default=utcnow)


class Tag(Base):
    __tablename__ = "tags"
    id = Column(String, primary_key=True)
    workspace_id = Column(ForeignKey("workspaces.id"))
    name = Column(String, nullable=False)
    color = Column(String)


class ContactTag(Base):
    __tablename__ = "contact_tags"
    __table_args__ = (UniqueConstraint("contact_id", "tag_id", name="uq_contact_tags_contact_tag"),)
    id = Column(String, primary_key=True)
    contact_id = Column(ForeignKey("contacts.id"), nullable=False)
    tag_id = Column(ForeignKey("tags.id"), nullable=False)
    created_at = Column(DateTime, default=utcnow)


class QuickFunnel(Base):
    __tablename__ = "quick_funnels"
    id = Column(String, primary_key=True)
    workspace_id = Column(ForeignKey("workspaces.id"))
    title = Column(String)
    # [{"type": "message", "item_id": "...", "delay": 5, "order": 1}, ...]
    steps = Column(JSONType, default=list)


class QuickItem(Base):
    __tablename__ = "quick_items"
    id = Column(String, primary_key=True)
    workspace_id = Column(ForeignKey("workspaces.id"))
    kind = Column(String, nullable=False)
    title = Column(String)
    content = Column(Text)
    file_url = Column(String)
    file_name = Column(String)
    file_type = Column(String)


class WebhookLog(Base):
    __tablename__ = "webhook_logs"
    id = Column(String, primary_key=True)
    workspace_id = Column(String)
    instance_name = Column(String)
    event_type = Column(String)
    status = Column(String)
    payload = Column(JSONType)
    response_status = Column(Integer)
    response_body = Column(Text)
    created_at = Column(DateTime, default=utcnow)
