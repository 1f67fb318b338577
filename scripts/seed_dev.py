"""
Seed a development workspace for the relay:
- Workspace with one Evolution connection and webhook/provider settings
- Sequential queue with two active agents, wired to the connection
- Sales pipeline whose first column sends a welcome funnel after 2 inbound messages

Usage:
  python scripts/seed_dev.py [Workspace Name] [instance_name]

Respects DATABASE_URL, N8N_INBOUND_WEBHOOK_URL, EVOLUTION_API_URL and EVOLUTION_API_KEY.
"""
import os
import sys
import uuid

from packages.relay.db import SessionLocal
from packages.relay import models


def _id() -> str:
    return str(uuid.uuid4())


def get_or_create_workspace(db, name: str):
    ws = db.query(models.Workspace).filter(models.Workspace.name == name).first()
    if ws:
        return ws
    ws = models.Workspace(id=_id(), name=name)
    db.add(ws)
    db.commit()
    return ws


def configure_workspace(db, ws_id: str):
    if not db.query(models.WorkspaceWebhookSettings).filter_by(workspace_id=ws_id).first():
        db.add(models.WorkspaceWebhookSettings(
            id=_id(),
            workspace_id=ws_id,
            webhook_url=os.getenv("N8N_INBOUND_WEBHOOK_URL", "http://n8n:5678/webhook/relay"),
            webhook_secret=os.getenv("N8N_WEBHOOK_SECRET", "dev-n8n-secret"),
        ))
    if not db.query(models.ProviderCredentials).filter_by(workspace_id=ws_id, provider="evolution").first():
        db.add(models.ProviderCredentials(
            id=_id(),
            workspace_id=ws_id,
            provider="evolution",
            base_url=os.getenv("EVOLUTION_API_URL", "http://evolution:8080"),
            api_key=os.getenv("EVOLUTION_API_KEY", "dev-evolution-key"),
        ))
    db.commit()


def create_queue(db, ws_id: str):
    queue = models.Queue(id=_id(), workspace_id=ws_id, name="Atendimento", distribution_type="sequencial")
    db.add(queue)
    for pos, name in enumerate(["Ana", "Bruno"]):
        user = models.User(id=_id(), workspace_id=ws_id, name=name, email=f"{name.lower()}-{queue.id[:8]}@example.test")
        db.add(user)
        db.add(models.QueueUser(id=_id(), queue_id=queue.id, user_id=user.id, order_position=pos))
    db.commit()
    return queue


def get_or_create_connection(db, ws_id: str, instance: str, queue_id: str):
    conn = db.query(models.Connection).filter(models.Connection.instance_name == instance).first()
    if conn:
        conn.queue_id = queue_id
        db.commit()
        return conn
    conn = models.Connection(
        id=_id(), workspace_id=ws_id, instance_name=instance, status="connected", queue_id=queue_id,
    )
    db.add(conn)
    db.commit()
    return conn


def create_pipeline(db, ws_id: str):
    pipeline = models.Pipeline(id=_id(), workspace_id=ws_id, name="Vendas")
    db.add(pipeline)
    columns = []
    for pos, name in enumerate(["Novo lead", "Qualificado", "Proposta"]):
        col = models.PipelineColumn(id=_id(), pipeline_id=pipeline.id, name=name, order_position=pos)
        db.add(col)
        columns.append(col)

    greeting = models.QuickItem(id=_id(), workspace_id=ws_id, kind="message", title="Boas-vindas",
                                content="Olá! Obrigado pelo contato.")
    follow_up = models.QuickItem(id=_id(), workspace_id=ws_id, kind="message", title="Follow-up",
                                 content="Posso te enviar nossa tabela de preços?")
    db.add_all([greeting, follow_up])
    funnel = models.QuickFunnel(id=_id(), workspace_id=ws_id, title="Boas-vindas", steps=[
        {"type": "message", "item_id": greeting.id, "delay": 0, "order": 1},
        {"type": "message", "item_id": follow_up.id, "delay": 5, "order": 2},
    ])
    db.add(funnel)

    automation = models.ColumnAutomation(id=_id(), column_id=columns[0].id, workspace_id=ws_id, name="Boas-vindas")
    db.add(automation)
    db.add(models.ColumnAutomationTrigger(id=_id(), automation_id=automation.id, trigger_type="message_received",
                                          trigger_config={"message_count": 2}))
    db.add(models.ColumnAutomationAction(id=_id(), automation_id=automation.id, action_type="send_funnel",
                                         action_config={"funnel_id": funnel.id}, action_order=0))
    db.add(models.ColumnAutomationAction(id=_id(), automation_id=automation.id, action_type="change_column",
                                         action_config={"column_id": columns[1].id}, action_order=1))
    db.commit()
    return pipeline, automation


def main():
    ws_name = sys.argv[1] if len(sys.argv) > 1 else "Acme"
    instance = sys.argv[2] if len(sys.argv) > 2 else "acme-main"
    with SessionLocal() as db:
        ws = get_or_create_workspace(db, ws_name)
        configure_workspace(db, ws.id)
        queue = create_queue(db, ws.id)
        conn = get_or_create_connection(db, ws.id, instance, queue.id)
        pipeline, automation = create_pipeline(db, ws.id)
        print("Seeded:")
        print("  workspace:", ws.id, ws.name)
        print("  connection:", conn.id, conn.instance_name)
        print("  queue:", queue.id, queue.distribution_type)
        print("  pipeline:", pipeline.id, "automation:", automation.id)


if __name__ == "__main__":
    main()
