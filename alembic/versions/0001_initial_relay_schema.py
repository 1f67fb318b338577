"""initial relay schema

Revision ID: 0001_initial_relay_schema
Revises: 
Create Date: 2026-10-19 00:00:00

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '0001_initial_relay_schema'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'workspaces',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
    )

    op.create_table(
        'users',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('workspace_id', sa.String(), sa.ForeignKey('workspaces.id')),
        sa.Column('name', sa.String()),
        sa.Column('email', sa.String(), unique=True),
        sa.Column('status', sa.String(), server_default='active'),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
    )

    op.create_table(
        'queues',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('workspace_id', sa.String(), sa.ForeignKey('workspaces.id'), nullable=False),
        sa.Column('name', sa.String()),
        sa.Column('distribution_type', sa.String(), server_default='aleatoria'),
        sa.Column('last_assigned_user_index', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('ai_agent_id', sa.String()),
        sa.Column('is_active', sa.Boolean(), server_default=sa.true()),
    )

    op.create_table(
        'connections',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('workspace_id', sa.String(), sa.ForeignKey('workspaces.id'), nullable=False),
        sa.Column('instance_name', sa.String(), nullable=False, unique=True),
        sa.Column('phone_number', sa.String()),
        sa.Column('status', sa.String(), server_default='disconnected'),
        sa.Column('queue_id', sa.String(), sa.ForeignKey('queues.id')),
        sa.Column('provider', sa.String(), server_default='evolution'),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
    )

    op.create_table(
        'workspace_webhook_settings',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('workspace_id', sa.String(), sa.ForeignKey('workspaces.id'), nullable=False, unique=True),
        sa.Column('webhook_url', sa.String()),
        sa.Column('webhook_secret', sa.String()),
    )

    op.create_table(
        'provider_credentials',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('workspace_id', sa.String(), sa.ForeignKey('workspaces.id'), nullable=False),
        sa.Column('provider', sa.String(), nullable=False, server_default='evolution'),
        sa.Column('base_url', sa.String()),
        sa.Column('api_key', sa.String()),
        sa.UniqueConstraint('workspace_id', 'provider', name='uq_provider_credentials_ws_provider'),
    )

    op.create_table(
        'contacts',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('workspace_id', sa.String(), sa.ForeignKey('workspaces.id'), nullable=False),
        sa.Column('phone', sa.String(), nullable=False),
        sa.Column('name', sa.String()),
        sa.Column('avatar_url', sa.String()),
        sa.Column('extra_info', sa.JSON()),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
        sa.UniqueConstraint('workspace_id', 'phone', name='uq_contacts_ws_phone'),
    )

    op.create_table(
        'conversations',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('workspace_id', sa.String(), sa.ForeignKey('workspaces.id'), nullable=False),
        sa.Column('contact_id', sa.String(), sa.ForeignKey('contacts.id'), nullable=False),
        sa.Column('connection_id', sa.String(), sa.ForeignKey('connections.id')),
        sa.Column('status', sa.String(), server_default='open'),
        sa.Column('assigned_user_id', sa.String(), sa.ForeignKey('users.id')),
        sa.Column('assigned_at', sa.DateTime()),
        sa.Column('queue_id', sa.String(), sa.ForeignKey('queues.id')),
        sa.Column('agente_ativo', sa.Boolean(), server_default=sa.false()),
        sa.Column('agent_active_id', sa.String()),
        sa.Column('last_activity_at', sa.DateTime(), server_default=sa.func.now()),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now()),
    )
    # conversation reuse looks up the latest conversation of a contact
    op.create_index('ix_conversations_ws_contact_created', 'conversations', ['workspace_id', 'contact_id', 'created_at'])

    op.create_table(
        'messages',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('conversation_id', sa.String(), sa.ForeignKey('conversations.id'), nullable=False),
        sa.Column('workspace_id', sa.String(), sa.ForeignKey('workspaces.id'), nullable=False),
        sa.Column('content', sa.Text()),
        sa.Column('message_type', sa.String(), server_default='text'),
        sa.Column('sender_type', sa.String(), nullable=False),
        sa.Column('sender_id', sa.String()),
        sa.Column('status', sa.String()),
        sa.Column('external_id', sa.String()),
        sa.Column('evolution_key_id', sa.String()),
        sa.Column('file_url', sa.String()),
        sa.Column('file_name', sa.String()),
        sa.Column('mime_type', sa.String()),
        sa.Column('metadata', sa.JSON()),
        sa.Column('delivered_at', sa.DateTime()),
        sa.Column('read_at', sa.DateTime()),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
    )
    # external_id is the dedup key for provider and client ids; NULLs stay allowed
    op.create_index(
        'uq_messages_external_id',
        'messages',
        ['external_id'],
        unique=True,
        postgresql_where=sa.text('external_id IS NOT NULL'),
    )
    op.create_index('ix_messages_evolution_key_id', 'messages', ['evolution_key_id'])
    op.create_index('ix_messages_conversation_created', 'messages', ['conversation_id', 'created_at'])

    op.create_table(
        'queue_users',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('queue_id', sa.String(), sa.ForeignKey('queues.id'), nullable=False),
        sa.Column('user_id', sa.String(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('order_position', sa.Integer(), server_default='0'),
        sa.UniqueConstraint('queue_id', 'user_id', name='uq_queue_users_queue_user'),
    )

    op.create_table(
        'conversation_assignments',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('conversation_id', sa.String(), sa.ForeignKey('conversations.id'), nullable=False),
        sa.Column('from_assigned_user_id', sa.String()),
        sa.Column('to_assigned_user_id', sa.String()),
        sa.Column('from_queue_id', sa.String()),
        sa.Column('to_queue_id', sa.String()),
        sa.Column('action', sa.String(), nullable=False),
        sa.Column('changed_by', sa.String()),
        sa.Column('changed_at', sa.DateTime(), server_default=sa.func.now()),
    )

    op.create_table(
        'pipelines',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('workspace_id', sa.String(), sa.ForeignKey('workspaces.id'), nullable=False),
        sa.Column('name', sa.String()),
    )

    op.create_table(
        'pipeline_columns',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('pipeline_id', sa.String(), sa.ForeignKey('pipelines.id'), nullable=False),
        sa.Column('name', sa.String()),
        sa.Column('order_position', sa.Integer(), server_default='0'),
    )

    op.create_table(
        'pipeline_cards',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('pipeline_id', sa.String(), sa.ForeignKey('pipelines.id')),
        sa.Column('column_id', sa.String(), sa.ForeignKey('pipeline_columns.id'), nullable=False),
        sa.Column('contact_id', sa.String(), sa.ForeignKey('contacts.id')),
        sa.Column('conversation_id', sa.String(), sa.ForeignKey('conversations.id')),
        sa.Column('title', sa.String()),
        sa.Column('status', sa.String(), server_default='open'),
        sa.Column('moved_to_column_at', sa.DateTime(), server_default=sa.func.now()),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
    )

    op.create_table(
        'pipeline_card_history',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('card_id', sa.String(), sa.ForeignKey('pipeline_cards.id'), nullable=False),
        sa.Column('action', sa.String()),
        sa.Column('metadata', sa.JSON()),
        sa.Column('changed_at', sa.DateTime(), server_default=sa.func.now()),
    )

    op.create_table(
        'column_automations',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('column_id', sa.String(), sa.ForeignKey('pipeline_columns.id'), nullable=False),
        sa.Column('workspace_id', sa.String(), sa.ForeignKey('workspaces.id')),
        sa.Column('name', sa.String()),
        sa.Column('is_active', sa.Boolean(), server_default=sa.true()),
    )

    op.create_table(
        'column_automation_triggers',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('automation_id', sa.String(), sa.ForeignKey('column_automations.id'), nullable=False),
        sa.Column('trigger_type', sa.String(), nullable=False),
        sa.Column('trigger_config', sa.JSON()),
    )

    op.create_table(
        'column_automation_actions',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('automation_id', sa.String(), sa.ForeignKey('column_automations.id'), nullable=False),
        sa.Column('action_type', sa.String(), nullable=False),
        sa.Column('action_config', sa.JSON()),
        sa.Column('action_order', sa.Integer(), server_default='0'),
    )

    op.create_table(
        'automation_executions',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('card_id', sa.String(), sa.ForeignKey('pipeline_cards.id'), nullable=False),
        sa.Column('column_id', sa.String(), nullable=False),
        sa.Column('automation_id', sa.String(), sa.ForeignKey('column_automations.id'), nullable=False),
        sa.Column('trigger_type', sa.String(), nullable=False),
        sa.Column('executed_at', sa.DateTime(), server_default=sa.func.now()),
        sa.UniqueConstraint('card_id', 'column_id', 'automation_id', 'trigger_type', name='uq_automation_executions_once'),
    )

    op.create_table(
        'tags',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('workspace_id', sa.String(), sa.ForeignKey('workspaces.id')),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('color', sa.String()),
    )

    op.create_table(
        'contact_tags',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('contact_id', sa.String(), sa.ForeignKey('contacts.id'), nullable=False),
        sa.Column('tag_id', sa.String(), sa.ForeignKey('tags.id'), nullable=False),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
        sa.UniqueConstraint('contact_id', 'tag_id', name='uq_contact_tags_contact_tag'),
    )

    op.create_table(
        'quick_funnels',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('workspace_id', sa.String(), sa.ForeignKey('workspaces.id')),
        sa.Column('title', sa.String()),
        sa.Column('steps', sa.JSON()),
    )

    op.create_table(
        'quick_items',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('workspace_id', sa.String(), sa.ForeignKey('workspaces.id')),
        sa.Column('kind', sa.String(), nullable=False),
        sa.Column('title', sa.String()),
        sa.Column('content', sa.Text()),
        sa.Column('file_url', sa.String()),
        sa.Column('file_name', sa.String()),
        sa.Column('file_type', sa.String()),
    )

    op.create_table(
        'webhook_logs',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('workspace_id', sa.String()),
        sa.Column('instance_name', sa.String()),
        sa.Column('event_type', sa.String()),
        sa.Column('status', sa.String()),
        sa.Column('payload', sa.JSON()),
        sa.Column('response_status', sa.Integer()),
        sa.Column('response_body', sa.Text()),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
    )


def downgrade() -> None:
    op.drop_table('webhook_logs')
    op.drop_table('quick_items')
    op.drop_table('quick_funnels')
    op.drop_table('contact_tags')
    op.drop_table('tags')
    op.drop_table('automation_executions')
    op.drop_table('column_automation_actions')
    op.drop_table('column_automation_triggers')
    op.drop_table('column_automations')
    op.drop_table('pipeline_card_history')
    op.drop_table('pipeline_cards')
    op.drop_table('pipeline_columns')
    op.drop_table('pipelines')
    op.drop_table('conversation_assignments')
    op.drop_table('queue_users')
    op.drop_index('ix_messages_conversation_created', table_name='messages')
    op.drop_index('ix_messages_evolution_key_id', table_name='messages')
    op.drop_index('uq_messages_external_id', table_name='messages')
    op.drop_table('messages')
    op.drop_index('ix_conversations_ws_contact_created', table_name='conversations')
    op.drop_table('conversations')
    op.drop_table('contacts')
    op.drop_table('provider_credentials')
    op.drop_table('workspace_webhook_settings')
    op.drop_table('connections')
    op.drop_table('queues')
    op.drop_table('users')
    op.drop_table('workspaces')
