"""add_automation_tables

Revision ID: 3b71c0d2a9e4
Revises:
Create Date: 2026-10-19 09:12:44.118204

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '3b71c0d2a9e4'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema - Create automation rule, execution log, entity and notification tables."""

    conn = op.get_bind()
    inspector = sa.inspect(conn)

    def table_exists(name):
        return inspector.has_table(name)

    if not table_exists('automation_rules'):
        op.create_table(
            'automation_rules',
            sa.Column('id', sa.String(length=36), nullable=False),
            sa.Column('name', sa.String(length=255), nullable=False),
            sa.Column('description', sa.Text(), nullable=True),
            sa.Column('trigger_type', sa.String(length=40), nullable=False),
            sa.Column('entity_kind', sa.String(length=40), nullable=True),
            sa.Column('trigger_condition', sa.JSON(), nullable=False),
            sa.Column('delay_seconds', sa.Float(), nullable=False),
            sa.Column('action_kind', sa.String(length=40), nullable=False),
            sa.Column('action_config', sa.JSON(), nullable=False),
            sa.Column('delivery_channel', sa.String(length=20), nullable=False),
            sa.Column('enabled', sa.Boolean(), nullable=False),
            sa.Column('last_run_at', sa.DateTime(), nullable=True),
            sa.Column('created_at', sa.DateTime(), nullable=True),
            sa.Column('updated_at', sa.DateTime(), nullable=True),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('idx_automation_rules_trigger', 'automation_rules', ['trigger_type', 'enabled'])

    # No foreign key on rule_id: logs outlive their rule
    if not table_exists('automation_execution_logs'):
        op.create_table(
            'automation_execution_logs',
            sa.Column('id', sa.String(length=36), nullable=False),
            sa.Column('rule_id', sa.String(length=36), nullable=False),
            sa.Column('action_kind', sa.String(length=40), nullable=True),
            sa.Column('entity_id', sa.String(length=64), nullable=True),
            sa.Column('status', sa.String(length=10), nullable=False),
            sa.Column('message', sa.Text(), nullable=True),
            sa.Column('context', sa.JSON(), nullable=False),
            sa.Column('executed_at', sa.DateTime(), nullable=False),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('idx_execution_logs_rule', 'automation_execution_logs', ['rule_id', 'executed_at'])
        op.create_index(
            'idx_execution_logs_rule_entity',
            'automation_execution_logs',
            ['rule_id', 'entity_id', 'status'],
        )

    if not table_exists('business_entities'):
        op.create_table(
            'business_entities',
            sa.Column('id', sa.String(length=36), nullable=False),
            sa.Column('kind', sa.String(length=40), nullable=False),
            sa.Column('parent_id', sa.String(length=36), nullable=True),
            sa.Column('properties', sa.JSON(), nullable=True),
            sa.Column('created_at', sa.DateTime(), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=True),
            sa.Column('updated_at', sa.DateTime(), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=True),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('idx_business_entities_kind', 'business_entities', ['kind'])
        op.create_index('idx_business_entities_parent', 'business_entities', ['parent_id'])

    if not table_exists('notifications'):
        op.create_table(
            'notifications',
            sa.Column('id', sa.String(length=36), nullable=False),
            sa.Column('user_id', sa.String(length=64), nullable=False),
            sa.Column('title', sa.String(length=255), nullable=False),
            sa.Column('body', sa.Text(), nullable=True),
            sa.Column('related_kind', sa.String(length=40), nullable=True),
            sa.Column('related_id', sa.String(length=64), nullable=True),
            sa.Column('is_read', sa.Boolean(), nullable=True),
            sa.Column('created_at', sa.DateTime(), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=True),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_notifications_user_id', 'notifications', ['user_id'])


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_index('ix_notifications_user_id', table_name='notifications')
    op.drop_table('notifications')
    op.drop_index('idx_business_entities_parent', table_name='business_entities')
    op.drop_index('idx_business_entities_kind', table_name='business_entities')
    op.drop_table('business_entities')
    op.drop_index('idx_execution_logs_rule_entity', table_name='automation_execution_logs')
    op.drop_index('idx_execution_logs_rule', table_name='automation_execution_logs')
    op.drop_table('automation_execution_logs')
    op.drop_index('idx_automation_rules_trigger', table_name='automation_rules')
    op.drop_table('automation_rules')
