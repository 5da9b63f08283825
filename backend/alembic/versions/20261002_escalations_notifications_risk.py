"""Create escalations, notifications and risk schemas

Revision ID: 20261002_escalations_risk
Revises: 20261001_protocols_outreach
Create Date: 2026-10-02
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '20261002_escalations_risk'
down_revision: Union[str, None] = '20261001_protocols_outreach'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.execute('CREATE SCHEMA IF NOT EXISTS escalations')
    op.execute('CREATE SCHEMA IF NOT EXISTS notifications')
    op.execute('CREATE SCHEMA IF NOT EXISTS risk')

    # escalation_tasks - nurse work items with SLA
    op.create_table(
        'escalation_tasks',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('episode_id', sa.UUID(), nullable=False),
        sa.Column('source_attempt_id', sa.UUID(), nullable=True),
        sa.Column('interaction_id', sa.UUID(), nullable=True),
        sa.Column('parent_task_id', sa.UUID(), nullable=True),
        sa.Column('severity', sa.String(length=20), nullable=False),
        sa.Column('priority', sa.String(length=20), nullable=False),
        sa.Column('reason_codes', sa.JSON(), nullable=False),
        sa.Column('sla_minutes', sa.Integer(), nullable=False),
        sa.Column('sla_due_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='OPEN'),
        sa.Column('assigned_to_user_id', sa.UUID(), nullable=True),
        sa.Column('assigned_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('picked_up_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('resolved_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('resolved_by_user_id', sa.UUID(), nullable=True),
        sa.Column('resolution_outcome_code', sa.String(length=50), nullable=True),
        sa.Column('resolution_notes', sa.Text(), nullable=True),
        sa.Column('warning_sent_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('breach_sent_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('dedupe_key', sa.String(length=255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        # Note: No FK to care schema to maintain bounded context separation (reference by ID only)
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('dedupe_key'),
        schema='escalations'
    )
    op.create_index('ix_escalations_escalation_tasks_episode_id', 'escalation_tasks', ['episode_id'], schema='escalations')
    op.create_index('ix_escalations_escalation_tasks_parent_task_id', 'escalation_tasks', ['parent_task_id'], schema='escalations')
    op.create_index('ix_escalations_escalation_tasks_sla_due_at', 'escalation_tasks', ['sla_due_at'], schema='escalations')
    op.create_index('ix_escalations_escalation_tasks_status', 'escalation_tasks', ['status'], schema='escalations')
    op.create_index('ix_escalations_escalation_tasks_assigned_to_user_id', 'escalation_tasks', ['assigned_to_user_id'], schema='escalations')

    # notification_logs
    op.create_table(
        'notification_logs',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('notification_type', sa.String(length=50), nullable=False),
        sa.Column('channel', sa.String(length=20), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='PENDING'),
        sa.Column('recipient_address', sa.String(length=255), nullable=False),
        sa.Column('recipient_user_id', sa.UUID(), nullable=True),
        sa.Column('recipient_patient_id', sa.UUID(), nullable=True),
        sa.Column('subject', sa.String(length=255), nullable=True),
        sa.Column('message_content', sa.Text(), nullable=False),
        sa.Column('retry_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('provider_message_id', sa.String(length=255), nullable=True),
        sa.Column('failure_reason', sa.Text(), nullable=True),
        sa.Column('task_id', sa.UUID(), nullable=True),
        sa.Column('episode_id', sa.UUID(), nullable=True),
        sa.Column('outreach_attempt_id', sa.UUID(), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=False),
        sa.Column('sent_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('delivered_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('failed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('provider_message_id'),
        schema='notifications'
    )
    op.create_index('ix_notifications_notification_logs_notification_type', 'notification_logs', ['notification_type'], schema='notifications')
    op.create_index('ix_notifications_notification_logs_status', 'notification_logs', ['status'], schema='notifications')
    op.create_index('ix_notifications_notification_logs_recipient_user_id', 'notification_logs', ['recipient_user_id'], schema='notifications')
    op.create_index('ix_notifications_notification_logs_recipient_patient_id', 'notification_logs', ['recipient_patient_id'], schema='notifications')
    op.create_index('ix_notifications_notification_logs_task_id', 'notification_logs', ['task_id'], schema='notifications')
    op.create_index('ix_notifications_notification_logs_episode_id', 'notification_logs', ['episode_id'], schema='notifications')
    op.create_index('ix_notifications_notification_logs_outreach_attempt_id', 'notification_logs', ['outreach_attempt_id'], schema='notifications')

    # checkin_interactions
    op.create_table(
        'checkin_interactions',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('episode_id', sa.UUID(), nullable=False),
        sa.Column('outreach_attempt_id', sa.UUID(), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='IN_PROGRESS'),
        sa.Column('wellness_confirmation_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('confirmed_areas', sa.JSON(), nullable=False),
        sa.Column('result', sa.String(length=20), nullable=True),
        sa.Column('summary', sa.Text(), nullable=True),
        sa.Column('failure_reason', sa.Text(), nullable=True),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('outreach_attempt_id'),
        schema='risk'
    )
    op.create_index('ix_risk_checkin_interactions_episode_id', 'checkin_interactions', ['episode_id'], schema='risk')
    op.create_index('ix_risk_checkin_interactions_status', 'checkin_interactions', ['status'], schema='risk')

    # risk_signals - append-only
    op.create_table(
        'risk_signals',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('episode_id', sa.UUID(), nullable=False),
        sa.Column('interaction_id', sa.UUID(), nullable=True),
        sa.Column('flag_type', sa.String(length=100), nullable=False),
        sa.Column('severity', sa.String(length=20), nullable=False),
        sa.Column('rationale', sa.Text(), nullable=False),
        sa.Column('is_handoff', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('dedupe_key', sa.String(length=255), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('dedupe_key'),
        schema='risk'
    )
    op.create_index('ix_risk_risk_signals_episode_id', 'risk_signals', ['episode_id'], schema='risk')
    op.create_index('ix_risk_risk_signals_interaction_id', 'risk_signals', ['interaction_id'], schema='risk')
    op.create_index('ix_risk_risk_signals_created_at', 'risk_signals', ['created_at'], schema='risk')


def downgrade() -> None:
    op.drop_table('risk_signals', schema='risk')
    op.drop_table('checkin_interactions', schema='risk')
    op.drop_table('notification_logs', schema='notifications')
    op.drop_table('escalation_tasks', schema='escalations')

    op.execute('DROP SCHEMA IF EXISTS risk')
    op.execute('DROP SCHEMA IF EXISTS notifications')
    op.execute('DROP SCHEMA IF EXISTS escalations')
