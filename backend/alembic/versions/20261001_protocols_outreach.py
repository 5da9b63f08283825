"""Create protocols and outreach schemas with default templates and configs

Revision ID: 20261001_protocols_outreach
Revises: 20261001_care_users_jobs
Create Date: 2026-10-01
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '20261001_protocols_outreach'
down_revision: Union[str, None] = '20261001_care_users_jobs'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.execute('CREATE SCHEMA IF NOT EXISTS protocols')
    op.execute('CREATE SCHEMA IF NOT EXISTS outreach')

    # protocol_configs - decision thresholds per (condition, risk level)
    op.create_table(
        'protocol_configs',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('condition_code', sa.String(length=20), nullable=False),
        sa.Column('risk_level', sa.String(length=10), nullable=False),
        sa.Column('schema_version', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('critical_confidence_threshold', sa.Float(), nullable=False, server_default='0.8'),
        sa.Column('low_confidence_threshold', sa.Float(), nullable=False, server_default='0.6'),
        sa.Column('vague_symptoms', sa.JSON(), nullable=False),
        sa.Column('enable_sentiment_boost', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('distressed_severity_upgrade', sa.String(length=20), nullable=True),
        sa.Column('route_medication_questions_to_info', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('route_general_questions_to_info', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('detect_multiple_symptoms', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('active', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        schema='protocols'
    )
    op.create_index(
        'uq_protocol_configs_active_key', 'protocol_configs', ['condition_code', 'risk_level'],
        unique=True, postgresql_where=sa.text('active'), schema='protocols'
    )

    # protocol_rules - content pack rules (RED_FLAG, CLOSURE, QUESTION)
    op.create_table(
        'protocol_rules',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('condition_code', sa.String(length=20), nullable=False),
        sa.Column('rule_code', sa.String(length=100), nullable=False),
        sa.Column('rule_type', sa.String(length=20), nullable=False),
        sa.Column('schema_version', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('severity', sa.String(length=20), nullable=True),
        sa.Column('text_patterns', sa.JSON(), nullable=False),
        sa.Column('action_type', sa.String(length=50), nullable=True),
        sa.Column('message', sa.Text(), nullable=True),
        sa.Column('extra', sa.JSON(), nullable=False),
        sa.Column('active', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        schema='protocols'
    )
    op.create_index('ix_protocol_rules_condition_active', 'protocol_rules', ['condition_code', 'active'], schema='protocols')

    # protocol_assignments - exactly one active row per episode
    op.create_table(
        'protocol_assignments',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('episode_id', sa.UUID(), nullable=False),
        sa.Column('condition_code', sa.String(length=20), nullable=False),
        sa.Column('risk_level', sa.String(length=10), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('assigned_by', sa.String(length=64), nullable=True),
        sa.Column('assigned_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('deactivated_at', sa.DateTime(timezone=True), nullable=True),
        # Note: No FK to care schema to maintain bounded context separation (reference by ID only)
        sa.PrimaryKeyConstraint('id'),
        schema='protocols'
    )
    op.create_index('ix_protocols_protocol_assignments_episode_id', 'protocol_assignments', ['episode_id'], schema='protocols')
    op.create_index(
        'uq_protocol_assignments_active_episode', 'protocol_assignments', ['episode_id'],
        unique=True, postgresql_where=sa.text('is_active'), schema='protocols'
    )

    # outreach_plan_templates
    op.create_table(
        'outreach_plan_templates',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('condition_code', sa.String(length=20), nullable=False),
        sa.Column('risk_level', sa.String(length=10), nullable=False),
        sa.Column('preferred_channel', sa.String(length=20), nullable=False),
        sa.Column('fallback_channel', sa.String(length=20), nullable=True),
        sa.Column('first_contact_delay_hours', sa.Integer(), nullable=False),
        sa.Column('contact_window_hours', sa.Integer(), nullable=False),
        sa.Column('max_attempts', sa.Integer(), nullable=False),
        sa.Column('attempt_interval_hours', sa.Integer(), nullable=False),
        sa.Column('timezone', sa.String(length=64), nullable=False, server_default='America/New_York'),
        sa.Column('active', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        schema='outreach'
    )
    op.create_index(
        'uq_outreach_plan_templates_active_key', 'outreach_plan_templates', ['condition_code', 'risk_level'],
        unique=True, postgresql_where=sa.text('active'), schema='outreach'
    )

    # outreach_plans - at most one PENDING/IN_PROGRESS plan per episode
    op.create_table(
        'outreach_plans',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('episode_id', sa.UUID(), nullable=False),
        sa.Column('preferred_channel', sa.String(length=20), nullable=False),
        sa.Column('fallback_channel', sa.String(length=20), nullable=True),
        sa.Column('window_start_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('window_end_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('max_attempts', sa.Integer(), nullable=False),
        sa.Column('attempt_interval_hours', sa.Integer(), nullable=False),
        sa.Column('timezone', sa.String(length=64), nullable=False),
        sa.Column('language_code', sa.String(length=10), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='PENDING'),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('failure_reason', sa.String(length=50), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        schema='outreach'
    )
    op.create_index('ix_outreach_outreach_plans_episode_id', 'outreach_plans', ['episode_id'], schema='outreach')
    op.create_index('ix_outreach_outreach_plans_status', 'outreach_plans', ['status'], schema='outreach')
    op.create_index(
        'uq_outreach_plans_active_episode', 'outreach_plans', ['episode_id'],
        unique=True, postgresql_where=sa.text("status IN ('PENDING', 'IN_PROGRESS')"), schema='outreach'
    )

    op.create_table(
        'outreach_attempts',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('outreach_plan_id', sa.UUID(), nullable=False),
        sa.Column('attempt_number', sa.Integer(), nullable=False),
        sa.Column('channel', sa.String(length=20), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='PENDING'),
        sa.Column('scheduled_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('reason_code', sa.String(length=50), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['outreach_plan_id'], ['outreach.outreach_plans.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('outreach_plan_id', 'attempt_number', name='uq_outreach_attempts_plan_number'),
        schema='outreach'
    )
    op.create_index('ix_outreach_outreach_attempts_outreach_plan_id', 'outreach_attempts', ['outreach_plan_id'], schema='outreach')
    op.create_index('ix_outreach_outreach_attempts_status', 'outreach_attempts', ['status'], schema='outreach')

    # Default outreach cadence: higher risk means earlier, denser contact
    op.execute("""
        INSERT INTO outreach.outreach_plan_templates
            (id, condition_code, risk_level, preferred_channel, fallback_channel,
             first_contact_delay_hours, contact_window_hours, max_attempts, attempt_interval_hours)
        SELECT gen_random_uuid(), c.code, r.level, 'SMS', 'VOICE', r.delay_hours, r.window_hours, r.max_attempts, r.interval_hours
        FROM (VALUES ('HF'), ('COPD'), ('AMI'), ('PNA'), ('OTHER')) AS c(code)
        CROSS JOIN (VALUES
            ('HIGH', 24, 48, 3, 4),
            ('MEDIUM', 48, 72, 2, 8),
            ('LOW', 72, 96, 2, 24)
        ) AS r(level, delay_hours, window_hours, max_attempts, interval_hours)
    """)

    # Default protocol configs for every (condition, risk level)
    op.execute("""
        INSERT INTO protocols.protocol_configs
            (id, condition_code, risk_level, critical_confidence_threshold, low_confidence_threshold,
             vague_symptoms, detect_multiple_symptoms, notes)
        SELECT gen_random_uuid(), c.code, r.level, r.critical_threshold, r.low_threshold,
               '["tired", "off", "not great", "so-so"]', r.level = 'HIGH', 'Default configuration'
        FROM (VALUES ('HF'), ('COPD'), ('AMI'), ('PNA'), ('OTHER')) AS c(code)
        CROSS JOIN (VALUES
            ('HIGH', 0.7, 0.5),
            ('MEDIUM', 0.8, 0.6),
            ('LOW', 0.85, 0.65)
        ) AS r(level, critical_threshold, low_threshold)
    """)

    # Heart failure red flags
    op.execute("""
        INSERT INTO protocols.protocol_rules
            (id, condition_code, rule_code, rule_type, severity, text_patterns, action_type, message, extra) VALUES
        (gen_random_uuid(), 'HF', 'HF_CHEST_PAIN', 'RED_FLAG', 'CRITICAL', '["chest pain", "chest pressure"]', 'CREATE_TASK', 'Chest pain after heart failure discharge', '{}'),
        (gen_random_uuid(), 'HF', 'HF_SOB_REST', 'RED_FLAG', 'CRITICAL', '["short of breath at rest", "cannot breathe"]', 'CREATE_TASK', 'Shortness of breath at rest', '{}'),
        (gen_random_uuid(), 'HF', 'HF_WEIGHT_GAIN', 'RED_FLAG', 'HIGH', '["gained weight", "weight up", "pounds overnight"]', 'CREATE_TASK', 'Rapid weight gain (fluid retention)', '{}'),
        (gen_random_uuid(), 'HF', 'HF_SWELLING', 'RED_FLAG', 'MODERATE', '["swollen ankles", "swelling", "legs puffy"]', 'CREATE_TASK', 'New or worse leg swelling', '{}'),
        (gen_random_uuid(), 'HF', 'HF_FATIGUE', 'RED_FLAG', 'LOW', '["tired", "fatigue"]', 'CREATE_TASK', 'Mild fatigue', '{}'),
        (gen_random_uuid(), 'HF', 'HF_DOING_WELL', 'CLOSURE', NULL, '["feeling good", "doing well"]', 'CLOSE_CHECKIN', 'Patient reports feeling well', '{}')
    """)


def downgrade() -> None:
    op.drop_index('ix_outreach_outreach_attempts_status', table_name='outreach_attempts', schema='outreach')
    op.drop_index('ix_outreach_outreach_attempts_outreach_plan_id', table_name='outreach_attempts', schema='outreach')
    op.drop_table('outreach_attempts', schema='outreach')
    op.drop_index('uq_outreach_plans_active_episode', table_name='outreach_plans', schema='outreach')
    op.drop_index('ix_outreach_outreach_plans_status', table_name='outreach_plans', schema='outreach')
    op.drop_index('ix_outreach_outreach_plans_episode_id', table_name='outreach_plans', schema='outreach')
    op.drop_table('outreach_plans', schema='outreach')
    op.drop_index('uq_outreach_plan_templates_active_key', table_name='outreach_plan_templates', schema='outreach')
    op.drop_table('outreach_plan_templates', schema='outreach')

    op.drop_index('uq_protocol_assignments_active_episode', table_name='protocol_assignments', schema='protocols')
    op.drop_index('ix_protocols_protocol_assignments_episode_id', table_name='protocol_assignments', schema='protocols')
    op.drop_table('protocol_assignments', schema='protocols')
    op.drop_index('ix_protocol_rules_condition_active', table_name='protocol_rules', schema='protocols')
    op.drop_table('protocol_rules', schema='protocols')
    op.drop_index('uq_protocol_configs_active_key', table_name='protocol_configs', schema='protocols')
    op.drop_table('protocol_configs', schema='protocols')

    op.execute('DROP SCHEMA IF EXISTS outreach')
    op.execute('DROP SCHEMA IF EXISTS protocols')
