"""Create care, users and jobs schemas

Revision ID: 20261001_care_users_jobs
Revises:
Create Date: 2026-10-01
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '20261001_care_users_jobs'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.execute('CREATE SCHEMA IF NOT EXISTS care')
    op.execute('CREATE SCHEMA IF NOT EXISTS users')
    op.execute('CREATE SCHEMA IF NOT EXISTS jobs')

    # patients
    op.create_table(
        'patients',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('mrn', sa.String(length=50), nullable=False),
        sa.Column('first_name', sa.String(length=100), nullable=False),
        sa.Column('last_name', sa.String(length=100), nullable=False),
        sa.Column('primary_phone', sa.String(length=32), nullable=True),
        sa.Column('email', sa.String(length=255), nullable=True),
        sa.Column('language_code', sa.String(length=10), nullable=False, server_default='EN'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        schema='care'
    )
    op.create_index('ix_care_patients_mrn', 'patients', ['mrn'], unique=True, schema='care')

    # episodes
    op.create_table(
        'episodes',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('patient_id', sa.UUID(), nullable=False),
        sa.Column('condition_code', sa.String(length=20), nullable=False),  # HF, COPD, AMI, PNA, OTHER
        sa.Column('risk_level', sa.String(length=10), nullable=False),  # LOW, MEDIUM, HIGH
        sa.Column('discharge_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('facility_name', sa.String(length=255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['patient_id'], ['care.patients.id'], ),
        sa.PrimaryKeyConstraint('id'),
        schema='care'
    )
    op.create_index('ix_care_episodes_patient_id', 'episodes', ['patient_id'], schema='care')

    # risk_upgrades - append-only
    op.create_table(
        'risk_upgrades',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('episode_id', sa.UUID(), nullable=False),
        sa.Column('old_risk_level', sa.String(length=10), nullable=False),
        sa.Column('new_risk_level', sa.String(length=10), nullable=False),
        sa.Column('reason', sa.Text(), nullable=False),
        sa.Column('upgraded_by', sa.String(length=64), nullable=False),  # user id or SYSTEM_AUTO
        sa.Column('upgraded_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['episode_id'], ['care.episodes.id'], ),
        sa.PrimaryKeyConstraint('id'),
        schema='care'
    )
    op.create_index('ix_care_risk_upgrades_episode_id', 'risk_upgrades', ['episode_id'], schema='care')

    # users
    op.create_table(
        'users',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('full_name', sa.String(length=255), nullable=False),
        sa.Column('phone', sa.String(length=32), nullable=True),
        sa.Column('roles', postgresql.ARRAY(sa.String()), nullable=False, server_default='{}'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('last_assigned_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        schema='users'
    )
    op.create_index('ix_users_users_email', 'users', ['email'], unique=True, schema='users')
    op.create_index('ix_users_users_last_assigned_at', 'users', ['last_assigned_at'], schema='users')

    # jobs - outbox events and durable timers
    op.create_table(
        'jobs',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('job_type', sa.String(length=100), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('run_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='pending'),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_attempts', sa.Integer(), nullable=False, server_default='5'),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('idempotency_key', sa.String(length=255), nullable=True),
        sa.Column('locked_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('idempotency_key'),
        schema='jobs'
    )
    op.create_index('ix_jobs_jobs_job_type', 'jobs', ['job_type'], schema='jobs')
    op.create_index('ix_jobs_jobs_run_at', 'jobs', ['run_at'], schema='jobs')
    op.create_index('ix_jobs_jobs_status', 'jobs', ['status'], schema='jobs')

    op.create_table(
        'operator_alerts',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('kind', sa.String(length=50), nullable=False),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('acknowledged_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('acknowledged_by', sa.UUID(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        schema='jobs'
    )
    op.create_index('ix_jobs_operator_alerts_kind', 'operator_alerts', ['kind'], schema='jobs')


def downgrade() -> None:
    op.drop_index('ix_jobs_operator_alerts_kind', table_name='operator_alerts', schema='jobs')
    op.drop_table('operator_alerts', schema='jobs')
    op.drop_index('ix_jobs_jobs_status', table_name='jobs', schema='jobs')
    op.drop_index('ix_jobs_jobs_run_at', table_name='jobs', schema='jobs')
    op.drop_index('ix_jobs_jobs_job_type', table_name='jobs', schema='jobs')
    op.drop_table('jobs', schema='jobs')

    op.drop_index('ix_users_users_last_assigned_at', table_name='users', schema='users')
    op.drop_index('ix_users_users_email', table_name='users', schema='users')
    op.drop_table('users', schema='users')

    op.drop_index('ix_care_risk_upgrades_episode_id', table_name='risk_upgrades', schema='care')
    op.drop_table('risk_upgrades', schema='care')
    op.drop_index('ix_care_episodes_patient_id', table_name='episodes', schema='care')
    op.drop_table('episodes', schema='care')
    op.drop_index('ix_care_patients_mrn', table_name='patients', schema='care')
    op.drop_table('patients', schema='care')

    op.execute('DROP SCHEMA IF EXISTS jobs')
    op.execute('DROP SCHEMA IF EXISTS users')
    op.execute('DROP SCHEMA IF EXISTS care')
