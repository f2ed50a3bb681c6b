"""Baseline migration - offices, shadow store, sync bookkeeping, jobs, triage

Revision ID: 0001_baseline
Revises:
Create Date: 2026-10-12

Creates every table the service needs: offices and their legacy credentials,
the mirrored legacy entities, reconciliation watermarks, the job queue and
outbox, triage suggestions and the automation lease.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '0001_baseline'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


TS = sa.DateTime(timezone=True)
JSONB = postgresql.JSONB()


def _mirrored_columns() -> list[sa.Column]:
    """Columns shared by every table mirrored from legacy."""
    return [
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('office_id', sa.Uuid(), sa.ForeignKey('offices.id', ondelete='CASCADE'), nullable=False),
        sa.Column('external_id', sa.Integer(), nullable=True),
        sa.Column('last_synced_at', TS, nullable=True),
        sa.Column('legacy_updated_at', TS, nullable=True),
        sa.Column('local_modified_at', TS, nullable=True),
        sa.Column('pending_sync', sa.Boolean(), server_default=sa.text('false'), nullable=False),
        sa.Column('sync_error', sa.Text(), nullable=True),
        sa.Column('pending_fields', JSONB, server_default=sa.text("'[]'::jsonb"), nullable=False),
        sa.Column('version', sa.Integer(), server_default=sa.text('1'), nullable=False),
        sa.Column('deleted_at', TS, nullable=True),
        sa.Column('created_at', TS, server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', TS, server_default=sa.text('now()'), nullable=False),
    ]


def upgrade() -> None:
    """Create all tables."""

    # ==========================================================================
    # Offices
    # ==========================================================================
    op.create_table(
        'offices',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('name', sa.String(200), nullable=False),
        sa.Column('subdomain', sa.String(100), nullable=False, unique=True),
        sa.Column('autonomous_triage', sa.Boolean(), server_default=sa.text('false'), nullable=False),
        sa.Column('autonomy_threshold', sa.Float(), server_default=sa.text('0.9'), nullable=False),
        sa.Column('created_at', TS, server_default=sa.text('now()'), nullable=False),
    )
    op.create_table(
        'legacy_credentials',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('office_id', sa.Uuid(), sa.ForeignKey('offices.id', ondelete='CASCADE'), nullable=False, unique=True),
        sa.Column('email', sa.Text(), nullable=False),
        sa.Column('password', sa.Text(), nullable=False),
        sa.Column('api_base_url', sa.Text(), nullable=True),
        sa.Column('created_at', TS, server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', TS, server_default=sa.text('now()'), nullable=False),
    )

    # ==========================================================================
    # Shadow store
    # ==========================================================================
    op.create_table(
        'constituents',
        *_mirrored_columns(),
        sa.Column('first_name', sa.String(200), nullable=True),
        sa.Column('last_name', sa.String(200), nullable=True),
        sa.Column('title', sa.String(50), nullable=True),
        sa.Column('organisation_type', sa.String(100), nullable=True),
        sa.Column('geocode_lat', sa.Float(), nullable=True),
        sa.Column('geocode_lng', sa.Float(), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.UniqueConstraint('office_id', 'external_id', name='uq_constituents_office_external'),
    )
    op.create_index('ix_constituents_office_id', 'constituents', ['office_id'])

    op.create_table(
        'contact_details',
        *_mirrored_columns(),
        sa.Column('constituent_id', sa.Uuid(), sa.ForeignKey('constituents.id', ondelete='CASCADE'), nullable=False),
        sa.Column('contact_type', sa.String(30), nullable=False),
        sa.Column('contact_type_id', sa.Integer(), nullable=True),
        sa.Column('value', sa.Text(), nullable=False),
        sa.Column('normalized_value', sa.Text(), nullable=False),
        sa.UniqueConstraint('office_id', 'external_id', name='uq_contact_details_office_external'),
        sa.UniqueConstraint('office_id', 'contact_type', 'normalized_value', name='uq_contact_details_value'),
    )
    op.create_index('ix_contact_details_office_id', 'contact_details', ['office_id'])
    op.create_index('ix_contact_details_constituent_id', 'contact_details', ['constituent_id'])

    op.create_table(
        'cases',
        *_mirrored_columns(),
        sa.Column('constituent_id', sa.Uuid(), sa.ForeignKey('constituents.id', ondelete='SET NULL'), nullable=True),
        sa.Column('case_type_id', sa.Integer(), nullable=True),
        sa.Column('status_id', sa.Integer(), nullable=True),
        sa.Column('category_type_id', sa.Integer(), nullable=True),
        sa.Column('contact_type_id', sa.Integer(), nullable=True),
        sa.Column('assigned_to_id', sa.Integer(), nullable=True),
        sa.Column('summary', sa.Text(), nullable=True),
        sa.Column('review_date', sa.Date(), nullable=True),
        sa.Column('legacy_created_at', TS, nullable=True),
        sa.Column('priority', sa.String(20), nullable=True),
        sa.Column('tags', JSONB, server_default=sa.text("'[]'::jsonb"), nullable=False),
        sa.Column('ai_summary', sa.Text(), nullable=True),
        sa.UniqueConstraint('office_id', 'external_id', name='uq_cases_office_external'),
    )
    op.create_index('ix_cases_office_id', 'cases', ['office_id'])
    op.create_index('idx_cases_constituent_activity', 'cases', ['constituent_id', 'legacy_updated_at'])

    op.create_table(
        'campaigns',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('office_id', sa.Uuid(), sa.ForeignKey('offices.id', ondelete='CASCADE'), nullable=False),
        sa.Column('name', sa.String(200), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('subject_pattern', sa.Text(), nullable=True),
        sa.Column('fingerprint', sa.String(64), nullable=True),
        sa.Column('message_count', sa.Integer(), server_default=sa.text('0'), nullable=False),
        sa.Column('created_at', TS, server_default=sa.text('now()'), nullable=False),
    )
    op.create_index('ix_campaigns_office_id', 'campaigns', ['office_id'])
    op.create_index('ix_campaigns_fingerprint', 'campaigns', ['fingerprint'])

    op.create_table(
        'messages',
        *_mirrored_columns(),
        sa.Column('case_id', sa.Uuid(), sa.ForeignKey('cases.id', ondelete='SET NULL'), nullable=True),
        sa.Column('constituent_id', sa.Uuid(), sa.ForeignKey('constituents.id', ondelete='SET NULL'), nullable=True),
        sa.Column('direction', sa.String(20), server_default='inbound', nullable=False),
        sa.Column('subject', sa.Text(), nullable=True),
        sa.Column('html_body', sa.Text(), nullable=True),
        sa.Column('from_address', sa.String(320), nullable=True),
        sa.Column('to_addresses', JSONB, server_default=sa.text("'[]'::jsonb"), nullable=False),
        sa.Column('cc_addresses', JSONB, server_default=sa.text("'[]'::jsonb"), nullable=False),
        sa.Column('bcc_addresses', JSONB, server_default=sa.text("'[]'::jsonb"), nullable=False),
        sa.Column('actioned', sa.Boolean(), server_default=sa.text('false'), nullable=False),
        sa.Column('assigned_to_id', sa.Integer(), nullable=True),
        sa.Column('scheduled_at', TS, nullable=True),
        sa.Column('sent_at', TS, nullable=True),
        sa.Column('received_at', TS, nullable=True),
        sa.Column('triage_status', sa.String(30), server_default='pending', nullable=False),
        sa.Column('classification', sa.String(30), nullable=True),
        sa.Column('campaign_id', sa.Uuid(), sa.ForeignKey('campaigns.id', ondelete='SET NULL'), nullable=True),
        sa.UniqueConstraint('office_id', 'external_id', name='uq_messages_office_external'),
    )
    op.create_index('ix_messages_office_id', 'messages', ['office_id'])
    op.create_index('idx_messages_triage', 'messages', ['office_id', 'triage_status'])

    op.create_table(
        'reference_items',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('office_id', sa.Uuid(), sa.ForeignKey('offices.id', ondelete='CASCADE'), nullable=False),
        sa.Column('ref_type', sa.String(30), nullable=False),
        sa.Column('external_id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(200), nullable=False),
        sa.Column('is_active', sa.Boolean(), server_default=sa.text('true'), nullable=False),
        sa.Column('is_closed', sa.Boolean(), server_default=sa.text('false'), nullable=False),
        sa.Column('last_synced_at', TS, server_default=sa.text('now()'), nullable=False),
        sa.UniqueConstraint('office_id', 'ref_type', 'external_id', name='uq_reference_items'),
    )

    # ==========================================================================
    # Reconciliation
    # ==========================================================================
    op.create_table(
        'sync_watermarks',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('office_id', sa.Uuid(), sa.ForeignKey('offices.id', ondelete='CASCADE'), nullable=False),
        sa.Column('entity_type', sa.String(30), nullable=False),
        sa.Column('watermark', TS, nullable=True),
        sa.Column('cursor', sa.String(200), nullable=True),
        sa.Column('running_until', TS, nullable=True),
        sa.Column('cancel_requested', sa.Boolean(), server_default=sa.text('false'), nullable=False),
        sa.Column('last_poll_started_at', TS, nullable=True),
        sa.Column('last_poll_completed_at', TS, nullable=True),
        sa.Column('records_seen', sa.Integer(), server_default=sa.text('0'), nullable=False),
        sa.Column('records_upserted', sa.Integer(), server_default=sa.text('0'), nullable=False),
        sa.Column('conflicts', sa.Integer(), server_default=sa.text('0'), nullable=False),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.UniqueConstraint('office_id', 'entity_type', name='uq_sync_watermarks'),
    )
    op.create_table(
        'sync_conflict_log',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('office_id', sa.Uuid(), sa.ForeignKey('offices.id', ondelete='CASCADE'), nullable=False),
        sa.Column('entity_type', sa.String(30), nullable=False),
        sa.Column('internal_id', sa.Uuid(), nullable=False),
        sa.Column('external_id', sa.Integer(), nullable=True),
        sa.Column('fields', JSONB, server_default=sa.text("'[]'::jsonb"), nullable=False),
        sa.Column('resolution', sa.String(20), nullable=False),
        sa.Column('legacy_values', JSONB, server_default=sa.text("'{}'::jsonb"), nullable=False),
        sa.Column('local_values', JSONB, server_default=sa.text("'{}'::jsonb"), nullable=False),
        sa.Column('created_at', TS, server_default=sa.text('now()'), nullable=False),
    )
    op.create_index('ix_sync_conflict_log_office_id', 'sync_conflict_log', ['office_id'])

    # ==========================================================================
    # Jobs and outbox
    # ==========================================================================
    op.create_table(
        'jobs',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('office_id', sa.Uuid(), sa.ForeignKey('offices.id', ondelete='CASCADE'), nullable=True),
        sa.Column('kind', sa.String(50), nullable=False),
        sa.Column('payload', JSONB, server_default=sa.text("'{}'::jsonb"), nullable=False),
        sa.Column('state', sa.String(20), server_default='created', nullable=False),
        sa.Column('attempt_count', sa.Integer(), server_default=sa.text('0'), nullable=False),
        sa.Column('max_attempts', sa.Integer(), server_default=sa.text('3'), nullable=False),
        sa.Column('next_attempt_at', TS, server_default=sa.text('now()'), nullable=False),
        sa.Column('locked_by', sa.String(100), nullable=True),
        sa.Column('lease_expires_at', TS, nullable=True),
        sa.Column('cancel_requested', sa.Boolean(), server_default=sa.text('false'), nullable=False),
        sa.Column('idempotency_key', sa.String(255), nullable=True),
        sa.Column('output', JSONB, server_default=sa.text("'{}'::jsonb"), nullable=False),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('created_at', TS, server_default=sa.text('now()'), nullable=False),
        sa.Column('started_at', TS, nullable=True),
        sa.Column('completed_at', TS, nullable=True),
        sa.Column('updated_at', TS, server_default=sa.text('now()'), nullable=False),
    )
    op.create_index('idx_jobs_claimable', 'jobs', ['state', 'next_attempt_at'])
    op.create_index('idx_jobs_office', 'jobs', ['office_id', 'created_at'])
    op.create_index(
        'uq_job_idempotency',
        'jobs',
        ['idempotency_key'],
        unique=True,
        postgresql_where=sa.text('idempotency_key IS NOT NULL'),
    )

    op.create_table(
        'outbox_messages',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('office_id', sa.Uuid(), sa.ForeignKey('offices.id', ondelete='CASCADE'), nullable=False),
        sa.Column('to_addresses', JSONB, server_default=sa.text("'[]'::jsonb"), nullable=False),
        sa.Column('cc_addresses', JSONB, server_default=sa.text("'[]'::jsonb"), nullable=False),
        sa.Column('bcc_addresses', JSONB, server_default=sa.text("'[]'::jsonb"), nullable=False),
        sa.Column('subject', sa.Text(), nullable=False),
        sa.Column('body_html', sa.Text(), nullable=False),
        sa.Column('related_case_id', sa.Uuid(), sa.ForeignKey('cases.id', ondelete='SET NULL'), nullable=True),
        sa.Column('campaign_id', sa.Uuid(), sa.ForeignKey('campaigns.id', ondelete='SET NULL'), nullable=True),
        sa.Column('message_id', sa.Uuid(), sa.ForeignKey('messages.id', ondelete='SET NULL'), nullable=True),
        sa.Column('status', sa.String(20), server_default='pending', nullable=False),
        sa.Column('error_log', JSONB, server_default=sa.text("'[]'::jsonb"), nullable=False),
        sa.Column('attempts', sa.Integer(), server_default=sa.text('0'), nullable=False),
        sa.Column('processed_at', TS, nullable=True),
        sa.Column('created_at', TS, server_default=sa.text('now()'), nullable=False),
    )
    op.create_index('idx_outbox_status', 'outbox_messages', ['office_id', 'status'])

    # ==========================================================================
    # Triage
    # ==========================================================================
    op.create_table(
        'triage_suggestions',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('office_id', sa.Uuid(), sa.ForeignKey('offices.id', ondelete='CASCADE'), nullable=False),
        sa.Column('message_id', sa.Uuid(), sa.ForeignKey('messages.id', ondelete='CASCADE'), nullable=False, unique=True),
        sa.Column('job_id', sa.Uuid(), nullable=True),
        sa.Column('email_type', sa.String(30), nullable=True),
        sa.Column('email_type_confidence', sa.Float(), nullable=True),
        sa.Column('recommended_action', sa.String(30), nullable=False),
        sa.Column('action_confidence', sa.Float(), nullable=True),
        sa.Column('suggested_case_type_id', sa.Integer(), nullable=True),
        sa.Column('suggested_status_id', sa.Integer(), nullable=True),
        sa.Column('suggested_category_type_id', sa.Integer(), nullable=True),
        sa.Column('suggested_assignee_id', sa.Integer(), nullable=True),
        sa.Column('suggested_priority', sa.String(20), nullable=True),
        sa.Column('suggested_tags', JSONB, server_default=sa.text("'[]'::jsonb"), nullable=False),
        sa.Column('suggested_case_id', sa.Uuid(), nullable=True),
        sa.Column('summary', sa.Text(), nullable=True),
        sa.Column('reasoning', sa.Text(), nullable=True),
        sa.Column('matched_constituent_id', sa.Uuid(), nullable=True),
        sa.Column('matched_case_ids', JSONB, server_default=sa.text("'[]'::jsonb"), nullable=False),
        sa.Column('matched_campaign_id', sa.Uuid(), nullable=True),
        sa.Column('campaign_confidence', sa.Float(), nullable=True),
        sa.Column('context_snapshot', JSONB, server_default=sa.text("'{}'::jsonb"), nullable=False),
        sa.Column('raw_response', JSONB, server_default=sa.text("'{}'::jsonb"), nullable=False),
        sa.Column('classifier_name', sa.String(50), nullable=False),
        sa.Column('dropped_ids', JSONB, server_default=sa.text("'{}'::jsonb"), nullable=False),
        sa.Column('decision', sa.String(20), server_default='pending', nullable=False),
        sa.Column('decided_by', sa.String(200), nullable=True),
        sa.Column('decided_at', TS, nullable=True),
        sa.Column('decision_modifications', JSONB, server_default=sa.text("'{}'::jsonb"), nullable=False),
        sa.Column('created_at', TS, server_default=sa.text('now()'), nullable=False),
    )

    # ==========================================================================
    # Automation lease
    # ==========================================================================
    op.create_table(
        'automation_leases',
        sa.Column('resource', sa.String(50), primary_key=True),
        sa.Column('locked', sa.Boolean(), server_default=sa.text('false'), nullable=False),
        sa.Column('locked_by', sa.String(200), nullable=True),
        sa.Column('locked_by_office_id', sa.Uuid(), nullable=True),
        sa.Column('session_handle', sa.Text(), nullable=True),
        sa.Column('locked_at', TS, nullable=True),
        sa.Column('expires_at', TS, nullable=True),
    )
    op.execute("INSERT INTO automation_leases (resource, locked) VALUES ('mail_automation', false)")


def downgrade() -> None:
    """Drop all tables."""
    op.drop_table('automation_leases')
    op.drop_table('triage_suggestions')
    op.drop_table('outbox_messages')
    op.drop_table('jobs')
    op.drop_table('sync_conflict_log')
    op.drop_table('sync_watermarks')
    op.drop_table('reference_items')
    op.drop_table('messages')
    op.drop_table('campaigns')
    op.drop_table('cases')
    op.drop_table('contact_details')
    op.drop_table('constituents')
    op.drop_table('legacy_credentials')
    op.drop_table('offices')
