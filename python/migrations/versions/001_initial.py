"""Initial schema - Baseline migration

Revision ID: 001_initial
Revises:
Create Date: 2026-10-01 00:00:00.000000

Baseline for the AML screening tables (screenings, matches, audit trail).
It mirrors database/models.py; databases created with create_tables() can be
marked as applied with `alembic stamp 001_initial`.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

SUBJECT_TYPES = ('INDIVIDUAL', 'COMPANY')
SCREENING_STATUSES = ('PENDING', 'IN_PROGRESS', 'COMPLETED', 'INCOMPLETE', 'FAILED')
RISK_LEVELS = ('LOW', 'MEDIUM', 'HIGH', 'CRITICAL')
MATCH_TYPES = ('SANCTIONS', 'PEP', 'ADVERSE_MEDIA', 'WATCHLIST')
REVIEW_STATUSES = ('PENDING', 'CONFIRMED_MATCH', 'FALSE_POSITIVE', 'ESCALATED')
AUDIT_ACTIONS = (
    'SCREENING_INITIATED', 'SCREENING_COMPLETED', 'SCREENING_FAILED', 'SCREENING_DELETED',
    'MATCH_REVIEWED', 'MONITORING_ENABLED', 'MONITORING_DISABLED', 'EDD_COMPLETED',
    'ANNUAL_REVIEW_SCHEDULED',
)


def _timestamps() -> list:
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.func.now()),
    ]


def upgrade() -> None:
    """Create initial database schema."""

    # Create aml_screenings table
    op.create_table(
        'aml_screenings',
        sa.Column('id', sa.Uuid, primary_key=True),
        sa.Column('subject_type', sa.Enum(*SUBJECT_TYPES, name='subjecttype'), nullable=False),
        sa.Column('subject_name', sa.String(500), nullable=False),
        sa.Column('subject_email', sa.String(320)),
        sa.Column('subject_phone', sa.String(50)),
        sa.Column('date_of_birth', sa.Date),
        sa.Column('nationality', sa.String(100)),
        sa.Column('company_number', sa.String(50)),
        sa.Column('registration_country', sa.String(100)),
        sa.Column('notes', sa.Text),
        sa.Column('status', sa.Enum(*SCREENING_STATUSES, name='screeningstatus'), nullable=False),
        sa.Column('error_message', sa.Text),
        sa.Column('error_code', sa.String(50)),
        sa.Column('completed_at', sa.DateTime(timezone=True)),
        sa.Column('risk_score', sa.Integer),
        sa.Column('risk_level', sa.Enum(*RISK_LEVELS, name='risklevel')),
        sa.Column('match_found', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('sanctions_match', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('pep_match', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('adverse_media', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('result_metadata', sa.JSON),
        sa.Column('review_completed', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('reviewed_at', sa.DateTime(timezone=True)),
        sa.Column('reviewed_by', sa.String(200)),
        sa.Column('monitoring_enabled', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('monitoring_updated_at', sa.DateTime(timezone=True)),
        sa.Column('edd_required', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('edd_completed', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('edd_notes', sa.Text),
        sa.Column('edd_completed_at', sa.DateTime(timezone=True)),
        sa.Column('next_review_date', sa.Date),
        *_timestamps(),
        sa.CheckConstraint('risk_score IS NULL OR (risk_score >= 0 AND risk_score <= 100)',
                           name='ck_screening_risk_range'),
    )

    # Create aml_matches table
    op.create_table(
        'aml_matches',
        sa.Column('id', sa.Uuid, primary_key=True),
        sa.Column('screening_id', sa.Uuid,
                  sa.ForeignKey('aml_screenings.id', ondelete='CASCADE'), nullable=False),
        sa.Column('position', sa.Integer, nullable=False, server_default='0'),
        sa.Column('match_type', sa.Enum(*MATCH_TYPES, name='matchtype'), nullable=False),
        sa.Column('entity_id', sa.String(100), nullable=False),
        sa.Column('entity_name', sa.String(500), nullable=False),
        sa.Column('match_score', sa.Integer, nullable=False),
        sa.Column('aliases', sa.JSON),
        sa.Column('list_name', sa.String(500)),
        sa.Column('list_type', sa.String(50)),
        sa.Column('source_url', sa.String(1000)),
        sa.Column('date_of_birth', sa.Date),
        sa.Column('nationalities', sa.JSON),
        sa.Column('positions', sa.JSON),
        sa.Column('match_metadata', sa.JSON),
        sa.Column('review_status', sa.Enum(*REVIEW_STATUSES, name='reviewstatus'), nullable=False),
        sa.Column('reviewed_at', sa.DateTime(timezone=True)),
        sa.Column('reviewed_by', sa.String(200)),
        sa.Column('review_notes', sa.Text),
        *_timestamps(),
        sa.CheckConstraint('match_score >= 0 AND match_score <= 100', name='ck_match_score_range'),
    )

    # Create aml_audits table
    op.create_table(
        'aml_audits',
        sa.Column('id', sa.Uuid, primary_key=True),
        sa.Column('screening_id', sa.Uuid,
                  sa.ForeignKey('aml_screenings.id', ondelete='CASCADE')),
        sa.Column('timestamp', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.func.now()),
        sa.Column('action', sa.Enum(*AUDIT_ACTIONS, name='auditaction'), nullable=False),
        sa.Column('performed_by', sa.String(200)),
        sa.Column('description', sa.Text),
        sa.Column('old_value', sa.JSON),
        sa.Column('new_value', sa.JSON),
    )

    # Create indexes
    op.create_index('ix_aml_screenings_subject_name', 'aml_screenings', ['subject_name'])
    op.create_index('ix_aml_screenings_company_number', 'aml_screenings', ['company_number'])
    op.create_index('ix_aml_screenings_status', 'aml_screenings', ['status'])
    op.create_index('ix_aml_screenings_risk_level', 'aml_screenings', ['risk_level'])
    op.create_index('ix_aml_screenings_review_completed', 'aml_screenings', ['review_completed'])
    op.create_index('ix_aml_screenings_monitoring_enabled', 'aml_screenings', ['monitoring_enabled'])
    op.create_index('ix_aml_screenings_next_review_date', 'aml_screenings', ['next_review_date'])
    op.create_index('ix_screening_status_date', 'aml_screenings', ['status', 'created_at'])

    op.create_index('ix_aml_matches_screening_id', 'aml_matches', ['screening_id'])
    op.create_index('ix_aml_matches_match_type', 'aml_matches', ['match_type'])
    op.create_index('ix_aml_matches_review_status', 'aml_matches', ['review_status'])

    op.create_index('ix_aml_audits_screening_id', 'aml_audits', ['screening_id'])
    op.create_index('ix_aml_audits_timestamp', 'aml_audits', ['timestamp'])
    op.create_index('ix_aml_audits_action', 'aml_audits', ['action'])


def downgrade() -> None:
    """Drop all tables and types."""
    # Drop tables in reverse order
    op.drop_table('aml_audits')
    op.drop_table('aml_matches')
    op.drop_table('aml_screenings')

    # Enum types only exist as separate objects on PostgreSQL
    if op.get_bind().dialect.name == 'postgresql':
        for type_name in ('auditaction', 'reviewstatus', 'matchtype', 'risklevel',
                          'screeningstatus', 'subjecttype'):
            op.execute(f'DROP TYPE IF EXISTS {type_name}')
