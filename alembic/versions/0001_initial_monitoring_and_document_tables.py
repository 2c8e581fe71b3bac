"""Initial monitoring and document-intelligence tables.

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-19

Creates the pgvector extension, the case/document tables the pipeline
reads, the regulation monitoring tables and the document extraction and
chunk tables.
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql
from pgvector.sqlalchemy import Vector

# revision identifiers, used by Alembic.
revision = '0001_initial'
down_revision = None
branch_labels = None
depends_on = None

EMBEDDING_DIMENSION = 1024


def _timestamps():
    return [
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('NOW()')),
    ]


def upgrade() -> None:
    """Create extension, tables and indexes."""
    op.execute('CREATE EXTENSION IF NOT EXISTS vector')

    op.create_table(
        'cases',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('organization_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('title', sa.String(500), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_cases_organization_id', 'cases', ['organization_id'])

    op.create_table(
        'documents',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('case_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('cases.id', ondelete='CASCADE'), nullable=False),
        sa.Column('file_path', sa.String(), nullable=False),
        sa.Column('file_name', sa.String(), nullable=False),
        sa.Column('original_name', sa.String(), nullable=True),
        sa.Column('mime_type', sa.String(), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('NOW()')),
    )
    op.create_index('ix_documents_case_id', 'documents', ['case_id'])

    op.create_table(
        'regulations',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('title', sa.String(500), nullable=False),
        sa.Column('regulation_number', sa.String(100), nullable=True),
        sa.Column('source_url', sa.Text(), nullable=True),
        sa.Column('category', sa.String(100), nullable=True),
        sa.Column('jurisdiction', sa.String(255), nullable=True),
        sa.Column('status', sa.String(50), nullable=False, server_default='active',
                  comment='active, amended, repealed, draft'),
        sa.Column('effective_date', sa.Date(), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        'regulation_versions',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('regulation_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('regulations.id', ondelete='CASCADE'), nullable=False),
        sa.Column('version_number', sa.Integer(), nullable=False),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('content_hash', sa.String(64), nullable=False,
                  comment='SHA-256 of whitespace-normalized content'),
        sa.Column('raw_html', sa.Text(), nullable=True),
        sa.Column('artifact_uri', sa.String(500), nullable=True),
        sa.Column('changes_summary', sa.Text(), nullable=True),
        sa.Column('fetched_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('NOW()'), nullable=False),
        sa.Column('created_by', sa.String(50), nullable=False, server_default='system'),
        sa.UniqueConstraint('regulation_id', 'version_number', name='uq_regulation_version_number'),
    )

    op.create_table(
        'regulation_subscriptions',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('organization_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('regulation_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('regulations.id', ondelete='CASCADE'), nullable=False),
        sa.Column('source_url', sa.Text(), nullable=False),
        sa.Column('check_interval_hours', sa.Integer(), nullable=False, server_default='24'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('last_checked_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('last_etag', sa.Text(), nullable=True),
        sa.Column('last_modified', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('last_content_hash', sa.String(64), nullable=True),
        sa.Column('next_check_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('NOW()'), nullable=False),
        sa.Column('subscribed_via', sa.String(50), nullable=False, server_default='manual'),
        *_timestamps(),
        sa.UniqueConstraint('user_id', 'regulation_id', name='uq_reg_sub_user_regulation'),
    )
    op.create_index('ix_reg_sub_org_active_next', 'regulation_subscriptions',
                    ['organization_id', 'is_active', 'next_check_at'])
    op.create_index('ix_reg_sub_regulation', 'regulation_subscriptions', ['regulation_id'])

    op.create_table(
        'regulation_monitor_runs',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('started_at', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column('finished_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('status', sa.String(30), nullable=False, comment='success, failed, skipped'),
        sa.Column('trigger_source', sa.String(50), nullable=False, server_default='worker'),
        sa.Column('triggered_by_user_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('dry_run', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('scanned', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('changed', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('versions_created', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('failed', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('error_message', sa.String(500), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('NOW()')),
    )
    op.create_index('ix_regulation_monitor_runs_started_at', 'regulation_monitor_runs', ['started_at'])
    op.create_index('ix_regulation_monitor_runs_status', 'regulation_monitor_runs', ['status'])

    op.create_table(
        'notifications',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('organization_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('type', sa.String(50), nullable=False),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('message', sa.Text(), nullable=True),
        sa.Column('related_case_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('cases.id', ondelete='SET NULL'), nullable=True),
        sa.Column('related_regulation_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('regulations.id', ondelete='SET NULL'), nullable=True),
        sa.Column('read', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('read_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('NOW()')),
    )
    op.create_index('ix_notifications_user_id', 'notifications', ['user_id'])
    op.create_index('ix_notifications_organization_id', 'notifications', ['organization_id'])

    op.create_table(
        'document_extractions',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('document_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('documents.id', ondelete='CASCADE'), nullable=False, unique=True),
        sa.Column('case_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('cases.id', ondelete='CASCADE'), nullable=False),
        sa.Column('organization_id', postgresql.UUID(as_uuid=True), nullable=False),

        # Extraction state machine
        sa.Column('file_hash', sa.String(64), nullable=True),
        sa.Column('status', sa.String(50), nullable=False, server_default='pending',
                  comment='pending, processing, ready, failed, unsupported'),
        sa.Column('extracted_text', sa.Text(), nullable=True),
        sa.Column('normalized_text_hash', sa.String(64), nullable=True),
        sa.Column('extraction_method', sa.String(100), nullable=True),
        sa.Column('ocr_provider_used', sa.String(50), nullable=True),
        sa.Column('error_code', sa.String(100), nullable=True),
        sa.Column('warnings', postgresql.JSONB(), nullable=False, server_default='[]'),
        sa.Column('attempt_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_attempt_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('next_retry_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('NOW()'), nullable=False),

        # Insights state machine
        sa.Column('insights_status', sa.String(50), nullable=False, server_default='pending'),
        sa.Column('insights_summary', sa.Text(), nullable=True),
        sa.Column('insights_highlights', postgresql.JSONB(), nullable=False, server_default='[]'),
        sa.Column('insights_citations', postgresql.JSONB(), nullable=False, server_default='[]'),
        sa.Column('insights_retrieval_meta', postgresql.JSONB(), nullable=True),
        sa.Column('insights_case_context_hash', sa.String(64), nullable=True),
        sa.Column('insights_source_text_hash', sa.String(64), nullable=True),
        sa.Column('insights_method', sa.String(100), nullable=True),
        sa.Column('insights_error_code', sa.String(100), nullable=True),
        sa.Column('insights_warnings', postgresql.JSONB(), nullable=False, server_default='[]'),
        sa.Column('insights_attempt_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('insights_last_attempt_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('insights_next_retry_at', sa.TIMESTAMP(timezone=True),
                  server_default=sa.text('NOW()'), nullable=False),
        sa.Column('insights_updated_at', sa.TIMESTAMP(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_doc_extract_case_status', 'document_extractions', ['case_id', 'status'])
    op.create_index('ix_doc_extract_org_retry', 'document_extractions',
                    ['organization_id', 'status', 'next_retry_at'])
    op.create_index('ix_doc_extract_case_insights_status', 'document_extractions',
                    ['case_id', 'insights_status'])
    op.create_index('ix_doc_extract_org_insights_retry', 'document_extractions',
                    ['organization_id', 'insights_status', 'insights_next_retry_at'])

    op.create_table(
        'document_chunks',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('organization_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('document_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('documents.id', ondelete='CASCADE'), nullable=False),
        sa.Column('chunk_index', sa.Integer(), nullable=False),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('content_lang', sa.String(16), nullable=True),
        sa.Column('token_count', sa.Integer(), nullable=True),
        sa.Column('embedding', Vector(EMBEDDING_DIMENSION), nullable=True),
        sa.Column('metadata', postgresql.JSONB(), nullable=False, server_default='{}',
                  comment='Character offsets: {char_start, char_end}'),
        *_timestamps(),
        sa.UniqueConstraint('document_id', 'chunk_index', name='uq_document_chunk_index'),
    )
    op.create_index('ix_document_chunks_org_doc', 'document_chunks', ['organization_id', 'document_id'])
    op.create_index(
        'ix_document_chunks_embedding_hnsw_cosine',
        'document_chunks',
        ['embedding'],
        postgresql_using='hnsw',
        postgresql_ops={'embedding': 'vector_cosine_ops'},
    )


def downgrade() -> None:
    """Drop all tables created by this revision."""
    op.drop_table('document_chunks')
    op.drop_table('document_extractions')
    op.drop_table('notifications')
    op.drop_table('regulation_monitor_runs')
    op.drop_table('regulation_subscriptions')
    op.drop_table('regulation_versions')
    op.drop_table('regulations')
    op.drop_table('documents')
    op.drop_table('cases')
