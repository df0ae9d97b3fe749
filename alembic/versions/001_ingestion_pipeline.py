"""Ingestion pipeline schema

Revision ID: 001
Revises:
Create Date: 2026-10-18

Creates:
- ingest_jobs: one row per ingestion attempt (status, counters, skip details)
- data_records: ingested content units with embedding state
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'ingest_jobs',
        sa.Column('id', sa.String(36), nullable=False),
        sa.Column('partition_id', sa.String(255), nullable=False),
        sa.Column('record_type', sa.String(20), nullable=False, server_default='TASK'),
        sa.Column('status', sa.String(20), nullable=False, server_default='PENDING'),
        sa.Column('ingestion_kind', sa.String(20), nullable=False, server_default='CSV'),
        sa.Column('source', sa.String(500), nullable=True),
        sa.Column('generate_embeddings', sa.Boolean(), server_default=sa.false()),
        sa.Column('total_records', sa.Integer(), server_default='0'),
        sa.Column('saved_count', sa.Integer(), server_default='0'),
        sa.Column('skipped_count', sa.Integer(), server_default='0'),
        sa.Column('skipped_details', postgresql.JSONB(), server_default='{}'),
        sa.Column('embedded_count', sa.Integer(), server_default='0'),
        sa.Column('embedding_failed_count', sa.Integer(), server_default='0'),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_ingest_jobs_partition_id', 'ingest_jobs', ['partition_id'])
    op.create_index(
        'idx_ingest_jobs_partition_status_created',
        'ingest_jobs',
        ['partition_id', 'status', 'created_at']
    )

    op.create_table(
        'data_records',
        sa.Column('id', sa.String(36), nullable=False),
        sa.Column('partition_id', sa.String(255), nullable=False),
        sa.Column('ingest_job_id', sa.String(36), nullable=True),
        sa.Column('record_type', sa.String(20), nullable=False),
        sa.Column('category', sa.String(20), nullable=True),
        sa.Column('source', sa.String(500), nullable=True),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('external_id', sa.String(255), nullable=True),
        sa.Column('metadata', postgresql.JSONB(), server_default='{}'),
        sa.Column('embedding', postgresql.JSONB(), nullable=True),
        sa.Column('embedding_state', sa.String(20), nullable=False, server_default='PENDING'),
        sa.Column('embedding_error', sa.Text(), nullable=True),
        sa.Column('created_by_id', sa.String(255), nullable=True),
        sa.Column('created_by_name', sa.String(255), nullable=True),
        sa.Column('created_by_email', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_data_records_ingest_job_id', 'data_records', ['ingest_job_id'])
    op.create_index(
        'idx_data_records_external_id',
        'data_records',
        ['partition_id', 'record_type', 'external_id']
    )
    op.create_index(
        'idx_data_records_embedding_scan',
        'data_records',
        ['partition_id', 'embedding_state', 'id']
    )


def downgrade() -> None:
    op.drop_index('idx_data_records_embedding_scan', table_name='data_records')
    op.drop_index('idx_data_records_external_id', table_name='data_records')
    op.drop_index('ix_data_records_ingest_job_id', table_name='data_records')
    op.drop_table('data_records')

    op.drop_index('idx_ingest_jobs_partition_status_created', table_name='ingest_jobs')
    op.drop_index('ix_ingest_jobs_partition_id', table_name='ingest_jobs')
    op.drop_table('ingest_jobs')
