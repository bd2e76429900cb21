"""Add upload_jobs and owner_quotas tables

Revision ID: 001_upload_tables
Revises:
Create Date: 2026-10-18

- upload_jobs: durable record of every terminal upload job
- owner_quotas: per-owner photo allowance (-1 = unlimited)
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers
revision = '001_upload_tables'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'upload_jobs',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('owner_id', sa.String(), nullable=False),
        sa.Column('batch_id', sa.String(), nullable=True),
        sa.Column('file_name', sa.String(), nullable=False, server_default=''),
        sa.Column('stage', sa.String(), nullable=False, server_default='Queued'),
        sa.Column('progress', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('source_meta', sa.JSON(), nullable=True),
        sa.Column('results', sa.JSON(), nullable=True),
        sa.Column('error_kind', sa.String(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('error_stage', sa.String(), nullable=True),
        sa.Column('degradations', sa.JSON(), nullable=True),
        sa.Column('stages_metadata', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index('ix_upload_jobs_owner_id', 'upload_jobs', ['owner_id'])
    op.create_index('ix_upload_jobs_batch_id', 'upload_jobs', ['batch_id'])
    op.create_index('ix_upload_jobs_stage', 'upload_jobs', ['stage'])

    op.create_table(
        'owner_quotas',
        sa.Column('owner_id', sa.String(), primary_key=True),
        sa.Column('photos_used', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('photos_limit', sa.Integer(), nullable=False, server_default='10'),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
    )


def downgrade() -> None:
    op.drop_table('owner_quotas')
    op.drop_index('ix_upload_jobs_stage', 'upload_jobs')
    op.drop_index('ix_upload_jobs_batch_id', 'upload_jobs')
    op.drop_index('ix_upload_jobs_owner_id', 'upload_jobs')
    op.drop_table('upload_jobs')
