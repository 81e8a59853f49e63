"""Create analysis job and chunk checkpoint tables

Revision ID: 001
Revises: 
Create Date: 2026-10-18 10:00:00.000000

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Create analysis_jobs table
    op.create_table('analysis_jobs',
        sa.Column('id', sa.String(length=64), nullable=False),
        sa.Column('identity', sa.String(length=255), nullable=False),
        sa.Column('total_stages', sa.Integer(), nullable=False),
        sa.Column('processed_stages', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='pending'),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )

    # Create analysis_chunks table
    op.create_table('analysis_chunks',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('job_id', sa.String(length=64), nullable=False),
        sa.Column('stage_index', sa.Integer(), nullable=False),
        sa.Column('item_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='completed'),
        sa.Column('payload', sa.JSON(), nullable=True),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['job_id'], ['analysis_jobs.id'], ),
        sa.PrimaryKeyConstraint('id')
    )

    # Create indexes for performance
    op.create_index('ix_analysis_jobs_identity', 'analysis_jobs', ['identity'])
    op.create_index('ix_analysis_chunks_job_id', 'analysis_chunks', ['job_id'])


def downgrade() -> None:
    # Drop indexes
    op.drop_index('ix_analysis_chunks_job_id', table_name='analysis_chunks')
    op.drop_index('ix_analysis_jobs_identity', table_name='analysis_jobs')

    # Drop tables in reverse order
    op.drop_table('analysis_chunks')
    op.drop_table('analysis_jobs')
