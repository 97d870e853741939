"""Initial schema

Revision ID: 001
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSONType = sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), 'postgresql')


def upgrade() -> None:
    """Create the ticket cache and scheduled job tables."""

    # Cached ServiceNow tickets, one row per (table, sys_id)
    op.create_table(
        'tickets',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('table_name', sa.String(length=80), nullable=False),
        sa.Column('sys_id', sa.String(length=32), nullable=False),
        sa.Column('number', sa.String(length=40), nullable=True),
        sa.Column('state', sa.String(length=10), nullable=False),
        sa.Column('priority', sa.Integer(), nullable=False),
        sa.Column('short_description', sa.Text(), nullable=True),
        sa.Column('assignment_group', JSONType, nullable=True),
        sa.Column('sys_created_on', sa.DateTime(timezone=True), nullable=True),
        sa.Column('sys_updated_on', sa.DateTime(timezone=True), nullable=False),
        sa.Column('synced_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('extra', JSONType, nullable=True),
        sa.Column('sla', JSONType, nullable=True),
        sa.Column('notes', JSONType, nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('table_name', 'sys_id', name='uq_tickets_table_sys_id')
    )
    op.create_index('ix_tickets_table_name', 'tickets', ['table_name'], unique=False)
    op.create_index('ix_tickets_number', 'tickets', ['number'], unique=False)
    op.create_index('ix_tickets_sys_updated_on', 'tickets', ['sys_updated_on'], unique=False)

    # Scheduled sync jobs with their runtime counters
    op.create_table(
        'sync_jobs',
        sa.Column('job_id', sa.String(length=64), nullable=False),
        sa.Column('name', sa.String(length=200), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('cron_expression', sa.String(length=100), nullable=False),
        sa.Column('tables', JSONType, nullable=True),
        sa.Column('batch_size', sa.Integer(), nullable=True),
        sa.Column('delta_sync', sa.Boolean(), nullable=True),
        sa.Column('delta_hours', sa.Integer(), nullable=True),
        sa.Column('enabled', sa.Boolean(), nullable=True),
        sa.Column('created_by', sa.String(length=100), nullable=True),
        sa.Column('tags', JSONType, nullable=True),
        sa.Column('max_retries', sa.Integer(), nullable=True),
        sa.Column('timeout_seconds', sa.Integer(), nullable=True),
        sa.Column('run_count', sa.Integer(), server_default='0', nullable=False),
        sa.Column('fail_count', sa.Integer(), server_default='0', nullable=False),
        sa.Column('last_run', sa.DateTime(timezone=True), nullable=True),
        sa.Column('next_run', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_status', sa.String(length=20), nullable=True),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('job_id')
    )


def downgrade() -> None:
    """Drop all tables."""
    op.drop_table('sync_jobs')
    op.drop_index('ix_tickets_sys_updated_on', table_name='tickets')
    op.drop_index('ix_tickets_number', table_name='tickets')
    op.drop_index('ix_tickets_table_name', table_name='tickets')
    op.drop_table('tickets')
