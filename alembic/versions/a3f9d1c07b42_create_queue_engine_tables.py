"""create_queue_engine_tables

Revision ID: a3f9d1c07b42
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from dialer_engine.db.base import UUIDType

# revision identifiers, used by Alembic.
revision: str = 'a3f9d1c07b42'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create user_call_scores, conversions and queue_transition_audit."""
    op.create_table('user_call_scores',
        sa.Column('id', UUIDType(), nullable=False),

        # Identity
        sa.Column('user_id', sa.BigInteger(), nullable=False, comment='External user identity (immutable)'),

        # Priority and queue membership
        sa.Column('current_score', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('current_queue_category', sa.String(length=50), nullable=True, comment='unsigned_users, outstanding_requirements, or NULL when not queued'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),

        # Bookkeeping
        sa.Column('total_attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('successful_calls', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_outcome', sa.String(length=50), nullable=True),
        sa.Column('last_call_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('next_call_after', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_queue_check_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_reset_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_aged_at', sa.DateTime(timezone=True), nullable=True),

        # Timestamps
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),

        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_user_call_scores_user_id', 'user_call_scores', ['user_id'], unique=True)
    op.create_index('ix_user_call_scores_queue_priority', 'user_call_scores', ['current_queue_category', 'is_active', 'current_score'])
    op.create_index('ix_user_call_scores_active_category', 'user_call_scores', ['is_active', 'current_queue_category'])

    op.create_table('conversions',
        sa.Column('id', UUIDType(), nullable=False),
        sa.Column('user_id', sa.BigInteger(), nullable=False),
        sa.Column('previous_queue_category', sa.String(length=50), nullable=False),
        sa.Column('conversion_type', sa.String(length=50), nullable=False, comment='signature_obtained, requirements_completed'),
        sa.Column('reason', sa.Text(), nullable=False),
        sa.Column('source', sa.String(length=64), nullable=False, comment='Subsystem that detected the conversion'),
        sa.Column('converted_at', sa.DateTime(timezone=True), nullable=False),

        # Score row snapshot
        sa.Column('final_score', sa.Integer(), nullable=True),
        sa.Column('total_call_attempts', sa.Integer(), nullable=True),
        sa.Column('last_call_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('signature_obtained', sa.Boolean(), nullable=False, server_default=sa.false()),

        sa.Column('metadata', sa.JSON(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_conversions_user_id', 'conversions', ['user_id'])
    op.create_index('ix_conversions_user_type_converted', 'conversions', ['user_id', 'conversion_type', 'converted_at'])
    op.create_index('ix_conversions_converted_at', 'conversions', ['converted_at'])

    op.create_table('queue_transition_audit',
        sa.Column('id', UUIDType(), nullable=False),
        sa.Column('user_id', sa.BigInteger(), nullable=False),
        sa.Column('from_queue_category', sa.String(length=50), nullable=True),
        sa.Column('to_queue_category', sa.String(length=50), nullable=True),
        sa.Column('reason', sa.Text(), nullable=False),
        sa.Column('source', sa.String(length=64), nullable=False),
        sa.Column('agent_id', sa.String(length=64), nullable=True),
        sa.Column('conversion_id', UUIDType(), nullable=True),
        sa.Column('conversion_logged', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('timestamp', sa.DateTime(timezone=True), nullable=False),
        sa.Column('metadata', sa.JSON(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_queue_transition_audit_user_id', 'queue_transition_audit', ['user_id'])
    op.create_index('ix_queue_transition_audit_timestamp', 'queue_transition_audit', ['timestamp'])
    op.create_index('ix_queue_transition_audit_logged_timestamp', 'queue_transition_audit', ['conversion_logged', 'timestamp'])
    op.create_index('ix_queue_transition_audit_source_timestamp', 'queue_transition_audit', ['source', 'timestamp'])
    op.create_index('ix_queue_transition_audit_user_timestamp', 'queue_transition_audit', ['user_id', 'timestamp'])


def downgrade() -> None:
    """Drop the queue engine tables."""
    op.drop_index('ix_queue_transition_audit_user_timestamp', 'queue_transition_audit')
    op.drop_index('ix_queue_transition_audit_source_timestamp', 'queue_transition_audit')
    op.drop_index('ix_queue_transition_audit_logged_timestamp', 'queue_transition_audit')
    op.drop_index('ix_queue_transition_audit_timestamp', 'queue_transition_audit')
    op.drop_index('ix_queue_transition_audit_user_id', 'queue_transition_audit')
    op.drop_table('queue_transition_audit')

    op.drop_index('ix_conversions_converted_at', 'conversions')
    op.drop_index('ix_conversions_user_type_converted', 'conversions')
    op.drop_index('ix_conversions_user_id', 'conversions')
    op.drop_table('conversions')

    op.drop_index('ix_user_call_scores_active_category', 'user_call_scores')
    op.drop_index('ix_user_call_scores_queue_priority', 'user_call_scores')
    op.drop_index('ix_user_call_scores_user_id', 'user_call_scores')
    op.drop_table('user_call_scores')
