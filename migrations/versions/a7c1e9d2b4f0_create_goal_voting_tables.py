"""create goal voting and fundraising tables

Revision ID: a7c1e9d2b4f0
Revises:
Create Date: 2026-10-18 12:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB


# revision identifiers, used by Alembic.
revision: str = 'a7c1e9d2b4f0'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create event_log, goals, goal_options, goal_votes, goal_contributions."""
    op.create_table(
        'event_log',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('gym_id', sa.String(36), nullable=False),
        sa.Column('actor_id', sa.String(36), nullable=True),
        sa.Column('event_type', sa.String(length=128), nullable=False),
        sa.Column('payload_json', JSONB, nullable=False),
        sa.Column('occurred_at', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column('idempotency_key', sa.String(length=255), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_event_log_gym_id', 'event_log', ['gym_id'])
    op.create_index('ix_event_log_event_type', 'event_log', ['event_type'])
    op.create_index('ix_event_log_occurred_at', 'event_log', ['occurred_at'])
    op.create_index('ix_event_log_idempotency_key', 'event_log', ['idempotency_key'], unique=True)

    op.create_table(
        'goals',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('gym_id', sa.String(36), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('status', sa.String(16), nullable=False, server_default='draft'),
        sa.Column('is_visible', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('voting_ends_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('voting_ended_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('winning_option_id', sa.String(36), nullable=True),
        sa.Column('current_amount', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('completed_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False,
                  server_default=sa.func.now()),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), nullable=False,
                  server_default=sa.func.now()),
        sa.CheckConstraint(
            "status IN ('draft', 'voting', 'fundraising', 'completed', 'cancelled')",
            name='ck_goals_status',
        ),
        sa.CheckConstraint('current_amount >= 0', name='ck_goals_current_amount'),
    )
    op.create_index('ix_goals_gym_id', 'goals', ['gym_id'])
    op.create_index('ix_goals_gym_status', 'goals', ['gym_id', 'status'])

    op.create_table(
        'goal_options',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('goal_id', sa.String(36), sa.ForeignKey('goals.id', ondelete='CASCADE'), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('image_url', sa.String(1024), nullable=True),
        sa.Column('target_amount', sa.Integer(), nullable=False),
        sa.Column('vote_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('display_order', sa.Integer(), nullable=False, server_default='0'),
        sa.CheckConstraint('vote_count >= 0', name='ck_goal_options_vote_count'),
        sa.CheckConstraint('target_amount > 0', name='ck_goal_options_target_amount'),
    )
    op.create_index('ix_goal_options_goal_id', 'goal_options', ['goal_id'])

    op.create_table(
        'goal_votes',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('goal_id', sa.String(36), sa.ForeignKey('goals.id', ondelete='CASCADE'), nullable=False),
        sa.Column('member_id', sa.String(36), nullable=False),
        sa.Column('option_id', sa.String(36), sa.ForeignKey('goal_options.id'), nullable=False),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False,
                  server_default=sa.func.now()),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), nullable=False,
                  server_default=sa.func.now()),
        sa.UniqueConstraint('goal_id', 'member_id', name='uq_goal_vote_member'),
    )
    op.create_index('ix_goal_votes_goal_id', 'goal_votes', ['goal_id'])
    op.create_index('ix_goal_votes_option_id', 'goal_votes', ['option_id'])

    op.create_table(
        'goal_contributions',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('goal_id', sa.String(36), sa.ForeignKey('goals.id'), nullable=False),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('source', sa.String(16), nullable=False),
        sa.Column('member_id', sa.String(36), nullable=True),
        sa.Column('member_name', sa.String(255), nullable=True),
        sa.Column('note', sa.Text(), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False,
                  server_default=sa.func.now()),
        sa.CheckConstraint('amount > 0', name='ck_goal_contributions_amount'),
        sa.CheckConstraint("source IN ('subscription', 'manual')", name='ck_goal_contributions_source'),
    )
    op.create_index('ix_goal_contributions_goal_id', 'goal_contributions', ['goal_id'])


def downgrade() -> None:
    """Drop goal voting tables."""
    op.drop_index('ix_goal_contributions_goal_id', table_name='goal_contributions')
    op.drop_table('goal_contributions')
    op.drop_index('ix_goal_votes_option_id', table_name='goal_votes')
    op.drop_index('ix_goal_votes_goal_id', table_name='goal_votes')
    op.drop_table('goal_votes')
    op.drop_index('ix_goal_options_goal_id', table_name='goal_options')
    op.drop_table('goal_options')
    op.drop_index('ix_goals_gym_status', table_name='goals')
    op.drop_index('ix_goals_gym_id', table_name='goals')
    op.drop_table('goals')
    op.drop_index('ix_event_log_idempotency_key', table_name='event_log')
    op.drop_index('ix_event_log_occurred_at', table_name='event_log')
    op.drop_index('ix_event_log_event_type', table_name='event_log')
    op.drop_index('ix_event_log_gym_id', table_name='event_log')
    op.drop_table('event_log')
