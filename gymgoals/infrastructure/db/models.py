"""
SQLAlchemy ORM models (goal voting / fundraising tables + audit log)

All money columns are integers in minor currency units (cents).
"""
import uuid
from datetime import datetime
from sqlalchemy import String, Integer, Text, TIMESTAMP, JSON, Boolean, ForeignKey, func, UniqueConstraint, Index, CheckConstraint
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.dialects.postgresql import JSONB

from gymgoals.infrastructure.db.session import Base


def new_id() -> str:
    """Primary key generator for all goal tables (UUID4 text)"""
    return str(uuid.uuid4())


class EventLog(Base):
    """
    Event log - неизменяемый журнал решений по целям (audit trail)

    Записи добавляются в той же транзакции, что и само изменение статуса.
    """
    __tablename__ = "event_log"

    id: Mapped[int] = mapped_column(primary_key=True)
    gym_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    actor_id: Mapped[str | None] = mapped_column(String(36), nullable=True)

    event_type: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    payload_json: Mapped[dict] = mapped_column(
        JSON().with_variant(JSONB(), "postgresql"), nullable=False
    )

    occurred_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        index=True
    )
    idempotency_key: Mapped[str | None] = mapped_column(
        String(255),
        unique=True,
        nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        server_default=func.now(),
        nullable=False
    )


class GoalModel(Base):
    """
    Fundraising goal proposed to gym members

    Status: draft -> voting -> fundraising -> completed (cancelled - administratively).
    winning_option_id is set once, when voting closes (or at creation for single-option goals).
    """
    __tablename__ = "goals"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    gym_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, server_default="draft", default="draft")
    is_visible: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default="true", default=True)

    voting_ends_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    voting_ended_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    winning_option_id: Mapped[str | None] = mapped_column(String(36), nullable=True)

    current_amount: Mapped[int] = mapped_column(Integer, nullable=False, server_default="0", default=0)
    completed_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        server_default=func.now(),
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False
    )

    __table_args__ = (
        Index('ix_goals_gym_status', 'gym_id', 'status'),
        CheckConstraint('current_amount >= 0', name='ck_goals_current_amount'),
    )


class GoalOptionModel(Base):
    """
    Candidate option of a goal ballot

    vote_count - denormalized count of goal_votes rows, written only by CastVoteUseCase.
    """
    __tablename__ = "goal_options"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    goal_id: Mapped[str] = mapped_column(String(36), ForeignKey("goals.id", ondelete="CASCADE"), nullable=False, index=True)

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    image_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)

    target_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    vote_count: Mapped[int] = mapped_column(Integer, nullable=False, server_default="0", default=0)
    display_order: Mapped[int] = mapped_column(Integer, nullable=False, server_default="0", default=0)

    __table_args__ = (
        CheckConstraint('vote_count >= 0', name='ck_goal_options_vote_count'),
        CheckConstraint('target_amount > 0', name='ck_goal_options_target_amount'),
    )


class GoalVoteModel(Base):
    """
    Current ballot choice of one member for one goal (max one row per goal+member)
    """
    __tablename__ = "goal_votes"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    goal_id: Mapped[str] = mapped_column(String(36), ForeignKey("goals.id", ondelete="CASCADE"), nullable=False, index=True)
    member_id: Mapped[str] = mapped_column(String(36), nullable=False)
    option_id: Mapped[str] = mapped_column(String(36), ForeignKey("goal_options.id"), nullable=False, index=True)

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        server_default=func.now(),
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        server_default=func.now(),
        nullable=False
    )

    __table_args__ = (
        UniqueConstraint('goal_id', 'member_id', name='uq_goal_vote_member'),
    )


class GoalContributionModel(Base):
    """
    Append-only record of money applied toward a goal (subscription / manual)
    """
    __tablename__ = "goal_contributions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    goal_id: Mapped[str] = mapped_column(String(36), ForeignKey("goals.id"), nullable=False, index=True)

    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    source: Mapped[str] = mapped_column(String(16), nullable=False)  # subscription, manual
    member_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    member_name: Mapped[str | None] = mapped_column(String(255), nullable=True)  # snapshot for display
    note: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        server_default=func.now(),
        nullable=False
    )

    __table_args__ = (
        CheckConstraint('amount > 0', name='ck_goal_contributions_amount'),
    )
