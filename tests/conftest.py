"""
Pytest fixtures for testing

Use cases open their own sessions, so the database is a real SQLite file
(one per test) rather than :memory:. Every transaction starts with
BEGIN IMMEDIATE, which makes concurrent writers queue up the way
SERIALIZABLE transactions do on PostgreSQL.

Tests must not keep a session open while calling a use case: seed and
inspect data in short `with session_factory() as db:` blocks.
"""
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker

from gymgoals.domain.goal import GOAL_STATUS_VOTING
from gymgoals.infrastructure.db.models import GoalModel, GoalOptionModel
from gymgoals.infrastructure.db.session import Base

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
GYM_ID = "gym-1"


@pytest.fixture
def db_engine(tmp_path):
    """SQLite file engine shared by all sessions of one test"""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'goals.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_conn, connection_record):
        dbapi_conn.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    """Session factory configured like the production one"""
    return sessionmaker(bind=db_engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def clock(now):
    """Fixed "now" for use cases"""
    return lambda: now


@pytest.fixture
def gym_id():
    return GYM_ID


@pytest.fixture
def make_goal(session_factory):
    """
    Insert a goal with options directly (bypassing admin use cases)

    options: list of (name, target_amount_cents) or (name, target, vote_count)
    winner: index of the winning option (sets winning_option_id)

    Returns:
        (goal_id, [option_id, ...]) in display order
    """
    def _make_goal(
        status=GOAL_STATUS_VOTING,
        options=(("Rowing machine", 150000), ("Sauna", 400000)),
        voting_ends_at=NOW + timedelta(days=3),
        winner=None,
        current_amount=0,
        gym_id=GYM_ID,
        name="New equipment",
        is_visible=True,
        completed_at=None,
    ):
        with session_factory() as db:
            goal = GoalModel(
                gym_id=gym_id,
                name=name,
                status=status,
                is_visible=is_visible,
                voting_ends_at=voting_ends_at,
                current_amount=current_amount,
                completed_at=completed_at,
            )
            db.add(goal)
            db.flush()

            option_ids = []
            for display_order, row in enumerate(options):
                option_name, target_amount = row[0], row[1]
                vote_count = row[2] if len(row) > 2 else 0
                option = GoalOptionModel(
                    goal_id=goal.id,
                    name=option_name,
                    target_amount=target_amount,
                    vote_count=vote_count,
                    display_order=display_order,
                )
                db.add(option)
                db.flush()
                option_ids.append(option.id)

            if winner is not None:
                goal.winning_option_id = option_ids[winner]

            db.commit()
            return goal.id, option_ids

    return _make_goal


@pytest.fixture
def load_goal(session_factory):
    """Fresh copy of a goal row"""
    def _load_goal(goal_id):
        with session_factory() as db:
            return db.get(GoalModel, goal_id)

    return _load_goal


@pytest.fixture
def vote_counts(session_factory):
    """{option_id: vote_count} of a goal"""
    def _vote_counts(goal_id):
        with session_factory() as db:
            rows = db.query(GoalOptionModel.id, GoalOptionModel.vote_count).filter(
                GoalOptionModel.goal_id == goal_id
            ).all()
            return {option_id: count for option_id, count in rows}

    return _vote_counts
