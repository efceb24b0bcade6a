"""
Tests for goal administration: create, publish, update, cancel, delete
"""
from datetime import timedelta
from unittest.mock import patch

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from gymgoals.application import goals as goals_module
from gymgoals.application.goals import (
    CreateGoalUseCase, PublishGoalUseCase, UpdateGoalUseCase, CancelGoalUseCase, DeleteGoalUseCase,
    GoalOptionInput, GoalValidationError,
)
from gymgoals.application.goal_voting import CastVoteUseCase
from gymgoals.application.goal_contributions import AddContributionUseCase
from gymgoals.domain.goal import (
    as_utc,
    GOAL_STATUS_DRAFT, GOAL_STATUS_VOTING, GOAL_STATUS_FUNDRAISING,
    GOAL_STATUS_COMPLETED, GOAL_STATUS_CANCELLED,
    EVENT_GOAL_CREATED, EVENT_GOAL_PUBLISHED, EVENT_GOAL_CANCELLED,
)
from gymgoals.infrastructure.db.models import GoalModel, GoalOptionModel
from gymgoals.infrastructure.eventlog.repository import EventLogRepository


OPTIONS = [
    GoalOptionInput(name="Rowing machine", target_amount=150000, description="Concept2"),
    GoalOptionInput(name="Sauna", target_amount=400000),
]


@pytest.fixture
def create_goal(session_factory, clock, now, gym_id):
    def _create_goal(options=OPTIONS, voting_ends_at=now + timedelta(days=7), **kwargs):
        with session_factory() as db:
            return CreateGoalUseCase(db, clock).execute(
                gym_id=gym_id,
                name=kwargs.pop("name", "New equipment"),
                options=options,
                voting_ends_at=voting_ends_at,
                **kwargs,
            )

    return _create_goal


def _options(session_factory, goal_id):
    with session_factory() as db:
        return db.query(GoalOptionModel).filter(
            GoalOptionModel.goal_id == goal_id
        ).order_by(GoalOptionModel.display_order).all()


@pytest.fixture
def plain_session_factory(db_engine):
    """
    Sessions on a second engine without BEGIN IMMEDIATE

    Reads take no lock here, so another writer can commit between an admin
    use case's read and its write (as under READ COMMITTED on PostgreSQL).
    """
    engine = create_engine(db_engine.url, connect_args={"check_same_thread": False, "timeout": 30})
    yield sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    engine.dispose()


def _run_after_goal_read(action):
    """Patch the admin goal lookup so that `action` runs right after the goal is read"""
    original_get_goal = goals_module._get_goal
    pending = [action]

    def _get_goal_then_act(db, goal_id, gym_id):
        goal = original_get_goal(db, goal_id, gym_id)
        # Only the first lookup triggers the action; the action may itself read goals
        if pending:
            pending.pop()()
        return goal

    return patch.object(goals_module, "_get_goal", side_effect=_get_goal_then_act)


# ============================================================================
# Create
# ============================================================================


class TestCreateGoal:
    def test_create_goal_with_options(self, session_factory, create_goal, now, load_goal):
        """Создание цели с несколькими опциями - черновик с дедлайном"""
        goal_id = create_goal(description="  Vote for the next purchase  ")

        goal = load_goal(goal_id)
        assert goal.status == GOAL_STATUS_DRAFT
        assert goal.name == "New equipment"
        assert goal.description == "Vote for the next purchase"
        assert goal.current_amount == 0
        assert goal.winning_option_id is None
        assert as_utc(goal.voting_ends_at) == now + timedelta(days=7)

        options = _options(session_factory, goal_id)
        assert [o.name for o in options] == ["Rowing machine", "Sauna"]
        assert [o.display_order for o in options] == [0, 1]
        assert [o.vote_count for o in options] == [0, 0]
        assert options[0].description == "Concept2"

    def test_single_option_goal(self, session_factory, create_goal, load_goal):
        """Одна опция: победитель сразу, дедлайн не нужен"""
        goal_id = create_goal(options=[GoalOptionInput(name="Sauna", target_amount=400000)], voting_ends_at=None)

        goal = load_goal(goal_id)
        option = _options(session_factory, goal_id)[0]
        assert goal.winning_option_id == option.id
        assert goal.voting_ends_at is None

    def test_event_recorded(self, session_factory, create_goal, gym_id):
        goal_id = create_goal(actor_id="admin-1")

        with session_factory() as db:
            events = EventLogRepository(db).list_events(gym_id, event_types=[EVENT_GOAL_CREATED])
        assert len(events) == 1
        assert events[0].actor_id == "admin-1"
        assert events[0].payload_json["goal_id"] == goal_id
        assert len(events[0].payload_json["option_ids"]) == 2

    def test_empty_name_rejected(self, create_goal):
        with pytest.raises(GoalValidationError, match="name is required"):
            create_goal(name="   ")

    def test_no_options_rejected(self, create_goal):
        with pytest.raises(GoalValidationError, match="At least one option"):
            create_goal(options=[])

    def test_option_without_name_rejected(self, create_goal):
        with pytest.raises(GoalValidationError, match="Option 2: name is required"):
            create_goal(options=[OPTIONS[0], GoalOptionInput(name=" ", target_amount=100)])

    @pytest.mark.parametrize("target_amount", [0, -100, 12.5])
    def test_non_positive_target_rejected(self, create_goal, target_amount):
        with pytest.raises(GoalValidationError, match="target amount must be greater than 0"):
            create_goal(options=[GoalOptionInput(name="Mats", target_amount=target_amount)])

    def test_deadline_required_for_several_options(self, create_goal):
        with pytest.raises(GoalValidationError, match="Voting deadline is required"):
            create_goal(voting_ends_at=None)

    def test_past_deadline_rejected(self, create_goal, now):
        with pytest.raises(GoalValidationError, match="must be in the future"):
            create_goal(voting_ends_at=now - timedelta(minutes=1))

    def test_single_option_ignores_deadline(self, create_goal, now, load_goal):
        """Дедлайн цели с одной опцией не используется и не проверяется"""
        goal_id = create_goal(
            options=[GoalOptionInput(name="Sauna", target_amount=400000)],
            voting_ends_at=now - timedelta(days=1),
        )

        assert load_goal(goal_id).voting_ends_at is None

    def test_rejected_goal_not_saved(self, session_factory, create_goal):
        with pytest.raises(GoalValidationError):
            create_goal(voting_ends_at=None)

        with session_factory() as db:
            assert db.query(GoalModel).count() == 0


# ============================================================================
# Publish
# ============================================================================


class TestPublishGoal:
    def test_publish_opens_voting(self, session_factory, clock, gym_id, create_goal, load_goal):
        """Несколько опций - публикация открывает голосование"""
        goal_id = create_goal()

        with session_factory() as db:
            status = PublishGoalUseCase(db, clock).execute(goal_id, gym_id)

        assert status == GOAL_STATUS_VOTING
        assert load_goal(goal_id).status == GOAL_STATUS_VOTING

    def test_publish_single_option_starts_fundraising(self, session_factory, clock, gym_id, create_goal, load_goal):
        """Одна опция - сразу сбор средств"""
        goal_id = create_goal(options=[GoalOptionInput(name="Sauna", target_amount=400000)], voting_ends_at=None)

        with session_factory() as db:
            status = PublishGoalUseCase(db, clock).execute(goal_id, gym_id)

        assert status == GOAL_STATUS_FUNDRAISING
        goal = load_goal(goal_id)
        assert goal.status == GOAL_STATUS_FUNDRAISING
        assert goal.winning_option_id == _options(session_factory, goal_id)[0].id

        result = AddContributionUseCase(session_factory, clock).execute(goal_id, 400000, "manual")
        assert result.completed is True

    def test_publish_records_event(self, session_factory, clock, gym_id, create_goal):
        goal_id = create_goal()
        with session_factory() as db:
            PublishGoalUseCase(db, clock).execute(goal_id, gym_id, actor_id="admin-1")

        with session_factory() as db:
            assert EventLogRepository(db).count_events(gym_id, [EVENT_GOAL_PUBLISHED]) == 1

    def test_publish_twice_rejected(self, session_factory, clock, gym_id, create_goal):
        goal_id = create_goal()
        with session_factory() as db:
            PublishGoalUseCase(db, clock).execute(goal_id, gym_id)

        with session_factory() as db:
            with pytest.raises(GoalValidationError, match="Only drafts can be published"):
                PublishGoalUseCase(db, clock).execute(goal_id, gym_id)

    def test_publish_expired_deadline_rejected(self, session_factory, now, gym_id, create_goal, load_goal):
        """Дедлайн прошёл, пока цель была черновиком"""
        goal_id = create_goal(voting_ends_at=now + timedelta(hours=1))

        with session_factory() as db:
            with pytest.raises(GoalValidationError, match="must be in the future"):
                PublishGoalUseCase(db, lambda: now + timedelta(hours=2)).execute(goal_id, gym_id)

        assert load_goal(goal_id).status == GOAL_STATUS_DRAFT

    def test_publish_without_options_rejected(self, session_factory, clock, gym_id, make_goal):
        goal_id, _ = make_goal(status=GOAL_STATUS_DRAFT, options=[])
        with session_factory() as db:
            with pytest.raises(GoalValidationError, match="no options"):
                PublishGoalUseCase(db, clock).execute(goal_id, gym_id)

    def test_publish_other_gym_not_found(self, session_factory, clock, create_goal):
        goal_id = create_goal()
        with session_factory() as db:
            with pytest.raises(GoalValidationError, match="not found"):
                PublishGoalUseCase(db, clock).execute(goal_id, "gym-2")

    def test_publish_after_concurrent_cancel_rejected(self, session_factory, plain_session_factory, clock,
                                                      gym_id, create_goal, load_goal):
        """Черновик отменён между чтением и записью - публикация не возрождает его"""
        goal_id = create_goal()

        def cancel_in_other_session():
            with session_factory() as other_db:
                CancelGoalUseCase(other_db).execute(goal_id, gym_id)

        with _run_after_goal_read(cancel_in_other_session):
            with plain_session_factory() as db:
                with pytest.raises(GoalValidationError, match="Only drafts can be published"):
                    PublishGoalUseCase(db, clock).execute(goal_id, gym_id)

        assert load_goal(goal_id).status == GOAL_STATUS_CANCELLED
        with session_factory() as db:
            assert EventLogRepository(db).count_events(gym_id, [EVENT_GOAL_PUBLISHED]) == 0


# ============================================================================
# Update
# ============================================================================


class TestUpdateGoal:
    def test_update_fields(self, session_factory, clock, now, gym_id, create_goal, load_goal):
        goal_id = create_goal(description="Old")

        with session_factory() as db:
            UpdateGoalUseCase(db, clock).execute(
                goal_id, gym_id,
                name=" Bigger sauna ",
                description=None,
                is_visible=False,
                voting_ends_at=now + timedelta(days=10),
            )

        goal = load_goal(goal_id)
        assert goal.name == "Bigger sauna"
        assert goal.description is None
        assert goal.is_visible is False
        assert as_utc(goal.voting_ends_at) == now + timedelta(days=10)

    def test_omitted_fields_untouched(self, session_factory, clock, gym_id, create_goal, load_goal):
        """Непереданные поля не меняются"""
        goal_id = create_goal(description="Keep me")
        with session_factory() as db:
            UpdateGoalUseCase(db, clock).execute(goal_id, gym_id, name="Renamed")

        goal = load_goal(goal_id)
        assert goal.description == "Keep me"
        assert goal.voting_ends_at is not None

    def test_empty_name_rejected(self, session_factory, clock, gym_id, create_goal):
        goal_id = create_goal()
        with session_factory() as db:
            with pytest.raises(GoalValidationError, match="cannot be empty"):
                UpdateGoalUseCase(db, clock).execute(goal_id, gym_id, name="  ")

    def test_deadline_locked_after_voting(self, session_factory, clock, now, gym_id, make_goal):
        """После голосования дедлайн не меняется"""
        goal_id, _ = make_goal(status=GOAL_STATUS_FUNDRAISING, winner=0)
        with session_factory() as db:
            with pytest.raises(GoalValidationError, match="can only be changed"):
                UpdateGoalUseCase(db, clock).execute(goal_id, gym_id, voting_ends_at=now + timedelta(days=1))

    def test_extend_active_voting(self, session_factory, clock, now, gym_id, make_goal, load_goal):
        """Продление идущего голосования"""
        goal_id, _ = make_goal()
        with session_factory() as db:
            UpdateGoalUseCase(db, clock).execute(goal_id, gym_id, voting_ends_at=now + timedelta(days=30))
        assert as_utc(load_goal(goal_id).voting_ends_at) == now + timedelta(days=30)

    def test_active_voting_deadline_cannot_be_cleared(self, session_factory, clock, now, gym_id, make_goal,
                                                      load_goal):
        """Голосование без дедлайна никогда бы не закрылось"""
        goal_id, _ = make_goal(voting_ends_at=now + timedelta(days=2))
        with session_factory() as db:
            with pytest.raises(GoalValidationError, match="cannot be removed from an active voting"):
                UpdateGoalUseCase(db, clock).execute(goal_id, gym_id, voting_ends_at=None)

        assert as_utc(load_goal(goal_id).voting_ends_at) == now + timedelta(days=2)

    def test_draft_deadline_can_be_cleared(self, session_factory, clock, gym_id, create_goal, load_goal):
        goal_id = create_goal()
        with session_factory() as db:
            UpdateGoalUseCase(db, clock).execute(goal_id, gym_id, voting_ends_at=None)

        assert load_goal(goal_id).voting_ends_at is None

    def test_past_deadline_rejected(self, session_factory, clock, now, gym_id, make_goal):
        goal_id, _ = make_goal()
        with session_factory() as db:
            with pytest.raises(GoalValidationError, match="must be in the future"):
                UpdateGoalUseCase(db, clock).execute(goal_id, gym_id, voting_ends_at=now - timedelta(days=1))


# ============================================================================
# Cancel / delete
# ============================================================================


class TestCancelGoal:
    @pytest.mark.parametrize("status", [GOAL_STATUS_DRAFT, GOAL_STATUS_VOTING, GOAL_STATUS_FUNDRAISING])
    def test_cancel(self, session_factory, clock, gym_id, make_goal, load_goal, status):
        """Отмена из любого незавершённого статуса"""
        goal_id, (first, _) = make_goal(status=status, winner=0)

        with session_factory() as db:
            CancelGoalUseCase(db).execute(goal_id, gym_id, actor_id="admin-1")

        assert load_goal(goal_id).status == GOAL_STATUS_CANCELLED
        with session_factory() as db:
            assert EventLogRepository(db).count_events(gym_id, [EVENT_GOAL_CANCELLED]) == 1

        vote = CastVoteUseCase(session_factory, clock).execute(goal_id, "m-1", first)
        assert vote.success is False

    def test_cancel_completed_rejected(self, session_factory, gym_id, make_goal):
        goal_id, _ = make_goal(status=GOAL_STATUS_COMPLETED, winner=0)
        with session_factory() as db:
            with pytest.raises(GoalValidationError, match="Completed goals cannot be cancelled"):
                CancelGoalUseCase(db).execute(goal_id, gym_id)

    def test_cancel_twice_rejected(self, session_factory, gym_id, make_goal):
        goal_id, _ = make_goal(status=GOAL_STATUS_CANCELLED)
        with session_factory() as db:
            with pytest.raises(GoalValidationError, match="already cancelled"):
                CancelGoalUseCase(db).execute(goal_id, gym_id)

    def test_cancel_after_concurrent_completion_rejected(self, session_factory, plain_session_factory, clock,
                                                         gym_id, make_goal, load_goal):
        """Взнос завершил цель между чтением и записью отмены - цель остаётся completed"""
        goal_id, _ = make_goal(
            status=GOAL_STATUS_FUNDRAISING, options=[("Mats", 10000)],
            voting_ends_at=None, winner=0, current_amount=9500,
        )
        contributions = []

        def complete_in_other_session():
            contributions.append(AddContributionUseCase(session_factory, clock).execute(goal_id, 600, "manual"))

        with _run_after_goal_read(complete_in_other_session):
            with plain_session_factory() as db:
                with pytest.raises(GoalValidationError, match="Completed goals cannot be cancelled"):
                    CancelGoalUseCase(db).execute(goal_id, gym_id)

        assert contributions[0].completed is True
        goal = load_goal(goal_id)
        assert goal.status == GOAL_STATUS_COMPLETED
        assert goal.current_amount == 10100
        with session_factory() as db:
            assert EventLogRepository(db).count_events(gym_id, [EVENT_GOAL_CANCELLED]) == 0


class TestDeleteGoal:
    def test_delete_draft(self, session_factory, gym_id, create_goal):
        goal_id = create_goal()

        with session_factory() as db:
            DeleteGoalUseCase(db).execute(goal_id, gym_id)

        with session_factory() as db:
            assert db.get(GoalModel, goal_id) is None
        assert _options(session_factory, goal_id) == []

    def test_delete_published_rejected(self, session_factory, gym_id, make_goal):
        goal_id, _ = make_goal()
        with session_factory() as db:
            with pytest.raises(GoalValidationError, match="Only drafts can be deleted"):
                DeleteGoalUseCase(db).execute(goal_id, gym_id)

    def test_delete_missing(self, session_factory, gym_id):
        with session_factory() as db:
            with pytest.raises(GoalValidationError, match="not found"):
                DeleteGoalUseCase(db).execute("missing", gym_id)
