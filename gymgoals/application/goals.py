"""
Goal use cases - administration of gym fundraising goals

Create / publish / edit / cancel / delete. The voting and fundraising phases
themselves live in goal_voting.py and goal_contributions.py.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional, Sequence

from sqlalchemy.orm import Session

from gymgoals.domain.goal import (
    as_utc, utcnow, is_single_option_goal,
    GOAL_STATUS_DRAFT, GOAL_STATUS_VOTING, GOAL_STATUS_FUNDRAISING,
    GOAL_STATUS_COMPLETED, GOAL_STATUS_CANCELLED,
    EVENT_GOAL_CREATED, EVENT_GOAL_PUBLISHED, EVENT_GOAL_CANCELLED,
)
from gymgoals.infrastructure.db.models import (
    GoalModel, GoalOptionModel, GoalVoteModel, GoalContributionModel,
)
from gymgoals.infrastructure.eventlog.repository import EventLogRepository


class GoalValidationError(ValueError):
    """Ошибка валидации цели"""
    pass


@dataclass
class GoalOptionInput:
    """Option of a new goal; target_amount in cents"""
    name: str
    target_amount: int
    description: Optional[str] = None
    image_url: Optional[str] = None


def _get_goal(db: Session, goal_id: str, gym_id: str) -> GoalModel:
    goal = db.query(GoalModel).filter(
        GoalModel.id == goal_id,
        GoalModel.gym_id == gym_id
    ).first()
    if not goal:
        raise GoalValidationError(f"Goal {goal_id} not found")
    return goal


def _clean(text: Optional[str]) -> Optional[str]:
    if text is None:
        return None
    return text.strip() or None


class CreateGoalUseCase:
    """Use case: Создать новую цель (черновик) с опциями"""

    def __init__(self, db: Session, clock: Optional[Callable[[], datetime]] = None):
        self.db = db
        self.event_repo = EventLogRepository(db)
        self.clock = clock or utcnow

    def execute(
        self,
        gym_id: str,
        name: str,
        options: Sequence[GoalOptionInput],
        voting_ends_at: Optional[datetime] = None,
        description: Optional[str] = None,
        is_visible: bool = True,
        actor_id: Optional[str] = None,
    ) -> str:
        """
        Создать цель

        Args:
            gym_id: ID зала
            name: Название цели
            options: Опции (минимум одна, суммы в центах)
            voting_ends_at: Дедлайн голосования (обязателен при >1 опции)
            description: Описание
            is_visible: Видна ли цель участникам
            actor_id: Кто создаёт

        Returns:
            goal_id: ID созданной цели
        """
        name = (name or "").strip()
        if not name:
            raise GoalValidationError("Goal name is required")

        if not options:
            raise GoalValidationError("At least one option is required")

        for index, option in enumerate(options, start=1):
            if not (option.name or "").strip():
                raise GoalValidationError(f"Option {index}: name is required")
            if isinstance(option.target_amount, bool) or not isinstance(option.target_amount, int) \
                    or option.target_amount <= 0:
                raise GoalValidationError(f"Option {index}: target amount must be greater than 0")

        single = is_single_option_goal(len(options))
        if not single and voting_ends_at is None:
            raise GoalValidationError("Voting deadline is required when a goal has several options")

        if not single and as_utc(voting_ends_at) <= as_utc(self.clock()):
            raise GoalValidationError("Voting deadline must be in the future")

        goal = GoalModel(
            gym_id=gym_id,
            name=name,
            description=_clean(description),
            status=GOAL_STATUS_DRAFT,
            is_visible=is_visible,
            voting_ends_at=None if single else as_utc(voting_ends_at),
            current_amount=0,
        )
        self.db.add(goal)
        self.db.flush()

        created_options = []
        for display_order, option in enumerate(options):
            row = GoalOptionModel(
                goal_id=goal.id,
                name=option.name.strip(),
                description=_clean(option.description),
                image_url=option.image_url or None,
                target_amount=option.target_amount,
                vote_count=0,
                display_order=display_order,
            )
            self.db.add(row)
            created_options.append(row)
        self.db.flush()

        # Одна опция - победитель известен сразу, голосования не будет
        if single:
            goal.winning_option_id = created_options[0].id

        self.event_repo.append_event(
            gym_id=gym_id,
            event_type=EVENT_GOAL_CREATED,
            payload={
                "goal_id": goal.id,
                "name": name,
                "option_ids": [o.id for o in created_options],
                "voting_ends_at": goal.voting_ends_at.isoformat() if goal.voting_ends_at else None,
            },
            actor_id=actor_id,
            idempotency_key=f"goal-create-{goal.id}",
        )

        self.db.commit()
        return goal.id


class PublishGoalUseCase:
    """
    Use case: Опубликовать черновик

    Several options -> voting (deadline required);
    one option -> straight to fundraising with that option as the winner.
    """

    def __init__(self, db: Session, clock: Optional[Callable[[], datetime]] = None):
        self.db = db
        self.event_repo = EventLogRepository(db)
        self.clock = clock or utcnow

    def execute(self, goal_id: str, gym_id: str, actor_id: Optional[str] = None) -> str:
        """
        Returns:
            Новый статус цели ("voting" или "fundraising")
        """
        goal = _get_goal(self.db, goal_id, gym_id)

        if goal.status != GOAL_STATUS_DRAFT:
            raise GoalValidationError("Only drafts can be published")

        options = self.db.query(GoalOptionModel).filter(
            GoalOptionModel.goal_id == goal_id
        ).order_by(GoalOptionModel.display_order.asc()).all()

        if not options:
            raise GoalValidationError("Goal has no options")

        values = {}
        if is_single_option_goal(len(options)):
            values[GoalModel.status] = GOAL_STATUS_FUNDRAISING
            values[GoalModel.winning_option_id] = options[0].id
        else:
            if goal.voting_ends_at is None:
                raise GoalValidationError("Voting deadline is required to publish")
            if as_utc(goal.voting_ends_at) <= as_utc(self.clock()):
                raise GoalValidationError("Voting deadline must be in the future")
            values[GoalModel.status] = GOAL_STATUS_VOTING

        # Write only if the goal is still a draft (cancel/delete may have won the race)
        updated = self.db.query(GoalModel).filter(
            GoalModel.id == goal_id,
            GoalModel.status == GOAL_STATUS_DRAFT
        ).update(values, synchronize_session=False)
        if updated == 0:
            raise GoalValidationError("Only drafts can be published")

        new_status = values[GoalModel.status]
        self.event_repo.append_event(
            gym_id=gym_id,
            event_type=EVENT_GOAL_PUBLISHED,
            payload={"goal_id": goal.id, "status": new_status},
            actor_id=actor_id,
            idempotency_key=f"goal-publish-{goal.id}",
        )

        self.db.commit()
        return new_status


class UpdateGoalUseCase:
    """Use case: Обновить цель (название, описание, видимость, дедлайн)"""

    def __init__(self, db: Session, clock: Optional[Callable[[], datetime]] = None):
        self.db = db
        self.clock = clock or utcnow

    def execute(
        self,
        goal_id: str,
        gym_id: str,
        name: str | None = None,
        description: str | None = ...,  # sentinel: ... means "not provided"
        is_visible: bool | None = None,
        voting_ends_at: datetime | None = ...,
    ) -> None:
        goal = _get_goal(self.db, goal_id, gym_id)

        changed = False

        if name is not None:
            name = name.strip()
            if not name:
                raise GoalValidationError("Goal name cannot be empty")
            goal.name = name
            changed = True

        if description is not ...:
            goal.description = _clean(description)
            changed = True

        if is_visible is not None:
            goal.is_visible = bool(is_visible)
            changed = True

        if voting_ends_at is not ...:
            if goal.status not in (GOAL_STATUS_DRAFT, GOAL_STATUS_VOTING):
                raise GoalValidationError("Voting deadline can only be changed for drafts and active votings")
            if voting_ends_at is None and goal.status == GOAL_STATUS_VOTING:
                raise GoalValidationError("Voting deadline cannot be removed from an active voting")
            if voting_ends_at is not None:
                if as_utc(voting_ends_at) <= as_utc(self.clock()):
                    raise GoalValidationError("Voting deadline must be in the future")
                goal.voting_ends_at = as_utc(voting_ends_at)
            else:
                goal.voting_ends_at = None
            changed = True

        if not changed:
            return

        self.db.commit()


class CancelGoalUseCase:
    """Use case: Отменить цель (из любого незавершённого статуса)"""

    def __init__(self, db: Session):
        self.db = db
        self.event_repo = EventLogRepository(db)

    def execute(self, goal_id: str, gym_id: str, actor_id: Optional[str] = None) -> None:
        goal = _get_goal(self.db, goal_id, gym_id)

        if goal.status == GOAL_STATUS_COMPLETED:
            raise GoalValidationError("Completed goals cannot be cancelled")
        if goal.status == GOAL_STATUS_CANCELLED:
            raise GoalValidationError("Goal is already cancelled")

        previous_status = goal.status

        # Guarded write: a contribution may have completed the goal after the read above
        updated = self.db.query(GoalModel).filter(
            GoalModel.id == goal_id,
            GoalModel.status.notin_([GOAL_STATUS_COMPLETED, GOAL_STATUS_CANCELLED])
        ).update({GoalModel.status: GOAL_STATUS_CANCELLED}, synchronize_session=False)
        if updated == 0:
            current_status = self.db.query(GoalModel.status).filter(GoalModel.id == goal_id).scalar()
            if current_status == GOAL_STATUS_COMPLETED:
                raise GoalValidationError("Completed goals cannot be cancelled")
            raise GoalValidationError("Goal is already cancelled")

        self.event_repo.append_event(
            gym_id=gym_id,
            event_type=EVENT_GOAL_CANCELLED,
            payload={"goal_id": goal.id, "previous_status": previous_status},
            actor_id=actor_id,
            idempotency_key=f"goal-cancel-{goal.id}",
        )

        self.db.commit()


class DeleteGoalUseCase:
    """Use case: Удалить черновик без голосов и взносов"""

    def __init__(self, db: Session):
        self.db = db

    def execute(self, goal_id: str, gym_id: str) -> None:
        goal = _get_goal(self.db, goal_id, gym_id)

        if goal.status != GOAL_STATUS_DRAFT:
            raise GoalValidationError("Only drafts can be deleted")

        votes = self.db.query(GoalVoteModel).filter(GoalVoteModel.goal_id == goal_id).count()
        if votes > 0:
            raise GoalValidationError("Goal has votes and cannot be deleted")

        contributions = self.db.query(GoalContributionModel).filter(
            GoalContributionModel.goal_id == goal_id
        ).count()
        if contributions > 0:
            raise GoalValidationError("Goal has contributions and cannot be deleted")

        self.db.query(GoalOptionModel).filter(GoalOptionModel.goal_id == goal_id).delete()
        self.db.delete(goal)
        self.db.commit()
