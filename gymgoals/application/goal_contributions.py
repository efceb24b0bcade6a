"""
Goal contributions - append-only funding ledger and goal completion

A contribution and the resulting change of the goal (current_amount, and the
switch to "completed" when the winning option's target is reached) are
written in one serializable transaction, so completion happens exactly once
and concurrent contributions are never lost.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session, sessionmaker

from gymgoals.application.goal_transactions import GoalTransactionUseCase
from gymgoals.domain.goal import (
    GoalRuleViolation, FundraisingGoal, as_utc, goal_state,
    GOAL_STATUS_FUNDRAISING, GOAL_STATUS_COMPLETED, CONTRIBUTION_SOURCES,
    GOAL_NOT_FOUND, NOT_IN_FUNDRAISING_STATUS, INVALID_AMOUNT, INVALID_SOURCE,
    EVENT_GOAL_COMPLETED,
)
from gymgoals.infrastructure.db.models import GoalModel, GoalOptionModel, GoalContributionModel
from gymgoals.infrastructure.db.session import get_session_factory
from gymgoals.infrastructure.eventlog.repository import EventLogRepository

logger = logging.getLogger(__name__)


@dataclass
class AddContributionResult:
    success: bool
    completed: Optional[bool] = None
    current_amount: Optional[int] = None
    error: Optional[str] = None


class AddContributionUseCase(GoalTransactionUseCase):
    """
    Use case: Добавить взнос в цель (подписка или ручной ввод)

    Amounts are integer cents. Conversion from euros happens in the caller
    (gymgoals.utils.money.euros_to_cents), never here.
    """

    operation = "add contribution"

    def execute(
        self,
        goal_id: str,
        amount: int,
        source: str,
        member_id: Optional[str] = None,
        member_name: Optional[str] = None,
        note: Optional[str] = None,
    ) -> AddContributionResult:
        """
        Args:
            goal_id: ID цели
            amount: Сумма в центах (> 0)
            source: "subscription" или "manual"
            member_id: Участник (для взносов из подписки)
            member_name: Имя участника на момент взноса (для отображения)
            note: Комментарий

        Returns:
            AddContributionResult; completed=True only for the call that
            reached the target
        """
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            return AddContributionResult(success=False, error=INVALID_AMOUNT)
        if source not in CONTRIBUTION_SOURCES:
            return AddContributionResult(success=False, error=INVALID_SOURCE)

        try:
            with self._transaction() as tx:
                result = self._add(
                    tx, goal_id, amount, source, member_id, member_name, note, as_utc(self.clock())
                )
        except Exception as exc:
            return AddContributionResult(success=False, error=self._error_code(exc, goal_id))

        if result.completed:
            logger.info("Goal %s completed: %d cents collected", goal_id, result.current_amount)
        return result

    def _add(
        self,
        tx: Session,
        goal_id: str,
        amount: int,
        source: str,
        member_id: Optional[str],
        member_name: Optional[str],
        note: Optional[str],
        now: datetime,
    ) -> AddContributionResult:
        goal = tx.get(GoalModel, goal_id)
        if goal is None:
            raise GoalRuleViolation(GOAL_NOT_FOUND)

        if goal.status != GOAL_STATUS_FUNDRAISING:
            raise GoalRuleViolation(NOT_IN_FUNDRAISING_STATUS)

        options = tx.query(GoalOptionModel).filter(GoalOptionModel.goal_id == goal_id).all()
        state = goal_state(goal, options)  # WinningOptionMissing -> WINNING_OPTION_NOT_FOUND
        if not isinstance(state, FundraisingGoal):
            raise GoalRuleViolation(NOT_IN_FUNDRAISING_STATUS)

        tx.add(GoalContributionModel(
            goal_id=goal_id,
            amount=amount,
            source=source,
            member_id=member_id,
            member_name=member_name,
            note=note,
            created_at=now,
        ))

        new_current_amount = state.current_amount + amount
        is_now_completed = state.reaches_target(amount)

        goal.current_amount = new_current_amount
        if is_now_completed:
            goal.status = GOAL_STATUS_COMPLETED
            goal.completed_at = now
            EventLogRepository(tx).append_event(
                gym_id=goal.gym_id,
                event_type=EVENT_GOAL_COMPLETED,
                payload={
                    "goal_id": goal.id,
                    "winning_option_id": state.winning_option.id,
                    "target_amount": state.target_amount,
                    "current_amount": new_current_amount,
                },
                occurred_at=now,
                idempotency_key=f"goal-completed-{goal.id}",
            )
        tx.flush()

        return AddContributionResult(
            success=True,
            completed=is_now_completed,
            current_amount=new_current_amount,
        )


class GoalContributionsQuery:
    """Read-only access to the contribution ledger"""

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        self.session_factory = session_factory or get_session_factory()

    def list_recent(self, goal_id: str, limit: int = 50) -> List[GoalContributionModel]:
        """Последние взносы цели (новые первыми)"""
        with self.session_factory() as db:
            return (
                db.query(GoalContributionModel)
                .filter(GoalContributionModel.goal_id == goal_id)
                .order_by(GoalContributionModel.created_at.desc(), GoalContributionModel.id.desc())
                .limit(limit)
                .all()
            )

    def total_contributed(self, goal_id: str) -> int:
        """Sum of all contributions (equals GoalModel.current_amount)"""
        with self.session_factory() as db:
            total = (
                db.query(func.coalesce(func.sum(GoalContributionModel.amount), 0))
                .filter(GoalContributionModel.goal_id == goal_id)
                .scalar()
            )
        return int(total)

    def count(self, goal_id: str) -> int:
        with self.session_factory() as db:
            return db.query(GoalContributionModel).filter(GoalContributionModel.goal_id == goal_id).count()
