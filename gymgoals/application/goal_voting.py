"""
Goal voting - atomic vote operations and winner selection

castVote / selectWinner run under SERIALIZABLE isolation, so that
- a member never ends up with two votes on one goal,
- concurrent votes never lose a vote_count update,
- a vote is never accepted once the goal has left "voting".
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session, sessionmaker

from gymgoals.application.goal_transactions import GoalTransactionUseCase
from gymgoals.domain.goal import (
    GoalRuleViolation, as_utc, determine_winner, calculate_vote_percentage,
    GOAL_STATUS_VOTING, GOAL_STATUS_FUNDRAISING,
    GOAL_NOT_FOUND, VOTING_NOT_ACTIVE, VOTING_ENDED, INVALID_OPTION,
    NOT_IN_VOTING_STATUS, NO_OPTIONS, COULD_NOT_DETERMINE_WINNER,
    EVENT_GOAL_WINNER_SELECTED,
)
from gymgoals.infrastructure.db.models import GoalModel, GoalOptionModel, GoalVoteModel
from gymgoals.infrastructure.db.session import get_session_factory
from gymgoals.infrastructure.eventlog.repository import EventLogRepository

logger = logging.getLogger(__name__)


@dataclass
class CastVoteResult:
    success: bool
    error: Optional[str] = None
    changed: Optional[bool] = None
    previous_option_id: Optional[str] = None
    new_option_id: Optional[str] = None


@dataclass
class WinningOption:
    id: str
    name: str
    vote_count: int
    target_amount: int


@dataclass
class SelectWinnerResult:
    success: bool
    error: Optional[str] = None
    winning_option: Optional[WinningOption] = None


@dataclass
class OptionVoteShare:
    id: str
    name: str
    vote_count: int
    percentage: int


@dataclass
class VoteBreakdown:
    total_votes: int
    options: List[OptionVoteShare] = field(default_factory=list)


def _adjust_vote_count(tx: Session, option_id: str, delta: int) -> None:
    """SQL-side increment/decrement of the denormalized vote counter"""
    tx.execute(
        update(GoalOptionModel)
        .where(GoalOptionModel.id == option_id)
        .values(vote_count=GoalOptionModel.vote_count + delta)
    )


def _ranked_options(db: Session, goal_id: str) -> List[GoalOptionModel]:
    return (
        db.query(GoalOptionModel)
        .filter(GoalOptionModel.goal_id == goal_id)
        .order_by(GoalOptionModel.vote_count.desc(), GoalOptionModel.display_order.asc())
        .all()
    )


class CastVoteUseCase(GoalTransactionUseCase):
    """Use case: Отдать или изменить голос участника за опцию цели"""

    operation = "cast vote"

    def execute(self, goal_id: str, member_id: str, option_id: str) -> CastVoteResult:
        """
        Cast or change a member's vote on a goal

        Args:
            goal_id: ID цели
            member_id: ID участника
            option_id: ID опции, за которую голосуют

        Returns:
            CastVoteResult; changed=False when the member already voted for option_id
        """
        try:
            with self._transaction() as tx:
                return self._cast(tx, goal_id, member_id, option_id, as_utc(self.clock()))
        except Exception as exc:
            return CastVoteResult(success=False, error=self._error_code(exc, goal_id))

    def _cast(self, tx: Session, goal_id: str, member_id: str, option_id: str, now: datetime) -> CastVoteResult:
        goal = tx.get(GoalModel, goal_id)
        if goal is None:
            raise GoalRuleViolation(GOAL_NOT_FOUND)

        if goal.status != GOAL_STATUS_VOTING:
            raise GoalRuleViolation(VOTING_NOT_ACTIVE)

        if goal.voting_ends_at is not None and now > as_utc(goal.voting_ends_at):
            raise GoalRuleViolation(VOTING_ENDED)

        option = tx.query(GoalOptionModel).filter(
            GoalOptionModel.id == option_id,
            GoalOptionModel.goal_id == goal_id
        ).first()
        if option is None:
            raise GoalRuleViolation(INVALID_OPTION)

        existing_vote = tx.query(GoalVoteModel).filter(
            GoalVoteModel.goal_id == goal_id,
            GoalVoteModel.member_id == member_id
        ).first()

        if existing_vote is None:
            tx.add(GoalVoteModel(
                goal_id=goal_id,
                member_id=member_id,
                option_id=option_id,
                created_at=now,
                updated_at=now,
            ))
            tx.flush()
            _adjust_vote_count(tx, option_id, +1)
            return CastVoteResult(
                success=True,
                changed=True,
                previous_option_id=None,
                new_option_id=option_id,
            )

        if existing_vote.option_id == option_id:
            return CastVoteResult(
                success=True,
                changed=False,
                previous_option_id=option_id,
                new_option_id=option_id,
            )

        # Смена голоса: строка голоса переносится, а не пересоздаётся
        previous_option_id = existing_vote.option_id
        _adjust_vote_count(tx, previous_option_id, -1)
        existing_vote.option_id = option_id
        existing_vote.updated_at = now
        tx.flush()
        _adjust_vote_count(tx, option_id, +1)

        return CastVoteResult(
            success=True,
            changed=True,
            previous_option_id=previous_option_id,
            new_option_id=option_id,
        )


class SelectWinnerUseCase(GoalTransactionUseCase):
    """
    Use case: Закрыть голосование и перевести цель в сбор средств

    Winner: highest vote_count, tie -> lower display_order.
    Runs at most once per goal: a second call finds the goal outside "voting".
    """

    operation = "select winner"

    def execute(self, goal_id: str) -> SelectWinnerResult:
        try:
            with self._transaction() as tx:
                result = self._select(tx, goal_id, as_utc(self.clock()))
        except Exception as exc:
            return SelectWinnerResult(success=False, error=self._error_code(exc, goal_id))

        logger.info(
            "Voting closed for goal_id=%s: winner option_id=%s with %d vote(s)",
            goal_id, result.winning_option.id, result.winning_option.vote_count,
        )
        return result

    def _select(self, tx: Session, goal_id: str, now: datetime) -> SelectWinnerResult:
        goal = tx.get(GoalModel, goal_id)
        if goal is None:
            raise GoalRuleViolation(GOAL_NOT_FOUND)

        if goal.status != GOAL_STATUS_VOTING:
            raise GoalRuleViolation(NOT_IN_VOTING_STATUS)

        options = _ranked_options(tx, goal_id)
        if not options:
            raise GoalRuleViolation(NO_OPTIONS)

        winner = determine_winner(options)
        if winner is None:
            raise GoalRuleViolation(COULD_NOT_DETERMINE_WINNER)

        goal.status = GOAL_STATUS_FUNDRAISING
        goal.winning_option_id = winner.id
        goal.voting_ended_at = now

        EventLogRepository(tx).append_event(
            gym_id=goal.gym_id,
            event_type=EVENT_GOAL_WINNER_SELECTED,
            payload={
                "goal_id": goal.id,
                "winning_option_id": winner.id,
                "vote_count": winner.vote_count,
                "total_votes": sum(o.vote_count for o in options),
                "target_amount": winner.target_amount,
            },
            occurred_at=now,
            idempotency_key=f"goal-winner-{goal.id}",
        )

        return SelectWinnerResult(
            success=True,
            winning_option=WinningOption(
                id=winner.id,
                name=winner.name,
                vote_count=winner.vote_count,
                target_amount=winner.target_amount,
            ),
        )


class CloseExpiredVotingUseCase(GoalTransactionUseCase):
    """
    Use case: Закрыть все просроченные голосования зала (lazy sweep)

    Called on read paths instead of a background scheduler. Each goal is
    closed in its own transaction; one failure does not block the others.
    """

    operation = "close expired voting"

    def execute(self, gym_id: str) -> int:
        """
        Returns:
            Количество целей, переведённых в fundraising
        """
        now = as_utc(self.clock())

        try:
            with self.session_factory() as db:
                goal_ids = [
                    row.id for row in db.query(GoalModel.id).filter(
                        GoalModel.gym_id == gym_id,
                        GoalModel.status == GOAL_STATUS_VOTING,
                        GoalModel.voting_ends_at.isnot(None),
                        GoalModel.voting_ends_at < now,
                    ).all()
                ]
        except Exception:
            logger.exception("Expired voting lookup failed for gym_id=%s", gym_id)
            return 0

        select_winner = SelectWinnerUseCase(self.session_factory, self.clock, self.timeout_ms)
        closed = 0
        for goal_id in goal_ids:
            result = select_winner.execute(goal_id)
            if result.success:
                closed += 1
            else:
                logger.warning("Could not close expired voting for goal_id=%s: %s", goal_id, result.error)

        if goal_ids:
            logger.info("Expired voting sweep for gym_id=%s: closed %d of %d goal(s)",
                        gym_id, closed, len(goal_ids))
        return closed


class GoalVotesQuery:
    """Read-only helpers over votes (no transaction isolation needed)"""

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        self.session_factory = session_factory or get_session_factory()

    def get_member_vote(self, goal_id: str, member_id: str) -> Optional[str]:
        """ID опции, за которую проголосовал участник, или None"""
        with self.session_factory() as db:
            row = db.query(GoalVoteModel.option_id).filter(
                GoalVoteModel.goal_id == goal_id,
                GoalVoteModel.member_id == member_id
            ).first()
        return row.option_id if row else None

    def get_vote_breakdown(self, goal_id: str) -> VoteBreakdown:
        """All options of a goal with counts and percentages, leader first"""
        with self.session_factory() as db:
            options = _ranked_options(db, goal_id)

        total_votes = sum(o.vote_count for o in options)
        return VoteBreakdown(
            total_votes=total_votes,
            options=[
                OptionVoteShare(
                    id=o.id,
                    name=o.name,
                    vote_count=o.vote_count,
                    percentage=calculate_vote_percentage(o.vote_count, total_votes),
                )
                for o in options
            ],
        )
