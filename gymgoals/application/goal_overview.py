"""
Goal overview read models - what member and admin screens show

Every read first runs the lazy expiry sweep (CloseExpiredVotingUseCase), so a
voting goal whose deadline has passed is shown already in fundraising.
Amounts are returned in euros (Decimal); ledgers stay in cents.
"""
import logging
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session, sessionmaker

from gymgoals.application.goal_contributions import GoalContributionsQuery
from gymgoals.application.goal_voting import CloseExpiredVotingUseCase
from gymgoals.config import get_settings
from gymgoals.domain.goal import (
    WinningOptionMissing, as_utc, utcnow, goal_state, get_goal_status, can_vote,
    calculate_progress, calculate_vote_percentage, is_single_option_goal,
    days_until_voting_ends, hours_until_voting_ends,
    GOAL_STATUS_VOTING, GOAL_STATUS_FUNDRAISING, GOAL_STATUS_COMPLETED,
)
from gymgoals.infrastructure.db.models import (
    GoalModel, GoalOptionModel, GoalVoteModel, GoalContributionModel,
)
from gymgoals.infrastructure.db.session import get_session_factory
from gymgoals.utils.money import cents_to_euros

logger = logging.getLogger(__name__)


def _options_by_goal(db: Session, goal_ids: List[str]) -> Dict[str, List[GoalOptionModel]]:
    """Options of several goals, each list ranked (votes desc, display_order asc)"""
    grouped: Dict[str, List[GoalOptionModel]] = defaultdict(list)
    if not goal_ids:
        return grouped
    rows = (
        db.query(GoalOptionModel)
        .filter(GoalOptionModel.goal_id.in_(goal_ids))
        .order_by(GoalOptionModel.vote_count.desc(), GoalOptionModel.display_order.asc())
        .all()
    )
    for row in rows:
        grouped[row.goal_id].append(row)
    return grouped


def _counts_by_goal(db: Session, model, goal_ids: List[str]) -> Dict[str, int]:
    if not goal_ids:
        return {}
    rows = (
        db.query(model.goal_id, func.count(model.id))
        .filter(model.goal_id.in_(goal_ids))
        .group_by(model.goal_id)
        .all()
    )
    return {goal_id: count for goal_id, count in rows}


def _option_view(option: GoalOptionModel, total_votes: int, winning_option_id: Optional[str]) -> Dict[str, Any]:
    return {
        "id": option.id,
        "name": option.name,
        "description": option.description,
        "image_url": option.image_url,
        "target_amount": cents_to_euros(option.target_amount),
        "vote_count": option.vote_count,
        "percentage": calculate_vote_percentage(option.vote_count, total_votes),
        "is_winner": option.id == winning_option_id,
        "display_order": option.display_order,
    }


class GoalOverviewService:
    """Service for member / admin goal screens"""

    def __init__(
        self,
        session_factory: Optional[sessionmaker] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.session_factory = session_factory or get_session_factory()
        self.clock = clock or utcnow
        self.settings = get_settings()

    def _sweep(self, gym_id: str) -> None:
        CloseExpiredVotingUseCase(self.session_factory, self.clock).execute(gym_id)

    def member_overview(self, gym_id: str, member_id: str) -> Dict[str, Any]:
        """
        Active goals of the member's gym

        Returns:
            {"voting_goals": [...], "fundraising_goals": [...], "recently_completed": [...]}
        """
        self._sweep(gym_id)
        now = as_utc(self.clock())

        with self.session_factory() as db:
            goals = (
                db.query(GoalModel)
                .filter(
                    GoalModel.gym_id == gym_id,
                    GoalModel.is_visible == True,
                    GoalModel.status.in_([GOAL_STATUS_VOTING, GOAL_STATUS_FUNDRAISING]),
                )
                .order_by(GoalModel.created_at.desc())
                .all()
            )
            options = _options_by_goal(db, [g.id for g in goals])

            my_votes = dict(
                db.query(GoalVoteModel.goal_id, GoalVoteModel.option_id)
                .filter(
                    GoalVoteModel.member_id == member_id,
                    GoalVoteModel.goal_id.in_([g.id for g in goals]),
                )
                .all()
            ) if goals else {}

            completed_since = now - timedelta(days=self.settings.RECENTLY_COMPLETED_DAYS)
            completed = (
                db.query(GoalModel)
                .filter(
                    GoalModel.gym_id == gym_id,
                    GoalModel.is_visible == True,
                    GoalModel.status == GOAL_STATUS_COMPLETED,
                    GoalModel.completed_at >= completed_since,
                )
                .order_by(GoalModel.completed_at.desc())
                .limit(self.settings.RECENTLY_COMPLETED_LIMIT)
                .all()
            )
            completed_options = _options_by_goal(db, [g.id for g in completed])

        voting_goals = []
        fundraising_goals = []

        for goal in goals:
            goal_options = options[goal.id]
            total_votes = sum(o.vote_count for o in goal_options)

            if goal.status == GOAL_STATUS_VOTING and can_vote(goal, now):
                voting_goals.append({
                    "id": goal.id,
                    "name": goal.name,
                    "description": goal.description,
                    "voting_ends_at": as_utc(goal.voting_ends_at),
                    "days_until_deadline": days_until_voting_ends(goal, now),
                    "hours_until_deadline": hours_until_voting_ends(goal, now),
                    "total_votes": total_votes,
                    "my_vote_option_id": my_votes.get(goal.id),
                    "options": [_option_view(o, total_votes, None) for o in goal_options],
                })
            elif goal.status == GOAL_STATUS_FUNDRAISING:
                try:
                    state = goal_state(goal, goal_options)
                except WinningOptionMissing:
                    logger.warning("Fundraising goal %s has no resolvable winning option", goal.id)
                    continue
                winner = next(o for o in goal_options if o.id == state.winning_option.id)
                fundraising_goals.append({
                    "id": goal.id,
                    "name": goal.name,
                    "description": goal.description,
                    "winning_option": {
                        "id": winner.id,
                        "name": winner.name,
                        "description": winner.description,
                        "image_url": winner.image_url,
                        "target_amount": cents_to_euros(winner.target_amount),
                    },
                    "current_amount": cents_to_euros(state.current_amount),
                    "target_amount": cents_to_euros(state.target_amount),
                    "progress_percentage": calculate_progress(state.current_amount, state.target_amount),
                })

        recently_completed = []
        for goal in completed:
            winner = next((o for o in completed_options[goal.id] if o.id == goal.winning_option_id), None)
            recently_completed.append({
                "id": goal.id,
                "name": goal.name,
                "description": goal.description,
                "completed_at": as_utc(goal.completed_at),
                "winning_option": {
                    "id": winner.id,
                    "name": winner.name,
                    "image_url": winner.image_url,
                } if winner else None,
            })

        return {
            "voting_goals": voting_goals,
            "fundraising_goals": fundraising_goals,
            "recently_completed": recently_completed,
        }

    def admin_goals(self, gym_id: str) -> List[Dict[str, Any]]:
        """Все цели зала с опциями, голосами и прогрессом сбора"""
        self._sweep(gym_id)

        with self.session_factory() as db:
            goals = (
                db.query(GoalModel)
                .filter(GoalModel.gym_id == gym_id)
                .order_by(GoalModel.created_at.desc())
                .all()
            )
            goal_ids = [g.id for g in goals]
            options = _options_by_goal(db, goal_ids)
            vote_counts = _counts_by_goal(db, GoalVoteModel, goal_ids)
            contribution_counts = _counts_by_goal(db, GoalContributionModel, goal_ids)

        return [
            self._admin_view(goal, options[goal.id], vote_counts.get(goal.id, 0),
                             contribution_counts.get(goal.id, 0))
            for goal in goals
        ]

    def admin_goal_detail(self, goal_id: str, gym_id: str) -> Optional[Dict[str, Any]]:
        """Одна цель + последние взносы; None если цель не найдена"""
        with self.session_factory() as db:
            goal = db.query(GoalModel).filter(
                GoalModel.id == goal_id,
                GoalModel.gym_id == gym_id
            ).first()
            if goal is None:
                return None
            options = _options_by_goal(db, [goal.id])[goal.id]
            vote_count = _counts_by_goal(db, GoalVoteModel, [goal.id]).get(goal.id, 0)

        contributions_query = GoalContributionsQuery(self.session_factory)
        contributions = contributions_query.list_recent(goal_id, limit=self.settings.CONTRIBUTIONS_PAGE_SIZE)

        view = self._admin_view(goal, options, vote_count, contributions_query.count(goal_id))
        view["contributions"] = [
            {
                "id": c.id,
                "amount": cents_to_euros(c.amount),
                "source": c.source,
                "member_name": c.member_name,
                "note": c.note,
                "created_at": as_utc(c.created_at),
            }
            for c in contributions
        ]
        view["is_single_option"] = is_single_option_goal(len(options))
        return view

    def _admin_view(
        self,
        goal: GoalModel,
        options: List[GoalOptionModel],
        vote_count: int,
        contribution_count: int,
    ) -> Dict[str, Any]:
        total_votes = sum(o.vote_count for o in options)
        winner = next((o for o in options if o.id == goal.winning_option_id), None)
        if winner is not None:
            target_amount = winner.target_amount
        elif options:
            target_amount = options[0].target_amount
        else:
            target_amount = 0

        return {
            "id": goal.id,
            "name": goal.name,
            "description": goal.description,
            "status": get_goal_status(goal),
            "is_visible": goal.is_visible,
            "voting_ends_at": as_utc(goal.voting_ends_at) if goal.voting_ends_at else None,
            "voting_ended_at": as_utc(goal.voting_ended_at) if goal.voting_ended_at else None,
            "completed_at": as_utc(goal.completed_at) if goal.completed_at else None,
            "total_votes": total_votes,
            "vote_count": vote_count,
            "current_amount": cents_to_euros(goal.current_amount),
            "target_amount": cents_to_euros(target_amount),
            "progress_percentage": calculate_progress(goal.current_amount, target_amount),
            "contribution_count": contribution_count,
            "winning_option_id": goal.winning_option_id,
            "options": [_option_view(o, total_votes, goal.winning_option_id) for o in options],
        }
