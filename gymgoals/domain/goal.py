"""
Goal domain - statuses, error codes, pure status/percentage rules, tagged goal state

Nothing here touches the database. Functions take already-fetched rows (ORM
models or any object with the same attributes) and an optional `now`.

Status transitions: draft -> voting -> fundraising -> completed
Single-option goals go straight from draft to fundraising (decided at publish time).
"""
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable, Optional, Union

# Goal statuses
GOAL_STATUS_DRAFT = "draft"
GOAL_STATUS_VOTING = "voting"
GOAL_STATUS_FUNDRAISING = "fundraising"
GOAL_STATUS_COMPLETED = "completed"
GOAL_STATUS_CANCELLED = "cancelled"

GOAL_STATUSES = (
    GOAL_STATUS_DRAFT,
    GOAL_STATUS_VOTING,
    GOAL_STATUS_FUNDRAISING,
    GOAL_STATUS_COMPLETED,
    GOAL_STATUS_CANCELLED,
)

# Contribution sources
CONTRIBUTION_SOURCE_SUBSCRIPTION = "subscription"  # recurring payment attributed to a goal
CONTRIBUTION_SOURCE_MANUAL = "manual"              # entered by gym admin
CONTRIBUTION_SOURCES = (CONTRIBUTION_SOURCE_SUBSCRIPTION, CONTRIBUTION_SOURCE_MANUAL)

# Error codes returned by the voting / fundraising use cases
GOAL_NOT_FOUND = "GOAL_NOT_FOUND"
INVALID_OPTION = "INVALID_OPTION"
VOTING_NOT_ACTIVE = "VOTING_NOT_ACTIVE"
VOTING_ENDED = "VOTING_ENDED"
NOT_IN_VOTING_STATUS = "NOT_IN_VOTING_STATUS"
NOT_IN_FUNDRAISING_STATUS = "NOT_IN_FUNDRAISING_STATUS"
NO_OPTIONS = "NO_OPTIONS"
COULD_NOT_DETERMINE_WINNER = "COULD_NOT_DETERMINE_WINNER"
WINNING_OPTION_NOT_FOUND = "WINNING_OPTION_NOT_FOUND"
INVALID_AMOUNT = "INVALID_AMOUNT"
INVALID_SOURCE = "INVALID_SOURCE"
TRANSACTION_CONFLICT = "TRANSACTION_CONFLICT"  # only retryable code
INTERNAL_ERROR = "INTERNAL_ERROR"

# Event log types
EVENT_GOAL_CREATED = "goal_created"
EVENT_GOAL_PUBLISHED = "goal_published"
EVENT_GOAL_WINNER_SELECTED = "goal_winner_selected"
EVENT_GOAL_COMPLETED = "goal_completed"
EVENT_GOAL_CANCELLED = "goal_cancelled"


class GoalRuleViolation(Exception):
    """
    Нарушение правила жизненного цикла цели внутри транзакции.

    Raised inside a transaction to roll it back; the use case boundary turns
    it into a result with `error=code`.
    """

    def __init__(self, code: str):
        super().__init__(code)
        self.code = code


class WinningOptionMissing(GoalRuleViolation):
    """Goal is fundraising/completed but winning_option_id does not resolve"""

    def __init__(self, goal_id: str, winning_option_id: Optional[str]):
        super().__init__(WINNING_OPTION_NOT_FOUND)
        self.goal_id = goal_id
        self.winning_option_id = winning_option_id


def utcnow() -> datetime:
    """Default clock for the goal engine"""
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """
    Normalize a timestamp to aware UTC.

    SQLite hands TIMESTAMP(timezone=True) columns back as naive values;
    everything is stored in UTC, so naive means UTC.
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _now(now: Optional[datetime]) -> datetime:
    return as_utc(now) if now is not None else utcnow()


# ============================================================================
# Status rules
# ============================================================================


def get_goal_status(goal) -> str:
    """
    Effective status of a goal.

    A voting goal past its deadline is still reported as "voting": detection
    lives in should_close_voting(), the transition in SelectWinnerUseCase.
    """
    return goal.status


def can_vote(goal, now: Optional[datetime] = None) -> bool:
    """Voting is open: status voting, deadline set and not passed (no deadline - closed)"""
    if goal.status != GOAL_STATUS_VOTING:
        return False
    if goal.voting_ends_at is None:
        return False
    return _now(now) <= as_utc(goal.voting_ends_at)


def should_close_voting(goal, now: Optional[datetime] = None) -> bool:
    """Voting deadline has passed but the goal is still in voting status"""
    if goal.status != GOAL_STATUS_VOTING:
        return False
    if goal.voting_ends_at is None:
        return False
    return _now(now) > as_utc(goal.voting_ends_at)


def is_single_option_goal(option_count: int) -> bool:
    """Single-option goals skip the voting phase at publish time"""
    return option_count == 1


def days_until_voting_ends(goal, now: Optional[datetime] = None) -> int:
    """Whole days left until the voting deadline (rounded up, never negative)"""
    if goal.voting_ends_at is None:
        return 0
    seconds = (as_utc(goal.voting_ends_at) - _now(now)).total_seconds()
    return max(0, math.ceil(seconds / 86400))


def hours_until_voting_ends(goal, now: Optional[datetime] = None) -> int:
    """Hours left until the voting deadline, for countdowns"""
    if goal.voting_ends_at is None:
        return 0
    seconds = (as_utc(goal.voting_ends_at) - _now(now)).total_seconds()
    return max(0, math.ceil(seconds / 3600))


# ============================================================================
# Percentages and winner
# ============================================================================


def _percent(part: int, whole: int) -> int:
    # round(100 * part / whole) with .5 rounded up, in integer arithmetic
    return (200 * part + whole) // (2 * whole)


def calculate_progress(current_amount: int, target_amount: int) -> int:
    """
    Fundraising progress in percent, clamped to [0, 100].

    >>> calculate_progress(150, 100)
    100
    >>> calculate_progress(50, 0)
    0
    """
    if target_amount <= 0:
        return 0
    return min(100, max(0, _percent(current_amount, target_amount)))


def calculate_vote_percentage(vote_count: int, total_votes: int) -> int:
    """Share of votes in percent (0 when nobody voted)"""
    if total_votes <= 0:
        return 0
    return _percent(vote_count, total_votes)


def determine_winner(options: Iterable[Any]):
    """
    Winning option: highest vote_count, ties go to the lowest display_order
    (the option entered first). None for an empty list.
    """
    ranked = sorted(options, key=lambda o: (-o.vote_count, o.display_order))
    if not ranked:
        return None
    return ranked[0]


# ============================================================================
# Tagged goal state
# ============================================================================


@dataclass(frozen=True)
class GoalOption:
    """Snapshot of a ballot option"""
    id: str
    name: str
    target_amount: int
    vote_count: int
    display_order: int

    @classmethod
    def from_row(cls, row) -> "GoalOption":
        return cls(
            id=row.id,
            name=row.name,
            target_amount=row.target_amount,
            vote_count=row.vote_count,
            display_order=row.display_order,
        )


@dataclass(frozen=True)
class DraftGoal:
    id: str


@dataclass(frozen=True)
class VotingGoal:
    id: str
    deadline: Optional[datetime]


@dataclass(frozen=True)
class FundraisingGoal:
    id: str
    winning_option: GoalOption
    current_amount: int

    @property
    def target_amount(self) -> int:
        return self.winning_option.target_amount

    def reaches_target(self, amount: int) -> bool:
        """Would adding `amount` complete the goal"""
        return self.current_amount + amount >= self.target_amount


@dataclass(frozen=True)
class CompletedGoal:
    id: str
    winning_option: GoalOption
    current_amount: int
    completed_at: Optional[datetime]


@dataclass(frozen=True)
class CancelledGoal:
    id: str


GoalState = Union[DraftGoal, VotingGoal, FundraisingGoal, CompletedGoal, CancelledGoal]


def goal_state(goal, options: Iterable[Any]) -> GoalState:
    """
    Build the tagged state from a flat goal row and all of its option rows.

    Raises:
        WinningOptionMissing: fundraising/completed goal whose winning_option_id
            does not resolve among `options`
        ValueError: unknown status value
    """
    status = goal.status

    if status == GOAL_STATUS_DRAFT:
        return DraftGoal(id=goal.id)
    if status == GOAL_STATUS_VOTING:
        deadline = as_utc(goal.voting_ends_at) if goal.voting_ends_at is not None else None
        return VotingGoal(id=goal.id, deadline=deadline)
    if status == GOAL_STATUS_CANCELLED:
        return CancelledGoal(id=goal.id)

    if status in (GOAL_STATUS_FUNDRAISING, GOAL_STATUS_COMPLETED):
        winner = next((o for o in options if o.id == goal.winning_option_id), None)
        if goal.winning_option_id is None or winner is None:
            raise WinningOptionMissing(goal.id, goal.winning_option_id)
        option = GoalOption.from_row(winner)
        if status == GOAL_STATUS_FUNDRAISING:
            return FundraisingGoal(id=goal.id, winning_option=option, current_amount=goal.current_amount)
        completed_at = as_utc(goal.completed_at) if goal.completed_at is not None else None
        return CompletedGoal(
            id=goal.id,
            winning_option=option,
            current_amount=goal.current_amount,
            completed_at=completed_at,
        )

    raise ValueError(f"Unknown goal status: {status!r}")
