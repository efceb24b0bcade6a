"""
Base class for goal use cases that run in one serializable transaction

Results are returned, never raised: rule violations come back as their code,
lost serialization races as TRANSACTION_CONFLICT, everything else as
INTERNAL_ERROR (logged with traceback).
"""
import logging
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.orm import sessionmaker

from gymgoals.config import get_settings
from gymgoals.domain.goal import GoalRuleViolation, TRANSACTION_CONFLICT, INTERNAL_ERROR, utcnow
from gymgoals.infrastructure.db.session import get_session_factory
from gymgoals.infrastructure.db.transaction import (
    serializable_transaction, is_transaction_conflict, is_transaction_timeout,
)

logger = logging.getLogger(__name__)


class GoalTransactionUseCase:
    """
    Общая основа для castVote / selectWinner / addContribution

    Args:
        session_factory: process-wide session factory (default: get_session_factory())
        clock: source of "now" (default: aware UTC now)
        timeout_ms: transaction timeout (default: settings.GOAL_TRANSACTION_TIMEOUT_MS)
    """

    operation = "goal operation"

    def __init__(
        self,
        session_factory: Optional[sessionmaker] = None,
        clock: Optional[Callable[[], datetime]] = None,
        timeout_ms: Optional[int] = None,
    ):
        self.session_factory = session_factory or get_session_factory()
        self.clock = clock or utcnow
        if timeout_ms is None:
            timeout_ms = get_settings().GOAL_TRANSACTION_TIMEOUT_MS
        self.timeout_ms = timeout_ms

    def _transaction(self):
        return serializable_transaction(self.session_factory, self.timeout_ms)

    def _error_code(self, exc: Exception, goal_id: str) -> str:
        """Map an exception caught at the use case boundary to an error code"""
        if isinstance(exc, GoalRuleViolation):
            return exc.code

        if is_transaction_conflict(exc):
            logger.warning("%s: transaction conflict for goal_id=%s", self.operation, goal_id)
            return TRANSACTION_CONFLICT

        if is_transaction_timeout(exc):
            logger.error("%s: transaction timed out after %d ms for goal_id=%s",
                         self.operation, self.timeout_ms, goal_id)
        else:
            logger.exception("%s failed for goal_id=%s", self.operation, goal_id)
        return INTERNAL_ERROR
