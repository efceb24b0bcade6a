"""
Event Log Repository - журнал решений по целям (audit trail)

Lifecycle decisions (goal created / published / winner selected / completed /
cancelled) are written as immutable events inside the same transaction as the
state change itself.
"""
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List
from sqlalchemy.orm import Session

from gymgoals.infrastructure.db.models import EventLog


class EventLogRepository:
    """
    Repository для работы с event log

    Works on the caller's session: never commits, only flushes.
    """

    def __init__(self, db: Session):
        self.db = db

    def append_event(
        self,
        gym_id: str,
        event_type: str,
        payload: Dict[str, Any],
        occurred_at: Optional[datetime] = None,
        actor_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> int:
        """
        Добавить событие в event log

        Args:
            gym_id: ID зала (tenant)
            event_type: Тип события (например, "goal_winner_selected")
            payload: Данные события (JSON)
            occurred_at: Когда произошло событие (default: now)
            actor_id: Кто совершил действие (опционально)
            idempotency_key: Ключ для идемпотентности (опционально)

        Returns:
            event_id: ID созданного события

        Raises:
            IntegrityError: если idempotency_key уже существует

        Example:
            >>> repo = EventLogRepository(tx)
            >>> event_id = repo.append_event(
            ...     gym_id="gym-1",
            ...     event_type="goal_completed",
            ...     payload={"goal_id": "...", "current_amount": 10100},
            ...     idempotency_key="goal-completed-..."
            ... )
        """
        if occurred_at is None:
            occurred_at = datetime.now(timezone.utc)

        event = EventLog(
            gym_id=gym_id,
            actor_id=actor_id,
            event_type=event_type,
            payload_json=payload,
            occurred_at=occurred_at,
            idempotency_key=idempotency_key,
        )

        self.db.add(event)
        self.db.flush()  # Получить ID без commit

        return event.id

    def list_events(
        self,
        gym_id: str,
        event_types: Optional[List[str]] = None,
        limit: int = 200,
    ) -> List[EventLog]:
        """
        Получить события зала (по возрастанию ID)

        Args:
            gym_id: ID зала
            event_types: Фильтр по типам событий (опционально)
            limit: Максимум событий за раз (default: 200)
        """
        query = self.db.query(EventLog).filter(EventLog.gym_id == gym_id)

        if event_types:
            query = query.filter(EventLog.event_type.in_(event_types))

        return query.order_by(EventLog.id.asc()).limit(limit).all()

    def count_events(
        self,
        gym_id: str,
        event_types: Optional[List[str]] = None
    ) -> int:
        """
        Подсчитать количество событий

        Args:
            gym_id: ID зала
            event_types: Фильтр по типам (опционально)
        """
        query = self.db.query(EventLog).filter(EventLog.gym_id == gym_id)

        if event_types:
            query = query.filter(EventLog.event_type.in_(event_types))

        return query.count()
