# src/infrastructure/repositories/outbox_repository.py

from datetime import datetime, timezone
import json
import logging

from sqlalchemy.orm import Session
from sqlalchemy import select

from src.domain.exceptions import NotFoundError
from src.infrastructure.db.models import OutboxEvent

logger = logging.getLogger(__name__)


class OutboxRepository:
    """Audit and notification sink, written in the caller's transaction."""

    def __init__(self, db: Session):
        self.db = db

    def add(
        self,
        aggregate_type: str,
        aggregate_id: str,
        event_type: str,
        payload: dict,
        dedupe_key: str,
    ) -> None:
        existing = self.db.execute(
            select(OutboxEvent).where(OutboxEvent.dedupe_key == dedupe_key)
        ).scalar_one_or_none()
        if existing:
            logger.debug("Outbox event already recorded. dedupe_key=%s", dedupe_key)
            return

        self.db.add(
            OutboxEvent(
                aggregate_type=aggregate_type,
                aggregate_id=aggregate_id,
                event_type=event_type,
                payload=json.dumps(payload, sort_keys=True, default=str),
                dedupe_key=dedupe_key,
                status="PENDING",
                attempts=0,
            )
        )

    def list_by_status(self, status: str, limit: int) -> list[OutboxEvent]:
        safe_limit = max(1, min(limit, 200))
        stmt = (
            select(OutboxEvent)
            .where(OutboxEvent.status == status)
            .order_by(OutboxEvent.created_at)
            .limit(safe_limit)
        )
        return list(self.db.execute(stmt).scalars().all())

    def mark_published(self, event_id: str) -> OutboxEvent:
        item = self.db.execute(
            select(OutboxEvent).where(OutboxEvent.id == event_id)
        ).scalar_one_or_none()
        if not item:
            raise NotFoundError("Outbox event not found")

        item.status = "PUBLISHED"
        item.published_at = datetime.now(timezone.utc)
        item.attempts += 1
        return item
