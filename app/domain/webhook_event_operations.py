"""Domain operations for processed webhook event ids."""

from datetime import datetime

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.billing import ProcessedWebhookEvent


class WebhookEventOperations:
    """Duplicate detection for at-least-once webhook delivery."""

    async def is_processed(self, db: AsyncSession, event_id: str) -> bool:
        statement = select(ProcessedWebhookEvent).where(
            ProcessedWebhookEvent.event_id == event_id
        )
        result = await db.execute(statement)
        return result.scalar_one_or_none() is not None

    async def mark_processed(
        self,
        db: AsyncSession,
        event_id: str,
        event_type: str,
        now: datetime,
    ) -> ProcessedWebhookEvent:
        record = ProcessedWebhookEvent(event_id=event_id, event_type=event_type, processed_at=now)
        db.add(record)
        await db.flush()
        return record

    async def prune(self, db: AsyncSession, older_than: datetime) -> int:
        """Delete ids processed before `older_than`. Returns rows removed."""
        statement = delete(ProcessedWebhookEvent).where(
            ProcessedWebhookEvent.processed_at < older_than  # type: ignore[arg-type]
        )
        result = await db.execute(statement)
        return result.rowcount or 0


webhook_event_ops = WebhookEventOperations()
