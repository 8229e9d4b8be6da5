"""OutboxService — async service for publishing and managing outbox events."""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from escrow_engine.models.enums import EventStatus
from escrow_engine.models.event_outbox import EventOutbox


class OutboxService:
    """Manages the event outbox lifecycle (publish, fetch).

    Events are added to the caller's session, so they commit or roll back
    together with the state change that produced them.
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def publish_event(
        self,
        event_type: str,
        aggregate_type: str,
        aggregate_id: str,
        payload: dict,
        schema_version: int = 1,
    ) -> EventOutbox:
        """Create a new event in the outbox with PENDING status."""
        event = EventOutbox(
            event_type=event_type,
            aggregate_type=aggregate_type,
            aggregate_id=aggregate_id,
            payload=payload,
            status=EventStatus.PENDING,
            schema_version=schema_version,
        )
        self.session.add(event)
        await self.session.flush()
        return event

    async def get_events_for_aggregate(
        self, aggregate_type: str, aggregate_id: str
    ) -> list[EventOutbox]:
        """Return every event emitted for one aggregate, oldest first."""
        statement = (
            select(EventOutbox)
            .where(
                EventOutbox.aggregate_type == aggregate_type,
                EventOutbox.aggregate_id == aggregate_id,
            )
            .order_by(EventOutbox.created_at.asc())
        )
        result = await self.session.execute(statement)
        return list(result.scalars().all())

