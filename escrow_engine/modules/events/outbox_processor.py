"""OutboxProcessor — synchronous batch processor for Celery workers."""

import logging
from datetime import UTC, datetime, timedelta

from sqlalchemy import delete, select
from sqlalchemy.orm import Session, sessionmaker

from escrow_engine.models.enums import EventStatus
from escrow_engine.models.event_outbox import EventOutbox
from escrow_engine.models.processed_event import ProcessedEvent
from escrow_engine.modules.events.handlers import EventHandlerRegistry

logger = logging.getLogger(__name__)

_PROCESSED_EVENT_TTL = timedelta(days=7)
_COMPLETED_EVENT_RETENTION = timedelta(days=30)


class OutboxProcessor:
    """Processes pending outbox events using sync sessions (for Celery workers).

    Uses SELECT ... FOR UPDATE SKIP LOCKED for safe multi-worker concurrency.
    Tracks idempotency via the processed_events table. Delivery is
    at-least-once: a handler may see the same event again after a crash.
    """

    def __init__(self, session_factory: sessionmaker[Session] | None = None) -> None:
        if session_factory is None:
            from escrow_engine.database.engine import sync_engine

            session_factory = sessionmaker(sync_engine)
        self.session_factory = session_factory

    def process_batch(self, batch_size: int = 50) -> dict:
        """Process a batch of pending events.

        Returns dict with 'processed' and 'failed' counts.
        """
        processed_count = 0
        failed_count = 0

        with self.session_factory() as session:
            candidate_ids = session.scalars(
                select(EventOutbox.id)
                .where(EventOutbox.status == EventStatus.PENDING)
                .order_by(EventOutbox.created_at.asc())
                .limit(batch_size)
            ).all()

            for event_id in candidate_ids:
                # Claim the row, skipping it if another worker holds the lock
                event = session.scalars(
                    select(EventOutbox)
                    .where(
                        EventOutbox.id == event_id,
                        EventOutbox.status == EventStatus.PENDING,
                    )
                    .with_for_update(skip_locked=True)
                ).first()
                if event is None:
                    continue
                event_type = event.event_type

                try:
                    already_processed = session.scalar(
                        select(ProcessedEvent.id).where(ProcessedEvent.event_id == event_id)
                    )
                    if already_processed is not None:
                        event.status = EventStatus.COMPLETED
                        event.processed_at = datetime.now(UTC)
                        session.commit()
                        processed_count += 1
                        continue

                    # Not committed yet, so a crash leaves the row PENDING
                    event.status = EventStatus.PROCESSING
                    session.flush()

                    results = EventHandlerRegistry.dispatch(event_type, event.payload)

                    handler_errors = [r for r in results if r["status"] == "error"]
                    if handler_errors:
                        error_messages = "; ".join(
                            f"{r['handler']}: {r['error']}" for r in handler_errors
                        )
                        raise RuntimeError(f"Handler errors: {error_messages}")

                    now = datetime.now(UTC)
                    session.add(
                        ProcessedEvent(
                            event_id=event_id,
                            event_type=event_type,
                            handler_name=",".join(
                                r["handler"] for r in results
                            ) if results else "no_handlers",
                            processed_at=now,
                            expires_at=now + _PROCESSED_EVENT_TTL,
                        )
                    )
                    event.status = EventStatus.COMPLETED
                    event.processed_at = now
                    session.commit()
                    processed_count += 1

                except Exception as exc:
                    session.rollback()
                    logger.exception(
                        "Failed to process event %s (type=%s)", event_id, event_type
                    )

                    event = session.get(EventOutbox, event_id)
                    event.retry_count += 1
                    event.last_error = str(exc)
                    event.status = (
                        EventStatus.FAILED
                        if event.retry_count >= event.max_retries
                        else EventStatus.PENDING
                    )
                    session.commit()
                    failed_count += 1

        return {"processed": processed_count, "failed": failed_count}

    def cleanup_expired(self) -> int:
        """Delete expired processed_events and old completed outbox events.

        Returns total number of rows deleted.
        """
        total_deleted = 0
        now = datetime.now(UTC)

        with self.session_factory() as session:
            result = session.execute(
                delete(ProcessedEvent).where(ProcessedEvent.expires_at < now)
            )
            total_deleted += result.rowcount

            result = session.execute(
                delete(EventOutbox).where(
                    EventOutbox.status == EventStatus.COMPLETED,
                    EventOutbox.processed_at < now - _COMPLETED_EVENT_RETENTION,
                )
            )
            total_deleted += result.rowcount

            session.commit()

        logger.info("Cleaned up %d expired event records", total_deleted)
        return total_deleted
