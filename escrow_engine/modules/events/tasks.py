"""Celery tasks for event outbox processing."""

from celery_app import celery
from escrow_engine.config import settings
from escrow_engine.modules.events.notifications import register_notification_handlers
from escrow_engine.modules.events.outbox_processor import OutboxProcessor

register_notification_handlers()


@celery.task(name="escrow_engine.modules.events.tasks.process_outbox")
def process_outbox():
    """Process a batch of pending outbox events."""
    processor = OutboxProcessor()
    return processor.process_batch(batch_size=settings.event_outbox_batch_size)


@celery.task(name="escrow_engine.modules.events.tasks.cleanup_processed_events")
def cleanup_processed_events():
    """Delete expired processed_events and old completed outbox entries."""
    processor = OutboxProcessor()
    return processor.cleanup_expired()
