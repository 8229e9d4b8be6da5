"""Celery application configuration for escrow background tasks."""

from celery import Celery
from celery.schedules import crontab

from escrow_engine.config import settings

celery = Celery("escrow_engine")

celery.conf.update(
    broker_url=settings.celery_broker_url,
    result_backend=settings.celery_result_backend,
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    # --- Queue routing per job type ---
    task_routes={
        "escrow_engine.modules.transaction.tasks.capture_payment": {"queue": "payments"},
        "escrow_engine.modules.transaction.tasks.auto_release_expired": {"queue": "escrow-clock"},
        "escrow_engine.modules.transaction.tasks.simulate_deliveries": {"queue": "escrow-clock"},
        "escrow_engine.modules.transaction.tasks.flag_stuck_pending": {"queue": "escrow-clock"},
        "escrow_engine.modules.events.tasks.process_outbox": {"queue": "event-outbox"},
        "escrow_engine.modules.events.tasks.cleanup_processed_events": {"queue": "event-outbox"},
    },
    # --- Reliability settings ---
    task_default_retry_delay=60,
    task_max_retries=3,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    result_expires=86400,  # 24 hours
    # --- Broker transport options (Redis reliability) ---
    broker_transport_options={
        "max_retries": 10,
        "interval_start": 0.2,
        "interval_step": 0.5,
        "interval_max": 5.0,
        "retry_on_timeout": True,
        "visibility_timeout": 3600,
    },
    # --- Beat schedule ---
    beat_schedule={
        "escrow-auto-release": {
            "task": "escrow_engine.modules.transaction.tasks.auto_release_expired",
            "schedule": settings.auto_release_poll_seconds,
        },
        "escrow-simulate-deliveries": {
            "task": "escrow_engine.modules.transaction.tasks.simulate_deliveries",
            "schedule": settings.demo_delivery_delay_seconds,
        },
        "escrow-flag-stuck-pending": {
            "task": "escrow_engine.modules.transaction.tasks.flag_stuck_pending",
            "schedule": settings.stuck_pending_poll_seconds,
        },
        "process-event-outbox": {
            "task": "escrow_engine.modules.events.tasks.process_outbox",
            "schedule": settings.event_outbox_poll_seconds,
        },
        "cleanup-processed-events-daily": {
            "task": "escrow_engine.modules.events.tasks.cleanup_processed_events",
            "schedule": crontab(hour=3, minute=30),
        },
    },
)

celery.autodiscover_tasks([
    "escrow_engine.modules.transaction",
    "escrow_engine.modules.events",
])
