from escrow_engine.database.base import Base, TimestampMixin, UTCDateTime, UUIDPrimaryKeyMixin
from escrow_engine.database.engine import async_session, engine, sync_engine
from escrow_engine.database.session import get_db

__all__ = [
    "Base",
    "TimestampMixin",
    "UTCDateTime",
    "UUIDPrimaryKeyMixin",
    "async_session",
    "engine",
    "sync_engine",
    "get_db",
]
