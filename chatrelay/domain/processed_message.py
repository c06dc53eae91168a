"""
Processed message model for idempotency tracking.
Tracks platform message ids to prevent duplicate processing.
"""

import logging
from datetime import datetime, timedelta

from sqlalchemy import Column, String, DateTime, delete
from sqlalchemy.dialects.sqlite import insert
from sqlalchemy.ext.asyncio import async_sessionmaker

from chatrelay.domain.transaction import Base

logger = logging.getLogger(__name__)


class ProcessedMessage(Base):
    """SQLAlchemy model for tracking processed WhatsApp messages."""

    __tablename__ = "processed_messages"

    message_id = Column(String(128), primary_key=True)
    processed_at = Column(DateTime, default=datetime.utcnow, index=True)

    def __repr__(self) -> str:
        return f"<ProcessedMessage(id={self.message_id}, at={self.processed_at})>"


class MessageDeduplicator:
    """
    Time-bounded set of recently seen message ids.

    Claiming is a single INSERT ... ON CONFLICT DO NOTHING, so two concurrent
    deliveries of the same id can never both win.
    """

    def __init__(self, session_factory: async_sessionmaker, retention_minutes: int = 15):
        self.session_factory = session_factory
        self.retention = timedelta(minutes=retention_minutes)

    async def claim(self, message_id: str) -> bool:
        """
        Atomically mark a message id as seen.

        Args:
            message_id: Platform message id

        Returns:
            True if this call claimed the id, False if it was already seen
        """
        async with self.session_factory() as session:
            result = await session.execute(
                insert(ProcessedMessage)
                .values(message_id=message_id, processed_at=datetime.utcnow())
                .on_conflict_do_nothing(index_elements=["message_id"])
            )
            await session.commit()
            return result.rowcount > 0

    async def purge_expired(self) -> int:
        """
        Remove ids older than the retention window.
        Called periodically to prevent table from growing indefinitely.

        Returns:
            Number of ids removed
        """
        cutoff = datetime.utcnow() - self.retention
        async with self.session_factory() as session:
            result = await session.execute(
                delete(ProcessedMessage).where(ProcessedMessage.processed_at < cutoff)
            )
            await session.commit()

        if result.rowcount:
            logger.debug(f"Dedup cache: removed {result.rowcount} expired entries")
        return result.rowcount
