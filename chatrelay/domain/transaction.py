"""
Transaction domain model and schemas.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import Column, String, DateTime, Integer, Text, JSON, Enum as SQLEnum
from sqlalchemy.orm import declarative_base
from pydantic import BaseModel

Base = declarative_base()


class TransactionStatus(str, Enum):
    """Lifecycle states of a message-processing transaction."""
    CREATED = "created"
    PROCESSING = "processing"
    RESPONSE_READY = "response_ready"
    DELIVERED = "delivered"
    TEMP_FAILURE = "temp_failure"
    PERMANENT_FAILURE = "permanent_failure"


class TransactionKind(str, Enum):
    """Kind of inbound message a transaction answers."""
    TEXT = "text"
    IMAGE = "image"
    AUDIO = "audio"
    VIDEO = "video"


RECOVERABLE_STATUSES = (
    TransactionStatus.PROCESSING,
    TransactionStatus.RESPONSE_READY,
    TransactionStatus.TEMP_FAILURE,
)

TERMINAL_STATUSES = (
    TransactionStatus.DELIVERED,
    TransactionStatus.PERMANENT_FAILURE,
)


def generate_transaction_id() -> str:
    return f"tx_{uuid.uuid4().hex}"


class Transaction(Base):
    """SQLAlchemy model for in-flight message transactions."""

    __tablename__ = "transactions"

    id = Column(String(64), primary_key=True, default=generate_transaction_id)
    message_id = Column(String(128), nullable=False, index=True)
    chat_id = Column(String(128), nullable=False, index=True)
    sender_id = Column(String(128), nullable=True)
    kind = Column(SQLEnum(TransactionKind), nullable=False, default=TransactionKind.TEXT)
    status = Column(SQLEnum(TransactionStatus), nullable=False, default=TransactionStatus.CREATED, index=True)
    attempts = Column(Integer, nullable=False, default=0)
    history = Column(JSON, nullable=False, default=list)
    recovery_data = Column(JSON(none_as_null=True), nullable=True)
    response = Column(Text, nullable=True)
    last_error = Column(String(1000), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)
    last_updated = Column(DateTime, default=datetime.utcnow)

    @property
    def is_recoverable(self) -> bool:
        return (
            self.status in RECOVERABLE_STATUSES
            and self.response is not None
            and self.recovery_data is not None
        )

    def __repr__(self) -> str:
        return f"<Transaction(id={self.id}, kind={self.kind}, status={self.status}, attempts={self.attempts})>"


# Pydantic Schemas

class RecoveryData(BaseModel):
    """Minimum data needed to redeliver a response without the original event."""
    recipient_id: str
    chat_id: str
    sender_name: Optional[str] = None
    original_text: Optional[str] = None


class TransactionStats(BaseModel):
    """Counts of active transactions per status."""
    total: int = 0
    created: int = 0
    processing: int = 0
    response_ready: int = 0
    temp_failure: int = 0
    permanent_failure: int = 0
    delivered: int = 0

    @property
    def success_rate(self) -> str:
        if self.total == 0:
            return "0%"
        return f"{self.delivered / self.total * 100:.2f}%"
