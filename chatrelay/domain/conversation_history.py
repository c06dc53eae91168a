"""
Conversation history model for context memory.
Stores recent exchanges per chat to give the AI context for follow-up messages.
"""

from datetime import datetime, timedelta
from typing import List

from sqlalchemy import Column, Integer, String, DateTime, desc, delete
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from chatrelay.domain.transaction import Base


class ConversationMessage(Base):
    """SQLAlchemy model for storing conversation history."""

    __tablename__ = "conversation_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    chat_id = Column(String(128), nullable=False, index=True)
    sender_name = Column(String(255), nullable=True)
    user_message = Column(String(4000), nullable=False)
    bot_response = Column(String(8000), nullable=False)
    timestamp = Column(DateTime, default=datetime.utcnow)

    def __repr__(self) -> str:
        return f"<ConversationMessage(id={self.id}, chat={self.chat_id}, timestamp={self.timestamp})>"


async def save_conversation(
    session: AsyncSession,
    chat_id: str,
    user_message: str,
    bot_response: str,
    sender_name: str = None
) -> None:
    """
    Save a conversation exchange to history.

    Args:
        session: Database session
        chat_id: Chat the exchange belongs to
        user_message: User's message
        bot_response: Bot's response
        sender_name: Display name of the user
    """
    msg = ConversationMessage(
        chat_id=chat_id,
        sender_name=sender_name,
        user_message=user_message[:4000],  # Truncate if too long
        bot_response=bot_response[:8000],
        timestamp=datetime.utcnow()
    )
    session.add(msg)
    await session.commit()


async def get_conversation_history(
    session: AsyncSession,
    chat_id: str,
    limit: int = 10
) -> List[dict]:
    """
    Get recent conversation history for a chat.

    Args:
        session: Database session
        chat_id: Chat to read
        limit: Number of recent exchanges to retrieve

    Returns:
        List of message dicts with 'role' and 'content' keys, oldest first
    """
    result = await session.execute(
        select(ConversationMessage)
        .where(ConversationMessage.chat_id == chat_id)
        .order_by(desc(ConversationMessage.timestamp), desc(ConversationMessage.id))
        .limit(limit)
    )
    messages = result.scalars().all()

    # Reverse to get chronological order (oldest first)
    messages = list(reversed(messages))

    history = []
    for msg in messages:
        user_content = f"{msg.sender_name}: {msg.user_message}" if msg.sender_name else msg.user_message
        history.append({"role": "user", "content": user_content})
        history.append({"role": "assistant", "content": msg.bot_response})

    return history


async def clear_conversation_history(session: AsyncSession, chat_id: str) -> int:
    """Remove every stored exchange of a chat."""
    result = await session.execute(
        delete(ConversationMessage).where(ConversationMessage.chat_id == chat_id)
    )
    await session.commit()
    return result.rowcount


async def cleanup_old_conversations(
    session: AsyncSession,
    days: int = 7
) -> int:
    """
    Remove conversation history older than specified days.

    Args:
        session: Database session
        days: Number of days to retain

    Returns:
        Number of exchanges removed
    """
    cutoff = datetime.utcnow() - timedelta(days=days)
    result = await session.execute(
        delete(ConversationMessage).where(ConversationMessage.timestamp < cutoff)
    )
    await session.commit()
    return result.rowcount
