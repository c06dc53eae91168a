"""
Database engine and session factory for the relay's SQLite ledger.

Tables: transactions, processed_messages, chat_settings, system_prompts
and conversation_history, all on the declarative Base of domain/transaction.py.
"""

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from chatrelay.config.settings import get_settings
from chatrelay.domain.transaction import Base
from chatrelay.domain.processed_message import ProcessedMessage  # noqa: F401 - needed for table creation
from chatrelay.domain.conversation_history import ConversationMessage  # noqa: F401 - needed for table creation
from chatrelay.domain.chat_config import ChatSettings, SystemPrompt  # noqa: F401 - needed for table creation

settings = get_settings()


def build_engine(url: str, echo: bool = False) -> AsyncEngine:
    """
    Create an async SQLite engine.

    A single shared connection (StaticPool) keeps every session on the same
    database, which in-memory URLs require.
    """
    return create_async_engine(
        url,
        echo=echo,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker:
    """Session factory whose objects stay readable after commit."""
    return async_sessionmaker(bind, class_=AsyncSession, expire_on_commit=False)


engine = build_engine(settings.database_url, echo=settings.debug)
async_session_factory = build_session_factory(engine)


async def init_database(bind: AsyncEngine = None) -> None:
    """Create all tables that do not exist yet."""
    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def dispose_database() -> None:
    """Close pooled connections on shutdown."""
    await engine.dispose()
