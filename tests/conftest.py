"""
Pytest configuration and fixtures for ChatRelay tests.
"""

import os
import tempfile

# Settings are read at import time, so the environment must be ready first
os.environ.setdefault("TWILIO_ACCOUNT_SID", "ACtest123")
os.environ.setdefault("TWILIO_AUTH_TOKEN", "test_token")
os.environ.setdefault("TWILIO_WHATSAPP_NUMBER", "whatsapp:+14155238886")
os.environ.setdefault("OPENAI_API_KEY", "sk-test123")
os.environ.setdefault("VALIDATE_TWILIO_SIGNATURE", "false")
os.environ.setdefault("BOT_ID", "bot@c.us")
os.environ.setdefault("DATA_DIR", tempfile.mkdtemp(prefix="chatrelay-test-"))
os.environ.setdefault("TEMP_DIR", tempfile.mkdtemp(prefix="chatrelay-tmp-"))

from typing import AsyncGenerator, Dict, List, Optional
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chatrelay.domain.transaction import Base
from chatrelay.domain.processed_message import MessageDeduplicator
from chatrelay.infrastructure.database import build_engine, build_session_factory, init_database
from chatrelay.domain.chat_config import SqlChatConfigStore
from chatrelay.domain.errors import DeliveryFailure
from chatrelay.domain.message import ChatInfo, JobHandle, MediaPayload, QuotedMessage
from chatrelay.usecases.circuit_breaker import CircuitBreaker
from chatrelay.usecases.commands import CommandProcessor
from chatrelay.usecases.dispatcher import MessageDispatcher
from chatrelay.usecases.transaction_store import TransactionStore


# Use a separate in-memory SQLite database for testing
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

BOT_ID = "bot@c.us"
MB = 1024 * 1024


class FakeEvent:
    """In-memory inbound event."""

    def __init__(
        self,
        id: Optional[str] = "MSG-1",
        body: str = "Olá, como você está?",
        from_: Optional[str] = "5511999999999@c.us",
        author: Optional[str] = None,
        chat: Optional[ChatInfo] = None,
        media: Optional[MediaPayload] = None,
        type: str = "chat",
        mentions: Optional[List[str]] = None,
        quoted: Optional[QuotedMessage] = None,
    ):
        self.id = id
        self.body = body
        self.from_ = from_
        self.author = author
        self.has_media = media is not None
        self.type = type
        self.has_quoted_msg = quoted is not None
        self.timestamp = 1700000000
        self._chat = chat or ChatInfo(id=from_ or "unknown", name="Maria", is_group=False)
        self._media = media
        self._mentions = mentions or []
        self._quoted = quoted

    async def get_chat(self) -> ChatInfo:
        return self._chat

    async def get_mentions(self) -> List[str]:
        return self._mentions

    async def get_quoted_message(self) -> Optional[QuotedMessage]:
        return self._quoted

    async def download_media(self) -> Optional[MediaPayload]:
        return self._media


class FakeMessenger:
    """Messenger that records sends and can be told to fail."""

    def __init__(self, failures: int = 0, error: Optional[Exception] = None):
        self.sent: List[Dict] = []
        self.failures = failures
        self.error = error

    async def send(self, target, text, transaction_id=None, *, is_recovered_message=False):
        if self.failures > 0:
            self.failures -= 1
            raise self.error or DeliveryFailure(target, "network down")
        self.sent.append({
            "target": target,
            "text": text,
            "transaction_id": transaction_id,
            "is_recovered_message": is_recovered_message,
        })

    @property
    def texts(self) -> List[str]:
        return [m["text"] for m in self.sent]


class FakeQueue:
    """Media queue that records submissions without running them."""

    def __init__(self, name: str):
        self.name = name
        self.submitted: List[Dict] = []
        self.callback = None
        self.submit = AsyncMock(side_effect=self._submit)
        self.purge = AsyncMock(return_value={"removed": 2, "cancelled": 1})

    async def _submit(self, job_type, payload, options=None):
        self.submitted.append({"job_type": job_type, "payload": payload, "options": options})
        return JobHandle(id=f"{self.name}-{len(self.submitted)}", job_type=job_type,
                         transaction_id=payload["transaction_id"])

    def on_result(self, callback):
        self.callback = callback

    def status(self):
        return {"waiting": len(self.submitted), "active": 0, "completed": 0, "failed": 0}


def make_media(mimetype: str = "image/jpeg", size: int = 1024) -> MediaPayload:
    return MediaPayload(data=b"\x00" * size, mimetype=mimetype, filename="file")


@pytest_asyncio.fixture
async def test_engine():
    """Create a test database engine."""
    engine = build_engine(TEST_DATABASE_URL)
    await init_database(engine)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(test_engine) -> async_sessionmaker:
    """Session factory bound to the test engine."""
    return build_session_factory(test_engine)


@pytest_asyncio.fixture
async def test_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a test database session."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest_asyncio.fixture
async def store(session_factory) -> TransactionStore:
    return TransactionStore(session_factory, max_attempts=3)


@pytest_asyncio.fixture
async def deduplicator(session_factory) -> MessageDeduplicator:
    return MessageDeduplicator(session_factory, retention_minutes=15)


@pytest_asyncio.fixture
async def config_store(session_factory) -> SqlChatConfigStore:
    return SqlChatConfigStore(session_factory)


@pytest.fixture
def clock():
    """Controllable monotonic clock."""
    class Clock:
        now = 1000.0

        def __call__(self):
            return self.now

        def advance(self, seconds: float):
            self.now += seconds

    return Clock()


@pytest.fixture
def breaker(clock) -> CircuitBreaker:
    return CircuitBreaker(name="test-ai", failure_threshold=5, reset_window=60.0, clock=clock)


@pytest.fixture
def messenger() -> FakeMessenger:
    return FakeMessenger()


@pytest.fixture
def backend():
    """AI backend with canned answers."""
    mock = AsyncMock()
    mock.process_text.return_value = "Estou bem, obrigada!"
    mock.process_audio.return_value = "transcrição do áudio"
    mock.process_image.return_value = "Uma foto de um gato."
    mock.process_video.return_value = "Um vídeo de praia."
    return mock


@pytest.fixture
def image_queue() -> FakeQueue:
    return FakeQueue("image")


@pytest.fixture
def video_queue() -> FakeQueue:
    return FakeQueue("video")


@pytest_asyncio.fixture
async def dispatcher(
    deduplicator, store, breaker, backend, messenger, config_store, session_factory, image_queue, video_queue
) -> MessageDispatcher:
    queues = {"image": image_queue, "video": video_queue}
    return MessageDispatcher(
        deduplicator=deduplicator,
        transactions=store,
        breaker=breaker,
        backend=backend,
        messenger=messenger,
        config_store=config_store,
        commands=CommandProcessor(config_store, session_factory, queues, prefix="."),
        session_factory=session_factory,
        image_queue=image_queue,
        video_queue=video_queue,
        bot_id=BOT_ID,
        prefix=".",
        max_media_bytes=20 * MB,
        sync_image_max_bytes=0,
    )
