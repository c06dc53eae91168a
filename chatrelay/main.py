"""
ChatRelay - Main Application Entry Point

WhatsApp AI relay: routes chat messages to OpenAI through durable
transactions, a circuit breaker and asynchronous media queues, using
FastAPI, Twilio, SQLite and APScheduler.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from chatrelay.ai.backend import OpenAIBackend
from chatrelay.api.whatsapp_webhook import router as whatsapp_router
from chatrelay.config.settings import get_settings
from chatrelay.domain.chat_config import SqlChatConfigStore
from chatrelay.domain.processed_message import MessageDeduplicator
from chatrelay.infrastructure.database import async_session_factory, dispose_database, init_database
from chatrelay.infrastructure.media_queue import SchedulerMediaQueue
from chatrelay.infrastructure.scheduler import (
    get_scheduler,
    schedule_maintenance_jobs,
    start_scheduler,
    stop_scheduler,
)
from chatrelay.infrastructure.twilio_whatsapp import TwilioMessenger
from chatrelay.usecases.circuit_breaker import CircuitBreaker
from chatrelay.usecases.commands import CommandProcessor
from chatrelay.usecases.dispatcher import MessageDispatcher
from chatrelay.usecases.media_jobs import MediaJobWorker
from chatrelay.usecases.recovery import RecoveryCoordinator
from chatrelay.usecases.transaction_store import TransactionStore

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if get_settings().debug else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S"
)

logger = logging.getLogger(__name__)
settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.
    Wires the orchestration engine on startup and stops it on shutdown.
    """
    # Startup
    logger.info(f"Starting {settings.bot_name} relay...")

    logger.info("Initializing database...")
    await init_database()
    logger.info("Database initialized")

    scheduler = get_scheduler()
    breaker = CircuitBreaker(
        name="ai-backend",
        failure_threshold=settings.breaker_failure_threshold,
        reset_window=settings.breaker_reset_seconds,
    )
    backend = OpenAIBackend()
    messenger = TwilioMessenger()
    transactions = TransactionStore(async_session_factory, max_attempts=settings.transaction_max_attempts)
    deduplicator = MessageDeduplicator(async_session_factory, settings.dedup_retention_minutes)
    config_store = SqlChatConfigStore(async_session_factory)

    worker = MediaJobWorker(backend, breaker)
    image_queue = SchedulerMediaQueue(
        "image", scheduler, worker, settings.max_media_bytes, settings.image_job_timeout_seconds
    )
    video_queue = SchedulerMediaQueue(
        "video", scheduler, worker, settings.max_media_bytes, settings.video_job_timeout_seconds
    )
    queues = {"image": image_queue, "video": video_queue}

    dispatcher = MessageDispatcher(
        deduplicator=deduplicator,
        transactions=transactions,
        breaker=breaker,
        backend=backend,
        messenger=messenger,
        config_store=config_store,
        commands=CommandProcessor(config_store, async_session_factory, queues),
        session_factory=async_session_factory,
        image_queue=image_queue,
        video_queue=video_queue,
    )
    for queue in queues.values():
        queue.on_result(dispatcher.handle_queue_result)

    recovery = RecoveryCoordinator(transactions, messenger)
    recovery.start()

    app.state.breaker = breaker
    app.state.transactions = transactions
    app.state.queues = queues
    app.state.dispatcher = dispatcher

    logger.info("Starting scheduler...")
    schedule_maintenance_jobs(deduplicator, transactions, recovery, async_session_factory)
    await start_scheduler()

    logger.info("Application startup complete!")
    logger.info(f"Twilio signature validation: {settings.validate_twilio_signature}")

    yield

    # Shutdown
    logger.info("Shutting down...")
    await stop_scheduler()
    await dispose_database()
    logger.info("Application shutdown complete")


# Create FastAPI application
app = FastAPI(
    title="ChatRelay",
    description="WhatsApp AI relay with durable transactions and media queues",
    version="1.0.0",
    lifespan=lifespan
)

# Add CORS middleware (restricted to Twilio for production)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["https://api.twilio.com"],
    allow_credentials=True,
    allow_methods=["POST", "GET"],
    allow_headers=["*"],
)

# Register routers
app.include_router(whatsapp_router, tags=["WhatsApp"])


@app.get("/")
async def root():
    """Root endpoint with API information."""
    return {
        "name": "ChatRelay",
        "bot": settings.bot_name,
        "version": "1.0.0",
        "status": "running",
        "endpoints": {
            "webhook": "/webhook/whatsapp",
            "health": "/health",
            "queues": "/queues/status",
            "transactions": "/transactions/stats"
        }
    }


@app.get("/queues/status")
async def queues_status(request: Request):
    """Get media queue counts and scheduler state."""
    queues = getattr(request.app.state, "queues", {})
    scheduler = get_scheduler()

    return {
        "scheduler_running": scheduler.running,
        "queues": {name: queue.status() for name, queue in queues.items()},
    }


@app.get("/transactions/stats")
async def transactions_stats(request: Request):
    """Get transaction counts per status."""
    transactions = request.app.state.transactions
    stats = await transactions.stats()
    return {**stats.model_dump(), "success_rate": stats.success_rate}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "chatrelay.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug
    )
