"""
Message dispatcher: the entry point of every inbound chat event.

Flow for one event:
    validate -> dedup -> drop notifications -> group filter -> classify
    -> feature toggle -> transaction -> size gate -> sync AI call or media queue

Nothing raised while handling an event escapes process_message; every
outcome is reported as a boolean plus a log line and, where it helps the
user, a reply in the chat.
"""

import hashlib
import logging
from typing import Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from chatrelay.ai.prompts import build_media_prompt, resolve_description_mode
from chatrelay.config.settings import get_settings
from chatrelay.domain.chat_config import ChatConfig
from chatrelay.domain.conversation_history import get_conversation_history, save_conversation
from chatrelay.domain.errors import (
    AIBackendError,
    CircuitOpenError,
    DuplicateMessage,
    FeatureDisabled,
    MediaTooLarge,
    QueueUnavailable,
    RelayError,
    SafetyBlocked,
    ValidationError,
)
from chatrelay.domain.message import (
    NOTIFICATION_TYPES,
    ChatInfo,
    GroupNotification,
    MediaPayload,
    MessageCategory,
    QueueResult,
)
from chatrelay.domain.ports import AIBackend, ChatConfigStore, InboundEvent, MediaQueue, Messenger
from chatrelay.domain.processed_message import MessageDeduplicator
from chatrelay.domain.transaction import RecoveryData, Transaction, TransactionKind, TERMINAL_STATUSES
from chatrelay.usecases import replies
from chatrelay.usecases.circuit_breaker import CircuitBreaker
from chatrelay.usecases.commands import CommandProcessor, parse_command
from chatrelay.usecases.media_jobs import PROCESS_IMAGE, PROCESS_VIDEO
from chatrelay.usecases.transaction_store import TransactionStore

logger = logging.getLogger(__name__)
settings = get_settings()

FEATURE_TOGGLES = {
    MessageCategory.IMAGE: "media_image",
    MessageCategory.AUDIO: "media_audio",
    MessageCategory.VIDEO: "media_video",
}

TRANSACTION_KINDS = {
    MessageCategory.TEXT: TransactionKind.TEXT,
    MessageCategory.IMAGE: TransactionKind.IMAGE,
    MessageCategory.AUDIO: TransactionKind.AUDIO,
    MessageCategory.VIDEO: TransactionKind.VIDEO,
}


def classify_mimetype(mimetype: Optional[str]) -> MessageCategory:
    """Map a media MIME type to its routing category."""
    kind = (mimetype or "").lower().split("/")[0]
    if kind == "image":
        return MessageCategory.IMAGE
    if kind == "audio":
        return MessageCategory.AUDIO
    if kind == "video":
        return MessageCategory.VIDEO
    return MessageCategory.UNSUPPORTED


class MessageDispatcher:
    """Routes inbound events to commands, the AI backend or the media queues."""

    def __init__(
        self,
        deduplicator: MessageDeduplicator,
        transactions: TransactionStore,
        breaker: CircuitBreaker,
        backend: AIBackend,
        messenger: Messenger,
        config_store: ChatConfigStore,
        commands: CommandProcessor,
        session_factory: async_sessionmaker,
        image_queue: Optional[MediaQueue] = None,
        video_queue: Optional[MediaQueue] = None,
        bot_id: str = None,
        prefix: str = None,
        max_media_bytes: int = None,
        sync_image_max_bytes: int = None,
        history_limit: int = 10,
    ):
        self.deduplicator = deduplicator
        self.transactions = transactions
        self.breaker = breaker
        self.backend = backend
        self.messenger = messenger
        self.config_store = config_store
        self.commands = commands
        self.session_factory = session_factory
        self.image_queue = image_queue
        self.video_queue = video_queue
        self.bot_id = bot_id if bot_id is not None else settings.bot_id
        self.prefix = prefix or settings.command_prefix
        self.max_media_bytes = max_media_bytes if max_media_bytes is not None else settings.max_media_bytes
        self.sync_image_max_bytes = (
            sync_image_max_bytes if sync_image_max_bytes is not None else settings.sync_image_max_bytes
        )
        self.history_limit = history_limit

    async def process_message(self, event: InboundEvent) -> bool:
        """
        Handle one inbound event.

        Args:
            event: Message delivered by the chat platform

        Returns:
            True if the event was answered or accepted for async processing
        """
        try:
            return await self._process(event)
        except (DuplicateMessage, FeatureDisabled) as e:
            logger.info(f"Message {event.id} skipped: {e}")
            return False
        except RelayError as e:
            logger.warning(f"Message {getattr(event, 'id', None)} not processed: {e}")
            return False
        except Exception as e:
            logger.exception(f"Unexpected error processing message {getattr(event, 'id', None)}: {e}")
            return False

    async def _process(self, event: InboundEvent) -> bool:
        try:
            self._validate(event)
        except ValidationError as e:
            logger.warning(f"Rejected malformed event: {e}")
            return False

        if not await self.deduplicator.claim(event.id):
            raise DuplicateMessage(f"Message {event.id} already processed")

        if self._is_notification(event):
            logger.debug(f"Message {event.id} is a system notification, ignoring")
            return False

        chat = await event.get_chat()
        if chat.is_group and not await self._addressed_to_bot(event):
            logger.debug(f"Group message {event.id} not addressed to the bot, ignoring")
            return False

        if not event.has_media:
            parsed = parse_command(event.body, self.prefix)
            if parsed:
                return await self._handle_command(chat, *parsed)
            return await self._handle_ai_message(event, chat, MessageCategory.TEXT, None)

        media = await event.download_media()
        if media is None:
            logger.warning(f"Could not download media of message {event.id}")
            await self._send_safely(chat.id, replies.media_error("access"))
            return False

        category = classify_mimetype(media.mimetype)
        if category == MessageCategory.UNSUPPORTED:
            logger.info(f"Unsupported media type {media.mimetype} in message {event.id}")
            return False

        return await self._handle_ai_message(event, chat, category, media)

    def _validate(self, event: InboundEvent) -> None:
        if not getattr(event, "id", None):
            raise ValidationError("Event has no id")
        if not getattr(event, "from_", None):
            raise ValidationError(f"Event {event.id} has no chat reference")

    def _is_notification(self, event: InboundEvent) -> bool:
        if event.type in NOTIFICATION_TYPES:
            return True
        if "NOTIFICATION" in event.id:
            return True
        return not (event.body or "").strip() and not event.has_media

    async def _addressed_to_bot(self, event: InboundEvent) -> bool:
        """A group message needs the command prefix, a mention of the bot or a reply to the bot."""
        if (event.body or "").strip().startswith(self.prefix):
            return True

        if self.bot_id:
            mentions = await event.get_mentions()
            if self.bot_id in mentions:
                return True

        if event.has_quoted_msg:
            quoted = await event.get_quoted_message()
            if quoted and (quoted.from_me or (self.bot_id and self.bot_id in (quoted.from_, quoted.author))):
                return True

        return False

    async def _handle_command(self, chat: ChatInfo, name: str, args) -> bool:
        if not self.commands.is_registered(name):
            logger.info(f"Unknown command .{name} in chat {chat.id}")
            await self._send_safely(chat.id, replies.UNKNOWN_COMMAND)
            return False

        reply = await self.commands.execute(name, args, chat.id)
        return await self._send_safely(chat.id, reply)

    async def _handle_ai_message(
        self,
        event: InboundEvent,
        chat: ChatInfo,
        category: MessageCategory,
        media: Optional[MediaPayload],
    ) -> bool:
        config = await self.config_store.get_config(chat.id)

        toggle = FEATURE_TOGGLES.get(category)
        if toggle and not getattr(config, toggle):
            raise FeatureDisabled(f"{category.value} disabled in chat {chat.id}")

        tx = await self.transactions.create(event, chat, TRANSACTION_KINDS[category])
        recovery = RecoveryData(
            recipient_id=chat.id,
            chat_id=chat.id,
            sender_name=event.author,
            original_text=(event.body or "")[:1000],
        )
        await self.transactions.attach_recovery_data(tx.id, recovery.model_dump())

        if media is not None and media.size_bytes > self.max_media_bytes:
            error = MediaTooLarge(media.size_bytes, self.max_media_bytes // (1024 * 1024))
            logger.warning(f"Transaction {tx.id}: {error}")
            await self._send_safely(chat.id, replies.media_too_large(media.size_bytes))
            await self.transactions.record_delivery_failure(tx.id, error)
            return False

        if self._is_async(category, media):
            return await self._enqueue(tx, event, chat, category, config, media)
        return await self._process_sync(tx, event, chat, category, config, media)

    def _is_async(self, category: MessageCategory, media: Optional[MediaPayload]) -> bool:
        if category == MessageCategory.VIDEO:
            return True
        if category == MessageCategory.IMAGE:
            return media.size_bytes >= self.sync_image_max_bytes
        return False

    async def _process_sync(
        self,
        tx: Transaction,
        event: InboundEvent,
        chat: ChatInfo,
        category: MessageCategory,
        config: ChatConfig,
        media: Optional[MediaPayload],
    ) -> bool:
        await self.transactions.mark_processing(tx.id)

        if not self.breaker.can_execute():
            error = CircuitOpenError(self.breaker.name)
            logger.warning(f"Transaction {tx.id}: {error}")
            await self.transactions.record_delivery_failure(tx.id, error)
            await self._send_safely(chat.id, replies.GENERIC_APOLOGY)
            return False

        try:
            response, user_text = await self._call_backend(event, chat, category, config, media)
        except SafetyBlocked as e:
            logger.warning(f"Transaction {tx.id} blocked by safety policy: {e}")
            await self.transactions.record_delivery_failure(tx.id, e)
            await self._send_safely(chat.id, replies.SAFETY_BLOCKED)
            return False
        except AIBackendError as e:
            self.breaker.record_failure()
            logger.error(f"Transaction {tx.id}: AI backend failed: {e}")
            await self.transactions.record_delivery_failure(tx.id, e)
            await self._send_safely(chat.id, replies.GENERIC_APOLOGY)
            return False
        except Exception as e:
            logger.exception(f"Transaction {tx.id}: unexpected error while generating the response: {e}")
            await self.transactions.record_delivery_failure(tx.id, e)
            await self._send_safely(chat.id, replies.GENERIC_APOLOGY)
            return False

        self.breaker.record_success()
        await self.transactions.attach_response(tx.id, response)

        if category == MessageCategory.TEXT:
            try:
                async with self.session_factory() as session:
                    await save_conversation(session, chat.id, user_text, response, sender_name=event.author)
            except SQLAlchemyError as e:
                logger.error(f"Transaction {tx.id}: could not save conversation history: {e}")

        return await self._deliver(tx.id, chat.id, response)

    async def _call_backend(
        self,
        event: InboundEvent,
        chat: ChatInfo,
        category: MessageCategory,
        config: ChatConfig,
        media: Optional[MediaPayload],
    ) -> Tuple[str, str]:
        body = (event.body or "").strip()

        if category == MessageCategory.TEXT:
            async with self.session_factory() as session:
                context = await get_conversation_history(session, chat.id, limit=self.history_limit)
            user_text = f"{event.author}: {body}" if chat.is_group and event.author else body
            context.append({"role": "user", "content": user_text})
            return await self.backend.process_text(context, config), body

        if category == MessageCategory.AUDIO:
            media_id = hashlib.sha256(media.data).hexdigest()
            return await self.backend.process_audio(media, media_id, config), body

        mode = resolve_description_mode("image", config.description_mode)
        prompt = build_media_prompt("image", body, mode)
        return await self.backend.process_image(media, prompt, config), body

    async def _enqueue(
        self,
        tx: Transaction,
        event: InboundEvent,
        chat: ChatInfo,
        category: MessageCategory,
        config: ChatConfig,
        media: MediaPayload,
    ) -> bool:
        if category == MessageCategory.VIDEO:
            queue, job_type, timeout = self.video_queue, PROCESS_VIDEO, settings.video_job_timeout_seconds
        else:
            queue, job_type, timeout = self.image_queue, PROCESS_IMAGE, settings.image_job_timeout_seconds

        await self.transactions.mark_processing(tx.id)

        payload = {
            "chat_id": chat.id,
            "sender_id": event.author or event.from_,
            "message_id": event.id,
            "transaction_id": tx.id,
            "user_prompt": (event.body or "").strip(),
            "description_mode": config.description_mode.value,
            "config": config,
            "media": media,
            "media_size_bytes": media.size_bytes,
        }

        try:
            if queue is None:
                raise QueueUnavailable(f"No queue configured for {category.value}")
            handle = await queue.submit(job_type, payload, {"timeout": timeout})
        except (QueueUnavailable, MediaTooLarge) as e:
            logger.error(f"Transaction {tx.id}: could not enqueue {job_type}: {e}")
            await self.transactions.record_delivery_failure(tx.id, e)
            await self._send_safely(chat.id, replies.GENERIC_APOLOGY)
            return False

        logger.info(f"Transaction {tx.id}: {job_type} queued as job {handle.id}")
        return True

    async def handle_queue_result(self, result: QueueResult) -> None:
        """
        Resolve the transaction of a finished media job.

        Args:
            result: Callback payload from a media queue
        """
        if result.error_type == "timeout":
            # The worker was cancelled before it could report to the breaker
            self.breaker.record_failure()

        tx = await self.transactions.get(result.transaction_id)
        if tx is None or tx.status in TERMINAL_STATUSES:
            logger.warning(f"Queue result for inactive transaction {result.transaction_id}, ignoring")
            return

        recipient = (tx.recovery_data or {}).get("recipient_id") or result.chat_id

        if result.is_error:
            logger.warning(
                f"Transaction {tx.id}: {result.job_type} failed ({result.error_type}): {result.response}"
            )
            await self.transactions.record_delivery_failure(tx.id, result.response)
            await self._send_safely(recipient, replies.media_error(result.error_type))
            return

        if not await self.transactions.attach_response(tx.id, result.response):
            logger.warning(f"Transaction {tx.id} refused the queue response")
            return

        await self._deliver(tx.id, recipient, result.response)

    async def handle_group_join(self, notification: GroupNotification) -> bool:
        """Greet a group when the bot is among the added participants."""
        if not self.bot_id or self.bot_id not in notification.recipient_ids:
            return False

        logger.info(f"Bot added to group {notification.chat.name or notification.chat.id}")
        return await self._send_safely(
            notification.chat.id, f"{replies.GROUP_WELCOME}\n\n{replies.HELP_TEXT}"
        )

    async def _deliver(self, transaction_id: str, target: str, text: str) -> bool:
        try:
            await self.messenger.send(target, text, transaction_id)
        except Exception as e:
            logger.error(f"Transaction {transaction_id}: delivery failed: {e}")
            await self.transactions.record_delivery_failure(transaction_id, e)
            return False

        await self.transactions.mark_delivered(transaction_id)
        return True

    async def _send_safely(self, target: str, text: str) -> bool:
        try:
            await self.messenger.send(target, text)
            return True
        except Exception as e:
            logger.error(f"Could not send reply to {target}: {e}")
            return False
