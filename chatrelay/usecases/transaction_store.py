"""
Transaction store: durable ledger of in-flight message processing.

Lifecycle:
    created -> processing -> response_ready -> delivered (row removed)

Any state can fall into temp_failure or permanent_failure through
record_delivery_failure, depending on how many attempts were used.

Every mutator returns the number of affected transactions (0 or 1). An
unknown id is reported as 0, never as an exception, so callers can tell a
transaction that was already delivered apart from a broken database, which
raises TransactionStoreError.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, Iterable, List, Optional

from sqlalchemy import select, delete, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from chatrelay.domain.errors import TransactionStoreError
from chatrelay.domain.message import ChatInfo
from chatrelay.domain.ports import InboundEvent
from chatrelay.domain.transaction import (
    Transaction,
    TransactionKind,
    TransactionStatus,
    TransactionStats,
    RECOVERABLE_STATUSES,
    generate_transaction_id,
)

logger = logging.getLogger(__name__)

RecoveryListener = Callable[[Transaction], Awaitable[None]]

# Source states allowed for each forward transition
PROCESSING_SOURCES = (TransactionStatus.CREATED, TransactionStatus.TEMP_FAILURE)
RESPONSE_SOURCES = (
    TransactionStatus.CREATED,
    TransactionStatus.PROCESSING,
    TransactionStatus.TEMP_FAILURE,
    TransactionStatus.RESPONSE_READY,
)


def _history_entry(status: str, detail: str) -> dict:
    return {
        "timestamp": datetime.utcnow().isoformat(),
        "status": status,
        "detail": detail,
    }


class TransactionStore:
    """Service class for transaction lifecycle operations."""

    def __init__(self, session_factory: async_sessionmaker, max_attempts: int = 3):
        self.session_factory = session_factory
        self.max_attempts = max_attempts
        self._lock = asyncio.Lock()
        self._recovery_listeners: List[RecoveryListener] = []
        self._delivered_count = 0

    async def create(
        self,
        event: InboundEvent,
        chat: ChatInfo,
        kind: TransactionKind = TransactionKind.TEXT,
    ) -> Transaction:
        """
        Create a transaction for an inbound message.

        Args:
            event: The originating platform event
            chat: Chat the event arrived in
            kind: Kind of message being answered

        Returns:
            The new transaction, in status created
        """
        now = datetime.utcnow()
        transaction = Transaction(
            id=generate_transaction_id(),
            message_id=event.id,
            chat_id=chat.id,
            sender_id=event.author or event.from_,
            kind=kind,
            status=TransactionStatus.CREATED,
            attempts=0,
            history=[_history_entry(TransactionStatus.CREATED.value, "Transaction created")],
            created_at=now,
            last_updated=now,
        )

        async with self._lock:
            try:
                async with self.session_factory() as session:
                    session.add(transaction)
                    await session.commit()
            except SQLAlchemyError as e:
                logger.error(f"Failed to create transaction for message {event.id}: {e}")
                raise TransactionStoreError(str(e)) from e

        logger.debug(f"Transaction {transaction.id} created for message {event.id} ({kind.value})")
        return transaction

    async def attach_recovery_data(self, transaction_id: str, data: Dict) -> int:
        """
        Merge the data needed to redeliver a response after a restart.

        Best effort: storage errors are logged and reported as 0.
        """
        def merge(tx: Transaction) -> bool:
            tx.recovery_data = {**(tx.recovery_data or {}), **data}
            return True

        try:
            affected = await self._update(
                transaction_id, merge, "recovery_data_attached", "Recovery data persisted"
            )
        except TransactionStoreError as e:
            logger.error(f"Could not attach recovery data to {transaction_id}: {e}")
            return 0

        if not affected:
            logger.warning(f"Transaction {transaction_id} not found to attach recovery data")
        return affected

    async def mark_processing(self, transaction_id: str) -> int:
        def start(tx: Transaction) -> bool:
            if tx.status not in PROCESSING_SOURCES:
                logger.warning(
                    f"Transaction {transaction_id} cannot start processing from {tx.status.value}"
                )
                return False
            tx.status = TransactionStatus.PROCESSING
            return True

        return await self._update(
            transaction_id, start, TransactionStatus.PROCESSING.value, "Processing started"
        )

    async def attach_response(self, transaction_id: str, response: str) -> int:
        def respond(tx: Transaction) -> bool:
            if tx.status not in RESPONSE_SOURCES:
                logger.warning(
                    f"Transaction {transaction_id} cannot take a response in {tx.status.value}"
                )
                return False
            tx.response = response
            tx.status = TransactionStatus.RESPONSE_READY
            return True

        return await self._update(
            transaction_id, respond, TransactionStatus.RESPONSE_READY.value, "Response generated by AI"
        )

    async def mark_delivered(self, transaction_id: str) -> int:
        """
        Mark a transaction as delivered and remove it from the active set.

        Returns:
            1 if the transaction was active, 0 otherwise
        """
        async with self._lock:
            try:
                async with self.session_factory() as session:
                    tx = await session.get(Transaction, transaction_id)
                    if tx is None:
                        logger.warning(f"Transaction {transaction_id} not found to mark as delivered")
                        return 0

                    tx.status = TransactionStatus.DELIVERED
                    tx.history = [
                        *tx.history,
                        _history_entry(TransactionStatus.DELIVERED.value, "Message delivered"),
                    ]
                    await session.delete(tx)
                    await session.commit()
            except SQLAlchemyError as e:
                logger.error(f"Failed to mark transaction {transaction_id} as delivered: {e}")
                raise TransactionStoreError(str(e)) from e

            self._delivered_count += 1

        logger.info(f"Transaction {transaction_id} delivered and removed ({len(tx.history)} history entries)")
        return 1

    async def record_delivery_failure(self, transaction_id: str, error) -> int:
        """
        Count a failed attempt and pick the resulting failure status.

        Args:
            transaction_id: Transaction id
            error: Exception or description of the failure

        Returns:
            1 if the failure was recorded, 0 if the transaction is unknown
        """
        error_text = str(error)[:1000]

        def fail(tx: Transaction) -> bool:
            tx.attempts = (tx.attempts or 0) + 1
            tx.last_error = error_text
            if tx.attempts >= self.max_attempts:
                tx.status = TransactionStatus.PERMANENT_FAILURE
            else:
                tx.status = TransactionStatus.TEMP_FAILURE
            return True

        affected = await self._update(
            transaction_id, fail, None, f"Delivery failure: {error_text}"
        )

        if affected:
            logger.warning(f"Failure recorded for transaction {transaction_id}: {error_text}")
        else:
            logger.warning(f"Transaction {transaction_id} not found to record failure: {error_text}")
        return affected

    async def get(self, transaction_id: str) -> Optional[Transaction]:
        try:
            async with self.session_factory() as session:
                return await session.get(Transaction, transaction_id)
        except SQLAlchemyError as e:
            raise TransactionStoreError(str(e)) from e

    async def find_incomplete(self) -> List[Transaction]:
        """Active transactions that have a response and recovery data."""
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(Transaction)
                    .where(
                        Transaction.status.in_(RECOVERABLE_STATUSES),
                        Transaction.response.isnot(None),
                        Transaction.recovery_data.isnot(None),
                    )
                    .order_by(Transaction.created_at)
                )
                return list(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error(f"Failed to query incomplete transactions: {e}")
            raise TransactionStoreError(str(e)) from e

    def add_recovery_listener(self, listener: RecoveryListener) -> None:
        self._recovery_listeners.append(listener)

    async def announce_incomplete(self) -> int:
        """
        Signal every recoverable transaction to the registered listeners.

        Returns:
            Number of transactions announced
        """
        transactions = await self.find_incomplete()
        if not transactions:
            logger.info("No pending transactions to recover")
            return 0

        logger.info(f"Announcing {len(transactions)} interrupted transactions for recovery")
        await self._notify(transactions)
        return len(transactions)

    async def request_recovery(self, transaction_id: str) -> bool:
        """Signal a single transaction, if it is recoverable."""
        tx = await self.get(transaction_id)
        if tx is None or not tx.is_recoverable:
            return False
        await self._notify([tx])
        return True

    async def stats(self) -> TransactionStats:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Transaction.status, func.count()).group_by(Transaction.status)
            )
            counts = {status.value: count for status, count in result.all()}

        counts["delivered"] = counts.get("delivered", 0) + self._delivered_count
        return TransactionStats(total=sum(counts.values()), **counts)

    async def purge_expired(self, days: int = 7) -> int:
        """
        Remove permanently failed transactions older than the retention window.

        Args:
            days: Number of days to retain

        Returns:
            Number of transactions removed
        """
        cutoff = datetime.utcnow() - timedelta(days=days)
        async with self._lock:
            async with self.session_factory() as session:
                result = await session.execute(
                    delete(Transaction).where(
                        Transaction.created_at < cutoff,
                        Transaction.status == TransactionStatus.PERMANENT_FAILURE,
                    )
                )
                await session.commit()

        if result.rowcount:
            logger.info(f"Removed {result.rowcount} expired transactions")
        return result.rowcount

    async def _notify(self, transactions: Iterable[Transaction]) -> None:
        for tx in transactions:
            for listener in self._recovery_listeners:
                try:
                    await listener(tx)
                except Exception as e:
                    logger.exception(f"Recovery listener failed for transaction {tx.id}: {e}")

    async def _update(
        self,
        transaction_id: str,
        mutate: Callable[[Transaction], bool],
        status_label: Optional[str],
        detail: str,
    ) -> int:
        async with self._lock:
            try:
                async with self.session_factory() as session:
                    tx = await session.get(Transaction, transaction_id)
                    if tx is None:
                        return 0
                    if not mutate(tx):
                        return 0

                    label = status_label or tx.status.value
                    tx.history = [*tx.history, _history_entry(label, detail)]
                    tx.last_updated = datetime.utcnow()
                    await session.commit()
                    return 1
            except SQLAlchemyError as e:
                logger.error(f"Failed to update transaction {transaction_id}: {e}")
                raise TransactionStoreError(str(e)) from e
