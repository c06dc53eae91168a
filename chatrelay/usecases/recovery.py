"""
Redelivery of responses that were generated but never delivered.
"""

import logging
from typing import Set

from chatrelay.domain.errors import TransactionStoreError
from chatrelay.domain.ports import Messenger
from chatrelay.domain.transaction import Transaction, TransactionStatus
from chatrelay.usecases.transaction_store import TransactionStore

logger = logging.getLogger(__name__)


class RecoveryCoordinator:
    """Listens to the store's recovery signal and redelivers stored responses."""

    def __init__(self, transactions: TransactionStore, messenger: Messenger):
        self.transactions = transactions
        self.messenger = messenger
        self._started = False
        self._in_flight: Set[str] = set()

    def start(self) -> None:
        """Subscribe to the store's recovery signal."""
        if self._started:
            return
        self.transactions.add_recovery_listener(self.recover_transaction)
        self._started = True
        logger.info("Transaction recovery listener registered")

    async def recover_all(self) -> int:
        """
        Ask the store to announce every recoverable transaction.

        Returns:
            Number of transactions announced
        """
        try:
            return await self.transactions.announce_incomplete()
        except TransactionStoreError as e:
            logger.error(f"Recovery sweep failed: {e}")
            return 0

    async def recover_transaction(self, tx: Transaction) -> bool:
        """
        Deliver the stored response of one transaction.

        Args:
            tx: Transaction announced by the store

        Returns:
            True if the response was delivered
        """
        recipient = (tx.recovery_data or {}).get("recipient_id")
        if not tx.response or not recipient:
            logger.warning(f"Transaction {tx.id} lacks a response or recovery data, skipping")
            return False

        if tx.status == TransactionStatus.PERMANENT_FAILURE:
            logger.info(f"Transaction {tx.id} was abandoned after {tx.attempts} attempts")
            return False

        if tx.id in self._in_flight:
            return False

        self._in_flight.add(tx.id)
        try:
            logger.info(f"Recovering transaction {tx.id} for {recipient}")
            try:
                await self.messenger.send(recipient, tx.response, tx.id, is_recovered_message=True)
            except Exception as e:
                await self.transactions.record_delivery_failure(tx.id, e)
                logger.error(f"Recovery of transaction {tx.id} failed (attempt {tx.attempts + 1}): {e}")
                return False

            await self.transactions.mark_delivered(tx.id)
            logger.info(f"Transaction {tx.id} recovered and delivered")
            return True
        finally:
            self._in_flight.discard(tx.id)
