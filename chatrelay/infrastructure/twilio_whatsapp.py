"""
Twilio WhatsApp messaging integration with retry logic.
"""

import asyncio
import logging
from typing import Optional

from twilio.rest import Client
from twilio.base.exceptions import TwilioRestException
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from chatrelay.config.settings import get_settings
from chatrelay.domain.errors import DeliveryFailure

logger = logging.getLogger(__name__)
settings = get_settings()

# WhatsApp rejects bodies above this length
MAX_BODY_LENGTH = 1600


def _whatsapp_address(target: str) -> str:
    return target if target.startswith("whatsapp:") else f"whatsapp:{target}"


class TwilioMessenger:
    """Outbound delivery through the Twilio REST API."""

    def __init__(self, client: Optional[Client] = None, from_number: str = None):
        self.client = client or Client(settings.twilio_account_sid, settings.twilio_auth_token)
        self.from_number = from_number or settings.twilio_whatsapp_number

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=5),
        retry=retry_if_exception_type(TwilioRestException),
        reraise=True
    )
    def _send_message_sync(self, message: str, to_number: str):
        """
        Synchronous Twilio message send with retry logic.

        Args:
            message: Text message to send
            to_number: Recipient's WhatsApp number

        Returns:
            Twilio message object
        """
        return self.client.messages.create(
            body=message,
            from_=_whatsapp_address(self.from_number),
            to=_whatsapp_address(to_number)
        )

    async def send(
        self,
        target: str,
        text: str,
        transaction_id: Optional[str] = None,
        *,
        is_recovered_message: bool = False,
    ) -> None:
        """
        Send a WhatsApp text message, split in chunks when it is too long.

        Args:
            target: Recipient WhatsApp number
            text: Message body
            transaction_id: Transaction being answered, for logs
            is_recovered_message: True when redelivering after a restart

        Raises:
            DeliveryFailure: if Twilio rejects the message after retries
        """
        chunks = [text[i:i + MAX_BODY_LENGTH] for i in range(0, len(text), MAX_BODY_LENGTH)] or [""]

        for chunk in chunks:
            try:
                msg = await asyncio.to_thread(self._send_message_sync, chunk, target)
            except TwilioRestException as e:
                logger.error(f"Failed to send WhatsApp message to {target} after retries: {e}")
                raise DeliveryFailure(target, str(e)) from e
            except Exception as e:
                logger.error(f"Unexpected error sending WhatsApp message to {target}: {e}")
                raise DeliveryFailure(target, str(e)) from e

            logger.info(
                f"WhatsApp message sent. SID: {msg.sid}"
                f"{f' (transaction {transaction_id})' if transaction_id else ''}"
                f"{' [recovered]' if is_recovered_message else ''}"
            )
