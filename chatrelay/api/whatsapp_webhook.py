"""
WhatsApp webhook endpoint for receiving messages from Twilio.
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Request, Form, HTTPException
from fastapi.responses import Response
from twilio.request_validator import RequestValidator

from chatrelay.config.settings import get_settings
from chatrelay.domain.message import ChatInfo, MediaPayload, QuotedMessage
from chatrelay.infrastructure.media_download import download_twilio_media, get_extension_from_content_type

logger = logging.getLogger(__name__)
router = APIRouter()
settings = get_settings()

EMPTY_TWIML = '<?xml version="1.0" encoding="UTF-8"?><Response></Response>'


class TwilioInboundEvent:
    """Inbound event built from a Twilio WhatsApp webhook form."""

    def __init__(
        self,
        message_sid: str,
        from_number: str,
        body: str = "",
        num_media: int = 0,
        media_url: Optional[str] = None,
        media_content_type: Optional[str] = None,
        profile_name: Optional[str] = None,
        replied_message_sid: Optional[str] = None,
        replied_message_sender: Optional[str] = None,
    ):
        self.id = message_sid
        self.from_ = from_number
        self.author = None  # Twilio only delivers direct chats
        self.body = body or ""
        self.has_media = num_media > 0 and bool(media_url)
        self.type = self._message_type(media_content_type) if self.has_media else "chat"
        self.has_quoted_msg = bool(replied_message_sid)
        self.timestamp = None
        self.media_url = media_url
        self.media_content_type = media_content_type
        self.profile_name = profile_name
        self.replied_message_sid = replied_message_sid
        self.replied_message_sender = replied_message_sender

    @staticmethod
    def _message_type(content_type: Optional[str]) -> str:
        return (content_type or "").split("/")[0] or "unknown"

    async def get_chat(self) -> ChatInfo:
        return ChatInfo(id=self.from_, name=self.profile_name, is_group=False)

    async def get_mentions(self) -> List[str]:
        return []

    async def get_quoted_message(self) -> Optional[QuotedMessage]:
        if not self.has_quoted_msg:
            return None
        bot_number = settings.twilio_whatsapp_number.replace("whatsapp:", "")
        sender = (self.replied_message_sender or "").replace("whatsapp:", "")
        return QuotedMessage(
            id=self.replied_message_sid,
            from_=self.replied_message_sender,
            from_me=bool(sender) and sender == bot_number,
        )

    async def download_media(self) -> Optional[MediaPayload]:
        if not self.has_media:
            return None
        data = await download_twilio_media(self.media_url)
        if data is None:
            return None
        return MediaPayload(
            data=data,
            mimetype=self.media_content_type or "application/octet-stream",
            filename=f"{self.id}.{get_extension_from_content_type(self.media_content_type)}",
        )


async def validate_twilio_signature(request: Request) -> bool:
    """
    Validate the Twilio webhook signature.

    Args:
        request: FastAPI request object

    Returns:
        True if signature is valid
    """
    if not settings.validate_twilio_signature:
        return True

    validator = RequestValidator(settings.twilio_auth_token)

    # Get the signature from headers
    signature = request.headers.get("X-Twilio-Signature", "")

    # Build the full URL
    url = str(request.url)

    # Form data is cached by Starlette after the Form() parameters consumed it
    form = await request.form()
    params = {k: v for k, v in form.items()}

    return validator.validate(url, params, signature)


@router.post("/webhook/whatsapp")
async def whatsapp_webhook(
    request: Request,
    Body: str = Form(default=""),
    From: str = Form(...),
    MessageSid: str = Form(...),
    NumMedia: str = Form(default="0"),
    MediaUrl0: Optional[str] = Form(default=None),
    MediaContentType0: Optional[str] = Form(default=None),
    ProfileName: Optional[str] = Form(default=None),
    OriginalRepliedMessageSid: Optional[str] = Form(default=None),
    OriginalRepliedMessageSender: Optional[str] = Form(default=None),
):
    """
    Handle incoming WhatsApp messages from Twilio.

    Replies are sent through the REST API, so the TwiML answer is always empty.
    """
    if not await validate_twilio_signature(request):
        logger.warning(f"Invalid Twilio signature for message {MessageSid}")
        raise HTTPException(status_code=403, detail="Invalid signature")

    logger.info(f"Received message from {From}, SID: {MessageSid}")

    try:
        num_media = int(NumMedia)
    except ValueError:
        num_media = 0

    event = TwilioInboundEvent(
        message_sid=MessageSid,
        from_number=From,
        body=Body.strip(),
        num_media=num_media,
        media_url=MediaUrl0,
        media_content_type=MediaContentType0,
        profile_name=ProfileName,
        replied_message_sid=OriginalRepliedMessageSid,
        replied_message_sender=OriginalRepliedMessageSender,
    )

    dispatcher = getattr(request.app.state, "dispatcher", None)
    if dispatcher is None:
        logger.error(f"Dispatcher not ready, dropping message {MessageSid}")
    else:
        handled = await dispatcher.process_message(event)
        logger.debug(f"Message {MessageSid} handled: {handled}")

    return Response(content=EMPTY_TWIML, media_type="text/xml")


@router.get("/health")
async def health_check(request: Request):
    """Health check endpoint."""
    breaker = getattr(request.app.state, "breaker", None)
    return {
        "status": "healthy",
        "service": "chatrelay",
        "ai_backend": breaker.state.value if breaker else "unknown",
    }
