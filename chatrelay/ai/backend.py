"""
OpenAI-powered AI backend for text, image, audio and video messages.
"""

import base64
import logging
from io import BytesIO
from pathlib import Path
from typing import Dict, List, Optional

from openai import AsyncOpenAI, APIError, APIConnectionError, APITimeoutError, RateLimitError
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from chatrelay.ai.prompts import AUDIO_INSTRUCTION, build_system_instruction
from chatrelay.config.settings import get_settings
from chatrelay.domain.chat_config import ChatConfig, DescriptionMode
from chatrelay.domain.errors import AIBackendError, SafetyBlocked, is_safety_error
from chatrelay.domain.message import MediaPayload
from chatrelay.infrastructure.media_download import get_extension_from_content_type

logger = logging.getLogger(__name__)
settings = get_settings()

TRANSIENT_ERRORS = (APITimeoutError, APIConnectionError, RateLimitError)


class OpenAIBackend:
    """AI backend implementation on top of the OpenAI API."""

    def __init__(self, client: Optional[AsyncOpenAI] = None, model: str = None, transcription_model: str = None):
        self.client = client or AsyncOpenAI(api_key=settings.openai_api_key)
        self.model = model or settings.openai_model
        self.transcription_model = transcription_model or settings.openai_transcription_model

    async def process_text(self, context: List[Dict[str, str]], config: ChatConfig) -> str:
        """
        Answer the last message of a chat.

        Args:
            context: Conversation messages, oldest first, ending with the user's message
            config: Chat configuration

        Returns:
            Response text
        """
        messages = [{"role": "system", "content": build_system_instruction(config.system_instructions)}]
        messages.extend(context)
        return await self._complete(messages, config)

    async def process_image(self, media: MediaPayload, prompt: str, config: ChatConfig) -> str:
        encoded = base64.b64encode(media.data).decode("ascii")
        messages = [
            {"role": "system", "content": build_system_instruction(config.system_instructions)},
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": prompt},
                    {"type": "image_url", "image_url": {"url": f"data:{media.mimetype};base64,{encoded}"}},
                ],
            },
        ]
        return await self._complete(messages, config)

    async def process_audio(self, media: MediaPayload, media_id: str, config: ChatConfig) -> str:
        """
        Transcribe a voice message verbatim.

        Args:
            media: Downloaded audio
            media_id: Content hash of the audio, used in logs
            config: Chat configuration

        Returns:
            Transcribed text
        """
        extension = get_extension_from_content_type(media.mimetype)
        audio_buffer = BytesIO(media.data)
        audio_buffer.name = f"audio.{extension}"

        logger.info(f"Transcribing audio {media_id} ({media.size_bytes} bytes)")
        transcript = await self._transcribe(audio_buffer)

        if config.system_instructions and config.system_instructions != AUDIO_INSTRUCTION:
            # A custom persona is active: let it answer the transcript instead of echoing it
            messages = [
                {"role": "system", "content": config.system_instructions},
                {"role": "user", "content": transcript},
            ]
            return await self._complete(messages, config)

        return transcript

    async def process_video(self, path: str, prompt: str, config: ChatConfig) -> str:
        """
        Describe a video from its audio track.

        Args:
            path: Path to the video file on disk
            prompt: Description prompt
            config: Chat configuration

        Returns:
            Description, or a timecoded transcript in caption mode
        """
        file_path = Path(path)
        if not file_path.exists():
            raise AIBackendError(f"Video file not found: {path}")

        with open(file_path, "rb") as video_file:
            transcription = await self._transcribe(video_file, verbose=True)

        segments = getattr(transcription, "segments", None) or []
        transcript = getattr(transcription, "text", "") or ""

        if config.use_captions or config.description_mode == DescriptionMode.CAPTION:
            lines = [
                f"[{int(seg.start) // 60:02d}:{int(seg.start) % 60:02d}] {seg.text.strip()}"
                for seg in segments
            ]
            return "\n".join(lines) or transcript.strip()

        messages = [
            {"role": "system", "content": build_system_instruction(config.system_instructions)},
            {"role": "user", "content": f"{prompt}\n\nAudio transcript of the video:\n{transcript}"},
        ]
        return await self._complete(messages, config)

    async def _complete(self, messages: list, config: ChatConfig) -> str:
        try:
            response = await _call_openai_chat(
                self.client,
                model=self.model,
                messages=messages,
                temperature=config.temperature,
                top_p=config.top_p,
                max_tokens=config.max_output_tokens,
            )
        except APIError as e:
            raise _translate_error(e) from e

        choice = response.choices[0]
        if choice.finish_reason == "content_filter":
            raise SafetyBlocked("Response blocked by content filter")

        content = (choice.message.content or "").strip()
        if not content:
            raise AIBackendError("Empty response from AI backend")
        return content

    async def _transcribe(self, audio_file, verbose: bool = False):
        try:
            response = await _call_openai_transcription(
                self.client,
                model=self.transcription_model,
                file=audio_file,
                language="pt",
                response_format="verbose_json" if verbose else "text",
            )
        except APIError as e:
            raise _translate_error(e) from e

        if verbose:
            return response

        transcribed_text = str(response).strip()
        logger.info(f"Transcription successful: {transcribed_text[:100]}...")
        return transcribed_text


@retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=2, max=10),
    retry=retry_if_exception_type(TRANSIENT_ERRORS),
    reraise=True
)
async def _call_openai_chat(client: AsyncOpenAI, **kwargs):
    """
    Make an OpenAI chat completion call with retry logic.

    Returns:
        Chat completion response
    """
    return await client.chat.completions.create(**kwargs)


@retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=2, max=10),
    retry=retry_if_exception_type(TRANSIENT_ERRORS),
    reraise=True
)
async def _call_openai_transcription(client: AsyncOpenAI, **kwargs):
    """Make an OpenAI transcription call with retry logic."""
    if hasattr(kwargs.get("file"), "seek"):
        kwargs["file"].seek(0)
    return await client.audio.transcriptions.create(**kwargs)


def _translate_error(error: APIError) -> AIBackendError:
    if is_safety_error(error) or getattr(error, "code", None) == "content_policy_violation":
        logger.warning(f"AI backend refused content: {error}")
        return SafetyBlocked(str(error))
    logger.error(f"OpenAI API error after retries: {error}")
    return AIBackendError(str(error))
