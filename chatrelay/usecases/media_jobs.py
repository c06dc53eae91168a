"""
Worker executing queued image and video jobs against the AI backend.
"""

import logging
from typing import Any, Dict

from chatrelay.ai.prompts import build_media_prompt, resolve_description_mode
from chatrelay.domain.chat_config import ChatConfig
from chatrelay.domain.errors import AIBackendError, CircuitOpenError, SafetyBlocked
from chatrelay.domain.message import MediaPayload
from chatrelay.domain.ports import AIBackend
from chatrelay.infrastructure.media_download import (
    cleanup_temp_file,
    get_extension_from_content_type,
    save_media_to_temp_file,
)
from chatrelay.usecases.circuit_breaker import CircuitBreaker

logger = logging.getLogger(__name__)

PROCESS_IMAGE = "process-image"
PROCESS_VIDEO = "process-video"


class MediaJobWorker:
    """Runs one media job through the circuit breaker and the AI backend."""

    def __init__(self, backend: AIBackend, breaker: CircuitBreaker):
        self.backend = backend
        self.breaker = breaker

    async def __call__(self, job_type: str, payload: Dict[str, Any]) -> str:
        """
        Process a queued job.

        Args:
            job_type: PROCESS_IMAGE or PROCESS_VIDEO
            payload: Job payload built by the dispatcher

        Returns:
            The AI backend's description

        Raises:
            CircuitOpenError: if the breaker blocks the call
            AIBackendError: if the backend fails
        """
        if not self.breaker.can_execute():
            raise CircuitOpenError(self.breaker.name)

        config = payload.get("config") or ChatConfig()
        if isinstance(config, dict):
            config = ChatConfig(**config)

        try:
            if job_type == PROCESS_IMAGE:
                response = await self._process_image(payload, config)
            elif job_type == PROCESS_VIDEO:
                response = await self._process_video(payload, config)
            else:
                raise ValueError(f"Unknown media job type: {job_type}")
        except SafetyBlocked:
            raise
        except AIBackendError:
            self.breaker.record_failure()
            raise

        self.breaker.record_success()
        return response

    async def _process_image(self, payload: Dict[str, Any], config: ChatConfig) -> str:
        media: MediaPayload = payload["media"]
        mode = resolve_description_mode("image", payload.get("description_mode"))
        prompt = build_media_prompt("image", payload.get("user_prompt", ""), mode)

        logger.info(f"Describing image for transaction {payload.get('transaction_id')} ({mode.value})")
        return await self.backend.process_image(media, prompt, config)

    async def _process_video(self, payload: Dict[str, Any], config: ChatConfig) -> str:
        media: MediaPayload = payload["media"]
        mode = resolve_description_mode("video", payload.get("description_mode"), config.use_captions)
        prompt = build_media_prompt("video", payload.get("user_prompt", ""), mode)

        path = save_media_to_temp_file(media.data, get_extension_from_content_type(media.mimetype))
        try:
            logger.info(f"Processing video for transaction {payload.get('transaction_id')} ({mode.value})")
            return await self.backend.process_video(path, prompt, config)
        finally:
            cleanup_temp_file(path)
