"""Ports (interfaces) used by the orchestration engine.

Ports define the minimal contracts for the chat platform, the AI backend,
outbound delivery, configuration and media queues so that the engine can be
reused with different backends.
"""

from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol

from chatrelay.domain.chat_config import ChatConfig, SystemPrompt
from chatrelay.domain.message import ChatInfo, JobHandle, MediaPayload, QueueResult, QuotedMessage


class InboundEvent(Protocol):
    """A message delivered by the chat platform."""

    id: Optional[str]
    from_: Optional[str]
    author: Optional[str]
    body: str
    has_media: bool
    type: str
    has_quoted_msg: bool
    timestamp: Optional[int]

    async def get_chat(self) -> ChatInfo:
        ...

    async def get_mentions(self) -> List[str]:
        ...

    async def get_quoted_message(self) -> Optional[QuotedMessage]:
        ...

    async def download_media(self) -> Optional[MediaPayload]:
        ...


class Messenger(Protocol):
    """Outbound delivery to the messaging platform."""

    async def send(
        self,
        target: str,
        text: str,
        transaction_id: Optional[str] = None,
        *,
        is_recovered_message: bool = False,
    ) -> None:
        ...


class AIBackend(Protocol):
    """Generative AI calls. Failures raise AIBackendError or SafetyBlocked."""

    async def process_text(self, context: List[Dict[str, str]], config: ChatConfig) -> str:
        ...

    async def process_image(self, media: MediaPayload, prompt: str, config: ChatConfig) -> str:
        ...

    async def process_audio(self, media: MediaPayload, media_id: str, config: ChatConfig) -> str:
        ...

    async def process_video(self, path: str, prompt: str, config: ChatConfig) -> str:
        ...


class ChatConfigStore(Protocol):
    """Per-chat settings and named system prompts."""

    async def get_config(self, chat_id: str) -> ChatConfig:
        ...

    async def set_config(self, chat_id: str, key: str, value: Any) -> ChatConfig:
        ...

    async def reset_config(self, chat_id: str) -> None:
        ...

    async def get_prompt(self, chat_id: str, name: str) -> Optional[SystemPrompt]:
        ...

    async def list_prompts(self, chat_id: str) -> List[SystemPrompt]:
        ...

    async def set_prompt(self, chat_id: str, name: str, text: str) -> None:
        ...

    async def delete_prompt(self, chat_id: str, name: str) -> bool:
        ...

    async def set_active_prompt(self, chat_id: str, name: str) -> None:
        ...

    async def clear_active_prompt(self, chat_id: str) -> None:
        ...


ResultCallback = Callable[[QueueResult], Awaitable[None]]


class MediaQueue(Protocol):
    """Asynchronous media job queue, one instance per media kind."""

    name: str

    async def submit(self, job_type: str, payload: Dict[str, Any], options: Optional[Dict[str, Any]] = None) -> JobHandle:
        ...

    def on_result(self, callback: ResultCallback) -> None:
        ...

    def status(self) -> Dict[str, int]:
        ...

    async def purge(self, only_completed: bool = True) -> Dict[str, int]:
        ...
