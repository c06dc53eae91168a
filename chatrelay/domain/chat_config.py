"""
Per-chat configuration and named system prompts.
"""

import logging
from datetime import datetime
from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, Field
from sqlalchemy import Column, String, DateTime, Text, JSON, UniqueConstraint, select, delete
from sqlalchemy.ext.asyncio import async_sessionmaker

from chatrelay.domain.transaction import Base

logger = logging.getLogger(__name__)


class DescriptionMode(str, Enum):
    """How verbose image and video descriptions should be."""
    SHORT = "curto"
    LONG = "longo"
    CAPTION = "legenda"


class ChatConfig(BaseModel):
    """Effective settings of a chat."""
    temperature: float = Field(0.9, ge=0, le=2)
    top_k: int = Field(1, ge=1)
    top_p: float = Field(0.95, ge=0, le=1)
    max_output_tokens: int = Field(1024, ge=1)
    media_image: bool = True
    media_audio: bool = False
    media_video: bool = True
    description_mode: DescriptionMode = DescriptionMode.SHORT
    use_captions: bool = False
    active_prompt: Optional[str] = None
    system_instructions: Optional[str] = None


# User-facing parameter names accepted by ".config set" mapped to fields
CONFIG_KEY_ALIASES = {
    "temperature": "temperature",
    "topK": "top_k",
    "topP": "top_p",
    "maxOutputTokens": "max_output_tokens",
    "mediaImage": "media_image",
    "mediaAudio": "media_audio",
    "mediaVideo": "media_video",
}


class ChatSettings(Base):
    """SQLAlchemy model for per-chat configuration overrides."""

    __tablename__ = "chat_settings"

    chat_id = Column(String(128), primary_key=True)
    overrides = Column(JSON, nullable=False, default=dict)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class SystemPrompt(Base):
    """SQLAlchemy model for named system prompts of a chat."""

    __tablename__ = "system_prompts"
    __table_args__ = (UniqueConstraint("chat_id", "name", name="uq_prompt_chat_name"),)

    id = Column(String(300), primary_key=True)
    chat_id = Column(String(128), nullable=False, index=True)
    name = Column(String(128), nullable=False)
    text = Column(Text, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    def __repr__(self) -> str:
        return f"<SystemPrompt(chat={self.chat_id}, name={self.name})>"


class SqlChatConfigStore:
    """Chat configuration collaborator backed by SQLite."""

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def get_config(self, chat_id: str) -> ChatConfig:
        async with self.session_factory() as session:
            row = await session.get(ChatSettings, chat_id)
            values = dict(row.overrides) if row else {}

        config = ChatConfig(**values)
        if config.active_prompt:
            prompt = await self.get_prompt(chat_id, config.active_prompt)
            if prompt:
                config.system_instructions = prompt.text
        return config

    async def set_config(self, chat_id: str, key: str, value: Any) -> ChatConfig:
        """
        Set one configuration value.

        Raises:
            KeyError: if the key is not a known setting
            pydantic.ValidationError: if the value is invalid for the key
        """
        field = CONFIG_KEY_ALIASES.get(key, key)
        if field not in ChatConfig.model_fields or field == "system_instructions":
            raise KeyError(key)

        async with self.session_factory() as session:
            row = await session.get(ChatSettings, chat_id)
            values = dict(row.overrides) if row else {}
            values[field] = value
            validated = ChatConfig(**values)
            values[field] = validated.model_dump(mode="json")[field]

            if row is None:
                session.add(ChatSettings(chat_id=chat_id, overrides=values))
            else:
                row.overrides = values
            await session.commit()

        logger.debug(f"Config {field}={values[field]} for chat {chat_id}")
        return validated

    async def reset_config(self, chat_id: str) -> None:
        async with self.session_factory() as session:
            await session.execute(delete(ChatSettings).where(ChatSettings.chat_id == chat_id))
            await session.commit()

    async def get_prompt(self, chat_id: str, name: str) -> Optional[SystemPrompt]:
        async with self.session_factory() as session:
            return await session.get(SystemPrompt, _prompt_key(chat_id, name))

    async def list_prompts(self, chat_id: str) -> List[SystemPrompt]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(SystemPrompt)
                .where(SystemPrompt.chat_id == chat_id)
                .order_by(SystemPrompt.name)
            )
            return list(result.scalars().all())

    async def set_prompt(self, chat_id: str, name: str, text: str) -> None:
        async with self.session_factory() as session:
            existing = await session.get(SystemPrompt, _prompt_key(chat_id, name))
            if existing:
                existing.text = text
            else:
                session.add(SystemPrompt(id=_prompt_key(chat_id, name), chat_id=chat_id, name=name, text=text))
            await session.commit()

    async def delete_prompt(self, chat_id: str, name: str) -> bool:
        async with self.session_factory() as session:
            result = await session.execute(
                delete(SystemPrompt).where(SystemPrompt.id == _prompt_key(chat_id, name))
            )
            await session.commit()
        return result.rowcount > 0

    async def set_active_prompt(self, chat_id: str, name: str) -> None:
        await self.set_config(chat_id, "active_prompt", name)

    async def clear_active_prompt(self, chat_id: str) -> None:
        await self.set_config(chat_id, "active_prompt", None)


def _prompt_key(chat_id: str, name: str) -> str:
    return f"{chat_id}:{name}"
