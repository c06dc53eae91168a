"""
Chat commands (".ajuda", ".config set temperature 0.5", ...).

Commands only touch chat configuration, prompts, history and the media
queues. They never create transactions.
"""

import logging
from typing import Callable, Dict, List, Optional, Tuple

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.ext.asyncio import async_sessionmaker

from chatrelay.ai.prompts import AUDIO_DESCRIPTION_INSTRUCTION
from chatrelay.config.settings import get_settings
from chatrelay.domain.chat_config import CONFIG_KEY_ALIASES, DescriptionMode
from chatrelay.domain.conversation_history import clear_conversation_history
from chatrelay.domain.ports import ChatConfigStore, MediaQueue
from chatrelay.usecases import replies

logger = logging.getLogger(__name__)
settings = get_settings()

TOGGLE_COMMANDS = {
    "audio": "media_audio",
    "video": "media_video",
    "imagem": "media_image",
}


def parse_command(body: str, prefix: str) -> Optional[Tuple[str, List[str]]]:
    """
    Split a message into command name and arguments.

    Returns:
        (name, args) if the body starts with the prefix, None otherwise
    """
    text = (body or "").strip()
    if not text.startswith(prefix):
        return None
    parts = text[len(prefix):].split()
    if not parts:
        return None
    return parts[0].lower(), parts[1:]


def parse_config_value(raw: str):
    """Convert a ".config set" argument to bool, int, float or str."""
    lowered = raw.lower()
    if lowered in ("true", "on", "sim"):
        return True
    if lowered in ("false", "off", "nao", "não"):
        return False
    try:
        return int(raw)
    except ValueError:
        pass
    try:
        return float(raw)
    except ValueError:
        return raw


class CommandProcessor:
    """Executes registered chat commands and returns the reply text."""

    def __init__(
        self,
        config_store: ChatConfigStore,
        session_factory: async_sessionmaker,
        queues: Optional[Dict[str, MediaQueue]] = None,
        prefix: str = None,
    ):
        self.config_store = config_store
        self.session_factory = session_factory
        self.queues = queues or {}
        self.prefix = prefix or settings.command_prefix
        self._handlers: Dict[str, Callable] = {
            "ajuda": self._help,
            "reset": self._reset,
            "prompt": self._prompt,
            "config": self._config,
            "audio": self._toggle,
            "video": self._toggle,
            "imagem": self._toggle,
            "longo": self._long,
            "curto": self._short,
            "cego": self._blind,
            "legenda": self._captions,
            "filas": self._queues,
        }

    @property
    def names(self) -> List[str]:
        return list(self._handlers)

    def is_registered(self, name: str) -> bool:
        return name in self._handlers

    async def execute(self, name: str, args: List[str], chat_id: str) -> str:
        """
        Run a command for a chat.

        Args:
            name: Command name without prefix
            args: Command arguments
            chat_id: Chat the command was sent in

        Returns:
            Reply text for the chat
        """
        handler = self._handlers.get(name)
        if handler is None:
            return replies.UNKNOWN_COMMAND

        logger.info(f"Command .{name} {' '.join(args)} in chat {chat_id}")
        return await handler(name, args, chat_id)

    async def _help(self, name: str, args: List[str], chat_id: str) -> str:
        return replies.HELP_TEXT

    async def _reset(self, name: str, args: List[str], chat_id: str) -> str:
        await self.config_store.reset_config(chat_id)
        async with self.session_factory() as session:
            removed = await clear_conversation_history(session, chat_id)
        logger.info(f"Chat {chat_id} reset, {removed} history entries removed")
        return "Configurações restauradas aos valores originais e histórico de conversa limpo."

    async def _prompt(self, name: str, args: List[str], chat_id: str) -> str:
        usage = "Uso: .prompt set <nome> <texto> | get <nome> | list | use <nome> | clear | delete <nome>"
        if not args:
            return usage

        action = args[0].lower()
        prompt_name = args[1] if len(args) > 1 else None

        if action == "set" and prompt_name and len(args) > 2:
            await self.config_store.set_prompt(chat_id, prompt_name, " ".join(args[2:]))
            return f"Prompt '{prompt_name}' salvo. Use .prompt use {prompt_name} para ativá-lo."

        if action == "get" and prompt_name:
            prompt = await self.config_store.get_prompt(chat_id, prompt_name)
            if prompt is None:
                return f"Prompt '{prompt_name}' não encontrado."
            return f"{prompt.name}: {prompt.text}"

        if action == "list":
            prompts = await self.config_store.list_prompts(chat_id)
            if not prompts:
                return "Nenhum prompt definido neste chat."
            return "Prompts disponíveis:\n" + "\n".join(f"- {p.name}" for p in prompts)

        if action == "use" and prompt_name:
            if await self.config_store.get_prompt(chat_id, prompt_name) is None:
                return f"Prompt '{prompt_name}' não encontrado."
            await self.config_store.set_active_prompt(chat_id, prompt_name)
            return f"Prompt '{prompt_name}' ativado."

        if action == "clear":
            await self.config_store.clear_active_prompt(chat_id)
            return "Prompt do sistema removido. Usando o modelo padrão."

        if action == "delete" and prompt_name:
            config = await self.config_store.get_config(chat_id)
            if not await self.config_store.delete_prompt(chat_id, prompt_name):
                return f"Prompt '{prompt_name}' não encontrado."
            if config.active_prompt == prompt_name:
                await self.config_store.clear_active_prompt(chat_id)
            return f"Prompt '{prompt_name}' excluído."

        return usage

    async def _config(self, name: str, args: List[str], chat_id: str) -> str:
        usage = "Uso: .config get [parâmetro] | set <parâmetro> <valor>"
        if not args:
            return usage

        action = args[0].lower()

        if action == "set" and len(args) > 2:
            key = args[1]
            if key not in CONFIG_KEY_ALIASES:
                return f"Parâmetro inválido: {key}. Use: {', '.join(CONFIG_KEY_ALIASES)}"
            try:
                await self.config_store.set_config(chat_id, key, parse_config_value(args[2]))
            except (KeyError, PydanticValidationError):
                return f"Valor inválido para {key}: {args[2]}"
            return f"Parâmetro {key} definido como {args[2]}."

        if action == "get":
            config = await self.config_store.get_config(chat_id)
            values = config.model_dump(mode="json")
            if len(args) > 1:
                key = args[1]
                field = CONFIG_KEY_ALIASES.get(key, key)
                if field not in values:
                    return f"Parâmetro inválido: {key}."
                return f"{key}: {values[field]}"
            lines = [f"{alias}: {values[field]}" for alias, field in CONFIG_KEY_ALIASES.items()]
            lines.append(f"modoDescricao: {values['description_mode']}")
            lines.append(f"usarLegenda: {values['use_captions']}")
            lines.append(f"promptAtivo: {values['active_prompt'] or 'nenhum'}")
            return "Configuração atual:\n" + "\n".join(lines)

        return usage

    async def _toggle(self, name: str, args: List[str], chat_id: str) -> str:
        field = TOGGLE_COMMANDS[name]
        config = await self.config_store.get_config(chat_id)
        enabled = not getattr(config, field)
        await self.config_store.set_config(chat_id, field, enabled)
        return replies.feature_toggled(field, enabled)

    async def _long(self, name: str, args: List[str], chat_id: str) -> str:
        await self.config_store.set_config(chat_id, "description_mode", DescriptionMode.LONG.value)
        await self.config_store.set_config(chat_id, "use_captions", False)
        return "Modo de descrição longa ativado. Imagens e vídeos serão descritos em detalhes."

    async def _short(self, name: str, args: List[str], chat_id: str) -> str:
        await self.config_store.set_config(chat_id, "description_mode", DescriptionMode.SHORT.value)
        await self.config_store.set_config(chat_id, "use_captions", False)
        return "Modo de descrição curta ativado. Imagens e vídeos serão descritos de forma concisa."

    async def _blind(self, name: str, args: List[str], chat_id: str) -> str:
        await self.config_store.set_config(chat_id, "media_image", True)
        await self.config_store.set_config(chat_id, "media_audio", False)
        await self.config_store.set_prompt(chat_id, settings.bot_name, AUDIO_DESCRIPTION_INSTRUCTION)
        await self.config_store.set_active_prompt(chat_id, settings.bot_name)
        return (
            "Configurações para usuários com deficiência visual aplicadas com sucesso:\n"
            "- Descrição de imagens habilitada\n"
            "- Transcrição de áudio desabilitada\n"
            "- Prompt de descrição ativado"
        )

    async def _captions(self, name: str, args: List[str], chat_id: str) -> str:
        config = await self.config_store.get_config(chat_id)
        active = config.use_captions or config.description_mode == DescriptionMode.CAPTION

        if active:
            await self.config_store.set_config(chat_id, "use_captions", False)
            await self.config_store.set_config(chat_id, "description_mode", DescriptionMode.SHORT.value)
            await self.config_store.set_config(chat_id, "media_video", True)
            return (
                "Modo de legendagem desativado.\n\n"
                "Use .curto ou .longo para escolher o nível de detalhamento da descrição."
            )

        await self.config_store.set_config(chat_id, "media_video", True)
        await self.config_store.set_config(chat_id, "description_mode", DescriptionMode.CAPTION.value)
        await self.config_store.set_config(chat_id, "use_captions", True)
        return (
            "Modo de legendagem ativado.\n\n"
            "Os vídeos que você enviar serão transcritos com timecodes, "
            "perfeito para pessoas surdas ou com deficiência auditiva."
        )

    async def _queues(self, name: str, args: List[str], chat_id: str) -> str:
        action = args[0].lower() if args else "status"

        if action == "status":
            if not self.queues:
                return "Nenhuma fila de mídia configurada."
            lines = []
            for queue_name, queue in self.queues.items():
                counts = queue.status()
                lines.append(
                    f"{queue_name}: {counts.get('waiting', 0)} aguardando, {counts.get('active', 0)} ativos, "
                    f"{counts.get('completed', 0)} concluídos, {counts.get('failed', 0)} com falha"
                )
            return "Status das filas:\n" + "\n".join(lines)

        if action == "limpar":
            only_completed = not (len(args) > 1 and args[1].lower() == "tudo")
            removed = 0
            cancelled = 0
            for queue in self.queues.values():
                result = await queue.purge(only_completed=only_completed)
                removed += result.get("removed", 0)
                cancelled += result.get("cancelled", 0)
            if only_completed:
                return f"Filas limpas: {removed} trabalhos concluídos removidos."
            return f"Filas limpas: {removed} trabalhos concluídos removidos e {cancelled} pendentes cancelados."

        return "Uso: .filas status | limpar [tudo]"
