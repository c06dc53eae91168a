"""
User-facing message texts (Brazilian Portuguese).
"""

from chatrelay.config.settings import get_settings

settings = get_settings()

HELP_TEXT = f"""Olá! Eu sou a {settings.bot_name}, sua assistente de AI multimídia acessível integrada ao WhatsApp.

Comandos disponíveis:
.cego - Aplica configurações para usuários com deficiência visual
.audio - Liga/desliga a transcrição de áudio
.video - Liga/desliga a interpretação de vídeo
.imagem - Liga/desliga a audiodescrição de imagem
.longo - Descrições longas e detalhadas para imagens e vídeos
.curto - Descrições curtas e concisas para imagens e vídeos
.legenda - Legendas com timecodes para vídeos (pessoas surdas)
.reset - Restaura as configurações originais e limpa o histórico
.prompt set|get|list|use|clear|delete - Gerencia instruções personalizadas
.config get|set - Mostra ou altera parâmetros
.filas status|limpar - Mostra ou limpa as filas de mídia
.ajuda - Mostra esta mensagem"""

UNKNOWN_COMMAND = "Comando desconhecido. Use .ajuda para ver os comandos disponíveis."
GENERIC_APOLOGY = "Desculpe, ocorreu um erro ao processar sua mensagem. Por favor, tente novamente mais tarde."
SAFETY_BLOCKED = (
    "Este conteúdo não pôde ser processado por questões de segurança. "
    "Por favor, envie outro conteúdo."
)

GROUP_WELCOME = f"Olá a todos! Eu sou a {settings.bot_name}. Fui adicionada ao grupo e estou pronta para ajudar!"

FEATURE_NAMES = {
    "media_audio": "transcrição de áudio",
    "media_video": "interpretação de vídeo",
    "media_image": "audiodescrição de imagem",
}

MEDIA_ERRORS = {
    "safety": "Este conteúdo não pôde ser processado por questões de segurança.",
    "timeout": "O processamento demorou mais que o esperado. Tente enviar um arquivo menor.",
    "access": "Não consegui acessar o arquivo enviado. Tente enviá-lo novamente.",
    "size": f"O arquivo é muito grande. O limite é de {settings.max_media_mb}MB.",
    "format": "Este formato de arquivo não é suportado. Tente enviar em outro formato.",
    "rate_limit": "Muitas solicitações no momento. Aguarde um pouco e tente novamente.",
    "cancelled": "O processamento desta mídia foi cancelado. Envie-a novamente se ainda precisar.",
    "general": "Desculpe, ocorreu um erro ao processar sua mídia. Tente novamente mais tarde.",
}


def media_too_large(size_bytes: int) -> str:
    size_mb = size_bytes / (1024 * 1024)
    return (
        f"Desculpe, o arquivo enviado ({size_mb:.1f}MB) excede o limite de "
        f"{settings.max_media_mb}MB. Por favor, envie um arquivo menor."
    )


def media_error(error_type: str) -> str:
    return MEDIA_ERRORS.get(error_type or "general", MEDIA_ERRORS["general"])


def feature_toggled(field: str, enabled: bool) -> str:
    state = "ativada" if enabled else "desativada"
    return f"A {FEATURE_NAMES[field]} foi {state} para este chat."
