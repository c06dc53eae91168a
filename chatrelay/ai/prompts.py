"""
System instructions and default prompts for each media kind and description mode.
"""

from typing import Optional

from chatrelay.config.settings import get_settings
from chatrelay.domain.chat_config import DescriptionMode

settings = get_settings()

BASE_INSTRUCTION = f"""You are {settings.bot_name}, a multimedia AI assistant that makes WhatsApp more accessible.
You process text, audio, images and video, and you always answer in text, in Brazilian Portuguese.
Commands always start with a dot: .cego, .audio, .video, .imagem, .longo, .curto, .legenda, .reset, .ajuda.
If someone types a command without the dot, tell them to type it with the dot and no space.
Never invent commands that are not in this list."""

AUDIO_INSTRUCTION = BASE_INSTRUCTION + """
When you receive an audio message, transcribe it verbatim, word for word, without summarizing."""

IMAGE_PROMPT_SHORT = """Describe this image for a blind person in at most 200 characters.
Start with the most important element. Include any visible text."""

IMAGE_PROMPT_LONG = """Describe this image in detail for a blind person.
1. Start with an overview, then describe elements from most to least relevant.
2. Mention colors, positions, facial expressions and the type of image (photo, drawing, screenshot).
3. Transcribe any visible text.
4. Avoid subjective words such as "beautiful" or "ugly"."""

VIDEO_PROMPT_SHORT = """Summarize this video for a blind person in at most 200 characters:
who appears, where it happens and what happens."""

VIDEO_PROMPT_LONG = """Describe this video in detail for a blind person.
Include the number of people and their clothes, the environment, visible objects,
actions in order, facial expressions and any visible text."""

VIDEO_PROMPT_CAPTION = """Transcribe everything that is said in this video verbatim, with timecodes
in the format [mm:ss], for a deaf person. Indicate relevant sounds between brackets."""

_MEDIA_PROMPTS = {
    ("image", DescriptionMode.SHORT): IMAGE_PROMPT_SHORT,
    ("image", DescriptionMode.LONG): IMAGE_PROMPT_LONG,
    ("image", DescriptionMode.CAPTION): IMAGE_PROMPT_SHORT,
    ("video", DescriptionMode.SHORT): VIDEO_PROMPT_SHORT,
    ("video", DescriptionMode.LONG): VIDEO_PROMPT_LONG,
    ("video", DescriptionMode.CAPTION): VIDEO_PROMPT_CAPTION,
}


def resolve_description_mode(media_kind: str, mode: Optional[str], use_captions: bool = False) -> DescriptionMode:
    """Pick the effective description mode; caption mode only applies to video."""
    if media_kind == "video" and use_captions:
        return DescriptionMode.CAPTION
    try:
        resolved = DescriptionMode(mode) if mode else DescriptionMode.SHORT
    except ValueError:
        resolved = DescriptionMode.SHORT
    if resolved == DescriptionMode.CAPTION and media_kind != "video":
        return DescriptionMode.SHORT
    return resolved


def build_media_prompt(media_kind: str, user_prompt: str, mode: DescriptionMode) -> str:
    """
    Use the user's caption as the prompt, or fall back to the mode default.

    Args:
        media_kind: "image" or "video"
        user_prompt: Caption sent with the media (may be empty)
        mode: Effective description mode

    Returns:
        Prompt text for the AI backend
    """
    if user_prompt and user_prompt.strip():
        return user_prompt.strip()
    return _MEDIA_PROMPTS.get((media_kind, mode), IMAGE_PROMPT_SHORT)


def build_system_instruction(custom: Optional[str] = None) -> str:
    return custom or BASE_INSTRUCTION


# Persona activated by the ".cego" command
AUDIO_DESCRIPTION_INSTRUCTION = BASE_INSTRUCTION + """
You are talking to blind or low-vision people. When you receive an image, describe it objectively:
- start with an overview, then describe elements from most to least relevant;
- mention colors, shapes, textures and the position of elements;
- describe facial expressions and body language of people;
- say whether it is a photo, illustration or painting, and how it is framed;
- be specific with numbers ("three people", not "some people");
- transcribe any visible text, including captions and titles;
- avoid subjective terms such as "beautiful" or "ugly"."""
