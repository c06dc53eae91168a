"""
Media helpers for downloading WhatsApp attachments from Twilio.
"""

import logging
import tempfile
import os
from pathlib import Path
from typing import Optional

import httpx

from chatrelay.config.settings import get_settings

logger = logging.getLogger(__name__)
settings = get_settings()


async def download_twilio_media(media_url: str) -> Optional[bytes]:
    """
    Download media from Twilio URL with authentication.

    Args:
        media_url: Twilio media URL

    Returns:
        Media bytes, or None if download failed
    """
    try:
        async with httpx.AsyncClient() as client:
            response = await client.get(
                media_url,
                auth=(settings.twilio_account_sid, settings.twilio_auth_token),
                follow_redirects=True,
                timeout=30.0
            )

            if response.status_code == 200:
                logger.info(f"Downloaded media: {len(response.content)} bytes")
                return response.content
            else:
                logger.error(f"Failed to download media: {response.status_code}")
                return None

    except httpx.HTTPError as e:
        logger.exception(f"Error downloading media: {e}")
        return None


def get_extension_from_content_type(content_type: str) -> str:
    """
    Get file extension from MIME content type.

    Args:
        content_type: MIME type string

    Returns:
        File extension (without dot)
    """
    content_type_map = {
        "audio/ogg": "ogg",
        "audio/ogg; codecs=opus": "ogg",
        "audio/opus": "ogg",
        "audio/mpeg": "mp3",
        "audio/mp3": "mp3",
        "audio/mp4": "m4a",
        "audio/m4a": "m4a",
        "audio/wav": "wav",
        "audio/x-wav": "wav",
        "audio/webm": "webm",
        "audio/amr": "amr",
        "video/mp4": "mp4",
        "video/3gpp": "3gp",
        "video/quicktime": "mov",
        "video/webm": "webm",
        "image/jpeg": "jpg",
        "image/png": "png",
        "image/webp": "webp",
    }

    # Normalize content type
    content_type_lower = (content_type or "").lower().strip()

    # Try exact match first
    if content_type_lower in content_type_map:
        return content_type_map[content_type_lower]

    # Try prefix match
    for key, value in content_type_map.items():
        if content_type_lower.startswith(key.split(";")[0]):
            return value

    if content_type_lower.startswith("video/"):
        return "mp4"

    # Default to ogg (most common for WhatsApp voice notes)
    return "ogg"


def save_media_to_temp_file(media_bytes: bytes, extension: str) -> str:
    """
    Save media bytes to a temporary file under the configured temp dir.

    Args:
        media_bytes: Raw media data
        extension: File extension

    Returns:
        Path to the temporary file
    """
    Path(settings.temp_dir).mkdir(parents=True, exist_ok=True)
    temp_file = tempfile.NamedTemporaryFile(
        suffix=f".{extension}",
        dir=settings.temp_dir,
        delete=False
    )
    temp_file.write(media_bytes)
    temp_file.close()

    logger.info(f"Saved media to temp file: {temp_file.name}")
    return temp_file.name


def cleanup_temp_file(file_path: str) -> None:
    """
    Delete a temporary file.

    Args:
        file_path: Path to the file to delete
    """
    try:
        if os.path.exists(file_path):
            os.unlink(file_path)
            logger.info(f"Cleaned up temp file: {file_path}")
    except OSError as e:
        logger.warning(f"Failed to cleanup temp file: {e}")
