"""
Error taxonomy for message orchestration.

Every error raised inside the engine derives from RelayError so the
dispatcher boundary can convert it to a boolean result and a log line.
"""

from typing import Optional


class RelayError(Exception):
    """Base class for all orchestration errors."""


class ValidationError(RelayError):
    """Inbound event is malformed (missing id or chat reference)."""


class DuplicateMessage(RelayError):
    """Message id was already claimed inside the dedup window."""


class FeatureDisabled(RelayError):
    """The per-chat toggle for this media kind is off."""


class MediaTooLarge(RelayError):
    """Media payload exceeds the configured ceiling."""

    def __init__(self, size_bytes: int, limit_mb: int):
        self.size_bytes = size_bytes
        self.limit_mb = limit_mb
        size_mb = size_bytes / (1024 * 1024)
        super().__init__(f"Media too large: {size_mb:.2f}MB exceeds the {limit_mb}MB limit")


class AIBackendError(RelayError):
    """Generic failure of the AI backend."""


class SafetyBlocked(AIBackendError):
    """The AI backend refused the content for safety reasons."""


class CircuitOpenError(AIBackendError):
    """The circuit breaker is open, the AI backend was not called."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Service unavailable: circuit '{name}' is open")


class QueueUnavailable(RelayError):
    """The media queue rejected a submission."""


class DeliveryFailure(RelayError):
    """Outbound send to the messaging platform failed."""

    def __init__(self, target: str, reason: Optional[str] = None):
        self.target = target
        self.reason = reason
        super().__init__(f"Failed to deliver message to {target}: {reason}")


class TransactionStoreError(RelayError):
    """The transaction ledger could not be read or written."""


SAFETY_MARKERS = ("safety", "blocked", "content_policy", "content policy")


def is_safety_error(error: BaseException) -> bool:
    """Check whether an AI backend error carries a safety-rejection marker."""
    if isinstance(error, SafetyBlocked):
        return True
    text = str(error).lower()
    return any(marker in text for marker in SAFETY_MARKERS)


def classify_media_error(error: BaseException) -> str:
    """
    Classify a media processing error into a coarse type.

    Returns:
        One of: safety, timeout, access, size, format, rate_limit, general
    """
    if is_safety_error(error):
        return "safety"

    text = str(error).lower()
    if isinstance(error, TimeoutError) or "timeout" in text or "time out" in text:
        return "timeout"
    if "forbidden" in text or "403" in text:
        return "access"
    if isinstance(error, MediaTooLarge) or "too large" in text:
        return "size"
    if "format" in text or "mime" in text:
        return "format"
    if "rate limit" in text or "quota" in text:
        return "rate_limit"
    return "general"
