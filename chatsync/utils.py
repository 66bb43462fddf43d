"""
Utility functions for the chat sync service and client.
"""

import logging
import re
import uuid
from datetime import datetime, timezone
from typing import Optional, Tuple

logger = logging.getLogger(__name__)

TEMP_ID_PREFIX = "temp-"

_IMAGE_URL_RE = re.compile(r"^https?://.+")


def utc_now_iso() -> str:
    """
    Current server time as a fixed-width ISO-8601 UTC string.

    Microsecond precision and a constant width keep lexical order equal to
    chronological order, so timestamps sort correctly as plain strings.
    """
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def canonical_pair(user_a: str, user_b: str) -> Tuple[str, str]:
    """
    Reduce an unordered participant pair to its fixed representative.

    Raises:
        ValueError: if both ids are the same user
    """
    if user_a == user_b:
        raise ValueError("Cannot create conversation with yourself")
    low, high = sorted((user_a, user_b))
    return low, high


def check_content(content: Optional[str], max_length: int) -> str:
    """
    Validate a message body and return it trimmed.

    The length limit applies to the body as submitted and counts code
    points, not bytes.

    Raises:
        ValueError: if the body is missing, blank or too long
    """
    if content is None:
        raise ValueError("content is required")
    if len(content) > max_length:
        raise ValueError(f"Message content cannot exceed {max_length} characters")
    trimmed = content.strip()
    if not trimmed:
        raise ValueError("Message content cannot be empty")
    return trimmed


def check_image_url(image_url: Optional[str]) -> Optional[str]:
    """Validate an optional image URL produced by the image service."""
    if image_url is None or image_url == "":
        return None
    if not _IMAGE_URL_RE.match(image_url):
        raise ValueError("Please provide a valid image URL")
    return image_url


def new_temp_id() -> str:
    """Temporary identity for an optimistic, not yet confirmed message."""
    return f"{TEMP_ID_PREFIX}{uuid.uuid4().hex}"


def is_temp_id(value) -> bool:
    return isinstance(value, str) and value.startswith(TEMP_ID_PREFIX)


def backoff_delay(attempt: int, base: float, cap: float) -> float:
    """
    Exponential backoff: base * 2^attempt, capped.

    Args:
        attempt: zero-based index of the attempt that just failed
        base: delay after the first failure, in seconds
        cap: upper bound, in seconds
    """
    return min(base * (2 ** attempt), cap)
