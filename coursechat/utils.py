"""
Utility functions for the course chat service.
"""

import hmac
import logging
import uuid
from datetime import datetime, timezone

logger = logging.getLogger(__name__)

# Fixed width so that string order equals time order in the store
TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """Serialize a datetime to the stored ISO-8601 UTC form."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def parse_timestamp(value: str) -> datetime:
    """Parse a stored ISO-8601 UTC timestamp back to an aware datetime."""
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def new_message_id() -> str:
    """Opaque, globally unique message identifier."""
    return uuid.uuid4().hex


def verify_password(supplied: str, expected: str) -> bool:
    """
    Compare a supplied password against the stored one.

    Args:
        supplied: Password from the login request
        expected: Password from the user directory

    Returns:
        True if the passwords match, False otherwise
    """
    # Constant-time comparison
    is_valid = hmac.compare_digest(supplied.encode("utf-8"), expected.encode("utf-8"))
    logger.debug(f"Password verification: {'valid' if is_valid else 'invalid'}")
    return is_valid
