"""
Clock helpers.

All SLA arithmetic is wall-clock UTC. Services take a ``Clock`` so that
deadlines and rule timers can be evaluated against a controlled instant.
"""

from datetime import datetime, timezone
from typing import Callable, Optional
from uuid import UUID

from crm_tickets.core.exceptions import InvalidIdentifierException

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on round trip)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_identifier(value: object, resource_type: str) -> UUID:
    """Parse a caller-supplied identifier, raising InvalidIdentifierException."""
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except (ValueError, TypeError, AttributeError):
        raise InvalidIdentifierException(resource_type, value)
