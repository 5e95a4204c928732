"""Utility helpers for EventGallery."""

from __future__ import annotations

import re
import secrets
import uuid
from datetime import UTC, date, datetime

_time_pattern = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")


def utcnow() -> datetime:
    """Return a naive UTC datetime."""

    return datetime.now(UTC).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


def new_api_token() -> str:
    return secrets.token_urlsafe(32)


def is_valid_id(value: str | None) -> bool:
    """Return ``True`` when *value* parses as a UUID string."""
    if not value or not isinstance(value, str):
        return False
    try:
        uuid.UUID(value)
    except ValueError:
        return False
    return True


def is_valid_time(value: str | None) -> bool:
    """Validate ``HH:MM`` 24-hour times."""
    return bool(value) and bool(_time_pattern.match(value))


def clean_text(value: str | None) -> str | None:
    """Strip whitespace and collapse empty strings to ``None``."""
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None


def isoformat_or_none(value: datetime | date | None) -> str | None:
    return value.isoformat() if value else None
