"""Utility / helper functions used across the application."""

from __future__ import annotations

import datetime
import logging
import re
import uuid
from datetime import timezone
from typing import Optional

logger = logging.getLogger(__name__)

UUID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE
)


# ---------------------------------------------------------------------------
# Identifier helpers
# ---------------------------------------------------------------------------

def new_id() -> str:
    """Return a fresh UUID4 string.  Used as SQLAlchemy primary-key default."""
    return str(uuid.uuid4())


def parse_uuid(raw) -> Optional[str]:
    """Return the trimmed, lower-cased UUID in *raw*, or ``None`` if it is not one."""
    if not isinstance(raw, str):
        return None
    value = raw.strip()
    if not UUID_PATTERN.match(value):
        return None
    return value.lower()


def compact_id(value: str) -> str:
    """First eight alphanumerics of *value*, upper-cased (``#3F2A9C01`` style labels)."""
    return re.sub(r"[^a-zA-Z0-9]", "", value or "").upper()[:8]


# ---------------------------------------------------------------------------
# Datetime helpers
# ---------------------------------------------------------------------------

def utc_now() -> datetime.datetime:
    """Return current UTC datetime.  Used as SQLAlchemy column default."""
    return datetime.datetime.now(timezone.utc)


def ensure_aware(value: Optional[datetime.datetime]) -> Optional[datetime.datetime]:
    """Treat naive datetimes (SQLite drops tzinfo) as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def parse_iso_datetime(raw) -> Optional[datetime.datetime]:
    """Parse an ISO-8601 instant (``Z`` suffix accepted) into an aware datetime."""
    if not raw or not isinstance(raw, str):
        return None
    value = raw.strip()
    if value.endswith("Z") or value.endswith("z"):
        value = value[:-1] + "+00:00"
    try:
        parsed = datetime.datetime.fromisoformat(value)
    except ValueError:
        logger.warning("Could not parse ISO datetime: %r", raw)
        return None
    return ensure_aware(parsed)


def from_unix_timestamp(value) -> Optional[datetime.datetime]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    try:
        return datetime.datetime.fromtimestamp(value, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def isoformat(value: Optional[datetime.datetime]) -> Optional[str]:
    if value is None:
        return None
    return ensure_aware(value).isoformat()


def format_date(value: Optional[datetime.datetime]) -> str:
    """Short display date used in list rows (``2026-03-01``)."""
    if value is None:
        return ""
    return ensure_aware(value).strftime("%Y-%m-%d")


# ---------------------------------------------------------------------------
# Safe type conversions
# ---------------------------------------------------------------------------

def safe_int(value, default: int = 0) -> int:
    """Safely convert *value* to ``int``, returning *default* on failure."""
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (ValueError, TypeError):
        logger.warning("Could not convert %r to int, using default %s", value, default)
        return default


def optional_float(value) -> Optional[float]:
    """``float(value)`` for finite numbers, ``None`` for blanks and junk."""
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        parsed = float(value)
    except (ValueError, TypeError):
        return None
    if parsed != parsed or parsed in (float("inf"), float("-inf")):
        return None
    return parsed


def strict_int(value) -> Optional[int]:
    """Return *value* as ``int`` only when it is integral (``"3"``, ``3``, ``3.0``)."""
    if isinstance(value, bool):
        return None
    parsed = optional_float(value)
    if parsed is None or not parsed.is_integer():
        return None
    return int(parsed)


def parse_bool(value, default: bool = False) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value == 1
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in ("1", "true", "yes", "on"):
            return True
        if normalized in ("0", "false", "no", "off"):
            return False
    return default


def clean_text(value) -> Optional[str]:
    """Stripped string or ``None`` when empty."""
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def to_snake_case(key: str) -> str:
    key = re.sub(r"([a-z0-9])([A-Z])", r"\1_\2", key.strip())
    return re.sub(r"[\s-]+", "_", key).lower()
