"""Utility helpers for the BackLogus service."""

from __future__ import annotations

import logging
import re
import unicodedata
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from pathlib import PurePosixPath
from typing import Any
from urllib.parse import urlparse

logger = logging.getLogger(__name__)

# Largest integer a IEEE-754 double (and therefore JavaScript) represents exactly.
MAX_SAFE_INTEGER = 2**53 - 1

_UNSAFE_FILENAME_RE = re.compile(r"[^a-zA-Z0-9.-]")


def slugify(value: str) -> str:
    """Return a URL-friendly slug."""

    value = unicodedata.normalize("NFKD", value)
    value = value.encode("ascii", "ignore").decode("ascii")
    value = re.sub(r"[^a-zA-Z0-9]+", "-", value)
    value = value.strip("-")
    value = re.sub(r"-+", "-", value)
    return value.lower() or "backlogus"


def camelize(name: str) -> str:
    """Convert ``snake_case`` column names to the archive's ``camelCase`` keys."""

    head, *rest = name.split("_")
    return head + "".join(part[:1].upper() + part[1:] for part in rest)


def sanitize_filename(name: str, *, default_extension: str = ".jpg") -> str | None:
    """Reduce ``name`` to a flat, filesystem-safe filename."""

    base = PurePosixPath(name.replace("\\", "/")).name
    safe = _UNSAFE_FILENAME_RE.sub("_", base).lstrip(".")
    if not safe:
        return None
    if not PurePosixPath(safe).suffix:
        safe = f"{safe}{default_extension}"
    return safe


def filename_from_url(url: str | None) -> str | None:
    """Derive the cache filename for an image URL."""

    if not url:
        return None
    try:
        parsed = urlparse(url)
    except ValueError:
        return None
    if not parsed.scheme or not parsed.netloc:
        return None
    return sanitize_filename(parsed.path)


def to_json_safe(value: Any, *, field: str | None = None) -> Any:
    """Return ``value`` converted to a JSON-native representation."""

    if isinstance(value, bool) or value is None:
        return value
    if isinstance(value, int):
        if abs(value) > MAX_SAFE_INTEGER:
            # Python encodes the value exactly; JavaScript readers would round it.
            logger.warning(
                "Integer field %s exceeds 2^53 and may lose precision outside Python",
                field or "<unknown>",
            )
        return value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {str(key): to_json_safe(item, field=field) for key, item in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [to_json_safe(item, field=field) for item in value]
    return value


def parse_datetime(value: Any) -> datetime | None:
    """Parse an ISO-8601 timestamp from an archive into a naive UTC datetime."""

    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = f"{text[:-1]}+00:00"
        parsed = datetime.fromisoformat(text)
    else:
        raise ValueError(f"Unsupported timestamp value: {value!r}")
    if parsed.tzinfo is not None:
        offset = parsed.utcoffset()
        parsed = parsed.replace(tzinfo=None)
        if offset:
            parsed = parsed - offset
    return parsed
