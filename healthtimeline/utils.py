import re
from datetime import datetime, timezone
from typing import Union

from .errors import ValidationError
from .settings.config import settings

_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9._-]")


def clean_filename(name: str) -> str:
    """Strip directory parts and replace anything outside ``[A-Za-z0-9._-]``."""
    name = (name or "").replace("\\", "/").rsplit("/", 1)[-1]
    name = _UNSAFE_FILENAME_CHARS.sub("_", name)
    return name or "document"


def summarize(text: str, limit: int | None = None) -> str:
    limit = limit or settings.SUMMARY_MAX_CHARS
    text = (text or "").strip()
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Union[str, datetime, None], *, field: str = "event_time") -> datetime:
    """Coerce an ISO-8601 string or datetime into an aware UTC datetime."""
    if isinstance(value, datetime):
        ts = value
    elif isinstance(value, str) and value.strip():
        raw = value.strip()
        if raw.endswith("Z"):
            raw = raw[:-1] + "+00:00"
        try:
            ts = datetime.fromisoformat(raw)
        except ValueError:
            raise ValidationError(f"{field} is not a valid timestamp", code="invalid_timestamp") from None
    else:
        raise ValidationError(f"{field} is required", code="invalid_timestamp")
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)
