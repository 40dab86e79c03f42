import re
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

_COMPACT_DURATION = re.compile(r"^(?:(\d+)d)?(?:(\d+)h)?(?:(\d+)m)?(?:(\d+(?:\.\d+)?)s)?$")
_ISO_DURATION = re.compile(
    r"^P(?:(\d+)D)?(?:T(?:(\d+)H)?(?:(\d+)M)?(?:(\d+(?:\.\d+)?)S)?)?$"
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_token() -> str:
    return uuid.uuid4().hex


def as_utc(value: datetime) -> datetime:
    """Naive datetimes are taken to be UTC already."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def iso(value: datetime) -> str:
    # fixed width so stored timestamps compare correctly as text
    return as_utc(value).isoformat(timespec="microseconds")


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return as_utc(datetime.fromisoformat(value.strip().replace("Z", "+00:00")))


def parse_duration(value: Optional[str]) -> Optional[timedelta]:
    """
    Accepts plain seconds ("90"), compact units ("1h30m", "45s", "2d")
    or ISO 8601 durations ("PT5M"). Raises ValueError otherwise.
    """
    if value is None:
        return None
    text = value.strip()
    if not text:
        raise ValueError("empty duration")
    try:
        return timedelta(seconds=float(text))
    except ValueError:
        pass
    m = _ISO_DURATION.match(text.upper())
    if m is None or not any(m.groups()):
        m = _COMPACT_DURATION.match(text.lower())
    if m is None or not any(m.groups()):
        raise ValueError(f"invalid duration: {value!r}")
    days, hours, minutes, seconds = (float(g) if g else 0.0 for g in m.groups())
    return timedelta(days=days, hours=hours, minutes=minutes, seconds=seconds)
