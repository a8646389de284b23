from datetime import datetime, timezone, timedelta
import re

# e.g., "20s", "5m", "1h30m", "2d3h", "90m", "  7d  "
DELAY_RE = re.compile(r"(?i)^\s*(?:(\d+)\s*d)?\s*(?:(\d+)\s*h)?\s*(?:(\d+)\s*m)?\s*(?:(\d+)\s*s)?\s*$")


def parse_delay_to_seconds(s: str) -> int:
    """
    Parse duration strings like '20s', '5m', '1h30m', '2d3h', '7d'.
    Returns total seconds (int). Raises ValueError on bad input or zero.
    """
    if not s:
        raise ValueError("duration string is empty")
    m = DELAY_RE.match(s)
    if not m:
        raise ValueError(f"Invalid duration format: {s!r}")
    d, h, m_, s_ = m.groups()
    total = 0
    if d:  total += int(d) * 86400
    if h:  total += int(h) * 3600
    if m_: total += int(m_) * 60
    if s_: total += int(s_)
    if total <= 0:
        raise ValueError("duration must be > 0 seconds")
    return total


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(dt: datetime) -> str:
    """Fixed-width UTC timestamp like '2025-11-06T09:12:34.123456Z'.

    Always carries microseconds so stored values sort lexically in time order.
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds").replace("+00:00", "Z")


def parse_iso(value: str) -> datetime:
    """Parse an ISO timestamp; naive values are taken as UTC."""
    try:
        dt = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except (AttributeError, ValueError) as e:
        raise ValueError(f"Invalid timestamp: {value!r} ({e})")
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def iso_minutes_from(now: datetime, minutes: float) -> str:
    return to_iso(now + timedelta(minutes=minutes))


def truncate_to_hour(dt: datetime) -> datetime:
    """Start of the UTC hour containing `dt`; naive values are taken as UTC."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).replace(minute=0, second=0, microsecond=0)


def backoff_minutes(retry_count: int, base: int = 2) -> int:
    """Delay before retry number `retry_count` (1-based): 2, 4, 8 ... minutes."""
    return base ** retry_count
