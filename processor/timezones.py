"""Wall-clock/UTC conversion for Airtable date fields."""
import enum
import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, Optional, TypeVar
from zoneinfo import ZoneInfo

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Bare date, date+time, date+time+seconds (optional fraction), optional trailing Z.
_DATE_RE = re.compile(
    r"^(\d{4})-(\d{2})-(\d{2})"
    r"(?:[T ](\d{2}):(\d{2})(?::(\d{2})(?:\.\d{1,6})?)?)?"
    r"Z?$"
)


class DateParseError(ValueError):
    """The input does not match any accepted date/time shape."""


class TimestampPolicy(str, enum.Enum):
    """How to read Airtable date fields that are labelled UTC."""
    # Values are studio wall-clock time mislabelled as UTC.
    LOCAL = "local"
    # Values are already correct UTC instants.
    UTC = "utc"

    @classmethod
    def parse(cls, value: str) -> "TimestampPolicy":
        try:
            return cls(value.strip().lower())
        except ValueError:
            raise ValueError(
                f"Unknown timestamp policy {value!r}; expected one of "
                f"{', '.join(p.value for p in cls)}"
            ) from None


def parse_date_parts(value: str) -> datetime:
    """
    Parse numeric components into a naive datetime, ignoring any zone marker.

    Raises:
        DateParseError: If the shape is not recognized or a component is out of range
    """
    text = str(value).strip()
    match = _DATE_RE.match(text)
    if not match:
        raise DateParseError(f"Unrecognized date format: {value!r}")

    year, month, day = (int(match.group(i)) for i in (1, 2, 3))
    hour, minute, second = (int(match.group(i) or 0) for i in (4, 5, 6))
    try:
        return datetime(year, month, day, hour, minute, second)
    except ValueError as e:
        raise DateParseError(f"Invalid date components in {value!r}: {e}") from e


def local_wall_clock_to_utc(value: str, tz_name: str) -> datetime:
    """
    Convert a wall-clock date string in tz_name to the UTC instant it names.

    The numeric components are first read as if they were UTC. That guess is
    rendered in the target zone; the difference between the rendered wall
    clock and the guess is the zone's offset at that instant, daylight saving
    included, and subtracting it yields the real instant. Just after a
    daylight-saving change the guess and the real instant can sit on
    different sides of the transition, so the offset is taken again at the
    corrected instant.

    Args:
        value: Date string such as "2026-07-15 10:30" or "2026-07-15T10:30:00.000Z"
        tz_name: IANA zone name, e.g. "America/Toronto"

    Returns:
        Aware UTC datetime

    Raises:
        DateParseError: If value cannot be parsed
    """
    naive = parse_date_parts(value)
    guess = naive.replace(tzinfo=timezone.utc)

    zone = ZoneInfo(tz_name)
    offset = _zone_offset(guess, zone)
    instant = guess - offset

    corrected = _zone_offset(instant, zone)
    if corrected != offset:
        instant = guess - corrected
    return instant


def _zone_offset(moment: datetime, zone: ZoneInfo) -> timedelta:
    """UTC offset of zone at moment, rounded to whole minutes."""
    rendered = moment.astimezone(zone).replace(tzinfo=None)
    naive_utc = moment.astimezone(timezone.utc).replace(tzinfo=None)
    return timedelta(minutes=round((rendered - naive_utc).total_seconds() / 60))


def resolve_timestamp(value: str, tz_name: str, policy: TimestampPolicy) -> datetime:
    """Interpret an Airtable date field according to the configured policy."""
    if policy is TimestampPolicy.UTC:
        return parse_date_parts(value).replace(tzinfo=timezone.utc)
    return local_wall_clock_to_utc(value, tz_name)


def format_utc_z(value: datetime) -> str:
    """Render as YYYY-MM-DDTHH:MM:SSZ."""
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_iso_datetime(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 string with offset or Z into an aware datetime, or None."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def pick_nearest(
    candidates: Iterable[T],
    target: datetime,
    tolerance: timedelta,
    key: Callable[[T], Optional[datetime]],
) -> Optional[T]:
    """
    Pick the candidate whose timestamp is closest to target within tolerance.

    Candidates whose key is None are ignored; ties keep the earlier candidate.
    """
    best = None
    best_distance = None
    for candidate in candidates:
        moment = key(candidate)
        if moment is None:
            continue
        distance = abs(moment - target)
        if distance > tolerance:
            continue
        if best_distance is None or distance < best_distance:
            best, best_distance = candidate, distance
    return best


def local_date_string(now_utc: datetime, tz_name: str, offset_days: int = 0) -> str:
    """Calendar date (YYYY-MM-DD) in tz_name, shifted by offset_days."""
    local = now_utc.astimezone(ZoneInfo(tz_name)).date() + timedelta(days=offset_days)
    return local.isoformat()
