from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

from config.env import BUSINESS_TIMEZONE
from utils.errors import PartialDataError

LOCAL_TZ = ZoneInfo(BUSINESS_TIMEZONE)

# Anything above this is an epoch in milliseconds rather than seconds.
_EPOCH_MS_THRESHOLD = 10_000_000_000


def utcnow() -> datetime:
    """Naive UTC, the way timestamps are stored in Mongo."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_timestamp(value) -> datetime | None:
    """
    Normalise a stored timestamp to an aware UTC datetime.

    Returns None when the value is absent and raises PartialDataError when it
    is present but unusable.
    """
    if value is None or value == "":
        return None

    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    if isinstance(value, dict) and "_seconds" in value:
        value = value["_seconds"]

    if isinstance(value, bool):
        raise PartialDataError(f"Unusable timestamp: {value!r}")

    if isinstance(value, (int, float)):
        seconds = value / 1000 if value > _EPOCH_MS_THRESHOLD else value
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            raise PartialDataError(f"Timestamp out of range: {value!r}")

    if isinstance(value, str):
        raw = value.strip()
        if raw.endswith("Z"):
            raw = raw[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(raw)
        except ValueError:
            raise PartialDataError(f"Unparseable timestamp: {value!r}")
        if parsed.tzinfo is None:
            return parsed.replace(tzinfo=timezone.utc)
        return parsed.astimezone(timezone.utc)

    raise PartialDataError(f"Unsupported timestamp type: {type(value).__name__}")


def to_local(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(LOCAL_TZ)


def local_day_start(day: date) -> datetime:
    return datetime.combine(day, time.min, tzinfo=LOCAL_TZ)


def window_starts(as_of: datetime) -> dict[str, datetime]:
    """
    Local-midnight starts of the reporting windows that end at `as_of`.
    Weeks start on Monday.
    """
    today = to_local(as_of).date()
    return {
        "today": local_day_start(today),
        "this_week": local_day_start(today - timedelta(days=today.weekday())),
        "this_month": local_day_start(today.replace(day=1)),
    }


def month_key(day: date) -> str:
    return f"{day.year:04d}-{day.month:02d}"


def previous_months(day: date, count: int) -> list[str]:
    keys = []
    year, month = day.year, day.month
    for _ in range(count):
        keys.append(f"{year:04d}-{month:02d}")
        month -= 1
        if month == 0:
            month = 12
            year -= 1
    return list(reversed(keys))


def isoformat(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()
