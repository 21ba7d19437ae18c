"""Time helpers shared by the models and services."""

import datetime
import re

_DURATION_RE = re.compile(r"^\s*(\d+)\s*([smhd]?)\s*$", re.IGNORECASE)
_UNIT_SECONDS = {"": 1, "s": 1, "m": 60, "h": 3600, "d": 86400}


def utcnow() -> datetime.datetime:
    """Naive UTC now, the form every timestamp column stores."""
    return datetime.datetime.now(datetime.UTC).replace(tzinfo=None)


def to_naive_utc(value: datetime.datetime) -> datetime.datetime:
    if value.tzinfo is not None:
        value = value.astimezone(datetime.UTC).replace(tzinfo=None)
    return value


def parse_duration(value) -> datetime.timedelta:
    """Parse ``"15m"``, ``"24h"``, ``"30d"``, ``"90"`` (seconds) or a number.

    Raises:
        ValueError: if the value is not a recognised duration.
    """
    if isinstance(value, datetime.timedelta):
        return value
    if isinstance(value, bool):
        raise ValueError(f"Invalid duration: {value!r}")
    if isinstance(value, int | float):
        if value < 0:
            raise ValueError(f"Duration must not be negative: {value!r}")
        return datetime.timedelta(seconds=value)

    match = _DURATION_RE.match(str(value or ""))
    if not match:
        raise ValueError(f"Invalid duration: {value!r}")
    amount, unit = match.groups()
    return datetime.timedelta(seconds=int(amount) * _UNIT_SECONDS[unit.lower()])


def isoformat(value: datetime.datetime | None) -> str | None:
    return value.isoformat() if value else None
