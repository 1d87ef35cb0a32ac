from __future__ import annotations

import re
from datetime import date, datetime, timezone
from typing import Optional, Union

from dateutil import parser as date_parser
from dateutil.relativedelta import relativedelta

from .errors import ConfigurationError

DateLike = Union[str, int, float, datetime, date, None]

_RELATIVE_RE = re.compile(r"^(\d+)\s?(minute|second|day|hour|month|year|week)s?$", re.IGNORECASE)
_EPOCH_DEFAULT = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _from_epoch(value: float) -> datetime:
    # 13+ digits are milliseconds, anything shorter is seconds
    if len(str(int(abs(value)))) >= 13:
        value = value / 1000
    return datetime.fromtimestamp(value, tz=timezone.utc)


def to_datetime(value: DateLike) -> Optional[datetime]:
    """Convert an absolute date (ISO string, year, epoch s/ms, datetime) to an aware UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return _utc(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return _from_epoch(value)

    text = str(value).strip()
    if text.isdigit() and len(text) >= 9:
        return _from_epoch(int(text))
    try:
        return _utc(date_parser.parse(text, default=_EPOCH_DEFAULT))
    except (ValueError, OverflowError) as exc:
        raise ConfigurationError(f"Invalid date value: {value!r}") from exc


def parse_time_unit(value: DateLike, now: Optional[datetime] = None) -> Optional[datetime]:
    """Resolve an absolute date or a relative offset ("3 days", "today", "yesterday")."""
    if value is None or value == "":
        return None

    now = _utc(now) if now is not None else datetime.now(timezone.utc)

    if isinstance(value, str):
        text = value.strip().lower()
        if text in ("today", "yesterday"):
            start = now.replace(hour=0, minute=0, second=0, microsecond=0)
            return start if text == "today" else start - relativedelta(days=1)

        matches = _RELATIVE_RE.match(text)
        if matches and int(matches.group(1)):
            amount, unit = int(matches.group(1)), matches.group(2).lower()
            return now - relativedelta(**{f"{unit}s": amount})

    return to_datetime(value)


class DateWindow:
    """Inclusive [min_bound, max_bound] filter for item timestamps.

    min_bound is the oldest accepted instant, max_bound the newest. An unset
    bound is open on that side.
    """

    def __init__(self, min_bound: Optional[datetime] = None, max_bound: Optional[datetime] = None) -> None:
        if min_bound is not None and max_bound is not None and max_bound < min_bound:
            raise ConfigurationError(
                f"Minimum date {min_bound.isoformat()} needs to be older than maximum date {max_bound.isoformat()}"
            )
        self._min = min_bound
        self._max = max_bound

    @classmethod
    def from_bounds(cls, min_value: DateLike = None, max_value: DateLike = None, now: Optional[datetime] = None) -> "DateWindow":
        return cls(parse_time_unit(min_value, now), parse_time_unit(max_value, now))

    @property
    def min_bound(self) -> Optional[datetime]:
        return self._min

    @property
    def max_bound(self) -> Optional[datetime]:
        return self._max

    @property
    def is_bounded(self) -> bool:
        """Both sides set."""
        return self._min is not None and self._max is not None

    def compare(self, value: DateLike) -> bool:
        try:
            moment = to_datetime(value)
        except ConfigurationError:
            moment = None
        if moment is None:
            return self._min is None and self._max is None
        return (self._min is None or self._min <= moment) and (self._max is None or moment <= self._max)

    def describe(self) -> dict:
        return {
            "min": self._min.isoformat() if self._min else None,
            "max": self._max.isoformat() if self._max else None,
        }

    def __repr__(self) -> str:
        return f"DateWindow(min={self._min!r}, max={self._max!r})"
