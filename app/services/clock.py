"""
Local delivery time → UTC instant conversion.

Recipients store a wall-clock preference ("21:00") and an IANA timezone
name. The scheduler needs the exact UTC instant of that wall-clock time on
a given calendar date, which depends on the offset in force *at that local
time* (not "now"). ``zoneinfo`` answers that question directly through the
PEP 495 ``fold`` attribute:

* repeated hour (fall-back): ``fold=0`` selects the earlier occurrence;
* skipped hour (spring-forward): the wall time does not exist; we resolve
  it to the first valid instant after the transition.

Everything here is pure – no I/O, no clock reads.
"""

from __future__ import annotations

import re
from datetime import date, datetime, time, timedelta, timezone
from functools import lru_cache
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from app.types.errors import InvalidTimeOfDay, UnknownTimezone

UTC = timezone.utc

_TIME_OF_DAY = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)$")


def parse_time_of_day(value: str) -> time:
    """Parse ``H:MM`` or ``HH:MM`` into a :class:`datetime.time`."""
    match = _TIME_OF_DAY.match(value.strip()) if isinstance(value, str) else None
    if not match:
        raise InvalidTimeOfDay(f"time of day '{value}' is not in HH:MM format")
    return time(int(match.group(1)), int(match.group(2)))


@lru_cache(maxsize=256)
def get_zone(name: str) -> ZoneInfo:
    """Return the ZoneInfo for *name*; never falls back to UTC."""
    if not isinstance(name, str) or not name.strip():
        raise UnknownTimezone("timezone name is empty")
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise UnknownTimezone(f"timezone '{name}' is not a valid Olson timezone string") from exc


def _is_skipped(naive: datetime, tz: ZoneInfo) -> bool:
    aware = naive.replace(tzinfo=tz)
    round_trip = aware.astimezone(UTC).astimezone(tz).replace(tzinfo=None)
    return round_trip != naive


def _first_instant_after_gap(naive: datetime, tz: ZoneInfo) -> datetime:
    # fold=1 maps a gap time with the post-transition offset (lands before
    # the transition), fold=0 with the pre-transition one (lands after it).
    lo = naive.replace(tzinfo=tz, fold=1).astimezone(UTC)
    hi = naive.replace(tzinfo=tz, fold=0).astimezone(UTC)
    target_offset = hi.astimezone(tz).utcoffset()
    while hi - lo > timedelta(seconds=1):
        mid = lo + (hi - lo) / 2
        if mid.astimezone(tz).utcoffset() == target_offset:
            hi = mid
        else:
            lo = mid
    # transitions fall on whole seconds
    return hi.replace(microsecond=0)


def localize(naive: datetime, timezone_name: str) -> datetime:
    """Resolve a naive local wall-clock datetime to an aware UTC instant."""
    tz = get_zone(timezone_name)
    naive = naive.replace(tzinfo=None, fold=0)
    if _is_skipped(naive, tz):
        return _first_instant_after_gap(naive, tz)
    return naive.replace(tzinfo=tz).astimezone(UTC)


def to_utc(local_time_of_day: str, timezone_name: str, target_date: date) -> datetime:
    """
    Convert ``local_time_of_day`` on ``target_date`` in ``timezone_name`` to UTC.

    >>> to_utc("21:00", "America/Los_Angeles", date(2024, 7, 1)).isoformat()
    '2024-07-02T04:00:00+00:00'

    Raises ``InvalidTimeOfDay`` / ``UnknownTimezone`` on bad input.
    """
    wall = parse_time_of_day(local_time_of_day)
    return localize(datetime.combine(target_date, wall), timezone_name)


def local_day_bounds(timezone_name: str, target_date: date) -> tuple[datetime, datetime]:
    """UTC ``[start, end)`` of the calendar day ``target_date`` in *timezone_name*."""
    start = localize(datetime.combine(target_date, time(0, 0)), timezone_name)
    end = localize(datetime.combine(target_date + timedelta(days=1), time(0, 0)), timezone_name)
    return start, end


def local_date(instant: datetime, timezone_name: str) -> date:
    """Calendar date of a UTC *instant* as seen in *timezone_name*."""
    return instant.astimezone(get_zone(timezone_name)).date()
