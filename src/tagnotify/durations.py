"""
Calendar arithmetic for notification offsets and repeat cadences.

Everything here works on naive local wall-clock datetimes. Time zone
resolution happens before values reach these functions (see
``parse_instant``), so adding a day always means "same clock time on the
next calendar day".
"""

import re
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, tzinfo
from typing import Optional, Union

from dateutil.parser import isoparse
from dateutil.relativedelta import relativedelta

from .errors import InvalidDurationFormat, InvalidTimeFormat
from .shared import to_local_naive

DURATION_REGEX = re.compile(
    r"^(?P<sign>[+-])?P"
    r"(?:(?P<years>\d+)Y)?"
    r"(?:(?P<months>\d+)M)?"
    r"(?:(?P<weeks>\d+)W)?"
    r"(?:(?P<days>\d+)D)?"
    r"(?P<time>T"
    r"(?:(?P<hours>\d+)H)?"
    r"(?:(?P<minutes>\d+)M)?"
    r"(?:(?P<seconds>\d+)S)?"
    r")?$"
)
TIME_REGEX = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")
TIME_COMPONENT_REGEX = re.compile(r"T\d{2}|\d{1,2}:\d{2}")

CADENCES = ("none", "daily", "weekly", "monthly", "yearly")

_COMPONENTS = ("years", "months", "weeks", "days", "hours", "minutes", "seconds")


@dataclass(frozen=True)
class Duration:
    sign: int = 1
    years: int = 0
    months: int = 0
    weeks: int = 0
    days: int = 0
    hours: int = 0
    minutes: int = 0
    seconds: int = 0

    def __str__(self) -> str:
        return format_duration(self)

    @property
    def is_zero(self) -> bool:
        return not any(getattr(self, name) for name in _COMPONENTS)

    def as_relativedelta(self) -> relativedelta:
        return relativedelta(
            years=self.sign * self.years, months=self.sign * self.months
        )

    def as_timedelta(self) -> timedelta:
        return self.sign * timedelta(
            weeks=self.weeks,
            days=self.days,
            hours=self.hours,
            minutes=self.minutes,
            seconds=self.seconds,
        )


ZERO = Duration()


def parse_duration(s: str) -> Duration:
    """
    Parse a signed ISO 8601 style calendar duration such as '-P1D',
    'PT30M' or '+P1Y2M3W4DT5H6M7S'.

    At least one component must be present and a 'T' must be followed by
    at least one time component. A leading '-' negates every component.

    Raises:
        InvalidDurationFormat: if ``s`` does not match the grammar.
    """
    if not isinstance(s, str):
        raise InvalidDurationFormat(repr(s))
    text = s.strip()
    match = DURATION_REGEX.match(text)
    if not match:
        raise InvalidDurationFormat(s)
    parts = match.groupdict()
    if not any(parts[name] for name in _COMPONENTS):
        raise InvalidDurationFormat(s)
    if parts["time"] is not None and not any(
        parts[name] for name in ("hours", "minutes", "seconds")
    ):
        raise InvalidDurationFormat(s)
    return Duration(
        sign=-1 if parts["sign"] == "-" else 1,
        **{name: int(parts[name] or 0) for name in _COMPONENTS},
    )


def is_valid_duration(s: str) -> bool:
    try:
        parse_duration(s)
    except InvalidDurationFormat:
        return False
    return True


def format_duration(duration: Duration) -> str:
    """Render a Duration back into its canonical string form."""
    if duration.is_zero:
        return "PT0S"
    d = duration
    date_part = "".join(
        f"{value}{unit}"
        for value, unit in ((d.years, "Y"), (d.months, "M"), (d.weeks, "W"), (d.days, "D"))
        if value
    )
    time_part = "".join(
        f"{value}{unit}"
        for value, unit in ((d.hours, "H"), (d.minutes, "M"), (d.seconds, "S"))
        if value
    )
    sign = "-" if d.sign < 0 else ""
    return f"{sign}P{date_part}{'T' + time_part if time_part else ''}"


def apply_duration(instant: datetime, duration: Union[Duration, str]) -> datetime:
    """
    Add ``duration`` to ``instant``: years and months first, clamping the
    day of month to the last valid day (Jan 31 + P1M -> Feb 28), then weeks
    and days, then hours, minutes and seconds.

    Raises:
        InvalidDurationFormat: when ``duration`` is a malformed string.
    """
    if isinstance(duration, str):
        duration = parse_duration(duration)
    shifted = instant + duration.as_relativedelta()
    return shifted + duration.as_timedelta()


def _step(instant: datetime, cadence: str, count: int) -> datetime:
    if cadence == "daily":
        return instant + timedelta(days=count)
    if cadence == "weekly":
        return instant + timedelta(weeks=count)
    if cadence == "monthly":
        return instant + relativedelta(months=count)
    if cadence == "yearly":
        return instant + relativedelta(years=count)
    raise ValueError(f"Unknown repeat cadence: {cadence!r}")


def _estimate_steps(instant: datetime, cadence: str, reference: datetime) -> int:
    if cadence in ("daily", "weekly"):
        unit = timedelta(days=1 if cadence == "daily" else 7)
        return (reference - instant) // unit
    if cadence == "monthly":
        return (reference.year - instant.year) * 12 + reference.month - instant.month
    return reference.year - instant.year


def advance_to_next_occurrence(
    instant: datetime, cadence: str, reference: datetime
) -> Optional[datetime]:
    """
    Return the first ``instant + k * cadence`` (k >= 0) strictly after
    ``reference``.

    For ``none`` the instant itself is returned when it lies after
    ``reference`` and None otherwise. Monthly and yearly steps are always
    measured from the original instant, so the 31st clamps to the end of
    every shorter month without drifting to the 28th.
    """
    if cadence not in CADENCES:
        raise ValueError(f"Unknown repeat cadence: {cadence!r}")
    if instant > reference:
        return instant
    if cadence == "none":
        return None

    count = max(_estimate_steps(instant, cadence, reference), 0)
    candidate = _step(instant, cadence, count)
    while candidate <= reference:
        count += 1
        candidate = _step(instant, cadence, count)
    return candidate


def parse_time_of_day(value: str) -> time:
    match = TIME_REGEX.match(value.strip()) if isinstance(value, str) else None
    if not match:
        raise InvalidTimeFormat(value)
    return time(int(match.group(1)), int(match.group(2)))


def is_valid_time(value: str) -> bool:
    return isinstance(value, str) and TIME_REGEX.match(value) is not None


def combine_date_and_time(value: Union[date, datetime], hh_mm: str) -> datetime:
    """Replace the time of day of ``value`` with ``hh_mm``; seconds are zeroed."""
    when = parse_time_of_day(hh_mm)
    day = value.date() if isinstance(value, datetime) else value
    return datetime.combine(day, when)


def normalize_year_for_recurring(instant: datetime, reference: datetime) -> datetime:
    """
    Move ``instant`` into ``reference``'s year, or the following year when
    that would not lie after ``reference``. Feb 29 becomes Feb 28 in
    non-leap years.
    """
    moved = instant + relativedelta(year=reference.year)
    if moved <= reference:
        moved = instant + relativedelta(year=reference.year + 1)
    return moved


def has_time_component(value: str) -> bool:
    """True when a date string carries an explicit time of day."""
    return bool(TIME_COMPONENT_REGEX.search(value or ""))


def parse_instant(
    value: Union[str, date, datetime], zone: tzinfo | None = None
) -> tuple[datetime, bool]:
    """
    Parse an ISO 8601 date or date-time into a naive local datetime.

    Returns ``(instant, has_time)``. Aware values are converted into
    ``zone`` (the local zone by default) before the offset is dropped.

    Raises:
        ValueError: when ``value`` is not ISO 8601.
    """
    if isinstance(value, datetime):
        return to_local_naive(value, zone), True
    if isinstance(value, date):
        return datetime.combine(value, time()), False
    text = (value or "").strip()
    if not text:
        raise ValueError("empty date value")
    parsed = isoparse(text)
    return to_local_naive(parsed, zone), has_time_component(text)
