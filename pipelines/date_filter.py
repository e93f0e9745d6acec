"""Free-text event date parsing, event-window checks and date-aware query variants."""

from __future__ import annotations

import logging
import re
from collections.abc import Sequence
from datetime import UTC, date, datetime, timedelta

logger = logging.getLogger("pipelines.date_filter")

MONTHS = (
    "January",
    "February",
    "March",
    "April",
    "May",
    "June",
    "July",
    "August",
    "September",
    "October",
    "November",
    "December",
)
MONTH_ABBREVIATIONS = ("Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")
QUARTERS = {
    "Q1": ("January", "February", "March"),
    "Q2": ("April", "May", "June"),
    "Q3": ("July", "August", "September"),
    "Q4": ("October", "November", "December"),
}

_MONTH_LOOKUP = {name.lower(): index for index, name in enumerate(MONTHS, start=1)}
_MONTH_LOOKUP.update({abbr.lower(): index for index, abbr in enumerate(MONTH_ABBREVIATIONS, start=1)})
_MONTH_LOOKUP["sept"] = 9

_MONTH_TOKEN = (
    r"(Jan(?:uary)?|Feb(?:ruary)?|Mar(?:ch)?|Apr(?:il)?|May|June?|July?|Aug(?:ust)?"
    r"|Sep(?:t(?:ember)?)?|Oct(?:ober)?|Nov(?:ember)?|Dec(?:ember)?)\.?"
)
_ORDINAL = r"(?:st|nd|rd|th)?"
MONTH_DAY_YEAR = re.compile(rf"\b{_MONTH_TOKEN}\s+(\d{{1,2}}){_ORDINAL},?\s+(\d{{4}})\b", re.IGNORECASE)
DAY_MONTH_YEAR = re.compile(rf"\b(\d{{1,2}}){_ORDINAL}\s+{_MONTH_TOKEN},?\s+(\d{{4}})\b", re.IGNORECASE)
MONTH_YEAR = re.compile(rf"\b{_MONTH_TOKEN},?\s+(\d{{4}})\b", re.IGNORECASE)
NUMERIC_MDY = re.compile(r"\b(\d{1,2})[/-](\d{1,2})[/-](\d{4})\b")
ISO_DATE = re.compile(r"\b(\d{4})-(\d{2})-(\d{2})\b")

_MIN_YEAR = 1900
_MAX_YEAR = 2100


def _build_date(year: int, month: int, day: int) -> date | None:
    if not _MIN_YEAR <= year <= _MAX_YEAR:
        return None
    try:
        return date(year, month, day)
    except ValueError:
        return None


def _month_number(token: str) -> int:
    return _MONTH_LOOKUP[token.rstrip(".").lower()]


def extract_dates(text: str | None) -> list[date]:
    """Return every parsable calendar date in ``text`` in order of appearance.

    Impossible dates such as February 30 are skipped rather than coerced.
    """
    if not text:
        return []
    found: list[tuple[int, int, date | None]] = []
    consumed: list[tuple[int, int]] = []

    def claim(match: re.Match[str], value: date | None) -> None:
        start, end = match.span()
        if any(start < used_end and used_start < end for used_start, used_end in consumed):
            return
        consumed.append((start, end))
        found.append((start, end, value))

    for match in ISO_DATE.finditer(text):
        year, month, day = (int(part) for part in match.groups())
        claim(match, _build_date(year, month, day))
    for match in MONTH_DAY_YEAR.finditer(text):
        claim(match, _build_date(int(match.group(3)), _month_number(match.group(1)), int(match.group(2))))
    for match in DAY_MONTH_YEAR.finditer(text):
        claim(match, _build_date(int(match.group(3)), _month_number(match.group(2)), int(match.group(1))))
    for match in NUMERIC_MDY.finditer(text):
        claim(match, _build_date(int(match.group(3)), int(match.group(1)), int(match.group(2))))
    for match in MONTH_YEAR.finditer(text):
        claim(match, _build_date(int(match.group(2)), _month_number(match.group(1)), 1))

    found.sort(key=lambda item: item[0])
    return [value for _, _, value in found if value is not None]


def parse_event_date(text: str | None) -> date | None:
    """Parse the first date phrase in ``text``; ``None`` when nothing valid is found."""
    dates = extract_dates(text)
    return dates[0] if dates else None


def parse_date_range(value: str | None) -> tuple[date, date] | None:
    """Parse ``"YYYY-MM-DD to YYYY-MM-DD"`` into an inclusive interval."""
    if not value or not value.strip():
        return None
    parts = [part.strip() for part in value.split(" to ")]
    if len(parts) != 2:
        raise ValueError(f"Event date range must look like 'YYYY-MM-DD to YYYY-MM-DD': {value!r}")
    start, end = (date.fromisoformat(part) for part in parts)
    if start > end:
        raise ValueError(f"Event date range starts after it ends: {value!r}")
    return start, end


def months_for_period(period: str) -> tuple[str, ...]:
    """Expand a month name/abbreviation or quarter tag into full month names."""
    token = period.strip()
    quarter = QUARTERS.get(token.upper())
    if quarter is not None:
        return quarter
    index = _MONTH_LOOKUP.get(token.rstrip(".").lower())
    if index is None:
        raise ValueError(f"Unknown month or quarter: {period!r}")
    return (MONTHS[index - 1],)


def configured_periods(months: Sequence[str], quarters: Sequence[str]) -> list[str]:
    """Validated, de-duplicated list of month and quarter tags in configured order."""
    periods: list[str] = []
    for period in [*months, *quarters]:
        months_for_period(period)
        if period not in periods:
            periods.append(period)
    return periods


class DateRelevanceFilter:
    """Decides whether parsed event dates fall inside the target window."""

    def __init__(
        self,
        event_range: tuple[date, date] | None = None,
        *,
        forward_window_days: int = 365,
        today: date | None = None,
    ) -> None:
        if event_range is not None and event_range[0] > event_range[1]:
            raise ValueError("event_range start must not be after its end.")
        if forward_window_days < 1:
            raise ValueError("forward_window_days must be >= 1")
        self.event_range = event_range
        self.forward_window = timedelta(days=forward_window_days)
        self._today = today

    @property
    def today(self) -> date:
        return self._today or datetime.now(tz=UTC).date()

    def is_valid_event_date(self, value: date) -> bool:
        """Inclusive check against the configured event interval; always true without one."""
        if self.event_range is None:
            return True
        start, end = self.event_range
        return start <= value <= end

    def is_future_event_date(self, value: date) -> bool:
        """Strictly after today, inside the forward window and the event interval."""
        today = self.today
        if not today < value <= today + self.forward_window:
            return False
        return self.is_valid_event_date(value)

    def first_future_date(self, text: str | None) -> date | None:
        for candidate in extract_dates(text):
            if self.is_future_event_date(candidate):
                return candidate
        return None

    def generate_date_aware_variants(self, base_query: str, period: str, *, year: int | None = None) -> list[str]:
        """Expand ``base_query`` into quoted month phrasings for a month or quarter period."""
        target_year = year or self.today.year
        variants: list[str] = []
        for month in months_for_period(period):
            abbreviation = MONTH_ABBREVIATIONS[MONTHS.index(month)]
            for phrase in (f"{month} {target_year}", month, f"{abbreviation} {target_year}", abbreviation):
                variant = f'{base_query} "{phrase}"'
                if variant not in variants:
                    variants.append(variant)
        return variants
