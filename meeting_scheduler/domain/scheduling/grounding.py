"""
Calendar grounding for reply interpretation

Relative day references ("Monday", "next Thursday") are resolved against an
explicit weekday → date table built from the server clock in the request's
timezone, and every instant the interpreter returns is reconciled with it.
"""

import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Iterable, List, Optional

from ...config import BUSINESS_HOURS_END, BUSINESS_HOURS_START, GROUNDING_DAYS
from ...utils.datetime_utils import to_iso, to_local, utcnow

WEEKDAYS = ["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]

_WEEKDAY_ALIASES = {
    "monday": "monday",
    "mon": "monday",
    "tuesday": "tuesday",
    "tue": "tuesday",
    "tues": "tuesday",
    "wednesday": "wednesday",
    "wed": "wednesday",
    "thursday": "thursday",
    "thu": "thursday",
    "thur": "thursday",
    "thurs": "thursday",
    "friday": "friday",
    "fri": "friday",
    "saturday": "saturday",
    "sunday": "sunday",
}

_WEEKDAY_PATTERN = re.compile(r"\b(" + "|".join(sorted(_WEEKDAY_ALIASES, key=len, reverse=True)) + r")\b", re.I)


_MONTHS = r"(jan|feb|mar|apr|may|jun|jul|aug|sep|sept|oct|nov|dec)[a-z]*\.?"
_EXPLICIT_DATE_PATTERNS = [
    re.compile(r"\b" + _MONTHS + r"\s+\d{1,2}\b", re.I),
    re.compile(r"\b\d{1,2}(st|nd|rd|th)?\s+(of\s+)?" + _MONTHS, re.I),
    re.compile(r"\b\d{1,2}(st|nd|rd|th)\b", re.I),
    re.compile(r"\b\d{1,2}/\d{1,2}\b"),
    re.compile(r"\b\d{4}-\d{2}-\d{2}\b"),
]
_LATER_WEEK_PATTERN = re.compile(
    r"\b(next|following)\s+week\b|\bweek\s+after\b|\bin\s+(two|2|three|3)\s+weeks\b", re.I
)
_QUOTE_HEADER_PATTERN = re.compile(r"^\s*(on\s.+\swrote:|-+\s*original message\s*-+|from:\s.+)\s*$", re.I)


def strip_quoted(text: str) -> str:
    """The sender's own words: quoted lines and everything after a reply header are dropped"""
    own = []
    for line in (text or "").splitlines():
        if _QUOTE_HEADER_PATTERN.match(line):
            break
        if line.lstrip().startswith(">"):
            continue
        own.append(line)
    return "\n".join(own)


def mentioned_weekdays(text: str) -> set[str]:
    """Weekday names (full or common abbreviations) mentioned in free text"""
    return {_WEEKDAY_ALIASES[m.lower()] for m in _WEEKDAY_PATTERN.findall(text or "")}


def names_explicit_date(text: str) -> bool:
    return any(p.search(text or "") for p in _EXPLICIT_DATE_PATTERNS)


def names_later_week(text: str) -> bool:
    return bool(_LATER_WEEK_PATTERN.search(text or ""))


def year_guidance(today: date) -> str:
    """Explicit year-disambiguation text for the months around the year boundary"""
    next_year = today.year + 1
    if today.month == 12:
        return (
            f"CRITICAL: We are in December {today.year}. ANY date in January, February, or March "
            f"MUST use year {next_year}. All dates must be in the FUTURE."
        )
    if today.month == 1:
        return f"We are in January {today.year}. All dates must be in the FUTURE from today."
    if today.month >= 10:
        return (
            f"Note: Today is in late {today.year}. If they mention January/February/March "
            f"without a year, use {next_year}."
        )
    return f"All dates are in {today.year} unless a later year is stated. All dates must be in the FUTURE."


@dataclass(frozen=True)
class GroundingEntry:
    day: date

    @property
    def weekday(self) -> str:
        return WEEKDAYS[self.day.weekday()]

    @property
    def label(self) -> str:
        return f"{self.day.strftime('%A, %B')} {self.day.day}, {self.day.year}"


class GroundingTable:
    """Weekday → concrete date mapping for a fixed lookahead window"""

    def __init__(self, today: date, timezone: str, days: int = GROUNDING_DAYS):
        self.today = today
        self.timezone = timezone
        self.entries: List[GroundingEntry] = [GroundingEntry(today + timedelta(days=i)) for i in range(days)]

    @classmethod
    def for_now(cls, timezone: str, now: Optional[datetime] = None, days: int = GROUNDING_DAYS) -> "GroundingTable":
        """Build the table from the current UTC instant, seen in the request's timezone"""
        local_today = to_local(now or utcnow(), timezone).date()
        return cls(local_today, timezone, days)

    @property
    def first_day(self) -> date:
        return self.entries[0].day

    @property
    def last_day(self) -> date:
        return self.entries[-1].day

    def contains(self, day: date) -> bool:
        return self.first_day <= day <= self.last_day

    def dates_for(self, weekday: str) -> List[date]:
        weekday = _WEEKDAY_ALIASES.get(weekday.lower(), weekday.lower())
        return [e.day for e in self.entries if e.weekday == weekday]

    def resolve(self, weekday: str) -> Optional[date]:
        """The next occurrence of a weekday strictly after today ("Monday" said on a Monday is next week)"""
        for day in self.dates_for(weekday):
            if day > self.today:
                return day
        return None

    @property
    def year_guidance(self) -> str:
        return year_guidance(self.today)

    def render(self) -> str:
        """Prompt block listing every day in the window"""
        lines = [f"TODAY: {GroundingEntry(self.today).label} ({self.timezone})", "", "DATE REFERENCE TABLE:"]
        for index, entry in enumerate(self.entries):
            marker = " (today)" if index == 0 else " (tomorrow)" if index == 1 else ""
            lines.append(f"- {entry.weekday.capitalize()} = {entry.day.isoformat()}{marker}")
        lines.extend(["", self.year_guidance])
        return "\n".join(lines)

    def reconcile(
        self,
        instant: datetime,
        reply_text: str,
        now: Optional[datetime] = None,
        offered: Iterable[str] = (),
    ) -> Optional[str]:
        """
        Check a parsed naive-UTC instant against the table.
        Returns None when it is consistent, otherwise the reason it is not.

        A bare weekday ("Monday at noon") must land on the date the table
        resolves it to, unless the sender also wrote an explicit date or a
        later week, or the instant is one of the times we offered.
        """
        now = now or utcnow()
        if instant <= now:
            return f"{instant.isoformat()}Z is not in the future"

        local = to_local(instant, self.timezone)
        day = local.date()
        if not self.contains(day):
            return (
                f"{day.isoformat()} is outside the grounding window "
                f"{self.first_day.isoformat()}..{self.last_day.isoformat()}"
            )

        weekday = WEEKDAYS[local.weekday()]
        if local.weekday() >= 5:
            return f"{day.isoformat()} is a {weekday.capitalize()}, outside business days"
        minutes = local.hour * 60 + local.minute
        if minutes < BUSINESS_HOURS_START * 60 or minutes >= BUSINESS_HOURS_END * 60:
            return (
                f"{local.strftime('%H:%M')} local is outside business hours "
                f"{BUSINESS_HOURS_START:02d}:00-{BUSINESS_HOURS_END:02d}:00"
            )

        own_text = strip_quoted(reply_text)
        named = mentioned_weekdays(own_text)
        if not named:
            return None
        if weekday not in named:
            return f"{day.isoformat()} is a {weekday.capitalize()} but the reply mentions {', '.join(sorted(named))}"

        if to_iso(instant) in set(offered) or names_explicit_date(own_text) or names_later_week(own_text):
            return None
        expected = self.resolve(weekday)
        if day != expected:
            return f"{weekday.capitalize()} resolves to {expected.isoformat() if expected else 'no date'}, not {day.isoformat()}"
        return None
