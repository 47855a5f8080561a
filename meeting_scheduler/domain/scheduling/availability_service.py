"""
Availability Checker

Free/busy lookups for internal attendees via the calendar provider's getSchedule
call. availabilityView digits: 0 free, 1 tentative, 2 busy, 3 out of office,
4 working elsewhere. Attendees missing from the response or reported with an
error are "unknown", which never counts as available.
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Dict, Iterable, List, Optional

from ...config import (
    AVAILABILITY_INTERVAL_MINUTES,
    BUSINESS_HOURS_END,
    BUSINESS_HOURS_START,
    MAX_SLOTS_PER_DAY,
)
from ...services.graph_client import ProviderError
from ...utils.datetime_utils import local_to_utc, to_iso, to_local, utcnow

logger = logging.getLogger(__name__)

FREE = "free"
TENTATIVE = "tentative"
BUSY = "busy"
OOF = "oof"
WORKING_ELSEWHERE = "working_elsewhere"
UNKNOWN = "unknown"

AVAILABILITY_CODES = {"0": FREE, "1": TENTATIVE, "2": BUSY, "3": OOF, "4": WORKING_ELSEWHERE}
AVAILABLE_STATES = {FREE, TENTATIVE, WORKING_ELSEWHERE}

# Worst status wins when a slot spans several view intervals
_SEVERITY = [FREE, WORKING_ELSEWHERE, TENTATIVE, BUSY, OOF, UNKNOWN]

# Start hours tried first on each day, rotated so proposals vary across days
_PREFERRED_HOURS = [10, 14, 11, 15, 9, 13, 16, 12]


@dataclass
class AttendeeAvailability:
    email: str
    status: str
    busy_blocks: List[str] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def is_available(self) -> bool:
        return self.status in AVAILABLE_STATES


@dataclass
class AvailabilityResult:
    """Ephemeral availability for one slot; never persisted"""

    start: datetime
    end: datetime
    attendees: Dict[str, AttendeeAvailability] = field(default_factory=dict)
    error: Optional[str] = None
    checked_at: datetime = field(default_factory=utcnow)

    @property
    def is_available(self) -> bool:
        """Usable for confirmation only if the call succeeded and every attendee is available"""
        return self.error is None and bool(self.attendees) and all(a.is_available for a in self.attendees.values())

    @property
    def unavailable_attendees(self) -> List[str]:
        return [email for email, a in self.attendees.items() if not a.is_available]

    def describe(self) -> str:
        if self.error:
            return f"availability check failed: {self.error}"
        return ", ".join(f"{email}={a.status}" for email, a in self.attendees.items())


def classify_view(view: str) -> str:
    """Collapse an availabilityView string to the worst status it contains"""
    if not view:
        return UNKNOWN
    statuses = [AVAILABILITY_CODES.get(ch, UNKNOWN) for ch in view]
    return max(statuses, key=_SEVERITY.index)


def _busy_blocks(entry: dict) -> List[str]:
    blocks = []
    for item in entry.get("scheduleItems") or []:
        status = item.get("status", "busy")
        if status == "free":
            continue
        start = (item.get("start") or {}).get("dateTime", "?")
        end = (item.get("end") or {}).get("dateTime", "?")
        blocks.append(f"{status} {start} to {end}")
    return blocks


def _index_schedules(schedules: Iterable[dict]) -> Dict[str, dict]:
    return {(s.get("scheduleId") or "").lower(): s for s in schedules}


class AvailabilityChecker:
    """Queries free/busy through a provider exposing get_schedule() (see services.graph_client)"""

    def __init__(self, provider, interval_minutes: int = AVAILABILITY_INTERVAL_MINUTES):
        self.provider = provider
        self.interval_minutes = interval_minutes

    async def check_slot(
        self, mailbox: str, attendee_emails: List[str], start: datetime, duration_minutes: int
    ) -> AvailabilityResult:
        """Classify every attendee for [start, start + duration). Whole-call failures set error."""
        end = start + timedelta(minutes=duration_minutes)
        emails = list(dict.fromkeys(e.lower() for e in attendee_emails))
        result = AvailabilityResult(start=start, end=end)

        try:
            schedules = await self.provider.get_schedule(mailbox, emails, start, end, duration_minutes)
        except ProviderError as e:
            logger.warning(f"⚠️ Availability check failed for {to_iso(start)}: {str(e)}")
            result.error = str(e)
            return result

        indexed = _index_schedules(schedules)
        for email in emails:
            entry = indexed.get(email)
            if entry is None:
                result.attendees[email] = AttendeeAvailability(email, UNKNOWN, error="missing from response")
            elif entry.get("error"):
                message = (entry["error"] or {}).get("message", "provider error")
                result.attendees[email] = AttendeeAvailability(email, UNKNOWN, error=message)
            else:
                result.attendees[email] = AttendeeAvailability(
                    email, classify_view(entry.get("availabilityView", "")), busy_blocks=_busy_blocks(entry)
                )

        logger.info(
            f"📅 Availability for {to_iso(start)}: {'AVAILABLE' if result.is_available else 'UNAVAILABLE'} "
            f"({result.describe()})"
        )
        return result

    async def find_candidate_slots(
        self,
        mailbox: str,
        attendee_emails: List[str],
        timezone: str,
        window_start: datetime,
        window_end: datetime,
        duration_minutes: int,
        count: int,
        max_per_day: int = MAX_SLOTS_PER_DAY,
        excluded_dates: Optional[Iterable[date]] = None,
        exclude_times: Optional[Iterable[datetime]] = None,
    ) -> List[datetime]:
        """
        Weekday business-hour slots (in the request's timezone) where every attendee is
        available, at most max_per_day per day. Raises ProviderError if the lookup fails.
        """
        emails = list(dict.fromkeys(e.lower() for e in attendee_emails))
        interval = self.interval_minutes
        excluded = set(excluded_dates or [])
        skip = set(exclude_times or [])

        # Align the query window to the view interval so index arithmetic is exact
        query_start = window_start.replace(second=0, microsecond=0)
        query_start -= timedelta(minutes=query_start.minute % interval)
        schedules = await self.provider.get_schedule(mailbox, emails, query_start, window_end, interval)
        indexed = _index_schedules(schedules)

        views = {}
        for email in emails:
            entry = indexed.get(email)
            if entry is None or entry.get("error"):
                logger.warning(f"⚠️ No usable free/busy for {email}; no slots can be offered")
                return []
            views[email] = entry.get("availabilityView") or ""

        needed = math.ceil(duration_minutes / interval)

        def slot_is_free(start_utc: datetime) -> bool:
            offset = int((start_utc - query_start).total_seconds() // 60) // interval
            for view in views.values():
                chunk = view[offset : offset + needed]
                if len(chunk) < needed or classify_view(chunk) not in AVAILABLE_STATES:
                    return False
            return True

        slots: List[datetime] = []
        local_day = to_local(window_start, timezone).date()
        last_day = to_local(window_end, timezone).date()
        day_index = 0
        while local_day <= last_day and len(slots) < count:
            if local_day.weekday() < 5 and local_day not in excluded:
                picked = 0
                rotation = day_index % len(_PREFERRED_HOURS)
                hours = _PREFERRED_HOURS[rotation:] + _PREFERRED_HOURS[:rotation]
                for hour in hours:
                    if picked >= max_per_day or len(slots) >= count:
                        break
                    if hour < BUSINESS_HOURS_START or hour * 60 + duration_minutes > BUSINESS_HOURS_END * 60:
                        continue
                    start_utc = local_to_utc(datetime.combine(local_day, time(hour, 0)), timezone)
                    if start_utc < window_start or start_utc + timedelta(minutes=duration_minutes) > window_end:
                        continue
                    if start_utc in skip or start_utc in slots:
                        continue
                    if slot_is_free(start_utc):
                        slots.append(start_utc)
                        picked += 1
                day_index += 1
            local_day += timedelta(days=1)

        logger.info(f"🗓️ Found {len(slots)} candidate slot(s) between {to_iso(window_start)} and {to_iso(window_end)}")
        return slots
