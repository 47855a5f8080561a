"""
Seasonality advisor
Recurring per-industry/region windows: blackout dates are never proposed, and the
current window can contribute one sentence of framing to outreach.
"""

import logging
from datetime import date, timedelta
from typing import List, Optional

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from ...models import SeasonalityWindow

logger = logging.getLogger(__name__)


def window_contains(window: SeasonalityWindow, day: date) -> bool:
    """Month/day range check in any year; windows may wrap the new year (Dec 15 - Jan 5)"""
    start = (window.start_month, window.start_day)
    end = (window.end_month, window.end_day)
    current = (day.month, day.day)
    if start <= end:
        return start <= current <= end
    return current >= start or current <= end


def _specificity(window: SeasonalityWindow) -> int:
    return (2 if window.industry else 0) + (1 if window.region else 0)


class SeasonalityAdvisor:
    def __init__(self, db: Session):
        self.db = db

    def windows_for(self, industry: Optional[str], region: Optional[str]) -> List[SeasonalityWindow]:
        """Windows that apply to the counterparty, most specific first"""
        query = self.db.query(SeasonalityWindow)
        if industry:
            query = query.filter(
                or_(SeasonalityWindow.industry.is_(None), func.lower(SeasonalityWindow.industry) == industry.lower())
            )
        else:
            query = query.filter(SeasonalityWindow.industry.is_(None))
        if region:
            query = query.filter(
                or_(SeasonalityWindow.region.is_(None), func.lower(SeasonalityWindow.region) == region.lower())
            )
        else:
            query = query.filter(SeasonalityWindow.region.is_(None))
        return sorted(query.all(), key=lambda w: (-_specificity(w), w.id))

    def blackout_dates(self, industry: Optional[str], region: Optional[str], start: date, end: date) -> set[date]:
        """Every date in [start, end] covered by a blackout window"""
        blackouts = [w for w in self.windows_for(industry, region) if w.is_blackout]
        dates = set()
        day = start
        while day <= end:
            if any(window_contains(w, day) for w in blackouts):
                dates.add(day)
            day += timedelta(days=1)
        if dates:
            logger.info(f"🚫 {len(dates)} blackout day(s) skipped for {industry or 'any'}/{region or 'any'}")
        return dates

    def current_window(self, industry: Optional[str], region: Optional[str], today: date) -> Optional[SeasonalityWindow]:
        for window in self.windows_for(industry, region):
            if window_contains(window, today):
                return window
        return None

    def framing_for(self, industry: Optional[str], region: Optional[str], today: date) -> Optional[str]:
        """One sentence of seasonal framing from the most specific window covering today"""
        for window in self.windows_for(industry, region):
            if window.framing and window_contains(window, today):
                return window.framing.strip()
        return None

    def business_level(self, industry: Optional[str], region: Optional[str], today: date) -> str:
        window = self.current_window(industry, region, today)
        return window.business_level if window else "normal"
