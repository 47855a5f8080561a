"""
Social proof advisor
Picks a snippet for an outreach attempt; a request never sees the same snippet twice.
"""

import logging
from typing import Iterable, Optional

from sqlalchemy.orm import Session

from ...models import SchedulingRequest, SocialProofItem

logger = logging.getLogger(__name__)

INDUSTRY_MATCH_SCORE = 20


def preferred_type(attempt: int) -> Optional[str]:
    """Stats early, case studies in the middle, testimonials late. Attempt 1 carries none."""
    if attempt <= 1:
        return None
    if attempt <= 2:
        return "stat"
    if attempt <= 4:
        return "case_study"
    return "testimonial"


def relevance_score(item: SocialProofItem, industry: Optional[str]) -> int:
    industries = [i.lower() for i in (item.industries or [])]
    if industry and industry.lower() in industries:
        return INDUSTRY_MATCH_SCORE
    return 0


def format_social_proof(item: SocialProofItem) -> str:
    """Plain-text rendering for an email body"""
    if item.type == "testimonial":
        text = f'"{item.content}"'
    elif item.type in ("case_study", "industry_insight") and item.title:
        text = f"{item.title}: {item.content}"
    else:
        text = item.content
    if item.source:
        text += f" ({item.source})"
    return text


class SocialProofAdvisor:
    def __init__(self, db: Session):
        self.db = db

    def select(
        self, request: SchedulingRequest, attempt: int, used_ids: Iterable[int]
    ) -> Optional[SocialProofItem]:
        ptype = preferred_type(attempt)
        if ptype is None:
            return None

        used = set(used_ids)
        candidates = [
            item
            for item in self.db.query(SocialProofItem).filter(SocialProofItem.is_active.is_(True)).all()
            if item.id not in used
        ]
        if not candidates:
            logger.info(f"ℹ️ No unused social proof left for request {request.id}")
            return None

        # Fall back to any type when the preferred type is exhausted
        pool = [item for item in candidates if item.type == ptype] or candidates
        pool.sort(key=lambda item: (-relevance_score(item, request.industry), item.times_used, item.id))
        chosen = pool[0]
        logger.info(
            f"💬 Social proof {chosen.id} ({chosen.type}) selected for request {request.id} attempt {attempt}"
        )
        return chosen

    def record_usage(self, item: SocialProofItem) -> None:
        """Bump the usage counter. Does not commit."""
        item.times_used = (item.times_used or 0) + 1
