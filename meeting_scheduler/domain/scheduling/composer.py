"""
Outreach Composer

Builds proposal messages (initial, follow-up, alternatives, no-show re-engagement)
from templates, candidate times and the optional enrichers. Content is stored per
(request, attempt), so composing the same attempt again returns what was stored.
"""

import logging
from datetime import datetime, timedelta
from typing import Iterable, List, Optional

from sqlalchemy.orm import Session

from ... import email_templates
from ...config import PROPOSAL_MIN_LEAD_HOURS, PROPOSAL_WINDOW_DAYS, PROPOSED_TIMES_COUNT
from ...models import SchedulingOutboundMessage, SchedulingRequest
from ...utils.datetime_utils import format_for_display, to_iso, to_local, utcnow
from . import constants as c
from .availability_service import AvailabilityChecker
from .repository import SchedulingRepository
from .seasonality import SeasonalityAdvisor
from .social_proof import SocialProofAdvisor, format_social_proof
from .state_machine import DataIntegrityError, SchedulingError

logger = logging.getLogger(__name__)

MIN_PROPOSED_TIMES = 3
MAX_PROPOSED_TIMES = 4


class NoCandidateTimesError(SchedulingError):
    """The calendar has no usable slot in the proposal window"""


def contact_name(request: SchedulingRequest) -> str:
    contact = request.primary_contact
    if contact is None:
        raise DataIntegrityError(f"Request {request.id} has no unambiguous primary contact")
    if contact.name:
        return contact.name.split()[0]
    return contact.email.split("@")[0]


def organizer_email(request: SchedulingRequest) -> str:
    organizer = request.organizer
    if organizer is None:
        raise DataIntegrityError(f"Request {request.id} does not have exactly one internal organizer")
    return organizer.email


def internal_emails(request: SchedulingRequest) -> List[str]:
    return [a.email for a in request.internal_attendees]


class OutreachComposer:
    def __init__(
        self,
        db: Session,
        availability: AvailabilityChecker,
        social_proof: Optional[SocialProofAdvisor] = None,
        seasonality: Optional[SeasonalityAdvisor] = None,
    ):
        self.db = db
        self.availability = availability
        self.social_proof = social_proof or SocialProofAdvisor(db)
        self.seasonality = seasonality or SeasonalityAdvisor(db)

    async def candidate_times(
        self,
        request: SchedulingRequest,
        now: datetime,
        exclude_times: Optional[Iterable[datetime]] = None,
    ) -> List[datetime]:
        """3-4 slots where every internal attendee is free, never on a seasonal blackout date"""
        window_start = now + timedelta(hours=PROPOSAL_MIN_LEAD_HOURS)
        window_end = now + timedelta(days=PROPOSAL_WINDOW_DAYS)
        blackout = self.seasonality.blackout_dates(
            request.industry,
            request.region,
            to_local(window_start, request.timezone).date(),
            to_local(window_end, request.timezone).date(),
        )
        count = max(MIN_PROPOSED_TIMES, min(PROPOSED_TIMES_COUNT, MAX_PROPOSED_TIMES))
        slots = await self.availability.find_candidate_slots(
            organizer_email(request),
            internal_emails(request),
            request.timezone,
            window_start,
            window_end,
            request.duration_minutes,
            count,
            excluded_dates=blackout,
            exclude_times=exclude_times,
        )
        if not slots:
            raise NoCandidateTimesError(f"No available slots for request {request.id} in the next {PROPOSAL_WINDOW_DAYS} days")
        if len(slots) < MIN_PROPOSED_TIMES:
            logger.warning(f"⚠️ Only {len(slots)} candidate slot(s) for request {request.id}")
        return slots

    async def compose(
        self,
        request: SchedulingRequest,
        kind: str,
        attempt: int,
        now: Optional[datetime] = None,
        exclude_times: Optional[Iterable[datetime]] = None,
        unavailable_time: Optional[datetime] = None,
        no_show_number: Optional[int] = None,
    ) -> SchedulingOutboundMessage:
        """Return the stored message for (request, attempt), composing and storing it first if needed"""
        existing = SchedulingRepository.get_outbound(self.db, request.id, attempt)
        if existing:
            logger.info(f"♻️ Reusing composed attempt {attempt} for request {request.id}")
            return existing

        now = now or utcnow()
        name = contact_name(request)
        slots = await self.candidate_times(request, now, exclude_times)
        times_iso = [to_iso(s) for s in slots]
        times_display = [format_for_display(s, request.timezone) for s in slots]

        today_local = to_local(now, request.timezone).date()
        seasonal_note = self.seasonality.framing_for(request.industry, request.region, today_local)

        proof = None
        if kind in (c.MESSAGE_FOLLOW_UP, c.MESSAGE_ALTERNATIVES):
            used = SchedulingRepository.used_social_proof_ids(self.db, request.id)
            proof = self.social_proof.select(request, attempt, used)
        proof_text = format_social_proof(proof) if proof else None

        if kind == c.MESSAGE_INITIAL:
            subject, body = email_templates.initial_outreach_template(
                name,
                request.meeting_type,
                request.title,
                times_display,
                company_name=request.company_name,
                context=request.context,
                seasonal_note=seasonal_note,
            )
        elif kind == c.MESSAGE_FOLLOW_UP:
            subject, body = email_templates.follow_up_template(
                attempt, name, request.meeting_type, request.title, times_display,
                social_proof=proof_text, seasonal_note=seasonal_note,
            )
        elif kind == c.MESSAGE_ALTERNATIVES:
            subject, body = email_templates.alternatives_template(
                name,
                request.meeting_type,
                request.title,
                times_display,
                unavailable_time=format_for_display(unavailable_time, request.timezone) if unavailable_time else None,
                social_proof=proof_text,
            )
        elif kind == c.MESSAGE_NO_SHOW_FOLLOW_UP:
            subject, body = email_templates.no_show_follow_up_template(
                no_show_number or request.no_show_count or 1, name, request.meeting_type, times_display
            )
        else:
            raise ValueError(f"Unknown outreach kind: {kind}")

        message = SchedulingRepository.save_outbound(
            self.db,
            scheduling_request_id=request.id,
            attempt=attempt,
            kind=kind,
            subject=subject,
            body=body,
            proposed_times=times_iso,
            social_proof_id=proof.id if proof else None,
            seasonal_note=seasonal_note,
        )
        if proof and message.social_proof_id == proof.id:
            self.social_proof.record_usage(proof)
            self.db.commit()

        logger.info(f"✍️ Composed {kind} attempt {attempt} for request {request.id} with {len(times_iso)} time(s)")
        return message

    def render_confirmation(self, request: SchedulingRequest):
        return email_templates.confirmation_template(
            contact_name(request),
            request.meeting_type,
            request.title,
            format_for_display(request.scheduled_time, request.timezone),
            web_link=request.web_link,
        )

    def render_reminder(self, request: SchedulingRequest):
        return email_templates.reminder_template(
            contact_name(request),
            request.meeting_type,
            request.title,
            format_for_display(request.scheduled_time, request.timezone),
            web_link=request.web_link,
        )
