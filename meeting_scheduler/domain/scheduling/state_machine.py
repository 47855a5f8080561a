"""
Negotiation state machine for scheduling requests

The only code path that writes SchedulingRequest.status. Every transition is a
compare-and-set on the observed status and appends exactly one SchedulingAction
with previous_status/new_status in the same commit.

Statuses: negotiating ⇄ awaiting_response → confirmed / declined / cancelled
"""

import logging
from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy.orm import Session

from ...models import SchedulingAction, SchedulingRequest
from ...utils.datetime_utils import to_iso, utcnow
from . import constants as c
from .repository import SchedulingRepository

logger = logging.getLogger(__name__)


class SchedulingError(Exception):
    """Base class for scheduling domain errors"""


class InvalidTransitionError(SchedulingError):
    """The requested transition is not allowed from the current status"""


class StaleStatusError(SchedulingError):
    """The request changed underneath us (compare-and-set failed)"""


class AvailabilityRequiredError(SchedulingError):
    """Confirmation attempted without a passing availability check for the selected time"""


class DataIntegrityError(SchedulingError):
    """Required relational data (organizer, primary contact, thread) is missing or ambiguous"""


VALID_TRANSITIONS = {
    c.NEGOTIATING: [c.NEGOTIATING, c.AWAITING_RESPONSE, c.CONFIRMED, c.DECLINED, c.CANCELLED],
    c.AWAITING_RESPONSE: [c.NEGOTIATING, c.AWAITING_RESPONSE, c.CONFIRMED, c.DECLINED, c.CANCELLED],
    # Confirmed stays mutable for reschedules and no-show recovery
    c.CONFIRMED: [c.CONFIRMED, c.NEGOTIATING, c.CANCELLED],
    c.DECLINED: [],  # Terminal state
    c.CANCELLED: [],  # Terminal state
}


def validate_status_transition(current_status: str, new_status: str) -> bool:
    """
    Validate if a scheduling status transition is allowed

    Args:
        current_status: Current request status
        new_status: Desired new status

    Returns:
        bool: True if transition is valid, False otherwise
    """
    return new_status in VALID_TRANSITIONS.get(current_status, [])


def offered_times(request: SchedulingRequest) -> set[str]:
    """Every instant we proposed or the counterparty counter-proposed, as ISO strings"""
    return set(request.proposed_times or []) | set(request.counter_proposed_times or [])


def _cancel_note(request: SchedulingRequest, reason: Optional[str]) -> Optional[str]:
    # The calendar event is not deleted here; keep its id in the audit trail
    if request.calendar_event_id:
        return f"{reason or 'Cancelled'} (calendar event {request.calendar_event_id})"
    return reason


class NegotiationStateMachine:
    """Applies intents, availability results and user commands to a request"""

    def __init__(self, db: Session):
        self.db = db

    def _apply(
        self,
        request: SchedulingRequest,
        new_status: str,
        action_type: str,
        actor: str,
        action_fields: Optional[dict] = None,
        **updates,
    ) -> SchedulingAction:
        current = request.status
        if not validate_status_transition(current, new_status):
            self.db.rollback()
            raise InvalidTransitionError(f"Cannot move request {request.id} from {current} to {new_status}")

        if new_status != c.CONFIRMED:
            updates.update(scheduled_time=None, calendar_event_id=None, web_link=None)
        updates.setdefault("last_action_at", utcnow())

        if not SchedulingRepository.compare_and_set_status(self.db, request.id, [current], new_status, **updates):
            self.db.rollback()
            self.db.refresh(request)
            raise StaleStatusError(
                f"Request {request.id} is no longer {current} (now {request.status}); {action_type} not applied"
            )

        action = SchedulingRepository.add_action(
            self.db,
            request.id,
            action_type,
            actor,
            previous_status=current,
            new_status=new_status,
            **(action_fields or {}),
        )
        self.db.commit()
        self.db.refresh(request)
        logger.info(f"✅ Request {request.id} transitioned: {current} → {new_status} ({action_type})")
        return action

    def record_event(
        self,
        request: SchedulingRequest,
        action_type: str,
        actor: str,
        allowed_statuses: Optional[Iterable[str]] = None,
        action_fields: Optional[dict] = None,
        **updates,
    ) -> SchedulingAction:
        """
        Append a non-transition action, optionally updating non-status columns,
        as long as the request is still in the observed (or allowed) status.
        """
        allowed = list(allowed_statuses or [request.status])
        if updates or allowed_statuses is not None:
            if not SchedulingRepository.update_fields(self.db, request.id, allowed, **updates):
                self.db.rollback()
                self.db.refresh(request)
                raise StaleStatusError(f"Request {request.id} is {request.status}; {action_type} not applied")

        action = SchedulingRepository.add_action(
            self.db, request.id, action_type, actor, **(action_fields or {})
        )
        self.db.commit()
        self.db.refresh(request)
        return action

    # Outreach

    def mark_proposal_sent(
        self,
        request: SchedulingRequest,
        times: list[str],
        attempt: int,
        subject: str,
        body: str,
        action_type: str = c.ACTION_EMAIL_SENT,
        email_id: Optional[str] = None,
        thread_id: Optional[str] = None,
        next_action_type: Optional[str] = None,
        next_action_at: Optional[datetime] = None,
    ) -> SchedulingAction:
        """open → awaiting_response once a proposal message has gone out"""
        updates = dict(
            proposed_times=times,
            counter_proposed_times=None,
            attempt_count=attempt,
            next_action_type=next_action_type,
            next_action_at=next_action_at,
            is_paused=False,
            paused_until=None,
        )
        if thread_id and not request.email_thread_id:
            updates["email_thread_id"] = thread_id
        return self._apply(
            request,
            c.AWAITING_RESPONSE,
            action_type,
            c.ACTOR_SYSTEM,
            action_fields=dict(
                email_id=email_id,
                times_proposed=times,
                message_subject=subject,
                message_content=body,
            ),
            **updates,
        )

    # Reply outcomes

    def confirm(
        self,
        request: SchedulingRequest,
        selected_time: datetime,
        availability,
        booking: dict,
        actor: str,
        action_type: str = c.ACTION_MEETING_BOOKED,
        email_id: Optional[str] = None,
        reasoning: Optional[str] = None,
        content: Optional[str] = None,
        **updates,
    ) -> SchedulingAction:
        """
        open → confirmed. Requires a fresh passing availability result for exactly
        the selected time and a booked calendar event.
        """
        if request.status not in c.OPEN_STATUSES:
            raise InvalidTransitionError(f"Request {request.id} is {request.status}; cannot confirm")

        selected_iso = to_iso(selected_time)
        if selected_iso not in offered_times(request):
            raise InvalidTransitionError(f"{selected_iso} was never proposed or counter-proposed on {request.id}")

        if availability is None or not availability.is_available or availability.start != selected_time:
            raise AvailabilityRequiredError(
                f"Cannot confirm request {request.id} at {selected_iso} without a passing availability check"
            )
        if not booking or not booking.get("event_id"):
            raise AvailabilityRequiredError(f"Cannot confirm request {request.id} without a booked event")

        return self._apply(
            request,
            c.CONFIRMED,
            action_type,
            actor,
            action_fields=dict(
                email_id=email_id,
                time_selected=selected_time,
                ai_reasoning=reasoning,
                message_content=content,
            ),
            scheduled_time=selected_time,
            calendar_event_id=booking["event_id"],
            web_link=booking.get("web_link"),
            needs_human_review=False,
            review_reason=None,
            **updates,
        )

    def reschedule(
        self,
        request: SchedulingRequest,
        new_time: datetime,
        availability,
        booking: dict,
        actor: str = c.ACTOR_USER,
        **updates,
    ) -> SchedulingAction:
        """confirmed → confirmed at a new, freshly checked time"""
        if request.status != c.CONFIRMED:
            raise InvalidTransitionError(f"Request {request.id} is {request.status}; only confirmed meetings move")
        if availability is None or not availability.is_available or availability.start != new_time:
            raise AvailabilityRequiredError(f"Cannot reschedule request {request.id} without a passing availability check")
        if not booking or not booking.get("event_id"):
            raise AvailabilityRequiredError(f"Cannot reschedule request {request.id} without a booked event")

        new_iso = to_iso(new_time)
        proposed = list(request.proposed_times or [])
        if new_iso not in proposed:
            proposed.append(new_iso)

        return self._apply(
            request,
            c.CONFIRMED,
            c.ACTION_RESCHEDULED,
            actor,
            action_fields=dict(
                time_selected=new_time,
                times_proposed=[new_iso],
                message_content=f"Moved from {to_iso(request.scheduled_time)} to {new_iso}",
            ),
            proposed_times=proposed,
            scheduled_time=new_time,
            calendar_event_id=booking["event_id"],
            web_link=booking.get("web_link"),
            **updates,
        )

    def decline(
        self,
        request: SchedulingRequest,
        actor: str = c.ACTOR_PROSPECT,
        email_id: Optional[str] = None,
        reasoning: Optional[str] = None,
        content: Optional[str] = None,
    ) -> SchedulingAction:
        """open → declined (terminal)"""
        if request.status not in c.OPEN_STATUSES:
            raise InvalidTransitionError(f"Request {request.id} is {request.status}; cannot decline")
        return self._apply(
            request,
            c.DECLINED,
            c.ACTION_DECLINED,
            actor,
            action_fields=dict(email_id=email_id, ai_reasoning=reasoning, message_content=content),
            next_action_type=None,
            next_action_at=None,
        )

    def record_counter_proposal(
        self,
        request: SchedulingRequest,
        times: list[str],
        review_at: datetime,
        actor: str = c.ACTOR_PROSPECT,
        email_id: Optional[str] = None,
        reasoning: Optional[str] = None,
        content: Optional[str] = None,
    ) -> SchedulingAction:
        """open → negotiating with counter_proposed_times stored and a review due"""
        if request.status not in c.OPEN_STATUSES:
            raise InvalidTransitionError(f"Request {request.id} is {request.status}; cannot take a counter-proposal")
        return self._apply(
            request,
            c.NEGOTIATING,
            c.ACTION_RESPONSE_ANALYZED,
            actor,
            action_fields=dict(
                email_id=email_id,
                times_proposed=times,
                ai_reasoning=reasoning,
                message_content=content,
            ),
            counter_proposed_times=times,
            next_action_type=c.NEXT_REVIEW_COUNTER_PROPOSAL,
            next_action_at=review_at,
        )

    def hold_for_question(
        self,
        request: SchedulingRequest,
        question: str,
        email_id: Optional[str] = None,
        reasoning: Optional[str] = None,
        content: Optional[str] = None,
    ) -> SchedulingAction:
        """open → negotiating; a human answers, automation does not re-send"""
        if request.status not in c.OPEN_STATUSES:
            raise InvalidTransitionError(f"Request {request.id} is {request.status}; cannot hold for a question")
        SchedulingRepository.create_attention_item(
            self.db,
            request,
            c.ATTENTION_QUESTION,
            f"{request.title}: prospect asked a question",
            details={"question": question, "email_id": email_id},
        )
        return self._apply(
            request,
            c.NEGOTIATING,
            c.ACTION_RESPONSE_ANALYZED,
            c.ACTOR_PROSPECT,
            action_fields=dict(email_id=email_id, ai_reasoning=reasoning, message_content=content),
            next_action_type=None,
            next_action_at=None,
        )

    def hold_for_review(
        self,
        request: SchedulingRequest,
        reason: str,
        email_id: Optional[str] = None,
        reasoning: Optional[str] = None,
        content: Optional[str] = None,
    ) -> SchedulingAction:
        """open → negotiating flagged for human review (unclear or low-confidence reply)"""
        if request.status not in c.OPEN_STATUSES:
            raise InvalidTransitionError(f"Request {request.id} is {request.status}; cannot hold for review")
        SchedulingRepository.create_attention_item(
            self.db,
            request,
            c.ATTENTION_UNCLEAR,
            f"{request.title}: reply needs human review",
            details={"reason": reason, "email_id": email_id},
        )
        return self._apply(
            request,
            c.NEGOTIATING,
            c.ACTION_RESPONSE_ANALYZED,
            c.ACTOR_PROSPECT,
            action_fields=dict(email_id=email_id, ai_reasoning=reasoning, message_content=content),
            needs_human_review=True,
            review_reason=reason,
            next_action_type=None,
            next_action_at=None,
        )

    def record_conflict(
        self,
        request: SchedulingRequest,
        selected_time: datetime,
        conflicts: list[str],
        actor: str = c.ACTOR_SYSTEM,
        email_id: Optional[str] = None,
        reasoning: Optional[str] = None,
        next_action_type: Optional[str] = c.NEXT_SEND_FOLLOW_UP,
        next_action_at: Optional[datetime] = None,
    ) -> SchedulingAction:
        """open → negotiating because the selected time is no longer free; alternatives go out next"""
        if request.status not in c.OPEN_STATUSES:
            raise InvalidTransitionError(f"Request {request.id} is {request.status}; cannot record a conflict")
        return self._apply(
            request,
            c.NEGOTIATING,
            c.ACTION_TIME_CONFLICT,
            actor,
            action_fields=dict(
                email_id=email_id,
                time_selected=selected_time,
                ai_reasoning=reasoning,
                message_content=f"Unavailable: {', '.join(conflicts) or 'unknown'}",
            ),
            next_action_type=next_action_type,
            next_action_at=next_action_at or utcnow(),
        )

    # User commands and recovery

    def cancel(self, request: SchedulingRequest, actor: str = c.ACTOR_USER, reason: Optional[str] = None,
               action_type: str = c.ACTION_CANCELLED) -> SchedulingAction:
        """
        Any non-terminal status → cancelled. Retries the compare-and-set against
        a freshly read status so racing automation cannot win over the user.
        """
        for _ in range(3):
            self.db.refresh(request)
            if request.status not in c.NON_TERMINAL_STATUSES:
                raise InvalidTransitionError(f"Request {request.id} is already {request.status}")
            try:
                return self._apply(
                    request,
                    c.CANCELLED,
                    action_type,
                    actor,
                    action_fields=dict(message_content=_cancel_note(request, reason)),
                    next_action_type=None,
                    next_action_at=None,
                    is_paused=False,
                    paused_until=None,
                )
            except StaleStatusError:
                logger.warning(f"⚠️ Cancellation of {request.id} raced another update, retrying")
        raise StaleStatusError(f"Could not cancel request {request.id}; status kept changing")

    def reopen(self, request: SchedulingRequest, reason: str, actor: str = c.ACTOR_SYSTEM) -> SchedulingAction:
        """confirmed → negotiating so new times can be proposed (no-show re-engagement)"""
        if request.status != c.CONFIRMED:
            raise InvalidTransitionError(f"Request {request.id} is {request.status}; only confirmed requests reopen")
        return self._apply(
            request,
            c.NEGOTIATING,
            c.ACTION_NO_SHOW_DETECTED,
            actor,
            action_fields=dict(message_content=reason),
            is_paused=False,
            paused_until=None,
        )

    def cancel_after_no_show(self, request: SchedulingRequest, reason: str) -> SchedulingAction:
        """confirmed → cancelled at the end of the no-show ladder"""
        if request.status != c.CONFIRMED:
            raise InvalidTransitionError(f"Request {request.id} is {request.status}; expected confirmed")
        return self._apply(
            request,
            c.CANCELLED,
            c.ACTION_NO_SHOW_DETECTED,
            c.ACTOR_SYSTEM,
            action_fields=dict(message_content=reason, ai_reasoning=f"no_show_count={request.no_show_count + 1}"),
            no_show_count=request.no_show_count + 1,
            next_action_type=None,
            next_action_at=None,
            is_paused=False,
            paused_until=None,
        )

    # Failures that leave status untouched

    def flag_data_integrity(self, request: SchedulingRequest, problem: str) -> SchedulingAction:
        """Record a data-integrity problem and hand the request to a human; never auto-corrects identifiers"""
        logger.error(f"❌ Data integrity problem on request {request.id}: {problem}")
        SchedulingRepository.create_attention_item(
            self.db,
            request,
            c.ATTENTION_DATA_INTEGRITY,
            f"{request.title}: needs manual repair",
            details={"problem": problem},
        )
        return self.record_event(
            request,
            c.ACTION_DATA_INTEGRITY_ERROR,
            c.ACTOR_SYSTEM,
            allowed_statuses=[request.status],
            action_fields=dict(message_content=problem),
            needs_human_review=True,
            review_reason=problem[:255],
            next_action_type=None,
            next_action_at=None,
        )

    def record_external_failure(
        self,
        request: SchedulingRequest,
        operation: str,
        error: str,
        retry_type: Optional[str] = None,
        retry_at: Optional[datetime] = None,
        email_id: Optional[str] = None,
        **updates,
    ) -> SchedulingAction:
        """Log a transient external failure; status unchanged, claim token re-armed for the next sweep"""
        logger.warning(f"⚠️ {operation} failed for request {request.id}: {error}")
        if retry_type:
            updates.update(next_action_type=retry_type, next_action_at=retry_at)
        return self.record_event(
            request,
            c.ACTION_EXTERNAL_CALL_FAILED,
            c.ACTOR_SYSTEM,
            allowed_statuses=[request.status],
            action_fields=dict(email_id=email_id, message_content=f"{operation}: {error}"[:2000]),
            **updates,
        )
