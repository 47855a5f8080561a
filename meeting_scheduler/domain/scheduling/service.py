"""Scheduling service - Business logic for scheduling negotiation"""

import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from sqlalchemy.orm import Session

from ...config import (
    FOLLOW_UP_HOURS,
    MAX_ATTEMPTS,
    REMINDER_HOURS_BEFORE,
    RETRY_DELAY_MINUTES,
    SECOND_FOLLOW_UP_HOURS,
)
from ...models import SchedulingOutboundMessage, SchedulingRequest
from ...services.graph_client import GraphClient, ProviderError
from ...utils.datetime_utils import parse_instant, to_iso, to_utc_naive, utcnow
from . import constants as c
from .availability_service import AvailabilityChecker, AvailabilityResult
from .composer import NoCandidateTimesError, OutreachComposer, internal_emails, organizer_email
from .grounding import GroundingTable
from .interpreter import HttpResponseInterpreter, ReplyContext, ResponseInterpreter, interpret_reply
from .no_show import NoShowPolicy, NoShowRecovery
from .repository import SchedulingRepository
from .schemas import InboundReply, ProcessReplyResponse, SchedulingRequestCreate
from .state_machine import (
    AvailabilityRequiredError,
    DataIntegrityError,
    InvalidTransitionError,
    NegotiationStateMachine,
    SchedulingError,
    StaleStatusError,
)

logger = logging.getLogger(__name__)


class RequestNotFoundError(SchedulingError):
    """No scheduling request (or attention item) with that id"""


class SchedulingService:
    """Service layer for scheduling negotiation"""

    def __init__(
        self,
        db: Session,
        provider=None,
        interpreter: Optional[ResponseInterpreter] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.repo = SchedulingRepository()
        self.provider = provider or GraphClient(db)
        self.interpreter = interpreter or HttpResponseInterpreter()
        self.clock = clock
        self.state_machine = NegotiationStateMachine(db)
        self.availability = AvailabilityChecker(self.provider)
        self.composer = OutreachComposer(db, self.availability)
        self.no_show = NoShowRecovery(db, self.state_machine)

    def now(self) -> datetime:
        return self.clock()

    def retry_at(self) -> datetime:
        return self.now() + timedelta(minutes=RETRY_DELAY_MINUTES)

    def record_crash(
        self,
        request_id: str,
        operation: str,
        error: Exception,
        retry_type: Optional[str] = None,
        retry_at: Optional[datetime] = None,
    ) -> bool:
        """
        Roll back a crashed unit of work and leave an external_call_failed
        action on the request, re-arming retry_type when given.
        Returns False when even that could not be written.
        """
        self.db.rollback()
        try:
            request = self.repo.get_request(self.db, request_id)
            if request is None:
                return False
            self.state_machine.record_external_failure(
                request, operation, f"{type(error).__name__}: {error}", retry_type, retry_at
            )
            return True
        except Exception as e:
            self.db.rollback()
            logger.error(f"❌ Could not record crash of {operation} on {request_id}: {str(e)}")
            return False

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_request(self, request_id: str) -> SchedulingRequest:
        request = self.repo.get_request(self.db, request_id)
        if not request:
            raise RequestNotFoundError(f"Scheduling request {request_id} not found")
        return request

    def list_actions(self, request_id: str):
        self.get_request(request_id)
        return self.repo.list_actions(self.db, request_id)

    def list_attention_items(self, owner: Optional[str] = None, include_resolved: bool = False):
        return self.repo.list_attention_items(self.db, owner=owner, include_resolved=include_resolved)

    # ------------------------------------------------------------------
    # Creation and outreach
    # ------------------------------------------------------------------

    def create_request(self, data: SchedulingRequestCreate) -> SchedulingRequest:
        """Create a request in negotiating with its attendees"""
        logger.info(f"📥 Creating scheduling request '{data.title}' for {data.created_by}")
        request_data = data.model_dump(exclude={"attendees", "send_initial"})
        attendees = [a.model_dump() for a in data.attendees]

        # A single external attendee is the primary contact by default
        externals = [a for a in attendees if a["side"] == c.SIDE_EXTERNAL]
        if len(externals) == 1:
            externals[0]["is_primary_contact"] = True

        return self.repo.create_request(self.db, attendees, status=c.NEGOTIATING, proposed_times=[], **request_data)

    def _next_follow_up_at(self, attempt: int) -> datetime:
        hours = FOLLOW_UP_HOURS if attempt <= 1 else SECOND_FOLLOW_UP_HOURS
        return self.now() + timedelta(hours=hours)

    def recipients(self, request: SchedulingRequest):
        contact = request.primary_contact
        if contact is None:
            raise DataIntegrityError(f"Request {request.id} has no unambiguous primary contact")
        cc = [
            {"email": a.email, "name": a.name}
            for a in request.external_attendees
            if a.id != contact.id
        ]
        return [{"email": contact.email, "name": contact.name}], cc

    async def send_proposal(
        self,
        request: SchedulingRequest,
        kind: str,
        unavailable_time: Optional[datetime] = None,
        exclude_times: Optional[List[datetime]] = None,
    ) -> Optional[SchedulingOutboundMessage]:
        """
        Compose (idempotently per attempt), send and record a proposal message.
        Open requests move to awaiting_response; a confirmed request being
        re-engaged after a no-show is reopened first.
        """
        self.repo.reload(self.db, request)
        reengage = kind == c.MESSAGE_NO_SHOW_FOLLOW_UP
        allowed = [c.CONFIRMED] if reengage else list(c.OPEN_STATUSES)
        if request.status not in allowed:
            logger.info(f"ℹ️ Request {request.id} is {request.status}, not sending {kind}")
            return None

        attempt = request.attempt_count + 1
        try:
            message = await self.composer.compose(
                request,
                kind,
                attempt,
                now=self.now(),
                exclude_times=exclude_times,
                unavailable_time=unavailable_time,
                no_show_number=request.no_show_count,
            )
            to, cc = self.recipients(request)
            mailbox = organizer_email(request)
        except DataIntegrityError as e:
            self.state_machine.flag_data_integrity(request, str(e))
            return None
        except NoCandidateTimesError as e:
            self.repo.create_attention_item(
                self.db, request, c.ATTENTION_MAX_ATTEMPTS, f"{request.title}: no free slots to propose",
                details={"error": str(e)},
            )
            self.state_machine.record_event(
                request,
                c.ACTION_ESCALATED,
                c.ACTOR_SYSTEM,
                allowed_statuses=[request.status],
                action_fields=dict(message_content=str(e)),
                needs_human_review=True,
                review_reason="No free slots to propose",
                next_action_type=None,
                next_action_at=None,
            )
            return None
        except ProviderError as e:
            self.state_machine.record_external_failure(
                request, "availability_search", str(e), c.NEXT_SEND_FOLLOW_UP, self.retry_at()
            )
            return None

        # Re-check right before the side effect; a cancellation may have landed meanwhile
        self.repo.reload(self.db, request)
        if request.status not in allowed:
            logger.info(f"ℹ️ Request {request.id} became {request.status} while composing, not sending")
            return None

        thread_id = request.email_thread_id
        if message.sent_at is None:
            try:
                result = await self.provider.send_mail(
                    mailbox,
                    to,
                    message.subject,
                    message.body,
                    reply_to_message_id=self.repo.latest_thread_message_id(self.db, request.id),
                    cc=cc or None,
                )
            except ProviderError as e:
                self.state_machine.record_external_failure(
                    request, f"send_{kind}", str(e), c.NEXT_SEND_FOLLOW_UP, self.retry_at()
                )
                return None
            self.repo.mark_outbound_sent(self.db, message, result.get("message_id"))
            thread_id = thread_id or result.get("conversation_id")

        try:
            if reengage:
                self.state_machine.reopen(request, f"No-show #{request.no_show_count}: proposing new times")
            self.state_machine.mark_proposal_sent(
                request,
                list(message.proposed_times),
                attempt,
                message.subject,
                message.body,
                action_type=c.ACTION_EMAIL_SENT if kind == c.MESSAGE_INITIAL else c.ACTION_FOLLOW_UP_SENT,
                email_id=message.provider_message_id,
                thread_id=thread_id,
                next_action_type=c.NEXT_SEND_FOLLOW_UP,
                next_action_at=self._next_follow_up_at(attempt),
            )
        except (StaleStatusError, InvalidTransitionError) as e:
            logger.warning(f"⚠️ Sent {kind} for request {request.id} but could not record it: {str(e)}")
            return None

        logger.info(f"📤 Sent {kind} attempt {attempt} for request {request.id}")
        return message

    async def start_outreach(self, request: SchedulingRequest) -> Optional[SchedulingOutboundMessage]:
        return await self.send_proposal(request, c.MESSAGE_INITIAL)

    def escalate_max_attempts(self, request: SchedulingRequest) -> None:
        """Stop automated follow-ups and hand the request to its owner"""
        self.repo.create_attention_item(
            self.db,
            request,
            c.ATTENTION_MAX_ATTEMPTS,
            f"{request.title}: no reply after {request.attempt_count} attempts",
            details={"attempt_count": request.attempt_count},
        )
        self.state_machine.record_event(
            request,
            c.ACTION_ESCALATED,
            c.ACTOR_SYSTEM,
            allowed_statuses=list(c.OPEN_STATUSES),
            action_fields=dict(message_content=f"Max attempts ({MAX_ATTEMPTS}) reached"),
            needs_human_review=True,
            review_reason="Max attempts reached",
            next_action_type=None,
            next_action_at=None,
        )

    # ------------------------------------------------------------------
    # Booking
    # ------------------------------------------------------------------

    def _post_confirmation_token(self, scheduled_time: datetime, meeting_type: Optional[str]):
        """Reminder ahead of the meeting, or straight to no-show detection if already inside that window"""
        reminder_at = scheduled_time - timedelta(hours=REMINDER_HOURS_BEFORE)
        if reminder_at > self.now():
            return c.NEXT_SEND_REMINDER, reminder_at
        return c.NEXT_DETECT_NO_SHOW, NoShowPolicy.for_meeting_type(meeting_type).detection_time(scheduled_time)

    def _keep_for_retry(self, request: SchedulingRequest, selected_time: datetime) -> dict:
        """Stash the selected time as a counter-proposal so the review handler retries it"""
        times = list(request.counter_proposed_times or [])
        iso = to_iso(selected_time)
        if iso not in times:
            times.append(iso)
        return {"counter_proposed_times": times}

    async def _check(self, request: SchedulingRequest, start: datetime) -> AvailabilityResult:
        return await self.availability.check_slot(
            organizer_email(request), internal_emails(request), start, request.duration_minutes
        )

    async def book_and_confirm(
        self,
        request: SchedulingRequest,
        selected_time: datetime,
        availability: AvailabilityResult,
        actor: str,
        email_id: Optional[str] = None,
        reasoning: Optional[str] = None,
        content: Optional[str] = None,
    ) -> str:
        """Book the event for an available slot, then confirm. Returns the outcome label."""
        self.repo.reload(self.db, request)
        if request.status not in c.OPEN_STATUSES:
            logger.info(f"ℹ️ Request {request.id} is {request.status}, not booking")
            return f"skipped_{request.status}"

        attendees = [{"email": a.email, "name": a.name} for a in request.attendees]
        try:
            booking = await self.provider.create_event(
                organizer_email(request),
                request.title,
                selected_time,
                selected_time + timedelta(minutes=request.duration_minutes),
                attendees,
                is_online_meeting=request.is_online_meeting,
                body=request.context,
            )
        except ProviderError as e:
            self.state_machine.record_external_failure(
                request,
                "create_event",
                str(e),
                c.NEXT_REVIEW_COUNTER_PROPOSAL,
                self.retry_at(),
                email_id=email_id,
                **self._keep_for_retry(request, selected_time),
            )
            return "booking_failed"

        next_type, next_at = self._post_confirmation_token(selected_time, request.meeting_type)
        try:
            self.state_machine.confirm(
                request,
                selected_time,
                availability,
                booking,
                actor,
                email_id=email_id,
                reasoning=reasoning,
                content=content,
                next_action_type=next_type,
                next_action_at=next_at,
                completed_at=None,
                is_paused=False,
                paused_until=None,
            )
        except StaleStatusError as e:
            logger.error(f"❌ Booked event {booking.get('event_id')} but request changed: {str(e)}")
            return "stale"

        await self._send_confirmation(request, reply_to=email_id)
        return "confirmed"

    async def _send_confirmation(self, request: SchedulingRequest, reply_to: Optional[str] = None) -> None:
        """Best effort; the meeting is already booked and the calendar invite carries the details"""
        try:
            subject, body = self.composer.render_confirmation(request)
            to, cc = self.recipients(request)
            result = await self.provider.send_mail(
                organizer_email(request),
                to,
                subject,
                body,
                reply_to_message_id=reply_to or self.repo.latest_thread_message_id(self.db, request.id),
                cc=cc or None,
            )
        except ProviderError as e:
            self.state_machine.record_external_failure(request, "send_confirmation", str(e))
            return
        except DataIntegrityError as e:
            self.state_machine.flag_data_integrity(request, str(e))
            return

        self.state_machine.record_event(
            request,
            c.ACTION_EMAIL_SENT,
            c.ACTOR_SYSTEM,
            action_fields=dict(
                email_id=result.get("message_id"), message_subject=subject, message_content=body
            ),
        )

    async def accept_time(
        self,
        request: SchedulingRequest,
        selected_time: datetime,
        actor: str = c.ACTOR_PROSPECT,
        email_id: Optional[str] = None,
        reasoning: Optional[str] = None,
        content: Optional[str] = None,
    ) -> str:
        """
        Accept path: a fresh availability check for exactly the selected time gates
        confirmation; a conflict sends the request back to negotiating.
        """
        try:
            availability = await self._check(request, selected_time)
        except DataIntegrityError as e:
            self.state_machine.flag_data_integrity(request, str(e))
            return "data_integrity_error"

        if availability.error:
            self.state_machine.record_external_failure(
                request,
                "availability_check",
                availability.error,
                c.NEXT_REVIEW_COUNTER_PROPOSAL,
                self.retry_at(),
                email_id=email_id,
                **self._keep_for_retry(request, selected_time),
            )
            return "availability_failed"

        if not availability.is_available:
            self.state_machine.record_conflict(
                request,
                selected_time,
                availability.unavailable_attendees,
                actor=actor,
                email_id=email_id,
                reasoning=reasoning,
                next_action_type=c.NEXT_SEND_FOLLOW_UP,
                next_action_at=self.now(),
            )
            return "time_conflict"

        return await self.book_and_confirm(request, selected_time, availability, actor, email_id, reasoning, content)

    async def review_counter_proposal(self, request: SchedulingRequest) -> str:
        """Book the first counter-proposed time everyone can make, otherwise offer alternatives"""
        self.repo.reload(self.db, request)
        if request.status not in c.OPEN_STATUSES:
            return f"skipped_{request.status}"

        now = self.now()
        candidates = []
        for iso in request.counter_proposed_times or []:
            try:
                instant = parse_instant(iso)
            except ValueError:
                self.state_machine.flag_data_integrity(request, f"Stored counter-proposed time is invalid: {iso!r}")
                return "data_integrity_error"
            if instant > now:
                candidates.append(instant)

        if not candidates:
            logger.info(f"ℹ️ No future counter-proposed times on {request.id}, offering alternatives")
            await self.send_proposal(request, c.MESSAGE_ALTERNATIVES)
            return "alternatives_sent"

        try:
            for instant in candidates:
                availability = await self._check(request, instant)
                if availability.error:
                    self.state_machine.record_external_failure(
                        request, "availability_check", availability.error,
                        c.NEXT_REVIEW_COUNTER_PROPOSAL, self.retry_at(),
                    )
                    return "availability_failed"
                if availability.is_available:
                    return await self.book_and_confirm(
                        request,
                        instant,
                        availability,
                        c.ACTOR_SYSTEM,
                        reasoning=f"Counter-proposed {to_iso(instant)} is free for all internal attendees",
                    )
        except DataIntegrityError as e:
            self.state_machine.flag_data_integrity(request, str(e))
            return "data_integrity_error"

        logger.info(f"🔁 None of the counter-proposed times work for {request.id}, offering alternatives")
        await self.send_proposal(request, c.MESSAGE_ALTERNATIVES, unavailable_time=candidates[0], exclude_times=candidates)
        return "alternatives_sent"

    # ------------------------------------------------------------------
    # Inbound replies
    # ------------------------------------------------------------------

    async def process_inbound_reply(self, reply: InboundReply) -> ProcessReplyResponse:
        """Interpret one inbound reply and apply it. Idempotent by message id."""
        sender = reply.sender.address.strip().lower()
        received_at = to_utc_naive(reply.receivedDateTime) if reply.receivedDateTime else self.now()
        if not self.repo.claim_inbound_message(self.db, reply.id, reply.conversationId, sender, received_at):
            logger.info(f"♻️ Inbound message {reply.id} already processed, skipping")
            return ProcessReplyResponse(message_id=reply.id, outcome="duplicate", duplicate=True)

        matched_id = None
        try:
            candidates = self.repo.find_request_for_reply(self.db, reply.conversationId, sender)
            if not candidates:
                logger.info(f"ℹ️ Inbound message {reply.id} from {sender} matches no scheduling request")
                self.repo.finish_inbound_message(self.db, reply.id, None, "unmatched")
                return ProcessReplyResponse(message_id=reply.id, outcome="unmatched")

            if len(candidates) > 1:
                # Never guess which negotiation a reply belongs to
                for candidate in candidates:
                    self.state_machine.flag_data_integrity(
                        candidate, f"Inbound message {reply.id} from {sender} matches {len(candidates)} requests"
                    )
                self.repo.finish_inbound_message(self.db, reply.id, None, "ambiguous_match")
                return ProcessReplyResponse(message_id=reply.id, outcome="ambiguous_match")

            request = candidates[0]
            matched_id = request.id
            outcome = await self._apply_reply(request, reply)
            self.repo.finish_inbound_message(self.db, reply.id, request.id, outcome)
            return ProcessReplyResponse(message_id=reply.id, scheduling_request_id=request.id, outcome=outcome)
        except Exception as e:
            logger.exception(f"❌ Failed processing inbound message {reply.id}")
            if matched_id is not None:
                self.record_crash(matched_id, f"process_inbound_reply {reply.id}", e)
            self.repo.release_inbound_message(self.db, reply.id)
            raise

    async def _apply_reply(self, request: SchedulingRequest, reply: InboundReply) -> str:
        self.repo.reload(self.db, request)
        content = reply.text[:4000]

        if request.status not in c.OPEN_STATUSES:
            # Replies after the negotiation closed are kept for the record only
            if request.status == c.CONFIRMED:
                self.repo.create_attention_item(
                    self.db,
                    request,
                    c.ATTENTION_QUESTION,
                    f"{request.title}: reply received on a confirmed meeting",
                    details={"email_id": reply.id},
                )
            self.state_machine.record_event(
                request,
                c.ACTION_EMAIL_RECEIVED,
                c.ACTOR_PROSPECT,
                action_fields=dict(email_id=reply.id, message_subject=reply.subject, message_content=content),
            )
            return f"recorded_{request.status}"

        if reply.conversationId and not request.email_thread_id:
            self.repo.update_fields(self.db, request.id, [request.status], email_thread_id=reply.conversationId)
            self.db.commit()
            self.repo.reload(self.db, request)

        now = self.now()
        context = ReplyContext(
            request_id=request.id,
            reply_text=reply.text,
            proposed_times=list(request.proposed_times or []),
            timezone=request.timezone,
            grounding=GroundingTable.for_now(request.timezone, now),
            subject=reply.subject or "",
            meeting_title=request.title,
        )
        interpreted = await interpret_reply(self.interpreter, context, now)
        reasoning = interpreted.audit_text()
        logger.info(
            f"🧠 Reply {reply.id} on {request.id}: intent={interpreted.intent} confidence={interpreted.confidence}"
        )

        try:
            if interpreted.needs_review:
                self.state_machine.hold_for_review(
                    request,
                    interpreted.downgrade_reason or f"{interpreted.intent} with {interpreted.confidence} confidence",
                    email_id=reply.id,
                    reasoning=reasoning,
                    content=content,
                )
                return "held_for_review"

            if interpreted.intent == c.INTENT_ACCEPT:
                return await self.accept_time(
                    request, interpreted.selected_time, c.ACTOR_PROSPECT, reply.id, reasoning, content
                )

            if interpreted.intent == c.INTENT_DECLINE:
                self.state_machine.decline(request, email_id=reply.id, reasoning=reasoning, content=content)
                return "declined"

            if interpreted.intent == c.INTENT_COUNTER_PROPOSE:
                self.state_machine.record_counter_proposal(
                    request,
                    [to_iso(t) for t in interpreted.counter_proposed_times],
                    review_at=now,
                    email_id=reply.id,
                    reasoning=reasoning,
                    content=content,
                )
                return "counter_proposed"

            if interpreted.intent == c.INTENT_QUESTION:
                self.state_machine.hold_for_question(
                    request, interpreted.question or "", email_id=reply.id, reasoning=reasoning, content=content
                )
                return "question"
        except StaleStatusError as e:
            logger.warning(f"⚠️ Reply {reply.id} not applied: {str(e)}")
            return "stale"

        self.state_machine.hold_for_review(
            request, f"Unhandled intent {interpreted.intent}", email_id=reply.id, reasoning=reasoning, content=content
        )
        return "held_for_review"

    # ------------------------------------------------------------------
    # User commands
    # ------------------------------------------------------------------

    def cancel(self, request_id: str, reason: Optional[str] = None, cancelled_by: Optional[str] = None):
        request = self.get_request(request_id)
        note = reason or "Cancelled by user"
        if cancelled_by:
            note = f"{note} ({cancelled_by})"
        self.state_machine.cancel(request, c.ACTOR_USER, note)
        logger.info(f"🛑 Request {request_id} cancelled")
        return request

    def mark_completed(self, request_id: str, completed_by: Optional[str] = None) -> SchedulingRequest:
        """Record the meeting as held; stops no-show detection"""
        request = self.get_request(request_id)
        if request.status != c.CONFIRMED:
            raise InvalidTransitionError(f"Request {request_id} is {request.status}; only confirmed meetings complete")
        if request.completed_at:
            return request
        now = self.now()
        if request.scheduled_time > now:
            raise InvalidTransitionError(f"Meeting for {request_id} has not started yet")

        self.state_machine.record_event(
            request,
            c.ACTION_COMPLETED,
            c.ACTOR_USER,
            allowed_statuses=[c.CONFIRMED],
            action_fields=dict(message_content=f"Marked completed by {completed_by or 'user'}"),
            completed_at=now,
            next_action_type=None,
            next_action_at=None,
            is_paused=False,
            paused_until=None,
        )
        return request

    async def reschedule(self, request_id: str, new_time: datetime, requested_by: Optional[str] = None):
        """Move a confirmed meeting to a new time that passes a fresh availability check"""
        request = self.get_request(request_id)
        if request.status != c.CONFIRMED:
            raise InvalidTransitionError(f"Request {request_id} is {request.status}; only confirmed meetings move")

        new_time = to_utc_naive(new_time, request.timezone)
        if new_time <= self.now():
            raise InvalidTransitionError("New meeting time must be in the future")

        availability = await self._check(request, new_time)
        if availability.error:
            raise ProviderError(availability.error)
        if not availability.is_available:
            raise AvailabilityRequiredError(
                f"{to_iso(new_time)} is not free for: {', '.join(availability.unavailable_attendees)}"
            )

        attendees = [{"email": a.email, "name": a.name} for a in request.attendees]
        self.repo.reload(self.db, request)
        if request.status != c.CONFIRMED:
            raise StaleStatusError(f"Request {request_id} became {request.status}")
        booking = await self.provider.create_event(
            organizer_email(request),
            request.title,
            new_time,
            new_time + timedelta(minutes=request.duration_minutes),
            attendees,
            is_online_meeting=request.is_online_meeting,
            body=request.context,
        )

        next_type, next_at = self._post_confirmation_token(new_time, request.meeting_type)
        self.state_machine.reschedule(
            request,
            new_time,
            availability,
            booking,
            c.ACTOR_USER,
            next_action_type=next_type,
            next_action_at=next_at,
            completed_at=None,
            is_paused=False,
            paused_until=None,
        )
        logger.info(f"📆 Request {request_id} rescheduled to {to_iso(new_time)} by {requested_by or 'user'}")
        await self._send_confirmation(request)
        return request

    def resolve_attention_item(self, item_id: int, resolved_by: Optional[str] = None, note: Optional[str] = None):
        item = self.repo.get_attention_item(self.db, item_id)
        if not item:
            raise RequestNotFoundError(f"Attention item {item_id} not found")
        if item.resolved_at:
            return item

        item.resolved_at = self.now()
        details = dict(item.details or {})
        details.update({"resolved_by": resolved_by, "resolution_note": note})
        item.details = details
        self.db.commit()

        # Clear the review flag once nothing is left open on the request
        if self.repo.open_attention_count(self.db, item.scheduling_request_id) == 0:
            self.repo.update_fields(
                self.db,
                item.scheduling_request_id,
                c.NON_TERMINAL_STATUSES + (c.DECLINED, c.CANCELLED),
                needs_human_review=False,
                review_reason=None,
            )
            self.db.commit()
        self.db.refresh(item)
        logger.info(f"✅ Attention item {item_id} resolved by {resolved_by or 'user'}")
        return item
