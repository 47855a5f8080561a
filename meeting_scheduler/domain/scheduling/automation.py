"""
Automated follow-ups, reminders, counter-proposal reviews and no-show detection

Each request carries at most one claim token (next_action_type, next_action_at).
A sweep picks the due tokens, claims each one with a conditional update and runs
its handler. A claim that loses the race is skipped; a handler that crashes is
rolled back and its token re-armed so the next sweep retries it.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy.orm import Session

from ...config import AUTOMATION_BATCH_SIZE, MAX_ATTEMPTS, RETRY_DELAY_MINUTES
from ...services.graph_client import ProviderError
from ...utils.datetime_utils import utcnow
from . import constants as c
from .composer import organizer_email
from .no_show import NoShowPolicy
from .repository import SchedulingRepository
from .service import SchedulingService
from .state_machine import DataIntegrityError, StaleStatusError

logger = logging.getLogger(__name__)


class AutomationScheduler:
    def __init__(
        self,
        db: Session,
        provider=None,
        interpreter=None,
        clock: Callable[[], datetime] = utcnow,
        batch_size: int = AUTOMATION_BATCH_SIZE,
        service: Optional[SchedulingService] = None,
    ):
        self.db = db
        self.repo = SchedulingRepository()
        self.service = service or SchedulingService(db, provider=provider, interpreter=interpreter, clock=clock)
        self.clock = clock
        self.batch_size = batch_size
        self.handlers = {
            c.NEXT_SEND_FOLLOW_UP: self.handle_send_follow_up,
            c.NEXT_SEND_REMINDER: self.handle_send_reminder,
            c.NEXT_REVIEW_COUNTER_PROPOSAL: self.handle_review_counter_proposal,
            c.NEXT_DETECT_NO_SHOW: self.handle_detect_no_show,
        }

    async def run_sweep(self, now: Optional[datetime] = None) -> dict:
        """
        Process every request whose claim token is due.

        Returns:
            dict: processed / succeeded / failed / skipped counts
        """
        now = now or self.clock()
        summary = {"processed": 0, "succeeded": 0, "failed": 0, "skipped": 0}

        due = self.repo.get_due_requests(self.db, now, self.batch_size)
        if not due:
            logger.debug("ℹ️ No scheduling actions due")
            return summary

        for request_id, action_type, action_at in due:
            if not self.repo.claim_next_action(self.db, request_id, action_type, action_at):
                logger.info(f"⏭️ {action_type} on {request_id} already claimed, skipping")
                summary["skipped"] += 1
                continue

            summary["processed"] += 1
            try:
                outcome = await self.dispatch(request_id, action_type, now)
                summary["succeeded"] += 1
                logger.info(f"✅ {action_type} on {request_id}: {outcome}")
            except Exception as e:
                summary["failed"] += 1
                logger.exception(f"❌ {action_type} on {request_id} failed: {str(e)}")
                self._rearm_after_crash(request_id, action_type, now, e)

        logger.info(f"📊 Scheduling automation summary: {summary}")
        return summary

    def _rearm_after_crash(self, request_id: str, action_type: str, now: datetime, error: Exception) -> None:
        retry_at = now + timedelta(minutes=RETRY_DELAY_MINUTES)
        if self.service.record_crash(request_id, action_type, error, action_type, retry_at):
            return
        # Status moved or the row is gone; still put the token back
        try:
            self.db.rollback()
            self.repo.arm_next_action(self.db, request_id, action_type, retry_at)
        except Exception as e:
            self.db.rollback()
            logger.error(f"❌ Could not re-arm {action_type} on {request_id}: {str(e)}")

    async def dispatch(self, request_id: str, action_type: str, now: datetime) -> str:
        handler = self.handlers.get(action_type)
        if handler is None:
            logger.warning(f"⚠️ Unknown scheduled action {action_type} on {request_id}, dropping")
            return "unknown_action"

        request = self.repo.get_request(self.db, request_id)
        if request is None:
            return "missing"
        try:
            return await handler(request, now)
        except DataIntegrityError as e:
            self.service.state_machine.flag_data_integrity(request, str(e))
            return "data_integrity_error"
        except StaleStatusError as e:
            logger.info(f"ℹ️ {action_type} on {request_id} lost a race: {str(e)}")
            return "stale"

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def handle_send_follow_up(self, request, now: datetime) -> str:
        """Pick the next outreach kind from the request's state and send it"""
        if request.needs_human_review:
            return "awaiting_human"

        if request.is_paused and request.paused_until and request.paused_until > now:
            self.repo.arm_next_action(self.db, request.id, c.NEXT_SEND_FOLLOW_UP, request.paused_until)
            return "paused"

        unavailable_time = None
        if request.status == c.CONFIRMED:
            if request.no_show_count == 0 or request.completed_at is not None:
                return "skipped_confirmed"
            kind = c.MESSAGE_NO_SHOW_FOLLOW_UP
        elif request.status in c.OPEN_STATUSES:
            if request.attempt_count >= MAX_ATTEMPTS:
                self.service.escalate_max_attempts(request)
                return "escalated"
            if request.attempt_count == 0:
                kind = c.MESSAGE_INITIAL
            elif request.status == c.NEGOTIATING:
                kind = c.MESSAGE_ALTERNATIVES
                conflict = self.repo.latest_action(self.db, request.id, c.ACTION_TIME_CONFLICT)
                unavailable_time = conflict.time_selected if conflict else None
            else:
                kind = c.MESSAGE_FOLLOW_UP
        else:
            return f"skipped_{request.status}"

        message = await self.service.send_proposal(
            request,
            kind,
            unavailable_time=unavailable_time,
            exclude_times=[unavailable_time] if unavailable_time else None,
        )
        return f"{kind}_sent" if message else f"{kind}_not_sent"

    async def handle_send_reminder(self, request, now: datetime) -> str:
        if request.status != c.CONFIRMED or request.scheduled_time is None or request.completed_at:
            return f"skipped_{request.status}"

        detect_at = NoShowPolicy.for_meeting_type(request.meeting_type).detection_time(request.scheduled_time)
        if request.scheduled_time <= now:
            self.repo.arm_next_action(self.db, request.id, c.NEXT_DETECT_NO_SHOW, detect_at, [c.CONFIRMED])
            return "too_late_for_reminder"

        subject, body = self.service.composer.render_reminder(request)
        to, cc = self.service.recipients(request)
        try:
            result = await self.service.provider.send_mail(
                organizer_email(request),
                to,
                subject,
                body,
                reply_to_message_id=self.repo.latest_thread_message_id(self.db, request.id),
                cc=cc or None,
            )
        except ProviderError as e:
            self.service.state_machine.record_external_failure(
                request, "send_reminder", str(e), c.NEXT_SEND_REMINDER, self.service.retry_at()
            )
            return "reminder_failed"

        self.service.state_machine.record_event(
            request,
            c.ACTION_REMINDER_SENT,
            c.ACTOR_SYSTEM,
            allowed_statuses=[c.CONFIRMED],
            action_fields=dict(email_id=result.get("message_id"), message_subject=subject, message_content=body),
            next_action_type=c.NEXT_DETECT_NO_SHOW,
            next_action_at=detect_at,
        )
        return "reminder_sent"

    async def handle_review_counter_proposal(self, request, now: datetime) -> str:
        return await self.service.review_counter_proposal(request)

    async def handle_detect_no_show(self, request, now: datetime) -> str:
        step = self.service.no_show.apply(request, now)
        if step:
            return f"no_show_{step}"

        # Woken early (clock skew or a manual re-arm): wait for the real detection time
        if request.status == c.CONFIRMED and request.scheduled_time and request.completed_at is None:
            detect_at = NoShowPolicy.for_meeting_type(request.meeting_type).detection_time(request.scheduled_time)
            self.repo.arm_next_action(self.db, request.id, c.NEXT_DETECT_NO_SHOW, detect_at, [c.CONFIRMED])
            return "not_yet"
        return "not_a_no_show"
