"""
No-Show Recovery

Escalation ladder applied when a confirmed meeting's time (plus grace) passes
without a recorded completion, keyed by the new no_show_count:

    1  → re-engagement follow-up proposing new times after a short delay
    2  → human attention item, no further automatic sends
    3  → pause outreach (status stays confirmed, flagged paused)
    4+ → cancelled
"""

import logging
from dataclasses import dataclass, fields, replace
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from ...config import (
    NO_SHOW_CANCEL_AFTER,
    NO_SHOW_FOLLOW_UP_HOURS,
    NO_SHOW_GRACE_MINUTES,
    NO_SHOW_PAUSE_DAYS,
    NO_SHOW_POLICY_OVERRIDES,
)
from ...models import SchedulingRequest
from ...utils.datetime_utils import to_iso, utcnow
from . import constants as c
from .repository import SchedulingRepository
from .state_machine import NegotiationStateMachine

logger = logging.getLogger(__name__)

STEP_FOLLOW_UP = "follow_up"
STEP_ESCALATE = "escalate"
STEP_PAUSE = "pause"
STEP_CANCEL = "cancel"


@dataclass(frozen=True)
class NoShowPolicy:
    grace_minutes: int = NO_SHOW_GRACE_MINUTES
    follow_up_hours: int = NO_SHOW_FOLLOW_UP_HOURS
    pause_days: int = NO_SHOW_PAUSE_DAYS
    cancel_after: int = NO_SHOW_CANCEL_AFTER

    @classmethod
    def for_meeting_type(cls, meeting_type: Optional[str], overrides: Optional[dict] = None) -> "NoShowPolicy":
        """Defaults merged with any per-meeting-type overrides from configuration"""
        overrides = NO_SHOW_POLICY_OVERRIDES if overrides is None else overrides
        custom = overrides.get(meeting_type or "", {}) or {}
        known = {f.name for f in fields(cls)}
        unknown = set(custom) - known
        if unknown:
            logger.warning(f"⚠️ Ignoring unknown no-show policy keys for {meeting_type}: {sorted(unknown)}")
        return replace(cls(), **{k: int(v) for k, v in custom.items() if k in known})

    def step_for(self, no_show_count: int) -> str:
        if no_show_count >= self.cancel_after:
            return STEP_CANCEL
        if no_show_count <= 1:
            return STEP_FOLLOW_UP
        if no_show_count == 2:
            return STEP_ESCALATE
        return STEP_PAUSE

    def detection_time(self, scheduled_time: datetime) -> datetime:
        return scheduled_time + timedelta(minutes=self.grace_minutes)


class NoShowRecovery:
    def __init__(self, db: Session, state_machine: Optional[NegotiationStateMachine] = None):
        self.db = db
        self.state_machine = state_machine or NegotiationStateMachine(db)

    def is_no_show(self, request: SchedulingRequest, now: datetime, policy: NoShowPolicy) -> bool:
        return (
            request.status == c.CONFIRMED
            and request.scheduled_time is not None
            and request.completed_at is None
            and policy.detection_time(request.scheduled_time) <= now
        )

    def apply(self, request: SchedulingRequest, now: Optional[datetime] = None) -> Optional[str]:
        """Run one rung of the ladder; returns the step taken or None if this is not a no-show"""
        now = now or utcnow()
        SchedulingRepository.reload(self.db, request)
        policy = NoShowPolicy.for_meeting_type(request.meeting_type)
        if not self.is_no_show(request, now, policy):
            logger.info(f"ℹ️ Request {request.id} is not a no-show (status={request.status}), skipping")
            return None

        count = request.no_show_count + 1
        step = policy.step_for(count)
        meeting = to_iso(request.scheduled_time)
        logger.warning(f"👻 No-show #{count} on request {request.id} (meeting {meeting}) → {step}")

        if step == STEP_CANCEL:
            self.state_machine.cancel_after_no_show(request, f"No-show #{count}: cancelled after repeated no-shows")
            return step

        if step == STEP_FOLLOW_UP:
            follow_up_at = now + timedelta(hours=policy.follow_up_hours)
            self.state_machine.record_event(
                request,
                c.ACTION_NO_SHOW_DETECTED,
                c.ACTOR_SYSTEM,
                allowed_statuses=[c.CONFIRMED],
                action_fields=dict(
                    message_content=f"No-show #{count} for {meeting}: re-engagement follow-up at {to_iso(follow_up_at)}",
                    ai_reasoning=f"no_show_count={count}",
                ),
                no_show_count=count,
                next_action_type=c.NEXT_SEND_FOLLOW_UP,
                next_action_at=follow_up_at,
            )
        elif step == STEP_ESCALATE:
            SchedulingRepository.create_attention_item(
                self.db,
                request,
                c.ATTENTION_NO_SHOW,
                f"{request.title}: second no-show, please reach out personally",
                details={"no_show_count": count, "scheduled_time": meeting},
            )
            self.state_machine.record_event(
                request,
                c.ACTION_NO_SHOW_DETECTED,
                c.ACTOR_SYSTEM,
                allowed_statuses=[c.CONFIRMED],
                action_fields=dict(
                    message_content=f"No-show #{count} for {meeting}: escalated to {request.created_by}",
                    ai_reasoning=f"no_show_count={count}",
                ),
                no_show_count=count,
                needs_human_review=True,
                review_reason=f"No-show #{count}",
                next_action_type=None,
                next_action_at=None,
            )
        else:
            paused_until = now + timedelta(days=policy.pause_days)
            self.state_machine.record_event(
                request,
                c.ACTION_NO_SHOW_DETECTED,
                c.ACTOR_SYSTEM,
                allowed_statuses=[c.CONFIRMED],
                action_fields=dict(
                    message_content=f"No-show #{count} for {meeting}: outreach paused until {to_iso(paused_until)}",
                    ai_reasoning=f"no_show_count={count}",
                ),
                no_show_count=count,
                is_paused=True,
                paused_until=paused_until,
                next_action_type=c.NEXT_SEND_FOLLOW_UP,
                next_action_at=paused_until,
            )
        return step
