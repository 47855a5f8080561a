"""Scheduling domain schemas - Pydantic models for validation"""

from datetime import datetime
from typing import Annotated, List, Literal, Optional, Union

import pytz
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator, model_validator


class AttendeeCreate(BaseModel):
    """Schema for an attendee supplied with a new request"""

    email: str
    name: Optional[str] = None
    side: Literal["internal", "external"]
    is_organizer: bool = False
    is_primary_contact: bool = False
    is_required: bool = True

    @field_validator("email")
    @classmethod
    def validate_email(cls, v):
        v = v.strip().lower()
        if "@" not in v or v.startswith("@") or v.endswith("@"):
            raise ValueError("Invalid email address")
        return v


class SchedulingRequestCreate(BaseModel):
    """Schema for creating a new scheduling request"""

    title: str
    created_by: str
    company_id: Optional[str] = None
    company_name: Optional[str] = None
    industry: Optional[str] = None
    region: Optional[str] = None
    meeting_type: str = "discovery"
    duration_minutes: int = 30
    timezone: str = "America/New_York"
    is_online_meeting: bool = True
    context: Optional[str] = None
    attendees: List[AttendeeCreate]
    send_initial: bool = True

    @field_validator("duration_minutes")
    @classmethod
    def validate_duration(cls, v):
        if v < 15 or v > 240:
            raise ValueError("Duration must be between 15 and 240 minutes")
        return v

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v):
        if v not in pytz.all_timezones_set:
            raise ValueError(f"Unknown timezone: {v}")
        return v

    @model_validator(mode="after")
    def validate_attendees(self):
        organizers = [a for a in self.attendees if a.side == "internal" and a.is_organizer]
        if len(organizers) != 1:
            raise ValueError("Exactly one internal attendee must be the organizer")
        if any(a.is_organizer for a in self.attendees if a.side == "external"):
            raise ValueError("External attendees cannot organize the meeting")
        externals = [a for a in self.attendees if a.side == "external"]
        if not externals:
            raise ValueError("At least one external attendee is required")
        if len([a for a in externals if a.is_primary_contact]) > 1:
            raise ValueError("Only one external attendee can be the primary contact")
        return self


class AttendeeResponse(BaseModel):
    id: int
    email: str
    name: Optional[str] = None
    side: str
    is_organizer: bool
    is_primary_contact: bool
    is_required: bool
    invite_status: str

    class Config:
        from_attributes = True


class SchedulingRequestResponse(BaseModel):
    """Schema for scheduling request response"""

    id: str
    title: str
    created_by: str
    company_id: Optional[str] = None
    company_name: Optional[str] = None
    industry: Optional[str] = None
    region: Optional[str] = None
    meeting_type: str
    duration_minutes: int
    timezone: str
    status: str
    proposed_times: List[str] = []
    counter_proposed_times: Optional[List[str]] = None
    next_action_type: Optional[str] = None
    next_action_at: Optional[datetime] = None
    attempt_count: int
    no_show_count: int
    email_thread_id: Optional[str] = None
    scheduled_time: Optional[datetime] = None
    calendar_event_id: Optional[str] = None
    web_link: Optional[str] = None
    completed_at: Optional[datetime] = None
    is_paused: bool
    paused_until: Optional[datetime] = None
    needs_human_review: bool
    review_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    attendees: List[AttendeeResponse] = []

    class Config:
        from_attributes = True


class SchedulingActionResponse(BaseModel):
    id: int
    action_type: str
    actor: str
    email_id: Optional[str] = None
    times_proposed: Optional[List[str]] = None
    time_selected: Optional[datetime] = None
    message_subject: Optional[str] = None
    ai_reasoning: Optional[str] = None
    previous_status: Optional[str] = None
    new_status: Optional[str] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class AttentionItemResponse(BaseModel):
    id: int
    scheduling_request_id: str
    owner: Optional[str] = None
    reason: str
    summary: str
    details: Optional[dict] = None
    resolved_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class CancelRequest(BaseModel):
    reason: Optional[str] = None
    cancelled_by: Optional[str] = None


class RescheduleRequest(BaseModel):
    new_time: datetime
    requested_by: Optional[str] = None


class CompleteRequest(BaseModel):
    completed_by: Optional[str] = None


class ResolveAttentionRequest(BaseModel):
    resolved_by: Optional[str] = None
    note: Optional[str] = None


# Inbound reply, normalised by the inbox sync before it reaches us


class InboundSender(BaseModel):
    address: str
    name: Optional[str] = None


class InboundReply(BaseModel):
    """Normalized inbound email reply"""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    subject: Optional[str] = ""
    body: str = ""
    bodyPreview: Optional[str] = ""
    sender: InboundSender = Field(alias="from")
    receivedDateTime: Optional[datetime] = None
    conversationId: Optional[str] = None

    @property
    def text(self) -> str:
        return self.body or self.bodyPreview or ""


class ProcessReplyResponse(BaseModel):
    message_id: str
    scheduling_request_id: Optional[str] = None
    outcome: str
    duplicate: bool = False


class AutomationRunResponse(BaseModel):
    processed: int
    succeeded: int
    failed: int
    skipped: int


# Interpreter output: tagged union on "intent", validated at the AI boundary


class _IntentBase(BaseModel):
    model_config = ConfigDict(extra="ignore")

    sentiment: Optional[str] = None
    confidence: Literal["high", "medium", "low"] = "medium"
    reasoning: str = ""


class AcceptIntent(_IntentBase):
    intent: Literal["accept"]
    selected_time: Optional[str] = None


class DeclineIntent(_IntentBase):
    intent: Literal["decline"]


class CounterProposeIntent(_IntentBase):
    intent: Literal["counter_propose"]
    counter_proposed_times: List[str] = Field(min_length=1)


class QuestionIntent(_IntentBase):
    intent: Literal["question"]
    question: str


class UnclearIntent(_IntentBase):
    intent: Literal["unclear"]


Interpretation = Annotated[
    Union[AcceptIntent, DeclineIntent, CounterProposeIntent, QuestionIntent, UnclearIntent],
    Field(discriminator="intent"),
]

interpretation_adapter = TypeAdapter(Interpretation)

# JSON schema sent with the interpretation prompt
INTERPRETATION_SCHEMA = interpretation_adapter.json_schema()
