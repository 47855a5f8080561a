import uuid

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from .database import Base
from .utils.datetime_utils import utcnow


def generate_id():
    """Generate a unique identifier for scheduling records"""
    return str(uuid.uuid4())


class SchedulingRequest(Base):
    __tablename__ = "scheduling_requests"

    id = Column(String(36), primary_key=True, default=generate_id)
    title = Column(String(500), nullable=False)
    created_by = Column(String(255), index=True, nullable=False)  # Internal user who owns the request

    # Company reference (CRM is external; profile fields are denormalised for the advisors)
    company_id = Column(String(255), index=True, nullable=True)
    company_name = Column(String(255), nullable=True)
    industry = Column(String(100), nullable=True)
    region = Column(String(100), nullable=True)  # e.g. US state code

    # Meeting details
    meeting_type = Column(String(50), nullable=False, default="discovery")
    duration_minutes = Column(Integer, nullable=False, default=30)
    timezone = Column(String(50), nullable=False, default="America/New_York")
    is_online_meeting = Column(Boolean, default=True, nullable=False)
    context = Column(Text, nullable=True)  # Free text passed to outreach templates

    # State machine
    status = Column(String(30), nullable=False, default="negotiating", index=True)
    proposed_times = Column(JSON, default=list, nullable=False)  # Ordered ISO instants
    counter_proposed_times = Column(JSON, nullable=True)

    # Claim token for the automation sweep
    next_action_type = Column(String(50), nullable=True)
    next_action_at = Column(DateTime, nullable=True, index=True)

    # Tracking
    attempt_count = Column(Integer, default=0, nullable=False)  # Outbound proposals sent
    no_show_count = Column(Integer, default=0, nullable=False)
    last_action_at = Column(DateTime, nullable=True)
    email_thread_id = Column(String(500), nullable=True, index=True)

    # Outcome
    scheduled_time = Column(DateTime, nullable=True)  # Set only while confirmed
    calendar_event_id = Column(String(500), nullable=True)  # Set only after booking
    web_link = Column(Text, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    # Safety valves
    is_paused = Column(Boolean, default=False, nullable=False)
    paused_until = Column(DateTime, nullable=True)
    needs_human_review = Column(Boolean, default=False, nullable=False)
    review_reason = Column(String(255), nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    attendees = relationship(
        "SchedulingAttendee", back_populates="request", cascade="all, delete-orphan"
    )
    actions = relationship(
        "SchedulingAction",
        back_populates="request",
        cascade="all, delete-orphan",
        order_by="(SchedulingAction.created_at, SchedulingAction.id)",
    )

    @property
    def internal_attendees(self):
        return [a for a in self.attendees if a.side == "internal"]

    @property
    def external_attendees(self):
        return [a for a in self.attendees if a.side == "external"]

    @property
    def organizer(self):
        organizers = [a for a in self.internal_attendees if a.is_organizer]
        return organizers[0] if len(organizers) == 1 else None

    @property
    def primary_contact(self):
        contacts = [a for a in self.external_attendees if a.is_primary_contact]
        if contacts:
            return contacts[0]
        externals = self.external_attendees
        return externals[0] if len(externals) == 1 else None


class SchedulingAttendee(Base):
    __tablename__ = "scheduling_attendees"

    id = Column(Integer, primary_key=True, index=True)
    scheduling_request_id = Column(
        String(36), ForeignKey("scheduling_requests.id", ondelete="CASCADE"), index=True, nullable=False
    )
    side = Column(String(10), nullable=False)  # internal, external
    email = Column(String(255), nullable=False)
    name = Column(String(255), nullable=True)
    is_organizer = Column(Boolean, default=False, nullable=False)  # Who sends the invite
    is_primary_contact = Column(Boolean, default=False, nullable=False)  # Who we negotiate with
    is_required = Column(Boolean, default=True, nullable=False)
    invite_status = Column(String(20), default="pending", nullable=False)
    created_at = Column(DateTime, default=utcnow)

    request = relationship("SchedulingRequest", back_populates="attendees")


class SchedulingAction(Base):
    """Append-only audit log; the system of record for what happened and why"""

    __tablename__ = "scheduling_actions"

    id = Column(Integer, primary_key=True, index=True)
    scheduling_request_id = Column(
        String(36), ForeignKey("scheduling_requests.id", ondelete="CASCADE"), index=True, nullable=False
    )
    action_type = Column(String(50), nullable=False, index=True)
    actor = Column(String(20), nullable=False)  # prospect, system, user
    email_id = Column(String(500), nullable=True)
    times_proposed = Column(JSON, nullable=True)
    time_selected = Column(DateTime, nullable=True)
    message_subject = Column(Text, nullable=True)
    message_content = Column(Text, nullable=True)
    ai_reasoning = Column(Text, nullable=True)
    previous_status = Column(String(30), nullable=True)
    new_status = Column(String(30), nullable=True)
    created_at = Column(DateTime, default=utcnow, index=True)

    request = relationship("SchedulingRequest", back_populates="actions")


class SchedulingInboundMessage(Base):
    """One row per inbound message id; makes reply processing idempotent"""

    __tablename__ = "scheduling_inbound_messages"

    message_id = Column(String(500), primary_key=True)
    scheduling_request_id = Column(String(36), ForeignKey("scheduling_requests.id"), nullable=True)
    conversation_id = Column(String(500), nullable=True)
    from_address = Column(String(255), nullable=True)
    outcome = Column(String(100), nullable=True)
    received_at = Column(DateTime, nullable=True)
    processed_at = Column(DateTime, default=utcnow)


class SchedulingOutboundMessage(Base):
    """Composed outreach content, one row per (request, attempt)"""

    __tablename__ = "scheduling_outbound_messages"
    __table_args__ = (UniqueConstraint("scheduling_request_id", "attempt", name="uq_outbound_attempt"),)

    id = Column(Integer, primary_key=True, index=True)
    scheduling_request_id = Column(
        String(36), ForeignKey("scheduling_requests.id", ondelete="CASCADE"), index=True, nullable=False
    )
    attempt = Column(Integer, nullable=False)
    kind = Column(String(50), nullable=False)
    subject = Column(Text, nullable=False)
    body = Column(Text, nullable=False)
    proposed_times = Column(JSON, default=list, nullable=False)
    social_proof_id = Column(Integer, ForeignKey("social_proof_items.id"), nullable=True)
    seasonal_note = Column(Text, nullable=True)
    provider_message_id = Column(String(500), nullable=True)
    sent_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)


class SchedulingAttentionItem(Base):
    """Work item for a human owner (questions, unclear replies, repeated no-shows)"""

    __tablename__ = "scheduling_attention_items"

    id = Column(Integer, primary_key=True, index=True)
    scheduling_request_id = Column(
        String(36), ForeignKey("scheduling_requests.id", ondelete="CASCADE"), index=True, nullable=False
    )
    owner = Column(String(255), nullable=True)
    reason = Column(String(50), nullable=False)
    summary = Column(Text, nullable=False)
    details = Column(JSON, nullable=True)
    resolved_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)


class SocialProofItem(Base):
    __tablename__ = "social_proof_items"

    id = Column(Integer, primary_key=True, index=True)
    type = Column(String(30), nullable=False)  # stat, case_study, testimonial, resource, industry_insight
    title = Column(String(255), nullable=True)
    content = Column(Text, nullable=False)
    source = Column(String(255), nullable=True)
    industries = Column(JSON, default=list, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    times_used = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime, default=utcnow)


class SeasonalityWindow(Base):
    """Recurring seasonal window for an industry/region (month/day range, any year)"""

    __tablename__ = "seasonality_windows"

    id = Column(Integer, primary_key=True, index=True)
    industry = Column(String(100), nullable=True)  # NULL matches every industry
    region = Column(String(100), nullable=True)  # NULL matches every region
    label = Column(String(255), nullable=False)
    start_month = Column(Integer, nullable=False)
    start_day = Column(Integer, nullable=False)
    end_month = Column(Integer, nullable=False)
    end_day = Column(Integer, nullable=False)
    business_level = Column(String(20), default="normal", nullable=False)  # peak, high, normal, low, slow
    is_blackout = Column(Boolean, default=False, nullable=False)  # Never propose times inside it
    framing = Column(Text, nullable=True)  # Sentence used in outreach while the window is current
    created_at = Column(DateTime, default=utcnow)
