"""
Pytest configuration and fixtures for the scheduling engine tests.

Every test gets a fresh in-memory sqlite database, a fake calendar/mail
provider, a deterministic stub interpreter and a fixed clock. The clock starts
on Monday 2026-10-19 14:00 UTC (10:00 in America/New_York).
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("DB_LOG_SLOW_QUERIES", "false")

from datetime import datetime, timedelta  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from meeting_scheduler import models, models_calendar  # noqa: E402,F401
from meeting_scheduler.database import Base  # noqa: E402
from meeting_scheduler.domain.scheduling import constants as c  # noqa: E402
from meeting_scheduler.domain.scheduling.automation import AutomationScheduler  # noqa: E402
from meeting_scheduler.domain.scheduling.availability_service import (  # noqa: E402
    FREE,
    AttendeeAvailability,
    AvailabilityResult,
)
from meeting_scheduler.domain.scheduling.interpreter import ResponseInterpreter  # noqa: E402
from meeting_scheduler.domain.scheduling.schemas import (  # noqa: E402
    AttendeeCreate,
    InboundReply,
    SchedulingRequestCreate,
)
from meeting_scheduler.domain.scheduling.service import SchedulingService  # noqa: E402
from meeting_scheduler.domain.scheduling.state_machine import NegotiationStateMachine  # noqa: E402
from meeting_scheduler.services.graph_client import ProviderError  # noqa: E402
from meeting_scheduler.utils.datetime_utils import to_iso  # noqa: E402

NOW = datetime(2026, 10, 19, 14, 0)

ORGANIZER = "alice@ourco.com"
COLLEAGUE = "bob@ourco.com"
PROSPECT = "dana@prospect.io"


class FixedClock:
    """Callable clock that only moves when a test moves it"""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeProvider:
    """
    In-memory stand-in for the Graph client.
    Busy blocks are naive UTC (start, end) pairs per attendee.
    """

    def __init__(self):
        self.busy = {}
        self.failing_attendees = set()
        self.schedule_error = None
        self.event_error = None
        self.mail_error = None
        self.schedule_calls = []
        self.events = []
        self.sent = []
        self.conversation_id = "conv-1"

    def block(self, email: str, start: datetime, minutes: int = 30):
        self.busy.setdefault(email, []).append((start, start + timedelta(minutes=minutes)))

    async def get_schedule(self, mailbox, attendee_emails, window_start, window_end, interval_minutes):
        self.schedule_calls.append((mailbox, list(attendee_emails), window_start, window_end, interval_minutes))
        if self.schedule_error:
            raise ProviderError(self.schedule_error)

        entries = []
        for email in attendee_emails:
            if email in self.failing_attendees:
                entries.append({"scheduleId": email, "error": {"message": "mailbox not found"}})
                continue
            view = []
            slot = window_start
            while slot < window_end:
                slot_end = slot + timedelta(minutes=interval_minutes)
                busy = any(s < slot_end and e > slot for s, e in self.busy.get(email, []))
                view.append("2" if busy else "0")
                slot = slot_end
            entries.append({"scheduleId": email, "availabilityView": "".join(view), "scheduleItems": []})
        return entries

    async def create_event(self, mailbox, title, start, end, attendees, is_online_meeting=True, body=None):
        if self.event_error:
            raise ProviderError(self.event_error)
        event_id = f"evt-{len(self.events) + 1}"
        self.events.append({"id": event_id, "mailbox": mailbox, "title": title, "start": start, "end": end})
        return {"event_id": event_id, "web_link": f"https://calendar.example.com/{event_id}"}

    async def send_mail(self, mailbox, to, subject, body, reply_to_message_id=None, cc=None):
        if self.mail_error:
            raise ProviderError(self.mail_error)
        message_id = f"msg-{len(self.sent) + 1}"
        self.sent.append(
            {
                "id": message_id,
                "mailbox": mailbox,
                "to": to,
                "cc": cc,
                "subject": subject,
                "body": body,
                "reply_to": reply_to_message_id,
            }
        )
        return {"message_id": message_id, "conversation_id": self.conversation_id}


class StubInterpreter(ResponseInterpreter):
    """Returns a canned interpretation (dict, model, or callable of the context)"""

    def __init__(self, result=None):
        self.result = result or {"intent": "unclear", "confidence": "low", "reasoning": "stub"}
        self.contexts = []

    async def classify(self, context):
        self.contexts.append(context)
        if callable(self.result):
            return self.result(context)
        return self.result


@pytest.fixture
def session_factory():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    yield factory
    engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def clock():
    return FixedClock(NOW)


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def interpreter():
    return StubInterpreter()


@pytest.fixture
def service(db, provider, interpreter, clock):
    return SchedulingService(db, provider=provider, interpreter=interpreter, clock=clock)


@pytest.fixture
def scheduler(db, service, clock):
    return AutomationScheduler(db, service=service, clock=clock)


@pytest.fixture
def state_machine(db):
    return NegotiationStateMachine(db)


def build_request_data(**overrides) -> SchedulingRequestCreate:
    attendees = overrides.pop(
        "attendees",
        [
            AttendeeCreate(email=ORGANIZER, name="Alice Smith", side="internal", is_organizer=True),
            AttendeeCreate(email=COLLEAGUE, name="Bob Jones", side="internal"),
            AttendeeCreate(email=PROSPECT, name="Dana Prospect", side="external"),
        ],
    )
    data = dict(
        title="Intro call with Prospect Inc",
        created_by=ORGANIZER,
        company_name="Prospect Inc",
        industry="logistics",
        region="NY",
        meeting_type="discovery",
        duration_minutes=30,
        timezone="America/New_York",
        attendees=attendees,
        send_initial=False,
    )
    data.update(overrides)
    return SchedulingRequestCreate(**data)


@pytest.fixture
def make_request(service):
    """Create a request in negotiating (no outreach sent)"""

    def _make(**overrides):
        return service.create_request(build_request_data(**overrides))

    return _make


def make_reply(message_id: str, text: str, sender: str = PROSPECT, conversation_id="conv-1", **extra) -> InboundReply:
    payload = {
        "id": message_id,
        "subject": "Re: Intro call with Prospect Inc",
        "body": text,
        "from": {"address": sender, "name": "Dana Prospect"},
        "receivedDateTime": "2026-10-19T14:00:00Z",
        "conversationId": conversation_id,
    }
    payload.update(extra)
    return InboundReply.model_validate(payload)


def passing_availability(start: datetime, duration_minutes: int = 30, emails=(ORGANIZER, COLLEAGUE)):
    return AvailabilityResult(
        start=start,
        end=start + timedelta(minutes=duration_minutes),
        attendees={e: AttendeeAvailability(e, FREE) for e in emails},
    )


def confirm_at(state_machine, request, when: datetime, event_id: str = "evt-fixture", **updates):
    """Drive a fresh request to confirmed at `when` through the state machine"""
    state_machine.mark_proposal_sent(request, [to_iso(when)], 1, "subject", "body")
    state_machine.confirm(
        request,
        when,
        passing_availability(when, request.duration_minutes),
        {"event_id": event_id, "web_link": None},
        c.ACTOR_PROSPECT,
        **updates,
    )
    return request
