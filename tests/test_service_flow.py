"""
End-to-end negotiation flows through SchedulingService and the automation sweep.

Test scenarios:
1. Outreach → accept → fresh availability check → booking → confirmation
2. Conflicting accept goes back to negotiating and alternatives follow
3. Counter-proposals reviewed by the sweep (free and busy cases)
4. Questions, unclear replies and declines
5. Duplicate, unmatched and ambiguous inbound replies
6. Provider failures: mail retry reuses content, booking retry
7. User commands: cancel, reschedule, complete, resolve attention
"""

from datetime import date, datetime, timedelta, timezone

import pytest
from conftest import COLLEAGUE, NOW, ORGANIZER, PROSPECT, confirm_at, make_reply

from meeting_scheduler.domain.scheduling import constants as c
from meeting_scheduler.domain.scheduling.repository import SchedulingRepository
from meeting_scheduler.domain.scheduling.schemas import AttendeeCreate
from meeting_scheduler.domain.scheduling.service import RequestNotFoundError
from meeting_scheduler.domain.scheduling.state_machine import AvailabilityRequiredError, InvalidTransitionError
from meeting_scheduler.models import (
    SchedulingAttentionItem,
    SchedulingInboundMessage,
    SchedulingOutboundMessage,
)

TUESDAY_10AM = datetime(2026, 10, 20, 14, 0)
EXPECTED_TIMES = ["2026-10-20T14:00:00Z", "2026-10-21T18:00:00Z", "2026-10-22T15:00:00Z"]

ACCEPT_TUESDAY = {"intent": "accept", "confidence": "high", "selected_time": "2026-10-20T10:00:00"}


@pytest.fixture
async def outreached(service, make_request):
    """A request whose initial proposal has gone out (awaiting_response)"""
    request = make_request()
    await service.start_outreach(request)
    return request


def attention_reasons(db, request_id):
    return [
        item.reason
        for item in db.query(SchedulingAttentionItem).filter_by(scheduling_request_id=request_id).all()
    ]


class TestOutreach:
    async def test_initial_outreach(self, db, service, make_request, provider):
        request = make_request()

        message = await service.start_outreach(request)

        assert message.attempt == 1
        assert message.sent_at is not None
        assert request.status == c.AWAITING_RESPONSE
        assert request.proposed_times == EXPECTED_TIMES
        assert request.attempt_count == 1
        assert request.email_thread_id == "conv-1"
        assert request.next_action_type == c.NEXT_SEND_FOLLOW_UP
        assert request.next_action_at == NOW + timedelta(hours=48)

        sent = provider.sent[0]
        assert sent["mailbox"] == ORGANIZER
        assert sent["to"] == [{"email": PROSPECT, "name": "Dana Prospect"}]
        assert sent["cc"] is None
        action = SchedulingRepository.latest_action(db, request.id, c.ACTION_EMAIL_SENT)
        assert action.times_proposed == EXPECTED_TIMES
        assert action.email_id == "msg-1"

    async def test_other_external_attendees_are_copied(self, service, make_request, provider):
        request = make_request(
            attendees=[
                AttendeeCreate(email=ORGANIZER, side="internal", is_organizer=True),
                AttendeeCreate(email=PROSPECT, name="Dana", side="external", is_primary_contact=True),
                AttendeeCreate(email="eve@prospect.io", name="Eve", side="external"),
            ]
        )

        await service.start_outreach(request)

        assert provider.sent[0]["to"] == [{"email": PROSPECT, "name": "Dana"}]
        assert provider.sent[0]["cc"] == [{"email": "eve@prospect.io", "name": "Eve"}]

    async def test_follow_up_cadence(self, db, scheduler, outreached, provider, clock):
        clock.advance(hours=48)

        summary = await scheduler.run_sweep()

        assert summary == {"processed": 1, "succeeded": 1, "failed": 0, "skipped": 0}
        db.refresh(outreached)
        assert outreached.attempt_count == 2
        assert outreached.next_action_at == clock.now + timedelta(hours=72)
        assert provider.sent[1]["subject"] == "Re: Intro call with Prospect Inc"
        assert provider.sent[1]["reply_to"] == "msg-1"
        assert SchedulingRepository.count_actions(db, outreached.id, c.ACTION_FOLLOW_UP_SENT) == 1

    async def test_nothing_due_before_follow_up_time(self, scheduler, outreached, clock):
        clock.advance(hours=47)
        summary = await scheduler.run_sweep()
        assert summary["processed"] == 0

    async def test_max_attempts_escalates_instead_of_sending(self, db, scheduler, make_request, state_machine, provider):
        request = make_request()
        state_machine.mark_proposal_sent(
            request, EXPECTED_TIMES, 5, "s", "b", next_action_type=c.NEXT_SEND_FOLLOW_UP, next_action_at=NOW
        )

        await scheduler.run_sweep()

        db.refresh(request)
        assert request.needs_human_review is True
        assert request.next_action_type is None
        assert provider.sent == []
        assert attention_reasons(db, request.id) == [c.ATTENTION_MAX_ATTEMPTS]
        assert SchedulingRepository.count_actions(db, request.id, c.ACTION_ESCALATED) == 1

    async def test_missing_primary_contact_flags_instead_of_sending(self, db, service, make_request, provider):
        request = make_request(
            attendees=[
                AttendeeCreate(email=ORGANIZER, side="internal", is_organizer=True),
                AttendeeCreate(email=PROSPECT, side="external"),
                AttendeeCreate(email="eve@prospect.io", side="external"),
            ]
        )

        assert await service.start_outreach(request) is None

        assert provider.sent == []
        assert request.status == c.NEGOTIATING
        assert request.needs_human_review is True
        assert attention_reasons(db, request.id) == [c.ATTENTION_DATA_INTEGRITY]

    async def test_no_free_slots_escalates(self, db, service, make_request, provider):
        provider.block(ORGANIZER, NOW, minutes=60 * 24 * 15)
        request = make_request()

        assert await service.start_outreach(request) is None

        assert request.needs_human_review is True
        assert request.next_action_type is None
        assert attention_reasons(db, request.id) == [c.ATTENTION_MAX_ATTEMPTS]


class TestAccept:
    async def test_accept_books_after_fresh_check(self, db, service, outreached, interpreter, provider):
        interpreter.result = ACCEPT_TUESDAY
        checks_before = len(provider.schedule_calls)

        result = await service.process_inbound_reply(make_reply("in-1", "Tuesday at 10 works for me"))

        assert result.outcome == "confirmed"
        assert result.scheduling_request_id == outreached.id
        db.refresh(outreached)
        assert outreached.status == c.CONFIRMED
        assert outreached.scheduled_time == TUESDAY_10AM
        assert outreached.calendar_event_id == "evt-1"
        assert outreached.web_link == "https://calendar.example.com/evt-1"

        # Exactly one availability check, for exactly the selected slot
        checks = provider.schedule_calls[checks_before:]
        assert len(checks) == 1
        assert checks[0][1] == [ORGANIZER, COLLEAGUE]
        assert checks[0][2:4] == (TUESDAY_10AM, TUESDAY_10AM + timedelta(minutes=30))

        assert provider.events[0]["start"] == TUESDAY_10AM
        confirmation = provider.sent[-1]
        assert confirmation["subject"].startswith("Confirmed: Intro call with Prospect Inc")
        assert confirmation["reply_to"] == "in-1"

        # Too close for a reminder; no-show detection is next
        assert outreached.next_action_type == c.NEXT_DETECT_NO_SHOW
        assert outreached.next_action_at == TUESDAY_10AM + timedelta(minutes=30)

    async def test_interpreter_sees_grounded_context(self, service, outreached, interpreter):
        interpreter.result = ACCEPT_TUESDAY

        await service.process_inbound_reply(make_reply("in-1", "Tuesday at 10 works for me"))

        context = interpreter.contexts[0]
        assert context.proposed_times == EXPECTED_TIMES
        assert context.grounding.today == date(2026, 10, 19)
        assert context.timezone == "America/New_York"

    async def test_reply_is_processed_once(self, service, outreached, interpreter, provider):
        interpreter.result = ACCEPT_TUESDAY
        reply = make_reply("in-1", "Tuesday at 10 works for me")

        first = await service.process_inbound_reply(reply)
        second = await service.process_inbound_reply(reply)

        assert first.outcome == "confirmed"
        assert second.duplicate is True
        assert second.outcome == "duplicate"
        assert len(provider.events) == 1
        assert len(interpreter.contexts) == 1

    async def test_conflict_returns_to_negotiating_then_alternatives(
        self, db, service, scheduler, outreached, interpreter, provider
    ):
        interpreter.result = ACCEPT_TUESDAY
        provider.block(COLLEAGUE, TUESDAY_10AM)

        result = await service.process_inbound_reply(make_reply("in-1", "Tuesday at 10 works for me"))

        assert result.outcome == "time_conflict"
        db.refresh(outreached)
        assert outreached.status == c.NEGOTIATING
        assert outreached.scheduled_time is None
        assert provider.events == []
        assert outreached.next_action_type == c.NEXT_SEND_FOLLOW_UP

        await scheduler.run_sweep()

        db.refresh(outreached)
        assert outreached.status in c.OPEN_STATUSES
        assert outreached.attempt_count == 2
        assert "2026-10-20T14:00:00Z" not in outreached.proposed_times
        assert "Unfortunately Tuesday, October 20 at 10:00 AM EDT no longer works" in provider.sent[-1]["body"]

    async def test_option_number_reply(self, db, service, outreached, interpreter):
        interpreter.result = {"intent": "accept", "confidence": "high"}

        result = await service.process_inbound_reply(make_reply("in-1", "Option 2 is perfect"))

        assert result.outcome == "confirmed"
        db.refresh(outreached)
        assert outreached.scheduled_time == datetime(2026, 10, 21, 18, 0)

    async def test_booking_failure_is_retried_by_sweep(self, db, service, scheduler, outreached, interpreter, provider, clock):
        interpreter.result = ACCEPT_TUESDAY
        provider.event_error = "calendar unavailable"

        result = await service.process_inbound_reply(make_reply("in-1", "Tuesday at 10 works for me"))

        assert result.outcome == "booking_failed"
        db.refresh(outreached)
        assert outreached.status in c.OPEN_STATUSES
        assert outreached.counter_proposed_times == ["2026-10-20T14:00:00Z"]
        assert outreached.next_action_type == c.NEXT_REVIEW_COUNTER_PROPOSAL
        assert SchedulingRepository.count_actions(db, outreached.id, c.ACTION_EXTERNAL_CALL_FAILED) == 1

        provider.event_error = None
        clock.advance(minutes=15)
        await scheduler.run_sweep()

        db.refresh(outreached)
        assert outreached.status == c.CONFIRMED
        assert outreached.scheduled_time == TUESDAY_10AM

    async def test_crash_releases_message_for_redelivery(self, db, service, outreached, interpreter, provider, monkeypatch):
        interpreter.result = ACCEPT_TUESDAY
        reply = make_reply("in-1", "Tuesday at 10 works for me")

        async def explode(*args, **kwargs):
            raise RuntimeError("bug")

        monkeypatch.setattr(provider, "create_event", explode)
        with pytest.raises(RuntimeError):
            await service.process_inbound_reply(reply)
        assert db.query(SchedulingInboundMessage).count() == 0
        db.refresh(outreached)
        assert outreached.status in c.OPEN_STATUSES
        assert SchedulingRepository.count_actions(db, outreached.id, c.ACTION_EXTERNAL_CALL_FAILED) == 1

        monkeypatch.undo()
        result = await service.process_inbound_reply(reply)
        assert result.outcome == "confirmed"


class TestCounterProposal:
    async def test_free_counter_time_is_booked_by_sweep(self, db, service, scheduler, outreached, interpreter, provider):
        interpreter.result = {"intent": "counter_propose", "counter_proposed_times": ["2026-10-23T09:00:00"]}

        result = await service.process_inbound_reply(make_reply("in-1", "Could we do Friday at 9 instead?"))

        assert result.outcome == "counter_proposed"
        db.refresh(outreached)
        assert outreached.status == c.NEGOTIATING
        assert outreached.counter_proposed_times == ["2026-10-23T13:00:00Z"]
        assert outreached.next_action_type == c.NEXT_REVIEW_COUNTER_PROPOSAL

        await scheduler.run_sweep()

        db.refresh(outreached)
        assert outreached.status == c.CONFIRMED
        assert outreached.scheduled_time == datetime(2026, 10, 23, 13, 0)
        assert outreached.next_action_type == c.NEXT_SEND_REMINDER
        assert outreached.next_action_at == datetime(2026, 10, 22, 13, 0)
        booked = SchedulingRepository.latest_action(db, outreached.id, c.ACTION_MEETING_BOOKED)
        assert booked.actor == c.ACTOR_SYSTEM

    async def test_busy_counter_time_gets_alternatives(self, db, service, scheduler, outreached, interpreter, provider):
        interpreter.result = {"intent": "counter_propose", "counter_proposed_times": ["2026-10-23T09:00:00"]}
        provider.block(ORGANIZER, datetime(2026, 10, 23, 13, 0))

        await service.process_inbound_reply(make_reply("in-1", "Could we do Friday at 9 instead?"))
        await scheduler.run_sweep()

        db.refresh(outreached)
        assert outreached.status in c.OPEN_STATUSES
        assert outreached.attempt_count == 2
        assert outreached.counter_proposed_times is None
        assert "2026-10-23T13:00:00Z" not in outreached.proposed_times
        assert "Friday, October 23 at 9:00 AM EDT no longer works" in provider.sent[-1]["body"]
        assert provider.events == []


class TestOtherReplies:
    async def test_question_goes_to_a_human(self, db, service, scheduler, outreached, interpreter):
        interpreter.result = {"intent": "question", "question": "Will this be recorded?"}

        result = await service.process_inbound_reply(make_reply("in-1", "Will this be recorded?"))

        assert result.outcome == "question"
        db.refresh(outreached)
        assert outreached.status == c.NEGOTIATING
        assert outreached.next_action_type is None
        item = db.query(SchedulingAttentionItem).filter_by(scheduling_request_id=outreached.id).one()
        assert item.reason == c.ATTENTION_QUESTION
        assert item.owner == ORGANIZER
        assert item.details["question"] == "Will this be recorded?"

        assert (await scheduler.run_sweep())["processed"] == 0

    async def test_unclear_reply_is_held_then_resolved(self, db, service, outreached, interpreter):
        interpreter.result = {"intent": "accept", "confidence": "high"}

        result = await service.process_inbound_reply(make_reply("in-1", "Sure, sounds good"))

        assert result.outcome == "held_for_review"
        db.refresh(outreached)
        assert outreached.needs_human_review is True
        assert outreached.review_reason == "accept without an identifiable time"
        items = service.list_attention_items(owner=ORGANIZER)
        assert [i.reason for i in items] == [c.ATTENTION_UNCLEAR]

        service.resolve_attention_item(items[0].id, resolved_by=ORGANIZER, note="Called them")

        db.refresh(outreached)
        assert outreached.needs_human_review is False
        assert service.list_attention_items(owner=ORGANIZER) == []
        assert len(service.list_attention_items(include_resolved=True)) == 1

    async def test_decline_is_terminal(self, db, service, scheduler, outreached, interpreter):
        interpreter.result = {"intent": "decline", "confidence": "high", "reasoning": "Not interested"}

        result = await service.process_inbound_reply(make_reply("in-1", "No thanks"))

        assert result.outcome == "declined"
        db.refresh(outreached)
        assert outreached.status == c.DECLINED
        assert outreached.next_action_type is None

        later = await service.process_inbound_reply(make_reply("in-2", "Actually, maybe Tuesday?"))
        assert later.outcome == "recorded_declined"
        assert outreached.status == c.DECLINED
        assert SchedulingRepository.count_actions(db, outreached.id, c.ACTION_EMAIL_RECEIVED) == 1


class TestMatching:
    async def test_unmatched_reply(self, service, outreached):
        result = await service.process_inbound_reply(
            make_reply("in-9", "Who is this?", sender="stranger@elsewhere.com", conversation_id="conv-zzz")
        )
        assert result.outcome == "unmatched"
        assert result.scheduling_request_id is None

    async def test_sender_match_without_thread(self, db, service, make_request, interpreter):
        request = make_request()
        interpreter.result = {"intent": "decline"}

        result = await service.process_inbound_reply(make_reply("in-1", "No thanks", conversation_id="conv-new"))

        assert result.scheduling_request_id == request.id
        db.refresh(request)
        assert request.email_thread_id == "conv-new"

    async def test_ambiguous_sender_is_never_guessed(self, db, service, make_request, interpreter):
        first = make_request()
        second = make_request(title="Second conversation")

        result = await service.process_inbound_reply(make_reply("in-1", "Tuesday works", conversation_id=None))

        assert result.outcome == "ambiguous_match"
        assert interpreter.contexts == []
        for request in (first, second):
            db.refresh(request)
            assert request.status == c.NEGOTIATING
            assert request.needs_human_review is True
            assert attention_reasons(db, request.id) == [c.ATTENTION_DATA_INTEGRITY]


class TestMailFailure:
    async def test_retry_reuses_composed_content(self, db, service, scheduler, make_request, provider, clock):
        request = make_request()
        provider.mail_error = "mailbox throttled"

        assert await service.start_outreach(request) is None

        db.refresh(request)
        assert request.status == c.NEGOTIATING
        assert request.next_action_type == c.NEXT_SEND_FOLLOW_UP
        assert request.next_action_at == NOW + timedelta(minutes=15)
        stored = db.query(SchedulingOutboundMessage).filter_by(scheduling_request_id=request.id).one()
        assert stored.sent_at is None

        # Calendar moves in the meantime; the retry must not re-compose
        provider.mail_error = None
        provider.block(ORGANIZER, TUESDAY_10AM)
        clock.advance(minutes=15)
        await scheduler.run_sweep()

        db.refresh(request)
        assert request.status == c.AWAITING_RESPONSE
        assert request.proposed_times == EXPECTED_TIMES
        assert len(provider.sent) == 1
        assert provider.sent[0]["body"] == stored.body


class TestUserCommands:
    def test_unknown_request(self, service):
        with pytest.raises(RequestNotFoundError):
            service.get_request("does-not-exist")

    async def test_cancel_stops_automation(self, db, service, scheduler, outreached, interpreter, clock):
        service.cancel(outreached.id, reason="Deal lost", cancelled_by=ORGANIZER)

        db.refresh(outreached)
        assert outreached.status == c.CANCELLED
        assert outreached.next_action_type is None
        action = SchedulingRepository.latest_action(db, outreached.id, c.ACTION_CANCELLED)
        assert action.actor == c.ACTOR_USER
        assert action.message_content == f"Deal lost ({ORGANIZER})"

        clock.advance(days=3)
        assert (await scheduler.run_sweep())["processed"] == 0

        interpreter.result = ACCEPT_TUESDAY
        late = await service.process_inbound_reply(make_reply("in-1", "Tuesday at 10 works for me"))
        assert late.outcome == "recorded_cancelled"

        with pytest.raises(InvalidTransitionError):
            service.cancel(outreached.id)

    async def test_reschedule_confirmed_meeting(self, db, service, make_request, provider):
        request = confirm_at(service.state_machine, make_request(), TUESDAY_10AM)
        new_time = datetime(2026, 10, 21, 19, 0, tzinfo=timezone.utc)

        await service.reschedule(request.id, new_time, requested_by=ORGANIZER)

        db.refresh(request)
        assert request.status == c.CONFIRMED
        assert request.scheduled_time == datetime(2026, 10, 21, 19, 0)
        assert request.calendar_event_id == "evt-1"
        assert request.next_action_type == c.NEXT_SEND_REMINDER
        assert request.next_action_at == datetime(2026, 10, 20, 19, 0)
        action = SchedulingRepository.latest_action(db, request.id, c.ACTION_RESCHEDULED)
        assert (action.previous_status, action.new_status) == (c.CONFIRMED, c.CONFIRMED)
        assert provider.sent[-1]["subject"].startswith("Confirmed:")

    async def test_reschedule_reads_naive_time_in_request_timezone(self, db, service, make_request):
        request = confirm_at(service.state_machine, make_request(), TUESDAY_10AM)

        await service.reschedule(request.id, datetime(2026, 10, 21, 15, 0))

        db.refresh(request)
        assert request.scheduled_time == datetime(2026, 10, 21, 19, 0)

    async def test_reschedule_requires_free_future_slot(self, service, make_request, provider):
        request = confirm_at(service.state_machine, make_request(), TUESDAY_10AM)
        busy = datetime(2026, 10, 21, 19, 0)
        provider.block(COLLEAGUE, busy)

        with pytest.raises(AvailabilityRequiredError):
            await service.reschedule(request.id, busy.replace(tzinfo=timezone.utc))
        with pytest.raises(InvalidTransitionError):
            await service.reschedule(request.id, datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc))
        assert provider.events == []

    async def test_reschedule_only_confirmed(self, service, outreached):
        with pytest.raises(InvalidTransitionError):
            await service.reschedule(outreached.id, datetime(2026, 10, 21, 19, 0, tzinfo=timezone.utc))

    def test_mark_completed(self, db, service, make_request, clock):
        request = confirm_at(service.state_machine, make_request(), TUESDAY_10AM)

        with pytest.raises(InvalidTransitionError):
            service.mark_completed(request.id)

        clock.advance(days=1, minutes=40)
        service.mark_completed(request.id, completed_by=ORGANIZER)

        db.refresh(request)
        assert request.completed_at == clock.now
        assert request.next_action_type is None
        assert service.no_show.apply(request, clock.now) is None
