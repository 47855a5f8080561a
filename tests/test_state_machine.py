"""
Tests for the negotiation state machine.

Test scenarios:
1. Transition table (terminal statuses, confirmed reopening)
2. One audit action per transition with matching previous/new status
3. Confirmation gating (offered time, passing availability, booked event)
4. Compare-and-set against a concurrently changed row
5. Cancellation from every non-terminal status
6. Data-integrity and external-failure recording leave status alone
"""

from datetime import timedelta

import pytest
from conftest import NOW, confirm_at, passing_availability

from meeting_scheduler.domain.scheduling import constants as c
from meeting_scheduler.domain.scheduling.availability_service import BUSY, AttendeeAvailability
from meeting_scheduler.domain.scheduling.repository import SchedulingRepository
from meeting_scheduler.domain.scheduling.state_machine import (
    AvailabilityRequiredError,
    InvalidTransitionError,
    StaleStatusError,
    validate_status_transition,
)
from meeting_scheduler.models import SchedulingAction, SchedulingAttentionItem, SchedulingRequest
from meeting_scheduler.utils.datetime_utils import to_iso

SLOT = NOW + timedelta(days=1, hours=4)


def transition_actions(db, request_id):
    return [
        a
        for a in SchedulingRepository.list_actions(db, request_id)
        if a.previous_status is not None or a.new_status is not None
    ]


class TestTransitionTable:
    def test_terminal_statuses_have_no_exits(self):
        for target in (c.NEGOTIATING, c.AWAITING_RESPONSE, c.CONFIRMED, c.CANCELLED):
            assert not validate_status_transition(c.DECLINED, target)
            assert not validate_status_transition(c.CANCELLED, target)

    def test_confirmed_can_reopen_or_cancel_but_not_decline(self):
        assert validate_status_transition(c.CONFIRMED, c.NEGOTIATING)
        assert validate_status_transition(c.CONFIRMED, c.CANCELLED)
        assert not validate_status_transition(c.CONFIRMED, c.DECLINED)
        assert not validate_status_transition(c.CONFIRMED, c.AWAITING_RESPONSE)

    def test_open_statuses_reach_every_outcome(self):
        for source in c.OPEN_STATUSES:
            for target in (c.CONFIRMED, c.DECLINED, c.CANCELLED, c.NEGOTIATING, c.AWAITING_RESPONSE):
                assert validate_status_transition(source, target)


class TestAuditTrail:
    def test_each_transition_writes_exactly_one_matching_action(self, db, make_request, state_machine):
        request = make_request()

        state_machine.mark_proposal_sent(request, [to_iso(SLOT)], 1, "Intro", "Options")
        state_machine.record_conflict(request, SLOT, ["bob@ourco.com"], next_action_at=NOW)
        state_machine.mark_proposal_sent(request, [to_iso(SLOT + timedelta(days=1))], 2, "Re: Intro", "More")
        state_machine.decline(request)

        actions = transition_actions(db, request.id)
        assert [(a.previous_status, a.new_status) for a in actions] == [
            (c.NEGOTIATING, c.AWAITING_RESPONSE),
            (c.AWAITING_RESPONSE, c.NEGOTIATING),
            (c.NEGOTIATING, c.AWAITING_RESPONSE),
            (c.AWAITING_RESPONSE, c.DECLINED),
        ]
        assert [a.action_type for a in actions] == [
            c.ACTION_EMAIL_SENT,
            c.ACTION_TIME_CONFLICT,
            c.ACTION_EMAIL_SENT,
            c.ACTION_DECLINED,
        ]
        assert request.status == c.DECLINED

    def test_invalid_transition_writes_nothing(self, db, make_request, state_machine):
        request = make_request()
        state_machine.decline(request)
        before = SchedulingRepository.count_actions(db, request.id)

        with pytest.raises(InvalidTransitionError):
            state_machine.record_counter_proposal(request, [to_iso(SLOT)], review_at=NOW)

        assert SchedulingRepository.count_actions(db, request.id) == before
        assert request.status == c.DECLINED

    def test_proposal_sent_clears_counter_proposals_and_pause(self, db, make_request, state_machine):
        request = make_request()
        state_machine.record_counter_proposal(request, [to_iso(SLOT)], review_at=NOW)
        assert request.counter_proposed_times == [to_iso(SLOT)]

        state_machine.mark_proposal_sent(request, [to_iso(SLOT)], 1, "s", "b", thread_id="conv-9")

        assert request.counter_proposed_times is None
        assert request.attempt_count == 1
        assert request.email_thread_id == "conv-9"
        assert request.is_paused is False


class TestConfirmation:
    def test_confirm_sets_schedule_and_event(self, db, make_request, state_machine):
        request = confirm_at(state_machine, make_request(), SLOT, event_id="evt-42")

        assert request.status == c.CONFIRMED
        assert request.scheduled_time == SLOT
        assert request.calendar_event_id == "evt-42"
        assert to_iso(request.scheduled_time) in request.proposed_times
        booked = SchedulingRepository.latest_action(db, request.id, c.ACTION_MEETING_BOOKED)
        assert booked.time_selected == SLOT
        assert (booked.previous_status, booked.new_status) == (c.AWAITING_RESPONSE, c.CONFIRMED)

    def test_confirm_rejects_time_that_was_never_offered(self, make_request, state_machine):
        request = make_request()
        state_machine.mark_proposal_sent(request, [to_iso(SLOT)], 1, "s", "b")
        other = SLOT + timedelta(hours=2)

        with pytest.raises(InvalidTransitionError):
            state_machine.confirm(request, other, passing_availability(other), {"event_id": "e"}, c.ACTOR_PROSPECT)
        assert request.status == c.AWAITING_RESPONSE

    def test_confirm_requires_passing_availability_for_that_exact_time(self, make_request, state_machine):
        request = make_request()
        state_machine.mark_proposal_sent(request, [to_iso(SLOT)], 1, "s", "b")

        busy = passing_availability(SLOT)
        busy.attendees["bob@ourco.com"] = AttendeeAvailability("bob@ourco.com", BUSY)
        with pytest.raises(AvailabilityRequiredError):
            state_machine.confirm(request, SLOT, busy, {"event_id": "e"}, c.ACTOR_PROSPECT)

        shifted = passing_availability(SLOT + timedelta(minutes=30))
        with pytest.raises(AvailabilityRequiredError):
            state_machine.confirm(request, SLOT, shifted, {"event_id": "e"}, c.ACTOR_PROSPECT)

        with pytest.raises(AvailabilityRequiredError):
            state_machine.confirm(request, SLOT, None, {"event_id": "e"}, c.ACTOR_PROSPECT)

        assert request.status == c.AWAITING_RESPONSE

    def test_confirm_requires_a_booked_event(self, make_request, state_machine):
        request = make_request()
        state_machine.mark_proposal_sent(request, [to_iso(SLOT)], 1, "s", "b")

        with pytest.raises(AvailabilityRequiredError):
            state_machine.confirm(request, SLOT, passing_availability(SLOT), {"event_id": None}, c.ACTOR_PROSPECT)

    def test_counter_proposed_time_can_be_confirmed(self, make_request, state_machine):
        request = make_request()
        state_machine.mark_proposal_sent(request, [to_iso(SLOT)], 1, "s", "b")
        counter = SLOT + timedelta(days=2)
        state_machine.record_counter_proposal(request, [to_iso(counter)], review_at=NOW)

        state_machine.confirm(request, counter, passing_availability(counter), {"event_id": "e"}, c.ACTOR_SYSTEM)

        assert request.status == c.CONFIRMED
        assert to_iso(request.scheduled_time) in request.counter_proposed_times

    def test_leaving_confirmed_clears_booking_fields(self, make_request, state_machine):
        request = confirm_at(state_machine, make_request(), SLOT)

        state_machine.reopen(request, "No-show #1")

        assert request.status == c.NEGOTIATING
        assert request.scheduled_time is None
        assert request.calendar_event_id is None


class TestConcurrency:
    def test_stale_status_is_rejected(self, db, session_factory, make_request, state_machine):
        request = make_request()
        state_machine.mark_proposal_sent(request, [to_iso(SLOT)], 1, "s", "b")

        # Another worker cancels the request behind this session's back
        other = session_factory()
        other.query(SchedulingRequest).filter(SchedulingRequest.id == request.id).update(
            {"status": c.CANCELLED}, synchronize_session=False
        )
        other.commit()
        other.close()

        with pytest.raises(StaleStatusError):
            state_machine.decline(request)

        assert request.status == c.CANCELLED
        assert SchedulingRepository.latest_action(db, request.id, c.ACTION_DECLINED) is None

    def test_cancel_reads_fresh_status_first(self, session_factory, make_request, state_machine):
        request = make_request()
        state_machine.mark_proposal_sent(request, [to_iso(SLOT)], 1, "s", "b")

        other = session_factory()
        other.query(SchedulingRequest).filter(SchedulingRequest.id == request.id).update(
            {"status": c.NEGOTIATING}, synchronize_session=False
        )
        other.commit()
        other.close()

        action = state_machine.cancel(request, reason="Deal lost")

        assert request.status == c.CANCELLED
        assert action.previous_status == c.NEGOTIATING
        assert request.next_action_type is None


class TestCancellation:
    @pytest.mark.parametrize("setup", ["negotiating", "awaiting_response", "confirmed"])
    def test_cancel_from_non_terminal(self, db, make_request, state_machine, setup):
        request = make_request()
        if setup == "awaiting_response":
            state_machine.mark_proposal_sent(request, [to_iso(SLOT)], 1, "s", "b")
        elif setup == "confirmed":
            confirm_at(state_machine, request, SLOT, event_id="evt-7")

        state_machine.cancel(request, reason="Prospect went dark")

        assert request.status == c.CANCELLED
        assert request.scheduled_time is None
        action = SchedulingRepository.latest_action(db, request.id, c.ACTION_CANCELLED)
        assert action.previous_status == setup
        if setup == "confirmed":
            assert "evt-7" in action.message_content

    def test_cancel_twice_is_rejected(self, make_request, state_machine):
        request = make_request()
        state_machine.cancel(request)

        with pytest.raises(InvalidTransitionError):
            state_machine.cancel(request)


class TestNonTransitionRecords:
    def test_data_integrity_flags_request_without_changing_status(self, db, make_request, state_machine):
        request = make_request()
        SchedulingRepository.arm_next_action(db, request.id, c.NEXT_SEND_FOLLOW_UP, NOW)

        state_machine.flag_data_integrity(request, "Request has no primary contact")

        assert request.status == c.NEGOTIATING
        assert request.needs_human_review is True
        assert request.next_action_type is None
        action = SchedulingRepository.latest_action(db, request.id, c.ACTION_DATA_INTEGRITY_ERROR)
        assert action.previous_status is None and action.new_status is None
        item = db.query(SchedulingAttentionItem).filter_by(scheduling_request_id=request.id).one()
        assert item.reason == c.ATTENTION_DATA_INTEGRITY

    def test_external_failure_rearms_token(self, db, make_request, state_machine):
        request = make_request()
        retry_at = NOW + timedelta(minutes=15)

        state_machine.record_external_failure(request, "send_initial", "timeout", c.NEXT_SEND_FOLLOW_UP, retry_at)

        assert request.status == c.NEGOTIATING
        assert request.next_action_type == c.NEXT_SEND_FOLLOW_UP
        assert request.next_action_at == retry_at
        assert db.query(SchedulingAction).filter_by(action_type=c.ACTION_EXTERNAL_CALL_FAILED).count() == 1
