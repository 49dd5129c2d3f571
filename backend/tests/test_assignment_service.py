import os
import sys
import threading

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from glamdispatch.errors import (
    BookingNotEligible,
    DispatchPermissionError,
    DispatchValidationError,
    InvalidTransition,
    ProviderUnavailable,
)
from glamdispatch.models import (
    Actor,
    AssignmentStatus,
    BookingStatus,
    ProviderAvailability,
)

MANAGER = Actor(actor_id="mgr_1", actor_role="MANAGER")
VENDOR = Actor(actor_id="P1", actor_role="PROVIDER")
CUSTOMER = Actor(actor_id="cust_1", actor_role="CUSTOMER")


def _event_types(dispatch, booking_id):
    return [e.event_type for e in dispatch.store.list_events(booking_id)]


def _assert_provider_exclusivity(store):
    """BUSY exactly when the provider holds one ACCEPTED assignment on a live booking."""
    with store.reader() as conn:
        rows = conn.execute(
            """
            SELECT p.id, p.availability,
                (SELECT COUNT(*) FROM assignments a JOIN bookings b ON b.id = a.booking_id
                 WHERE a.provider_id = p.id AND a.status = 'ACCEPTED'
                 AND b.status NOT IN ('COMPLETED', 'CANCELLED')) AS accepted
            FROM providers p
            """
        ).fetchall()
    for row in rows:
        assert (row["availability"] == "BUSY") == (row["accepted"] == 1), row["id"]
        assert row["accepted"] <= 1


def test_propose_binds_provider_and_keeps_it_active(dispatch, providers, book):
    booking = book()

    details = dispatch.assignments.propose_assignment(booking.id, "P1", actor=MANAGER)

    assert details.booking.status == BookingStatus.AWAITING_VENDOR_RESPONSE
    assert details.booking.assigned_provider_id == "P1"
    assert details.booking.proposed_at == dispatch.clock().isoformat()
    assert details.live_assignment.status == AssignmentStatus.PROPOSED
    assert details.live_assignment.score == 139
    assert details.live_assignment.matched_skills == ["Hair Cut"]
    provider = dispatch.store.get_provider("P1")
    assert provider.availability == ProviderAvailability.ACTIVE
    assert provider.last_assigned_at == dispatch.clock().isoformat()
    assert _event_types(dispatch, booking.id) == ["CREATED", "SUBMIT", "PROPOSE"]


def test_repeat_proposal_to_same_provider_is_noop(dispatch, providers, book):
    booking = book()
    dispatch.assignments.propose_assignment(booking.id, "P1")
    details = dispatch.assignments.propose_assignment(booking.id, "P1")

    assert len(details.assignments) == 1
    assert _event_types(dispatch, booking.id).count("PROPOSE") == 1


def test_proposal_outside_triage_is_not_eligible(dispatch, providers, book):
    booking = book()
    dispatch.assignments.propose_assignment(booking.id, "P1")

    with pytest.raises(BookingNotEligible) as exc_info:
        dispatch.assignments.propose_assignment(booking.id, "P2")

    assert isinstance(exc_info.value, InvalidTransition)
    assert exc_info.value.actual == BookingStatus.AWAITING_VENDOR_RESPONSE
    assert dispatch.store.get_booking_details(booking.id).live_assignment.provider_id == "P1"


def test_unavailable_provider_cannot_be_proposed(dispatch, providers, book):
    booking = book()
    dispatch.assignments.change_provider_availability("P1", ProviderAvailability.FROZEN)

    with pytest.raises(ProviderUnavailable):
        dispatch.assignments.propose_assignment(booking.id, "P1")

    details = dispatch.store.get_booking_details(booking.id)
    assert details.booking.status == BookingStatus.AWAITING_MANAGER
    assert details.assignments == []


def test_provider_with_open_proposal_elsewhere_is_unavailable(dispatch, providers, book):
    first = book()
    second = book(customer_id="cust_2")
    dispatch.assignments.propose_assignment(first.id, "P1")

    with pytest.raises(ProviderUnavailable):
        dispatch.assignments.propose_assignment(second.id, "P1")
    assert dispatch.store.get_booking(second.id).status == BookingStatus.AWAITING_MANAGER


def test_decline_returns_booking_to_triage_and_provider_stays_active(dispatch, providers, book):
    booking = book()
    dispatch.assignments.propose_assignment(booking.id, "P1")

    details = dispatch.assignments.respond_to_proposal(booking.id, accept=False, actor=VENDOR)

    assert details.booking.status == BookingStatus.AWAITING_MANAGER
    assert details.booking.assigned_provider_id is None
    assert details.live_assignment is None
    assert details.assignments[0].status == AssignmentStatus.DECLINED
    assert dispatch.store.get_provider("P1").availability == ProviderAvailability.ACTIVE

    again = dispatch.assignments.respond_to_proposal(booking.id, accept=False, actor=VENDOR)
    assert again.booking.version == details.booking.version
    assert _event_types(dispatch, booking.id).count("DECLINE") == 1


def test_accept_is_idempotent(dispatch, providers, book):
    booking = book()
    proposed = dispatch.assignments.propose_assignment(booking.id, "P1")
    assignment_id = proposed.live_assignment.id

    first = dispatch.assignments.respond_to_proposal(booking.id, accept=True, assignment_id=assignment_id)
    second = dispatch.assignments.respond_to_proposal(booking.id, accept=True, assignment_id=assignment_id)

    assert first.booking.status == BookingStatus.VENDOR_CONFIRMED
    assert second.booking.version == first.booking.version
    assert _event_types(dispatch, booking.id).count("ACCEPT") == 1
    assert dispatch.store.get_provider("P1").availability == ProviderAvailability.BUSY
    _assert_provider_exclusivity(dispatch.store)


def test_accept_fails_when_provider_went_inactive(dispatch, providers, book):
    booking = book()
    dispatch.assignments.propose_assignment(booking.id, "P1")
    dispatch.assignments.change_provider_availability("P1", ProviderAvailability.INACTIVE)

    with pytest.raises(ProviderUnavailable):
        dispatch.assignments.respond_to_proposal(booking.id, accept=True)

    details = dispatch.store.get_booking_details(booking.id)
    assert details.booking.status == BookingStatus.AWAITING_VENDOR_RESPONSE
    assert details.live_assignment.status == AssignmentStatus.PROPOSED


def test_response_naming_old_assignment_is_rejected(dispatch, providers, book):
    booking = book()
    old = dispatch.assignments.propose_assignment(booking.id, "P1").live_assignment
    dispatch.assignments.reassign(booking.id, "P2", actor=MANAGER)

    with pytest.raises(InvalidTransition):
        dispatch.assignments.respond_to_proposal(booking.id, accept=True, assignment_id=old.id)
    assert dispatch.store.get_provider("P1").availability == ProviderAvailability.ACTIVE


def test_reassign_supersedes_open_proposal(dispatch, providers, book):
    booking = book()
    dispatch.assignments.propose_assignment(booking.id, "P1")

    details = dispatch.assignments.reassign(booking.id, "P2", actor=MANAGER)

    assert details.booking.status == BookingStatus.AWAITING_VENDOR_RESPONSE
    assert details.booking.assigned_provider_id == "P2"
    statuses = {a.provider_id: a.status for a in details.assignments}
    assert statuses == {"P1": AssignmentStatus.SUPERSEDED, "P2": AssignmentStatus.PROPOSED}
    assert _event_types(dispatch, booking.id)[-2:] == ["WITHDRAW", "PROPOSE"]


def test_failed_reassign_rolls_back_withdrawal(dispatch, providers, book):
    booking = book()
    dispatch.assignments.propose_assignment(booking.id, "P1")
    dispatch.assignments.change_provider_availability("P2", ProviderAvailability.FROZEN)

    with pytest.raises(ProviderUnavailable):
        dispatch.assignments.reassign(booking.id, "P2")

    details = dispatch.store.get_booking_details(booking.id)
    assert details.booking.status == BookingStatus.AWAITING_VENDOR_RESPONSE
    assert details.live_assignment.provider_id == "P1"
    assert "WITHDRAW" not in _event_types(dispatch, booking.id)


def test_reassign_after_confirmation_is_not_eligible(dispatch, providers, book):
    booking = book()
    dispatch.assignments.propose_assignment(booking.id, "P1")
    dispatch.assignments.respond_to_proposal(booking.id, accept=True)

    with pytest.raises(BookingNotEligible):
        dispatch.assignments.reassign(booking.id, "P2")


def test_start_waits_for_scheduled_time(dispatch, providers, book):
    booking = book()
    dispatch.assignments.propose_assignment(booking.id, "P1")
    dispatch.assignments.respond_to_proposal(booking.id, accept=True)

    dispatch.clock.advance(minutes=59)
    with pytest.raises(InvalidTransition):
        dispatch.assignments.start_service(booking.id, actor=VENDOR)
    assert dispatch.store.get_booking(booking.id).status == BookingStatus.VENDOR_CONFIRMED

    dispatch.clock.advance(minutes=1)
    details = dispatch.assignments.start_service(booking.id, actor=VENDOR)
    assert details.booking.status == BookingStatus.STARTED

    repeat = dispatch.assignments.start_service(booking.id, actor=VENDOR)
    assert repeat.booking.version == details.booking.version


def test_complete_releases_provider_and_counts_service(dispatch, providers, book):
    booking = book()
    dispatch.assignments.propose_assignment(booking.id, "P1")
    dispatch.assignments.respond_to_proposal(booking.id, accept=True)
    dispatch.clock.advance(hours=1)
    dispatch.assignments.start_service(booking.id)

    details = dispatch.assignments.complete_service(booking.id, actor=VENDOR)
    dispatch.assignments.complete_service(booking.id, actor=VENDOR)

    assert details.booking.status == BookingStatus.COMPLETED
    assert details.assignments[0].status == AssignmentStatus.COMPLETED
    provider = dispatch.store.get_provider("P1")
    assert provider.availability == ProviderAvailability.ACTIVE
    assert provider.completed_count == 1
    _assert_provider_exclusivity(dispatch.store)


def test_customer_cannot_answer_for_provider(dispatch, providers, book):
    booking = book()
    dispatch.assignments.propose_assignment(booking.id, "P1")

    with pytest.raises(InvalidTransition):
        dispatch.assignments.respond_to_proposal(booking.id, accept=True, actor=CUSTOMER)
    with pytest.raises(InvalidTransition):
        dispatch.assignments.respond_to_proposal(
            booking.id, accept=True, actor=Actor(actor_id="P2", actor_role="PROVIDER")
        )

    details = dispatch.store.get_booking_details(booking.id)
    assert details.booking.status == BookingStatus.AWAITING_VENDOR_RESPONSE
    assert details.live_assignment.status == AssignmentStatus.PROPOSED
    assert dispatch.store.get_provider("P1").availability == ProviderAvailability.ACTIVE
    assert _event_types(dispatch, booking.id).count("ACCEPT") == 0


def test_only_assigned_provider_or_staff_run_the_service(dispatch, providers, book):
    booking = book()
    dispatch.assignments.propose_assignment(booking.id, "P1")
    dispatch.assignments.respond_to_proposal(booking.id, accept=True, actor=VENDOR)
    dispatch.clock.advance(hours=1)

    with pytest.raises(InvalidTransition):
        dispatch.assignments.start_service(booking.id, actor=CUSTOMER)
    dispatch.assignments.start_service(booking.id, actor=MANAGER)

    with pytest.raises(InvalidTransition):
        dispatch.assignments.complete_service(booking.id, actor=Actor(actor_id="P2", actor_role="PROVIDER"))
    assert dispatch.store.get_booking(booking.id).status == BookingStatus.STARTED
    assert dispatch.store.get_provider("P1").completed_count == 0

    dispatch.assignments.complete_service(booking.id, actor=VENDOR)
    assert dispatch.store.get_provider("P1").completed_count == 1


def test_complete_requires_started_booking(dispatch, providers, book):
    booking = book()
    with pytest.raises(InvalidTransition):
        dispatch.assignments.complete_service(booking.id)
    assert dispatch.store.get_provider("P1").completed_count == 0


def test_cancel_started_booking_returns_provider_to_active(dispatch, providers, book):
    booking = book()
    dispatch.assignments.propose_assignment(booking.id, "P1")
    dispatch.assignments.respond_to_proposal(booking.id, accept=True)
    dispatch.clock.advance(hours=1)
    dispatch.assignments.start_service(booking.id)

    details = dispatch.assignments.cancel_booking(booking.id, "customer unwell", actor=CUSTOMER)

    assert details.booking.status == BookingStatus.CANCELLED
    assert details.booking.cancel_reason == "customer unwell"
    assert details.live_assignment is None
    assert details.assignments[0].status == AssignmentStatus.VOID
    assert dispatch.store.get_provider("P1").availability == ProviderAvailability.ACTIVE
    _assert_provider_exclusivity(dispatch.store)


def test_cancel_is_idempotent_and_requires_reason(dispatch, book):
    booking = book()
    with pytest.raises(DispatchValidationError):
        dispatch.assignments.cancel_booking(booking.id, "  ", actor=CUSTOMER)

    dispatch.assignments.cancel_booking(booking.id, "changed plans", actor=CUSTOMER)
    dispatch.assignments.cancel_booking(booking.id, "changed plans", actor=CUSTOMER)

    assert _event_types(dispatch, booking.id).count("CANCEL") == 1


def test_accept_after_cancel_fails_without_touching_provider(dispatch, providers, book):
    booking = book()
    proposed = dispatch.assignments.propose_assignment(booking.id, "P1")
    dispatch.assignments.cancel_booking(booking.id, "found another salon", actor=CUSTOMER)

    with pytest.raises(InvalidTransition):
        dispatch.assignments.respond_to_proposal(
            booking.id, accept=True, assignment_id=proposed.live_assignment.id, actor=VENDOR
        )

    details = dispatch.store.get_booking_details(booking.id)
    assert details.booking.status == BookingStatus.CANCELLED
    assert details.assignments[0].status == AssignmentStatus.VOID
    assert dispatch.store.get_provider("P1").availability == ProviderAvailability.ACTIVE


def test_cancel_and_accept_race_leaves_consistent_state(dispatch, providers, book):
    booking = book()
    dispatch.assignments.propose_assignment(booking.id, "P1")
    barrier = threading.Barrier(2)
    outcomes = {}

    def accept():
        barrier.wait()
        try:
            dispatch.assignments.respond_to_proposal(booking.id, accept=True, actor=VENDOR)
            outcomes["accept"] = "ok"
        except InvalidTransition:
            outcomes["accept"] = "rejected"

    def cancel():
        barrier.wait()
        dispatch.assignments.cancel_booking(booking.id, "double booked", actor=CUSTOMER)
        outcomes["cancel"] = "ok"

    threads = [threading.Thread(target=accept), threading.Thread(target=cancel)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert outcomes["cancel"] == "ok"
    details = dispatch.store.get_booking_details(booking.id)
    assert details.booking.status == BookingStatus.CANCELLED
    assert details.assignments[0].status == AssignmentStatus.VOID
    assert dispatch.store.get_provider("P1").availability == ProviderAvailability.ACTIVE
    _assert_provider_exclusivity(dispatch.store)


def test_concurrent_proposals_on_one_booking(dispatch, providers, book):
    booking = book()
    barrier = threading.Barrier(2)
    results = []
    lock = threading.Lock()

    def propose(provider_id):
        barrier.wait()
        try:
            dispatch.assignments.propose_assignment(booking.id, provider_id, actor=MANAGER)
            outcome = "ok"
        except InvalidTransition:
            outcome = "invalid"
        with lock:
            results.append(outcome)

    threads = [threading.Thread(target=propose, args=(pid,)) for pid in ("P1", "P2")]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sorted(results) == ["invalid", "ok"]
    details = dispatch.store.get_booking_details(booking.id)
    live = [a for a in details.assignments if a.status in (AssignmentStatus.PROPOSED, AssignmentStatus.ACCEPTED)]
    assert len(live) == 1
    assert _event_types(dispatch, booking.id).count("PROPOSE") == 1


def test_concurrent_proposals_for_one_provider(dispatch, providers, book):
    first = book()
    second = book(customer_id="cust_2")
    barrier = threading.Barrier(2)
    results = []
    lock = threading.Lock()

    def propose(booking_id):
        barrier.wait()
        try:
            dispatch.assignments.propose_assignment(booking_id, "P1", actor=MANAGER)
            outcome = "ok"
        except ProviderUnavailable:
            outcome = "unavailable"
        with lock:
            results.append(outcome)

    threads = [threading.Thread(target=propose, args=(b.id,)) for b in (first, second)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sorted(results) == ["ok", "unavailable"]


def test_expire_stale_proposals(dispatch, providers, book):
    booking = book()
    dispatch.assignments.propose_assignment(booking.id, "P1")

    dispatch.clock.advance(minutes=10)
    assert dispatch.assignments.expire_stale_proposals() == []

    dispatch.clock.advance(minutes=25)
    assert dispatch.assignments.expire_stale_proposals() == [booking.id]
    assert dispatch.assignments.expire_stale_proposals() == []

    details = dispatch.store.get_booking_details(booking.id)
    assert details.booking.status == BookingStatus.AWAITING_MANAGER
    assert details.assignments[0].status == AssignmentStatus.EXPIRED
    assert dispatch.store.get_provider("P1").availability == ProviderAvailability.ACTIVE
    expire_event = dispatch.store.list_events(booking.id)[-1]
    assert expire_event.event_type == "EXPIRE"
    assert expire_event.actor_role == "SYSTEM"


def test_availability_changes(dispatch, providers, book):
    details = dispatch.assignments.change_provider_availability("P2", ProviderAvailability.FROZEN)
    assert details.provider.availability == ProviderAvailability.FROZEN

    with pytest.raises(DispatchValidationError):
        dispatch.assignments.change_provider_availability("P2", ProviderAvailability.BUSY)
    with pytest.raises(DispatchPermissionError):
        dispatch.assignments.change_provider_availability("P2", ProviderAvailability.ACTIVE, actor=CUSTOMER)
    with pytest.raises(DispatchPermissionError):
        dispatch.assignments.change_provider_availability(
            "P2", ProviderAvailability.ACTIVE, actor=Actor(actor_id="P2", actor_role="PROVIDER")
        )

    booking = book()
    dispatch.assignments.propose_assignment(booking.id, "P1")
    dispatch.assignments.respond_to_proposal(booking.id, accept=True)
    with pytest.raises(ProviderUnavailable):
        dispatch.assignments.change_provider_availability("P1", ProviderAvailability.INACTIVE)
    assert dispatch.store.get_provider("P1").availability == ProviderAvailability.BUSY


def test_provider_can_pause_own_availability(dispatch, providers):
    own = Actor(actor_id="P2", actor_role="PROVIDER")
    paused = dispatch.assignments.change_provider_availability("P2", ProviderAvailability.INACTIVE, actor=own)
    assert paused.provider.availability == ProviderAvailability.INACTIVE

    with pytest.raises(DispatchPermissionError):
        dispatch.assignments.change_provider_availability("P1", ProviderAvailability.INACTIVE, actor=own)
    with pytest.raises(DispatchPermissionError):
        dispatch.assignments.change_provider_availability("P2", ProviderAvailability.FROZEN, actor=own)


def test_feed_receives_events_only_after_commit(dispatch, providers, book):
    booking = book()
    dispatch.assignments.change_provider_availability("P2", ProviderAvailability.FROZEN)
    published = len(dispatch.feed.list_recent(limit=100))

    with pytest.raises(ProviderUnavailable):
        dispatch.assignments.propose_assignment(booking.id, "P2")
    assert len(dispatch.feed.list_recent(limit=100)) == published

    dispatch.assignments.propose_assignment(booking.id, "P1")
    latest = dispatch.feed.list_recent(booking_id=booking.id, limit=1)[0]
    assert latest.event_type == "PROPOSE"
    assert latest.provider_id == "P1"
