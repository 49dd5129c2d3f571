import logging
import sqlite3
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from glamdispatch import config
from glamdispatch.errors import (
    BookingNotEligible,
    DispatchPermissionError,
    DispatchValidationError,
    InvalidTransition,
    ProviderUnavailable,
)
from glamdispatch.models import (
    SYSTEM_ACTOR,
    Actor,
    ActorRole,
    Assignment,
    AssignmentStatus,
    Booking,
    BookingDetails,
    BookingEvent,
    BookingStatus,
    ProviderAvailability,
    ProviderDetails,
)
from glamdispatch.services.audit import AuditEmitter, audit_emitter
from glamdispatch.services.booking_store import BookingStore, booking_store, new_id, utc_now
from glamdispatch.services.lifecycle import LifecycleEngine, LifecycleEvent, lifecycle_engine
from glamdispatch.services.matcher import EligibilityMatcher, matcher

logger = logging.getLogger(__name__)

REQUESTABLE_AVAILABILITY = frozenset(
    {ProviderAvailability.ACTIVE, ProviderAvailability.INACTIVE, ProviderAvailability.FROZEN}
)
SELF_SERVICE_AVAILABILITY = frozenset({ProviderAvailability.ACTIVE, ProviderAvailability.INACTIVE})


class AssignmentService:
    """Binds providers to bookings. Each public call is one transaction."""

    def __init__(
        self,
        store: BookingStore,
        engine: LifecycleEngine,
        matcher: EligibilityMatcher,
        emitter: AuditEmitter,
        clock: Callable[[], datetime] = utc_now,
        proposal_timeout_minutes: int = config.PROPOSAL_TIMEOUT_MINUTES,
    ):
        self._store = store
        self._engine = engine
        self._matcher = matcher
        self._emitter = emitter
        self._clock = clock
        self._proposal_timeout = timedelta(minutes=proposal_timeout_minutes)

    # Proposal and response

    def propose_assignment(
        self,
        booking_id: str,
        provider_id: str,
        actor: Actor = SYSTEM_ACTOR,
    ) -> BookingDetails:
        events: List[BookingEvent] = []
        now = self._clock()
        with self._store.transaction() as conn:
            booking = self._store.fetch_booking(conn, booking_id)
            live = self._store.live_assignment_for_booking(conn, booking_id)
            if (
                booking.status == BookingStatus.AWAITING_VENDOR_RESPONSE
                and live is not None
                and live.status == AssignmentStatus.PROPOSED
                and live.provider_id == provider_id
            ):
                logger.info("Booking %s already proposed to %s", booking_id, provider_id)
            else:
                if booking.status != BookingStatus.AWAITING_MANAGER:
                    logger.info("Refused proposal on booking %s in %s", booking_id, booking.status.value)
                    raise BookingNotEligible(
                        "Booking is not waiting for a provider",
                        booking_id=booking_id,
                        provider_id=provider_id,
                        expected=BookingStatus.AWAITING_MANAGER,
                        actual=booking.status,
                    )
                self._propose(conn, booking, provider_id, actor, now, events)
        self._emitter.publish(events)
        return self._store.get_booking_details(booking_id)

    def respond_to_proposal(
        self,
        booking_id: str,
        accept: bool,
        assignment_id: Optional[str] = None,
        actor: Actor = SYSTEM_ACTOR,
    ) -> BookingDetails:
        events: List[BookingEvent] = []
        now = self._clock()
        with self._store.transaction() as conn:
            booking = self._store.fetch_booking(conn, booking_id)
            live = self._store.live_assignment_for_booking(conn, booking_id)
            if self._already_answered(conn, booking, live, accept, assignment_id):
                logger.info("Repeat %s on booking %s ignored", "accept" if accept else "decline", booking_id)
            else:
                if booking.status != BookingStatus.AWAITING_VENDOR_RESPONSE or live is None:
                    logger.info("Refused response on booking %s in %s", booking_id, booking.status.value)
                    raise InvalidTransition(
                        "Booking has no open proposal",
                        booking_id=booking_id,
                        expected=BookingStatus.AWAITING_VENDOR_RESPONSE,
                        actual=booking.status,
                    )
                if assignment_id and live.id != assignment_id:
                    raise InvalidTransition(
                        "Assignment is no longer the open proposal",
                        booking_id=booking_id,
                        provider_id=live.provider_id,
                        expected=assignment_id,
                        actual=live.id,
                    )
                if accept:
                    self._accept(conn, booking, live, actor, now, events)
                else:
                    self._decline(conn, booking, live, actor, now, events)
        self._emitter.publish(events)
        return self._store.get_booking_details(booking_id)

    def reassign(
        self,
        booking_id: str,
        new_provider_id: str,
        actor: Actor = SYSTEM_ACTOR,
    ) -> BookingDetails:
        events: List[BookingEvent] = []
        now = self._clock()
        with self._store.transaction() as conn:
            booking = self._store.fetch_booking(conn, booking_id)
            live = self._store.live_assignment_for_booking(conn, booking_id)
            if booking.status == BookingStatus.AWAITING_VENDOR_RESPONSE and live is not None:
                if live.provider_id == new_provider_id:
                    logger.info("Booking %s already proposed to %s", booking_id, new_provider_id)
                    booking = None
                else:
                    booking, event = self._engine.apply(
                        conn,
                        booking,
                        LifecycleEvent.WITHDRAW,
                        actor=actor,
                        now=now,
                        note=f"Reassigned to {new_provider_id}",
                        assignment_id=live.id,
                        provider_id=live.provider_id,
                        changes={"assigned_provider_id": None, "proposed_at": None},
                    )
                    self._store.update_assignment_status(
                        conn,
                        live,
                        AssignmentStatus.SUPERSEDED,
                        responded_at=now.isoformat(),
                        note="Withdrawn by manager",
                    )
                    events.append(event)
            elif booking.status != BookingStatus.AWAITING_MANAGER:
                logger.info("Refused reassignment on booking %s in %s", booking_id, booking.status.value)
                raise BookingNotEligible(
                    "Booking cannot be reassigned",
                    booking_id=booking_id,
                    provider_id=new_provider_id,
                    expected=[BookingStatus.AWAITING_MANAGER, BookingStatus.AWAITING_VENDOR_RESPONSE],
                    actual=booking.status,
                )
            if booking is not None:
                self._propose(conn, booking, new_provider_id, actor, now, events)
        self._emitter.publish(events)
        return self._store.get_booking_details(booking_id)

    # Execution

    def start_service(self, booking_id: str, actor: Actor = SYSTEM_ACTOR, note: str = "") -> BookingDetails:
        events: List[BookingEvent] = []
        now = self._clock()
        with self._store.transaction() as conn:
            booking = self._store.fetch_booking(conn, booking_id)
            if booking.status == BookingStatus.STARTED:
                logger.info("Booking %s already started", booking_id)
            else:
                live = self._store.live_assignment_for_booking(conn, booking_id)
                _, event = self._engine.apply(
                    conn,
                    booking,
                    LifecycleEvent.START,
                    actor=actor,
                    now=now,
                    note=note,
                    assignment_id=live.id if live else None,
                    provider_id=booking.assigned_provider_id,
                )
                events.append(event)
        self._emitter.publish(events)
        return self._store.get_booking_details(booking_id)

    def complete_service(self, booking_id: str, actor: Actor = SYSTEM_ACTOR, note: str = "") -> BookingDetails:
        events: List[BookingEvent] = []
        now = self._clock()
        with self._store.transaction() as conn:
            booking = self._store.fetch_booking(conn, booking_id)
            if booking.status == BookingStatus.COMPLETED:
                logger.info("Booking %s already completed", booking_id)
            else:
                live = self._store.live_assignment_for_booking(conn, booking_id)
                _, event = self._engine.apply(
                    conn,
                    booking,
                    LifecycleEvent.COMPLETE,
                    actor=actor,
                    now=now,
                    note=note,
                    assignment_id=live.id if live else None,
                    provider_id=live.provider_id if live else None,
                )
                # The COMPLETE guard already required an ACCEPTED assignment.
                if live is not None:
                    self._store.update_assignment_status(conn, live, AssignmentStatus.COMPLETED)
                    provider = self._store.fetch_provider(conn, live.provider_id)
                    self._store.compare_and_set_provider(
                        conn,
                        provider,
                        availability=ProviderAvailability.ACTIVE,
                        completed_count=provider.completed_count + 1,
                    )
                events.append(event)
        self._emitter.publish(events)
        return self._store.get_booking_details(booking_id)

    def cancel_booking(self, booking_id: str, reason: str, actor: Actor = SYSTEM_ACTOR) -> BookingDetails:
        if not reason or not reason.strip():
            raise DispatchValidationError("A cancellation reason is required", booking_id=booking_id)
        events: List[BookingEvent] = []
        now = self._clock()
        with self._store.transaction() as conn:
            booking = self._store.fetch_booking(conn, booking_id)
            if booking.status == BookingStatus.CANCELLED:
                logger.info("Booking %s already cancelled", booking_id)
            else:
                live = self._store.live_assignment_for_booking(conn, booking_id)
                _, event = self._engine.apply(
                    conn,
                    booking,
                    LifecycleEvent.CANCEL,
                    actor=actor,
                    now=now,
                    note=reason.strip(),
                    assignment_id=live.id if live else None,
                    provider_id=live.provider_id if live else None,
                    changes={"cancel_reason": reason.strip()},
                )
                if live is not None:
                    self._store.update_assignment_status(
                        conn, live, AssignmentStatus.VOID, responded_at=now.isoformat(), note="Booking cancelled"
                    )
                    if live.status == AssignmentStatus.ACCEPTED:
                        provider = self._store.fetch_provider(conn, live.provider_id)
                        if provider.availability == ProviderAvailability.BUSY:
                            self._store.compare_and_set_provider(
                                conn, provider, availability=ProviderAvailability.ACTIVE
                            )
                events.append(event)
        self._emitter.publish(events)
        return self._store.get_booking_details(booking_id)

    # Maintenance

    def expire_stale_proposals(self, now: Optional[datetime] = None) -> List[str]:
        now = now or self._clock()
        cutoff = now - self._proposal_timeout
        expired: List[str] = []
        for booking_id in self._store.stale_proposal_booking_ids(cutoff):
            events: List[BookingEvent] = []
            with self._store.transaction() as conn:
                booking = self._store.fetch_booking(conn, booking_id)
                live = self._store.live_assignment_for_booking(conn, booking_id)
                # Answered or withdrawn between the scan and this transaction.
                if (
                    booking.status != BookingStatus.AWAITING_VENDOR_RESPONSE
                    or live is None
                    or live.status != AssignmentStatus.PROPOSED
                ):
                    continue
                _, event = self._engine.apply(
                    conn,
                    booking,
                    LifecycleEvent.EXPIRE,
                    actor=SYSTEM_ACTOR,
                    now=now,
                    note="Provider did not respond in time",
                    assignment_id=live.id,
                    provider_id=live.provider_id,
                    changes={"assigned_provider_id": None, "proposed_at": None},
                )
                self._store.update_assignment_status(
                    conn, live, AssignmentStatus.EXPIRED, responded_at=now.isoformat()
                )
                events.append(event)
            self._emitter.publish(events)
            expired.append(booking_id)
        if expired:
            logger.info("Expired %s stale proposals", len(expired))
        return expired

    def change_provider_availability(
        self,
        provider_id: str,
        target: ProviderAvailability,
        actor: Actor = SYSTEM_ACTOR,
    ) -> ProviderDetails:
        target = ProviderAvailability(target)
        if target not in REQUESTABLE_AVAILABILITY:
            raise DispatchValidationError(
                "Availability can only be set to ACTIVE, INACTIVE or FROZEN",
                provider_id=provider_id,
                expected=REQUESTABLE_AVAILABILITY,
                actual=target,
            )
        if actor.actor_role == ActorRole.CUSTOMER:
            raise DispatchPermissionError("Customers cannot change provider availability", provider_id=provider_id)
        if actor.actor_role == ActorRole.PROVIDER:
            if actor.actor_id != provider_id:
                raise DispatchPermissionError("Providers can only change their own availability", provider_id=provider_id)
            if target not in SELF_SERVICE_AVAILABILITY:
                raise DispatchPermissionError("Only an admin can freeze a provider", provider_id=provider_id)

        with self._store.transaction() as conn:
            provider = self._store.fetch_provider(conn, provider_id)
            if provider.availability == target:
                logger.info("Provider %s already %s", provider_id, target.value)
            else:
                if provider.availability == ProviderAvailability.BUSY:
                    raise ProviderUnavailable(
                        "Provider is bound to an accepted booking",
                        provider_id=provider_id,
                        expected=REQUESTABLE_AVAILABILITY,
                        actual=provider.availability,
                    )
                if (
                    provider.availability == ProviderAvailability.FROZEN
                    and actor.actor_role == ActorRole.PROVIDER
                ):
                    raise DispatchPermissionError("Only an admin can unfreeze a provider", provider_id=provider_id)
                self._store.compare_and_set_provider(conn, provider, availability=target)
                logger.info(
                    "Provider %s availability %s -> %s by %s/%s",
                    provider_id,
                    provider.availability.value,
                    target.value,
                    actor.actor_role.value,
                    actor.actor_id,
                )
        return self._store.get_provider_details(provider_id)

    # Internals

    def _propose(
        self,
        conn: sqlite3.Connection,
        booking: Booking,
        provider_id: str,
        actor: Actor,
        now: datetime,
        events: List[BookingEvent],
    ) -> None:
        provider = self._store.fetch_provider(conn, provider_id)
        if provider.availability != ProviderAvailability.ACTIVE:
            raise ProviderUnavailable(
                "Provider is not accepting bookings",
                booking_id=booking.id,
                provider_id=provider_id,
                expected=ProviderAvailability.ACTIVE,
                actual=provider.availability,
            )
        held = self._store.live_assignment_for_provider(conn, provider_id)
        if held is not None and held.booking_id != booking.id:
            raise ProviderUnavailable(
                "Provider already holds another booking",
                booking_id=booking.id,
                provider_id=provider_id,
                expected=ProviderAvailability.ACTIVE,
                actual=held.status,
            )
        stale = self._store.live_assignment_for_booking(conn, booking.id)
        if stale is not None:
            self._store.update_assignment_status(
                conn, stale, AssignmentStatus.SUPERSEDED, responded_at=now.isoformat(), note="Superseded"
            )

        candidate = self._matcher.score_provider(provider, booking.required_skills, now)
        assignment = Assignment(
            id=new_id("asg"),
            booking_id=booking.id,
            provider_id=provider_id,
            status=AssignmentStatus.PROPOSED,
            score=candidate.score,
            matched_skills=candidate.matched_skills,
            match_type=candidate.match_type,
            proposed_at=now.isoformat(),
        )
        self._store.insert_assignment(conn, assignment)
        self._store.compare_and_set_provider(conn, provider, last_assigned_at=now.isoformat())
        _, event = self._engine.apply(
            conn,
            booking,
            LifecycleEvent.PROPOSE,
            actor=actor,
            now=now,
            note=f"{candidate.match_type} score {candidate.score:g}",
            assignment_id=assignment.id,
            provider_id=provider_id,
            changes={"assigned_provider_id": provider_id, "proposed_at": now.isoformat()},
        )
        events.append(event)

    def _accept(
        self,
        conn: sqlite3.Connection,
        booking: Booking,
        live: Assignment,
        actor: Actor,
        now: datetime,
        events: List[BookingEvent],
    ) -> None:
        provider = self._store.fetch_provider(conn, live.provider_id)
        if provider.availability != ProviderAvailability.ACTIVE:
            raise ProviderUnavailable(
                "Provider can no longer take this booking",
                booking_id=booking.id,
                provider_id=provider.id,
                expected=ProviderAvailability.ACTIVE,
                actual=provider.availability,
            )
        _, event = self._engine.apply(
            conn,
            booking,
            LifecycleEvent.ACCEPT,
            actor=actor,
            now=now,
            assignment_id=live.id,
            provider_id=provider.id,
        )
        self._store.update_assignment_status(conn, live, AssignmentStatus.ACCEPTED, responded_at=now.isoformat())
        self._store.compare_and_set_provider(conn, provider, availability=ProviderAvailability.BUSY)
        events.append(event)

    def _decline(
        self,
        conn: sqlite3.Connection,
        booking: Booking,
        live: Assignment,
        actor: Actor,
        now: datetime,
        events: List[BookingEvent],
    ) -> None:
        _, event = self._engine.apply(
            conn,
            booking,
            LifecycleEvent.DECLINE,
            actor=actor,
            now=now,
            assignment_id=live.id,
            provider_id=live.provider_id,
            changes={"assigned_provider_id": None, "proposed_at": None},
        )
        self._store.update_assignment_status(conn, live, AssignmentStatus.DECLINED, responded_at=now.isoformat())
        events.append(event)

    def _already_answered(
        self,
        conn: sqlite3.Connection,
        booking: Booking,
        live: Optional[Assignment],
        accept: bool,
        assignment_id: Optional[str],
    ) -> bool:
        if accept:
            return (
                booking.status == BookingStatus.VENDOR_CONFIRMED
                and live is not None
                and live.status == AssignmentStatus.ACCEPTED
                and (assignment_id is None or live.id == assignment_id)
            )
        if booking.status != BookingStatus.AWAITING_MANAGER or live is not None:
            return False
        latest = self._store.latest_assignment(conn, booking.id)
        return (
            latest is not None
            and latest.status == AssignmentStatus.DECLINED
            and (assignment_id is None or latest.id == assignment_id)
        )


assignment_service = AssignmentService(
    store=booking_store,
    engine=lifecycle_engine,
    matcher=matcher,
    emitter=audit_emitter,
)
