import logging
import sqlite3
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from glamdispatch.errors import ConcurrencyConflict, InvalidTransition
from glamdispatch.models import Actor, ActorRole, AssignmentStatus, Booking, BookingEvent, BookingStatus
from glamdispatch.services.audit import AuditEmitter, audit_emitter
from glamdispatch.services.booking_store import BookingStore, booking_store, parse_timestamp

logger = logging.getLogger(__name__)


class LifecycleEvent(str, Enum):
    SUBMIT = "SUBMIT"
    PROPOSE = "PROPOSE"
    ACCEPT = "ACCEPT"
    DECLINE = "DECLINE"
    EXPIRE = "EXPIRE"
    WITHDRAW = "WITHDRAW"
    START = "START"
    COMPLETE = "COMPLETE"
    CANCEL = "CANCEL"


TERMINAL_STATUSES = frozenset({BookingStatus.COMPLETED, BookingStatus.CANCELLED})

TRANSITIONS: Dict[Tuple[BookingStatus, LifecycleEvent], BookingStatus] = {
    (BookingStatus.PENDING, LifecycleEvent.SUBMIT): BookingStatus.AWAITING_MANAGER,
    (BookingStatus.AWAITING_MANAGER, LifecycleEvent.PROPOSE): BookingStatus.AWAITING_VENDOR_RESPONSE,
    (BookingStatus.AWAITING_VENDOR_RESPONSE, LifecycleEvent.ACCEPT): BookingStatus.VENDOR_CONFIRMED,
    (BookingStatus.AWAITING_VENDOR_RESPONSE, LifecycleEvent.DECLINE): BookingStatus.AWAITING_MANAGER,
    (BookingStatus.AWAITING_VENDOR_RESPONSE, LifecycleEvent.EXPIRE): BookingStatus.AWAITING_MANAGER,
    (BookingStatus.AWAITING_VENDOR_RESPONSE, LifecycleEvent.WITHDRAW): BookingStatus.AWAITING_MANAGER,
    (BookingStatus.VENDOR_CONFIRMED, LifecycleEvent.START): BookingStatus.STARTED,
    (BookingStatus.STARTED, LifecycleEvent.COMPLETE): BookingStatus.COMPLETED,
}
for _status in BookingStatus:
    if _status not in TERMINAL_STATUSES:
        TRANSITIONS[(_status, LifecycleEvent.CANCEL)] = BookingStatus.CANCELLED

CANCEL_ROLES = frozenset({ActorRole.CUSTOMER, ActorRole.MANAGER, ActorRole.ADMIN, ActorRole.SYSTEM})

# Events that act on a proposal the provider has not answered yet.
PROPOSAL_EVENTS = frozenset(
    {
        LifecycleEvent.PROPOSE,
        LifecycleEvent.ACCEPT,
        LifecycleEvent.DECLINE,
        LifecycleEvent.EXPIRE,
        LifecycleEvent.WITHDRAW,
    }
)


# Events the assigned provider answers for; staff may act on its behalf.
PROVIDER_EVENTS = frozenset(
    {
        LifecycleEvent.ACCEPT,
        LifecycleEvent.DECLINE,
        LifecycleEvent.START,
        LifecycleEvent.COMPLETE,
    }
)
PROVIDER_PROXY_ROLES = frozenset({ActorRole.MANAGER, ActorRole.ADMIN, ActorRole.SYSTEM})


def _acts_for_provider(actor: Actor, provider_id: str) -> bool:
    if actor.actor_role in PROVIDER_PROXY_ROLES:
        return True
    return actor.actor_role == ActorRole.PROVIDER and actor.actor_id == provider_id


def next_status(current: BookingStatus, event: LifecycleEvent) -> BookingStatus:
    target = TRANSITIONS.get((current, event))
    if target is None:
        raise InvalidTransition(
            f"Cannot {event.value.lower()} a booking in {current.value}",
            expected=[status for (status, evt) in TRANSITIONS if evt == event],
            actual=current,
        )
    return target


def allowed_events(current: BookingStatus) -> List[LifecycleEvent]:
    return [event for event in LifecycleEvent if (current, event) in TRANSITIONS]


class LifecycleEngine:
    """The only writer of booking status."""

    def __init__(self, store: BookingStore, emitter: AuditEmitter):
        self._store = store
        self._emitter = emitter

    def apply(
        self,
        conn: sqlite3.Connection,
        booking: Booking,
        event: LifecycleEvent,
        *,
        actor: Actor,
        now: datetime,
        note: str = "",
        assignment_id: Optional[str] = None,
        provider_id: Optional[str] = None,
        changes: Optional[Dict[str, Any]] = None,
    ) -> Tuple[Booking, BookingEvent]:
        current = self._store.fetch_booking(conn, booking.id)
        if booking.status != current.status:
            logger.info(
                "Refused %s on booking %s: read as %s, stored as %s",
                event.value,
                current.id,
                booking.status.value,
                current.status.value,
            )
            raise InvalidTransition(
                "Booking status changed since it was read",
                booking_id=current.id,
                expected=booking.status,
                actual=current.status,
            )
        try:
            target = next_status(current.status, event)
        except InvalidTransition as exc:
            exc.booking_id = current.id
            logger.info("Refused %s on booking %s in %s", event.value, current.id, current.status.value)
            raise
        if current.version != booking.version:
            raise ConcurrencyConflict(
                "Booking changed since it was read",
                booking_id=current.id,
                expected=booking.status,
                actual=current.status,
            )
        self._check_guard(conn, current, event, actor, now)

        updated = self._store.compare_and_set_booking(
            conn,
            current,
            status=target,
            updated_at=now.isoformat(),
            **(changes or {}),
        )
        record = self._emitter.append(
            conn,
            booking_id=current.id,
            event_type=event.value,
            actor=actor,
            now=now,
            from_status=current.status,
            to_status=target,
            assignment_id=assignment_id,
            provider_id=provider_id,
            note=note,
        )
        logger.info(
            "Booking %s %s: %s -> %s by %s/%s",
            current.id,
            event.value,
            current.status.value,
            target.value,
            actor.actor_role.value,
            actor.actor_id,
        )
        return updated, record

    def _check_guard(
        self,
        conn: sqlite3.Connection,
        booking: Booking,
        event: LifecycleEvent,
        actor: Actor,
        now: datetime,
    ) -> None:
        if event == LifecycleEvent.CANCEL:
            if actor.actor_role not in CANCEL_ROLES:
                self._refuse(booking, event, f"{actor.actor_role.value} cannot cancel a booking")
            return

        if event == LifecycleEvent.SUBMIT:
            return

        live = self._store.live_assignment_for_booking(conn, booking.id)
        if event in PROPOSAL_EVENTS:
            if live is None or live.status != AssignmentStatus.PROPOSED:
                self._refuse(booking, event, "No open proposal for this booking")
        elif live is None or live.status != AssignmentStatus.ACCEPTED:
            self._refuse(booking, event, "Booking has no accepted provider")

        if event in PROVIDER_EVENTS and not _acts_for_provider(actor, live.provider_id):
            self._refuse(
                booking,
                event,
                f"{actor.actor_role.value} {actor.actor_id} cannot act for provider {live.provider_id}",
            )

        if event == LifecycleEvent.START:
            scheduled = parse_timestamp(booking.slot_start, field="slot_start")
            if now < scheduled:
                self._refuse(booking, event, f"Service cannot start before {scheduled.isoformat()}")

    def _refuse(self, booking: Booking, event: LifecycleEvent, message: str) -> None:
        logger.info("Guard refused %s on booking %s: %s", event.value, booking.id, message)
        raise InvalidTransition(message, booking_id=booking.id, actual=booking.status)


lifecycle_engine = LifecycleEngine(store=booking_store, emitter=audit_emitter)
