import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from glamdispatch.errors import DispatchValidationError
from glamdispatch.models import (
    SYSTEM_ACTOR,
    Actor,
    ActorRole,
    Booking,
    BookingCreateRequest,
    BookingDetails,
    BookingEvent,
    BookingLineItem,
    BookingStatus,
    BookingSummary,
    DashboardSummary,
    DeliveryMode,
    PaymentStatus,
    ProductLineItem,
)
from glamdispatch.services.audit import AuditEmitter, audit_emitter
from glamdispatch.services.booking_store import BookingStore, booking_store, new_id, parse_timestamp, utc_now
from glamdispatch.services.lifecycle import LifecycleEngine, LifecycleEvent, lifecycle_engine

logger = logging.getLogger(__name__)


class BookingDesk:
    """Customer intake, external payment signals and the triage queues."""

    def __init__(
        self,
        store: BookingStore,
        engine: LifecycleEngine,
        emitter: AuditEmitter,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._store = store
        self._engine = engine
        self._emitter = emitter
        self._clock = clock

    def create_booking(self, payload: BookingCreateRequest, actor: Optional[Actor] = None) -> Booking:
        actor = actor or Actor(actor_id=payload.customer_id, actor_role=ActorRole.CUSTOMER)
        customer_id = payload.customer_id.strip()
        if not customer_id:
            raise DispatchValidationError("customer_id is required")
        if payload.delivery_mode == DeliveryMode.AT_HOME and payload.address is None:
            raise DispatchValidationError("An address is required for at-home bookings")
        salon_location_id = (payload.salon_location_id or "").strip() or None
        if payload.delivery_mode == DeliveryMode.AT_SALON and salon_location_id is None:
            raise DispatchValidationError("A salon location is required for salon bookings")
        slot_start = parse_timestamp(payload.slot_start, field="slot_start")

        events: List[BookingEvent] = []
        now = self._clock()
        booking_id = new_id("bk")
        with self._store.transaction() as conn:
            requested_ids = [item.service_id.strip() for item in payload.services]
            catalog = self._store.resolve_catalog_services(conn, requested_ids)
            unresolved = [service_id for service_id in requested_ids if service_id not in catalog]
            if unresolved:
                logger.info("Rejected booking with unresolved services: %s", unresolved)
                raise DispatchValidationError(
                    f"Unknown service reference: {', '.join(unresolved)}",
                    expected="catalog service id",
                    actual=unresolved,
                )

            line_items = [
                BookingLineItem(
                    id=new_id("li"),
                    service_id=catalog[service_id].id,
                    name=catalog[service_id].name,
                    skill_tag=catalog[service_id].skill_tag,
                    duration_minutes=catalog[service_id].duration_minutes,
                    unit_price=catalog[service_id].price,
                    quantity=item.quantity,
                )
                for service_id, item in zip(requested_ids, payload.services)
            ]
            products = [
                ProductLineItem(product_id=p.product_id, quantity=p.quantity, unit_price=p.unit_price)
                for p in payload.products
            ]
            duration = sum(item.duration_minutes * item.quantity for item in line_items)
            total = sum(item.unit_price * item.quantity for item in line_items)
            total += sum(product.unit_price * product.quantity for product in products)

            booking = Booking(
                id=booking_id,
                customer_id=customer_id,
                delivery_mode=payload.delivery_mode,
                line_items=line_items,
                products=products,
                address=payload.address if payload.delivery_mode == DeliveryMode.AT_HOME else None,
                salon_location_id=salon_location_id if payload.delivery_mode == DeliveryMode.AT_SALON else None,
                slot_start=slot_start.isoformat(),
                slot_end=(slot_start + timedelta(minutes=duration)).isoformat(),
                total=round(total, 2),
                status=BookingStatus.PENDING,
                payment_status=PaymentStatus.PENDING,
                notes=payload.notes.strip(),
                created_at=now.isoformat(),
                updated_at=now.isoformat(),
            )
            self._store.insert_booking(conn, booking)
            events.append(
                self._emitter.append(
                    conn,
                    booking_id=booking.id,
                    event_type="CREATED",
                    actor=actor,
                    now=now,
                    to_status=BookingStatus.PENDING,
                )
            )
            booking, submitted = self._engine.apply(conn, booking, LifecycleEvent.SUBMIT, actor=SYSTEM_ACTOR, now=now)
            events.append(submitted)
        self._emitter.publish(events)
        logger.info("Created booking %s for customer %s", booking.id, customer_id)
        return booking

    def record_payment_status(
        self,
        booking_id: str,
        payment_status: PaymentStatus,
        actor: Actor = SYSTEM_ACTOR,
    ) -> Booking:
        payment_status = PaymentStatus(payment_status)
        events: List[BookingEvent] = []
        now = self._clock()
        with self._store.transaction() as conn:
            booking = self._store.fetch_booking(conn, booking_id)
            if booking.payment_status == payment_status:
                return booking
            updated = self._store.compare_and_set_booking(
                conn, booking, payment_status=payment_status, updated_at=now.isoformat()
            )
            events.append(
                self._emitter.append(
                    conn,
                    booking_id=booking_id,
                    event_type="PAYMENT_STATUS",
                    actor=actor,
                    now=now,
                    from_status=booking.status,
                    to_status=booking.status,
                    note=f"{booking.payment_status.value} -> {payment_status.value}",
                )
            )
        self._emitter.publish(events)
        logger.info("Booking %s payment %s -> %s", booking_id, booking.payment_status.value, payment_status.value)
        return updated

    def list_bookings(
        self,
        status: Optional[BookingStatus] = None,
        delivery_mode: Optional[DeliveryMode] = None,
        customer_id: Optional[str] = None,
        provider_id: Optional[str] = None,
        page: int = 1,
        limit: int = 50,
        fallback_latest: bool = False,
    ) -> List[BookingSummary]:
        rows = self._store.list_bookings(
            status=status,
            delivery_mode=delivery_mode,
            customer_id=customer_id,
            provider_id=provider_id,
            page=page,
            limit=limit,
        )
        if rows or not fallback_latest:
            return rows
        latest = self._store.latest_booking_summary()
        if latest is None:
            return []
        logger.warning(
            "Queue filter status=%s mode=%s matched nothing; returning latest booking %s",
            status.value if status else None,
            delivery_mode.value if delivery_mode else None,
            latest.id,
        )
        return [latest]

    def get_booking_details(self, booking_id: str) -> BookingDetails:
        return self._store.get_booking_details(booking_id)

    def list_events(self, booking_id: str) -> List[BookingEvent]:
        return self._store.list_events(booking_id)

    def dashboard_summary(self) -> DashboardSummary:
        by_status = self._store.count_bookings_by_status()
        return DashboardSummary(
            bookings_by_status=by_status,
            providers_by_availability=self._store.count_providers_by_availability(),
            awaiting_triage=by_status.get(BookingStatus.AWAITING_MANAGER.value, 0),
            completed_services=by_status.get(BookingStatus.COMPLETED.value, 0),
        )


booking_desk = BookingDesk(store=booking_store, engine=lifecycle_engine, emitter=audit_emitter)
