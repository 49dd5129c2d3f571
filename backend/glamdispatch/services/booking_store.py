import json
import logging
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Iterator, List, Optional
from uuid import uuid4

from glamdispatch import config
from glamdispatch.errors import (
    BookingNotFound,
    ConcurrencyConflict,
    DispatchValidationError,
    ProviderNotFound,
    StorageError,
)
from glamdispatch.models import (
    Address,
    Assignment,
    AssignmentStatus,
    Booking,
    BookingDetails,
    BookingEvent,
    BookingLineItem,
    BookingStatus,
    BookingSummary,
    CatalogService,
    DeliveryMode,
    LIVE_ASSIGNMENT_STATUSES,
    ProductLineItem,
    Provider,
    ProviderAvailability,
    ProviderDetails,
    ProviderKind,
    ProviderTier,
)

logger = logging.getLogger(__name__)

LIVE_STATUS_SQL = "('PROPOSED', 'ACCEPTED')"

DEFAULT_CATALOG = [
    ("svc_haircut", "Hair Cut", "Hair Cut", 45, 35.0),
    ("svc_hair_color", "Hair Colouring", "Hair Color", 120, 90.0),
    ("svc_facial", "Classic Facial", "Facial", 60, 55.0),
    ("svc_manicure", "Manicure", "Nails", 40, 25.0),
    ("svc_pedicure", "Pedicure", "Nails", 50, 30.0),
    ("svc_waxing", "Full Leg Waxing", "Waxing", 45, 40.0),
    ("svc_threading", "Eyebrow Threading", "Threading", 15, 10.0),
    ("svc_bridal_makeup", "Bridal Makeup", "Makeup", 150, 180.0),
    ("svc_massage", "Head Massage", "Massage", 30, 28.0),
]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: str, *, field: str = "timestamp") -> datetime:
    try:
        parsed = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
    except ValueError as exc:
        raise DispatchValidationError(f"Invalid {field}. Use ISO-8601") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex[:12]}"


@dataclass
class BookingStore:
    db_path: str
    timeout_seconds: int = config.DB_TIMEOUT_SECONDS
    seed_catalog: bool = config.SEED_CATALOG

    def __post_init__(self) -> None:
        self._lock = Lock()
        path = Path(self.db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        self.db_path = str(path)
        self._init_db()
        if self.seed_catalog:
            self._seed_if_needed()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            self.db_path,
            timeout=self.timeout_seconds,
            check_same_thread=False,
            isolation_level=None,
        )
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Serialize one read-modify-write unit.

        The process lock orders callers inside this process; BEGIN IMMEDIATE
        takes the database write lock so other processes sharing the file are
        ordered too. Everything written inside commits or rolls back together.
        """
        with self._lock:
            try:
                conn = self._connect()
            except sqlite3.Error as exc:
                logger.exception("Entity store connection failed")
                raise StorageError("Entity store unavailable") from exc
            try:
                conn.execute("BEGIN IMMEDIATE")
                yield conn
                conn.execute("COMMIT")
            except sqlite3.IntegrityError as exc:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                logger.warning("Integrity constraint rejected write: %s", exc)
                raise ConcurrencyConflict("Write conflicts with a concurrent change") from exc
            except sqlite3.Error as exc:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                logger.exception("Entity store transaction failed")
                raise StorageError("Entity store transaction failed") from exc
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
            finally:
                conn.close()

    @contextmanager
    def reader(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                conn = self._connect()
            except sqlite3.Error as exc:
                logger.exception("Entity store connection failed")
                raise StorageError("Entity store unavailable") from exc
            try:
                yield conn
            except sqlite3.Error as exc:
                logger.exception("Entity store read failed")
                raise StorageError("Entity store read failed") from exc
            finally:
                conn.close()

    def _init_db(self) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS catalog_services (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    skill_tag TEXT NOT NULL,
                    duration_minutes INTEGER NOT NULL,
                    price REAL NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS providers (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    kind TEXT NOT NULL,
                    skills_json TEXT NOT NULL DEFAULT '[]',
                    tier TEXT NOT NULL,
                    availability TEXT NOT NULL DEFAULT 'ACTIVE',
                    completed_count INTEGER NOT NULL DEFAULT 0,
                    phone TEXT NOT NULL DEFAULT '',
                    email TEXT NOT NULL DEFAULT '',
                    last_assigned_at TEXT,
                    version INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS bookings (
                    id TEXT PRIMARY KEY,
                    customer_id TEXT NOT NULL,
                    delivery_mode TEXT NOT NULL,
                    address_json TEXT,
                    salon_location_id TEXT,
                    slot_start TEXT NOT NULL,
                    slot_end TEXT NOT NULL,
                    total REAL NOT NULL,
                    status TEXT NOT NULL,
                    payment_status TEXT NOT NULL DEFAULT 'PENDING',
                    assigned_provider_id TEXT,
                    proposed_at TEXT,
                    notes TEXT NOT NULL DEFAULT '',
                    cancel_reason TEXT,
                    version INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS booking_line_items (
                    id TEXT PRIMARY KEY,
                    booking_id TEXT NOT NULL REFERENCES bookings(id),
                    position INTEGER NOT NULL,
                    service_id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    skill_tag TEXT NOT NULL,
                    duration_minutes INTEGER NOT NULL,
                    unit_price REAL NOT NULL,
                    quantity INTEGER NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS booking_products (
                    id TEXT PRIMARY KEY,
                    booking_id TEXT NOT NULL REFERENCES bookings(id),
                    position INTEGER NOT NULL,
                    product_id TEXT NOT NULL,
                    quantity INTEGER NOT NULL,
                    unit_price REAL NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS assignments (
                    id TEXT PRIMARY KEY,
                    booking_id TEXT NOT NULL REFERENCES bookings(id),
                    provider_id TEXT NOT NULL REFERENCES providers(id),
                    status TEXT NOT NULL,
                    score REAL NOT NULL DEFAULT 0,
                    matched_skills_json TEXT NOT NULL DEFAULT '[]',
                    match_type TEXT NOT NULL DEFAULT 'General',
                    proposed_at TEXT NOT NULL,
                    responded_at TEXT,
                    note TEXT NOT NULL DEFAULT ''
                )
                """
            )
            # At most one live assignment per booking and per provider.
            conn.execute(
                f"""
                CREATE UNIQUE INDEX IF NOT EXISTS ux_assignments_live_booking
                ON assignments (booking_id) WHERE status IN {LIVE_STATUS_SQL}
                """
            )
            conn.execute(
                f"""
                CREATE UNIQUE INDEX IF NOT EXISTS ux_assignments_live_provider
                ON assignments (provider_id) WHERE status IN {LIVE_STATUS_SQL}
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS booking_events (
                    id TEXT PRIMARY KEY,
                    booking_id TEXT NOT NULL REFERENCES bookings(id),
                    event_type TEXT NOT NULL,
                    from_status TEXT,
                    to_status TEXT,
                    actor_id TEXT NOT NULL,
                    actor_role TEXT NOT NULL,
                    assignment_id TEXT,
                    provider_id TEXT,
                    note TEXT NOT NULL DEFAULT '',
                    created_at TEXT NOT NULL
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS ix_bookings_status ON bookings (status, created_at)")
            conn.execute("CREATE INDEX IF NOT EXISTS ix_events_booking ON booking_events (booking_id, created_at)")

    def _seed_if_needed(self) -> None:
        with self.transaction() as conn:
            existing = conn.execute("SELECT COUNT(*) AS c FROM catalog_services").fetchone()
            if existing["c"]:
                return
            conn.executemany(
                "INSERT INTO catalog_services (id, name, skill_tag, duration_minutes, price) VALUES (?, ?, ?, ?, ?)",
                DEFAULT_CATALOG,
            )
        logger.info("Seeded %s catalog services", len(DEFAULT_CATALOG))

    # Catalog (read-only input)

    def resolve_catalog_services(self, conn: sqlite3.Connection, service_ids: List[str]) -> Dict[str, CatalogService]:
        if not service_ids:
            return {}
        placeholders = ", ".join("?" for _ in service_ids)
        rows = conn.execute(
            f"SELECT * FROM catalog_services WHERE id IN ({placeholders})",
            tuple(service_ids),
        ).fetchall()
        return {row["id"]: self._row_to_catalog_service(row) for row in rows}

    def list_catalog(self) -> List[CatalogService]:
        with self.reader() as conn:
            rows = conn.execute("SELECT * FROM catalog_services ORDER BY name").fetchall()
        return [self._row_to_catalog_service(row) for row in rows]

    # Providers

    def add_provider(
        self,
        *,
        name: str,
        kind: ProviderKind = ProviderKind.BEAUTICIAN,
        skills: Optional[List[str]] = None,
        tier: ProviderTier = ProviderTier.INTERMEDIATE,
        phone: str = "",
        email: str = "",
        provider_id: Optional[str] = None,
    ) -> Provider:
        if not name.strip():
            raise DispatchValidationError("Provider name is required")
        cleaned_skills = [skill.strip() for skill in (skills or []) if skill and skill.strip()]
        provider = Provider(
            id=provider_id or new_id("prv"),
            name=name.strip(),
            kind=kind,
            skills=cleaned_skills,
            tier=tier,
            availability=ProviderAvailability.ACTIVE,
            completed_count=0,
            phone=phone.strip(),
            email=email.strip(),
            created_at=utc_now().isoformat(),
        )
        with self.transaction() as conn:
            duplicate = conn.execute("SELECT id FROM providers WHERE id = ?", (provider.id,)).fetchone()
            if duplicate:
                raise DispatchValidationError("Provider id already exists", provider_id=provider.id)
            conn.execute(
                """
                INSERT INTO providers (
                    id, name, kind, skills_json, tier, availability, completed_count,
                    phone, email, last_assigned_at, version, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    provider.id,
                    provider.name,
                    provider.kind.value,
                    json.dumps(provider.skills),
                    provider.tier.value,
                    provider.availability.value,
                    provider.completed_count,
                    provider.phone,
                    provider.email,
                    None,
                    0,
                    provider.created_at,
                ),
            )
        return provider

    def fetch_provider(self, conn: sqlite3.Connection, provider_id: str) -> Provider:
        row = conn.execute("SELECT * FROM providers WHERE id = ?", (provider_id,)).fetchone()
        if not row:
            raise ProviderNotFound("Provider not found", provider_id=provider_id)
        return self._row_to_provider(row)

    def get_provider(self, provider_id: str) -> Provider:
        with self.reader() as conn:
            return self.fetch_provider(conn, provider_id)

    def get_provider_details(self, provider_id: str) -> ProviderDetails:
        with self.reader() as conn:
            provider = self.fetch_provider(conn, provider_id)
            live = self.live_assignment_for_provider(conn, provider_id)
        return ProviderDetails(provider=provider, live_assignment=live)

    def list_providers(
        self,
        availability: Optional[ProviderAvailability] = None,
        kind: Optional[ProviderKind] = None,
        q: Optional[str] = None,
    ) -> List[Provider]:
        query = "SELECT * FROM providers"
        clauses: List[str] = []
        params: List[Any] = []
        if availability is not None:
            clauses.append("availability = ?")
            params.append(availability.value)
        if kind is not None:
            clauses.append("kind = ?")
            params.append(kind.value)
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY id"
        with self.reader() as conn:
            rows = conn.execute(query, tuple(params)).fetchall()
        providers = [self._row_to_provider(row) for row in rows]
        needle = (q or "").strip().lower()
        if needle:
            providers = [
                p for p in providers if needle in p.name.lower() or any(needle in s.lower() for s in p.skills)
            ]
        return providers

    def compare_and_set_provider(self, conn: sqlite3.Connection, provider: Provider, **changes: Any) -> Provider:
        columns = dict(changes)
        if "availability" in columns:
            columns["availability"] = ProviderAvailability(columns["availability"]).value
        assignments = ", ".join(f"{column} = ?" for column in columns)
        cursor = conn.execute(
            f"UPDATE providers SET {assignments}, version = version + 1 WHERE id = ? AND version = ?",
            (*columns.values(), provider.id, provider.version),
        )
        if cursor.rowcount != 1:
            actual = self.fetch_provider(conn, provider.id)
            raise ConcurrencyConflict(
                "Provider changed concurrently",
                provider_id=provider.id,
                expected=provider.availability,
                actual=actual.availability,
            )
        return self.fetch_provider(conn, provider.id)

    def count_providers_by_availability(self) -> Dict[str, int]:
        with self.reader() as conn:
            rows = conn.execute("SELECT availability, COUNT(*) AS c FROM providers GROUP BY availability").fetchall()
        counts = {availability.value: 0 for availability in ProviderAvailability}
        for row in rows:
            counts[row["availability"]] = int(row["c"])
        return counts

    # Bookings

    def insert_booking(self, conn: sqlite3.Connection, booking: Booking) -> None:
        conn.execute(
            """
            INSERT INTO bookings (
                id, customer_id, delivery_mode, address_json, salon_location_id, slot_start, slot_end,
                total, status, payment_status, assigned_provider_id, proposed_at, notes, cancel_reason,
                version, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                booking.id,
                booking.customer_id,
                booking.delivery_mode.value,
                booking.address.model_dump_json() if booking.address else None,
                booking.salon_location_id,
                booking.slot_start,
                booking.slot_end,
                booking.total,
                booking.status.value,
                booking.payment_status.value,
                booking.assigned_provider_id,
                booking.proposed_at,
                booking.notes,
                booking.cancel_reason,
                booking.version,
                booking.created_at,
                booking.updated_at,
            ),
        )
        conn.executemany(
            """
            INSERT INTO booking_line_items (
                id, booking_id, position, service_id, name, skill_tag, duration_minutes, unit_price, quantity
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                (
                    item.id,
                    booking.id,
                    position,
                    item.service_id,
                    item.name,
                    item.skill_tag,
                    item.duration_minutes,
                    item.unit_price,
                    item.quantity,
                )
                for position, item in enumerate(booking.line_items)
            ],
        )
        conn.executemany(
            """
            INSERT INTO booking_products (id, booking_id, position, product_id, quantity, unit_price)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            [
                (new_id("bp"), booking.id, position, product.product_id, product.quantity, product.unit_price)
                for position, product in enumerate(booking.products)
            ],
        )

    def fetch_booking(self, conn: sqlite3.Connection, booking_id: str) -> Booking:
        row = conn.execute("SELECT * FROM bookings WHERE id = ?", (booking_id,)).fetchone()
        if not row:
            raise BookingNotFound("Booking not found", booking_id=booking_id)
        return self._row_to_booking(conn, row)

    def get_booking(self, booking_id: str) -> Booking:
        with self.reader() as conn:
            return self.fetch_booking(conn, booking_id)

    def get_booking_details(self, booking_id: str) -> BookingDetails:
        with self.reader() as conn:
            booking = self.fetch_booking(conn, booking_id)
            assignments = self.list_assignments(conn, booking_id)
        live = next((a for a in assignments if a.status in LIVE_ASSIGNMENT_STATUSES), None)
        return BookingDetails(booking=booking, assignments=assignments, live_assignment=live)

    def compare_and_set_booking(self, conn: sqlite3.Connection, booking: Booking, **changes: Any) -> Booking:
        """Write changes only if the row still has the status and version the caller read."""
        columns = dict(changes)
        for key in ("status", "payment_status"):
            if key in columns and columns[key] is not None:
                columns[key] = getattr(columns[key], "value", columns[key])
        assignments = ", ".join(f"{column} = ?" for column in columns)
        cursor = conn.execute(
            f"""
            UPDATE bookings SET {assignments}, version = version + 1
            WHERE id = ? AND status = ? AND version = ?
            """,
            (*columns.values(), booking.id, booking.status.value, booking.version),
        )
        if cursor.rowcount != 1:
            actual = self.fetch_booking(conn, booking.id)
            raise ConcurrencyConflict(
                "Booking changed concurrently",
                booking_id=booking.id,
                expected=booking.status,
                actual=actual.status,
            )
        return self.fetch_booking(conn, booking.id)

    def list_bookings(
        self,
        status: Optional[BookingStatus] = None,
        delivery_mode: Optional[DeliveryMode] = None,
        customer_id: Optional[str] = None,
        provider_id: Optional[str] = None,
        page: int = 1,
        limit: int = 50,
    ) -> List[BookingSummary]:
        query = "SELECT * FROM bookings"
        clauses: List[str] = []
        params: List[Any] = []
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        if delivery_mode is not None:
            clauses.append("delivery_mode = ?")
            params.append(delivery_mode.value)
        if customer_id:
            clauses.append("customer_id = ?")
            params.append(customer_id)
        if provider_id:
            clauses.append("id IN (SELECT booking_id FROM assignments WHERE provider_id = ?)")
            params.append(provider_id)
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at DESC, rowid DESC LIMIT ? OFFSET ?"
        params.extend([limit, (max(page, 1) - 1) * limit])
        with self.reader() as conn:
            rows = conn.execute(query, tuple(params)).fetchall()
            return [self._row_to_summary(conn, row) for row in rows]

    def latest_booking_summary(self) -> Optional[BookingSummary]:
        with self.reader() as conn:
            row = conn.execute("SELECT * FROM bookings ORDER BY created_at DESC, rowid DESC LIMIT 1").fetchone()
            return self._row_to_summary(conn, row) if row else None

    def count_bookings_by_status(self) -> Dict[str, int]:
        with self.reader() as conn:
            rows = conn.execute("SELECT status, COUNT(*) AS c FROM bookings GROUP BY status").fetchall()
        counts = {status.value: 0 for status in BookingStatus}
        for row in rows:
            counts[row["status"]] = int(row["c"])
        return counts

    def stale_proposal_booking_ids(self, cutoff: datetime) -> List[str]:
        with self.reader() as conn:
            rows = conn.execute(
                """
                SELECT a.booking_id, a.proposed_at FROM assignments a
                JOIN bookings b ON b.id = a.booking_id
                WHERE a.status = 'PROPOSED' AND b.status = 'AWAITING_VENDOR_RESPONSE'
                ORDER BY a.proposed_at
                """
            ).fetchall()
        return [row["booking_id"] for row in rows if parse_timestamp(row["proposed_at"]) <= cutoff]

    # Assignments

    def insert_assignment(self, conn: sqlite3.Connection, assignment: Assignment) -> None:
        conn.execute(
            """
            INSERT INTO assignments (
                id, booking_id, provider_id, status, score, matched_skills_json, match_type,
                proposed_at, responded_at, note
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                assignment.id,
                assignment.booking_id,
                assignment.provider_id,
                assignment.status.value,
                assignment.score,
                json.dumps(assignment.matched_skills),
                assignment.match_type,
                assignment.proposed_at,
                assignment.responded_at,
                assignment.note,
            ),
        )

    def update_assignment_status(
        self,
        conn: sqlite3.Connection,
        assignment: Assignment,
        status: AssignmentStatus,
        *,
        responded_at: Optional[str] = None,
        note: Optional[str] = None,
    ) -> Assignment:
        cursor = conn.execute(
            """
            UPDATE assignments
            SET status = ?, responded_at = COALESCE(?, responded_at), note = COALESCE(?, note)
            WHERE id = ? AND status = ?
            """,
            (status.value, responded_at, note, assignment.id, assignment.status.value),
        )
        if cursor.rowcount != 1:
            raise ConcurrencyConflict(
                "Assignment changed concurrently",
                booking_id=assignment.booking_id,
                provider_id=assignment.provider_id,
                expected=assignment.status,
            )
        return assignment.model_copy(
            update={
                "status": status,
                "responded_at": responded_at or assignment.responded_at,
                "note": note if note is not None else assignment.note,
            }
        )

    def live_assignment_for_booking(self, conn: sqlite3.Connection, booking_id: str) -> Optional[Assignment]:
        row = conn.execute(
            f"SELECT * FROM assignments WHERE booking_id = ? AND status IN {LIVE_STATUS_SQL}",
            (booking_id,),
        ).fetchone()
        return self._row_to_assignment(row) if row else None

    def live_assignment_for_provider(self, conn: sqlite3.Connection, provider_id: str) -> Optional[Assignment]:
        row = conn.execute(
            f"SELECT * FROM assignments WHERE provider_id = ? AND status IN {LIVE_STATUS_SQL}",
            (provider_id,),
        ).fetchone()
        return self._row_to_assignment(row) if row else None

    def latest_assignment(self, conn: sqlite3.Connection, booking_id: str) -> Optional[Assignment]:
        row = conn.execute(
            "SELECT * FROM assignments WHERE booking_id = ? ORDER BY proposed_at DESC, rowid DESC LIMIT 1",
            (booking_id,),
        ).fetchone()
        return self._row_to_assignment(row) if row else None

    def list_assignments(self, conn: sqlite3.Connection, booking_id: str) -> List[Assignment]:
        rows = conn.execute(
            "SELECT * FROM assignments WHERE booking_id = ? ORDER BY proposed_at, rowid",
            (booking_id,),
        ).fetchall()
        return [self._row_to_assignment(row) for row in rows]

    # Audit log

    def insert_event(self, conn: sqlite3.Connection, event: BookingEvent) -> None:
        conn.execute(
            """
            INSERT INTO booking_events (
                id, booking_id, event_type, from_status, to_status, actor_id, actor_role,
                assignment_id, provider_id, note, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                event.id,
                event.booking_id,
                event.event_type,
                event.from_status.value if event.from_status else None,
                event.to_status.value if event.to_status else None,
                event.actor_id,
                event.actor_role.value,
                event.assignment_id,
                event.provider_id,
                event.note,
                event.created_at,
            ),
        )

    def list_events(self, booking_id: str) -> List[BookingEvent]:
        with self.reader() as conn:
            self.fetch_booking(conn, booking_id)
            rows = conn.execute(
                "SELECT * FROM booking_events WHERE booking_id = ? ORDER BY created_at, rowid",
                (booking_id,),
            ).fetchall()
        return [self._row_to_event(row) for row in rows]

    # Row mapping

    def _row_to_catalog_service(self, row: sqlite3.Row) -> CatalogService:
        return CatalogService(
            id=row["id"],
            name=row["name"],
            skill_tag=row["skill_tag"],
            duration_minutes=int(row["duration_minutes"]),
            price=float(row["price"]),
        )

    def _row_to_provider(self, row: sqlite3.Row) -> Provider:
        return Provider(
            id=row["id"],
            name=row["name"],
            kind=ProviderKind(row["kind"]),
            skills=_load_json_list(row["skills_json"]),
            tier=ProviderTier(row["tier"]),
            availability=ProviderAvailability(row["availability"]),
            completed_count=int(row["completed_count"]),
            phone=row["phone"],
            email=row["email"],
            last_assigned_at=row["last_assigned_at"],
            version=int(row["version"]),
            created_at=row["created_at"],
        )

    def _row_to_booking(self, conn: sqlite3.Connection, row: sqlite3.Row) -> Booking:
        items = conn.execute(
            "SELECT * FROM booking_line_items WHERE booking_id = ? ORDER BY position",
            (row["id"],),
        ).fetchall()
        products = conn.execute(
            "SELECT * FROM booking_products WHERE booking_id = ? ORDER BY position",
            (row["id"],),
        ).fetchall()
        address = Address.model_validate_json(row["address_json"]) if row["address_json"] else None
        return Booking(
            id=row["id"],
            customer_id=row["customer_id"],
            delivery_mode=DeliveryMode(row["delivery_mode"]),
            line_items=[
                BookingLineItem(
                    id=item["id"],
                    service_id=item["service_id"],
                    name=item["name"],
                    skill_tag=item["skill_tag"],
                    duration_minutes=int(item["duration_minutes"]),
                    unit_price=float(item["unit_price"]),
                    quantity=int(item["quantity"]),
                )
                for item in items
            ],
            products=[
                ProductLineItem(
                    product_id=product["product_id"],
                    quantity=int(product["quantity"]),
                    unit_price=float(product["unit_price"]),
                )
                for product in products
            ],
            address=address,
            salon_location_id=row["salon_location_id"],
            slot_start=row["slot_start"],
            slot_end=row["slot_end"],
            total=float(row["total"]),
            status=BookingStatus(row["status"]),
            payment_status=row["payment_status"],
            assigned_provider_id=row["assigned_provider_id"],
            proposed_at=row["proposed_at"],
            notes=row["notes"],
            cancel_reason=row["cancel_reason"],
            version=int(row["version"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _row_to_summary(self, conn: sqlite3.Connection, row: sqlite3.Row) -> BookingSummary:
        names = conn.execute(
            "SELECT name FROM booking_line_items WHERE booking_id = ? ORDER BY position",
            (row["id"],),
        ).fetchall()
        return BookingSummary(
            id=row["id"],
            customer_id=row["customer_id"],
            delivery_mode=DeliveryMode(row["delivery_mode"]),
            status=BookingStatus(row["status"]),
            payment_status=row["payment_status"],
            slot_start=row["slot_start"],
            total=float(row["total"]),
            services=[name_row["name"] for name_row in names],
            assigned_provider_id=row["assigned_provider_id"],
            created_at=row["created_at"],
        )

    def _row_to_assignment(self, row: sqlite3.Row) -> Assignment:
        return Assignment(
            id=row["id"],
            booking_id=row["booking_id"],
            provider_id=row["provider_id"],
            status=AssignmentStatus(row["status"]),
            score=float(row["score"]),
            matched_skills=_load_json_list(row["matched_skills_json"]),
            match_type=row["match_type"],
            proposed_at=row["proposed_at"],
            responded_at=row["responded_at"],
            note=row["note"],
        )

    def _row_to_event(self, row: sqlite3.Row) -> BookingEvent:
        return BookingEvent(
            id=row["id"],
            booking_id=row["booking_id"],
            event_type=row["event_type"],
            from_status=BookingStatus(row["from_status"]) if row["from_status"] else None,
            to_status=BookingStatus(row["to_status"]) if row["to_status"] else None,
            actor_id=row["actor_id"],
            actor_role=row["actor_role"],
            assignment_id=row["assignment_id"],
            provider_id=row["provider_id"],
            note=row["note"],
            created_at=row["created_at"],
        )


def _load_json_list(raw: Optional[str]) -> List[str]:
    try:
        parsed = json.loads(raw or "[]")
    except json.JSONDecodeError:
        return []
    if not isinstance(parsed, list):
        return []
    return [str(item) for item in parsed]


booking_store = BookingStore(db_path=config.DB_PATH)
