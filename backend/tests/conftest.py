import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

# The app module wires its singletons against this path at import time.
os.environ.setdefault(
    "DISPATCH_DB_PATH",
    os.path.join(tempfile.mkdtemp(prefix="glamdispatch-tests-"), "dispatch.sqlite3"),
)

from glamdispatch.models import Address, BookingCreateRequest, LineItemRequest  # noqa: E402
from glamdispatch.services.activity_feed import ActivityFeed  # noqa: E402
from glamdispatch.services.assignment_service import AssignmentService  # noqa: E402
from glamdispatch.services.audit import AuditEmitter  # noqa: E402
from glamdispatch.services.booking_desk import BookingDesk  # noqa: E402
from glamdispatch.services.booking_store import BookingStore  # noqa: E402
from glamdispatch.services.lifecycle import LifecycleEngine  # noqa: E402
from glamdispatch.services.matcher import EligibilityMatcher  # noqa: E402

START = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
SLOT = "2026-03-02T10:00:00+00:00"


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock(START)


@pytest.fixture
def dispatch(tmp_path, clock):
    store = BookingStore(db_path=str(tmp_path / "dispatch.sqlite3"))
    feed = ActivityFeed(limit=100)
    emitter = AuditEmitter(store=store, feed=feed)
    engine = LifecycleEngine(store=store, emitter=emitter)
    matcher = EligibilityMatcher(store=store, clock=clock, idle_cap_hours=72)
    assignments = AssignmentService(
        store=store,
        engine=engine,
        matcher=matcher,
        emitter=emitter,
        clock=clock,
        proposal_timeout_minutes=30,
    )
    desk = BookingDesk(store=store, engine=engine, emitter=emitter, clock=clock)
    return SimpleNamespace(
        store=store,
        feed=feed,
        engine=engine,
        matcher=matcher,
        assignments=assignments,
        desk=desk,
        clock=clock,
    )


@pytest.fixture
def book(dispatch):
    def _book(services=("svc_haircut",), customer_id="cust_1", slot_start=SLOT, **overrides):
        payload = {
            "customer_id": customer_id,
            "delivery_mode": "AT_HOME",
            "services": [LineItemRequest(service_id=service_id) for service_id in services],
            "address": Address(street="12 Rose Lane", city="Pune"),
            "slot_start": slot_start,
        }
        payload.update(overrides)
        return dispatch.desk.create_booking(BookingCreateRequest(**payload))

    return _book


@pytest.fixture
def providers(dispatch):
    """P1 is a senior hair and facial specialist, P2 a junior nail technician."""
    p1 = dispatch.store.add_provider(name="Asha", skills=["Hair Cut", "Facial"], tier="SENIOR", provider_id="P1")
    p2 = dispatch.store.add_provider(name="Bina", skills=["Nails"], tier="JUNIOR", provider_id="P2")
    return p1, p2
