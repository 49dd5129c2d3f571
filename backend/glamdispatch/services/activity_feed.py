from threading import Lock
from typing import Iterable, List, Optional

from glamdispatch import config
from glamdispatch.models import ActivityItem, ActorRole, BookingEvent

TITLES = {
    "CREATED": "Booking created",
    "SUBMIT": "Booking sent to triage",
    "PROPOSE": "Provider proposed",
    "ACCEPT": "Booking accepted",
    "DECLINE": "Proposal declined",
    "EXPIRE": "Proposal expired",
    "WITHDRAW": "Proposal withdrawn",
    "START": "Service started",
    "COMPLETE": "Service completed",
    "CANCEL": "Booking cancelled",
    "PAYMENT_STATUS": "Payment status updated",
}


def describe(event: BookingEvent) -> ActivityItem:
    title = TITLES.get(event.event_type, event.event_type.replace("_", " ").title())
    parts = [f"Booking {event.booking_id}"]
    if event.from_status and event.to_status and event.from_status != event.to_status:
        parts.append(f"moved {event.from_status.value} -> {event.to_status.value}")
    if event.provider_id:
        parts.append(f"provider {event.provider_id}")
    if event.note:
        parts.append(event.note)
    return ActivityItem(
        id=event.id,
        event_type=event.event_type,
        title=title,
        description=", ".join(parts),
        booking_id=event.booking_id,
        provider_id=event.provider_id,
        actor_id=event.actor_id,
        actor_role=event.actor_role,
        status=event.to_status,
        created_at=event.created_at,
    )


class ActivityFeed:
    def __init__(self, limit: int = config.ACTIVITY_FEED_LIMIT):
        self._lock = Lock()
        self._limit = limit
        self._items: List[ActivityItem] = []

    def publish(self, events: Iterable[BookingEvent]) -> None:
        items = [describe(event) for event in events]
        if not items:
            return
        with self._lock:
            for item in items:
                self._items.insert(0, item)
            del self._items[self._limit :]

    def list_recent(
        self,
        booking_id: Optional[str] = None,
        event_type: Optional[str] = None,
        actor_role: Optional[ActorRole] = None,
        q: Optional[str] = None,
        limit: int = 50,
    ) -> List[ActivityItem]:
        needle = (q or "").strip().lower()
        wanted_type = (event_type or "").strip().upper()
        with self._lock:
            rows = list(self._items)
        if booking_id:
            rows = [r for r in rows if r.booking_id == booking_id]
        if wanted_type:
            rows = [r for r in rows if r.event_type == wanted_type]
        if actor_role is not None:
            rows = [r for r in rows if r.actor_role == actor_role]
        if needle:
            rows = [r for r in rows if needle in r.title.lower() or needle in r.description.lower()]
        return rows[:limit]


activity_feed = ActivityFeed()
