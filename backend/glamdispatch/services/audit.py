import logging
import sqlite3
from datetime import datetime
from typing import List, Optional

from glamdispatch.models import Actor, BookingEvent, BookingStatus
from glamdispatch.services.activity_feed import ActivityFeed, activity_feed
from glamdispatch.services.booking_store import BookingStore, booking_store, new_id

logger = logging.getLogger(__name__)


class AuditEmitter:
    """Writes audit rows inside a transaction and publishes them once it commits."""

    def __init__(self, store: BookingStore, feed: ActivityFeed):
        self._store = store
        self._feed = feed

    def append(
        self,
        conn: sqlite3.Connection,
        *,
        booking_id: str,
        event_type: str,
        actor: Actor,
        now: datetime,
        from_status: Optional[BookingStatus] = None,
        to_status: Optional[BookingStatus] = None,
        assignment_id: Optional[str] = None,
        provider_id: Optional[str] = None,
        note: str = "",
    ) -> BookingEvent:
        event = BookingEvent(
            id=new_id("evt"),
            booking_id=booking_id,
            event_type=event_type,
            from_status=from_status,
            to_status=to_status,
            actor_id=actor.actor_id,
            actor_role=actor.actor_role,
            assignment_id=assignment_id,
            provider_id=provider_id,
            note=note,
            created_at=now.isoformat(),
        )
        self._store.insert_event(conn, event)
        return event

    def publish(self, events: List[BookingEvent]) -> None:
        if events:
            logger.debug("Publishing %s booking events", len(events))
        self._feed.publish(events)


audit_emitter = AuditEmitter(store=booking_store, feed=activity_feed)
