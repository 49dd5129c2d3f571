from typing import Optional

from fastapi import APIRouter, Query

from glamdispatch.models import ActivityItem, ActorRole, CatalogService, DashboardSummary
from glamdispatch.services.activity_feed import activity_feed
from glamdispatch.services.booking_desk import booking_desk
from glamdispatch.services.booking_store import booking_store

router = APIRouter(tags=["activity"])


@router.get("/activities", response_model=list[ActivityItem])
def list_activities(
    booking_id: Optional[str] = Query(default=None),
    event_type: Optional[str] = Query(default=None),
    actor_role: Optional[ActorRole] = Query(default=None),
    q: Optional[str] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
):
    return activity_feed.list_recent(
        booking_id=booking_id,
        event_type=event_type,
        actor_role=actor_role,
        q=q,
        limit=limit,
    )


@router.get("/dashboard/summary", response_model=DashboardSummary)
def dashboard_summary():
    return booking_desk.dashboard_summary()


@router.get("/catalog", response_model=list[CatalogService])
def list_catalog():
    return booking_store.list_catalog()
