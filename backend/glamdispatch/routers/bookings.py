from typing import Optional

from fastapi import APIRouter, HTTPException, Query

from glamdispatch.errors import (
    BookingNotFound,
    DispatchError,
    DispatchPermissionError,
    DispatchValidationError,
    ProviderNotFound,
)
from glamdispatch.models import (
    AssignRequest,
    Booking,
    BookingCreateRequest,
    BookingDetails,
    BookingEvent,
    BookingStatus,
    BookingSummary,
    CancelRequest,
    DeliveryMode,
    EligibleProvider,
    ExpireProposalsResult,
    LifecycleActionRequest,
    PaymentStatusRequest,
    RespondRequest,
)
from glamdispatch.services.assignment_service import assignment_service
from glamdispatch.services.booking_desk import booking_desk
from glamdispatch.services.matcher import matcher

router = APIRouter(prefix="/bookings", tags=["bookings"])


def _raise_dispatch_http_error(exc: DispatchError) -> None:
    if isinstance(exc, (BookingNotFound, ProviderNotFound)):
        raise HTTPException(status_code=404, detail=exc.to_detail())
    if isinstance(exc, DispatchPermissionError):
        raise HTTPException(status_code=403, detail=exc.to_detail())
    if isinstance(exc, DispatchValidationError):
        raise HTTPException(status_code=400, detail=exc.to_detail())
    raise HTTPException(status_code=409, detail=exc.to_detail())


def _parse_filter(enum_cls, value: Optional[str], label: str):
    if not value or not value.strip():
        return None
    try:
        return enum_cls(value)
    except ValueError:
        _raise_dispatch_http_error(
            DispatchValidationError(
                f"Unknown {label}: {value}",
                expected=[member.value for member in enum_cls],
                actual=value,
            )
        )


def _expire_stale_proposals() -> list[str]:
    try:
        return assignment_service.expire_stale_proposals()
    except DispatchError as exc:
        _raise_dispatch_http_error(exc)


@router.get("", response_model=list[BookingSummary])
def list_bookings(
    status: Optional[str] = Query(default=None),
    type: Optional[str] = Query(default=None),
    customer_id: Optional[str] = Query(default=None),
    provider_id: Optional[str] = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=200),
    fallback_latest: bool = Query(default=False),
):
    _expire_stale_proposals()
    return booking_desk.list_bookings(
        status=_parse_filter(BookingStatus, status, "booking status"),
        delivery_mode=_parse_filter(DeliveryMode, type, "delivery mode"),
        customer_id=customer_id,
        provider_id=provider_id,
        page=page,
        limit=limit,
        fallback_latest=fallback_latest,
    )


@router.post("", response_model=Booking)
def create_booking(request: BookingCreateRequest):
    try:
        return booking_desk.create_booking(request)
    except DispatchError as exc:
        _raise_dispatch_http_error(exc)


@router.post("/expire-proposals", response_model=ExpireProposalsResult)
def expire_proposals():
    return ExpireProposalsResult(expired_booking_ids=_expire_stale_proposals())


@router.get("/{booking_id}", response_model=BookingDetails)
def get_booking(booking_id: str):
    try:
        return booking_desk.get_booking_details(booking_id)
    except DispatchError as exc:
        _raise_dispatch_http_error(exc)


@router.get("/{booking_id}/events", response_model=list[BookingEvent])
def list_booking_events(booking_id: str):
    try:
        return booking_desk.list_events(booking_id)
    except DispatchError as exc:
        _raise_dispatch_http_error(exc)


@router.get("/{booking_id}/eligible-providers", response_model=list[EligibleProvider])
def eligible_providers(booking_id: str, skills: Optional[str] = Query(default=None)):
    try:
        candidates = matcher.rank_for_booking(booking_id, skill_override=skills)
    except DispatchError as exc:
        _raise_dispatch_http_error(exc)
    return [candidate.to_eligible() for candidate in candidates]


@router.post("/{booking_id}/assign", response_model=BookingDetails)
def assign_provider(booking_id: str, request: AssignRequest):
    try:
        return assignment_service.propose_assignment(booking_id, request.provider_id, actor=request.actor())
    except DispatchError as exc:
        _raise_dispatch_http_error(exc)


@router.post("/{booking_id}/reassign", response_model=BookingDetails)
def reassign_provider(booking_id: str, request: AssignRequest):
    try:
        return assignment_service.reassign(booking_id, request.provider_id, actor=request.actor())
    except DispatchError as exc:
        _raise_dispatch_http_error(exc)


@router.post("/{booking_id}/respond", response_model=BookingDetails)
def respond_to_proposal(booking_id: str, request: RespondRequest):
    try:
        return assignment_service.respond_to_proposal(
            booking_id,
            request.accept,
            assignment_id=request.assignment_id,
            actor=request.actor(),
        )
    except DispatchError as exc:
        _raise_dispatch_http_error(exc)


@router.post("/{booking_id}/start", response_model=BookingDetails)
def start_service(booking_id: str, request: Optional[LifecycleActionRequest] = None):
    request = request or LifecycleActionRequest()
    try:
        return assignment_service.start_service(booking_id, actor=request.actor(), note=request.note)
    except DispatchError as exc:
        _raise_dispatch_http_error(exc)


@router.post("/{booking_id}/complete", response_model=BookingDetails)
def complete_service(booking_id: str, request: Optional[LifecycleActionRequest] = None):
    request = request or LifecycleActionRequest()
    try:
        return assignment_service.complete_service(booking_id, actor=request.actor(), note=request.note)
    except DispatchError as exc:
        _raise_dispatch_http_error(exc)


@router.post("/{booking_id}/cancel", response_model=BookingDetails)
def cancel_booking(booking_id: str, request: CancelRequest):
    try:
        return assignment_service.cancel_booking(booking_id, request.reason, actor=request.actor())
    except DispatchError as exc:
        _raise_dispatch_http_error(exc)


@router.post("/{booking_id}/payment-status", response_model=Booking)
def record_payment_status(booking_id: str, request: PaymentStatusRequest):
    try:
        return booking_desk.record_payment_status(booking_id, request.payment_status, actor=request.actor())
    except DispatchError as exc:
        _raise_dispatch_http_error(exc)
