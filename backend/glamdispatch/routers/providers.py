from typing import Optional

from fastapi import APIRouter, HTTPException, Query

from glamdispatch.errors import (
    DispatchError,
    DispatchPermissionError,
    DispatchValidationError,
    ProviderNotFound,
)
from glamdispatch.models import (
    AvailabilityChangeRequest,
    Provider,
    ProviderAvailability,
    ProviderCreateRequest,
    ProviderDetails,
    ProviderKind,
)
from glamdispatch.services.assignment_service import assignment_service
from glamdispatch.services.booking_store import booking_store

router = APIRouter(prefix="/providers", tags=["providers"])


def _raise_dispatch_http_error(exc: DispatchError) -> None:
    if isinstance(exc, ProviderNotFound):
        raise HTTPException(status_code=404, detail=exc.to_detail())
    if isinstance(exc, DispatchPermissionError):
        raise HTTPException(status_code=403, detail=exc.to_detail())
    if isinstance(exc, DispatchValidationError):
        raise HTTPException(status_code=400, detail=exc.to_detail())
    raise HTTPException(status_code=409, detail=exc.to_detail())


@router.get("", response_model=list[Provider])
def list_providers(
    availability: Optional[ProviderAvailability] = Query(default=None),
    kind: Optional[ProviderKind] = Query(default=None),
    q: Optional[str] = Query(default=None),
):
    return booking_store.list_providers(availability=availability, kind=kind, q=q)


@router.post("", response_model=Provider)
def create_provider(request: ProviderCreateRequest):
    try:
        return booking_store.add_provider(
            name=request.name,
            kind=request.kind,
            skills=request.skills,
            tier=request.tier,
            phone=request.phone,
            email=request.email,
        )
    except DispatchError as exc:
        _raise_dispatch_http_error(exc)


@router.get("/{provider_id}", response_model=ProviderDetails)
def get_provider(provider_id: str):
    try:
        return booking_store.get_provider_details(provider_id)
    except DispatchError as exc:
        _raise_dispatch_http_error(exc)


@router.post("/{provider_id}/availability", response_model=ProviderDetails)
def change_availability(provider_id: str, request: AvailabilityChangeRequest):
    try:
        return assignment_service.change_provider_availability(
            provider_id,
            request.availability,
            actor=request.actor(),
        )
    except DispatchError as exc:
        _raise_dispatch_http_error(exc)
