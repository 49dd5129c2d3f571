from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


class BookingStatus(str, Enum):
    PENDING = "PENDING"
    AWAITING_MANAGER = "AWAITING_MANAGER"
    AWAITING_VENDOR_RESPONSE = "AWAITING_VENDOR_RESPONSE"
    VENDOR_CONFIRMED = "VENDOR_CONFIRMED"
    STARTED = "STARTED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"

    @classmethod
    def _missing_(cls, value: object) -> Optional["BookingStatus"]:
        if not isinstance(value, str):
            return None
        normalized = value.strip().upper()
        normalized = STATUS_ALIASES.get(normalized, normalized)
        for member in cls:
            if member.value == normalized:
                return member
        return None


STATUS_ALIASES = {
    "CONFIRMED": "VENDOR_CONFIRMED",
    "IN_PROGRESS": "STARTED",
    "CANCELED": "CANCELLED",
}


class DeliveryMode(str, Enum):
    AT_HOME = "AT_HOME"
    AT_SALON = "AT_SALON"

    @classmethod
    def _missing_(cls, value: object) -> Optional["DeliveryMode"]:
        if isinstance(value, str) and value.strip().upper() in {"SALON_VISIT", "AT_SALON"}:
            return cls.AT_SALON
        if isinstance(value, str) and value.strip().upper() == "AT_HOME":
            return cls.AT_HOME
        return None


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class ProviderKind(str, Enum):
    BEAUTICIAN = "BEAUTICIAN"
    VENDOR = "VENDOR"


class ProviderTier(str, Enum):
    JUNIOR = "JUNIOR"
    INTERMEDIATE = "INTERMEDIATE"
    SENIOR = "SENIOR"

    @classmethod
    def _missing_(cls, value: object) -> Optional["ProviderTier"]:
        if isinstance(value, str):
            normalized = value.strip().upper()
            for member in cls:
                if member.value == normalized:
                    return member
        return None


class ProviderAvailability(str, Enum):
    ACTIVE = "ACTIVE"
    BUSY = "BUSY"
    INACTIVE = "INACTIVE"
    FROZEN = "FROZEN"


class AssignmentStatus(str, Enum):
    PROPOSED = "PROPOSED"
    ACCEPTED = "ACCEPTED"
    DECLINED = "DECLINED"
    EXPIRED = "EXPIRED"
    SUPERSEDED = "SUPERSEDED"
    VOID = "VOID"
    COMPLETED = "COMPLETED"


LIVE_ASSIGNMENT_STATUSES = {AssignmentStatus.PROPOSED, AssignmentStatus.ACCEPTED}


class ActorRole(str, Enum):
    CUSTOMER = "CUSTOMER"
    PROVIDER = "PROVIDER"
    MANAGER = "MANAGER"
    ADMIN = "ADMIN"
    SYSTEM = "SYSTEM"


class Actor(BaseModel):
    actor_id: str = "system"
    actor_role: ActorRole = ActorRole.SYSTEM


SYSTEM_ACTOR = Actor()


class Address(BaseModel):
    name: str = ""
    street: str
    city: str
    state: str = ""
    zip_code: str = ""
    latitude: Optional[float] = None
    longitude: Optional[float] = None


class BookingLineItem(BaseModel):
    id: str
    service_id: str
    name: str
    skill_tag: str
    duration_minutes: int
    unit_price: float
    quantity: int = 1


class ProductLineItem(BaseModel):
    product_id: str
    quantity: int = 1
    unit_price: float = 0.0


class Booking(BaseModel):
    id: str
    customer_id: str
    delivery_mode: DeliveryMode
    line_items: List[BookingLineItem]
    products: List[ProductLineItem] = Field(default_factory=list)
    address: Optional[Address] = None
    salon_location_id: Optional[str] = None
    slot_start: str
    slot_end: str
    total: float
    status: BookingStatus
    payment_status: PaymentStatus = PaymentStatus.PENDING
    assigned_provider_id: Optional[str] = None
    proposed_at: Optional[str] = None
    notes: str = ""
    cancel_reason: Optional[str] = None
    version: int = 0
    created_at: str
    updated_at: str

    @property
    def required_skills(self) -> List[str]:
        seen: List[str] = []
        for item in self.line_items:
            if item.skill_tag and item.skill_tag not in seen:
                seen.append(item.skill_tag)
        return seen


class BookingSummary(BaseModel):
    id: str
    customer_id: str
    delivery_mode: DeliveryMode
    status: BookingStatus
    payment_status: PaymentStatus
    slot_start: str
    total: float
    services: List[str]
    assigned_provider_id: Optional[str] = None
    created_at: str


class Provider(BaseModel):
    id: str
    name: str
    kind: ProviderKind = ProviderKind.BEAUTICIAN
    skills: List[str] = Field(default_factory=list)
    tier: ProviderTier = ProviderTier.INTERMEDIATE
    availability: ProviderAvailability = ProviderAvailability.ACTIVE
    completed_count: int = 0
    phone: str = ""
    email: str = ""
    last_assigned_at: Optional[str] = None
    version: int = 0
    created_at: str


class Assignment(BaseModel):
    id: str
    booking_id: str
    provider_id: str
    status: AssignmentStatus
    score: float = 0.0
    matched_skills: List[str] = Field(default_factory=list)
    match_type: str = "General"
    proposed_at: str
    responded_at: Optional[str] = None
    note: str = ""


class BookingEvent(BaseModel):
    id: str
    booking_id: str
    event_type: str
    from_status: Optional[BookingStatus] = None
    to_status: Optional[BookingStatus] = None
    actor_id: str
    actor_role: ActorRole
    assignment_id: Optional[str] = None
    provider_id: Optional[str] = None
    note: str = ""
    created_at: str


class ActivityItem(BaseModel):
    id: str
    event_type: str
    title: str
    description: str
    booking_id: str
    provider_id: Optional[str] = None
    actor_id: str
    actor_role: ActorRole
    status: Optional[BookingStatus] = None
    created_at: str


class CatalogService(BaseModel):
    id: str
    name: str
    skill_tag: str
    duration_minutes: int
    price: float


class EligibleProvider(BaseModel):
    provider_id: str
    name: str
    kind: ProviderKind
    tier: ProviderTier
    skills: List[str]
    completed_count: int
    score: float
    matched_skills: List[str]
    match_type: str


class BookingDetails(BaseModel):
    booking: Booking
    assignments: List[Assignment]
    live_assignment: Optional[Assignment] = None


class ProviderDetails(BaseModel):
    provider: Provider
    live_assignment: Optional[Assignment] = None


# Requests


class LineItemRequest(BaseModel):
    service_id: str
    quantity: int = Field(default=1, ge=1)


class ProductRequest(BaseModel):
    product_id: str
    quantity: int = Field(default=1, ge=1)
    unit_price: float = Field(default=0.0, ge=0)


class BookingCreateRequest(BaseModel):
    customer_id: str
    delivery_mode: DeliveryMode
    services: List[LineItemRequest] = Field(min_length=1)
    products: List[ProductRequest] = Field(default_factory=list)
    address: Optional[Address] = None
    salon_location_id: Optional[str] = None
    slot_start: str
    notes: str = ""


class ActorRequest(BaseModel):
    actor_id: str = "system"
    actor_role: ActorRole = ActorRole.SYSTEM

    def actor(self) -> Actor:
        return Actor(actor_id=self.actor_id, actor_role=self.actor_role)


class AssignRequest(ActorRequest):
    provider_id: str
    actor_role: ActorRole = ActorRole.MANAGER


class RespondRequest(ActorRequest):
    accept: bool
    assignment_id: Optional[str] = None
    actor_role: ActorRole = ActorRole.PROVIDER


class LifecycleActionRequest(ActorRequest):
    note: str = ""


class CancelRequest(ActorRequest):
    reason: str = Field(min_length=1)
    actor_role: ActorRole = ActorRole.CUSTOMER


class PaymentStatusRequest(ActorRequest):
    payment_status: PaymentStatus


class ProviderCreateRequest(BaseModel):
    name: str
    kind: ProviderKind = ProviderKind.BEAUTICIAN
    skills: List[str] = Field(default_factory=list)
    tier: ProviderTier = ProviderTier.INTERMEDIATE
    phone: str = ""
    email: str = ""

    @field_validator("skills", mode="before")
    @classmethod
    def split_skill_text(cls, value: Any) -> Any:
        # Admin forms submit skills as "Hair Cut, Facial".
        if isinstance(value, str):
            return [part.strip() for part in value.split(",") if part.strip()]
        return value


class AvailabilityChangeRequest(ActorRequest):
    availability: ProviderAvailability
    actor_role: ActorRole = ActorRole.ADMIN


class ExpireProposalsResult(BaseModel):
    expired_booking_ids: List[str]


class DashboardSummary(BaseModel):
    bookings_by_status: Dict[str, int]
    providers_by_availability: Dict[str, int]
    awaiting_triage: int
    completed_services: int
