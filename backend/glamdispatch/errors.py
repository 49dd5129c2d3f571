from typing import Any, Dict, Optional


class DispatchError(ValueError):
    """Base class for user-visible dispatch errors."""

    code = "dispatch_error"

    def __init__(
        self,
        message: str,
        *,
        booking_id: Optional[str] = None,
        provider_id: Optional[str] = None,
        expected: Any = None,
        actual: Any = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.booking_id = booking_id
        self.provider_id = provider_id
        self.expected = expected
        self.actual = actual

    def to_detail(self) -> Dict[str, Any]:
        return {
            "error": self.code,
            "message": self.message,
            "booking_id": self.booking_id,
            "provider_id": self.provider_id,
            "expected": _plain(self.expected),
            "actual": _plain(self.actual),
        }


class DispatchValidationError(DispatchError):
    code = "validation_error"


class DispatchPermissionError(DispatchError):
    code = "not_permitted"


class BookingNotFound(DispatchError):
    code = "booking_not_found"


class ProviderNotFound(DispatchError):
    code = "provider_not_found"


class InvalidTransition(DispatchError):
    """The requested move is not allowed from the booking's persisted state."""

    code = "invalid_transition"


class BookingNotEligible(InvalidTransition):
    code = "booking_not_eligible"


class ProviderUnavailable(DispatchError):
    code = "provider_unavailable"


class NoEligibleProviders(DispatchError):
    code = "no_eligible_providers"


class ConcurrencyConflict(DispatchError):
    """A compare-and-swap write lost a race with another writer."""

    code = "concurrency_conflict"


class StorageError(RuntimeError):
    """Fatal storage-layer fault (connection loss, corruption)."""


def _plain(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, (set, frozenset)):
        return sorted(_plain(item) for item in value)
    if isinstance(value, (list, tuple)):
        return [_plain(item) for item in value]
    return getattr(value, "value", value)
