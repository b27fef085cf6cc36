"""
Custom exception hierarchy for backend data service operations.

Hierarchy:
    BackendError (base)
    ├── BackendConnectionError  - Network/timeout issues (recoverable)
    ├── BackendAPIError         - Backend returned error response
    │   └── ListingNotFoundError  - Single-record lookup found nothing
    ├── BackendDataError        - Invalid response structure
    │   └── PartialRecordError    - Record returned without its joins
    └── SubscriptionError       - Realtime channel could not be set up

    ValidationError             - Input validation failed
"""
from typing import Any, Optional, Sequence


class BackendError(Exception):
    """Base exception for all backend-related errors."""

    def __init__(self, message: str, details: str = None):
        self.message = message
        self.details = details
        super().__init__(self.message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message}: {self.details}"
        return self.message


class BackendConnectionError(BackendError):
    """
    The request never got an HTTP answer (timeout, refused, reset).

    The only class the REST client retries.
    """

    def __init__(self, message: str, details: str = None, retry_after: int = None):
        super().__init__(message, details)
        self.retry_after = retry_after


class BackendAPIError(BackendError):
    """
    Backend returned an error response.

    status_code is the HTTP status, error_code the PostgREST code (e.g. PGRST116).
    """

    def __init__(
        self,
        message: str,
        details: str = None,
        status_code: int = None,
        error_code: str = None,
    ):
        super().__init__(message, details)
        self.status_code = status_code
        self.error_code = error_code


class ListingNotFoundError(BackendAPIError):
    """Listing is absent or hidden from the caller by access policy."""

    def __init__(self, listing_id: str, details: str = None, status_code: int = 406):
        super().__init__(
            f"Listing not found: {listing_id}",
            details=details,
            status_code=status_code,
            error_code="PGRST116",
        )
        self.listing_id = listing_id


class BackendDataError(BackendError):
    """
    Response parsed but did not have the expected shape.

    Not retried: asking again returns the same body.
    """

    def __init__(self, message: str, details: str = None, expected: str = None, got: str = None):
        super().__init__(message, details)
        self.expected = expected
        self.got = got


class PartialRecordError(BackendDataError):
    """
    Single record came back without its enrichment joins.

    Showing it would render a listing with no seller attribution,
    so callers fall back to a full-list refresh instead.
    """

    def __init__(self, listing_id: str, missing: Sequence[str] = ("seller",)):
        self.listing_id = listing_id
        self.missing = tuple(missing)
        super().__init__(
            f"Listing {listing_id} is missing joined data",
            details=", ".join(self.missing),
            expected="enriched record",
            got="partial record",
        )


class SubscriptionError(BackendError):
    """Realtime change feed could not be joined."""


class ValidationError(Exception):
    """Bad filter or query parameter, rejected before anything is fetched."""

    def __init__(self, field: str, message: str, value: Optional[Any] = None):
        self.field = field
        self.message = message
        self.value = value
        super().__init__(f"{field}: {message}")

    def __str__(self) -> str:
        if self.value is not None:
            return f"{self.field}: {self.message} (got: {self.value!r})"
        return f"{self.field}: {self.message}"
