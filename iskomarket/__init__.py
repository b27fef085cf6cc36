"""
IskoMarket listing sync core.

Keeps a client-side listing cache eventually consistent with the backend:
- models: Listing, change, advisory and diagnostic types
- exceptions: Backend exception hierarchy
- backend: BackendDataService protocol and REST/realtime implementation
- sync_service: ListingSyncService (mount/unmount, cache surface)
- config: Centralized configuration
"""

# Import in dependency order
from iskomarket.exceptions import (
    BackendError,
    BackendConnectionError,
    BackendAPIError,
    ListingNotFoundError,
    BackendDataError,
    PartialRecordError,
    SubscriptionError,
    ValidationError,
)

from iskomarket.models import (
    Listing,
    ListingChange,
    ListingFilter,
    SellerSummary,
    VisibilityAdvisory,
    VisibilityCounts,
    ChangeKind,
    CountScope,
    RealtimeState,
    is_publicly_visible,
    normalize_images,
)

from iskomarket.config import config

from iskomarket.backend import BackendDataService, SupabaseBackend
from iskomarket.cache import ListingCache
from iskomarket.sync_service import ListingSyncService, get_sync_service

__all__ = [
    # Exceptions
    "BackendError",
    "BackendConnectionError",
    "BackendAPIError",
    "ListingNotFoundError",
    "BackendDataError",
    "PartialRecordError",
    "SubscriptionError",
    "ValidationError",
    # Models
    "Listing",
    "ListingChange",
    "ListingFilter",
    "SellerSummary",
    "VisibilityAdvisory",
    "VisibilityCounts",
    "ChangeKind",
    "CountScope",
    "RealtimeState",
    "is_publicly_visible",
    "normalize_images",
    # Sync
    "BackendDataService",
    "SupabaseBackend",
    "ListingCache",
    "ListingSyncService",
    "get_sync_service",
    # Config
    "config",
]
