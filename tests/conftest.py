"""
Pytest configuration and shared fixtures.
"""
import pytest
from typing import Any, Dict, Iterable, List, Optional
from unittest.mock import AsyncMock

from iskomarket.backend import BackendDataService
from iskomarket.config import AppConfig, RealtimeConfig, SyncConfig
from iskomarket.events import EventBus
from iskomarket.models import Listing
from iskomarket.observability import metrics


def listing_row(listing_id: str, **overrides) -> Dict[str, Any]:
    """A joined products row as the primary query returns it."""
    row = {
        "id": listing_id,
        "title": f"Listing {listing_id}",
        "description": "Gently used, pickup at the main gate",
        "price": 250.0,
        "condition": "Like New",
        "location": "Main Campus",
        "images": ["https://cdn.example.com/img.jpg"],
        "is_available": True,
        "is_hidden": False,
        "is_deleted": False,
        "seller_id": f"seller-{listing_id}",
        "seller": {
            "id": f"seller-{listing_id}",
            "username": "juan",
            "avatar_url": None,
            "credit_score": 85,
            "is_trusted_member": True,
        },
        "category": {"id": 3, "name": "Books"},
        "category_id": 3,
        "created_at": "2026-10-01T08:00:00Z",
    }
    row.update(overrides)
    return row


def make_listing(listing_id: str, **overrides) -> Listing:
    return Listing.from_row(listing_row(listing_id, **overrides))


def make_listings(*listing_ids: str) -> List[Listing]:
    return [make_listing(listing_id) for listing_id in listing_ids]


def make_backend(
    primary: Optional[Iterable[Listing]] = (),
    broad: Optional[Iterable[Listing]] = (),
) -> AsyncMock:
    """AsyncMock backend with canned list results and a working subscription."""
    backend = AsyncMock(spec=BackendDataService)
    backend.fetch_listings.return_value = list(primary)
    backend.fetch_listings_broad.return_value = list(broad)
    backend.count_listings.return_value = 0
    backend.unsubscribe = AsyncMock()
    backend.subscribe_listing_changes.return_value = backend.unsubscribe
    return backend


def fast_config(
    poll: float = 0.05,
    fast_poll: float = 0.05,
    grace: float = 0.1,
    realtime: bool = True,
    escalation: str = "empty",
) -> AppConfig:
    """Sub-second timings so lifecycle tests run against real timers."""
    return AppConfig(
        sync=SyncConfig(
            poll_interval_seconds=poll,
            fast_poll_interval_seconds=fast_poll,
            realtime_grace_seconds=grace,
            escalation=escalation,
        ),
        realtime=RealtimeConfig(enabled=realtime),
    )


@pytest.fixture(autouse=True)
def reset_metrics():
    """Counters are process-global."""
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def bus() -> EventBus:
    """Fresh event bus so tests never share handlers."""
    return EventBus()


@pytest.fixture
def sample_row() -> Dict[str, Any]:
    return listing_row("p1")


@pytest.fixture
def legacy_row() -> Dict[str, Any]:
    """Row from before availability tracking: NULL is_available, single image."""
    return {
        "id": 42,
        "title": "Calculator",
        "price": "150",
        "image": "blob:http://localhost/abc",
        "is_available": None,
        "seller_id": 7,
        "created_at": "2024-06-01T00:00:00+00:00",
    }


@pytest.fixture
def row_factory():
    """Build joined listing rows: row_factory("p1", is_hidden=True)."""
    return listing_row


@pytest.fixture
def listing_factory():
    """Build parsed listings: listing_factory("p1", price=10.0)."""
    return make_listing


@pytest.fixture
def listings_factory():
    """Build several default listings: listings_factory("a", "b")."""
    return make_listings


@pytest.fixture
def backend_factory():
    """Build an AsyncMock backend: backend_factory(primary=[...], broad=[...])."""
    return make_backend


@pytest.fixture
def config_factory():
    """Build an AppConfig with sub-second timers."""
    return fast_config
