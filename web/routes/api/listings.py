"""Listing cache endpoints for the product grid, detail modal, and diagnostics panel."""
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from iskomarket.exceptions import ValidationError
from iskomarket.models import ListingFilter
from iskomarket.observability import get_logger
from iskomarket.sync_service import ListingSyncService
from web.schemas import (
    AdvisoryResponse,
    ListingResponse,
    ListingsResponse,
    RefreshResponse,
    VisibilityCountsResponse,
)
from ._deps import limiter, get_service, require_admin_token

router = APIRouter(prefix="/listings")
logger = get_logger(__name__)


def _last_synced(service: ListingSyncService) -> Optional[str]:
    return service.last_synced_at.isoformat() if service.last_synced_at else None


@router.get("", response_model=ListingsResponse)
@limiter.limit("120/minute")
async def get_listings(
    request: Request,
    search: Optional[str] = Query(None, max_length=100),
    category_id: Optional[str] = Query(None),
    min_price: Optional[float] = Query(None),
    max_price: Optional[float] = Query(None),
    service: ListingSyncService = Depends(get_service),
):
    """Current cache snapshot, newest first, optionally narrowed client-side."""
    try:
        listing_filter = ListingFilter(
            category_id=category_id,
            search=search,
            min_price=min_price,
            max_price=max_price,
        )
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))

    listings = [
        listing.to_dict() for listing in service.snapshot if listing_filter.matches(listing)
    ]
    return {
        "listings": listings,
        "count": len(listings),
        "last_synced_at": _last_synced(service),
        "advisory": service.advisory.to_dict(),
        "realtime_state": service.realtime_state.value,
    }


@router.get("/advisory", response_model=AdvisoryResponse)
async def get_advisory(service: ListingSyncService = Depends(get_service)):
    return service.advisory.to_dict()


@router.post("/refresh", response_model=RefreshResponse)
@limiter.limit("30/minute")
async def refresh_listings(request: Request, service: ListingSyncService = Depends(get_service)):
    """Forced re-fetch outside the poll interval."""
    success = await service.manual_refresh()
    return {
        "success": success,
        "count": len(service.snapshot),
        "last_synced_at": _last_synced(service),
        "advisory": service.advisory.to_dict(),
    }


@router.get(
    "/visibility-counts",
    response_model=VisibilityCountsResponse,
    dependencies=[Depends(require_admin_token)],
)
@limiter.limit("10/minute")
async def get_visibility_counts(request: Request, service: ListingSyncService = Depends(get_service)):
    """Primary, broad, and raw row counts side by side. Read-only."""
    counts = await service.visibility_counts()
    return counts.to_dict()


@router.get("/{listing_id}", response_model=ListingResponse)
async def get_listing(listing_id: str, service: ListingSyncService = Depends(get_service)):
    """One cached listing for the detail modal."""
    listing = service.cache.get(listing_id)
    if listing is None:
        raise HTTPException(status_code=404, detail=f"Listing {listing_id} not in cache")
    return listing.to_dict()
