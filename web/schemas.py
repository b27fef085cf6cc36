"""
Pydantic response models for API endpoints.

Provides type-safe response models with automatic validation and documentation.
"""
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


# ═══════════════════════════════════════════════════════════════════════════════
# LISTINGS
# ═══════════════════════════════════════════════════════════════════════════════

class SellerResponse(BaseModel):
    """Seller attribution joined onto a listing."""
    id: str
    username: str
    avatar_url: Optional[str] = None
    credit_score: int = 0
    is_trusted_member: bool = False


class ListingResponse(BaseModel):
    """One cached listing."""
    id: str
    title: str
    description: Optional[str] = None
    price: Optional[float] = None
    category: Optional[str] = None
    condition: Optional[str] = None
    location: Optional[str] = None
    images: List[str] = Field(default_factory=list)
    is_available: Optional[bool] = None
    seller_id: Optional[str] = None
    seller: Optional[SellerResponse] = None
    created_at: Optional[str] = Field(None, description="Creation time (ISO format)")
    posted_at: Optional[str] = None


class AdvisoryResponse(BaseModel):
    """Visibility advisory banner state."""
    active: bool = Field(description="True when listings exist that the public query cannot see")
    note: Optional[str] = None


class ListingsResponse(BaseModel):
    """Cache snapshot, newest first."""
    listings: List[ListingResponse]
    count: int
    last_synced_at: Optional[str] = Field(None, description="Last cache change (ISO format)")
    advisory: AdvisoryResponse
    realtime_state: str = Field(description="subscribing, healthy, or degraded")


class RefreshResponse(BaseModel):
    """Manual refresh outcome."""
    success: bool = Field(description="False when every fetch path failed; the cache is unchanged")
    count: int
    last_synced_at: Optional[str] = None
    advisory: AdvisoryResponse


class VisibilityCountsResponse(BaseModel):
    """Side-by-side counts for the three access paths; null when a probe failed."""
    primary: Optional[int] = None
    broad: Optional[int] = None
    raw: Optional[int] = None
    discrepancy: bool
    captured_at: str


# ═══════════════════════════════════════════════════════════════════════════════
# HEALTH CHECK
# ═══════════════════════════════════════════════════════════════════════════════

class RealtimeStatus(BaseModel):
    state: str
    last_event_at: Optional[str] = None


class SyncStatus(BaseModel):
    """Listing sync service status."""
    mounted: bool
    mounted_at: Optional[str] = None
    listing_count: int
    last_synced_at: Optional[str] = None
    last_refreshed_at: Optional[str] = Field(None, description="Last successful fetch cycle")
    advisory: AdvisoryResponse
    realtime: RealtimeStatus
    escalation: str
    jobs: List[Dict[str, Any]] = Field(default_factory=list)
    recent_events: List[Dict[str, Any]] = Field(default_factory=list)


class HealthResponse(BaseModel):
    """Health check response."""
    status: str = Field(description="Service status: healthy or degraded")
    version: str = Field(description="Application version")
    uptime_seconds: int = Field(description="Uptime in seconds")
    correlation_id: Optional[str] = Field(None, description="Request correlation ID")
    sync: SyncStatus
    metrics: Dict[str, Any] = Field(default_factory=dict)
    websocket: Dict[str, Any] = Field(default_factory=dict)
