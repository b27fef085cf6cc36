"""
Domain models for marketplace listings.

Provides type-safe dataclasses for listings, seller summaries, realtime
changes, and the visibility diagnostics surfaced to UI components.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from iskomarket.exceptions import ValidationError

PLACEHOLDER_IMAGE = "/placeholder.png"
EPHEMERAL_IMAGE_PREFIXES = ("blob:", "file:", "filesystem:")
CAMPUS_CATEGORY_PREFIX = "CvSU"


# ═══════════════════════════════════════════════════════════════════════════════
# HELPERS
# ═══════════════════════════════════════════════════════════════════════════════

def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp from the backend (accepts trailing Z)."""
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except (ValueError, TypeError):
        return None


def normalize_images(images: Any) -> Tuple[str, ...]:
    """
    Sanitize an image list so other sessions can render it.

    Ephemeral browser URLs (blob:, file:, filesystem:) and non-string
    entries become the placeholder; empty input yields just the placeholder.
    """
    if isinstance(images, str):
        images = [images]
    if not images or not isinstance(images, (list, tuple)):
        return (PLACEHOLDER_IMAGE,)

    sanitized = []
    for src in images:
        if not src or not isinstance(src, str):
            sanitized.append(PLACEHOLDER_IMAGE)
            continue
        trimmed = src.strip()
        if not trimmed or trimmed.startswith(EPHEMERAL_IMAGE_PREFIXES):
            sanitized.append(PLACEHOLDER_IMAGE)
        else:
            sanitized.append(trimmed)
    return tuple(sanitized) or (PLACEHOLDER_IMAGE,)


def is_publicly_visible(row: Mapping[str, Any]) -> bool:
    """
    Visibility rule for anonymous readers, applied to a raw row or payload.

    Visible iff not deleted, not hidden, and available or availability unset
    (legacy rows carry NULL is_available and are treated as visible).
    """
    if row.get("is_deleted") is True:
        return False
    if row.get("is_hidden") is True:
        return False
    return row.get("is_available") is not False


def is_campus_category(name: Any) -> bool:
    """Campus-only (CvSU) categories are listed on the campus board, not the marketplace."""
    if not name or not isinstance(name, str):
        return False
    return name.strip().lower().startswith(CAMPUS_CATEGORY_PREFIX.lower())


def _optional_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _optional_bool(value: Any) -> Optional[bool]:
    if value is None:
        return None
    return bool(value)


# ═══════════════════════════════════════════════════════════════════════════════
# ENUMS
# ═══════════════════════════════════════════════════════════════════════════════

class ChangeKind(Enum):
    """Kinds of rows changes delivered by the realtime feed."""
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class CountScope(Enum):
    """Access paths that can be counted for diagnostics."""
    PRIMARY = "primary"  # public query with joins and visibility filters
    BROAD = "broad"      # server-side view bypassing restrictive joins
    RAW = "raw"          # unfiltered table


class RealtimeState(Enum):
    """Health of the realtime subscription."""
    SUBSCRIBING = "subscribing"
    HEALTHY = "healthy"
    DEGRADED = "degraded"


# ═══════════════════════════════════════════════════════════════════════════════
# DATACLASSES
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class SellerSummary:
    """Seller attribution joined onto a listing."""
    id: str
    username: str
    avatar_url: Optional[str] = None
    credit_score: int = 0
    is_trusted_member: bool = False

    @classmethod
    def from_api(cls, data: Optional[Mapping[str, Any]]) -> Optional["SellerSummary"]:
        if not data:
            return None
        return cls(
            id=str(data.get("id", "")),
            username=data.get("username") or str(data.get("id", "")),
            avatar_url=data.get("avatar_url"),
            credit_score=int(data.get("credit_score") or 0),
            is_trusted_member=bool(data.get("is_trusted_member", False)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "username": self.username,
            "avatar_url": self.avatar_url,
            "credit_score": self.credit_score,
            "is_trusted_member": self.is_trusted_member,
        }


@dataclass(frozen=True)
class Listing:
    """
    A marketplace product listing.

    Cache entries are replaced wholesale on change, never patched field by
    field, so instances are immutable.
    """
    id: str
    title: str = ""
    description: Optional[str] = None
    price: Optional[float] = None
    category: Optional[str] = None
    condition: Optional[str] = None
    location: Optional[str] = None
    images: Tuple[str, ...] = (PLACEHOLDER_IMAGE,)
    is_available: Optional[bool] = None
    is_hidden: bool = False
    is_deleted: bool = False
    is_sold: bool = False
    is_cvsu_only: bool = False
    seller_id: Optional[str] = None
    seller: Optional[SellerSummary] = None
    created_at: Optional[datetime] = None
    posted_at: Optional[datetime] = None
    raw: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False, hash=False)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Listing":
        """Create a Listing from a backend row (joined or raw)."""
        category = row.get("category")
        if isinstance(category, Mapping):
            category = category.get("name")

        images = row.get("images")
        if images is None:
            images = row.get("image")

        seller_id = row.get("seller_id")

        return cls(
            id=str(row["id"]),
            title=row.get("title") or "",
            description=row.get("description"),
            price=_optional_float(row.get("price")),
            category=category,
            condition=row.get("condition"),
            location=row.get("location"),
            images=normalize_images(images),
            is_available=_optional_bool(row.get("is_available")),
            is_hidden=bool(row.get("is_hidden") or False),
            is_deleted=bool(row.get("is_deleted") or False),
            is_sold=bool(row.get("is_sold") or False),
            is_cvsu_only=bool(row.get("is_cvsu_only") or False),
            seller_id=str(seller_id) if seller_id is not None else None,
            seller=SellerSummary.from_api(row.get("seller")),
            created_at=parse_timestamp(row.get("created_at")),
            posted_at=parse_timestamp(row.get("posted_at") or row.get("date_posted")),
            raw=dict(row),
        )

    @property
    def is_publicly_visible(self) -> bool:
        return (
            not self.is_deleted
            and not self.is_hidden
            and self.is_available is not False
        )

    @property
    def is_marketplace_listing(self) -> bool:
        """Visible and unsold listings that are not campus-board only."""
        return (
            self.is_publicly_visible
            and not self.is_sold
            and not self.is_cvsu_only
            and not is_campus_category(self.category)
        )

    @property
    def is_enriched(self) -> bool:
        """True when the seller join came back with the row."""
        return self.seller is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "price": self.price,
            "category": self.category,
            "condition": self.condition,
            "location": self.location,
            "images": list(self.images),
            "is_available": self.is_available,
            "is_hidden": self.is_hidden,
            "is_deleted": self.is_deleted,
            "is_sold": self.is_sold,
            "is_cvsu_only": self.is_cvsu_only,
            "seller_id": self.seller_id,
            "seller": self.seller.to_dict() if self.seller else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "posted_at": self.posted_at.isoformat() if self.posted_at else None,
        }


def listing_ids(listings: Iterable[Listing]) -> set:
    return {listing.id for listing in listings}


def newest_first(listings: Iterable[Listing]) -> List[Listing]:
    """Sort by created_at descending; undated rows go last, ties keep input order."""
    return sorted(
        listings,
        key=lambda listing: listing.created_at.timestamp() if listing.created_at else float("-inf"),
        reverse=True,
    )


@dataclass(frozen=True)
class ListingFilter:
    """Optional filter for the primary listing fetch."""
    category_id: Optional[str] = None
    search: Optional[str] = None
    min_price: Optional[float] = None
    max_price: Optional[float] = None
    seller_id: Optional[str] = None

    def __post_init__(self):
        for name in ("min_price", "max_price"):
            value = getattr(self, name)
            if value is not None and value < 0:
                raise ValidationError(name, "must not be negative", value)
        if (
            self.min_price is not None
            and self.max_price is not None
            and self.min_price > self.max_price
        ):
            raise ValidationError("min_price", "must not exceed max_price", self.min_price)

    def matches(self, listing: Listing) -> bool:
        """Apply the filter to an already-cached listing."""
        if self.category_id and str(listing.raw.get("category_id")) != str(self.category_id):
            return False
        if self.seller_id and listing.seller_id != str(self.seller_id):
            return False
        if self.min_price is not None and (listing.price is None or listing.price < self.min_price):
            return False
        if self.max_price is not None and (listing.price is None or listing.price > self.max_price):
            return False
        if self.search:
            term = self.search.lower()
            haystack = f"{listing.title} {listing.description or ''}".lower()
            if term not in haystack:
                return False
        return True


@dataclass(frozen=True)
class ListingChange:
    """One realtime change-feed notification; payloads may be partial."""
    kind: ChangeKind
    record: Dict[str, Any] = field(default_factory=dict)
    old_record: Dict[str, Any] = field(default_factory=dict)

    @property
    def listing_id(self) -> Optional[str]:
        for source in (self.record, self.old_record):
            if source and source.get("id") is not None:
                return str(source["id"])
        return None

    @classmethod
    def from_payload(cls, data: Mapping[str, Any]) -> "ListingChange":
        """Build from a postgres_changes payload's `data` object."""
        kind = ChangeKind(str(data.get("type") or data.get("eventType", "")).upper())
        return cls(
            kind=kind,
            record=dict(data.get("record") or data.get("new") or {}),
            old_record=dict(data.get("old_record") or data.get("old") or {}),
        )


@dataclass(frozen=True)
class VisibilityAdvisory:
    """Sticky warning shown when the primary path hides rows the broad path sees."""
    active: bool = False
    note: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"active": self.active, "note": self.note}


@dataclass(frozen=True)
class VisibilityCounts:
    """Side-by-side counts for the three access paths; None when a probe failed."""
    primary: Optional[int] = None
    broad: Optional[int] = None
    raw: Optional[int] = None
    captured_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def discrepancy(self) -> bool:
        """Primary path sees fewer rows than the broad path.

        The raw count includes hidden and deleted rows, so it is shown for
        context only.
        """
        if self.primary is None or self.broad is None:
            return False
        return self.primary < self.broad

    def to_dict(self) -> Dict[str, Any]:
        return {
            "primary": self.primary,
            "broad": self.broad,
            "raw": self.raw,
            "discrepancy": self.discrepancy,
            "captured_at": self.captured_at.isoformat(),
        }
