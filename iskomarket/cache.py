"""
Client-side listing cache.

Ordered newest first, unique by listing ID. Membership reflects the most
recent successful reconciliation, not necessarily the backend's current
state. The snapshot is an immutable tuple; every mutation that changes
content swaps in a new tuple, and no-op merges keep the same object so
consumers can detect "nothing changed" by identity.
"""
from datetime import datetime, timezone
from typing import Iterable, List, Optional, Tuple

from iskomarket.models import Listing


def _dedupe(listings: Iterable[Listing]) -> Tuple[Listing, ...]:
    """Keep the first occurrence of each ID, preserving order."""
    seen = set()
    result: List[Listing] = []
    for listing in listings:
        if listing.id in seen:
            continue
        seen.add(listing.id)
        result.append(listing)
    return tuple(result)


class ListingCache:
    """Ordered, unique-by-ID listing store with a last-synced cursor."""

    def __init__(self, listings: Iterable[Listing] = ()):
        self._listings: Tuple[Listing, ...] = _dedupe(listings)
        self._last_synced_at: Optional[datetime] = None

    @property
    def snapshot(self) -> Tuple[Listing, ...]:
        return self._listings

    @property
    def last_synced_at(self) -> Optional[datetime]:
        """Display-only cursor; never used for correctness."""
        return self._last_synced_at

    def __len__(self) -> int:
        return len(self._listings)

    def __contains__(self, listing_id: object) -> bool:
        return any(listing.id == listing_id for listing in self._listings)

    def get(self, listing_id: str) -> Optional[Listing]:
        for listing in self._listings:
            if listing.id == listing_id:
                return listing
        return None

    def ids(self) -> set:
        return {listing.id for listing in self._listings}

    def touch(self) -> None:
        self._last_synced_at = datetime.now(timezone.utc)

    # ═══════════════════════════════════════════════════════════════════════════
    # MUTATIONS
    # ═══════════════════════════════════════════════════════════════════════════

    def replace_if_changed(self, fresh: Iterable[Listing]) -> bool:
        """
        Replace the whole cache when the fetched ID set differs.

        Identical ID sets (in any order) are a no-op: the snapshot object is
        kept and the cursor is not bumped. Field-level edits travel through
        upsert() instead.

        Returns:
            True if the cache was replaced
        """
        fresh = _dedupe(fresh)
        if {listing.id for listing in fresh} == self.ids():
            return False
        self._listings = fresh
        self.touch()
        return True

    def replace_all(self, fresh: Iterable[Listing]) -> None:
        """Unconditional replacement (manual refresh)."""
        self._listings = _dedupe(fresh)
        self.touch()

    def add(self, listing: Listing) -> bool:
        """Prepend a listing unless its ID is already cached."""
        if listing.id in self:
            return False
        self._listings = (listing,) + self._listings
        self.touch()
        return True

    def upsert(self, listing: Listing) -> bool:
        """
        Replace the entry with the same ID in place, or prepend it.

        Returns:
            True if an existing entry was replaced, False if prepended
        """
        if listing.id not in self:
            self._listings = (listing,) + self._listings
            self.touch()
            return False
        self._listings = tuple(
            listing if cached.id == listing.id else cached
            for cached in self._listings
        )
        self.touch()
        return True

    def replace(self, listing: Listing) -> bool:
        """Replace an existing entry wholesale; no-op for unknown IDs."""
        if listing.id not in self:
            return False
        return self.upsert(listing)

    def remove(self, listing_id: str) -> bool:
        if listing_id not in self:
            return False
        self._listings = tuple(
            cached for cached in self._listings if cached.id != listing_id
        )
        self.touch()
        return True
