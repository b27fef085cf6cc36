"""
Reconciliation engine for the client listing cache.

Turns freshly fetched lists (or single records) into minimal cache
transitions, escalates to the broad read path when the primary path comes
back short, and maintains the sticky visibility advisory.

Every apply path checks `is_mounted()` first: responses that resolve after
the owning view is torn down are discarded.
"""
import asyncio
from datetime import datetime, timezone
from typing import Callable, List, Optional, Sequence, Tuple

from iskomarket.backend import BackendDataService
from iskomarket.cache import ListingCache
from iskomarket.config import ESCALATION_FEWER, SyncConfig, config
from iskomarket.events import EventBus, ListingEvent, events
from iskomarket.exceptions import BackendError
from iskomarket.models import (
    CountScope,
    Listing,
    VisibilityAdvisory,
    VisibilityCounts,
    listing_ids,
    newest_first,
)
from iskomarket.observability import Timer, get_logger, metrics
from iskomarket.resilience import CircuitOpenError

logger = get_logger(__name__)

FETCH_ERRORS = (BackendError, CircuitOpenError)


class Reconciler:
    """
    Merge policy and fetch escalation over a ListingCache.

    Usage:
        reconciler = Reconciler(backend, cache)
        await reconciler.refresh("poll")
    """

    def __init__(
        self,
        backend: BackendDataService,
        cache: ListingCache,
        sync_config: Optional[SyncConfig] = None,
        event_bus: Optional[EventBus] = None,
        is_mounted: Optional[Callable[[], bool]] = None,
    ):
        self.backend = backend
        self.cache = cache
        self.config = sync_config or config.sync
        self.events = event_bus or events
        self._is_mounted = is_mounted or (lambda: True)
        self._advisory = VisibilityAdvisory()
        self.last_refreshed_at: Optional[datetime] = None

    @property
    def advisory(self) -> VisibilityAdvisory:
        return self._advisory

    # ═══════════════════════════════════════════════════════════════════════════
    # FULL REFRESH
    # ═══════════════════════════════════════════════════════════════════════════

    async def _fetch_primary(self) -> Optional[List[Listing]]:
        metrics.increment("fetches")
        try:
            with Timer("fetch_primary", logger):
                return await self.backend.fetch_listings()
        except FETCH_ERRORS as e:
            metrics.increment("fetch_failures")
            logger.warning(f"Primary listing fetch failed: {e}")
            return None

    async def _fetch_broad(self) -> Optional[List[Listing]]:
        metrics.increment("fetches")
        try:
            with Timer("fetch_broad", logger):
                rows = await self.backend.fetch_listings_broad()
        except FETCH_ERRORS as e:
            metrics.increment("fetch_failures")
            logger.warning(f"Broad listing fetch failed: {e}")
            return None
        # The view and the raw-table fallback skip the marketplace filters
        return [listing for listing in rows if listing.is_marketplace_listing]

    async def _primary_is_short(self, primary: Sequence[Listing]) -> bool:
        """Compare the primary result against the broad count (fewer mode)."""
        try:
            broad_count = await self.backend.count_listings(CountScope.BROAD)
        except FETCH_ERRORS as e:
            logger.debug(f"Broad count probe failed: {e}")
            return False
        return len(primary) < broad_count

    def _resolve(
        self,
        primary: Optional[List[Listing]],
        broad: Optional[List[Listing]],
        escalated: bool,
    ) -> Tuple[List[Listing], Optional[bool]]:
        """
        Pick the rows to display and the new advisory state.

        Rows only the broad path returned are merged into the primary rows,
        so a capped broad read never shrinks a longer primary list.

        Returns:
            (rows, advisory_active) where advisory_active None means unchanged
        """
        if primary is None:
            return broad, None
        if broad is None:
            return primary, (None if escalated else False)

        hidden = listing_ids(broad) - listing_ids(primary)
        if hidden:
            logger.warning(
                f"Broad path returned {len(hidden)} listing(s) the primary path did not",
                extra={"hidden_ids": sorted(hidden)[:20]},
            )
            broad_only = [listing for listing in broad if listing.id in hidden]
            return newest_first(primary + broad_only), True
        return primary, False

    async def refresh(self, trigger: str = "poll", force: bool = False) -> bool:
        """
        Fetch the authoritative list and merge it into the cache.

        Never raises on fetch failure; a failed cycle leaves the cache as is.

        Args:
            trigger: What caused the refresh (for logs and events)
            force: Replace the cache even when the ID sets match

        Returns:
            True if fetched content was applied
        """
        primary = await self._fetch_primary()

        escalated = primary is None or not primary
        if not escalated and self.config.escalation == ESCALATION_FEWER:
            escalated = await self._primary_is_short(primary)

        broad = await self._fetch_broad() if escalated else None

        if not self._is_mounted():
            logger.debug(f"Discarding {trigger} refresh result after unmount")
            return False

        if primary is None and broad is None:
            await self.events.emit(ListingEvent.REFRESH_FAILED, {"trigger": trigger})
            return False

        self.last_refreshed_at = datetime.now(timezone.utc)
        rows, advisory_active = self._resolve(primary, broad, escalated)

        if force:
            self.cache.replace_all(rows)
            changed = True
        else:
            changed = self.cache.replace_if_changed(rows)

        if changed:
            metrics.increment("merges_applied")
            logger.debug(f"Cache replaced by {trigger} refresh ({len(rows)} listings)")
            await self.events.emit(ListingEvent.CACHE_REPLACED, {
                "trigger": trigger,
                "forced": force,
                "count": len(self.cache),
                "ids": [listing.id for listing in self.cache.snapshot],
            })
        else:
            metrics.increment("merges_skipped")

        if advisory_active is not None:
            await self.set_advisory(advisory_active)
        return True

    async def set_advisory(self, active: bool) -> None:
        if not self._is_mounted() or active == self._advisory.active:
            return
        if active:
            self._advisory = VisibilityAdvisory(active=True, note=self.config.advisory_note)
            logger.warning("Visibility advisory raised")
        else:
            self._advisory = VisibilityAdvisory()
            logger.info("Visibility advisory cleared")
        await self.events.emit(ListingEvent.ADVISORY_CHANGED, self._advisory.to_dict())

    # ═══════════════════════════════════════════════════════════════════════════
    # SINGLE-RECORD MERGES
    # ═══════════════════════════════════════════════════════════════════════════

    async def apply_insert(self, listing: Listing) -> bool:
        """Prepend a visible listing unless it is already cached."""
        if not self._is_mounted() or not listing.is_publicly_visible:
            return False
        if not self.cache.add(listing):
            logger.debug(f"Listing {listing.id} already cached, insert ignored")
            return False
        await self.events.emit(ListingEvent.LISTING_ADDED, {"listing": listing.to_dict()})
        return True

    async def apply_update(self, listing: Listing) -> bool:
        """
        Replace a listing by ID with its authoritative record.

        Unknown IDs are prepended when visible; records that stopped being
        visible are removed instead.
        """
        if not self._is_mounted():
            return False
        if not listing.is_publicly_visible:
            return await self.apply_removal(listing.id)

        replaced = self.cache.upsert(listing)
        event = ListingEvent.LISTING_UPDATED if replaced else ListingEvent.LISTING_ADDED
        await self.events.emit(event, {"listing": listing.to_dict()})
        return True

    async def apply_replace(self, listing: Listing) -> bool:
        """Replace an existing entry wholesale; unknown IDs are ignored."""
        if not self._is_mounted() or not self.cache.replace(listing):
            return False
        await self.events.emit(ListingEvent.LISTING_UPDATED, {"listing": listing.to_dict()})
        return True

    async def apply_removal(self, listing_id: str) -> bool:
        if not self._is_mounted() or not self.cache.remove(listing_id):
            return False
        await self.events.emit(ListingEvent.LISTING_REMOVED, {"listing_id": listing_id})
        return True

    # ═══════════════════════════════════════════════════════════════════════════
    # DIAGNOSTICS
    # ═══════════════════════════════════════════════════════════════════════════

    async def visibility_counts(self) -> VisibilityCounts:
        """Probe all three access paths; failed probes come back as None."""
        scopes = (CountScope.PRIMARY, CountScope.BROAD, CountScope.RAW)
        results = await asyncio.gather(
            *[self.backend.count_listings(scope) for scope in scopes],
            return_exceptions=True,
        )

        counts = {}
        for scope, result in zip(scopes, results):
            if isinstance(result, FETCH_ERRORS):
                logger.warning(f"Count probe for {scope.value} failed: {result}")
                counts[scope.value] = None
            elif isinstance(result, BaseException):
                raise result
            else:
                counts[scope.value] = result

        snapshot = VisibilityCounts(**counts)
        if snapshot.discrepancy:
            logger.warning(
                "Primary path sees fewer listings than the broad path",
                extra=snapshot.to_dict(),
            )
        return snapshot
