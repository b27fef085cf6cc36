"""
Listing sync service: the coordinating component for one mounted view.

Owns the listing cache and wires together the reconciliation engine, the
realtime listener and the polling scheduler.

Lifecycle:
    service = ListingSyncService(backend)
    await service.mount()      # immediate fetch, persistent poll, realtime
    service.snapshot           # read-only tuple, newest first
    await service.unmount()    # all timers cleared, channel closed

After unmount no late response may touch state: every apply path checks
the mounted flag.
"""
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from iskomarket.backend import BackendDataService, get_backend
from iskomarket.cache import ListingCache
from iskomarket.config import AppConfig, config
from iskomarket.events import EventBus, events
from iskomarket.listener import RealtimeListener
from iskomarket.models import Listing, RealtimeState, VisibilityAdvisory, VisibilityCounts
from iskomarket.observability import correlation_context, get_logger, metrics
from iskomarket.reconciler import Reconciler
from iskomarket.scheduler import RECONCILE_JOB, PollingScheduler

logger = get_logger(__name__)


class ListingSyncService:
    """
    Keeps a client-side listing cache eventually consistent with the backend.

    Features:
    - Immediate fetch on mount, then an unconditional interval poll
    - Realtime change feed as a fast path with a health state machine
    - Fast poll while realtime health is unconfirmed
    - Broad-path escalation with a sticky visibility advisory
    - Optimistic local mutations reconciled by the next fetch
    """

    def __init__(
        self,
        backend: BackendDataService,
        app_config: Optional[AppConfig] = None,
        event_bus: Optional[EventBus] = None,
    ):
        self.backend = backend
        self.config = app_config or config
        self.events = event_bus or events
        self._mounted = False
        self._mounted_at: Optional[datetime] = None

        self.cache = ListingCache()
        self.reconciler = Reconciler(
            backend,
            self.cache,
            sync_config=self.config.sync,
            event_bus=self.events,
            is_mounted=self.is_mounted,
        )
        self.scheduler = PollingScheduler(
            on_poll=self.poll,
            poll_interval=self.config.sync.poll_interval_seconds,
            fast_poll_interval=self.config.sync.fast_poll_interval_seconds,
        )
        self.listener = RealtimeListener(
            backend,
            self.reconciler,
            self.scheduler,
            refresh=self.poll,
            grace_seconds=self.config.sync.realtime_grace_seconds,
            event_bus=self.events,
            is_mounted=self.is_mounted,
        )

    def is_mounted(self) -> bool:
        return self._mounted

    # ═══════════════════════════════════════════════════════════════════════════
    # LIFECYCLE
    # ═══════════════════════════════════════════════════════════════════════════

    async def mount(self) -> None:
        """Start syncing. Safe to call twice."""
        if self._mounted:
            logger.warning("Listing sync already mounted")
            return
        self._mounted = True
        self._mounted_at = datetime.now()

        with correlation_context():
            logger.info("Mounting listing sync")
            await self.reconciler.refresh("mount")

        if not self._mounted:
            return
        self.scheduler.start()

        if self.config.realtime.enabled:
            await self.listener.start()
        else:
            await self.listener.disable()

    async def unmount(self) -> None:
        """Stop every timer and the change feed. Safe to call twice."""
        if not self._mounted:
            return
        self._mounted = False
        self.scheduler.shutdown()
        await self.listener.stop()
        logger.info("Listing sync unmounted")

    async def poll(self, trigger: str = "poll") -> bool:
        """One refresh cycle under its own correlation ID."""
        if not self._mounted:
            return False
        with correlation_context():
            return await self.reconciler.refresh(trigger)

    # ═══════════════════════════════════════════════════════════════════════════
    # READ SURFACE
    # ═══════════════════════════════════════════════════════════════════════════

    @property
    def snapshot(self) -> Tuple[Listing, ...]:
        return self.cache.snapshot

    @property
    def advisory(self) -> VisibilityAdvisory:
        return self.reconciler.advisory

    @property
    def last_synced_at(self) -> Optional[datetime]:
        return self.cache.last_synced_at

    @property
    def realtime_state(self) -> RealtimeState:
        return self.listener.state

    def get_status(self) -> Dict[str, Any]:
        """Current sync state for diagnostics and health checks."""
        return {
            "mounted": self._mounted,
            "mounted_at": self._mounted_at.isoformat() if self._mounted_at else None,
            "listing_count": len(self.cache),
            "last_synced_at": self.last_synced_at.isoformat() if self.last_synced_at else None,
            "last_refreshed_at": (
                self.reconciler.last_refreshed_at.isoformat()
                if self.reconciler.last_refreshed_at else None
            ),
            "advisory": self.advisory.to_dict(),
            "realtime": {
                "state": self.realtime_state.value,
                "last_event_at": (
                    self.listener.last_event_at.isoformat()
                    if self.listener.last_event_at else None
                ),
            },
            "escalation": self.config.sync.escalation,
            "jobs": self.scheduler.get_jobs(),
            "recent_events": self.events.get_history(limit=10),
            "metrics": metrics.get_stats(),
        }

    # ═══════════════════════════════════════════════════════════════════════════
    # USER ACTIONS
    # ═══════════════════════════════════════════════════════════════════════════

    async def manual_refresh(self) -> bool:
        """
        Forced re-fetch outside the poll interval.

        Replaces the cache even when the ID set is unchanged so edited fields
        show up. Returns False when every fetch path failed.
        """
        if not self._mounted:
            return False
        with correlation_context():
            logger.info("Manual refresh requested")
            return await self.reconciler.refresh("manual", force=True)

    async def visibility_counts(self) -> VisibilityCounts:
        """Diagnostic counts for the three access paths; never touches the cache."""
        with correlation_context():
            return await self.reconciler.visibility_counts()

    # ═══════════════════════════════════════════════════════════════════════════
    # OPTIMISTIC MUTATIONS
    # ═══════════════════════════════════════════════════════════════════════════

    def _schedule_reconcile(self, trigger: str) -> None:
        self.scheduler.run_once(
            RECONCILE_JOB,
            self.poll,
            args=[trigger],
            description="Reconcile after a local mutation",
        )

    async def apply_local_insert(self, listing: Listing) -> bool:
        """Show a just-posted listing before the backend confirms it."""
        applied = await self.reconciler.apply_insert(listing)
        if applied:
            self._schedule_reconcile("local_insert")
        return applied

    async def apply_local_edit(self, listing: Listing) -> bool:
        """Replace a cached listing wholesale with an edited copy."""
        return await self.reconciler.apply_replace(listing)

    async def apply_local_removal(self, listing_id: str) -> bool:
        """Drop a listing eagerly; the next fetch confirms or restores it."""
        removed = await self.reconciler.apply_removal(listing_id)
        if removed:
            self._schedule_reconcile("local_removal")
        return removed


# ═══════════════════════════════════════════════════════════════════════════════
# SINGLETON INSTANCE
# ═══════════════════════════════════════════════════════════════════════════════

_sync_service: Optional[ListingSyncService] = None


def get_sync_service() -> ListingSyncService:
    """Get the singleton sync service over the default backend."""
    global _sync_service
    if _sync_service is None:
        _sync_service = ListingSyncService(get_backend())
    return _sync_service


async def shutdown_sync_service() -> None:
    global _sync_service
    if _sync_service is not None:
        await _sync_service.unmount()
        _sync_service = None
