"""
Realtime change listener.

Converts change-feed notifications into minimal cache updates and tracks
subscription health as a small state machine:

    SUBSCRIBING --event--> HEALTHY
    SUBSCRIBING --grace window elapses--> DEGRADED (fast poll on)
    SUBSCRIBING --setup failure--> DEGRADED (fast poll on)
    DEGRADED --event--> HEALTHY (fast poll off)

The feed is treated as a hint: single records are re-fetched before they
are shown, and any doubt falls back to a full refresh.
"""
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from iskomarket.backend import BackendDataService, Unsubscribe
from iskomarket.events import EventBus, ListingEvent, events
from iskomarket.exceptions import ListingNotFoundError, PartialRecordError
from iskomarket.models import ListingChange, RealtimeState, is_publicly_visible
from iskomarket.observability import get_logger
from iskomarket.reconciler import FETCH_ERRORS, Reconciler
from iskomarket.scheduler import REALTIME_GRACE_JOB, PollingScheduler

logger = get_logger(__name__)

RefreshCallback = Callable[[str], Awaitable[bool]]


class RealtimeListener:
    """Owns the change-feed subscription and its health state."""

    def __init__(
        self,
        backend: BackendDataService,
        reconciler: Reconciler,
        scheduler: PollingScheduler,
        refresh: RefreshCallback,
        grace_seconds: float = 5.0,
        event_bus: Optional[EventBus] = None,
        is_mounted: Optional[Callable[[], bool]] = None,
    ):
        self.backend = backend
        self.reconciler = reconciler
        self.scheduler = scheduler
        self.refresh = refresh
        self.grace_seconds = grace_seconds
        self.events = event_bus or events
        self._is_mounted = is_mounted or (lambda: True)
        self._state = RealtimeState.SUBSCRIBING
        self._unsubscribe: Optional[Unsubscribe] = None
        self.last_event_at: Optional[datetime] = None

    @property
    def state(self) -> RealtimeState:
        return self._state

    async def _set_state(self, state: RealtimeState, reason: str = "") -> None:
        if state == self._state:
            return
        previous, self._state = self._state, state
        logger.info(f"Realtime {previous.value} -> {state.value}" + (f" ({reason})" if reason else ""))
        if self._is_mounted():
            await self.events.emit(ListingEvent.REALTIME_STATE_CHANGED, {
                "previous": previous.value,
                "state": state.value,
                "reason": reason,
            })

    # ═══════════════════════════════════════════════════════════════════════════
    # LIFECYCLE
    # ═══════════════════════════════════════════════════════════════════════════

    async def start(self) -> None:
        """Subscribe and arm the grace timer. Setup failure is not raised."""
        self._state = RealtimeState.SUBSCRIBING
        try:
            self._unsubscribe = await self.backend.subscribe_listing_changes(
                self.handle_insert, self.handle_update, self.handle_delete
            )
        except FETCH_ERRORS as e:
            logger.warning(f"Realtime subscription failed, falling back to polling: {e}")
            await self._degrade("subscription failed")
            return
        except Exception as e:
            logger.exception(f"Unexpected realtime subscription error, falling back to polling: {e}")
            await self._degrade("subscription failed")
            return

        if not self._is_mounted():
            await self.stop()
            return
        self.scheduler.run_once(
            REALTIME_GRACE_JOB,
            self._on_grace_expired,
            delay=self.grace_seconds,
            description="Realtime health grace window",
        )

    async def disable(self) -> None:
        """Run without a change feed; the persistent poll alone keeps the cache correct."""
        logger.info("Realtime disabled, relying on polling")
        await self._set_state(RealtimeState.DEGRADED, "disabled")

    async def stop(self) -> None:
        self.scheduler.cancel(REALTIME_GRACE_JOB)
        unsubscribe, self._unsubscribe = self._unsubscribe, None
        if unsubscribe is not None:
            await unsubscribe()

    async def _degrade(self, reason: str) -> None:
        if not self._is_mounted():
            return
        await self._set_state(RealtimeState.DEGRADED, reason)
        self.scheduler.start_fast_poll()

    async def _on_grace_expired(self) -> None:
        if self._state == RealtimeState.SUBSCRIBING:
            await self._degrade(f"no event within {self.grace_seconds}s")

    async def _record_event(self) -> None:
        self.last_event_at = datetime.now(timezone.utc)
        self.scheduler.cancel(REALTIME_GRACE_JOB)
        self.scheduler.stop_fast_poll()
        await self._set_state(RealtimeState.HEALTHY, "event received")

    # ═══════════════════════════════════════════════════════════════════════════
    # CHANGE HANDLERS
    # ═══════════════════════════════════════════════════════════════════════════

    async def handle_insert(self, change: ListingChange) -> None:
        if not self._is_mounted():
            return
        await self._record_event()

        listing_id = change.listing_id
        if listing_id is None or not is_publicly_visible(change.record):
            logger.debug(f"Ignoring insert for non-visible listing {listing_id}")
            return

        if listing_id in self.reconciler.cache:
            logger.debug(f"Duplicate insert for {listing_id} ignored")
            return

        try:
            listing = await self.backend.fetch_listing_by_id(listing_id)
        except FETCH_ERRORS as e:
            self._log_single_failure("insert", listing_id, e)
            await self.refresh("realtime_insert")
            return

        await self.reconciler.apply_insert(listing)

    async def handle_update(self, change: ListingChange) -> None:
        if not self._is_mounted():
            return
        await self._record_event()

        listing_id = change.listing_id
        if listing_id is None:
            await self.refresh("realtime_update")
            return

        try:
            listing = await self.backend.fetch_listing_by_id(listing_id)
        except ListingNotFoundError:
            # Hidden or deleted rows are no longer readable on the public path
            logger.debug(f"Updated listing {listing_id} no longer readable, removing")
            await self.reconciler.apply_removal(listing_id)
            await self.refresh("realtime_update")
            return
        except FETCH_ERRORS as e:
            self._log_single_failure("update", listing_id, e)
            await self.refresh("realtime_update")
            return

        await self.reconciler.apply_update(listing)

    async def handle_delete(self, change: ListingChange) -> None:
        if not self._is_mounted():
            return
        await self._record_event()

        listing_id = change.listing_id
        if listing_id is not None:
            await self.reconciler.apply_removal(listing_id)
        await self.refresh("realtime_delete")

    @staticmethod
    def _log_single_failure(kind: str, listing_id: str, error: Exception) -> None:
        if isinstance(error, PartialRecordError):
            logger.warning(f"Listing {listing_id} came back without seller data, refreshing list")
        else:
            logger.warning(f"Single fetch for {kind} of {listing_id} failed, refreshing list: {error}")
