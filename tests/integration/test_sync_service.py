"""
Integration tests for iskomarket/sync_service.py

Runs the full mount/poll/realtime/unmount lifecycle against real
APScheduler timers at sub-second intervals and an AsyncMock backend.
"""
import asyncio
import pytest

from iskomarket.events import ListingEvent
from iskomarket.exceptions import BackendConnectionError, SubscriptionError
from iskomarket.models import ChangeKind, ListingChange, RealtimeState
from iskomarket.observability import metrics
from iskomarket.scheduler import FAST_POLL_JOB, PERSISTENT_POLL_JOB
from iskomarket.sync_service import ListingSyncService


def ids(service: ListingSyncService):
    return [listing.id for listing in service.snapshot]


class TestMountUnmount:
    """Lifecycle and the timer cancellation contract."""

    @pytest.mark.asyncio
    async def test_mount_fetches_immediately(self, backend_factory, listings_factory, config_factory, bus):
        backend = backend_factory(primary=listings_factory("a", "b"))
        service = ListingSyncService(backend, app_config=config_factory(poll=60), event_bus=bus)

        await service.mount()
        try:
            assert ids(service) == ["a", "b"]
            assert service.last_synced_at is not None
            assert service.scheduler.has_job(PERSISTENT_POLL_JOB)
        finally:
            await service.unmount()

    @pytest.mark.asyncio
    async def test_persistent_poll_keeps_running(self, backend_factory, listings_factory, config_factory, bus):
        backend = backend_factory(primary=listings_factory("a"))
        service = ListingSyncService(backend, app_config=config_factory(realtime=False), event_bus=bus)

        await service.mount()
        try:
            backend.fetch_listings.return_value = listings_factory("a", "new")
            await asyncio.sleep(0.4)
            assert backend.fetch_listings.await_count >= 3
            assert ids(service) == ["a", "new"]
        finally:
            await service.unmount()

    @pytest.mark.asyncio
    async def test_timer_cleanup(self, backend_factory, listings_factory, config_factory, bus):
        """After unmount no callback fires, however many intervals pass."""
        backend = backend_factory(primary=listings_factory("a"))
        service = ListingSyncService(backend, app_config=config_factory(), event_bus=bus)

        await service.mount()
        await asyncio.sleep(0.3)
        await service.unmount()

        fetches = backend.fetch_listings.await_count
        merges = metrics.get("merges_applied") + metrics.get("merges_skipped")
        snapshot = service.snapshot
        backend.fetch_listings.return_value = listings_factory("x", "y")

        await asyncio.sleep(0.5)

        assert backend.fetch_listings.await_count == fetches
        assert metrics.get("merges_applied") + metrics.get("merges_skipped") == merges
        assert service.snapshot is snapshot
        assert not service.scheduler.is_running
        backend.unsubscribe.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_late_response_after_unmount_is_discarded(
        self, backend_factory, listings_factory, config_factory, bus
    ):
        backend = backend_factory(primary=listings_factory("a"))
        service = ListingSyncService(backend, app_config=config_factory(poll=60, realtime=False), event_bus=bus)
        await service.mount()

        async def slow_fetch(*args, **kwargs):
            await asyncio.sleep(0.1)
            return listings_factory("late")

        backend.fetch_listings.side_effect = slow_fetch
        pending = asyncio.create_task(service.poll("poll"))
        await asyncio.sleep(0.02)
        await service.unmount()

        assert await pending is False
        assert ids(service) == ["a"]

    @pytest.mark.asyncio
    async def test_mount_and_unmount_are_idempotent(self, backend_factory, config_factory, bus):
        backend = backend_factory()
        service = ListingSyncService(backend, app_config=config_factory(poll=60), event_bus=bus)

        await service.mount()
        await service.mount()
        await service.unmount()
        await service.unmount()

        assert backend.fetch_listings.await_count == 1
        backend.subscribe_listing_changes.assert_awaited_once()
        assert service.is_mounted() is False

    @pytest.mark.asyncio
    async def test_failed_initial_fetch_does_not_raise(self, backend_factory, config_factory, bus):
        backend = backend_factory()
        backend.fetch_listings.side_effect = BackendConnectionError("offline")
        backend.fetch_listings_broad.side_effect = BackendConnectionError("offline")
        service = ListingSyncService(backend, app_config=config_factory(poll=60), event_bus=bus)

        await service.mount()
        try:
            assert service.snapshot == ()
            assert service.is_mounted()
        finally:
            await service.unmount()


class TestRealtimeHealth:
    """Grace window, fast poll, and setup failure."""

    @pytest.mark.asyncio
    async def test_silent_feed_degrades_and_starts_fast_poll(self, backend_factory, config_factory, bus):
        backend = backend_factory()
        service = ListingSyncService(backend, app_config=config_factory(poll=60, grace=0.1), event_bus=bus)

        await service.mount()
        try:
            assert service.realtime_state == RealtimeState.SUBSCRIBING
            await asyncio.sleep(0.3)
            assert service.realtime_state == RealtimeState.DEGRADED
            assert service.scheduler.has_job(FAST_POLL_JOB)
            assert backend.fetch_listings.await_count >= 2
        finally:
            await service.unmount()

    @pytest.mark.asyncio
    async def test_first_event_stops_fast_poll(self, backend_factory, config_factory, bus):
        backend = backend_factory()
        service = ListingSyncService(backend, app_config=config_factory(poll=60, grace=0.05), event_bus=bus)

        await service.mount()
        try:
            await asyncio.sleep(0.2)
            assert service.scheduler.has_job(FAST_POLL_JOB)

            _, _, on_delete = backend.subscribe_listing_changes.call_args.args
            await on_delete(ListingChange(kind=ChangeKind.DELETE, old_record={"id": "x"}))

            assert service.realtime_state == RealtimeState.HEALTHY
            assert not service.scheduler.has_job(FAST_POLL_JOB)
        finally:
            await service.unmount()

    @pytest.mark.asyncio
    async def test_subscription_failure_starts_fast_poll(self, backend_factory, config_factory, bus):
        backend = backend_factory()
        backend.subscribe_listing_changes.side_effect = SubscriptionError("join timed out")
        service = ListingSyncService(backend, app_config=config_factory(poll=60, grace=10), event_bus=bus)

        await service.mount()
        try:
            assert service.realtime_state == RealtimeState.DEGRADED
            assert service.scheduler.has_job(FAST_POLL_JOB)
        finally:
            await service.unmount()

    @pytest.mark.asyncio
    async def test_unexpected_subscription_error_does_not_break_mount(
        self, backend_factory, listings_factory, config_factory, bus
    ):
        backend = backend_factory(primary=listings_factory("a"))
        backend.subscribe_listing_changes.side_effect = ValueError("Expecting value: line 1 column 1")
        service = ListingSyncService(backend, app_config=config_factory(poll=60, grace=10), event_bus=bus)

        await service.mount()
        try:
            assert service.is_mounted()
            assert ids(service) == ["a"]
            assert service.realtime_state == RealtimeState.DEGRADED
            assert service.scheduler.has_job(FAST_POLL_JOB)
        finally:
            await service.unmount()

    @pytest.mark.asyncio
    async def test_realtime_disabled(self, backend_factory, config_factory, bus):
        backend = backend_factory()
        service = ListingSyncService(backend, app_config=config_factory(poll=60, realtime=False), event_bus=bus)

        await service.mount()
        try:
            backend.subscribe_listing_changes.assert_not_awaited()
            assert service.realtime_state == RealtimeState.DEGRADED
            assert not service.scheduler.has_job(FAST_POLL_JOB)
        finally:
            await service.unmount()


class TestRealtimeChanges:
    """Change notifications flowing through the running service."""

    @pytest.mark.asyncio
    async def test_erroneous_delete_is_restored_by_refresh(
        self, backend_factory, listings_factory, config_factory, bus
    ):
        """A delete for a listing the backend still serves is undone by the follow-up fetch."""
        backend = backend_factory(primary=listings_factory("a", "b", "p7"))
        service = ListingSyncService(backend, app_config=config_factory(poll=60, grace=10), event_bus=bus)
        removed = []

        @bus.on(ListingEvent.LISTING_REMOVED)
        async def on_removed(data: dict):
            removed.append(data["listing_id"])

        await service.mount()
        try:
            fetches = backend.fetch_listings.await_count
            _, _, on_delete = backend.subscribe_listing_changes.call_args.args

            await on_delete(ListingChange(kind=ChangeKind.DELETE, old_record={"id": "p7"}))

            assert removed == ["p7"]
            assert backend.fetch_listings.await_count == fetches + 1
            assert ids(service) == ["a", "b", "p7"]
        finally:
            await service.unmount()


class TestUserActions:
    """Manual refresh, diagnostics, and optimistic mutations."""

    @pytest.mark.asyncio
    async def test_manual_refresh_picks_up_edits(
        self, backend_factory, listings_factory, listing_factory, config_factory, bus
    ):
        backend = backend_factory(primary=listings_factory("a"))
        service = ListingSyncService(backend, app_config=config_factory(poll=60, realtime=False), event_bus=bus)
        await service.mount()
        try:
            backend.fetch_listings.return_value = [listing_factory("a", title="Edited")]

            assert await service.manual_refresh() is True
            assert service.snapshot[0].title == "Edited"
        finally:
            await service.unmount()

    @pytest.mark.asyncio
    async def test_manual_refresh_failure_keeps_cache(
        self, backend_factory, listings_factory, config_factory, bus
    ):
        backend = backend_factory(primary=listings_factory("a"))
        service = ListingSyncService(backend, app_config=config_factory(poll=60, realtime=False), event_bus=bus)
        await service.mount()
        try:
            backend.fetch_listings.side_effect = BackendConnectionError("offline")
            backend.fetch_listings_broad.side_effect = BackendConnectionError("offline")

            assert await service.manual_refresh() is False
            assert ids(service) == ["a"]
        finally:
            await service.unmount()

    @pytest.mark.asyncio
    async def test_optimistic_removal_is_reconciled(
        self, backend_factory, listings_factory, config_factory, bus
    ):
        """A removal the backend never applied is restored by the next fetch."""
        backend = backend_factory(primary=listings_factory("a", "b"))
        service = ListingSyncService(backend, app_config=config_factory(poll=60, realtime=False), event_bus=bus)
        await service.mount()
        try:
            assert await service.apply_local_removal("b") is True
            assert ids(service) == ["a"]

            await asyncio.sleep(0.2)
            assert sorted(ids(service)) == ["a", "b"]
        finally:
            await service.unmount()

    @pytest.mark.asyncio
    async def test_optimistic_insert_and_edit(
        self, backend_factory, listings_factory, listing_factory, config_factory, bus
    ):
        backend = backend_factory(primary=listings_factory("a"))
        service = ListingSyncService(backend, app_config=config_factory(poll=60, realtime=False), event_bus=bus)
        await service.mount()
        try:
            backend.fetch_listings.return_value = listings_factory("new", "a")
            assert await service.apply_local_insert(listing_factory("new")) is True
            assert ids(service) == ["new", "a"]

            assert await service.apply_local_edit(listing_factory("a", price=5.0)) is True
            assert service.cache.get("a").price == 5.0
            assert await service.apply_local_edit(listing_factory("ghost")) is False
        finally:
            await service.unmount()

    @pytest.mark.asyncio
    async def test_mutations_ignored_when_unmounted(self, backend_factory, listing_factory, config_factory, bus):
        service = ListingSyncService(backend_factory(), app_config=config_factory(), event_bus=bus)
        assert await service.apply_local_insert(listing_factory("a")) is False
        assert await service.manual_refresh() is False
        assert service.snapshot == ()

    @pytest.mark.asyncio
    async def test_status(self, backend_factory, listings_factory, config_factory, bus):
        backend = backend_factory(primary=listings_factory("a"))
        service = ListingSyncService(backend, app_config=config_factory(poll=60), event_bus=bus)
        await service.mount()
        try:
            status = service.get_status()
            assert status["mounted"] is True
            assert status["listing_count"] == 1
            assert status["advisory"] == {"active": False, "note": None}
            assert status["realtime"]["state"] == "subscribing"
            assert status["last_refreshed_at"] is not None
            assert any(job["id"] == PERSISTENT_POLL_JOB for job in status["jobs"])
            assert status["metrics"]["counters"]["fetches"] >= 1
            assert status["recent_events"][-1]["event_type"] == "listings.replaced"
        finally:
            await service.unmount()
