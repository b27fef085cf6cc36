"""
Integration tests for iskomarket/events.py

Tests the publish/subscribe bus that carries listing cache changes.
"""
import pytest
from typing import Any, Dict, List

from iskomarket.events import Event, EventBus, EventMetadata, ListingEvent
from iskomarket.observability import correlation_context


class TestEventBus:
    """Tests for EventBus class."""

    def setup_method(self):
        self.bus = EventBus()

    @pytest.mark.asyncio
    async def test_emit_with_no_handlers(self):
        event = await self.bus.emit(ListingEvent.CACHE_REPLACED, {"count": 0})
        assert event.type == ListingEvent.CACHE_REPLACED
        assert event.data["count"] == 0

    @pytest.mark.asyncio
    async def test_subscribe_and_receive(self):
        received: List[Dict[str, Any]] = []

        @self.bus.on(ListingEvent.LISTING_ADDED)
        async def handler(data: dict):
            received.append(data)

        await self.bus.emit(ListingEvent.LISTING_ADDED, {"listing": {"id": "p1"}})
        await self.bus.emit(ListingEvent.LISTING_REMOVED, {"listing_id": "p1"})

        assert received == [{"listing": {"id": "p1"}}]

    @pytest.mark.asyncio
    async def test_wildcard_handler(self):
        received = []

        @self.bus.on()
        async def wildcard(data: dict):
            received.append(data)

        await self.bus.emit(ListingEvent.CACHE_REPLACED, {})
        await self.bus.emit(ListingEvent.ADVISORY_CHANGED, {"active": True})

        assert len(received) == 2

    @pytest.mark.asyncio
    async def test_handler_isolation(self):
        """A failing handler doesn't affect the others."""
        results = []

        @self.bus.on(ListingEvent.LISTING_REMOVED)
        async def failing(data: dict):
            raise ValueError("boom")

        @self.bus.on(ListingEvent.LISTING_REMOVED)
        async def working(data: dict):
            results.append("ok")

        await self.bus.emit(ListingEvent.LISTING_REMOVED, {})
        assert results == ["ok"]

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        received = []

        async def handler(data: dict):
            received.append(data)

        self.bus.subscribe(None, handler)
        await self.bus.emit(ListingEvent.CACHE_REPLACED, {})
        assert self.bus.unsubscribe(None, handler) is True
        assert self.bus.unsubscribe(None, handler) is False
        await self.bus.emit(ListingEvent.CACHE_REPLACED, {})

        assert len(received) == 1

    @pytest.mark.asyncio
    async def test_history_filter_and_limit(self):
        bus = EventBus(max_history=3)
        for i in range(5):
            await bus.emit(ListingEvent.CACHE_REPLACED, {"n": i})
        await bus.emit(ListingEvent.REFRESH_FAILED, {"trigger": "poll"})

        history = bus.get_history()
        assert len(history) == 3
        assert history[-1]["event_type"] == "listings.refresh_failed"

        replaced = bus.get_history(event_type=ListingEvent.CACHE_REPLACED)
        assert [e["data"]["n"] for e in replaced] == [3, 4]

    def test_clear_handlers(self):
        @self.bus.on(ListingEvent.LISTING_ADDED)
        async def handler(data):
            pass

        self.bus.clear_handlers()
        assert self.bus._handlers == {}


class TestEvent:
    """Tests for Event serialization."""

    def test_event_to_dict(self):
        event = Event(type=ListingEvent.ADVISORY_CHANGED, data={"active": True})
        d = event.to_dict()

        assert d["event_type"] == "listings.advisory_changed"
        assert d["data"] == {"active": True}
        assert d["metadata"]["source"] == "listing_sync"
        assert "timestamp" in d["metadata"]

    def test_metadata_picks_up_correlation_id(self):
        with correlation_context("abc12345"):
            metadata = EventMetadata()
        assert metadata.correlation_id == "abc12345"
        assert EventMetadata().correlation_id is None
