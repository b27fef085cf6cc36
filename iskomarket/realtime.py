"""
Realtime change feed client (Phoenix channel protocol over websockets).

Joins `realtime:{schema}:{table}` with a postgres_changes subscription and
turns every INSERT/UPDATE/DELETE notification into a ListingChange handed
to an async callback.

Delivery is at-least-once at best: notifications may arrive late, twice,
or never, and payloads may be partial. The channel does not reconnect;
consumers keep an independent polling path for correctness.

Usage:
    channel = RealtimeChannel(url, api_key, "products", on_change=handle)
    await channel.start()
    ...
    await channel.stop()
"""
import asyncio
import itertools
import json
from typing import Any, Awaitable, Callable, Dict, Optional, Set
from urllib.parse import urlencode

import websockets

from iskomarket.exceptions import SubscriptionError
from iskomarket.models import ListingChange
from iskomarket.observability import correlation_context, get_logger, metrics

logger = get_logger(__name__)

ChangeCallback = Callable[[ListingChange], Awaitable[None]]

PHOENIX_TOPIC = "phoenix"
PROTOCOL_VERSION = "1.0.0"


class RealtimeChannel:
    """Single-table change feed subscription."""

    def __init__(
        self,
        url: str,
        api_key: str,
        table: str,
        on_change: ChangeCallback,
        schema: str = "public",
        heartbeat_interval: float = 30.0,
        join_timeout: float = 10.0,
        connect: Optional[Callable[[str], Awaitable[Any]]] = None,
    ):
        self.url = url
        self.api_key = api_key
        self.table = table
        self.schema = schema
        self.on_change = on_change
        self.heartbeat_interval = heartbeat_interval
        self.join_timeout = join_timeout
        self._connect = connect or websockets.connect
        self._ws = None
        self._refs = itertools.count(1)
        self._reader_task: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._dispatch_tasks: Set[asyncio.Task] = set()
        self._closed = False

    @property
    def topic(self) -> str:
        return f"realtime:{self.schema}:{self.table}"

    @property
    def endpoint(self) -> str:
        query = urlencode({"apikey": self.api_key, "vsn": PROTOCOL_VERSION})
        return f"{self.url}?{query}"

    @property
    def is_open(self) -> bool:
        return self._ws is not None and not self._closed

    def _message(self, topic: str, event: str, payload: Dict[str, Any]) -> str:
        return json.dumps({
            "topic": topic,
            "event": event,
            "payload": payload,
            "ref": str(next(self._refs)),
        })

    async def start(self) -> None:
        """
        Connect and join the channel.

        Raises:
            SubscriptionError: connection failed or the join was not cleanly acknowledged
        """
        try:
            self._ws = await self._connect(self.endpoint)
        except (OSError, asyncio.TimeoutError, websockets.WebSocketException) as e:
            raise SubscriptionError("Realtime connection failed", details=str(e)) from e

        join = self._message(self.topic, "phx_join", {
            "config": {
                "broadcast": {"self": False},
                "presence": {"key": ""},
                "postgres_changes": [
                    {"event": "*", "schema": self.schema, "table": self.table},
                ],
            },
            "access_token": self.api_key,
        })
        join_ref = json.loads(join)["ref"]

        try:
            await self._ws.send(join)
            await asyncio.wait_for(self._await_join_reply(join_ref), self.join_timeout)
        except asyncio.TimeoutError as e:
            await self._close_socket()
            raise SubscriptionError(
                "Realtime join timed out", details=f"{self.join_timeout}s"
            ) from e
        except SubscriptionError:
            await self._close_socket()
            raise
        except (OSError, TypeError, ValueError, AttributeError, websockets.WebSocketException) as e:
            await self._close_socket()
            raise SubscriptionError("Realtime join failed", details=str(e)) from e

        self._reader_task = asyncio.create_task(self._read_loop())
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
        logger.info(f"Subscribed to {self.topic}")

    async def _await_join_reply(self, join_ref: str) -> None:
        while True:
            raw = await self._ws.recv()
            try:
                message = json.loads(raw)
            except (TypeError, ValueError) as e:
                raise SubscriptionError("Realtime join reply malformed", details=str(raw)[:200]) from e
            if not isinstance(message, dict):
                raise SubscriptionError("Realtime join reply malformed", details=str(raw)[:200])
            if message.get("event") != "phx_reply" or message.get("ref") != join_ref:
                continue
            payload = message.get("payload")
            if not isinstance(payload, dict):
                payload = {"response": payload}
            if payload.get("status") != "ok":
                raise SubscriptionError(
                    "Realtime join rejected",
                    details=json.dumps(payload.get("response"), default=str),
                )
            return

    async def _read_loop(self) -> None:
        try:
            async for raw in self._ws:
                try:
                    message = json.loads(raw)
                except (TypeError, ValueError):
                    logger.debug(f"Ignoring non-JSON realtime frame: {str(raw)[:100]}")
                    continue
                self._handle_message(message)
        except websockets.ConnectionClosed as e:
            if not self._closed:
                logger.warning(f"Realtime connection closed: {e}")
        except asyncio.CancelledError:
            raise
        finally:
            if not self._closed:
                logger.warning(f"Realtime reader for {self.topic} stopped; polling remains active")

    def _handle_message(self, message: Dict[str, Any]) -> None:
        event = message.get("event")
        payload = message.get("payload") or {}

        if event == "postgres_changes":
            data = payload.get("data") or {}
            try:
                change = ListingChange.from_payload(data)
            except ValueError:
                logger.debug(f"Ignoring unknown change type: {data.get('type')}")
                return
            metrics.increment("realtime_events")
            task = asyncio.create_task(self._dispatch(change))
            self._dispatch_tasks.add(task)
            task.add_done_callback(self._dispatch_tasks.discard)
        elif event == "system" and payload.get("status") == "error":
            logger.warning(f"Realtime system error on {self.topic}: {payload.get('message')}")
        elif event == "phx_error":
            logger.warning(f"Realtime channel error on {self.topic}")

    async def _dispatch(self, change: ListingChange) -> None:
        with correlation_context():
            try:
                await self.on_change(change)
            except Exception:
                logger.exception(f"Realtime handler failed for {change.kind.value} {change.listing_id}")

    async def _heartbeat_loop(self) -> None:
        while not self._closed:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                await self._ws.send(self._message(PHOENIX_TOPIC, "heartbeat", {}))
            except websockets.ConnectionClosed:
                return

    async def _close_socket(self) -> None:
        ws, self._ws = self._ws, None
        if ws is not None:
            try:
                await ws.close()
            except (OSError, websockets.WebSocketException) as e:
                logger.debug(f"Error closing realtime socket: {e}")

    async def stop(self) -> None:
        """Leave the channel and close the socket. Safe to call twice."""
        if self._closed:
            return
        self._closed = True

        if self._ws is not None:
            try:
                await self._ws.send(self._message(self.topic, "phx_leave", {}))
            except (OSError, websockets.WebSocketException) as e:
                logger.debug(f"Could not send phx_leave: {e}")

        tasks = [t for t in (self._reader_task, self._heartbeat_task) if t]
        tasks.extend(self._dispatch_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._dispatch_tasks.clear()

        await self._close_socket()
        logger.info(f"Unsubscribed from {self.topic}")
