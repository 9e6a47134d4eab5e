"""Push channel delivering per-test-case results over a WebSocket."""

import asyncio
import logging
from collections.abc import AsyncGenerator, Callable, Mapping
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

import aiohttp
from pydantic import BaseModel, ValidationError

from execution_tracker.models.payloads import (
    BulkResultsEvent,
    RawTestPayload,
    TestCaseResultEvent,
)
from execution_tracker.models.result import utc_now

log = logging.getLogger(__name__)

SUBSCRIBE_EVENT = "subscribe-request"
UNSUBSCRIBE_EVENT = "unsubscribe-request"
TEST_CASE_RESULT_EVENT = "test-case-result"
BULK_RESULTS_EVENT = "test-results"


class PushChannelConfig(BaseModel):
    """Connection settings of the push backend."""

    base_url: str
    websocket_path: str = "/ws"
    health_path: str = "/api/webhook/health"
    health_timeout: float = 8.0
    heartbeat: float = 30.0


@dataclass(frozen=True, kw_only=True)
class TestCaseEvent:
    """One test case result received for a subscribed request."""

    __test__ = False

    request_id: str
    test_case_id: str
    payload: RawTestPayload
    received_at: datetime = field(default_factory=utc_now)


type EventListener = Callable[[TestCaseEvent], None]


class Transport(Protocol):
    """Outbound side of the push connection."""

    async def send(self, message: Mapping[str, Any]) -> None:
        """Send one control message to the backend."""
        ...


@dataclass(frozen=True, kw_only=True)
class WebSocketTransport:
    """Transport sending JSON frames over an aiohttp WebSocket."""

    websocket: aiohttp.ClientWebSocketResponse

    async def send(self, message: Mapping[str, Any]) -> None:
        """Send a message as a JSON text frame."""
        await self.websocket.send_json(dict(message))


@dataclass(kw_only=True)
class PushChannel:
    """Registry of push subscriptions keyed by request id.

    Each request has at most one listener, installed by ``subscribe``. Other
    parties interested in the same request call ``observe`` and share the
    subscription; it is torn down once every holder has unsubscribed.
    Events are cached per request so a late subscriber receives results that
    arrived before it. Results for requests nobody holds are kept for at most
    ``pending_limit`` requests, oldest evicted first, and results arriving
    after a request was torn down are dropped.
    """

    transport: Transport
    pending_limit: int = 100
    _listeners: dict[str, EventListener] = field(default_factory=dict, init=False)
    _holders: dict[str, int] = field(default_factory=dict, init=False)
    _cache: dict[str, dict[str, TestCaseEvent]] = field(
        default_factory=dict, init=False
    )
    _released: dict[str, None] = field(default_factory=dict, init=False)

    @classmethod
    @asynccontextmanager
    async def connect(
        cls, config: PushChannelConfig
    ) -> AsyncGenerator["PushChannel", None]:
        """Open the WebSocket and dispatch inbound events until closed."""
        async with (
            aiohttp.ClientSession(base_url=config.base_url) as session,
            session.ws_connect(
                config.websocket_path, heartbeat=config.heartbeat
            ) as websocket,
        ):
            log.info("Connected to push backend at %s", config.base_url)
            channel = cls(transport=WebSocketTransport(websocket=websocket))
            reader = asyncio.create_task(channel.read(websocket))
            try:
                yield channel
            finally:
                reader.cancel()
                try:
                    await reader
                except asyncio.CancelledError:
                    pass

    async def read(self, websocket: aiohttp.ClientWebSocketResponse) -> None:
        """Dispatch every text frame received until the socket closes."""
        async for message in websocket:
            if message.type == aiohttp.WSMsgType.TEXT:
                try:
                    data = message.json()
                except ValueError:
                    log.warning("Dropping non-JSON push message: %.200s", message.data)
                    continue
                self.dispatch(data)
            elif message.type == aiohttp.WSMsgType.ERROR:
                log.error("Push connection failed: %s", websocket.exception())
                break
        log.info("Push connection closed")

    def is_subscribed(self, request_id: str) -> bool:
        """Whether a listener is installed for the request."""
        return request_id in self._listeners

    async def subscribe(self, request_id: str, listener: EventListener) -> bool:
        """Install the listener for a request and replay cached results.

        Returns:
            False when the request already has a listener, in which case
            nothing changes

        """
        if request_id in self._listeners:
            log.info("Request %s is already subscribed, ignoring", request_id)
            return False

        self._listeners[request_id] = listener
        self._released.pop(request_id, None)
        self._holders[request_id] = self._holders.get(request_id, 0) + 1
        await self.transport.send({"event": SUBSCRIBE_EVENT, "data": request_id})
        log.info("Subscribed to push results for request %s", request_id)

        existing = list(self._cache.get(request_id, {}).values())
        if existing:
            log.info(
                "Replaying %d existing result(s) for request %s",
                len(existing),
                request_id,
            )
        for event in existing:
            listener(event)
        return True

    def observe(self, request_id: str) -> list[TestCaseEvent]:
        """Share a request's subscription and return the results seen so far."""
        self._released.pop(request_id, None)
        self._holders[request_id] = self._holders.get(request_id, 0) + 1
        return list(self._cache.get(request_id, {}).values())

    async def unsubscribe(self, request_id: str) -> None:
        """Release one hold on a request, tearing it down on the last one."""
        holders = self._holders.get(request_id, 0)
        if holders == 0:
            log.debug("Request %s has no subscription to release", request_id)
            return
        if holders > 1:
            self._holders[request_id] = holders - 1
            return

        del self._holders[request_id]
        self._listeners.pop(request_id, None)
        self._cache.pop(request_id, None)
        self._released[request_id] = None
        while len(self._released) > self.pending_limit:
            del self._released[next(iter(self._released))]
        await self.transport.send({"event": UNSUBSCRIBE_EVENT, "data": request_id})
        log.info("Unsubscribed from push results for request %s", request_id)

    def dispatch(self, message: Mapping[str, Any]) -> None:
        """Route one inbound ``{"event": ..., "data": ...}`` message."""
        event = message.get("event")
        data = message.get("data")

        match event:
            case "test-case-result":
                self._handle_test_case_result(data)
            case "test-results":
                self._handle_bulk_results(data)
            case _:
                log.debug("Ignoring push event %r", event)

    def _handle_test_case_result(self, data: Any) -> None:
        try:
            result = TestCaseResultEvent.model_validate(data)
        except ValidationError as exc:
            log.warning("Dropping invalid test case result: %s", exc)
            return

        self._deliver(
            TestCaseEvent(
                request_id=result.request_id,
                test_case_id=result.test_case_id,
                payload=result.test_case,
            )
        )

    def _handle_bulk_results(self, data: Any) -> None:
        try:
            bulk = BulkResultsEvent.model_validate(data)
        except ValidationError as exc:
            log.warning("Dropping invalid bulk results: %s", exc)
            return

        log.info(
            "Processing %d bulk result(s) for request %s",
            len(bulk.results),
            bulk.request_id,
        )
        for entry in bulk.results:
            try:
                payload = RawTestPayload.model_validate(entry)
            except ValidationError as exc:
                log.warning("Dropping invalid bulk result entry: %s", exc)
                continue
            if not payload.id:
                log.debug("Dropping bulk result entry without id")
                continue
            self._deliver(
                TestCaseEvent(
                    request_id=bulk.request_id,
                    test_case_id=payload.id,
                    payload=payload,
                )
            )

    def _deliver(self, event: TestCaseEvent) -> None:
        if event.request_id not in self._holders:
            if event.request_id in self._released:
                log.debug("Dropping result for released request %s", event.request_id)
                return
            self._make_room(event.request_id)
        self._cache.setdefault(event.request_id, {})[event.test_case_id] = event

        listener = self._listeners.get(event.request_id)
        if listener is None:
            log.debug("No listener for request %s", event.request_id)
            return
        listener(event)

    def _make_room(self, request_id: str) -> None:
        if request_id in self._cache:
            return
        pending = [key for key in self._cache if key not in self._holders]
        excess = max(0, len(pending) - self.pending_limit + 1)
        for key in pending[:excess]:
            del self._cache[key]
