"""
Upstream relay for Solana websocket subscriptions.

Holds one long-lived connection to the upstream streaming RPC endpoint
(Helius) on behalf of every local client. Subscribe requests are re-tagged
with relay-minted ids so they can be replayed after a reconnect. Other
requests that carry an id are tagged from the same counter and get their
original id back on the reply, so no two in-flight requests share an id
upstream. Upstream messages are routed back to the clients that asked for them.

Everything runs on the event loop: handlers never await between checking the
upstream state and acting on it, so no locks are needed.
"""
import asyncio
import json
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional, Set, Tuple

import websockets
from pydantic import ValidationError
from websockets.exceptions import ConnectionClosed

from .models import (
    INVALID_REQUEST,
    PARSE_ERROR,
    UPSTREAM_UNAVAILABLE,
    RelayStatus,
    RpcRequest,
    error_response,
    is_notification,
    is_subscribe_method,
    is_unsubscribe_method,
)
from .registry import SubscriptionRegistry

logger = logging.getLogger(__name__)

STATE_ABSENT = "absent"
STATE_CONNECTING = "connecting"
STATE_OPEN = "open"


async def open_upstream(url: str):
    """Default connector: a websockets client connection to the upstream."""
    return await websockets.connect(
        url,
        ping_interval=30,
        ping_timeout=10,
        max_size=None,  # block and program notifications can be large
    )


def redact_url(url: str) -> str:
    """Strip the query string so the api key never reaches the logs."""
    return url.split("?", 1)[0]


class UpstreamRelay:
    def __init__(
        self,
        url: str,
        registry: Optional[SubscriptionRegistry] = None,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        max_attempts: int = 5,
        connector: Optional[Callable[[str], Awaitable[Any]]] = None,
    ):
        self.url = url
        self.registry = registry if registry is not None else SubscriptionRegistry()
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.max_attempts = max_attempts
        self._connector = connector or open_upstream

        self._ws = None
        self._connecting = False
        self._stopping = False
        self._listener: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()

        # Relay-minted id of a forwarded request -> (client, id the client used)
        self._pending: Dict[int, Tuple[Any, Any]] = {}

        self.attempts = 0
        self.exhausted = False
        self.next_reconnect_delay: Optional[float] = None

        # Stats
        self.messages_in = 0
        self.messages_out = 0
        self.reconnects = 0
        self.last_connected_at: Optional[datetime] = None

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    @property
    def state(self) -> str:
        if self._ws is not None:
            return STATE_OPEN
        if self._connecting:
            return STATE_CONNECTING
        return STATE_ABSENT

    @property
    def is_open(self) -> bool:
        return self._ws is not None

    async def start(self):
        """Start the first upstream connection attempt in the background."""
        self._stopping = False
        logger.info(f"[Relay] Starting upstream relay to {redact_url(self.url)}")
        self._spawn(self.connect())

    async def stop(self):
        """Stop reconnecting and close the upstream connection."""
        self._stopping = True
        tasks = list(self._tasks)
        for task in (self._reconnect_task, self._listener):
            if task is not None and task not in tasks:
                tasks.append(task)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._reconnect_task = None
        self._listener = None

        ws, self._ws = self._ws, None
        if ws is not None:
            try:
                await ws.close()
            except Exception as e:
                logger.debug(f"[Relay] Error closing upstream: {e}")
        self._pending.clear()
        logger.info("[Relay] Upstream relay stopped")

    async def connect(self):
        """
        Open the upstream connection.

        No-op while an attempt is in flight or a connection is already open.
        On success the reconnect counter is reset and every registered
        subscription is replayed under its existing registry id. On failure
        a backoff reconnect is scheduled.
        """
        if self._connecting or self._ws is not None or self._stopping:
            return

        self._connecting = True
        try:
            ws = await self._connector(self.url)
        except Exception as e:
            logger.warning(f"[Relay] Upstream connection failed: {e}")
            self._schedule_reconnect()
            return
        finally:
            self._connecting = False

        if self._stopping:
            await ws.close()
            return

        if self.last_connected_at is not None:
            self.reconnects += 1
        self._ws = ws
        self.attempts = 0
        self.exhausted = False
        self.next_reconnect_delay = None
        self.last_connected_at = datetime.utcnow()
        self._cancel_reconnect()
        logger.info(f"[Relay] Connected to upstream ({len(self.registry)} subscriptions to replay)")

        self._listener = asyncio.create_task(self._listen(ws))
        await self._replay(ws)

    def request_reconnect(self):
        """Out-of-band connection attempt, used when a client finds the upstream down."""
        if self._stopping or self._connecting or self._ws is not None:
            return
        logger.info("[Relay] Client request while upstream unavailable, reconnecting now")
        self._spawn(self.connect())

    def backoff_delay(self, attempt: int) -> float:
        """Delay before reconnect attempt number `attempt` (0-based)."""
        return min(self.base_delay * (2 ** attempt), self.max_delay)

    def _schedule_reconnect(self):
        if self._stopping:
            return
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return

        if self.attempts >= self.max_attempts:
            if not self.exhausted:
                logger.error(
                    f"[Relay] Giving up on upstream after {self.attempts} reconnect attempts; "
                    f"new subscriptions will fail until restart"
                )
            self.exhausted = True
            self.next_reconnect_delay = None
            return

        delay = self.backoff_delay(self.attempts)
        self.attempts += 1
        self.next_reconnect_delay = delay
        logger.warning(
            f"[Relay] Reconnecting to upstream in {delay:.1f}s "
            f"(attempt {self.attempts}/{self.max_attempts})"
        )
        self._reconnect_task = self._spawn(self._reconnect_after(delay))

    async def _reconnect_after(self, delay: float):
        await asyncio.sleep(delay)
        self._reconnect_task = None
        await self.connect()

    def _cancel_reconnect(self):
        task, self._reconnect_task = self._reconnect_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # =========================================================================
    # UPSTREAM -> CLIENTS
    # =========================================================================

    async def _replay(self, ws):
        # Snapshot before the first await; anything registered while we replay
        # was already sent by its own handler.
        entries = list(self.registry.entries())
        for sub in entries:
            if sub.id not in self.registry:
                continue  # client went away mid-replay
            try:
                await ws.send(json.dumps(sub.request()))
                self.messages_out += 1
            except ConnectionClosed as e:
                logger.warning(f"[Relay] Upstream closed during replay: {e}")
                return
        if entries:
            logger.info(f"[Relay] Replayed {len(entries)} subscriptions")

    async def _listen(self, ws):
        try:
            async for raw in ws:
                await self.route_upstream_message(raw)
            logger.warning("[Relay] Upstream connection closed")
        except ConnectionClosed as e:
            logger.warning(f"[Relay] Upstream connection dropped: {e}")
        except Exception as e:
            logger.error(f"[Relay] Upstream listener error: {e}", exc_info=True)
        self._on_upstream_lost(ws)

    def _on_upstream_lost(self, ws):
        if self._ws is ws:
            self._ws = None
        if self._listener is asyncio.current_task():
            self._listener = None
        # Replies to forwarded requests will never arrive on a new connection
        self._pending.clear()
        if not self._stopping:
            self._schedule_reconnect()

    async def route_upstream_message(self, raw):
        """
        Route one upstream frame.

        Notifications are broadcast unmodified to every open client holding a
        subscription. Replies go to the client that sent the request; replies
        nobody is waiting for are dropped.
        """
        self.messages_in += 1
        text = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw
        try:
            message = json.loads(text)
        except (json.JSONDecodeError, TypeError):
            logger.debug("[Relay] Dropping unparseable upstream message")
            return
        if not isinstance(message, dict):
            logger.debug("[Relay] Dropping non-object upstream message")
            return

        if is_notification(message):
            for client in self.registry.clients():
                if client.is_open:
                    await self._deliver(client, text)
            return

        reply_id = message.get("id")
        forwarded = self._pop_pending(reply_id)
        if forwarded is not None:
            client, client_request_id = forwarded
            message["id"] = client_request_id
            await self._deliver(client, json.dumps(message))
            return

        sub = self.registry.lookup(reply_id)
        if sub is None:
            logger.debug(f"[Relay] Dropping reply with unknown id {reply_id!r}")
            return
        if "result" in message:
            self.registry.set_upstream_id(sub.id, message["result"])
        if sub.client_request_id is not None and sub.client_request_id != sub.id:
            message["id"] = sub.client_request_id
            text = json.dumps(message)
        await self._deliver(sub.client, text)

    def _pop_pending(self, reply_id):
        try:
            return self._pending.pop(reply_id, None)
        except TypeError:
            return None

    async def _deliver(self, client, text: str):
        try:
            await client.send_text(text)
        except Exception as e:
            logger.warning(f"[Relay] Failed to deliver message to client: {e}")

    # =========================================================================
    # CLIENTS -> UPSTREAM
    # =========================================================================

    async def handle_client_message(self, client, raw: str):
        """Handle one text frame from a local client; errors go back to that client only."""
        try:
            message = json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            await self._deliver(client, json.dumps(error_response(PARSE_ERROR, "Invalid JSON format")))
            return

        request_id = message.get("id") if isinstance(message, dict) else None
        try:
            request = RpcRequest.model_validate(message)
        except ValidationError:
            if not isinstance(request_id, (int, str)):
                request_id = None
            await self._deliver(client, json.dumps(error_response(INVALID_REQUEST, "Invalid request", request_id)))
            return

        ws = self._ws
        if ws is None:
            self.request_reconnect()
            await self._deliver(
                client,
                json.dumps(error_response(UPSTREAM_UNAVAILABLE, "Upstream connection unavailable, retry shortly", request.id)),
            )
            return

        if is_subscribe_method(request.method):
            sub_id = self.registry.register(request.method, request.params, client, request.id)
            outgoing = dict(message, id=sub_id)
        else:
            outgoing = message
            if request.id is not None:
                forward_id = self.registry.mint_id()
                self._pending[forward_id] = (client, request.id)
                outgoing = dict(message, id=forward_id)
            if is_unsubscribe_method(request.method) and request.params:
                sub = self.registry.find_by_upstream_id(client, request.params[0])
                if sub is not None:
                    self.registry.remove(sub.id)

        try:
            await ws.send(json.dumps(outgoing))
            self.messages_out += 1
        except ConnectionClosed as e:
            # The listener schedules the reconnect; registered entries are replayed then.
            logger.warning(f"[Relay] Upstream closed while forwarding {request.method}: {e}")

    def disconnect_client(self, client):
        """Forget everything owned by a closed client connection."""
        removed = self.registry.remove_all_for(client)
        self._pending = {
            forward_id: entry for forward_id, entry in self._pending.items() if entry[0] is not client
        }
        return removed

    def status(self) -> RelayStatus:
        return RelayStatus(
            state=self.state,
            attempts=self.attempts,
            max_attempts=self.max_attempts,
            exhausted=self.exhausted,
            subscriptions=len(self.registry),
            clients=len(self.registry.clients()),
            pending_requests=len(self._pending),
            messages_in=self.messages_in,
            messages_out=self.messages_out,
            reconnects=self.reconnects,
            last_connected_at=self.last_connected_at,
        )
