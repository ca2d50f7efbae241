"""
Client for the local relay websocket.

Exposes only what callers need: subscribe (retried with exponential backoff
while the relay reports the upstream as unavailable) and a plain forward for
every other RPC method. Notifications are read from `notifications()`.
"""
import asyncio
import itertools
import json
import logging
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

import websockets
from websockets.exceptions import ConnectionClosed

from .models import JSONRPC_VERSION, UPSTREAM_UNAVAILABLE, is_notification

logger = logging.getLogger(__name__)

MAX_RETRIES = 3
RETRY_DELAY = 2.0  # seconds


class RelayClientError(Exception):
    pass


class SubscriptionError(RelayClientError):
    pass


async def open_relay(url: str):
    return await websockets.connect(url, max_size=None)


class RelayClient:
    def __init__(
        self,
        url: str,
        max_retries: int = MAX_RETRIES,
        retry_delay: float = RETRY_DELAY,
        timeout: float = 10.0,
        connector: Optional[Callable[[str], Awaitable[Any]]] = None,
    ):
        self.url = url
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.timeout = timeout
        self._connector = connector or open_relay

        self._ws = None
        self._reader: Optional[asyncio.Task] = None
        self._ids = itertools.count(1)
        self._waiting: Dict[int, asyncio.Future] = {}
        self._notifications: asyncio.Queue = asyncio.Queue()

    async def __aenter__(self):
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    @property
    def connected(self) -> bool:
        return self._ws is not None and self._reader is not None and not self._reader.done()

    async def connect(self):
        self._ws = await self._connector(self.url)
        self._reader = asyncio.create_task(self._read_loop(self._ws))

    async def close(self):
        if self._reader is not None:
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
            self._reader = None
        if self._ws is not None:
            await self._ws.close()
            self._ws = None
        self._fail_waiting("Relay client closed")

    async def _read_loop(self, ws):
        try:
            async for raw in ws:
                try:
                    message = json.loads(raw)
                except json.JSONDecodeError:
                    logger.warning("Dropping invalid JSON from relay")
                    continue
                if is_notification(message):
                    await self._notifications.put(message)
                    continue
                if not isinstance(message, dict):
                    continue
                future = self._waiting.pop(message.get("id"), None)
                if future is not None and not future.done():
                    future.set_result(message)
        except ConnectionClosed as e:
            logger.warning(f"Relay connection closed: {e}")
        finally:
            self._fail_waiting("Relay connection closed")
            await self._notifications.put(None)

    def _fail_waiting(self, reason: str):
        waiting, self._waiting = self._waiting, {}
        for future in waiting.values():
            if not future.done():
                future.set_exception(RelayClientError(reason))

    async def _request(self, method: str, params: Optional[List[Any]] = None) -> dict:
        if not self.connected:
            raise RelayClientError("Not connected to relay")
        request_id = next(self._ids)
        future = asyncio.get_running_loop().create_future()
        self._waiting[request_id] = future
        request = {
            "jsonrpc": JSONRPC_VERSION,
            "id": request_id,
            "method": method,
            "params": params or [],
        }
        try:
            await self._ws.send(json.dumps(request))
            return await asyncio.wait_for(future, self.timeout)
        except ConnectionClosed as e:
            raise RelayClientError(f"Relay connection closed: {e}") from e
        except asyncio.TimeoutError as e:
            raise RelayClientError(f"No reply to {method} within {self.timeout}s") from e
        finally:
            self._waiting.pop(request_id, None)

    async def forward(self, method: str, params: Optional[List[Any]] = None) -> dict:
        """Send one request through the relay and return the raw reply."""
        return await self._request(method, params)

    async def subscribe(self, method: str, params: Optional[List[Any]] = None) -> Any:
        """
        Subscribe through the relay, retrying while the upstream is unavailable.

        Args:
            method: Subscribe method, e.g. "accountSubscribe"
            params: Method params

        Returns:
            The upstream subscription id from the reply

        Raises:
            SubscriptionError: the relay rejected the request, or every retry failed
        """
        retries = 0
        while True:
            try:
                reply = await self._request(method, params)
            except RelayClientError as e:
                last_error = str(e)
            else:
                error = reply.get("error")
                if error is None:
                    return reply.get("result")
                if error.get("code") != UPSTREAM_UNAVAILABLE:
                    raise SubscriptionError(error.get("message", "Subscription rejected"))
                last_error = error.get("message", "Upstream unavailable")

            retries += 1
            if retries >= self.max_retries:
                raise SubscriptionError(
                    f"Failed to establish subscription after {self.max_retries} attempts: {last_error}"
                )
            delay = self.retry_delay * (2 ** retries)
            logger.warning(f"Subscription attempt {retries} for {method} failed ({last_error}), retrying in {delay:.1f}s")
            await asyncio.sleep(delay)

            if not self.connected:
                try:
                    await self.connect()
                except Exception as e:
                    logger.warning(f"Reconnect to relay failed: {e}")

    async def notifications(self) -> AsyncIterator[dict]:
        """Yield push messages until the relay connection closes."""
        while True:
            message = await self._notifications.get()
            if message is None:
                return
            yield message
