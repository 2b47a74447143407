"""WebSocket transport speaking the meshcall relay protocol.

Client → relay:
    {"type": "subscribe", "channel": "call:r1"}
    {"type": "broadcast", "channel": "call:r1", "event": "join", "payload": {...}}
    {"type": "unsubscribe", "channel": "call:r1"}

Relay → client:
    {"type": "subscribed", "channel": "call:r1"}
    {"type": "broadcast", "channel": "call:r1", "event": "join", "payload": {...}}
    {"type": "error", "reason": "..."}
"""

import asyncio
import json
import logging
from typing import TYPE_CHECKING, Any, Dict, Optional

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from meshcall.errors import TransportError
from meshcall.transport.base import Subscription, Transport

if TYPE_CHECKING:
    from websockets.asyncio.client import ClientConnection

logger = logging.getLogger(__name__)


class WebSocketTransport(Transport):
    """Transport backed by a WebSocket connection to a meshcall relay.

    Attributes:
        url: Relay WebSocket URL.
        subscribe_timeout: Seconds to wait for connection and confirmation.
        websocket: Open connection while subscribed.
    """

    def __init__(self, url: str, subscribe_timeout: float = 10.0):
        super().__init__()
        self.url = url
        self.subscribe_timeout = subscribe_timeout
        self.websocket: Optional["ClientConnection"] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._closing = False

    async def subscribe(self, channel: str) -> Subscription:
        if self.subscription is not None:
            raise TransportError(f"Already subscribed to {self.subscription.channel}")

        # A connection left over from a lost subscription
        await self._close_websocket()
        logger.info(f"Connecting to relay {self.url}")
        try:
            self.websocket = await websockets.connect(
                self.url, open_timeout=self.subscribe_timeout
            )
            await self.websocket.send(
                json.dumps({"type": "subscribe", "channel": channel})
            )
            await asyncio.wait_for(
                self._await_confirmation(channel), timeout=self.subscribe_timeout
            )
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            await self._close_websocket()
            raise TransportError(f"Cannot subscribe to {channel} at {self.url}: {e}") from e
        except TransportError:
            await self._close_websocket()
            raise

        self._closing = False
        self.subscription = Subscription(channel=channel)
        self._reader_task = asyncio.create_task(self._reader_loop())
        logger.info(f"Subscribed to {channel}")
        return self.subscription

    async def _await_confirmation(self, channel: str) -> None:
        while True:
            message = await self.websocket.recv()
            try:
                data = json.loads(message)
            except ValueError as e:
                raise TransportError(f"Invalid reply from relay: {message[:80]!r}") from e
            if not isinstance(data, dict):
                raise TransportError(f"Invalid reply from relay: {message[:80]!r}")
            msg_type = data.get("type")
            if msg_type == "subscribed" and data.get("channel") == channel:
                return
            if msg_type == "error":
                raise TransportError(f"Relay refused subscription: {data.get('reason')}")
            logger.debug(f"Ignoring {msg_type} before subscription confirmation")

    async def _reader_loop(self) -> None:
        """Background task dispatching relay broadcasts to handlers."""
        error: Optional[Exception] = None
        try:
            async for message in self.websocket:
                try:
                    data = json.loads(message)
                except ValueError:
                    logger.error("Invalid JSON received from relay")
                    continue
                if not isinstance(data, dict):
                    logger.error(f"Ignoring non-object relay message: {message[:80]!r}")
                    continue

                msg_type = data.get("type")
                if msg_type == "broadcast":
                    self._deliver(data.get("event"), data.get("payload"))
                elif msg_type == "error":
                    logger.error(f"Relay error: {data.get('reason')}")
                else:
                    logger.debug(f"Ignoring relay message type: {msg_type}")
        except asyncio.CancelledError:
            raise
        except ConnectionClosed as e:
            error = e

        if not self._closing:
            self.subscription = None
            await self._close_websocket()
            self._disconnected(TransportError(f"Relay connection lost: {error}"))

    async def send(self, event: str, payload: Dict[str, Any]) -> None:
        if self.subscription is None or self.websocket is None:
            raise TransportError("Cannot send: not subscribed")
        message = {
            "type": "broadcast",
            "channel": self.subscription.channel,
            "event": event,
            "payload": payload,
        }
        try:
            await self.websocket.send(json.dumps(message))
        except ConnectionClosed as e:
            raise TransportError(f"Cannot send {event}: {e}") from e
        logger.debug(f"Sent {event} on {self.subscription.channel}")

    async def unsubscribe(self, subscription: Subscription) -> None:
        self._closing = True
        if self.websocket is not None:
            try:
                await self.websocket.send(
                    json.dumps({"type": "unsubscribe", "channel": subscription.channel})
                )
            except ConnectionClosed:
                logger.debug("Relay connection already closed on unsubscribe")

        if self._reader_task and not self._reader_task.done():
            self._reader_task.cancel()
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass
        self._reader_task = None

        await self._close_websocket()
        self.subscription = None
        logger.info(f"Unsubscribed from {subscription.channel}")

    async def _close_websocket(self) -> None:
        if self.websocket is not None:
            await self.websocket.close()
            self.websocket = None
