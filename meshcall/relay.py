"""Room relay server for meshcall signaling.

Relays broadcast envelopes between the subscribers of a channel. Every
broadcast is fanned out to all subscribers of the channel, the sender
included. Media never passes through the relay.

Usage:
    meshcall relay [--host HOST] [--port PORT]
"""

import asyncio
import json
import logging
from typing import TYPE_CHECKING, Dict, Optional, Set

import websockets
from websockets.exceptions import ConnectionClosed

if TYPE_CHECKING:
    from websockets.asyncio.server import ServerConnection

logger = logging.getLogger(__name__)


class Relay:
    """Channel membership and fan-out.

    Attributes:
        channels: channel name -> connections subscribed to it.
    """

    def __init__(self):
        self.channels: Dict[str, Set["ServerConnection"]] = {}

    def _leave(self, channel: str, websocket: "ServerConnection") -> None:
        members = self.channels.get(channel)
        if members is None:
            return
        members.discard(websocket)
        if not members:
            del self.channels[channel]
        logger.info(f"Left {channel} (remaining: {len(members)})")

    async def _fan_out(self, channel: str, message: str) -> None:
        for member in list(self.channels.get(channel, ())):
            try:
                await member.send(message)
            except ConnectionClosed:
                logger.debug(f"Subscriber of {channel} went away during fan-out")

    async def handler(self, websocket: "ServerConnection") -> None:
        """Handle a WebSocket connection."""
        channel: Optional[str] = None

        try:
            async for message in websocket:
                try:
                    data = json.loads(message)
                except json.JSONDecodeError:
                    await websocket.send(
                        json.dumps({"type": "error", "reason": "invalid_json"})
                    )
                    continue

                msg_type = data.get("type")

                if msg_type == "subscribe":
                    requested = data.get("channel")
                    if not isinstance(requested, str) or not requested:
                        await websocket.send(
                            json.dumps({"type": "error", "reason": "missing_channel"})
                        )
                        continue
                    if channel and channel != requested:
                        self._leave(channel, websocket)
                    channel = requested
                    self.channels.setdefault(channel, set()).add(websocket)
                    await websocket.send(
                        json.dumps({"type": "subscribed", "channel": channel})
                    )
                    logger.info(
                        f"Subscribed to {channel} (total: {len(self.channels[channel])})"
                    )

                elif msg_type == "broadcast":
                    if channel is None or data.get("channel") != channel:
                        await websocket.send(
                            json.dumps({"type": "error", "reason": "not_subscribed"})
                        )
                        continue
                    outgoing = json.dumps(
                        {
                            "type": "broadcast",
                            "channel": channel,
                            "event": data.get("event"),
                            "payload": data.get("payload"),
                        }
                    )
                    await self._fan_out(channel, outgoing)
                    logger.debug(f"Relayed {data.get('event')} on {channel}")

                elif msg_type == "unsubscribe":
                    if channel:
                        self._leave(channel, websocket)
                        channel = None

                else:
                    logger.warning(f"Unknown relay message type: {msg_type}")

        except ConnectionClosed:
            logger.info("Connection closed")
        finally:
            if channel:
                self._leave(channel, websocket)


async def serve(host: str, port: int) -> None:
    """Run the relay until cancelled."""
    relay = Relay()
    async with websockets.serve(relay.handler, host, port):
        logger.info(f"Relay running on ws://{host}:{port}")
        await asyncio.Future()  # Run forever
