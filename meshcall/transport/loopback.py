"""In-process broadcast transport.

``LoopbackHub`` plays the part of the relay for participants living in the
same event loop. Deliveries are scheduled on the loop rather than made inline,
so handlers never run inside ``send``. The hub can redeliver every broadcast
(``duplicates``) and drop selected ones (``add_filter``) to exercise
at-least-once and lossy delivery.
"""

import asyncio
import copy
import logging
from typing import Any, Callable, Dict, List, Set

from meshcall.errors import TransportError
from meshcall.transport.base import Subscription, Transport

logger = logging.getLogger(__name__)

# (channel, event, payload) -> deliver?
DeliveryFilter = Callable[[str, str, Dict[str, Any]], bool]


class LoopbackHub:
    """Fan-out point shared by all LoopbackTransports of a process.

    Attributes:
        duplicates: Extra copies delivered for every broadcast.
        pending: Number of scheduled deliveries not yet handed to a transport.
    """

    def __init__(self, duplicates: int = 0):
        self.duplicates = duplicates
        self.pending = 0
        self._channels: Dict[str, Set["LoopbackTransport"]] = {}
        self._filters: List[DeliveryFilter] = []

    def add_filter(self, delivery_filter: DeliveryFilter) -> None:
        """Drop broadcasts for which ``delivery_filter`` returns False."""
        self._filters.append(delivery_filter)

    def clear_filters(self) -> None:
        self._filters.clear()

    def subscribers(self, channel: str) -> Set["LoopbackTransport"]:
        return set(self._channels.get(channel, ()))

    def _join(self, channel: str, transport: "LoopbackTransport") -> None:
        self._channels.setdefault(channel, set()).add(transport)

    def _leave(self, channel: str, transport: "LoopbackTransport") -> None:
        members = self._channels.get(channel)
        if members is None:
            return
        members.discard(transport)
        if not members:
            del self._channels[channel]

    def publish(self, channel: str, event: str, payload: Dict[str, Any]) -> None:
        if not all(f(channel, event, payload) for f in self._filters):
            logger.debug(f"Dropped {event} on {channel}")
            return

        loop = asyncio.get_running_loop()
        for transport in self.subscribers(channel):
            for _ in range(1 + self.duplicates):
                self.pending += 1
                loop.call_soon(
                    self._hand_over, transport, channel, event, copy.deepcopy(payload)
                )

    def _hand_over(
        self,
        transport: "LoopbackTransport",
        channel: str,
        event: str,
        payload: Dict[str, Any],
    ) -> None:
        self.pending -= 1
        # Subscribers that left after the broadcast was scheduled miss it
        if transport in self._channels.get(channel, ()):
            transport._deliver(event, payload)

    def disconnect(self, channel: str) -> None:
        """Drop every subscriber of ``channel`` as if the relay went away."""
        for transport in self.subscribers(channel):
            self._leave(channel, transport)
            transport.subscription = None
            transport._disconnected(TransportError(f"Channel {channel} closed"))


class LoopbackTransport(Transport):
    """Transport attached to a LoopbackHub."""

    def __init__(self, hub: LoopbackHub):
        super().__init__()
        self.hub = hub

    async def subscribe(self, channel: str) -> Subscription:
        if self.subscription is not None:
            raise TransportError(f"Already subscribed to {self.subscription.channel}")
        self.hub._join(channel, self)
        self.subscription = Subscription(channel=channel)
        logger.debug(f"Subscribed to {channel}")
        return self.subscription

    async def send(self, event: str, payload: Dict[str, Any]) -> None:
        if self.subscription is None:
            raise TransportError("Cannot send: not subscribed")
        self.hub.publish(self.subscription.channel, event, payload)

    async def unsubscribe(self, subscription: Subscription) -> None:
        self.hub._leave(subscription.channel, self)
        if self.subscription == subscription:
            self.subscription = None
