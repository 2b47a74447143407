"""Broadcast transport contract consumed by the call session.

A transport delivers every broadcast on a channel to all of the channel's
subscribers, including the sender. Delivery is at-least-once and carries no
ordering guarantee across senders.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

BroadcastHandler = Callable[[Dict[str, Any]], None]
DisconnectHandler = Callable[[Optional[Exception]], None]


@dataclass(frozen=True)
class Subscription:
    """Handle for an active channel subscription."""

    channel: str


class Transport(ABC):
    """Pub/sub channel scoped to a call room.

    Subclasses implement ``subscribe``, ``send`` and ``unsubscribe`` and call
    ``_deliver`` for every inbound broadcast and ``_disconnected`` when the
    channel is lost without an ``unsubscribe``.
    """

    def __init__(self):
        self._handlers: Dict[str, List[BroadcastHandler]] = {}
        self._disconnect_handlers: List[DisconnectHandler] = []
        self.subscription: Optional[Subscription] = None

    @abstractmethod
    async def subscribe(self, channel: str) -> Subscription:
        """Subscribe to a channel.

        Returns once the subscription is confirmed active.

        Raises:
            TransportError: If the subscription cannot be established.
        """

    @abstractmethod
    async def send(self, event: str, payload: Dict[str, Any]) -> None:
        """Broadcast ``payload`` under ``event`` on the subscribed channel.

        Raises:
            TransportError: If there is no active subscription or sending fails.
        """

    @abstractmethod
    async def unsubscribe(self, subscription: Subscription) -> None:
        """Leave the channel. Safe to call more than once."""

    def on_broadcast(self, event: str, handler: BroadcastHandler) -> None:
        """Register a handler for broadcasts of ``event``."""
        self._handlers.setdefault(event, []).append(handler)

    def on_disconnect(self, handler: DisconnectHandler) -> None:
        """Register a handler called when the channel is lost unexpectedly."""
        self._disconnect_handlers.append(handler)

    def _deliver(self, event: str, payload: Dict[str, Any]) -> None:
        handlers = self._handlers.get(event)
        if not handlers:
            logger.debug(f"No handler for broadcast event: {event}")
            return
        for handler in list(handlers):
            try:
                handler(payload)
            except Exception:
                logger.exception(f"Broadcast handler for '{event}' failed")

    def _disconnected(self, error: Optional[Exception] = None) -> None:
        logger.warning(f"Transport disconnected: {error}")
        for handler in list(self._disconnect_handlers):
            try:
                handler(error)
            except Exception:
                logger.exception("Disconnect handler failed")
