"""
Live notification fan-out.

A NotificationHub tracks which channels each live connection has joined and
pushes business events to them. Membership is process-local and lasts only as
long as the connection; it has nothing to do with the persisted subscriber
list of a business.
"""

from typing import Any, Dict, List, Set

import structlog

from schemas import BusinessEvent

logger = structlog.get_logger(__name__)

UPDATE_MESSAGE = "Business details have been updated"
DELETE_MESSAGE = "Business has been deleted"


def channel_for(business_id: str) -> str:
    return f"business:{business_id}"


def business_event(kind: str, business: Dict[str, Any]) -> BusinessEvent:
    message = UPDATE_MESSAGE if kind == "update" else DELETE_MESSAGE
    return BusinessEvent(
        type=kind,
        business_id=business["id"],
        business_name=business.get("name", ""),
        message=message,
    )


class NotificationHub:
    """
    Connection registry plus best-effort emitter.

    A socket is anything with an awaitable ``send_json(payload)``; in
    production that is a Starlette WebSocket.
    """

    def __init__(self):
        self._sockets: Dict[str, Any] = {}
        self._channels: Dict[str, Set[str]] = {}

    def connect(self, connection_id: str, socket: Any) -> None:
        self._sockets[connection_id] = socket
        self._channels[connection_id] = set()
        logger.info("client_connected", connection_id=connection_id)

    def disconnect(self, connection_id: str) -> None:
        self._sockets.pop(connection_id, None)
        dropped = self._channels.pop(connection_id, set())
        logger.info("client_disconnected", connection_id=connection_id, channels=len(dropped))

    def join(self, connection_id: str, channel: str) -> bool:
        if connection_id not in self._channels:
            return False
        self._channels[connection_id].add(channel)
        logger.debug("channel_joined", connection_id=connection_id, channel=channel)
        return True

    def leave(self, connection_id: str, channel: str) -> bool:
        channels = self._channels.get(connection_id)
        if channels is None or channel not in channels:
            return False
        channels.discard(channel)
        logger.debug("channel_left", connection_id=connection_id, channel=channel)
        return True

    def channels_of(self, connection_id: str) -> Set[str]:
        return set(self._channels.get(connection_id, set()))

    def members(self, channel: str) -> List[str]:
        return [cid for cid, channels in self._channels.items() if channel in channels]

    def is_connected(self, connection_id: str) -> bool:
        return connection_id in self._sockets

    async def emit(self, channel: str, payload: Dict[str, Any]) -> int:
        """Send `payload` once to every member of `channel`; returns deliveries."""
        delivered = 0
        for connection_id in self.members(channel):
            socket = self._sockets.get(connection_id)
            if socket is None:
                continue
            try:
                await socket.send_json(payload)
                delivered += 1
            except Exception as e:
                logger.warning(
                    "notification_delivery_failed",
                    connection_id=connection_id,
                    channel=channel,
                    error=str(e),
                )
        return delivered

    async def publish(self, event: BusinessEvent) -> int:
        payload = {"event": "notification", "data": event.model_dump(by_alias=True)}
        delivered = await self.emit(channel_for(event.business_id), payload)
        logger.info(
            "business_event_published",
            business_id=event.business_id,
            type=event.type,
            delivered=delivered,
        )
        return delivered
