"""
Real-time fan-out of marketplace mutations.

Services only know the EventSink protocol. The ConnectionHub implementation
pushes each event to every connected WebSocket as
``{"event": name, "data": payload}``. Delivery is best effort: nothing is
buffered for clients that are not connected, and a client whose send fails
is dropped, as is one that does not take a message within ``send_timeout``
seconds.
"""
import asyncio
import logging
from contextlib import suppress
from typing import Any, Dict, Protocol, Set

from fastapi import WebSocket
from fastapi.encoders import jsonable_encoder
from pydantic import BaseModel

from config import EVENT_SEND_TIMEOUT

logger = logging.getLogger(__name__)

PRODUCT_CREATED = "product.created"
REQUEST_CREATED = "request.created"
REQUEST_UPDATED = "request.updated"
MESSAGE_SENT = "message.sent"


class Event(BaseModel):
    name: str
    data: Dict[str, Any]

    def to_message(self) -> Dict[str, Any]:
        return {"event": self.name, "data": jsonable_encoder(self.data)}


class EventSink(Protocol):
    async def publish(self, event: Event) -> None:
        ...


async def emit(sink: EventSink, name: str, data: Dict[str, Any]):
    """Publish after a committed write. Failures are logged, never raised."""
    try:
        await sink.publish(Event(name=name, data=data))
    except Exception:
        logger.warning("publish_failed event=%s", name, exc_info=True)


class ConnectionHub:
    def __init__(self, send_timeout: float = EVENT_SEND_TIMEOUT):
        self.send_timeout = send_timeout
        self._connections: Set[WebSocket] = set()

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        self._connections.add(websocket)
        logger.info("client_connected clients=%s", self.connection_count)

    def disconnect(self, websocket: WebSocket):
        self._connections.discard(websocket)
        logger.info("client_disconnected clients=%s", self.connection_count)

    async def publish(self, event: Event):
        targets = list(self._connections)
        if not targets:
            return
        message = event.to_message()
        results = await asyncio.gather(
            *(asyncio.wait_for(ws.send_json(message), self.send_timeout) for ws in targets),
            return_exceptions=True,
        )
        for ws, result in zip(targets, results):
            if isinstance(result, Exception):
                logger.warning("client_dropped event=%s error=%r", event.name, result)
                self.disconnect(ws)

    async def close(self):
        for ws in list(self._connections):
            with suppress(RuntimeError):
                await ws.close()
        self._connections.clear()
