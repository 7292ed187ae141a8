"""Pushes router and scanner events to the UI shell over /ws."""

import asyncio
import logging
from typing import Any, Optional

from fastapi import WebSocket
from pydantic import BaseModel

from discovery.models import ScanState

logger = logging.getLogger(__name__)


class HubEvent(BaseModel):
    """Wire envelope of every message sent on /ws."""
    event: str
    data: dict[str, Any]


class EventHub:
    """
    Fan-out of events to every attached UI socket.

    The most recent `navigate` event is kept and replayed to a socket when
    it attaches, so a UI shell that reconnects learns the current origin
    without forcing a new connect.
    """

    def __init__(self) -> None:
        self._sockets: set[WebSocket] = set()
        self._lock = asyncio.Lock()
        self._last_navigate: Optional[HubEvent] = None

    @property
    def client_count(self) -> int:
        return len(self._sockets)

    @property
    def last_navigate(self) -> Optional[HubEvent]:
        return self._last_navigate

    async def attach(self, websocket: WebSocket) -> None:
        await websocket.accept()
        async with self._lock:
            self._sockets.add(websocket)
            replay = self._last_navigate
        logger.info(f"UI shell attached ({len(self._sockets)} open)")
        if replay is not None:
            await self._send(websocket, replay.model_dump_json())

    async def detach(self, websocket: WebSocket) -> None:
        async with self._lock:
            self._sockets.discard(websocket)
        logger.info(f"UI shell detached ({len(self._sockets)} open)")

    async def publish(self, event: str, data: dict) -> None:
        message = HubEvent(event=event, data=data)
        async with self._lock:
            if event == "navigate":
                self._last_navigate = message
            targets = list(self._sockets)
        if not targets:
            return

        payload = message.model_dump_json()
        delivered = await asyncio.gather(*(self._send(ws, payload) for ws in targets))
        failed = [ws for ws, ok in zip(targets, delivered) if not ok]
        if failed:
            async with self._lock:
                self._sockets.difference_update(failed)
            logger.debug(f"Detached {len(failed)} unresponsive UI socket(s) after '{event}'")

    async def _send(self, websocket: WebSocket, payload: str) -> bool:
        try:
            await websocket.send_text(payload)
            return True
        except Exception as e:
            logger.debug(f"UI socket send failed: {e}")
            return False

    # --- Service callbacks ---

    async def handle_router_event(self, event_type: str, data: dict) -> None:
        """For ConnectionRouter.on_event()."""
        await self.publish(event_type, data)

    async def handle_scan_finished(self, state: ScanState) -> None:
        """For Scanner.on_finished()."""
        await self.publish("scan_finished", state.model_dump(mode="json"))
