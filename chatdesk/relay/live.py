"""
Live-connection session registry.

Each authenticated WebSocket joins the room for its canonical user id
(`web_<uid>` / `mobile_<uid>`). Pushing to a room fans out to every socket the
user has open; a room with no sockets drops the event.
"""

import asyncio
import logging
from typing import Any, Dict, Set

logger = logging.getLogger(__name__)


class LiveConnectionManager:
    def __init__(self, send_timeout: float = 5.0):
        self.send_timeout = send_timeout
        self._rooms: Dict[str, Set[Any]] = {}

    def join(self, user_id: str, websocket) -> None:
        self._rooms.setdefault(user_id, set()).add(websocket)
        logger.info("Live session joined room %s (%d open)", user_id, len(self._rooms[user_id]))

    def leave(self, user_id: str, websocket) -> None:
        sockets = self._rooms.get(user_id)
        if not sockets:
            return
        sockets.discard(websocket)
        if not sockets:
            del self._rooms[user_id]
        logger.info("Live session left room %s", user_id)

    def is_connected(self, user_id: str) -> bool:
        return bool(self._rooms.get(user_id))

    async def push(self, user_id: str, event: str, data: Dict[str, Any]) -> int:
        """Emit `event` to every socket in the room; returns how many got it."""
        sockets = list(self._rooms.get(user_id) or ())
        if not sockets:
            logger.info("No live session for %s; dropping %s event", user_id, event)
            return 0

        delivered = 0
        for ws in sockets:
            try:
                await asyncio.wait_for(ws.send_json({"event": event, "data": data}), timeout=self.send_timeout)
                delivered += 1
            except Exception as e:
                logger.warning("Push of %s to %s failed: %s", event, user_id, e)
                self.leave(user_id, ws)
        return delivered
