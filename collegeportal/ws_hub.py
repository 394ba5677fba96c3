import asyncio
import json
import logging
from typing import Dict, Set

from starlette.websockets import WebSocket


class WebSocketHub:
    """Fans JSON messages out to every open browser tab of a portal session."""

    def __init__(self) -> None:
        self._logger = logging.getLogger("portal.ws")
        self._sid_to_conns: Dict[str, Set[WebSocket]] = {}
        self._lock = asyncio.Lock()

    async def register(self, sid: str, ws: WebSocket) -> None:
        async with self._lock:
            self._sid_to_conns.setdefault(sid, set()).add(ws)
            self._logger.info("ws_connect sid=%s total=%s", sid[:8], len(self._sid_to_conns[sid]))

    async def unregister(self, sid: str, ws: WebSocket) -> None:
        async with self._lock:
            conns = self._sid_to_conns.get(sid)
            if conns and ws in conns:
                conns.remove(ws)
                self._logger.info("ws_disconnect sid=%s total=%s", sid[:8], len(conns))
                if not conns:
                    self._sid_to_conns.pop(sid, None)

    async def broadcast(self, sid: str, message: dict) -> None:
        data = json.dumps(message, default=str)
        msg_type = message.get("type", "unknown")

        async with self._lock:
            conns = list(self._sid_to_conns.get(sid, set()))

        if not conns:
            self._logger.debug("ws_broadcast_no_connections sid=%s type=%s", sid[:8], msg_type)
            return

        sent_count = 0
        for ws in conns:
            try:
                await ws.send_text(data)
                sent_count += 1
            except Exception as e:
                self._logger.error("ws_send_error sid=%s error=%s", sid[:8], repr(e))

        self._logger.info("ws_broadcast sid=%s type=%s connections=%s", sid[:8], msg_type, sent_count)


hub = WebSocketHub()
