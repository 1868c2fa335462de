"""Optional websocket push channel for a live dashboard.

Read-only side channel: the loop publishes balance, position, signal and
order events; nothing a client sends is acted upon and a failed send never
reaches the trading core.
"""
import json
import logging
import time
from typing import Any, Dict, Optional

import websockets


class Broadcaster:
    def __init__(self, host: str = "0.0.0.0", port: int = 8765):
        self.host = host
        self.port = port
        self.clients = set()
        self.latest: Dict[str, str] = {}
        self._server = None

    @property
    def bound_port(self) -> Optional[int]:
        if self._server is None or not self._server.sockets:
            return None
        return self._server.sockets[0].getsockname()[1]

    async def start(self):
        self._server = await websockets.serve(self._handler, self.host, self.port)
        logging.info(f"📡 Dashboard channel listening on ws://{self.host}:{self.bound_port}")

    async def stop(self):
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

    async def _handler(self, ws, *_):
        self.clients.add(ws)
        try:
            # New clients get the latest event of each kind first.
            for message in list(self.latest.values()):
                await ws.send(message)
            await ws.wait_closed()
        except websockets.exceptions.ConnectionClosed:
            pass
        finally:
            self.clients.discard(ws)

    def publish(self, kind: str, payload: Any):
        message = json.dumps({"type": kind, "ts": time.time(), "data": payload}, default=str)
        self.latest[kind] = message
        if not self.clients:
            return
        try:
            websockets.broadcast(self.clients, message)
        except Exception as e:
            logging.warning(f"Dashboard broadcast failed: {e}")
