import asyncio
import json
import logging
from typing import Any, Dict, Optional, Union

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from errors import TransportError


logger = logging.getLogger(__name__)

DEFAULT_FEED_URL = "wss://api.hyperliquid.xyz/ws"

RawMessage = Union[str, bytes]


class WebSocketTransport:
    """Feed transport over a persistent websocket connection.

    Every failure surfaces as ``TransportError`` so callers only deal with one
    exception type regardless of whether the handshake, a send, or a receive
    broke.
    """

    def __init__(self, open_timeout_s: float = 10.0, ping_interval_s: Optional[float] = 20.0):
        self.open_timeout_s = open_timeout_s
        self.ping_interval_s = ping_interval_s

    async def open(self, url: str = DEFAULT_FEED_URL) -> Any:
        try:
            return await websockets.connect(
                url,
                open_timeout=self.open_timeout_s,
                ping_interval=self.ping_interval_s,
                max_size=None,
            )
        except (OSError, asyncio.TimeoutError, WebSocketException) as exc:
            raise TransportError(f"Unable to open {url}: {exc}", url=url) from exc

    async def send(self, handle: Any, message: Dict[str, Any]) -> None:
        try:
            await handle.send(json.dumps(message))
        except (OSError, WebSocketException) as exc:
            raise TransportError(f"Send failed: {exc}") from exc

    async def receive(self, handle: Any) -> RawMessage:
        try:
            return await handle.recv()
        except ConnectionClosed as exc:
            raise TransportError(f"Connection closed ({exc.rcvd.code if exc.rcvd else 'no close frame'})") from exc
        except (OSError, WebSocketException) as exc:
            raise TransportError(f"Receive failed: {exc}") from exc

    async def close(self, handle: Any) -> None:
        if handle is None:
            return
        try:
            await handle.close()
        except (OSError, WebSocketException) as exc:
            logger.debug("Ignoring error while closing websocket: %s", exc)
