import logging
from typing import Awaitable, Callable, Dict, Mapping, Optional, Union

from errors import MessageParseError
from ingest.messages import AccountUpdate, FeedMessage, PriceBroadcast, Unknown, decode_message

logger = logging.getLogger(__name__)

Handler = Callable[[str, FeedMessage], Awaitable[None]]


class MarketDataManager:
    """Decode raw feed payloads and route them to registered async handlers."""

    _VARIANT_MAP = {
        AccountUpdate: 'account_update',
        PriceBroadcast: 'price_broadcast',
        Unknown: 'unknown',
    }

    _ALIASES = {
        'account_update_handler': 'account_update',
        'webData2': 'account_update',
        'price_broadcast_handler': 'price_broadcast',
        'allMids': 'price_broadcast',
        'unknown_handler': 'unknown',
        'parse_error_handler': 'parse_error',
    }

    def __init__(self):
        self._handlers: Dict[str, Handler] = {}
        self.parse_errors = 0
        self.handler_errors = 0

    def register_handlers(self, **handlers: Optional[Handler]) -> None:
        """Register async callbacks per logical event name."""
        normalized = self._normalize_handlers(handlers)
        for name, handler in normalized.items():
            if handler is None:
                continue
            self._handlers[name] = handler

    def _normalize_handlers(self, handlers: Mapping[str, Optional[Handler]]) -> Dict[str, Optional[Handler]]:
        normalized: Dict[str, Optional[Handler]] = {}
        for key, handler in handlers.items():
            logical = self._ALIASES.get(key, key)
            normalized[logical] = handler
        return normalized

    async def dispatch_raw(self, connection_id: str, raw: Union[str, bytes]) -> Optional[FeedMessage]:
        """Decode one payload and dispatch it. Malformed payloads are logged and dropped."""
        try:
            message = decode_message(raw)
        except MessageParseError as exc:
            self.parse_errors += 1
            logger.warning("Dropping malformed message from %s: %s", connection_id, exc)
            handler = self._handlers.get('parse_error')
            if handler:
                await self._invoke('parse_error', handler, connection_id, exc)
            return None
        await self.dispatch(connection_id, message)
        return message

    async def dispatch(self, connection_id: str, message: FeedMessage) -> None:
        logical_name = self._VARIANT_MAP.get(type(message), 'unknown')
        handler = self._handlers.get(logical_name)
        if not handler:
            if logical_name == 'unknown':
                logger.debug("Ignoring %s message on %s", getattr(message, 'channel', None), connection_id)
            return
        await self._invoke(logical_name, handler, connection_id, message)

    async def _invoke(self, logical_name: str, handler: Callable, connection_id: str, payload) -> None:
        try:
            await handler(connection_id, payload)
        except Exception:
            self.handler_errors += 1
            logger.exception("Feed handler %s failed for %s", logical_name, connection_id)
