import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from config.utils import get_config_section
from errors import TransportError
from ingest.messages import SubscriptionKind, build_subscription
from ingest.websocket_client import DEFAULT_FEED_URL
from orchestration.pool import Connection, ConnectionPool, ConnectionState


logger = logging.getLogger(__name__)

MessageHandler = Callable[[Connection, Any], Awaitable[None]]
TransitionHandler = Callable[[Connection], None]


class ClientMode(str, Enum):
    CONTINUOUS = 'continuous'
    ONE_OFF = 'oneOff'


class EventKind(Enum):
    OPEN = 'open'
    MESSAGE = 'message'
    CLOSE = 'close'
    ERROR = 'error'


@dataclass
class ConnectionEvent:
    kind: EventKind
    connection_id: str
    session: int
    payload: Any = None


def backoff_delay(base_delay_s: float, attempt: int) -> float:
    """Exponential backoff: attempt 1 waits ``base``, attempt 2 twice that, and so on."""
    return base_delay_s * (2 ** (attempt - 1))


class ConnectionLifecycleManager:
    """Drive every pooled connection through connect, subscribe, receive and reconnect.

    Reader tasks only talk to the transport and push ``ConnectionEvent`` objects
    onto one queue; all state changes happen in the single consumer of that
    queue, so events of one connection are handled in delivery order.
    Each open bumps the connection's session number and events from an older
    session are ignored once that session has been torn down.
    """

    def __init__(
        self,
        config: Any,
        pool: ConnectionPool,
        transport: Any,
        on_message: MessageHandler,
        on_transition: Optional[TransitionHandler] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        feed_cfg = get_config_section(config, 'feed')
        conn_cfg = get_config_section(config, 'connections')
        mode_cfg = get_config_section(config, 'mode')

        self.url = feed_cfg.get('url') or DEFAULT_FEED_URL
        self.price_dex = feed_cfg.get('price_dex')
        self.stagger_delay_s = float(conn_cfg.get('stagger_delay_s', 1.0))
        self.reconnect_base_delay_s = float(conn_cfg.get('reconnect_base_delay_s', 5.0))
        self.max_reconnect_attempts = int(conn_cfg.get('max_reconnect_attempts', 5))
        self.health_check_interval_s = float(conn_cfg.get('health_check_interval_s', 30))
        self.mode = ClientMode(mode_cfg.get('client_mode', ClientMode.CONTINUOUS.value))

        self.pool = pool
        self.transport = transport
        self.on_message = on_message
        self.on_transition = on_transition
        self._clock = clock

        self.running = False
        self._events: Optional[asyncio.Queue] = None
        self._readers: Dict[str, asyncio.Task] = {}
        self._reconnects: Dict[str, asyncio.Task] = {}
        self._startup_tasks: List[asyncio.Task] = []
        self._health_task: Optional[asyncio.Task] = None
        self._loop_task: Optional[asyncio.Task] = None
        self.reconnects_scheduled = 0

    @property
    def pending_reconnects(self) -> Dict[str, asyncio.Task]:
        return {cid: task for cid, task in self._reconnects.items() if not task.done()}

    async def start(self) -> None:
        if self.running:
            return
        self.running = True
        self._events = asyncio.Queue()
        self._loop_task = asyncio.create_task(self._event_loop())
        self._health_task = asyncio.create_task(self._health_loop())

        for conn in self.pool:
            delay = self.stagger_delay_s * conn.index
            self._startup_tasks.append(asyncio.create_task(self._open_after(conn, delay)))
        logger.info("All %s connections initiated", len(self.pool))

    async def _open_after(self, conn: Connection, delay: float) -> None:
        if delay > 0:
            await asyncio.sleep(delay)
        if self.running:
            self._open(conn)

    def _open(self, conn: Connection) -> None:
        conn.session += 1
        self._set_state(conn, ConnectionState.CONNECTING)
        logger.info("Connecting %s for users: %s", conn.id, ', '.join(conn.accounts))
        self._readers[conn.id] = asyncio.create_task(self._reader(conn.id, conn.session))

    async def _reader(self, connection_id: str, session: int) -> None:
        queue = self._events
        try:
            handle = await self.transport.open(self.url)
        except TransportError as exc:
            await queue.put(ConnectionEvent(EventKind.ERROR, connection_id, session, exc))
            await queue.put(ConnectionEvent(EventKind.CLOSE, connection_id, session))
            return

        await queue.put(ConnectionEvent(EventKind.OPEN, connection_id, session, handle))
        try:
            while True:
                raw = await self.transport.receive(handle)
                await queue.put(ConnectionEvent(EventKind.MESSAGE, connection_id, session, raw))
        except TransportError as exc:
            await queue.put(ConnectionEvent(EventKind.ERROR, connection_id, session, exc))
        await queue.put(ConnectionEvent(EventKind.CLOSE, connection_id, session))

    async def _event_loop(self) -> None:
        while True:
            event = await self._events.get()
            try:
                await self._handle_event(event)
            except Exception:
                logger.exception("Failed to handle %s event for %s", event.kind.value, event.connection_id)

    async def _handle_event(self, event: ConnectionEvent) -> None:
        conn = self.pool.get(event.connection_id)
        if conn is None:
            return
        if event.session != conn.session:
            if event.kind == EventKind.OPEN:
                await self.transport.close(event.payload)
            return

        if event.kind == EventKind.OPEN:
            conn.handle = event.payload
            conn.reconnect_attempts = 0
            conn.exhausted = False
            conn.last_heartbeat = self._clock()
            self._set_state(conn, ConnectionState.CONNECTED)
            logger.info("%s connected successfully", conn.id)
            await self._subscribe(conn)
        elif event.kind == EventKind.MESSAGE:
            conn.last_heartbeat = self._clock()
            conn.messages_count += 1
            await self.on_message(conn, event.payload)
        elif event.kind == EventKind.ERROR:
            logger.error("%s transport error: %s", conn.id, event.payload)
        elif event.kind == EventKind.CLOSE:
            logger.info("%s connection closed", conn.id)
            self._readers.pop(conn.id, None)
            handle, conn.handle = conn.handle, None
            if handle is not None:
                await self.transport.close(handle)
            self._set_state(conn, ConnectionState.DISCONNECTED)
            self.schedule_reconnect(conn)

    def subscription_messages(self, conn: Connection) -> List[Dict[str, Any]]:
        messages = []
        if SubscriptionKind.ACCOUNT_UPDATE in conn.subscription_kinds:
            for account in conn.accounts:
                messages.append(build_subscription(SubscriptionKind.ACCOUNT_UPDATE, user=account))
        if SubscriptionKind.PRICE_BROADCAST in conn.subscription_kinds:
            messages.append(build_subscription(SubscriptionKind.PRICE_BROADCAST, dex=self.price_dex))
        return messages

    async def _subscribe(self, conn: Connection) -> None:
        self._set_state(conn, ConnectionState.SUBSCRIBING)
        messages = self.subscription_messages(conn)
        try:
            for message in messages:
                await self.transport.send(conn.handle, message)
        except TransportError as exc:
            logger.error("%s failed to subscribe: %s", conn.id, exc)
            await self._drop_session(conn)
            self.schedule_reconnect(conn)
            return
        logger.info("%s sent %s subscriptions", conn.id, len(messages))
        self._set_state(conn, ConnectionState.RECEIVING)

    def schedule_reconnect(self, conn: Connection) -> Optional[float]:
        """Schedule the next reconnect attempt; return its delay, or None when none is scheduled."""
        if not self.running or self.mode != ClientMode.CONTINUOUS:
            return None
        pending = self._reconnects.get(conn.id)
        if pending is not None and not pending.done():
            return None
        if conn.reconnect_attempts >= self.max_reconnect_attempts:
            conn.exhausted = True
            logger.error("%s max reconnection attempts reached", conn.id)
            self._notify(conn)
            return None

        conn.reconnect_attempts += 1
        delay = backoff_delay(self.reconnect_base_delay_s, conn.reconnect_attempts)
        logger.info(
            "%s attempting reconnect %s/%s in %.1fs",
            conn.id,
            conn.reconnect_attempts,
            self.max_reconnect_attempts,
            delay,
        )
        self.reconnects_scheduled += 1
        self._reconnects[conn.id] = asyncio.create_task(self._reconnect_after(conn, delay))
        self._notify(conn)
        return delay

    async def _reconnect_after(self, conn: Connection, delay: float) -> None:
        await asyncio.sleep(delay)
        self._reconnects.pop(conn.id, None)
        if self.running and not conn.is_connected:
            self._open(conn)

    async def check_health(self, now: Optional[float] = None) -> List[Connection]:
        """Force silent connections down and, in continuous mode, onto the reconnect path."""
        now = self._clock() if now is None else now
        threshold = self.health_check_interval_s * 2
        unhealthy = []
        for conn in self.pool:
            silent_for = now - conn.last_heartbeat
            if conn.is_connected and silent_for > threshold:
                logger.warning("%s appears unhealthy (no heartbeat for %.1fs)", conn.id, silent_for)
                unhealthy.append(conn)
                await self._drop_session(conn)
                self.schedule_reconnect(conn)
            elif conn.exhausted:
                logger.warning("%s remains disconnected after %s reconnect attempts", conn.id, conn.reconnect_attempts)

        if not unhealthy:
            logger.info("Health check passed - %s/%s connections active", self.pool.active_count, len(self.pool))
        return unhealthy

    async def _health_loop(self) -> None:
        while self.running:
            await asyncio.sleep(self.health_check_interval_s)
            try:
                await self.check_health()
            except Exception:
                logger.exception("Health check failed")

    async def _drop_session(self, conn: Connection) -> None:
        conn.session += 1
        reader = self._readers.pop(conn.id, None)
        if reader is not None and not reader.done():
            reader.cancel()
            await asyncio.gather(reader, return_exceptions=True)
        handle, conn.handle = conn.handle, None
        if handle is not None:
            await self.transport.close(handle)
        self._set_state(conn, ConnectionState.DISCONNECTED)

    def _set_state(self, conn: Connection, state: ConnectionState) -> None:
        if conn.state == state:
            return
        conn.state = state
        self._notify(conn)

    def _notify(self, conn: Connection) -> None:
        if self.on_transition is not None:
            self.on_transition(conn)

    async def stop(self) -> None:
        """Cancel every timer and reader, close every transport, leave all connections disconnected."""
        self.running = False
        timers = list(self._startup_tasks) + list(self._reconnects.values())
        if self._health_task is not None:
            timers.append(self._health_task)
        for task in timers:
            task.cancel()
        await asyncio.gather(*timers, return_exceptions=True)
        self._startup_tasks.clear()
        self._reconnects.clear()
        self._health_task = None

        for conn in self.pool:
            was_open = conn.handle is not None
            await self._drop_session(conn)
            if was_open:
                logger.info("Disconnected %s", conn.id)

        if self._loop_task is not None:
            self._loop_task.cancel()
            await asyncio.gather(self._loop_task, return_exceptions=True)
            self._loop_task = None
