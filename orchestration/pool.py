import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence

from ingest.messages import SubscriptionKind

logger = logging.getLogger(__name__)


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    SUBSCRIBING = "subscribing"
    RECEIVING = "receiving"


LIVE_STATES = (ConnectionState.CONNECTED, ConnectionState.SUBSCRIBING, ConnectionState.RECEIVING)


@dataclass
class Connection:
    id: str
    index: int
    accounts: List[str]
    subscription_kinds: List[SubscriptionKind] = field(default_factory=list)
    handle: Optional[Any] = None
    state: ConnectionState = ConnectionState.DISCONNECTED
    reconnect_attempts: int = 0
    last_heartbeat: float = field(default_factory=time.monotonic)
    messages_count: int = 0
    exhausted: bool = False
    session: int = 0

    @property
    def is_connected(self) -> bool:
        return self.state in LIVE_STATES

    @property
    def status(self) -> str:
        if self.is_connected:
            return 'connected'
        if self.state == ConnectionState.CONNECTING or (self.reconnect_attempts and not self.exhausted):
            return 'reconnecting'
        return 'disconnected'

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'users': list(self.accounts),
            'state': self.state.value,
            'status': self.status,
            'messagesCount': self.messages_count,
            'reconnectAttempts': self.reconnect_attempts,
            'exhausted': self.exhausted,
        }


def partition_accounts(
    accounts: Iterable[str],
    max_per_connection: int,
    subscription_kinds: Sequence[SubscriptionKind] = (),
) -> List[Connection]:
    """Split accounts into consecutive groups of at most ``max_per_connection``.

    The first K accounts go to ``conn-1``, the next K to ``conn-2`` and so on.
    Repeated accounts (compared case-insensitively) keep their first position.
    """
    if max_per_connection < 1:
        raise ValueError("max_per_connection must be at least 1")

    unique: List[str] = []
    seen = set()
    for account in accounts:
        key = account.lower()
        if key in seen:
            logger.warning("Ignoring duplicate account %s", account)
            continue
        seen.add(key)
        unique.append(account)

    connections = []
    for index, start in enumerate(range(0, len(unique), max_per_connection)):
        group = unique[start:start + max_per_connection]
        connections.append(
            Connection(
                id=f"conn-{index + 1}",
                index=index,
                accounts=group,
                subscription_kinds=list(subscription_kinds),
            )
        )
    return connections


class ConnectionPool:
    """Ordered set of connections plus the account to connection lookup."""

    def __init__(
        self,
        accounts: Iterable[str],
        max_per_connection: int,
        subscription_kinds: Sequence[SubscriptionKind] = (),
    ):
        self.connections: List[Connection] = partition_accounts(accounts, max_per_connection, subscription_kinds)
        self._by_id: Dict[str, Connection] = {conn.id: conn for conn in self.connections}
        self._by_account: Dict[str, Connection] = {}
        for conn in self.connections:
            for account in conn.accounts:
                self._by_account[account.lower()] = conn

        logger.info(
            "Creating %s connections for %s users (max %s per connection)",
            len(self.connections),
            len(self._by_account),
            max_per_connection,
        )
        for conn in self.connections:
            logger.info("Connection %s: %s", conn.id, ', '.join(conn.accounts))

    def __iter__(self) -> Iterator[Connection]:
        return iter(self.connections)

    def __len__(self) -> int:
        return len(self.connections)

    def get(self, connection_id: str) -> Optional[Connection]:
        return self._by_id.get(connection_id)

    def connection_for(self, account: str) -> Optional[Connection]:
        return self._by_account.get(account.lower())

    def resolve_account(self, account: str) -> Optional[str]:
        """Return the configured spelling of ``account``."""
        conn = self.connection_for(account)
        if conn is None:
            return None
        key = account.lower()
        return next(a for a in conn.accounts if a.lower() == key)

    @property
    def accounts(self) -> List[str]:
        return [account for conn in self.connections for account in conn.accounts]

    @property
    def active_count(self) -> int:
        return sum(1 for conn in self.connections if conn.is_connected)


@dataclass
class PoolStatistics:
    total_connections: int
    active_connections: int
    total_users: int
    messages_received: int
    last_update: Optional[str]
    uptime_s: float
    connection_details: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    @classmethod
    def collect(
        cls,
        pool: ConnectionPool,
        messages_received: int,
        last_update: Optional[str],
        uptime_s: float,
    ) -> 'PoolStatistics':
        return cls(
            total_connections=len(pool),
            active_connections=pool.active_count,
            total_users=len(pool.accounts),
            messages_received=messages_received,
            last_update=last_update,
            uptime_s=uptime_s,
            connection_details={conn.id: conn.to_dict() for conn in pool},
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'totalConnections': self.total_connections,
            'activeConnections': self.active_connections,
            'totalUsers': self.total_users,
            'messagesReceived': self.messages_received,
            'lastUpdate': self.last_update,
            'uptimeSeconds': round(self.uptime_s, 1),
            'connectionDetails': self.connection_details,
        }
