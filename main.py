import argparse
import asyncio
import json
import logging
import signal
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from analytics.price_cache import PriceCache, spot_meta_aliases
from api.metrics import MetricsCollector, metrics, start_metrics_server
from config import Config, config
from config.utils import get_config_section
from errors import PersistenceError
from ingest.market_data_manager import MarketDataManager
from ingest.messages import SubscriptionKind
from ingest.persister import FileStore
from ingest.websocket_client import WebSocketTransport
from monitoring.async_utils import run_tasks_with_cleanup
from monitoring.logging_utils import log_level, setup_logging
from orchestration.lifecycle import ClientMode, ConnectionLifecycleManager
from orchestration.persistence import PersistenceCoordinator, logical_date
from orchestration.pool import Connection, ConnectionPool, PoolStatistics
from orchestration.services import AccountEventService


logger = logging.getLogger(__name__)

DEFAULT_SUBSCRIPTIONS = [SubscriptionKind.ACCOUNT_UPDATE.value, SubscriptionKind.PRICE_BROADCAST.value]


class AccountWatchSystem:
    """Own the connection pool, price cache and account ledgers; aggregate pool statistics."""

    def __init__(
        self,
        config_obj: Optional[Any] = None,
        transport: Optional[Any] = None,
        store: Optional[FileStore] = None,
        metrics_collector: Optional[MetricsCollector] = None,
        clock: Callable[[], float] = time.monotonic,
        date_provider: Callable[[], str] = logical_date,
    ):
        self.config = config_obj if config_obj is not None else config
        self.feed_cfg = get_config_section(self.config, 'feed')
        self.conn_cfg = get_config_section(self.config, 'connections')
        self.mode_cfg = get_config_section(self.config, 'mode')
        self.pricing_cfg = get_config_section(self.config, 'pricing')
        self.monitoring_cfg = get_config_section(self.config, 'monitoring')

        self.mode = ClientMode(self.mode_cfg.get('client_mode', ClientMode.CONTINUOUS.value))
        self.duration_cap_s = float(self.mode_cfg.get('duration_cap_s', 300))
        self.min_messages_per_account = int(self.mode_cfg.get('min_messages_per_account', 10))
        self.status_every = int(self.monitoring_cfg.get('status_every_messages', 100))
        self._date_provider = date_provider

        kinds = [
            SubscriptionKind.parse(kind)
            for kind in (self.feed_cfg.get('subscription_types') or DEFAULT_SUBSCRIPTIONS)
        ]
        self.pool = ConnectionPool(
            self.feed_cfg.get('accounts') or [],
            int(self.conn_cfg.get('max_accounts_per_connection', 3)),
            kinds,
        )
        self.price_cache = PriceCache(
            aliases=self.pricing_cfg.get('aliases') or {},
            stable_asset=self.pricing_cfg.get('stable_asset', 'USDC'),
            update_interval_s=float(self.pricing_cfg.get('update_interval_s', 5)),
            clock=clock,
        )
        self.store = store or FileStore()
        self.metrics = metrics_collector or metrics
        self.persistence = PersistenceCoordinator(
            self.config,
            self.pool.accounts,
            self.store,
            date_provider,
            on_write_failure=self.metrics.record_persistence_failure,
        )

        self.events = AccountEventService(self)
        self.market_data_manager = MarketDataManager()
        self.market_data_manager.register_handlers(
            account_update=self.events.handle_account_update,
            price_broadcast=self.events.handle_price_broadcast,
            parse_error=self.events.handle_parse_error,
        )

        transport = transport or WebSocketTransport(open_timeout_s=float(self.feed_cfg.get('open_timeout_s', 10)))
        self.lifecycle = ConnectionLifecycleManager(
            self.config,
            self.pool,
            transport,
            on_message=self._on_message,
            on_transition=self._on_transition,
            clock=clock,
        )

        self.account_message_counts: Dict[str, int] = {account: 0 for account in self.pool.accounts}
        self.total_messages = 0
        self.last_update: Optional[str] = None
        self.started_at = time.monotonic()
        self.running = False
        self._stopped = False
        self._stop_requested: Optional[asyncio.Event] = None
        self._deadline_task: Optional[asyncio.Task] = None
        self._seen_attempts: Dict[str, int] = {}
        self._seen_exhausted: Dict[str, bool] = {}

    @property
    def bounded(self) -> bool:
        return self.mode == ClientMode.ONE_OFF

    def load_spot_meta(self) -> int:
        """Extend the alias table from the day's ``spotMeta.json`` if one was saved."""
        meta_dir = self.pricing_cfg.get('spot_meta_dir')
        if not meta_dir:
            return 0
        path = Path(meta_dir) / self._date_provider() / 'spotMeta.json'
        try:
            spot_meta = self.store.read_json(path)
        except PersistenceError as exc:
            logger.error("Error loading spotMeta: %s", exc)
            return 0
        if not isinstance(spot_meta, dict):
            logger.info("spotMeta.json not found at %s", path)
            return 0
        added = self.price_cache.add_aliases(spot_meta_aliases(spot_meta, self.price_cache.stable_asset))
        logger.info("Loaded %s spot token aliases from spotMeta", added)
        return added

    async def _on_message(self, conn: Connection, raw: Any) -> None:
        self.total_messages += 1
        self.last_update = datetime.now(timezone.utc).isoformat()
        self.metrics.record_message(conn.id)
        await self.market_data_manager.dispatch_raw(conn.id, raw)
        if self.status_every and self.total_messages % self.status_every == 0:
            self.log_connection_status()

    def _on_transition(self, conn: Connection) -> None:
        self.metrics.mark_connection(conn.id, conn.is_connected)
        self.metrics.update_connections(len(self.pool), self.pool.active_count)
        if conn.reconnect_attempts > self._seen_attempts.get(conn.id, 0):
            self.metrics.record_reconnect(conn.id)
        self._seen_attempts[conn.id] = conn.reconnect_attempts
        if conn.exhausted and not self._seen_exhausted.get(conn.id):
            self.metrics.record_exhausted(conn.id)
        self._seen_exhausted[conn.id] = conn.exhausted

    def min_messages_reached(self) -> bool:
        if not self.account_message_counts:
            return False
        return all(count >= self.min_messages_per_account for count in self.account_message_counts.values())

    def statistics(self) -> PoolStatistics:
        return PoolStatistics.collect(
            self.pool,
            messages_received=self.total_messages,
            last_update=self.last_update,
            uptime_s=time.monotonic() - self.started_at,
        )

    def detailed_status(self) -> Dict[str, Any]:
        status = self.statistics().to_dict()
        user_stats = {}
        for account in self.pool.accounts:
            ledger = self.persistence.ledger_for(account)
            conn = self.pool.connection_for(account)
            user_stats[account] = {
                'connectionId': conn.id if conn else 'unknown',
                'lowestValue': ledger.lowest_value if ledger else None,
                'highestValue': ledger.highest_value if ledger else None,
                'messageCount': ledger.message_count if ledger else 0,
                'messagesThisRun': self.account_message_counts.get(account, 0),
            }
        status['mode'] = self.mode.value
        status['saveMode'] = self.persistence.mode.value
        status['userStats'] = user_stats
        return status

    def log_connection_status(self) -> None:
        stats = self.statistics()
        logger.info("=== CONNECTION STATUS ===")
        logger.info("Active Connections: %s/%s", stats.active_connections, stats.total_connections)
        logger.info("Total Users: %s", stats.total_users)
        logger.info("Total Messages: %s", stats.messages_received)
        logger.info("Uptime: %.1fm", stats.uptime_s / 60)
        for conn_id, details in stats.connection_details.items():
            logger.info(
                "   %s: %s users, %s msgs, %s",
                conn_id,
                len(details['users']),
                details['messagesCount'],
                details['status'],
            )

    def request_stop(self) -> None:
        if self._stop_requested is not None:
            self._stop_requested.set()

    async def start(self) -> None:
        if self.running:
            return
        self.running = True
        self._stopped = False
        self._stop_requested = asyncio.Event()
        self.started_at = time.monotonic()

        logger.info(
            "Starting account watcher: %s connections, %s users, mode=%s, save=%s",
            len(self.pool),
            len(self.pool.accounts),
            self.mode.value,
            self.persistence.mode.value,
        )
        self.persistence.resume_all()
        self.load_spot_meta()
        start_metrics_server(
            int(self.monitoring_cfg.get('prometheus_port', 0) or 0),
            port_scan=int(self.monitoring_cfg.get('prometheus_port_scan', 0) or 0),
            port_file=self.monitoring_cfg.get('metrics_port_file'),
        )
        self.metrics.update_connections(len(self.pool), 0)

        if not len(self.pool):
            logger.warning("No accounts configured; idling")
        await self.lifecycle.start()
        if self.bounded:
            self._deadline_task = asyncio.create_task(self._bounded_deadline())

    async def _bounded_deadline(self) -> None:
        await asyncio.sleep(self.duration_cap_s)
        logger.info("Duration cap of %.0fs reached; stopping", self.duration_cap_s)
        self.request_stop()

    async def run(self) -> None:
        await self.start()
        tasks = [asyncio.create_task(self._stop_requested.wait())]
        await run_tasks_with_cleanup(tasks, cleanup=self.stop)

    async def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        self.running = False
        logger.info("Disconnecting all connections...")
        if self._deadline_task is not None:
            self._deadline_task.cancel()
            await asyncio.gather(self._deadline_task, return_exceptions=True)
            self._deadline_task = None
        try:
            await self.lifecycle.stop()
        finally:
            self.persistence.flush_all()
            self.metrics.update_connections(len(self.pool), self.pool.active_count)
            self.log_connection_status()


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Track account values over the Hyperliquid websocket feed")
    parser.add_argument('--config', help="Path to a YAML configuration file")
    parser.add_argument('--mode', choices=[m.value for m in ClientMode], help="Override mode.client_mode")
    return parser.parse_args(argv)


async def main(argv=None):
    args = parse_args(argv)
    config_obj = Config(args.config) if args.config else config
    if args.mode:
        config_obj.override('mode', 'client_mode', args.mode)

    setup_logging(log_level(get_config_section(config_obj, 'monitoring').get('log_level')))

    system = AccountWatchSystem(config_obj)
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, system.request_stop)
        except NotImplementedError:
            pass

    try:
        await system.run()
    except (KeyboardInterrupt, asyncio.CancelledError):
        logger.info("System shutting down on interrupt")
        await system.stop()

    status = system.detailed_status()
    logger.info(
        "Final Status: %s",
        json.dumps(
            {
                'totalConnections': status['totalConnections'],
                'activeConnections': status['activeConnections'],
                'totalUsers': status['totalUsers'],
                'totalMessages': status['messagesReceived'],
                'userCount': len(status['userStats']),
            },
            indent=2,
        ),
    )


if __name__ == "__main__":
    asyncio.run(main())
