import errno
import logging
from pathlib import Path
from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge, start_http_server
from typing import Optional, Union


logger = logging.getLogger(__name__)

_METRICS_SERVER_STARTED = False


def _write_port_file(port_file: Optional[Union[str, Path]], port: int) -> None:
    if not port_file:
        return
    port_file = Path(port_file)
    try:
        port_file.parent.mkdir(parents=True, exist_ok=True)
        port_file.write_text(str(port))
    except OSError as exc:
        logger.warning("Failed to persist metrics port file %s: %s", port_file, exc)


class MetricsCollector:
    def __init__(self, registry: CollectorRegistry = REGISTRY):
        self.connections_total = Gauge(
            'feed_connections_total', 'Configured feed connections', registry=registry
        )
        self.connections_active = Gauge(
            'feed_connections_active', 'Feed connections currently connected', registry=registry
        )
        self.connection_up = Gauge(
            'feed_connection_up', 'Connection connectivity flag', ['connection'], registry=registry
        )
        self.messages_received = Counter(
            'feed_messages_received_total', 'Inbound feed messages', ['connection'], registry=registry
        )
        self.reconnect_count = Counter(
            'feed_reconnects_total', 'Scheduled reconnect attempts', ['connection'], registry=registry
        )
        self.reconnects_exhausted = Counter(
            'feed_reconnects_exhausted_total', 'Connections that spent their reconnect budget',
            ['connection'], registry=registry
        )
        self.dropped_messages = Counter(
            'feed_dropped_messages_total', 'Dropped inbound messages', ['reason'], registry=registry
        )
        self.price_updates = Counter(
            'price_cache_updates_total', 'Broadcast price updates by outcome', ['outcome'], registry=registry
        )
        self.persistence_failures = Counter(
            'persistence_failures_total', 'Failed log writes', registry=registry
        )
        self.account_value = Gauge(
            'account_total_value', 'Latest total account value', ['account'], registry=registry
        )
        self.lowest_account_value = Gauge(
            'account_lowest_value', 'Lowest account value observed today', ['account'], registry=registry
        )

    def update_connections(self, total: int, active: int):
        self.connections_total.set(total)
        self.connections_active.set(active)

    def mark_connection(self, connection_id: str, connected: bool):
        self.connection_up.labels(connection=connection_id).set(1 if connected else 0)

    def record_message(self, connection_id: str):
        self.messages_received.labels(connection=connection_id).inc()

    def record_reconnect(self, connection_id: str):
        self.reconnect_count.labels(connection=connection_id).inc()

    def record_exhausted(self, connection_id: str):
        self.reconnects_exhausted.labels(connection=connection_id).inc()

    def record_drop(self, reason: str):
        self.dropped_messages.labels(reason=reason).inc()

    def record_price_update(self, applied: bool):
        self.price_updates.labels(outcome='applied' if applied else 'throttled').inc()

    def record_persistence_failure(self):
        self.persistence_failures.inc()

    def update_account_value(self, account: str, value: Optional[float]):
        if value is not None:
            self.account_value.labels(account=account).set(value)

    def update_lowest_value(self, account: str, value: Optional[float]):
        if value is not None:
            self.lowest_account_value.labels(account=account).set(value)


def start_metrics_server(
    port: int = 9090,
    port_scan: int = 0,
    port_file: Optional[Union[str, Path]] = None,
) -> Optional[int]:
    """Start the Prometheus exporter on ``port`` or one of the next ``port_scan`` ports.

    Returns the bound port, or None when disabled or already running.
    """
    global _METRICS_SERVER_STARTED
    if _METRICS_SERVER_STARTED or not port:
        return None
    port_scan_limit = max(0, int(port_scan or 0))
    last_error: Optional[OSError] = None
    for offset in range(port_scan_limit + 1):
        candidate = port + offset
        try:
            start_http_server(candidate)
        except OSError as exc:
            last_error = exc
            if exc.errno == errno.EADDRINUSE:
                logger.warning(
                    "Prometheus metrics server port %s already in use; trying next candidate",
                    candidate,
                )
                continue
            raise
        _METRICS_SERVER_STARTED = True
        _write_port_file(port_file, candidate)
        logger.info("Prometheus metrics server started on port %s", candidate)
        return candidate
    if last_error and last_error.errno == errno.EADDRINUSE:
        raise RuntimeError(
            f"Unable to bind Prometheus metrics server on ports {port}-{port + port_scan_limit}"
        ) from last_error
    if last_error:
        raise last_error
    return None


metrics = MetricsCollector()
