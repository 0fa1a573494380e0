import asyncio
import errno
import sys

sys.path.insert(0, '.')

import pytest
from prometheus_client import CollectorRegistry

import api.metrics as metrics_module
from api.metrics import MetricsCollector, start_metrics_server
from ingest.persister import FileStore
from main import AccountWatchSystem
from tests.feed_fixtures import FakeTransport


class PortBinder:
    def __init__(self, busy):
        self.busy = set(busy)
        self.attempts = []

    def __call__(self, port):
        self.attempts.append(port)
        if port in self.busy:
            raise OSError(errno.EADDRINUSE, "Address already in use")


@pytest.fixture
def binder(monkeypatch):
    monkeypatch.setattr(metrics_module, '_METRICS_SERVER_STARTED', False)
    fake = PortBinder(busy={9100, 9101})
    monkeypatch.setattr(metrics_module, 'start_http_server', fake)
    return fake


def test_port_scan_skips_busy_ports_and_records_port(binder, tmp_path):
    port_file = tmp_path / 'run' / 'metrics.port'
    assert start_metrics_server(9100, port_scan=3, port_file=port_file) == 9102
    assert binder.attempts == [9100, 9101, 9102]
    assert port_file.read_text() == '9102'
    # already running
    assert start_metrics_server(9100, port_scan=3) is None


def test_port_scan_exhausted_raises(binder):
    with pytest.raises(RuntimeError):
        start_metrics_server(9100, port_scan=1)
    assert binder.attempts == [9100, 9101]


def test_disabled_port_never_binds(binder):
    assert start_metrics_server(0, port_scan=5) is None
    assert binder.attempts == []


def test_system_uses_its_own_monitoring_settings(binder, tmp_path):
    config = {
        'feed': {'url': 'wss://example.invalid/ws', 'accounts': ['0xa1'], 'subscription_types': ['webData2']},
        'connections': {'stagger_delay_s': 0, 'reconnect_base_delay_s': 0.01},
        'mode': {'client_mode': 'continuous'},
        'persistence': {'save_mode': 'historical', 'historical_dir': 'hist'},
        'monitoring': {
            'prometheus_port': 9100,
            'prometheus_port_scan': 4,
            'metrics_port_file': str(tmp_path / 'metrics.port'),
        },
    }
    system = AccountWatchSystem(
        config,
        transport=FakeTransport(),
        store=FileStore(tmp_path),
        metrics_collector=MetricsCollector(CollectorRegistry()),
    )

    async def _run():
        await system.start()
        await system.stop()

    asyncio.run(_run())
    assert binder.attempts == [9100, 9101, 9102]
    assert (tmp_path / 'metrics.port').read_text() == '9102'
