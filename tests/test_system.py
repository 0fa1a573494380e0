#!/usr/bin/env python
"""
End-to-end tests of the account watcher over an in-memory feed
"""
import asyncio
import json
import sys

sys.path.insert(0, '.')

from prometheus_client import CollectorRegistry

from api.metrics import MetricsCollector
from errors import PersistenceError
from ingest.persister import FileStore
from main import AccountWatchSystem
from orchestration.pool import ConnectionState
from tests.feed_fixtures import FakeTransport, account_update, price_broadcast, wait_until


DATE = '20240101'
USOL_BALANCES = [
    {'coin': 'USDC', 'total': '50', 'entryNtl': '0.0'},
    {'coin': 'USOL', 'total': '2', 'entryNtl': '190'},
]


def _config(save_mode='historical', client_mode='oneOff', accounts=('0xA1', '0xb2'), duration=5):
    return {
        'feed': {
            'url': 'wss://example.invalid/ws',
            'accounts': list(accounts),
            'subscription_types': ['webData2', 'allMids'],
        },
        'connections': {
            'max_accounts_per_connection': 1,
            'stagger_delay_s': 0,
            'reconnect_base_delay_s': 0.01,
            'max_reconnect_attempts': 5,
            'health_check_interval_s': 30,
        },
        'mode': {'client_mode': client_mode, 'duration_cap_s': duration, 'min_messages_per_account': 2},
        'persistence': {
            'save_mode': save_mode,
            'raw_dir': 'raw',
            'historical_dir': 'hist',
            'local_utc_offset_hours': 8,
        },
        'pricing': {
            'update_interval_s': 5,
            'stable_asset': 'USDC',
            'aliases': {'USOL': 'SOL'},
            'spot_meta_dir': 'meta',
        },
        'monitoring': {'prometheus_port': 0, 'status_every_messages': 100},
    }


def _system(tmp_path, transport, **overrides):
    registry = CollectorRegistry()
    system = AccountWatchSystem(
        _config(**overrides),
        transport=transport,
        store=FileStore(tmp_path),
        metrics_collector=MetricsCollector(registry),
        date_provider=lambda: DATE,
    )
    return system, registry


def _receiving(system):
    return all(conn.state == ConnectionState.RECEIVING for conn in system.pool)


def test_one_off_run_stops_after_min_messages(tmp_path):
    transport = FakeTransport()
    system, registry = _system(tmp_path, transport)

    async def _run():
        runner = asyncio.create_task(system.run())
        await wait_until(lambda: _receiving(system))
        transport.handles[0].push(price_broadcast({'SOL': '100', 'BTC': '60000'}))
        await wait_until(lambda: system.price_cache.lookup('SOL') == '100')

        transport.handles[0].push(account_update('0xa1', '1000.00', balances=USOL_BALANCES))
        transport.handles[1].push(account_update('0xb2', '20.0'))
        transport.handles[0].push(account_update('0xa1', '900.00', balances=USOL_BALANCES))
        transport.handles[1].push(account_update('0xb2', '25.0'))
        await asyncio.wait_for(runner, timeout=3)

    asyncio.run(_run())

    history = json.loads((tmp_path / 'hist' / DATE / '0xa1.json').read_text())
    assert [entry['totalAccountValue'] for entry in history] == ['1250.0', '1150.0']
    assert history[0]['pricesUsed'] == {'USDC': '1.00', 'USOL': '100'}
    assert history[0]['priceSource'] == 'live'

    lowest = json.loads((tmp_path / 'hist' / DATE / '0xa1-lowest.json').read_text())
    assert lowest['totalAccountValue'] == '1150.0'
    lowest_b2 = json.loads((tmp_path / 'hist' / DATE / '0xb2-lowest.json').read_text())
    assert lowest_b2['totalAccountValue'] == '20.0'

    assert system.account_message_counts == {'0xA1': 2, '0xb2': 2}
    assert all(handle.closed for handle in transport.handles)
    assert transport.open_calls == 2
    assert registry.get_sample_value('account_lowest_value', {'account': '0xA1'}) == 1150.0
    assert registry.get_sample_value('feed_connections_active') == 0


def test_one_off_run_honours_duration_cap(tmp_path):
    transport = FakeTransport()
    system, _ = _system(tmp_path, transport, duration=0.1)

    async def _run():
        await asyncio.wait_for(system.run(), timeout=3)

    asyncio.run(_run())
    assert not system.running
    assert system.total_messages == 0
    assert all(conn.state == ConnectionState.DISCONNECTED for conn in system.pool)


def test_continuous_raw_mode_tracks_margin_value(tmp_path):
    transport = FakeTransport()
    system, registry = _system(tmp_path, transport, save_mode='all', client_mode='continuous', accounts=('0xA1',))

    async def _run():
        await system.start()
        await wait_until(lambda: _receiving(system))
        handle = transport.handles[0]
        for value in ('100.0', '80.0', '120.0'):
            handle.push(account_update('0xA1', value, balances=USOL_BALANCES))
        handle.push('garbage')
        handle.push(account_update('0xffff', '1.0'))
        await wait_until(lambda: system.total_messages == 5)
        status = system.detailed_status()
        await system.stop()
        return status

    status = asyncio.run(_run())

    events = json.loads((tmp_path / 'raw' / DATE / '0xa1-lowestAccountValue.json').read_text())
    assert [event['accountValue'] for event in events] == ['100.0', '80.0']
    messages = json.loads((tmp_path / 'raw' / DATE / '0xa1.json').read_text())
    assert len(messages) == 3

    user_stats = status['userStats']['0xA1']
    assert user_stats['lowestValue'] == 80.0
    assert user_stats['highestValue'] == 120.0
    assert user_stats['messageCount'] == 3
    assert user_stats['connectionId'] == 'conn-1'
    assert status['mode'] == 'continuous'
    assert status['saveMode'] == 'all'
    assert status['messagesReceived'] == 5
    assert status['activeConnections'] == 1

    assert registry.get_sample_value('feed_dropped_messages_total', {'reason': 'parse_error'}) == 1.0
    assert registry.get_sample_value('feed_dropped_messages_total', {'reason': 'unknown_account'}) == 1.0
    assert registry.get_sample_value('feed_messages_received_total', {'connection': 'conn-1'}) == 5.0
    assert registry.get_sample_value('account_total_value', {'account': '0xA1'}) == 120.0


def test_restart_resumes_lowest_value(tmp_path):
    async def _session(values):
        transport = FakeTransport()
        system, _ = _system(tmp_path, transport, client_mode='continuous', accounts=('0xA1',))
        await system.start()
        await wait_until(lambda: _receiving(system))
        for value in values:
            transport.handles[0].push(account_update('0xA1', value))
        await wait_until(lambda: system.total_messages == len(values))
        await system.stop()
        return system

    asyncio.run(_session(['50.0', '40.0']))
    system = asyncio.run(_session(['45.0']))

    ledger = system.persistence.ledger_for('0xA1')
    assert ledger.lowest_value == 40.0
    assert ledger.message_count == 3
    lowest = json.loads((tmp_path / 'hist' / DATE / '0xa1-lowest.json').read_text())
    assert lowest['totalAccountValue'] == '40.0'


def test_reconnect_metrics_and_exhaustion(tmp_path):
    transport = FakeTransport(fail_opens=10)
    system, registry = _system(tmp_path, transport, client_mode='continuous', accounts=('0xA1',))

    async def _run():
        await system.start()
        conn = system.pool.get('conn-1')
        await wait_until(lambda: conn.exhausted, timeout=3)
        await system.stop()

    asyncio.run(_run())
    assert transport.open_calls == 6
    assert registry.get_sample_value('feed_reconnects_total', {'connection': 'conn-1'}) == 5.0
    assert registry.get_sample_value('feed_reconnects_exhausted_total', {'connection': 'conn-1'}) == 1.0
    assert system.statistics().connection_details['conn-1']['exhausted']


def test_spot_meta_extends_aliases(tmp_path):
    spot_meta = {
        'tokens': [{'name': 'USDC', 'index': 0}, {'name': 'HYPE', 'index': 150}, {'name': 'USOL', 'index': 3}],
        'universe': [
            {'name': '@107', 'tokens': [150, 0]},
            {'name': '@151', 'tokens': [3, 0]},
        ],
    }
    FileStore(tmp_path).write_json(f'meta/{DATE}/spotMeta.json', spot_meta)
    system, _ = _system(tmp_path, FakeTransport())

    assert system.load_spot_meta() == 1
    assert system.price_cache.aliases == {'USOL': 'SOL', 'HYPE': '@107'}


def test_missing_spot_meta_is_ignored(tmp_path):
    system, _ = _system(tmp_path, FakeTransport())
    assert system.load_spot_meta() == 0
    assert system.price_cache.aliases == {'USOL': 'SOL'}


class FailingStore(FileStore):
    def __init__(self, root):
        super().__init__(root)
        self.fail = False

    def write_json(self, path, document):
        if self.fail:
            raise PersistenceError("read-only filesystem", path=str(path))
        super().write_json(path, document)


def test_persistence_failures_counted_per_failed_write(tmp_path):
    transport = FakeTransport()
    registry = CollectorRegistry()
    store = FailingStore(tmp_path)
    system = AccountWatchSystem(
        _config(client_mode='continuous', accounts=('0xa1',)),
        transport=transport,
        store=store,
        metrics_collector=MetricsCollector(registry),
        date_provider=lambda: DATE,
    )

    def _failures():
        return registry.get_sample_value('persistence_failures_total') or 0

    async def _run():
        await system.start()
        await wait_until(lambda: _receiving(system))
        store.fail = True
        transport.handles[0].push(account_update('0xa1', '100.0'))
        await wait_until(lambda: system.account_message_counts['0xa1'] == 1)
        first = _failures()
        store.fail = False
        transport.handles[0].push(account_update('0xa1', '120.0'))
        transport.handles[0].push(account_update('0xa1', '130.0'))
        await wait_until(lambda: system.account_message_counts['0xa1'] == 3)
        await system.stop()
        return first

    first = asyncio.run(_run())
    # history and lowest files
    assert first == 2
    assert _failures() == 2
