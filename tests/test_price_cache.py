import sys

sys.path.insert(0, '.')

from analytics.price_cache import STABLE_PRICE, PriceCache, spot_meta_aliases


class FakeClock:
    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now


def test_broadcasts_inside_window_are_discarded():
    clock = FakeClock(100.0)
    cache = PriceCache(update_interval_s=5.0, clock=clock)

    assert cache.offer_broadcast({'SOL': '100'}) is True
    clock.now = 101.0
    assert cache.offer_broadcast({'SOL': '101'}) is False
    assert cache.lookup('SOL') == '100'

    clock.now = 105.0
    assert cache.offer_broadcast({'SOL': '102'}) is True
    assert cache.lookup('SOL') == '102'
    assert cache.applied_updates == 2
    assert cache.discarded_updates == 1


def test_explicit_timestamps_override_clock():
    cache = PriceCache(update_interval_s=5.0, clock=FakeClock(0.0))
    assert cache.offer_broadcast({'BTC': '60000'}, now=10.0)
    assert not cache.offer_broadcast({'BTC': '60001'}, now=14.9)
    assert cache.offer_broadcast({'BTC': '60002'}, now=15.0)
    assert cache.lookup('BTC') == '60002'


def test_broadcast_merges_into_existing_prices():
    cache = PriceCache(update_interval_s=0)
    cache.offer_broadcast({'BTC': '60000', 'ETH': '3000'})
    cache.offer_broadcast({'ETH': '3100'})
    assert cache.snapshot() == {'BTC': '60000', 'ETH': '3100'}
    assert len(cache) == 2


def test_spot_asset_lookup_uses_aliases_and_stable_price():
    cache = PriceCache(aliases={'USOL': 'SOL'})
    cache.update({'SOL': '100', 'USDC': '0.5'})

    assert cache.lookup_for_spot_asset('USOL') == '100'
    assert cache.lookup_for_spot_asset('SOL') == '100'
    assert cache.lookup_for_spot_asset('USDC') == STABLE_PRICE
    assert cache.lookup_for_spot_asset('UBTC') is None
    assert cache.is_stable('USDC')
    assert not cache.is_stable('USOL')


def test_add_aliases_keeps_configured_entries():
    cache = PriceCache(aliases={'USOL': 'SOL'})
    added = cache.add_aliases({'USOL': '@151', 'PURR': 'PURR/USDC'})

    assert added == 1
    assert cache.aliases == {'USOL': 'SOL', 'PURR': 'PURR/USDC'}
    assert cache.add_aliases({'USOL': '@151'}, override=True) == 1
    assert cache.aliases['USOL'] == '@151'


def test_spot_meta_aliases_maps_tokens_to_stable_pairs():
    spot_meta = {
        'tokens': [
            {'name': 'USDC', 'index': 0},
            {'name': 'PURR', 'index': 1},
            {'name': 'HFUN', 'index': 2},
            {'name': 'USOL', 'index': 3},
        ],
        'universe': [
            {'name': 'PURR/USDC', 'tokens': [1, 0], 'index': 0},
            {'name': '@1', 'tokens': [2, 0], 'index': 1},
            {'name': '@2', 'tokens': [2, 1], 'index': 2},
            {'name': '@151', 'tokens': [3, 0], 'index': 151},
            {'name': 'broken', 'tokens': [9]},
        ],
    }

    assert spot_meta_aliases(spot_meta, 'USDC') == {
        'PURR': 'PURR/USDC',
        'HFUN': '@1',
        'USOL': '@151',
    }
    assert spot_meta_aliases({}) == {}
