import logging
import time
from typing import Callable, Dict, Mapping, Optional

logger = logging.getLogger(__name__)

STABLE_PRICE = "1.0"


class PriceCache:
    """Latest mid price per symbol, fed by the broadcast price stream.

    Spot-only token names are resolved through a static alias table
    (``USOL`` is quoted as ``SOL`` in the broadcast). The stable asset is never
    looked up and always prices at 1.0.
    """

    def __init__(
        self,
        aliases: Optional[Mapping[str, str]] = None,
        stable_asset: str = 'USDC',
        update_interval_s: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.aliases: Dict[str, str] = dict(aliases or {})
        self.stable_asset = stable_asset
        self.update_interval_s = update_interval_s
        self._clock = clock
        self._prices: Dict[str, str] = {}
        self._last_applied: Optional[float] = None
        self.applied_updates = 0
        self.discarded_updates = 0

    def __len__(self) -> int:
        return len(self._prices)

    def update(self, mids: Mapping[str, str]) -> None:
        for coin, price in mids.items():
            self._prices[coin] = price

    def offer_broadcast(self, mids: Mapping[str, str], now: Optional[float] = None) -> bool:
        """Apply a broadcast snapshot unless one was applied within the throttle window."""
        now = self._clock() if now is None else now
        if self._last_applied is not None and now - self._last_applied < self.update_interval_s:
            self.discarded_updates += 1
            return False
        self.update(mids)
        self._last_applied = now
        self.applied_updates += 1
        logger.debug("Updated prices for %s tokens", len(mids))
        return True

    def lookup(self, symbol: str) -> Optional[str]:
        return self._prices.get(symbol)

    def lookup_for_spot_asset(self, symbol: str) -> Optional[str]:
        if symbol == self.stable_asset:
            return STABLE_PRICE
        alias = self.aliases.get(symbol)
        if alias:
            return self.lookup(alias)
        return self.lookup(symbol)

    def is_stable(self, symbol: str) -> bool:
        return symbol == self.stable_asset

    def add_aliases(self, aliases: Mapping[str, str], override: bool = False) -> int:
        added = 0
        for spot_name, priced_name in aliases.items():
            if spot_name in self.aliases and not override:
                continue
            self.aliases[spot_name] = priced_name
            added += 1
        return added

    def snapshot(self) -> Dict[str, str]:
        return dict(self._prices)


def spot_meta_aliases(spot_meta: Mapping, stable_asset: str = 'USDC') -> Dict[str, str]:
    """Map spot token names to the broadcast key of their pair against the stable asset.

    ``spot_meta`` is the exchange's spot metadata document: ``tokens`` lists
    ``{name, index}`` entries and ``universe`` lists pairs as
    ``{name, tokens: [base_index, quote_index]}``. Broadcast mids are keyed by
    the pair name (``PURR/USDC`` or ``@107``).
    """
    token_names = {}
    for token in spot_meta.get('tokens') or []:
        if isinstance(token, Mapping) and 'index' in token and token.get('name'):
            token_names[token['index']] = token['name']

    aliases: Dict[str, str] = {}
    for pair in spot_meta.get('universe') or []:
        if not isinstance(pair, Mapping):
            continue
        indices = pair.get('tokens') or []
        if len(indices) < 2 or not pair.get('name'):
            continue
        base, quote = token_names.get(indices[0]), token_names.get(indices[1])
        if base and quote == stable_asset and base != stable_asset:
            aliases.setdefault(base, pair['name'])
    return aliases
