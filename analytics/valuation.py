import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional

from analytics.price_cache import PriceCache
from errors import ValuationError
from ingest.messages import AccountUpdate

logger = logging.getLogger(__name__)

FALLBACK_MARKER = 'entryNtl'


class PriceSource(str, Enum):
    LIVE = 'live'
    FALLBACK = 'fallback'


@dataclass
class ValuationResult:
    total_value: float
    prices_used: Dict[str, str] = field(default_factory=dict)
    price_source: PriceSource = PriceSource.LIVE


@dataclass(frozen=True)
class ValuationSnapshot:
    """One valued account update as stored in the historical log."""

    total_account_value: float
    margin_component: str
    spot_balances: List[Dict[str, Any]]
    prices_used: Dict[str, str]
    server_time: Optional[int]
    local_time: Optional[str]
    price_source: PriceSource

    def to_dict(self) -> Dict[str, Any]:
        return {
            'totalAccountValue': str(self.total_account_value),
            'clearinghouseState': self.margin_component,
            'spotBalance': self.spot_balances,
            'pricesUsed': self.prices_used,
            'serverTime': self.server_time,
            'localTime': self.local_time,
            'priceSource': self.price_source.value,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'ValuationSnapshot':
        source = data.get('priceSource')
        return cls(
            total_account_value=parse_number(data.get('totalAccountValue'), 'totalAccountValue'),
            margin_component=str(data.get('clearinghouseState', '0')),
            spot_balances=list(data.get('spotBalance') or []),
            prices_used=dict(data.get('pricesUsed') or {}),
            server_time=data.get('serverTime'),
            local_time=data.get('localTime'),
            price_source=PriceSource.LIVE if source == PriceSource.LIVE.value else PriceSource.FALLBACK,
        )


def parse_number(value: Any, field_name: str) -> float:
    if value is None:
        raise ValuationError(f"Missing required field '{field_name}'", field=field_name)
    if isinstance(value, bool):
        raise ValuationError(f"Field '{field_name}' is not numeric: {value!r}", field=field_name)
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise ValuationError(f"Field '{field_name}' is not numeric: {value!r}", field=field_name) from exc
    if not math.isfinite(number):
        raise ValuationError(f"Field '{field_name}' is not finite: {value!r}", field=field_name)
    return number


def compute_total_value(
    margin_value: Any,
    spot_balances: Iterable[Mapping[str, Any]],
    price_cache: Optional[PriceCache] = None,
) -> ValuationResult:
    """Value an account as margin value plus its positive spot holdings.

    Non-stable holdings use the cached live price when one exists and fall back
    to the balance's own ``entryNtl`` otherwise. ``price_source`` is ``live``
    only if no holding needed the fallback.
    """
    total = parse_number(margin_value, 'marginSummary.accountValue')
    prices_used: Dict[str, str] = {}
    source = PriceSource.LIVE
    cache = price_cache if price_cache is not None else PriceCache()

    for balance in spot_balances:
        coin = balance.get('coin')
        if not coin:
            raise ValuationError("Spot balance without coin", field='coin')
        quantity = parse_number(balance.get('total'), f'{coin}.total')
        if quantity <= 0:
            continue

        if cache.is_stable(coin):
            total += quantity * 1.0
            prices_used[coin] = '1.00'
            continue

        live_price = cache.lookup_for_spot_asset(coin)
        if live_price is not None:
            total += quantity * parse_number(live_price, f'price[{coin}]')
            prices_used[coin] = live_price
        else:
            entry_ntl = balance.get('entryNtl')
            total += parse_number(entry_ntl, f'{coin}.entryNtl')
            prices_used[coin] = f'{FALLBACK_MARKER}:{entry_ntl}'
            source = PriceSource.FALLBACK
            logger.debug("%s: using entryNtl %s (no current price available)", coin, entry_ntl)

    return ValuationResult(total_value=total, prices_used=prices_used, price_source=source)


def format_local_time(server_time_ms: Optional[int], utc_offset_hours: float = 8) -> Optional[str]:
    """Render a millisecond server timestamp as ``YYYYMMDDTHH:MM:SSZ+8``."""
    if server_time_ms is None:
        return None
    tz = timezone(timedelta(hours=utc_offset_hours))
    try:
        moment = datetime.fromtimestamp(server_time_ms / 1000, tz=tz)
    except (OverflowError, OSError, ValueError):
        logger.warning("Server time %r cannot be rendered as a local time", server_time_ms)
        return None
    offset = int(utc_offset_hours) if float(utc_offset_hours).is_integer() else utc_offset_hours
    sign = '+' if utc_offset_hours >= 0 else '-'
    return f"{moment.strftime('%Y%m%dT%H:%M:%S')}Z{sign}{abs(offset)}"


def build_snapshot(
    update: AccountUpdate,
    price_cache: Optional[PriceCache] = None,
    utc_offset_hours: float = 8,
) -> ValuationSnapshot:
    margin_summary = update.margin_summary
    if not margin_summary:
        raise ValuationError("Account update without marginSummary", field='marginSummary')
    margin_value = margin_summary.get('accountValue')
    result = compute_total_value(margin_value, update.spot_balances, price_cache)
    return ValuationSnapshot(
        total_account_value=result.total_value,
        margin_component=str(margin_value),
        spot_balances=list(update.spot_balances),
        prices_used=result.prices_used,
        server_time=update.server_time,
        local_time=format_local_time(update.server_time, utc_offset_hours),
        price_source=result.price_source,
    )
