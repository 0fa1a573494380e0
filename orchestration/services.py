import logging
from typing import TYPE_CHECKING

from analytics.valuation import build_snapshot
from errors import MessageParseError, ValuationError
from ingest.messages import AccountUpdate, PriceBroadcast
from orchestration.persistence import HistoricalLedger, RawLedger

if TYPE_CHECKING:
    from main import AccountWatchSystem


logger = logging.getLogger(__name__)

STATUS_EVERY_ACCOUNT_MESSAGES = 10


class AccountEventService:
    """Handlers for decoded feed messages: valuation, persistence and price updates."""

    def __init__(self, system: 'AccountWatchSystem'):
        self.system = system

    async def handle_account_update(self, connection_id: str, update: AccountUpdate) -> None:
        system = self.system
        account = system.pool.resolve_account(update.user)
        if account is None:
            logger.warning("Could not find configured account for %s (from %s)", update.user, connection_id)
            system.metrics.record_drop('unknown_account')
            return

        system.account_message_counts[account] += 1
        ledger = system.persistence.ledger_for(account)

        if isinstance(ledger, HistoricalLedger):
            self._record_historical(ledger, update)
        elif isinstance(ledger, RawLedger):
            self._record_raw(ledger, update)

        system.metrics.update_lowest_value(account, ledger.lowest_value)

        count = system.account_message_counts[account]
        if count % STATUS_EVERY_ACCOUNT_MESSAGES == 0:
            logger.info(
                "Status %s - Lowest: %s, Highest: %s, Messages: %s",
                account,
                ledger.lowest_value,
                ledger.highest_value,
                count,
            )

        if system.bounded and system.min_messages_reached():
            logger.info("Every account reached %s messages; stopping", system.min_messages_per_account)
            system.request_stop()

    def _record_historical(self, ledger: HistoricalLedger, update: AccountUpdate) -> None:
        system = self.system
        try:
            snapshot = build_snapshot(update, system.price_cache, system.persistence.utc_offset_hours)
        except ValuationError as exc:
            logger.warning("Skipping valuation for %s: %s", ledger.account, exc)
            system.metrics.record_drop('valuation')
            return
        ledger.record_snapshot(snapshot)
        system.metrics.update_account_value(ledger.account, snapshot.total_account_value)

    def _record_raw(self, ledger: RawLedger, update: AccountUpdate) -> None:
        system = self.system
        ledger.record_message(update)
        try:
            ledger.record_account_value(update)
        except ValuationError as exc:
            logger.warning("Skipping lowest value tracking for %s: %s", ledger.account, exc)
            system.metrics.record_drop('valuation')
            return
        system.metrics.update_account_value(ledger.account, float(update.margin_summary['accountValue']))

    async def handle_price_broadcast(self, connection_id: str, broadcast: PriceBroadcast) -> None:
        system = self.system
        applied = system.price_cache.offer_broadcast(broadcast.mids)
        system.metrics.record_price_update(applied)
        if applied:
            logger.info("Updated price data (%s tokens) from %s", len(broadcast.mids), connection_id)

    async def handle_parse_error(self, connection_id: str, error: MessageParseError) -> None:
        self.system.metrics.record_drop('parse_error')
