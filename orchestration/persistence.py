"""Per-account file logs with resume-from-disk.

Every log is a JSON document rewritten in full through the store's atomic
replace, so each completed write leaves a parseable file behind.
"""
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

from analytics.valuation import ValuationSnapshot, format_local_time, parse_number
from config.utils import get_config_section
from errors import PersistenceError, ValuationError
from ingest.messages import AccountUpdate
from ingest.persister import FileStore


logger = logging.getLogger(__name__)

DateProvider = Callable[[], str]


class SaveMode(str, Enum):
    ALL = 'all'
    SPOT_AND_PERPS = 'spotAndPerps'
    HISTORICAL = 'historical'


def logical_date(now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    return now.astimezone(timezone.utc).strftime('%Y%m%d')


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec='milliseconds').replace('+00:00', 'Z')


class AccountLedger(ABC):
    """Shared date partitioning, resume and retry bookkeeping for one account."""

    def __init__(self, account: str, base_dir: str, store: FileStore, date_provider: DateProvider = logical_date):
        self.account = account
        self.file_key = account.lower()
        self.base_dir = Path(base_dir)
        self.store = store
        self._date_provider = date_provider
        self.date = date_provider()
        self.lowest_value: Optional[float] = None
        self.highest_value: Optional[float] = None
        self._pending: Dict[Path, Any] = {}
        self.write_failures = 0
        self.on_write_failure: Optional[Callable[[], None]] = None

    @property
    def directory(self) -> Path:
        return self.base_dir / self.date

    def _path(self, suffix: str = '') -> Path:
        return self.directory / f"{self.file_key}{suffix}.json"

    def _reset(self) -> None:
        self.lowest_value = None
        self.highest_value = None

    @abstractmethod
    def resume(self) -> None:
        """Rebuild in-memory state from the current date's files."""

    def _read_log(self, path: Path) -> Any:
        try:
            return self.store.read_json(path)
        except PersistenceError as exc:
            logger.error("Error loading existing data for %s: %s", self.account, exc)
            return None

    def _ensure_date(self) -> None:
        today = self._date_provider()
        if today == self.date:
            return
        logger.info("%s: logical date rolled over %s -> %s", self.account, self.date, today)
        self.flush()
        self.date = today
        self._pending.clear()
        self._reset()
        self.resume()

    def _track_extremes(self, value: float) -> bool:
        """Fold ``value`` into the trackers; return True when it is a new strict lowest."""
        if self.highest_value is None or value > self.highest_value:
            self.highest_value = value
        if self.lowest_value is None or value < self.lowest_value:
            self.lowest_value = value
            return True
        return False

    def _write(self, path: Path, document: Any) -> bool:
        try:
            self.store.write_json(path, document)
        except PersistenceError as exc:
            logger.error("Error saving %s for %s: %s", path.name, self.account, exc)
            self._pending[path] = document
            self.write_failures += 1
            if self.on_write_failure is not None:
                self.on_write_failure()
            return False
        self._pending.pop(path, None)
        return True

    @property
    def has_pending_writes(self) -> bool:
        return bool(self._pending)

    def flush(self) -> bool:
        """Retry writes that failed earlier. Returns True when nothing is left pending."""
        for path, document in list(self._pending.items()):
            self._write(path, document)
        return not self.has_pending_writes


class RawLedger(AccountLedger):
    """Raw account-update log plus an append-only log of new-lowest events."""

    _FILTERED_FIELDS = ('clearinghouseState', 'spotState', 'serverTime', 'localTime', 'user')

    def __init__(
        self,
        account: str,
        base_dir: str,
        store: FileStore,
        mode: SaveMode = SaveMode.ALL,
        utc_offset_hours: float = 8,
        date_provider: DateProvider = logical_date,
    ):
        super().__init__(account, base_dir, store, date_provider)
        self.mode = mode
        self.utc_offset_hours = utc_offset_hours
        self.messages: List[Dict[str, Any]] = []
        self.lowest_events: List[Dict[str, Any]] = []

    @property
    def data_path(self) -> Path:
        return self._path()

    @property
    def lowest_path(self) -> Path:
        return self._path('-lowestAccountValue')

    def _reset(self) -> None:
        super()._reset()
        self.messages = []
        self.lowest_events = []

    def resume(self) -> None:
        existing = self._read_log(self.data_path)
        if isinstance(existing, list):
            self.messages = existing
            logger.info("Loaded %s existing messages for %s", len(existing), self.account)

        events = self._read_log(self.lowest_path)
        if isinstance(events, list):
            self.lowest_events = events
            for event in events:
                try:
                    self._track_extremes(parse_number(event.get('accountValue'), 'accountValue'))
                except (ValuationError, AttributeError):
                    logger.warning("Skipping unreadable lowest value event for %s", self.account)
            logger.info("%s - Lowest: %s, Highest: %s", self.account, self.lowest_value, self.highest_value)

    def _shape_message(self, update: AccountUpdate) -> Dict[str, Any]:
        local_time = format_local_time(update.server_time, self.utc_offset_hours)
        if self.mode == SaveMode.SPOT_AND_PERPS:
            data = {
                'clearinghouseState': update.data.get('clearinghouseState'),
                'spotState': update.data.get('spotState'),
                'serverTime': update.server_time,
                'localTime': local_time,
                'user': update.user,
            }
        else:
            data = dict(update.data)
            data['localTime'] = local_time
        return {'channel': AccountUpdate.CHANNEL, 'data': data}

    def record_message(self, update: AccountUpdate) -> int:
        """Append the (optionally filtered) message and rewrite the day's log."""
        self._ensure_date()
        self.messages.append(self._shape_message(update))
        if self._write(self.data_path, self.messages):
            logger.debug("Saved message %s for %s", len(self.messages), self.account)
        return len(self.messages)

    def record_account_value(self, update: AccountUpdate) -> Optional[Dict[str, Any]]:
        """Track the margin account value; append and return an event when it is a new lowest.

        Raises ``ValuationError`` when the update carries no usable margin value.
        """
        self._ensure_date()
        summary = update.margin_summary
        if not summary:
            raise ValuationError("Account update without marginSummary", field='marginSummary')
        value = parse_number(summary.get('accountValue'), 'marginSummary.accountValue')
        previous_highest = self.highest_value
        if not self._track_extremes(value):
            if previous_highest is None or value > previous_highest:
                logger.info("NEW HIGHEST ACCOUNT VALUE for %s: %s", self.account, value)
            return None

        state = update.clearinghouse_state
        event = {
            'timestamp': utc_timestamp(),
            'accountValue': str(value),
            'marginSummary': summary,
            'crossMarginSummary': state.get('crossMarginSummary'),
            'withdrawable': state.get('withdrawable'),
            'serverTime': update.server_time,
            'user': update.user,
        }
        self.lowest_events.append(event)
        logger.info("NEW LOWEST ACCOUNT VALUE for %s: %s", self.account, value)
        self._write(self.lowest_path, self.lowest_events)
        return event

    @property
    def message_count(self) -> int:
        return len(self.messages)


class HistoricalLedger(AccountLedger):
    """Valuation snapshot history plus a single-record lowest snapshot file."""

    def __init__(self, account: str, base_dir: str, store: FileStore, date_provider: DateProvider = logical_date):
        super().__init__(account, base_dir, store, date_provider)
        self.history: List[Dict[str, Any]] = []
        self.lowest_snapshot: Optional[Dict[str, Any]] = None

    @property
    def data_path(self) -> Path:
        return self._path()

    @property
    def lowest_path(self) -> Path:
        return self._path('-lowest')

    def _reset(self) -> None:
        super()._reset()
        self.history = []
        self.lowest_snapshot = None

    def resume(self) -> None:
        existing = self._read_log(self.data_path)
        if isinstance(existing, list):
            self.history = existing
            logger.info("Loaded %s existing historical messages for %s", len(existing), self.account)

        lowest = self._read_log(self.lowest_path)
        if isinstance(lowest, dict) and lowest.get('totalAccountValue') is not None:
            try:
                self._track_extremes(ValuationSnapshot.from_dict(lowest).total_account_value)
                self.lowest_snapshot = lowest
            except ValuationError:
                logger.warning("Ignoring unreadable lowest snapshot for %s", self.account)

        # A crash between the history write and the lowest write can leave a lower
        # value only in the history; the lowest file must not regress past it.
        for entry in self.history:
            try:
                value = ValuationSnapshot.from_dict(entry).total_account_value
            except (ValuationError, AttributeError):
                continue
            if self._track_extremes(value):
                self.lowest_snapshot = entry
                self._pending[self.lowest_path] = entry
        if self.lowest_value is not None:
            logger.info("%s - Historical Lowest Total Account Value: %s", self.account, self.lowest_value)

    def record_snapshot(self, snapshot: ValuationSnapshot) -> bool:
        """Append the snapshot; replace the lowest file when it is a strict new minimum."""
        self._ensure_date()
        entry = snapshot.to_dict()
        self.history.append(entry)
        if self._write(self.data_path, self.history):
            logger.debug(
                "Saved historical message %s for %s (Total Account Value: %s)",
                len(self.history),
                self.account,
                snapshot.total_account_value,
            )

        if not self._track_extremes(snapshot.total_account_value):
            return False
        logger.info("NEW LOWEST TOTAL ACCOUNT VALUE for %s: %s", self.account, snapshot.total_account_value)
        self.lowest_snapshot = entry
        self._write(self.lowest_path, entry)
        return True

    @property
    def message_count(self) -> int:
        return len(self.history)


class PersistenceCoordinator:
    """Owns one ledger per configured account and resolves accounts case-insensitively."""

    def __init__(
        self,
        config: Any,
        accounts: Iterable[str],
        store: Optional[FileStore] = None,
        date_provider: DateProvider = logical_date,
        on_write_failure: Optional[Callable[[], None]] = None,
    ):
        cfg = get_config_section(config, 'persistence')
        self.mode = SaveMode(cfg.get('save_mode', SaveMode.HISTORICAL.value))
        self.raw_dir = cfg.get('raw_dir', 'data/dataFromSubscription')
        self.historical_dir = cfg.get('historical_dir', 'data/accountValueHistorical')
        self.utc_offset_hours = float(cfg.get('local_utc_offset_hours', 8))
        self.store = store or FileStore()
        self.ledgers: Dict[str, AccountLedger] = {}

        for account in accounts:
            key = account.lower()
            if key in self.ledgers:
                continue
            if self.mode == SaveMode.HISTORICAL:
                ledger: AccountLedger = HistoricalLedger(account, self.historical_dir, self.store, date_provider)
            else:
                ledger = RawLedger(
                    account, self.raw_dir, self.store, self.mode, self.utc_offset_hours, date_provider
                )
            ledger.on_write_failure = on_write_failure
            self.ledgers[key] = ledger

    @property
    def historical(self) -> bool:
        return self.mode == SaveMode.HISTORICAL

    def ledger_for(self, account: str) -> Optional[AccountLedger]:
        return self.ledgers.get(account.lower())

    def resume_all(self) -> None:
        for ledger in self.ledgers.values():
            ledger.resume()
            ledger.flush()

    def flush_all(self) -> bool:
        clean = True
        for ledger in self.ledgers.values():
            if not ledger.flush():
                clean = False
                logger.error("Unflushed writes remain for %s", ledger.account)
        return clean
