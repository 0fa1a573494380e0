"""Exception hierarchy shared by the feed, valuation and persistence layers."""
from typing import Optional


class AccountWatchError(Exception):
    """Base class for recoverable errors raised by the account watcher."""


class TransportError(AccountWatchError):
    def __init__(self, message: str, url: Optional[str] = None):
        self.url = url
        super().__init__(message)


class MessageParseError(AccountWatchError):
    def __init__(self, message: str, raw: Optional[str] = None):
        self.raw = raw
        super().__init__(message)


class ValuationError(AccountWatchError):
    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        super().__init__(message)


class PersistenceError(AccountWatchError):
    def __init__(self, message: str, path: Optional[str] = None):
        self.path = path
        super().__init__(message)
