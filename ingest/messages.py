"""Decoding of inbound feed envelopes into typed message variants."""
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from errors import MessageParseError

# 9999-12-31T23:59:59.999Z
MAX_SERVER_TIME_MS = 253402300799999


class SubscriptionKind(str, Enum):
    ACCOUNT_UPDATE = "webData2"
    PRICE_BROADCAST = "allMids"

    @classmethod
    def parse(cls, value: str) -> 'SubscriptionKind':
        for kind in cls:
            if value in (kind.value, kind.name.lower(), kind.name):
                return kind
        raise ValueError(f"Unknown subscription type '{value}'")


@dataclass(frozen=True)
class AccountUpdate:
    user: str
    server_time: Optional[int]
    data: Dict[str, Any] = field(default_factory=dict)

    CHANNEL = SubscriptionKind.ACCOUNT_UPDATE.value

    @property
    def clearinghouse_state(self) -> Dict[str, Any]:
        return self.data.get('clearinghouseState') or {}

    @property
    def margin_summary(self) -> Optional[Dict[str, Any]]:
        return self.clearinghouse_state.get('marginSummary')

    @property
    def spot_balances(self) -> List[Dict[str, Any]]:
        spot_state = self.data.get('spotState') or {}
        return spot_state.get('balances') or []


@dataclass(frozen=True)
class PriceBroadcast:
    mids: Dict[str, str]

    CHANNEL = SubscriptionKind.PRICE_BROADCAST.value


@dataclass(frozen=True)
class Unknown:
    channel: Optional[str]
    data: Any = None


FeedMessage = Union[AccountUpdate, PriceBroadcast, Unknown]


def decode_message(raw: Union[str, bytes]) -> FeedMessage:
    """Parse a raw ``{channel, data}`` envelope.

    Raises ``MessageParseError`` for payloads that are not JSON objects or whose
    known-channel data is missing required fields. Channels the watcher does
    not consume (subscription acks, pongs) decode to ``Unknown``.
    """
    text = raw.decode('utf-8', errors='replace') if isinstance(raw, (bytes, bytearray)) else raw
    try:
        envelope = json.loads(text)
    except (TypeError, ValueError) as exc:
        raise MessageParseError(f"Invalid JSON payload: {exc}", raw=text) from exc

    if not isinstance(envelope, dict):
        raise MessageParseError("Envelope is not a JSON object", raw=text)

    channel = envelope.get('channel')
    data = envelope.get('data')

    if channel == AccountUpdate.CHANNEL:
        if not isinstance(data, dict):
            raise MessageParseError("webData2 message without data object", raw=text)
        user = data.get('user')
        if not user or not isinstance(user, str):
            raise MessageParseError("webData2 message without user", raw=text)
        server_time = data.get('serverTime')
        if server_time is not None:
            if isinstance(server_time, bool) or not isinstance(server_time, (int, float)):
                raise MessageParseError("webData2 serverTime is not numeric", raw=text)
            if not 0 <= server_time <= MAX_SERVER_TIME_MS:
                raise MessageParseError(f"webData2 serverTime out of range: {server_time!r}", raw=text)
        return AccountUpdate(
            user=user,
            server_time=int(server_time) if server_time is not None else None,
            data=data,
        )

    if channel == PriceBroadcast.CHANNEL:
        mids = data.get('mids') if isinstance(data, dict) else None
        if not isinstance(mids, dict):
            raise MessageParseError("allMids message without mids mapping", raw=text)
        return PriceBroadcast(mids={str(coin): str(px) for coin, px in mids.items()})

    return Unknown(channel=channel, data=data)


def build_subscription(kind: SubscriptionKind, user: Optional[str] = None, dex: Optional[str] = None) -> Dict[str, Any]:
    subscription: Dict[str, Any] = {'type': kind.value}
    if user is not None:
        subscription['user'] = user
    if dex:
        subscription['dex'] = dex
    return {'method': 'subscribe', 'subscription': subscription}
