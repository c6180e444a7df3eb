"""
Inbound event records consumed by the settlement engine
"""

import json
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

from shared.models.base import TradeSide


class InvalidEventError(ValueError):
    """Raised when an inbound payload cannot be turned into an event"""


def _load_payload(raw: Union[bytes, str]) -> Dict[str, Any]:
    if isinstance(raw, bytes):
        raw = raw.decode()
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise InvalidEventError(f"Payload is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise InvalidEventError(f"Payload must be a JSON object, got {type(data).__name__}")
    return data


def _require(data: Dict[str, Any], key: str) -> Any:
    value = data.get(key)
    if value is None:
        raise InvalidEventError(f"Missing required field '{key}'")
    return value


def _as_price(value: Any, field_name: str) -> float:
    try:
        price = float(value)
    except (TypeError, ValueError) as e:
        raise InvalidEventError(f"Field '{field_name}' must be numeric, got {value!r}") from e
    if not math.isfinite(price):
        raise InvalidEventError(f"Field '{field_name}' must be finite, got {value!r}")
    return price


def millis_to_datetime(millis: Any) -> datetime:
    """Epoch milliseconds to a naive UTC datetime, the convention used for stored timestamps"""
    try:
        seconds = float(millis) / 1000.0
    except (TypeError, ValueError) as e:
        raise InvalidEventError(f"Timestamp must be epoch milliseconds, got {millis!r}") from e
    try:
        return datetime.fromtimestamp(seconds, tz=timezone.utc).replace(tzinfo=None)
    except (OverflowError, OSError, ValueError) as e:
        raise InvalidEventError(f"Timestamp out of range: {millis!r}") from e


@dataclass(frozen=True)
class Quote:
    """Live bid quote for one instrument"""
    ticker: str
    bid: float
    ask: Optional[float] = None
    timestamp: Optional[datetime] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any], separator: str = "/") -> 'Quote':
        """Create a Quote from a {"p": "EUR/USD", "b": 1.105, ...} record"""
        raw_ticker = _require(data, "p")
        if not isinstance(raw_ticker, str):
            raise InvalidEventError(f"Field 'p' must be a string, got {raw_ticker!r}")
        ticker = raw_ticker.replace(separator, "") if separator else raw_ticker
        ticker = ticker.strip()
        if not ticker:
            raise InvalidEventError("Field 'p' must not be empty")

        ask = data.get("a")
        timestamp = data.get("t")
        return cls(
            ticker=ticker,
            bid=_as_price(_require(data, "b"), "b"),
            ask=_as_price(ask, "a") if ask is not None else None,
            timestamp=millis_to_datetime(timestamp) if timestamp is not None else None,
        )

    @classmethod
    def from_json(cls, raw: Union[bytes, str], separator: str = "/") -> 'Quote':
        return cls.from_dict(_load_payload(raw), separator=separator)


@dataclass(frozen=True)
class TradeAction:
    """Buy/sell signal for one instrument with the reference close it fired on"""
    ticker: str
    action: TradeSide
    reference_price: float
    reference_time: datetime

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TradeAction':
        """Create a TradeAction from a {"ticker", "action", "prevClosePrice", "createdAt"} record"""
        ticker = _require(data, "ticker")
        if not isinstance(ticker, str) or not ticker.strip():
            raise InvalidEventError(f"Field 'ticker' must be a non-empty string, got {ticker!r}")

        raw_action = _require(data, "action")
        try:
            action = TradeSide(str(raw_action).lower())
        except ValueError as e:
            raise InvalidEventError(f"Field 'action' must be 'buy' or 'sell', got {raw_action!r}") from e

        return cls(
            ticker=ticker.strip(),
            action=action,
            reference_price=_as_price(_require(data, "prevClosePrice"), "prevClosePrice"),
            reference_time=millis_to_datetime(_require(data, "createdAt")),
        )

    @classmethod
    def from_json(cls, raw: Union[bytes, str]) -> 'TradeAction':
        return cls.from_dict(_load_payload(raw))
