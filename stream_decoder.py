"""
Decoder for OKX v5 websocket frames.

Turns an already-parsed JSON frame into one of three shapes:
- ControlFrame: login / subscribe / unsubscribe / error acknowledgements
- DataBatch:    {"arg": {"channel": ...}, "data": [...]} or the legacy {"data": [...]}
- Unrecognized: anything else

Record extraction never raises on a bad numeric field; the field is treated as
absent and the normal fallback applies.
"""

import math
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Union

from okx_models import (
    SIDE_LONG,
    SIDE_SHORT,
    POSITION_SIDES,
    Balance,
    Position,
    Ticker,
    compute_pnl,
    compute_pnl_ratio,
    now_ms,
)

CHANNEL_POSITIONS = "positions"
CHANNEL_ACCOUNT = "account"
CHANNEL_TICKERS = "tickers"

# Ticker-shaped records have no size; treat them as one unit.
DEFAULT_SIZE = 1.0
DEFAULT_LEVERAGE = 1.0

# Explicit PnL fields holding these values are treated as "no data".
_NO_DATA = (None, "", "0")


@dataclass(frozen=True)
class ControlFrame:
    event: str
    code: Optional[str] = None
    detail: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.code == "0"


@dataclass(frozen=True)
class DataBatch:
    channel: Optional[str]
    items: List[Dict[str, Any]] = field(default_factory=list)


@dataclass(frozen=True)
class Unrecognized:
    raw: Any = None


DecodeResult = Union[ControlFrame, DataBatch, Unrecognized]


def to_float(value) -> Optional[float]:
    if value in (None, ""):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def to_decimal(value) -> Decimal:
    if value in (None, ""):
        return Decimal("0")
    try:
        number = Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        return Decimal("0")
    return number if number.is_finite() else Decimal("0")


def _field(item: Dict[str, Any], key: str) -> Optional[float]:
    return to_float(item.get(key))


def _explicit(item: Dict[str, Any], key: str) -> Optional[float]:
    value = item.get(key)
    if value in _NO_DATA:
        return None
    return to_float(value)


def _first(*values: Optional[float], default: float = 0.0) -> float:
    for value in values:
        if value is not None:
            return value
    return default


def _timestamp(item: Dict[str, Any], *keys: str) -> int:
    for key in keys:
        value = _field(item, key)
        if value is not None and value > 0:
            return int(value)
    return now_ms()


def _position_side(raw_side: Any, raw_size: Optional[float]) -> str:
    if raw_side in POSITION_SIDES:
        return raw_side
    if raw_side == "net" and raw_size is not None and raw_size < 0:
        return SIDE_SHORT
    return SIDE_LONG


def decode(message: Any) -> DecodeResult:
    if not isinstance(message, dict):
        return Unrecognized(message)

    event = message.get("event")
    if isinstance(event, str) and event:
        code = message.get("code")
        detail = message.get("msg")
        return ControlFrame(
            event=event,
            code=str(code) if code is not None else None,
            detail=str(detail) if detail not in (None, "") else None,
        )

    data = message.get("data")
    if not isinstance(data, list):
        return Unrecognized(message)
    items = [item for item in data if isinstance(item, dict)]

    arg = message.get("arg")
    if isinstance(arg, dict):
        channel = arg.get("channel")
        return DataBatch(
            channel=channel if isinstance(channel, str) else None,
            items=items,
        )
    return DataBatch(channel=None, items=items)


def decode_position(item: Dict[str, Any]) -> Optional[Position]:
    """Build a Position from a positions- or ticker-shaped record."""
    instrument_id = item.get("instId")
    if not isinstance(instrument_id, str) or not instrument_id:
        return None

    raw_size = _field(item, "pos")
    size = abs(raw_size) if raw_size is not None else DEFAULT_SIZE
    side = _position_side(item.get("posSide"), raw_size)

    last = _field(item, "last")
    average_price = _first(_field(item, "avgPx"), last)
    current_price = _first(_field(item, "markPx"), last)

    pnl = _explicit(item, "upl")
    if pnl is None:
        pnl = _explicit(item, "pnl")
    if pnl is None:
        pnl = 0.0
        if current_price > 0 and average_price > 0 and size > 0:
            pnl = compute_pnl(side, average_price, current_price, size)

    ratio = _explicit(item, "uplRatio")
    if ratio is None:
        ratio = _explicit(item, "pnlRatio")
    if ratio is not None:
        ratio *= 100
    else:
        ratio = _first(compute_pnl_ratio(pnl, average_price, size))

    return Position(
        instrument_id=instrument_id,
        position_side=side,
        size=size,
        average_price=average_price,
        current_price=current_price,
        unrealized_pnl=pnl,
        unrealized_pnl_ratio=ratio,
        leverage=_first(_field(item, "lever"), default=DEFAULT_LEVERAGE),
        timestamp=_timestamp(item, "uTime", "ts"),
    )


def _balance(currency: Any, equity: Any, available: Any, timestamp: int) -> Optional[Balance]:
    if not isinstance(currency, str) or not currency:
        return None
    return Balance(
        currency=currency,
        total_equity=to_decimal(equity),
        available_balance=to_decimal(available),
        timestamp=timestamp,
    )


def decode_balances(item: Dict[str, Any]) -> List[Balance]:
    """Balances carried by one account record.

    Flat records ({"ccy", "totalEq", "availBal"}) yield one Balance; OKX account
    snapshots carry per-currency entries under "details".
    """
    timestamp = _timestamp(item, "uTime", "ts")
    if "ccy" in item:
        balance = _balance(item.get("ccy"), item.get("totalEq"), item.get("availBal"), timestamp)
        return [balance] if balance else []

    balances = []
    details = item.get("details")
    if isinstance(details, list):
        for detail in details:
            if not isinstance(detail, dict):
                continue
            equity = next(
                (detail[key] for key in ("totalEq", "eqUsd", "eq") if detail.get(key) not in (None, "")),
                None,
            )
            balance = _balance(
                detail.get("ccy"),
                equity,
                detail.get("availBal"),
                _timestamp(detail, "uTime", "ts") if ("uTime" in detail or "ts" in detail) else timestamp,
            )
            if balance:
                balances.append(balance)
    return balances


def decode_ticker(item: Dict[str, Any]) -> Optional[Ticker]:
    instrument_id = item.get("instId")
    if not isinstance(instrument_id, str) or not instrument_id:
        return None
    return Ticker(
        instrument_id=instrument_id,
        last_price=_first(_field(item, "last")),
        bid_price=_first(_field(item, "bidPx")),
        ask_price=_first(_field(item, "askPx")),
        volume=_first(_field(item, "vol24h")),
        timestamp=_timestamp(item, "ts"),
    )
