"""
Normalized OKX records shared by the stream decoder, market client and state reducer.

Position PnL convention:
- long  profits when current price > average price
- short profits when current price < average price
"""

import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional

SIDE_LONG = "long"
SIDE_SHORT = "short"
POSITION_SIDES = (SIDE_LONG, SIDE_SHORT)


def now_ms() -> int:
    return int(time.time() * 1000)


def compute_pnl(side: str, average_price: float, current_price: float, size: float) -> float:
    if side == SIDE_SHORT:
        return (average_price - current_price) * size
    return (current_price - average_price) * size


def compute_pnl_ratio(pnl: float, average_price: float, size: float) -> Optional[float]:
    """PnL as a percentage of the entry notional, or None when there is no notional."""
    if average_price > 0 and size > 0:
        return pnl / (average_price * size) * 100
    return None


@dataclass
class Position:
    """Latest known state of one (instrument, side) position."""
    instrument_id: str
    position_side: str = SIDE_LONG
    size: float = 0.0
    average_price: float = 0.0
    current_price: float = 0.0
    unrealized_pnl: float = 0.0
    unrealized_pnl_ratio: float = 0.0  # percent, not fraction
    leverage: float = 1.0
    timestamp: int = field(default_factory=now_ms)

    def __post_init__(self) -> None:
        # -0.0 and negative venue sizes collapse to a magnitude
        self.size = abs(self.size)

    @classmethod
    def price_update(cls, instrument_id: str, current_price: float, timestamp: Optional[int] = None) -> "Position":
        """A price-only record; consumers merge it into existing positions."""
        return cls(
            instrument_id=instrument_id,
            position_side="",
            size=0.0,
            current_price=current_price,
            leverage=0.0,
            timestamp=timestamp if timestamp is not None else now_ms(),
        )

    @property
    def is_price_update(self) -> bool:
        return self.position_side == ""

    @property
    def key(self) -> tuple:
        return (self.instrument_id, self.position_side)

    def reprice(self, price: float, timestamp: Optional[int] = None) -> None:
        self.current_price = price
        self.timestamp = timestamp if timestamp is not None else now_ms()
        if self.size > 0 and self.average_price > 0:
            self.unrealized_pnl = compute_pnl(self.position_side, self.average_price, price, self.size)
            ratio = compute_pnl_ratio(self.unrealized_pnl, self.average_price, self.size)
            if ratio is not None:
                self.unrealized_pnl_ratio = ratio


@dataclass
class Balance:
    currency: str
    total_equity: Decimal = Decimal("0")
    available_balance: Decimal = Decimal("0")
    timestamp: int = field(default_factory=now_ms)


@dataclass(frozen=True)
class Ticker:
    instrument_id: str
    last_price: float = 0.0
    bid_price: float = 0.0
    ask_price: float = 0.0
    volume: float = 0.0
    timestamp: int = field(default_factory=now_ms)
