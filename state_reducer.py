"""In-process view of the latest positions and balances, fed from the client queues."""

from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from okx_models import Balance, Position

PREFERRED_CURRENCIES = ("USDT", "USD")


class StateReducer:
    """
    Merges incoming records into the position and balance tables.

    Must only be mutated from a single consumer; no locking is done here.
    """

    def __init__(self) -> None:
        self.positions: Dict[Tuple[str, str], Position] = {}
        self.balances: Dict[str, Balance] = {}
        self.previous_total = Decimal("0")
        self.last_update: Optional[datetime] = None

    # ------------------------------------------------------------------
    # Updates
    # ------------------------------------------------------------------
    def apply_position(self, position: Position) -> bool:
        """
        Upsert a full position, or merge a price-only update into existing ones.

        Returns:
            True when the table changed
        """
        if not position.is_price_update:
            self.positions[position.key] = position
            self.last_update = datetime.now()
            return True

        updated = False
        for stored in self.positions.values():
            if stored.instrument_id == position.instrument_id:
                stored.reprice(position.current_price, position.timestamp)
                updated = True
        if updated:
            self.last_update = datetime.now()
        return updated

    def apply_balance(self, balance: Balance) -> None:
        current_total = self.total_equity()
        if current_total > 0:
            self.previous_total = current_total
        self.balances[balance.currency] = balance
        self.last_update = datetime.now()

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------
    def sorted_positions(self) -> List[Position]:
        return sorted(self.positions.values(), key=lambda pos: (pos.instrument_id, pos.position_side))

    def total_equity(self) -> Decimal:
        return sum((balance.total_equity for balance in self.balances.values()), Decimal("0"))

    def main_currency(self) -> Optional[str]:
        for currency in PREFERRED_CURRENCIES:
            if currency in self.balances:
                return currency
        return min(self.balances) if self.balances else None

    def balance_trend(self) -> Optional[str]:
        """Direction of the total versus the total before the last balance update."""
        if self.previous_total <= 0:
            return None
        total = self.total_equity()
        if total > self.previous_total:
            return "up"
        if total < self.previous_total:
            return "down"
        return "flat"
