"""
price_table.py - Owner-maintained instrument prices

Prices are plaintext public market data: only trader intent is confidential.
A single owner identity may change prices and may hand that authority to a
new owner. An instrument without a price is untradeable.

Classes:
- PriceTable: instrument -> unit price, owner-gated mutation
"""

from __future__ import annotations
import threading
from typing import Dict, Optional

from .core import (
    Address, Price, MAX_UINT64,
    Unauthorized, PriceNotSet,
    check_uint,
)


class PriceTable:
    """
    Mapping from instrument identifier to plaintext unit price.

    Prices are unsigned integers in the smallest currency denomination.
    Setting a price of 0 delists the instrument.

    Thread Safety:
        Mutations hold `lock`. Callers that need a price to stay fixed across
        several steps (opening a position) hold `lock` themselves; it is
        reentrant.
    """

    def __init__(self, owner: Address, prices: Optional[Dict[str, Price]] = None):
        """
        Args:
            owner: Account allowed to set prices and transfer ownership
            prices: Optional initial prices (no owner check, used at construction)
        """
        if not owner or not owner.strip():
            raise ValueError("PriceTable owner cannot be empty")
        self._owner = owner
        self.lock = threading.RLock()
        self._prices: Dict[str, Price] = {}
        for instrument, price in (prices or {}).items():
            self._store(instrument, price)

    @property
    def owner(self) -> Address:
        return self._owner

    def _store(self, instrument: str, price: Price) -> None:
        if not instrument or not instrument.strip():
            raise ValueError("Instrument cannot be empty")
        check_uint(price, MAX_UINT64, "price")
        if price == 0:
            self._prices.pop(instrument, None)
        else:
            self._prices[instrument] = price

    def set_price(self, caller: Address, instrument: str, price: Price) -> None:
        """
        Overwrite the price of an instrument.

        Args:
            caller: Account requesting the change
            instrument: Instrument identifier
            price: New unit price (0 delists)

        Raises:
            Unauthorized: If caller is not the owner
            ValueError: If instrument is empty or price is not a valid uint64
        """
        with self.lock:
            if caller != self._owner:
                raise Unauthorized(f"{caller} is not the price table owner")
            self._store(instrument, price)

    def get_price(self, instrument: str) -> Price:
        """
        Raises:
            PriceNotSet: If the instrument has no price
        """
        with self.lock:
            price = self._prices.get(instrument)
        if price is None:
            raise PriceNotSet(f"No price set for {instrument}")
        return price

    def price_of(self, instrument: str) -> Optional[Price]:
        """Return the price, or None if the instrument is untradeable."""
        with self.lock:
            return self._prices.get(instrument)

    def is_tradeable(self, instrument: str) -> bool:
        return self.price_of(instrument) is not None

    def transfer_ownership(self, caller: Address, new_owner: Address) -> Address:
        """
        Hand price authority to a new owner.

        The current owner must request the transfer; nothing transfers it
        implicitly.

        Returns:
            The previous owner

        Raises:
            Unauthorized: If caller is not the owner
            ValueError: If new_owner is empty
        """
        with self.lock:
            if caller != self._owner:
                raise Unauthorized(f"{caller} is not the price table owner")
            if not new_owner or not new_owner.strip():
                raise ValueError("New owner cannot be empty")
            previous = self._owner
            self._owner = new_owner
            return previous

    def snapshot(self) -> Dict[str, Price]:
        """Return a copy of all prices."""
        with self.lock:
            return dict(self._prices)

    def __len__(self) -> int:
        with self.lock:
            return len(self._prices)

    def __repr__(self):
        return f"PriceTable({len(self)} prices, owner={self._owner})"
