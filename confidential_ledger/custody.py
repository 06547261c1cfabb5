"""
custody.py - Reference funds gateway

Withdrawals debit the encrypted balance and hand the plaintext amount to a
FundsGateway, the external settlement layer that actually moves funds. This
module provides an in-memory gateway for simulations and tests.
"""

from __future__ import annotations
from collections import defaultdict
import threading
from typing import Dict, List, Tuple

from .core import Address


class InMemoryCustody:
    """
    Records every release instead of moving real funds.

    Attributes:
        releases: Ordered (address, amount) pairs
    """

    def __init__(self):
        self.releases: List[Tuple[Address, int]] = []
        self._released: Dict[Address, int] = defaultdict(int)
        self._lock = threading.Lock()

    def release(self, address: Address, amount: int) -> None:
        if amount <= 0:
            raise ValueError(f"Release amount must be positive, got {amount}")
        with self._lock:
            self.releases.append((address, amount))
            self._released[address] += amount

    def released_to(self, address: Address) -> int:
        """Total amount released to an account."""
        with self._lock:
            return self._released.get(address, 0)

    @property
    def total_released(self) -> int:
        with self._lock:
            return sum(self._released.values())

    def __repr__(self):
        return f"InMemoryCustody({len(self.releases)} releases, total={self.total_released})"
