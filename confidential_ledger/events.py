"""
events.py - Ledger notifications

Read-only observers learn about committed operations through plaintext
notification records. No notification ever carries an encrypted direction or
quantity in the clear: position notifications reference the stake only by
handle id.

Notifications are published after the ledger has committed and released its
locks, so a subscriber may call back into the ledger.
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime
import logging
import threading
from typing import Callable, Dict, List, Optional, Tuple, Type

from .core import Address, HandleId, Price, OperationType

logger = logging.getLogger(__name__)


# ============================================================================
# NOTIFICATION RECORDS
# ============================================================================

@dataclass(frozen=True, slots=True)
class Notification:
    """Base class for all notifications."""
    timestamp: datetime


@dataclass(frozen=True, slots=True)
class BalanceChanged(Notification):
    """A deposit or withdrawal. The amount is plaintext: the caller supplied it."""
    account: Address
    operation: OperationType
    amount: int


@dataclass(frozen=True, slots=True)
class PriceUpdated(Notification):
    instrument: str
    price: Price


@dataclass(frozen=True, slots=True)
class OwnershipTransferred(Notification):
    previous_owner: Address
    new_owner: Address


@dataclass(frozen=True, slots=True)
class PositionOpened(Notification):
    """
    A position was opened.

    cost_handle is the handle id of the encrypted stake, a commitment
    reference only.
    """
    account: Address
    instrument: str
    cost_handle: HandleId
    open_price: Price


@dataclass(frozen=True, slots=True)
class PositionClosed(Notification):
    account: Address
    instrument: str
    win: bool
    payout: int


Subscriber = Callable[[Notification], None]


# ============================================================================
# BUS
# ============================================================================

class NotificationBus:
    """
    Synchronous fan-out of notifications to subscribers.

    - The lock protects only the subscription table, never callback execution.
    - A failing subscriber is logged and does not affect other subscribers or
      the operation that produced the notification.
    """

    def __init__(self):
        self._subscribers: Dict[int, Tuple[Optional[Type[Notification]], Subscriber]] = {}
        self._next_id = 0
        self._sub_lock = threading.RLock()
        self._stats = {
            "published": 0,
            "delivered": 0,
            "errors": 0,
        }

    def subscribe(
        self,
        callback: Subscriber,
        event_type: Optional[Type[Notification]] = None,
    ) -> int:
        """
        Register a callback.

        Args:
            callback: Called with each matching notification
            event_type: Only deliver notifications of this class (None = all)

        Returns:
            Subscription id for unsubscribe()
        """
        with self._sub_lock:
            sub_id = self._next_id
            self._next_id += 1
            self._subscribers[sub_id] = (event_type, callback)
            return sub_id

    def unsubscribe(self, sub_id: int) -> bool:
        """Remove a subscription. Returns False if the id was unknown."""
        with self._sub_lock:
            return self._subscribers.pop(sub_id, None) is not None

    def publish(self, notification: Notification) -> None:
        with self._sub_lock:
            targets = list(self._subscribers.values())
            self._stats["published"] += 1

        for event_type, callback in targets:
            if event_type is not None and not isinstance(notification, event_type):
                continue
            try:
                callback(notification)
            except Exception:
                logger.exception("Subscriber failed on %s", type(notification).__name__)
                with self._sub_lock:
                    self._stats["errors"] += 1
            else:
                with self._sub_lock:
                    self._stats["delivered"] += 1

    def publish_all(self, notifications: List[Notification]) -> None:
        for n in notifications:
            self.publish(n)

    def get_stats(self) -> Dict[str, int]:
        with self._sub_lock:
            return {**self._stats, "subscribers": len(self._subscribers)}
