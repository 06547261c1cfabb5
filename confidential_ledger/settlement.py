"""
settlement.py - Position settlement

Resolves a closing position to WIN or LOSE and computes the payout.

Two pieces are pluggable:
1. RandomnessSource: where entropy comes from. SystemRandomness for live use,
   SeededRandomness for reproducible simulations. A verifiable random
   function can be injected behind the same draw() interface.
2. Policy: a plain function (context, entropy) -> Outcome. Policies are
   looked up by name in SETTLEMENT_POLICIES, or passed directly.

Payout rule: the stake was debited at open, so a WIN credits
PAYOUT_MULTIPLIER x stake (principal plus an equal profit) and a LOSE credits
nothing.
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime
import hashlib
import random
import secrets
import threading
from typing import Callable, Dict, Optional, Union

from .core import (
    Address, Price, Direction, Outcome,
    RandomnessSource, PAYOUT_MULTIPLIER,
    SettlementUnavailable,
    canonical_digest,
)


# ============================================================================
# RANDOMNESS SOURCES
# ============================================================================

def _mix(fresh: bytes, seed: bytes) -> int:
    return int.from_bytes(hashlib.sha256(fresh + seed).digest(), "big")


class SystemRandomness:
    """Fresh OS entropy mixed with the settlement seed."""

    def draw(self, seed: bytes) -> int:
        return _mix(secrets.token_bytes(32), seed)

    def __repr__(self):
        return "SystemRandomness()"


class SeededRandomness:
    """
    Reproducible entropy for simulations and tests.

    Two sources built with the same seed produce the same sequence of draws
    for the same sequence of settlement seeds. Not suitable for live
    settlement: anyone who knows the seed can predict outcomes.
    """

    def __init__(self, seed: int = 42):
        self.seed = seed
        self._rng = random.Random(seed)
        self._lock = threading.Lock()

    def draw(self, seed: bytes) -> int:
        with self._lock:
            fresh = self._rng.getrandbits(256).to_bytes(32, "big")
        return _mix(fresh, seed)

    def __repr__(self):
        return f"SeededRandomness(seed={self.seed})"


# ============================================================================
# SETTLEMENT CONTEXT AND RESULT
# ============================================================================

@dataclass(frozen=True, slots=True)
class SettlementContext:
    """
    Everything a policy may look at when resolving a position.

    direction and quantity are the clear values supplied at close, already
    proven equal to the ciphertexts committed at open.
    """
    context_id: str
    account: Address
    instrument: str
    direction: Direction
    quantity: int
    open_price: Price
    current_price: Optional[Price]
    opened_at: datetime
    closed_at: datetime

    def seed(self) -> bytes:
        return canonical_digest(
            "settlement",
            self.context_id,
            self.account,
            self.instrument,
            self.direction,
            self.quantity,
            self.open_price,
            self.opened_at,
            self.closed_at,
        )


@dataclass(frozen=True, slots=True)
class Settlement:
    """Result of closing a position."""
    outcome: Outcome
    stake: int
    payout: int

    @property
    def win(self) -> bool:
        return self.outcome == Outcome.WIN

    @property
    def net(self) -> int:
        """Net balance effect of the whole position (open debit + close credit)."""
        return self.payout - self.stake


def payout_for(outcome: Outcome, stake: int) -> int:
    """Amount credited at close for a given outcome."""
    if outcome == Outcome.WIN:
        return PAYOUT_MULTIPLIER * stake
    return 0


# ============================================================================
# POLICIES
# ============================================================================

SettlementPolicy = Callable[[SettlementContext, int], Outcome]


def coin_flip(ctx: SettlementContext, entropy: int) -> Outcome:
    """Even draw wins. Ignores prices entirely."""
    return Outcome.WIN if entropy % 2 == 0 else Outcome.LOSE


def price_move(ctx: SettlementContext, entropy: int) -> Outcome:
    """
    Win when the refreshed price moved in the declared direction.

    An unchanged price falls back to coin_flip.

    Raises:
        SettlementUnavailable: If the instrument has no refreshed price
    """
    if ctx.current_price is None:
        raise SettlementUnavailable(f"No refreshed price for {ctx.instrument}")
    if ctx.current_price == ctx.open_price:
        return coin_flip(ctx, entropy)
    rose = ctx.current_price > ctx.open_price
    won = rose if ctx.direction == Direction.LONG else not rose
    return Outcome.WIN if won else Outcome.LOSE


SETTLEMENT_POLICIES: Dict[str, SettlementPolicy] = {
    "coin_flip": coin_flip,
    "price_move": price_move,
}


# ============================================================================
# ENGINE
# ============================================================================

class SettlementEngine:
    """
    Combines a randomness source with a policy.

    Failures of the randomness source (timeouts, I/O errors) are reported as
    SettlementUnavailable so the caller can leave the position open for a
    retry.
    """

    def __init__(
        self,
        randomness: Optional[RandomnessSource] = None,
        policy: Union[str, SettlementPolicy] = "coin_flip",
    ):
        """
        Args:
            randomness: Entropy source (SystemRandomness if not provided)
            policy: Policy name from SETTLEMENT_POLICIES or a callable

        Raises:
            ValueError: If policy names an unknown policy
        """
        self.randomness = randomness if randomness is not None else SystemRandomness()
        if isinstance(policy, str):
            if policy not in SETTLEMENT_POLICIES:
                raise ValueError(f"Unknown settlement policy: {policy}")
            self.policy_name = policy
            self.policy = SETTLEMENT_POLICIES[policy]
        else:
            self.policy_name = getattr(policy, "__name__", "custom")
            self.policy = policy

    def resolve(self, ctx: SettlementContext, stake: int) -> Settlement:
        """
        Resolve a position.

        Args:
            ctx: Settlement context
            stake: Plaintext stake (open_price x quantity)

        Returns:
            Settlement with outcome and payout

        Raises:
            SettlementUnavailable: If entropy or price data cannot be obtained
        """
        try:
            entropy = self.randomness.draw(ctx.seed())
            outcome = self.policy(ctx, entropy)
        except (TimeoutError, OSError) as e:
            raise SettlementUnavailable(f"Settlement source failed: {e}") from e
        return Settlement(outcome=outcome, stake=stake, payout=payout_for(outcome, stake))

    def __repr__(self):
        return f"SettlementEngine({self.randomness!r}, policy={self.policy_name})"
