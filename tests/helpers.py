"""
helpers.py - Ledger construction and encrypted input helpers for tests
"""

from __future__ import annotations
from datetime import datetime

from confidential_ledger import (
    Ledger,
    InMemoryCipherService,
    InputVerifier,
    EncryptedInputBuilder,
    SettlementEngine,
    SeededRandomness,
)


OWNER = "admin"
INSTRUMENT = "T"
PRICE = 123456
CONTEXT = "ctx-test"


def make_ledger(cipher, verifier, randomness=None, policy="coin_flip", **kwargs) -> Ledger:
    """Create a quiet ledger with a reproducible settlement engine."""
    engine = SettlementEngine(
        randomness if randomness is not None else SeededRandomness(7),
        policy,
    )
    kwargs.setdefault("context_id", CONTEXT)
    kwargs.setdefault("initial_time", datetime(2025, 1, 1))
    return Ledger(
        "test", OWNER, cipher, verifier,
        settlement=engine, verbose=False, **kwargs,
    )


def fresh_ledger(randomness=None, policy="coin_flip", **kwargs) -> Ledger:
    """Create a priced ledger with its own cipher service, for property tests."""
    cipher = InMemoryCipherService("prop-fhe", test_mode=True)
    verifier = InputVerifier(cipher, key=b"attestor-key-for-tests-000000000")
    ledger = make_ledger(cipher, verifier, randomness, policy, **kwargs)
    ledger.set_price(OWNER, INSTRUMENT, PRICE)
    return ledger


def encrypted_inputs(ledger: Ledger, caller: str, direction: int, quantity: int):
    """Encrypt (direction, quantity) for caller on this ledger."""
    return (EncryptedInputBuilder(ledger.cipher, ledger.verifier, ledger.context_id, caller)
            .add32(direction)
            .add32(quantity)
            .encrypt())


def open_with(ledger: Ledger, caller: str, direction: int, quantity: int, instrument: str = INSTRUMENT):
    enc = encrypted_inputs(ledger, caller, direction, quantity)
    return ledger.open_position(caller, instrument, enc.handles[0], enc.handles[1], enc.input_proof)


def balance_of(ledger: Ledger, address: str) -> int:
    """Plaintext balance through the test-mode cipher."""
    return ledger.cipher.peek(ledger.balance_handle(address))
