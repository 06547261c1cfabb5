"""
conftest.py - Shared pytest fixtures for confidential ledger tests

Provides common fixtures used across module, conformance and functional tests:
- Cipher service and input verifier (test mode, fixed attestor key)
- Basic ledgers (empty, priced, funded)
- Shared constants and builders live in tests/helpers.py
- Ledgers with a forced settlement outcome
"""

import pytest

from confidential_ledger import (
    InMemoryCipherService,
    InputVerifier,
    InMemoryCustody,
)

from tests.fake_view import FixedRandomness
from tests.helpers import OWNER, INSTRUMENT, PRICE, make_ledger


# =============================================================================
# BASIC FIXTURES
# =============================================================================

@pytest.fixture
def cipher():
    return InMemoryCipherService("test-fhe", test_mode=True)


@pytest.fixture
def verifier(cipher):
    return InputVerifier(cipher, key=b"attestor-key-for-tests-000000000")


@pytest.fixture
def custody():
    return InMemoryCustody()


@pytest.fixture
def ledger(cipher, verifier, custody):
    """Empty ledger, no prices."""
    return make_ledger(cipher, verifier, custody=custody)


@pytest.fixture
def priced_ledger(ledger):
    """Ledger with INSTRUMENT listed at PRICE."""
    ledger.set_price(OWNER, INSTRUMENT, PRICE)
    return ledger


@pytest.fixture
def funded_ledger(priced_ledger):
    """Priced ledger where alice holds 1,000,000 and bob 500,000."""
    priced_ledger.deposit("alice", 1_000_000)
    priced_ledger.deposit("bob", 500_000)
    return priced_ledger


# =============================================================================
# FORCED OUTCOME FIXTURES
# =============================================================================

@pytest.fixture
def winning_ledger(cipher, verifier, custody):
    """Every settlement is a WIN (even draw under coin_flip)."""
    ledger = make_ledger(cipher, verifier, FixedRandomness(0), custody=custody)
    ledger.set_price(OWNER, INSTRUMENT, PRICE)
    ledger.deposit("alice", 1_000_000)
    return ledger


@pytest.fixture
def losing_ledger(cipher, verifier, custody):
    """Every settlement is a LOSE (odd draw under coin_flip)."""
    ledger = make_ledger(cipher, verifier, FixedRandomness(1), custody=custody)
    ledger.set_price(OWNER, INSTRUMENT, PRICE)
    ledger.deposit("alice", 1_000_000)
    return ledger
