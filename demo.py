#!/usr/bin/env python3
"""
demo.py - Interactive Tutorial: Confidential Positions Step by Step

A walkthrough of the confidential ledger. Each step builds on the previous
one. Press Enter to advance.

WHAT YOU'LL LEARN:
  1-3:  Foundation     - The ledger, listing an instrument, encrypted deposits
  4-6:  Positions      - Encrypted inputs, opening, rejections
  7-8:  Settlement     - Closing with an equality proof, outcomes
  9-10: Disclosure     - Authorized reveal, withdrawal and the audit log

Run:
    python demo.py           # Interactive mode (press Enter for each step)
    python demo.py --quick   # Run all steps without pausing
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
import sys

from confidential_ledger import (
    Ledger, InMemoryCipherService, InputVerifier, EncryptedInputBuilder,
    SettlementEngine, SeededRandomness,
    KeyRegistry, RevealService, authorize,
    PositionOpened, PositionClosed,
    LONG, LedgerError,
)


# ============================================================================
# CONFIGURATION
# ============================================================================

@dataclass
class DemoConfig:
    """Configuration for the tutorial. Modify these to experiment."""
    start_time: datetime = datetime(2025, 1, 1, 9, 0, 0)
    owner: str = "deployer"
    instrument: str = "T"
    price: int = 123456
    alice_deposit: int = 1_000_000
    quantity: int = 3
    seed: int = 2025


CONFIG = DemoConfig()

QUICK_MODE = "--quick" in sys.argv


def wait_for_enter():
    """Pause for user input unless in quick mode."""
    if not QUICK_MODE:
        input("\n[Press Enter to continue...]")


def step_header(number: int, title: str, objective: str):
    print(f"\n{'='*70}")
    print(f"STEP {number}: {title}")
    print(f"{'='*70}")
    print(f"\nObjective: {objective}\n")


def section_header(text: str):
    print(f"\n--- {text} ---\n")


# ============================================================================
# PHASE 1: FOUNDATION
# ============================================================================

def step_01_empty_ledger():
    step_header(1, "The Ledger",
        "A ledger needs a cipher service, an input verifier and an owner.")

    print("""
    Balances and position parameters are ciphertexts. The ledger holds only
    opaque handles and asks the cipher service to add, subtract and compare.
    """)

    cipher = InMemoryCipherService(test_mode=True)
    verifier = InputVerifier(cipher)
    ledger = Ledger(
        "tutorial", CONFIG.owner, cipher, verifier,
        settlement=SettlementEngine(SeededRandomness(CONFIG.seed)),
        initial_time=CONFIG.start_time,
        verbose=True,
    )
    ledger.subscribe(lambda n: print(f"    [notification] {n}"), PositionOpened)
    ledger.subscribe(lambda n: print(f"    [notification] {n}"), PositionClosed)

    section_header("Initial State")
    print(f"Ledger:       {ledger!r}")
    print(f"Context id:   {ledger.context_id}")
    print(f"Current time: {ledger.current_time}")
    return ledger


def step_02_list_instrument(ledger: Ledger):
    step_header(2, "Listing an Instrument",
        "Only the owner sets prices. Prices are public; intent is private.")

    ledger.set_price(CONFIG.owner, CONFIG.instrument, CONFIG.price)

    section_header("A non-owner tries to set a price")
    try:
        ledger.set_price("mallory", CONFIG.instrument, 1)
    except LedgerError:
        pass
    print(f"Price of {CONFIG.instrument}: {ledger.get_price(CONFIG.instrument)}")
    return ledger


def step_03_deposit(ledger: Ledger):
    step_header(3, "Encrypted Deposits",
        "The deposited amount is public; the resulting balance is a ciphertext.")

    handle = ledger.deposit("alice", CONFIG.alice_deposit)
    print(f"Alice's balance handle: {handle!r}")
    return ledger


# ============================================================================
# PHASE 2: POSITIONS
# ============================================================================

def step_04_encrypted_inputs(ledger: Ledger):
    step_header(4, "Encrypting Direction and Quantity",
        "Inputs are encrypted client-side and bound to one caller and one ledger.")

    enc = (EncryptedInputBuilder(ledger.cipher, ledger.verifier, ledger.context_id, "alice")
           .add32(LONG)
           .add32(CONFIG.quantity)
           .encrypt())
    print(f"Handles: {enc.handles}")
    print(f"Proof bound to caller={enc.input_proof.caller}, context={enc.input_proof.context}")
    return enc


def step_05_open(ledger: Ledger, enc):
    step_header(5, "Opening a Position",
        "The stake (price x quantity) is computed and debited without decryption.")

    position = ledger.open_position(
        "alice", CONFIG.instrument, enc.handles[0], enc.handles[1], enc.input_proof
    )
    print(f"Open price: {position.open_price}")
    print(f"Stake handle: {position.encrypted_stake!r}")
    return position


def step_06_rejections(ledger: Ledger, enc):
    step_header(6, "Rejections",
        "A second position, a replayed proof and a foreign proof are all refused.")

    section_header("Second open while one is active")
    try:
        ledger.open_position("alice", CONFIG.instrument, enc.handles[0], enc.handles[1], enc.input_proof)
    except LedgerError:
        pass

    section_header("Bob submits Alice's proof")
    ledger.deposit("bob", 500_000)
    try:
        ledger.open_position("bob", CONFIG.instrument, enc.handles[0], enc.handles[1], enc.input_proof)
    except LedgerError:
        pass


# ============================================================================
# PHASE 3: SETTLEMENT
# ============================================================================

def step_07_close(ledger: Ledger):
    step_header(7, "Closing a Position",
        "Alice reveals direction and quantity; the ledger proves they match.")

    ledger.advance_time(ledger.current_time + timedelta(hours=1))

    section_header("Wrong quantity")
    try:
        ledger.close_position("alice", CONFIG.quantity + 1, LONG)
    except LedgerError:
        pass

    section_header("Committed values")
    settlement = ledger.close_position("alice", CONFIG.quantity, LONG)
    print(f"Outcome: {settlement.outcome.value}, stake {settlement.stake}, "
          f"payout {settlement.payout}, net {settlement.net:+d}")
    return settlement


def step_08_outcomes(ledger: Ledger, settlement):
    step_header(8, "Outcome Arithmetic",
        "A win credits twice the stake; a loss credits nothing.")

    final = ledger.cipher.peek(ledger.balance_handle("alice"))
    print(f"Initial balance: {CONFIG.alice_deposit}")
    print(f"Final balance:   {final}")
    print(f"Difference:      {final - CONFIG.alice_deposit:+d} (= +/- stake {settlement.stake})")


# ============================================================================
# PHASE 4: DISCLOSURE
# ============================================================================

def step_09_reveal(ledger: Ledger) -> int:
    step_header(9, "Authorized Reveal",
        "Only the owner of a handle can decrypt it, with a signed request.")

    keys = KeyRegistry()
    alice_key = keys.register("alice")
    service = RevealService(ledger, ledger.cipher, keys)
    handle = ledger.balance_handle("alice")
    auth = authorize(keys, "alice", [handle], ledger.context_id, alice_key)
    balance = service.request_reveal([handle], "alice", auth)[handle.handle_id]
    print(f"Alice sees her balance: {balance}")

    section_header("The ledger owner asks for Alice's balance")
    owner_key = keys.register(CONFIG.owner)
    owner_auth = authorize(keys, CONFIG.owner, [handle], ledger.context_id, owner_key)
    try:
        service.request_reveal([handle], CONFIG.owner, owner_auth)
    except LedgerError as e:
        print(f"Refused: {e}")
    return balance


def step_10_withdraw(ledger: Ledger, balance: int):
    step_header(10, "Withdrawal and Audit Log",
        "Withdrawals pass a sufficiency check and are released to custody.")

    ledger.withdraw("alice", balance)
    print(f"Released to alice: {ledger.custody.released_to('alice')}")

    section_header("Audit log")
    for entry in ledger.transaction_log:
        print(f"  #{entry.sequence_number:<3} {entry.operation.value:<20} {entry.account:<10} {entry.fields_dict}")


def main():
    print("=" * 70)
    print("       CONFIDENTIAL LEDGER - INTERACTIVE TUTORIAL")
    print("=" * 70)

    if QUICK_MODE:
        print("Running in QUICK mode (no pauses)")
    else:
        print("Running in INTERACTIVE mode (press Enter to advance)")
    wait_for_enter()

    ledger = step_01_empty_ledger()
    wait_for_enter()
    ledger = step_02_list_instrument(ledger)
    wait_for_enter()
    ledger = step_03_deposit(ledger)
    wait_for_enter()

    enc = step_04_encrypted_inputs(ledger)
    wait_for_enter()
    step_05_open(ledger, enc)
    wait_for_enter()
    step_06_rejections(ledger, enc)
    wait_for_enter()

    settlement = step_07_close(ledger)
    wait_for_enter()
    step_08_outcomes(ledger, settlement)
    wait_for_enter()

    balance = step_09_reveal(ledger)
    wait_for_enter()
    step_10_withdraw(ledger, balance)

    print("\n" + "=" * 70)
    print("       TUTORIAL COMPLETE!")
    print("=" * 70)
    print("""
    Next steps:
      - Run tests: pytest tests/
      - See DESIGN.md for how each module is built
    """)


if __name__ == "__main__":
    main()
