"""
test_ledger.py - Unit tests for ledger.py

Tests:
- Ledger creation and configuration
- Time management
- Deposits, withdrawals and balance reads
- Position lifecycle through the ledger
- Price administration and ownership transfer
- Handle ownership and entitlement
- Audit log and verbose receipts
"""

import hashlib
import pytest
from datetime import datetime

from confidential_ledger import (
    Ledger, InMemoryCustody, SettlementEngine,
    EncryptedHandle, OperationType, LONG, SHORT, MAX_UINT64, EUINT64,
    LedgerError, Unauthorized, ZeroAmount, InsufficientBalance, PriceNotSet,
    PositionAlreadyOpen, NoActivePosition, AccountNotRegistered, StaleBinding,
    InvalidProof, UnknownHandle, CommitmentMismatch, BalanceOverflow,
    CiphertextRef, EncryptedInputBuilder, compute_deposit,
)
from tests.fake_view import FixedRandomness
from tests.helpers import (
    OWNER, INSTRUMENT, PRICE, CONTEXT,
    make_ledger, encrypted_inputs, open_with, balance_of,
)


class TestLedgerCreation:
    """Tests for Ledger initialization."""

    def test_create_ledger(self, cipher, verifier):
        ledger = Ledger("main", OWNER, cipher, verifier, verbose=False)
        assert ledger.name == "main"
        assert ledger.owner == OWNER
        assert ledger.verbose is False
        assert ledger.current_time == datetime(1970, 1, 1)
        assert isinstance(ledger.custody, InMemoryCustody)
        assert isinstance(ledger.settlement, SettlementEngine)

    def test_context_ids_are_unique(self, cipher, verifier):
        a = Ledger("a", OWNER, cipher, verifier, verbose=False)
        b = Ledger("b", OWNER, cipher, verifier, verbose=False)
        assert a.context_id != b.context_id

    def test_explicit_context(self, ledger):
        assert ledger.context_id == CONTEXT

    def test_empty_ledger(self, ledger):
        assert ledger.list_accounts() == set()
        assert ledger.transaction_log == []
        assert "0 accounts" in repr(ledger)


class TestTimeManagement:
    """Tests for time management."""

    def test_advance_time(self, ledger):
        ledger.advance_time(datetime(2025, 1, 2))
        assert ledger.current_time == datetime(2025, 1, 2)

    def test_advance_time_backwards_raises(self, ledger):
        with pytest.raises(ValueError, match="Cannot move time backwards"):
            ledger.advance_time(datetime(2024, 12, 31))

    def test_position_records_open_time(self, funded_ledger):
        funded_ledger.advance_time(datetime(2025, 3, 1, 9, 30))
        position = open_with(funded_ledger, "alice", LONG, 1)
        assert position.opened_at == datetime(2025, 3, 1, 9, 30)


class TestBalances:
    """Tests for deposit, withdraw and balance reads."""

    def test_deposit_creates_account(self, ledger):
        handle = ledger.deposit("alice", 500)
        assert ledger.balance_handle("alice") == handle
        assert balance_of(ledger, "alice") == 500
        assert "alice" in ledger.list_accounts()

    def test_deposits_accumulate(self, ledger):
        ledger.deposit("alice", 500)
        ledger.deposit("alice", 250)
        assert balance_of(ledger, "alice") == 750

    def test_withdraw(self, ledger):
        ledger.deposit("alice", 500)
        ledger.withdraw("alice", 200)
        assert balance_of(ledger, "alice") == 300

    def test_withdraw_everything(self, ledger):
        ledger.deposit("alice", 500)
        ledger.withdraw("alice", 500)
        assert balance_of(ledger, "alice") == 0

    def test_withdraw_too_much(self, ledger):
        ledger.deposit("alice", 500)
        with pytest.raises(InsufficientBalance):
            ledger.withdraw("alice", 501)
        assert balance_of(ledger, "alice") == 500

    def test_withdraw_unknown_account(self, ledger):
        with pytest.raises(InsufficientBalance):
            ledger.withdraw("ghost", 1)
        assert ledger.find_account("ghost") is None

    @pytest.mark.parametrize("amount", [0, -1])
    def test_zero_amounts(self, ledger, amount):
        with pytest.raises(ZeroAmount):
            ledger.deposit("alice", amount)
        with pytest.raises(ZeroAmount):
            ledger.withdraw("alice", amount)

    def test_amount_must_be_int(self, ledger):
        with pytest.raises(ValueError):
            ledger.deposit("alice", 10.0)

    def test_amount_out_of_range(self, ledger):
        with pytest.raises(ValueError):
            ledger.deposit("alice", MAX_UINT64 + 1)

    def test_deposit_past_maximum_rejected(self, ledger):
        ledger.deposit("alice", MAX_UINT64)
        before = ledger.snapshot()
        with pytest.raises(BalanceOverflow):
            ledger.deposit("alice", 1)
        assert ledger.snapshot() == before
        assert balance_of(ledger, "alice") == MAX_UINT64

    def test_empty_address(self, ledger):
        with pytest.raises(ValueError):
            ledger.deposit("", 1)

    def test_balance_of_unknown_account(self, ledger):
        with pytest.raises(AccountNotRegistered):
            ledger.balance_handle("ghost")
        with pytest.raises(AccountNotRegistered):
            ledger.get_account("ghost")

    def test_balance_handle_is_opaque(self, ledger):
        handle = ledger.deposit("alice", 500)
        assert isinstance(handle, EncryptedHandle)
        assert repr(handle).startswith("Enc<euint64:")


class TestPositions:
    """Position lifecycle through the Ledger."""

    def test_open(self, funded_ledger):
        position = open_with(funded_ledger, "alice", LONG, 3)
        assert funded_ledger.has_active_position("alice")
        assert funded_ledger.get_position("alice") == position
        assert position.open_price == PRICE
        assert balance_of(funded_ledger, "alice") == 1_000_000 - 3 * PRICE

    def test_second_open_rejected(self, funded_ledger):
        open_with(funded_ledger, "alice", LONG, 1)
        with pytest.raises(PositionAlreadyOpen):
            open_with(funded_ledger, "alice", SHORT, 1)

    def test_untradeable(self, funded_ledger):
        with pytest.raises(PriceNotSet):
            open_with(funded_ledger, "alice", LONG, 1, instrument="UNLISTED")

    def test_delisted_instrument(self, funded_ledger):
        funded_ledger.set_price(OWNER, INSTRUMENT, 0)
        with pytest.raises(PriceNotSet):
            open_with(funded_ledger, "alice", LONG, 1)

    def test_no_position_queries(self, funded_ledger):
        assert not funded_ledger.has_active_position("alice")
        assert funded_ledger.get_position("alice") is None
        assert not funded_ledger.has_active_position("ghost")

    def test_uint64_quantity_rejected_at_open(self, funded_ledger):
        enc = (EncryptedInputBuilder(funded_ledger.cipher, funded_ledger.verifier, CONTEXT, "alice")
               .add32(LONG).add64(2 ** 33).encrypt())
        with pytest.raises(InvalidProof, match="euint32"):
            funded_ledger.open_position("alice", INSTRUMENT, enc.handles[0], enc.handles[1], enc.input_proof)
        assert not funded_ledger.has_active_position("alice")

    def test_win_that_cannot_be_credited_keeps_position(self, cipher, verifier):
        ledger = make_ledger(cipher, verifier, FixedRandomness(0))
        ledger.set_price(OWNER, "ONE", 1)
        ledger.deposit("alice", MAX_UINT64)
        open_with(ledger, "alice", LONG, 10, instrument="ONE")

        before = ledger.snapshot()
        with pytest.raises(BalanceOverflow):
            ledger.close_position("alice", 10, LONG)
        assert ledger.snapshot() == before
        assert ledger.has_active_position("alice")

        ledger.withdraw("alice", 10)
        settlement = ledger.close_position("alice", 10, LONG)
        assert settlement.payout == 20
        assert balance_of(ledger, "alice") == MAX_UINT64

    def test_open_without_deposit(self, priced_ledger):
        with pytest.raises(InsufficientBalance):
            open_with(priced_ledger, "carol", LONG, 1)
        assert priced_ledger.find_account("carol") is None

    def test_proof_for_another_ledger(self, funded_ledger, cipher, verifier):
        other = make_ledger(cipher, verifier, context_id="ctx-other")
        enc = encrypted_inputs(other, "alice", LONG, 1)
        with pytest.raises(StaleBinding):
            funded_ledger.open_position("alice", INSTRUMENT, enc.handles[0], enc.handles[1], enc.input_proof)

    def test_proof_for_another_caller(self, funded_ledger):
        enc = encrypted_inputs(funded_ledger, "bob", LONG, 1)
        with pytest.raises(InvalidProof):
            funded_ledger.open_position("alice", INSTRUMENT, enc.handles[0], enc.handles[1], enc.input_proof)

    def test_win(self, winning_ledger):
        open_with(winning_ledger, "alice", SHORT, 2)
        settlement = winning_ledger.close_position("alice", 2, SHORT)
        assert settlement.win
        assert settlement.stake == 2 * PRICE
        assert settlement.payout == 4 * PRICE
        assert balance_of(winning_ledger, "alice") == 1_000_000 + 2 * PRICE
        assert not winning_ledger.has_active_position("alice")
        assert winning_ledger.get_position("alice").active is False

    def test_lose(self, losing_ledger):
        open_with(losing_ledger, "alice", LONG, 2)
        settlement = losing_ledger.close_position("alice", 2, LONG)
        assert not settlement.win
        assert settlement.payout == 0
        assert balance_of(losing_ledger, "alice") == 1_000_000 - 2 * PRICE

    def test_reopen_after_close(self, winning_ledger):
        open_with(winning_ledger, "alice", LONG, 1)
        winning_ledger.close_position("alice", 1, LONG)
        open_with(winning_ledger, "alice", SHORT, 1)
        assert winning_ledger.has_active_position("alice")

    def test_close_without_position(self, funded_ledger):
        with pytest.raises(NoActivePosition):
            funded_ledger.close_position("alice", 1, LONG)
        with pytest.raises(NoActivePosition):
            funded_ledger.close_position("ghost", 1, LONG)

    def test_close_with_wrong_values_keeps_position(self, funded_ledger):
        open_with(funded_ledger, "alice", LONG, 3)
        with pytest.raises(CommitmentMismatch):
            funded_ledger.close_position("alice", 3, SHORT)
        assert funded_ledger.has_active_position("alice")

    def test_close_uses_price_at_open(self, winning_ledger):
        open_with(winning_ledger, "alice", LONG, 1)
        winning_ledger.set_price(OWNER, INSTRUMENT, PRICE * 10)
        settlement = winning_ledger.close_position("alice", 1, LONG)
        assert settlement.stake == PRICE


class TestPriceAdministration:

    def test_owner_sets_price(self, ledger):
        ledger.set_price(OWNER, INSTRUMENT, PRICE)
        assert ledger.get_price(INSTRUMENT) == PRICE
        assert ledger.is_tradeable(INSTRUMENT)

    def test_non_owner_rejected(self, ledger):
        with pytest.raises(Unauthorized):
            ledger.set_price("alice", INSTRUMENT, PRICE)
        assert ledger.price_of(INSTRUMENT) is None
        assert ledger.transaction_log == []

    def test_invalid_price(self, ledger):
        with pytest.raises(ValueError):
            ledger.set_price(OWNER, INSTRUMENT, -1)

    def test_get_unset_price(self, ledger):
        with pytest.raises(PriceNotSet):
            ledger.get_price(INSTRUMENT)

    def test_transfer_ownership(self, ledger):
        ledger.transfer_ownership(OWNER, "carol")
        assert ledger.owner == "carol"
        ledger.set_price("carol", INSTRUMENT, 1)
        with pytest.raises(Unauthorized):
            ledger.set_price(OWNER, INSTRUMENT, 2)

    def test_transfer_by_non_owner(self, ledger):
        with pytest.raises(Unauthorized):
            ledger.transfer_ownership("alice", "alice")
        assert ledger.owner == OWNER

    def test_owner_has_no_balance_privileges(self, funded_ledger):
        with pytest.raises(InsufficientBalance):
            funded_ledger.withdraw(OWNER, 1)


class TestEntitlement:

    def test_owner_of_balance(self, funded_ledger):
        handle = funded_ledger.balance_handle("alice")
        assert funded_ledger.handle_owner(handle.handle_id) == "alice"
        assert funded_ledger.is_entitled(handle, "alice")
        assert not funded_ledger.is_entitled(handle, "bob")

    def test_ledger_owner_not_entitled(self, funded_ledger):
        handle = funded_ledger.balance_handle("alice")
        assert not funded_ledger.is_entitled(handle, OWNER)

    def test_position_handles_owned(self, funded_ledger):
        position = open_with(funded_ledger, "alice", LONG, 1)
        for h in position.handles():
            assert funded_ledger.is_entitled(h, "alice")

    def test_unknown_handle(self, funded_ledger, cipher):
        stray = cipher.encrypt(1)
        with pytest.raises(UnknownHandle):
            funded_ledger.is_entitled(stray, "alice")

    def test_reused_ciphertext_rejected(self, funded_ledger):
        alice_quantity = open_with(funded_ledger, "alice", LONG, 1).encrypted_quantity
        ref = CiphertextRef(alice_quantity.handle_id, alice_quantity.kind)
        enc = encrypted_inputs(funded_ledger, "bob", LONG, 1)
        proof = funded_ledger.verifier.issue_proof([enc.handles[0], ref], "bob", CONTEXT)
        with pytest.raises(InvalidProof, match="not encrypted for bob"):
            funded_ledger.open_position("bob", INSTRUMENT, enc.handles[0], ref, proof)

    def test_derived_ciphertext_cannot_be_admitted(self, winning_ledger, cipher):
        winning_ledger.deposit("bob", 10 * PRICE)
        open_with(winning_ledger, "bob", LONG, 2)
        winning_ledger.close_position("bob", 2, LONG)
        # the payout credit is created just before the new balance
        credit_id = "0x" + hashlib.sha256(
            f"{cipher.name}|{EUINT64}|{len(cipher) - 1}".encode()
        ).hexdigest()
        assert cipher.exists(credit_id)
        assert winning_ledger.handle_owner(credit_id) is None

        enc = encrypted_inputs(winning_ledger, "alice", LONG, 1)
        ref = CiphertextRef(credit_id, EUINT64)
        proof = winning_ledger.verifier.issue_proof([enc.handles[0], ref], "alice", CONTEXT)
        before = winning_ledger.snapshot()
        with pytest.raises(InvalidProof, match="not encrypted for alice"):
            winning_ledger.open_position("alice", INSTRUMENT, enc.handles[0], ref, proof)
        assert winning_ledger.snapshot() == before
        with pytest.raises(UnknownHandle):
            winning_ledger.is_entitled(credit_id, "alice")


class TestAuditLog:

    def test_entries_are_sequenced(self, funded_ledger):
        log = funded_ledger.transaction_log
        assert [e.operation for e in log] == [
            OperationType.SET_PRICE, OperationType.DEPOSIT, OperationType.DEPOSIT,
        ]
        assert [e.sequence_number for e in log] == [0, 1, 2]
        assert log[1].exec_id.startswith("exec:test:000000000001:")
        assert log[1].fields_dict == {"amount": 1_000_000}

    def test_rejections_are_not_logged(self, funded_ledger):
        before = len(funded_ledger.transaction_log)
        with pytest.raises(InsufficientBalance):
            funded_ledger.withdraw("alice", 10 ** 12)
        assert len(funded_ledger.transaction_log) == before

    def test_position_entries(self, winning_ledger):
        open_with(winning_ledger, "alice", LONG, 2)
        winning_ledger.close_position("alice", 2, LONG)
        opened, closed = winning_ledger.transaction_log[-2:]
        assert opened.fields_dict["open_price"] == PRICE
        assert "quantity" not in opened.fields_dict
        assert "direction" not in opened.fields_dict
        assert closed.fields_dict == {"instrument": INSTRUMENT, "win": True, "payout": 4 * PRICE}

    def test_verbose_receipts(self, cipher, verifier, capsys):
        ledger = Ledger("loud", OWNER, cipher, verifier, verbose=True)
        ledger.deposit("alice", 5)
        with pytest.raises(InsufficientBalance):
            ledger.withdraw("alice", 6)
        out = capsys.readouterr().out
        assert "exec:loud:000000000000:" in out
        assert "✓ APPLIED" in out
        assert "✗ REJECTED withdraw: InsufficientBalance" in out

    def test_stale_commit_rejected(self, funded_ledger):
        pending = compute_deposit(funded_ledger, funded_ledger.cipher, "alice", 1)
        funded_ledger.deposit("alice", 1)
        with pytest.raises(LedgerError, match="Stale update"):
            funded_ledger._commit(pending)
