"""
positions.py - Account and position operation builders

Pure functions that compute what an operation would do and return a
PendingUpdate. They read the ledger only through LedgerView and request
ciphertext arithmetic from the EncryptedValueService; they never mutate the
ledger. Ledger commits the returned update atomically, so any exception
raised here leaves ledger state untouched.

Position lifecycle per account: NONE -> OPEN -> NONE.

Functions:
- compute_deposit: credit an encrypted balance
- compute_withdraw: sufficiency check, then debit
- compute_open: admit encrypted direction/quantity, derive and debit stake
- compute_close: prove clear values match the commitment, settle, credit
"""

from __future__ import annotations
from dataclasses import replace
from typing import Optional, Tuple

from .core import (
    LedgerView, EncryptedValueService,
    Account, Position, PendingUpdate, EncryptedHandle,
    Address, Direction, OperationType,
    EUINT32, EUINT64, MAX_UINT32, MAX_UINT64, PAYOUT_MULTIPLIER,
    InvalidProof, CommitmentMismatch, InsufficientBalance, BalanceOverflow, PriceNotSet,
    PositionAlreadyOpen, NoActivePosition, ZeroAmount,
    check_uint, freeze_fields,
)
from .inputs import CiphertextRef, InputProof, InputVerifier
from .settlement import Settlement, SettlementContext, SettlementEngine


# ============================================================================
# HELPERS
# ============================================================================

def _positive(value: int, maximum: int, what: str) -> int:
    """
    Validate a strictly positive plaintext integer.

    Raises:
        ZeroAmount: If value <= 0
        ValueError: If value is not an int or exceeds maximum
    """
    if not isinstance(value, bool) and isinstance(value, int) and value <= 0:
        raise ZeroAmount(f"{what} must be positive, got {value}")
    return check_uint(value, maximum, what)


def _check_headroom(
    cipher: EncryptedValueService,
    balance: EncryptedHandle,
    credit: int,
    address: Address,
) -> None:
    """
    Raise unless balance + credit fits in a uint64.

    Raises:
        BalanceOverflow: If the credit would wrap the encrypted balance
    """
    if credit > MAX_UINT64:
        raise BalanceOverflow(f"{address}: credit {credit} exceeds the balance range")
    headroom = cipher.encrypt(MAX_UINT64 - credit, EUINT64)
    if not cipher.compare_at_least(headroom, balance):
        raise BalanceOverflow(f"{address}: crediting {credit} would overflow the balance")


def _account_or_new(
    view: LedgerView,
    cipher: EncryptedValueService,
    address: Address,
) -> Tuple[Optional[Account], Account, Tuple[EncryptedHandle, ...]]:
    """
    Return (existing record or None, working record, handles created).

    An unseen account starts with an encrypted zero balance.
    """
    if not address or not address.strip():
        raise ValueError("Account address cannot be empty")
    existing = view.find_account(address)
    if existing is not None:
        return existing, existing, ()
    zero = cipher.encrypt(0, EUINT64)
    return None, Account(address=address, encrypted_balance=zero), (zero,)


# ============================================================================
# BALANCE OPERATIONS
# ============================================================================

def compute_deposit(
    view: LedgerView,
    cipher: EncryptedValueService,
    address: Address,
    amount: int,
) -> PendingUpdate:
    """
    Credit `amount` to the account's encrypted balance.

    Raises:
        ZeroAmount: If amount <= 0
        BalanceOverflow: If the new balance would exceed MAX_UINT64
        ValueError: If amount is not a valid uint64
    """
    _positive(amount, MAX_UINT64, "deposit amount")
    old, base, created = _account_or_new(view, cipher, address)
    _check_headroom(cipher, base.encrypted_balance, amount, address)

    credit = cipher.encrypt(amount, EUINT64)
    new_balance = cipher.add(base.encrypted_balance, credit)

    return PendingUpdate(
        operation=OperationType.DEPOSIT,
        address=address,
        old_account=old,
        new_account=replace(base, encrypted_balance=new_balance),
        fields=freeze_fields({"amount": amount}),
        new_handles=created + (new_balance,),
    )


def compute_withdraw(
    view: LedgerView,
    cipher: EncryptedValueService,
    address: Address,
    amount: int,
) -> PendingUpdate:
    """
    Debit `amount` after the encrypted sufficiency check.

    Raises:
        ZeroAmount: If amount <= 0
        InsufficientBalance: If the balance is below amount (or the account
                             has never deposited)
    """
    _positive(amount, MAX_UINT64, "withdraw amount")
    account = view.find_account(address)
    if account is None:
        raise InsufficientBalance(f"{address} has no balance")

    if not cipher.compare_at_least(account.encrypted_balance, amount):
        raise InsufficientBalance(f"{address}: balance below {amount}")

    debit = cipher.encrypt(amount, EUINT64)
    new_balance = cipher.sub(account.encrypted_balance, debit)

    return PendingUpdate(
        operation=OperationType.WITHDRAW,
        address=address,
        old_account=account,
        new_account=replace(account, encrypted_balance=new_balance),
        fields=freeze_fields({"amount": amount}),
        new_handles=(new_balance,),
    )


# ============================================================================
# POSITION LIFECYCLE
# ============================================================================

def compute_open(
    view: LedgerView,
    cipher: EncryptedValueService,
    verifier: InputVerifier,
    address: Address,
    instrument: str,
    direction_ref: CiphertextRef,
    quantity_ref: CiphertextRef,
    input_proof: InputProof,
) -> PendingUpdate:
    """
    Open a position with encrypted direction and quantity.

    The stake is derived homomorphically as quantity x price and stored on
    the position; close credits from that same ciphertext.

    Steps:
    1. Reject a second active position
    2. Reject untradeable instruments
    3. Admit the encrypted inputs
    4. Check the encrypted direction is LONG or SHORT and quantity >= 1
    5. Derive stake, check sufficiency, debit
    6. Record the position at the current price and time

    Raises:
        PositionAlreadyOpen: If the account has an active position
        PriceNotSet: If the instrument has no price
        InvalidProof / StaleBinding: If admission fails, an input is not a
                                     euint32, or the encrypted direction is
                                     outside its domain
        ZeroAmount: If the encrypted quantity is zero
        InsufficientBalance: If the balance does not cover the stake
    """
    existing = view.find_account(address)
    if existing is not None and existing.has_active_position:
        raise PositionAlreadyOpen(f"{address} already has an open position")

    price = view.price_of(instrument)
    if price is None:
        raise PriceNotSet(f"No price set for {instrument}")

    direction, quantity = verifier.admit(
        [direction_ref, quantity_ref], input_proof, address, view.context_id
    )
    if direction.kind != EUINT32 or quantity.kind != EUINT32:
        raise InvalidProof("Direction and quantity must be euint32 ciphertexts")
    for handle in (direction, quantity):
        holder = view.handle_owner(handle.handle_id)
        if holder is not None and holder != address:
            raise InvalidProof(f"Ciphertext {handle.handle_id} belongs to another account")

    if not (cipher.equals(direction, int(Direction.LONG))
            or cipher.equals(direction, int(Direction.SHORT))):
        raise InvalidProof("Encrypted direction is neither LONG nor SHORT")
    if not cipher.compare_at_least(quantity, 1):
        raise ZeroAmount("Encrypted quantity must be at least 1")

    old, base, created = _account_or_new(view, cipher, address)

    # quantity above this bound would overflow a uint64 stake, which no
    # uint64 balance can cover
    bound = cipher.encrypt(MAX_UINT64 // price, EUINT64)
    if not cipher.compare_at_least(bound, quantity):
        raise InsufficientBalance(f"{address}: stake exceeds any balance")

    stake = cipher.mul_plain(quantity, price, EUINT64)
    if not cipher.compare_at_least(base.encrypted_balance, stake):
        raise InsufficientBalance(f"{address}: balance below stake")
    new_balance = cipher.sub(base.encrypted_balance, stake)

    position = Position(
        instrument=instrument,
        encrypted_direction=direction,
        encrypted_quantity=quantity,
        encrypted_stake=stake,
        open_price=price,
        opened_at=view.current_time,
        active=True,
    )

    return PendingUpdate(
        operation=OperationType.OPEN,
        address=address,
        old_account=old,
        new_account=replace(base, encrypted_balance=new_balance, position=position),
        fields=freeze_fields({
            "instrument": instrument,
            "open_price": price,
            "cost_handle": stake.handle_id,
        }),
        new_handles=created + (direction, quantity, stake, new_balance),
    )


def compute_close(
    view: LedgerView,
    cipher: EncryptedValueService,
    engine: SettlementEngine,
    address: Address,
    clear_quantity: int,
    clear_direction: int,
) -> Tuple[PendingUpdate, Settlement]:
    """
    Settle the active position.

    The clear quantity and direction must equal the ciphertexts committed at
    open; the cipher service checks the equality without revealing anything
    else. The stake used for the credit is the ciphertext debited at open.

    Returns:
        (pending update, settlement)

    Raises:
        NoActivePosition: If there is nothing to close
        CommitmentMismatch: If the clear values differ from the commitment
        BalanceOverflow: If a winning payout could not be credited; the
                         position stays active
        SettlementUnavailable: If the settlement engine cannot resolve
        ValueError: If clear_quantity is not a valid uint32
    """
    account = view.find_account(address)
    if account is None or not account.has_active_position:
        raise NoActivePosition(f"{address} has no active position")
    position = account.position

    check_uint(clear_quantity, MAX_UINT32, "quantity")
    try:
        direction = Direction(clear_direction)
    except ValueError as e:
        raise CommitmentMismatch(f"Invalid direction {clear_direction!r}") from e

    if not cipher.equals(position.encrypted_quantity, clear_quantity):
        raise CommitmentMismatch("Quantity differs from the value committed at open")
    if not cipher.equals(position.encrypted_direction, int(direction)):
        raise CommitmentMismatch("Direction differs from the value committed at open")

    stake = position.open_price * clear_quantity
    if not cipher.equals(position.encrypted_stake, stake):
        raise CommitmentMismatch("Stake differs from the value debited at open")

    # must run before the outcome is drawn
    _check_headroom(cipher, account.encrypted_balance, PAYOUT_MULTIPLIER * stake, address)

    ctx = SettlementContext(
        context_id=view.context_id,
        account=address,
        instrument=position.instrument,
        direction=direction,
        quantity=clear_quantity,
        open_price=position.open_price,
        current_price=view.price_of(position.instrument),
        opened_at=position.opened_at,
        closed_at=view.current_time,
    )
    settlement = engine.resolve(ctx, stake)

    new_handles: Tuple[EncryptedHandle, ...] = ()
    new_balance = account.encrypted_balance
    if settlement.win:
        credit = cipher.add(position.encrypted_stake, position.encrypted_stake)
        new_balance = cipher.add(account.encrypted_balance, credit)
        new_handles = (new_balance,)

    pending = PendingUpdate(
        operation=OperationType.CLOSE,
        address=address,
        old_account=account,
        new_account=replace(
            account,
            encrypted_balance=new_balance,
            position=replace(position, active=False),
        ),
        fields=freeze_fields({
            "instrument": position.instrument,
            "win": settlement.win,
            "payout": settlement.payout,
        }),
        new_handles=new_handles,
    )
    return pending, settlement
