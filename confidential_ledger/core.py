"""
Core types and pure functions for the confidential ledger.

This module provides the foundational data structures and protocols:
1. Protocols: LedgerView for read-only access, plus the collaborator
   interfaces the ledger consumes (EncryptedValueService, RandomnessSource,
   FundsGateway)
2. Immutable data structures: EncryptedHandle, Position, Account,
   PendingUpdate, LedgerEntry
3. Exceptions: LedgerError and the domain-specific error taxonomy
4. Canonical serialization used for proof and authorization digests

Nothing in this module mutates ledger state. Plaintext never leaves the
EncryptedValueService except through an authorized reveal.
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime
from enum import Enum, IntEnum
import hashlib
from typing import (
    Dict, Optional, Any, Protocol, Tuple, Union, runtime_checkable
)


# ============================================================================
# CONSTANTS
# ============================================================================

# Encrypted integer kinds: 32-bit position parameters, 64-bit balances and stakes.
EUINT32 = "euint32"
EUINT64 = "euint64"
EBOOL = "ebool"

KIND_BITS = {
    EBOOL: 1,
    EUINT32: 32,
    EUINT64: 64,
}

MAX_UINT32 = 2 ** 32 - 1
MAX_UINT64 = 2 ** 64 - 1

# A winning position returns its stake plus an equal profit.
PAYOUT_MULTIPLIER = 2


# ============================================================================
# TYPE ALIASES
# ============================================================================

# Account identifier (a wallet address).
Address = str

# Opaque ciphertext identifier (bytes32-style hex string).
HandleId = str

# Plaintext unit price, in the smallest currency denomination.
Price = int


# ============================================================================
# ENUMS
# ============================================================================

class Direction(IntEnum):
    """Trade direction. Values match the encrypted encoding (1=long, 2=short)."""
    LONG = 1
    SHORT = 2


LONG = Direction.LONG
SHORT = Direction.SHORT


class Outcome(Enum):
    """Result of settling a position."""
    WIN = "win"
    LOSE = "lose"


class OperationType(Enum):
    """
    Classification of a committed ledger operation.

    Used for the audit trail and for receipt rendering.
    """
    DEPOSIT = "deposit"
    WITHDRAW = "withdraw"
    OPEN = "open"
    CLOSE = "close"
    SET_PRICE = "set_price"
    TRANSFER_OWNERSHIP = "transfer_ownership"


# ============================================================================
# EXCEPTIONS
# ============================================================================

class LedgerError(Exception):
    """Base exception for all ledger-related errors."""
    pass


class Unauthorized(LedgerError):
    """Raised when the caller lacks the role or entitlement an operation requires."""
    pass


class AdmissionError(LedgerError):
    """Base class for failures admitting externally supplied ciphertexts."""
    pass


class InvalidProof(AdmissionError):
    """Raised when an admission proof does not bind the ciphertexts to the caller."""
    pass


class StaleBinding(AdmissionError):
    """Raised when an admission proof was produced for a different ledger instance."""
    pass


class CommitmentMismatch(InvalidProof):
    """Raised when clear values supplied at close differ from the values committed at open."""
    pass


class InsufficientBalance(LedgerError):
    """Raised when the encrypted sufficiency check for a debit fails."""
    pass


class BalanceOverflow(LedgerError):
    """Raised when a credit would take an encrypted balance past MAX_UINT64."""
    pass


class PriceNotSet(LedgerError):
    """Raised when an instrument has no price and therefore cannot be traded."""
    pass


# Both names appear in the error taxonomy; they are the same condition.
Untradeable = PriceNotSet


class PositionAlreadyOpen(LedgerError):
    """Raised when opening a position while another one is still active."""
    pass


class NoActivePosition(LedgerError):
    """Raised when closing without an active position."""
    pass


class ZeroAmount(LedgerError):
    """Raised when an amount or quantity that must be positive is not."""
    pass


class SettlementUnavailable(LedgerError):
    """Raised when randomness or price data needed to settle cannot be obtained."""
    pass


class AccountNotRegistered(LedgerError):
    """Raised when reading an account the ledger has never seen."""
    pass


class RevealError(LedgerError):
    """Base class for authorized reveal failures other than Unauthorized."""
    pass


class UnknownHandle(RevealError):
    """Raised when a handle is not tracked by the ledger."""
    pass


# ============================================================================
# ENCRYPTED VALUE HANDLE
# ============================================================================

@dataclass(frozen=True, slots=True)
class EncryptedHandle:
    """
    Opaque reference to a ciphertext.

    The ledger never sees the plaintext behind a handle. Arithmetic and
    comparisons are requested from an EncryptedValueService.

    Attributes:
        handle_id: Identifier of the ciphertext within the service.
        kind: Encrypted integer type (EUINT32, EUINT64, EBOOL).
    """
    handle_id: HandleId
    kind: str = EUINT64

    def __post_init__(self):
        if not self.handle_id or not self.handle_id.strip():
            raise ValueError("EncryptedHandle handle_id cannot be empty")
        if self.kind not in KIND_BITS:
            raise ValueError(f"Unknown encrypted kind: {self.kind}")

    def __repr__(self) -> str:
        return f"Enc<{self.kind}:{self.handle_id[:10]}…>"


# ============================================================================
# PROTOCOLS
# ============================================================================

@runtime_checkable
class EncryptedValueService(Protocol):
    """
    Capability interface to the homomorphic backend.

    The ledger only ever calls these methods; it never branches on the
    concrete backend.
    """

    def encrypt(self, value: int, kind: str = EUINT64) -> EncryptedHandle:
        """Encrypt a trivially known plaintext."""
        ...

    def add(self, a: EncryptedHandle, b: EncryptedHandle) -> EncryptedHandle:
        ...

    def sub(self, a: EncryptedHandle, b: EncryptedHandle) -> EncryptedHandle:
        ...

    def mul_plain(self, a: EncryptedHandle, scalar: int, kind: str = EUINT64) -> EncryptedHandle:
        """Multiply a ciphertext by a plaintext scalar."""
        ...

    def compare_at_least(self, a: EncryptedHandle, b: Union[EncryptedHandle, int]) -> bool:
        """Return whether a >= b. Used for sufficiency checks before every debit."""
        ...

    def equals(self, a: EncryptedHandle, value: int) -> bool:
        """Return whether the ciphertext equals a plaintext (equality proof)."""
        ...

    def exists(self, handle_id: HandleId) -> bool:
        ...

    def kind_of(self, handle_id: HandleId) -> str:
        """Return the encrypted kind the ciphertext was created with."""
        ...

    def decrypt_for(self, handle: EncryptedHandle, authorization: Any) -> int:
        """Decrypt a handle under an authorization that covers it."""
        ...


@runtime_checkable
class RandomnessSource(Protocol):
    """
    Source of settlement entropy.

    Must be unpredictable to the account initiating settlement at the time it
    commits to the operation.
    """

    def draw(self, seed: bytes) -> int:
        """Return a non-negative integer derived from fresh entropy and seed."""
        ...


@runtime_checkable
class FundsGateway(Protocol):
    """External settlement layer that receives withdrawn funds."""

    def release(self, address: Address, amount: int) -> None:
        ...


@runtime_checkable
class LedgerView(Protocol):
    """
    Read-only interface to ledger state.

    Operation builders in positions.py accept a LedgerView to declare that
    they never mutate the ledger. The Ledger class implements this protocol
    and also provides the mutating operations.
    """

    @property
    def current_time(self) -> datetime:
        """Return the current logical time of the ledger."""
        ...

    @property
    def context_id(self) -> str:
        """Return the identifier of this ledger instance."""
        ...

    @property
    def owner(self) -> Address:
        ...

    def find_account(self, address: Address) -> Optional['Account']:
        """Return the account record, or None if the ledger has never seen it."""
        ...

    def price_of(self, instrument: str) -> Optional[Price]:
        """Return the current price, or None if the instrument is untradeable."""
        ...

    def handle_owner(self, handle_id: HandleId) -> Optional[Address]:
        """Return the account that owns a handle, or None if untracked."""
        ...


# ============================================================================
# LEDGER RECORDS
# ============================================================================

@dataclass(frozen=True, slots=True)
class Position:
    """
    A directional bet whose direction and size are encrypted.

    Write-once: closing produces a new record with active=False.

    Attributes:
        instrument: Plaintext identifier of the priced instrument.
        encrypted_direction: euint32 handle, LONG or SHORT.
        encrypted_quantity: euint32 handle.
        encrypted_stake: euint64 handle, open_price x quantity, debited at open.
        open_price: Price snapshot at open.
        opened_at: Ledger time at open.
        active: False once the position has been settled.
    """
    instrument: str
    encrypted_direction: EncryptedHandle
    encrypted_quantity: EncryptedHandle
    encrypted_stake: EncryptedHandle
    open_price: Price
    opened_at: datetime
    active: bool = True

    def handles(self) -> Tuple[EncryptedHandle, ...]:
        return (self.encrypted_direction, self.encrypted_quantity, self.encrypted_stake)


@dataclass(frozen=True, slots=True)
class Account:
    """
    Per-account ledger record.

    Attributes:
        address: Stable account identifier.
        encrypted_balance: euint64 handle in the smallest currency unit.
        position: Latest position, retained after close for history.
    """
    address: Address
    encrypted_balance: EncryptedHandle
    position: Optional[Position] = None

    @property
    def has_active_position(self) -> bool:
        return self.position is not None and self.position.active


@dataclass(frozen=True, slots=True)
class PendingUpdate:
    """
    A fully validated account mutation that has not been committed yet.

    Built by the pure functions in positions.py and applied by
    Ledger._commit. Building one never touches ledger state, so a failure at
    any point before commit leaves the ledger exactly as it was.

    Attributes:
        operation: What kind of operation produced this update.
        address: Account being updated.
        old_account: Account record the update was computed against (None if
                     the account is being created).
        new_account: Account record to install.
        fields: Plaintext facts for the audit entry and notifications.
        new_handles: Handles that become owned by the account on commit.
    """
    operation: OperationType
    address: Address
    old_account: Optional[Account]
    new_account: Account
    fields: Tuple[Tuple[str, Any], ...] = ()
    new_handles: Tuple[EncryptedHandle, ...] = ()

    @property
    def fields_dict(self) -> Dict[str, Any]:
        return dict(self.fields)

    def __repr__(self) -> str:
        return f"PendingUpdate({self.operation.value}, {self.address}, {len(self.new_handles)} new handles)"


@dataclass(frozen=True, slots=True)
class LedgerEntry:
    """
    An executed, immutable record of a committed operation.

    Only plaintext facts are recorded: amounts the caller already knows,
    prices, handle identifiers and settlement results.

    Attributes:
        operation: Classification of the operation.
        account: Account (or admin caller) that performed it.
        fields: Plaintext facts as sorted (key, value) pairs.
        exec_id: Unique execution identifier (ledger + sequence + time).
        ledger_name: Name of the ledger that executed this.
        execution_time: Logical time the operation was committed.
        sequence_number: Monotonic sequence within the ledger.
    """
    operation: OperationType
    account: Address
    fields: Tuple[Tuple[str, Any], ...]
    exec_id: str
    ledger_name: str
    execution_time: datetime
    sequence_number: int

    @property
    def fields_dict(self) -> Dict[str, Any]:
        return dict(self.fields)

    def __repr__(self) -> str:
        w = 80  # Inner content width
        bar = "─" * w

        def pad(text: str) -> str:
            """Pad or truncate text to exactly w characters."""
            if len(text) > w:
                return text[:w-3] + "..."
            return text + " " * (w - len(text))

        lines = [
            "",
            f"┌{bar}┐",
            f"│{pad(' Entry: ' + self.exec_id)}│",
            f"├{bar}┤",
            f"│{pad('   operation      : ' + self.operation.value)}│",
            f"│{pad('   account        : ' + self.account)}│",
            f"│{pad('   ledger_name    : ' + self.ledger_name)}│",
            f"│{pad('   execution_time : ' + str(self.execution_time))}│",
            f"│{pad('   sequence       : ' + str(self.sequence_number))}│",
        ]
        if self.fields:
            lines.append(f"├{bar}┤")
            for key, value in self.fields:
                lines.append(f"│{pad(f'   {key}: {value}')}│")
        lines.append(f"└{bar}┘")
        return "\n".join(lines)


def freeze_fields(values: Dict[str, Any]) -> Tuple[Tuple[str, Any], ...]:
    """Convert a fields dict to sorted (key, value) pairs for frozen records."""
    return tuple(sorted(values.items()))


# ============================================================================
# CANONICAL DIGESTS
# ============================================================================

def _canonicalize(value: Any) -> str:
    """
    Produce a canonical string representation of a value for hashing.

    Output is independent of dict insertion order and of how the value was
    constructed, so identical bindings always hash identically.
    """
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, Enum):
        return f"E:{type(value).__name__}.{value.name}"
    if isinstance(value, int):
        return f"N:{value}"
    if isinstance(value, str):
        return f"S:{value}"
    if isinstance(value, bytes):
        return f"B:{value.hex()}"
    if isinstance(value, datetime):
        return f"T:{value.isoformat()}"
    if isinstance(value, EncryptedHandle):
        return f"H:{value.kind}:{value.handle_id}"
    if isinstance(value, dict):
        items = sorted(value.items(), key=lambda kv: str(kv[0]))
        serialized = ",".join(f"{_canonicalize(k)}:{_canonicalize(v)}" for k, v in items)
        return f"{{{serialized}}}"
    if isinstance(value, (list, tuple)):
        serialized = ",".join(_canonicalize(item) for item in value)
        return f"[{serialized}]"
    # Fallback for other types - use repr but with a marker
    return f"R:{repr(value)}"


def canonical_digest(*parts: Any) -> bytes:
    """
    SHA-256 over the canonical form of parts.

    Used as the message for admission proofs, reveal authorizations and
    settlement seeds.
    """
    content = "|".join(_canonicalize(p) for p in parts)
    return hashlib.sha256(content.encode()).digest()


def check_uint(value: Any, maximum: int, what: str) -> int:
    """
    Validate a plaintext unsigned integer.

    Raises:
        ValueError: If value is not an int (bools rejected) or out of range.
    """
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{what} must be int, got {type(value).__name__}")
    if value < 0 or value > maximum:
        raise ValueError(f"{what} out of range: {value}")
    return value
