"""
confidential_ledger - Confidential Position Ledger

A custodial ledger where accounts hold encrypted balances and open
directional positions whose direction and size stay encrypted until
settlement.

Usage:
    from confidential_ledger import (
        Ledger, InMemoryCipherService, InputVerifier, EncryptedInputBuilder, LONG,
    )

    cipher = InMemoryCipherService()
    verifier = InputVerifier(cipher)
    ledger = Ledger("main", owner="admin", cipher=cipher, verifier=verifier)

    # Owner lists an instrument
    ledger.set_price("admin", "T", 123456)

    # Fund an account
    ledger.deposit("alice", 1_000_000)

    # Encrypt direction and quantity client-side, then open
    enc = (EncryptedInputBuilder(cipher, verifier, ledger.context_id, "alice")
           .add32(LONG)
           .add32(3)
           .encrypt())
    ledger.open_position("alice", "T", enc.handles[0], enc.handles[1], enc.input_proof)

    # Close with the clear values committed at open
    settlement = ledger.close_position("alice", 3, LONG)
"""

# Core types
from .core import (
    LedgerView,
    EncryptedValueService,
    RandomnessSource,
    FundsGateway,
    EncryptedHandle,
    Position,
    Account,
    PendingUpdate,
    LedgerEntry,
    Direction,
    Outcome,
    OperationType,
    LedgerError,
    Unauthorized,
    AdmissionError,
    InvalidProof,
    StaleBinding,
    CommitmentMismatch,
    InsufficientBalance,
    BalanceOverflow,
    PriceNotSet,
    Untradeable,
    PositionAlreadyOpen,
    NoActivePosition,
    ZeroAmount,
    SettlementUnavailable,
    AccountNotRegistered,
    RevealError,
    UnknownHandle,
    LONG,
    SHORT,
    PAYOUT_MULTIPLIER,
    MAX_UINT32,
    MAX_UINT64,
    EUINT32,
    EUINT64,
    EBOOL,
    canonical_digest,
)

# Collaborators
from .ciphers import InMemoryCipherService
from .inputs import (
    CiphertextRef,
    InputProof,
    EncryptedInput,
    EncryptedInputBuilder,
    InputVerifier,
)
from .custody import InMemoryCustody
from .settlement import (
    SystemRandomness,
    SeededRandomness,
    SettlementContext,
    Settlement,
    SettlementEngine,
    SETTLEMENT_POLICIES,
    coin_flip,
    price_move,
    payout_for,
)

# State
from .price_table import PriceTable
from .events import (
    Notification,
    NotificationBus,
    BalanceChanged,
    PriceUpdated,
    OwnershipTransferred,
    PositionOpened,
    PositionClosed,
)
from .positions import (
    compute_deposit,
    compute_withdraw,
    compute_open,
    compute_close,
)
from .ledger import Ledger

# Reveal
from .reveal import (
    KeyRegistry,
    RevealAuthorization,
    RevealService,
    authorize,
)

__all__ = [
    # Core
    'LedgerView', 'EncryptedValueService', 'RandomnessSource', 'FundsGateway',
    'EncryptedHandle', 'Position', 'Account', 'PendingUpdate', 'LedgerEntry',
    'Direction', 'Outcome', 'OperationType',
    'LONG', 'SHORT', 'PAYOUT_MULTIPLIER', 'MAX_UINT32', 'MAX_UINT64',
    'EUINT32', 'EUINT64', 'EBOOL', 'canonical_digest',
    # Exceptions
    'LedgerError', 'Unauthorized', 'AdmissionError', 'InvalidProof',
    'StaleBinding', 'CommitmentMismatch', 'InsufficientBalance', 'BalanceOverflow',
    'PriceNotSet',
    'Untradeable', 'PositionAlreadyOpen', 'NoActivePosition', 'ZeroAmount',
    'SettlementUnavailable', 'AccountNotRegistered', 'RevealError', 'UnknownHandle',
    # Collaborators
    'InMemoryCipherService', 'InMemoryCustody',
    'CiphertextRef', 'InputProof', 'EncryptedInput', 'EncryptedInputBuilder',
    'InputVerifier',
    # Settlement
    'SystemRandomness', 'SeededRandomness', 'SettlementContext', 'Settlement',
    'SettlementEngine', 'SETTLEMENT_POLICIES', 'coin_flip', 'price_move',
    'payout_for',
    # State
    'PriceTable', 'Ledger',
    'compute_deposit', 'compute_withdraw', 'compute_open', 'compute_close',
    # Notifications
    'Notification', 'NotificationBus', 'BalanceChanged', 'PriceUpdated',
    'OwnershipTransferred', 'PositionOpened', 'PositionClosed',
    # Reveal
    'KeyRegistry', 'RevealAuthorization', 'RevealService', 'authorize',
]

__version__ = '1.0.0'
