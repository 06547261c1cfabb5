"""
ledger.py - Confidential Account Ledger

The Ledger class is the central state manager of the system. It is the only
module that mutates account, position and price state.

Key responsibilities:
    - Implements the LedgerView protocol for the pure builders in positions.py
    - Serializes operations per account and commits each one atomically
    - Owns the price table and gates it behind the owner identity
    - Tracks which account owns every ciphertext handle (reveal entitlement)
    - Always logs: every committed operation lands in the audit trail
"""

from __future__ import annotations
from collections import deque
from datetime import datetime
import threading
import uuid
from typing import Any, Callable, Deque, Dict, List, Optional, Set, Tuple, Type, Union

from .core import (
    # Types
    Account, Position, PendingUpdate, LedgerEntry, EncryptedHandle,
    EncryptedValueService, FundsGateway,
    Address, HandleId, Price, OperationType,
    # Exceptions
    LedgerError, AccountNotRegistered, UnknownHandle,
    # Helpers
    freeze_fields,
)
from .custody import InMemoryCustody
from .events import (
    Notification, NotificationBus,
    BalanceChanged, PriceUpdated, OwnershipTransferred,
    PositionOpened, PositionClosed,
)
from .inputs import CiphertextRef, InputProof, InputVerifier
from .positions import compute_deposit, compute_withdraw, compute_open, compute_close
from .price_table import PriceTable
from .settlement import Settlement, SettlementEngine


class Ledger:
    """
    Custodial ledger of encrypted balances and confidential positions.

    Implements the LedgerView protocol, allowing the ledger to be passed to
    the pure operation builders, which only use read-only methods.

    Design Principles:
        - Validate fully, then commit: builders raise before anything changes,
          and a commit is a single swap of the account record.
        - Always logs: every committed operation is recorded as a LedgerEntry
          with plaintext fields only.

    Thread Safety:
        Operations on one account are serialized by a per-account lock.
        Operations on different accounts run concurrently. open_position also
        holds the price table lock so set_price cannot change the price it
        reads. Lock order is always account, then price table, then the
        internal state lock. Notifications are queued at commit and delivered
        after the operation releases its locks, in commit order.

    Example:
        cipher = InMemoryCipherService()
        verifier = InputVerifier(cipher)
        ledger = Ledger("main", owner="admin", cipher=cipher, verifier=verifier)
        ledger.set_price("admin", "T", 123456)
        ledger.deposit("alice", 1_000_000)

        enc = (EncryptedInputBuilder(cipher, verifier, ledger.context_id, "alice")
               .add32(LONG).add32(3).encrypt())
        ledger.open_position("alice", "T", enc.handles[0], enc.handles[1], enc.input_proof)
        settlement = ledger.close_position("alice", 3, LONG)
    """

    def __init__(
        self,
        name: str,
        owner: Address,
        cipher: EncryptedValueService,
        verifier: InputVerifier,
        settlement: Optional[SettlementEngine] = None,
        custody: Optional[FundsGateway] = None,
        initial_time: Optional[datetime] = None,
        verbose: bool = True,
        context_id: Optional[str] = None,
    ):
        """
        Create a ledger.

        Args:
            name: Ledger identifier
            owner: Account allowed to set prices
            cipher: Encrypted value service
            verifier: Encrypted input validator bound to the same cipher service
            settlement: Settlement engine (coin flip over system entropy if not provided)
            custody: Gateway receiving withdrawals (in-memory if not provided)
            initial_time: Starting time for the ledger (default: 1970-01-01)
            verbose: Print receipts and rejections (default: True)
            context_id: Instance identifier bound into proofs (random if not provided)
        """
        self.name = name
        self.cipher = cipher
        self.verifier = verifier
        self.settlement = settlement if settlement is not None else SettlementEngine()
        self.custody = custody if custody is not None else InMemoryCustody()
        self.prices = PriceTable(owner)
        self.bus = NotificationBus()
        self.verbose = verbose
        self._context_id = context_id or uuid.uuid4().hex
        self._current_time: datetime = initial_time or datetime(1970, 1, 1)

        self._accounts: Dict[Address, Account] = {}
        self._handle_owners: Dict[HandleId, Address] = {}
        self.transaction_log: List[LedgerEntry] = []
        # Monotonic sequence counter for execution ordering
        self._next_sequence: int = 0

        # Guards _accounts, _handle_owners, the log, the sequence counter,
        # the clock and the outbox
        self._state_lock = threading.Lock()
        self._account_locks: Dict[Address, threading.RLock] = {}
        self._registry_lock = threading.Lock()
        # Notifications queued in commit order, delivered by _flush_notifications
        self._outbox: Deque[Notification] = deque()
        self._publish_lock = threading.RLock()

    # ========================================================================
    # LedgerView PROTOCOL IMPLEMENTATION (read-only methods)
    # ========================================================================

    @property
    def current_time(self) -> datetime:
        """Current logical time of the ledger."""
        with self._state_lock:
            return self._current_time

    @property
    def context_id(self) -> str:
        """Identifier of this ledger instance, bound into admission proofs."""
        return self._context_id

    @property
    def owner(self) -> Address:
        return self.prices.owner

    def find_account(self, address: Address) -> Optional[Account]:
        with self._state_lock:
            return self._accounts.get(address)

    def price_of(self, instrument: str) -> Optional[Price]:
        return self.prices.price_of(instrument)

    def handle_owner(self, handle_id: HandleId) -> Optional[Address]:
        with self._state_lock:
            return self._handle_owners.get(handle_id)

    # ========================================================================
    # READ ACCESSORS
    # ========================================================================

    def get_account(self, address: Address) -> Account:
        """
        Raises:
            AccountNotRegistered: If the ledger has never seen the account
        """
        account = self.find_account(address)
        if account is None:
            raise AccountNotRegistered(f"Account {address} not registered")
        return account

    def list_accounts(self) -> Set[Address]:
        with self._state_lock:
            return set(self._accounts)

    def balance_handle(self, address: Address) -> EncryptedHandle:
        """
        Return the encrypted balance handle. No decryption happens.

        Raises:
            AccountNotRegistered: If the ledger has never seen the account
        """
        return self.get_account(address).encrypted_balance

    def has_active_position(self, address: Address) -> bool:
        """False for accounts the ledger has never seen."""
        account = self.find_account(address)
        return account is not None and account.has_active_position

    def get_position(self, address: Address) -> Optional[Position]:
        """Latest position (active or settled), or None if never opened."""
        account = self.find_account(address)
        return account.position if account is not None else None

    def get_price(self, instrument: str) -> Price:
        """
        Raises:
            PriceNotSet: If the instrument is untradeable
        """
        return self.prices.get_price(instrument)

    def is_tradeable(self, instrument: str) -> bool:
        return self.prices.is_tradeable(instrument)

    def is_entitled(self, handle: Union[EncryptedHandle, HandleId], requester: Address) -> bool:
        """
        Whether requester may have this handle revealed.

        Only the account that owns a handle is entitled to it. The ledger
        owner has no blanket access.

        Raises:
            UnknownHandle: If the handle is not tracked by the ledger
        """
        handle_id = handle.handle_id if isinstance(handle, EncryptedHandle) else handle
        holder = self.handle_owner(handle_id)
        if holder is None:
            raise UnknownHandle(f"Handle {handle_id} is not tracked by {self.name}")
        return holder == requester

    def snapshot(self) -> Dict[str, Any]:
        """
        Capture all ledger state for comparison.

        Two snapshots compare equal exactly when accounts, positions, prices,
        owner, handle ownership and the audit log length are identical.
        """
        with self._state_lock:
            accounts = dict(self._accounts)
            handle_owners = dict(self._handle_owners)
            log_length = len(self.transaction_log)
        return {
            "accounts": accounts,
            "prices": self.prices.snapshot(),
            "owner": self.prices.owner,
            "handle_owners": handle_owners,
            "log_length": log_length,
        }

    # ========================================================================
    # TIME MANAGEMENT
    # ========================================================================

    def advance_time(self, new_time: datetime) -> None:
        """
        Advance the ledger's logical clock to a new time.

        Time can only move forward, never backward.

        Raises:
            ValueError: If new_time is before the current time
        """
        with self._state_lock:
            if new_time < self._current_time:
                raise ValueError(
                    f"Cannot move time backwards: {new_time} < {self._current_time}"
                )
            self._current_time = new_time

    # ========================================================================
    # NOTIFICATIONS
    # ========================================================================

    def subscribe(
        self,
        callback: Callable[[Notification], None],
        event_type: Optional[Type[Notification]] = None,
    ) -> int:
        """Register an observer. See NotificationBus.subscribe."""
        return self.bus.subscribe(callback, event_type)

    def unsubscribe(self, sub_id: int) -> bool:
        return self.bus.unsubscribe(sub_id)

    # ========================================================================
    # ACCOUNT OPERATIONS (Mutating)
    # ========================================================================

    def deposit(self, address: Address, amount: int) -> EncryptedHandle:
        """
        Credit a plaintext amount to the encrypted balance.

        Returns:
            The new balance handle

        Raises:
            ZeroAmount: If amount <= 0
            BalanceOverflow: If the balance would exceed MAX_UINT64
        """
        with self._lock_for(address):
            pending = self._attempt(
                "deposit", compute_deposit, self, self.cipher, address, amount
            )
            self._commit(pending, lambda entry: BalanceChanged(
                timestamp=entry.execution_time,
                account=address,
                operation=OperationType.DEPOSIT,
                amount=amount,
            ))
        self._flush_notifications()
        return pending.new_account.encrypted_balance

    def withdraw(self, address: Address, amount: int) -> EncryptedHandle:
        """
        Debit a plaintext amount and release it through the custody gateway.

        The sufficiency check, the debit and the release happen while the
        account lock is held. If the gateway raises, nothing is committed.

        Returns:
            The new balance handle

        Raises:
            ZeroAmount: If amount <= 0
            InsufficientBalance: If the encrypted balance is below amount
        """
        with self._lock_for(address):
            pending = self._attempt(
                "withdraw", compute_withdraw, self, self.cipher, address, amount
            )
            self.custody.release(address, amount)
            self._commit(pending, lambda entry: BalanceChanged(
                timestamp=entry.execution_time,
                account=address,
                operation=OperationType.WITHDRAW,
                amount=amount,
            ))
        self._flush_notifications()
        return pending.new_account.encrypted_balance

    # ========================================================================
    # POSITION LIFECYCLE (Mutating)
    # ========================================================================

    def open_position(
        self,
        address: Address,
        instrument: str,
        direction_handle: CiphertextRef,
        quantity_handle: CiphertextRef,
        input_proof: InputProof,
    ) -> Position:
        """
        Open a confidential position at the current price.

        Returns:
            The new active Position

        Raises:
            PositionAlreadyOpen, PriceNotSet, InvalidProof, StaleBinding,
            ZeroAmount, InsufficientBalance
        """
        with self._lock_for(address), self.prices.lock:
            pending = self._attempt(
                "open", compute_open,
                self, self.cipher, self.verifier,
                address, instrument, direction_handle, quantity_handle, input_proof,
            )
            position = pending.new_account.position
            self._commit(pending, lambda entry: PositionOpened(
                timestamp=entry.execution_time,
                account=address,
                instrument=instrument,
                cost_handle=position.encrypted_stake.handle_id,
                open_price=position.open_price,
            ))
        self._flush_notifications()
        return position

    def close_position(
        self,
        address: Address,
        clear_quantity: int,
        clear_direction: int,
    ) -> Settlement:
        """
        Settle the active position.

        The clear values must match the encrypted values committed at open.
        On failure (including SettlementUnavailable and BalanceOverflow) the
        position stays active and can be closed again later.

        Returns:
            Settlement with outcome, stake and payout

        Raises:
            NoActivePosition, CommitmentMismatch, BalanceOverflow,
            SettlementUnavailable
        """
        with self._lock_for(address):
            pending, settlement = self._attempt(
                "close", compute_close,
                self, self.cipher, self.settlement,
                address, clear_quantity, clear_direction,
            )
            self._commit(pending, lambda entry: PositionClosed(
                timestamp=entry.execution_time,
                account=address,
                instrument=pending.new_account.position.instrument,
                win=settlement.win,
                payout=settlement.payout,
            ))
        self._flush_notifications()
        return settlement

    # ========================================================================
    # ADMIN OPERATIONS (Mutating)
    # ========================================================================

    def set_price(self, caller: Address, instrument: str, price: Price) -> None:
        """
        Set an instrument price. Owner only; overwrites unconditionally.

        Raises:
            Unauthorized: If caller is not the owner
            ValueError: If price is not a valid uint64
        """
        with self.prices.lock:
            self._attempt("set_price", self.prices.set_price, caller, instrument, price)
            self._record(OperationType.SET_PRICE, caller, {
                "instrument": instrument,
                "price": price,
            }, lambda entry: PriceUpdated(
                timestamp=entry.execution_time,
                instrument=instrument,
                price=price,
            ))
        self._flush_notifications()

    def transfer_ownership(self, caller: Address, new_owner: Address) -> None:
        """
        Hand price authority to new_owner. Only the current owner may do this.

        Raises:
            Unauthorized: If caller is not the owner
        """
        with self.prices.lock:
            previous = self._attempt(
                "transfer_ownership", self.prices.transfer_ownership, caller, new_owner
            )
            self._record(OperationType.TRANSFER_OWNERSHIP, caller, {
                "previous_owner": previous,
                "new_owner": new_owner,
            }, lambda entry: OwnershipTransferred(
                timestamp=entry.execution_time,
                previous_owner=previous,
                new_owner=new_owner,
            ))
        self._flush_notifications()

    # ========================================================================
    # COMMIT AND AUDIT
    # ========================================================================

    def _lock_for(self, address: Address) -> threading.RLock:
        if not address or not address.strip():
            raise ValueError("Account address cannot be empty")
        with self._registry_lock:
            lock = self._account_locks.get(address)
            if lock is None:
                lock = threading.RLock()
                self._account_locks[address] = lock
            return lock

    def _attempt(self, label: str, fn: Callable[..., Any], *args: Any) -> Any:
        """Run a builder or validator, printing the reason if it rejects."""
        try:
            return fn(*args)
        except (LedgerError, ValueError) as e:
            if self.verbose:
                print(f"✗ REJECTED {label}: {type(e).__name__}: {e}")
            raise

    def _generate_exec_id(self, sequence: int) -> str:
        """
        Generate a unique execution ID.

        Format: exec:{ledger_name}:{sequence:012d}:{timestamp_micros}
        """
        micros = int(self._current_time.timestamp() * 1_000_000)
        return f"exec:{self.name}:{sequence:012d}:{micros}"

    def _append_entry(
        self,
        operation: OperationType,
        account: Address,
        fields: Tuple[Tuple[str, Any], ...],
    ) -> LedgerEntry:
        # Caller holds _state_lock
        sequence = self._next_sequence
        self._next_sequence += 1
        entry = LedgerEntry(
            operation=operation,
            account=account,
            fields=fields,
            exec_id=self._generate_exec_id(sequence),
            ledger_name=self.name,
            execution_time=self._current_time,
            sequence_number=sequence,
        )
        self.transaction_log.append(entry)
        return entry

    def _commit(
        self,
        pending: PendingUpdate,
        notify: Callable[[LedgerEntry], Notification],
    ) -> LedgerEntry:
        """
        Install a PendingUpdate and queue its notification.

        The caller holds the account lock, so the record the update was built
        against is still current. A mismatch means a builder ran outside the
        lock and is rejected.
        """
        with self._state_lock:
            current = self._accounts.get(pending.address)
            if current is not pending.old_account:
                raise LedgerError(f"Stale update for {pending.address}")
            self._accounts[pending.address] = pending.new_account
            for handle in pending.new_handles:
                self._handle_owners[handle.handle_id] = pending.address
            entry = self._append_entry(pending.operation, pending.address, pending.fields)
            self._outbox.append(notify(entry))
        if self.verbose:
            self._print_entry(entry, "APPLIED", "✓")
        return entry

    def _record(
        self,
        operation: OperationType,
        account: Address,
        fields: Dict[str, Any],
        notify: Callable[[LedgerEntry], Notification],
    ) -> LedgerEntry:
        """Log an operation that does not touch an account record."""
        with self._state_lock:
            entry = self._append_entry(operation, account, freeze_fields(fields))
            self._outbox.append(notify(entry))
        if self.verbose:
            self._print_entry(entry, "APPLIED", "✓")
        return entry

    def _flush_notifications(self) -> None:
        """
        Deliver queued notifications in commit order.

        Called after the operation's locks are released. Whichever thread
        holds _publish_lock drains the whole queue, so subscribers observe
        notifications in sequence-number order.
        """
        with self._publish_lock:
            while True:
                with self._state_lock:
                    if not self._outbox:
                        return
                    note = self._outbox.popleft()
                self.bus.publish(note)

    def _print_entry(self, entry: LedgerEntry, result: str, icon: str) -> None:
        """Print an entry receipt with a result line in place of the closing border."""
        lines = repr(entry).split("\n")
        w = 80
        bar = "─" * w
        lines[-1] = f"├{bar}┤"
        line = f" {icon} {result}"
        lines.append(f"│{line}{' ' * (w - len(line))}│")
        lines.append(f"└{bar}┘")
        print("\n".join(lines))

    def __repr__(self) -> str:
        return (f"Ledger({self.name!r}, {len(self._accounts)} accounts, "
                f"{len(self.transaction_log)} entries, owner={self.owner})")
