"""
ciphers.py - In-memory Encrypted Value Service

Reference implementation of the EncryptedValueService protocol, in the
spirit of a mock FHE coprocessor: plaintexts live in a private handle table
and callers only ever hold opaque EncryptedHandle references.

Arithmetic follows the encrypted integer types: results wrap modulo 2**bits
of the result kind. The ledger guards every subtraction with
compare_at_least, so wrap-around never reaches a committed balance.

This is not cryptography. It exists so the ledger can run end to end and be
tested without a homomorphic backend. A production deployment injects a real
backend behind the same protocol.
"""

from __future__ import annotations
import hashlib
import threading
from typing import Any, Dict, Tuple, Union

from .core import (
    EncryptedHandle, HandleId,
    EUINT64, KIND_BITS,
    LedgerError, Unauthorized, UnknownHandle,
    check_uint,
)


class InMemoryCipherService:
    """
    Handle-table backed stand-in for a homomorphic backend.

    Thread Safety:
        The handle table is guarded by an internal lock, so one service can be
        shared by a ledger and by concurrent clients building inputs.

    Example:
        cipher = InMemoryCipherService()
        a = cipher.encrypt(100)
        b = cipher.encrypt(30)
        c = cipher.sub(a, b)
        cipher.compare_at_least(c, 70)   # True
    """

    def __init__(self, name: str = "mock-fhe", test_mode: bool = False):
        """
        Create a service.

        Args:
            name: Service identifier, mixed into handle ids
            test_mode: Enable peek() for test assertions (default: False)
        """
        self.name = name
        self._test_mode = test_mode
        self._plaintexts: Dict[HandleId, Tuple[str, int]] = {}
        self._counter = 0
        self._lock = threading.Lock()

    def _new_handle(self, value: int, kind: str) -> EncryptedHandle:
        if kind not in KIND_BITS:
            raise ValueError(f"Unknown encrypted kind: {kind}")
        wrapped = value % (1 << KIND_BITS[kind])
        with self._lock:
            self._counter += 1
            digest = hashlib.sha256(
                f"{self.name}|{kind}|{self._counter}".encode()
            ).hexdigest()
            handle_id = "0x" + digest
            self._plaintexts[handle_id] = (kind, wrapped)
        return EncryptedHandle(handle_id=handle_id, kind=kind)

    def _value(self, handle: EncryptedHandle) -> int:
        with self._lock:
            entry = self._plaintexts.get(handle.handle_id)
        if entry is None:
            raise UnknownHandle(f"Ciphertext {handle.handle_id} not found")
        return entry[1]

    def _operand(self, operand: Union[EncryptedHandle, int]) -> int:
        if isinstance(operand, EncryptedHandle):
            return self._value(operand)
        return check_uint(operand, (1 << 64) - 1, "plaintext operand")

    # ========================================================================
    # EncryptedValueService PROTOCOL
    # ========================================================================

    def encrypt(self, value: int, kind: str = EUINT64) -> EncryptedHandle:
        """Encrypt a plaintext the caller already knows."""
        if kind not in KIND_BITS:
            raise ValueError(f"Unknown encrypted kind: {kind}")
        check_uint(value, (1 << KIND_BITS[kind]) - 1, f"{kind} plaintext")
        return self._new_handle(value, kind)

    def add(self, a: EncryptedHandle, b: EncryptedHandle) -> EncryptedHandle:
        kind = _wider(a.kind, b.kind)
        return self._new_handle(self._value(a) + self._value(b), kind)

    def sub(self, a: EncryptedHandle, b: EncryptedHandle) -> EncryptedHandle:
        kind = _wider(a.kind, b.kind)
        return self._new_handle(self._value(a) - self._value(b), kind)

    def mul_plain(self, a: EncryptedHandle, scalar: int, kind: str = EUINT64) -> EncryptedHandle:
        check_uint(scalar, (1 << 64) - 1, "scalar")
        return self._new_handle(self._value(a) * scalar, kind)

    def compare_at_least(self, a: EncryptedHandle, b: Union[EncryptedHandle, int]) -> bool:
        return self._value(a) >= self._operand(b)

    def equals(self, a: EncryptedHandle, value: int) -> bool:
        return self._value(a) == self._operand(value)

    def exists(self, handle_id: HandleId) -> bool:
        with self._lock:
            return handle_id in self._plaintexts

    def kind_of(self, handle_id: HandleId) -> str:
        """Return the encrypted kind of a stored ciphertext."""
        with self._lock:
            entry = self._plaintexts.get(handle_id)
        if entry is None:
            raise UnknownHandle(f"Ciphertext {handle_id} not found")
        return entry[0]

    def decrypt_for(self, handle: EncryptedHandle, authorization: Any) -> int:
        """
        Decrypt a handle for an authorized reveal.

        The authorization must list the handle id in its handle_ids. Checking
        who signed it is the reveal service's job; this method only refuses
        handles the authorization does not cover.

        Raises:
            Unauthorized: If the authorization does not cover the handle
            UnknownHandle: If the ciphertext does not exist
        """
        covered = getattr(authorization, "handle_ids", ())
        if handle.handle_id not in covered:
            raise Unauthorized(f"Authorization does not cover {handle.handle_id}")
        return self._value(handle)

    # ========================================================================
    # TEST SUPPORT
    # ========================================================================

    def peek(self, handle: EncryptedHandle) -> int:
        """
        Read a plaintext directly.

        WARNING: Bypasses authorized reveal and is only available in test mode.

        Raises:
            LedgerError: If called when test_mode is False
        """
        if not self._test_mode:
            raise LedgerError(
                "peek() is disabled in production mode. "
                "Use the reveal service to decrypt handles. "
                "Set test_mode=True when creating the service for testing."
            )
        return self._value(handle)

    def __len__(self) -> int:
        with self._lock:
            return len(self._plaintexts)

    def __repr__(self) -> str:
        return f"InMemoryCipherService({self.name!r}, {len(self)} ciphertexts)"


def _wider(a: str, b: str) -> str:
    """Result kind of a binary operation: the wider of the two operands."""
    return a if KIND_BITS[a] >= KIND_BITS[b] else b

