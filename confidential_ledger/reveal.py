"""
reveal.py - Authorized reveal of encrypted values

An account can learn the plaintext behind its own handles (balance, stake,
position parameters) by presenting a signed RevealAuthorization. The
signature proves the requester holds the key registered for its address;
the ledger's handle ownership map decides which handles it may see.

Classes:
- KeyRegistry: address -> reveal key
- RevealAuthorization: signed request covering a set of handles
- RevealService: verifies authorizations and decrypts

Reveal never changes ledger state, so repeating a request returns the same
values.
"""

from __future__ import annotations
from dataclasses import dataclass
import hmac
import hashlib
import secrets
import threading
from typing import Dict, Optional, Sequence, Tuple

from .core import (
    Address, EncryptedHandle, EncryptedValueService, HandleId,
    Unauthorized,
    canonical_digest,
)
from .ledger import Ledger


@dataclass(frozen=True, slots=True)
class RevealAuthorization:
    """
    Attributes:
        requester: Account asking for the reveal.
        context: Ledger context id the request is bound to.
        handle_ids: Handles the request covers.
        signature: HMAC-SHA256 hex digest with the requester's key.
    """
    requester: Address
    context: str
    handle_ids: Tuple[HandleId, ...]
    signature: str


def _message(requester: Address, context: str, handle_ids: Sequence[HandleId]) -> bytes:
    return canonical_digest("reveal", requester, context, sorted(handle_ids))


def _sign(key: bytes, requester: Address, context: str, handle_ids: Sequence[HandleId]) -> str:
    return hmac.new(key, _message(requester, context, handle_ids), hashlib.sha256).hexdigest()


class KeyRegistry:
    """Reveal keys by account address. A key is registered once."""

    def __init__(self):
        self._keys: Dict[Address, bytes] = {}
        self._lock = threading.Lock()

    def register(self, address: Address, key: Optional[bytes] = None) -> bytes:
        """
        Register a reveal key for an account.

        Args:
            address: Account identifier
            key: Secret key (random if not provided)

        Returns:
            The registered key

        Raises:
            ValueError: If the address is empty or already has a key
        """
        if not address or not address.strip():
            raise ValueError("Address cannot be empty")
        key = key if key is not None else secrets.token_bytes(32)
        with self._lock:
            if address in self._keys:
                raise ValueError(f"{address} already has a reveal key")
            self._keys[address] = key
        return key

    def key_for(self, address: Address) -> Optional[bytes]:
        with self._lock:
            return self._keys.get(address)

    def __contains__(self, address: object) -> bool:
        with self._lock:
            return address in self._keys


def authorize(
    registry: KeyRegistry,
    requester: Address,
    handles: Sequence[EncryptedHandle],
    context: str,
    key: bytes,
) -> RevealAuthorization:
    """
    Sign a reveal request on the requester's side.

    The registry is only consulted to refuse signing for accounts that never
    registered a key; the signature itself uses the key passed in.

    Raises:
        Unauthorized: If requester has no registered key
    """
    if requester not in registry:
        raise Unauthorized(f"{requester} has no registered reveal key")
    handle_ids = tuple(h.handle_id for h in handles)
    return RevealAuthorization(
        requester=requester,
        context=context,
        handle_ids=handle_ids,
        signature=_sign(key, requester, context, handle_ids),
    )


class RevealService:
    """
    Decrypts handles for the account that owns them.

    Example:
        keys = KeyRegistry()
        key = keys.register("alice")
        service = RevealService(ledger, cipher, keys)
        handle = ledger.balance_handle("alice")
        auth = authorize(keys, "alice", [handle], ledger.context_id, key)
        service.request_reveal([handle], "alice", auth)   # {handle_id: balance}
    """

    def __init__(self, ledger: Ledger, cipher: EncryptedValueService, keys: KeyRegistry):
        self.ledger = ledger
        self.cipher = cipher
        self.keys = keys

    def verify(self, authorization: RevealAuthorization, requester: Address) -> None:
        """
        Check that an authorization was signed by requester for this ledger.

        Raises:
            Unauthorized: On any mismatch
        """
        if authorization.requester != requester:
            raise Unauthorized(
                f"Authorization issued to {authorization.requester}, presented by {requester}"
            )
        if authorization.context != self.ledger.context_id:
            raise Unauthorized(f"Authorization bound to another ledger: {authorization.context!r}")
        key = self.keys.key_for(requester)
        if key is None:
            raise Unauthorized(f"{requester} has no registered reveal key")
        expected = _sign(key, requester, authorization.context, authorization.handle_ids)
        if not hmac.compare_digest(expected, authorization.signature):
            raise Unauthorized("Authorization signature mismatch")

    def request_reveal(
        self,
        handles: Sequence[EncryptedHandle],
        requester: Address,
        authorization: RevealAuthorization,
    ) -> Dict[HandleId, int]:
        """
        Reveal plaintexts to the requester.

        Every handle must be covered by the authorization and owned by the
        requester. Nothing is decrypted unless all handles pass.

        Returns:
            handle_id -> plaintext

        Raises:
            Unauthorized: Bad signature, foreign handle, or incomplete coverage
            UnknownHandle: If a handle is not tracked by the ledger
        """
        self.verify(authorization, requester)
        covered = set(authorization.handle_ids)
        for handle in handles:
            if handle.handle_id not in covered:
                raise Unauthorized(f"Authorization does not cover {handle.handle_id}")
            if not self.ledger.is_entitled(handle, requester):
                raise Unauthorized(f"{requester} does not own {handle.handle_id}")
        return {h.handle_id: self.cipher.decrypt_for(h, authorization) for h in handles}
