"""
inputs.py - Encrypted inputs and their admission

Externally supplied ciphertexts reach the ledger as CiphertextRef values
together with an InputProof. The proof binds every ref to one caller and one
ledger instance (context id), so a ciphertext produced for another account or
another ledger cannot be replayed. Only ciphertexts the verifier itself
encrypted for the submitting caller are admitted, so intermediate ciphertexts
derived by the ledger can never be passed back in as inputs.

Classes:
- CiphertextRef: Raw ciphertext reference supplied by a client
- InputProof: Attestation binding refs to (context, caller)
- EncryptedInput: Handles plus proof, ready to submit
- EncryptedInputBuilder: Client-side builder (add32/add64/encrypt)
- InputVerifier: Encrypts inputs, records their provenance, issues and
  checks proofs; admit() is the ledger's gate

Proofs are HMAC-SHA256 tags over canonical_digest(context, caller, refs),
keyed with the attestor secret shared between the input coprocessor and the
verifier.
"""

from __future__ import annotations
from dataclasses import dataclass
import hmac
import hashlib
import secrets
import threading
from typing import Dict, List, Optional, Sequence, Tuple

from .core import (
    EncryptedHandle, EncryptedValueService, HandleId, Address,
    EUINT32, EUINT64, KIND_BITS,
    InvalidProof, StaleBinding,
    canonical_digest,
)


# ============================================================================
# DATA STRUCTURES
# ============================================================================

@dataclass(frozen=True, slots=True)
class CiphertextRef:
    """
    A raw ciphertext reference as submitted by a client.

    Attributes:
        handle_id: Identifier of the ciphertext in the cipher service.
        kind: Declared encrypted type.
    """
    handle_id: HandleId
    kind: str

    def __post_init__(self):
        if not self.handle_id or not self.handle_id.strip():
            raise ValueError("CiphertextRef handle_id cannot be empty")
        if self.kind not in KIND_BITS:
            raise ValueError(f"Unknown encrypted kind: {self.kind}")


@dataclass(frozen=True, slots=True)
class InputProof:
    """
    Attestation that a list of ciphertexts was honestly encrypted for one
    caller and one ledger instance.

    Attributes:
        context: Ledger context id the inputs were produced for.
        caller: Account the inputs were produced for.
        handle_ids: Ordered handle ids covered by the proof.
        tag: HMAC-SHA256 hex digest over the binding.
    """
    context: str
    caller: Address
    handle_ids: Tuple[HandleId, ...]
    tag: str


@dataclass(frozen=True, slots=True)
class EncryptedInput:
    """Handles and proof returned by EncryptedInputBuilder.encrypt()."""
    handles: Tuple[CiphertextRef, ...]
    input_proof: InputProof


def _binding(context: str, caller: Address, refs: Sequence[CiphertextRef]) -> bytes:
    return canonical_digest(
        "input-proof",
        context,
        caller,
        [(r.kind, r.handle_id) for r in refs],
    )


# ============================================================================
# VERIFIER
# ============================================================================

class InputVerifier:
    """
    Encrypted Input Validator.

    Holds the attestor secret. encrypt_inputs() is what the off-ledger input
    coprocessor does with client values: it encrypts them, records which
    caller and ledger each ciphertext was produced for, and signs the
    binding. admit() is what the ledger runs before consuming any externally
    supplied ciphertext; it accepts only ciphertexts this verifier encrypted
    for the submitting caller on this ledger.

    admit() never mutates ledger or cipher state.
    """

    def __init__(self, cipher: EncryptedValueService, key: Optional[bytes] = None):
        """
        Args:
            cipher: Service holding the ciphertexts being admitted
            key: Attestor secret (random if not provided)
        """
        self.cipher = cipher
        self._key = key if key is not None else secrets.token_bytes(32)
        # handle id -> (caller, context) it was encrypted for
        self._provenance: Dict[HandleId, Tuple[Address, str]] = {}
        self._lock = threading.Lock()

    def _tag(self, context: str, caller: Address, refs: Sequence[CiphertextRef]) -> str:
        return hmac.new(self._key, _binding(context, caller, refs), hashlib.sha256).hexdigest()

    def encrypt_inputs(
        self,
        values: Sequence[Tuple[str, int]],
        caller: Address,
        context: str,
    ) -> EncryptedInput:
        """
        Encrypt (kind, value) pairs for caller on the ledger `context`.

        Returns:
            EncryptedInput with one ref per value, in order, and its proof

        Raises:
            ValueError: If caller or context is empty, or a value is out of
                        range for its kind
        """
        if not caller or not context:
            raise ValueError("Proof requires a caller and a context")
        refs = []
        for kind, value in values:
            handle = self.cipher.encrypt(value, kind)
            refs.append(CiphertextRef(handle_id=handle.handle_id, kind=kind))
        with self._lock:
            for ref in refs:
                self._provenance[ref.handle_id] = (caller, context)
        return EncryptedInput(handles=tuple(refs), input_proof=self.issue_proof(refs, caller, context))

    def issue_proof(
        self,
        refs: Sequence[CiphertextRef],
        caller: Address,
        context: str,
    ) -> InputProof:
        """
        Sign the binding of refs to caller on the ledger `context`.

        A signature alone does not make a ciphertext admissible: admit() also
        requires that encrypt_inputs() produced it for the same caller and
        context.

        Raises:
            ValueError: If caller or context is empty
        """
        if not caller or not context:
            raise ValueError("Proof requires a caller and a context")
        return InputProof(
            context=context,
            caller=caller,
            handle_ids=tuple(r.handle_id for r in refs),
            tag=self._tag(context, caller, refs),
        )

    def produced_for(self, handle_id: HandleId) -> Optional[Tuple[Address, str]]:
        """(caller, context) a ciphertext was encrypted for, or None."""
        with self._lock:
            return self._provenance.get(handle_id)

    def admit(
        self,
        raw_handles: Sequence[CiphertextRef],
        proof: InputProof,
        caller: Address,
        context: str,
    ) -> List[EncryptedHandle]:
        """
        Admit externally supplied ciphertexts.

        Args:
            raw_handles: Ciphertext references in the order the operation expects
            proof: Proof produced for these references
            caller: Account submitting the operation
            context: Context id of the ledger performing the admission

        Returns:
            EncryptedHandle for each ref, in order

        Raises:
            StaleBinding: If the proof was produced for another ledger instance
            InvalidProof: If the proof does not bind these refs to caller, a
                          referenced ciphertext does not exist, its stored kind
                          differs from the declared kind, or it was not
                          encrypted for caller on this ledger
        """
        if proof.context != context:
            raise StaleBinding(
                f"Proof bound to context {proof.context!r}, ledger is {context!r}"
            )
        if proof.caller != caller:
            raise InvalidProof(f"Proof bound to {proof.caller}, submitted by {caller}")
        if tuple(r.handle_id for r in raw_handles) != proof.handle_ids:
            raise InvalidProof("Proof does not cover the submitted handles")

        expected = self._tag(context, caller, raw_handles)
        if not hmac.compare_digest(expected, proof.tag):
            raise InvalidProof("Proof signature mismatch")

        admitted = []
        for ref in raw_handles:
            try:
                known = self.cipher.exists(ref.handle_id)
                stored_kind = self.cipher.kind_of(ref.handle_id) if known else None
            except TimeoutError as e:
                raise InvalidProof(f"Cipher backend timed out: {e}") from e
            if not known:
                raise InvalidProof(f"Unknown ciphertext {ref.handle_id}")
            if stored_kind != ref.kind:
                raise InvalidProof(
                    f"Ciphertext {ref.handle_id} is {stored_kind}, declared {ref.kind}"
                )
            if self.produced_for(ref.handle_id) != (caller, context):
                raise InvalidProof(
                    f"Ciphertext {ref.handle_id} was not encrypted for {caller} on this ledger"
                )
            admitted.append(EncryptedHandle(handle_id=ref.handle_id, kind=ref.kind))
        return admitted


# ============================================================================
# CLIENT-SIDE BUILDER
# ============================================================================

class EncryptedInputBuilder:
    """
    Client-side helper that encrypts values for one caller and one ledger.

    Example:
        enc = (EncryptedInputBuilder(cipher, verifier, ledger.context_id, "alice")
               .add32(LONG)
               .add32(3)
               .encrypt())
        ledger.open_position("alice", "T", enc.handles[0], enc.handles[1], enc.input_proof)
    """

    def __init__(
        self,
        cipher: EncryptedValueService,
        verifier: InputVerifier,
        context: str,
        caller: Address,
    ):
        if verifier.cipher is not cipher:
            raise ValueError("Verifier is bound to a different cipher service")
        self.cipher = cipher
        self.verifier = verifier
        self.context = context
        self.caller = caller
        self._values: List[Tuple[str, int]] = []

    def add32(self, value: int) -> 'EncryptedInputBuilder':
        self._values.append((EUINT32, int(value)))
        return self

    def add64(self, value: int) -> 'EncryptedInputBuilder':
        self._values.append((EUINT64, int(value)))
        return self

    def encrypt(self) -> EncryptedInput:
        """
        Encrypt the queued values and obtain a proof for them.

        Raises:
            ValueError: If no values were added or a value is out of range
        """
        if not self._values:
            raise ValueError("No values to encrypt")
        return self.verifier.encrypt_inputs(self._values, self.caller, self.context)
