"""Attestation verifier and signer.

`PaymentAttestor` is the only holder of the witness key. Given a proof
artifact and what the solver claims it proves, it verifies the artifact,
checks the disclosed payment against the expectation, refuses replays and
signs an EIP-712 `PaymentAttestation` the verifier contract will accept.

Nothing here retries: a proof that fails a check will fail it again. The
caller decides whether to capture a new proof.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Sequence

from eth_account import Account
from eth_utils import keccak

from offramp_solver.attestation.eip712 import (
    Eip712Domain,
    PaymentAttestation,
    sign_attestation,
)
from offramp_solver.attestation.errors import (
    AmountMismatch,
    AttestationError,
    AttestationUnavailable,
    AttestorConfigurationError,
    BeneficiaryMismatch,
    IncompletePayload,
    PaymentNotCompleted,
    ReplayDetected,
    SigningFailed,
)
from offramp_solver.attestation.nullifiers import NullifierRegistry, compute_nullifier
from offramp_solver.attestation.presentation import (
    PresentationVerifier,
    check_server_allowed,
    decode_artifact,
)
from offramp_solver.attestation.transcript import extract_body, normalize_reference, parse_payment
from offramp_solver.data.models import intent_id_bytes

logger = logging.getLogger(__name__)

# Observed amount must reach 99% of the expected amount.
AMOUNT_TOLERANCE_NUM = 99
AMOUNT_TOLERANCE_DEN = 100


def amount_within_tolerance(observed_cents: int, expected_cents: int) -> bool:
    """Asymmetric check: over-delivery is fine, under-delivery beyond 1% is not."""
    return observed_cents * AMOUNT_TOLERANCE_DEN >= expected_cents * AMOUNT_TOLERANCE_NUM


@dataclass(frozen=True)
class VerifiedPayment:
    """Payment facts that passed every check."""

    transaction_id: str
    amount_cents: int
    beneficiary: str | None
    status: str
    server_name: str
    timestamp: int
    nullifier: bytes

    def to_dict(self) -> dict[str, Any]:
        return {
            "transaction_id": self.transaction_id,
            "amount_cents": self.amount_cents,
            "beneficiary": self.beneficiary,
            "timestamp": self.timestamp,
            "server": self.server_name,
        }


@dataclass(frozen=True)
class SignedAttestation:
    """Signature, digest and the struct they cover."""

    signature: bytes
    digest: bytes
    attestation: PaymentAttestation
    payment: VerifiedPayment | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "signature": "0x" + self.signature.hex(),
            "digest": "0x" + self.digest.hex(),
            "attestation": self.attestation.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SignedAttestation":
        return cls(
            signature=bytes.fromhex(data["signature"][2:]),
            digest=bytes.fromhex(data["digest"][2:]),
            attestation=PaymentAttestation.from_dict(data["attestation"]),
        )


class PaymentAttestor:
    """Verifies payment proofs and signs attestations with the witness key."""

    def __init__(
        self,
        witness_private_key: str | None,
        domain: Eip712Domain,
        verifier: PresentationVerifier,
        nullifiers: NullifierRegistry,
        allowed_servers: Sequence[str],
        completed_statuses: Sequence[str] = ("completed",),
        max_artifact_bytes: int = 2_000_000,
    ) -> None:
        if not witness_private_key:
            raise AttestorConfigurationError("Witness private key is not configured")
        try:
            self._account = Account.from_key(witness_private_key)
        except (ValueError, TypeError) as e:
            raise AttestorConfigurationError("Witness private key is invalid") from e
        if not allowed_servers:
            raise AttestorConfigurationError("Allowed server list is empty")

        self.domain = domain
        self.verifier = verifier
        self.nullifiers = nullifiers
        self.allowed_servers = [s.lower() for s in allowed_servers]
        self.completed_statuses = {s.lower() for s in completed_statuses}
        self.max_artifact_bytes = max_artifact_bytes

    @property
    def witness_address(self) -> str:
        return self._account.address

    def attest(
        self,
        proof_artifact: bytes | str,
        expected_intent_hash: str,
        expected_amount_cents: int,
        expected_beneficiary_reference: str | None = None,
    ) -> SignedAttestation:
        """Verify a proof artifact and sign an attestation for it.

        Raises:
            MalformedProof, UntrustedServer, IncompletePayload,
            PaymentNotCompleted, AmountMismatch, BeneficiaryMismatch,
            ReplayDetected, SigningFailed, AttestationUnavailable.
        """
        intent_hash = intent_id_bytes(expected_intent_hash)
        try:
            return self._attest(
                proof_artifact, intent_hash, expected_amount_cents, expected_beneficiary_reference
            )
        except AttestationError as e:
            e.intent_hash = e.intent_hash or expected_intent_hash
            raise

    def _attest(
        self,
        proof_artifact: bytes | str,
        intent_hash: bytes,
        expected_amount_cents: int,
        expected_beneficiary: str | None,
    ) -> SignedAttestation:
        artifact = decode_artifact(proof_artifact, self.max_artifact_bytes)

        presentation = self.verifier.verify(artifact)
        server_name = check_server_allowed(presentation.server_name, self.allowed_servers)

        body = extract_body(presentation.received)
        facts = parse_payment(body)
        missing = [
            name
            for name, value in (
                ("transaction_id", facts.transaction_id),
                ("amount", facts.amount_cents),
                ("status", facts.status),
            )
            if value is None
        ]
        if expected_beneficiary and facts.beneficiary is None:
            missing.append("beneficiary")
        if missing:
            raise IncompletePayload(f"Missing required field: {', '.join(missing)}")

        if facts.status.lower() not in self.completed_statuses:
            raise PaymentNotCompleted(f"Payment status is {facts.status!r}, expected completed")

        if not amount_within_tolerance(facts.amount_cents, expected_amount_cents):
            raise AmountMismatch(
                f"Invalid payment data: amount {facts.amount_cents} cents is below 99% of "
                f"expected {expected_amount_cents} cents"
            )

        if expected_beneficiary:
            if normalize_reference(facts.beneficiary) != normalize_reference(expected_beneficiary):
                raise BeneficiaryMismatch("Invalid payment data: beneficiary does not match")

        nullifier = compute_nullifier(facts.transaction_id)
        try:
            used = self.nullifiers.is_used(nullifier)
        except AttestationError:
            raise
        except Exception as e:
            # Fail closed: no signature without a replay check.
            raise AttestationUnavailable(f"Nullifier check unavailable: {e}") from e
        if used:
            raise ReplayDetected(
                f"Payment {facts.transaction_id} was already used (nullifier 0x{nullifier.hex()})"
            )

        attestation = PaymentAttestation(
            intent_hash=intent_hash,
            amount=facts.amount_cents,
            timestamp=presentation.timestamp,
            payment_id=facts.transaction_id,
            data_hash=keccak(text=facts.body),
        )
        try:
            signature, digest = sign_attestation(self._account, self.domain, attestation)
        except ValueError as e:
            raise SigningFailed(f"Signing error: {e}") from e

        payment = VerifiedPayment(
            transaction_id=facts.transaction_id,
            amount_cents=facts.amount_cents,
            beneficiary=facts.beneficiary,
            status=facts.status,
            server_name=server_name,
            timestamp=presentation.timestamp,
            nullifier=nullifier,
        )
        logger.info(
            "Attestation signed",
            extra={
                "intent_hash": "0x" + intent_hash.hex(),
                "payment_id": facts.transaction_id,
                "amount_cents": facts.amount_cents,
                "digest": "0x" + digest.hex(),
            },
        )
        return SignedAttestation(
            signature=signature, digest=digest, attestation=attestation, payment=payment
        )
