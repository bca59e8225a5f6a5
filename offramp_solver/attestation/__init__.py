"""Payment attestation - proof verification and EIP-712 signing."""

from offramp_solver.attestation.client import AttestationClient, Attestor, LocalAttestor
from offramp_solver.attestation.eip712 import Eip712Domain, PaymentAttestation, compute_digest
from offramp_solver.attestation.errors import (
    AmountMismatch,
    AttestationError,
    AttestationStage,
    AttestationUnavailable,
    AttestorConfigurationError,
    BeneficiaryMismatch,
    IncompletePayload,
    MalformedProof,
    PaymentNotCompleted,
    ReplayDetected,
    SigningFailed,
    UntrustedServer,
)
from offramp_solver.attestation.signer import PaymentAttestor, SignedAttestation, VerifiedPayment

__all__ = [
    "Attestor",
    "AttestationClient",
    "LocalAttestor",
    "PaymentAttestor",
    "SignedAttestation",
    "VerifiedPayment",
    "Eip712Domain",
    "PaymentAttestation",
    "compute_digest",
    "AttestationError",
    "AttestationStage",
    "AttestationUnavailable",
    "AttestorConfigurationError",
    "MalformedProof",
    "UntrustedServer",
    "IncompletePayload",
    "PaymentNotCompleted",
    "AmountMismatch",
    "BeneficiaryMismatch",
    "ReplayDetected",
    "SigningFailed",
]
