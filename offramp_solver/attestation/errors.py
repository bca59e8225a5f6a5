"""Attestation error taxonomy.

Each error names the stage it failed at and carries an operator
suggestion. `kind` is the stable wire code used by the HTTP service and
mapped back to the same class by the client.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any


class AttestationStage(str, Enum):
    """Where the attestation flow failed."""

    CONNECTION = "connection"
    PROOF_SUBMISSION = "proof_submission"
    VERIFICATION = "verification"
    SIGNING = "signing"


class AttestorConfigurationError(Exception):
    """Fatal: the witness cannot sign (missing key, not authorized on-chain)."""


class AttestationError(Exception):
    """Base class for attestation failures."""

    kind = "Internal"
    stage = AttestationStage.SIGNING
    retryable = False
    # Retrying only helps with a freshly captured proof.
    regenerate_proof = False
    http_status = 400
    default_suggestion = "Check attestation service logs for details"

    def __init__(
        self,
        message: str,
        *,
        intent_hash: str | None = None,
        http_code: int | None = None,
        original_error: str | None = None,
        suggestion: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.intent_hash = intent_hash
        self.http_code = http_code
        self.original_error = original_error or message
        self.suggestion = suggestion or self.default_suggestion

    def to_log_context(self) -> dict[str, Any]:
        return {
            "stage": self.stage.value,
            "kind": self.kind,
            "retryable": self.retryable,
            "intent_hash": self.intent_hash,
            "http_code": self.http_code,
            "original_error": self.original_error,
            "suggestion": self.suggestion,
        }

    def to_response(self) -> dict[str, Any]:
        return {"error": self.message, "code": self.kind, "stage": self.stage.value}


class MalformedProof(AttestationError):
    kind = "MalformedProof"
    stage = AttestationStage.PROOF_SUBMISSION
    default_suggestion = "Proof data corrupted or malformed. Regenerate the TLS proof"


class UntrustedServer(AttestationError):
    kind = "UntrustedServer"
    stage = AttestationStage.VERIFICATION
    default_suggestion = (
        "Proof failed authenticity checks or came from a server outside the allow-list. "
        "Check ATTESTOR_ALLOWED_SERVERS includes the bank API domain"
    )


class IncompletePayload(AttestationError):
    kind = "IncompletePayload"
    stage = AttestationStage.PROOF_SUBMISSION
    retryable = True
    regenerate_proof = True
    default_suggestion = "Proof missing required data fields. Ensure it discloses all payment details"


class PaymentNotCompleted(AttestationError):
    kind = "PaymentNotCompleted"
    stage = AttestationStage.VERIFICATION
    retryable = True
    regenerate_proof = True
    default_suggestion = "Payment not settled yet. Capture a new proof once the transfer completes"


class AmountMismatch(AttestationError):
    kind = "AmountMismatch"
    stage = AttestationStage.VERIFICATION
    default_suggestion = "Proven amount is below the committed fiat amount. Verify the transfer amount"


class BeneficiaryMismatch(AttestationError):
    kind = "BeneficiaryMismatch"
    stage = AttestationStage.VERIFICATION
    default_suggestion = "Proven beneficiary differs from the committed receiving info. Verify the IBAN"


class ReplayDetected(AttestationError):
    kind = "ReplayDetected"
    stage = AttestationStage.VERIFICATION
    default_suggestion = "This payment was already used for a claim. Check the intent on-chain"


class SigningFailed(AttestationError):
    kind = "SigningFailed"
    stage = AttestationStage.SIGNING
    retryable = True
    http_status = 500
    default_suggestion = "EIP-712 signing failed. Check witness private key configuration"


class AttestationUnavailable(AttestationError):
    """Transport-level failure talking to the attestation service."""

    kind = "Unavailable"
    stage = AttestationStage.CONNECTION
    retryable = True
    http_status = 503
    default_suggestion = "Network error connecting to attestation service. Check service availability"


ERROR_CLASSES: dict[str, type[AttestationError]] = {
    cls.kind: cls
    for cls in (
        MalformedProof,
        UntrustedServer,
        IncompletePayload,
        PaymentNotCompleted,
        AmountMismatch,
        BeneficiaryMismatch,
        ReplayDetected,
        SigningFailed,
        AttestationUnavailable,
    )
}


@dataclass(frozen=True)
class _ErrorPattern:
    pattern: re.Pattern
    stage: AttestationStage
    suggestion: str


ERROR_PATTERNS: tuple[_ErrorPattern, ...] = (
    _ErrorPattern(
        re.compile(r"connection refused|connecterror|all connection attempts failed", re.I),
        AttestationStage.CONNECTION,
        "Attestation service not running. Start it with: offramp-solver attestor",
    ),
    _ErrorPattern(
        re.compile(r"name or service not known|getaddrinfo|nodename nor servname|dns", re.I),
        AttestationStage.CONNECTION,
        "Cannot resolve attestation service hostname. Check OFFRAMP_ATTESTATION_URL",
    ),
    _ErrorPattern(
        re.compile(r"timed? ?out|timeout", re.I),
        AttestationStage.CONNECTION,
        "Request timed out. Check network connectivity and attestation service health",
    ),
    _ErrorPattern(
        re.compile(r"connection reset|remoteprotocolerror|server disconnected", re.I),
        AttestationStage.CONNECTION,
        "Connection reset by server. Attestation service may have crashed or restarted",
    ),
    _ErrorPattern(
        re.compile(r"invalid presentation|deserializ", re.I),
        AttestationStage.PROOF_SUBMISSION,
        "Proof data corrupted or malformed. Regenerate the TLS proof",
    ),
    _ErrorPattern(
        re.compile(r"missing required field", re.I),
        AttestationStage.PROOF_SUBMISSION,
        "Proof missing required data fields. Ensure it discloses all payment details",
    ),
    _ErrorPattern(
        re.compile(r"verification failed", re.I),
        AttestationStage.VERIFICATION,
        "TLS proof verification failed. Proof may be expired or tampered",
    ),
    _ErrorPattern(
        re.compile(r"unexpected server|server not found", re.I),
        AttestationStage.VERIFICATION,
        "Proof server mismatch. Check ATTESTOR_ALLOWED_SERVERS includes the bank API domain",
    ),
    _ErrorPattern(
        re.compile(r"invalid payment data", re.I),
        AttestationStage.VERIFICATION,
        "Payment details in proof don't match expected values. Verify amount and IBAN",
    ),
    _ErrorPattern(
        re.compile(r"0x41110897|notauthorizedwitness", re.I),
        AttestationStage.SIGNING,
        "Witness not authorized on-chain. Register the witness in the PaymentVerifier contract",
    ),
    _ErrorPattern(
        re.compile(r"signing", re.I),
        AttestationStage.SIGNING,
        "EIP-712 signing failed. Check witness private key configuration",
    ),
)


def classify_error_text(message: str, http_code: int | None = None) -> tuple[AttestationStage, str]:
    """Map free-form error text (and HTTP code) to a stage and suggestion."""
    for entry in ERROR_PATTERNS:
        if entry.pattern.search(message):
            return entry.stage, entry.suggestion

    if http_code is None:
        return AttestationStage.CONNECTION, AttestationUnavailable.default_suggestion
    if http_code in (401, 403):
        return AttestationStage.CONNECTION, "Attestation API key rejected. Check OFFRAMP_ATTESTATION_API_KEY"
    if http_code == 429:
        return AttestationStage.CONNECTION, "Rate limited by attestation service. Back off and retry"
    if 400 <= http_code < 500:
        return AttestationStage.PROOF_SUBMISSION, "Request rejected. Check the proof and expected values"
    return AttestationStage.SIGNING, "Internal attestation service error. Check service logs for details"
