"""Pipeline error types.

Every error carries the stage it came from and whether retrying can help,
so the pipeline can route it to retry, quarantine or success.
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class FailureStage(str, Enum):
    """Where in the fulfillment pipeline a failure happened."""

    PRECHECK = "precheck"
    TRANSFER = "transfer"
    PROOF = "proof"
    ATTESTATION = "attestation"
    SUBMISSION = "submission"


class LedgerError(Exception):
    """Ledger invariant violation (e.g. conflicting transfer id)."""


class ConfigurationError(Exception):
    """Fatal misconfiguration detected at startup."""


class PipelineError(Exception):
    """Base class for classified fulfillment failures."""

    stage: FailureStage = FailureStage.PRECHECK
    retryable: bool = True

    def __init__(
        self,
        message: str,
        *,
        retryable: bool | None = None,
        intent_id: str | None = None,
        code: int | str | None = None,
    ) -> None:
        super().__init__(message)
        if retryable is not None:
            self.retryable = retryable
        self.intent_id = intent_id
        self.code = code

    def to_log_context(self) -> dict[str, Any]:
        return {
            "stage": self.stage.value,
            "error_type": type(self).__name__,
            "retryable": self.retryable,
            "intent_id": self.intent_id,
            "code": self.code,
        }


class ChainUnavailable(PipelineError):
    """RPC transport failure while reading chain state."""

    stage = FailureStage.PRECHECK


class TransferFailed(PipelineError):
    """The payment rail did not move the money.

    Non-retryable when the rail rejected the payee or the amount; retryable
    for transport errors and rail-side outages.
    """

    stage = FailureStage.TRANSFER


class ProofCaptureFailed(PipelineError):
    """Proof toolchain exited non-zero or produced no artifact."""

    stage = FailureStage.PROOF

    def __init__(self, message: str, *, exit_code: int | None = None, phase: str | None = None, **kw: Any):
        super().__init__(message, code=exit_code, **kw)
        self.exit_code = exit_code
        self.phase = phase


class ProofTimeout(ProofCaptureFailed):
    """Proof toolchain phase exceeded its wall-clock budget and was killed."""


class RevertKind(str, Enum):
    """Classified claim revert reasons."""

    NULLIFIER_USED = "nullifier_used"
    WINDOW_EXPIRED = "window_expired"
    NOT_COMMITTED = "not_committed"
    INVALID_ATTESTATION = "invalid_attestation"
    UNKNOWN = "unknown"


class ClaimReverted(PipelineError):
    """`fulfillIntentWithProof` reverted (at estimation or on-chain)."""

    stage = FailureStage.SUBMISSION

    def __init__(self, message: str, *, kind: RevertKind, tx_hash: str | None = None, **kw: Any):
        kw.setdefault("retryable", kind in (RevertKind.UNKNOWN, RevertKind.NULLIFIER_USED))
        super().__init__(message, code=kind.value, **kw)
        self.kind = kind
        self.tx_hash = tx_hash


class ClaimTimeout(PipelineError):
    """Claim was broadcast but not confirmed within the wait budget.

    The transaction may still land; the next attempt re-checks it first.
    """

    stage = FailureStage.SUBMISSION

    def __init__(self, message: str, *, tx_hash: str, **kw: Any):
        super().__init__(message, **kw)
        self.tx_hash = tx_hash
