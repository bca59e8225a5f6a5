"""Execution layer - ledger mirror, retry policy and fulfillment pipeline."""

from offramp_solver.execution.errors import (
    ClaimReverted,
    ClaimTimeout,
    FailureStage,
    LedgerError,
    PipelineError,
    ProofCaptureFailed,
    ProofTimeout,
    TransferFailed,
)
from offramp_solver.execution.ledger import IntentRecord, IntentStatus, LedgerMirror, PipelineStep
from offramp_solver.execution.retry_policy import GiveUp, RetryAt, RetryPolicy, decide

__all__ = [
    "LedgerMirror",
    "IntentRecord",
    "IntentStatus",
    "PipelineStep",
    "RetryPolicy",
    "RetryAt",
    "GiveUp",
    "decide",
    "FailureStage",
    "LedgerError",
    "PipelineError",
    "TransferFailed",
    "ProofCaptureFailed",
    "ProofTimeout",
    "ClaimReverted",
    "ClaimTimeout",
]
