"""Fulfillment pipeline for one committed intent.

Committed -> TransferExecuted -> ProofCaptured -> Attested -> Submitted -> Fulfilled

Every checkpoint is persisted in the ledger before the next step starts, so
a crashed or retried run resumes where the previous one stopped. The fiat
transfer is never executed twice for the same intent.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum
from functools import partial

from offramp_solver.attestation.client import Attestor
from offramp_solver.attestation.errors import AttestationError
from offramp_solver.attestation.signer import SignedAttestation
from offramp_solver.data.chain_client import ChainClient
from offramp_solver.data.models import ChainIntentStatus, OnChainIntent, Route
from offramp_solver.execution.errors import (
    ClaimReverted,
    ClaimTimeout,
    FailureStage,
    PipelineError,
    RevertKind,
)
from offramp_solver.execution.ledger import FailureOutcome, IntentRecord, LedgerMirror
from offramp_solver.execution.prover import ProofArtifact, ProofRequest, ProofToolchain
from offramp_solver.rails.base import Beneficiary
from offramp_solver.rails.registry import RailRegistry
from offramp_solver.services.metrics import SolverMetrics

logger = logging.getLogger(__name__)

# Routes whose receiving info is an IBAN the proof can be checked against.
_IBAN_ROUTES = (Route.SEPA_INSTANT, Route.SEPA_STANDARD)


class PipelineOutcome(str, Enum):
    FULFILLED = "fulfilled"
    FULFILLED_BY_OTHER = "fulfilled_by_other"
    RETRY_SCHEDULED = "retry_scheduled"
    FAILED = "failed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class PipelineResult:
    intent_id: str
    outcome: PipelineOutcome
    tx_hash: str | None = None
    error: str | None = None
    retry_count: int = 0


class FulfillmentPipeline:
    """Drives one intent from commitment to an on-chain claim."""

    def __init__(
        self,
        ledger: LedgerMirror,
        chain: ChainClient,
        rails: RailRegistry,
        prover: ProofToolchain,
        attestor: Attestor,
        metrics: SolverMetrics | None = None,
    ) -> None:
        self.ledger = ledger
        self.chain = chain
        self.rails = rails
        self.prover = prover
        self.attestor = attestor
        self.metrics = metrics or SolverMetrics()

    async def run(self, intent_id: str) -> PipelineResult:
        """Run (or resume) the pipeline. Failures are recorded, not raised."""
        intent = self.ledger.get_intent(intent_id)
        if intent is None or intent.is_terminal or intent.selected_route is None:
            return PipelineResult(intent_id, PipelineOutcome.SKIPPED)

        logger.info(
            f"Pipeline start for {intent_id[:10]}",
            extra={
                "intent_id": intent_id,
                "step": intent.pipeline_step.value if intent.pipeline_step else None,
                "retry_count": intent.retry_count,
            },
        )
        stage = FailureStage.PRECHECK
        try:
            if not await self.chain.can_fulfill(intent_id):
                return await self._settle_from_chain(intent)

            stage = FailureStage.TRANSFER
            transfer_id = intent.provider_transfer_id or await self._execute_transfer(intent)

            stage = FailureStage.PROOF
            signed = self._stored_attestation(intent)
            if signed is None:
                artifact = await self._capture_proof(intent, transfer_id)

                stage = FailureStage.ATTESTATION
                signed = await self._attest(intent, artifact)

            stage = FailureStage.SUBMISSION
            return await self._submit(intent, transfer_id, signed)

        except AttestationError as e:
            return self._attestation_failed(intent_id, e)
        except ClaimReverted as e:
            return await self._claim_reverted(intent_id, e)
        except ClaimTimeout as e:
            logger.warning(
                f"Claim unconfirmed for {intent_id[:10]}",
                extra={"intent_id": intent_id, "tx_hash": e.tx_hash},
            )
            return self._failed(intent_id, str(e), FailureStage.SUBMISSION, retry=True)
        except PipelineError as e:
            logger.warning(f"Pipeline step failed: {e}", extra={"intent_id": intent_id, **e.to_log_context()})
            return self._failed(intent_id, str(e), e.stage, retry=e.retryable)
        except Exception as e:
            logger.exception(
                f"Unexpected pipeline error for {intent_id[:10]}",
                extra={"intent_id": intent_id, "stage": stage.value},
            )
            return self._failed(intent_id, f"Unexpected error: {e}", stage, retry=True)

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _execute_transfer(self, intent: IntentRecord) -> str:
        route = intent.selected_route
        rail = self.rails.get(route)
        if rail is None:
            raise _NotRetryable(f"No rail configured for {route.name}", FailureStage.TRANSFER)
        if not intent.receiving_info or not rail.validate_receiving_info(route, intent.receiving_info):
            raise _NotRetryable(f"Receiving info is not valid for {route.name}", FailureStage.TRANSFER)

        started = time.monotonic()
        try:
            result = await rail.execute_transfer(
                route,
                intent.selected_fiat_amount,
                Beneficiary(
                    receiving_info=intent.receiving_info,
                    recipient_name=intent.recipient_name or "",
                    reference=intent.intent_id,
                ),
            )
        except PipelineError:
            self.metrics.transfer_duration.labels(route=route.name, status="failed").observe(
                time.monotonic() - started
            )
            raise
        self.metrics.transfer_duration.labels(route=route.name, status=result.status.value).observe(
            time.monotonic() - started
        )
        # Persist before anything else can fail.
        self.ledger.record_transfer_id(intent.intent_id, result.transfer_id)
        return result.transfer_id

    async def _capture_proof(self, intent: IntentRecord, transfer_id: str) -> ProofArtifact:
        started = time.monotonic()
        try:
            artifact = await self.prover.capture(ProofRequest(intent_id=intent.intent_id, transfer_id=transfer_id))
        except PipelineError:
            self.metrics.proof_duration.labels(status="failed").observe(time.monotonic() - started)
            raise
        self.metrics.proof_duration.labels(status="reused" if artifact.reused else "captured").observe(
            time.monotonic() - started
        )
        if intent.proof_path != str(artifact.path):
            self.ledger.record_proof_captured(intent.intent_id, str(artifact.path))
        return artifact

    async def _attest(self, intent: IntentRecord, artifact: ProofArtifact) -> SignedAttestation:
        expected_beneficiary = intent.receiving_info if intent.selected_route in _IBAN_ROUTES else None
        started = time.monotonic()
        try:
            signed = await self.attestor.attest(
                presentation=artifact.data,
                intent_id=intent.intent_id,
                expected_amount_cents=intent.selected_fiat_amount,
                expected_beneficiary=expected_beneficiary,
            )
        except AttestationError as e:
            self.metrics.attestation_duration.labels(status=e.kind).observe(time.monotonic() - started)
            raise
        self.metrics.attestation_duration.labels(status="success").observe(time.monotonic() - started)
        self.ledger.record_attestation(intent.intent_id, signed.to_dict())
        return signed

    @staticmethod
    def _stored_attestation(intent: IntentRecord) -> SignedAttestation | None:
        if not intent.attestation:
            return None
        try:
            return SignedAttestation.from_dict(intent.attestation)
        except (KeyError, ValueError, TypeError) as e:
            logger.warning(
                f"Discarding unreadable stored attestation: {e}", extra={"intent_id": intent.intent_id}
            )
            return None

    async def _submit(self, intent: IntentRecord, transfer_id: str, signed: SignedAttestation) -> PipelineResult:
        intent_id = intent.intent_id
        previous = intent.claim_tx_hash
        if previous:
            receipt = await self.chain.get_claim_receipt(previous)
            if receipt is not None and receipt.success:
                return self._fulfilled(intent, previous, transfer_id)
            if receipt is None and await self.chain.is_transaction_known(previous):
                await self.chain.confirm_claim(intent_id, previous)
                return self._fulfilled(intent, previous, transfer_id)
            # Reverted or dropped: it never landed.
            logger.info(
                "Previous claim did not land, resubmitting",
                extra={"intent_id": intent_id, "tx_hash": previous},
            )
            self.ledger.clear_claim(intent_id)

        # Recorded before broadcast; _settle_from_chain relies on it after a crash.
        tx_hash = await self.chain.broadcast_claim(
            intent_id, signed, on_signed=partial(self.ledger.record_claim_submitted, intent_id)
        )
        await self.chain.confirm_claim(intent_id, tx_hash)
        return self._fulfilled(intent, tx_hash, transfer_id)

    # ------------------------------------------------------------------
    # Outcomes
    # ------------------------------------------------------------------

    def _fulfilled(self, intent: IntentRecord, tx_hash: str, transfer_id: str) -> PipelineResult:
        self.ledger.record_fulfilled(intent.intent_id, tx_hash, transfer_id)
        self.metrics.intents_fulfilled.labels(route=intent.selected_route.name, outcome="claimed").inc()
        current = self.ledger.get_intent(intent.intent_id)
        return PipelineResult(
            intent.intent_id,
            PipelineOutcome.FULFILLED,
            tx_hash=tx_hash,
            retry_count=current.retry_count if current else intent.retry_count,
        )

    async def _settle_from_chain(self, intent: IntentRecord) -> PipelineResult:
        """The contract says we can no longer fulfil; mirror why."""
        intent_id = intent.intent_id
        chain_intent = await self.chain.get_intent(intent_id)

        if chain_intent.status == ChainIntentStatus.FULFILLED:
            if intent.claim_tx_hash:
                receipt = await self.chain.get_claim_receipt(intent.claim_tx_hash)
                if receipt is not None and receipt.success:
                    return self._fulfilled(intent, intent.claim_tx_hash, intent.provider_transfer_id)
            return self._by_other(intent, "chain reports intent fulfilled by another claim")

        if chain_intent.status == ChainIntentStatus.CANCELLED:
            self.ledger.record_cancelled(intent_id)
            return PipelineResult(intent_id, PipelineOutcome.CANCELLED)

        if chain_intent.status in (ChainIntentStatus.EXPIRED, ChainIntentStatus.COMMITTED):
            reason = f"fulfillment window closed (chain status {chain_intent.status.name})"
            if intent.provider_transfer_id:
                outcome = self.ledger.quarantine(intent_id, reason, FailureStage.PRECHECK.value)
                return self._failure_result(intent_id, reason, FailureStage.PRECHECK, outcome)
            self.ledger.record_expired(intent_id, reason)
            return PipelineResult(intent_id, PipelineOutcome.EXPIRED, error=reason)

        return self._failed(
            intent_id,
            f"intent not fulfillable, chain status {chain_intent.status.name}",
            FailureStage.PRECHECK,
            retry=True,
        )

    def _by_other(self, intent: IntentRecord, note: str) -> PipelineResult:
        self.ledger.record_fulfilled_by_other(intent.intent_id, note)
        self.metrics.intents_fulfilled.labels(route=intent.selected_route.name, outcome="by_other").inc()
        return PipelineResult(intent.intent_id, PipelineOutcome.FULFILLED_BY_OTHER, error=note)

    def _attestation_failed(self, intent_id: str, e: AttestationError) -> PipelineResult:
        logger.warning(f"Attestation failed: {e.message}", extra={"intent_id": intent_id, **e.to_log_context()})
        error = f"{e.kind}: {e.message}"
        if e.regenerate_proof:
            intent = self.ledger.get_intent(intent_id)
            if intent is not None and intent.provider_transfer_id:
                self.prover.discard(intent.provider_transfer_id)
            self.ledger.clear_proof(intent_id)
            return self._failed(intent_id, error, FailureStage.ATTESTATION, retry=True)
        if e.retryable:
            return self._failed(intent_id, error, FailureStage.ATTESTATION, retry=True)
        outcome = self.ledger.quarantine(intent_id, error, FailureStage.ATTESTATION.value)
        return self._failure_result(intent_id, error, FailureStage.ATTESTATION, outcome)

    async def _claim_reverted(self, intent_id: str, e: ClaimReverted) -> PipelineResult:
        logger.warning(f"Claim reverted: {e}", extra={"intent_id": intent_id, "tx_hash": e.tx_hash, **e.to_log_context()})
        intent = self.ledger.get_intent(intent_id)
        if e.tx_hash and intent is not None and intent.claim_tx_hash == e.tx_hash:
            self.ledger.clear_claim(intent_id)

        if e.kind == RevertKind.NULLIFIER_USED:
            # Only a confirmed on-chain fulfilment counts as success.
            chain_intent: OnChainIntent = await self.chain.get_intent(intent_id)
            if chain_intent.status == ChainIntentStatus.FULFILLED:
                return self._by_other(intent, "claim reverted: payment already used, chain reports fulfilled")
            return self._failed(intent_id, str(e), FailureStage.SUBMISSION, retry=True)

        if e.kind == RevertKind.WINDOW_EXPIRED:
            outcome = self.ledger.quarantine(intent_id, str(e), FailureStage.SUBMISSION.value)
            return self._failure_result(intent_id, str(e), FailureStage.SUBMISSION, outcome)

        if e.kind == RevertKind.INVALID_ATTESTATION:
            # Rebroadcasting the same signature cannot succeed; attest again next run.
            self.ledger.clear_attestation(intent_id)

        return self._failed(intent_id, str(e), FailureStage.SUBMISSION, retry=True)

    def _failed(self, intent_id: str, error: str, stage: FailureStage, retry: bool) -> PipelineResult:
        outcome = self.ledger.record_failure(intent_id, error, force_retry=retry, stage=stage.value)
        return self._failure_result(intent_id, error, stage, outcome)

    def _failure_result(
        self, intent_id: str, error: str, stage: FailureStage, outcome: FailureOutcome
    ) -> PipelineResult:
        intent = self.ledger.get_intent(intent_id)
        fiat_sent = bool(intent and intent.fiat_sent)
        self.metrics.record_failure(stage.value, fiat_sent, outcome.permanent, outcome.alert)
        return PipelineResult(
            intent_id,
            PipelineOutcome.FAILED if outcome.permanent else PipelineOutcome.RETRY_SCHEDULED,
            error=error,
            retry_count=outcome.retry_count,
        )


class _NotRetryable(PipelineError):
    """Local precondition failure: retrying cannot help."""

    retryable = False

    def __init__(self, message: str, stage: FailureStage) -> None:
        super().__init__(message)
        self.stage = stage
