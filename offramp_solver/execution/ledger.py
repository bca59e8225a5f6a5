"""Local ledger mirror of on-chain intents.

The chain is the source of truth for intent and quote state. This mirror
adds what the chain does not track: retry bookkeeping, pipeline checkpoints
and the provider transfer id that tells us fiat has already left our
account.

All writes go through one `LedgerMirror` bound to one session, and the
orchestrator only runs one pipeline per intent, so each row has a single
writer.
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from offramp_solver.data.models import Currency, IntentCreated, OnChainIntent, Route
from offramp_solver.data.storage import IntentDB, QuoteDB, SolverStateDB
from offramp_solver.execution.errors import LedgerError
from offramp_solver.execution.retry_policy import DEFAULT_POLICY, GiveUp, RetryPolicy

logger = logging.getLogger(__name__)

LAST_BLOCK_KEY = "last_block"
FIAT_SENT_ALERT = "FIAT_SENT_CLAIM_FAILED"


class IntentStatus(str, Enum):
    """Local intent status values."""

    PENDING_QUOTE = "pending_quote"
    COMMITTED = "committed"
    PENDING_RETRY = "pending_retry"
    FULFILLED = "fulfilled"
    FULFILLED_BY_OTHER = "fulfilled_by_other"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset(
    {
        IntentStatus.FULFILLED,
        IntentStatus.FULFILLED_BY_OTHER,
        IntentStatus.CANCELLED,
        IntentStatus.EXPIRED,
        IntentStatus.FAILED,
    }
)


class PipelineStep(str, Enum):
    """Last checkpoint reached by the fulfillment pipeline."""

    COMMITTED = "committed"
    TRANSFER_EXECUTED = "transfer_executed"
    PROOF_CAPTURED = "proof_captured"
    ATTESTED = "attested"
    SUBMITTED = "submitted"
    FULFILLED = "fulfilled"


@dataclass(frozen=True)
class IntentRecord:
    """Detached snapshot of an intent row."""

    intent_id: str
    depositor: str
    usdc_amount: int
    currency: Currency
    status: IntentStatus
    created_at: datetime
    committed_at: datetime | None
    selected_solver: str | None
    selected_route: Route | None
    selected_fiat_amount: int | None
    receiving_info: str | None
    recipient_name: str | None
    quotes_submitted: bool
    fulfillment_tx_ref: str | None
    provider_transfer_id: str | None
    pipeline_step: PipelineStep | None
    proof_path: str | None
    attestation: dict[str, Any] | None
    claim_tx_hash: str | None
    error: str | None
    failure_stage: str | None
    fiat_sent_alert: bool
    retry_count: int
    next_retry_at: datetime | None
    updated_at: datetime | None

    @property
    def fiat_sent(self) -> bool:
        return self.provider_transfer_id is not None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-friendly dict. Receiving info is masked."""
        info = self.receiving_info
        return {
            "intent_id": self.intent_id,
            "depositor": self.depositor,
            "usdc_amount": str(self.usdc_amount),
            "currency": self.currency.name,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "committed_at": self.committed_at.isoformat() if self.committed_at else None,
            "selected_solver": self.selected_solver,
            "selected_route": self.selected_route.name if self.selected_route is not None else None,
            "selected_fiat_amount": self.selected_fiat_amount,
            "receiving_info": f"...{info[-4:]}" if info else None,
            "quotes_submitted": self.quotes_submitted,
            "fulfillment_tx_ref": self.fulfillment_tx_ref,
            "provider_transfer_id": self.provider_transfer_id,
            "pipeline_step": self.pipeline_step.value if self.pipeline_step else None,
            "claim_tx_hash": self.claim_tx_hash,
            "error": self.error,
            "failure_stage": self.failure_stage,
            "fiat_sent_alert": self.fiat_sent_alert,
            "retry_count": self.retry_count,
            "next_retry_at": self.next_retry_at.isoformat() if self.next_retry_at else None,
        }


@dataclass(frozen=True)
class QuoteRecord:
    """Detached snapshot of a quote row."""

    quote_id: str
    intent_id: str
    route: Route
    fiat_amount: int
    fee: int
    estimated_time: int
    expires_at: datetime
    submitted_on_chain: bool
    tx_hash: str | None


@dataclass(frozen=True)
class FailureOutcome:
    """What `record_failure`/`quarantine` did to the intent."""

    status: IntentStatus
    retry_count: int
    next_retry_at: datetime | None
    alert: bool

    @property
    def permanent(self) -> bool:
        return self.status == IntentStatus.FAILED


class LedgerMirror:
    """Durable local record of intents and quotes."""

    def __init__(
        self,
        db_session: Session,
        retry_policy: RetryPolicy = DEFAULT_POLICY,
        clock: Callable[[], datetime] = datetime.utcnow,
    ) -> None:
        """Initialize ledger.

        Args:
            db_session: Database session.
            retry_policy: Backoff policy applied by `record_failure`.
            clock: Naive-UTC clock, injectable for tests.
        """
        self.db_session = db_session
        self.retry_policy = retry_policy
        self._now = clock

    # ------------------------------------------------------------------
    # Creation and chain-driven transitions
    # ------------------------------------------------------------------

    def upsert_intent_on_create(self, event: IntentCreated) -> bool:
        """Insert an intent from its creation event (insert-or-ignore).

        Returns:
            True if a new row was written, False if it already existed.
        """
        if self._get(event.intent_id) is not None:
            return False

        now = self._now()
        self.db_session.add(
            IntentDB(
                intent_id=event.intent_id,
                depositor=event.depositor.lower(),
                usdc_amount=str(event.usdc_amount),
                currency=int(event.currency),
                status=IntentStatus.PENDING_QUOTE.value,
                created_at=event.block_timestamp or now,
                quotes_submitted=False,
                retry_count=0,
                updated_at=now,
            )
        )
        try:
            self.db_session.commit()
        except IntegrityError:
            self.db_session.rollback()
            return False

        logger.info(
            f"Intent recorded: {event.intent_id[:10]}",
            extra={
                "intent_id": event.intent_id,
                "usdc_amount": event.usdc_amount,
                "currency": event.currency.name,
                "block": event.block_number,
            },
        )
        return True

    def upsert_from_chain(self, chain_intent: OnChainIntent) -> bool:
        """Insert an intent first seen through a contract read.

        Used when a commit arrives for an intent created before our scan
        window. Existing rows are left alone.
        """
        event = IntentCreated(
            intent_id=chain_intent.intent_id,
            depositor=chain_intent.depositor,
            usdc_amount=chain_intent.usdc_amount,
            currency=chain_intent.currency,
            block_number=0,
            block_timestamp=chain_intent.created_at,
        )
        return self.upsert_intent_on_create(event)

    def record_commit(
        self,
        intent_id: str,
        solver: str,
        route: Route,
        fiat_amount: int,
        receiving_info: str,
        recipient_name: str,
        committed_at: datetime | None = None,
    ) -> bool:
        """Record the depositor's quote selection.

        Idempotent: an intent already past `pending_quote` is left untouched.

        Returns:
            True if the intent moved to `committed`.
        """
        db_intent = self._get(intent_id)
        if db_intent is None:
            return False
        if db_intent.status not in (IntentStatus.PENDING_QUOTE.value, IntentStatus.EXPIRED.value):
            return False

        now = self._now()
        db_intent.status = IntentStatus.COMMITTED.value
        db_intent.committed_at = committed_at or now
        db_intent.selected_solver = solver.lower()
        db_intent.selected_route = int(route)
        db_intent.selected_fiat_amount = int(fiat_amount)
        db_intent.receiving_info = receiving_info
        db_intent.recipient_name = recipient_name
        db_intent.pipeline_step = PipelineStep.COMMITTED.value
        db_intent.updated_at = now
        self.db_session.commit()

        logger.info(
            f"Intent committed: {intent_id[:10]}",
            extra={
                "intent_id": intent_id,
                "solver": solver.lower(),
                "route": Route(route).name,
                "fiat_amount": fiat_amount,
            },
        )
        return True

    def record_cancelled(self, intent_id: str) -> bool:
        """Depositor cancelled (or the chain expired) the intent."""
        db_intent = self._get(intent_id)
        if db_intent is None or self._is_terminal(db_intent):
            return False
        db_intent.status = IntentStatus.CANCELLED.value
        db_intent.next_retry_at = None
        db_intent.updated_at = self._now()
        if db_intent.provider_transfer_id:
            self._flag_alert(db_intent, "intent cancelled after fiat was sent", "precheck")
        self.db_session.commit()
        logger.info(f"Intent cancelled: {intent_id[:10]}", extra={"intent_id": intent_id})
        return True

    def record_expired(self, intent_id: str, reason: str) -> bool:
        """Quote or selection window missed. Never an alert: no fiat moved."""
        db_intent = self._get(intent_id)
        if db_intent is None or self._is_terminal(db_intent):
            return False
        if db_intent.provider_transfer_id:
            raise LedgerError(
                f"Intent {intent_id} has a provider transfer; use quarantine() instead"
            )
        db_intent.status = IntentStatus.EXPIRED.value
        db_intent.error = reason
        db_intent.next_retry_at = None
        db_intent.updated_at = self._now()
        self.db_session.commit()
        logger.info(
            f"Intent expired: {intent_id[:10]}",
            extra={"intent_id": intent_id, "reason": reason},
        )
        return True

    # ------------------------------------------------------------------
    # Pipeline checkpoints
    # ------------------------------------------------------------------

    def record_transfer_id(self, intent_id: str, transfer_id: str) -> bool:
        """Persist the provider transfer id (fiat has left our account).

        Idempotent for the same id. A different id for the same intent is an
        invariant violation: the column is written once and never cleared.

        Returns:
            True if the id was written now, False if it was already recorded.
        """
        db_intent = self._require(intent_id)
        if db_intent.provider_transfer_id is not None:
            if db_intent.provider_transfer_id == transfer_id:
                return False
            raise LedgerError(
                f"Intent {intent_id} already has transfer {db_intent.provider_transfer_id}; "
                f"refusing to overwrite with {transfer_id}"
            )

        db_intent.provider_transfer_id = transfer_id
        db_intent.pipeline_step = PipelineStep.TRANSFER_EXECUTED.value
        db_intent.updated_at = self._now()
        self.db_session.commit()

        logger.info(
            f"Transfer recorded for {intent_id[:10]}",
            extra={"intent_id": intent_id, "transfer_id": transfer_id},
        )
        return True

    def record_proof_captured(self, intent_id: str, proof_path: str) -> None:
        db_intent = self._require(intent_id)
        db_intent.proof_path = proof_path
        db_intent.pipeline_step = PipelineStep.PROOF_CAPTURED.value
        db_intent.updated_at = self._now()
        self.db_session.commit()

    def clear_proof(self, intent_id: str) -> None:
        """Forget a captured proof (and any attestation built on it)."""
        db_intent = self._require(intent_id)
        db_intent.proof_path = None
        db_intent.attestation_json = None
        if db_intent.provider_transfer_id:
            db_intent.pipeline_step = PipelineStep.TRANSFER_EXECUTED.value
        db_intent.updated_at = self._now()
        self.db_session.commit()

    def clear_attestation(self, intent_id: str) -> None:
        """Forget an attestation the chain rejected; the proof is kept."""
        db_intent = self._require(intent_id)
        db_intent.attestation_json = None
        if db_intent.proof_path:
            db_intent.pipeline_step = PipelineStep.PROOF_CAPTURED.value
        elif db_intent.provider_transfer_id:
            db_intent.pipeline_step = PipelineStep.TRANSFER_EXECUTED.value
        db_intent.updated_at = self._now()
        self.db_session.commit()

    def record_attestation(self, intent_id: str, attestation: dict[str, Any]) -> None:
        db_intent = self._require(intent_id)
        db_intent.attestation_json = json.dumps(attestation, sort_keys=True)
        db_intent.pipeline_step = PipelineStep.ATTESTED.value
        db_intent.updated_at = self._now()
        self.db_session.commit()

    def record_claim_submitted(self, intent_id: str, tx_hash: str) -> None:
        """Persist a signed claim hash before the transaction is broadcast."""
        db_intent = self._require(intent_id)
        db_intent.claim_tx_hash = tx_hash
        db_intent.pipeline_step = PipelineStep.SUBMITTED.value
        db_intent.updated_at = self._now()
        self.db_session.commit()
        logger.info(
            f"Claim submitted for {intent_id[:10]}",
            extra={"intent_id": intent_id, "tx_hash": tx_hash},
        )

    def clear_claim(self, intent_id: str) -> None:
        """Forget a claim transaction that is known not to have landed."""
        db_intent = self._require(intent_id)
        db_intent.claim_tx_hash = None
        if db_intent.attestation_json:
            db_intent.pipeline_step = PipelineStep.ATTESTED.value
        db_intent.updated_at = self._now()
        self.db_session.commit()

    def record_fulfilled(
        self, intent_id: str, tx_ref: str, provider_transfer_id: str | None = None
    ) -> bool:
        """Mark the intent fulfilled by our own claim transaction."""
        db_intent = self._require(intent_id)
        if db_intent.status == IntentStatus.FULFILLED.value:
            return False
        if provider_transfer_id is not None:
            if db_intent.provider_transfer_id not in (None, provider_transfer_id):
                raise LedgerError(
                    f"Intent {intent_id} fulfilled with transfer {provider_transfer_id} "
                    f"but ledger has {db_intent.provider_transfer_id}"
                )
            db_intent.provider_transfer_id = provider_transfer_id

        db_intent.status = IntentStatus.FULFILLED.value
        db_intent.fulfillment_tx_ref = tx_ref
        db_intent.pipeline_step = PipelineStep.FULFILLED.value
        db_intent.next_retry_at = None
        db_intent.error = None
        db_intent.failure_stage = None
        db_intent.fiat_sent_alert = False
        db_intent.updated_at = self._now()
        self.db_session.commit()

        logger.info(
            f"Intent fulfilled: {intent_id[:10]}",
            extra={
                "intent_id": intent_id,
                "tx_hash": tx_ref,
                "transfer_id": db_intent.provider_transfer_id,
                "retry_count": db_intent.retry_count,
            },
        )
        return True

    def record_fulfilled_by_other(self, intent_id: str, note: str) -> bool:
        """Another party's claim settled this intent first."""
        db_intent = self._require(intent_id)
        if self._is_terminal(db_intent):
            return False
        db_intent.status = IntentStatus.FULFILLED_BY_OTHER.value
        db_intent.error = note
        db_intent.next_retry_at = None
        db_intent.updated_at = self._now()
        self.db_session.commit()
        logger.warning(
            f"Intent settled by another claim: {intent_id[:10]}",
            extra={
                "intent_id": intent_id,
                "note": note,
                "transfer_id": db_intent.provider_transfer_id,
            },
        )
        return True

    # ------------------------------------------------------------------
    # Failure handling
    # ------------------------------------------------------------------

    def record_failure(
        self,
        intent_id: str,
        error: str,
        force_retry: bool | None = None,
        stage: str | None = None,
    ) -> FailureOutcome:
        """Record a failed pipeline attempt.

        Once `provider_transfer_id` is set the failure always goes through the
        retry policy, whatever the caller asked. Otherwise `force_retry`
        decides: truthy schedules a retry, falsy fails permanently.
        """
        db_intent = self._require(intent_id)
        now = self._now()
        fiat_sent = db_intent.provider_transfer_id is not None
        db_intent.failure_stage = stage
        db_intent.updated_at = now

        if not (fiat_sent or force_retry):
            db_intent.status = IntentStatus.FAILED.value
            db_intent.error = error
            db_intent.next_retry_at = None
            self.db_session.commit()
            logger.error(
                f"Intent failed: {intent_id[:10]}",
                extra={"intent_id": intent_id, "error": error, "stage": stage},
            )
            return self._outcome(db_intent)

        decision = self.retry_policy.decide(db_intent.retry_count)
        if isinstance(decision, GiveUp):
            db_intent.status = IntentStatus.FAILED.value
            db_intent.error = (
                f"Max retries ({self.retry_policy.max_retries}) exceeded. Last error: {error}"
            )
            db_intent.next_retry_at = None
            if fiat_sent:
                self._flag_alert(db_intent, error, stage)
            else:
                logger.error(
                    f"Intent failed after retries: {intent_id[:10]}",
                    extra={"intent_id": intent_id, "error": error, "stage": stage},
                )
            self.db_session.commit()
            return self._outcome(db_intent)

        db_intent.status = IntentStatus.PENDING_RETRY.value
        db_intent.error = error
        db_intent.retry_count = db_intent.retry_count + 1
        db_intent.next_retry_at = now + decision.delay
        self.db_session.commit()

        logger.warning(
            f"Retry {db_intent.retry_count}/{self.retry_policy.max_retries} "
            f"scheduled for {intent_id[:10]} in {int(decision.delay.total_seconds())}s",
            extra={
                "intent_id": intent_id,
                "error": error,
                "stage": stage,
                "retry_count": db_intent.retry_count,
                "next_retry_at": db_intent.next_retry_at.isoformat(),
                "fiat_sent": fiat_sent,
            },
        )
        return self._outcome(db_intent)

    def quarantine(self, intent_id: str, error: str, stage: str | None = None) -> FailureOutcome:
        """Fail permanently without retrying (data-invalid errors).

        Raises the fiat-sent alert when a transfer was already executed.
        """
        db_intent = self._require(intent_id)
        db_intent.status = IntentStatus.FAILED.value
        db_intent.error = error
        db_intent.failure_stage = stage
        db_intent.next_retry_at = None
        db_intent.updated_at = self._now()
        if db_intent.provider_transfer_id:
            self._flag_alert(db_intent, error, stage)
        else:
            logger.error(
                f"Intent quarantined: {intent_id[:10]}",
                extra={"intent_id": intent_id, "error": error, "stage": stage},
            )
        self.db_session.commit()
        return self._outcome(db_intent)

    def mark_for_retry(self, intent_id: str) -> bool:
        """Move a due `pending_retry` intent back to `committed`."""
        db_intent = self._get(intent_id)
        if db_intent is None or db_intent.status != IntentStatus.PENDING_RETRY.value:
            return False
        db_intent.status = IntentStatus.COMMITTED.value
        db_intent.next_retry_at = None
        db_intent.updated_at = self._now()
        self.db_session.commit()
        return True

    def requeue(self, intent_id: str) -> bool:
        """Operator action: give a failed, fiat-sent intent a fresh retry budget."""
        db_intent = self._require(intent_id)
        if db_intent.status != IntentStatus.FAILED.value or not db_intent.provider_transfer_id:
            return False
        now = self._now()
        db_intent.status = IntentStatus.PENDING_RETRY.value
        db_intent.retry_count = 0
        db_intent.next_retry_at = now
        db_intent.fiat_sent_alert = False
        db_intent.updated_at = now
        self.db_session.commit()
        logger.warning(f"Intent requeued by operator: {intent_id[:10]}", extra={"intent_id": intent_id})
        return True

    # ------------------------------------------------------------------
    # Quotes
    # ------------------------------------------------------------------

    def record_quote(
        self,
        intent_id: str,
        route: Route,
        fiat_amount: int,
        fee: int,
        estimated_time: int,
        expires_at: datetime,
    ) -> QuoteRecord:
        """Insert a quote; an existing (intent, route) quote is returned as-is."""
        quote_id = f"{intent_id}-{int(route)}"
        db_quote = self.db_session.get(QuoteDB, quote_id)
        if db_quote is None:
            db_quote = QuoteDB(
                id=quote_id,
                intent_id=intent_id,
                route=int(route),
                fiat_amount=int(fiat_amount),
                fee=str(fee),
                estimated_time=int(estimated_time),
                expires_at=expires_at,
                submitted_on_chain=False,
                created_at=self._now(),
            )
            self.db_session.add(db_quote)
            self.db_session.commit()
        return self._quote_record(db_quote)

    def mark_quote_submitted(self, intent_id: str, route: Route, tx_hash: str | None) -> None:
        db_quote = self.db_session.get(QuoteDB, f"{intent_id}-{int(route)}")
        if db_quote is None:
            raise LedgerError(f"No quote for {intent_id} on {Route(route).name}")
        db_quote.submitted_on_chain = True
        db_quote.tx_hash = tx_hash
        self.db_session.commit()

    def mark_quotes_submitted(self, intent_id: str) -> None:
        db_intent = self._require(intent_id)
        db_intent.quotes_submitted = True
        db_intent.updated_at = self._now()
        self.db_session.commit()

    def get_quotes(self, intent_id: str) -> list[QuoteRecord]:
        rows = (
            self.db_session.query(QuoteDB)
            .filter_by(intent_id=intent_id)
            .order_by(QuoteDB.route)
            .all()
        )
        return [self._quote_record(q) for q in rows]

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_intent(self, intent_id: str) -> IntentRecord | None:
        db_intent = self._get(intent_id)
        return self._record(db_intent) if db_intent is not None else None

    def intents_awaiting_quote(self) -> list[IntentRecord]:
        """Intents we have not quoted yet, oldest first."""
        rows = (
            self.db_session.query(IntentDB)
            .filter(IntentDB.status == IntentStatus.PENDING_QUOTE.value)
            .filter(IntentDB.quotes_submitted.is_(False))
            .order_by(IntentDB.created_at)
            .all()
        )
        return [self._record(r) for r in rows]

    def intents_awaiting_fulfillment(self, solver_id: str) -> list[IntentRecord]:
        """Committed to `solver_id` and not yet claimed, oldest commit first."""
        rows = (
            self.db_session.query(IntentDB)
            .filter(IntentDB.status == IntentStatus.COMMITTED.value)
            .filter(IntentDB.selected_solver == solver_id.lower())
            .filter(IntentDB.fulfillment_tx_ref.is_(None))
            .order_by(IntentDB.committed_at)
            .all()
        )
        return [self._record(r) for r in rows]

    def intents_ready_for_retry(self, solver_id: str, now: datetime | None = None) -> list[IntentRecord]:
        """`pending_retry` intents whose backoff has elapsed."""
        now = now or self._now()
        rows = (
            self.db_session.query(IntentDB)
            .filter(IntentDB.status == IntentStatus.PENDING_RETRY.value)
            .filter(IntentDB.selected_solver == solver_id.lower())
            .filter(IntentDB.next_retry_at <= now)
            .order_by(IntentDB.next_retry_at)
            .all()
        )
        return [self._record(r) for r in rows]

    def list_intents(self, status: IntentStatus | None = None, limit: int = 50) -> list[IntentRecord]:
        query = self.db_session.query(IntentDB)
        if status is not None:
            query = query.filter(IntentDB.status == status.value)
        rows = query.order_by(IntentDB.created_at.desc()).limit(limit).all()
        return [self._record(r) for r in rows]

    def get_stats(self) -> dict[str, Any]:
        """Intent counts by status plus alert count and last block."""
        counts = {s.value: 0 for s in IntentStatus}
        for status, count in (
            self.db_session.query(IntentDB.status, func.count(IntentDB.intent_id))
            .group_by(IntentDB.status)
            .all()
        ):
            counts[status] = count
        alerts = (
            self.db_session.query(func.count(IntentDB.intent_id))
            .filter(IntentDB.fiat_sent_alert.is_(True))
            .scalar()
        )
        return {
            "by_status": counts,
            "total": sum(counts.values()),
            "fiat_sent_alerts": alerts or 0,
            "last_block": self.get_last_block(),
        }

    # ------------------------------------------------------------------
    # Scan cursor
    # ------------------------------------------------------------------

    def get_last_block(self) -> int | None:
        row = self.db_session.get(SolverStateDB, LAST_BLOCK_KEY)
        return int(row.value) if row is not None else None

    def set_last_block(self, block_number: int) -> None:
        """Advance the scan cursor. Never moves backwards."""
        row = self.db_session.get(SolverStateDB, LAST_BLOCK_KEY)
        now = self._now()
        if row is None:
            self.db_session.add(
                SolverStateDB(key=LAST_BLOCK_KEY, value=str(block_number), updated_at=now)
            )
        elif int(row.value) < block_number:
            row.value = str(block_number)
            row.updated_at = now
        else:
            return
        self.db_session.commit()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _get(self, intent_id: str) -> IntentDB | None:
        return self.db_session.get(IntentDB, intent_id)

    def _require(self, intent_id: str) -> IntentDB:
        db_intent = self._get(intent_id)
        if db_intent is None:
            raise LedgerError(f"Unknown intent {intent_id}")
        return db_intent

    @staticmethod
    def _is_terminal(db_intent: IntentDB) -> bool:
        return IntentStatus(db_intent.status) in TERMINAL_STATUSES

    def _flag_alert(self, db_intent: IntentDB, error: str, stage: str | None) -> None:
        db_intent.fiat_sent_alert = True
        logger.critical(
            f"Fiat sent but claim unrecoverable for {db_intent.intent_id[:10]}; manual action required",
            extra={
                "alert": FIAT_SENT_ALERT,
                "intent_id": db_intent.intent_id,
                "transfer_id": db_intent.provider_transfer_id,
                "fiat_amount": db_intent.selected_fiat_amount,
                "retry_count": db_intent.retry_count,
                "stage": stage,
                "error": error,
            },
        )

    @staticmethod
    def _outcome(db_intent: IntentDB) -> FailureOutcome:
        return FailureOutcome(
            status=IntentStatus(db_intent.status),
            retry_count=db_intent.retry_count,
            next_retry_at=db_intent.next_retry_at,
            alert=bool(db_intent.fiat_sent_alert),
        )

    @staticmethod
    def _record(db_intent: IntentDB) -> IntentRecord:
        return IntentRecord(
            intent_id=db_intent.intent_id,
            depositor=db_intent.depositor,
            usdc_amount=int(db_intent.usdc_amount),
            currency=Currency(db_intent.currency),
            status=IntentStatus(db_intent.status),
            created_at=db_intent.created_at,
            committed_at=db_intent.committed_at,
            selected_solver=db_intent.selected_solver,
            selected_route=Route(db_intent.selected_route)
            if db_intent.selected_route is not None
            else None,
            selected_fiat_amount=db_intent.selected_fiat_amount,
            receiving_info=db_intent.receiving_info,
            recipient_name=db_intent.recipient_name,
            quotes_submitted=bool(db_intent.quotes_submitted),
            fulfillment_tx_ref=db_intent.fulfillment_tx_ref,
            provider_transfer_id=db_intent.provider_transfer_id,
            pipeline_step=PipelineStep(db_intent.pipeline_step) if db_intent.pipeline_step else None,
            proof_path=db_intent.proof_path,
            attestation=json.loads(db_intent.attestation_json) if db_intent.attestation_json else None,
            claim_tx_hash=db_intent.claim_tx_hash,
            error=db_intent.error,
            failure_stage=db_intent.failure_stage,
            fiat_sent_alert=bool(db_intent.fiat_sent_alert),
            retry_count=db_intent.retry_count or 0,
            next_retry_at=db_intent.next_retry_at,
            updated_at=db_intent.updated_at,
        )

    @staticmethod
    def _quote_record(db_quote: QuoteDB) -> QuoteRecord:
        return QuoteRecord(
            quote_id=db_quote.id,
            intent_id=db_quote.intent_id,
            route=Route(db_quote.route),
            fiat_amount=db_quote.fiat_amount,
            fee=int(db_quote.fee),
            estimated_time=db_quote.estimated_time,
            expires_at=db_quote.expires_at,
            submitted_on_chain=bool(db_quote.submitted_on_chain),
            tx_hash=db_quote.tx_hash,
        )
