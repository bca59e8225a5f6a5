"""Tests for the local ledger mirror."""

from datetime import datetime, timedelta

import pytest

from offramp_solver.data.models import Route
from offramp_solver.execution.errors import LedgerError
from offramp_solver.execution.ledger import IntentStatus, LedgerMirror, PipelineStep

from tests.conftest import (
    IBAN,
    OTHER_SOLVER,
    SOLVER_ADDRESS,
    USDC_100,
    commit_intent,
    created_event,
    intent_id,
)


class _Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def test_upsert_on_create_is_idempotent(ledger):
    """Test the same creation event only writes once."""
    assert ledger.upsert_intent_on_create(created_event(1))
    assert not ledger.upsert_intent_on_create(created_event(1))

    intent = ledger.get_intent(intent_id(1))
    assert intent.status == IntentStatus.PENDING_QUOTE
    assert intent.usdc_amount == USDC_100
    assert intent.retry_count == 0
    assert not intent.quotes_submitted


def test_record_commit(ledger):
    """Test commit moves pending_quote to committed with the selection."""
    commit_intent(ledger, 1)
    intent = ledger.get_intent(intent_id(1))
    assert intent.status == IntentStatus.COMMITTED
    assert intent.selected_solver == SOLVER_ADDRESS.lower()
    assert intent.selected_route == Route.SEPA_INSTANT
    assert intent.selected_fiat_amount == 9200
    assert intent.receiving_info == IBAN
    assert intent.pipeline_step == PipelineStep.COMMITTED


def test_record_commit_ignored_past_pending_quote(ledger):
    """Test a duplicate commit does not reset a fulfilled intent."""
    iid = commit_intent(ledger, 1)
    ledger.record_transfer_id(iid, "tr_1")
    ledger.record_fulfilled(iid, "0xabc", "tr_1")

    assert not ledger.record_commit(iid, OTHER_SOLVER, Route.SEPA_INSTANT, 1, IBAN, "Bob")
    assert ledger.get_intent(iid).status == IntentStatus.FULFILLED


def test_record_commit_unknown_intent(ledger):
    assert not ledger.record_commit(intent_id(9), SOLVER_ADDRESS, Route.SEPA_INSTANT, 1, IBAN, "Bob")


def test_transfer_id_written_once(ledger):
    """Test the provider transfer id cannot be replaced."""
    iid = commit_intent(ledger, 1)
    assert ledger.record_transfer_id(iid, "tr_1")
    assert not ledger.record_transfer_id(iid, "tr_1")
    with pytest.raises(LedgerError):
        ledger.record_transfer_id(iid, "tr_2")

    intent = ledger.get_intent(iid)
    assert intent.provider_transfer_id == "tr_1"
    assert intent.fiat_sent
    assert intent.pipeline_step == PipelineStep.TRANSFER_EXECUTED


def test_failure_without_fiat_can_fail_permanently(ledger):
    """Test a non-retryable failure before any transfer fails immediately."""
    iid = commit_intent(ledger, 1)
    outcome = ledger.record_failure(iid, "bad receiving info", force_retry=False, stage="transfer")

    assert outcome.permanent
    assert not outcome.alert
    intent = ledger.get_intent(iid)
    assert intent.status == IntentStatus.FAILED
    assert intent.error == "bad receiving info"
    assert intent.failure_stage == "transfer"


def test_failure_after_fiat_always_retries(ledger):
    """Test fiat-sent intents go through the retry policy even if told not to."""
    clock = _Clock(datetime(2024, 12, 1, 12, 0, 0))
    ledger = LedgerMirror(ledger.db_session, clock=clock)
    iid = commit_intent(ledger, 1)
    ledger.record_transfer_id(iid, "tr_1")

    outcome = ledger.record_failure(iid, "attestation down", force_retry=False, stage="attestation")

    assert outcome.status == IntentStatus.PENDING_RETRY
    assert outcome.retry_count == 1
    assert outcome.next_retry_at == clock.now + timedelta(seconds=60)


def test_retry_exhaustion_raises_alert(ledger):
    """Test the sixth failure after fiat was sent fails with an alert."""
    clock = _Clock(datetime(2024, 12, 1, 12, 0, 0))
    ledger = LedgerMirror(ledger.db_session, clock=clock)
    iid = commit_intent(ledger, 1)
    ledger.record_transfer_id(iid, "tr_1")

    delays = []
    for _ in range(5):
        outcome = ledger.record_failure(iid, "proof timeout", stage="proof")
        delays.append(outcome.next_retry_at - clock.now)
        ledger.mark_for_retry(iid)
    assert delays == [timedelta(seconds=60 * 2**n) for n in range(5)]

    outcome = ledger.record_failure(iid, "proof timeout", stage="proof")
    assert outcome.permanent
    assert outcome.alert
    intent = ledger.get_intent(iid)
    assert intent.status == IntentStatus.FAILED
    assert intent.fiat_sent_alert
    assert intent.provider_transfer_id == "tr_1"
    assert "Max retries (5) exceeded" in intent.error


def test_quarantine_flags_alert_only_when_fiat_sent(ledger):
    """Test quarantine alerts only after a transfer."""
    first = commit_intent(ledger, 1)
    second = commit_intent(ledger, 2)
    ledger.record_transfer_id(second, "tr_2")

    assert not ledger.quarantine(first, "invalid", "attestation").alert
    outcome = ledger.quarantine(second, "AmountMismatch", "attestation")
    assert outcome.alert
    assert outcome.permanent
    assert ledger.get_intent(second).status == IntentStatus.FAILED


def test_record_expired_refuses_after_transfer(ledger):
    """Test expiry is never recorded for an intent that already moved fiat."""
    iid = commit_intent(ledger, 1)
    ledger.record_transfer_id(iid, "tr_1")
    with pytest.raises(LedgerError):
        ledger.record_expired(iid, "fulfillment window closed")


def test_record_expired_and_cancelled(ledger):
    ledger.upsert_intent_on_create(created_event(1))
    ledger.upsert_intent_on_create(created_event(2))

    assert ledger.record_expired(intent_id(1), "quote window missed")
    assert ledger.record_cancelled(intent_id(2))
    assert not ledger.record_cancelled(intent_id(2))
    assert ledger.get_intent(intent_id(1)).status == IntentStatus.EXPIRED
    assert ledger.get_intent(intent_id(2)).status == IntentStatus.CANCELLED


def test_intents_ready_for_retry_respects_backoff(ledger):
    """Test only intents whose backoff elapsed are returned."""
    clock = _Clock(datetime(2024, 12, 1, 12, 0, 0))
    ledger = LedgerMirror(ledger.db_session, clock=clock)
    iid = commit_intent(ledger, 1)
    ledger.record_failure(iid, "rail 503", force_retry=True, stage="transfer")

    assert ledger.intents_ready_for_retry(SOLVER_ADDRESS, clock.now) == []
    ready = ledger.intents_ready_for_retry(SOLVER_ADDRESS, clock.now + timedelta(seconds=61))
    assert [i.intent_id for i in ready] == [iid]
    assert ledger.intents_ready_for_retry(OTHER_SOLVER, clock.now + timedelta(hours=1)) == []

    assert ledger.mark_for_retry(iid)
    assert ledger.get_intent(iid).status == IntentStatus.COMMITTED
    assert not ledger.mark_for_retry(iid)


def test_awaiting_fulfillment_only_for_our_solver(ledger):
    ours = commit_intent(ledger, 1)
    commit_intent(ledger, 2, solver=OTHER_SOLVER)

    assert [i.intent_id for i in ledger.intents_awaiting_fulfillment(SOLVER_ADDRESS)] == [ours]


def test_claim_and_proof_checkpoints(ledger):
    """Test clearing a claim or proof steps the checkpoint back."""
    iid = commit_intent(ledger, 1)
    ledger.record_transfer_id(iid, "tr_1")
    ledger.record_proof_captured(iid, "/proofs/tr_1.presentation.tlsn")
    ledger.record_attestation(iid, {"signature": "0x00"})
    ledger.record_claim_submitted(iid, "0xabc")
    assert ledger.get_intent(iid).pipeline_step == PipelineStep.SUBMITTED

    ledger.clear_claim(iid)
    intent = ledger.get_intent(iid)
    assert intent.claim_tx_hash is None
    assert intent.pipeline_step == PipelineStep.ATTESTED

    ledger.clear_proof(iid)
    intent = ledger.get_intent(iid)
    assert intent.proof_path is None
    assert intent.attestation is None
    assert intent.pipeline_step == PipelineStep.TRANSFER_EXECUTED


def test_requeue_gives_fresh_budget(ledger):
    """Test operator requeue of a failed fiat-sent intent."""
    iid = commit_intent(ledger, 1)
    ledger.record_transfer_id(iid, "tr_1")
    ledger.quarantine(iid, "window expired", "submission")

    assert ledger.requeue(iid)
    intent = ledger.get_intent(iid)
    assert intent.status == IntentStatus.PENDING_RETRY
    assert intent.retry_count == 0
    assert not intent.fiat_sent_alert

    other = commit_intent(ledger, 2)
    assert not ledger.requeue(other)


def test_quotes_are_unique_per_route(ledger):
    ledger.upsert_intent_on_create(created_event(1))
    expires = datetime.utcnow() + timedelta(minutes=5)
    first = ledger.record_quote(intent_id(1), Route.SEPA_INSTANT, 9200, 500000, 10, expires)
    again = ledger.record_quote(intent_id(1), Route.SEPA_INSTANT, 9999, 1, 1, expires)

    assert again.fiat_amount == first.fiat_amount == 9200
    ledger.mark_quote_submitted(intent_id(1), Route.SEPA_INSTANT, "0xquote")
    quotes = ledger.get_quotes(intent_id(1))
    assert len(quotes) == 1
    assert quotes[0].submitted_on_chain
    assert quotes[0].fee == 500000

    with pytest.raises(LedgerError):
        ledger.mark_quote_submitted(intent_id(1), Route.SEPA_STANDARD, None)


def test_last_block_is_monotonic(ledger):
    assert ledger.get_last_block() is None
    ledger.set_last_block(100)
    ledger.set_last_block(90)
    assert ledger.get_last_block() == 100
    ledger.set_last_block(120)
    assert ledger.get_last_block() == 120


def test_stats(ledger):
    commit_intent(ledger, 1)
    ledger.upsert_intent_on_create(created_event(2))
    ledger.set_last_block(42)

    stats = ledger.get_stats()
    assert stats["by_status"]["committed"] == 1
    assert stats["by_status"]["pending_quote"] == 1
    assert stats["total"] == 2
    assert stats["fiat_sent_alerts"] == 0
    assert stats["last_block"] == 42


def test_to_dict_masks_receiving_info(ledger):
    iid = commit_intent(ledger, 1)
    data = ledger.get_intent(iid).to_dict()
    assert data["receiving_info"] == "...3000"
    assert data["status"] == "committed"
    assert data["selected_route"] == "SEPA_INSTANT"
