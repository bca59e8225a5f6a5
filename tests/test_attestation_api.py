"""Tests for the attestation HTTP service."""

import base64
import json

import pytest
from fastapi.testclient import TestClient

from offramp_solver.attestation.api import API_KEY_HEADER, create_app
from offramp_solver.attestation.audit import AuditLog
from offramp_solver.attestation.nullifiers import CompositeNullifierRegistry, LocalNullifierCache
from offramp_solver.attestation.presentation import VerifiedPresentation
from offramp_solver.attestation.signer import PaymentAttestor

from tests.conftest import DOMAIN, IBAN, SOLVER_ADDRESS, WITNESS_ADDRESS, WITNESS_KEY, intent_id


class _Verifier:
    def __init__(self, amount_cents=9200, iban=IBAN):
        self.amount_cents = amount_cents
        self.iban = iban

    def verify(self, artifact):
        body = {
            "transaction": {
                "id": "txn_1",
                "amount_cents": self.amount_cents,
                "status": "completed",
                "transfer": {"counterparty_account_number": self.iban},
            }
        }
        return VerifiedPresentation(
            server_name="thirdparty.qonto.com",
            timestamp=1_733_000_000,
            received=b"HTTP/1.1 200 OK\r\n\r\n" + json.dumps(body).encode(),
        )


def _client(amount_cents=9200, api_keys=None, rate_limit=100, audit_log=None, iban=IBAN) -> TestClient:
    attestor = PaymentAttestor(
        WITNESS_KEY,
        DOMAIN,
        _Verifier(amount_cents, iban),
        CompositeNullifierRegistry(LocalNullifierCache()),
        allowed_servers=["qonto.com"],
    )
    return TestClient(
        create_app(attestor, api_keys=api_keys, rate_limit_per_minute=rate_limit, audit_log=audit_log)
    )


def _payload(**overrides):
    payload = {
        "presentation": base64.b64encode(b"artifact").decode(),
        "intent_hash": intent_id(1),
        "expected_amount_cents": 9200,
        "expected_beneficiary": IBAN,
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def keyed_client():
    return _client(api_keys={"secret": SOLVER_ADDRESS})


def test_health():
    response = _client().get("/api/v1/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "witness_address": WITNESS_ADDRESS, "chain_id": DOMAIN.chain_id}


def test_attest_success(tmp_path):
    """Test a valid proof returns a signature and an audit line."""
    audit_path = tmp_path / "audit" / "attest.jsonl"
    client = _client(audit_log=AuditLog(str(audit_path)))

    response = client.post("/api/v1/attest", json=_payload())

    assert response.status_code == 200
    data = response.json()
    assert data["success"] is True
    assert data["signature"].startswith("0x") and len(data["signature"]) == 2 + 130
    assert data["payment"]["transaction_id"] == "txn_1"
    assert data["payment"]["amount_cents"] == 9200
    assert data["payment"]["beneficiary"] == IBAN

    lines = audit_path.read_text().splitlines()
    assert len(lines) == 1
    entry = json.loads(lines[0])
    assert entry["result"] == "success"
    assert entry["payment_id"] == "txn_1"


def test_attest_rejection_returns_error_code():
    """Test a verification failure maps to 400 with its wire code."""
    response = _client(amount_cents=5000).post("/api/v1/attest", json=_payload())
    assert response.status_code == 400
    body = response.json()
    assert body["code"] == "AmountMismatch"
    assert body["stage"] == "verification"


def test_attest_validates_request():
    client = _client()
    assert client.post("/api/v1/attest", json=_payload(intent_hash="0x1234")).status_code == 422
    assert client.post("/api/v1/attest", json=_payload(expected_amount_cents=0)).status_code == 422


def test_attest_requires_api_key(keyed_client):
    """Test missing and unknown API keys are rejected."""
    response = keyed_client.post("/api/v1/attest", json=_payload())
    assert response.status_code == 401
    assert response.json()["code"] == "Unauthorized"

    response = keyed_client.post("/api/v1/attest", json=_payload(), headers={API_KEY_HEADER: "wrong"})
    assert response.status_code == 401

    response = keyed_client.post("/api/v1/attest", json=_payload(), headers={API_KEY_HEADER: "secret"})
    assert response.status_code == 200


def test_attest_rate_limited_per_solver():
    """Test the per-solver bucket returns 429 with Retry-After."""
    client = _client(api_keys={"secret": SOLVER_ADDRESS}, rate_limit=1)
    headers = {API_KEY_HEADER: "secret"}

    assert client.post("/api/v1/attest", json=_payload(), headers=headers).status_code == 200
    response = client.post("/api/v1/attest", json=_payload(), headers=headers)
    assert response.status_code == 429
    assert int(response.headers["Retry-After"]) >= 1


def test_attest_checks_expected_beneficiary():
    """Test a proof paying another account is refused."""
    client = _client(iban="FR7630006000011234567890189")

    response = client.post("/api/v1/attest", json=_payload())
    assert response.status_code == 400
    assert response.json()["code"] == "BeneficiaryMismatch"

    legacy = _payload()
    legacy["expected_beneficiary_iban"] = legacy.pop("expected_beneficiary")
    response = client.post("/api/v1/attest", json=legacy)
    assert response.status_code == 400
    assert response.json()["code"] == "BeneficiaryMismatch"


def test_attest_rejects_unknown_fields():
    response = _client().post("/api/v1/attest", json=_payload(expected_beneficiary_ref=IBAN))
    assert response.status_code == 422
