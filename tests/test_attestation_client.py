"""Tests for the solver-side attestation client."""

import asyncio
import json

import httpx
import pytest

from offramp_solver.attestation.client import API_KEY_HEADER, AttestationClient
from offramp_solver.attestation.eip712 import Eip712Domain
from offramp_solver.attestation.errors import (
    AmountMismatch,
    AttestationUnavailable,
    SigningFailed,
)

from tests.conftest import DOMAIN, IBAN, VERIFIER_ADDRESS, intent_id, make_signed

BASE_URL = "https://attestor.test"


def _success_body(signed):
    return {
        "success": True,
        "signature": "0x" + signed.signature.hex(),
        "digest": "0x" + signed.digest.hex(),
        "data_hash": "0x" + signed.attestation.data_hash.hex(),
        "payment": {
            "transaction_id": signed.attestation.payment_id,
            "amount_cents": signed.attestation.amount,
            "beneficiary": IBAN,
            "timestamp": signed.attestation.timestamp,
            "server": "thirdparty.qonto.com",
        },
    }


def _client(handler, domain=DOMAIN, api_key="secret"):
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return AttestationClient(BASE_URL, api_key=api_key, domain=domain, http_client=http_client)


def _attest(client):
    async def run():
        async with client:
            return await client.attest(
                presentation=b"artifact",
                intent_id=intent_id(1),
                expected_amount_cents=9200,
                expected_beneficiary=IBAN,
            )

    return asyncio.run(run())


def test_attest_success():
    """Test a signed response is parsed and its digest checked."""
    signed = make_signed(intent_id(1))
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json=_success_body(signed))

    result = _attest(_client(handler))

    assert result.signature == signed.signature
    assert result.digest == signed.digest
    assert result.attestation == signed.attestation
    assert result.payment.beneficiary == IBAN

    request = seen[0]
    assert request.url == f"{BASE_URL}/api/v1/attest"
    assert request.headers[API_KEY_HEADER] == "secret"
    payload = json.loads(request.content)
    assert payload["intent_hash"] == intent_id(1)
    assert payload["presentation"] == "YXJ0aWZhY3Q="
    assert payload["expected_amount_cents"] == 9200
    assert payload["expected_beneficiary"] == IBAN


def test_attest_maps_error_codes():
    """Test the wire code comes back as the same error class."""

    def handler(request):
        return httpx.Response(
            400, json={"error": "Invalid payment data: amount", "code": "AmountMismatch", "stage": "verification"}
        )

    with pytest.raises(AmountMismatch) as exc:
        _attest(_client(handler))
    assert exc.value.http_code == 400
    assert exc.value.intent_hash == intent_id(1)
    assert not exc.value.retryable


def test_attest_service_error_is_retryable():
    def handler(request):
        return httpx.Response(503, text="upstream unavailable")

    with pytest.raises(AttestationUnavailable) as exc:
        _attest(_client(handler))
    assert exc.value.retryable
    assert exc.value.http_code == 503


def test_attest_auth_error_is_not_retryable():
    def handler(request):
        return httpx.Response(401, json={"error": "Invalid API key", "code": "Unauthorized"})

    with pytest.raises(AttestationUnavailable) as exc:
        _attest(_client(handler))
    assert not exc.value.retryable
    assert "OFFRAMP_ATTESTATION_API_KEY" in exc.value.suggestion


def test_attest_rejects_digest_from_other_domain():
    """Test a signature over another chain's domain is refused."""
    signed = make_signed(intent_id(1))

    def handler(request):
        return httpx.Response(200, json=_success_body(signed))

    other = Eip712Domain(chain_id=1, verifying_contract=VERIFIER_ADDRESS)
    with pytest.raises(SigningFailed):
        _attest(_client(handler, domain=other))


def test_attest_rejects_malformed_response():
    def handler(request):
        return httpx.Response(200, json={"success": True, "signature": "0x00"})

    with pytest.raises(SigningFailed):
        _attest(_client(handler))


def test_health_check():
    def handler(request):
        assert request.url.path == "/api/v1/health"
        return httpx.Response(200, json={"status": "ok", "witness_address": "0x1", "chain_id": 84532})

    async def run():
        async with _client(handler) as client:
            return await client.health_check()

    assert asyncio.run(run())["status"] == "ok"
