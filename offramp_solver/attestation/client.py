"""Solver-side access to the attestation verifier.

`AttestationClient` talks to the HTTP service; `LocalAttestor` wraps an
in-process `PaymentAttestor`. Both satisfy `Attestor` and raise the typed
errors from `attestation.errors`.
"""

from __future__ import annotations

import asyncio
import base64
import logging
from typing import Any, Protocol

import httpx
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from offramp_solver.attestation.eip712 import Eip712Domain, PaymentAttestation, compute_digest
from offramp_solver.attestation.errors import (
    ERROR_CLASSES,
    AttestationError,
    AttestationUnavailable,
    SigningFailed,
    classify_error_text,
)
from offramp_solver.attestation.signer import PaymentAttestor, SignedAttestation, VerifiedPayment
from offramp_solver.attestation.nullifiers import compute_nullifier
from offramp_solver.data.models import intent_id_bytes, normalize_intent_id
from offramp_solver.utils.rate_limiter import CircuitBreaker

logger = logging.getLogger(__name__)

API_KEY_HEADER = "x-solver-api-key"


class Attestor(Protocol):
    async def attest(
        self,
        *,
        presentation: bytes,
        intent_id: str,
        expected_amount_cents: int,
        expected_beneficiary: str | None,
    ) -> SignedAttestation:
        ...

    async def health_check(self) -> dict[str, Any]:
        ...


class LocalAttestor:
    """Runs a `PaymentAttestor` in a worker thread (verification shells out)."""

    def __init__(self, attestor: PaymentAttestor) -> None:
        self.attestor = attestor

    async def attest(
        self,
        *,
        presentation: bytes,
        intent_id: str,
        expected_amount_cents: int,
        expected_beneficiary: str | None,
    ) -> SignedAttestation:
        return await asyncio.to_thread(
            self.attestor.attest,
            presentation,
            intent_id,
            expected_amount_cents,
            expected_beneficiary,
        )

    async def health_check(self) -> dict[str, Any]:
        return {
            "status": "ok",
            "witness_address": self.attestor.witness_address,
            "chain_id": self.attestor.domain.chain_id,
        }


class AttestationClient:
    """HTTP client for the attestation service."""

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        timeout: float = 60.0,
        domain: Eip712Domain | None = None,
        http_client: httpx.AsyncClient | None = None,
        breaker: CircuitBreaker | None = None,
    ) -> None:
        """Initialize client.

        Args:
            base_url: Service base URL.
            api_key: Sent as `x-solver-api-key` when set.
            timeout: Request timeout in seconds.
            domain: When given, returned digests are recomputed and checked.
            http_client: Injected client (tests).
            breaker: Circuit breaker shared across calls.
        """
        headers = {"Accept": "application/json", "User-Agent": "offramp-solver/0.1.0"}
        if api_key:
            headers[API_KEY_HEADER] = api_key
        self.base_url = base_url.rstrip("/")
        self.domain = domain
        self.client = http_client or httpx.AsyncClient(
            base_url=self.base_url, timeout=timeout, headers=headers
        )
        if http_client is not None:
            self.client.headers.update(headers)
        self.breaker = breaker or CircuitBreaker(failure_threshold=5, reset_timeout=30.0, name="attestation")

    async def __aenter__(self) -> "AttestationClient":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    async def close(self) -> None:
        await self.client.aclose()

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential_jitter(multiplier=1, max=10),
        retry=retry_if_exception_type((httpx.TimeoutException, httpx.NetworkError)),
        reraise=True,
    )
    async def _request(self, method: str, path: str, json: Any | None = None) -> httpx.Response:
        logger.debug(f"{method} {path}")
        return await self.client.request(method, f"{self.base_url}{path}", json=json)

    async def _send(self, method: str, path: str, intent_hash: str | None, json: Any | None = None) -> httpx.Response:
        if self.breaker.is_open:
            raise AttestationUnavailable(
                "Attestation service circuit open after repeated failures",
                intent_hash=intent_hash,
            )
        try:
            response = await self._request(method, path, json=json)
        except httpx.HTTPError as e:
            self.breaker.record_failure()
            stage, suggestion = classify_error_text(f"{type(e).__name__}: {e}")
            err = AttestationUnavailable(
                f"Attestation request failed: {e}",
                intent_hash=intent_hash,
                original_error=str(e),
                suggestion=suggestion,
            )
            err.stage = stage
            raise err from e

        if response.status_code >= 500 or response.status_code == 429:
            self.breaker.record_failure()
        else:
            self.breaker.record_success()
        return response

    async def health_check(self) -> dict[str, Any]:
        """GET /api/v1/health -> {status, witness_address, chain_id}."""
        response = await self._send("GET", "/api/v1/health", None)
        if response.status_code != 200:
            raise self._error_from_response(response, None)
        return response.json()

    async def attest(
        self,
        *,
        presentation: bytes,
        intent_id: str,
        expected_amount_cents: int,
        expected_beneficiary: str | None,
    ) -> SignedAttestation:
        intent_hash = normalize_intent_id(intent_id)
        payload = {
            "presentation": base64.b64encode(presentation).decode("ascii"),
            "intent_hash": intent_hash,
            "expected_amount_cents": expected_amount_cents,
            "expected_beneficiary": expected_beneficiary,
        }
        response = await self._send("POST", "/api/v1/attest", intent_hash, json=payload)
        if response.status_code != 200:
            raise self._error_from_response(response, intent_hash)

        data = response.json()
        if not data.get("success"):
            raise self._error_from_response(response, intent_hash)
        return self._parse_success(data, intent_hash)

    def _parse_success(self, data: dict[str, Any], intent_hash: str) -> SignedAttestation:
        try:
            payment = data["payment"]
            attestation = PaymentAttestation(
                intent_hash=intent_id_bytes(intent_hash),
                amount=int(payment["amount_cents"]),
                timestamp=int(payment["timestamp"]),
                payment_id=str(payment["transaction_id"]),
                data_hash=data["data_hash"],
            )
            signature = bytes.fromhex(data["signature"].removeprefix("0x"))
            digest = bytes.fromhex(data["digest"].removeprefix("0x"))
        except (KeyError, TypeError, ValueError) as e:
            raise SigningFailed(
                f"Attestation response malformed: {e}", intent_hash=intent_hash
            ) from e

        if len(signature) != 65:
            raise SigningFailed(
                f"Attestation signature must be 65 bytes, got {len(signature)}",
                intent_hash=intent_hash,
            )
        if self.domain is not None and compute_digest(self.domain, attestation) != digest:
            raise SigningFailed(
                "Attestation digest does not match the local EIP-712 derivation; "
                "check chain id and verifier address on both sides",
                intent_hash=intent_hash,
            )

        verified = VerifiedPayment(
            transaction_id=attestation.payment_id,
            amount_cents=attestation.amount,
            beneficiary=payment.get("beneficiary"),
            status="completed",
            server_name=str(payment.get("server", "")),
            timestamp=attestation.timestamp,
            nullifier=compute_nullifier(attestation.payment_id),
        )
        return SignedAttestation(
            signature=signature, digest=digest, attestation=attestation, payment=verified
        )

    @staticmethod
    def _error_from_response(response: httpx.Response, intent_hash: str | None) -> AttestationError:
        try:
            body = response.json()
        except ValueError:
            body = {}
        message = str(body.get("error") or response.text or f"HTTP {response.status_code}")
        code = body.get("code")
        stage, suggestion = classify_error_text(message, response.status_code)

        cls = ERROR_CLASSES.get(code)
        if cls is None:
            # Unknown code: 5xx/429/auth are transport-ish and retryable.
            err = AttestationUnavailable(
                message,
                intent_hash=intent_hash,
                http_code=response.status_code,
                suggestion=suggestion,
            )
            err.stage = stage
            err.retryable = response.status_code >= 500 or response.status_code == 429
            return err
        return cls(message, intent_hash=intent_hash, http_code=response.status_code)

