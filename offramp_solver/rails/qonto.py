"""Qonto SEPA Instant rail."""

from __future__ import annotations

import asyncio
import logging
import time
from decimal import Decimal
from typing import Any

import httpx
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from offramp_solver.data.models import Currency, Route
from offramp_solver.execution.errors import TransferFailed
from offramp_solver.rails.base import (
    Beneficiary,
    PaymentRail,
    TransferResult,
    TransferStatus,
    validate_iban,
)
from offramp_solver.utils.rate_limiter import TokenBucket

logger = logging.getLogger(__name__)

# SEPA Instant scheme limit, in cents.
INSTANT_TRANSFER_LIMIT_CENTS = 1_000_000

_STATUS_MAP = {
    "pending": TransferStatus.PENDING,
    "processing": TransferStatus.PROCESSING,
    "settled": TransferStatus.COMPLETED,
    "declined": TransferStatus.FAILED,
    "canceled": TransferStatus.CANCELLED,
}
_ACCEPTED_VOP = ("MATCH_RESULT_MATCH", "MATCH_RESULT_CLOSE_MATCH")


class QontoRail(PaymentRail):
    """SEPA Instant transfers from a Qonto business account."""

    rail_id = "qonto"
    name = "Qonto"
    routes = (Route.SEPA_INSTANT,)
    currencies = (Currency.EUR,)
    estimated_time_seconds = 10
    max_fiat_amount = INSTANT_TRANSFER_LIMIT_CENTS

    def __init__(
        self,
        base_url: str,
        api_login: str,
        api_secret: str,
        bank_account_id: str,
        staging_token: str | None = None,
        timeout: float = 30.0,
        settle_timeout: float = 30.0,
        poll_interval: float = 2.0,
        requests_per_second: float = 5.0,
        http_client: httpx.AsyncClient | None = None,
        limiter: TokenBucket | None = None,
    ) -> None:
        """Initialize Qonto rail.

        Args:
            base_url: API base URL (production or sandbox).
            api_login: Organization login.
            api_secret: API secret key.
            bank_account_id: Account debited for transfers.
            staging_token: Sandbox token, sent as X-Qonto-Staging-Token.
            timeout: Per-request timeout in seconds.
            settle_timeout: How long to poll for settlement after creation.
            poll_interval: Seconds between status polls.
            requests_per_second: Sustained API call rate, including polls.
            http_client: Injected client (tests).
            limiter: Injected token bucket (tests).
        """
        headers = {
            "Accept": "application/json",
            "Authorization": f"{api_login}:{api_secret}",
            "User-Agent": "offramp-solver/0.1.0",
        }
        if staging_token:
            headers["X-Qonto-Staging-Token"] = staging_token
        self.bank_account_id = bank_account_id
        self.settle_timeout = settle_timeout
        self.poll_interval = poll_interval
        self.limiter = limiter or TokenBucket(
            rate=requests_per_second, burst_size=max(1, int(requests_per_second * 2)), name="qonto"
        )
        self.client = http_client or httpx.AsyncClient(
            base_url=base_url, timeout=timeout, headers=headers
        )
        if http_client is not None:
            self.client.headers.update(headers)

    async def close(self) -> None:
        await self.client.aclose()

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential_jitter(multiplier=1, max=10),
        retry=retry_if_exception_type((httpx.TimeoutException, httpx.NetworkError)),
        reraise=True,
    )
    async def _request(
        self,
        method: str,
        path: str,
        json: dict[str, Any] | None = None,
        idempotency_key: str | None = None,
    ) -> Any:
        """Make a request with retry on transport errors.

        Raises:
            httpx.HTTPStatusError: On HTTP error.
        """
        headers = {"X-Qonto-Idempotency-Key": idempotency_key} if idempotency_key else None
        await self.limiter.acquire()
        logger.debug(f"{method} {path}")
        response = await self.client.request(method, path, json=json, headers=headers)
        response.raise_for_status()
        return response.json() if response.content else None

    async def _call(self, method: str, path: str, **kwargs: Any) -> Any:
        """`_request` with failures mapped to TransferFailed."""
        try:
            return await self._request(method, path, **kwargs)
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            raise TransferFailed(
                f"Qonto API error {status} on {path}: {e.response.text[:200]}",
                retryable=status >= 500 or status == 429,
                code=status,
            ) from e
        except httpx.HTTPError as e:
            raise TransferFailed(f"Qonto request failed on {path}: {e}", retryable=True) from e

    async def verify_payee(self, iban: str, name: str) -> str:
        """Verification of Payee. Returns the proof token required to transfer."""
        data = await self._call(
            "POST", "/v2/sepa/verify_payee", json={"iban": iban, "beneficiary_name": name}
        )
        match = data.get("match_result")
        if match not in _ACCEPTED_VOP:
            raise TransferFailed(
                f"VoP check failed: {match}",
                retryable=match == "MATCH_RESULT_NOT_POSSIBLE",
                code=match,
            )
        return data["proof_token"]["token"]

    async def execute_transfer(
        self, route: Route, amount_cents: int, beneficiary: Beneficiary
    ) -> TransferResult:
        if not self.supports_route(route):
            raise TransferFailed(f"Qonto does not serve {route.name}", retryable=False)
        if amount_cents <= 0:
            raise TransferFailed(f"Invalid amount {amount_cents}", retryable=False)
        if amount_cents > INSTANT_TRANSFER_LIMIT_CENTS:
            raise TransferFailed(
                f"Amount {amount_cents} cents exceeds SEPA Instant limit", retryable=False
            )
        iban = beneficiary.receiving_info.replace(" ", "").upper()
        if not validate_iban(iban):
            raise TransferFailed("Receiving info is not a valid IBAN", retryable=False)

        started = time.monotonic()
        vop_token = await self.verify_payee(iban, beneficiary.recipient_name)
        amount = str((Decimal(amount_cents) / 100).quantize(Decimal("0.01")))
        # The idempotency key makes a retried create return the same transfer.
        data = await self._call(
            "POST",
            "/v2/sepa/transfers",
            json={
                "vop_proof_token": vop_token,
                "transfer": {
                    "bank_account_id": self.bank_account_id,
                    "beneficiary": {"name": beneficiary.recipient_name, "iban": iban},
                    "amount": amount,
                    "reference": f"OFFRAMP-{beneficiary.reference[2:10]}",
                    "note": f"Off-ramp intent {beneficiary.reference}",
                },
            },
            idempotency_key=beneficiary.reference,
        )
        transfer = data["transfer"]
        transfer_id = transfer["id"]
        status = _STATUS_MAP.get(transfer.get("status", ""), TransferStatus.PENDING)
        logger.info(
            "Transfer created",
            extra={"transfer_id": transfer_id, "status": status.value, "amount": amount},
        )

        status = await self._wait_for_settlement(transfer_id, status)
        if status in (TransferStatus.FAILED, TransferStatus.CANCELLED):
            raise TransferFailed(
                f"Transfer {transfer_id} {status.value}", retryable=False, code=status.value
            )

        logger.info(
            "Transfer accepted",
            extra={
                "transfer_id": transfer_id,
                "status": status.value,
                "duration": time.monotonic() - started,
            },
        )
        return TransferResult(transfer_id=transfer_id, amount_sent=amount_cents, status=status)

    async def _wait_for_settlement(self, transfer_id: str, status: TransferStatus) -> TransferStatus:
        deadline = time.monotonic() + self.settle_timeout
        while status in (TransferStatus.PENDING, TransferStatus.PROCESSING):
            if time.monotonic() >= deadline:
                # Still in flight: the money is committed, the proof step waits for it.
                logger.warning(
                    "Transfer not settled within instant window",
                    extra={"transfer_id": transfer_id, "status": status.value},
                )
                break
            await asyncio.sleep(self.poll_interval)
            try:
                status = await self.get_transfer_status(transfer_id)
            except TransferFailed as e:
                # The transfer exists; its id must still reach the ledger.
                logger.warning(
                    f"Status poll failed, returning last known status: {e}",
                    extra={"transfer_id": transfer_id},
                )
                break
        return status

    async def get_transfer_status(self, transfer_id: str) -> TransferStatus:
        data = await self._call("GET", f"/v2/sepa/transfers/{transfer_id}")
        return _STATUS_MAP.get(data["transfer"].get("status", ""), TransferStatus.PENDING)

    async def health_check(self) -> bool:
        try:
            data = await self._call("GET", f"/v2/bank_accounts/{self.bank_account_id}")
        except TransferFailed as e:
            logger.warning(f"Qonto health check failed: {e}")
            return False
        account = data.get("bank_account", {})
        if account.get("status") != "active":
            logger.warning("Qonto bank account not active", extra={"status": account.get("status")})
            return False
        return True
