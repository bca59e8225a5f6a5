"""Quote pricing.

Fiat amounts are cents, USDC amounts are 6-decimal base units. The solver fee
is taken in source units and is not deducted from the fiat side.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import ROUND_DOWN, Decimal
from typing import Any, Callable

import httpx
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from offramp_solver.data.models import ROUTE_CURRENCY, Currency, Route
from offramp_solver.rails.base import PaymentRail

logger = logging.getLogger(__name__)

USDC_DECIMALS = 6
BPS_DENOMINATOR = 10_000


class QuoteRejected(ValueError):
    """The solver will not quote this intent on this route."""


@dataclass(frozen=True)
class PricedQuote:
    """A quote ready to be recorded and submitted."""

    route: Route
    fiat_amount: int
    fee: int
    estimated_time: int
    expires_at: datetime
    rate: Decimal


def fiat_cents_for(usdc_amount: int, rate: Decimal) -> int:
    """floor(usdc * rate * 100), with usdc in base units."""
    value = Decimal(usdc_amount) * rate * 100 / Decimal(10**USDC_DECIMALS)
    return int(value.to_integral_value(rounding=ROUND_DOWN))


def fee_for(usdc_amount: int, fee_bps: int) -> int:
    return usdc_amount * fee_bps // BPS_DENOMINATOR


class PricingService:
    """Prices intents from a per-currency rate table."""

    def __init__(
        self,
        fx_rates: dict[str, float],
        fee_bps: int = 50,
        quote_validity_seconds: int = 300,
        min_usdc_amount: int = 1_000_000,
        max_usdc_amount: int = 10_000_000_000,
        fx_rate_url: str | None = None,
        http_client: httpx.AsyncClient | None = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ) -> None:
        self.rates: dict[Currency, Decimal] = {}
        self._apply_rates(fx_rates)
        self.fee_bps = fee_bps
        self.quote_validity = timedelta(seconds=quote_validity_seconds)
        self.min_usdc_amount = min_usdc_amount
        self.max_usdc_amount = max_usdc_amount
        self.fx_rate_url = fx_rate_url
        self._client = http_client
        self._now = clock
        self.rates_updated_at: datetime | None = None

    def _apply_rates(self, raw: dict[str, Any]) -> int:
        applied = 0
        for code, value in raw.items():
            try:
                currency = Currency[code.upper()]
                rate = Decimal(str(value))
            except (KeyError, ArithmeticError):
                logger.warning(f"Ignoring unusable fx rate {code}={value!r}")
                continue
            if rate <= 0:
                logger.warning(f"Ignoring non-positive fx rate for {code}")
                continue
            self.rates[currency] = rate
            applied += 1
        return applied

    def rate_for(self, currency: Currency) -> Decimal | None:
        return self.rates.get(currency)

    def quote_for(self, usdc_amount: int, currency: Currency, route: Route, rail: PaymentRail) -> PricedQuote:
        """Price one route for an intent.

        Raises:
            QuoteRejected: amount out of bounds, no rate, or over the rail limit.
        """
        if ROUTE_CURRENCY[route] != currency:
            raise QuoteRejected(f"{route.name} does not settle in {currency.name}")
        if usdc_amount < self.min_usdc_amount:
            raise QuoteRejected(f"Amount {usdc_amount} below minimum {self.min_usdc_amount}")
        if usdc_amount > self.max_usdc_amount:
            raise QuoteRejected(f"Amount {usdc_amount} above maximum {self.max_usdc_amount}")

        rate = self.rates.get(currency)
        if rate is None:
            raise QuoteRejected(f"No fx rate for {currency.name}")

        fiat_amount = fiat_cents_for(usdc_amount, rate)
        if fiat_amount <= 0:
            raise QuoteRejected("Fiat amount rounds to zero")
        if rail.max_fiat_amount is not None and fiat_amount > rail.max_fiat_amount:
            raise QuoteRejected(
                f"Fiat amount {fiat_amount} exceeds {rail.name} limit {rail.max_fiat_amount}"
            )

        return PricedQuote(
            route=route,
            fiat_amount=fiat_amount,
            fee=fee_for(usdc_amount, self.fee_bps),
            estimated_time=rail.estimated_time_seconds,
            expires_at=self._now() + self.quote_validity,
            rate=rate,
        )

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential_jitter(multiplier=1, max=10),
        retry=retry_if_exception_type((httpx.TimeoutException, httpx.NetworkError)),
        reraise=True,
    )
    async def _fetch_rates(self) -> dict[str, Any]:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=10.0)
        response = await self._client.get(self.fx_rate_url)
        response.raise_for_status()
        data = response.json()
        # Accept either a bare mapping or {"rates": {...}}.
        return data.get("rates", data) if isinstance(data, dict) else {}

    async def refresh_rates(self) -> bool:
        """Refresh rates from `fx_rate_url`; static rates stay on failure."""
        if not self.fx_rate_url:
            return False
        try:
            raw = await self._fetch_rates()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"FX rate refresh failed, keeping previous rates: {e}")
            return False
        applied = self._apply_rates(raw)
        if applied:
            self.rates_updated_at = self._now()
            logger.info(
                "FX rates refreshed",
                extra={"rates": {c.name: str(r) for c, r in self.rates.items()}},
            )
        return applied > 0

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
