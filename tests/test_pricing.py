"""Tests for quote pricing."""

import asyncio
from datetime import datetime, timedelta
from decimal import Decimal

import httpx
import pytest

from offramp_solver.data.models import Currency, Route
from offramp_solver.services.pricing import PricingService, QuoteRejected, fee_for, fiat_cents_for

from tests.conftest import USDC_100, FakeRail

NOW = datetime(2024, 12, 1, 12, 0, 0)


def _pricing(**kwargs) -> PricingService:
    kwargs.setdefault("fx_rates", {"EUR": 0.92})
    return PricingService(clock=lambda: NOW, **kwargs)


def test_fiat_and_fee_arithmetic():
    """Test 100 USDC at 0.92 with 50 bps."""
    assert fiat_cents_for(USDC_100, Decimal("0.92")) == 9200
    assert fee_for(USDC_100, 50) == 500_000


def test_fiat_amount_rounds_down():
    assert fiat_cents_for(1_234_567, Decimal("0.9")) == 111
    assert fee_for(1_999, 50) == 9


def test_quote_for_route():
    quote = _pricing().quote_for(USDC_100, Currency.EUR, Route.SEPA_INSTANT, FakeRail())

    assert quote.route == Route.SEPA_INSTANT
    assert quote.fiat_amount == 9200
    assert quote.fee == 500_000
    assert quote.estimated_time == 10
    assert quote.expires_at == NOW + timedelta(seconds=300)
    assert quote.rate == Decimal("0.92")


def test_quote_rejects_out_of_bounds_amounts():
    pricing = _pricing(min_usdc_amount=1_000_000, max_usdc_amount=500_000_000)
    with pytest.raises(QuoteRejected):
        pricing.quote_for(999_999, Currency.EUR, Route.SEPA_INSTANT, FakeRail())
    with pytest.raises(QuoteRejected):
        pricing.quote_for(500_000_001, Currency.EUR, Route.SEPA_INSTANT, FakeRail())


def test_quote_rejects_route_in_other_currency():
    with pytest.raises(QuoteRejected):
        _pricing().quote_for(USDC_100, Currency.GBP, Route.SEPA_INSTANT, FakeRail())


def test_quote_requires_rate():
    with pytest.raises(QuoteRejected):
        _pricing(fx_rates={"GBP": 0.79}).quote_for(USDC_100, Currency.EUR, Route.SEPA_INSTANT, FakeRail())


def test_quote_respects_rail_limit():
    """Test a quote above the rail's single transfer limit is refused."""
    with pytest.raises(QuoteRejected):
        _pricing(max_usdc_amount=10**12).quote_for(20_000_000_000, Currency.EUR, Route.SEPA_INSTANT, FakeRail())


def test_unusable_rates_are_ignored():
    pricing = _pricing(fx_rates={"EUR": 0.92, "XYZ": 1.0, "GBP": -1, "BRL": "abc"})
    assert pricing.rates == {Currency.EUR: Decimal("0.92")}


def _refresh(pricing):
    async def run():
        try:
            return await pricing.refresh_rates()
        finally:
            await pricing.close()

    return asyncio.run(run())


def test_refresh_rates():
    def handler(request):
        return httpx.Response(200, json={"rates": {"EUR": "0.93", "GBP": "0.79"}})

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    pricing = _pricing(fx_rate_url="https://fx.test/latest", http_client=client)

    assert _refresh(pricing)
    assert pricing.rate_for(Currency.EUR) == Decimal("0.93")
    assert pricing.rate_for(Currency.GBP) == Decimal("0.79")
    assert pricing.rates_updated_at == NOW


def test_refresh_failure_keeps_rates():
    """Test an HTTP error leaves the static rates in place."""

    def handler(request):
        return httpx.Response(500, text="down")

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    pricing = _pricing(fx_rate_url="https://fx.test/latest", http_client=client)

    assert not _refresh(pricing)
    assert pricing.rate_for(Currency.EUR) == Decimal("0.92")
    assert pricing.rates_updated_at is None


def test_refresh_without_url_is_noop():
    assert not asyncio.run(_pricing().refresh_rates())
