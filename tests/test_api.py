"""Tests for the solver status API."""

from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient

from offramp_solver.api.app import create_app
from offramp_solver.config import get_settings
from offramp_solver.data.models import Route
from offramp_solver.rails.registry import RailRegistry
from offramp_solver.services.context import SolverContext
from offramp_solver.services.health import ComponentState
from offramp_solver.services.pricing import PricingService

from tests.conftest import SOLVER_ADDRESS, commit_intent, created_event, intent_id


@pytest.fixture
def context(db_session, ledger, fake_chain, fake_rail, fake_prover, fake_attestor):
    return SolverContext(
        settings=get_settings(),
        session=db_session,
        ledger=ledger,
        chain=fake_chain,
        rails=RailRegistry([fake_rail]),
        pricing=PricingService({"EUR": 0.92}),
        prover=fake_prover,
        attestor=fake_attestor,
    )


@pytest.fixture
def client(context):
    return TestClient(create_app(context))


def test_root(client):
    data = client.get("/").json()
    assert data["solver"] == SOLVER_ADDRESS
    assert data["dry_run"] is False


def test_health(client, context):
    """Test health is 200 until a component goes down."""
    assert client.get("/health").status_code == 200

    context.health.set_component("rail:fake", ComponentState.DEGRADED)
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "degraded"

    context.health.set_component("database", ComponentState.DOWN, "locked")
    assert client.get("/health").status_code == 503


def test_ready(client, context):
    assert client.get("/ready").status_code == 503
    context.health.ready = True
    assert client.get("/ready").json() == {"ready": True}


def test_stats(client, ledger):
    commit_intent(ledger, 1)
    ledger.set_last_block(77)

    data = client.get("/stats").json()
    assert data["by_status"]["committed"] == 1
    assert data["last_block"] == 77


def test_list_intents(client, ledger):
    commit_intent(ledger, 1)
    ledger.upsert_intent_on_create(created_event(2))

    assert client.get("/intents").json()["count"] == 2
    committed = client.get("/intents", params={"status": "COMMITTED"}).json()
    assert [i["intent_id"] for i in committed["intents"]] == [intent_id(1)]
    assert client.get("/intents", params={"status": "bogus"}).status_code == 400


def test_get_intent(client, ledger):
    """Test intent detail includes quotes and masks receiving info."""
    commit_intent(ledger, 1)
    ledger.record_quote(intent_id(1), Route.SEPA_STANDARD, 9200, 500_000, 3600, datetime.utcnow() + timedelta(minutes=5))

    data = client.get(f"/intents/{intent_id(1)}").json()
    assert data["receiving_info"] == "...3000"
    assert data["quotes"][0]["route"] == "SEPA_STANDARD"
    assert data["quotes"][0]["fee"] == "500000"

    assert client.get(f"/intents/{intent_id(9)}").status_code == 404
    assert client.get("/intents/0x1234").status_code == 400


def test_metrics(client, context):
    context.metrics.quotes_submitted.labels(route="SEPA_INSTANT").inc()
    response = client.get("/metrics")
    assert response.status_code == 200
    assert 'offramp_solver_quotes_submitted_total{route="SEPA_INSTANT"} 1.0' in response.text
