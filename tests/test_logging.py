"""Tests for the logging setup."""

import io
import json
import logging

import pytest

from offramp_solver.utils import logging as solver_logging
from offramp_solver.utils.logging import bind_log_fields, setup_logging


@pytest.fixture
def stream(monkeypatch):
    monkeypatch.setattr(solver_logging, "_bound_fields", {})
    root = logging.getLogger()
    saved_handlers, saved_level = list(root.handlers), root.level
    out = io.StringIO()
    yield out
    root.handlers[:] = saved_handlers
    root.setLevel(saved_level)


def _lines(stream):
    return [json.loads(line) for line in stream.getvalue().splitlines()]


def test_json_records_carry_service_and_bound_fields(stream):
    setup_logging("INFO", "json", service="attestor", stream=stream)
    bind_log_fields(chain_id=84532)

    logging.getLogger("offramp_solver.execution.pipeline").info(
        "Claim submitted", extra={"intent_id": "0x01", "tx_hash": "0xab"}
    )

    record = _lines(stream)[-1]
    assert record["message"] == "Claim submitted"
    assert record["level"] == "INFO"
    assert record["logger"] == "offramp_solver.execution.pipeline"
    assert record["service"] == "attestor"
    assert record["chain_id"] == 84532
    assert record["intent_id"] == "0x01"
    assert "timestamp" in record


def test_secret_extras_are_masked(stream):
    setup_logging("INFO", "json", stream=stream)

    logging.getLogger("offramp_solver.attestation.api").warning(
        "Rejected caller", extra={"api_key": "sk-live-123", "private_key": "0x" + "11" * 32}
    )

    record = _lines(stream)[-1]
    assert record["api_key"] == "***"
    assert record["private_key"] == "***"
    assert "sk-live-123" not in stream.getvalue()


def test_record_fields_win_over_bound_fields(stream):
    setup_logging("INFO", "json", service="solver", stream=stream)
    bind_log_fields(solver="0xsolver")

    logging.getLogger("offramp_solver.api").info("Status", extra={"solver": "0xother"})

    assert _lines(stream)[-1]["solver"] == "0xother"


def test_level_filters_records(stream):
    setup_logging("WARNING", "json", stream=stream)

    logging.getLogger("offramp_solver.rails.qonto").info("GET /v2/sepa/transfers/tr_q")
    logging.getLogger("offramp_solver.rails.qonto").warning("Qonto slow")

    messages = [line["message"] for line in _lines(stream)]
    assert messages == ["Qonto slow"]


def test_console_format_names_service(stream):
    setup_logging("INFO", "console", service="attestor", stream=stream)

    logging.getLogger("offramp_solver.attestation.api").info("Attestor ready")

    assert "[INFO] attestor offramp_solver.attestation.api: Attestor ready" in stream.getvalue()
