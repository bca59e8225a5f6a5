"""Startup self-checks. Any failure here is fatal."""

from __future__ import annotations

import logging
import re
import time
from datetime import datetime, timezone

from eth_account import Account
from sqlalchemy import text

from offramp_solver.attestation.client import Attestor
from offramp_solver.config import Settings
from offramp_solver.data.chain_client import ChainClient
from offramp_solver.data.models import Route
from offramp_solver.data.storage import get_session, init_db
from offramp_solver.execution.errors import ConfigurationError
from offramp_solver.rails.registry import RailRegistry

logger = logging.getLogger(__name__)


def redact_db_url(db_url: str) -> str:
    """Redact credentials in DB URL for safe printing."""
    return re.sub(r"://([^:/]+):([^@]+)@", r"://\1:***@", db_url)


def startup_banner(settings: Settings, solver_address: str | None, routes: list[Route]) -> str:
    """Create a safe startup banner (no secrets)."""
    return (
        "\n"
        "Off-ramp Solver Startup\n"
        "============================================================\n"
        f"Solver:         {solver_address or '(read-only)'}\n"
        f"Chain ID:       {settings.chain_id}\n"
        f"OffRamp:        {settings.offramp_address}\n"
        f"Routes:         {', '.join(r.name for r in routes) or '(none)'}\n"
        f"Dry run:        {settings.dry_run}\n"
        f"Poll interval:  {settings.poll_interval_seconds}s\n"
        f"DB URL:         {redact_db_url(settings.db_url)}\n"
        "Clock:          UTC\n"
        "============================================================\n"
    )


def validate_clock_utc(max_skew_seconds: float = 5.0) -> None:
    """Validate system clock looks sane and UTC is available."""
    now_utc = datetime.now(timezone.utc).timestamp()
    skew = abs(now_utc - time.time())
    if skew > max_skew_seconds:
        raise ConfigurationError(
            f"System clock skew too high ({skew:.1f}s). Please sync your system clock."
        )


def validate_db_connectivity(db_url: str) -> None:
    """Validate DB connectivity and schema availability."""
    init_db(db_url)
    session = get_session()
    try:
        session.execute(text("SELECT 1"))
    finally:
        session.close()


def validate_solver_key(settings: Settings) -> str:
    """Return the solver address derived from the configured key."""
    if not settings.solver_private_key:
        raise ConfigurationError("Missing OFFRAMP_SOLVER_PRIVATE_KEY.")
    try:
        return Account.from_key(settings.solver_private_key).address
    except (ValueError, TypeError):
        raise ConfigurationError("Invalid OFFRAMP_SOLVER_PRIVATE_KEY format.") from None


def validate_rails(rails: RailRegistry, dry_run: bool) -> None:
    if len(rails) == 0 and not dry_run:
        raise ConfigurationError(
            "No payment rail configured. Set the OFFRAMP_QONTO_* credentials."
        )


async def verify_chain_registration(chain: ChainClient, rails: RailRegistry) -> list[Route]:
    """Routes that are both configured locally and enabled for us on-chain.

    Raises:
        ConfigurationError: The solver is not registered for any of them.
    """
    chain_id = await chain.w3.eth.chain_id
    if int(chain_id) != chain.chain_id:
        raise ConfigurationError(f"RPC reports chain id {chain_id}, expected {chain.chain_id}")

    supported: list[Route] = []
    for route in rails.routes:
        if await chain.solver_supports_route(route):
            supported.append(route)
        else:
            logger.warning(f"Solver not registered on-chain for {route.name}; not quoting it")
    if rails.routes and not supported:
        raise ConfigurationError(
            f"Solver {chain.solver_address} is not registered for any configured route"
        )
    return supported


async def verify_attestor(attestor: Attestor) -> None:
    try:
        health = await attestor.health_check()
    except Exception as e:
        raise ConfigurationError(f"Attestation service unreachable: {e}") from e
    logger.info(
        "Attestation service reachable",
        extra={"witness": health.get("witness_address"), "chain_id": health.get("chain_id")},
    )
