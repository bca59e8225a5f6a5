"""Explicit dependency bundle for the solver process."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from sqlalchemy.orm import Session

from offramp_solver.attestation.client import AttestationClient, Attestor
from offramp_solver.attestation.eip712 import Eip712Domain
from offramp_solver.config import Settings
from offramp_solver.data.chain_client import ChainClient
from offramp_solver.data.storage import get_session, init_db
from offramp_solver.execution.errors import ConfigurationError
from offramp_solver.execution.ledger import LedgerMirror
from offramp_solver.execution.prover import ProofToolchain
from offramp_solver.rails.base import PaymentRail
from offramp_solver.rails.qonto import QontoRail
from offramp_solver.rails.registry import RailRegistry
from offramp_solver.services.health import HealthStatus
from offramp_solver.services.metrics import SolverMetrics
from offramp_solver.services.pricing import PricingService

logger = logging.getLogger(__name__)


@dataclass
class SolverContext:
    """Everything the orchestrator and the status API share.

    Built once at startup and passed explicitly.
    """

    settings: Settings
    session: Session
    ledger: LedgerMirror
    chain: ChainClient
    rails: RailRegistry
    pricing: PricingService
    prover: ProofToolchain
    attestor: Attestor | None
    metrics: SolverMetrics = field(default_factory=SolverMetrics)
    health: HealthStatus = field(default_factory=HealthStatus)

    @property
    def solver_address(self) -> str | None:
        return self.chain.solver_address

    async def close(self) -> None:
        for rail in self.rails.rails():
            await rail.close()
        await self.pricing.close()
        close = getattr(self.attestor, "close", None)
        if close is not None:
            await close()
        self.session.close()


def build_rails(settings: Settings) -> RailRegistry:
    rails: list[PaymentRail] = []
    if settings.qonto_api_login and settings.qonto_api_secret and settings.qonto_bank_account_id:
        rails.append(
            QontoRail(
                base_url=settings.qonto_base_url,
                api_login=settings.qonto_api_login,
                api_secret=settings.qonto_api_secret,
                bank_account_id=settings.qonto_bank_account_id,
                staging_token=settings.qonto_staging_token,
                requests_per_second=settings.qonto_requests_per_second,
            )
        )
    return RailRegistry(rails)


def build_attestor(settings: Settings) -> Attestor | None:
    if not settings.attestation_url:
        return None
    domain = (
        Eip712Domain(chain_id=settings.chain_id, verifying_contract=settings.verifier_address)
        if settings.verifier_address
        else None
    )
    return AttestationClient(
        base_url=settings.attestation_url,
        api_key=settings.attestation_api_key,
        timeout=settings.attestation_timeout_seconds,
        domain=domain,
    )


def build_context(settings: Settings) -> SolverContext:
    """Wire the solver from settings.

    Raises:
        ConfigurationError: A component the solver cannot run without is missing.
    """
    init_db(settings.db_url)
    session = get_session()

    rails = build_rails(settings)
    attestor = build_attestor(settings)
    if attestor is None and not settings.dry_run:
        raise ConfigurationError("OFFRAMP_ATTESTATION_URL is required unless dry run is enabled")

    prover_env = {}
    if settings.qonto_api_login and settings.qonto_api_secret:
        prover_env = {
            "QONTO_API_KEY_LOGIN": settings.qonto_api_login,
            "QONTO_API_KEY_SECRET": settings.qonto_api_secret,
            "QONTO_BANK_ACCOUNT_ID": settings.qonto_bank_account_id or "",
        }

    context = SolverContext(
        settings=settings,
        session=session,
        ledger=LedgerMirror(session),
        chain=ChainClient(
            rpc_url=settings.rpc_url,
            offramp_address=settings.offramp_address,
            chain_id=settings.chain_id,
            solver_private_key=settings.solver_private_key,
            verifier_address=settings.verifier_address,
            confirmation_timeout=settings.confirmation_timeout_seconds,
        ),
        rails=rails,
        pricing=PricingService(
            fx_rates=settings.fx_rates,
            fee_bps=settings.fee_bps,
            quote_validity_seconds=settings.quote_validity_seconds,
            min_usdc_amount=settings.min_usdc_amount,
            max_usdc_amount=settings.max_usdc_amount,
            fx_rate_url=settings.fx_rate_url,
        ),
        prover=ProofToolchain(
            commit_command=settings.prover_commit_command,
            present_command=settings.prover_present_command,
            workdir=settings.prover_workdir,
            output_file=settings.prover_output_file,
            storage_path=settings.proof_storage_path,
            timeout_seconds=settings.prover_timeout_seconds,
            commit_share=settings.prover_commit_share,
            env=prover_env,
        ),
        attestor=attestor,
    )
    logger.info(
        "Solver context built",
        extra={"rails": [r.rail_id for r in rails.rails()], "dry_run": settings.dry_run},
    )
    return context
