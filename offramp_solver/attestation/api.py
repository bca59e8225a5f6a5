"""Attestation HTTP service.

POST /api/v1/attest  -> signed payment attestation
GET  /api/v1/health  -> witness address and chain id
"""

from __future__ import annotations

import logging
import time
from typing import Any

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from web3 import Web3

from offramp_solver.attestation.audit import AuditLog, AuditResult
from offramp_solver.attestation.eip712 import Eip712Domain
from offramp_solver.attestation.errors import AttestationError, AttestorConfigurationError
from offramp_solver.attestation.nullifiers import (
    CompositeNullifierRegistry,
    LocalNullifierCache,
    OnChainNullifierRegistry,
)
from offramp_solver.attestation.presentation import PresentationVerifier, ToolchainPresentationVerifier
from offramp_solver.attestation.signer import PaymentAttestor
from offramp_solver.config.settings import AttestorSettings
from offramp_solver.data.models import normalize_intent_id
from offramp_solver.utils.rate_limiter import KeyedRateLimiter

logger = logging.getLogger(__name__)

API_KEY_HEADER = "x-solver-api-key"


class AttestRequest(BaseModel):
    """Body of POST /api/v1/attest. Unknown fields are rejected."""

    model_config = ConfigDict(extra="forbid")

    presentation: str = Field(..., min_length=1, description="Base64 presentation artifact")
    intent_hash: str
    expected_amount_cents: int = Field(..., gt=0)
    expected_beneficiary: str | None = Field(
        default=None,
        validation_alias=AliasChoices("expected_beneficiary", "expected_beneficiary_iban"),
    )

    @field_validator("intent_hash")
    @classmethod
    def validate_intent_hash(cls, v: str) -> str:
        return normalize_intent_id(v)


class _Unauthorized(Exception):
    pass


def create_attestor(
    settings: AttestorSettings, verifier: PresentationVerifier | None = None
) -> PaymentAttestor:
    """Build the attestor, failing fast on fatal configuration.

    With an RPC URL configured, the witness must be authorized on the
    PaymentVerifier contract and replay checks consult `usedNullifiers`.
    """
    chain_registry = None
    if settings.rpc_url:
        w3 = Web3(Web3.HTTPProvider(settings.rpc_url))
        chain_registry = OnChainNullifierRegistry(w3, settings.verifier_contract)

    attestor = PaymentAttestor(
        witness_private_key=settings.witness_private_key,
        domain=Eip712Domain(chain_id=settings.chain_id, verifying_contract=settings.verifier_contract),
        verifier=verifier
        or ToolchainPresentationVerifier(
            settings.verifier_command, timeout=settings.verifier_timeout_seconds
        ),
        nullifiers=CompositeNullifierRegistry(LocalNullifierCache(), chain_registry),
        allowed_servers=settings.allowed_server_list(),
        completed_statuses=settings.completed_status_list(),
        max_artifact_bytes=settings.max_presentation_bytes,
    )

    if chain_registry is not None:
        if not chain_registry.is_witness_authorized(attestor.witness_address):
            raise AttestorConfigurationError(
                f"Witness {attestor.witness_address} is not authorized on "
                f"PaymentVerifier {settings.verifier_contract}"
            )
        logger.info("Witness authorized on-chain", extra={"witness": attestor.witness_address})

    return attestor


def create_app(
    attestor: PaymentAttestor,
    api_keys: dict[str, str] | None = None,
    rate_limit_per_minute: int = 100,
    audit_log: AuditLog | None = None,
) -> FastAPI:
    """Assemble the FastAPI app around an already-validated attestor."""
    app = FastAPI(
        title="Payment Attestation Service",
        description="Verifies payment proofs and signs EIP-712 attestations",
        version="0.1.0",
    )
    api_keys = api_keys or {}
    limiter = KeyedRateLimiter(per_minute=rate_limit_per_minute, name="attest")
    audit = audit_log or AuditLog(None)

    @app.exception_handler(_Unauthorized)
    async def _unauthorized(request: Request, exc: _Unauthorized) -> JSONResponse:
        return JSONResponse(status_code=401, content={"error": str(exc), "code": "Unauthorized"})

    def solver_identity(request: Request) -> str | None:
        """Resolve the caller's solver address from its API key."""
        if not api_keys:
            return None
        key = request.headers.get(API_KEY_HEADER)
        if not key:
            raise _Unauthorized(f"Missing {API_KEY_HEADER} header")
        solver = api_keys.get(key)
        if solver is None:
            raise _Unauthorized("Invalid API key")
        return solver

    @app.get("/api/v1/health")
    def health() -> dict[str, Any]:
        return {
            "status": "ok",
            "witness_address": attestor.witness_address,
            "chain_id": attestor.domain.chain_id,
        }

    @app.post("/api/v1/attest")
    def attest(
        body: AttestRequest, request: Request, solver: str | None = Depends(solver_identity)
    ) -> Any:
        rate_key = solver or (request.client.host if request.client else "anonymous")
        if not limiter.try_acquire(rate_key):
            retry_after = max(1, int(limiter.retry_after(rate_key)) + 1)
            return JSONResponse(
                status_code=429,
                content={"error": "Rate limit exceeded", "code": "RateLimited"},
                headers={"Retry-After": str(retry_after)},
            )

        started = time.monotonic()
        try:
            signed = attestor.attest(
                body.presentation,
                body.intent_hash,
                body.expected_amount_cents,
                body.expected_beneficiary,
            )
        except AttestationError as e:
            result = AuditResult.REJECTED if e.http_status == 400 else AuditResult.ERROR
            audit.record(
                solver_address=solver,
                intent_hash=body.intent_hash,
                result=result,
                duration_ms=int((time.monotonic() - started) * 1000),
                error_code=e.kind,
            )
            logger.warning("Attestation refused", extra=e.to_log_context())
            return JSONResponse(status_code=e.http_status, content=e.to_response())
        except Exception:
            logger.exception("Attestation failed unexpectedly", extra={"intent_hash": body.intent_hash})
            audit.record(
                solver_address=solver,
                intent_hash=body.intent_hash,
                result=AuditResult.ERROR,
                duration_ms=int((time.monotonic() - started) * 1000),
                error_code="Internal",
            )
            return JSONResponse(
                status_code=500, content={"error": "Internal error", "code": "Internal", "stage": "signing"}
            )

        audit.record(
            solver_address=solver,
            intent_hash=body.intent_hash,
            result=AuditResult.SUCCESS,
            duration_ms=int((time.monotonic() - started) * 1000),
            payment_id=signed.payment.transaction_id,
            amount_cents=signed.payment.amount_cents,
        )
        return {
            "success": True,
            "signature": "0x" + signed.signature.hex(),
            "digest": "0x" + signed.digest.hex(),
            "data_hash": "0x" + signed.attestation.data_hash.hex(),
            "payment": signed.payment.to_dict(),
        }

    return app


def create_app_from_settings(settings: AttestorSettings) -> FastAPI:
    """Entry point used by the CLI."""
    attestor = create_attestor(settings)
    return create_app(
        attestor,
        api_keys=settings.api_key_map(),
        rate_limit_per_minute=settings.rate_limit_per_minute,
        audit_log=AuditLog(settings.audit_log_path),
    )
