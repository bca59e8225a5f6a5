"""Application settings using pydantic-settings."""

import re
from functools import lru_cache
from typing import Literal

from eth_utils import to_checksum_address
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")
_PRIVATE_KEY_RE = re.compile(r"^(0x)?[0-9a-fA-F]{64}$")


def _checksum(v: str | None) -> str | None:
    if v is None or v == "":
        return None
    if not _ADDRESS_RE.match(v):
        raise ValueError(f"Expected a 20-byte hex address, got {v!r}")
    return to_checksum_address(v)


def _private_key(v: str | None) -> str | None:
    if v is None or v == "":
        return None
    if not _PRIVATE_KEY_RE.match(v):
        # Never echo the value back.
        raise ValueError("Private key must be 32 bytes of hex")
    return v if v.startswith("0x") else "0x" + v


class Settings(BaseSettings):
    """Solver configuration with environment variable overrides."""

    model_config = SettingsConfigDict(
        env_prefix="OFFRAMP_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Chain
    rpc_url: str = Field(..., description="HTTP JSON-RPC endpoint")
    ws_rpc_url: str | None = Field(
        default=None, description="Optional websocket endpoint (unused by the HTTP watcher)"
    )
    chain_id: int = Field(default=84532, description="Chain ID (Base Sepolia=84532)")
    offramp_address: str = Field(..., description="OffRamp contract address")
    verifier_address: str | None = Field(
        default=None, description="PaymentVerifier contract address"
    )
    solver_private_key: str | None = Field(
        default=None, description="Solver hot wallet key (quotes and claims)"
    )
    confirmation_timeout_seconds: int = Field(
        default=120, description="Wait-for-receipt timeout for submitted transactions"
    )

    # Loop
    poll_interval_seconds: int = Field(default=5, description="Orchestrator poll interval")
    lookback_blocks: int = Field(
        default=1000, description="Blocks to scan back on a fresh database"
    )
    scan_chunk_blocks: int = Field(default=10, description="Blocks per eth_getLogs request")
    kill_switch_on_errors: int = Field(
        default=10, description="Stop the loop after this many consecutive cycle errors"
    )
    dry_run: bool = Field(
        default=False,
        description="Record quotes locally but never submit on-chain or move fiat",
    )

    # Quoting
    min_usdc_amount: int = Field(default=1_000_000, description="Minimum intent size (1 USDC)")
    max_usdc_amount: int = Field(
        default=10_000_000_000, description="Maximum intent size (10,000 USDC)"
    )
    fee_bps: int = Field(default=50, description="Solver fee in basis points of the source amount")
    quote_validity_seconds: int = Field(default=300, description="Quote expiry horizon")
    fx_rates: dict[str, float] = Field(
        default_factory=lambda: {"EUR": 0.92},
        description="Static fiat units per USDC, keyed by currency code",
    )
    fx_rate_url: str | None = Field(
        default=None, description="Optional price endpoint used to refresh fx_rates"
    )

    # Qonto rail
    qonto_base_url: str = Field(
        default="https://thirdparty.qonto.com", description="Qonto API base URL"
    )
    qonto_api_login: str | None = Field(default=None, description="Qonto API login")
    qonto_api_secret: str | None = Field(default=None, description="Qonto API secret key")
    qonto_bank_account_id: str | None = Field(default=None, description="Debited account id")
    qonto_staging_token: str | None = Field(default=None, description="Sandbox staging token")
    qonto_requests_per_second: float = Field(
        default=5.0, gt=0, description="Sustained Qonto API call rate"
    )

    # Proof toolchain
    prover_commit_command: str = Field(
        default="cargo run --release --example qonto_prove_transfer",
        description="Commit phase command line (MPC-TLS session)",
    )
    prover_present_command: str = Field(
        default="cargo run --release --example qonto_present_transfer",
        description="Disclosure phase command line (builds the presentation)",
    )
    prover_workdir: str = Field(default="./tlsn", description="Working directory for the prover")
    prover_output_file: str = Field(
        default="qonto_transfer.presentation.tlsn",
        description="Presentation file written by the disclosure phase, relative to workdir",
    )
    proof_storage_path: str = Field(
        default="./proofs", description="Where captured presentations are kept"
    )
    prover_timeout_seconds: float = Field(
        default=180.0, description="Overall wall-clock budget for both prover phases"
    )
    prover_commit_share: float = Field(
        default=0.6, description="Fraction of the budget given to the commit phase"
    )

    # Attestation service
    attestation_url: str | None = Field(
        default=None, description="Attestation service base URL"
    )
    attestation_api_key: str | None = Field(
        default=None, description="API key sent as x-solver-api-key"
    )
    attestation_timeout_seconds: float = Field(
        default=60.0, description="Attestation request timeout"
    )

    # Database
    db_url: str = Field(
        default="sqlite:///./offramp_solver.db", description="Database connection URL"
    )

    # API
    api_host: str = Field(default="127.0.0.1", description="Status API host")
    api_port: int = Field(default=8000, description="Status API port")

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO", description="Logging level"
    )
    log_format: Literal["json", "console"] = Field(default="json", description="Log output format")

    @field_validator("offramp_address", "verifier_address")
    @classmethod
    def validate_address(cls, v: str | None) -> str | None:
        """Normalise contract addresses to checksum form."""
        return _checksum(v)

    @field_validator("solver_private_key")
    @classmethod
    def validate_private_key(cls, v: str | None) -> str | None:
        """Validate key shape without revealing it."""
        return _private_key(v)

    @field_validator("poll_interval_seconds")
    @classmethod
    def validate_poll_interval(cls, v: int) -> int:
        """Validate poll interval is reasonable."""
        if v < 1:
            raise ValueError(f"Poll interval must be at least 1 second, got {v}")
        return v

    @field_validator("fee_bps")
    @classmethod
    def validate_fee_bps(cls, v: int) -> int:
        """Validate fee is within 0..10000 bps."""
        if not 0 <= v <= 10_000:
            raise ValueError(f"fee_bps must be between 0 and 10000, got {v}")
        return v

    @field_validator("prover_commit_share")
    @classmethod
    def validate_share(cls, v: float) -> float:
        """Validate the commit phase share leaves time for disclosure."""
        if not 0 < v < 1:
            raise ValueError(f"prover_commit_share must be in (0, 1), got {v}")
        return v

    @field_validator("fx_rates")
    @classmethod
    def validate_fx_rates(cls, v: dict[str, float]) -> dict[str, float]:
        """Upper-case currency codes and reject non-positive rates."""
        out = {}
        for code, rate in v.items():
            if rate <= 0:
                raise ValueError(f"fx rate for {code} must be positive, got {rate}")
            out[code.upper()] = rate
        return out


class AttestorSettings(BaseSettings):
    """Attestation service configuration (witness side)."""

    model_config = SettingsConfigDict(
        env_prefix="ATTESTOR_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    witness_private_key: str | None = Field(
        default=None, description="Witness signing key (required to start)"
    )
    chain_id: int = Field(default=84532, description="Chain ID in the EIP-712 domain")
    verifier_contract: str = Field(..., description="PaymentVerifier address (EIP-712 domain)")
    rpc_url: str | None = Field(
        default=None, description="Enables witness authorization and nullifier checks on-chain"
    )
    allowed_servers: str = Field(
        default="thirdparty.qonto.com",
        description="Comma separated TLS server names accepted in presentations",
    )
    completed_statuses: str = Field(
        default="completed", description="Comma separated payment statuses treated as completed"
    )
    solver_api_keys: str = Field(
        default="", description="Comma separated key:0xaddress pairs; empty disables auth"
    )
    rate_limit_per_minute: int = Field(default=100, description="Requests per solver per minute")
    audit_log_path: str | None = Field(default=None, description="JSONL audit log file")
    verifier_command: str = Field(
        default="tlsn-verify --json",
        description="Proof toolchain verification primitive (reads the artifact on stdin)",
    )
    verifier_timeout_seconds: float = Field(default=30.0, description="Verification timeout")
    max_presentation_bytes: int = Field(
        default=2_000_000, description="Largest accepted presentation artifact"
    )
    host: str = Field(default="0.0.0.0", description="Bind host")
    port: int = Field(default=4001, description="Bind port")

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO", description="Logging level"
    )
    log_format: Literal["json", "console"] = Field(default="json", description="Log output format")

    @field_validator("verifier_contract")
    @classmethod
    def validate_contract(cls, v: str) -> str:
        """Normalise the verifying contract address."""
        return _checksum(v)

    @field_validator("witness_private_key")
    @classmethod
    def validate_witness_key(cls, v: str | None) -> str | None:
        """Validate key shape without revealing it."""
        return _private_key(v)

    def allowed_server_list(self) -> list[str]:
        return [s.strip().lower() for s in self.allowed_servers.split(",") if s.strip()]

    def completed_status_list(self) -> list[str]:
        return [s.strip().lower() for s in self.completed_statuses.split(",") if s.strip()]

    def api_key_map(self) -> dict[str, str]:
        """Parse `key:0xaddress` pairs into {api_key: solver_address}."""
        keys: dict[str, str] = {}
        for pair in self.solver_api_keys.split(","):
            pair = pair.strip()
            if not pair:
                continue
            key, sep, address = pair.partition(":")
            if not sep or not key or not _ADDRESS_RE.match(address.strip()):
                raise ValueError("solver_api_keys entries must look like key:0xaddress")
            keys[key.strip()] = address.strip().lower()
        return keys


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


@lru_cache
def get_attestor_settings() -> AttestorSettings:
    """Get cached attestation service settings."""
    return AttestorSettings()
