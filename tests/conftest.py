"""Pytest fixtures and configuration."""

from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import pytest
from eth_account import Account
from eth_utils import keccak
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from offramp_solver.attestation.eip712 import Eip712Domain, PaymentAttestation, sign_attestation
from offramp_solver.attestation.signer import SignedAttestation
from offramp_solver.data.chain_client import TxReceipt
from offramp_solver.data.models import (
    ChainIntentStatus,
    Currency,
    IntentCreated,
    OnChainIntent,
    Route,
    WindowConstants,
)
from offramp_solver.data.storage import Base
from offramp_solver.execution.ledger import LedgerMirror
from offramp_solver.execution.prover import ProofArtifact, ProofRequest
from offramp_solver.rails.base import Beneficiary, PaymentRail, TransferResult, TransferStatus

SOLVER_KEY = "0x" + "11" * 32
SOLVER_ADDRESS = Account.from_key(SOLVER_KEY).address
OTHER_SOLVER = "0x" + "22" * 20
WITNESS_KEY = "0x" + "33" * 32
WITNESS_ADDRESS = Account.from_key(WITNESS_KEY).address
DEPOSITOR = "0x" + "44" * 20
OFFRAMP_ADDRESS = "0x" + "55" * 20
VERIFIER_ADDRESS = "0x" + "66" * 20
CHAIN_ID = 84532
IBAN = "DE89370400440532013000"

DOMAIN = Eip712Domain(chain_id=CHAIN_ID, verifying_contract=VERIFIER_ADDRESS)

USDC_100 = 100_000_000
FIAT_9200 = 9200


def intent_id(n: int) -> str:
    return "0x" + f"{n:064x}"


@pytest.fixture(autouse=True)
def _set_required_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Ensure required env vars exist for Settings in tests."""
    monkeypatch.setenv("OFFRAMP_RPC_URL", "http://127.0.0.1:8545")
    monkeypatch.setenv("OFFRAMP_OFFRAMP_ADDRESS", OFFRAMP_ADDRESS)
    monkeypatch.setenv("OFFRAMP_SOLVER_PRIVATE_KEY", SOLVER_KEY)
    monkeypatch.setenv("OFFRAMP_CHAIN_ID", str(CHAIN_ID))
    monkeypatch.setenv("ATTESTOR_WITNESS_PRIVATE_KEY", WITNESS_KEY)
    monkeypatch.setenv("ATTESTOR_VERIFIER_CONTRACT", VERIFIER_ADDRESS)
    for name in ("OFFRAMP_QONTO_API_LOGIN", "OFFRAMP_QONTO_API_SECRET", "OFFRAMP_QONTO_BANK_ACCOUNT_ID"):
        monkeypatch.delenv(name, raising=False)

    # Clear cached settings between tests
    from offramp_solver.config.settings import get_attestor_settings, get_settings

    get_settings.cache_clear()
    get_attestor_settings.cache_clear()


@pytest.fixture
def db_session() -> Session:
    """Create in-memory test database session (shareable across threads)."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine)
    session = SessionLocal()

    yield session

    session.close()
    Base.metadata.drop_all(engine)


@pytest.fixture
def ledger(db_session) -> LedgerMirror:
    return LedgerMirror(db_session)


def created_event(n: int, usdc_amount: int = USDC_100, currency: Currency = Currency.EUR, block: int = 10) -> IntentCreated:
    return IntentCreated(
        intent_id=intent_id(n),
        depositor=DEPOSITOR,
        usdc_amount=usdc_amount,
        currency=currency,
        block_number=block,
        block_timestamp=datetime.utcnow(),
    )


def commit_intent(
    ledger: LedgerMirror,
    n: int,
    fiat_amount: int = FIAT_9200,
    solver: str = SOLVER_ADDRESS,
    receiving_info: str = IBAN,
) -> str:
    """Create and commit intent `n` to `solver` on SEPA Instant."""
    ledger.upsert_intent_on_create(created_event(n))
    ledger.record_commit(
        intent_id(n),
        solver=solver,
        route=Route.SEPA_INSTANT,
        fiat_amount=fiat_amount,
        receiving_info=receiving_info,
        recipient_name="Alice Martin",
    )
    return intent_id(n)


def make_signed(intent: str, amount: int = FIAT_9200, payment_id: str = "txn_1") -> SignedAttestation:
    attestation = PaymentAttestation(
        intent_hash=intent,
        amount=amount,
        timestamp=1_733_000_000,
        payment_id=payment_id,
        data_hash=keccak(text=f"body-{payment_id}"),
    )
    signature, digest = sign_attestation(Account.from_key(WITNESS_KEY), DOMAIN, attestation)
    return SignedAttestation(signature=signature, digest=digest, attestation=attestation)


def on_chain_intent(n: int, status: ChainIntentStatus, solver: str = SOLVER_ADDRESS) -> OnChainIntent:
    now = int(datetime.now(timezone.utc).timestamp())
    committed = status not in (ChainIntentStatus.NONE, ChainIntentStatus.PENDING_QUOTE)
    return OnChainIntent.from_tuple(
        intent_id(n),
        (
            DEPOSITOR,
            USDC_100,
            int(Currency.EUR),
            int(status),
            now - 600,
            now - 300 if committed else 0,
            solver if committed else "0x" + "00" * 20,
            int(Route.SEPA_INSTANT),
            FIAT_9200 if committed else 0,
            IBAN if committed else "",
            "Alice Martin" if committed else "",
            b"\x00" * 32,
        ),
    )


class _FakeEth:
    def __init__(self, chain_id: int) -> None:
        self._chain_id = chain_id

    @property
    def chain_id(self):
        async def _get() -> int:
            return self._chain_id

        return _get()


class FakeChain:
    """In-memory stand-in for ChainClient."""

    def __init__(self) -> None:
        self.solver_address = SOLVER_ADDRESS
        self.chain_id = CHAIN_ID
        self.w3 = type("W3", (), {"eth": _FakeEth(CHAIN_ID)})()
        self.fulfillable = True
        self.status = ChainIntentStatus.COMMITTED
        self.intent_solver = SOLVER_ADDRESS
        self.supported_routes = {Route.SEPA_INSTANT}
        self.windows = WindowConstants(quote_window=300, selection_window=600, fulfillment_window=1800)
        self.head = 100
        self.events_by_range: dict[tuple[int, int], list] = {}
        self.fetched_ranges: list[tuple[int, int]] = []
        self.filter_events: list = []
        self.filter_error: Exception | None = None
        self.filters_created = 0
        self.quotes: list[tuple] = []
        self.quote_errors: list[Exception] = []
        self.broadcasts: list[str] = []
        self.broadcast_errors: list[Exception] = []
        self.send_errors: list[Exception] = []
        self.crash_after_send: Exception | None = None
        self.confirm_errors: list[Exception] = []
        self.receipts: dict[str, TxReceipt] = {}
        self.known_txs: set[str] = set()
        self._tx_counter = 0

    def _next_tx(self) -> str:
        self._tx_counter += 1
        return "0x" + f"{self._tx_counter:064x}"

    async def can_fulfill(self, intent_id: str) -> bool:
        return self.fulfillable

    async def get_intent(self, intent_id: str) -> OnChainIntent:
        return on_chain_intent(int(intent_id, 16), self.status, solver=self.intent_solver)

    async def get_block_number(self) -> int:
        return self.head

    async def get_block_timestamp(self, block_number: int) -> datetime:
        return datetime(2024, 12, 1, 12, 0, 0)

    async def get_window_constants(self) -> WindowConstants:
        return self.windows

    async def solver_supports_route(self, route: Route, solver: str | None = None) -> bool:
        return route in self.supported_routes

    async def fetch_events(self, from_block: int, to_block: int) -> list:
        self.fetched_ranges.append((from_block, to_block))
        return list(self.events_by_range.get((from_block, to_block), []))

    async def create_event_filters(self) -> list[Any]:
        self.filters_created += 1
        return ["created", "selected"]

    async def poll_event_filters(self, filters: list[Any]) -> list:
        if self.filter_error is not None:
            raise self.filter_error
        events, self.filter_events = self.filter_events, []
        return events

    async def submit_quote(self, intent_id: str, route: Route, fiat_amount: int, fee: int, estimated_time: int) -> str:
        if self.quote_errors:
            raise self.quote_errors.pop(0)
        self.quotes.append((intent_id, route, fiat_amount, fee, estimated_time))
        return self._next_tx()

    async def broadcast_claim(self, intent_id: str, signed: SignedAttestation, on_signed=None) -> str:
        if self.broadcast_errors:
            raise self.broadcast_errors.pop(0)
        tx_hash = self._next_tx()
        if on_signed is not None:
            on_signed(tx_hash)
        if self.send_errors:
            raise self.send_errors.pop(0)
        self.broadcasts.append(tx_hash)
        self.known_txs.add(tx_hash)
        if self.crash_after_send is not None:
            self.receipts[tx_hash] = TxReceipt(tx_hash=tx_hash, success=True, block_number=self.head)
            raise self.crash_after_send
        return tx_hash

    async def confirm_claim(self, intent_id: str, tx_hash: str) -> TxReceipt:
        if self.confirm_errors:
            raise self.confirm_errors.pop(0)
        receipt = TxReceipt(tx_hash=tx_hash, success=True, block_number=self.head)
        self.receipts[tx_hash] = receipt
        return receipt

    async def get_claim_receipt(self, tx_hash: str) -> TxReceipt | None:
        return self.receipts.get(tx_hash)

    async def is_transaction_known(self, tx_hash: str) -> bool:
        return tx_hash in self.known_txs


class FakeRail(PaymentRail):
    """SEPA Instant rail that records transfers instead of sending them."""

    rail_id = "fake"
    name = "Fake"
    routes = (Route.SEPA_INSTANT,)
    currencies = (Currency.EUR,)
    estimated_time_seconds = 10
    max_fiat_amount = 1_000_000

    def __init__(self) -> None:
        self.transfers: list[tuple[Route, int, Beneficiary]] = []
        self.errors: list[Exception] = []
        self.healthy = True

    async def execute_transfer(self, route: Route, amount_cents: int, beneficiary: Beneficiary) -> TransferResult:
        if self.errors:
            raise self.errors.pop(0)
        self.transfers.append((route, amount_cents, beneficiary))
        return TransferResult(transfer_id=f"tr_{len(self.transfers)}", amount_sent=amount_cents)

    async def get_transfer_status(self, transfer_id: str) -> TransferStatus:
        return TransferStatus.COMPLETED

    async def health_check(self) -> bool:
        return self.healthy


class FakeProver:
    """ProofToolchain stand-in with scripted failures."""

    def __init__(self) -> None:
        self.captures: list[ProofRequest] = []
        self.errors: list[Exception] = []
        self.discarded: list[str] = []

    async def capture(self, request: ProofRequest) -> ProofArtifact:
        if self.errors:
            raise self.errors.pop(0)
        self.captures.append(request)
        return ProofArtifact(
            transfer_id=request.transfer_id,
            path=Path(f"/proofs/{request.transfer_id}.presentation.tlsn"),
            data=b"presentation-bytes",
        )

    def discard(self, transfer_id: str) -> None:
        self.discarded.append(transfer_id)


class FakeAttestor:
    """Attestor stand-in that signs whatever it is asked to."""

    def __init__(self) -> None:
        self.calls: list[dict[str, Any]] = []
        self.errors: list[Exception] = []
        self.healthy = True

    async def attest(
        self,
        *,
        presentation: bytes,
        intent_id: str,
        expected_amount_cents: int,
        expected_beneficiary: str | None,
    ) -> SignedAttestation:
        self.calls.append(
            {
                "presentation": presentation,
                "intent_id": intent_id,
                "expected_amount_cents": expected_amount_cents,
                "expected_beneficiary": expected_beneficiary,
            }
        )
        if self.errors:
            raise self.errors.pop(0)
        return make_signed(intent_id, expected_amount_cents, payment_id=f"txn_{len(self.calls)}")

    async def health_check(self) -> dict[str, Any]:
        if not self.healthy:
            raise ConnectionError("attestor down")
        return {"status": "ok", "witness_address": WITNESS_ADDRESS, "chain_id": CHAIN_ID}


@pytest.fixture
def fake_chain() -> FakeChain:
    return FakeChain()


@pytest.fixture
def fake_rail() -> FakeRail:
    return FakeRail()


@pytest.fixture
def fake_prover() -> FakeProver:
    return FakeProver()


@pytest.fixture
def fake_attestor() -> FakeAttestor:
    return FakeAttestor()
