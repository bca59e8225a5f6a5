"""OffRamp contract client over web3's async API."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Iterable

from eth_account import Account
from eth_utils import function_signature_to_4byte_selector, to_checksum_address
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)
from web3 import AsyncHTTPProvider, AsyncWeb3
from web3.exceptions import ContractLogicError, TimeExhausted, TransactionNotFound

from offramp_solver.attestation.nullifiers import PAYMENT_VERIFIER_ABI
from offramp_solver.attestation.signer import SignedAttestation
from offramp_solver.data.models import (
    ChainEvent,
    IntentCreated,
    OnChainIntent,
    OnChainQuote,
    QuoteSelected,
    Route,
    WindowConstants,
    intent_id_bytes,
    normalize_intent_id,
)
from offramp_solver.execution.errors import (
    ChainUnavailable,
    ClaimReverted,
    ClaimTimeout,
    RevertKind,
)

logger = logging.getLogger(__name__)

_ATTESTATION_COMPONENTS = [
    {"name": "intentHash", "type": "bytes32"},
    {"name": "amount", "type": "uint256"},
    {"name": "timestamp", "type": "uint256"},
    {"name": "paymentId", "type": "string"},
    {"name": "dataHash", "type": "bytes32"},
]


def _view(name: str, inputs: list[dict], outputs: list[dict]) -> dict:
    return {"type": "function", "name": name, "inputs": inputs, "outputs": outputs, "stateMutability": "view"}


OFFRAMP_ABI: list[dict[str, Any]] = [
    {
        "type": "event",
        "name": "IntentCreated",
        "anonymous": False,
        "inputs": [
            {"name": "intentId", "type": "bytes32", "indexed": True},
            {"name": "depositor", "type": "address", "indexed": True},
            {"name": "usdcAmount", "type": "uint256", "indexed": False},
            {"name": "currency", "type": "uint8", "indexed": False},
        ],
    },
    {
        "type": "event",
        "name": "QuoteSelected",
        "anonymous": False,
        "inputs": [
            {"name": "intentId", "type": "bytes32", "indexed": True},
            {"name": "solver", "type": "address", "indexed": True},
            {"name": "rtpn", "type": "uint8", "indexed": False},
            {"name": "fiatAmount", "type": "uint256", "indexed": False},
            {"name": "receivingInfo", "type": "string", "indexed": False},
            {"name": "recipientName", "type": "string", "indexed": False},
        ],
    },
    _view(
        "solverSupportsRtpn",
        [{"name": "solver", "type": "address"}, {"name": "rtpn", "type": "uint8"}],
        [{"name": "", "type": "bool"}],
    ),
    _view(
        "getIntent",
        [{"name": "intentId", "type": "bytes32"}],
        [
            {
                "name": "",
                "type": "tuple",
                "components": [
                    {"name": "depositor", "type": "address"},
                    {"name": "usdcAmount", "type": "uint256"},
                    {"name": "currency", "type": "uint8"},
                    {"name": "status", "type": "uint8"},
                    {"name": "createdAt", "type": "uint64"},
                    {"name": "committedAt", "type": "uint64"},
                    {"name": "selectedSolver", "type": "address"},
                    {"name": "selectedRtpn", "type": "uint8"},
                    {"name": "selectedFiatAmount", "type": "uint256"},
                    {"name": "receivingInfo", "type": "string"},
                    {"name": "recipientName", "type": "string"},
                    {"name": "transferId", "type": "bytes32"},
                ],
            }
        ],
    ),
    _view(
        "getQuote",
        [
            {"name": "intentId", "type": "bytes32"},
            {"name": "solver", "type": "address"},
            {"name": "rtpn", "type": "uint8"},
        ],
        [
            {
                "name": "",
                "type": "tuple",
                "components": [
                    {"name": "solver", "type": "address"},
                    {"name": "rtpn", "type": "uint8"},
                    {"name": "fiatAmount", "type": "uint256"},
                    {"name": "fee", "type": "uint256"},
                    {"name": "estimatedTime", "type": "uint64"},
                    {"name": "expiresAt", "type": "uint64"},
                    {"name": "selected", "type": "bool"},
                ],
            }
        ],
    ),
    _view("canFulfill", [{"name": "intentId", "type": "bytes32"}], [{"name": "", "type": "bool"}]),
    _view("QUOTE_WINDOW", [], [{"name": "", "type": "uint64"}]),
    _view("SELECTION_WINDOW", [], [{"name": "", "type": "uint64"}]),
    _view("FULFILLMENT_WINDOW", [], [{"name": "", "type": "uint64"}]),
    {
        "type": "function",
        "name": "submitQuote",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "intentId", "type": "bytes32"},
            {"name": "rtpn", "type": "uint8"},
            {"name": "fiatAmount", "type": "uint256"},
            {"name": "fee", "type": "uint256"},
            {"name": "estimatedTime", "type": "uint64"},
        ],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "fulfillIntentWithProof",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "intentId", "type": "bytes32"},
            {"name": "attestation", "type": "tuple", "components": _ATTESTATION_COMPONENTS},
            {"name": "signature", "type": "bytes"},
        ],
        "outputs": [],
    },
]

# Custom errors the OffRamp and PaymentVerifier contracts revert with.
_REVERT_ERRORS: dict[str, RevertKind] = {
    "NullifierAlreadyUsed()": RevertKind.NULLIFIER_USED,
    "PaymentAlreadyClaimed()": RevertKind.NULLIFIER_USED,
    "FulfillmentWindowExpired()": RevertKind.WINDOW_EXPIRED,
    "IntentExpired()": RevertKind.WINDOW_EXPIRED,
    "IntentNotCommitted()": RevertKind.NOT_COMMITTED,
    "InvalidIntentStatus()": RevertKind.NOT_COMMITTED,
    "NotSelectedSolver()": RevertKind.NOT_COMMITTED,
    "InvalidSignature()": RevertKind.INVALID_ATTESTATION,
    "UnauthorizedWitness()": RevertKind.INVALID_ATTESTATION,
    "AmountMismatch()": RevertKind.INVALID_ATTESTATION,
    "IntentHashMismatch()": RevertKind.INVALID_ATTESTATION,
}
REVERT_SELECTORS: dict[str, RevertKind] = {
    "0x" + function_signature_to_4byte_selector(sig).hex(): kind for sig, kind in _REVERT_ERRORS.items()
}
# Checked in order against the lowercased revert message.
_REVERT_KEYWORDS: tuple[tuple[tuple[str, ...], RevertKind], ...] = (
    (("nullifier", "already used", "already claimed"), RevertKind.NULLIFIER_USED),
    (("expired", "window"), RevertKind.WINDOW_EXPIRED),
    (("not committed", "invalid status", "not selected"), RevertKind.NOT_COMMITTED),
    (("signature", "witness", "attestation", "amount mismatch"), RevertKind.INVALID_ATTESTATION),
)


def classify_revert(message: str | None, data: str | None = None) -> RevertKind:
    """Map a revert (custom-error data or reason text) to a RevertKind."""
    if data:
        selector = data[:10].lower() if data.startswith("0x") else "0x" + data[:8].lower()
        kind = REVERT_SELECTORS.get(selector)
        if kind is not None:
            return kind
    text = (message or "").lower()
    for keywords, kind in _REVERT_KEYWORDS:
        if any(k in text for k in keywords):
            return kind
    return RevertKind.UNKNOWN


def _revert_data(error: ContractLogicError) -> str | None:
    data = getattr(error, "data", None)
    if isinstance(data, (bytes, bytearray)):
        return "0x" + bytes(data).hex()
    return data if isinstance(data, str) else None


def _hex(value: Any) -> str:
    if isinstance(value, (bytes, bytearray)):
        text = bytes(value).hex()
    elif hasattr(value, "hex"):
        text = value.hex()
    else:
        text = str(value)
    return text if text.startswith("0x") else "0x" + text


@dataclass(frozen=True)
class TxReceipt:
    """The parts of a mined receipt the solver cares about."""

    tx_hash: str
    success: bool
    block_number: int


class ChainClient:
    """Reads and writes the OffRamp contract for one solver account."""

    def __init__(
        self,
        rpc_url: str,
        offramp_address: str,
        chain_id: int,
        solver_private_key: str | None = None,
        verifier_address: str | None = None,
        confirmation_timeout: float = 120.0,
        w3: AsyncWeb3 | None = None,
    ) -> None:
        """Initialize chain client.

        Args:
            rpc_url: HTTP JSON-RPC endpoint.
            offramp_address: OffRamp contract address.
            chain_id: Expected chain id, used when signing.
            solver_private_key: Solver key; read-only client when None.
            verifier_address: PaymentVerifier address, for witness checks.
            confirmation_timeout: Wait-for-receipt budget in seconds.
            w3: Injected web3 instance (tests).
        """
        self.w3 = w3 or AsyncWeb3(AsyncHTTPProvider(rpc_url))
        self.chain_id = chain_id
        self.offramp_address = to_checksum_address(offramp_address)
        self.contract = self.w3.eth.contract(address=self.offramp_address, abi=OFFRAMP_ABI)
        self.verifier = (
            self.w3.eth.contract(address=to_checksum_address(verifier_address), abi=PAYMENT_VERIFIER_ABI)
            if verifier_address
            else None
        )
        self.account = Account.from_key(solver_private_key) if solver_private_key else None
        self.confirmation_timeout = confirmation_timeout
        # One nonce sequence per account; pipelines run concurrently.
        self._send_lock = asyncio.Lock()
        self._block_ts: dict[int, datetime] = {}

    @property
    def solver_address(self) -> str | None:
        return self.account.address if self.account else None

    def _require_account(self) -> Any:
        if self.account is None:
            raise RuntimeError("Chain client has no solver key configured")
        return self.account

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential_jitter(multiplier=0.5, max=5),
        retry=retry_if_exception_type(ChainUnavailable),
        reraise=True,
    )
    async def _read(self, what: str, call: Callable[[], Awaitable[Any]]) -> Any:
        """Run an RPC read, retrying transport failures."""
        try:
            return await call()
        except ContractLogicError:
            raise
        except Exception as e:
            logger.warning(f"RPC read {what} failed: {e}")
            raise ChainUnavailable(f"RPC read {what} failed: {e}") from e

    async def get_block_number(self) -> int:
        return await self._read("block_number", lambda: self.w3.eth.block_number)

    async def get_block_timestamp(self, block_number: int) -> datetime:
        cached = self._block_ts.get(block_number)
        if cached is not None:
            return cached
        block = await self._read("get_block", lambda: self.w3.eth.get_block(block_number))
        ts = datetime.fromtimestamp(int(block["timestamp"]), tz=timezone.utc).replace(tzinfo=None)
        if len(self._block_ts) > 4096:
            self._block_ts.clear()
        self._block_ts[block_number] = ts
        return ts

    async def get_intent(self, intent_id: str) -> OnChainIntent:
        raw = await self._read(
            "getIntent", lambda: self.contract.functions.getIntent(intent_id_bytes(intent_id)).call()
        )
        return OnChainIntent.from_tuple(intent_id, tuple(raw))

    async def get_quote(self, intent_id: str, solver: str, route: Route) -> OnChainQuote:
        raw = await self._read(
            "getQuote",
            lambda: self.contract.functions.getQuote(
                intent_id_bytes(intent_id), to_checksum_address(solver), int(route)
            ).call(),
        )
        solver_addr, rtpn, fiat_amount, fee, estimated_time, expires_at, selected = raw
        return OnChainQuote(
            solver=solver_addr,
            route=Route(int(rtpn)),
            fiat_amount=int(fiat_amount),
            fee=int(fee),
            estimated_time=int(estimated_time),
            expires_at=int(expires_at),
            selected=bool(selected),
        )

    async def solver_supports_route(self, route: Route, solver: str | None = None) -> bool:
        address = to_checksum_address(solver or self._require_account().address)
        return bool(
            await self._read(
                "solverSupportsRtpn",
                lambda: self.contract.functions.solverSupportsRtpn(address, int(route)).call(),
            )
        )

    async def can_fulfill(self, intent_id: str) -> bool:
        return bool(
            await self._read(
                "canFulfill", lambda: self.contract.functions.canFulfill(intent_id_bytes(intent_id)).call()
            )
        )

    async def get_window_constants(self) -> WindowConstants:
        fns = self.contract.functions
        quote = await self._read("QUOTE_WINDOW", lambda: fns.QUOTE_WINDOW().call())
        selection = await self._read("SELECTION_WINDOW", lambda: fns.SELECTION_WINDOW().call())
        fulfillment = await self._read("FULFILLMENT_WINDOW", lambda: fns.FULFILLMENT_WINDOW().call())
        return WindowConstants(
            quote_window=int(quote), selection_window=int(selection), fulfillment_window=int(fulfillment)
        )

    async def is_witness_authorized(self, witness: str) -> bool:
        if self.verifier is None:
            raise RuntimeError("No PaymentVerifier address configured")
        address = to_checksum_address(witness)
        return bool(
            await self._read(
                "authorizedWitnesses",
                lambda: self.verifier.functions.authorizedWitnesses(address).call(),
            )
        )

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def decode_log(self, log: Any) -> ChainEvent | None:
        """Convert a decoded contract log into an event model."""
        args = log["args"]
        common = {
            "intent_id": args["intentId"],
            "block_number": int(log["blockNumber"]),
            "log_index": int(log.get("logIndex", 0) or 0),
            "tx_hash": _hex(log["transactionHash"]) if log.get("transactionHash") is not None else None,
        }
        if log["event"] == "IntentCreated":
            return IntentCreated(
                depositor=args["depositor"],
                usdc_amount=int(args["usdcAmount"]),
                currency=int(args["currency"]),
                **common,
            )
        if log["event"] == "QuoteSelected":
            return QuoteSelected(
                solver=args["solver"],
                route=int(args["rtpn"]),
                fiat_amount=int(args["fiatAmount"]),
                receiving_info=args["receivingInfo"],
                recipient_name=args["recipientName"],
                **common,
            )
        return None

    async def _decode_all(self, logs: Iterable[Any]) -> list[ChainEvent]:
        events: list[ChainEvent] = []
        for log in logs:
            try:
                event = self.decode_log(log)
            except (KeyError, ValueError) as e:
                logger.warning(f"Skipping undecodable log: {e}", extra={"log": str(log)[:200]})
                continue
            if event is None:
                continue
            if isinstance(event, IntentCreated):
                event = event.model_copy(
                    update={"block_timestamp": await self.get_block_timestamp(event.block_number)}
                )
            events.append(event)
        events.sort(key=lambda e: (e.block_number, e.log_index))
        return events

    async def fetch_events(self, from_block: int, to_block: int) -> list[ChainEvent]:
        """IntentCreated and QuoteSelected logs in [from_block, to_block], in chain order."""
        events = self.contract.events
        created = await self._read(
            "get_logs IntentCreated",
            lambda: events.IntentCreated.get_logs(from_block=from_block, to_block=to_block),
        )
        selected = await self._read(
            "get_logs QuoteSelected",
            lambda: events.QuoteSelected.get_logs(from_block=from_block, to_block=to_block),
        )
        return await self._decode_all([*created, *selected])

    async def create_event_filters(self, from_block: int | str = "latest") -> list[Any]:
        events = self.contract.events
        return [
            await self._read("create_filter", lambda: events.IntentCreated.create_filter(from_block=from_block)),
            await self._read("create_filter", lambda: events.QuoteSelected.create_filter(from_block=from_block)),
        ]

    async def poll_event_filters(self, filters: list[Any]) -> list[ChainEvent]:
        logs: list[Any] = []
        for event_filter in filters:
            logs.extend(await self._read("get_new_entries", event_filter.get_new_entries))
        return await self._decode_all(logs)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def _send(
        self, fn: Any, label: str, intent_id: str, on_signed: Callable[[str], None] | None = None
    ) -> str:
        """Build, sign and broadcast a contract call. Returns the tx hash.

        `on_signed` receives the hash after signing and before broadcast.

        Raises:
            ClaimReverted: Gas estimation reverted.
            ChainUnavailable: Transport failure before broadcast.
        """
        account = self._require_account()
        async with self._send_lock:
            try:
                nonce = await self.w3.eth.get_transaction_count(account.address, "pending")
                tx = await fn.build_transaction(
                    {"from": account.address, "nonce": nonce, "chainId": self.chain_id}
                )
            except ContractLogicError as e:
                kind = classify_revert(str(e), _revert_data(e))
                raise ClaimReverted(
                    f"{label} reverted at estimation: {e}", kind=kind, intent_id=intent_id
                ) from e
            except Exception as e:
                raise ChainUnavailable(f"{label} could not be built: {e}", intent_id=intent_id) from e

            signed = account.sign_transaction(tx)
            tx_hex = _hex(signed.hash)
            if on_signed is not None:
                on_signed(tx_hex)
            try:
                await self.w3.eth.send_raw_transaction(signed.raw_transaction)
            except Exception as e:
                raise ChainUnavailable(f"{label} broadcast failed: {e}", intent_id=intent_id) from e

        logger.info(f"{label} transaction sent", extra={"intent_id": intent_id, "tx_hash": tx_hex})
        return tx_hex

    async def _confirm(self, tx_hash: str, label: str, intent_id: str) -> TxReceipt:
        try:
            receipt = await self.w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=self.confirmation_timeout
            )
        except TimeExhausted as e:
            raise ClaimTimeout(
                f"{label} not confirmed within {self.confirmation_timeout:.0f}s",
                tx_hash=tx_hash,
                intent_id=intent_id,
            ) from e
        result = TxReceipt(
            tx_hash=tx_hash, success=int(receipt["status"]) == 1, block_number=int(receipt["blockNumber"])
        )
        if not result.success:
            kind = await self.replay_revert(tx_hash, result.block_number)
            raise ClaimReverted(
                f"{label} reverted on-chain: {tx_hash}", kind=kind, tx_hash=tx_hash, intent_id=intent_id
            )
        logger.info(
            f"{label} confirmed",
            extra={"intent_id": intent_id, "tx_hash": tx_hash, "block": result.block_number},
        )
        return result

    async def replay_revert(self, tx_hash: str, block_number: int) -> RevertKind:
        """Re-run a reverted transaction as a call to recover its reason."""
        try:
            tx = await self.w3.eth.get_transaction(tx_hash)
            await self.w3.eth.call(
                {"from": tx["from"], "to": tx["to"], "data": tx["input"]}, block_identifier=block_number
            )
        except ContractLogicError as e:
            return classify_revert(str(e), _revert_data(e))
        except Exception as e:
            logger.warning(f"Could not replay reverted tx {tx_hash}: {e}")
        return RevertKind.UNKNOWN

    async def submit_quote(
        self, intent_id: str, route: Route, fiat_amount: int, fee: int, estimated_time: int
    ) -> str:
        """Submit a quote and wait for it to be mined."""
        fn = self.contract.functions.submitQuote(
            intent_id_bytes(intent_id), int(route), int(fiat_amount), int(fee), int(estimated_time)
        )
        tx_hash = await self._send(fn, "Quote", normalize_intent_id(intent_id))
        await self._confirm(tx_hash, "Quote", intent_id)
        return tx_hash

    async def broadcast_claim(
        self,
        intent_id: str,
        signed: SignedAttestation,
        on_signed: Callable[[str], None] | None = None,
    ) -> str:
        """Sign and broadcast `fulfillIntentWithProof` without waiting for it."""
        fn = self.contract.functions.fulfillIntentWithProof(
            intent_id_bytes(intent_id), signed.attestation.as_tuple(), signed.signature
        )
        return await self._send(fn, "Claim", normalize_intent_id(intent_id), on_signed)

    async def confirm_claim(self, intent_id: str, tx_hash: str) -> TxReceipt:
        return await self._confirm(tx_hash, "Claim", intent_id)

    async def submit_claim(self, intent_id: str, signed: SignedAttestation) -> str:
        tx_hash = await self.broadcast_claim(intent_id, signed)
        await self.confirm_claim(intent_id, tx_hash)
        return tx_hash

    async def is_transaction_known(self, tx_hash: str) -> bool:
        """False once the node has neither mined nor kept the transaction."""
        try:
            await self.w3.eth.get_transaction(tx_hash)
        except TransactionNotFound:
            return False
        except Exception as e:
            raise ChainUnavailable(f"get_transaction failed: {e}") from e
        return True

    async def get_claim_receipt(self, tx_hash: str) -> TxReceipt | None:
        """Receipt of a previously broadcast claim, None while unmined or unknown."""
        try:
            receipt = await self.w3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return None
        except Exception as e:
            raise ChainUnavailable(f"get_transaction_receipt failed: {e}") from e
        if receipt is None:
            return None
        return TxReceipt(
            tx_hash=tx_hash, success=int(receipt["status"]) == 1, block_number=int(receipt["blockNumber"])
        )
