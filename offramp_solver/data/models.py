"""On-chain enums and pydantic models for contract reads and events."""

from datetime import datetime, timezone
from enum import IntEnum
from typing import Union

from pydantic import BaseModel, Field, field_validator


class Currency(IntEnum):
    """Target fiat currencies (uint8 on-chain)."""

    EUR = 0
    GBP = 1
    USD = 2
    BRL = 3
    INR = 4


class Route(IntEnum):
    """Real-time payment networks (RTPN, uint8 on-chain)."""

    SEPA_INSTANT = 0
    SEPA_STANDARD = 1
    FPS = 2
    BACS = 3
    PIX = 4
    TED = 5
    UPI = 6
    IMPS = 7
    FEDNOW = 8
    ACH = 9


ROUTE_CURRENCY: dict[Route, Currency] = {
    Route.SEPA_INSTANT: Currency.EUR,
    Route.SEPA_STANDARD: Currency.EUR,
    Route.FPS: Currency.GBP,
    Route.BACS: Currency.GBP,
    Route.PIX: Currency.BRL,
    Route.TED: Currency.BRL,
    Route.UPI: Currency.INR,
    Route.IMPS: Currency.INR,
    Route.FEDNOW: Currency.USD,
    Route.ACH: Currency.USD,
}


def routes_for_currency(currency: Currency) -> list[Route]:
    """Routes that settle in `currency`, in enum order."""
    return [r for r, c in ROUTE_CURRENCY.items() if c == currency]


class ChainIntentStatus(IntEnum):
    """Intent status as stored by the OffRamp contract."""

    NONE = 0
    PENDING_QUOTE = 1
    COMMITTED = 2
    FULFILLED = 3
    CANCELLED = 4
    EXPIRED = 5


def normalize_intent_id(value: Union[bytes, str]) -> str:
    """Return an intent id as lowercase 0x-prefixed 32-byte hex."""
    if isinstance(value, (bytes, bytearray)):
        if len(value) != 32:
            raise ValueError(f"intent id must be 32 bytes, got {len(value)}")
        return "0x" + bytes(value).hex()
    text = value.lower()
    if not text.startswith("0x"):
        text = "0x" + text
    if len(text) != 66:
        raise ValueError(f"intent id must be 32 bytes of hex, got {value!r}")
    int(text, 16)
    return text


def intent_id_bytes(intent_id: str) -> bytes:
    return bytes.fromhex(normalize_intent_id(intent_id)[2:])


class _EventBase(BaseModel):
    intent_id: str
    block_number: int
    log_index: int = 0
    tx_hash: str | None = None

    @field_validator("intent_id", mode="before")
    @classmethod
    def _normalize_id(cls, v: Union[bytes, str]) -> str:
        return normalize_intent_id(v)


class IntentCreated(_EventBase):
    """`IntentCreated(bytes32 indexed intentId, address indexed depositor, uint256 usdcAmount, uint8 currency)`."""

    depositor: str
    usdc_amount: int
    currency: Currency
    block_timestamp: datetime | None = None


class QuoteSelected(_EventBase):
    """`QuoteSelected(bytes32 indexed intentId, address indexed solver, uint8 rtpn, uint256 fiatAmount, string receivingInfo, string recipientName)`."""

    solver: str
    route: Route
    fiat_amount: int
    receiving_info: str = Field(max_length=512)
    recipient_name: str = Field(max_length=256)


ChainEvent = Union[IntentCreated, QuoteSelected]


class OnChainIntent(BaseModel):
    """Result of `getIntent(bytes32)`."""

    intent_id: str
    depositor: str
    usdc_amount: int
    currency: Currency
    status: ChainIntentStatus
    created_at: datetime
    committed_at: datetime | None = None
    selected_solver: str | None = None
    selected_route: Route | None = None
    selected_fiat_amount: int | None = None
    receiving_info: str = ""
    recipient_name: str = ""
    transfer_id: str | None = None

    @classmethod
    def from_tuple(cls, intent_id: str, raw: tuple) -> "OnChainIntent":
        """Build from the ABI-decoded getIntent tuple."""
        (
            depositor,
            usdc_amount,
            currency,
            status,
            created_at,
            committed_at,
            selected_solver,
            selected_rtpn,
            selected_fiat_amount,
            receiving_info,
            recipient_name,
            transfer_id,
        ) = raw
        committed = int(committed_at) > 0
        solver = selected_solver if committed and int(selected_solver, 16) != 0 else None
        transfer_hex = (
            "0x" + bytes(transfer_id).hex()
            if isinstance(transfer_id, (bytes, bytearray))
            else str(transfer_id)
        )
        return cls(
            intent_id=normalize_intent_id(intent_id),
            depositor=depositor,
            usdc_amount=int(usdc_amount),
            currency=Currency(int(currency)),
            status=ChainIntentStatus(int(status)),
            created_at=datetime.fromtimestamp(int(created_at), tz=timezone.utc).replace(tzinfo=None),
            committed_at=(
                datetime.fromtimestamp(int(committed_at), tz=timezone.utc).replace(tzinfo=None)
                if committed
                else None
            ),
            selected_solver=solver,
            selected_route=Route(int(selected_rtpn)) if committed else None,
            selected_fiat_amount=int(selected_fiat_amount) if committed else None,
            receiving_info=receiving_info,
            recipient_name=recipient_name,
            transfer_id=None if int(transfer_hex, 16) == 0 else transfer_hex,
        )


class OnChainQuote(BaseModel):
    """Result of `getQuote(bytes32,address,uint8)`."""

    solver: str
    route: Route
    fiat_amount: int
    fee: int
    estimated_time: int
    expires_at: int
    selected: bool


class WindowConstants(BaseModel):
    """Contract time windows, in seconds."""

    quote_window: int
    selection_window: int
    fulfillment_window: int
