"""Payment rail capability.

A rail moves fiat over one family of routes. The pipeline only needs
`execute_transfer` and `get_transfer_status`; quoting asks the rail for its
limits and settlement time.
"""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum

from offramp_solver.data.models import Currency, Route

_IBAN_RE = re.compile(r"^[A-Z]{2}[0-9]{2}[A-Z0-9]{11,30}$")
_PIX_PATTERNS = (
    re.compile(r"^\d{11}$"),  # CPF
    re.compile(r"^\d{14}$"),  # CNPJ
    re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$"),  # email
    re.compile(r"^\+55\d{10,11}$"),  # phone
    re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.I),  # random key
)
_UPI_RE = re.compile(r"^[\w.-]+@[\w.-]+$")


class TransferStatus(str, Enum):
    """Normalised rail-side transfer status."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class Beneficiary:
    """Who receives the fiat, as committed on-chain."""

    receiving_info: str
    recipient_name: str
    # Idempotency key / payment reference (the intent id).
    reference: str


@dataclass(frozen=True)
class TransferResult:
    """A transfer the rail accepted. Fiat is considered sent."""

    transfer_id: str
    amount_sent: int
    status: TransferStatus = TransferStatus.COMPLETED


def validate_iban(iban: str) -> bool:
    """Shape check plus ISO 13616 mod-97 checksum."""
    cleaned = re.sub(r"\s", "", iban).upper()
    if not _IBAN_RE.match(cleaned):
        return False
    rearranged = cleaned[4:] + cleaned[:4]
    numeric = "".join(str(int(ch, 36)) for ch in rearranged)
    return int(numeric) % 97 == 1


def validate_pix_key(key: str) -> bool:
    return any(p.match(key) for p in _PIX_PATTERNS)


def validate_uk_account(info: str) -> bool:
    """`SORTCODE|ACCOUNT`, sort code may contain dashes."""
    sort_code, _, account = info.partition("|")
    return bool(re.fullmatch(r"\d{6}", sort_code.replace("-", ""))) and bool(
        re.fullmatch(r"\d{8}", account)
    )


def validate_us_account(info: str) -> bool:
    """`ROUTING|ACCOUNT`: 9-digit ABA routing number, 4-17 digit account."""
    routing, _, account = info.partition("|")
    return bool(re.fullmatch(r"\d{9}", routing)) and bool(re.fullmatch(r"\d{4,17}", account))


def validate_receiving_info(route: Route, info: str) -> bool:
    """Check receiving info is well-formed for `route`."""
    if route in (Route.SEPA_INSTANT, Route.SEPA_STANDARD):
        return validate_iban(info)
    if route in (Route.FPS, Route.BACS):
        return validate_uk_account(info)
    if route in (Route.PIX, Route.TED):
        return validate_pix_key(info)
    if route in (Route.UPI, Route.IMPS):
        return bool(_UPI_RE.match(info))
    if route in (Route.FEDNOW, Route.ACH):
        return validate_us_account(info)
    return bool(info)


class PaymentRail(ABC):
    """A banking integration serving a fixed set of routes."""

    rail_id: str
    name: str
    routes: tuple[Route, ...]
    currencies: tuple[Currency, ...]
    estimated_time_seconds: int = 60
    # Largest single transfer in fiat cents, None for unlimited.
    max_fiat_amount: int | None = None

    def supports_route(self, route: Route) -> bool:
        return route in self.routes

    def supports_currency(self, currency: Currency) -> bool:
        return currency in self.currencies

    def validate_receiving_info(self, route: Route, info: str) -> bool:
        return validate_receiving_info(route, info)

    @abstractmethod
    async def execute_transfer(
        self, route: Route, amount_cents: int, beneficiary: Beneficiary
    ) -> TransferResult:
        """Send `amount_cents` to `beneficiary`.

        Raises:
            TransferFailed: the money did not move. `retryable` tells whether
                trying again can help.
        """

    @abstractmethod
    async def get_transfer_status(self, transfer_id: str) -> TransferStatus:
        """Current status of a transfer this rail created."""

    async def health_check(self) -> bool:
        return True

    async def close(self) -> None:
        return None
