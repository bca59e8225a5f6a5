"""Payment rails - banking integrations keyed by route."""

from offramp_solver.rails.base import (
    Beneficiary,
    PaymentRail,
    TransferResult,
    TransferStatus,
    validate_iban,
    validate_receiving_info,
)
from offramp_solver.rails.qonto import QontoRail
from offramp_solver.rails.registry import RailRegistry

__all__ = [
    "PaymentRail",
    "Beneficiary",
    "TransferResult",
    "TransferStatus",
    "RailRegistry",
    "QontoRail",
    "validate_iban",
    "validate_receiving_info",
]
