"""Services - orchestration, pricing, reconciliation and health."""

from offramp_solver.services.health import HealthStatus
from offramp_solver.services.metrics import SolverMetrics
from offramp_solver.services.pricing import PricingService

__all__ = [
    "HealthStatus",
    "SolverMetrics",
    "PricingService",
]
