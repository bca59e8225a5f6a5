"""Static route -> rail registry, built once at startup."""

from __future__ import annotations

import logging
from typing import Iterable

from offramp_solver.data.models import ROUTE_CURRENCY, Currency, Route
from offramp_solver.rails.base import PaymentRail

logger = logging.getLogger(__name__)


class RailRegistry:
    """Immutable mapping of routes to the rail that serves them."""

    def __init__(self, rails: Iterable[PaymentRail]) -> None:
        by_route: dict[Route, PaymentRail] = {}
        for rail in rails:
            for route in rail.routes:
                if ROUTE_CURRENCY[route] not in rail.currencies:
                    raise ValueError(
                        f"Rail {rail.rail_id} lists {route.name} but not its currency "
                        f"{ROUTE_CURRENCY[route].name}"
                    )
                existing = by_route.get(route)
                if existing is not None:
                    raise ValueError(
                        f"Route {route.name} served by both {existing.rail_id} and {rail.rail_id}"
                    )
                by_route[route] = rail
        self._by_route = by_route
        logger.info(
            "Rail registry built",
            extra={"routes": {r.name: p.rail_id for r, p in by_route.items()}},
        )

    def get(self, route: Route) -> PaymentRail | None:
        return self._by_route.get(route)

    def require(self, route: Route) -> PaymentRail:
        rail = self._by_route.get(route)
        if rail is None:
            raise KeyError(f"No rail configured for {route.name}")
        return rail

    def routes_for(self, currency: Currency) -> list[Route]:
        """Configured routes settling in `currency`, in route order."""
        return sorted(r for r in self._by_route if ROUTE_CURRENCY[r] == currency)

    @property
    def routes(self) -> list[Route]:
        return sorted(self._by_route)

    def rails(self) -> list[PaymentRail]:
        seen: dict[str, PaymentRail] = {}
        for rail in self._by_route.values():
            seen.setdefault(rail.rail_id, rail)
        return list(seen.values())

    def __len__(self) -> int:
        return len(self._by_route)
