"""Event reconciliation.

Two producers feed the same pure `reconcile` function: `BlockScanner` polls
block ranges from the persisted cursor, `EventWatcher` drains log filters
for lower latency. Reconciliation only decides what changed; applying it to
the ledger is the orchestrator's job.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Iterable

from offramp_solver.data.chain_client import ChainClient
from offramp_solver.data.models import ChainEvent, IntentCreated, QuoteSelected

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReconcileBatch:
    """What a set of events means for this solver."""

    creations: list[IntentCreated] = field(default_factory=list)
    commits: list[QuoteSelected] = field(default_factory=list)
    ignored_commits: list[QuoteSelected] = field(default_factory=list)
    highest_block: int | None = None

    @property
    def is_empty(self) -> bool:
        return not (self.creations or self.commits or self.ignored_commits)


def reconcile(events: Iterable[ChainEvent], solver_address: str) -> ReconcileBatch:
    """Split events into creations and commits, in chain order.

    Duplicate events (same intent, same kind) keep their first occurrence,
    so overlapping producer output is harmless.
    """
    solver = solver_address.lower()
    ordered = sorted(events, key=lambda e: (e.block_number, e.log_index))
    creations: list[IntentCreated] = []
    commits: list[QuoteSelected] = []
    ignored: list[QuoteSelected] = []
    seen: set[tuple[str, str]] = set()
    highest: int | None = None

    for event in ordered:
        highest = event.block_number if highest is None else max(highest, event.block_number)
        key = (type(event).__name__, event.intent_id)
        if key in seen:
            continue
        seen.add(key)
        if isinstance(event, IntentCreated):
            creations.append(event)
        elif isinstance(event, QuoteSelected):
            if event.solver.lower() == solver:
                commits.append(event)
            else:
                ignored.append(event)

    return ReconcileBatch(creations=creations, commits=commits, ignored_commits=ignored, highest_block=highest)


class BlockScanner:
    """Range-polls contract events from the persisted cursor to the chain head."""

    def __init__(self, chain: ChainClient, lookback_blocks: int = 1000, chunk_blocks: int = 10) -> None:
        self.chain = chain
        self.lookback_blocks = lookback_blocks
        self.chunk_blocks = max(1, chunk_blocks)

    def start_block(self, last_block: int | None, head: int) -> int:
        if last_block is None:
            return max(0, head - self.lookback_blocks)
        return last_block + 1

    async def batches(self, last_block: int | None) -> AsyncIterator[tuple[list[ChainEvent], int]]:
        """Yield `(events, to_block)` per chunk; persist `to_block` after each."""
        head = await self.chain.get_block_number()
        start = self.start_block(last_block, head)
        if start > head:
            return
        if last_block is None:
            logger.info(
                "Historical sync",
                extra={"from_block": start, "to_block": head, "lookback": self.lookback_blocks},
            )
        while start <= head:
            end = min(start + self.chunk_blocks - 1, head)
            events = await self.chain.fetch_events(start, end)
            if events:
                logger.debug(f"Blocks {start}-{end}: {len(events)} events")
            yield events, end
            start = end + 1


class EventWatcher:
    """Drains log filters between range scans.

    The watcher never advances the scan cursor: anything it reports is also
    picked up by the scanner, and reconciliation is idempotent.
    """

    def __init__(self, chain: ChainClient) -> None:
        self.chain = chain
        self._filters: list[Any] | None = None

    async def poll(self) -> list[ChainEvent]:
        try:
            if self._filters is None:
                self._filters = await self.chain.create_event_filters()
                return []
            return await self.chain.poll_event_filters(self._filters)
        except Exception as e:
            # Filters expire on most nodes; recreate on the next poll.
            logger.warning(f"Event filter poll failed, recreating filters: {e}")
            self._filters = None
            return []
