"""Tests for event reconciliation and the event producers."""

import asyncio

from offramp_solver.data.models import QuoteSelected, Route
from offramp_solver.services.reconcile import BlockScanner, EventWatcher, reconcile

from tests.conftest import IBAN, OTHER_SOLVER, SOLVER_ADDRESS, created_event, intent_id


def _selected(n, solver=SOLVER_ADDRESS, block=11, log_index=0):
    return QuoteSelected(
        intent_id=intent_id(n),
        block_number=block,
        log_index=log_index,
        solver=solver,
        route=Route.SEPA_INSTANT,
        fiat_amount=9200,
        receiving_info=IBAN,
        recipient_name="Alice Martin",
    )


def test_reconcile_orders_and_splits():
    """Test events are ordered by block and split by solver."""
    events = [
        _selected(1, block=12),
        created_event(2, block=11),
        created_event(1, block=10),
        _selected(2, solver=OTHER_SOLVER, block=13),
    ]

    batch = reconcile(events, SOLVER_ADDRESS.lower())

    assert [e.intent_id for e in batch.creations] == [intent_id(1), intent_id(2)]
    assert [e.intent_id for e in batch.commits] == [intent_id(1)]
    assert [e.intent_id for e in batch.ignored_commits] == [intent_id(2)]
    assert batch.highest_block == 13
    assert not batch.is_empty


def test_reconcile_drops_duplicates():
    """Test overlapping producer output is harmless."""
    events = [created_event(1), created_event(1), _selected(1), _selected(1, block=15)]

    batch = reconcile(events, SOLVER_ADDRESS)

    assert len(batch.creations) == 1
    assert len(batch.commits) == 1
    assert batch.commits[0].block_number == 11
    assert batch.highest_block == 15


def test_reconcile_empty():
    batch = reconcile([], SOLVER_ADDRESS)
    assert batch.is_empty
    assert batch.highest_block is None


def _collect(scanner, last_block):
    async def run():
        return [(events, to_block) async for events, to_block in scanner.batches(last_block)]

    return asyncio.run(run())


def test_scanner_initial_sync_uses_lookback(fake_chain):
    """Test the first scan starts `lookback` blocks behind the head in chunks."""
    fake_chain.head = 25
    fake_chain.events_by_range[(20, 24)] = [created_event(1, block=22)]

    batches = _collect(BlockScanner(fake_chain, lookback_blocks=10, chunk_blocks=5), None)

    assert fake_chain.fetched_ranges == [(15, 19), (20, 24), (25, 25)]
    assert [to_block for _, to_block in batches] == [19, 24, 25]
    assert batches[1][0][0].intent_id == intent_id(1)


def test_scanner_resumes_after_cursor(fake_chain):
    fake_chain.head = 105
    _collect(BlockScanner(fake_chain, chunk_blocks=10), 100)
    assert fake_chain.fetched_ranges == [(101, 105)]


def test_scanner_idle_at_head(fake_chain):
    fake_chain.head = 100
    assert _collect(BlockScanner(fake_chain), 100) == []
    assert fake_chain.fetched_ranges == []


def test_watcher_creates_filters_then_polls(fake_chain):
    """Test the first poll installs filters and later polls drain them."""
    watcher = EventWatcher(fake_chain)

    assert asyncio.run(watcher.poll()) == []
    assert fake_chain.filters_created == 1

    fake_chain.filter_events = [created_event(1)]
    events = asyncio.run(watcher.poll())
    assert [e.intent_id for e in events] == [intent_id(1)]
    assert asyncio.run(watcher.poll()) == []
    assert fake_chain.filters_created == 1


def test_watcher_recreates_filters_after_error(fake_chain):
    watcher = EventWatcher(fake_chain)
    asyncio.run(watcher.poll())

    fake_chain.filter_error = ValueError("filter not found")
    assert asyncio.run(watcher.poll()) == []

    fake_chain.filter_error = None
    asyncio.run(watcher.poll())
    assert fake_chain.filters_created == 2
