"""Main solver loop.

Each cycle: reconcile chain events into the ledger, quote new intents,
launch fulfillment pipelines for intents committed to us, and relaunch
retries whose backoff has elapsed. Pipelines run as asyncio tasks, at most
one per intent.
"""

import asyncio
import logging
import time
import uuid
from datetime import datetime, timedelta
from typing import Callable, Iterable

from sqlalchemy import text

from offramp_solver.data.models import ROUTE_CURRENCY, ChainEvent, Route, WindowConstants
from offramp_solver.execution.errors import ConfigurationError, PipelineError
from offramp_solver.execution.ledger import IntentRecord
from offramp_solver.execution.pipeline import FulfillmentPipeline, PipelineOutcome
from offramp_solver.services.context import SolverContext
from offramp_solver.services.health import ComponentState
from offramp_solver.services.pricing import QuoteRejected
from offramp_solver.services.reconcile import BlockScanner, EventWatcher, ReconcileBatch, reconcile
from offramp_solver.services.startup_checks import (
    startup_banner,
    validate_rails,
    verify_attestor,
    verify_chain_registration,
)

logger = logging.getLogger(__name__)

COMPONENT_CHECK_EVERY_CYCLES = 12


class SolverOrchestrator:
    """Event-driven control loop for one solver."""

    def __init__(
        self,
        context: SolverContext,
        pipeline: FulfillmentPipeline | None = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ) -> None:
        self.ctx = context
        self.settings = context.settings
        self.ledger = context.ledger
        self.chain = context.chain
        self.health = context.health
        self.metrics = context.metrics
        self.pipeline = pipeline or FulfillmentPipeline(
            ledger=context.ledger,
            chain=context.chain,
            rails=context.rails,
            prover=context.prover,
            attestor=context.attestor,
            metrics=context.metrics,
        )
        self.scanner = BlockScanner(
            context.chain,
            lookback_blocks=self.settings.lookback_blocks,
            chunk_blocks=self.settings.scan_chunk_blocks,
        )
        self.watcher = EventWatcher(context.chain)
        self._now = clock

        self.is_running = False
        self.in_flight: dict[str, asyncio.Task] = {}
        self.quotable_routes: list[Route] = context.rails.routes
        self.windows: WindowConstants | None = None
        self._cycles = 0

    @property
    def solver_address(self) -> str:
        address = self.chain.solver_address
        if address is None:
            raise ConfigurationError("Solver key is required to run the orchestrator")
        return address

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Fatal startup checks, then historical sync.

        Raises:
            ConfigurationError: The solver cannot operate.
        """
        validate_rails(self.ctx.rails, self.settings.dry_run)
        self.quotable_routes = await verify_chain_registration(self.chain, self.ctx.rails)
        self.windows = await self.chain.get_window_constants()
        if self.ctx.attestor is not None and not self.settings.dry_run:
            await verify_attestor(self.ctx.attestor)
        await self.ctx.pricing.refresh_rates()

        logger.info(startup_banner(self.settings, self.solver_address, self.quotable_routes))
        logger.info(
            "Contract windows",
            extra={
                "quote_window": self.windows.quote_window,
                "selection_window": self.windows.selection_window,
                "fulfillment_window": self.windows.fulfillment_window,
            },
        )
        await self.sync_events()
        self.health.ready = True

    async def run(self) -> None:
        """Run the loop until stopped or the kill switch trips."""
        await self.start()
        self.is_running = True
        logger.info("Starting solver loop")

        try:
            while self.is_running:
                cycle_start = time.time()
                cycle_id = str(uuid.uuid4())

                try:
                    await self.run_cycle()

                    cycle_duration = time.time() - cycle_start
                    self.health.update_cycle(cycle_duration)
                    self.health.mark_healthy()
                    logger.debug(
                        f"Cycle {cycle_id[:8]} completed in {cycle_duration:.2f}s",
                        extra={"cycle_id": cycle_id, "duration": cycle_duration, "in_flight": len(self.in_flight)},
                    )

                except Exception as e:
                    logger.error(f"Error in solver cycle: {e}", exc_info=True)
                    errors = self.health.record_cycle_error(str(e))
                    if errors >= self.settings.kill_switch_on_errors:
                        logger.error(
                            "Kill switch triggered: too many consecutive cycle errors",
                            extra={
                                "consecutive_errors": errors,
                                "threshold": self.settings.kill_switch_on_errors,
                            },
                        )
                        self.is_running = False
                        break

                await asyncio.sleep(self.settings.poll_interval_seconds)
        finally:
            self.health.ready = False
            await self.drain()

    def stop(self) -> None:
        """Stop solver loop."""
        logger.info("Stopping solver loop")
        self.is_running = False

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for in-flight pipelines. Their checkpoints make cancellation safe."""
        tasks = list(self.in_flight.values())
        if not tasks:
            return
        logger.info(f"Waiting for {len(tasks)} in-flight pipelines")
        done, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    async def run_cycle(self) -> None:
        self._cycles += 1
        await self.sync_events()
        await self.apply_events(await self.watcher.poll())
        await self.quote_pending()
        self.launch_fulfillments()
        self.launch_retries()
        if self._cycles % COMPONENT_CHECK_EVERY_CYCLES == 0:
            await self.check_components()
            await self.ctx.pricing.refresh_rates()

    async def sync_events(self) -> None:
        """Scan from the cursor to head, persisting the cursor per chunk."""
        async for events, to_block in self.scanner.batches(self.ledger.get_last_block()):
            await self.apply_events(events)
            self.ledger.set_last_block(to_block)
        self.health.set_component("chain", ComponentState.OK)

    async def apply_events(self, events: Iterable[ChainEvent]) -> ReconcileBatch:
        """Write a reconciled batch into the ledger. Idempotent."""
        batch = reconcile(events, self.solver_address)
        for created in batch.creations:
            if self.ledger.upsert_intent_on_create(created):
                self.metrics.intents_seen.labels(currency=created.currency.name).inc()
                logger.info(
                    f"New intent {created.intent_id[:10]}",
                    extra={
                        "intent_id": created.intent_id,
                        "usdc_amount": created.usdc_amount,
                        "currency": created.currency.name,
                    },
                )

        # Commits to other solvers are mirrored too; only ours get pipelines.
        for commit in [*batch.commits, *batch.ignored_commits]:
            if self.ledger.get_intent(commit.intent_id) is None:
                self.ledger.upsert_from_chain(await self.chain.get_intent(commit.intent_id))
            self.ledger.record_commit(
                commit.intent_id,
                solver=commit.solver,
                route=commit.route,
                fiat_amount=commit.fiat_amount,
                receiving_info=commit.receiving_info,
                recipient_name=commit.recipient_name,
                committed_at=await self.chain.get_block_timestamp(commit.block_number),
            )
        return batch

    # ------------------------------------------------------------------
    # Quoting
    # ------------------------------------------------------------------

    def _quote_window_open(self, intent: IntentRecord, now: datetime) -> bool:
        if self.windows is None:
            return True
        return now <= intent.created_at + timedelta(seconds=self.windows.quote_window)

    async def quote_pending(self) -> int:
        """Quote every intent still in its quote window. Returns quotes submitted."""
        submitted = 0
        now = self._now()
        for intent in self.ledger.intents_awaiting_quote():
            if not self._quote_window_open(intent, now):
                self.ledger.record_expired(intent.intent_id, "quote window missed")
                continue
            try:
                submitted += await self._quote_intent(intent)
            except Exception as e:
                logger.warning(
                    f"Quoting failed for {intent.intent_id[:10]}: {e}",
                    extra={"intent_id": intent.intent_id},
                )
        return submitted

    async def _quote_intent(self, intent: IntentRecord) -> int:
        routes = [r for r in self.quotable_routes if ROUTE_CURRENCY[r] == intent.currency]
        if not routes:
            logger.debug(f"No route for {intent.currency.name}, not quoting {intent.intent_id[:10]}")
            self.ledger.mark_quotes_submitted(intent.intent_id)
            return 0

        existing = {q.route: q for q in self.ledger.get_quotes(intent.intent_id)}
        submitted = 0
        complete = True
        for route in routes:
            quote = existing.get(route)
            if quote is None:
                rail = self.ctx.rails.require(route)
                try:
                    priced = self.ctx.pricing.quote_for(intent.usdc_amount, intent.currency, route, rail)
                except QuoteRejected as e:
                    logger.info(
                        f"Not quoting {route.name}: {e}",
                        extra={"intent_id": intent.intent_id, "route": route.name},
                    )
                    continue
                quote = self.ledger.record_quote(
                    intent.intent_id,
                    route,
                    fiat_amount=priced.fiat_amount,
                    fee=priced.fee,
                    estimated_time=priced.estimated_time,
                    expires_at=priced.expires_at,
                )
            if quote.submitted_on_chain:
                continue
            if self.settings.dry_run:
                logger.info(
                    f"[dry run] Would submit quote {route.name} {quote.fiat_amount} cents",
                    extra={"intent_id": intent.intent_id, "route": route.name, "fee": quote.fee},
                )
                continue
            try:
                tx_hash = await self.chain.submit_quote(
                    intent.intent_id, route, quote.fiat_amount, quote.fee, quote.estimated_time
                )
            except PipelineError as e:
                complete = complete and not e.retryable
                logger.warning(
                    f"Quote submission failed: {e}",
                    extra={"intent_id": intent.intent_id, "route": route.name, **e.to_log_context()},
                )
                continue
            self.ledger.mark_quote_submitted(intent.intent_id, route, tx_hash)
            self.metrics.quotes_submitted.labels(route=route.name).inc()
            submitted += 1

        if complete:
            self.ledger.mark_quotes_submitted(intent.intent_id)
        return submitted

    # ------------------------------------------------------------------
    # Fulfillment
    # ------------------------------------------------------------------

    def launch_fulfillments(self) -> list[str]:
        if self.settings.dry_run:
            return []
        launched = []
        for intent in self.ledger.intents_awaiting_fulfillment(self.solver_address):
            if self._launch(intent.intent_id):
                launched.append(intent.intent_id)
        return launched

    def launch_retries(self) -> list[str]:
        if self.settings.dry_run:
            return []
        launched = []
        for intent in self.ledger.intents_ready_for_retry(self.solver_address, self._now()):
            if intent.intent_id in self.in_flight:
                continue
            if self.ledger.mark_for_retry(intent.intent_id) and self._launch(intent.intent_id):
                logger.info(
                    f"Retrying {intent.intent_id[:10]}",
                    extra={
                        "intent_id": intent.intent_id,
                        "retry_count": intent.retry_count,
                        "fiat_sent": intent.fiat_sent,
                    },
                )
                launched.append(intent.intent_id)
        return launched

    def _launch(self, intent_id: str) -> bool:
        if intent_id in self.in_flight:
            return False
        task = asyncio.create_task(self._run_pipeline(intent_id), name=f"pipeline-{intent_id[:10]}")
        self.in_flight[intent_id] = task
        task.add_done_callback(lambda _t, i=intent_id: self.in_flight.pop(i, None))
        return True

    async def _run_pipeline(self, intent_id: str) -> None:
        try:
            result = await self.pipeline.run(intent_id)
        except Exception:
            logger.exception(f"Pipeline crashed for {intent_id[:10]}", extra={"intent_id": intent_id})
            return
        level = logging.WARNING if result.outcome == PipelineOutcome.FAILED else logging.INFO
        logger.log(
            level,
            f"Pipeline {result.outcome.value} for {intent_id[:10]}",
            extra={
                "intent_id": intent_id,
                "outcome": result.outcome.value,
                "tx_hash": result.tx_hash,
                "error": result.error,
                "retry_count": result.retry_count,
            },
        )

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    async def check_components(self) -> None:
        try:
            self.ctx.session.execute(text("SELECT 1"))
            self.health.set_component("database", ComponentState.OK)
        except Exception as e:
            self.health.set_component("database", ComponentState.DOWN, str(e))

        for rail in self.ctx.rails.rails():
            ok = await rail.health_check()
            self.health.set_component(
                f"rail:{rail.rail_id}", ComponentState.OK if ok else ComponentState.DEGRADED
            )

        if self.ctx.attestor is not None:
            try:
                await self.ctx.attestor.health_check()
                self.health.set_component("attestation", ComponentState.OK)
            except Exception as e:
                self.health.set_component("attestation", ComponentState.DEGRADED, str(e))
