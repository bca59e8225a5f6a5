"""CLI interface for the off-ramp solver."""

import asyncio
import json
import logging
import sys

import click
import uvicorn

from offramp_solver import __version__
from offramp_solver.config import (
    ATTESTOR_REQUIRED_VARS,
    SOLVER_READONLY_VARS,
    SOLVER_REQUIRED_VARS,
    get_attestor_settings,
    get_settings,
    load_env_or_exit,
)
from offramp_solver.execution.errors import ConfigurationError
from offramp_solver.utils.logging import bind_log_fields, setup_logging

logger = logging.getLogger(__name__)

# Variables each subcommand needs before it can do anything useful.
_REQUIRED_BY_COMMAND = {
    "run": SOLVER_REQUIRED_VARS,
    "stats": SOLVER_READONLY_VARS,
    "intents": SOLVER_READONLY_VARS,
    "attestor": ATTESTOR_REQUIRED_VARS,
    "witness-address": ATTESTOR_REQUIRED_VARS,
}


@click.group()
@click.version_option(version=__version__)
def cli() -> None:
    """Off-ramp Solver - quote, pay out fiat and claim USDC.

    Also hosts the payment attestation service (`attestor`).
    """
    # `--help` must work on a clean machine before `.env` exists.
    if any(arg in ("-h", "--help") for arg in sys.argv[1:]):
        return

    ctx = click.get_current_context(silent=True)
    required = _REQUIRED_BY_COMMAND.get(ctx.invoked_subcommand if ctx else None, SOLVER_REQUIRED_VARS)
    load_env_or_exit(required=required)


@cli.command()
@click.option("--dry-run", is_flag=True, default=False, help="Record quotes locally, never submit or pay")
def run(dry_run: bool) -> None:
    """Run the solver loop and its status API.

    The loop will:
    1. Mirror IntentCreated / QuoteSelected events into the local ledger
    2. Quote every pending intent on the routes we serve
    3. For intents that selected us: pay out, prove, attest and claim
    4. Retry failed fulfillments with exponential backoff

    Runs until interrupted (Ctrl+C) or the kill switch trips.
    """
    settings = get_settings()
    if dry_run:
        settings = settings.model_copy(update={"dry_run": True})
    setup_logging(settings.log_level, settings.log_format, service="solver")
    bind_log_fields(chain_id=settings.chain_id)

    from offramp_solver.services.startup_checks import (
        validate_clock_utc,
        validate_db_connectivity,
        validate_solver_key,
    )

    try:
        solver_address = validate_solver_key(settings)
        bind_log_fields(solver=solver_address)
        validate_clock_utc()
        validate_db_connectivity(settings.db_url)
    except Exception as e:
        click.echo(f"ERROR: Startup checks failed: {e}")
        raise SystemExit(2)

    click.echo(f"Starting solver {solver_address} on chain {settings.chain_id}")
    if settings.dry_run:
        click.echo("DRY-RUN MODE: quotes are recorded locally, nothing is submitted or paid\n")

    try:
        asyncio.run(_run_solver(settings))
    except KeyboardInterrupt:
        logger.info("Shutting down gracefully...")
        click.echo("\nShutdown complete.")
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        click.echo(f"ERROR: {e}")
        raise SystemExit(2)
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        click.echo(f"ERROR: {e}")
        raise SystemExit(1)


async def _run_solver(settings) -> None:
    """Serve the status API and run the orchestrator in one event loop."""
    from offramp_solver.api.app import create_app
    from offramp_solver.services.context import build_context
    from offramp_solver.services.orchestrator import SolverOrchestrator

    context = build_context(settings)
    orchestrator = SolverOrchestrator(context)
    server = uvicorn.Server(
        uvicorn.Config(
            create_app(context),
            host=settings.api_host,
            port=settings.api_port,
            log_level=settings.log_level.lower(),
        )
    )

    solver_task = asyncio.create_task(orchestrator.run())
    server_task = asyncio.create_task(server.serve())
    try:
        # Either side finishing ends the process: the server on SIGINT/SIGTERM,
        # the solver on the kill switch or a failed startup check.
        await asyncio.wait({solver_task, server_task}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        orchestrator.stop()
        server.should_exit = True
        try:
            await solver_task
        finally:
            await server_task
            await context.close()


@cli.command()
@click.option("--host", default=None, help="Bind host")
@click.option("--port", default=None, type=int, help="Bind port")
def attestor(host: str | None, port: int | None) -> None:
    """Start the payment attestation service.

    Endpoints:
    - /health - witness address and chain id
    - /attest - verify a presentation and sign a PaymentAttestation
    """
    settings = get_attestor_settings()
    setup_logging(settings.log_level, settings.log_format, service="attestor")
    bind_log_fields(chain_id=settings.chain_id)

    from offramp_solver.attestation.api import create_app_from_settings
    from offramp_solver.attestation.errors import AttestorConfigurationError

    try:
        app = create_app_from_settings(settings)
    except (AttestorConfigurationError, ValueError) as e:
        click.echo(f"ERROR: {e}")
        raise SystemExit(2)

    bind_host = host or settings.host
    bind_port = port or settings.port
    click.echo(f"Starting attestation service on {bind_host}:{bind_port}")
    uvicorn.run(app, host=bind_host, port=bind_port, log_level=settings.log_level.lower())


@cli.command(name="witness-address")
def witness_address() -> None:
    """Print the witness address to register on the PaymentVerifier."""
    from eth_account import Account

    settings = get_attestor_settings()
    click.echo(Account.from_key(settings.witness_private_key).address)


@cli.command()
@click.option("--json-output", is_flag=True, help="Output as JSON")
def stats(json_output: bool) -> None:
    """Show ledger counts by status, fiat-sent alerts and the scan cursor.

    Read-only and safe while the solver is running.
    """
    setup_logging("WARNING")
    settings = get_settings()
    from offramp_solver.data.storage import get_session, init_db
    from offramp_solver.execution.ledger import LedgerMirror

    init_db(settings.db_url)
    db_session = get_session()
    try:
        data = LedgerMirror(db_session).get_stats()
    finally:
        db_session.close()

    if json_output:
        click.echo(json.dumps(data, indent=2))
        return

    click.echo("\n" + "=" * 60)
    click.echo("LEDGER STATUS")
    click.echo("=" * 60)
    for status_name, count in data["by_status"].items():
        click.echo(f"{status_name:<20} {count}")
    click.echo("-" * 60)
    click.echo(f"{'total':<20} {data['total']}")
    click.echo(f"{'fiat-sent alerts':<20} {data['fiat_sent_alerts']}")
    click.echo(f"{'last block':<20} {data['last_block'] if data['last_block'] is not None else '-'}")
    click.echo("=" * 60 + "\n")


@cli.group()
def intents() -> None:
    """Inspect mirrored intents and requeue failed fulfillments."""
    pass


@intents.command(name="list")
@click.option("--status", default=None, help="Filter by status (e.g. failed, pending_retry)")
@click.option("--limit", default=50, type=int, help="Maximum rows")
@click.option("--json-output", is_flag=True, help="Output as JSON")
def list_intents(status: str | None, limit: int, json_output: bool) -> None:
    """List intents, newest first."""
    setup_logging("WARNING")
    from offramp_solver.execution.ledger import IntentStatus

    try:
        status_filter = IntentStatus(status.lower()) if status else None
    except ValueError:
        choices = ", ".join(s.value for s in IntentStatus)
        click.echo(f"ERROR: unknown status {status!r}. Choose from: {choices}")
        raise SystemExit(2)

    with _ledger() as ledger:
        records = ledger.list_intents(status_filter, limit=limit)

    if json_output:
        click.echo(json.dumps([r.to_dict() for r in records], indent=2))
        return

    if not records:
        click.echo("No intents.")
        return
    click.echo(f"\n{'INTENT':<14} {'STATUS':<16} {'AMOUNT':>14} {'ROUTE':<14} {'RETRIES':>7}  ERROR")
    for r in records:
        route = r.selected_route.name if r.selected_route is not None else "-"
        amount = f"{r.usdc_amount / 1_000_000:,.2f} USDC"
        alert = " [FIAT SENT]" if r.fiat_sent_alert else ""
        click.echo(
            f"{r.intent_id[:12]:<14} {r.status.value:<16} {amount:>14} {route:<14} "
            f"{r.retry_count:>7}  {(r.error or '')[:60]}{alert}"
        )
    click.echo("")


@intents.command(name="show")
@click.argument("intent_id")
def show_intent(intent_id: str) -> None:
    """Show one intent with its quotes.

    INTENT_ID: 32-byte hex intent id
    """
    setup_logging("WARNING")
    intent_id = _normalize_or_exit(intent_id)
    with _ledger() as ledger:
        record = ledger.get_intent(intent_id)
        if record is None:
            click.echo(f"ERROR: Intent {intent_id} not found")
            raise SystemExit(1)
        data = record.to_dict()
        data["quotes"] = [
            {
                "route": q.route.name,
                "fiat_amount": q.fiat_amount,
                "fee": str(q.fee),
                "submitted_on_chain": q.submitted_on_chain,
                "tx_hash": q.tx_hash,
            }
            for q in ledger.get_quotes(intent_id)
        ]
    click.echo(json.dumps(data, indent=2))


@intents.command(name="requeue")
@click.argument("intent_id")
@click.option("--yes", "assume_yes", is_flag=True, help="Requeue without interactive confirmation")
def requeue_intent(intent_id: str, assume_yes: bool) -> None:
    """Give a failed intent whose fiat was already sent a fresh retry budget.

    INTENT_ID: 32-byte hex intent id
    """
    setup_logging("WARNING")
    intent_id = _normalize_or_exit(intent_id)
    with _ledger() as ledger:
        record = ledger.get_intent(intent_id)
        if record is None:
            click.echo(f"ERROR: Intent {intent_id} not found")
            raise SystemExit(1)
        if not assume_yes and not click.confirm(
            f"Requeue {intent_id[:12]} (transfer {record.provider_transfer_id})?", default=False
        ):
            click.echo("Aborted.")
            return
        if ledger.requeue(intent_id):
            click.echo(f"Requeued {intent_id}. A running solver will pick it up next cycle.")
        else:
            click.echo(
                f"ERROR: Intent is {record.status.value}; only failed intents with a "
                "recorded transfer can be requeued"
            )
            raise SystemExit(1)


class _ledger:
    """Short-lived ledger over its own session, for read-mostly commands."""

    def __enter__(self):
        from offramp_solver.data.storage import get_session, init_db
        from offramp_solver.execution.ledger import LedgerMirror

        init_db(get_settings().db_url)
        self._session = get_session()
        return LedgerMirror(self._session)

    def __exit__(self, *exc) -> None:
        self._session.close()


def _normalize_or_exit(intent_id: str) -> str:
    from offramp_solver.data.models import normalize_intent_id

    try:
        return normalize_intent_id(intent_id)
    except ValueError:
        click.echo("ERROR: intent id must be 32 bytes of hex")
        raise SystemExit(2)


if __name__ == "__main__":
    cli()
