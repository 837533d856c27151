"""
CLI interface for Variation Guard.

Provides command-line access to the credit ledger and the generation
orchestrator.
"""

import json
import logging
import sys
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from variation_guard.config.loader import (
    RateLimitBackend,
    VariationConfig,
    default_config,
    load_config,
)
from variation_guard.core.aggregator import OutcomeAggregator
from variation_guard.core.dispatcher import GenerationDispatcher
from variation_guard.core.errors import VariationError
from variation_guard.core.materializer import ResultMaterializer
from variation_guard.core.orchestrator import VariationOrchestrator, VariationResponse
from variation_guard.core.pacing import SleepPacer
from variation_guard.core.pricing import cost_breakdown
from variation_guard.core.rate_limit import InMemoryRateWindowStore, RateLimiter, RateWindowStore
from variation_guard.core.variants import VariantKind, parse_variant_spec
from variation_guard.sdk.openai_client import OpenAIDescriber, OpenAIImageGenerator
from variation_guard.storage.artifacts import LocalArtifactStore
from variation_guard.storage.ledger import CreditLedger
from variation_guard.storage.rate_store import RedisRateWindowStore, SqliteRateWindowStore
from variation_guard.storage.repository import get_repository, initialize_schema

app = typer.Typer()
console = Console()

EXIT_CODE_OK = 0
EXIT_CODE_FAIL = 1      # Request settled with no variants generated
EXIT_CODE_REJECTED = 2  # Rate limited, invalid or insufficient credits


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config_path: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to YAML configuration file"
    ),
    log_level: str = typer.Option(
        "WARNING",
        "--log-level",
        help="Logging level (DEBUG, INFO, WARNING, ERROR)"
    )
):
    """Variation Guard CLI."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )
    try:
        ctx.obj = load_config(str(config_path)) if config_path else default_config()
    except (FileNotFoundError, ValueError) as e:
        console.print(f"[red]Invalid configuration:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    if ctx.invoked_subcommand is None:
        console.print("Variation Guard - Use --help to see available commands")


@app.command()
def init(ctx: typer.Context):
    """Initialize the Variation Guard database."""
    config: VariationConfig = ctx.obj
    try:
        initialize_schema(config.storage.db_path)
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_OK)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def grant(
    ctx: typer.Context,
    account_id: str = typer.Argument(..., help="Account receiving the credits"),
    credits: Optional[int] = typer.Argument(None, help="Number of credits to grant"),
    pack: Optional[str] = typer.Option(None, "--pack", "-p", help="Grant a named credit pack"),
    payment_id: Optional[str] = typer.Option(
        None,
        "--payment-id",
        help="Payment identifier; a repeated id grants only once"
    )
):
    """Grant purchased or promotional credits to an account."""
    config: VariationConfig = ctx.obj
    if (credits is None) == (pack is None):
        console.print("[red]Error:[/] give either CREDITS or --pack")
        sys.exit(EXIT_CODE_FAIL)

    try:
        amount = config.get_pack_credits(pack) if pack else credits
        reason = f"Credit pack '{pack}'" if pack else "Manual grant"
        initialize_schema(config.storage.db_path)
        ledger = CreditLedger(config.storage.db_path)
        granted = ledger.grant(account_id, amount, reason=reason, idempotency_key=payment_id)
    except ValueError as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    if granted:
        console.print(f"[green]✓[/] Granted {amount} credits to {account_id}")
    else:
        console.print(f"[yellow]Payment {payment_id} was already applied; nothing granted[/]")
    console.print(f"Balance: {ledger.read(account_id)}")
    sys.exit(EXIT_CODE_OK)


@app.command()
def balance(ctx: typer.Context, account_id: str = typer.Argument(..., help="Account to inspect")):
    """Show an account's balance and lifetime counters."""
    config: VariationConfig = ctx.obj
    initialize_schema(config.storage.db_path)
    ledger = CreditLedger(config.storage.db_path)
    account = ledger.get_account(account_id)

    table = Table(title=f"Credits for {account_id}")
    table.add_column("Remaining", justify="right")
    table.add_column("Purchased", justify="right")
    table.add_column("Used", justify="right")
    if account is None:
        table.add_row("0", "0", "0")
    else:
        table.add_row(str(account.balance), str(account.lifetime_purchased), str(account.lifetime_consumed))
    console.print(table)


@app.command()
def quote(
    ctx: typer.Context,
    request_file: Path = typer.Argument(..., help="JSON request file")
):
    """Show the credit cost of a request without running it."""
    config: VariationConfig = ctx.obj
    try:
        data = _read_request_file(request_file)
        specs = [parse_variant_spec(raw) for raw in data.get("variant_specs") or []]
        breakdown = cost_breakdown(specs, config.costs)
    except (VariationError, ValueError) as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_REJECTED)

    table = Table(title="Credit quote")
    table.add_column("Variant type")
    table.add_column("Count", justify="right")
    table.add_column("Unit cost", justify="right")
    for spec_kind in ("breed_coat", "outfit", "format", "multi_subject"):
        if breakdown[spec_kind]:
            unit = config.costs.unit_cost(VariantKind(spec_kind))
            table.add_row(spec_kind, str(breakdown[spec_kind]), str(unit))
    console.print(table)
    console.print(f"[bold]Required credits:[/bold] {breakdown['total']}")


@app.command()
def generate(
    ctx: typer.Context,
    request_file: Path = typer.Argument(..., help="JSON request file"),
    output_json: bool = typer.Option(False, "--json", help="Print the raw response payload")
):
    """Run a variation request end to end."""
    config: VariationConfig = ctx.obj
    try:
        data = _read_request_file(request_file)
        initialize_schema(config.storage.db_path)
        orchestrator = build_orchestrator(config)
        response = orchestrator.handle(
            requester_id=data.get("requester_id"),
            source_image_ref=data.get("source_image_ref"),
            variant_specs=data.get("variant_specs"),
            request_id=data.get("request_id")
        )
    except VariationError as e:
        if output_json:
            console.print_json(json.dumps(e.to_payload()))
        else:
            console.print(f"[red]Rejected ({e.code}):[/] {e.message}")
        sys.exit(EXIT_CODE_REJECTED)
    except ValueError as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_REJECTED)

    if output_json:
        console.print_json(json.dumps(response.to_payload()))
    else:
        _display_response(response)
    sys.exit(EXIT_CODE_OK if response.succeeded else EXIT_CODE_FAIL)


@app.command()
def history(
    ctx: typer.Context,
    account_id: str = typer.Argument(..., help="Account to inspect"),
    limit: int = typer.Option(20, "--limit", "-n", help="Number of requests to show")
):
    """List an account's recent variation requests."""
    config: VariationConfig = ctx.obj
    initialize_schema(config.storage.db_path)
    rows = get_repository(config.storage.db_path).get_recent_requests(account_id, limit=limit)
    if not rows:
        console.print(f"[dim]No variation requests found for {account_id}.[/]")
        return

    table = Table(title=f"Recent requests for {account_id}")
    table.add_column("Request")
    table.add_column("Submitted")
    table.add_column("Variants", justify="right")
    table.add_column("Credits", justify="right")
    table.add_column("Status")
    for row in rows:
        table.add_row(
            row.request_id,
            row.submitted_at.strftime("%Y-%m-%d %H:%M"),
            str(len(row.variant_specs)),
            str(row.required_credits),
            row.status
        )
    console.print(table)


def build_orchestrator(config: VariationConfig) -> VariationOrchestrator:
    """Wire the orchestrator from configuration with the OpenAI adapters."""
    db_path = config.storage.db_path
    repository = get_repository(db_path)
    ledger = CreditLedger(db_path)

    generator = OpenAIImageGenerator(
        model=config.generation.model,
        api_key_env=config.generation.api_key_env,
        timeout=config.generation.call_timeout_seconds
    )
    describer = None
    if config.generation.describe_variants:
        describer = OpenAIDescriber(
            model=config.generation.description_model,
            api_key_env=config.generation.api_key_env
        )

    return VariationOrchestrator(
        rate_limiter=RateLimiter(
            _rate_store(config),
            max_requests=config.rate_limit.max_requests,
            window_seconds=config.rate_limit.window_seconds
        ),
        ledger=ledger,
        dispatcher=GenerationDispatcher(
            generator,
            pacer=SleepPacer(config.dispatch.pacing_seconds),
            request_timeout=config.dispatch.request_timeout_seconds
        ),
        aggregator=OutcomeAggregator(ledger, repository),
        materializer=ResultMaterializer(
            LocalArtifactStore(config.storage.artifact_dir), repository, describer=describer
        ),
        repository=repository,
        cost_table=config.costs,
        max_source_image_bytes=config.max_source_image_bytes
    )


def _rate_store(config: VariationConfig) -> RateWindowStore:
    backend = config.rate_limit.backend
    if backend == RateLimitBackend.REDIS:
        return RedisRateWindowStore.from_url(config.rate_limit.redis_url)
    if backend == RateLimitBackend.SQLITE:
        return SqliteRateWindowStore(config.storage.db_path)
    return InMemoryRateWindowStore()


def _read_request_file(path: Path) -> dict:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except OSError as e:
        raise ValueError(f"Cannot read request file {path}: {e.strerror or e}")
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON in request file {path}: {e}")
    if not isinstance(data, dict):
        raise ValueError("Request file must contain a JSON object")
    return data


def _display_response(response: VariationResponse) -> None:
    """Display a request result in a compact table."""
    console.print(f"\n[bold]Variation request {response.request_id}[/bold]")
    console.print("-" * 40)

    table = Table()
    table.add_column("#", justify="right")
    table.add_column("Variant")
    table.add_column("Status")
    table.add_column("Artifact / error")
    for variant in response.variants:
        if variant.status == "success":
            detail = variant.artifact_ref or "[yellow]not stored[/]"
            status = "[green]success[/]"
        else:
            detail = variant.error or ""
            status = "[red]failure[/]"
        table.add_row(str(variant.index), variant.kind, status, detail)
    console.print(table)

    console.print(f"Status: {response.status}")
    console.print(f"Credits used: {response.credits_used}")
    console.print(f"Credits remaining: {response.credits_remaining}")
    if not response.succeeded:
        console.print("[yellow]No variants were generated. Credits have been refunded.[/]")


if __name__ == "__main__":
    app()
