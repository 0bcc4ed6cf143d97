"""
CLI interface for the hotel pricing engine.

Provides command-line access to pricing, approval and rate functionality.
"""

import asyncio
import sqlite3
import sys
from decimal import Decimal
from typing import Optional

import typer
import yaml
from openai import OpenAIError
from rich.console import Console
from rich.table import Table

from hotel_pricing.clients.exchange_rates import ExchangeRateProvider, RateRefresher
from hotel_pricing.clients.price_suggestion import PriceSuggestionClient
from hotel_pricing.config.loader import PricingConfig, default_config, load_pricing_config
from hotel_pricing.core.approval import ApprovalStatus
from hotel_pricing.core.calculation import (
    Calculation,
    create_approval_request,
    new_calculation,
    submit_for_approval,
)
from hotel_pricing.core.currency import ExchangeRateSnapshot, convert, present_metrics
from hotel_pricing.core.errors import PricingError
from hotel_pricing.storage.db import DEFAULT_DB_PATH
from hotel_pricing.storage.repository import CalculationRepository, initialize_schema
from hotel_pricing.utils.logger import setup_logging

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1  # Error, or approval required with --enforced

_PERCENT_FIELDS = {"margin_percentage", "discount_percentage", "marge_nach_steuern_percentage"}


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    log_level: str = typer.Option("WARNING", "--log-level", help="Logging level"),
):
    """Hotel pricing and approval CLI."""
    setup_logging(log_level)
    if ctx.invoked_subcommand is None:
        console.print("Hotel Pricing - Use --help to see available commands")


@app.command()
def status():
    """Check that the CLI is installed."""
    console.print("[green]✓[/] Hotel pricing engine is ready")


@app.command()
def init(db: str = typer.Option(DEFAULT_DB_PATH, "--db", help="SQLite database path")):
    """Initialize the calculation database."""
    try:
        initialize_schema(db)
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def compute(
    hotel: str = typer.Option(..., "--hotel", help="Hotel name"),
    stars: int = typer.Option(..., "--stars", help="Star category"),
    average_price: float = typer.Option(..., "--average-price", help="Market price per room night"),
    project_costs: float = typer.Option(..., "--project-costs", help="Gross project costs"),
    rooms: int = typer.Option(0, "--rooms", help="Number of rooms"),
    voucher: Optional[float] = typer.Option(None, "--voucher", help="Voucher value per room night"),
    operational_costs: float = typer.Option(0.0, "--operational-costs", help="Operational costs"),
    vat: Optional[float] = typer.Option(None, "--vat", help="VAT rate in percent"),
    currency: str = typer.Option("EUR", "--currency", help="Currency of the inputs"),
    actual_price: Optional[float] = typer.Option(None, "--actual-price", help="Resale price per room night"),
    suggest: bool = typer.Option(False, "--suggest", help="Ask the AI service for the resale price"),
    tripz: Optional[float] = typer.Option(None, "--tripz", help="Tripz multiplier (0-1)"),
    display_currency: str = typer.Option("EUR", "--display-currency", help="Currency for output"),
    offline: bool = typer.Option(False, "--offline", help="Use fallback rates without fetching"),
    config_path: Optional[str] = typer.Option(None, "--config", "-c", help="YAML config file"),
    save: bool = typer.Option(False, "--save", help="Store the calculation"),
    db: str = typer.Option(DEFAULT_DB_PATH, "--db", help="SQLite database path"),
    enforced: bool = typer.Option(False, "--enforced", "-e", help="Exit with error code if approval is required"),
):
    """
    Derive deal metrics and evaluate the approval rules.

    Amounts are given in --currency and converted to EUR for the
    calculation. Results are shown in --display-currency.
    """
    try:
        config = load_pricing_config(config_path) if config_path else default_config()
        needs_rates = currency.upper() != "EUR" or display_currency.upper() != "EUR"
        snapshot = config.rates.fallback if offline or not needs_rates else _refresh_rates(config)

        if actual_price is None:
            if not suggest:
                console.print("[red]Error:[/] Provide --actual-price or use --suggest")
                sys.exit(EXIT_CODE_FAIL)
            average_eur = convert(Decimal(str(average_price)), currency, "EUR", snapshot).amount
            suggestion = PriceSuggestionClient().suggest_price(hotel, stars, rooms, average_eur)
            console.print(
                f"AI suggested price: €{suggestion.suggested_price:,.2f} "
                f"({suggestion.confidence_percentage}% confidence)"
            )
            # Suggestions are in EUR, the calculation reads prices in --currency
            price = convert(suggestion.suggested_price, "EUR", currency, snapshot).amount
        else:
            price = Decimal(str(actual_price))

        raw = {
            "hotel_name": hotel,
            "stars": stars,
            "room_count": rooms,
            "average_price": average_price,
            "voucher_value": voucher,
            "project_costs_gross": project_costs,
            "operational_costs": operational_costs,
            "vat_rate": vat,
            "currency_code": currency,
        }
        calculation = new_calculation(
            raw,
            price,
            tripz if tripz is not None else config.pricing.tripz_multiplier,
            snapshot=snapshot,
            thresholds=config.approval,
            voucher_defaults=config.pricing.voucher_defaults,
            default_vat_rate=config.pricing.default_vat_rate,
        )

        _display_calculation(calculation, display_currency, snapshot)

        if save:
            initialize_schema(db)
            CalculationRepository(db).save(calculation)
            console.print(f"\n[green]✓[/] Saved calculation {calculation.id}")

        if enforced and calculation.approval.requires_approval:
            sys.exit(EXIT_CODE_FAIL)
        sys.exit(EXIT_CODE_PASS)

    except (PricingError, OpenAIError, ValueError, FileNotFoundError, yaml.YAMLError) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def rates(
    config_path: Optional[str] = typer.Option(None, "--config", "-c", help="YAML config file"),
):
    """Refresh exchange rates and show the resulting snapshot."""
    try:
        config = load_pricing_config(config_path) if config_path else default_config()
    except (ValueError, FileNotFoundError, yaml.YAMLError) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    snapshot = _refresh_rates(config)
    table = Table(title=f"Exchange rates (1 {snapshot.base_currency})")
    table.add_column("Currency")
    table.add_column("Rate", justify="right")
    for code in sorted(snapshot.rates):
        table.add_row(code, f"{snapshot.rates[code]}")
    console.print(table)
    console.print(f"Fetched at: {snapshot.fetched_at.isoformat()}")
    if snapshot.is_fallback:
        console.print("[yellow]Rates may be stale: using fallback table[/]")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def show(
    calculation_id: str = typer.Argument(..., help="Calculation id"),
    db: str = typer.Option(DEFAULT_DB_PATH, "--db", help="SQLite database path"),
):
    """Show a stored calculation."""
    calculation = _load_calculation(CalculationRepository(db), calculation_id)

    _display_calculation(calculation, "EUR", None)
    for entry in calculation.overrides:
        console.print(
            f"Override {entry.field_name}: {entry.previous_value} -> {entry.new_value} "
            f"({entry.justification}, {entry.timestamp:%Y-%m-%d %H:%M})"
        )
    sys.exit(EXIT_CODE_PASS)


@app.command()
def submit(
    calculation_id: str = typer.Argument(..., help="Calculation id"),
    justification: Optional[str] = typer.Option(None, "--justification", "-j", help="Business justification"),
    db: str = typer.Option(DEFAULT_DB_PATH, "--db", help="SQLite database path"),
):
    """Send a stored calculation to the approver."""
    repository = CalculationRepository(db)
    calculation = _load_calculation(repository, calculation_id)

    try:
        request = create_approval_request(calculation, justification)
        submitted = submit_for_approval(calculation, expected_version=calculation.version)
        repository.update(submitted, expected_version=calculation.version)
    except PricingError as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    except KeyError:
        console.print(f"[red]Error:[/] Calculation not found: {calculation_id}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"[green]✓[/] Approval requested for {request.calculation_id}")
    console.print(f"Justification: {request.business_justification}")
    sys.exit(EXIT_CODE_PASS)


def _load_calculation(repository: CalculationRepository, calculation_id: str) -> Calculation:
    try:
        calculation = repository.get(calculation_id)
    except sqlite3.OperationalError as e:
        if "no such table" in str(e).lower():
            console.print("[red]Error:[/] Database not initialized")
            console.print("Run `hotel-pricing init --db <path>` to create it")
            sys.exit(EXIT_CODE_FAIL)
        raise
    if calculation is None:
        console.print(f"[red]Error:[/] Calculation not found: {calculation_id}")
        sys.exit(EXIT_CODE_FAIL)
    return calculation


def _refresh_rates(config: PricingConfig) -> ExchangeRateSnapshot:
    provider = ExchangeRateProvider(config.rates.provider_url, timeout=config.rates.timeout_seconds)
    refresher = RateRefresher(provider, fallback=config.rates.fallback, timeout=config.rates.timeout_seconds)
    return asyncio.run(refresher.refresh())


def _format_value(name: str, value, currency: str) -> str:
    if name in _PERCENT_FIELDS:
        return f"{value:,.2f}%"
    if name == "room_nights":
        return f"{value:,}"
    return f"{value:,.2f} {currency}"


def _display_calculation(
    calculation: Calculation,
    display_currency: str,
    snapshot: Optional[ExchangeRateSnapshot],
) -> None:
    """Display metrics and the approval outcome."""
    metrics = calculation.derived
    currency = "EUR"
    if snapshot is not None and display_currency.upper() != "EUR":
        presented = present_metrics(metrics, display_currency, snapshot)
        metrics = presented.metrics
        currency = presented.currency
        if not presented.reliable:
            console.print(f"[yellow]No rate for {display_currency.upper()}, showing EUR[/]")

    console.print(f"\n[bold]Pricing Calculation: {calculation.pricing_input.hotel_name}[/bold]")
    console.print("-" * 40)

    table = Table(show_header=True)
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    for name, value in vars(metrics).items():
        table.add_row(name.replace("_", " "), _format_value(name, value, currency))
    console.print(table)

    if calculation.rates_stale:
        console.print("[yellow]Rates may be stale: fallback exchange rates were used[/]")
    for warning in calculation.warnings:
        console.print(f"[dim]Input warning: {warning.message}[/]")

    approval = calculation.approval
    if approval.status == ApprovalStatus.NONE_REQUIRED:
        console.print("\n[bold]Approval:[/bold] [green]not required[/]")
    else:
        console.print(f"\n[bold]Approval:[/bold] [yellow]{approval.status.value}[/]")
        for reason in approval.reasons:
            console.print(f"  - {reason}")


if __name__ == "__main__":
    app()
