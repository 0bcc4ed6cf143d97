"""
Currency conversion through a EUR-pivot rate table.

All derivation happens in EUR. Amounts are converted once at ingestion and
once for presentation, never inside a formula, and each conversion rounds
to cents exactly once.
"""

import logging
from dataclasses import dataclass, fields, replace
from datetime import datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Dict, Mapping, Optional

from .derivation import DerivedMetrics, MONETARY_FIELDS
from .normalizer import PricingInput

logger = logging.getLogger(__name__)

BASE_CURRENCY = "EUR"
CENT = Decimal("0.01")

# Monetary fields of PricingInput converted at ingestion
INPUT_MONETARY_FIELDS = (
    "average_price",
    "voucher_value",
    "project_costs_gross",
    "operational_costs",
)


@dataclass(frozen=True)
class ExchangeRateSnapshot:
    """Immutable EUR-based rate table: 1 EUR = rates[currency] units."""
    rates: Mapping[str, Decimal]
    fetched_at: datetime
    is_fallback: bool = False
    base_currency: str = BASE_CURRENCY

    def rate_for(self, currency: str) -> Optional[Decimal]:
        """Get the multiplier for a currency, None if unknown or unusable."""
        code = currency.upper()
        if code == self.base_currency:
            return Decimal("1")
        rate = self.rates.get(code)
        if rate is None or rate <= 0:
            return None
        return rate


@dataclass(frozen=True)
class ConversionResult:
    """Converted amount with provenance flags for the caller."""
    amount: Decimal
    currency: str
    is_fallback: bool
    reliable: bool = True


@dataclass(frozen=True)
class ConvertedInput:
    """PricingInput after ingestion conversion."""
    pricing_input: PricingInput
    is_fallback: bool
    reliable: bool


@dataclass(frozen=True)
class PresentedMetrics:
    """Derived metrics converted into a display currency."""
    metrics: DerivedMetrics
    currency: str
    is_fallback: bool
    reliable: bool


# Frozen snapshot used whenever live rates are unavailable
FALLBACK_SNAPSHOT = ExchangeRateSnapshot(
    rates={
        "USD": Decimal("1.04"),
        "GBP": Decimal("0.83"),
        "CHF": Decimal("0.94"),
        "JPY": Decimal("163.00"),
        "SEK": Decimal("11.50"),
        "NOK": Decimal("11.80"),
        "DKK": Decimal("7.46"),
        "PLN": Decimal("4.27"),
        "CZK": Decimal("25.20"),
        "HUF": Decimal("411.00"),
        "CAD": Decimal("1.49"),
        "AUD": Decimal("1.67"),
    },
    fetched_at=datetime(2025, 1, 2),
    is_fallback=True,
)


def make_snapshot(
    rates: Mapping[str, float],
    fetched_at: datetime,
    is_fallback: bool = False,
) -> ExchangeRateSnapshot:
    """Build a snapshot from provider rates, dropping unusable entries."""
    cleaned: Dict[str, Decimal] = {}
    for currency, rate in rates.items():
        try:
            value = Decimal(str(rate))
        except ArithmeticError:
            logger.warning("Ignoring unparseable rate for %s: %r", currency, rate)
            continue
        if not value.is_finite() or value <= 0:
            logger.warning("Ignoring non-positive rate for %s: %r", currency, rate)
            continue
        cleaned[currency.upper()] = value
    return ExchangeRateSnapshot(rates=cleaned, fetched_at=fetched_at, is_fallback=is_fallback)


def convert(
    amount: Decimal,
    from_currency: str,
    to_currency: str,
    snapshot: ExchangeRateSnapshot,
) -> ConversionResult:
    """Convert an amount between two currencies via EUR.

    Never raises. When a rate is missing the amount is returned unconverted
    and marked unreliable.

    Args:
        amount: Amount in from_currency
        from_currency: ISO code of the source currency
        to_currency: ISO code of the target currency
        snapshot: Rate table to convert with

    Returns:
        ConversionResult carrying the snapshot's fallback flag
    """
    source = from_currency.upper()
    target = to_currency.upper()
    if source == target:
        return ConversionResult(amount, target, snapshot.is_fallback)

    source_rate = snapshot.rate_for(source)
    target_rate = snapshot.rate_for(target)
    if source_rate is None or target_rate is None:
        missing = source if source_rate is None else target
        logger.warning("No exchange rate for %s, leaving %s %s unconverted", missing, amount, source)
        return ConversionResult(amount, source, snapshot.is_fallback, reliable=False)

    try:
        converted = (Decimal(amount) / source_rate * target_rate).quantize(CENT, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        logger.warning("Cannot convert %s %s to %s in cents, leaving it unconverted", amount, source, target)
        return ConversionResult(amount, source, snapshot.is_fallback, reliable=False)
    return ConversionResult(converted, target, snapshot.is_fallback)


def to_eur_input(pricing_input: PricingInput, snapshot: ExchangeRateSnapshot) -> ConvertedInput:
    """Convert the monetary fields of an input into EUR at ingestion.

    If any field cannot be converted the input is returned unchanged and
    marked unreliable, so no half-converted record reaches the engine.
    """
    if pricing_input.currency_code == BASE_CURRENCY:
        return ConvertedInput(pricing_input, snapshot.is_fallback, reliable=True)

    updates = {}
    for name in INPUT_MONETARY_FIELDS:
        result = convert(getattr(pricing_input, name), pricing_input.currency_code, BASE_CURRENCY, snapshot)
        if not result.reliable:
            return ConvertedInput(pricing_input, snapshot.is_fallback, reliable=False)
        updates[name] = result.amount

    converted = replace(pricing_input, currency_code=BASE_CURRENCY, **updates)
    return ConvertedInput(converted, snapshot.is_fallback, reliable=True)


def present_metrics(
    metrics: DerivedMetrics,
    currency: str,
    snapshot: ExchangeRateSnapshot,
) -> PresentedMetrics:
    """Convert EUR metrics into a display currency.

    Percentages and room nights are not monetary and pass through.
    """
    target = currency.upper()
    if target == BASE_CURRENCY:
        return PresentedMetrics(metrics, target, snapshot.is_fallback, reliable=True)

    updates = {}
    for metric in fields(metrics):
        if metric.name not in MONETARY_FIELDS:
            continue
        result = convert(getattr(metrics, metric.name), BASE_CURRENCY, target, snapshot)
        if not result.reliable:
            return PresentedMetrics(metrics, BASE_CURRENCY, snapshot.is_fallback, reliable=False)
        updates[metric.name] = result.amount

    return PresentedMetrics(replace(metrics, **updates), target, snapshot.is_fallback, reliable=True)
