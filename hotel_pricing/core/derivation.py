"""
Financial derivation engine.

Turns a normalized PricingInput into the full set of derived deal figures.
Computation is done in EUR with Decimal arithmetic; each derived value is
rounded to cents once, at the end of its own formula.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP, localcontext

from .normalizer import PricingInput

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
HUNDRED = Decimal("100")
ZERO = Decimal("0")

DEFAULT_TRIPZ_MULTIPLIER = Decimal("0.75")
CONTRACT_VOLUME_UPLIFT = Decimal("1.1")
PRODUCT_VAT_RATE = Decimal("0.19")
TRIPZ_VAT_SHARE = Decimal("0.23")

# Digits carried while deriving, before rounding to cents
WORKING_PRECISION = 60

# Fields expressed in money, as opposed to percentages and counts
MONETARY_FIELDS = frozenset({
    "net_price",
    "vat_amount",
    "total_price",
    "profit_margin",
    "discount_vs_market",
    "contract_volume_estimate",
    "marge",
    "vorsteuer_produkt",
    "vorsteuer_tripz",
    "netto_steuerzahlung",
    "marge_nach_steuern",
})


@dataclass(frozen=True)
class DerivedMetrics:
    """All figures derived from one pricing input."""
    net_price: Decimal
    vat_amount: Decimal
    total_price: Decimal
    profit_margin: Decimal
    margin_percentage: Decimal
    discount_vs_market: Decimal
    discount_percentage: Decimal
    room_nights: int
    contract_volume_estimate: Decimal
    marge: Decimal
    vorsteuer_produkt: Decimal
    vorsteuer_tripz: Decimal
    netto_steuerzahlung: Decimal
    marge_nach_steuern: Decimal
    marge_nach_steuern_percentage: Decimal


def derive(
    pricing_input: PricingInput,
    actual_price: Decimal,
    tripz_multiplier: Decimal = DEFAULT_TRIPZ_MULTIPLIER,
) -> DerivedMetrics:
    """Derive all deal metrics from a normalized input.

    Pure and total: zeros anywhere produce zeros, never a division error.

    Args:
        pricing_input: Normalized input in EUR
        actual_price: Resale price per room night (AI suggestion or override)
        tripz_multiplier: Share of the resale price payable by the resale
            channel, clamped into [0, 1]

    Returns:
        DerivedMetrics with every value rounded to cents
    """
    tripz = clamp_multiplier(tripz_multiplier)
    actual = _as_decimal(actual_price, ZERO)

    with localcontext() as ctx:
        ctx.prec = WORKING_PRECISION
        return _derive(pricing_input, actual, tripz)


def _derive(pricing_input: PricingInput, actual: Decimal, tripz: Decimal) -> DerivedMetrics:
    voucher = _finite(pricing_input.voucher_value)
    operational = _finite(pricing_input.operational_costs)
    average = _finite(pricing_input.average_price)
    project_costs = _finite(pricing_input.project_costs_gross)
    vat_rate = _finite(pricing_input.vat_rate)

    # Unit economics per room night
    net_price = _cents(voucher - operational)
    vat_amount = _cents((voucher - operational) * vat_rate)
    # Sum of the rounded parts so the identity holds to the cent
    total_price = net_price + vat_amount
    profit_margin_raw = (voucher - operational) - operational
    profit_margin = _cents(profit_margin_raw)
    margin_percentage = _cents(_ratio(profit_margin_raw, voucher) * HUNDRED)
    discount_raw = average - voucher
    discount_vs_market = _cents(discount_raw)
    discount_percentage = _cents(_ratio(discount_raw, average) * HUNDRED)

    # Deal level figures
    room_nights = 0
    if voucher > 0:
        room_nights = int((project_costs / voucher).to_integral_value(rounding=ROUND_HALF_UP))

    contract_volume_raw = room_nights * (actual * tripz) * CONTRACT_VOLUME_UPLIFT
    marge_raw = contract_volume_raw - project_costs
    vorsteuer_produkt_raw = project_costs * PRODUCT_VAT_RATE
    vorsteuer_tripz_raw = (contract_volume_raw * PRODUCT_VAT_RATE) * TRIPZ_VAT_SHARE
    netto_steuerzahlung_raw = vorsteuer_produkt_raw - vorsteuer_tripz_raw
    marge_nach_steuern_raw = marge_raw - max(ZERO, netto_steuerzahlung_raw)

    return DerivedMetrics(
        net_price=net_price,
        vat_amount=vat_amount,
        total_price=total_price,
        profit_margin=profit_margin,
        margin_percentage=margin_percentage,
        discount_vs_market=discount_vs_market,
        discount_percentage=discount_percentage,
        room_nights=room_nights,
        contract_volume_estimate=_cents(contract_volume_raw),
        marge=_cents(marge_raw),
        vorsteuer_produkt=_cents(vorsteuer_produkt_raw),
        vorsteuer_tripz=_cents(vorsteuer_tripz_raw),
        netto_steuerzahlung=_cents(netto_steuerzahlung_raw),
        marge_nach_steuern=_cents(marge_nach_steuern_raw),
        marge_nach_steuern_percentage=_cents(_ratio(marge_raw, contract_volume_raw) * HUNDRED),
    )


def clamp_multiplier(value) -> Decimal:
    """Read a tripz multiplier, clamped into [0, 1].

    A value that is not a finite number falls back to the default.
    """
    multiplier = _as_decimal(value, DEFAULT_TRIPZ_MULTIPLIER)
    if multiplier < 0 or multiplier > 1:
        clamped = min(max(multiplier, ZERO), Decimal("1"))
        logger.warning("Tripz multiplier %s outside [0, 1], using %s", multiplier, clamped)
        return clamped
    return multiplier


def _as_decimal(value, default: Decimal) -> Decimal:
    try:
        amount = Decimal(str(value)) if isinstance(value, float) else Decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        amount = None
    if amount is None or not amount.is_finite():
        logger.warning("Not a finite number: %r, using %s", value, default)
        return default
    return amount


def _finite(value: Decimal) -> Decimal:
    return value if value.is_finite() else ZERO


def _cents(value: Decimal) -> Decimal:
    try:
        return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        logger.warning("Derived value %s cannot be held in cents, using 0", value)
        return ZERO


def _ratio(numerator: Decimal, denominator: Decimal) -> Decimal:
    if denominator == 0:
        return ZERO
    return Decimal(numerator) / Decimal(denominator)
