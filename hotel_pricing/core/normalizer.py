"""
Input normalization for raw commercial deal data.

Raw records come from forms, spreadsheets and imports, so numbers arrive as
ints, floats or euro strings in German or plain notation. Parsing is lenient:
a field that cannot be used is replaced by a documented default, and every
such replacement is reported as an InvalidInput warning.
"""

import logging
import re
from dataclasses import dataclass, field, replace
from decimal import Decimal, InvalidOperation, ROUND_DOWN, ROUND_HALF_UP
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Tuple

from .errors import InvalidInput

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")

# Voucher value paid to the hotel when none is given, by star category
VOUCHER_DEFAULTS: Dict[int, Decimal] = {
    5: Decimal("50"),
    4: Decimal("40"),
    3: Decimal("30"),
    2: Decimal("25"),
    1: Decimal("20"),
}
FALLBACK_VOUCHER_VALUE = Decimal("30")
DEFAULT_VAT_RATE = Decimal("0.19")
DEFAULT_CURRENCY = "EUR"

# Accepted spellings for each field, first match wins
FIELD_ALIASES: Dict[str, Tuple[str, ...]] = {
    "hotel_name": ("hotel_name", "hotelName", "name"),
    "stars": ("stars",),
    "room_count": ("room_count", "roomCount"),
    "occupancy_rate": ("occupancy_rate", "occupancyRate"),
    "average_price": ("average_price", "averagePrice"),
    "voucher_value": ("voucher_value", "voucherValue", "voucherPrice", "voucher_price"),
    "project_costs_gross": (
        "project_costs_gross", "projectCostsGross", "projectCosts",
        "project_costs", "financingVolume",
    ),
    "operational_costs": ("operational_costs", "operationalCosts"),
    "vat_rate": ("vat_rate", "vatRate"),
    "currency_code": ("currency_code", "currencyCode", "currency"),
}

_CURRENCY_SYMBOLS = re.compile(r"[€$£¥%]")
_CURRENCY_CODE = re.compile(r"^[A-Z]{3}$")


@dataclass(frozen=True)
class PricingInput:
    """Normalized commercial inputs of one hotel deal.

    Monetary values are Decimals in the currency named by currency_code.
    vat_rate is a fraction (0.19 for 19 %).
    """
    hotel_name: str
    stars: int
    room_count: int
    occupancy_rate: Decimal
    average_price: Decimal
    voucher_value: Decimal
    project_costs_gross: Decimal
    operational_costs: Decimal
    vat_rate: Decimal
    currency_code: str = DEFAULT_CURRENCY
    overridden_fields: FrozenSet[str] = field(default_factory=frozenset)

    def with_override(self, field_name: str, value: Decimal) -> "PricingInput":
        """Return a copy with one field replaced and flagged as overridden."""
        return replace(
            self,
            **{field_name: value},
            overridden_fields=self.overridden_fields | {field_name},
        )


@dataclass(frozen=True)
class NormalizationResult:
    """Normalized input plus the warnings raised while producing it."""
    pricing_input: PricingInput
    warnings: Tuple[InvalidInput, ...]


def parse_euro(value: Any) -> Optional[Decimal]:
    """Parse a number or euro string into a Decimal rounded to cents.

    Supports: 60, 60.00, "60,00", "60,00 €", "50.001,00 €".

    Returns:
        The parsed amount, or None if the value is not a usable number
    """
    amount = parse_decimal(value)
    if amount is None:
        return None
    try:
        return amount.quantize(CENT, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        # More digits than the decimal context can hold in cents
        return None


def parse_decimal(value: Any) -> Optional[Decimal]:
    """Parse a number or numeric string without rounding."""
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, (int, float, Decimal)):
        try:
            amount = Decimal(str(value))
        except InvalidOperation:
            return None
    elif isinstance(value, str):
        cleaned = _CURRENCY_SYMBOLS.sub("", value).replace(" ", "").strip()
        if not cleaned or cleaned.lower() in ("null", "undefined", "nan"):
            return None
        if "." in cleaned and "," in cleaned:
            # German format: periods group thousands, comma is the decimal mark
            cleaned = cleaned.replace(".", "").replace(",", ".")
        elif "," in cleaned:
            cleaned = cleaned.replace(",", ".")
        try:
            amount = Decimal(cleaned)
        except InvalidOperation:
            return None
    else:
        return None

    if not amount.is_finite():
        return None
    return amount


def normalize(
    raw: Mapping[str, Any],
    voucher_defaults: Optional[Mapping[int, Decimal]] = None,
    default_vat_rate: Decimal = DEFAULT_VAT_RATE,
) -> NormalizationResult:
    """Validate and default a raw commercial input record.

    Stars outside 1..5 are passed through unchanged because the approval
    rules must be able to see them.

    Args:
        raw: Raw record with snake_case or camelCase keys
        voucher_defaults: Voucher value per star category used when the
            voucher value is absent
        default_vat_rate: VAT fraction used when no usable rate is given

    Returns:
        NormalizationResult with the immutable PricingInput and warnings
    """
    defaults = voucher_defaults if voucher_defaults is not None else VOUCHER_DEFAULTS
    warnings: List[InvalidInput] = []

    def _warn(name: str, raw_value: Any, default: Any, reason: str) -> None:
        warning = InvalidInput(
            field=name,
            raw_value=raw_value,
            default_used=default,
            message=f"{name}: {reason}, using {default}",
        )
        logger.warning("Invalid input for %s (%r): %s", name, raw_value, warning.message)
        warnings.append(warning)

    def _amount(name: str, default: Decimal, parse=parse_euro) -> Decimal:
        raw_value = _lookup(raw, name)
        if raw_value is None:
            _warn(name, raw_value, default, "missing")
            return default
        amount = parse(raw_value)
        if amount is None:
            _warn(name, raw_value, default, "not a number")
            return default
        if amount < 0:
            _warn(name, raw_value, default, "negative value not allowed")
            return default
        return amount

    def _count(name: str) -> int:
        raw_value = _lookup(raw, name)
        parsed = _parse_int(raw_value)
        if parsed is None:
            _warn(name, raw_value, 0, "missing" if raw_value is None else "not a whole number")
            return 0
        if parsed < 0:
            _warn(name, raw_value, 0, "negative value not allowed")
            return 0
        return parsed

    hotel_name_raw = _lookup(raw, "hotel_name")
    hotel_name = str(hotel_name_raw).strip() if hotel_name_raw is not None else ""

    stars_raw = _lookup(raw, "stars")
    stars = _parse_int(stars_raw)
    if stars is None:
        _warn("stars", stars_raw, 0, "missing" if stars_raw is None else "not a whole number")
        stars = 0

    room_count = _count("room_count")
    occupancy_rate = _amount("occupancy_rate", Decimal("0"), parse=parse_decimal)
    average_price = _amount("average_price", Decimal("0"))
    voucher_value = _amount("voucher_value", defaults.get(stars, FALLBACK_VOUCHER_VALUE))
    project_costs_gross = _amount("project_costs_gross", Decimal("0"))
    operational_costs = _amount("operational_costs", Decimal("0"))

    vat_rate = _amount("vat_rate", default_vat_rate, parse=parse_decimal)
    if vat_rate > 1:
        # Given as a percentage, e.g. 19 for 19 %
        vat_rate = vat_rate / Decimal("100")

    currency_raw = _lookup(raw, "currency_code")
    currency_code = str(currency_raw).strip().upper() if currency_raw is not None else ""
    if not _CURRENCY_CODE.match(currency_code):
        if currency_raw is not None:
            _warn("currency_code", currency_raw, DEFAULT_CURRENCY, "not an ISO currency code")
        currency_code = DEFAULT_CURRENCY

    pricing_input = PricingInput(
        hotel_name=hotel_name,
        stars=stars,
        room_count=room_count,
        occupancy_rate=occupancy_rate,
        average_price=average_price,
        voucher_value=voucher_value,
        project_costs_gross=project_costs_gross,
        operational_costs=operational_costs,
        vat_rate=vat_rate,
        currency_code=currency_code,
    )
    return NormalizationResult(pricing_input=pricing_input, warnings=tuple(warnings))


def _lookup(raw: Mapping[str, Any], name: str) -> Any:
    for key in FIELD_ALIASES[name]:
        value = raw.get(key)
        if value is not None and value != "":
            return value
    return None


def _parse_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    amount = parse_decimal(value)
    if amount is None:
        return None
    return int(amount.to_integral_value(rounding=ROUND_DOWN))
