"""
Override ledger for manual corrections.

Every human change to an engine-suggested value is recorded with a written
justification. Entries are never modified or removed; the ledger is the only
audit trail of why a suggested value was not used.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional, Tuple

from .errors import MissingJustification
from .normalizer import parse_decimal

logger = logging.getLogger(__name__)

# Values a user may override, mapped to where they live
OVERRIDABLE_FIELDS = {
    "actual_price": "calculation",
    "voucher_value": "pricing_input",
}


@dataclass(frozen=True)
class OverrideEntry:
    """Immutable record of one manual correction."""
    field_name: str
    previous_value: Decimal
    new_value: Decimal
    justification: str
    timestamp: datetime


def create_entry(
    field_name: str,
    previous_value: Decimal,
    new_value,
    justification: Optional[str],
    now: Optional[datetime] = None,
) -> OverrideEntry:
    """Validate an override request and build its ledger entry.

    Args:
        field_name: Name of the overridden value
        previous_value: Value before the override
        new_value: Replacement value (number or numeric string)
        justification: Why the suggested value was not used
        now: Timestamp to record, defaults to the current time

    Returns:
        The new OverrideEntry

    Raises:
        MissingJustification: If justification is empty or blank
        ValueError: If the field cannot be overridden or the value is invalid
    """
    if justification is None or not justification.strip():
        raise MissingJustification(f"Override of {field_name} requires a justification")
    if field_name not in OVERRIDABLE_FIELDS:
        allowed = sorted(OVERRIDABLE_FIELDS)
        raise ValueError(f"Field '{field_name}' cannot be overridden, must be one of: {allowed}")

    value = parse_decimal(new_value)
    if value is None or value < 0:
        raise ValueError(f"Override value for {field_name} must be a non-negative number")

    entry = OverrideEntry(
        field_name=field_name,
        previous_value=previous_value,
        new_value=value,
        justification=justification.strip(),
        timestamp=now or datetime.now(),
    )
    logger.info("Override of %s: %s -> %s (%s)", field_name, previous_value, value, entry.justification)
    return entry


def append_entry(
    ledger: Tuple[OverrideEntry, ...],
    entry: OverrideEntry,
) -> Tuple[OverrideEntry, ...]:
    """Return a new ledger with the entry appended."""
    return ledger + (entry,)
