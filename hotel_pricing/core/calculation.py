"""
Calculation orchestration.

Runs the pipeline normalize -> convert -> derive -> evaluate and manages the
versioned lifecycle of a Calculation: live recalculation, overrides and the
manual approval transitions.

Every write that changes a Calculation produces a new instance with the
version incremented by one. Writes that name an expected version are refused
with StaleApprovalWrite when the calculation has moved on since.
"""

import hashlib
import json
import logging
import uuid
from dataclasses import asdict, dataclass, replace
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, FrozenSet, Mapping, Optional, Tuple

from . import approval as approval_rules
from .approval import ApprovalDecision, ApprovalStatus, ApprovalThresholds, DEFAULT_THRESHOLDS
from .currency import BASE_CURRENCY, FALLBACK_SNAPSHOT, ExchangeRateSnapshot, convert, to_eur_input
from .derivation import DEFAULT_TRIPZ_MULTIPLIER, DerivedMetrics, clamp_multiplier, derive
from .errors import InvalidApprovalTransition, InvalidInput, StaleApprovalWrite, TerminalStateViolation
from .normalizer import DEFAULT_VAT_RATE, PricingInput, normalize
from .overrides import OverrideEntry, append_entry, create_entry

logger = logging.getLogger(__name__)

DEFAULT_JUSTIFICATION = "Calculation requires approval based on business rules"


@dataclass(frozen=True)
class ComputeResult:
    """Output of a single pipeline run."""
    derived: DerivedMetrics
    approval: ApprovalDecision
    pricing_input: PricingInput  # after conversion to EUR
    actual_price: Decimal  # in EUR
    is_fallback: bool
    rates_reliable: bool = True


@dataclass(frozen=True)
class Calculation:
    """A priced deal with its approval state and override history.

    pricing_input and actual_price are stored in EUR once ingested.
    """
    id: str
    pricing_input: PricingInput
    actual_price: Decimal
    tripz_multiplier: Decimal
    derived: DerivedMetrics
    approval: ApprovalDecision
    created_at: datetime
    overrides: Tuple[OverrideEntry, ...] = ()
    version: int = 1
    input_hash: str = ""
    decision_input_hash: Optional[str] = None
    warnings: Tuple[InvalidInput, ...] = ()
    rates_stale: bool = False

    @property
    def overridden_fields(self) -> FrozenSet[str]:
        """Names of all values that were manually overridden."""
        return frozenset(entry.field_name for entry in self.overrides)

    @property
    def inputs_changed_since_decision(self) -> bool:
        """True if the inputs differ from those the approver decided on."""
        return self.decision_input_hash is not None and self.decision_input_hash != self.input_hash


@dataclass(frozen=True)
class ApprovalRequest:
    """Payload handed to the approval workflow."""
    calculation_id: str
    metrics_snapshot: Dict[str, Any]
    business_justification: str
    input_hash: str
    reasons: Tuple[str, ...]


def compute(
    pricing_input: PricingInput,
    actual_price,
    tripz_multiplier=DEFAULT_TRIPZ_MULTIPLIER,
    snapshot: ExchangeRateSnapshot = FALLBACK_SNAPSHOT,
    thresholds: ApprovalThresholds = DEFAULT_THRESHOLDS,
    now: Optional[datetime] = None,
) -> ComputeResult:
    """Run derivation and approval evaluation for one input.

    The input and actual price are converted to EUR first when they are in
    another currency.

    Args:
        pricing_input: Normalized input in any supported currency
        actual_price: Resale price per room night in the input's currency
        tripz_multiplier: Share of the resale price payable by the channel
        snapshot: Exchange rates for the ingestion conversion
        thresholds: Approval limits
        now: Evaluation timestamp, defaults to the current time

    Returns:
        ComputeResult with metrics, decision and rate provenance
    """
    converted = to_eur_input(pricing_input, snapshot)
    actual = convert(Decimal(str(actual_price)), pricing_input.currency_code, BASE_CURRENCY, snapshot)
    if not converted.reliable:
        logger.warning(
            "Could not convert %s input to EUR, deriving in the original currency",
            pricing_input.currency_code,
        )

    derived = derive(converted.pricing_input, actual.amount, tripz_multiplier)
    decision = approval_rules.evaluate(derived, converted.pricing_input, thresholds, now=now)
    if decision.requires_approval:
        logger.info("Approval required: %s", "; ".join(decision.reasons))

    return ComputeResult(
        derived=derived,
        approval=decision,
        pricing_input=converted.pricing_input,
        actual_price=actual.amount,
        is_fallback=converted.is_fallback,
        rates_reliable=converted.reliable and actual.reliable,
    )


def compute_input_hash(pricing_input: PricingInput, actual_price, tripz_multiplier) -> str:
    """SHA-256 over the values that influence the approval outcome."""
    key_fields = {
        "stars": pricing_input.stars,
        "average_price": str(pricing_input.average_price),
        "voucher_value": str(pricing_input.voucher_value),
        "project_costs_gross": str(pricing_input.project_costs_gross),
        "operational_costs": str(pricing_input.operational_costs),
        "vat_rate": str(pricing_input.vat_rate),
        "currency_code": pricing_input.currency_code,
        "actual_price": str(actual_price),
        "tripz_multiplier": str(tripz_multiplier),
    }
    data = json.dumps(key_fields, sort_keys=True)
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


def new_calculation(
    raw: Mapping[str, Any],
    actual_price,
    tripz_multiplier=DEFAULT_TRIPZ_MULTIPLIER,
    snapshot: ExchangeRateSnapshot = FALLBACK_SNAPSHOT,
    thresholds: ApprovalThresholds = DEFAULT_THRESHOLDS,
    voucher_defaults: Optional[Mapping[int, Decimal]] = None,
    default_vat_rate: Decimal = DEFAULT_VAT_RATE,
    calculation_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Calculation:
    """Normalize a raw record and create the first version of a Calculation."""
    normalized = normalize(raw, voucher_defaults=voucher_defaults, default_vat_rate=default_vat_rate)
    tripz = clamp_multiplier(tripz_multiplier)
    result = compute(
        normalized.pricing_input, actual_price, tripz,
        snapshot=snapshot, thresholds=thresholds, now=now,
    )
    return Calculation(
        id=calculation_id or uuid.uuid4().hex,
        pricing_input=result.pricing_input,
        actual_price=result.actual_price,
        tripz_multiplier=tripz,
        derived=result.derived,
        approval=result.approval,
        created_at=now or datetime.now(),
        input_hash=compute_input_hash(result.pricing_input, result.actual_price, tripz),
        warnings=normalized.warnings,
        rates_stale=_rates_stale(normalized.pricing_input, result),
    )


def recalculate(
    calculation: Calculation,
    pricing_input: Optional[PricingInput] = None,
    actual_price=None,
    tripz_multiplier=None,
    snapshot: ExchangeRateSnapshot = FALLBACK_SNAPSHOT,
    thresholds: ApprovalThresholds = DEFAULT_THRESHOLDS,
    expected_version: Optional[int] = None,
    now: Optional[datetime] = None,
) -> Calculation:
    """Recompute a calculation after an input change.

    The approval status follows the fresh evaluation, except that an
    approved or rejected decision is kept as is.

    Raises:
        StaleApprovalWrite: If expected_version is given and outdated
    """
    _check_version(calculation, expected_version)

    new_input = pricing_input if pricing_input is not None else calculation.pricing_input
    new_actual = actual_price if actual_price is not None else calculation.actual_price
    new_tripz = clamp_multiplier(tripz_multiplier) if tripz_multiplier is not None else calculation.tripz_multiplier

    result = compute(new_input, new_actual, new_tripz, snapshot=snapshot, thresholds=thresholds, now=now)
    if new_input.currency_code != BASE_CURRENCY:
        rates_stale = _rates_stale(new_input, result)
    else:
        # Stored inputs are already in EUR, keep the ingestion flag
        rates_stale = calculation.rates_stale

    try:
        decision = approval_rules.apply_live_evaluation(calculation.approval, result.approval)
    except TerminalStateViolation as e:
        logger.warning("Calculation %s keeps its decision: %s", calculation.id, e)
        decision = calculation.approval

    return replace(
        calculation,
        pricing_input=result.pricing_input,
        actual_price=result.actual_price,
        tripz_multiplier=new_tripz,
        derived=result.derived,
        approval=decision,
        version=calculation.version + 1,
        input_hash=compute_input_hash(result.pricing_input, result.actual_price, new_tripz),
        rates_stale=rates_stale,
    )


def apply_override(
    calculation: Calculation,
    field_name: str,
    new_value,
    justification: Optional[str],
    expected_version: Optional[int] = None,
    thresholds: ApprovalThresholds = DEFAULT_THRESHOLDS,
    now: Optional[datetime] = None,
) -> Tuple[Calculation, OverrideEntry]:
    """Apply a manual correction and record it in the override ledger.

    Values are in EUR, like the stored calculation.

    Returns:
        Tuple of (updated calculation, new ledger entry)

    Raises:
        MissingJustification: If justification is empty; nothing is recorded
        ValueError: If the field cannot be overridden
        StaleApprovalWrite: If expected_version is given and outdated
    """
    _check_version(calculation, expected_version)

    if field_name == "actual_price":
        previous = calculation.actual_price
    elif field_name == "voucher_value":
        previous = calculation.pricing_input.voucher_value
    else:
        previous = Decimal("0")
    entry = create_entry(field_name, previous, new_value, justification, now=now)

    if field_name == "actual_price":
        updated = recalculate(calculation, actual_price=entry.new_value, thresholds=thresholds, now=now)
    else:
        new_input = calculation.pricing_input.with_override(field_name, entry.new_value)
        updated = recalculate(calculation, pricing_input=new_input, thresholds=thresholds, now=now)

    updated = replace(updated, overrides=append_entry(calculation.overrides, entry))
    return updated, entry


def create_approval_request(
    calculation: Calculation,
    business_justification: Optional[str] = None,
) -> ApprovalRequest:
    """Build the payload for the approval workflow.

    Raises:
        InvalidApprovalTransition: If the calculation needs no approval
    """
    if calculation.approval.status == ApprovalStatus.NONE_REQUIRED:
        raise InvalidApprovalTransition(
            "Calculation does not require approval",
            calculation.approval.status.value,
        )

    justification = (business_justification or "").strip()
    if not justification:
        justification = "; ".join(calculation.approval.reasons) or DEFAULT_JUSTIFICATION

    snapshot = asdict(calculation.derived)
    snapshot.update({
        "hotel_name": calculation.pricing_input.hotel_name,
        "stars": calculation.pricing_input.stars,
        "average_price": calculation.pricing_input.average_price,
        "voucher_value": calculation.pricing_input.voucher_value,
        "actual_price": calculation.actual_price,
        "tripz_multiplier": calculation.tripz_multiplier,
    })
    return ApprovalRequest(
        calculation_id=calculation.id,
        metrics_snapshot=snapshot,
        business_justification=justification,
        input_hash=calculation.input_hash,
        reasons=calculation.approval.reasons,
    )


def submit_for_approval(
    calculation: Calculation,
    expected_version: int,
    now: Optional[datetime] = None,
) -> Calculation:
    """Move a calculation from required_not_sent to pending."""
    _check_version(calculation, expected_version)
    decision = approval_rules.submit(calculation.approval, now=now)
    return replace(calculation, approval=decision, version=calculation.version + 1)


def record_decision(
    calculation: Calculation,
    expected_version: int,
    approved: bool,
    comment: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Calculation:
    """Record the approver's decision on a pending calculation."""
    _check_version(calculation, expected_version)
    decision = approval_rules.decide(calculation.approval, approved, comment, now=now)
    return replace(
        calculation,
        approval=decision,
        version=calculation.version + 1,
        decision_input_hash=calculation.input_hash,
    )


def resend_for_approval(
    calculation: Calculation,
    expected_version: int,
    now: Optional[datetime] = None,
) -> Calculation:
    """Resend a rejected calculation as a fresh pending request."""
    _check_version(calculation, expected_version)
    decision = approval_rules.resend(calculation.approval, now=now)
    return replace(
        calculation,
        approval=decision,
        version=calculation.version + 1,
        decision_input_hash=None,
    )


def _rates_stale(pricing_input: PricingInput, result: ComputeResult) -> bool:
    if pricing_input.currency_code == BASE_CURRENCY:
        return False
    return result.is_fallback or not result.rates_reliable


def _check_version(calculation: Calculation, expected_version: Optional[int]) -> None:
    if expected_version is not None and expected_version != calculation.version:
        logger.warning(
            "Stale write on calculation %s: expected version %s, found %s",
            calculation.id, expected_version, calculation.version,
        )
        raise StaleApprovalWrite(calculation.id, expected_version, calculation.version)
