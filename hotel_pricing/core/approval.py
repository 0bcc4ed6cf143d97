"""
Approval rules and approval status transitions.

Rules (all are checked, every violation is reported):
- Rule 1: Star category not in the allowed set (3, 4, 5)
- Rule 2: Market price above the star-category cap
- Rule 3: Voucher value above the star-category cap
- Rule 4: Margin after tax below the minimum percentage
- Rule 5: Estimated project cost above the deal-size ceiling

Status flow:
none_required <-> required_not_sent  (automatic, live)
required_not_sent -> pending          (submit)
pending -> approved | rejected        (human decision, terminal)
rejected -> pending                   (resend)
"""

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Tuple

from .derivation import DerivedMetrics
from .errors import InvalidApprovalTransition, MissingJustification, TerminalStateViolation
from .normalizer import PricingInput

logger = logging.getLogger(__name__)


class ApprovalStatus(Enum):
    """Approval state of a calculation."""
    NONE_REQUIRED = "none_required"
    REQUIRED_NOT_SENT = "required_not_sent"
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"

    @property
    def is_terminal(self) -> bool:
        """Human decisions that automatic evaluation must never overwrite."""
        return self in (ApprovalStatus.APPROVED, ApprovalStatus.REJECTED)


@dataclass(frozen=True)
class ApprovalThresholds:
    """Limits the approval rules are checked against."""
    allowed_stars: FrozenSet[int] = frozenset({3, 4, 5})
    market_price_caps: Dict[int, Decimal] = field(default_factory=lambda: {
        3: Decimal("50"), 4: Decimal("60"), 5: Decimal("75"),
    })
    voucher_caps: Dict[int, Decimal] = field(default_factory=lambda: {
        3: Decimal("30"), 4: Decimal("35"), 5: Decimal("45"),
    })
    min_margin_after_tax_percent: Decimal = Decimal("27")
    max_project_cost: Decimal = Decimal("50000")
    project_cost_factor: Decimal = Decimal("2.74")

    def __post_init__(self):
        """Validate thresholds are usable."""
        if self.max_project_cost < 0:
            raise ValueError("max_project_cost cannot be negative")
        if self.project_cost_factor < 0:
            raise ValueError("project_cost_factor cannot be negative")


DEFAULT_THRESHOLDS = ApprovalThresholds()


@dataclass(frozen=True)
class RuleViolation:
    """One violated approval rule with the values that triggered it."""
    rule: str  # "1" through "5"
    observed_value: Decimal
    threshold: Decimal
    message: str


@dataclass(frozen=True)
class ApprovalDecision:
    """Outcome of the approval policy for one calculation."""
    status: ApprovalStatus
    reasons: Tuple[str, ...]
    evaluated_at: datetime
    decided_at: Optional[datetime] = None
    admin_comment: Optional[str] = None

    @property
    def requires_approval(self) -> bool:
        return self.status != ApprovalStatus.NONE_REQUIRED


def check_rules(
    metrics: DerivedMetrics,
    pricing_input: PricingInput,
    thresholds: ApprovalThresholds = DEFAULT_THRESHOLDS,
) -> List[RuleViolation]:
    """Check every approval rule and collect all violations in rule order.

    Args:
        metrics: Derived metrics of the deal
        pricing_input: Normalized input the metrics were derived from
        thresholds: Limits to check against

    Returns:
        List of violations (empty if the deal needs no approval)
    """
    violations = []
    stars = pricing_input.stars

    # Rule 1: Star category
    if stars not in thresholds.allowed_stars:
        allowed = ", ".join(str(s) for s in sorted(thresholds.allowed_stars))
        violations.append(RuleViolation(
            rule="1",
            observed_value=Decimal(stars),
            threshold=Decimal(min(thresholds.allowed_stars, default=0)),
            message=f"Star category {stars} is not allowed without approval (allowed: {allowed})"
        ))

    # Rule 2: Market price cap, only for categories that have one
    market_cap = thresholds.market_price_caps.get(stars)
    if market_cap is not None and pricing_input.average_price > market_cap:
        violations.append(RuleViolation(
            rule="2",
            observed_value=pricing_input.average_price,
            threshold=market_cap,
            message=(
                f"Market price €{pricing_input.average_price:,.2f} exceeds the "
                f"{stars}-star cap of €{market_cap:,.2f}"
            )
        ))

    # Rule 3: Voucher value cap
    voucher_cap = thresholds.voucher_caps.get(stars)
    if voucher_cap is not None and pricing_input.voucher_value > voucher_cap:
        violations.append(RuleViolation(
            rule="3",
            observed_value=pricing_input.voucher_value,
            threshold=voucher_cap,
            message=(
                f"Voucher value €{pricing_input.voucher_value:,.2f} exceeds the "
                f"{stars}-star cap of €{voucher_cap:,.2f}"
            )
        ))

    # Rule 4: Margin after tax floor
    margin = metrics.marge_nach_steuern_percentage
    if margin < thresholds.min_margin_after_tax_percent:
        violations.append(RuleViolation(
            rule="4",
            observed_value=margin,
            threshold=thresholds.min_margin_after_tax_percent,
            message=(
                f"Margin after tax {margin:.2f}% is below the minimum of "
                f"{thresholds.min_margin_after_tax_percent}%"
            )
        ))

    # Rule 5: Deal size ceiling on the estimated project cost
    estimated_cost = pricing_input.operational_costs * thresholds.project_cost_factor
    if estimated_cost > thresholds.max_project_cost:
        violations.append(RuleViolation(
            rule="5",
            observed_value=estimated_cost,
            threshold=thresholds.max_project_cost,
            message=(
                f"Estimated project cost €{estimated_cost:,.2f} exceeds the limit of "
                f"€{thresholds.max_project_cost:,.2f}"
            )
        ))

    return violations


def evaluate(
    metrics: DerivedMetrics,
    pricing_input: PricingInput,
    thresholds: ApprovalThresholds = DEFAULT_THRESHOLDS,
    now: Optional[datetime] = None,
) -> ApprovalDecision:
    """Evaluate the approval policy from scratch.

    Only ever yields none_required or required_not_sent; the manual states
    are reached through submit, decide and resend.
    """
    violations = check_rules(metrics, pricing_input, thresholds)
    status = ApprovalStatus.REQUIRED_NOT_SENT if violations else ApprovalStatus.NONE_REQUIRED
    return ApprovalDecision(
        status=status,
        reasons=tuple(v.message for v in violations),
        evaluated_at=now or datetime.now(),
    )


def apply_live_evaluation(
    current: Optional[ApprovalDecision],
    fresh: ApprovalDecision,
) -> ApprovalDecision:
    """Merge a fresh automatic evaluation into the current decision.

    Raises:
        TerminalStateViolation: If the current decision is approved or rejected
    """
    if current is None:
        return fresh
    if current.status.is_terminal:
        raise TerminalStateViolation(
            f"Automatic evaluation cannot overwrite a {current.status.value} decision",
            current.status.value,
        )
    if current.status == ApprovalStatus.PENDING:
        # Awaiting a human, keep the status but show the current reasons
        return replace(current, reasons=fresh.reasons, evaluated_at=fresh.evaluated_at)
    return fresh


def submit(decision: ApprovalDecision, now: Optional[datetime] = None) -> ApprovalDecision:
    """Send a calculation that needs approval to the approver."""
    if decision.status != ApprovalStatus.REQUIRED_NOT_SENT:
        raise InvalidApprovalTransition(
            f"Cannot submit a calculation in status {decision.status.value}",
            decision.status.value,
        )
    return replace(decision, status=ApprovalStatus.PENDING, evaluated_at=now or datetime.now())


def decide(
    decision: ApprovalDecision,
    approved: bool,
    comment: Optional[str] = None,
    now: Optional[datetime] = None,
) -> ApprovalDecision:
    """Record the approver's decision on a pending request.

    Raises:
        InvalidApprovalTransition: If the decision is not pending
        MissingJustification: If a rejection has no comment
    """
    if decision.status != ApprovalStatus.PENDING:
        raise InvalidApprovalTransition(
            f"Only pending requests can be decided, status is {decision.status.value}",
            decision.status.value,
        )
    if not approved and (comment is None or not comment.strip()):
        raise MissingJustification("A comment is required when rejecting")

    status = ApprovalStatus.APPROVED if approved else ApprovalStatus.REJECTED
    logger.info("Approval decision recorded: %s", status.value)
    return replace(
        decision,
        status=status,
        decided_at=now or datetime.now(),
        admin_comment=(comment.strip() or None) if comment else None,
    )


def resend(decision: ApprovalDecision, now: Optional[datetime] = None) -> ApprovalDecision:
    """Resend a rejected request, producing a fresh pending decision."""
    if decision.status != ApprovalStatus.REJECTED:
        raise InvalidApprovalTransition(
            f"Only rejected requests can be resent, status is {decision.status.value}",
            decision.status.value,
        )
    return ApprovalDecision(
        status=ApprovalStatus.PENDING,
        reasons=decision.reasons,
        evaluated_at=now or datetime.now(),
    )
