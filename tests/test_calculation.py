"""
Unit tests for calculation orchestration.

Tests the compute pipeline, overrides, versioning and approval lifecycle.
"""

from datetime import datetime
from decimal import Decimal

import pytest

from hotel_pricing.core.approval import ApprovalStatus
from hotel_pricing.core.calculation import (
    apply_override,
    compute,
    create_approval_request,
    new_calculation,
    recalculate,
    record_decision,
    resend_for_approval,
    submit_for_approval,
)
from hotel_pricing.core.currency import FALLBACK_SNAPSHOT, make_snapshot
from hotel_pricing.core.errors import (
    InvalidApprovalTransition,
    MissingJustification,
    StaleApprovalWrite,
)
from hotel_pricing.core.normalizer import normalize

NOW = datetime(2025, 5, 1, 9, 0)
LIVE = make_snapshot({"USD": 1.25}, datetime(2025, 5, 1, 8, 0))

# 3-star deal, voucher value from the star default
HEALTHY = {
    "hotel_name": "Hotel Adler",
    "stars": 3,
    "average_price": 45,
    "project_costs_gross": 20000,
    "vat_rate": 19,
}

# 5-star deal with market price and voucher above the caps
NEEDS_APPROVAL = {
    "hotel_name": "Grand Palace",
    "stars": 5,
    "average_price": 80,
    "voucher_value": 50,
    "project_costs_gross": 20000,
    "vat_rate": 19,
}


class TestCompute:
    """Test the single entry point."""

    def test_compute_returns_metrics_and_decision(self):
        """Test derivation and evaluation in one run."""
        pricing_input = normalize(HEALTHY).pricing_input
        result = compute(pricing_input, Decimal("60"), Decimal("0.75"), FALLBACK_SNAPSHOT, now=NOW)

        assert result.derived.room_nights == 667
        assert result.derived.contract_volume_estimate == Decimal("33016.50")
        assert result.approval.status == ApprovalStatus.NONE_REQUIRED
        assert result.approval.evaluated_at == NOW

    def test_compute_converts_foreign_input(self):
        """Test that foreign-currency input is derived in EUR."""
        raw = dict(HEALTHY, currency_code="USD", average_price=56.25, project_costs_gross=25000)
        pricing_input = normalize(raw).pricing_input
        result = compute(pricing_input, Decimal("75"), snapshot=LIVE)

        assert result.pricing_input.currency_code == "EUR"
        assert result.pricing_input.average_price == Decimal("45.00")
        assert result.pricing_input.voucher_value == Decimal("24.00")
        assert result.actual_price == Decimal("60.00")
        assert result.is_fallback is False
        assert result.rates_reliable is True


class TestNewCalculation:
    """Test creating the first version of a calculation."""

    def test_first_version(self):
        """Test identity, version and hash of a new calculation."""
        calculation = new_calculation(HEALTHY, Decimal("60"), calculation_id="calc-1", now=NOW)

        assert calculation.id == "calc-1"
        assert calculation.version == 1
        assert calculation.created_at == NOW
        assert calculation.pricing_input.voucher_value == Decimal("30")
        assert calculation.derived.room_nights == 667
        assert len(calculation.input_hash) == 64
        assert calculation.overrides == ()
        assert calculation.rates_stale is False

    def test_warnings_are_kept(self):
        """Test that defaulted fields are reported on the calculation."""
        calculation = new_calculation(HEALTHY, Decimal("60"))
        fields = {w.field for w in calculation.warnings}
        assert "voucher_value" in fields

    def test_generated_ids_are_unique(self):
        """Test that ids are generated when not given."""
        first = new_calculation(HEALTHY, Decimal("60"))
        second = new_calculation(HEALTHY, Decimal("60"))
        assert first.id != second.id

    def test_multiplier_is_stored_clamped(self):
        """Test that the stored and hashed multiplier is the clamped one."""
        above = new_calculation(HEALTHY, Decimal("60"), tripz_multiplier=1.5, calculation_id="calc-1", now=NOW)
        one = new_calculation(HEALTHY, Decimal("60"), tripz_multiplier=1, calculation_id="calc-1", now=NOW)

        assert above.tripz_multiplier == Decimal("1")
        assert above.input_hash == one.input_hash
        assert above.derived == one.derived

    def test_recalculated_multiplier_is_stored_clamped(self):
        """Test that recalculation clamps a new multiplier before storing it."""
        calculation = new_calculation(HEALTHY, Decimal("60"), now=NOW)
        updated = recalculate(calculation, tripz_multiplier=Decimal("-0.5"), now=NOW)

        assert updated.tripz_multiplier == Decimal("0")
        assert updated.derived.contract_volume_estimate == Decimal("0.00")

    def test_fallback_rates_mark_calculation_stale(self):
        """Test that foreign input converted with fallback rates is flagged."""
        raw = dict(HEALTHY, currency_code="USD")
        calculation = new_calculation(raw, Decimal("60"), snapshot=FALLBACK_SNAPSHOT)

        assert calculation.rates_stale is True
        assert calculation.pricing_input.currency_code == "EUR"

    def test_unknown_currency_marks_calculation_stale(self):
        """Test that unconvertible input is flagged instead of failing."""
        raw = dict(HEALTHY, currency_code="XYZ")
        calculation = new_calculation(raw, Decimal("60"), snapshot=LIVE)

        assert calculation.rates_stale is True
        assert calculation.pricing_input.currency_code == "XYZ"

    def test_input_hash_tracks_inputs(self):
        """Test that the hash changes with the inputs and only then."""
        first = new_calculation(HEALTHY, Decimal("60"))
        same = new_calculation(HEALTHY, Decimal("60"))
        other = new_calculation(HEALTHY, Decimal("61"))

        assert first.input_hash == same.input_hash
        assert first.input_hash != other.input_hash


class TestOverrides:
    """Test manual overrides on a calculation."""

    def test_override_without_justification_is_rejected(self):
        """Test that nothing is recorded when the justification is empty."""
        calculation = new_calculation(HEALTHY, Decimal("60"))

        with pytest.raises(MissingJustification):
            apply_override(calculation, "actual_price", Decimal("55"), "")

        assert calculation.overrides == ()
        assert calculation.version == 1

    def test_actual_price_override(self):
        """Test that an override recomputes and appends a ledger entry."""
        calculation = new_calculation(HEALTHY, Decimal("60"), now=NOW)
        updated, entry = apply_override(
            calculation, "actual_price", Decimal("66"), "Event weekend", expected_version=1, now=NOW,
        )

        assert entry.previous_value == Decimal("60")
        assert entry.new_value == Decimal("66")
        assert updated.overrides == (entry,)
        assert updated.overridden_fields == frozenset({"actual_price"})
        assert updated.actual_price == Decimal("66.00")
        assert updated.version == 2
        assert updated.derived.contract_volume_estimate == Decimal("36318.15")
        assert updated.input_hash != calculation.input_hash

    def test_voucher_override_flags_input(self):
        """Test that a voucher override re-enters derivation flagged."""
        calculation = new_calculation(HEALTHY, Decimal("60"))
        updated, _ = apply_override(calculation, "voucher_value", "25", "Negotiated rate")

        assert updated.pricing_input.voucher_value == Decimal("25")
        assert "voucher_value" in updated.pricing_input.overridden_fields
        assert updated.derived.room_nights == 800

    def test_override_can_trigger_approval(self):
        """Test that a lower price is evaluated live."""
        calculation = new_calculation(HEALTHY, Decimal("60"))
        updated, _ = apply_override(calculation, "actual_price", Decimal("35"), "Weak season")

        assert updated.approval.status == ApprovalStatus.REQUIRED_NOT_SENT

    def test_ledger_grows_in_order(self):
        """Test that consecutive overrides are all kept."""
        calculation = new_calculation(HEALTHY, Decimal("60"))
        first, a = apply_override(calculation, "actual_price", Decimal("58"), "One")
        second, b = apply_override(first, "actual_price", Decimal("57"), "Two")

        assert second.overrides == (a, b)
        assert b.previous_value == Decimal("58.00")

    def test_stale_override_is_refused(self):
        """Test that an override based on an old version is rejected."""
        calculation = new_calculation(HEALTHY, Decimal("60"))
        updated, _ = apply_override(calculation, "actual_price", Decimal("58"), "One")

        with pytest.raises(StaleApprovalWrite) as exc_info:
            apply_override(updated, "actual_price", Decimal("57"), "Two", expected_version=1)
        assert exc_info.value.actual_version == 2


class TestApprovalLifecycle:
    """Test submit, decide, resend and sticky decisions."""

    def test_submit_moves_to_pending(self):
        """Test required_not_sent -> pending with a version bump."""
        calculation = new_calculation(NEEDS_APPROVAL, Decimal("60"))
        submitted = submit_for_approval(calculation, expected_version=1)

        assert submitted.approval.status == ApprovalStatus.PENDING
        assert submitted.version == 2

    def test_stale_decision_is_refused(self):
        """Test that a decision based on an old version is rejected."""
        calculation = new_calculation(NEEDS_APPROVAL, Decimal("60"))
        submitted = submit_for_approval(calculation, expected_version=1)

        with pytest.raises(StaleApprovalWrite):
            record_decision(submitted, expected_version=1, approved=True)

    def test_approved_is_sticky_on_recalculation(self):
        """Test that recalculating never overwrites an approval."""
        calculation = new_calculation(NEEDS_APPROVAL, Decimal("60"))
        submitted = submit_for_approval(calculation, expected_version=1)
        approved = record_decision(submitted, expected_version=2, approved=True)

        changed_input = approved.pricing_input.with_override("voucher_value", Decimal("20"))
        recalculated = recalculate(approved, pricing_input=changed_input, expected_version=3)

        assert recalculated.approval.status == ApprovalStatus.APPROVED
        assert recalculated.version == 4
        assert recalculated.inputs_changed_since_decision is True
        assert approved.inputs_changed_since_decision is False

    def test_reject_and_resend(self):
        """Test rejected -> resend -> pending."""
        calculation = new_calculation(NEEDS_APPROVAL, Decimal("60"))
        submitted = submit_for_approval(calculation, expected_version=1)

        with pytest.raises(MissingJustification):
            record_decision(submitted, expected_version=2, approved=False)

        rejected = record_decision(submitted, expected_version=2, approved=False, comment="Margin too thin")
        assert rejected.approval.status == ApprovalStatus.REJECTED
        assert rejected.approval.admin_comment == "Margin too thin"

        resent = resend_for_approval(rejected, expected_version=3)
        assert resent.approval.status == ApprovalStatus.PENDING
        assert resent.decision_input_hash is None
        assert resent.version == 4

    def test_live_evaluation_clears_requirement(self):
        """Test required_not_sent -> none_required when inputs improve."""
        calculation = new_calculation(NEEDS_APPROVAL, Decimal("60"))
        fixed_input = calculation.pricing_input.with_override("voucher_value", Decimal("45"))
        fixed_input = fixed_input.with_override("average_price", Decimal("75"))

        recalculated = recalculate(calculation, pricing_input=fixed_input, actual_price=Decimal("120"))
        assert recalculated.approval.status == ApprovalStatus.NONE_REQUIRED


class TestApprovalRequest:
    """Test the payload for the approval workflow."""

    def test_request_payload(self):
        """Test metrics snapshot and default justification."""
        calculation = new_calculation(NEEDS_APPROVAL, Decimal("60"))
        request = create_approval_request(calculation)

        assert request.calculation_id == calculation.id
        assert request.input_hash == calculation.input_hash
        assert request.reasons == calculation.approval.reasons
        assert request.business_justification == "; ".join(calculation.approval.reasons)
        assert request.metrics_snapshot["room_nights"] == 400
        assert request.metrics_snapshot["hotel_name"] == "Grand Palace"
        assert request.metrics_snapshot["actual_price"] == Decimal("60")

    def test_explicit_justification(self):
        """Test that a given justification is used as is."""
        calculation = new_calculation(NEEDS_APPROVAL, Decimal("60"))
        request = create_approval_request(calculation, " Flagship partner ")
        assert request.business_justification == "Flagship partner"

    def test_request_without_requirement_fails(self):
        """Test that a deal without violations has nothing to request."""
        calculation = new_calculation(HEALTHY, Decimal("60"))
        with pytest.raises(InvalidApprovalTransition):
            create_approval_request(calculation)
