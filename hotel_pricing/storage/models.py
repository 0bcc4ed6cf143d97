"""
Record mapping for the storage layer.

Converts Calculations to and from plain JSON-compatible dictionaries.
Decimals are stored as strings so no precision is lost.
"""

from dataclasses import asdict, fields
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional, Sequence

from hotel_pricing.core.approval import ApprovalDecision, ApprovalStatus
from hotel_pricing.core.calculation import Calculation
from hotel_pricing.core.derivation import DerivedMetrics
from hotel_pricing.core.errors import InvalidInput
from hotel_pricing.core.normalizer import PricingInput
from hotel_pricing.core.overrides import OverrideEntry


def to_record(calculation: Calculation) -> Dict[str, Any]:
    """Serialize a calculation, excluding the override ledger.

    The ledger is stored in its own append-only table.
    """
    pricing_input = calculation.pricing_input
    return {
        "id": calculation.id,
        "pricing_input": {
            "hotel_name": pricing_input.hotel_name,
            "stars": pricing_input.stars,
            "room_count": pricing_input.room_count,
            "occupancy_rate": str(pricing_input.occupancy_rate),
            "average_price": str(pricing_input.average_price),
            "voucher_value": str(pricing_input.voucher_value),
            "project_costs_gross": str(pricing_input.project_costs_gross),
            "operational_costs": str(pricing_input.operational_costs),
            "vat_rate": str(pricing_input.vat_rate),
            "currency_code": pricing_input.currency_code,
            "overridden_fields": sorted(pricing_input.overridden_fields),
        },
        "actual_price": str(calculation.actual_price),
        "tripz_multiplier": str(calculation.tripz_multiplier),
        "derived": {
            name: (value if isinstance(value, int) else str(value))
            for name, value in asdict(calculation.derived).items()
        },
        "approval": {
            "status": calculation.approval.status.value,
            "reasons": list(calculation.approval.reasons),
            "evaluated_at": calculation.approval.evaluated_at.isoformat(),
            "decided_at": _iso(calculation.approval.decided_at),
            "admin_comment": calculation.approval.admin_comment,
        },
        "created_at": calculation.created_at.isoformat(),
        "version": calculation.version,
        "input_hash": calculation.input_hash,
        "decision_input_hash": calculation.decision_input_hash,
        "warnings": [
            {
                "field": w.field,
                "raw_value": None if w.raw_value is None else str(w.raw_value),
                "default_used": str(w.default_used),
                "message": w.message,
            }
            for w in calculation.warnings
        ],
        "rates_stale": calculation.rates_stale,
    }


def from_record(record: Dict[str, Any], overrides: Sequence[OverrideEntry] = ()) -> Calculation:
    """Rebuild a calculation from its record and ledger entries."""
    raw_input = record["pricing_input"]
    pricing_input = PricingInput(
        hotel_name=raw_input["hotel_name"],
        stars=int(raw_input["stars"]),
        room_count=int(raw_input["room_count"]),
        occupancy_rate=Decimal(raw_input["occupancy_rate"]),
        average_price=Decimal(raw_input["average_price"]),
        voucher_value=Decimal(raw_input["voucher_value"]),
        project_costs_gross=Decimal(raw_input["project_costs_gross"]),
        operational_costs=Decimal(raw_input["operational_costs"]),
        vat_rate=Decimal(raw_input["vat_rate"]),
        currency_code=raw_input["currency_code"],
        overridden_fields=frozenset(raw_input.get("overridden_fields", [])),
    )

    derived_values = {}
    for metric in fields(DerivedMetrics):
        value = record["derived"][metric.name]
        derived_values[metric.name] = int(value) if metric.name == "room_nights" else Decimal(value)

    raw_approval = record["approval"]
    decision = ApprovalDecision(
        status=ApprovalStatus(raw_approval["status"]),
        reasons=tuple(raw_approval["reasons"]),
        evaluated_at=datetime.fromisoformat(raw_approval["evaluated_at"]),
        decided_at=_parse_iso(raw_approval.get("decided_at")),
        admin_comment=raw_approval.get("admin_comment"),
    )

    return Calculation(
        id=record["id"],
        pricing_input=pricing_input,
        actual_price=Decimal(record["actual_price"]),
        tripz_multiplier=Decimal(record["tripz_multiplier"]),
        derived=DerivedMetrics(**derived_values),
        approval=decision,
        created_at=datetime.fromisoformat(record["created_at"]),
        overrides=tuple(overrides),
        version=int(record["version"]),
        input_hash=record.get("input_hash", ""),
        decision_input_hash=record.get("decision_input_hash"),
        warnings=tuple(
            InvalidInput(
                field=w["field"],
                raw_value=w["raw_value"],
                default_used=w["default_used"],
                message=w["message"],
            )
            for w in record.get("warnings", [])
        ),
        rates_stale=bool(record.get("rates_stale", False)),
    )


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse_iso(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None
