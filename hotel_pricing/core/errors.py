"""
Error types shared across the pricing engine.

Only the explicit validation failures are raised to callers. Lenient input
coercion is reported through InvalidInput warnings instead.
"""

from dataclasses import dataclass
from typing import Any


class PricingError(Exception):
    """Base class for all pricing engine errors."""


class RateUnavailable(PricingError):
    """Raised when the exchange rate provider cannot deliver rates."""


class StaleApprovalWrite(PricingError):
    """Raised when a write is based on an outdated calculation version."""

    def __init__(self, calculation_id: str, expected_version: int, actual_version: int):
        super().__init__(
            f"Calculation {calculation_id} is at version {actual_version}, "
            f"write was based on version {expected_version}"
        )
        self.calculation_id = calculation_id
        self.expected_version = expected_version
        self.actual_version = actual_version


class InvalidApprovalTransition(PricingError):
    """Raised when an approval status change is not allowed."""

    def __init__(self, message: str, current_status: str):
        super().__init__(message)
        self.current_status = current_status


class TerminalStateViolation(InvalidApprovalTransition):
    """Raised when automatic evaluation tries to overwrite a human decision."""


class MissingJustification(PricingError, ValueError):
    """Raised when an override or rejection lacks a written justification."""


class PriceSuggestionError(PricingError):
    """Raised when the price suggestion service returns unusable data."""


@dataclass(frozen=True)
class InvalidInput:
    """Warning emitted when a raw field was replaced by a default."""
    field: str
    raw_value: Any
    default_used: Any
    message: str
