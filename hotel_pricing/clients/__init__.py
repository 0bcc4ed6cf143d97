"""
Clients for external collaborators.

Provides the exchange rate provider and the AI price suggestion service.
"""

from .exchange_rates import ExchangeRateProvider, RateRefresher, TaskEvent, TaskState
from .price_suggestion import PriceSuggestion, PriceSuggestionClient

__all__ = [
    "ExchangeRateProvider",
    "RateRefresher",
    "TaskEvent",
    "TaskState",
    "PriceSuggestion",
    "PriceSuggestionClient",
]
