"""
Configuration management and loading.

Handles approval thresholds, pricing defaults and exchange rate settings.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, FrozenSet

import yaml

from hotel_pricing.clients.exchange_rates import DEFAULT_PROVIDER_URL
from hotel_pricing.core.approval import ApprovalThresholds, DEFAULT_THRESHOLDS
from hotel_pricing.core.currency import FALLBACK_SNAPSHOT, ExchangeRateSnapshot, make_snapshot
from hotel_pricing.core.derivation import DEFAULT_TRIPZ_MULTIPLIER
from hotel_pricing.core.normalizer import DEFAULT_VAT_RATE, VOUCHER_DEFAULTS


@dataclass(frozen=True)
class PricingDefaults:
    """Defaults applied while normalizing and deriving."""
    tripz_multiplier: Decimal = DEFAULT_TRIPZ_MULTIPLIER
    default_vat_rate: Decimal = DEFAULT_VAT_RATE
    voucher_defaults: Dict[int, Decimal] = field(default_factory=lambda: dict(VOUCHER_DEFAULTS))

    def __post_init__(self):
        """Validate defaults are in range."""
        if not (0 <= self.tripz_multiplier <= 1):
            raise ValueError("tripz_multiplier must be between 0 and 1")
        if not (0 <= self.default_vat_rate <= 1):
            raise ValueError("default_vat_rate must be between 0 and 1")


@dataclass(frozen=True)
class RatesConfig:
    """Exchange rate provider settings."""
    provider_url: str = DEFAULT_PROVIDER_URL
    timeout_seconds: float = 5.0
    fallback: ExchangeRateSnapshot = FALLBACK_SNAPSHOT

    def __post_init__(self):
        """Validate timeout is positive."""
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")


@dataclass(frozen=True)
class PricingConfig:
    """Complete engine configuration."""
    approval: ApprovalThresholds = DEFAULT_THRESHOLDS
    pricing: PricingDefaults = field(default_factory=PricingDefaults)
    rates: RatesConfig = field(default_factory=RatesConfig)


def default_config() -> PricingConfig:
    """Built-in configuration used when no file is given."""
    return PricingConfig()


def load_pricing_config(path: str) -> PricingConfig:
    """Load and validate engine configuration from a YAML file.

    Every section is optional and falls back to the built-in defaults, but
    keys that are present are validated strictly so a typo in a threshold
    can never silently disable an approval rule.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated PricingConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Pricing config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a dictionary")

    allowed_top_keys = {'approval', 'pricing', 'rates'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    return PricingConfig(
        approval=_parse_approval(_section(raw_config, 'approval')),
        pricing=_parse_pricing(_section(raw_config, 'pricing')),
        rates=_parse_rates(_section(raw_config, 'rates')),
    )


def _section(raw_config: Dict, name: str) -> Dict:
    data = raw_config.get(name) or {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    return data


def _check_keys(data: Dict, allowed: set, path: str) -> None:
    unknown_keys = set(data.keys()) - allowed
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")


def _parse_approval(data: Dict) -> ApprovalThresholds:
    """Parse the approval section into thresholds."""
    _check_keys(data, {
        'allowed_stars', 'market_price_caps', 'voucher_caps',
        'min_margin_after_tax_percent', 'max_project_cost', 'project_cost_factor',
    }, "approval")

    defaults = DEFAULT_THRESHOLDS
    allowed_stars: FrozenSet[int] = defaults.allowed_stars
    if 'allowed_stars' in data:
        stars = data['allowed_stars']
        if not isinstance(stars, list) or not stars:
            raise ValueError("'allowed_stars' in approval must be a non-empty list")
        allowed_stars = frozenset(_star(s, "approval.allowed_stars") for s in stars)

    return ApprovalThresholds(
        allowed_stars=allowed_stars,
        market_price_caps=_star_table(data, 'market_price_caps', defaults.market_price_caps, "approval"),
        voucher_caps=_star_table(data, 'voucher_caps', defaults.voucher_caps, "approval"),
        min_margin_after_tax_percent=_decimal(
            data, 'min_margin_after_tax_percent', defaults.min_margin_after_tax_percent, "approval"),
        max_project_cost=_decimal(data, 'max_project_cost', defaults.max_project_cost, "approval"),
        project_cost_factor=_decimal(data, 'project_cost_factor', defaults.project_cost_factor, "approval"),
    )


def _parse_pricing(data: Dict) -> PricingDefaults:
    """Parse the pricing section into defaults."""
    _check_keys(data, {'tripz_multiplier', 'default_vat_rate', 'voucher_defaults'}, "pricing")
    return PricingDefaults(
        tripz_multiplier=_decimal(data, 'tripz_multiplier', DEFAULT_TRIPZ_MULTIPLIER, "pricing"),
        default_vat_rate=_decimal(data, 'default_vat_rate', DEFAULT_VAT_RATE, "pricing"),
        voucher_defaults=_star_table(data, 'voucher_defaults', VOUCHER_DEFAULTS, "pricing"),
    )


def _parse_rates(data: Dict) -> RatesConfig:
    """Parse the rates section, including an optional fallback table."""
    _check_keys(data, {'provider_url', 'timeout_seconds', 'fallback'}, "rates")

    provider_url = data.get('provider_url', DEFAULT_PROVIDER_URL)
    if not isinstance(provider_url, str) or not provider_url.startswith(("http://", "https://")):
        raise ValueError("'provider_url' in rates must be an http(s) URL")

    timeout = data.get('timeout_seconds', 5.0)
    if isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0:
        raise ValueError("'timeout_seconds' in rates must be > 0")

    fallback = FALLBACK_SNAPSHOT
    if 'fallback' in data:
        fallback_data = data['fallback']
        if not isinstance(fallback_data, dict):
            raise ValueError("'fallback' in rates must be a dictionary")
        _check_keys(fallback_data, {'fetched_at', 'rates'}, "rates.fallback")
        if 'fetched_at' not in fallback_data:
            raise ValueError("Missing required 'fetched_at' in rates.fallback")
        if 'rates' not in fallback_data or not isinstance(fallback_data['rates'], dict):
            raise ValueError("'rates' in rates.fallback must be a dictionary")
        rates = {
            str(currency): _positive(value, f"rates.fallback.rates.{currency}")
            for currency, value in fallback_data['rates'].items()
        }
        fallback = make_snapshot(rates, _timestamp(fallback_data['fetched_at']), is_fallback=True)

    return RatesConfig(provider_url=provider_url, timeout_seconds=float(timeout), fallback=fallback)


def _star(value: Any, path: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or not 1 <= value <= 5:
        raise ValueError(f"Star categories in {path} must be integers from 1 to 5")
    return value


def _star_table(data: Dict, key: str, default: Dict[int, Decimal], path: str) -> Dict[int, Decimal]:
    if key not in data:
        return dict(default)
    table = data[key]
    if not isinstance(table, dict):
        raise ValueError(f"'{key}' in {path} must be a dictionary")
    return {
        _star(stars, f"{path}.{key}"): _positive(value, f"{path}.{key}.{stars}")
        for stars, value in table.items()
    }


def _decimal(data: Dict, key: str, default: Decimal, path: str) -> Decimal:
    if key not in data:
        return default
    value = data[key]
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
        raise ValueError(f"'{key}' in {path} must be a non-negative number")
    return Decimal(str(value))


def _positive(value: Any, path: str) -> Decimal:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ValueError(f"'{path}' must be > 0")
    try:
        return Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"'{path}' must be a number")


def _timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value)
        except ValueError:
            pass
    raise ValueError("'fetched_at' in rates.fallback must be an ISO date")
