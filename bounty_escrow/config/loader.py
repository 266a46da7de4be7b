"""
Configuration management and loading.

Engine settings come from a YAML file validated strictly so that a typo can
never silently change a fee or a quota.
"""

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict

import yaml


@dataclass(frozen=True)
class FeeConfig:
    """Platform fee and per-creator amount bounds (major currency units)."""
    platform_fee_rate: Decimal = Decimal("0.05")
    min_bounty_amount: Decimal = Decimal("10")
    max_bounty_amount: Decimal = Decimal("10000")

    def __post_init__(self):
        """Validate fee values."""
        if not Decimal("0") <= self.platform_fee_rate < Decimal("1"):
            raise ValueError("platform_fee_rate must be >= 0 and < 1")
        if self.min_bounty_amount <= 0:
            raise ValueError("min_bounty_amount must be > 0")
        if self.max_bounty_amount < self.min_bounty_amount:
            raise ValueError("max_bounty_amount must be >= min_bounty_amount")


@dataclass(frozen=True)
class TierLimits:
    """Per-period limits for one subscription tier; -1 means unlimited."""
    applications: int
    bounties: int

    def __post_init__(self):
        for name in ("applications", "bounties"):
            value = getattr(self, name)
            if value < -1:
                raise ValueError(f"{name} limit must be -1 (unlimited) or >= 0")


@dataclass(frozen=True)
class QuotaConfig:
    """Quota limits by tier."""
    free: TierLimits = field(default_factory=lambda: TierLimits(applications=3, bounties=2))
    premium: TierLimits = field(default_factory=lambda: TierLimits(applications=-1, bounties=-1))


@dataclass(frozen=True)
class EscrowConfig:
    """Escrow lifecycle and gateway call settings."""
    hold_days: int = 7
    gateway_timeout_seconds: float = 10.0
    read_attempts: int = 3
    retry_backoff_seconds: float = 0.5
    success_url: str = "https://example.com/bounties?payment=success&escrow={escrow_id}"
    cancel_url: str = "https://example.com/bounties?payment=canceled"
    onboarding_refresh_url: str = "https://example.com/creator-banking?refresh=true"
    onboarding_return_url: str = "https://example.com/creator-banking?success=true"
    # Worker threads for gateway calls. A call that times out keeps its worker
    # until the vendor returns, so this bounds how many hung calls are tolerated.
    gateway_max_workers: int = 8

    def __post_init__(self):
        if self.hold_days < 0:
            raise ValueError("hold_days must be >= 0")
        if self.gateway_timeout_seconds <= 0:
            raise ValueError("gateway_timeout_seconds must be > 0")
        if self.read_attempts < 1:
            raise ValueError("read_attempts must be >= 1")
        if self.retry_backoff_seconds < 0:
            raise ValueError("retry_backoff_seconds must be >= 0")
        if self.gateway_max_workers < 1:
            raise ValueError("gateway_max_workers must be >= 1")


@dataclass(frozen=True)
class EngineConfig:
    """Complete engine configuration."""
    currency: str = "usd"
    fees: FeeConfig = field(default_factory=FeeConfig)
    quota: QuotaConfig = field(default_factory=QuotaConfig)
    escrow: EscrowConfig = field(default_factory=EscrowConfig)

    def __post_init__(self):
        if len(self.currency) != 3 or not self.currency.isalpha():
            raise ValueError("currency must be a three-letter ISO code")


DEFAULT_CONFIG = EngineConfig()


def load_engine_config(path: str) -> EngineConfig:
    """Load and validate engine configuration from a YAML file.

    Sections that are omitted fall back to ``DEFAULT_CONFIG``; keys that are
    present are validated strictly.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated EngineConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Engine config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration root must be a dictionary")

    _reject_unknown(raw_config, {'currency', 'fees', 'quota', 'escrow'}, "configuration")

    currency = raw_config.get('currency', DEFAULT_CONFIG.currency)
    if not isinstance(currency, str):
        raise ValueError("'currency' must be a string")

    return EngineConfig(
        currency=currency.lower(),
        fees=_parse_fees(_section(raw_config, 'fees')),
        quota=_parse_quota(_section(raw_config, 'quota')),
        escrow=_parse_escrow(_section(raw_config, 'escrow')),
    )


def _section(raw_config: Dict[str, Any], name: str) -> Dict[str, Any]:
    data = raw_config.get(name, {})
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    return data


def _reject_unknown(data: Dict[str, Any], allowed: set, path: str) -> None:
    unknown_keys = set(data.keys()) - allowed
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")


def _decimal(value: Any, path: str) -> Decimal:
    if isinstance(value, bool) or not isinstance(value, (int, float, str, Decimal)):
        raise ValueError(f"'{path}' must be a number")
    try:
        return Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"'{path}' must be a number")


def _integer(value: Any, path: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"'{path}' must be an integer")
    return value


def _parse_fees(data: Dict[str, Any]) -> FeeConfig:
    _reject_unknown(data, {'platform_fee_rate', 'min_bounty_amount', 'max_bounty_amount'}, "fees")
    defaults = DEFAULT_CONFIG.fees
    return FeeConfig(
        platform_fee_rate=_decimal(data.get('platform_fee_rate', defaults.platform_fee_rate), "fees.platform_fee_rate"),
        min_bounty_amount=_decimal(data.get('min_bounty_amount', defaults.min_bounty_amount), "fees.min_bounty_amount"),
        max_bounty_amount=_decimal(data.get('max_bounty_amount', defaults.max_bounty_amount), "fees.max_bounty_amount"),
    )


def _parse_quota(data: Dict[str, Any]) -> QuotaConfig:
    _reject_unknown(data, {'free', 'premium'}, "quota")
    defaults = DEFAULT_CONFIG.quota
    tiers = {}
    for tier_name in ('free', 'premium'):
        tier_data = data.get(tier_name)
        if tier_data is None:
            tiers[tier_name] = getattr(defaults, tier_name)
            continue
        if not isinstance(tier_data, dict):
            raise ValueError(f"'quota.{tier_name}' must be a dictionary")
        _reject_unknown(tier_data, {'applications', 'bounties'}, f"quota.{tier_name}")
        for key in ('applications', 'bounties'):
            if key not in tier_data:
                raise ValueError(f"Missing required '{key}' in quota.{tier_name}")
        tiers[tier_name] = TierLimits(
            applications=_integer(tier_data['applications'], f"quota.{tier_name}.applications"),
            bounties=_integer(tier_data['bounties'], f"quota.{tier_name}.bounties"),
        )
    return QuotaConfig(**tiers)


def _parse_escrow(data: Dict[str, Any]) -> EscrowConfig:
    allowed = {
        'hold_days', 'gateway_timeout_seconds', 'read_attempts',
        'retry_backoff_seconds', 'success_url', 'cancel_url',
        'onboarding_refresh_url', 'onboarding_return_url', 'gateway_max_workers',
    }
    _reject_unknown(data, allowed, "escrow")
    defaults = DEFAULT_CONFIG.escrow

    for key in ('success_url', 'cancel_url', 'onboarding_refresh_url', 'onboarding_return_url'):
        if key in data and not isinstance(data[key], str):
            raise ValueError(f"'escrow.{key}' must be a string")

    return EscrowConfig(
        hold_days=_integer(data.get('hold_days', defaults.hold_days), "escrow.hold_days"),
        gateway_timeout_seconds=float(_decimal(
            data.get('gateway_timeout_seconds', defaults.gateway_timeout_seconds),
            "escrow.gateway_timeout_seconds",
        )),
        read_attempts=_integer(data.get('read_attempts', defaults.read_attempts), "escrow.read_attempts"),
        retry_backoff_seconds=float(_decimal(
            data.get('retry_backoff_seconds', defaults.retry_backoff_seconds),
            "escrow.retry_backoff_seconds",
        )),
        success_url=data.get('success_url', defaults.success_url),
        cancel_url=data.get('cancel_url', defaults.cancel_url),
        onboarding_refresh_url=data.get('onboarding_refresh_url', defaults.onboarding_refresh_url),
        onboarding_return_url=data.get('onboarding_return_url', defaults.onboarding_return_url),
        gateway_max_workers=_integer(
            data.get('gateway_max_workers', defaults.gateway_max_workers), "escrow.gateway_max_workers",
        ),
    )
