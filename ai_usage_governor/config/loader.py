"""
Configuration management and loading.

Handles rate limit policy, retention, request defaults and pricing
overrides for the governance layer.
"""

from dataclasses import dataclass, field, replace
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from ai_usage_governor.core.pricing import ModelPricing
from ai_usage_governor.storage.models import PROVIDERS


@dataclass(frozen=True)
class RateLimitPolicy:
    """Request and token ceilings for one provider."""
    requests_per_hour: int = 60
    requests_per_day: int = 500
    tokens_per_hour: int = 50000
    tokens_per_day: int = 500000

    def __post_init__(self):
        """Validate ceilings are positive."""
        for name in ("requests_per_hour", "requests_per_day",
                     "tokens_per_hour", "tokens_per_day"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be > 0")


@dataclass(frozen=True)
class LedgerConfig:
    """Usage ledger retention."""
    max_records: int = 1000

    def __post_init__(self):
        if self.max_records <= 0:
            raise ValueError("max_records must be > 0")


@dataclass(frozen=True)
class RequestConfig:
    """Defaults applied to provider calls."""
    timeout_seconds: float = 60.0
    default_temperature: float = 0.7
    default_max_tokens: int = 2000

    def __post_init__(self):
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        if not 0 <= self.default_temperature <= 2:
            raise ValueError("default_temperature must be between 0 and 2")
        if self.default_max_tokens <= 0:
            raise ValueError("default_max_tokens must be > 0")


@dataclass(frozen=True)
class CredentialConfig:
    default_monthly_budget: float = 50.0

    def __post_init__(self):
        if self.default_monthly_budget <= 0:
            raise ValueError("default_monthly_budget must be > 0")


@dataclass(frozen=True)
class GovernanceConfig:
    """Complete governance configuration."""
    rate_limits: RateLimitPolicy = field(default_factory=RateLimitPolicy)
    providers: Dict[str, RateLimitPolicy] = field(default_factory=dict)
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    requests: RequestConfig = field(default_factory=RequestConfig)
    credentials: CredentialConfig = field(default_factory=CredentialConfig)
    pricing: Dict[str, ModelPricing] = field(default_factory=dict)

    def policy_for(self, provider: str) -> RateLimitPolicy:
        """Get the policy for a provider, using the shared limits if not overridden."""
        return self.providers.get(provider, self.rate_limits)


def default_config() -> GovernanceConfig:
    return GovernanceConfig()


def load_governance_config(path: str) -> GovernanceConfig:
    """Load and validate governance configuration from YAML file.

    Strict validation ensures no silent misconfigurations that could
    let requests slip past a ceiling the operator meant to set.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated GovernanceConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Governance config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if raw_config is None:
        return default_config()
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a dictionary")

    allowed_top_keys = {'rate_limits', 'providers', 'ledger', 'requests', 'credentials', 'pricing'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    rate_limits = RateLimitPolicy(**_section(raw_config, 'rate_limits', _POLICY_KEYS, int))

    providers_data = raw_config.get('providers') or {}
    if not isinstance(providers_data, dict):
        raise ValueError("'providers' must be a dictionary")
    providers = {}
    for provider, overrides in providers_data.items():
        if provider not in PROVIDERS:
            raise ValueError(f"Unknown provider '{provider}', expected one of: {list(PROVIDERS)}")
        values = _section(providers_data, provider, _POLICY_KEYS, int, path=f"providers.{provider}")
        providers[provider] = replace(rate_limits, **values)

    ledger = LedgerConfig(**_section(raw_config, 'ledger', {'max_records'}, int))
    requests = RequestConfig(**_section(
        raw_config, 'requests',
        {'timeout_seconds', 'default_temperature', 'default_max_tokens'},
        (int, float)
    ))
    if isinstance(requests.default_max_tokens, float):
        raise ValueError("'default_max_tokens' in requests must be an integer")
    credentials = CredentialConfig(**_section(
        raw_config, 'credentials', {'default_monthly_budget'}, (int, float)
    ))

    return GovernanceConfig(
        rate_limits=rate_limits,
        providers=providers,
        ledger=ledger,
        requests=requests,
        credentials=credentials,
        pricing=_parse_pricing(raw_config.get('pricing') or {})
    )


_POLICY_KEYS = {'requests_per_hour', 'requests_per_day', 'tokens_per_hour', 'tokens_per_day'}


def _section(data: Dict, key: str, allowed_keys: set, types: Any,
             path: Optional[str] = None) -> Dict[str, Any]:
    """Extract and type-check an optional mapping section.

    Args:
        data: Parent mapping
        key: Section name
        allowed_keys: Keys the section may contain
        types: Accepted value type(s)
        path: Path for error messages

    Returns:
        The section's values, ready to pass as keyword arguments

    Raises:
        ValueError: If the section is invalid
    """
    path = path or key
    section = data.get(key)
    if section is None:
        return {}
    if not isinstance(section, dict):
        raise ValueError(f"'{path}' must be a dictionary")

    unknown_keys = set(section.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")

    for name, value in section.items():
        # bool is an int subclass, reject it explicitly
        if isinstance(value, bool) or not isinstance(value, types):
            raise ValueError(f"'{name}' in {path} must be a number")
    return dict(section)


def _parse_pricing(data: Dict) -> Dict[str, ModelPricing]:
    if not isinstance(data, dict):
        raise ValueError("'pricing' must be a dictionary")

    pricing = {}
    for model, entry in data.items():
        path = f"pricing.{model}"
        if not isinstance(entry, dict):
            raise ValueError(f"'{path}' must be a dictionary")
        unknown_keys = set(entry.keys()) - {'input_per_1k', 'output_per_1k'}
        if unknown_keys:
            raise ValueError(f"Unknown keys in {path}: {unknown_keys}")
        if 'input_per_1k' not in entry:
            raise ValueError(f"Missing required 'input_per_1k' in {path}")

        values = []
        for name in ('input_per_1k', 'output_per_1k'):
            value = entry.get(name, 0)
            if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
                raise ValueError(f"'{name}' in {path} must be >= 0")
            values.append(Decimal(str(value)))

        pricing[str(model)] = ModelPricing(
            prompt_cost_per_1k=values[0],
            completion_cost_per_1k=values[1]
        )
    return pricing
