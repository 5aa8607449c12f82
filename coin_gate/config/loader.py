"""
Configuration management and loading.

Handles service settings from YAML and provider secrets from the environment.
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

import yaml


class ProviderName(Enum):
    """Supported image generation providers."""
    STABILITY = "stability"
    OPENAI = "openai"


@dataclass(frozen=True)
class PricingConfig:
    """Coin pricing for generation."""
    unit_cost: int = 10
    max_samples: int = 10

    def __post_init__(self):
        """Validate pricing values are positive."""
        if self.unit_cost <= 0:
            raise ValueError("unit_cost must be > 0")
        if self.max_samples <= 0:
            raise ValueError("max_samples must be > 0")


@dataclass(frozen=True)
class RateLimitConfig:
    """Global outbound token bucket settings."""
    capacity: int = 5
    refill_per_second: float = 1.0
    acquire_timeout: Optional[float] = 30.0

    def __post_init__(self):
        """Validate rate limit values."""
        if self.capacity <= 0:
            raise ValueError("capacity must be > 0")
        if self.refill_per_second <= 0:
            raise ValueError("refill_per_second must be > 0")
        if self.acquire_timeout is not None and self.acquire_timeout <= 0:
            raise ValueError("acquire_timeout must be > 0")


@dataclass(frozen=True)
class RetryConfig:
    """Provider retry policy."""
    max_attempts: int = 3
    base_delay: float = 0.5
    max_delay: float = 8.0

    def __post_init__(self):
        """Validate retry values."""
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay < 0:
            raise ValueError("base_delay must be >= 0")
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must be >= base_delay")


@dataclass(frozen=True)
class ProviderConfig:
    """Which provider to call and how."""
    name: ProviderName = ProviderName.STABILITY
    api_base: Optional[str] = None
    model: Optional[str] = None
    api_key_env: Optional[str] = None
    request_timeout: float = 60.0

    def __post_init__(self):
        """Validate provider values."""
        if self.request_timeout <= 0:
            raise ValueError("request_timeout must be > 0")


@dataclass(frozen=True)
class StorageConfig:
    """Where balances, metadata and payloads live."""
    db_path: str = "coin_gate.db"
    artifact_dir: str = "artifacts"


@dataclass(frozen=True)
class ServiceConfig:
    """Complete service configuration."""
    provider: ProviderConfig
    storage: StorageConfig
    pricing: PricingConfig = field(default_factory=PricingConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)


def default_config() -> ServiceConfig:
    """Configuration used when no file is given."""
    return ServiceConfig(provider=ProviderConfig(), storage=StorageConfig())


_SECTION_KEYS = {
    "pricing": {"unit_cost", "max_samples"},
    "rate_limit": {"capacity", "refill_per_second", "acquire_timeout"},
    "retry": {"max_attempts", "base_delay", "max_delay"},
    "provider": {"name", "api_base", "model", "api_key_env", "request_timeout"},
    "storage": {"db_path", "artifact_dir"},
}
_REQUIRED_SECTIONS = {"provider", "storage"}


def load_service_config(path: str) -> ServiceConfig:
    """Load and validate service configuration from a YAML file.

    Strict validation ensures no silent misconfigurations that could
    lead to mispriced generations or an unthrottled provider.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated ServiceConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Service config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a dictionary")

    unknown_keys = set(raw_config.keys()) - set(_SECTION_KEYS)
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    for section in sorted(_REQUIRED_SECTIONS):
        if section not in raw_config:
            raise ValueError(f"Missing required '{section}' section")

    sections = {name: _section(raw_config, name) for name in _SECTION_KEYS}

    pricing = sections["pricing"]
    rate_limit = sections["rate_limit"]
    retry = sections["retry"]
    provider = sections["provider"]
    storage = sections["storage"]

    return ServiceConfig(
        pricing=PricingConfig(
            unit_cost=_number(pricing, "unit_cost", "pricing", int, PricingConfig.unit_cost),
            max_samples=_number(pricing, "max_samples", "pricing", int, PricingConfig.max_samples),
        ),
        rate_limit=RateLimitConfig(
            capacity=_number(rate_limit, "capacity", "rate_limit", int, RateLimitConfig.capacity),
            refill_per_second=_number(
                rate_limit, "refill_per_second", "rate_limit", float, RateLimitConfig.refill_per_second
            ),
            acquire_timeout=_optional_number(
                rate_limit, "acquire_timeout", "rate_limit", RateLimitConfig.acquire_timeout
            ),
        ),
        retry=RetryConfig(
            max_attempts=_number(retry, "max_attempts", "retry", int, RetryConfig.max_attempts),
            base_delay=_number(retry, "base_delay", "retry", float, RetryConfig.base_delay),
            max_delay=_number(retry, "max_delay", "retry", float, RetryConfig.max_delay),
        ),
        provider=_parse_provider(provider),
        storage=StorageConfig(
            db_path=_string(storage, "db_path", "storage", StorageConfig.db_path),
            artifact_dir=_string(storage, "artifact_dir", "storage", StorageConfig.artifact_dir),
        ),
    )


def _section(raw_config: Dict, name: str) -> Dict[str, Any]:
    """Return a validated section dictionary (empty when absent)."""
    data = raw_config.get(name) or {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    unknown_keys = set(data.keys()) - _SECTION_KEYS[name]
    if unknown_keys:
        raise ValueError(f"Unknown keys in {name}: {unknown_keys}")
    return data


def _number(data: Dict, key: str, path: str, kind: type, default):
    if key not in data:
        return default
    value = data[key]
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"'{key}' in {path} must be a number")
    if kind is int and not isinstance(value, int):
        raise ValueError(f"'{key}' in {path} must be an integer")
    return kind(value)


def _optional_number(data: Dict, key: str, path: str, default):
    if key in data and data[key] is None:
        return None
    return _number(data, key, path, float, default)


def _string(data: Dict, key: str, path: str, default: Optional[str]) -> Optional[str]:
    if key not in data:
        return default
    value = data[key]
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"'{key}' in {path} must be a non-empty string")
    return value


def _parse_provider(data: Dict) -> ProviderConfig:
    """Parse and validate the provider section.

    Raises:
        ValueError: If configuration is invalid
    """
    name_str = data.get("name", ProviderConfig.name.value)
    if not isinstance(name_str, str):
        raise ValueError("'name' in provider must be a string")
    try:
        name = ProviderName(name_str.lower())
    except ValueError:
        valid_names = [provider.value for provider in ProviderName]
        raise ValueError(f"'name' in provider must be one of: {valid_names}")

    return ProviderConfig(
        name=name,
        api_base=_string(data, "api_base", "provider", None),
        model=_string(data, "model", "provider", None),
        api_key_env=_string(data, "api_key_env", "provider", None),
        request_timeout=_number(data, "request_timeout", "provider", float, ProviderConfig.request_timeout),
    )
