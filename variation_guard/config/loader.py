"""
Configuration management and loading.

Handles the cost table, admission limits, pacing, provider and storage
settings.
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from variation_guard.core.pricing import CostTable


class RateLimitBackend(Enum):
    """Where rate windows are kept."""
    MEMORY = "memory"
    SQLITE = "sqlite"
    REDIS = "redis"


@dataclass(frozen=True)
class RateLimitConfig:
    """Per-requester admission window."""
    max_requests: int = 20
    window_seconds: int = 3600
    backend: RateLimitBackend = RateLimitBackend.SQLITE
    redis_url: Optional[str] = None

    def __post_init__(self):
        """Validate limits and backend settings."""
        if self.max_requests <= 0:
            raise ValueError("max_requests must be > 0")
        if self.window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")
        if self.backend == RateLimitBackend.REDIS and not self.redis_url:
            raise ValueError("redis_url is required when backend is 'redis'")


@dataclass(frozen=True)
class DispatchConfig:
    """Pacing and deadline of generation dispatch."""
    pacing_seconds: float = 2.0
    request_timeout_seconds: Optional[float] = None

    def __post_init__(self):
        if self.pacing_seconds < 0:
            raise ValueError("pacing_seconds must be >= 0")
        if self.request_timeout_seconds is not None and self.request_timeout_seconds <= 0:
            raise ValueError("request_timeout_seconds must be > 0")


@dataclass(frozen=True)
class GenerationConfig:
    """Provider settings for generation and descriptions."""
    model: str = "gpt-image-1"
    description_model: str = "gpt-4o-mini"
    api_key_env: str = "OPENAI_API_KEY"
    describe_variants: bool = True
    call_timeout_seconds: float = 120.0


@dataclass(frozen=True)
class StorageConfig:
    """Database and artifact locations."""
    db_path: str = "variation_guard.db"
    artifact_dir: str = "artifacts"


@dataclass(frozen=True)
class VariationConfig:
    """Complete application configuration."""
    costs: CostTable
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    dispatch: DispatchConfig = field(default_factory=DispatchConfig)
    generation: GenerationConfig = field(default_factory=GenerationConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    max_source_image_bytes: int = 2 * 1024 * 1024
    credit_packs: Dict[str, int] = field(default_factory=lambda: dict(DEFAULT_CREDIT_PACKS))

    def get_pack_credits(self, pack: str) -> int:
        """Credits granted by a named pack."""
        if pack not in self.credit_packs:
            raise ValueError(f"Unknown credit pack: {pack}")
        return self.credit_packs[pack]


DEFAULT_CREDIT_PACKS = {"starter": 5, "popular": 15, "pro": 50}


def default_config() -> VariationConfig:
    """Configuration used when no file is given."""
    return VariationConfig(costs=CostTable())


def load_config(path: str) -> VariationConfig:
    """Load and validate configuration from a YAML file.

    Strict validation ensures no silent misconfiguration of prices or limits.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated VariationConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a dictionary")

    allowed_top_keys = {'costs', 'rate_limit', 'dispatch', 'generation', 'storage', 'limits', 'credit_packs'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    if 'costs' not in raw_config:
        raise ValueError("Missing required 'costs' section")

    costs_data = _section(raw_config, 'costs')
    _reject_unknown(costs_data, 'costs', {
        'base_variation_cost', 'outfit_variation_cost', 'format_variation_cost', 'multi_animal_cost'
    })
    costs = CostTable(**{
        key: _positive_int(costs_data, key, 'costs')
        for key in costs_data
    })

    rate_data = _section(raw_config, 'rate_limit')
    _reject_unknown(rate_data, 'rate_limit', {'max_requests', 'window_seconds', 'backend', 'redis_url'})
    backend_str = rate_data.get('backend', RateLimitBackend.SQLITE.value)
    try:
        backend = RateLimitBackend(str(backend_str).lower())
    except ValueError:
        valid = [b.value for b in RateLimitBackend]
        raise ValueError(f"'backend' in rate_limit must be one of: {valid}")
    rate_limit = RateLimitConfig(
        max_requests=_positive_int(rate_data, 'max_requests', 'rate_limit', default=20),
        window_seconds=_positive_int(rate_data, 'window_seconds', 'rate_limit', default=3600),
        backend=backend,
        redis_url=rate_data.get('redis_url')
    )

    dispatch_data = _section(raw_config, 'dispatch')
    _reject_unknown(dispatch_data, 'dispatch', {'pacing_seconds', 'request_timeout_seconds'})
    pacing = dispatch_data.get('pacing_seconds', 2.0)
    if not _is_number(pacing) or pacing < 0:
        raise ValueError("'pacing_seconds' in dispatch must be >= 0")
    timeout = dispatch_data.get('request_timeout_seconds')
    if timeout is not None and (not _is_number(timeout) or timeout <= 0):
        raise ValueError("'request_timeout_seconds' in dispatch must be > 0")
    dispatch = DispatchConfig(
        pacing_seconds=float(pacing),
        request_timeout_seconds=float(timeout) if timeout is not None else None
    )

    generation_data = _section(raw_config, 'generation')
    _reject_unknown(generation_data, 'generation', {
        'model', 'description_model', 'api_key_env', 'describe_variants', 'call_timeout_seconds'
    })
    defaults = GenerationConfig()
    for key in ('model', 'description_model', 'api_key_env'):
        value = generation_data.get(key, getattr(defaults, key))
        if not isinstance(value, str) or not value.strip():
            raise ValueError(f"'{key}' in generation must be a non-empty string")
    describe = generation_data.get('describe_variants', True)
    if not isinstance(describe, bool):
        raise ValueError("'describe_variants' in generation must be a boolean")
    call_timeout = generation_data.get('call_timeout_seconds', defaults.call_timeout_seconds)
    if not _is_number(call_timeout) or call_timeout <= 0:
        raise ValueError("'call_timeout_seconds' in generation must be > 0")
    generation = GenerationConfig(
        model=generation_data.get('model', defaults.model),
        description_model=generation_data.get('description_model', defaults.description_model),
        api_key_env=generation_data.get('api_key_env', defaults.api_key_env),
        describe_variants=describe,
        call_timeout_seconds=float(call_timeout)
    )

    storage_data = _section(raw_config, 'storage')
    _reject_unknown(storage_data, 'storage', {'db_path', 'artifact_dir'})
    storage = StorageConfig(
        db_path=str(storage_data.get('db_path', StorageConfig.db_path)),
        artifact_dir=str(storage_data.get('artifact_dir', StorageConfig.artifact_dir))
    )

    limits_data = _section(raw_config, 'limits')
    _reject_unknown(limits_data, 'limits', {'max_source_image_bytes'})
    max_bytes = _positive_int(limits_data, 'max_source_image_bytes', 'limits', default=2 * 1024 * 1024)

    packs_data = raw_config.get('credit_packs')
    if packs_data is None:
        credit_packs = dict(DEFAULT_CREDIT_PACKS)
    else:
        if not isinstance(packs_data, dict) or not packs_data:
            raise ValueError("'credit_packs' must be a non-empty dictionary")
        credit_packs = {
            str(name): _positive_int(packs_data, name, 'credit_packs')
            for name in packs_data
        }

    return VariationConfig(
        costs=costs,
        rate_limit=rate_limit,
        dispatch=dispatch,
        generation=generation,
        storage=storage,
        max_source_image_bytes=max_bytes,
        credit_packs=credit_packs
    )


def _section(raw_config: Dict[str, Any], name: str) -> Dict[str, Any]:
    data = raw_config.get(name) or {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    return data


def _reject_unknown(data: Dict[str, Any], path: str, allowed: set) -> None:
    unknown_keys = set(data.keys()) - allowed
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")


def _positive_int(data: Dict[str, Any], key: str, path: str, default: Optional[int] = None) -> int:
    if key not in data:
        if default is None:
            raise ValueError(f"Missing required '{key}' in {path}")
        return default
    value = data[key]
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValueError(f"'{key}' in {path} must be a positive integer")
    return value


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)
