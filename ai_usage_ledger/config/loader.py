"""
Configuration management and loading.

Handles application settings from YAML and the environment. Every section
is optional; unknown keys are always rejected.
"""

import os
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from ai_usage_ledger.core.errors import ConfigError
from ai_usage_ledger.core.pricing import DEFAULT_PRICING_TABLE, ModelPricing, PricingTable

CONFIG_ENV_VAR = "AI_USAGE_LEDGER_CONFIG"
DEFAULT_SOURCE_ROOT = "~/.claude/projects"
DEFAULT_DB_PATH = "~/.ai-usage-ledger/usage.db"
DEFAULT_ANCHOR = "projects"
DEFAULT_BATCH_SIZE = 500


@dataclass(frozen=True)
class SourceConfig:
    """Where session logs live."""
    root: Path = Path(DEFAULT_SOURCE_ROOT).expanduser()
    anchor: str = DEFAULT_ANCHOR


@dataclass(frozen=True)
class StorageConfig:
    db_path: str = str(Path(DEFAULT_DB_PATH).expanduser())


@dataclass(frozen=True)
class IngestionConfig:
    batch_size: int = DEFAULT_BATCH_SIZE

    def __post_init__(self):
        """Validate batch size is positive."""
        if self.batch_size <= 0:
            raise ConfigError("batch_size must be > 0")


@dataclass(frozen=True)
class Settings:
    """Complete application settings."""
    source: SourceConfig = field(default_factory=SourceConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    ingestion: IngestionConfig = field(default_factory=IngestionConfig)
    pricing: PricingTable = DEFAULT_PRICING_TABLE


def resolve_config_path(path: Optional[str] = None) -> Optional[str]:
    """Explicit path first, then the AI_USAGE_LEDGER_CONFIG environment variable."""
    return path or os.environ.get(CONFIG_ENV_VAR) or None


def load_settings(path: Optional[str] = None) -> Settings:
    """Load and validate settings from a YAML file.

    Strict validation ensures a typo in a key is reported instead of being
    silently replaced by a default.

    Args:
        path: Path to YAML configuration file; defaults apply when None

    Returns:
        Validated Settings object

    Raises:
        FileNotFoundError: If config file doesn't exist
        ConfigError: If YAML is invalid or configuration is invalid
    """
    if path is None:
        return Settings()

    config_path = Path(path).expanduser()
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in config file {path}: {e}")

    if raw_config is None:
        return Settings()
    _require_mapping(raw_config, "configuration")
    _reject_unknown(raw_config, {'source', 'storage', 'ingestion', 'pricing'}, "configuration")

    return Settings(
        source=_parse_source(raw_config.get('source') or {}),
        storage=_parse_storage(raw_config.get('storage') or {}),
        ingestion=_parse_ingestion(raw_config.get('ingestion') or {}),
        pricing=_parse_pricing(raw_config.get('pricing') or {}),
    )


def _require_mapping(data: Any, path: str) -> None:
    if not isinstance(data, dict):
        raise ConfigError(f"'{path}' must be a dictionary")


def _reject_unknown(data: Dict, allowed: set, path: str) -> None:
    unknown_keys = set(data.keys()) - allowed
    if unknown_keys:
        raise ConfigError(f"Unknown keys in {path}: {sorted(unknown_keys)}")


def _require_string(data: Dict, key: str, path: str) -> Optional[str]:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"'{key}' in {path} must be a non-empty string")
    return value


def _parse_source(data: Dict) -> SourceConfig:
    _require_mapping(data, "source")
    _reject_unknown(data, {'root', 'anchor'}, "source")
    root = _require_string(data, 'root', "source") or DEFAULT_SOURCE_ROOT
    anchor = _require_string(data, 'anchor', "source") or DEFAULT_ANCHOR
    return SourceConfig(root=Path(root).expanduser(), anchor=anchor)


def _parse_storage(data: Dict) -> StorageConfig:
    _require_mapping(data, "storage")
    _reject_unknown(data, {'db_path'}, "storage")
    db_path = _require_string(data, 'db_path', "storage") or DEFAULT_DB_PATH
    if db_path == ":memory:":
        return StorageConfig(db_path=db_path)
    return StorageConfig(db_path=str(Path(db_path).expanduser()))


def _parse_ingestion(data: Dict) -> IngestionConfig:
    _require_mapping(data, "ingestion")
    _reject_unknown(data, {'batch_size'}, "ingestion")
    batch_size = data.get('batch_size', DEFAULT_BATCH_SIZE)
    if not isinstance(batch_size, int) or isinstance(batch_size, bool):
        raise ConfigError("'batch_size' in ingestion must be an integer")
    return IngestionConfig(batch_size=batch_size)


def _parse_rate(value: Any, path: str) -> Decimal:
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise ConfigError(f"'{path}' must be a number")
    try:
        rate = Decimal(str(value))
    except InvalidOperation:
        raise ConfigError(f"'{path}' must be a number")
    if rate < 0:
        raise ConfigError(f"'{path}' must be >= 0")
    return rate


def _parse_model_pricing(data: Any, path: str) -> ModelPricing:
    _require_mapping(data, path)
    rate_keys = ('input', 'output', 'cache_write', 'cache_read')
    _reject_unknown(data, set(rate_keys) | {'display_name'}, path)
    for key in ('input', 'output'):
        if key not in data:
            raise ConfigError(f"Missing required '{key}' in {path}")

    display_name = data.get('display_name', "")
    if not isinstance(display_name, str):
        raise ConfigError(f"'display_name' in {path} must be a string")
    return ModelPricing(
        input_per_million=_parse_rate(data['input'], f"{path}.input"),
        output_per_million=_parse_rate(data['output'], f"{path}.output"),
        cache_write_per_million=_parse_rate(data.get('cache_write', 0), f"{path}.cache_write"),
        cache_read_per_million=_parse_rate(data.get('cache_read', 0), f"{path}.cache_read"),
        display_name=display_name,
    )


def _parse_pricing(data: Dict) -> PricingTable:
    """Extend the built-in pricing table with configured models and aliases.

    Rates are USD per million tokens.
    """
    _require_mapping(data, "pricing")
    _reject_unknown(data, {'version', 'models', 'aliases'}, "pricing")

    version = data.get('version')
    if version is not None and not isinstance(version, (str, int, float)):
        raise ConfigError("'version' in pricing must be a string")

    models_data = data.get('models') or {}
    _require_mapping(models_data, "pricing.models")
    prices = {
        str(name): _parse_model_pricing(entry, f"pricing.models.{name}")
        for name, entry in models_data.items()
    }

    aliases_data = data.get('aliases') or {}
    _require_mapping(aliases_data, "pricing.aliases")
    known_keys = set(DEFAULT_PRICING_TABLE.prices) | set(prices)
    for alias, target in aliases_data.items():
        if target not in known_keys:
            raise ConfigError(f"Alias '{alias}' points to unknown model '{target}'")

    return DEFAULT_PRICING_TABLE.extend(
        version=str(version) if version is not None else None,
        prices=prices,
        aliases={str(alias): target for alias, target in aliases_data.items()},
    )
