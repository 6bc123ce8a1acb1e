"""
Configuration management and loading.

Handles the YAML server configuration and environment variables.
"""

import os
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml
from dotenv import load_dotenv

from ..core.pricing import DEFAULT_PRICING_TABLE, ModelPricing, PricingTable
from ..core.sanitizer import DEFAULT_SENSITIVE_FIELDS

ENV_API_KEY = "PERPLEXITY_API_KEY"
ENV_CONFIG_PATH = "PERPLEXITY_MCP_CONFIG"
ENV_LOG_LEVEL = "LOG_LEVEL"

DEFAULT_BASE_URL = "https://api.perplexity.ai"
DEFAULT_MODEL = "sonar"


@dataclass(frozen=True)
class ApiConfig:
    """Outbound Perplexity API settings."""
    base_url: str = DEFAULT_BASE_URL
    default_model: str = DEFAULT_MODEL
    timeout_seconds: float = 60.0

    def __post_init__(self):
        if not self.base_url:
            raise ValueError("api.base_url cannot be empty")
        if not self.default_model:
            raise ValueError("api.default_model cannot be empty")
        if self.timeout_seconds <= 0:
            raise ValueError("api.timeout_seconds must be > 0")


@dataclass(frozen=True)
class RateLimitConfig:
    """Outbound request throttling."""
    max_requests: int = 50
    window_seconds: float = 60.0
    timeout_seconds: Optional[float] = 30.0

    def __post_init__(self):
        if self.max_requests <= 0:
            raise ValueError("rate_limit.max_requests must be > 0")
        if self.window_seconds <= 0:
            raise ValueError("rate_limit.window_seconds must be > 0")
        if self.timeout_seconds is not None and self.timeout_seconds <= 0:
            raise ValueError("rate_limit.timeout_seconds must be > 0")


@dataclass(frozen=True)
class IdentifierConfig:
    """Entity prefixes for generated identifiers."""
    prefixes: Dict[str, str] = field(default_factory=lambda: {"request": "REQ"})
    length: int = 6

    def __post_init__(self):
        if self.length <= 0:
            raise ValueError("identifiers.length must be > 0")
        if "request" not in self.prefixes:
            raise ValueError("identifiers.prefixes must define a 'request' prefix")


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "INFO"
    file: Optional[str] = None


@dataclass(frozen=True)
class ServerConfig:
    """Complete server configuration, immutable for the process lifetime."""
    api: ApiConfig = field(default_factory=ApiConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    pricing: PricingTable = DEFAULT_PRICING_TABLE
    sensitive_fields: Tuple[str, ...] = DEFAULT_SENSITIVE_FIELDS
    identifiers: IdentifierConfig = field(default_factory=IdentifierConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def load_server_config(path: Optional[str] = None) -> ServerConfig:
    """Load and validate server configuration.

    Without a path, PERPLEXITY_MCP_CONFIG is consulted; without either the
    built-in defaults are used. LOG_LEVEL overrides logging.level.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated ServerConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    load_dotenv()
    path = path or os.getenv(ENV_CONFIG_PATH)

    raw_config: Dict[str, Any] = {}
    if path:
        raw_config = _read_yaml(path)

    allowed_top_keys = {'api', 'rate_limit', 'pricing', 'sanitizer', 'identifiers', 'logging'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    api_data = _section(raw_config, 'api', {'base_url', 'default_model', 'timeout_seconds'})
    _check_strings(api_data, 'api', ('base_url', 'default_model'))
    _check_numbers(api_data, 'api', ('timeout_seconds',))
    api = ApiConfig(**api_data)

    rate_data = _section(raw_config, 'rate_limit', {'max_requests', 'window_seconds', 'timeout_seconds'})
    _check_numbers(rate_data, 'rate_limit', ('max_requests',), integer=True)
    _check_numbers(rate_data, 'rate_limit', ('window_seconds',))
    _check_numbers(rate_data, 'rate_limit', ('timeout_seconds',), nullable=True)
    rate_limit = RateLimitConfig(**rate_data)
    identifiers = _parse_identifiers(_section(raw_config, 'identifiers', {'prefixes', 'length'}))

    sanitizer_data = _section(raw_config, 'sanitizer', {'sensitive_fields'})
    sensitive_fields = DEFAULT_SENSITIVE_FIELDS
    if 'sensitive_fields' in sanitizer_data:
        fields_data = sanitizer_data['sensitive_fields']
        if not isinstance(fields_data, list) or not all(isinstance(f, str) and f for f in fields_data):
            raise ValueError("'sanitizer.sensitive_fields' must be a list of non-empty strings")
        sensitive_fields = tuple(f.lower() for f in fields_data)

    logging_data = _section(raw_config, 'logging', {'level', 'file'})
    level = os.getenv(ENV_LOG_LEVEL) or logging_data.get('level', 'INFO')
    logging_config = LoggingConfig(level=str(level).upper(), file=logging_data.get('file'))

    pricing = DEFAULT_PRICING_TABLE
    if 'pricing' in raw_config:
        pricing = _parse_pricing(raw_config['pricing'])

    return ServerConfig(
        api=api,
        rate_limit=rate_limit,
        pricing=pricing,
        sensitive_fields=sensitive_fields,
        identifiers=identifiers,
        logging=logging_config,
    )


def get_api_key() -> str:
    """Read the Perplexity API key from the environment.

    Raises:
        ValueError: If PERPLEXITY_API_KEY is unset or empty
    """
    load_dotenv()
    api_key = os.getenv(ENV_API_KEY, "").strip()
    if not api_key:
        raise ValueError(f"{ENV_API_KEY} environment variable is not set")
    return api_key


def _read_yaml(path: str) -> Dict[str, Any]:
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Server config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration file must contain a mapping")
    return raw_config


def _section(raw_config: Dict[str, Any], name: str, allowed_keys: set) -> Dict[str, Any]:
    """Return a validated optional section (empty dict when absent)."""
    data = raw_config.get(name, {})
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown {name} keys: {unknown_keys}")
    return data


def _check_numbers(
    data: Dict[str, Any],
    name: str,
    keys: Tuple[str, ...],
    integer: bool = False,
    nullable: bool = False,
) -> None:
    """Reject non-numeric values before range checks compare them."""
    for key in keys:
        if key not in data:
            continue
        value = data[key]
        if value is None and nullable:
            continue
        expected = (int,) if integer else (int, float)
        if isinstance(value, bool) or not isinstance(value, expected):
            kind = "an integer" if integer else "a number"
            raise ValueError(f"'{name}.{key}' must be {kind}")


def _check_strings(data: Dict[str, Any], name: str, keys: Tuple[str, ...]) -> None:
    for key in keys:
        if key in data and not isinstance(data[key], str):
            raise ValueError(f"'{name}.{key}' must be a string")


def _parse_identifiers(data: Dict[str, Any]) -> IdentifierConfig:
    prefixes = {"request": "REQ"}
    if 'prefixes' in data:
        raw_prefixes = data['prefixes']
        if not isinstance(raw_prefixes, dict):
            raise ValueError("'identifiers.prefixes' must be a dictionary")
        for entity_type, prefix in raw_prefixes.items():
            if not isinstance(prefix, str) or not prefix:
                raise ValueError(f"Prefix for entity '{entity_type}' must be a non-empty string")
        prefixes.update(raw_prefixes)

    length = data.get('length', 6)
    if not isinstance(length, int) or isinstance(length, bool):
        raise ValueError("'identifiers.length' must be an integer")
    return IdentifierConfig(prefixes=prefixes, length=length)


def _parse_pricing(data: Any) -> PricingTable:
    """Parse and validate the pricing table section.

    Raises:
        ValueError: If an entry is malformed
    """
    if not isinstance(data, dict) or not data:
        raise ValueError("'pricing' must be a non-empty dictionary")

    allowed_keys = {
        'input_per_mtok', 'output_per_mtok', 'request_fees',
        'citation_per_mtok', 'reasoning_per_mtok', 'search_query_per_1k',
    }
    prices = {}
    for model, entry in data.items():
        path = f"pricing.{model}"
        if not isinstance(entry, dict):
            raise ValueError(f"'{path}' must be a dictionary")
        unknown_keys = set(entry.keys()) - allowed_keys
        if unknown_keys:
            raise ValueError(f"Unknown keys in {path}: {unknown_keys}")
        for required in ('input_per_mtok', 'output_per_mtok'):
            if required not in entry:
                raise ValueError(f"Missing required '{required}' in {path}")

        fees = entry.get('request_fees', {}) or {}
        if not isinstance(fees, dict):
            raise ValueError(f"'{path}.request_fees' must be a dictionary")

        prices[model] = ModelPricing(
            input_per_mtok=_price(entry['input_per_mtok'], f"{path}.input_per_mtok"),
            output_per_mtok=_price(entry['output_per_mtok'], f"{path}.output_per_mtok"),
            request_fees={
                str(mode).lower(): _price(fee, f"{path}.request_fees.{mode}")
                for mode, fee in fees.items()
            },
            citation_per_mtok=_price(entry.get('citation_per_mtok', 0), f"{path}.citation_per_mtok"),
            reasoning_per_mtok=_price(entry.get('reasoning_per_mtok', 0), f"{path}.reasoning_per_mtok"),
            search_query_per_1k=_price(entry.get('search_query_per_1k', 0), f"{path}.search_query_per_1k"),
        )
    return PricingTable(prices)


def _price(value: Any, path: str) -> Decimal:
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise ValueError(f"'{path}' must be a number")
    try:
        price = Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"'{path}' must be a number")
    if not price.is_finite() or price < 0:
        raise ValueError(f"'{path}' must be >= 0")
    return price
