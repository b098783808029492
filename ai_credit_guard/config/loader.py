"""
Configuration management and loading.

Reads resilience, credit and streaming settings from a YAML file. Every
section is optional and falls back to the built-in defaults, but whatever is
present is validated strictly: unknown keys and invalid values are errors.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from ..core.credit_calculator import DEFAULT_IMAGE_CREDITS, DEFAULT_TEXT_RATES, CreditRates
from ..resilience.circuit_breaker import CircuitBreakerConfig
from ..resilience.retry import RetryConfig

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "AI_CREDIT_GUARD_CONFIG"
DEFAULT_CONFIG_FILE = "ai-credit-guard.yaml"


@dataclass(frozen=True)
class StreamingConfig:
    """Stream handling limits."""
    timeout_ms: int = 30000
    max_buffer_size: int = 10000
    bill_partial_content: bool = True

    def __post_init__(self):
        if self.timeout_ms <= 0:
            raise ValueError("streaming timeout_ms must be > 0")
        if self.max_buffer_size <= 0:
            raise ValueError("streaming max_buffer_size must be > 0")


@dataclass(frozen=True)
class AppConfig:
    """Complete application configuration."""
    circuit_breaker: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    credits: CreditRates = field(default_factory=CreditRates)
    streaming: StreamingConfig = field(default_factory=StreamingConfig)


_SECTION_KEYS = {
    "circuit_breaker": {
        "failure_threshold", "success_threshold", "timeout_ms", "monitoring_period_ms",
    },
    "retry": {
        "max_retries", "initial_delay_ms", "max_delay_ms", "backoff_multiplier", "timeout_ms",
    },
    "credits": {"text", "image", "speech_per_1k_chars", "transcription_per_minute"},
    "streaming": {"timeout_ms", "max_buffer_size", "bill_partial_content"},
}


def load_config(path: str) -> AppConfig:
    """Load and validate configuration from a YAML file.

    Strict validation ensures no silent misconfiguration: a typo in a key
    would otherwise leave a default silently in effect.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated AppConfig object

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
        raise ValueError("Configuration must be a mapping")

    unknown_keys = set(raw_config.keys()) - set(_SECTION_KEYS)
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    sections = {
        name: _section(raw_config, name) for name in _SECTION_KEYS if name in raw_config
    }

    return AppConfig(
        circuit_breaker=_parse_circuit_breaker(sections.get("circuit_breaker", {})),
        retry=_parse_retry(sections.get("retry", {})),
        credits=_parse_credits(sections.get("credits", {})),
        streaming=_parse_streaming(sections.get("streaming", {})),
    )


def load_default_config() -> AppConfig:
    """Load the config named by AI_CREDIT_GUARD_CONFIG or ./ai-credit-guard.yaml.

    Returns the built-in defaults when no file exists. A file that exists but
    is invalid still raises.
    """
    path = os.environ.get(CONFIG_ENV_VAR) or DEFAULT_CONFIG_FILE
    if not Path(path).exists():
        logger.info(f"No config file at {path}, using built-in defaults")
        return AppConfig()
    logger.info(f"Loading config from {path}")
    return load_config(path)


def _section(raw_config: Dict[str, Any], name: str) -> Dict[str, Any]:
    data = raw_config[name]
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    unknown_keys = set(data.keys()) - _SECTION_KEYS[name]
    if unknown_keys:
        raise ValueError(f"Unknown {name} keys: {unknown_keys}")
    return data


def _number(data: Dict[str, Any], key: str, path: str, integer: bool = True) -> Optional[float]:
    """Read an optional numeric key; None when absent."""
    if key not in data:
        return None
    value = data[key]
    allowed = (int,) if integer else (int, float)
    if isinstance(value, bool) or not isinstance(value, allowed):
        kind = "an integer" if integer else "a number"
        raise ValueError(f"'{key}' in {path} must be {kind}")
    return value


def _present(**values: Any) -> Dict[str, Any]:
    return {key: value for key, value in values.items() if value is not None}


def _parse_circuit_breaker(data: Dict[str, Any]) -> CircuitBreakerConfig:
    path = "circuit_breaker"
    return CircuitBreakerConfig(**_present(
        failure_threshold=_number(data, "failure_threshold", path),
        success_threshold=_number(data, "success_threshold", path),
        timeout_ms=_number(data, "timeout_ms", path),
        monitoring_period_ms=_number(data, "monitoring_period_ms", path),
    ))


def _parse_retry(data: Dict[str, Any]) -> RetryConfig:
    path = "retry"
    values = _present(
        max_retries=_number(data, "max_retries", path),
        initial_delay_ms=_number(data, "initial_delay_ms", path),
        max_delay_ms=_number(data, "max_delay_ms", path),
        backoff_multiplier=_number(data, "backoff_multiplier", path, integer=False),
    )
    # An explicit null disables the per-attempt timeout
    if "timeout_ms" in data:
        values["timeout_ms"] = (
            None if data["timeout_ms"] is None else _number(data, "timeout_ms", path)
        )
    if "backoff_multiplier" in values:
        values["backoff_multiplier"] = float(values["backoff_multiplier"])
    return RetryConfig(**values)


def _parse_rate_table(data: Any, path: str) -> Dict[str, int]:
    if not isinstance(data, dict):
        raise ValueError(f"'{path}' must be a dictionary")
    table = {}
    for key, value in data.items():
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise ValueError(f"'{path}.{key}' must be a non-negative integer")
        table[str(key)] = value
    return table


def _parse_credits(data: Dict[str, Any]) -> CreditRates:
    """Rates given in the file are merged over the default tables."""
    path = "credits"
    text_rates = dict(DEFAULT_TEXT_RATES)
    image_credits = dict(DEFAULT_IMAGE_CREDITS)
    if "text" in data:
        text_rates.update(_parse_rate_table(data["text"], "credits.text"))
    if "image" in data:
        image_credits.update(_parse_rate_table(data["image"], "credits.image"))

    return CreditRates(
        text_credits_per_1k_tokens=text_rates,
        image_credits=image_credits,
        **_present(
            speech_credits_per_1k_chars=_number(data, "speech_per_1k_chars", path),
            transcription_credits_per_minute=_number(data, "transcription_per_minute", path),
        ),
    )


def _parse_streaming(data: Dict[str, Any]) -> StreamingConfig:
    path = "streaming"
    values = _present(
        timeout_ms=_number(data, "timeout_ms", path),
        max_buffer_size=_number(data, "max_buffer_size", path),
    )
    if "bill_partial_content" in data:
        if not isinstance(data["bill_partial_content"], bool):
            raise ValueError(f"'bill_partial_content' in {path} must be a boolean")
        values["bill_partial_content"] = data["bill_partial_content"]
    return StreamingConfig(**values)
