"""
Configuration management and loading.

Handles backend, SDK retry and storage settings.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict

import yaml

from tellbill_gate.core.sync import DEFAULT_MAX_ATTEMPTS, DEFAULT_RETRY_DELAY
from tellbill_gate.sdk.backend_client import DEFAULT_TIMEOUT
from tellbill_gate.storage.db import DEFAULT_DB_PATH


@dataclass(frozen=True)
class BackendConfig:
    """Where and how to reach the TellBill backend."""
    base_url: str
    timeout_seconds: float = DEFAULT_TIMEOUT

    def __post_init__(self):
        """Validate backend settings."""
        if not self.base_url.startswith(("http://", "https://")):
            raise ValueError("base_url must start with http:// or https://")
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")


@dataclass(frozen=True)
class SDKRetryConfig:
    """Bounded retry while waiting for the subscription SDK."""
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    retry_delay_seconds: float = DEFAULT_RETRY_DELAY

    def __post_init__(self):
        """Validate retry settings."""
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.retry_delay_seconds < 0:
            raise ValueError("retry_delay_seconds must be >= 0")


@dataclass(frozen=True)
class StorageConfig:
    """Local cache location."""
    db_path: str = DEFAULT_DB_PATH


@dataclass(frozen=True)
class GateConfig:
    """Complete plan gate configuration."""
    backend: BackendConfig
    sdk: SDKRetryConfig = field(default_factory=SDKRetryConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)


def load_gate_config(path: str) -> GateConfig:
    """Load and validate plan gate configuration from a YAML file.

    Strict validation: unknown keys are errors, so a misspelt setting can
    never silently fall back to a default.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated GateConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Gate config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a dictionary")

    allowed_top_keys = {'backend', 'sdk', 'storage'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    if 'backend' not in raw_config:
        raise ValueError("Missing required 'backend' section")

    backend = _parse_backend(_section(raw_config, 'backend'))
    sdk = _parse_sdk(_section(raw_config, 'sdk')) if 'sdk' in raw_config else SDKRetryConfig()
    storage = _parse_storage(_section(raw_config, 'storage')) if 'storage' in raw_config else StorageConfig()

    return GateConfig(backend=backend, sdk=sdk, storage=storage)


def _section(raw_config: Dict, name: str) -> Dict:
    data = raw_config[name]
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    return data


def _check_keys(data: Dict, allowed: set, path: str) -> None:
    unknown_keys = set(data.keys()) - allowed
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")


def _number(data: Dict, key: str, path: str, default: Any) -> float:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"'{key}' in {path} must be a number")
    return value


def _parse_backend(data: Dict) -> BackendConfig:
    """Parse and validate the backend section.

    Raises:
        ValueError: If configuration is invalid
    """
    _check_keys(data, {'base_url', 'timeout_seconds'}, 'backend')

    if 'base_url' not in data:
        raise ValueError("Missing required 'base_url' in backend")
    base_url = data['base_url']
    if not isinstance(base_url, str) or not base_url.strip():
        raise ValueError("'base_url' in backend must be a non-empty string")

    timeout = _number(data, 'timeout_seconds', 'backend', DEFAULT_TIMEOUT)
    return BackendConfig(base_url=base_url.strip(), timeout_seconds=float(timeout))


def _parse_sdk(data: Dict) -> SDKRetryConfig:
    """Parse and validate the sdk section.

    Raises:
        ValueError: If configuration is invalid
    """
    _check_keys(data, {'max_attempts', 'retry_delay_seconds'}, 'sdk')

    max_attempts = data.get('max_attempts', DEFAULT_MAX_ATTEMPTS)
    if isinstance(max_attempts, bool) or not isinstance(max_attempts, int):
        raise ValueError("'max_attempts' in sdk must be an integer")

    delay = _number(data, 'retry_delay_seconds', 'sdk', DEFAULT_RETRY_DELAY)
    return SDKRetryConfig(max_attempts=max_attempts, retry_delay_seconds=float(delay))


def _parse_storage(data: Dict) -> StorageConfig:
    _check_keys(data, {'db_path'}, 'storage')
    db_path = data.get('db_path', DEFAULT_DB_PATH)
    if not isinstance(db_path, str) or not db_path.strip():
        raise ValueError("'db_path' in storage must be a non-empty string")
    return StorageConfig(db_path=db_path)
