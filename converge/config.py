"""
Settings, read from ``converge.yaml`` in the working directory when present.
"""
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import yaml

from converge.errors import ConfigError

DEFAULT_FILE = "converge.yaml"


@dataclass
class Settings:
    state: str = "converge.tfstate.json"
    parallelism: int = 10
    lock_timeout: float = 0.0
    max_attempts: int = 5
    backoff: float = 0.5
    max_backoff: float = 30.0
    provider: str = "sandbox"
    provider_path: Optional[str] = ".converge/sandbox.json"
    schemas: Dict[str, Dict[str, List[str]]] = field(default_factory=dict)


def _number(section: Dict[str, Any], key: str, default: Any, kind: type, minimum: float) -> Any:
    if key not in section or section[key] is None:
        return default
    try:
        value = kind(section[key])
    except (TypeError, ValueError):
        raise ConfigError(f"'{key}' must be a number, got {section[key]!r}")
    if value < minimum:
        raise ConfigError(f"'{key}' must be at least {minimum}, got {value}")
    return value


def _schemas(raw: Any) -> Dict[str, Dict[str, List[str]]]:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigError("'schemas' must map resource types to {force_new, computed}")
    schemas: Dict[str, Dict[str, List[str]]] = {}
    for resource_type, body in raw.items():
        body = body or {}
        if not isinstance(body, dict):
            raise ConfigError(f"schemas.{resource_type} must be a mapping")
        schemas[resource_type] = {
            "force_new": [str(a) for a in body.get("force_new") or []],
            "computed": [str(a) for a in body.get("computed") or []],
        }
    return schemas


def load_settings(path: Optional[str] = None) -> Settings:
    """Load settings from ``path``, or from ``converge.yaml`` if it exists."""
    explicit = path is not None
    path = path or DEFAULT_FILE
    if not os.path.exists(path):
        if explicit:
            raise ConfigError(f"config file '{path}' does not exist")
        return Settings()

    try:
        with open(path, "r") as f:
            raw = yaml.safe_load(f) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"{path}: invalid YAML: {exc}")
    if not isinstance(raw, dict):
        raise ConfigError(f"{path}: top level must be a mapping")

    defaults = Settings()
    retry = raw.get("retry") or {}
    provider = raw.get("provider") or {}
    if not isinstance(retry, dict) or not isinstance(provider, dict):
        raise ConfigError(f"{path}: 'retry' and 'provider' must be mappings")

    return Settings(
        state=str(raw.get("state") or defaults.state),
        parallelism=_number(raw, "parallelism", defaults.parallelism, int, 1),
        lock_timeout=_number(raw, "lock_timeout", defaults.lock_timeout, float, 0),
        max_attempts=_number(retry, "max_attempts", defaults.max_attempts, int, 1),
        backoff=_number(retry, "backoff", defaults.backoff, float, 0),
        max_backoff=_number(retry, "max_backoff", defaults.max_backoff, float, 0),
        provider=str(provider.get("kind") or defaults.provider),
        provider_path=provider.get("path", defaults.provider_path),
        schemas=_schemas(raw.get("schemas")),
    )
