"""Configuration loader for padctl.

This module centralises the logic for reading configuration values from
multiple sources, lowest precedence first:

1. Built-in defaults.
2. ``~/.padctl/config.yml`` (or an override path).
3. Environment variables prefixed with ``PADCTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export PADCTL_STATE_DIR=/srv/padctl
    export PADCTL_PROVIDERS__AWS__DRIVER_BIN=/opt/drivers/aws

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses`` for convenient access and type safety.
"""
from __future__ import annotations

import copy
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from .errors import PadctlError

ENV_PREFIX = "PADCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
DEFAULT_CONFIG_FILE = "~/.padctl/config.yml"

ENVIRONMENT_DEVELOPMENT = "development"
ENVIRONMENT_PRODUCTION = "production"
ALLOWED_ENVIRONMENTS = {ENVIRONMENT_DEVELOPMENT, ENVIRONMENT_PRODUCTION}
ALLOWED_PROVIDER_KEYS = {"driver_bin", "timeout"}


class ConfigError(PadctlError):
    """Raised when configuration parsing fails."""

    code = "APP_CONFIG_INVALID"


@dataclass(frozen=True)
class ProviderDriverConfig:
    """How padctl reaches the driver for one cloud provider."""

    driver_bin: str
    timeout: float | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"driver_bin": self.driver_bin, "timeout": self.timeout}


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for padctl."""

    config_file: Path
    state_dir: Path
    instances_dir: Path
    runtime_dir: Path
    logs_dir: Path
    lock_timeout: float
    environment: str
    providers: Mapping[str, ProviderDriverConfig] = field(default_factory=dict)

    @property
    def verbose_errors(self) -> bool:
        """Return ``True`` when error context should be shown by default."""
        return self.environment == ENVIRONMENT_DEVELOPMENT

    def driver_for(self, provider: str) -> ProviderDriverConfig:
        """Return the driver configuration for *provider* (with a default binary)."""
        configured = self.providers.get(provider)
        if configured is not None:
            return configured
        return ProviderDriverConfig(driver_bin=f"padctl-driver-{provider}")

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "state_dir": str(self.state_dir),
            "instances_dir": str(self.instances_dir),
            "runtime_dir": str(self.runtime_dir),
            "logs_dir": str(self.logs_dir),
            "lock_timeout": self.lock_timeout,
            "environment": self.environment,
            "providers": {
                name: provider.to_dict() for name, provider in sorted(self.providers.items())
            },
        }


DEFAULTS: dict[str, object] = {
    "config_file": DEFAULT_CONFIG_FILE,
    "state_dir": "~/.padctl",
    "instances_dir": None,  # derived from state_dir when absent
    "runtime_dir": None,  # derived from state_dir when absent
    "logs_dir": None,  # derived from state_dir when absent
    "lock_timeout": 30.0,
    "environment": ENVIRONMENT_PRODUCTION,
    "providers": {},
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    resolved_env = os.environ if env is None else env
    config_path = Path(
        config_file or resolved_env.get(CONFIG_ENV_VAR) or DEFAULT_CONFIG_FILE
    ).expanduser()

    merged = copy.deepcopy(DEFAULTS)
    for layer in (_load_yaml_file(config_path), _env_layer(resolved_env), overrides or {}):
        _merge_into(merged, layer)
    merged["config_file"] = str(config_path)
    return _build_app_config(merged)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _mapping(data, f"file:{path}")


def _env_layer(env: Mapping[str, str]) -> dict[str, object]:
    layer: dict[str, object] = {}
    for key, raw in env.items():
        if key == CONFIG_ENV_VAR or not key.startswith(ENV_PREFIX):
            continue
        path = [segment.lower() for segment in key[len(ENV_PREFIX) :].split("__") if segment]
        if not path:
            continue
        node = layer
        for segment in path[:-1]:
            child = node.setdefault(segment, {})
            if not isinstance(child, dict):
                raise ConfigError(f"Environment variable {key} conflicts with {segment}.")
            node = child
        node[path[-1]] = _parse_env_value(raw)
    return layer


def _parse_env_value(raw: str) -> object:
    text = raw.strip()
    try:
        return yaml.safe_load(text)
    except yaml.YAMLError:  # pragma: no cover - keep the raw text
        return text


def _merge_into(target: dict[str, object], layer: Mapping[str, object]) -> None:
    for key, value in layer.items():
        current = target.get(key)
        if isinstance(current, dict) and isinstance(value, Mapping):
            _merge_into(current, value)
        else:
            target[key] = value


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    unknown_keys = set(raw) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        raise ConfigError(f"Unknown configuration keys: {', '.join(sorted(unknown_keys))}.")

    environment = str(raw.get("environment") or ENVIRONMENT_PRODUCTION)
    if environment not in ALLOWED_ENVIRONMENTS:
        allowed = ", ".join(sorted(ALLOWED_ENVIRONMENTS))
        raise ConfigError(f"Unsupported environment '{environment}'. Allowed: {allowed}.")

    state_dir = _path(raw.get("state_dir"), "state_dir")
    return AppConfig(
        config_file=_path(raw.get("config_file"), "config_file"),
        state_dir=state_dir,
        instances_dir=_path(raw.get("instances_dir"), "instances_dir", state_dir / "instances"),
        runtime_dir=_path(raw.get("runtime_dir"), "runtime_dir", state_dir / "run"),
        logs_dir=_path(raw.get("logs_dir"), "logs_dir", state_dir / "logs"),
        lock_timeout=_positive_float(raw.get("lock_timeout"), "lock_timeout"),
        environment=environment,
        providers={
            name: _provider_config(name, value)
            for name, value in _mapping(raw.get("providers"), "providers").items()
        },
    )


def _provider_config(name: str, value: object) -> ProviderDriverConfig:
    label = f"providers.{name}"
    settings = _mapping(value, label)
    unknown = set(settings) - ALLOWED_PROVIDER_KEYS
    if unknown:
        raise ConfigError(f"Unknown {label} keys: {', '.join(sorted(unknown))}.")
    driver_bin = settings.get("driver_bin")
    if driver_bin is None:
        driver_bin = f"padctl-driver-{name}"
    elif not isinstance(driver_bin, str) or not driver_bin.strip():
        raise ConfigError(f"{label}.driver_bin must be a non-empty string.")
    timeout = settings.get("timeout")
    return ProviderDriverConfig(
        driver_bin=driver_bin,
        timeout=None if timeout is None else _positive_float(timeout, f"{label}.timeout"),
    )


def _path(value: object, label: str, default: Path | None = None) -> Path:
    if value is None and default is not None:
        return default
    if isinstance(value, (str, Path)) and str(value):
        return Path(value).expanduser()
    raise ConfigError(f"Expected {label} to be a filesystem path. Got {value!r}.")


def _positive_float(value: object, label: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise ConfigError(f"Expected {label} to be a number. Got {value!r}.")
    try:
        number = float(value)
    except ValueError as exc:
        raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    if number <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {number}.")
    return number


def _mapping(value: object, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    for key in value:
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
    return dict(value)


__all__ = [
    "AppConfig",
    "ConfigError",
    "ProviderDriverConfig",
    "load_config",
]
