"""Versioned instance state records.

An :class:`InstanceState` is the single source of truth for what
infrastructure exists for one named instance. Records are immutable: nested
mappings are frozen into read-only views and sequences into tuples, so a
record handed to one operation can never be mutated by another. Use
:meth:`InstanceState.to_dict` to obtain a plain, mutable copy in the on-disk
shape::

    name: demo-1
    version: "1"
    provision:
      provider: scaleway
      input: {...}
      output: {...}      # absent until provisioning succeeds
    configuration:
      configurator: ansible
      input: {...}
"""
from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any

CURRENT_VERSION = "1"
SUPPORTED_VERSIONS: tuple[str, ...] = (CURRENT_VERSION,)

INSTANCE_NAME_MAX_LENGTH = 63
INSTANCE_NAME_RE = re.compile(r"^[a-zA-Z][a-zA-Z0-9-]*[a-zA-Z0-9]$")


def instance_name_problem(name: object) -> str | None:
    """Return why *name* is not a valid instance name, or ``None`` when valid."""
    if not isinstance(name, str) or not name:
        return "must be a non-empty string"
    if len(name) > INSTANCE_NAME_MAX_LENGTH:
        return f"must be at most {INSTANCE_NAME_MAX_LENGTH} characters"
    if not INSTANCE_NAME_RE.match(name):
        return (
            "must start with a letter, end with a letter or digit "
            "and contain only letters, digits and '-'"
        )
    return None


def freeze(value: Any) -> Any:
    """Return a read-only deep view of *value*."""
    if isinstance(value, Mapping):
        return MappingProxyType({str(key): freeze(item) for key, item in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(freeze(item) for item in value)
    return value


def thaw(value: Any) -> Any:
    """Return a plain, mutable deep copy of a frozen *value*."""
    if isinstance(value, Mapping):
        return {key: thaw(item) for key, item in value.items()}
    if isinstance(value, tuple):
        return [thaw(item) for item in value]
    return value


@dataclass(frozen=True)
class ProvisionState:
    """Provider tag plus desired (input) and actual (output) infrastructure."""

    provider: str
    input: Mapping[str, Any]
    output: Mapping[str, Any] | None = None

    def __post_init__(self) -> None:
        """Freeze nested mappings."""
        object.__setattr__(self, "input", freeze(self.input))
        if self.output is not None:
            object.__setattr__(self, "output", freeze(self.output))

    def to_dict(self) -> dict[str, Any]:
        """Return the on-disk representation (``output`` omitted when absent)."""
        payload: dict[str, Any] = {"provider": self.provider, "input": thaw(self.input)}
        if self.output is not None:
            payload["output"] = thaw(self.output)
        return payload


@dataclass(frozen=True)
class ConfigurationState:
    """Configurator tag plus desired software configuration."""

    configurator: str
    input: Mapping[str, Any]

    def __post_init__(self) -> None:
        """Freeze nested mappings."""
        object.__setattr__(self, "input", freeze(self.input))

    def to_dict(self) -> dict[str, Any]:
        """Return the on-disk representation."""
        return {"configurator": self.configurator, "input": thaw(self.input)}


@dataclass(frozen=True)
class InstanceState:
    """A complete, validated instance record."""

    name: str
    version: str
    provision: ProvisionState
    configuration: ConfigurationState

    @property
    def provider(self) -> str:
        """Return the write-once provider tag."""
        return self.provision.provider

    @property
    def provisioned(self) -> bool:
        """Return ``True`` once a provisioning run has recorded its output."""
        return self.provision.output is not None

    def to_dict(self) -> dict[str, Any]:
        """Return a plain mapping suitable for serialisation."""
        return {
            "name": self.name,
            "version": self.version,
            "provision": self.provision.to_dict(),
            "configuration": self.configuration.to_dict(),
        }


__all__ = [
    "CURRENT_VERSION",
    "ConfigurationState",
    "INSTANCE_NAME_MAX_LENGTH",
    "INSTANCE_NAME_RE",
    "InstanceState",
    "ProvisionState",
    "SUPPORTED_VERSIONS",
    "freeze",
    "instance_name_problem",
    "thaw",
]
