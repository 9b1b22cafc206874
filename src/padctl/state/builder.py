"""Produce new instance records from partial user input.

The builder is pure: it never touches the store or a provider, and it never
mutates the records or mappings passed to it. Per field the precedence is::

    explicit value in PartialInput  >  existing record  >  defaults

Merging is a recursive structural merge of mappings. :data:`UNSET` (or simply
leaving a key out) means "not specified, keep looking"; ``None``, ``0``,
``False`` and ``""`` are real values and always win. Lists and other scalars
replace the lower layer wholesale.

Values that can only be derived once other fields are known (for example an
AWS disk performance profile that depends on the final instance type) travel
in :attr:`PartialInput.deferred` rather than inside the schema-typed input.
The provider's resolver turns them into concrete fields after the lower
layers are merged; an explicit value for the same field in
:attr:`PartialInput.provision` still wins.
"""
from __future__ import annotations

import copy
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Final

from ..errors import ConfigurationError, FieldIssue
from ..providers.registry import ProviderRegistry
from .model import CURRENT_VERSION, InstanceState, thaw
from .parser import StateParser

DEFAULT_CONFIGURATOR = "ansible"


class _Unset:
    """Marker type for "no value supplied"."""

    _instance: _Unset | None = None

    def __new__(cls) -> _Unset:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNSET"

    def __bool__(self) -> bool:
        return False

    def __copy__(self) -> _Unset:
        return self

    def __deepcopy__(self, memo: dict[int, Any]) -> _Unset:
        return self


UNSET: Final = _Unset()


@dataclass(frozen=True)
class PartialInput:
    """User-supplied fragments for one build.

    ``provision`` and ``configuration`` hold fragments of
    ``provision.input`` and ``configuration.input`` respectively. ``deferred``
    holds provider-specific values resolved after merging (see module docs).
    """

    name: str | _Unset = UNSET
    provider: str | _Unset = UNSET
    configurator: str | _Unset = UNSET
    provision: Mapping[str, Any] = field(default_factory=dict)
    configuration: Mapping[str, Any] = field(default_factory=dict)
    deferred: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class StateDefaults:
    """Lowest-precedence values for ``provision.input`` and ``configuration.input``."""

    provision: Mapping[str, Any] = field(default_factory=dict)
    configuration: Mapping[str, Any] = field(default_factory=dict)


def merge_layers(*layers: Mapping[str, Any] | None) -> dict[str, Any]:
    """Deep-merge *layers*, later layers taking precedence.

    Keys whose value is :data:`UNSET` are skipped. The inputs are never
    modified; the result shares no mutable objects with them.
    """
    merged: dict[str, Any] = {}
    for layer in layers:
        if not layer:
            continue
        for key, value in layer.items():
            if value is UNSET:
                continue
            current = merged.get(key)
            if isinstance(value, Mapping) and isinstance(current, Mapping):
                merged[key] = merge_layers(current, value)
            elif isinstance(value, Mapping):
                merged[key] = merge_layers(value)
            else:
                merged[key] = copy.deepcopy(thaw(value))
    return merged


class StateBuilder:
    """Build validated :class:`InstanceState` records."""

    def __init__(
        self,
        registry: ProviderRegistry,
        parser: StateParser,
        *,
        default_configurator: str = DEFAULT_CONFIGURATOR,
    ) -> None:
        """Bind the builder to the provider *registry* and *parser*."""
        self.registry = registry
        self.parser = parser
        self.default_configurator = default_configurator

    def defaults_for(self, provider: str, configurator: str) -> StateDefaults:
        """Return the registered defaults for *provider* and *configurator*."""
        return StateDefaults(
            provision=self.registry.provider(provider).schema.defaults,
            configuration=self.registry.configurator(configurator).defaults,
        )

    def build(
        self,
        existing: InstanceState | None,
        partial: PartialInput,
        defaults: StateDefaults | None = None,
    ) -> InstanceState:
        """Return a new record merging *partial* over *existing* and *defaults*."""
        issues: list[FieldIssue] = []
        name = self._write_once("name", existing.name if existing else None, partial.name, issues)
        provider = self._write_once(
            "provision.provider",
            existing.provider if existing else None,
            partial.provider,
            issues,
        )
        if partial.configurator is not UNSET:
            configurator = partial.configurator
        elif existing is not None:
            configurator = existing.configuration.configurator
        else:
            configurator = self.default_configurator
        if issues:
            raise ConfigurationError("Cannot build instance state.", issues=issues)

        if defaults is None:
            defaults = self.defaults_for(str(provider), str(configurator))

        existing_provision = existing.provision.input if existing else None
        existing_configuration = existing.configuration.input if existing else None
        if existing is not None and existing.configuration.configurator != configurator:
            # A different configurator does not share the old input shape.
            existing_configuration = None

        provision_base = merge_layers(defaults.provision, existing_provision)
        if partial.deferred:
            provision_base = self._resolve_deferred(str(provider), provision_base, partial)
        provision_input = merge_layers(provision_base, partial.provision)
        configuration_input = merge_layers(
            defaults.configuration, existing_configuration, partial.configuration
        )

        provision: dict[str, Any] = {"provider": provider, "input": provision_input}
        if existing is not None and existing.provision.output is not None:
            provision["output"] = thaw(existing.provision.output)
        document = {
            "name": name,
            "version": CURRENT_VERSION,
            "provision": provision,
            "configuration": {"configurator": configurator, "input": configuration_input},
        }
        return self.parser.parse(document)

    def with_output(self, state: InstanceState, output: Mapping[str, Any]) -> InstanceState:
        """Return a copy of *state* whose provision output is replaced by *output*."""
        document = state.to_dict()
        document["provision"]["output"] = self.parser.validate_output(state.provider, output)
        return self.parser.parse(document)

    # ------------------------------------------------------------------
    @staticmethod
    def _write_once(
        path: str,
        current: str | None,
        requested: str | _Unset,
        issues: list[FieldIssue],
    ) -> str | None:
        if current is None:
            if requested is UNSET:
                issues.append(FieldIssue(path, "is required"))
                return None
            return str(requested)
        if requested is not UNSET and requested != current:
            issues.append(FieldIssue(path, f"is write-once (currently '{current}')"))
        return current

    def _resolve_deferred(
        self,
        provider: str,
        provision_base: dict[str, Any],
        partial: PartialInput,
    ) -> dict[str, Any]:
        resolver = self.registry.provider(provider).schema.resolve_deferred
        if resolver is None:
            raise ConfigurationError(
                f"Provider '{provider}' does not accept deferred values.",
                issues=[FieldIssue(f"deferred.{key}", "unsupported") for key in partial.deferred],
            )
        # Resolve against what the user asked for so far, then let explicit fields win.
        candidate = merge_layers(provision_base, partial.provision)
        resolved = resolver(candidate, partial.deferred)
        return merge_layers(provision_base, resolved)


__all__ = [
    "DEFAULT_CONFIGURATOR",
    "PartialInput",
    "StateBuilder",
    "StateDefaults",
    "UNSET",
    "merge_layers",
]
