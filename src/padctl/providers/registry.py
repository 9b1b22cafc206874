"""Provider and configurator registration tables.

Providers are resolved by tag from a table filled once at process start
(see :func:`padctl.providers.builtin.register_builtin_providers`), never by
class hierarchy. A provider contributes its input/output sub-schemas, the
defaults applied beneath user input, and two factory functions building the
:class:`Provisioner` and :class:`Runner` bound to one instance name.
"""
from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol

from pydantic import BaseModel

from ..cancel import CancelToken
from ..errors import UnsupportedConfiguratorError, UnsupportedProviderError


class Provisioner(Protocol):
    """Creates, updates and destroys the remote infrastructure of one instance."""

    def create(
        self,
        provision_input: Mapping[str, Any],
        *,
        cancel: CancelToken | None = None,
    ) -> Mapping[str, Any]:
        """Create infrastructure and return the complete provision output."""
        ...

    def update(
        self,
        provision_input: Mapping[str, Any],
        prior_output: Mapping[str, Any] | None,
        *,
        cancel: CancelToken | None = None,
    ) -> Mapping[str, Any]:
        """Reconcile infrastructure with *provision_input* and return the new output."""
        ...

    def destroy(
        self,
        output: Mapping[str, Any] | None,
        *,
        cancel: CancelToken | None = None,
    ) -> None:
        """Release every remote resource; return only once they are gone."""
        ...


class Runner(Protocol):
    """Starts, stops and configures a provisioned instance."""

    def start(self, output: Mapping[str, Any], *, cancel: CancelToken | None = None) -> None:
        """Start the instance."""
        ...

    def stop(self, output: Mapping[str, Any], *, cancel: CancelToken | None = None) -> None:
        """Stop the instance."""
        ...

    def apply_configuration(
        self,
        configuration: Mapping[str, Any],
        output: Mapping[str, Any],
        *,
        cancel: CancelToken | None = None,
    ) -> None:
        """Push the desired configuration to the running instance."""
        ...

    def status(self, output: Mapping[str, Any]) -> str:
        """Return the live server state (``running``, ``stopped``, ``unknown``...)."""
        ...


ProvisionerFactory = Callable[[str], Provisioner]
RunnerFactory = Callable[[str], Runner]
DeferredResolver = Callable[[dict[str, Any], Mapping[str, Any]], dict[str, Any]]


@dataclass(frozen=True)
class ProviderSchema:
    """Per-provider sub-schemas and defaults."""

    input_model: type[BaseModel]
    output_model: type[BaseModel]
    defaults: Mapping[str, Any] = field(default_factory=dict)
    resolve_deferred: DeferredResolver | None = None


@dataclass(frozen=True)
class ProviderRegistration:
    """One row of the provider table."""

    tag: str
    schema: ProviderSchema
    provisioner_factory: ProvisionerFactory
    runner_factory: RunnerFactory


@dataclass(frozen=True)
class ConfiguratorRegistration:
    """One row of the configurator table."""

    tag: str
    input_model: type[BaseModel]
    defaults: Mapping[str, Any] = field(default_factory=dict)


class ProviderRegistry:
    """Lookup tables for providers and configurators."""

    def __init__(self) -> None:
        """Create empty tables."""
        self._providers: dict[str, ProviderRegistration] = {}
        self._configurators: dict[str, ConfiguratorRegistration] = {}

    # Registration ---------------------------------------------------------
    def register_provider(
        self,
        tag: str,
        schema: ProviderSchema,
        provisioner_factory: ProvisionerFactory,
        runner_factory: RunnerFactory,
    ) -> None:
        """Register *tag*; each tag may only be registered once."""
        if tag in self._providers:
            raise ValueError(f"Provider '{tag}' is already registered.")
        self._providers[tag] = ProviderRegistration(
            tag=tag,
            schema=schema,
            provisioner_factory=provisioner_factory,
            runner_factory=runner_factory,
        )

    def register_configurator(
        self,
        tag: str,
        input_model: type[BaseModel],
        defaults: Mapping[str, Any] | None = None,
    ) -> None:
        """Register configurator *tag*; each tag may only be registered once."""
        if tag in self._configurators:
            raise ValueError(f"Configurator '{tag}' is already registered.")
        self._configurators[tag] = ConfiguratorRegistration(
            tag=tag,
            input_model=input_model,
            defaults=dict(defaults or {}),
        )

    # Lookup ---------------------------------------------------------------
    @property
    def providers(self) -> tuple[str, ...]:
        """Return the registered provider tags, sorted."""
        return tuple(sorted(self._providers))

    @property
    def configurators(self) -> tuple[str, ...]:
        """Return the registered configurator tags, sorted."""
        return tuple(sorted(self._configurators))

    def provider(self, tag: object) -> ProviderRegistration:
        """Return the registration for *tag* or raise :class:`UnsupportedProviderError`."""
        if isinstance(tag, str) and tag in self._providers:
            return self._providers[tag]
        raise UnsupportedProviderError(tag, self._providers)

    def configurator(self, tag: object) -> ConfiguratorRegistration:
        """Return the registration for *tag* or raise :class:`UnsupportedConfiguratorError`."""
        if isinstance(tag, str) and tag in self._configurators:
            return self._configurators[tag]
        raise UnsupportedConfiguratorError(tag, self._configurators)

    def provisioner_for(self, tag: object, instance_name: str) -> Provisioner:
        """Build the provisioner for *instance_name* owned by provider *tag*."""
        return self.provider(tag).provisioner_factory(instance_name)

    def runner_for(self, tag: object, instance_name: str) -> Runner:
        """Build the runner for *instance_name* owned by provider *tag*."""
        return self.provider(tag).runner_factory(instance_name)


__all__ = [
    "ConfiguratorRegistration",
    "DeferredResolver",
    "ProviderRegistration",
    "ProviderRegistry",
    "ProviderSchema",
    "Provisioner",
    "ProvisionerFactory",
    "Runner",
    "RunnerFactory",
]
