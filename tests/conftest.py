"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import os
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import pytest

from padctl.cancel import CancelToken
from padctl.providers import ProviderRegistry, dummy, scaleway
from padctl.providers.builtin import register_builtin_providers
from padctl.state import PartialInput, StateBuilder, StateParser, StateStore
from padctl.state.schemas import ANSIBLE_CONFIGURATION_DEFAULTS, AnsibleConfigurationInput

SCALEWAY_OUTPUT: dict[str, Any] = {
    "host": "51.15.0.10",
    "public_ipv4": "51.15.0.10",
    "data_disk_configured": False,
    "instance_server_id": "srv-0001",
}


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


@dataclass
class FakeProvider:
    """Scriptable Provisioner and Runner recording every call."""

    output: Mapping[str, Any] = field(default_factory=lambda: dict(SCALEWAY_OUTPUT))
    live_status: str = "running"
    failures: dict[str, BaseException] = field(default_factory=dict)
    hooks: dict[str, Callable[[], None]] = field(default_factory=dict)
    calls: list[tuple[str, Any]] = field(default_factory=list)

    def _enter(self, verb: str, payload: Any) -> None:
        self.calls.append((verb, payload))
        hook = self.hooks.get(verb)
        if hook is not None:
            hook()
        failure = self.failures.get(verb)
        if failure is not None:
            raise failure

    def create(
        self,
        provision_input: Mapping[str, Any],
        *,
        cancel: CancelToken | None = None,
    ) -> Mapping[str, Any]:
        self._enter("create", dict(provision_input))
        return dict(self.output)

    def update(
        self,
        provision_input: Mapping[str, Any],
        prior_output: Mapping[str, Any] | None,
        *,
        cancel: CancelToken | None = None,
    ) -> Mapping[str, Any]:
        prior = None if prior_output is None else dict(prior_output)
        self._enter("update", (dict(provision_input), prior))
        return dict(self.output)

    def destroy(
        self,
        output: Mapping[str, Any] | None,
        *,
        cancel: CancelToken | None = None,
    ) -> None:
        self._enter("destroy", None if output is None else dict(output))

    def start(self, output: Mapping[str, Any], *, cancel: CancelToken | None = None) -> None:
        self._enter("start", dict(output))
        self.live_status = "running"

    def stop(self, output: Mapping[str, Any], *, cancel: CancelToken | None = None) -> None:
        self._enter("stop", dict(output))
        self.live_status = "stopped"

    def apply_configuration(
        self,
        configuration: Mapping[str, Any],
        output: Mapping[str, Any],
        *,
        cancel: CancelToken | None = None,
    ) -> None:
        self._enter("configure", dict(configuration))

    def status(self, output: Mapping[str, Any]) -> str:
        self._enter("status", dict(output))
        return self.live_status

    def verbs(self) -> list[str]:
        return [verb for verb, _ in self.calls]


@pytest.fixture(autouse=True)
def _reset_dummy_cloud() -> Iterator[None]:
    dummy.CLOUD.clear()
    yield
    dummy.CLOUD.clear()


@pytest.fixture
def registry() -> ProviderRegistry:
    """Registry holding every built-in provider and configurator."""
    return register_builtin_providers(ProviderRegistry())


@pytest.fixture
def fake_provider() -> FakeProvider:
    """A fresh scriptable provider."""
    return FakeProvider()


@pytest.fixture
def fake_registry(fake_provider: FakeProvider) -> ProviderRegistry:
    """Registry whose ``scaleway`` tag is served by :class:`FakeProvider`."""
    registry = ProviderRegistry()
    registry.register_provider(
        scaleway.TAG,
        scaleway.SCHEMA,
        lambda name: fake_provider,
        lambda name: fake_provider,
    )
    registry.register_provider(dummy.TAG, dummy.SCHEMA, dummy.make_provisioner, dummy.make_runner)
    registry.register_configurator(
        "ansible", AnsibleConfigurationInput, ANSIBLE_CONFIGURATION_DEFAULTS
    )
    return registry


@pytest.fixture
def parser(registry: ProviderRegistry) -> StateParser:
    """Parser bound to the built-in registry."""
    return StateParser(registry)


@pytest.fixture
def builder(registry: ProviderRegistry, parser: StateParser) -> StateBuilder:
    """Builder bound to the built-in registry."""
    return StateBuilder(registry, parser)


@pytest.fixture
def store(tmp_path: Path, parser: StateParser) -> StateStore:
    """Store rooted in a temporary instances directory."""
    return StateStore(tmp_path / "instances", parser, lock_timeout=2.0)


def scaleway_partial(name: str = "demo-1", **provision: Any) -> PartialInput:
    """Return the minimal creation input for a Scaleway instance in fr-par-1."""
    values: dict[str, Any] = {"region": "fr-par", "zone": "fr-par-1"}
    values.update(provision)
    return PartialInput(name=name, provider="scaleway", provision=values)


@pytest.fixture
def scaleway_input() -> Callable[..., PartialInput]:
    """Factory for Scaleway creation input."""
    return scaleway_partial
