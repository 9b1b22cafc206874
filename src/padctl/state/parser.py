"""Validate untyped persisted data into :class:`InstanceState` records.

Parsing is all-or-nothing and runs in three stages:

1. Version gate. Only the ``version`` field is read; a missing or unsupported
   value fails with :class:`UnsupportedVersionError` before any other field is
   looked at (registered migrations are applied first).
2. Common fields: ``name``, ``provision.provider`` and
   ``configuration.configurator``.
3. Provider and configurator sub-schemas, looked up by tag in the
   :class:`ProviderRegistry`.

Every violated field is collected and reported together in a single
:class:`ConfigurationError`.
"""
from __future__ import annotations

from collections.abc import Mapping
from typing import Any, cast

from pydantic import BaseModel, ValidationError

from ..errors import ConfigurationError, FieldIssue, UnsupportedVersionError
from ..providers.registry import ProviderRegistry
from .migration import MigrationRegistry
from .model import (
    SUPPORTED_VERSIONS,
    ConfigurationState,
    InstanceState,
    ProvisionState,
    instance_name_problem,
)

TOP_LEVEL_KEYS = frozenset({"name", "version", "provision", "configuration"})
PROVISION_KEYS = frozenset({"provider", "input", "output"})
CONFIGURATION_KEYS = frozenset({"configurator", "input"})


def validate_model(
    model: type[BaseModel],
    value: object,
    path: str,
    issues: list[FieldIssue],
) -> dict[str, Any] | None:
    """Validate *value* against *model*, appending any problems to *issues*.

    Returns the normalised mapping, or ``None`` when validation failed.
    """
    if not isinstance(value, Mapping):
        issues.append(FieldIssue(path, f"expected a mapping, got {type(value).__name__}"))
        return None
    try:
        instance = model.model_validate(dict(value))
    except ValidationError as exc:
        for error in exc.errors():
            location = ".".join(str(part) for part in error["loc"])
            issues.append(FieldIssue(f"{path}.{location}" if location else path, error["msg"]))
        return None
    return instance.model_dump(mode="json")


class StateParser:
    """Parse raw documents for the schema versions this release understands."""

    def __init__(
        self,
        registry: ProviderRegistry,
        *,
        migrations: MigrationRegistry | None = None,
        supported_versions: tuple[str, ...] = SUPPORTED_VERSIONS,
    ) -> None:
        """Bind the parser to a provider *registry* and optional *migrations*."""
        self.registry = registry
        self.migrations = migrations or MigrationRegistry()
        self.supported_versions = supported_versions

    def parse(self, raw: object) -> InstanceState:
        """Return a validated :class:`InstanceState` or raise ``ConfigurationError``."""
        if not isinstance(raw, Mapping):
            raise ConfigurationError(
                "State document must be a mapping.",
                issues=(FieldIssue("<document>", f"got {type(raw).__name__}"),),
            )
        document = self._gate_version(raw)

        issues: list[FieldIssue] = []
        unsupported: ConfigurationError | None = None

        for key in sorted(set(document) - TOP_LEVEL_KEYS, key=str):
            issues.append(FieldIssue(str(key), "unknown field"))

        name = document.get("name")
        problem = instance_name_problem(name)
        if problem:
            issues.append(FieldIssue("name", problem))

        provision = self._section(document, "provision", PROVISION_KEYS, issues)
        configuration = self._section(document, "configuration", CONFIGURATION_KEYS, issues)

        provider_input: dict[str, Any] | None = None
        provider_output: dict[str, Any] | None = None
        provider_tag = provision.get("provider") if provision is not None else None
        if provision is not None:
            if not isinstance(provider_tag, str) or not provider_tag:
                issues.append(FieldIssue("provision.provider", "must be a non-empty string"))
            else:
                try:
                    registration = self.registry.provider(provider_tag)
                except ConfigurationError as exc:
                    unsupported = exc
                    issues.extend(exc.issues)
                else:
                    provider_input = validate_model(
                        registration.schema.input_model,
                        provision.get("input"),
                        "provision.input",
                        issues,
                    )
                    raw_output = provision.get("output")
                    if raw_output is not None:
                        provider_output = validate_model(
                            registration.schema.output_model,
                            raw_output,
                            "provision.output",
                            issues,
                        )

        configurator_input: dict[str, Any] | None = None
        configurator_tag = configuration.get("configurator") if configuration is not None else None
        if configuration is not None:
            if not isinstance(configurator_tag, str) or not configurator_tag:
                issues.append(
                    FieldIssue("configuration.configurator", "must be a non-empty string")
                )
            else:
                try:
                    configurator = self.registry.configurator(configurator_tag)
                except ConfigurationError as exc:
                    unsupported = unsupported or exc
                    issues.extend(exc.issues)
                else:
                    configurator_input = validate_model(
                        configurator.input_model,
                        configuration.get("input"),
                        "configuration.input",
                        issues,
                    )

        if issues:
            if unsupported is not None and len(issues) == len(unsupported.issues):
                raise unsupported
            label = name if isinstance(name, str) and name else "<unnamed>"
            raise ConfigurationError(
                f"Invalid state for instance '{label}'.",
                issues=issues,
                context={"name": name, "provider": provider_tag},
            )

        # Without issues both inputs were validated.
        return InstanceState(
            name=str(name),
            version=str(document["version"]),
            provision=ProvisionState(
                provider=str(provider_tag),
                input=cast("dict[str, Any]", provider_input),
                output=provider_output,
            ),
            configuration=ConfigurationState(
                configurator=str(configurator_tag),
                input=cast("dict[str, Any]", configurator_input),
            ),
        )

    def validate_output(self, provider: str, output: object) -> dict[str, Any]:
        """Validate a complete provision *output* returned by *provider*."""
        issues: list[FieldIssue] = []
        schema = self.registry.provider(provider).schema
        normalised = validate_model(schema.output_model, output, "provision.output", issues)
        if normalised is None:
            raise ConfigurationError(
                f"Provider '{provider}' returned an incomplete provision output.",
                issues=issues,
                context={"provider": provider},
            )
        return normalised

    # ------------------------------------------------------------------
    def _gate_version(self, raw: Mapping[Any, Any]) -> Mapping[Any, Any]:
        version = raw.get("version")
        if not isinstance(version, str):
            raise UnsupportedVersionError(version, self.supported_versions)
        if version in self.supported_versions:
            return raw
        if self.migrations.can_migrate(version, self.supported_versions):
            return self.migrations.migrate(raw, self.supported_versions)
        raise UnsupportedVersionError(version, self.supported_versions)

    @staticmethod
    def _section(
        document: Mapping[Any, Any],
        key: str,
        allowed: frozenset[str],
        issues: list[FieldIssue],
    ) -> Mapping[Any, Any] | None:
        value = document.get(key)
        if not isinstance(value, Mapping):
            if value is None:
                detail = "is required"
            else:
                detail = f"expected a mapping, got {type(value).__name__}"
            issues.append(FieldIssue(key, detail))
            return None
        for extra in sorted(set(value) - allowed, key=str):
            issues.append(FieldIssue(f"{key}.{extra}", "unknown field"))
        return value


__all__ = ["StateParser", "validate_model"]
