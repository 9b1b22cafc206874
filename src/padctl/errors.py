"""Error taxonomy shared by the state engine and lifecycle orchestration.

Every failure surfaced by padctl derives from :class:`PadctlError` so callers
can inspect a stable ``code`` plus structured ``context`` (field paths,
provider tag, fingerprints) without parsing messages. How much of that
context is shown to a human is decided by the caller through the explicit
``verbose`` flag on :meth:`PadctlError.details`; nothing in this module looks
at the process environment.
"""
from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class FieldIssue:
    """A single violated field, addressed by its dotted path."""

    path: str
    message: str

    def __str__(self) -> str:
        """Return ``path: message``."""
        return f"{self.path}: {self.message}"

    def to_dict(self) -> dict[str, str]:
        """Return a serialisable representation."""
        return {"path": self.path, "message": self.message}


class PadctlError(RuntimeError):
    """Base class for all structured padctl errors."""

    code = "PADCTL_ERROR"
    suggestions: tuple[str, ...] = ()

    def __init__(
        self,
        message: str,
        *,
        context: Mapping[str, object] | None = None,
        cause: BaseException | None = None,
    ) -> None:
        """Initialise the error with a message, context and optional cause."""
        super().__init__(message)
        self.message = message
        self.context: dict[str, object] = dict(context or {})
        self.cause = cause

    def details(self, *, verbose: bool = False) -> dict[str, object]:
        """Return user-facing details; context is only included when *verbose*."""
        payload: dict[str, object] = {"code": self.code, "message": self.message}
        if self.suggestions:
            payload["suggestions"] = list(self.suggestions)
        if verbose:
            payload["context"] = dict(self.context)
            if self.cause is not None:
                payload["cause"] = f"{type(self.cause).__name__}: {self.cause}"
        return payload


class ConfigurationError(PadctlError):
    """Raised for schema/version mismatches and invalid field values."""

    code = "CONFIGURATION_INVALID"
    suggestions = ("Fix the listed fields and run the command again.",)

    def __init__(
        self,
        message: str,
        *,
        issues: Iterable[FieldIssue] = (),
        context: Mapping[str, object] | None = None,
        cause: BaseException | None = None,
    ) -> None:
        """Initialise with the aggregated field *issues*."""
        super().__init__(message, context=context, cause=cause)
        self.issues: tuple[FieldIssue, ...] = tuple(issues)

    def __str__(self) -> str:
        """Render the message followed by one line per field issue."""
        if not self.issues:
            return self.message
        lines = [self.message]
        lines.extend(f"  - {issue}" for issue in self.issues)
        return "\n".join(lines)

    def details(self, *, verbose: bool = False) -> dict[str, object]:
        """Return details including field issues, which are always shown."""
        payload = super().details(verbose=verbose)
        if self.issues:
            payload["issues"] = [issue.to_dict() for issue in self.issues]
        return payload


class UnsupportedVersionError(ConfigurationError):
    """Raised when a record declares a schema version without a parser."""

    code = "STATE_VERSION_UNSUPPORTED"
    suggestions = ("Upgrade padctl or restore a record written by a supported release.",)

    def __init__(self, version: object, supported: Sequence[str]) -> None:
        """Initialise from the offending *version* and the *supported* set."""
        supported_text = ", ".join(supported)
        if version is None:
            message = f"State record has no schema version (supported: {supported_text})."
        else:
            message = (
                f"Unsupported state schema version {version!r} (supported: {supported_text})."
            )
        super().__init__(
            message,
            issues=(FieldIssue("version", "unsupported or missing schema version"),),
            context={"version": version, "supported": list(supported)},
        )
        self.version = version


class UnsupportedProviderError(ConfigurationError):
    """Raised when a provider tag has no registered handler."""

    code = "PROVIDER_UNSUPPORTED"

    def __init__(self, provider: object, known: Iterable[str]) -> None:
        """Initialise from the offending *provider* tag and the *known* tags."""
        known_sorted = sorted(known)
        super().__init__(
            f"Unsupported provider {provider!r} (registered: {', '.join(known_sorted) or 'none'}).",
            issues=(FieldIssue("provision.provider", "no handler registered"),),
            context={"provider": provider, "registered": known_sorted},
        )
        self.provider = provider


class UnsupportedConfiguratorError(ConfigurationError):
    """Raised when a configurator tag has no registered schema."""

    code = "CONFIGURATOR_UNSUPPORTED"

    def __init__(self, configurator: object, known: Iterable[str]) -> None:
        """Initialise from the offending *configurator* and the *known* tags."""
        known_sorted = sorted(known)
        super().__init__(
            f"Unsupported configurator {configurator!r} "
            f"(registered: {', '.join(known_sorted) or 'none'}).",
            issues=(FieldIssue("configuration.configurator", "no handler registered"),),
            context={"configurator": configurator, "registered": known_sorted},
        )
        self.configurator = configurator


class InvalidTransitionError(ConfigurationError):
    """Raised when a lifecycle verb is not allowed from the current state."""

    code = "LIFECYCLE_TRANSITION_INVALID"
    suggestions = ("Inspect the instance with `padctl instance show` before retrying.",)

    def __init__(self, name: str, current: str, verb: str) -> None:
        """Initialise from the instance *name*, its *current* state and the *verb*."""
        super().__init__(
            f"Cannot {verb} instance '{name}' while it is {current}.",
            context={"name": name, "state": current, "verb": verb},
        )


class ConflictError(PadctlError):
    """Raised when an optimistic-concurrency check fails on write."""

    code = "STATE_CONFLICT"
    suggestions = ("Reload the instance state and retry the operation.",)

    def __init__(
        self,
        name: str,
        *,
        expected: str | None,
        actual: str | None,
        message: str | None = None,
    ) -> None:
        """Initialise with the *expected* and *actual* fingerprints."""
        super().__init__(
            message
            or f"State for instance '{name}' changed since it was loaded; refusing to overwrite.",
            context={"name": name, "expected_fingerprint": expected, "actual_fingerprint": actual},
        )
        self.name = name
        self.expected = expected
        self.actual = actual


class InstanceExistsError(ConflictError):
    """Raised when creating an instance whose record already exists."""

    code = "INSTANCE_EXISTS"
    suggestions = (
        "Resume provisioning with `--resume` or destroy the instance first.",
    )

    def __init__(self, name: str, *, actual: str | None) -> None:
        """Initialise for the existing instance *name*."""
        super().__init__(
            name,
            expected=None,
            actual=actual,
            message=f"Instance '{name}' already exists.",
        )


class NotFoundError(PadctlError):
    """Raised when loading an instance name with no persisted record."""

    code = "INSTANCE_NOT_FOUND"
    suggestions = ("List known instances with `padctl instance list`.",)

    def __init__(self, name: str) -> None:
        """Initialise for the missing instance *name*."""
        super().__init__(f"Instance '{name}' not found.", context={"name": name})
        self.name = name


class ProviderError(PadctlError):
    """Raised when a Provisioner or Runner call fails."""

    code = "PROVIDER_FAILURE"
    suggestions = (
        "Check the provider console for partially created resources before retrying.",
    )

    def __init__(
        self,
        message: str,
        *,
        provider: str,
        operation: str,
        context: Mapping[str, object] | None = None,
        cause: BaseException | None = None,
    ) -> None:
        """Initialise with the *provider* tag and *operation* that failed."""
        merged: dict[str, object] = {"provider": provider, "operation": operation}
        merged.update(context or {})
        super().__init__(message, context=merged, cause=cause)
        self.provider = provider
        self.operation = operation


class OperationInterrupted(PadctlError):
    """Raised when a lifecycle operation is cancelled before completion is confirmed."""

    code = "OPERATION_INTERRUPTED"
    suggestions = ("Re-run the command; the record was left as it was before the attempt.",)

    def __init__(self, name: str, operation: str) -> None:
        """Initialise for the interrupted *operation* on instance *name*."""
        super().__init__(
            f"Operation '{operation}' on instance '{name}' was interrupted.",
            context={"name": name, "operation": operation},
        )
        self.name = name
        self.operation = operation


class StateStoreError(PadctlError):
    """Raised when the state store cannot read or write the filesystem."""

    code = "STATE_STORE_IO"


def describe_error(exc: BaseException, *, verbose: bool = False) -> dict[str, object]:
    """Return structured details for any exception."""
    if isinstance(exc, PadctlError):
        return exc.details(verbose=verbose)
    payload: dict[str, object] = {"message": str(exc) or type(exc).__name__}
    if verbose:
        payload["context"] = {"type": type(exc).__name__}
    return payload


__all__ = [
    "ConfigurationError",
    "ConflictError",
    "FieldIssue",
    "InstanceExistsError",
    "InvalidTransitionError",
    "NotFoundError",
    "OperationInterrupted",
    "PadctlError",
    "ProviderError",
    "StateStoreError",
    "UnsupportedConfiguratorError",
    "UnsupportedProviderError",
    "UnsupportedVersionError",
    "describe_error",
]
