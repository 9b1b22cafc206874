"""Instance lifecycle states and helpers shared by the initializer and manager.

The lifecycle state is derived, never persisted: a record without provision
output is ``FAILED`` (a provisioning attempt did not complete), a record with
output is ``PROVISIONED`` and, when the runner reports a live status, ``READY``
or ``STOPPED``::

    UNINITIALIZED -> PROVISIONING -> PROVISIONED -> CONFIGURING -> READY <-> STOPPED
                                         |                            |
                                         +------> DESTROYING -> DESTROYED

``FAILED`` is reachable from every in-flight state and only left through an
explicit retry (``create --resume``, ``update``, ``configure`` or
``destroy``).
"""
from __future__ import annotations

import contextlib
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, TypeVar

from ..cancel import CancelToken
from ..errors import (
    ConfigurationError,
    InvalidTransitionError,
    OperationInterrupted,
    PadctlError,
    ProviderError,
)
from ..locking import LockManager
from ..logging import OperationScope, StructuredLogger
from ..state.builder import StateBuilder
from ..state.model import InstanceState

T = TypeVar("T")


class LifecycleState(str, Enum):
    """Derived lifecycle state of an instance."""

    UNINITIALIZED = "uninitialized"
    PROVISIONING = "provisioning"
    PROVISIONED = "provisioned"
    CONFIGURING = "configuring"
    READY = "ready"
    STOPPED = "stopped"
    DESTROYING = "destroying"
    DESTROYED = "destroyed"
    FAILED = "failed"


_S = LifecycleState

TRANSITIONS: dict[LifecycleState, frozenset[LifecycleState]] = {
    _S.UNINITIALIZED: frozenset({_S.PROVISIONING}),
    _S.PROVISIONING: frozenset({_S.PROVISIONED, _S.FAILED}),
    _S.PROVISIONED: frozenset(
        {_S.PROVISIONING, _S.CONFIGURING, _S.READY, _S.STOPPED, _S.DESTROYING}
    ),
    _S.CONFIGURING: frozenset({_S.READY, _S.FAILED}),
    _S.READY: frozenset({_S.PROVISIONING, _S.CONFIGURING, _S.STOPPED, _S.DESTROYING}),
    _S.STOPPED: frozenset({_S.PROVISIONING, _S.CONFIGURING, _S.READY, _S.DESTROYING}),
    _S.DESTROYING: frozenset({_S.DESTROYED, _S.FAILED}),
    _S.DESTROYED: frozenset(),
    _S.FAILED: frozenset({_S.PROVISIONING, _S.CONFIGURING, _S.DESTROYING}),
}

LIVE_STATUS_STATES: dict[str, LifecycleState] = {
    "running": _S.READY,
    "stopped": _S.STOPPED,
}


def can_transition(current: LifecycleState, target: LifecycleState) -> bool:
    """Return ``True`` when *target* may follow *current*."""
    return target == current or target in TRANSITIONS[current]


def require_transition(
    name: str,
    current: LifecycleState,
    target: LifecycleState,
    verb: str,
) -> None:
    """Raise :class:`InvalidTransitionError` unless *current* may move to *target*."""
    if not can_transition(current, target):
        raise InvalidTransitionError(name, current.value, verb)


def state_of(record: InstanceState | None, live_status: str | None = None) -> LifecycleState:
    """Return the lifecycle state derived from *record* and an optional live status."""
    if record is None:
        return _S.UNINITIALIZED
    if not record.provisioned:
        return _S.FAILED
    if live_status is None:
        return _S.PROVISIONED
    return LIVE_STATUS_STATES.get(live_status, _S.PROVISIONED)


@dataclass(frozen=True)
class OperationResult:
    """Outcome of a lifecycle verb."""

    name: str
    operation: str
    state: LifecycleState
    changed: bool
    message: str
    fingerprint: str | None = None
    details: Mapping[str, object] = field(default_factory=dict)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "name": self.name,
            "operation": self.operation,
            "state": self.state.value,
            "changed": self.changed,
            "message": self.message,
            "fingerprint": self.fingerprint,
            "details": dict(self.details),
        }


def ensure_not_cancelled(cancel: CancelToken | None, name: str, operation: str) -> None:
    """Raise :class:`OperationInterrupted` if *cancel* was triggered."""
    if cancel is not None and cancel.cancelled:
        raise OperationInterrupted(name, operation)


def invoke_provider(
    scope: OperationScope,
    *,
    name: str,
    provider: str,
    operation: str,
    call: Callable[[], T],
    cancel: CancelToken | None = None,
) -> T:
    """Run a Provisioner/Runner *call*, normalising failures and cancellation.

    Unexpected exceptions are wrapped in :class:`ProviderError`. When *cancel*
    fires while the call is in flight the result is discarded and
    :class:`OperationInterrupted` is raised.
    """
    step = f"{provider}.{operation}"
    ensure_not_cancelled(cancel, name, operation)
    try:
        result = call()
    except OperationInterrupted:
        scope.add_step(step, status="interrupted")
        raise
    except PadctlError as exc:
        scope.add_step(step, status="error", detail=exc.message)
        raise
    except Exception as exc:
        scope.add_step(step, status="error", detail=str(exc))
        raise ProviderError(
            f"Provider '{provider}' failed during {operation} of instance '{name}': {exc}",
            provider=provider,
            operation=operation,
            context={"name": name},
            cause=exc,
        ) from exc
    if cancel is not None and cancel.cancelled:
        scope.add_step(step, status="interrupted")
        raise OperationInterrupted(name, operation)
    scope.add_step(step)
    return result


def merge_provider_output(
    builder: StateBuilder,
    state: InstanceState,
    output: Mapping[str, Any],
    operation: str,
) -> InstanceState:
    """Return *state* carrying *output*; an incomplete output is a provider failure."""
    try:
        return builder.with_output(state, output)
    except ConfigurationError as exc:
        raise ProviderError(
            f"Provider '{state.provider}' returned an invalid provision output.",
            provider=state.provider,
            operation=operation,
            context={"name": state.name, "issues": [str(issue) for issue in exc.issues]},
            cause=exc,
        ) from exc


@contextlib.contextmanager
def operation_scope(
    logger: StructuredLogger | None,
    locks: LockManager | None,
    command: str,
    name: str,
    *,
    args: Mapping[str, object] | None = None,
) -> Iterator[OperationScope]:
    """Hold the mutation locks for *name* and record the operation log entry."""
    if logger is not None:
        logged = logger.operation(command, args=args, target={"instance": name})
    else:
        logged = contextlib.nullcontext(
            OperationScope(command=command, args=dict(args or {}), target={"instance": name})
        )
    with logged as scope:
        if locks is None:
            yield scope
            return
        with locks.mutate_instances([name]) as bundle:
            scope.set_lock_wait_ms(bundle.wait_ms)
            yield scope


__all__ = [
    "LIVE_STATUS_STATES",
    "LifecycleState",
    "OperationResult",
    "TRANSITIONS",
    "can_transition",
    "ensure_not_cancelled",
    "invoke_provider",
    "merge_provider_output",
    "operation_scope",
    "require_transition",
    "state_of",
]
