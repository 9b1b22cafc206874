"""Lifecycle verbs for existing instances.

Every verb loads the record, resolves the provider's Provisioner or Runner
from the registry and calls it. Only provisioning verbs write the record:

* ``update`` persists the merged input together with the new provision
  output, after the provider succeeded, using the fingerprint from load time.
* ``configure`` with new configuration input persists it once the runner
  applied it. Provision input and deferred values are rejected there; they
  only change through ``update``.
* ``destroy`` deletes the record as its very last step; when the provider
  fails the record is left untouched.

``start``, ``stop`` and ``restart`` act on the live server only; the record is
never rewritten for them.
"""
from __future__ import annotations

from collections.abc import Mapping
from contextlib import AbstractContextManager
from dataclasses import dataclass

from ..cancel import CancelToken
from ..errors import (
    ConfigurationError,
    FieldIssue,
    InvalidTransitionError,
    PadctlError,
    ProviderError,
)
from ..locking import LockManager
from ..logging import OperationScope, StructuredLogger
from ..providers.registry import ProviderRegistry
from ..state.builder import PartialInput, StateBuilder
from ..state.model import InstanceState
from ..state.store import LoadedState, StateStore
from .lifecycle import (
    LifecycleState,
    OperationResult,
    invoke_provider,
    merge_provider_output,
    operation_scope,
    require_transition,
    state_of,
)


@dataclass(frozen=True)
class InstanceSummary:
    """One row of :meth:`InstanceManager.list_instances`."""

    name: str
    provider: str | None
    state: LifecycleState | None
    error: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "name": self.name,
            "provider": self.provider,
            "state": self.state.value if self.state else None,
            "error": self.error,
        }


class InstanceManager:
    """Dispatch lifecycle verbs for existing instances."""

    def __init__(
        self,
        store: StateStore,
        builder: StateBuilder,
        registry: ProviderRegistry,
        *,
        logger: StructuredLogger | None = None,
        locks: LockManager | None = None,
    ) -> None:
        """Wire the manager to its collaborators."""
        self.store = store
        self.builder = builder
        self.registry = registry
        self.logger = logger
        self.locks = locks

    # ------------------------------------------------------------------
    # Read-only verbs
    # ------------------------------------------------------------------
    def show(self, name: str) -> LoadedState:
        """Return the validated record for *name*."""
        return self.store.load(name)

    def list_instances(self) -> list[InstanceSummary]:
        """Summarise every stored record; unreadable records are reported, not raised."""
        summaries: list[InstanceSummary] = []
        for name in self.store.list_names():
            try:
                loaded = self.store.load(name)
            except PadctlError as exc:
                summaries.append(InstanceSummary(name, None, None, error=exc.message))
                continue
            summaries.append(
                InstanceSummary(name, loaded.state.provider, state_of(loaded.state))
            )
        return summaries

    def status(self, name: str) -> OperationResult:
        """Return the lifecycle state refined with the runner's live status."""
        loaded = self.store.load(name)
        state = loaded.state
        if not state.provisioned:
            return self._result(
                loaded,
                "status",
                LifecycleState.FAILED,
                changed=False,
                message=f"Instance '{name}' has no provision output.",
            )
        runner = self.registry.runner_for(state.provider, name)
        try:
            live = runner.status(state.provision.output or {})
        except PadctlError:
            raise
        except Exception as exc:
            raise ProviderError(
                f"Provider '{state.provider}' failed to report status of '{name}': {exc}",
                provider=state.provider,
                operation="status",
                context={"name": name},
                cause=exc,
            ) from exc
        lifecycle = state_of(state, live)
        return self._result(
            loaded,
            "status",
            lifecycle,
            changed=False,
            message=f"Instance '{name}' is {lifecycle.value} ({live}).",
            details={"live_status": live},
        )

    # ------------------------------------------------------------------
    # Provisioning verbs
    # ------------------------------------------------------------------
    def update(
        self,
        name: str,
        partial: PartialInput,
        *,
        cancel: CancelToken | None = None,
    ) -> OperationResult:
        """Merge *partial* into the record and reconcile the infrastructure."""
        with self._scope("instance update", name) as scope:
            loaded = self._load(name, scope)
            require_transition(
                name, state_of(loaded.state), LifecycleState.PROVISIONING, "update"
            )
            candidate = self.builder.build(loaded.state, partial)
            scope.add_step("state.build")
            provisioner = self.registry.provisioner_for(candidate.provider, name)
            prior_output = loaded.state.provision.output
            output = invoke_provider(
                scope,
                name=name,
                provider=candidate.provider,
                operation="update",
                call=lambda: provisioner.update(
                    candidate.provision.input, prior_output, cancel=cancel
                ),
                cancel=cancel,
            )
            updated = merge_provider_output(self.builder, candidate, output, "update")
            fingerprint = self.store.save(updated, expected=loaded.fingerprint)
            scope.add_step("state.save")
            message = f"Instance '{name}' updated."
            scope.success(message, changed=1)
            return OperationResult(
                name=name,
                operation="update",
                state=LifecycleState.PROVISIONED,
                changed=True,
                message=message,
                fingerprint=fingerprint,
            )

    def destroy(self, name: str, *, cancel: CancelToken | None = None) -> OperationResult:
        """Release the infrastructure, then delete the record."""
        with self._scope("instance destroy", name) as scope:
            loaded = self._load(name, scope)
            state = loaded.state
            require_transition(name, state_of(state), LifecycleState.DESTROYING, "destroy")
            provisioner = self.registry.provisioner_for(state.provider, name)
            invoke_provider(
                scope,
                name=name,
                provider=state.provider,
                operation="destroy",
                call=lambda: provisioner.destroy(state.provision.output, cancel=cancel),
                cancel=cancel,
            )
            self.store.delete(name, expected=loaded.fingerprint)
            scope.add_step("state.delete")
            if self.locks is not None:
                self.locks.discard(name)
            message = f"Instance '{name}' destroyed."
            scope.success(message, changed=1)
            return OperationResult(
                name=name,
                operation="destroy",
                state=LifecycleState.DESTROYED,
                changed=True,
                message=message,
            )

    # ------------------------------------------------------------------
    # Runner verbs
    # ------------------------------------------------------------------
    def start(self, name: str, *, cancel: CancelToken | None = None) -> OperationResult:
        """Start the instance server."""
        return self._run("start", name, LifecycleState.READY, cancel=cancel)

    def stop(self, name: str, *, cancel: CancelToken | None = None) -> OperationResult:
        """Stop the instance server."""
        return self._run("stop", name, LifecycleState.STOPPED, cancel=cancel)

    def restart(self, name: str, *, cancel: CancelToken | None = None) -> OperationResult:
        """Stop then start the instance server."""
        with self._scope("instance restart", name) as scope:
            loaded = self._load(name, scope)
            state = self._require_output(loaded, "restart")
            runner = self.registry.runner_for(state.provider, name)
            output = state.provision.output or {}
            for verb, call in (
                ("stop", lambda: runner.stop(output, cancel=cancel)),
                ("start", lambda: runner.start(output, cancel=cancel)),
            ):
                invoke_provider(
                    scope,
                    name=name,
                    provider=state.provider,
                    operation=verb,
                    call=call,
                    cancel=cancel,
                )
            message = f"Instance '{name}' restarted."
            scope.success(message)
            return self._result(
                loaded, "restart", LifecycleState.READY, changed=True, message=message
            )

    def configure(
        self,
        name: str,
        partial: PartialInput | None = None,
        *,
        cancel: CancelToken | None = None,
    ) -> OperationResult:
        """Apply the configuration, persisting new configuration input afterwards."""
        with self._scope("instance configure", name) as scope:
            loaded = self._load(name, scope)
            state = self._require_output(loaded, "configure")
            require_transition(name, state_of(state), LifecycleState.CONFIGURING, "configure")
            desired = state
            if partial is not None:
                _reject_provisioning_fragments(partial)
                desired = self.builder.build(state, partial)
                scope.add_step("state.build")
            runner = self.registry.runner_for(state.provider, name)
            invoke_provider(
                scope,
                name=name,
                provider=state.provider,
                operation="configure",
                call=lambda: runner.apply_configuration(
                    desired.configuration.input,
                    desired.provision.output or {},
                    cancel=cancel,
                ),
                cancel=cancel,
            )
            fingerprint = loaded.fingerprint
            changed = desired != state
            if changed:
                fingerprint = self.store.save(desired, expected=loaded.fingerprint)
                scope.add_step("state.save")
            message = f"Instance '{name}' configured."
            scope.success(message, changed=int(changed))
            return OperationResult(
                name=name,
                operation="configure",
                state=LifecycleState.READY,
                changed=changed,
                message=message,
                fingerprint=fingerprint,
            )

    # ------------------------------------------------------------------
    def _scope(self, command: str, name: str) -> AbstractContextManager[OperationScope]:
        return operation_scope(self.logger, self.locks, command, name)

    def _load(self, name: str, scope: OperationScope) -> LoadedState:
        loaded = self.store.load(name)
        scope.add_step("state.load")
        return loaded

    @staticmethod
    def _require_output(loaded: LoadedState, verb: str) -> InstanceState:
        state = loaded.state
        if not state.provisioned:
            raise InvalidTransitionError(state.name, LifecycleState.FAILED.value, verb)
        return state

    def _run(
        self,
        verb: str,
        name: str,
        target: LifecycleState,
        *,
        cancel: CancelToken | None,
    ) -> OperationResult:
        with self._scope(f"instance {verb}", name) as scope:
            loaded = self._load(name, scope)
            state = self._require_output(loaded, verb)
            require_transition(name, state_of(state), target, verb)
            runner = self.registry.runner_for(state.provider, name)
            method = runner.start if verb == "start" else runner.stop
            invoke_provider(
                scope,
                name=name,
                provider=state.provider,
                operation=verb,
                call=lambda: method(state.provision.output or {}, cancel=cancel),
                cancel=cancel,
            )
            message = f"Instance '{name}' {'started' if verb == 'start' else 'stopped'}."
            scope.success(message)
            return self._result(loaded, verb, target, changed=True, message=message)

    @staticmethod
    def _result(
        loaded: LoadedState,
        operation: str,
        state: LifecycleState,
        *,
        changed: bool,
        message: str,
        details: Mapping[str, object] | None = None,
    ) -> OperationResult:
        return OperationResult(
            name=loaded.state.name,
            operation=operation,
            state=state,
            changed=changed,
            message=message,
            fingerprint=loaded.fingerprint,
            details=dict(details or {}),
        )


def _reject_provisioning_fragments(partial: PartialInput) -> None:
    # Provision input only changes through update, which reconciles it with the provider.
    sections = (("provision.input", partial.provision), ("deferred", partial.deferred))
    issues = [
        FieldIssue(f"{section}.{key}", "use 'instance update'")
        for section, fragment in sections
        for key in fragment
    ]
    if issues:
        raise ConfigurationError("configure only accepts configuration input.", issues=issues)


__all__ = ["InstanceManager", "InstanceSummary"]
