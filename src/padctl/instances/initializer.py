"""First-time creation of an instance.

The initializer validates and builds the initial record, persists it with no
provision output, asks the provider to create the infrastructure and finally
persists the record again with the returned output. Any failure after the
first save leaves the record on disk with the output absent so that a later
``create --resume`` or ``destroy`` can pick it up; nothing is rolled back or
retried here.
"""
from __future__ import annotations

from ..cancel import CancelToken
from ..errors import ConfigurationError, FieldIssue, InstanceExistsError
from ..locking import LockManager
from ..logging import OperationScope, StructuredLogger
from ..providers.registry import ProviderRegistry
from ..state.builder import UNSET, PartialInput, StateBuilder
from ..state.model import instance_name_problem
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


class InstanceInitializer:
    """Create instances: validate, build, persist, provision, persist."""

    def __init__(
        self,
        store: StateStore,
        builder: StateBuilder,
        registry: ProviderRegistry,
        *,
        logger: StructuredLogger | None = None,
        locks: LockManager | None = None,
    ) -> None:
        """Wire the initializer to its collaborators."""
        self.store = store
        self.builder = builder
        self.registry = registry
        self.logger = logger
        self.locks = locks

    def initialize(
        self,
        partial: PartialInput,
        *,
        resume: bool = False,
        configure: bool = False,
        cancel: CancelToken | None = None,
    ) -> OperationResult:
        """Create the instance described by *partial*.

        A record that already exists is rejected with
        :class:`InstanceExistsError` unless *resume* is set, in which case a
        record still lacking provision output is provisioned again. When
        *configure* is set the configurator runs once provisioning succeeded.
        """
        name = partial.name
        problem = instance_name_problem(name) if name is not UNSET else "is required"
        if problem:
            raise ConfigurationError(
                "Cannot create instance.",
                issues=(FieldIssue("name", problem),),
            )
        name = str(name)

        with operation_scope(
            self.logger,
            self.locks,
            "instance create",
            name,
            args={
                "provider": None if partial.provider is UNSET else partial.provider,
                "resume": resume,
                "configure": configure,
            },
        ) as scope:
            existing = self._existing(name, resume=resume, scope=scope)
            if existing is not None and existing.state.provisioned:
                scope.success(f"Instance '{name}' is already provisioned.")
                return OperationResult(
                    name=name,
                    operation="create",
                    state=LifecycleState.PROVISIONED,
                    changed=False,
                    message=f"Instance '{name}' is already provisioned.",
                    fingerprint=existing.fingerprint,
                )

            state = self.builder.build(existing.state if existing else None, partial)
            scope.add_step("state.build")
            current = state_of(existing.state if existing else None)
            require_transition(name, current, LifecycleState.PROVISIONING, "create")

            fingerprint = self.store.save(
                state, expected=existing.fingerprint if existing else None
            )
            scope.add_step("state.save", detail="provision output absent")

            provisioner = self.registry.provisioner_for(state.provider, name)
            output = invoke_provider(
                scope,
                name=name,
                provider=state.provider,
                operation="create",
                call=lambda: provisioner.create(state.provision.input, cancel=cancel),
                cancel=cancel,
            )
            provisioned = merge_provider_output(self.builder, state, output, "create")
            fingerprint = self.store.save(provisioned, expected=fingerprint)
            scope.add_step("state.save", detail="provision output recorded")
            result_state = LifecycleState.PROVISIONED

            if configure:
                runner = self.registry.runner_for(state.provider, name)
                invoke_provider(
                    scope,
                    name=name,
                    provider=state.provider,
                    operation="configure",
                    call=lambda: runner.apply_configuration(
                        provisioned.configuration.input,
                        provisioned.provision.output or {},
                        cancel=cancel,
                    ),
                    cancel=cancel,
                )
                result_state = LifecycleState.READY

            message = f"Instance '{name}' created on {state.provider}."
            scope.success(message, changed=1, context={"provider": state.provider})
            return OperationResult(
                name=name,
                operation="create",
                state=result_state,
                changed=True,
                message=message,
                fingerprint=fingerprint,
                details={"provider": state.provider},
            )

    # ------------------------------------------------------------------
    def _existing(
        self,
        name: str,
        *,
        resume: bool,
        scope: OperationScope,
    ) -> LoadedState | None:
        if not self.store.exists(name):
            return None
        if not resume:
            raise InstanceExistsError(name, actual=self.store.fingerprint(name))
        loaded = self.store.load(name)
        scope.add_step("state.load", detail="resuming existing record")
        return loaded


__all__ = ["InstanceInitializer"]
