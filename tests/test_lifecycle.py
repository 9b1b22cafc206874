"""Tests for lifecycle state derivation and provider invocation helpers."""
from __future__ import annotations

import pytest

from padctl.cancel import CancelToken
from padctl.errors import (
    InvalidTransitionError,
    OperationInterrupted,
    ProviderError,
)
from padctl.instances.lifecycle import (
    LifecycleState,
    OperationResult,
    can_transition,
    invoke_provider,
    require_transition,
    state_of,
)
from padctl.logging import OperationScope
from padctl.state import InstanceState, StateBuilder

from conftest import SCALEWAY_OUTPUT, scaleway_partial


def _scope() -> OperationScope:
    return OperationScope(command="test", args={}, target={})


def test_state_of_derives_from_record(builder: StateBuilder) -> None:
    """The lifecycle state follows the record and the live status."""
    bare = builder.build(None, scaleway_partial())
    provisioned: InstanceState = builder.with_output(bare, SCALEWAY_OUTPUT)

    assert state_of(None) is LifecycleState.UNINITIALIZED
    assert state_of(bare) is LifecycleState.FAILED
    assert state_of(bare, "running") is LifecycleState.FAILED
    assert state_of(provisioned) is LifecycleState.PROVISIONED
    assert state_of(provisioned, "running") is LifecycleState.READY
    assert state_of(provisioned, "stopped") is LifecycleState.STOPPED
    assert state_of(provisioned, "starting") is LifecycleState.PROVISIONED


@pytest.mark.parametrize(
    ("current", "target", "allowed"),
    [
        (LifecycleState.UNINITIALIZED, LifecycleState.PROVISIONING, True),
        (LifecycleState.UNINITIALIZED, LifecycleState.READY, False),
        (LifecycleState.FAILED, LifecycleState.PROVISIONING, True),
        (LifecycleState.FAILED, LifecycleState.DESTROYING, True),
        (LifecycleState.FAILED, LifecycleState.READY, False),
        (LifecycleState.READY, LifecycleState.STOPPED, True),
        (LifecycleState.STOPPED, LifecycleState.READY, True),
        (LifecycleState.DESTROYED, LifecycleState.PROVISIONING, False),
        (LifecycleState.READY, LifecycleState.READY, True),
    ],
)
def test_transition_table(
    current: LifecycleState,
    target: LifecycleState,
    allowed: bool,
) -> None:
    """Only the documented transitions are allowed."""
    assert can_transition(current, target) is allowed


def test_require_transition_raises_with_context() -> None:
    """Forbidden transitions raise InvalidTransitionError naming the verb."""
    with pytest.raises(InvalidTransitionError) as excinfo:
        require_transition("demo-1", LifecycleState.FAILED, LifecycleState.READY, "start")

    assert excinfo.value.message == "Cannot start instance 'demo-1' while it is failed."
    assert excinfo.value.context["state"] == "failed"


def test_invoke_provider_records_step_and_returns_result() -> None:
    """Successful calls are logged as steps and return the provider's result."""
    scope = _scope()

    result = invoke_provider(
        scope, name="demo-1", provider="scaleway", operation="create", call=lambda: {"a": 1}
    )

    assert result == {"a": 1}
    assert [(step["name"], step["status"]) for step in scope.steps] == [
        ("scaleway.create", "success")
    ]


def test_invoke_provider_wraps_unexpected_exceptions() -> None:
    """Arbitrary provider exceptions become ProviderError."""
    scope = _scope()

    def explode() -> None:
        raise RuntimeError("api down")

    with pytest.raises(ProviderError) as excinfo:
        invoke_provider(
            scope, name="demo-1", provider="scaleway", operation="destroy", call=explode
        )

    assert isinstance(excinfo.value.cause, RuntimeError)
    assert excinfo.value.provider == "scaleway"
    assert scope.steps[-1]["status"] == "error"


def test_invoke_provider_discards_result_after_cancellation() -> None:
    """A call that completes after cancellation is reported as interrupted."""
    scope = _scope()
    token = CancelToken()

    def create() -> dict[str, str]:
        token.cancel("SIGINT")
        return {"instance_server_id": "srv"}

    with pytest.raises(OperationInterrupted):
        invoke_provider(
            scope,
            name="demo-1",
            provider="scaleway",
            operation="create",
            call=create,
            cancel=token,
        )

    assert scope.steps[-1]["status"] == "interrupted"


def test_invoke_provider_skips_call_when_already_cancelled() -> None:
    """No provider call is made once cancellation was requested."""
    token = CancelToken()
    token.cancel()
    calls: list[str] = []

    with pytest.raises(OperationInterrupted):
        invoke_provider(
            _scope(),
            name="demo-1",
            provider="scaleway",
            operation="start",
            call=lambda: calls.append("start"),
            cancel=token,
        )

    assert calls == []


def test_operation_result_to_dict() -> None:
    """Results serialise their state by value."""
    result = OperationResult(
        name="demo-1",
        operation="stop",
        state=LifecycleState.STOPPED,
        changed=True,
        message="stopped",
    )

    assert result.to_dict() == {
        "name": "demo-1",
        "operation": "stop",
        "state": "stopped",
        "changed": True,
        "message": "stopped",
        "fingerprint": None,
        "details": {},
    }
