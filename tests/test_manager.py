"""Tests for lifecycle verbs on existing instances."""
from __future__ import annotations

from pathlib import Path

import pytest

from padctl.cancel import CancelToken
from padctl.errors import (
    ConfigurationError,
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    OperationInterrupted,
    ProviderError,
)
from padctl.instances import InstanceInitializer, InstanceManager, LifecycleState
from padctl.locking import LockManager
from padctl.logging import StructuredLogger
from padctl.providers import ProviderRegistry
from padctl.state import PartialInput, StateBuilder, StateParser, StateStore
from padctl.state.store import LOCKS_DIR_NAME, STATE_FILE_NAME

from conftest import SCALEWAY_OUTPUT, FakeProvider, scaleway_partial


class Harness:
    """Initializer and manager sharing one store."""

    def __init__(self, root: Path, registry: ProviderRegistry) -> None:
        self.store = StateStore(root / "instances", StateParser(registry), lock_timeout=2.0)
        self.builder = StateBuilder(registry, self.store.parser)
        logger = StructuredLogger(root / "logs")
        locks = LockManager(root / "run", default_timeout=2.0)
        self.initializer = InstanceInitializer(
            self.store, self.builder, registry, logger=logger, locks=locks
        )
        self.manager = InstanceManager(
            self.store, self.builder, registry, logger=logger, locks=locks
        )


@pytest.fixture
def harness(tmp_path: Path, fake_registry: ProviderRegistry) -> Harness:
    """Harness backed by the fake provider."""
    return Harness(tmp_path, fake_registry)


@pytest.fixture
def demo(harness: Harness, fake_provider: FakeProvider) -> str:
    """A provisioned Scaleway instance named ``demo-1``; the call log is reset."""
    harness.initializer.initialize(scaleway_partial("demo-1"))
    fake_provider.calls.clear()
    return "demo-1"


def _bytes(harness: Harness, name: str) -> bytes:
    return (harness.store.root / name / STATE_FILE_NAME).read_bytes()


# ----------------------------------------------------------------------
# update
# ----------------------------------------------------------------------
def test_update_reconciles_and_persists(
    harness: Harness,
    fake_provider: FakeProvider,
    demo: str,
) -> None:
    """update sends the merged input with the prior output and saves the result."""
    fake_provider.output = {**SCALEWAY_OUTPUT, "data_disk_id": "vol-9"}

    result = harness.manager.update(demo, PartialInput(provision={"data_disk_size_gb": 100}))

    assert result.changed is True
    verb, (sent_input, prior) = fake_provider.calls[0]
    assert verb == "update"
    assert sent_input["data_disk_size_gb"] == 100
    assert sent_input["disk_size_gb"] == 20
    assert prior is not None and prior["instance_server_id"] == "srv-0001"
    stored = harness.store.load(demo)
    assert stored.fingerprint == result.fingerprint
    assert stored.state.provision.input["data_disk_size_gb"] == 100
    assert stored.state.provision.output is not None
    assert stored.state.provision.output["data_disk_id"] == "vol-9"


def test_update_conflicts_with_concurrent_writer(
    harness: Harness,
    fake_provider: FakeProvider,
    demo: str,
) -> None:
    """A record changed during the provider call is not overwritten."""

    def concurrent_edit() -> None:
        loaded = harness.store.load(demo)
        edited = harness.builder.build(loaded.state, PartialInput(provision={"disk_size_gb": 99}))
        harness.store.save(edited, expected=loaded.fingerprint)

    fake_provider.hooks["update"] = concurrent_edit

    with pytest.raises(ConflictError):
        harness.manager.update(demo, PartialInput(provision={"disk_size_gb": 40}))

    assert harness.store.load(demo).state.provision.input["disk_size_gb"] == 99


def test_update_failure_leaves_record_untouched(
    harness: Harness,
    fake_provider: FakeProvider,
    demo: str,
) -> None:
    """Nothing is written when the provider update fails."""
    before = _bytes(harness, demo)
    fake_provider.failures["update"] = RuntimeError("resize refused")

    with pytest.raises(ProviderError):
        harness.manager.update(demo, PartialInput(provision={"disk_size_gb": 40}))

    assert _bytes(harness, demo) == before


def test_update_interrupted_leaves_record_untouched(
    harness: Harness,
    fake_provider: FakeProvider,
    demo: str,
) -> None:
    """Cancellation during update never records the new input."""
    before = _bytes(harness, demo)
    token = CancelToken()
    fake_provider.hooks["update"] = lambda: token.cancel("SIGINT")

    with pytest.raises(OperationInterrupted):
        harness.manager.update(
            demo, PartialInput(provision={"disk_size_gb": 40}), cancel=token
        )

    assert _bytes(harness, demo) == before


def test_update_of_unknown_instance(harness: Harness) -> None:
    """Updating a missing record raises NotFoundError."""
    with pytest.raises(NotFoundError):
        harness.manager.update("ghost", PartialInput())


# ----------------------------------------------------------------------
# destroy
# ----------------------------------------------------------------------
def test_destroy_removes_record_last(
    harness: Harness,
    fake_provider: FakeProvider,
    demo: str,
) -> None:
    """destroy releases the infrastructure, then deletes the record."""
    seen: list[bool] = []
    fake_provider.hooks["destroy"] = lambda: seen.append(harness.store.exists(demo))

    result = harness.manager.destroy(demo)

    assert result.state is LifecycleState.DESTROYED
    assert seen == [True]
    assert fake_provider.calls[0][1]["instance_server_id"] == "srv-0001"
    assert not harness.store.exists(demo)
    assert harness.manager.locks is not None
    assert not harness.manager.locks.lock_path(demo).exists()
    assert not (harness.store.root / LOCKS_DIR_NAME / f"{demo}.lock").exists()


def test_destroy_failure_keeps_record(
    harness: Harness,
    fake_provider: FakeProvider,
    demo: str,
) -> None:
    """A failed destroy leaves the record exactly as it was."""
    before = _bytes(harness, demo)
    fake_provider.failures["destroy"] = RuntimeError("volume busy")

    with pytest.raises(ProviderError):
        harness.manager.destroy(demo)

    assert _bytes(harness, demo) == before


def test_destroy_of_failed_record(harness: Harness, fake_provider: FakeProvider) -> None:
    """A record without output can still be destroyed."""
    fake_provider.failures["create"] = RuntimeError("out of GPUs")
    with pytest.raises(ProviderError):
        harness.initializer.initialize(scaleway_partial("demo-1"))
    del fake_provider.failures["create"]

    harness.manager.destroy("demo-1")

    assert fake_provider.calls[-1] == ("destroy", None)
    assert not harness.store.exists("demo-1")


# ----------------------------------------------------------------------
# runner verbs
# ----------------------------------------------------------------------
def test_start_stop_never_rewrite_record(
    harness: Harness,
    fake_provider: FakeProvider,
    demo: str,
) -> None:
    """Runner verbs act on the server only."""
    before = _bytes(harness, demo)

    stopped = harness.manager.stop(demo)
    status = harness.manager.status(demo)
    started = harness.manager.start(demo)

    assert stopped.state is LifecycleState.STOPPED
    assert status.state is LifecycleState.STOPPED
    assert status.details == {"live_status": "stopped"}
    assert started.state is LifecycleState.READY
    assert fake_provider.verbs() == ["stop", "status", "start"]
    assert _bytes(harness, demo) == before


def test_restart_stops_then_starts(
    harness: Harness,
    fake_provider: FakeProvider,
    demo: str,
) -> None:
    """restart issues stop followed by start."""
    result = harness.manager.restart(demo)

    assert result.state is LifecycleState.READY
    assert fake_provider.verbs() == ["stop", "start"]


def test_runner_verbs_require_provision_output(
    harness: Harness,
    fake_provider: FakeProvider,
) -> None:
    """An instance whose provisioning failed cannot be started."""
    fake_provider.failures["create"] = RuntimeError("out of GPUs")
    with pytest.raises(ProviderError):
        harness.initializer.initialize(scaleway_partial("demo-1"))
    fake_provider.calls.clear()

    with pytest.raises(InvalidTransitionError):
        harness.manager.start("demo-1")
    assert harness.manager.status("demo-1").state is LifecycleState.FAILED
    assert fake_provider.calls == []


def test_status_wraps_provider_exceptions(
    harness: Harness,
    fake_provider: FakeProvider,
    demo: str,
) -> None:
    """Unexpected runner failures become ProviderError."""
    fake_provider.failures["status"] = RuntimeError("timeout")

    with pytest.raises(ProviderError):
        harness.manager.status(demo)


# ----------------------------------------------------------------------
# configure
# ----------------------------------------------------------------------
def test_configure_persists_new_configuration(
    harness: Harness,
    fake_provider: FakeProvider,
    demo: str,
) -> None:
    """New configuration input is saved once the runner applied it."""
    result = harness.manager.configure(
        demo, PartialInput(configuration={"keyboard": {"layout": "fr"}})
    )

    assert result.changed is True
    assert fake_provider.calls[0][1]["keyboard"]["layout"] == "fr"
    stored = harness.store.load(demo).state.configuration.input
    assert stored["keyboard"]["layout"] == "fr"


def test_configure_without_changes_does_not_write(
    harness: Harness,
    fake_provider: FakeProvider,
    demo: str,
) -> None:
    """Re-applying the stored configuration leaves the record untouched."""
    before = _bytes(harness, demo)

    result = harness.manager.configure(demo)

    assert result.changed is False
    assert fake_provider.verbs() == ["configure"]
    assert _bytes(harness, demo) == before


@pytest.mark.parametrize(
    ("partial", "path"),
    [
        (PartialInput(provision={"disk_size_gb": 500}), "provision.input.disk_size_gb"),
        (PartialInput(deferred={"data_disk_profile": "high"}), "deferred.data_disk_profile"),
    ],
)
def test_configure_rejects_provision_changes(
    harness: Harness,
    fake_provider: FakeProvider,
    demo: str,
    partial: PartialInput,
    path: str,
) -> None:
    """Provision input can only change through update."""
    before = _bytes(harness, demo)

    with pytest.raises(ConfigurationError) as excinfo:
        harness.manager.configure(demo, partial)

    assert [issue.path for issue in excinfo.value.issues] == [path]
    assert fake_provider.calls == []
    assert _bytes(harness, demo) == before
    assert harness.store.load(demo).state.provision.input["disk_size_gb"] == 20


def test_configure_failure_keeps_old_configuration(
    harness: Harness,
    fake_provider: FakeProvider,
    demo: str,
) -> None:
    """Configuration input is only persisted after a successful apply."""
    before = _bytes(harness, demo)
    fake_provider.failures["configure"] = RuntimeError("playbook failed")

    with pytest.raises(ProviderError):
        harness.manager.configure(demo, PartialInput(configuration={"locale": "fr_FR.UTF-8"}))

    assert _bytes(harness, demo) == before


# ----------------------------------------------------------------------
# read-only verbs
# ----------------------------------------------------------------------
def test_list_instances_reports_broken_records(harness: Harness, demo: str) -> None:
    """Unreadable records are listed with their problem instead of raising."""
    broken = harness.store.root / "broken" / STATE_FILE_NAME
    broken.parent.mkdir()
    broken.write_text("version: '9'\n", encoding="utf-8")

    summaries = {item.name: item for item in harness.manager.list_instances()}

    assert summaries["demo-1"].state is LifecycleState.PROVISIONED
    assert summaries["demo-1"].provider == "scaleway"
    assert summaries["broken"].state is None
    assert summaries["broken"].error is not None
    assert "Unsupported state schema version" in summaries["broken"].error


def test_dummy_provider_end_to_end(tmp_path: Path, registry: ProviderRegistry) -> None:
    """The built-in dummy provider supports the whole lifecycle in process."""
    harness = Harness(tmp_path, registry)
    harness.initializer.initialize(PartialInput(name="rig-1", provider="dummy"))

    assert harness.manager.status("rig-1").state is LifecycleState.READY
    harness.manager.stop("rig-1")
    assert harness.manager.status("rig-1").state is LifecycleState.STOPPED
    harness.manager.update("rig-1", PartialInput(provision={"instance_type": "dummy-large"}))
    assert harness.store.load("rig-1").state.provision.input["instance_type"] == "dummy-large"
    harness.manager.destroy("rig-1")
    assert harness.manager.list_instances() == []
