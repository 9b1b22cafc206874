"""In-process provider used for demos and tests.

No remote call is ever made. Servers "created" by the dummy provider live in a
process-wide :class:`DummyCloud` table so that start, stop and status behave
consistently within one process. The optional creation delay honours
cancellation, which helps when exercising interrupted operations.
"""
from __future__ import annotations

import threading
from collections.abc import Mapping
from typing import Any

from pydantic import Field

from ..cancel import CancelToken
from ..errors import OperationInterrupted, ProviderError
from ..state.schemas import CommonProvisionInput, CommonProvisionOutput
from .registry import ProviderSchema

TAG = "dummy"


class DummyProvisionInput(CommonProvisionInput):
    """Desired fake infrastructure."""

    instance_type: str = Field(min_length=1)
    create_delay_seconds: float = Field(default=0, ge=0)


class DummyProvisionOutput(CommonProvisionOutput):
    """Fake resources."""

    instance_server_id: str = Field(min_length=1)


DEFAULTS: dict[str, Any] = {
    "instance_type": "dummy-small",
    "create_delay_seconds": 0,
}

SCHEMA = ProviderSchema(
    input_model=DummyProvisionInput,
    output_model=DummyProvisionOutput,
    defaults=DEFAULTS,
)


class DummyCloud:
    """Thread-safe table of fake servers keyed by server id."""

    def __init__(self) -> None:
        """Create an empty cloud."""
        self._lock = threading.Lock()
        self._servers: dict[str, dict[str, Any]] = {}

    def create(self, server_id: str, instance_type: str) -> None:
        """Register a running server."""
        with self._lock:
            self._servers[server_id] = {"status": "running", "instance_type": instance_type}

    def set_status(self, server_id: str, status: str) -> None:
        """Update the status of an existing server."""
        with self._lock:
            server = self._servers.get(server_id)
            if server is None:
                raise KeyError(server_id)
            server["status"] = status

    def status(self, server_id: str) -> str:
        """Return the server status, ``unknown`` when it does not exist."""
        with self._lock:
            server = self._servers.get(server_id)
            return "unknown" if server is None else str(server["status"])

    def delete(self, server_id: str) -> None:
        """Forget a server; deleting twice is harmless."""
        with self._lock:
            self._servers.pop(server_id, None)

    def clear(self) -> None:
        """Forget every server."""
        with self._lock:
            self._servers.clear()


CLOUD = DummyCloud()


def _sleep(delay: float, cancel: CancelToken | None, name: str, operation: str) -> None:
    if delay <= 0:
        return
    if cancel is None:
        threading.Event().wait(delay)
        return
    if cancel.wait(delay):
        raise OperationInterrupted(name, operation)


class DummyProvisioner:
    """Provisioner backed by :data:`CLOUD`."""

    def __init__(self, instance_name: str, cloud: DummyCloud = CLOUD) -> None:
        """Bind the provisioner to *instance_name*."""
        self.instance_name = instance_name
        self.cloud = cloud

    def create(
        self,
        provision_input: Mapping[str, Any],
        *,
        cancel: CancelToken | None = None,
    ) -> Mapping[str, Any]:
        """Create a fake server and return its output."""
        delay = float(provision_input.get("create_delay_seconds") or 0)
        _sleep(delay, cancel, self.instance_name, "create")
        server_id = f"dummy-{self.instance_name}"
        self.cloud.create(server_id, str(provision_input.get("instance_type")))
        return {
            "host": "127.0.0.1",
            "public_ipv4": "127.0.0.1",
            "data_disk_configured": False,
            "instance_server_id": server_id,
        }

    def update(
        self,
        provision_input: Mapping[str, Any],
        prior_output: Mapping[str, Any] | None,
        *,
        cancel: CancelToken | None = None,
    ) -> Mapping[str, Any]:
        """Recreate the fake server when it is missing; otherwise keep it."""
        if prior_output is None:
            return self.create(provision_input, cancel=cancel)
        if self.cloud.status(str(prior_output["instance_server_id"])) == "unknown":
            return self.create(provision_input, cancel=cancel)
        return dict(prior_output)

    def destroy(
        self,
        output: Mapping[str, Any] | None,
        *,
        cancel: CancelToken | None = None,
    ) -> None:
        """Delete the fake server."""
        if output is not None:
            self.cloud.delete(str(output["instance_server_id"]))


class DummyRunner:
    """Runner backed by :data:`CLOUD`."""

    def __init__(self, instance_name: str, cloud: DummyCloud = CLOUD) -> None:
        """Bind the runner to *instance_name*."""
        self.instance_name = instance_name
        self.cloud = cloud

    def start(self, output: Mapping[str, Any], *, cancel: CancelToken | None = None) -> None:
        """Mark the fake server as running."""
        self._set(output, "running", "start")

    def stop(self, output: Mapping[str, Any], *, cancel: CancelToken | None = None) -> None:
        """Mark the fake server as stopped."""
        self._set(output, "stopped", "stop")

    def apply_configuration(
        self,
        configuration: Mapping[str, Any],
        output: Mapping[str, Any],
        *,
        cancel: CancelToken | None = None,
    ) -> None:
        """Accept any configuration for an existing server."""
        self._require(output, "configure")

    def status(self, output: Mapping[str, Any]) -> str:
        """Return the fake server status."""
        return self.cloud.status(str(output["instance_server_id"]))

    def _require(self, output: Mapping[str, Any], operation: str) -> str:
        server_id = str(output["instance_server_id"])
        if self.cloud.status(server_id) == "unknown":
            raise ProviderError(
                f"Dummy server '{server_id}' does not exist.",
                provider=TAG,
                operation=operation,
                context={"instance": self.instance_name},
            )
        return server_id

    def _set(self, output: Mapping[str, Any], status: str, operation: str) -> None:
        server_id = self._require(output, operation)
        self.cloud.set_status(server_id, status)


def make_provisioner(instance_name: str) -> DummyProvisioner:
    """Return the provisioner for *instance_name*."""
    return DummyProvisioner(instance_name)


def make_runner(instance_name: str) -> DummyRunner:
    """Return the runner for *instance_name*."""
    return DummyRunner(instance_name)


__all__ = [
    "CLOUD",
    "DEFAULTS",
    "DummyCloud",
    "DummyProvisionInput",
    "DummyProvisionOutput",
    "DummyProvisioner",
    "DummyRunner",
    "SCHEMA",
    "TAG",
    "make_provisioner",
    "make_runner",
]
