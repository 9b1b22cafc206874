"""Azure provider: schemas and factories."""
from __future__ import annotations

from typing import Any, Literal
from uuid import UUID

from pydantic import Field

from ..state.schemas import CommonProvisionInput, CommonProvisionOutput
from .driver import CommandDriver, DriverProvisioner, DriverRunner
from .registry import ProviderSchema

TAG = "azure"


class AzureProvisionInput(CommonProvisionInput):
    """Desired Azure infrastructure."""

    subscription_id: UUID | None = None
    location: str = Field(pattern=r"^[a-z0-9]+$")
    vm_size: str = Field(min_length=1)
    disk_size_gb: int = Field(gt=0)
    data_disk_size_gb: int = Field(default=0, ge=0)
    public_ip_type: Literal["static", "dynamic"] = "static"
    use_spot: bool = False


class AzureProvisionOutput(CommonProvisionOutput):
    """Resources created on Azure."""

    vm_name: str = Field(min_length=1)
    resource_group_name: str = Field(min_length=1)


DEFAULTS: dict[str, Any] = {
    "vm_size": "Standard_NC4as_T4_v3",
    "disk_size_gb": 30,
    "data_disk_size_gb": 0,
    "public_ip_type": "static",
    "use_spot": False,
}

SCHEMA = ProviderSchema(
    input_model=AzureProvisionInput,
    output_model=AzureProvisionOutput,
    defaults=DEFAULTS,
)


def make_provisioner(instance_name: str, driver: CommandDriver) -> DriverProvisioner:
    """Return the provisioner for *instance_name*."""
    return DriverProvisioner(instance_name, driver)


def make_runner(instance_name: str, driver: CommandDriver) -> DriverRunner:
    """Return the runner for *instance_name*."""
    return DriverRunner(instance_name, driver)


__all__ = [
    "AzureProvisionInput",
    "AzureProvisionOutput",
    "DEFAULTS",
    "SCHEMA",
    "TAG",
    "make_provisioner",
    "make_runner",
]
