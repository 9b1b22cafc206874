"""Google Cloud provider: schemas and factories."""
from __future__ import annotations

from typing import Any, Literal

from pydantic import Field, model_validator

from ..state.schemas import CommonProvisionInput, CommonProvisionOutput
from .driver import CommandDriver, DriverProvisioner, DriverRunner
from .registry import ProviderSchema

TAG = "gcp"


class GcpProvisionInput(CommonProvisionInput):
    """Desired Google Cloud infrastructure."""

    project_id: str = Field(min_length=1)
    region: str = Field(pattern=r"^[a-z]+-[a-z]+\d+$")
    zone: str = Field(pattern=r"^[a-z]+-[a-z]+\d+-[a-z]$")
    machine_type: str = Field(min_length=1)
    accelerator_type: str = Field(min_length=1)
    disk_size_gb: int = Field(gt=0)
    data_disk_size_gb: int = Field(default=0, ge=0)
    public_ip_type: Literal["static", "dynamic"] = "static"
    use_spot: bool = False

    @model_validator(mode="after")
    def _zone_in_region(self) -> GcpProvisionInput:
        if not self.zone.startswith(f"{self.region}-"):
            raise ValueError(f"zone '{self.zone}' is not in region '{self.region}'")
        return self


class GcpProvisionOutput(CommonProvisionOutput):
    """Resources created on Google Cloud."""

    instance_name: str = Field(min_length=1)


DEFAULTS: dict[str, Any] = {
    "machine_type": "n1-standard-8",
    "accelerator_type": "nvidia-tesla-t4",
    "disk_size_gb": 50,
    "data_disk_size_gb": 0,
    "public_ip_type": "static",
    "use_spot": False,
}

SCHEMA = ProviderSchema(
    input_model=GcpProvisionInput,
    output_model=GcpProvisionOutput,
    defaults=DEFAULTS,
)


def make_provisioner(instance_name: str, driver: CommandDriver) -> DriverProvisioner:
    """Return the provisioner for *instance_name*."""
    return DriverProvisioner(instance_name, driver)


def make_runner(instance_name: str, driver: CommandDriver) -> DriverRunner:
    """Return the runner for *instance_name*."""
    return DriverRunner(instance_name, driver)


__all__ = [
    "DEFAULTS",
    "GcpProvisionInput",
    "GcpProvisionOutput",
    "SCHEMA",
    "TAG",
    "make_provisioner",
    "make_runner",
]
