"""Scaleway provider: schemas, zone/region helpers and factories."""
from __future__ import annotations

import re
from typing import Any
from uuid import UUID

from pydantic import Field, model_validator

from ..state.schemas import CommonProvisionInput, CommonProvisionOutput
from .driver import CommandDriver, DriverProvisioner, DriverRunner
from .registry import ProviderSchema

TAG = "scaleway"

REGION_PATTERN = r"^[a-z]{2}-[a-z]{3,4}$"
ZONE_PATTERN = r"^[a-z]{2}-[a-z]{3,4}-\d$"
INSTANCE_TYPE_PATTERN = r"^[A-Z0-9]+(-[A-Z0-9]+)*$"

ZONE_REGIONS: dict[str, str] = {
    "fr-par-1": "fr-par",
    "fr-par-2": "fr-par",
    "fr-par-3": "fr-par",
    "nl-ams-1": "nl-ams",
    "nl-ams-2": "nl-ams",
    "nl-ams-3": "nl-ams",
    "pl-waw-1": "pl-waw",
    "pl-waw-2": "pl-waw",
    "pl-waw-3": "pl-waw",
}

_ZONE_SUFFIX_RE = re.compile(r"-\d+$")
_SPACES_RE = re.compile(r"\s+")
_LOWERCASE_KEYS = frozenset({"region", "zone"})


def region_for_zone(zone: str) -> str:
    """Return the region a Scaleway *zone* belongs to."""
    known = ZONE_REGIONS.get(zone)
    if known is not None:
        return known
    return _ZONE_SUFFIX_RE.sub("", zone)


def _normalise(key: str, value: Any) -> Any:
    # Strings are trimmed with inner whitespace collapsed; region and zone are lowercased.
    if not isinstance(value, str):
        return value
    value = _SPACES_RE.sub(" ", value.strip())
    return value.lower() if key in _LOWERCASE_KEYS else value


class ScalewayProvisionInput(CommonProvisionInput):
    """Desired Scaleway infrastructure."""

    project_id: UUID | None = None
    region: str = Field(pattern=REGION_PATTERN)
    zone: str = Field(pattern=ZONE_PATTERN)
    instance_type: str = Field(pattern=INSTANCE_TYPE_PATTERN)
    delete_instance_server_on_stop: bool = False
    disk_size_gb: int = Field(gt=0)
    data_disk_size_gb: int = Field(default=0, ge=0)
    image_id: str | None = None

    @model_validator(mode="before")
    @classmethod
    def _normalise_and_infer_region(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = {key: _normalise(key, value) for key, value in data.items()}
        if data.get("region") is None and isinstance(data.get("zone"), str):
            data["region"] = region_for_zone(data["zone"])
        return data

    @model_validator(mode="after")
    def _zone_in_region(self) -> ScalewayProvisionInput:
        if region_for_zone(self.zone) != self.region:
            raise ValueError(f"zone '{self.zone}' is not in region '{self.region}'")
        return self


class ScalewayProvisionOutput(CommonProvisionOutput):
    """Resources created on Scaleway."""

    instance_server_id: str = Field(min_length=1)
    instance_server_name: str | None = None
    root_disk_id: str | None = None
    data_disk_id: str | None = None


DEFAULTS: dict[str, Any] = {
    "instance_type": "GPU-3070-S",
    "disk_size_gb": 20,
    "data_disk_size_gb": 0,
    "delete_instance_server_on_stop": False,
}

SCHEMA = ProviderSchema(
    input_model=ScalewayProvisionInput,
    output_model=ScalewayProvisionOutput,
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
    "SCHEMA",
    "ScalewayProvisionInput",
    "ScalewayProvisionOutput",
    "TAG",
    "ZONE_REGIONS",
    "make_provisioner",
    "make_runner",
    "region_for_zone",
]
