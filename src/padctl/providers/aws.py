"""AWS provider: schemas, data disk performance profiles and factories.

gp3 data disks come with 3000 IOPS and 125 MB/s included. Faster profiles
are derived from the maximum EBS throughput of the chosen instance type, so a
profile name supplied before the instance type is known travels as a deferred
value and is resolved by :func:`resolve_deferred` once the input is merged.
"""
from __future__ import annotations

import math
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Literal

from pydantic import Field, model_validator

from ..errors import ConfigurationError, FieldIssue
from ..state.schemas import CommonProvisionInput, CommonProvisionOutput
from .driver import CommandDriver, DriverProvisioner, DriverRunner
from .registry import ProviderSchema

TAG = "aws"

REGION_PATTERN = r"^[a-z]{2}(-[a-z]+)+-\d$"

GP3_MIN_IOPS = 3000
GP3_MAX_IOPS = 16000
GP3_MIN_THROUGHPUT = 125
GP3_MAX_THROUGHPUT = 1000
IOPS_PER_MBPS = 16

# Maximum EBS throughput (MB/s) of common GPU instance types.
MAX_EBS_THROUGHPUT: dict[str, int] = {
    "g4dn.xlarge": 437,
    "g4dn.2xlarge": 437,
    "g4dn.4xlarge": 593,
    "g4dn.8xlarge": 1187,
    "g4dn.12xlarge": 1187,
    "g4dn.16xlarge": 1187,
    "g5.xlarge": 437,
    "g5.2xlarge": 437,
    "g5.4xlarge": 593,
    "g5.8xlarge": 2000,
    "g5.12xlarge": 2000,
    "g5.16xlarge": 2000,
    "g6.xlarge": 625,
    "g6.2xlarge": 625,
    "g6.4xlarge": 1000,
    "g6.8xlarge": 2000,
    "g6.12xlarge": 2500,
    "g6.16xlarge": 2500,
}

DEFERRED_KEYS = frozenset({"data_disk_profile"})


@dataclass(frozen=True)
class DataDiskProfile:
    """IOPS and throughput provisioned for a gp3 data disk."""

    name: str
    iops: int
    throughput: int


def _round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def data_disk_profiles(instance_type: str) -> dict[str, DataDiskProfile]:
    """Return the data disk profiles available for *instance_type*."""
    standard = DataDiskProfile("standard", GP3_MIN_IOPS, GP3_MIN_THROUGHPUT)
    max_throughput = MAX_EBS_THROUGHPUT.get(instance_type)
    if not max_throughput:
        return {standard.name: standard}
    effective = min(max_throughput, GP3_MAX_THROUGHPUT)
    profiles = [standard]
    for name, share in (("medium", 0.5), ("high", 0.75), ("maximum", 1.0)):
        throughput = min(_round_half_up(effective * share), GP3_MAX_THROUGHPUT)
        iops = min(_round_half_up(throughput * IOPS_PER_MBPS), GP3_MAX_IOPS)
        profiles.append(DataDiskProfile(name, iops, throughput))
    return {profile.name: profile for profile in profiles}


def resolve_deferred(candidate: dict[str, Any], deferred: Mapping[str, Any]) -> dict[str, Any]:
    """Turn a deferred ``data_disk_profile`` into IOPS and throughput fields."""
    issues = [
        FieldIssue(f"deferred.{key}", "unsupported")
        for key in deferred
        if key not in DEFERRED_KEYS
    ]
    profile_name = deferred.get("data_disk_profile")
    instance_type = candidate.get("instance_type")
    if profile_name is not None and not isinstance(instance_type, str):
        issues.append(
            FieldIssue(
                "provision.input.instance_type",
                "is required to resolve a data disk profile",
            )
        )
    if issues:
        raise ConfigurationError("Cannot resolve deferred AWS input.", issues=issues)
    if profile_name is None:
        return {}
    profiles = data_disk_profiles(str(instance_type))
    profile = profiles.get(str(profile_name))
    if profile is None:
        raise ConfigurationError(
            f"Unknown data disk profile '{profile_name}' for instance type '{instance_type}'.",
            issues=(
                FieldIssue(
                    "deferred.data_disk_profile",
                    f"expected one of: {', '.join(profiles)}",
                ),
            ),
        )
    return {"data_disk_iops": profile.iops, "data_disk_throughput": profile.throughput}


class AwsProvisionInput(CommonProvisionInput):
    """Desired AWS infrastructure."""

    region: str = Field(pattern=REGION_PATTERN)
    instance_type: str = Field(min_length=1)
    root_disk_size_gb: int = Field(gt=0)
    data_disk_size_gb: int = Field(default=0, ge=0)
    data_disk_iops: int | None = Field(default=None, ge=GP3_MIN_IOPS, le=GP3_MAX_IOPS)
    data_disk_throughput: int | None = Field(
        default=None, ge=GP3_MIN_THROUGHPUT, le=GP3_MAX_THROUGHPUT
    )
    public_ip_type: Literal["static", "dynamic"] = "static"
    use_spot: bool = False

    @model_validator(mode="after")
    def _disk_performance_needs_disk(self) -> AwsProvisionInput:
        tuned = self.data_disk_iops is not None or self.data_disk_throughput is not None
        if tuned and self.data_disk_size_gb == 0:
            raise ValueError("data disk performance requires data_disk_size_gb > 0")
        return self


class AwsProvisionOutput(CommonProvisionOutput):
    """Resources created on AWS."""

    instance_id: str = Field(min_length=1)
    root_disk_id: str | None = None
    data_disk_id: str | None = None


DEFAULTS: dict[str, Any] = {
    "instance_type": "g4dn.xlarge",
    "root_disk_size_gb": 20,
    "data_disk_size_gb": 0,
    "public_ip_type": "static",
    "use_spot": False,
}

SCHEMA = ProviderSchema(
    input_model=AwsProvisionInput,
    output_model=AwsProvisionOutput,
    defaults=DEFAULTS,
    resolve_deferred=resolve_deferred,
)


def make_provisioner(instance_name: str, driver: CommandDriver) -> DriverProvisioner:
    """Return the provisioner for *instance_name*."""
    return DriverProvisioner(instance_name, driver)


def make_runner(instance_name: str, driver: CommandDriver) -> DriverRunner:
    """Return the runner for *instance_name*."""
    return DriverRunner(instance_name, driver)


__all__ = [
    "AwsProvisionInput",
    "AwsProvisionOutput",
    "DEFAULTS",
    "DataDiskProfile",
    "SCHEMA",
    "TAG",
    "data_disk_profiles",
    "make_provisioner",
    "make_runner",
    "resolve_deferred",
]
