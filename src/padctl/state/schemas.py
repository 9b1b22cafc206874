"""Pydantic sub-schemas shared by every provider and configurator.

Provider modules extend :class:`CommonProvisionInput` and
:class:`CommonProvisionOutput` with their own fields and register the result
with the provider registry; the state parser never imports a provider module
directly.
"""
from __future__ import annotations

import base64
import binascii
from ipaddress import IPv4Address

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class SchemaModel(BaseModel):
    """Base model: unknown keys are rejected and instances are immutable."""

    model_config = ConfigDict(extra="forbid", frozen=True)


class SshInput(SchemaModel):
    """SSH access used by configurators once the host exists."""

    user: str = Field(min_length=1)
    private_key_path: str | None = None
    private_key_content_base64: str | None = None

    @model_validator(mode="after")
    def _one_key_source(self) -> SshInput:
        if self.private_key_path and self.private_key_content_base64:
            raise ValueError(
                "set either private_key_path or private_key_content_base64, not both"
            )
        return self


class CommonProvisionInput(SchemaModel):
    """Provision input fields every provider accepts."""

    ssh: SshInput | None = None


class CommonProvisionOutput(SchemaModel):
    """Provision output fields every provider returns."""

    host: str = Field(min_length=1)
    public_ipv4: IPv4Address | None = None
    data_disk_configured: bool | None = None


class SunshineConfig(SchemaModel):
    """Sunshine streaming server settings."""

    enable: bool = False
    username: str | None = None
    password_base64: str | None = None
    image_tag: str | None = None
    image_registry: str | None = None
    max_bitrate_kbps: int | None = Field(default=None, gt=0)

    @field_validator("password_base64")
    @classmethod
    def _decodable(cls, value: str | None) -> str | None:
        if value is None:
            return value
        try:
            base64.b64decode(value, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ValueError("must be valid base64") from exc
        return value

    @model_validator(mode="after")
    def _credentials_when_enabled(self) -> SunshineConfig:
        if self.enable and not (self.username and self.password_base64):
            raise ValueError("username and password_base64 are required when enabled")
        return self


class WolfConfig(SchemaModel):
    """Wolf streaming server settings."""

    enable: bool = False


class AutoStopConfig(SchemaModel):
    """Stop the instance after a period without streaming activity."""

    enable: bool = True
    timeout_seconds: int = Field(default=900, gt=0)


class KeyboardConfig(SchemaModel):
    """Keyboard layout forwarded to the streaming session."""

    layout: str | None = None
    variant: str | None = None
    model: str | None = None
    options: str | None = None


class RateLimitConfig(SchemaModel):
    """Outbound bandwidth cap."""

    max_mbps: float | None = Field(default=None, gt=0)


class AnsibleConfigurationInput(SchemaModel):
    """Desired software configuration applied by the ``ansible`` configurator."""

    sunshine: SunshineConfig | None = None
    wolf: WolfConfig | None = None
    autostop: AutoStopConfig | None = None
    keyboard: KeyboardConfig | None = None
    locale: str | None = None
    ratelimit: RateLimitConfig | None = None

    @model_validator(mode="after")
    def _single_streaming_server(self) -> AnsibleConfigurationInput:
        sunshine_on = self.sunshine is not None and self.sunshine.enable
        wolf_on = self.wolf is not None and self.wolf.enable
        if sunshine_on and wolf_on:
            raise ValueError("only one streaming server (sunshine or wolf) may be enabled")
        return self


ANSIBLE_CONFIGURATION_DEFAULTS: dict[str, object] = {
    "sunshine": None,
    "wolf": None,
    "autostop": {"enable": True, "timeout_seconds": 900},
    "keyboard": None,
    "locale": None,
    "ratelimit": None,
}


__all__ = [
    "ANSIBLE_CONFIGURATION_DEFAULTS",
    "AnsibleConfigurationInput",
    "AutoStopConfig",
    "CommonProvisionInput",
    "CommonProvisionOutput",
    "KeyboardConfig",
    "RateLimitConfig",
    "SchemaModel",
    "SshInput",
    "SunshineConfig",
    "WolfConfig",
]
