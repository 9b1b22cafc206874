"""Registration of the providers and configurators shipped with padctl."""
from __future__ import annotations

from functools import partial

from ..config import AppConfig, ProviderDriverConfig
from ..state.schemas import ANSIBLE_CONFIGURATION_DEFAULTS, AnsibleConfigurationInput
from . import aws, azure, dummy, gcp, scaleway
from .driver import CommandDriver
from .registry import ProviderRegistry

CLOUD_PROVIDERS = (aws, azure, gcp, scaleway)
ANSIBLE_CONFIGURATOR = "ansible"


def register_builtin_providers(
    registry: ProviderRegistry,
    config: AppConfig | None = None,
) -> ProviderRegistry:
    """Populate *registry* with the built-in providers and configurators.

    Cloud providers are bound to a :class:`CommandDriver` built from the
    ``providers.<tag>`` section of *config* (or the default driver binary).
    """
    for module in CLOUD_PROVIDERS:
        if config is not None:
            driver_config = config.driver_for(module.TAG)
        else:
            driver_config = ProviderDriverConfig(driver_bin=f"padctl-driver-{module.TAG}")
        driver = CommandDriver(
            provider=module.TAG,
            driver_bin=driver_config.driver_bin,
            timeout=driver_config.timeout,
        )
        registry.register_provider(
            module.TAG,
            module.SCHEMA,
            partial(module.make_provisioner, driver=driver),
            partial(module.make_runner, driver=driver),
        )
    registry.register_provider(dummy.TAG, dummy.SCHEMA, dummy.make_provisioner, dummy.make_runner)
    registry.register_configurator(
        ANSIBLE_CONFIGURATOR,
        AnsibleConfigurationInput,
        ANSIBLE_CONFIGURATION_DEFAULTS,
    )
    return registry


__all__ = ["ANSIBLE_CONFIGURATOR", "CLOUD_PROVIDERS", "register_builtin_providers"]
