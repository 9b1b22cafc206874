"""Tests for building records from partial input."""
from __future__ import annotations

import copy
from typing import Any

import pytest

from padctl.errors import ConfigurationError
from padctl.state import UNSET, InstanceState, PartialInput, StateBuilder, StateDefaults
from padctl.state.builder import merge_layers

from conftest import SCALEWAY_OUTPUT, scaleway_partial


def _aws_partial(**provision: Any) -> PartialInput:
    values: dict[str, Any] = {"region": "eu-west-3", "data_disk_size_gb": 100}
    values.update(provision)
    return PartialInput(name="rig-aws", provider="aws", provision=values)


def _existing(builder: StateBuilder) -> InstanceState:
    state = builder.build(
        None,
        scaleway_partial(
            disk_size_gb=30,
            data_disk_size_gb=50,
            delete_instance_server_on_stop=True,
            image_id="img-1",
        ),
    )
    return builder.with_output(state, SCALEWAY_OUTPUT)


def test_build_applies_defaults_beneath_input(builder: StateBuilder) -> None:
    """Provider and configurator defaults fill unspecified fields."""
    state = builder.build(None, scaleway_partial())

    assert state.version == "1"
    assert state.provision.input["instance_type"] == "GPU-3070-S"
    assert state.provision.input["disk_size_gb"] == 20
    assert state.provision.input["zone"] == "fr-par-1"
    assert state.configuration.configurator == "ansible"
    assert state.configuration.input["autostop"] == {"enable": True, "timeout_seconds": 900}
    assert state.provisioned is False


def test_region_is_inferred_from_zone(builder: StateBuilder) -> None:
    """The Scaleway region may be omitted when the zone is given."""
    partial = PartialInput(name="demo-1", provider="scaleway", provision={"zone": "nl-ams-2"})

    state = builder.build(None, partial)

    assert state.provision.input["region"] == "nl-ams"


def test_explicit_falsy_values_win_over_existing(builder: StateBuilder) -> None:
    """``0``, ``False`` and ``None`` are real values, not "unspecified"."""
    existing = _existing(builder)

    updated = builder.build(
        existing,
        PartialInput(
            provision={
                "data_disk_size_gb": 0,
                "delete_instance_server_on_stop": False,
                "image_id": None,
            }
        ),
    )

    assert updated.provision.input["data_disk_size_gb"] == 0
    assert updated.provision.input["delete_instance_server_on_stop"] is False
    assert updated.provision.input["image_id"] is None
    assert updated.provision.input["disk_size_gb"] == 30


def test_unset_leaves_existing_value(builder: StateBuilder) -> None:
    """UNSET values fall through to the existing record."""
    existing = _existing(builder)

    updated = builder.build(existing, PartialInput(provision={"image_id": UNSET}))

    assert updated.provision.input["image_id"] == "img-1"


def test_existing_output_is_preserved(builder: StateBuilder) -> None:
    """Building from a provisioned record keeps its provision output."""
    existing = _existing(builder)

    updated = builder.build(existing, PartialInput(provision={"disk_size_gb": 40}))

    assert updated.provision.output == existing.provision.output


def test_build_does_not_mutate_inputs(builder: StateBuilder) -> None:
    """Neither the existing record nor the partial input is modified."""
    existing = _existing(builder)
    before = existing.to_dict()
    provision = {"disk_size_gb": 40}
    configuration: dict[str, Any] = {"keyboard": {"layout": "fr"}}
    partial = PartialInput(provision=provision, configuration=configuration)
    snapshot = copy.deepcopy((provision, configuration))

    builder.build(existing, partial)

    assert existing.to_dict() == before
    assert (provision, configuration) == snapshot


def test_name_and_provider_are_write_once(builder: StateBuilder) -> None:
    """Changing the name or provider of an existing record is rejected."""
    existing = _existing(builder)

    with pytest.raises(ConfigurationError) as excinfo:
        builder.build(existing, PartialInput(name="demo-2", provider="aws"))

    assert {issue.path for issue in excinfo.value.issues} == {"name", "provision.provider"}


def test_same_name_and_provider_are_accepted(builder: StateBuilder) -> None:
    """Repeating the current name and provider is not a change."""
    existing = _existing(builder)

    updated = builder.build(existing, PartialInput(name="demo-1", provider="scaleway"))

    assert updated == existing


def test_provider_is_required_on_create(builder: StateBuilder) -> None:
    """A new record needs both a name and a provider."""
    with pytest.raises(ConfigurationError) as excinfo:
        builder.build(None, PartialInput(provision={"zone": "fr-par-1"}))

    assert {str(issue) for issue in excinfo.value.issues} == {
        "name: is required",
        "provision.provider: is required",
    }


def test_invalid_merge_result_is_rejected(builder: StateBuilder) -> None:
    """The merged record is validated before it is returned."""
    existing = _existing(builder)

    with pytest.raises(ConfigurationError) as excinfo:
        builder.build(existing, PartialInput(provision={"zone": "pl-waw-1"}))

    assert any("not in region" in issue.message for issue in excinfo.value.issues)


def test_explicit_defaults_override_registered_ones(builder: StateBuilder) -> None:
    """Callers may supply their own defaults layer."""
    defaults = StateDefaults(
        provision={"instance_type": "PLAY2-MICRO", "disk_size_gb": 50},
        configuration={"locale": "de_DE.UTF-8"},
    )

    state = builder.build(None, scaleway_partial(), defaults)

    assert state.provision.input["instance_type"] == "PLAY2-MICRO"
    assert state.configuration.input["locale"] == "de_DE.UTF-8"
    assert state.configuration.input["autostop"] is None


def test_deferred_profile_resolves_after_instance_type(builder: StateBuilder) -> None:
    """A data disk profile is resolved against the final instance type."""
    state = builder.build(
        None,
        PartialInput(
            name="rig-aws",
            provider="aws",
            provision={
                "region": "eu-west-3",
                "instance_type": "g4dn.xlarge",
                "data_disk_size_gb": 100,
            },
            deferred={"data_disk_profile": "high"},
        ),
    )

    assert state.provision.input["data_disk_throughput"] == 328
    assert state.provision.input["data_disk_iops"] == 5248


def test_deferred_profile_uses_default_instance_type(builder: StateBuilder) -> None:
    """Without an explicit instance type the default one drives the profile."""
    partial = _aws_partial()
    state = builder.build(
        None,
        PartialInput(
            name=partial.name,
            provider=partial.provider,
            provision=partial.provision,
            deferred={"data_disk_profile": "maximum"},
        ),
    )

    assert state.provision.input["instance_type"] == "g4dn.xlarge"
    assert state.provision.input["data_disk_throughput"] == 437
    assert state.provision.input["data_disk_iops"] == 6992


def test_explicit_value_wins_over_deferred_profile(builder: StateBuilder) -> None:
    """An explicit field beats the value derived from a deferred profile."""
    partial = _aws_partial(instance_type="g4dn.xlarge", data_disk_iops=4000)
    state = builder.build(
        None,
        PartialInput(
            name=partial.name,
            provider=partial.provider,
            provision=partial.provision,
            deferred={"data_disk_profile": "high"},
        ),
    )

    assert state.provision.input["data_disk_iops"] == 4000
    assert state.provision.input["data_disk_throughput"] == 328


def test_deferred_profile_beats_existing_values(builder: StateBuilder) -> None:
    """A profile requested on update replaces the values stored earlier."""
    existing = builder.build(
        None,
        PartialInput(
            name="rig-aws",
            provider="aws",
            provision={"region": "eu-west-3", "data_disk_size_gb": 100},
            deferred={"data_disk_profile": "standard"},
        ),
    )
    assert existing.provision.input["data_disk_iops"] == 3000

    updated = builder.build(
        existing,
        PartialInput(
            provision={"instance_type": "g6.4xlarge"},
            deferred={"data_disk_profile": "medium"},
        ),
    )

    assert updated.provision.input["data_disk_throughput"] == 500
    assert updated.provision.input["data_disk_iops"] == 8000


def test_deferred_values_rejected_by_provider_without_resolver(builder: StateBuilder) -> None:
    """Providers that derive nothing refuse deferred values."""
    partial = scaleway_partial()

    with pytest.raises(ConfigurationError) as excinfo:
        builder.build(
            None,
            PartialInput(
                name=partial.name,
                provider=partial.provider,
                provision=partial.provision,
                deferred={"data_disk_profile": "high"},
            ),
        )

    assert [issue.path for issue in excinfo.value.issues] == ["deferred.data_disk_profile"]


def test_merge_layers_merges_mappings_and_replaces_scalars() -> None:
    """Mappings merge recursively; lists and scalars replace lower layers."""
    low = {"a": {"x": 1, "y": [1, 2]}, "b": 1}
    high = {"a": {"y": [3], "z": UNSET}, "b": None}

    merged = merge_layers(low, high)

    assert merged == {"a": {"x": 1, "y": [3]}, "b": None}
    merged["a"]["y"].append(4)
    assert high["a"]["y"] == [3]
