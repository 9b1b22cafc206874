"""Versioned instance state: model, parser, builder and store."""
from __future__ import annotations

from .builder import UNSET, PartialInput, StateBuilder, StateDefaults
from .migration import Migration, MigrationRegistry
from .model import CURRENT_VERSION, SUPPORTED_VERSIONS, InstanceState
from .parser import StateParser
from .store import LoadedState, StateStore

__all__ = [
    "CURRENT_VERSION",
    "InstanceState",
    "LoadedState",
    "Migration",
    "MigrationRegistry",
    "PartialInput",
    "SUPPORTED_VERSIONS",
    "StateBuilder",
    "StateDefaults",
    "StateParser",
    "StateStore",
    "UNSET",
]
