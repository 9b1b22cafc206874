"""Instance lifecycle orchestration."""
from __future__ import annotations

from .initializer import InstanceInitializer
from .lifecycle import LifecycleState, OperationResult, state_of
from .manager import InstanceManager, InstanceSummary

__all__ = [
    "InstanceInitializer",
    "InstanceManager",
    "InstanceSummary",
    "LifecycleState",
    "OperationResult",
    "state_of",
]
