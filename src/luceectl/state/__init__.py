"""Persistent instance state for luceectl."""
from __future__ import annotations

from .registry import (
    InstanceRecord,
    InstanceRegistry,
    InstanceState,
    PortAssignment,
    StateRegistryError,
)

__all__ = [
    "InstanceRecord",
    "InstanceRegistry",
    "InstanceState",
    "PortAssignment",
    "StateRegistryError",
]
