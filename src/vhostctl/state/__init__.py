"""State registry package."""
from __future__ import annotations

from .registry import NODES_FILE, TUNNELS_FILE, VHOSTS_FILE, StateRegistry, StateRegistryError

__all__ = [
    "NODES_FILE",
    "StateRegistry",
    "StateRegistryError",
    "TUNNELS_FILE",
    "VHOSTS_FILE",
]
