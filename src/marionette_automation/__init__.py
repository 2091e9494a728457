"""Marionette multi-tier configuration convergence engine."""

from .runner import PlayRunner
from .inventory import InventoryLoader

__all__ = ["PlayRunner", "InventoryLoader"]
