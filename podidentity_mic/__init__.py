"""Managed identity controller: keeps pod identity assignments in step with nodes and scale sets."""

__version__ = "0.1.0"

__all__ = ["client", "models", "planning", "protocols", "updater", "vmss"]