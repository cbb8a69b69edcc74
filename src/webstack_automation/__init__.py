"""Web application stack provisioning toolkit."""

from .runner import ProvisionRunner
from .inventory import InventoryLoader

__all__ = ["ProvisionRunner", "InventoryLoader"]
