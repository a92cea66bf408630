from .config import FleetConfig
from .tenants import Tenant, TenantDirectory
from .backup import BackupManager, RetentionManager, RestoreManager

__version__ = "0.3.0"
__author__ = "wpfleet"
__url__ = "https://github.com/wpfleet/fleet-backup"

__all__ = [
    "FleetConfig",
    "Tenant",
    "TenantDirectory",
    "BackupManager",
    "RetentionManager",
    "RestoreManager",
]
