"""Backup, retention and restore for tenant sites."""

from .manager import BackupManager
from .models import ArtifactKind, BackupScope, RestoreState
from .restore import RestoreManager
from .retention import RetentionManager, plan_retention

__all__ = [
    "BackupManager",
    "RetentionManager",
    "RestoreManager",
    "ArtifactKind",
    "BackupScope",
    "RestoreState",
    "plan_retention",
]
