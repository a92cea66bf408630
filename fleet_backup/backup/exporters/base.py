"""Exporter interfaces."""

from abc import ABC, abstractmethod
from pathlib import Path

from ...tenants import Tenant


class DatabaseExporter(ABC):
    """Dump and import one tenant database.

    Implementations must write the dump gzip-compressed, only ever expose a
    complete file at output_path, and raise the backup error taxonomy
    (SourceUnavailableError, PermissionDeniedError, BackupTimeoutError).
    """

    @abstractmethod
    async def export(self, tenant: Tenant, output_path: Path, timeout: float) -> int:
        """Write a consistent gzip-compressed dump; return its size in bytes."""

    @abstractmethod
    async def import_dump(self, tenant: Tenant, dump_path: Path, timeout: float) -> None:
        """Replace the tenant database with the contents of a dump."""
