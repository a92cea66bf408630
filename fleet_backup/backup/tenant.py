"""Back up one tenant within one run."""

import asyncio
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Optional

from .._utils import directory_size, human_size, logger
from ..config import FleetConfig
from ..exceptions import BackupError, EmptyArtifactError, classify_os_error
from ..tenants import Tenant
from .exporters import ArchiveExporter, DatabaseExporter
from .locks import TenantLock
from .models import (
    ALL_KINDS,
    ArtifactKind,
    ArtifactRecord,
    TenantBackupResult,
    TenantManifest,
    VerificationStatus,
)
from .utils import LOCK_DIR_NAME, MANIFEST_FILENAME, compute_checksum, save_manifest
from .verifier import Verifier
from .versions import VersionProbe


class TenantBackupUnit:
    """Export, verify and record the artifacts of a single tenant.

    Every requested kind is attempted even when a sibling fails. The database
    and file exports run concurrently; the config export follows. A manifest
    is written when at least one artifact is valid and lists only valid
    artifacts.
    """

    def __init__(
        self,
        config: FleetConfig,
        database_exporter: DatabaseExporter,
        archive_exporter: Optional[ArchiveExporter] = None,
        verifier: Optional[Verifier] = None,
        version_probe: Optional[VersionProbe] = None,
    ):
        self.config = config
        self.database_exporter = database_exporter
        self.archive_exporter = archive_exporter or ArchiveExporter(config.backup.compression_level)
        self.verifier = verifier or Verifier()
        self.version_probe = version_probe or VersionProbe(config.dependents.web_container)
        self.lock_dir = config.paths.backup_root / LOCK_DIR_NAME

    async def backup(
        self,
        tenant: Tenant,
        run_id: str,
        run_dir: Path,
        kinds: Iterable[ArtifactKind] = ALL_KINDS,
    ) -> TenantBackupResult:
        """Back up a tenant into `<run_dir>/<domain>/`.

        Args:
            tenant: Tenant to back up
            run_id: Identifier of the enclosing run
            run_dir: Run directory
            kinds: Artifact kinds to produce

        Returns:
            TenantBackupResult; failures are recorded in it, never raised
        """
        kinds = [ArtifactKind(k) for k in kinds]
        result = TenantBackupResult(domain=tenant.domain, run_id=run_id, requested=kinds)
        tenant_dir = run_dir / tenant.domain

        logger.info(f"Backing up {tenant.domain} ({', '.join(k.value for k in kinds)})")

        try:
            tenant_dir.mkdir(parents=True, exist_ok=True)
            async with TenantLock(self.lock_dir, tenant.domain, timeout=self.config.backup.lock_timeout):
                concurrent = [k for k in kinds if k != ArtifactKind.CONFIG]
                await asyncio.gather(
                    *(self._capture(tenant, kind, tenant_dir, result) for kind in concurrent)
                )
                if ArtifactKind.CONFIG in kinds:
                    await self._capture(tenant, ArtifactKind.CONFIG, tenant_dir, result)

                if any(record.is_valid for record in result.artifacts.values()):
                    await self._write_manifest(tenant, run_id, tenant_dir, result)
                else:
                    logger.error(f"No valid artifacts for {tenant.domain}; manifest not written")
        except BackupError as e:
            result.errors["tenant"] = e.describe()
        except OSError as e:
            result.errors["tenant"] = classify_os_error(e, f"Backing up {tenant.domain}").describe()

        result.size_bytes = await asyncio.to_thread(directory_size, tenant_dir)
        if result.success:
            logger.info(f"Backed up {tenant.domain} ({human_size(result.size_bytes)})")
        else:
            logger.error(f"Backup of {tenant.domain} failed: {result.errors}")
        return result

    async def _capture(
        self,
        tenant: Tenant,
        kind: ArtifactKind,
        tenant_dir: Path,
        result: TenantBackupResult,
    ) -> None:
        path = tenant_dir / kind.filename
        try:
            size = await self._export(tenant, kind, path)
            status = await self.verifier.averify(path, kind)
            checksum = None
            if status == VerificationStatus.VALID:
                checksum = await asyncio.to_thread(compute_checksum, path)
        except BackupError as e:
            logger.error(f"{kind.value} export failed for {tenant.domain}: {e}")
            result.errors[kind.value] = e.describe()
            return
        except OSError as e:
            error = classify_os_error(e, f"{kind.value} export")
            logger.error(f"{kind.value} export failed for {tenant.domain}: {error}")
            result.errors[kind.value] = error.describe()
            return

        record = ArtifactRecord(
            kind=kind,
            filename=kind.filename,
            size_bytes=size,
            checksum=checksum,
            status=status,
        )

        if status == VerificationStatus.CORRUPT:
            # Kept on disk for manual recovery, never referenced by the manifest.
            record.error = f"corrupt: {kind.filename} failed verification"
            result.errors[kind.value] = record.error
        elif status == VerificationStatus.EMPTY:
            if kind == ArtifactKind.CONFIG:
                result.warnings.append(f"No site configuration for {tenant.domain}")
                logger.warning(f"No site configuration for {tenant.domain}")
            else:
                record.error = EmptyArtifactError(f"{kind.filename} is empty").describe()
                result.errors[kind.value] = record.error

        result.artifacts[kind.value] = record

    async def _export(self, tenant: Tenant, kind: ArtifactKind, path: Path) -> int:
        timeout = self.config.backup.export_timeout
        if kind == ArtifactKind.DATABASE:
            return await self.database_exporter.export(tenant, path, timeout)
        if kind == ArtifactKind.FILES:
            return await self.archive_exporter.export_tree(
                tenant.site_root, path, timeout, arcname=tenant.domain
            )
        return await self.archive_exporter.export_file(tenant.config_path, path, timeout)

    async def _write_manifest(
        self,
        tenant: Tenant,
        run_id: str,
        tenant_dir: Path,
        result: TenantBackupResult,
    ) -> None:
        valid = [record for record in result.artifacts.values() if record.is_valid]
        size_bytes = sum(record.size_bytes for record in valid)
        versions = await self.version_probe.collect(tenant)

        manifest = TenantManifest(
            domain=tenant.domain,
            run_id=run_id,
            database=tenant.database,
            created_at=datetime.now(timezone.utc),
            versions=versions,
            artifacts={kind.value: any(r.kind == kind for r in valid) for kind in ALL_KINDS},
            records=valid,
            size_bytes=size_bytes,
            backup_size=human_size(size_bytes),
        )

        try:
            await asyncio.to_thread(
                save_manifest, manifest.model_dump(mode="json"), tenant_dir / MANIFEST_FILENAME
            )
        except OSError as e:
            result.errors["manifest"] = classify_os_error(e, "Writing manifest").describe()
            return
        result.manifest_written = True
