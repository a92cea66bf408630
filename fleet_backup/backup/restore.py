"""Restore one tenant from a backup run."""

import asyncio
import os
import shutil
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from .._utils import logger
from ..config import FleetConfig
from ..dependents import DependentServices
from ..exceptions import (
    BackupError,
    CorruptArtifactError,
    NotFoundError,
    classify_os_error,
)
from ..notifications import NullNotifier, Notifier, WebhookNotifier, restore_event
from ..tenants import Tenant, TenantDirectory
from .exporters import ArchiveExporter, DatabaseExporter, MySQLDumpExporter
from .locks import TenantLock
from .models import (
    ArtifactKind,
    RestorePlan,
    RestoreResult,
    RestoreState,
    TenantManifest,
    VerificationStatus,
)
from .utils import LOCK_DIR_NAME, MANIFEST_FILENAME, load_manifest, parse_run_id, verify_checksum
from .verifier import Verifier

CONFIRMATION_REQUIRED = "confirmation_required"


class RestoreAbortedError(BackupError):
    """Locate or Validate failed before any live data was touched.

    `result` carries the Failed(state, cause) report.
    """

    def __init__(self, result: RestoreResult):
        super().__init__(result.message or result.describe())
        self.result = result
        self.kind = result.cause


class RestoreManager:
    """Drive a restore through Locate, Validate, ImportDatabase, ExtractFiles,
    RestoreConfig and RefreshDependents.

    Any failure stops the restore in the state where it happened; steps
    already applied are not rolled back. The tenant lock is held throughout so
    a backup of the same tenant cannot observe a half-restored site.
    """

    def __init__(
        self,
        config: FleetConfig,
        database_exporter: Optional[DatabaseExporter] = None,
        archive_exporter: Optional[ArchiveExporter] = None,
        verifier: Optional[Verifier] = None,
        dependents: Optional[DependentServices] = None,
        notifier: Optional[Notifier] = None,
        tenant_directory: Optional[TenantDirectory] = None,
    ):
        self.config = config
        self.backup_root = config.paths.backup_root
        self.database_exporter = database_exporter or MySQLDumpExporter(
            config.database, config.backup.compression_level
        )
        self.archive_exporter = archive_exporter or ArchiveExporter(config.backup.compression_level)
        self.verifier = verifier or Verifier()
        self.dependents = dependents or DependentServices(config.dependents)
        if notifier is None:
            notifier = (
                WebhookNotifier(config.notifications)
                if config.notifications.enabled else NullNotifier()
            )
        self.notifier = notifier
        self.tenants = tenant_directory or TenantDirectory(config.paths)

    async def plan(self, domain: str, run_id: str) -> RestorePlan:
        """Locate and validate a backup and describe what restoring it would change.

        Nothing is modified.

        Raises:
            RestoreAbortedError: Locate or Validate failed; its result names
                the state and cause (not_found, corrupt, invalid_tenant, ...)
        """
        result = RestoreResult(domain=domain, run_id=run_id, state=RestoreState.LOCATE)
        try:
            tenant = self.tenants.get(domain)
            manifest = await self._locate(tenant, run_id)
            result.state = RestoreState.VALIDATE
            await self._validate(manifest, self._tenant_dir(tenant, run_id))
        except BackupError as e:
            self._fail(result, e.kind, str(e))
            raise RestoreAbortedError(result) from e
        except OSError as e:
            error = classify_os_error(e, f"Checking backup {run_id} of {domain}")
            self._fail(result, error.kind, str(error))
            raise RestoreAbortedError(result) from e

        plan = RestorePlan(
            domain=domain,
            run_id=run_id,
            database=tenant.database,
            steps=[RestoreState.LOCATE, RestoreState.VALIDATE],
        )
        if manifest.has(ArtifactKind.DATABASE):
            plan.steps.append(RestoreState.IMPORT_DATABASE)
            plan.overwrites.append(f"database {tenant.database}")
        else:
            plan.warnings.append("Backup has no database dump; database is left unchanged")
        if manifest.has(ArtifactKind.FILES):
            plan.steps.append(RestoreState.EXTRACT_FILES)
            plan.overwrites.append(str(tenant.site_root))
        else:
            plan.warnings.append("Backup has no file archive; site files are left unchanged")
        if manifest.has(ArtifactKind.CONFIG):
            plan.steps.append(RestoreState.RESTORE_CONFIG)
            plan.overwrites.append(str(tenant.config_path))
        else:
            plan.warnings.append("Backup has no site configuration; configuration step is skipped")
        plan.steps += [RestoreState.REFRESH_DEPENDENTS, RestoreState.DONE]
        return plan

    async def restore(self, domain: str, run_id: str, force: bool = False) -> RestoreResult:
        """Restore a tenant's database, files and configuration from a run.

        Args:
            domain: Tenant domain
            run_id: Backup run to restore from
            force: Must be True; restoring overwrites live data

        Returns:
            RestoreResult with the state reached; failures are reported as
            Failed(state, cause), not raised
        """
        result = RestoreResult(domain=domain, run_id=run_id, state=RestoreState.LOCATE)
        if not force:
            result.failed_state = RestoreState.LOCATE
            result.cause = CONFIRMATION_REQUIRED
            result.message = "Restore overwrites live data and must be confirmed"
            return result

        logger.info(f"Restoring {domain} from backup {run_id}")
        try:
            tenant = self.tenants.get(domain)
            async with TenantLock(
                self.backup_root / LOCK_DIR_NAME, domain, timeout=self.config.backup.lock_timeout
            ):
                await self._run(tenant, run_id, result)
        except BackupError as e:
            self._fail(result, e.kind, str(e))
        except OSError as e:
            error = classify_os_error(e, f"Restoring {domain}")
            self._fail(result, error.kind, str(error))
        except Exception as e:
            logger.exception(f"Unexpected error restoring {domain}")
            self._fail(result, "error", f"{type(e).__name__}: {e}")

        if result.success:
            logger.info(f"Restore of {domain} from {run_id} complete")
        await self.report(result)
        return result

    async def _run(self, tenant: Tenant, run_id: str, result: RestoreResult) -> None:
        tenant_dir = self._tenant_dir(tenant, run_id)
        timeout = self.config.backup.export_timeout

        result.state = RestoreState.LOCATE
        manifest = await self._locate(tenant, run_id)
        result.completed_steps.append(RestoreState.LOCATE)

        result.state = RestoreState.VALIDATE
        await self._validate(manifest, tenant_dir)
        result.completed_steps.append(RestoreState.VALIDATE)

        result.state = RestoreState.IMPORT_DATABASE
        if manifest.has(ArtifactKind.DATABASE):
            await self.database_exporter.import_dump(
                tenant, tenant_dir / ArtifactKind.DATABASE.filename, timeout
            )
            result.completed_steps.append(RestoreState.IMPORT_DATABASE)
        else:
            self._warn(result, "Backup has no database dump; database left unchanged")

        result.state = RestoreState.EXTRACT_FILES
        if manifest.has(ArtifactKind.FILES):
            await self._extract_files(tenant, run_id, tenant_dir / ArtifactKind.FILES.filename)
            result.completed_steps.append(RestoreState.EXTRACT_FILES)
        else:
            self._warn(result, "Backup has no file archive; site files left unchanged")

        result.state = RestoreState.RESTORE_CONFIG
        if manifest.has(ArtifactKind.CONFIG):
            await self._restore_config(tenant, run_id, tenant_dir / ArtifactKind.CONFIG.filename)
            result.completed_steps.append(RestoreState.RESTORE_CONFIG)
        else:
            self._warn(result, "Backup has no site configuration; skipped")

        result.state = RestoreState.REFRESH_DEPENDENTS
        await self._refresh_dependents(tenant, result)
        result.completed_steps.append(RestoreState.REFRESH_DEPENDENTS)

        result.state = RestoreState.DONE

    def _tenant_dir(self, tenant: Tenant, run_id: str) -> Path:
        return self.backup_root / run_id / tenant.domain

    async def _locate(self, tenant: Tenant, run_id: str) -> TenantManifest:
        if parse_run_id(run_id) is None:
            raise NotFoundError(f"Not a run identifier: {run_id}")

        manifest_path = self._tenant_dir(tenant, run_id) / MANIFEST_FILENAME
        if not manifest_path.is_file():
            raise NotFoundError(f"Backup not found: {tenant.domain} in run {run_id}")

        try:
            manifest = TenantManifest(**await asyncio.to_thread(load_manifest, manifest_path))
        except (ValueError, ValidationError) as e:
            raise CorruptArtifactError(f"Unreadable manifest {manifest_path}: {e}") from e

        if manifest.domain != tenant.domain:
            raise CorruptArtifactError(
                f"Manifest {manifest_path} belongs to {manifest.domain}, not {tenant.domain}"
            )
        return manifest

    async def _validate(self, manifest: TenantManifest, tenant_dir: Path) -> None:
        for record in manifest.records:
            path = tenant_dir / record.filename
            status = await self.verifier.averify(path, record.kind)
            if status != VerificationStatus.VALID:
                raise CorruptArtifactError(f"{record.filename} is {status.value}")
            if record.checksum and not await asyncio.to_thread(verify_checksum, path, record.checksum):
                raise CorruptArtifactError(f"{record.filename} checksum mismatch")
            logger.debug(f"Validated {path}")

    async def _extract_files(self, tenant: Tenant, run_id: str, archive: Path) -> None:
        """Extract next to the live tree, then swap it in."""
        sites_dir = tenant.site_root.parent
        staging = sites_dir / f".restore-{tenant.domain}-{run_id}"
        old = sites_dir / f".old-{tenant.domain}-{run_id}"
        await self._remove(staging, old)

        try:
            await self.archive_exporter.extract(archive, staging, self.config.backup.export_timeout)
            extracted = staging / tenant.domain
            if not extracted.is_dir():
                raise CorruptArtifactError(f"{archive.name} does not contain {tenant.domain}/")

            if tenant.site_root.exists():
                os.replace(tenant.site_root, old)
            try:
                os.replace(extracted, tenant.site_root)
            except OSError:
                if old.exists():
                    os.replace(old, tenant.site_root)
                raise
            logger.info(f"Site files restored to {tenant.site_root}")
        finally:
            await self._remove(staging, old)

    async def _restore_config(self, tenant: Tenant, run_id: str, archive: Path) -> None:
        config_dir = tenant.config_path.parent
        staging = config_dir / f".restore-{tenant.domain}-{run_id}"
        await self._remove(staging)

        try:
            await self.archive_exporter.extract(archive, staging, self.config.backup.export_timeout)
            source = staging / tenant.config_path.name
            if not source.is_file():
                raise CorruptArtifactError(f"{archive.name} does not contain {tenant.config_path.name}")
            os.replace(source, tenant.config_path)
            logger.info(f"Site configuration restored to {tenant.config_path}")
        finally:
            await self._remove(staging)

    async def _refresh_dependents(self, tenant: Tenant, result: RestoreResult) -> None:
        try:
            if not await self.dependents.invalidate_tenant_cache(tenant):
                self._warn(result, f"Object cache for {tenant.domain} was not invalidated")
            if not await self.dependents.reload_routing():
                self._warn(result, "Web server was not reloaded")
        except Exception as e:
            self._warn(result, f"Dependent service refresh failed: {e!r}")

    async def _remove(self, *paths: Path) -> None:
        for path in paths:
            if path.exists():
                await asyncio.to_thread(shutil.rmtree, path)

    async def report(self, result: RestoreResult) -> None:
        """Send the restore notification; delivery failures are only logged."""
        event = restore_event(result.domain, result.run_id, result.success, result.describe())
        timeout = self.config.notifications.timeout * (self.config.notifications.max_retries + 1)
        try:
            await asyncio.wait_for(self.notifier.notify(event), timeout=timeout)
        except Exception as e:
            logger.warning(f"Restore notification failed: {e!r}")

    @staticmethod
    def _warn(result: RestoreResult, message: str) -> None:
        logger.warning(message)
        result.warnings.append(message)

    @staticmethod
    def _fail(result: RestoreResult, cause: str, message: str) -> None:
        result.failed_state = result.state
        result.cause = cause
        result.message = message
        logger.error(f"Restore of {result.domain} failed in {result.state.value}: {message}")
