"""Backup run orchestration across all tenants."""

import asyncio
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, List, Optional, Tuple

from .._utils import directory_size, human_size, logger
from ..config import FleetConfig
from ..exceptions import (
    BackupError,
    InvalidTenantError,
    NotFoundError,
    StorageUnavailableError,
    describe_error,
)
from ..notifications import NullNotifier, Notifier, WebhookNotifier, backup_event
from ..tenants import Tenant, TenantDirectory
from .exporters import DatabaseExporter, MySQLDumpExporter
from .models import (
    ALL_KINDS,
    ArtifactKind,
    BackupScope,
    RunInfo,
    RunSummary,
    TenantBackupResult,
    TenantRunSummary,
)
from .retention import RetentionManager
from .tenant import TenantBackupUnit
from .utils import (
    SUMMARY_FILENAME,
    generate_run_id,
    load_manifest,
    parse_run_id,
    run_sort_key,
    save_summary,
)

MAX_RUN_ID_SUFFIX = 100


class BackupManager:
    """Orchestrate backup runs: enumerate tenants, back each one up, summarize,
    apply retention and notify."""

    def __init__(
        self,
        config: FleetConfig,
        database_exporter: Optional[DatabaseExporter] = None,
        notifier: Optional[Notifier] = None,
        tenant_directory: Optional[TenantDirectory] = None,
        unit: Optional[TenantBackupUnit] = None,
        retention: Optional[RetentionManager] = None,
    ):
        """Initialize backup manager.

        Args:
            config: Fleet configuration
            database_exporter: Database exporter (default: mysqldump)
            notifier: Event sink (default: webhooks when configured)
            tenant_directory: Tenant enumeration (default: site config dir)
            unit: Per-tenant backup unit
            retention: Retention manager run after full backups
        """
        self.config = config
        self.backup_root = config.paths.backup_root
        self.tenants = tenant_directory or TenantDirectory(config.paths)
        self.database_exporter = database_exporter or MySQLDumpExporter(
            config.database, config.backup.compression_level
        )
        self.unit = unit or TenantBackupUnit(config, self.database_exporter)
        self.retention = retention or RetentionManager(config.retention, self.backup_root)
        if notifier is None:
            notifier = (
                WebhookNotifier(config.notifications)
                if config.notifications.enabled else NullNotifier()
            )
        self.notifier = notifier
        self._cancelled = False

    def cancel(self) -> None:
        """Stop launching tenant units; in-flight units finish normally."""
        if not self._cancelled:
            logger.warning("Cancellation requested; no further sites will be started")
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    async def run_backup(
        self,
        scope: BackupScope = BackupScope.ALL,
        domain: Optional[str] = None,
        kinds: Optional[Iterable[ArtifactKind]] = None,
    ) -> RunSummary:
        """Run one backup.

        Args:
            scope: All active tenants, or one named tenant
            domain: Tenant domain, required for the site scope
            kinds: Artifact kinds (default: database, files and config)

        Returns:
            RunSummary written to the run directory

        Raises:
            NotFoundError: No tenants to back up, or the named site is absent
            InvalidTenantError: Malformed domain
            StorageUnavailableError: Run directory cannot be created
        """
        scope = BackupScope(scope)
        kinds = [ArtifactKind(k) for k in (kinds or ALL_KINDS)]
        tenants = self._resolve_tenants(scope, domain)

        self._cancelled = False
        started_at = datetime.now(timezone.utc)
        run_id, run_dir = self._create_run_dir(started_at)
        logger.info(f"Starting backup run {run_id}: {len(tenants)} site(s) -> {run_dir}")

        semaphore = asyncio.Semaphore(self.config.backup.max_concurrent_tenants)
        skipped: List[str] = []

        async def run_one(tenant: Tenant) -> Optional[TenantBackupResult]:
            async with semaphore:
                if self._cancelled:
                    skipped.append(tenant.domain)
                    return None
                return await self._backup_tenant(tenant, run_id, run_dir, kinds)

        outcomes = await asyncio.gather(*(run_one(t) for t in tenants))
        results = [r for r in outcomes if r is not None]

        total_size_bytes = await asyncio.to_thread(directory_size, run_dir)
        summary = self._summarize(run_id, scope, started_at, total_size_bytes, results, sorted(skipped))
        try:
            await asyncio.to_thread(save_summary, summary.model_dump(mode="json"), run_dir)
        except OSError as e:
            raise StorageUnavailableError(f"Cannot write summary for run {run_id}: {e}") from e
        logger.info(
            f"Backup run {run_id} complete: {summary.succeeded} succeeded, "
            f"{summary.failed} failed, {summary.total_size}"
        )

        if scope == BackupScope.ALL and not self._cancelled:
            try:
                await self.retention.apply()
            except (BackupError, OSError) as e:
                logger.error(f"Retention failed after run {run_id}: {e}")

        await self._notify(summary)
        return summary

    def _resolve_tenants(self, scope: BackupScope, domain: Optional[str]) -> List[Tenant]:
        if scope == BackupScope.SITE:
            if not domain:
                raise InvalidTenantError("A domain is required for a single-site backup")
            return [self.tenants.require(domain)]

        tenants = self.tenants.list_tenants()
        if not tenants:
            raise NotFoundError(f"No active sites found in {self.config.paths.sites_config_dir}")
        return tenants

    def _create_run_dir(self, started_at: datetime) -> Tuple[str, Path]:
        base_id = generate_run_id(started_at)
        try:
            self.backup_root.mkdir(parents=True, exist_ok=True)
            for attempt in range(MAX_RUN_ID_SUFFIX):
                run_id = base_id if attempt == 0 else f"{base_id}_{attempt}"
                run_dir = self.backup_root / run_id
                try:
                    run_dir.mkdir()
                except FileExistsError:
                    continue
                return run_id, run_dir
        except OSError as e:
            raise StorageUnavailableError(f"Cannot create run directory under {self.backup_root}: {e}") from e
        raise StorageUnavailableError(f"Too many runs started at {base_id}")

    async def _backup_tenant(
        self,
        tenant: Tenant,
        run_id: str,
        run_dir: Path,
        kinds: List[ArtifactKind],
    ) -> TenantBackupResult:
        try:
            return await self.unit.backup(tenant, run_id, run_dir, kinds)
        except Exception as e:
            logger.exception(f"Unexpected error backing up {tenant.domain}")
            return TenantBackupResult(
                domain=tenant.domain,
                run_id=run_id,
                requested=kinds,
                errors={"tenant": describe_error(e)},
            )

    def _summarize(
        self,
        run_id: str,
        scope: BackupScope,
        started_at: datetime,
        total_size_bytes: int,
        results: List[TenantBackupResult],
        skipped: List[str],
    ) -> RunSummary:
        tenants = [
            TenantRunSummary(
                domain=r.domain,
                success=r.success,
                manifest_written=r.manifest_written,
                size_bytes=r.size_bytes,
                errors=r.errors,
                warnings=r.warnings,
            )
            for r in sorted(results, key=lambda r: r.domain)
        ]
        succeeded = sum(1 for t in tenants if t.success)
        return RunSummary(
            run_id=run_id,
            scope=scope,
            started_at=started_at,
            completed_at=datetime.now(timezone.utc),
            attempted=len(tenants),
            succeeded=succeeded,
            failed=len(tenants) - succeeded,
            skipped=skipped,
            cancelled=self._cancelled,
            total_size_bytes=total_size_bytes,
            total_size=human_size(total_size_bytes),
            tenants=tenants,
        )

    async def _notify(self, summary: RunSummary) -> None:
        event = backup_event(
            succeeded=summary.succeeded,
            failed=summary.failed,
            total_size=summary.total_size,
            failed_domains=summary.failed_domains,
            run_id=summary.run_id,
        )
        timeout = self.config.notifications.timeout * (self.config.notifications.max_retries + 1)
        try:
            await asyncio.wait_for(self.notifier.notify(event), timeout=timeout)
        except Exception as e:
            logger.warning(f"Notification for run {summary.run_id} failed: {e!r}")

    async def list_runs(self, domain: Optional[str] = None) -> List[RunInfo]:
        """List runs newest first, optionally only those containing a tenant.

        Runs without a summary are still in progress (or were interrupted)
        and are flagged incomplete.
        """
        if not self.backup_root.is_dir():
            return []

        runs = []
        for entry in self.backup_root.iterdir():
            if entry.name.startswith(".") or not entry.is_dir():
                continue
            created_at = parse_run_id(entry.name)
            if created_at is None:
                continue
            tenants = sorted(p.name for p in entry.iterdir() if p.is_dir())
            if domain is not None and domain not in tenants:
                continue
            runs.append(RunInfo(
                run_id=entry.name,
                created_at=created_at,
                complete=(entry / SUMMARY_FILENAME).is_file(),
                tenants=tenants,
                size_bytes=await asyncio.to_thread(directory_size, entry / domain if domain else entry),
            ))

        runs.sort(key=lambda r: run_sort_key(r.run_id), reverse=True)
        return runs

    async def get_summary(self, run_id: str) -> RunSummary:
        if parse_run_id(run_id) is None:
            raise NotFoundError(f"Not a run identifier: {run_id}")
        summary_path = self.backup_root / run_id / SUMMARY_FILENAME
        if not summary_path.is_file():
            raise NotFoundError(f"No summary for run {run_id}")
        return RunSummary(**await asyncio.to_thread(load_manifest, summary_path))

    @staticmethod
    def exit_code(summary: RunSummary) -> int:
        return 0 if summary.failed == 0 and not summary.skipped else 1
