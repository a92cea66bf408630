"""Tests for the restore state machine."""

import json
import os
import stat
from unittest.mock import AsyncMock, MagicMock

import pytest

from fleet_backup.backup.locks import TenantLock
from fleet_backup.backup.manager import BackupManager
from fleet_backup.backup.models import ArtifactKind, BackupScope, RestoreState
from fleet_backup.backup.restore import RestoreAbortedError, RestoreManager
from fleet_backup.backup.utils import LOCK_DIR_NAME, MANIFEST_FILENAME
from fleet_backup.exceptions import CorruptArtifactError, NotFoundError, SourceUnavailableError


@pytest.fixture
def dependents():
    mock = MagicMock()
    mock.invalidate_tenant_cache = AsyncMock(return_value=True)
    mock.reload_routing = AsyncMock(return_value=True)
    return mock


@pytest.fixture
def notifier():
    mock = MagicMock()
    mock.notify = AsyncMock()
    return mock


@pytest.fixture
def restorer(fleet_config, fake_db, dependents, notifier):
    return RestoreManager(fleet_config, database_exporter=fake_db, dependents=dependents, notifier=notifier)


@pytest.fixture
def backup(fleet_config, fake_db, backup_unit):
    manager = BackupManager(fleet_config, database_exporter=fake_db, notifier=MagicMock(notify=AsyncMock()), unit=backup_unit)

    async def _backup(domain, kinds=None):
        summary = await manager.run_backup(BackupScope.SITE, domain=domain, kinds=kinds)
        assert summary.succeeded == 1
        return summary.run_id

    return _backup


def snapshot(root):
    return {
        str(p.relative_to(root)): p.read_bytes()
        for p in sorted(root.rglob("*")) if p.is_file()
    }


def ownership(root):
    return {
        str(p.relative_to(root)): (stat.S_IMODE(p.stat().st_mode), p.stat().st_uid, p.stat().st_gid)
        for p in sorted(root.rglob("*"))
    }


@pytest.mark.asyncio
async def test_round_trip(restorer, backup, make_site, fake_db, dependents, notifier):
    """Backup then restore reproduces the database and the file tree exactly."""
    tenant = make_site("example.com", rows=10)
    uploads = tenant.site_root / "wp-content" / "uploads"
    os.chmod(uploads / "a.txt", 0o664)
    os.chmod(uploads, 0o775)
    if os.geteuid() == 0:
        os.chown(uploads / "a.txt", 33, 33)
        os.chown(uploads, 33, 33)
    original_db = fake_db.databases[tenant.database]
    original_files = snapshot(tenant.site_root)
    original_owners = ownership(tenant.site_root)
    original_config = tenant.config_path.read_text()
    run_id = await backup("example.com")

    fake_db.databases[tenant.database] = "DROP TABLE wp_posts;"
    (tenant.site_root / "wp-content" / "uploads" / "a.txt").write_text("defaced")
    (tenant.site_root / "stale.php").write_text("<?php // should disappear")
    tenant.config_path.write_text("broken {")

    result = await restorer.restore("example.com", run_id, force=True)

    assert result.success, result.message
    assert result.describe() == "Done"
    assert result.completed_steps == [
        RestoreState.LOCATE,
        RestoreState.VALIDATE,
        RestoreState.IMPORT_DATABASE,
        RestoreState.EXTRACT_FILES,
        RestoreState.RESTORE_CONFIG,
        RestoreState.REFRESH_DEPENDENTS,
    ]
    assert fake_db.databases[tenant.database] == original_db
    assert snapshot(tenant.site_root) == original_files
    assert ownership(tenant.site_root) == original_owners
    assert tenant.config_path.read_text() == original_config
    assert not list(tenant.site_root.parent.glob(".restore-*"))
    assert not list(tenant.site_root.parent.glob(".old-*"))
    dependents.invalidate_tenant_cache.assert_awaited_once()
    dependents.reload_routing.assert_awaited_once()
    assert notifier.notify.await_args.args[0].title == "Restore Completed"


@pytest.mark.asyncio
async def test_corrupt_dump_fails_validate(restorer, backup, make_site, fake_db, fleet_config):
    """A flipped last byte stops the restore in Validate before the database is touched."""
    tenant = make_site("example.com", rows=10)
    run_id = await backup("example.com")
    dump = fleet_config.paths.backup_root / run_id / "example.com" / "database.sql.gz"
    data = bytearray(dump.read_bytes())
    data[-1] ^= 0xFF
    dump.write_bytes(bytes(data))
    live_db = fake_db.databases[tenant.database]

    result = await restorer.restore("example.com", run_id, force=True)

    assert result.success is False
    assert result.describe() == "Failed(Validate, corrupt)"
    assert fake_db.imports == []
    assert fake_db.databases[tenant.database] == live_db


@pytest.mark.asyncio
async def test_checksum_mismatch_fails_validate(restorer, backup, make_site, fleet_config):
    """A structurally valid artifact that differs from the recorded one is rejected."""
    import tarfile

    tenant = make_site("example.com")
    run_id = await backup("example.com")
    archive = fleet_config.paths.backup_root / run_id / "example.com" / "files.tar.gz"
    with tarfile.open(archive, "w:gz") as tar:
        tar.add(tenant.site_root / "wp-config.php", arcname="example.com/wp-config.php")

    result = await restorer.restore("example.com", run_id, force=True)

    assert result.describe() == "Failed(Validate, corrupt)"


@pytest.mark.asyncio
async def test_requires_confirmation(restorer, backup, make_site, fake_db):
    make_site("example.com")
    run_id = await backup("example.com")

    result = await restorer.restore("example.com", run_id)

    assert result.describe() == "Failed(Locate, confirmation_required)"
    assert fake_db.imports == []


@pytest.mark.asyncio
async def test_unknown_run_fails_locate(restorer, make_site):
    make_site("example.com")

    result = await restorer.restore("example.com", "20200101_000000", force=True)

    assert result.describe() == "Failed(Locate, not_found)"


@pytest.mark.asyncio
async def test_invalid_domain_fails_locate(restorer):
    result = await restorer.restore("../../etc", "20200101_000000", force=True)
    assert result.describe() == "Failed(Locate, invalid_tenant)"


@pytest.mark.asyncio
async def test_import_failure_reports_state(restorer, backup, make_site, fake_db):
    """Restore failures report the exact state reached and stop there."""
    tenant = make_site("example.com")
    run_id = await backup("example.com")
    (tenant.site_root / "marker.txt").write_text("live")
    fake_db.import_dump = AsyncMock(side_effect=SourceUnavailableError("server has gone away"))

    result = await restorer.restore("example.com", run_id, force=True)

    assert result.describe() == "Failed(ImportDatabase, source_unavailable)"
    assert result.completed_steps == [RestoreState.LOCATE, RestoreState.VALIDATE]
    assert (tenant.site_root / "marker.txt").exists()


@pytest.mark.asyncio
async def test_database_only_backup_skips_files(restorer, backup, make_site, fake_db):
    tenant = make_site("example.com")
    run_id = await backup("example.com", kinds=[ArtifactKind.DATABASE])
    (tenant.site_root / "marker.txt").write_text("live")

    result = await restorer.restore("example.com", run_id, force=True)

    assert result.success
    assert RestoreState.EXTRACT_FILES not in result.completed_steps
    assert len(result.warnings) == 2
    assert (tenant.site_root / "marker.txt").exists()


@pytest.mark.asyncio
async def test_restore_deleted_site(restorer, backup, make_site):
    """A site whose directory was removed is recreated from the archive."""
    import shutil

    tenant = make_site("example.com")
    run_id = await backup("example.com")
    shutil.rmtree(tenant.site_root)
    tenant.config_path.unlink()

    result = await restorer.restore("example.com", run_id, force=True)

    assert result.success
    assert (tenant.site_root / "wp-content" / "uploads" / "a.txt").read_text() == "alpha"
    assert tenant.config_path.exists()


@pytest.mark.asyncio
async def test_dependent_failures_are_warnings(restorer, backup, make_site, dependents):
    make_site("example.com")
    run_id = await backup("example.com")
    dependents.invalidate_tenant_cache = AsyncMock(return_value=False)
    dependents.reload_routing = AsyncMock(side_effect=RuntimeError("docker gone"))

    result = await restorer.restore("example.com", run_id, force=True)

    assert result.success
    assert len(result.warnings) == 2


@pytest.mark.asyncio
async def test_restore_waits_for_backup_lock(restorer, backup, make_site, fleet_config, fake_db):
    make_site("example.com")
    run_id = await backup("example.com")

    async with TenantLock(fleet_config.paths.backup_root / LOCK_DIR_NAME, "example.com", timeout=1):
        result = await restorer.restore("example.com", run_id, force=True)

    assert result.describe() == "Failed(Locate, locked)"
    assert fake_db.imports == []


@pytest.mark.asyncio
async def test_plan_reports_changes(restorer, backup, make_site, fake_db, fleet_config):
    tenant = make_site("example.com")
    run_id = await backup("example.com")

    plan = await restorer.plan("example.com", run_id)

    assert plan.steps == [
        RestoreState.LOCATE,
        RestoreState.VALIDATE,
        RestoreState.IMPORT_DATABASE,
        RestoreState.EXTRACT_FILES,
        RestoreState.RESTORE_CONFIG,
        RestoreState.REFRESH_DEPENDENTS,
        RestoreState.DONE,
    ]
    assert "database wp_example_com" in plan.overwrites
    assert str(tenant.site_root) in plan.overwrites
    assert fake_db.imports == []


@pytest.mark.asyncio
async def test_plan_raises_on_problems(restorer, backup, make_site, fleet_config):
    make_site("example.com")
    run_id = await backup("example.com")

    with pytest.raises(RestoreAbortedError) as missing:
        await restorer.plan("other.com", run_id)
    assert missing.value.result.describe() == "Failed(Locate, not_found)"
    assert isinstance(missing.value.__cause__, NotFoundError)

    manifest = fleet_config.paths.backup_root / run_id / "example.com" / MANIFEST_FILENAME
    manifest.write_text(json.dumps({"domain": "example.com"}))
    with pytest.raises(RestoreAbortedError) as unreadable:
        await restorer.plan("example.com", run_id)
    assert unreadable.value.result.describe() == "Failed(Locate, corrupt)"
    assert isinstance(unreadable.value.__cause__, CorruptArtifactError)


@pytest.mark.asyncio
async def test_plan_reports_corrupt_dump_state(restorer, backup, make_site, fleet_config, fake_db, notifier):
    """A dump corrupted after backup is caught by the plan in Validate and can be reported."""
    make_site("example.com")
    run_id = await backup("example.com")
    dump = fleet_config.paths.backup_root / run_id / "example.com" / "database.sql.gz"
    data = bytearray(dump.read_bytes())
    data[-1] ^= 0xFF
    dump.write_bytes(bytes(data))

    with pytest.raises(RestoreAbortedError) as aborted:
        await restorer.plan("example.com", run_id)

    result = aborted.value.result
    assert result.describe() == "Failed(Validate, corrupt)"
    assert result.completed_steps == []
    assert aborted.value.kind == "corrupt"
    assert fake_db.imports == []

    await restorer.report(result)
    event = notifier.notify.await_args.args[0]
    assert event.title == "Restore Failed"
