"""Tests for the per-tenant backup unit."""

import json
import tarfile
from unittest.mock import AsyncMock

import pytest

from fleet_backup.backup.locks import TenantLock
from fleet_backup.backup.models import ArtifactKind, VerificationStatus
from fleet_backup.backup.utils import LOCK_DIR_NAME, MANIFEST_FILENAME
from fleet_backup.exceptions import BackupTimeoutError


@pytest.fixture
def run_dir(fleet_config):
    path = fleet_config.paths.backup_root / "20240115_030000"
    path.mkdir(parents=True)
    return path


@pytest.mark.asyncio
async def test_full_backup(backup_unit, make_site, run_dir):
    """All three artifacts are produced, verified and listed in the manifest."""
    tenant = make_site("example.com")

    result = await backup_unit.backup(tenant, "20240115_030000", run_dir)

    assert result.success is True
    assert result.errors == {}
    tenant_dir = run_dir / "example.com"
    for kind in ArtifactKind:
        assert (tenant_dir / kind.filename).is_file()
        assert result.artifacts[kind.value].status == VerificationStatus.VALID
        assert result.artifacts[kind.value].checksum.startswith("sha256:")

    manifest = json.loads((tenant_dir / MANIFEST_FILENAME).read_text())
    assert manifest["domain"] == "example.com"
    assert manifest["run_id"] == "20240115_030000"
    assert manifest["database"] == "wp_example_com"
    assert manifest["artifacts"] == {"database": True, "files": True, "config": True}
    assert manifest["versions"] == {"wordpress_version": "6.4.2", "php_version": "8.3.4"}
    assert result.size_bytes > 0

    with tarfile.open(tenant_dir / "files.tar.gz", "r:gz") as tar:
        assert "example.com/wp-content/uploads/a.txt" in tar.getnames()


@pytest.mark.asyncio
async def test_database_failure_keeps_files(backup_unit, make_site, fake_db, run_dir):
    """A failed kind does not stop its siblings; the manifest lists what survived."""
    tenant = make_site("example.com")
    fake_db.unavailable.add(tenant.database)

    result = await backup_unit.backup(tenant, "20240115_030000", run_dir)

    assert result.success is False
    assert result.errors["database"].startswith("source_unavailable:")
    assert result.manifest_written is True
    manifest = json.loads((run_dir / "example.com" / MANIFEST_FILENAME).read_text())
    assert manifest["artifacts"] == {"database": False, "files": True, "config": True}
    assert [r["kind"] for r in manifest["records"]] == ["files", "config"]


@pytest.mark.asyncio
async def test_missing_config_is_warning(backup_unit, make_site, run_dir):
    """An absent site config yields an Empty artifact and a warning, not a failure."""
    tenant = make_site("example.com", config=False)

    result = await backup_unit.backup(tenant, "20240115_030000", run_dir)

    assert result.success is True
    assert result.artifacts["config"].status == VerificationStatus.EMPTY
    assert result.warnings
    manifest = json.loads((run_dir / "example.com" / MANIFEST_FILENAME).read_text())
    assert manifest["artifacts"]["config"] is False


@pytest.mark.asyncio
async def test_empty_database_dump_is_failure(backup_unit, make_site, fake_db, run_dir):
    tenant = make_site("example.com")

    async def empty_export(tenant, output_path, timeout):
        output_path.write_bytes(b"")
        return 0

    fake_db.export = empty_export

    result = await backup_unit.backup(tenant, "20240115_030000", run_dir)

    assert result.success is False
    assert result.errors["database"].startswith("empty:")


@pytest.mark.asyncio
async def test_corrupt_artifact_not_in_manifest(backup_unit, make_site, fake_db, run_dir):
    tenant = make_site("example.com")

    async def broken_export(tenant, output_path, timeout):
        output_path.write_bytes(b"\x1f\x8b\x08\x00 not really gzip")
        return output_path.stat().st_size

    fake_db.export = broken_export

    result = await backup_unit.backup(tenant, "20240115_030000", run_dir)

    assert result.success is False
    assert result.errors["database"].startswith("corrupt:")
    assert (run_dir / "example.com" / "database.sql.gz").exists()
    manifest = json.loads((run_dir / "example.com" / MANIFEST_FILENAME).read_text())
    assert manifest["artifacts"]["database"] is False


@pytest.mark.asyncio
async def test_no_valid_artifacts_means_no_manifest(backup_unit, fleet_config, fake_db, run_dir):
    """A site whose directory vanished and whose database is gone is not restorable."""
    from fleet_backup.tenants import Tenant

    tenant = Tenant.from_domain("ghost.com", fleet_config.paths)

    result = await backup_unit.backup(tenant, "20240115_030000", run_dir, [ArtifactKind.DATABASE, ArtifactKind.FILES])

    assert result.success is False
    assert result.manifest_written is False
    assert set(result.errors) == {"database", "files"}
    assert not (run_dir / "ghost.com" / MANIFEST_FILENAME).exists()


@pytest.mark.asyncio
async def test_database_only(backup_unit, make_site, run_dir):
    tenant = make_site("example.com")

    result = await backup_unit.backup(tenant, "20240115_030000", run_dir, [ArtifactKind.DATABASE])

    assert result.success is True
    assert list(result.artifacts) == ["database"]
    assert not (run_dir / "example.com" / "files.tar.gz").exists()


@pytest.mark.asyncio
async def test_timeout_recorded(backup_unit, make_site, fake_db, run_dir):
    tenant = make_site("example.com")
    fake_db.export = AsyncMock(side_effect=BackupTimeoutError("mysqldump exceeded 30s"))

    result = await backup_unit.backup(tenant, "20240115_030000", run_dir)

    assert result.errors["database"] == "timeout: mysqldump exceeded 30s"
    assert result.artifacts["files"].is_valid


@pytest.mark.asyncio
async def test_locked_tenant_fails(backup_unit, fleet_config, make_site, run_dir):
    """A tenant being restored cannot be backed up at the same time."""
    tenant = make_site("example.com")

    async with TenantLock(fleet_config.paths.backup_root / LOCK_DIR_NAME, "example.com", timeout=1):
        result = await backup_unit.backup(tenant, "20240115_030000", run_dir)

    assert result.success is False
    assert result.errors["tenant"].startswith("locked:")
