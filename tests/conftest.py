"""Global pytest configuration and fixtures."""

import gzip
import sys
from pathlib import Path
from typing import Dict, Set
from unittest.mock import AsyncMock, MagicMock

import pytest

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from fleet_backup.backup.exporters import DatabaseExporter
from fleet_backup.backup.tenant import TenantBackupUnit
from fleet_backup.config import BackupConfig, FleetConfig, PathsConfig
from fleet_backup.exceptions import SourceUnavailableError
from fleet_backup.tenants import Tenant, database_name_for


class FakeDatabaseExporter(DatabaseExporter):
    """In-memory stand-in for MariaDB: database name -> SQL text."""

    def __init__(self):
        self.databases: Dict[str, str] = {}
        self.unavailable: Set[str] = set()
        self.exports = []
        self.imports = []

    async def export(self, tenant: Tenant, output_path: Path, timeout: float) -> int:
        self.exports.append(tenant.domain)
        if tenant.database in self.unavailable or tenant.database not in self.databases:
            raise SourceUnavailableError(f"Unknown database '{tenant.database}'")
        with gzip.open(output_path, "wb") as f:
            f.write(self.databases[tenant.database].encode())
        return output_path.stat().st_size

    async def import_dump(self, tenant: Tenant, dump_path: Path, timeout: float) -> None:
        self.imports.append(tenant.domain)
        with gzip.open(dump_path, "rb") as f:
            self.databases[tenant.database] = f.read().decode()


def seed_table(rows: int) -> str:
    lines = ["CREATE TABLE wp_posts (id INT PRIMARY KEY, title TEXT);"]
    lines += [f"INSERT INTO wp_posts VALUES ({i}, 'Post {i}');" for i in range(1, rows + 1)]
    return "\n".join(lines) + "\n"


@pytest.fixture
def fleet_config(tmp_path):
    """Fleet layout rooted in a temporary directory."""
    paths = PathsConfig(project_root=tmp_path)
    paths.sites_dir.mkdir(parents=True)
    paths.sites_config_dir.mkdir(parents=True)
    return FleetConfig(
        paths=paths,
        backup=BackupConfig(max_concurrent_tenants=2, export_timeout=30.0, lock_timeout=0.5),
    )


@pytest.fixture
def fake_db():
    return FakeDatabaseExporter()


@pytest.fixture
def make_site(fleet_config, fake_db):
    """Create a site directory, its .caddy config and its database."""

    def _make(domain: str, files: Dict[str, str] = None, rows: int = 10, config: bool = True) -> Tenant:
        tenant = Tenant.from_domain(domain, fleet_config.paths)
        uploads = tenant.site_root / "wp-content" / "uploads"
        uploads.mkdir(parents=True)
        for name, content in (files or {"a.txt": "alpha", "b.txt": "beta", "c.txt": "gamma"}).items():
            (uploads / name).write_text(content)
        (tenant.site_root / "wp-config.php").write_text(f"<?php define('DB_NAME', '{tenant.database}');\n")
        if config:
            tenant.config_path.write_text(f"{domain} {{\n    root * /var/www/html/{domain}\n}}\n")
        fake_db.databases[database_name_for(domain)] = seed_table(rows)
        return tenant

    return _make


@pytest.fixture
def version_probe():
    probe = MagicMock()
    probe.collect = AsyncMock(return_value={"wordpress_version": "6.4.2", "php_version": "8.3.4"})
    return probe


@pytest.fixture
def backup_unit(fleet_config, fake_db, version_probe):
    return TenantBackupUnit(fleet_config, fake_db, version_probe=version_probe)
