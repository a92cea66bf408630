"""Configuration management for fleet-backup."""

import os
import socket
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional


@dataclass(frozen=True)
class PathsConfig:
    """Filesystem layout shared with the provisioning layer."""
    project_root: Path = Path(".")
    sites_dir: Optional[Path] = None
    sites_config_dir: Optional[Path] = None
    backup_root: Optional[Path] = None

    @classmethod
    def from_env(cls) -> 'PathsConfig':
        """Create config from environment variables."""
        def _path(name: str) -> Optional[Path]:
            value = os.getenv(name)
            return Path(value) if value else None

        return cls(
            project_root=Path(os.getenv("WPFLEET_ROOT", ".")),
            sites_dir=_path("WPFLEET_SITES_DIR"),
            sites_config_dir=_path("WPFLEET_SITES_CONFIG_DIR"),
            backup_root=_path("BACKUP_ROOT"),
        )

    def __post_init__(self):
        """Fill derived paths from project_root."""
        root = Path(self.project_root)
        object.__setattr__(self, "project_root", root)
        if self.sites_dir is None:
            object.__setattr__(self, "sites_dir", root / "data" / "wordpress")
        if self.sites_config_dir is None:
            object.__setattr__(self, "sites_config_dir", root / "config" / "caddy" / "sites")
        if self.backup_root is None:
            object.__setattr__(self, "backup_root", root / "backups")


@dataclass(frozen=True)
class DatabaseConfig:
    """MariaDB/MySQL connection descriptor."""
    container: str = "wpfleet_mariadb"  # empty string runs the client binaries locally
    host: Optional[str] = None
    port: int = 3306
    user: str = "root"
    password: str = ""
    dump_binary: str = "mysqldump"
    client_binary: str = "mysql"
    charset: str = "utf8mb4"
    collation: str = "utf8mb4_unicode_ci"

    @classmethod
    def from_env(cls) -> 'DatabaseConfig':
        """Create config from environment variables."""
        return cls(
            container=os.getenv("DB_CONTAINER", "wpfleet_mariadb"),
            host=os.getenv("DB_HOST", None),
            port=int(os.getenv("DB_PORT", "3306")),
            user=os.getenv("DB_USER", "root"),
            password=os.getenv("MYSQL_ROOT_PASSWORD", ""),
            dump_binary=os.getenv("DB_DUMP_BINARY", "mysqldump"),
            client_binary=os.getenv("DB_CLIENT_BINARY", "mysql"),
        )

    def __post_init__(self):
        """Validate configuration."""
        if not 0 < self.port < 65536:
            raise ValueError(f"port must be between 1 and 65535, got {self.port}")
        if not self.user:
            raise ValueError("user must not be empty")


@dataclass(frozen=True)
class RetentionConfig:
    """Tiered retention windows."""
    daily_days: int = 7
    weekly_weeks: int = 4
    monthly_months: int = 3

    @classmethod
    def from_env(cls) -> 'RetentionConfig':
        """Create config from environment variables."""
        return cls(
            daily_days=int(os.getenv("BACKUP_RETENTION_DAILY", "7")),
            weekly_weeks=int(os.getenv("BACKUP_RETENTION_WEEKLY", "4")),
            monthly_months=int(os.getenv("BACKUP_RETENTION_MONTHLY", "3")),
        )

    def __post_init__(self):
        """Validate configuration."""
        if self.daily_days < 0:
            raise ValueError(f"daily_days must be non-negative, got {self.daily_days}")
        if self.weekly_weeks < 0:
            raise ValueError(f"weekly_weeks must be non-negative, got {self.weekly_weeks}")
        if self.monthly_months < 0:
            raise ValueError(f"monthly_months must be non-negative, got {self.monthly_months}")


@dataclass(frozen=True)
class BackupConfig:
    """Backup run tuning."""
    max_concurrent_tenants: int = 4
    export_timeout: float = 3600.0
    lock_timeout: float = 30.0
    compression_level: int = 6

    @classmethod
    def from_env(cls) -> 'BackupConfig':
        """Create config from environment variables."""
        return cls(
            max_concurrent_tenants=int(os.getenv("BACKUP_MAX_CONCURRENT", "4")),
            export_timeout=float(os.getenv("BACKUP_EXPORT_TIMEOUT", "3600")),
            lock_timeout=float(os.getenv("BACKUP_LOCK_TIMEOUT", "30")),
            compression_level=int(os.getenv("BACKUP_COMPRESSION_LEVEL", "6")),
        )

    def __post_init__(self):
        """Validate configuration."""
        if self.max_concurrent_tenants <= 0:
            raise ValueError(f"max_concurrent_tenants must be positive, got {self.max_concurrent_tenants}")
        if self.export_timeout <= 0:
            raise ValueError(f"export_timeout must be positive, got {self.export_timeout}")
        if self.lock_timeout < 0:
            raise ValueError(f"lock_timeout must be non-negative, got {self.lock_timeout}")
        if not 1 <= self.compression_level <= 9:
            raise ValueError(f"compression_level must be between 1 and 9, got {self.compression_level}")


@dataclass(frozen=True)
class NotificationConfig:
    """Webhook notification targets."""
    discord_webhook_url: Optional[str] = None
    slack_webhook_url: Optional[str] = None
    timeout: float = 10.0
    max_retries: int = 3
    hostname: str = field(default_factory=socket.gethostname)

    @classmethod
    def from_env(cls) -> 'NotificationConfig':
        """Create config from environment variables."""
        return cls(
            discord_webhook_url=os.getenv("DISCORD_WEBHOOK_URL") or None,
            slack_webhook_url=os.getenv("SLACK_WEBHOOK_URL") or None,
            timeout=float(os.getenv("NOTIFY_TIMEOUT", "10.0")),
            max_retries=int(os.getenv("NOTIFY_MAX_RETRIES", "3")),
            hostname=os.getenv("HOSTNAME") or socket.gethostname(),
        )

    @property
    def enabled(self) -> bool:
        return bool(self.discord_webhook_url or self.slack_webhook_url)

    def __post_init__(self):
        """Validate configuration."""
        if self.timeout <= 0:
            raise ValueError(f"timeout must be positive, got {self.timeout}")
        if self.max_retries < 0:
            raise ValueError(f"max_retries must be non-negative, got {self.max_retries}")


@dataclass(frozen=True)
class DependentsConfig:
    """Services refreshed after a restore."""
    redis_url: str = "redis://localhost:6379"
    redis_password: Optional[str] = None
    web_container: str = "wpfleet_frankenphp"
    caddyfile: str = "/etc/caddy/Caddyfile"
    command_timeout: float = 60.0

    @classmethod
    def from_env(cls) -> 'DependentsConfig':
        """Create config from environment variables."""
        return cls(
            redis_url=os.getenv("REDIS_URL", "redis://localhost:6379"),
            redis_password=os.getenv("REDIS_PASSWORD", None),
            web_container=os.getenv("WEB_CONTAINER", "wpfleet_frankenphp"),
            caddyfile=os.getenv("CADDYFILE", "/etc/caddy/Caddyfile"),
            command_timeout=float(os.getenv("DEPENDENTS_COMMAND_TIMEOUT", "60")),
        )


@dataclass(frozen=True)
class FleetConfig:
    """Main fleet-backup configuration."""
    paths: PathsConfig = field(default_factory=PathsConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    retention: RetentionConfig = field(default_factory=RetentionConfig)
    backup: BackupConfig = field(default_factory=BackupConfig)
    notifications: NotificationConfig = field(default_factory=NotificationConfig)
    dependents: DependentsConfig = field(default_factory=DependentsConfig)

    @classmethod
    def from_env(cls) -> 'FleetConfig':
        """Create complete config from environment variables."""
        return cls(
            paths=PathsConfig.from_env(),
            database=DatabaseConfig.from_env(),
            retention=RetentionConfig.from_env(),
            backup=BackupConfig.from_env(),
            notifications=NotificationConfig.from_env(),
            dependents=DependentsConfig.from_env(),
        )
