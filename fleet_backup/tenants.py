"""Tenant sites as seen by the backup subsystem.

Tenants are created and destroyed by the provisioning layer; this module only
reads its directory layout.
"""

import re
from dataclasses import dataclass
from pathlib import Path
from typing import List

from ._utils import logger
from .config import PathsConfig
from .exceptions import InvalidTenantError, NotFoundError

# RFC 1123 hostname
DOMAIN_PATTERN = re.compile(
    r"^([a-zA-Z0-9]([a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?\.)*"
    r"[a-zA-Z0-9]([a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$"
)
MAX_DOMAIN_LENGTH = 253
SITE_CONFIG_SUFFIX = ".caddy"


def validate_domain(domain: str) -> str:
    """Validate a tenant domain.

    Args:
        domain: Domain name to validate

    Returns:
        The domain unchanged

    Raises:
        InvalidTenantError: If the domain is empty, malformed or too long
    """
    if not domain:
        raise InvalidTenantError("Domain cannot be empty")
    if not DOMAIN_PATTERN.match(domain):
        raise InvalidTenantError(f"Invalid domain format: {domain}")
    if len(domain) > MAX_DOMAIN_LENGTH:
        raise InvalidTenantError(f"Domain too long (max {MAX_DOMAIN_LENGTH} characters): {domain}")
    return domain


def database_name_for(domain: str) -> str:
    """Derive the tenant database name from its domain."""
    sanitized = domain.replace(".", "_").replace("-", "_")
    if sanitized[:1].isdigit():
        sanitized = f"d{sanitized}"
    return f"wp_{sanitized}"


@dataclass(frozen=True)
class Tenant:
    """One hosted site."""
    domain: str
    database: str
    site_root: Path
    config_path: Path

    @classmethod
    def from_domain(cls, domain: str, paths: PathsConfig) -> 'Tenant':
        validate_domain(domain)
        return cls(
            domain=domain,
            database=database_name_for(domain),
            site_root=paths.sites_dir / domain,
            config_path=paths.sites_config_dir / f"{domain}{SITE_CONFIG_SUFFIX}",
        )


class TenantDirectory:
    """Read-only view of the tenants the provisioning layer has created."""

    def __init__(self, paths: PathsConfig):
        self.paths = paths

    def list_tenants(self) -> List[Tenant]:
        """List every active tenant, sorted by domain.

        A tenant is active when its site config file exists.
        """
        config_dir = self.paths.sites_config_dir
        if not config_dir.is_dir():
            logger.warning(f"Site config directory not found: {config_dir}")
            return []

        tenants = []
        for config_file in sorted(config_dir.glob(f"*{SITE_CONFIG_SUFFIX}")):
            domain = config_file.name[: -len(SITE_CONFIG_SUFFIX)]
            try:
                tenants.append(Tenant.from_domain(domain, self.paths))
            except InvalidTenantError as e:
                logger.warning(f"Skipping site config {config_file.name}: {e}")
        return tenants

    def get(self, domain: str) -> Tenant:
        """Build the tenant for a domain without requiring it to be active."""
        return Tenant.from_domain(domain, self.paths)

    def require(self, domain: str) -> Tenant:
        """Build the tenant for a domain whose site directory exists."""
        tenant = self.get(domain)
        if not tenant.site_root.is_dir():
            raise NotFoundError(f"Site {domain} not found at {tenant.site_root}")
        return tenant
