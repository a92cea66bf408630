"""Best-effort software version collection for manifests."""

import asyncio
from typing import Dict, List

from .._utils import logger, run_command
from ..tenants import Tenant

UNKNOWN = "unknown"


class VersionProbe:
    """Ask the web container for the WordPress and PHP versions.

    Never raises; anything that cannot be determined is reported as "unknown".
    """

    def __init__(self, web_container: str = "wpfleet_frankenphp", timeout: float = 30.0):
        self.web_container = web_container
        self.timeout = timeout

    async def collect(self, tenant: Tenant) -> Dict[str, str]:
        wordpress, php = await asyncio.gather(
            self._probe([
                "docker", "exec", "-u", "www-data",
                "-w", f"/var/www/html/{tenant.domain}",
                self.web_container, "wp", "core", "version",
            ]),
            self._probe(["docker", "exec", self.web_container, "php", "-v"]),
        )
        return {
            "wordpress_version": wordpress,
            "php_version": self._parse_php(php),
        }

    async def _probe(self, args: List[str]) -> str:
        if not self.web_container:
            return UNKNOWN
        try:
            returncode, stdout, _ = await run_command(args, timeout=self.timeout)
        except (OSError, asyncio.TimeoutError) as e:
            logger.debug(f"Version probe {args[-2:]} failed: {e!r}")
            return UNKNOWN
        if returncode != 0 or not stdout:
            return UNKNOWN
        return stdout.splitlines()[0].strip()

    @staticmethod
    def _parse_php(first_line: str) -> str:
        # "PHP 8.3.4 (cli) (built: ...)"
        parts = first_line.split()
        if len(parts) >= 2 and parts[0] == "PHP":
            return parts[1]
        return UNKNOWN
