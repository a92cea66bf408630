"""Services that must be refreshed after a tenant is restored."""

import asyncio

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from ._utils import logger, run_command
from .config import DependentsConfig
from .tenants import Tenant

DELETE_BATCH = 1000


class DependentServices:
    """Object-cache invalidation and web server reload.

    Both calls are fire-and-forget: failures are logged and reported as
    False, never raised.
    """

    def __init__(self, config: DependentsConfig):
        self.config = config

    async def invalidate_tenant_cache(self, tenant: Tenant) -> bool:
        """Delete the tenant's object-cache keys (`<database>:*`)."""
        pattern = f"{tenant.database}:*"
        client = aioredis.from_url(
            self.config.redis_url,
            password=self.config.redis_password,
            socket_timeout=self.config.command_timeout,
            decode_responses=False,
        )
        deleted = 0
        try:
            batch = []
            async for key in client.scan_iter(match=pattern, count=DELETE_BATCH):
                batch.append(key)
                if len(batch) >= DELETE_BATCH:
                    deleted += await client.delete(*batch)
                    batch = []
            if batch:
                deleted += await client.delete(*batch)
        except (RedisError, OSError) as e:
            logger.warning(f"Cache invalidation failed for {tenant.domain}: {e}")
            return False
        finally:
            await client.aclose()

        logger.info(f"Deleted {deleted} object cache keys for {tenant.domain}")
        return True

    async def reload_routing(self) -> bool:
        """Reload the web server configuration."""
        args = [
            "docker", "exec", self.config.web_container,
            "caddy", "reload", "--config", self.config.caddyfile,
        ]
        try:
            returncode, _, stderr = await run_command(args, timeout=self.config.command_timeout)
        except (OSError, asyncio.TimeoutError) as e:
            logger.warning(f"Web server reload failed: {e!r}")
            return False

        if returncode != 0:
            logger.warning(f"Web server reload exited with status {returncode}: {stderr}")
            return False

        logger.info("Web server configuration reloaded")
        return True
