"""Per-tenant advisory locks shared by backup and restore."""

import asyncio
import fcntl
import os
import time
from pathlib import Path
from typing import Optional

from .._utils import logger
from ..exceptions import LockTimeoutError, StorageUnavailableError

POLL_INTERVAL = 0.1


class TenantLock:
    """Exclusive flock on `<lock_dir>/<domain>.lock`.

    Usage:
        async with TenantLock(lock_dir, "example.com", timeout=30):
            ...
    """

    def __init__(self, lock_dir: Path, domain: str, timeout: float = 30.0):
        self.lock_dir = Path(lock_dir)
        self.domain = domain
        self.timeout = timeout
        self.path = self.lock_dir / f"{domain}.lock"
        self._fd: Optional[int] = None

    async def acquire(self) -> None:
        try:
            self.lock_dir.mkdir(parents=True, exist_ok=True)
            fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o644)
        except OSError as e:
            raise StorageUnavailableError(f"Cannot create lock file {self.path}: {e}") from e

        deadline = time.monotonic() + self.timeout
        while True:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except BlockingIOError:
                if time.monotonic() >= deadline:
                    os.close(fd)
                    raise LockTimeoutError(
                        f"Tenant {self.domain} is locked by another backup or restore"
                    )
                await asyncio.sleep(POLL_INTERVAL)
            except BaseException:
                os.close(fd)
                raise

        os.ftruncate(fd, 0)
        os.write(fd, str(os.getpid()).encode())
        self._fd = fd
        logger.debug(f"Lock acquired: {self.path}")

    def release(self) -> None:
        if self._fd is None:
            return
        try:
            fcntl.flock(self._fd, fcntl.LOCK_UN)
        finally:
            os.close(self._fd)
            self._fd = None
        logger.debug(f"Lock released: {self.path}")

    @property
    def locked(self) -> bool:
        return self._fd is not None

    async def __aenter__(self) -> 'TenantLock':
        await self.acquire()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.release()
