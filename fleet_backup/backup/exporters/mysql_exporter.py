"""MariaDB/MySQL exporter using mysqldump and the mysql client."""

import asyncio
import gzip
import os
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from ..._utils import logger
from ...config import DatabaseConfig
from ...exceptions import (
    BackupTimeoutError,
    PermissionDeniedError,
    SourceUnavailableError,
)
from ...tenants import Tenant
from ..utils import PARTIAL_SUFFIX
from .base import DatabaseExporter

CHUNK_SIZE = 64 * 1024
STDERR_TAIL = 500


class MySQLDumpExporter(DatabaseExporter):
    """Export and import tenant databases with the MariaDB client tools.

    Dumps use --single-transaction so InnoDB tables are read from one
    consistent snapshot without locking writers. When a container is
    configured the binaries run inside it through `docker exec -i`.
    """

    def __init__(self, config: DatabaseConfig, compression_level: int = 6):
        self.config = config
        self.compression_level = compression_level

    async def export(self, tenant: Tenant, output_path: Path, timeout: float) -> int:
        """Dump a tenant database to a gzip file.

        Args:
            tenant: Tenant to dump
            output_path: Final artifact path (database.sql.gz)
            timeout: Seconds before the dump is killed

        Returns:
            Size of the compressed dump in bytes
        """
        partial_path = output_path.with_name(output_path.name + PARTIAL_SUFFIX)
        args = [
            self.config.dump_binary,
            "--single-transaction",
            "--quick",
            "--lock-tables=false",
            "--routines",
            "--triggers",
            *self._connection_args(),
            tenant.database,
        ]

        logger.info(f"Dumping database {tenant.database} for {tenant.domain}")

        try:
            with gzip.open(partial_path, "wb", compresslevel=self.compression_level) as sink:
                await self._run(args, timeout=timeout, stdout_sink=sink)
            os.replace(partial_path, output_path)
        finally:
            if partial_path.exists():
                partial_path.unlink()

        size = output_path.stat().st_size
        logger.info(f"Database dump complete: {output_path} ({size:,} bytes)")
        return size

    async def import_dump(self, tenant: Tenant, dump_path: Path, timeout: float) -> None:
        """Drop, recreate and load a tenant database from a gzip dump.

        Args:
            tenant: Tenant whose database is replaced
            dump_path: Path to database.sql.gz
            timeout: Seconds before the import is killed
        """
        database = tenant.database
        recreate = (
            f"DROP DATABASE IF EXISTS `{database}`; "
            f"CREATE DATABASE `{database}` CHARACTER SET {self.config.charset} "
            f"COLLATE {self.config.collation};"
        )

        logger.warning(f"Replacing database {database} for {tenant.domain}")
        await self._run(
            [self.config.client_binary, *self._connection_args(), "-e", recreate],
            timeout=timeout,
        )

        with gzip.open(dump_path, "rb") as source:
            await self._run(
                [self.config.client_binary, *self._connection_args(), database],
                timeout=timeout,
                stdin_source=source,
            )

        logger.info(f"Database import complete: {database}")

    def _connection_args(self) -> List[str]:
        args = ["-u", self.config.user]
        if self.config.host:
            args += ["-h", self.config.host, "-P", str(self.config.port)]
        return args

    def _command(self, args: List[str]) -> Tuple[List[str], Dict[str, str]]:
        """Wrap client arguments for docker exec and build the child environment."""
        env = dict(os.environ)
        env["MYSQL_PWD"] = self.config.password
        if self.config.container:
            # -e without a value forwards MYSQL_PWD from the docker client env
            return ["docker", "exec", "-i", "-e", "MYSQL_PWD", self.config.container, *args], env
        return args, env

    async def _run(
        self,
        args: List[str],
        timeout: float,
        stdout_sink=None,
        stdin_source=None,
    ) -> None:
        """Run a client binary, streaming stdout into stdout_sink and stdin from stdin_source.

        Compression happens in worker threads so other tenants keep running.
        """
        cmd, env = self._command(args)
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE if stdin_source is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE if stdout_sink is not None else asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
                env=env,
            )
        except FileNotFoundError as e:
            raise SourceUnavailableError(f"{cmd[0]} not available: {e}") from e
        except PermissionError as e:
            raise PermissionDeniedError(f"Cannot execute {cmd[0]}: {e}") from e

        async def pump_stdout():
            while True:
                chunk = await process.stdout.read(CHUNK_SIZE)
                if not chunk:
                    break
                await asyncio.to_thread(stdout_sink.write, chunk)

        async def pump_stdin():
            try:
                while True:
                    chunk = await asyncio.to_thread(stdin_source.read, CHUNK_SIZE)
                    if not chunk:
                        break
                    process.stdin.write(chunk)
                    await process.stdin.drain()
            except (BrokenPipeError, ConnectionResetError):
                # The client exited early; its exit status carries the error.
                pass
            finally:
                process.stdin.close()

        tasks = [process.stderr.read()]
        if stdout_sink is not None:
            tasks.append(pump_stdout())
        if stdin_source is not None:
            tasks.append(pump_stdin())

        try:
            results = await asyncio.wait_for(asyncio.gather(*tasks), timeout=timeout)
            await asyncio.wait_for(process.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            raise BackupTimeoutError(f"{args[0]} exceeded {timeout:.0f}s")
        finally:
            if process.returncode is None:
                process.kill()
                await process.wait()

        if process.returncode != 0:
            stderr = self._stderr_tail(results[0])
            if "access denied" in stderr.lower():
                raise PermissionDeniedError(f"{args[0]} failed: {stderr}")
            raise SourceUnavailableError(
                f"{args[0]} exited with status {process.returncode}: {stderr}"
            )

    @staticmethod
    def _stderr_tail(stderr: Optional[bytes]) -> str:
        text = (stderr or b"").decode(errors="replace").strip()
        return text[-STDERR_TAIL:]
