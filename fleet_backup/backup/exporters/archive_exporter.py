"""Tar/gzip exporter for tenant file trees and site configuration."""

import asyncio
import gzip
import os
import posixpath
import tarfile
import threading
import zlib
from pathlib import Path
from typing import List, Optional

from ..._utils import logger
from ...exceptions import (
    BackupTimeoutError,
    CorruptArtifactError,
    SourceUnavailableError,
    classify_os_error,
)
from ..utils import PARTIAL_SUFFIX


class _ExportCancelled(Exception):
    pass


class ArchiveExporter:
    """Write and extract tar.gz artifacts.

    Archiving runs in a worker thread. Output goes to a `.partial` name and is
    renamed on success; when the caller's timeout fires the worker is told to
    stop and never performs the rename.
    """

    def __init__(self, compression_level: int = 6):
        self.compression_level = compression_level

    async def export_tree(
        self,
        source_dir: Path,
        output_path: Path,
        timeout: float,
        arcname: Optional[str] = None,
    ) -> int:
        """Archive a directory tree rooted at its own name.

        Args:
            source_dir: Tenant site directory
            output_path: Final artifact path (files.tar.gz)
            timeout: Seconds before the export is abandoned
            arcname: Top-level name inside the archive (default: directory name)

        Returns:
            Size of the archive in bytes
        """
        if not source_dir.exists():
            raise SourceUnavailableError(f"Source directory does not exist: {source_dir}")
        if not source_dir.is_dir():
            raise SourceUnavailableError(f"Source is not a directory: {source_dir}")

        logger.info(f"Archiving {source_dir} -> {output_path}")
        return await self._run(source_dir, arcname or source_dir.name, output_path, timeout)

    async def export_file(self, source_file: Path, output_path: Path, timeout: float) -> int:
        """Archive a single file; a missing file produces a zero-byte artifact.

        Returns:
            Size of the artifact in bytes (0 when the source is absent)
        """
        if not source_file.exists():
            logger.warning(f"No file to archive at {source_file}; writing empty artifact")
            partial_path = output_path.with_name(output_path.name + PARTIAL_SUFFIX)
            try:
                partial_path.write_bytes(b"")
                os.replace(partial_path, output_path)
            except OSError as e:
                raise classify_os_error(e, f"Writing {output_path}") from e
            finally:
                if partial_path.exists():
                    partial_path.unlink()
            return 0

        logger.info(f"Archiving {source_file} -> {output_path}")
        return await self._run(source_file, source_file.name, output_path, timeout)

    async def extract(self, archive_path: Path, destination: Path, timeout: float) -> List[str]:
        """Extract an archive below destination.

        Returns:
            Top-level names extracted
        """
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self._extract, archive_path, destination),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            raise BackupTimeoutError(f"Extracting {archive_path.name} exceeded {timeout:.0f}s")

    async def _run(self, source: Path, arcname: str, output_path: Path, timeout: float) -> int:
        cancelled = threading.Event()
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self._write_archive, source, arcname, output_path, cancelled),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            cancelled.set()
            raise BackupTimeoutError(f"Archiving {source} exceeded {timeout:.0f}s")
        except asyncio.CancelledError:
            cancelled.set()
            raise

    def _write_archive(
        self,
        source: Path,
        arcname: str,
        output_path: Path,
        cancelled: threading.Event,
    ) -> int:
        partial_path = output_path.with_name(output_path.name + PARTIAL_SUFFIX)

        def check_cancelled(info: tarfile.TarInfo) -> tarfile.TarInfo:
            if cancelled.is_set():
                raise _ExportCancelled()
            return info

        try:
            with tarfile.open(partial_path, "w:gz", compresslevel=self.compression_level) as tar:
                tar.add(source, arcname=arcname, filter=check_cancelled)
            if cancelled.is_set():
                raise _ExportCancelled()
            os.replace(partial_path, output_path)
        except _ExportCancelled:
            logger.warning(f"Archive export cancelled: {output_path}")
            return 0
        except OSError as e:
            raise classify_os_error(e, f"Archiving {source}") from e
        finally:
            if partial_path.exists():
                partial_path.unlink()

        size = output_path.stat().st_size
        logger.info(f"Archive created: {output_path} ({size:,} bytes)")
        return size

    def _extract(self, archive_path: Path, destination: Path) -> List[str]:
        destination.mkdir(parents=True, exist_ok=True)
        root = destination.resolve()

        try:
            with tarfile.open(archive_path, "r:gz") as tar:
                members = tar.getmembers()
                for member in members:
                    self._check_member(member)
                # Members are checked above; ownership and mode must survive.
                if hasattr(tarfile, "fully_trusted_filter"):
                    tar.extractall(root, members=members, filter="fully_trusted")
                else:
                    tar.extractall(root, members=members)
        except (tarfile.TarError, EOFError, zlib.error, gzip.BadGzipFile) as e:
            raise CorruptArtifactError(f"Cannot extract {archive_path.name}: {e}") from e
        except OSError as e:
            raise classify_os_error(e, f"Extracting {archive_path.name}") from e

        top_level = sorted({m.name.split("/", 1)[0] for m in members if m.name})
        logger.info(f"Extracted {archive_path.name} into {destination} ({len(members)} members)")
        return top_level

    @staticmethod
    def _check_member(member: tarfile.TarInfo) -> None:
        """Reject members that would land outside the extraction root."""
        name = member.name
        if name.startswith("/") or ".." in name.split("/"):
            raise CorruptArtifactError(f"Unsafe path in archive: {name}")
        if member.isdev():
            raise CorruptArtifactError(f"Device entry in archive: {name}")
        if member.issym():
            target = posixpath.normpath(posixpath.join(posixpath.dirname(name), member.linkname))
        elif member.islnk():
            target = posixpath.normpath(member.linkname)
        else:
            return
        if member.linkname.startswith("/") or target == ".." or target.startswith("../"):
            raise CorruptArtifactError(f"Link escapes archive root: {name} -> {member.linkname}")
