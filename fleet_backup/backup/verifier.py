"""Structural verification of backup artifacts."""

import asyncio
import gzip
import tarfile
import zlib
from pathlib import Path

from .._utils import logger
from ..exceptions import NotFoundError
from .models import ArtifactKind, VerificationStatus

READ_CHUNK = 1024 * 1024


class Verifier:
    """Classify artifacts as valid, corrupt or empty.

    Database dumps are gzip streams and are decompressed end to end so the
    CRC and length trailer are checked. File and config artifacts are tar.gz
    archives; every member header is enumerated and the rest of the gzip
    stream is drained for the same trailer check.
    """

    def verify(self, path: Path, kind: ArtifactKind) -> VerificationStatus:
        if not path.exists():
            raise NotFoundError(f"Artifact not found: {path}")

        if path.stat().st_size == 0:
            logger.debug(f"Artifact is empty: {path}")
            return VerificationStatus.EMPTY

        try:
            if kind == ArtifactKind.DATABASE:
                self._check_gzip(path)
            else:
                self._check_tar(path)
        except (OSError, EOFError, zlib.error, tarfile.TarError) as e:
            logger.warning(f"Artifact failed verification: {path} ({e})")
            return VerificationStatus.CORRUPT

        return VerificationStatus.VALID

    async def averify(self, path: Path, kind: ArtifactKind) -> VerificationStatus:
        return await asyncio.to_thread(self.verify, path, kind)

    def _check_gzip(self, path: Path) -> None:
        with gzip.open(path, "rb") as f:
            while f.read(READ_CHUNK):
                pass

    def _check_tar(self, path: Path) -> None:
        with tarfile.open(path, "r:gz") as tar:
            tar.getmembers()
        # Member enumeration stops at the end-of-archive marker, so the gzip
        # trailer is only reached by draining the stream.
        self._check_gzip(path)
