"""Error taxonomy for backup, retention and restore operations."""


class BackupError(Exception):
    """Base exception for backup operations."""
    kind = "error"

    def describe(self) -> str:
        """Render as the `<kind>: <message>` string stored in results."""
        return f"{self.kind}: {self}"


class NotFoundError(BackupError):
    """Referenced tenant, run or artifact does not exist."""
    kind = "not_found"


class CorruptArtifactError(BackupError):
    """Artifact failed verification."""
    kind = "corrupt"


class EmptyArtifactError(BackupError):
    """Artifact is zero bytes."""
    kind = "empty"


class SourceUnavailableError(BackupError):
    """Database or filesystem source cannot be read."""
    kind = "source_unavailable"


class BackupTimeoutError(BackupError):
    """Operation exceeded its time budget."""
    kind = "timeout"


class LockTimeoutError(BackupTimeoutError):
    """Tenant lock could not be acquired in time."""
    kind = "locked"


class PermissionDeniedError(BackupError):
    """Filesystem or database refused access."""
    kind = "permission_denied"


class StorageUnavailableError(BackupError):
    """Backup storage root cannot be written. Fatal for a run."""
    kind = "storage_unavailable"


class InvalidTenantError(BackupError):
    """Domain does not match the hostname grammar."""
    kind = "invalid_tenant"


def classify_os_error(exc: OSError, context: str = "") -> BackupError:
    """Map an OSError onto the backup taxonomy."""
    prefix = f"{context}: " if context else ""
    if isinstance(exc, FileNotFoundError):
        return SourceUnavailableError(f"{prefix}{exc}")
    if isinstance(exc, PermissionError):
        return PermissionDeniedError(f"{prefix}{exc}")
    return SourceUnavailableError(f"{prefix}{exc}")


def describe_error(exc: BaseException) -> str:
    """Render any exception as a `<kind>: <message>` string."""
    if isinstance(exc, BackupError):
        return exc.describe()
    if isinstance(exc, OSError):
        return classify_os_error(exc).describe()
    return f"error: {type(exc).__name__}: {exc}"
