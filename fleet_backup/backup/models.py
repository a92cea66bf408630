"""Data models for backup/restore operations."""

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional
from pydantic import BaseModel, Field, computed_field


class ArtifactKind(str, Enum):
    DATABASE = "database"
    FILES = "files"
    CONFIG = "config"

    @property
    def filename(self) -> str:
        """On-disk artifact name inside a tenant run directory."""
        if self is ArtifactKind.DATABASE:
            return "database.sql.gz"
        return f"{self.value}.tar.gz"


ALL_KINDS = (ArtifactKind.DATABASE, ArtifactKind.FILES, ArtifactKind.CONFIG)


class VerificationStatus(str, Enum):
    VALID = "valid"
    CORRUPT = "corrupt"
    EMPTY = "empty"


class BackupScope(str, Enum):
    ALL = "all"
    SITE = "site"


class ArtifactRecord(BaseModel):
    """One compressed artifact produced for a tenant."""

    kind: ArtifactKind
    filename: str
    size_bytes: int = 0
    checksum: Optional[str] = None
    status: VerificationStatus
    error: Optional[str] = None

    @property
    def is_valid(self) -> bool:
        return self.status == VerificationStatus.VALID


class TenantManifest(BaseModel):
    """Manifest written next to a tenant's artifacts once they are verified."""

    domain: str = Field(..., description="Tenant domain")
    run_id: str = Field(..., description="Backup run identifier")
    database: str = Field(..., description="Tenant database name")
    created_at: datetime = Field(..., description="Manifest creation timestamp")
    versions: Dict[str, str] = Field(default_factory=dict, description="Best-effort software versions")
    artifacts: Dict[str, bool] = Field(..., description="Artifact presence flags by kind")
    records: List[ArtifactRecord] = Field(default_factory=list, description="Valid artifacts")
    size_bytes: int = Field(0, description="Total size of valid artifacts")
    backup_size: str = Field("0B", description="Human-readable size")

    def record_for(self, kind: ArtifactKind) -> Optional[ArtifactRecord]:
        for record in self.records:
            if record.kind == kind:
                return record
        return None

    def has(self, kind: ArtifactKind) -> bool:
        return bool(self.artifacts.get(kind.value)) and self.record_for(kind) is not None


class TenantBackupResult(BaseModel):
    """Outcome of one tenant within one run."""

    domain: str
    run_id: str
    requested: List[ArtifactKind]
    artifacts: Dict[str, ArtifactRecord] = Field(default_factory=dict)
    errors: Dict[str, str] = Field(default_factory=dict)
    warnings: List[str] = Field(default_factory=list)
    manifest_written: bool = False
    size_bytes: int = 0

    @computed_field
    @property
    def success(self) -> bool:
        """True only when every requested artifact is usable and nothing failed."""
        if self.errors or not self.manifest_written:
            return False
        for kind in self.requested:
            record = self.artifacts.get(kind.value)
            if record is None:
                return False
            if record.status == VerificationStatus.CORRUPT:
                return False
            if record.status == VerificationStatus.EMPTY and kind != ArtifactKind.CONFIG:
                return False
        return True


class TenantRunSummary(BaseModel):
    domain: str
    success: bool
    manifest_written: bool
    size_bytes: int = 0
    errors: Dict[str, str] = Field(default_factory=dict)
    warnings: List[str] = Field(default_factory=list)


class RunSummary(BaseModel):
    """Run-level summary; its presence on disk marks the run complete."""

    run_id: str
    scope: BackupScope
    started_at: datetime
    completed_at: datetime
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: List[str] = Field(default_factory=list)
    cancelled: bool = False
    total_size_bytes: int = 0
    total_size: str = "0B"
    tenants: List[TenantRunSummary] = Field(default_factory=list)

    @property
    def failed_domains(self) -> List[str]:
        return [t.domain for t in self.tenants if not t.success]


class RunInfo(BaseModel):
    """Row of a run listing."""

    run_id: str
    created_at: Optional[datetime] = None
    complete: bool
    tenants: List[str] = Field(default_factory=list)
    size_bytes: int = 0


class RetentionReport(BaseModel):
    deleted_runs: List[str] = Field(default_factory=list)
    freed_bytes: int = 0
    kept_runs: List[str] = Field(default_factory=list)
    skipped_incomplete: List[str] = Field(default_factory=list)
    dry_run: bool = False


class RestoreState(str, Enum):
    LOCATE = "Locate"
    VALIDATE = "Validate"
    IMPORT_DATABASE = "ImportDatabase"
    EXTRACT_FILES = "ExtractFiles"
    RESTORE_CONFIG = "RestoreConfig"
    REFRESH_DEPENDENTS = "RefreshDependents"
    DONE = "Done"


class RestorePlan(BaseModel):
    """Pre-flight description of what a restore would change."""

    domain: str
    run_id: str
    database: str
    steps: List[RestoreState] = Field(default_factory=list)
    overwrites: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


class RestoreResult(BaseModel):
    domain: str
    run_id: str
    state: RestoreState
    failed_state: Optional[RestoreState] = None
    cause: Optional[str] = None
    message: Optional[str] = None
    completed_steps: List[RestoreState] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.failed_state is None and self.state == RestoreState.DONE

    def describe(self) -> str:
        if self.success:
            return "Done"
        return f"Failed({self.failed_state.value}, {self.cause})"
