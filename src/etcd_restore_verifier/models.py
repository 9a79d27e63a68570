from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class BackupStorageType(str, Enum):
    DEFAULT = ""
    PERSISTENT_VOLUME = "PersistentVolume"
    S3 = "S3"

    def resolved(self) -> BackupStorageType:
        # The operator stores Default backups on persistent volumes.
        if self is BackupStorageType.DEFAULT:
            return BackupStorageType.PERSISTENT_VOLUME
        return self


class S3Scope(str, Enum):
    PER_CLUSTER = "per_cluster"
    OPERATOR_WIDE = "operator_wide"


@dataclass(frozen=True)
class BackupPolicy:
    storage_type: BackupStorageType
    backup_interval_seconds: int = 60 * 60
    max_backups: int = 5
    pv_volume_size_mb: int | None = None
    s3_scope: S3Scope | None = None
    s3_bucket: str | None = None
    aws_secret: str | None = None
    cleanup_backups_on_cluster_delete: bool = False


@dataclass(frozen=True)
class RestorePolicy:
    backup_cluster_name: str
    storage_type: BackupStorageType


@dataclass(frozen=True)
class ClusterDescriptor:
    size: int
    name: str | None = None
    generate_name: str | None = None
    backup: BackupPolicy | None = None
    restore: RestorePolicy | None = None

    def __post_init__(self) -> None:
        if bool(self.name) == bool(self.generate_name):
            raise ValueError("exactly one of name or generate_name must be set")
        if self.size <= 0:
            raise ValueError("size must be positive")
        if self.restore is None:
            return
        if self.backup is None:
            raise ValueError("a restore policy requires a backup policy")
        if self.restore.storage_type.resolved() is not self.backup.storage_type.resolved():
            raise ValueError(
                f"restore storage type '{self.restore.storage_type.value}' does not match "
                f"backup storage type '{self.backup.storage_type.value}'"
            )

    @property
    def display_name(self) -> str:
        return self.name or f"{self.generate_name}<generated>"


@dataclass(frozen=True)
class MemberEndpoint:
    name: str
    pod_ip: str
    client_url: str


@dataclass(frozen=True)
class ScenarioResult:
    scenario: str
    status: str
    started_at: str
    finished_at: str
    cluster_name: str | None = None
    phase: str | None = None
    data_matched: bool | None = None
    message: str = ""

    @property
    def passed(self) -> bool:
        return self.status == "passed"
