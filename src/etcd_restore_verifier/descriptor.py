from __future__ import annotations

from dataclasses import replace
from typing import Any

from .models import BackupPolicy, BackupStorageType, ClusterDescriptor, RestorePolicy, S3Scope

ETCD_CLUSTER_GROUP = "etcd.database.coreos.com"
ETCD_CLUSTER_VERSION = "v1beta2"
ETCD_CLUSTER_PLURAL = "etcdclusters"
ETCD_CLUSTER_KIND = "EtcdCluster"
DEFAULT_PV_VOLUME_SIZE_MB = 512


def new_cluster(generate_name_prefix: str, size: int) -> ClusterDescriptor:
    return ClusterDescriptor(size=size, generate_name=generate_name_prefix)


def new_pv_backup_policy() -> BackupPolicy:
    return BackupPolicy(
        storage_type=BackupStorageType.PERSISTENT_VOLUME,
        pv_volume_size_mb=DEFAULT_PV_VOLUME_SIZE_MB,
    )


def new_s3_backup_policy(*, bucket: str, aws_secret: str) -> BackupPolicy:
    """Backup policy that carries its own bucket and credentials secret."""
    if not bucket.strip() or not aws_secret.strip():
        raise ValueError("per-cluster S3 backup policy requires a bucket and an AWS secret name")
    return BackupPolicy(
        storage_type=BackupStorageType.S3,
        s3_scope=S3Scope.PER_CLUSTER,
        s3_bucket=bucket.strip(),
        aws_secret=aws_secret.strip(),
    )


def new_operator_s3_backup_policy() -> BackupPolicy:
    """Backup policy relying on the S3 settings the operator was started with."""
    return BackupPolicy(storage_type=BackupStorageType.S3, s3_scope=S3Scope.OPERATOR_WIDE)


def with_backup(descriptor: ClusterDescriptor, policy: BackupPolicy) -> ClusterDescriptor:
    return replace(descriptor, backup=policy)


def with_restore(descriptor: ClusterDescriptor, policy: RestorePolicy) -> ClusterDescriptor:
    return replace(descriptor, restore=policy)


def to_manifest(descriptor: ClusterDescriptor, *, namespace: str) -> dict[str, Any]:
    metadata: dict[str, Any] = {"namespace": namespace}
    if descriptor.name:
        metadata["name"] = descriptor.name
    else:
        metadata["generateName"] = descriptor.generate_name

    spec: dict[str, Any] = {"size": descriptor.size}
    if descriptor.backup is not None:
        spec["backup"] = _backup_spec(descriptor.backup)
    if descriptor.restore is not None:
        spec["restore"] = {
            "backupClusterName": descriptor.restore.backup_cluster_name,
            "storageType": descriptor.restore.storage_type.value,
        }

    return {
        "apiVersion": f"{ETCD_CLUSTER_GROUP}/{ETCD_CLUSTER_VERSION}",
        "kind": ETCD_CLUSTER_KIND,
        "metadata": metadata,
        "spec": spec,
    }


def _backup_spec(policy: BackupPolicy) -> dict[str, Any]:
    spec: dict[str, Any] = {
        "backupIntervalInSecond": policy.backup_interval_seconds,
        "maxBackups": policy.max_backups,
        "storageType": policy.storage_type.value,
        "cleanupBackupsOnClusterDelete": policy.cleanup_backups_on_cluster_delete,
    }
    if policy.storage_type.resolved() is BackupStorageType.PERSISTENT_VOLUME:
        spec["pv"] = {"volumeSizeInMB": policy.pv_volume_size_mb or DEFAULT_PV_VOLUME_SIZE_MB}
    elif policy.s3_scope is S3Scope.PER_CLUSTER:
        spec["s3"] = {"s3Bucket": policy.s3_bucket, "awsSecret": policy.aws_secret}
    else:
        # Operator-wide credentials: an empty source defers to the operator flags.
        spec["s3"] = {}
    return spec
