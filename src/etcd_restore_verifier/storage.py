from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from kubernetes.client import ApiException

from .k8s import KubernetesClients, format_api_exception_message
from .models import BackupStorageType

CLUSTER_LABEL = "etcd_cluster"


class BackupStoreError(RuntimeError):
    """Raised when a backup store cannot answer an existence check."""


class BackupStore(ABC):
    """Read-only view of where the operator keeps a cluster's backups."""

    kind: str = "unknown"

    @abstractmethod
    def artifacts_exist(self, cluster_name: str) -> bool:
        """Return True when at least one backup artifact exists for the cluster."""

    def describe(self, cluster_name: str) -> str:
        return f"{self.kind} backups of '{cluster_name}'"


class PersistentVolumeBackupStore(BackupStore):
    kind = "persistent-volume"

    def __init__(self, *, clients: KubernetesClients, namespace: str) -> None:
        self.clients = clients
        self.namespace = namespace

    def artifacts_exist(self, cluster_name: str) -> bool:
        try:
            claims = self.clients.core_api.list_namespaced_persistent_volume_claim(
                namespace=self.namespace,
                label_selector=f"{CLUSTER_LABEL}={cluster_name}",
            )
        except ApiException as error:
            raise BackupStoreError(
                format_api_exception_message(
                    operation=f"list backup PVCs for cluster '{cluster_name}'",
                    error=error,
                )
            ) from error
        return bool(claims.items)

    def describe(self, cluster_name: str) -> str:
        return f"backup PVCs labelled {CLUSTER_LABEL}={cluster_name} in namespace '{self.namespace}'"


class S3BackupStore(BackupStore):
    kind = "s3"

    def __init__(
        self,
        *,
        s3_client: Any,
        bucket: str,
        namespace: str,
        prefix_template: str = "{namespace}/{cluster}/",
    ) -> None:
        self.s3_client = s3_client
        self.bucket = bucket
        self.namespace = namespace
        self.prefix_template = prefix_template

    def prefix_for(self, cluster_name: str) -> str:
        return self.prefix_template.format(namespace=self.namespace, cluster=cluster_name)

    def artifacts_exist(self, cluster_name: str) -> bool:
        prefix = self.prefix_for(cluster_name)
        try:
            response = self.s3_client.list_objects_v2(Bucket=self.bucket, Prefix=prefix, MaxKeys=1)
        except (BotoCoreError, ClientError) as error:
            raise BackupStoreError(f"listing s3://{self.bucket}/{prefix} failed: {error}") from error
        return bool(response.get("KeyCount") or response.get("Contents"))

    def describe(self, cluster_name: str) -> str:
        return f"objects under s3://{self.bucket}/{self.prefix_for(cluster_name)}"


def select_backup_store(
    storage_type: BackupStorageType,
    *,
    clients: KubernetesClients,
    namespace: str,
    s3_client: Any = None,
    s3_bucket: str | None = None,
    s3_prefix_template: str = "{namespace}/{cluster}/",
) -> BackupStore:
    resolved = storage_type.resolved()
    if resolved is BackupStorageType.PERSISTENT_VOLUME:
        return PersistentVolumeBackupStore(clients=clients, namespace=namespace)
    if resolved is BackupStorageType.S3:
        if s3_client is None or not s3_bucket:
            raise ValueError("S3 backup verification requires a configured S3 client and bucket")
        return S3BackupStore(
            s3_client=s3_client,
            bucket=s3_bucket,
            namespace=namespace,
            prefix_template=s3_prefix_template,
        )
    raise ValueError(f"unsupported backup storage type: {storage_type.value!r}")


def build_s3_client(*, region: str | None = None, endpoint_url: str | None = None) -> Any:
    session_config: dict[str, Any] = {}
    if region:
        session_config["region_name"] = region
    if endpoint_url:
        session_config["endpoint_url"] = endpoint_url
    return boto3.session.Session().client("s3", **session_config)
