from __future__ import annotations

import time

from kubernetes.client import ApiException
import structlog

from .backup import backup_sidecar_name
from .descriptor import ETCD_CLUSTER_GROUP, ETCD_CLUSTER_PLURAL, ETCD_CLUSTER_VERSION
from .errors import TeardownVerificationError
from .k8s import KubernetesClients, error_message, is_not_found
from .lifecycle import ClusterLease, ClusterLifecycleController
from .models import BackupPolicy
from .storage import BackupStore, BackupStoreError, CLUSTER_LABEL

logger = structlog.get_logger(__name__)


class TeardownVerifier:
    def __init__(
        self,
        *,
        lifecycle: ClusterLifecycleController,
        clients: KubernetesClients,
        namespace: str,
        timeout_seconds: float = 60.0,
        poll_interval_seconds: float = 5.0,
    ) -> None:
        self.lifecycle = lifecycle
        self.clients = clients
        self.namespace = namespace
        self.timeout_seconds = timeout_seconds
        self.poll_interval_seconds = poll_interval_seconds

    def delete_and_verify(self, lease: ClusterLease, backup_policy: BackupPolicy | None, store: BackupStore) -> None:
        try:
            self.lifecycle.delete(lease.name)
        except ApiException as error:
            raise TeardownVerificationError(
                phase="teardown",
                cluster_name=lease.name,
                reason=f"deleting the cluster failed: {error_message(error)}",
            ) from error
        lease.released = True

        self._await_resources_gone(lease.name)
        if backup_policy is None:
            return

        expect_artifacts = not backup_policy.cleanup_backups_on_cluster_delete
        self._await_artifact_state(lease.name, store, expect_artifacts=expect_artifacts)
        logger.info(
            "teardown_verified",
            cluster=lease.name,
            store=store.kind,
            backups_retained=expect_artifacts,
        )

    def _await_resources_gone(self, cluster_name: str) -> None:
        deadline = time.time() + self.timeout_seconds
        remaining = "unknown"
        while True:
            try:
                remaining = self._remaining_resources(cluster_name)
            except ApiException as error:
                remaining = error_message(error)
            else:
                if not remaining:
                    return

            if time.time() >= deadline:
                break
            time.sleep(self.poll_interval_seconds)

        raise TeardownVerificationError(
            phase="teardown",
            cluster_name=cluster_name,
            reason=f"cluster resources still present after {self.timeout_seconds:g}s: {remaining}",
        )

    def _remaining_resources(self, cluster_name: str) -> str:
        leftovers: list[str] = []
        try:
            self.clients.custom_api.get_namespaced_custom_object(
                group=ETCD_CLUSTER_GROUP,
                version=ETCD_CLUSTER_VERSION,
                namespace=self.namespace,
                plural=ETCD_CLUSTER_PLURAL,
                name=cluster_name,
            )
        except ApiException as error:
            if not is_not_found(error):
                raise
        else:
            leftovers.append(f"EtcdCluster {cluster_name}")

        pods = self.clients.core_api.list_namespaced_pod(
            namespace=self.namespace,
            label_selector=f"{CLUSTER_LABEL}={cluster_name}",
        ).items
        if pods:
            leftovers.append(f"{len(pods)} pod(s)")

        try:
            self.clients.apps_api.read_namespaced_deployment(
                name=backup_sidecar_name(cluster_name),
                namespace=self.namespace,
            )
        except ApiException as error:
            if not is_not_found(error):
                raise
        else:
            leftovers.append(f"deployment {backup_sidecar_name(cluster_name)}")
        return ", ".join(leftovers)

    def _await_artifact_state(self, cluster_name: str, store: BackupStore, *, expect_artifacts: bool) -> None:
        deadline = time.time() + self.timeout_seconds
        last_error: str | None = None
        while True:
            try:
                exists = store.artifacts_exist(cluster_name)
            except BackupStoreError as error:
                last_error = str(error)
            else:
                last_error = None
                if exists == expect_artifacts:
                    return
                # Retained backups must already be present; only deletion is eventual.
                if expect_artifacts:
                    break

            if time.time() >= deadline:
                break
            time.sleep(self.poll_interval_seconds)

        if last_error:
            reason = f"could not inspect {store.describe(cluster_name)}: {last_error}"
        elif expect_artifacts:
            reason = f"expected {store.describe(cluster_name)} to be retained, but none were found"
        else:
            reason = f"expected {store.describe(cluster_name)} to be removed, but they still exist"
        raise TeardownVerificationError(phase="teardown", cluster_name=cluster_name, reason=reason)
