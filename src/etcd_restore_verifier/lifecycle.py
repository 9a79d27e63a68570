from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, Iterator
import time

from kubernetes import client
from kubernetes.client import ApiException
import structlog

from .descriptor import ETCD_CLUSTER_GROUP, ETCD_CLUSTER_PLURAL, ETCD_CLUSTER_VERSION, to_manifest
from .errors import ConvergenceTimeout, SubmissionError
from .k8s import KubernetesClients, error_message, format_api_exception_message, is_not_found
from .models import ClusterDescriptor, MemberEndpoint

ETCD_CLIENT_PORT = 2379

logger = structlog.get_logger(__name__)


@dataclass
class ClusterLease:
    """A provisioned cluster whose deletion is owned by the enclosing scope."""

    name: str
    descriptor: ClusterDescriptor
    released: bool = False


ReleaseCallback = Callable[[ClusterLease], None]


class ClusterLifecycleController:
    def __init__(
        self,
        *,
        clients: KubernetesClients,
        namespace: str,
        poll_interval_seconds: float = 5.0,
    ) -> None:
        self.clients = clients
        self.namespace = namespace
        self.poll_interval_seconds = poll_interval_seconds

    def provision(self, descriptor: ClusterDescriptor) -> str:
        body = to_manifest(descriptor, namespace=self.namespace)
        try:
            created = self.clients.custom_api.create_namespaced_custom_object(
                group=ETCD_CLUSTER_GROUP,
                version=ETCD_CLUSTER_VERSION,
                namespace=self.namespace,
                plural=ETCD_CLUSTER_PLURAL,
                body=body,
            )
        except ApiException as error:
            raise SubmissionError(
                phase="provision",
                cluster_name=descriptor.name,
                reason=format_api_exception_message(
                    operation=f"create EtcdCluster '{descriptor.display_name}' in namespace '{self.namespace}'",
                    error=error,
                ),
            ) from error

        name = _metadata_name(created) or descriptor.name
        if not name:
            raise SubmissionError(
                phase="provision",
                cluster_name=None,
                reason="API server accepted the cluster but returned no name",
            )
        logger.info("cluster_provisioned", cluster=name, namespace=self.namespace, size=descriptor.size)
        return name

    def await_size(self, name: str, target_count: int, timeout_seconds: float) -> list[MemberEndpoint]:
        deadline = time.time() + timeout_seconds
        last_observation = "cluster not observed yet"
        while True:
            try:
                ready_count, endpoints = self._ready_endpoints(name)
            except ApiException as error:
                last_observation = error_message(error)
            else:
                # Exactly target_count ready members, each already reachable by pod IP.
                if ready_count == target_count and len(endpoints) == ready_count:
                    logger.info("cluster_size_reached", cluster=name, size=target_count)
                    return endpoints
                last_observation = f"{ready_count} ready member(s), {len(endpoints)} with pod IPs"

            if time.time() >= deadline:
                break
            time.sleep(self.poll_interval_seconds)

        raise ConvergenceTimeout(
            phase="await-size",
            cluster_name=name,
            reason=(
                f"cluster did not reach {target_count} ready member(s) within {timeout_seconds:g}s "
                f"(last observed: {last_observation})"
            ),
        )

    def delete(self, name: str) -> None:
        try:
            self.clients.custom_api.delete_namespaced_custom_object(
                group=ETCD_CLUSTER_GROUP,
                version=ETCD_CLUSTER_VERSION,
                namespace=self.namespace,
                plural=ETCD_CLUSTER_PLURAL,
                name=name,
                body=client.V1DeleteOptions(),
            )
        except ApiException as error:
            if is_not_found(error):
                logger.info("cluster_already_absent", cluster=name, namespace=self.namespace)
                return
            raise
        logger.info("cluster_deleted", cluster=name, namespace=self.namespace)

    @contextmanager
    def provisioned(
        self,
        descriptor: ClusterDescriptor,
        *,
        release: ReleaseCallback | None = None,
    ) -> Iterator[ClusterLease]:
        lease = ClusterLease(name=self.provision(descriptor), descriptor=descriptor)
        release_callback = release or self._delete_lease
        try:
            yield lease
        except BaseException as error:
            self._release_after_failure(lease, release_callback, error)
            raise
        if lease.released:
            return
        try:
            release_callback(lease)
        except Exception:
            if not lease.released:
                self._best_effort_delete(lease)
            raise
        finally:
            lease.released = True

    def _delete_lease(self, lease: ClusterLease) -> None:
        self.delete(lease.name)
        lease.released = True

    def _release_after_failure(
        self,
        lease: ClusterLease,
        release_callback: ReleaseCallback,
        primary_error: BaseException,
    ) -> None:
        if lease.released:
            return
        try:
            release_callback(lease)
        except Exception as cleanup_error:  # pylint: disable=broad-except
            reason = error_message(cleanup_error)
            logger.warning("cluster_cleanup_failed", cluster=lease.name, error=reason)
            primary_error.add_note(f"cleanup of cluster '{lease.name}' failed: {reason}")
            if not lease.released:
                self._best_effort_delete(lease)
        lease.released = True

    def _best_effort_delete(self, lease: ClusterLease) -> None:
        try:
            self.delete(lease.name)
        except Exception as error:  # pylint: disable=broad-except
            logger.warning("cluster_delete_failed", cluster=lease.name, error=error_message(error))

    def _ready_endpoints(self, name: str) -> tuple[int, list[MemberEndpoint]]:
        cluster = self.clients.custom_api.get_namespaced_custom_object(
            group=ETCD_CLUSTER_GROUP,
            version=ETCD_CLUSTER_VERSION,
            namespace=self.namespace,
            plural=ETCD_CLUSTER_PLURAL,
            name=name,
        )
        ready_members = sorted(_ready_member_names(cluster))
        endpoints: list[MemberEndpoint] = []
        for member_name in ready_members:
            pod = self.clients.core_api.read_namespaced_pod(name=member_name, namespace=self.namespace)
            pod_ip = pod.status.pod_ip if pod.status else None
            if not pod_ip:
                continue
            endpoints.append(
                MemberEndpoint(
                    name=member_name,
                    pod_ip=pod_ip,
                    client_url=f"http://{pod_ip}:{ETCD_CLIENT_PORT}",
                )
            )
        return len(ready_members), endpoints


def _metadata_name(resource: Any) -> str | None:
    if not isinstance(resource, dict):
        return None
    metadata = resource.get("metadata") or {}
    return metadata.get("name") or None


def _ready_member_names(resource: Any) -> list[str]:
    if not isinstance(resource, dict):
        return []
    status = resource.get("status") or {}
    members = status.get("members") or {}
    return [name for name in members.get("ready") or [] if name]
