from __future__ import annotations

import time

import httpx
from kubernetes.client import ApiException
import structlog

from .errors import BackupRequestError, ConvergenceTimeout
from .k8s import KubernetesClients, error_message, format_api_exception_message
from .storage import BackupStore, BackupStoreError, CLUSTER_LABEL

BACKUP_AGENT_APP_LABEL = "etcd_backup_tool"
BACKUP_AGENT_HTTP_PORT = 19999
BACKUP_AGENT_BACKUP_PATH = "/v1/backupnow"
BACKUP_AGENT_STATUS_PATH = "/v1/status"

logger = structlog.get_logger(__name__)


def backup_agent_selector(cluster_name: str) -> str:
    return f"app={BACKUP_AGENT_APP_LABEL},{CLUSTER_LABEL}={cluster_name}"


def backup_sidecar_name(cluster_name: str) -> str:
    return f"{cluster_name}-backup-sidecar"


class BackupOrchestrator:
    def __init__(
        self,
        *,
        clients: KubernetesClients,
        namespace: str,
        http_client: httpx.Client | None = None,
        poll_interval_seconds: float = 5.0,
        request_timeout_seconds: float = 30.0,
    ) -> None:
        self.clients = clients
        self.namespace = namespace
        self.http_client = http_client or httpx.Client(timeout=request_timeout_seconds)
        self.poll_interval_seconds = poll_interval_seconds

    def await_backup_agent_ready(self, cluster_name: str, timeout_seconds: float) -> str:
        deadline = time.time() + timeout_seconds
        last_observation = "no backup agent pod observed"
        while True:
            try:
                pod_ip, last_observation = self._running_agent_ip(cluster_name)
            except ApiException as error:
                pod_ip, last_observation = None, error_message(error)
            if pod_ip:
                logger.info("backup_agent_ready", cluster=cluster_name, pod_ip=pod_ip)
                return pod_ip

            if time.time() >= deadline:
                break
            time.sleep(self.poll_interval_seconds)

        raise ConvergenceTimeout(
            phase="backup-agent",
            cluster_name=cluster_name,
            reason=(
                f"backup agent did not become Running within {timeout_seconds:g}s "
                f"(last observed: {last_observation})"
            ),
        )

    def trigger_backup(self, cluster_name: str) -> None:
        url = self._agent_url(cluster_name, BACKUP_AGENT_BACKUP_PATH)
        self._agent_get(cluster_name, url, action="backup request")
        logger.info("backup_requested", cluster=cluster_name, url=url)

    def recent_backup(self, cluster_name: str) -> str | None:
        """Identify the newest backup the agent reports, or None before its first one."""
        url = self._agent_url(cluster_name, BACKUP_AGENT_STATUS_PATH)
        response = self._agent_get(cluster_name, url, action="backup status request")
        try:
            body = response.json()
        except ValueError as error:
            raise BackupRequestError(
                phase="backup",
                cluster_name=cluster_name,
                reason=f"backup status from {url} is not valid JSON",
            ) from error
        if not isinstance(body, dict):
            raise BackupRequestError(
                phase="backup",
                cluster_name=cluster_name,
                reason=f"backup status from {url} is not a JSON object",
            )

        recent = body.get("recentBackup")
        if not recent:
            return None
        if not isinstance(recent, dict):
            raise BackupRequestError(
                phase="backup",
                cluster_name=cluster_name,
                reason=f"backup status from {url} holds a malformed recentBackup entry",
            )
        return f"{recent.get('creationTime', '')}@rev{recent.get('revision', '')}"

    def await_backup_artifact(
        self,
        cluster_name: str,
        store: BackupStore,
        timeout_seconds: float,
        *,
        previous_backup: str | None = None,
    ) -> None:
        """Block until the agent records a new backup and the store holds an artifact.

        A backup request only means the agent accepted the work; the artifact
        may land later, and tearing the cluster down before then loses it.
        PV claims exist from the moment the sidecar starts, so the store alone
        cannot tell a finished backup from an empty volume. ``previous_backup``
        is the agent's ``recent_backup`` from before the request.
        """
        deadline = time.time() + timeout_seconds
        last_observation = "artifact not found"
        while True:
            try:
                recent = self.recent_backup(cluster_name)
                if recent is None or recent == previous_backup:
                    last_observation = "backup agent reports no new backup"
                elif store.artifacts_exist(cluster_name):
                    logger.info("backup_artifact_confirmed", cluster=cluster_name, store=store.kind, backup=recent)
                    return
                else:
                    last_observation = f"agent recorded backup {recent} but the store holds no artifact"
            except (BackupRequestError, BackupStoreError) as error:
                last_observation = str(error)

            if time.time() >= deadline:
                break
            time.sleep(self.poll_interval_seconds)

        raise ConvergenceTimeout(
            phase="backup-artifact",
            cluster_name=cluster_name,
            reason=(
                f"no backup artifact appeared in {store.describe(cluster_name)} within "
                f"{timeout_seconds:g}s (last observed: {last_observation})"
            ),
        )

    def close(self) -> None:
        self.http_client.close()

    def _agent_url(self, cluster_name: str, path: str) -> str:
        try:
            pod_ip, observation = self._running_agent_ip(cluster_name)
        except ApiException as error:
            raise BackupRequestError(
                phase="backup",
                cluster_name=cluster_name,
                reason=format_api_exception_message(
                    operation=f"locate the backup agent of cluster '{cluster_name}'",
                    error=error,
                ),
            ) from error
        if not pod_ip:
            raise BackupRequestError(
                phase="backup",
                cluster_name=cluster_name,
                reason=f"no running backup agent to receive the request ({observation})",
            )
        return f"http://{pod_ip}:{BACKUP_AGENT_HTTP_PORT}{path}"

    def _agent_get(self, cluster_name: str, url: str, *, action: str) -> httpx.Response:
        try:
            response = self.http_client.get(url)
        except httpx.HTTPError as error:
            raise BackupRequestError(
                phase="backup",
                cluster_name=cluster_name,
                reason=f"{action} to {url} failed: {str(error).strip() or error.__class__.__name__}",
            ) from error
        if not response.is_success:
            detail = response.text.strip()[:200]
            reason = f"{action} to {url} returned HTTP {response.status_code}"
            raise BackupRequestError(
                phase="backup",
                cluster_name=cluster_name,
                reason=f"{reason}: {detail}" if detail else reason,
            )
        return response

    def _running_agent_ip(self, cluster_name: str) -> tuple[str | None, str]:
        pods = self.clients.core_api.list_namespaced_pod(
            namespace=self.namespace,
            label_selector=backup_agent_selector(cluster_name),
        ).items
        if not pods:
            return None, "no backup agent pod observed"

        phases: list[str] = []
        for pod in pods:
            phase = pod.status.phase if pod.status and pod.status.phase else "Unknown"
            phases.append(phase)
            pod_ip = pod.status.pod_ip if pod.status else None
            if phase == "Running" and pod_ip:
                return pod_ip, "Running"
        return None, f"backup agent pod phase(s): {', '.join(sorted(phases))}"
