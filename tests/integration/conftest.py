from __future__ import annotations

from typing import Callable, Iterator
import os

from kubernetes import client
from kubernetes.client import ApiException
import pytest

from etcd_restore_verifier.config import VerificationConfig, load_config
from etcd_restore_verifier.descriptor import ETCD_CLUSTER_GROUP, ETCD_CLUSTER_PLURAL
from etcd_restore_verifier.k8s import (
    KubernetesAuthenticationError,
    KubernetesClients,
    error_message,
    load_kubernetes_clients,
)
from etcd_restore_verifier.logs import configure_logging
from etcd_restore_verifier.scenario import ScenarioRunner, build_scenario_runner
from etcd_restore_verifier.storage import build_s3_client

_ENV_RUN_FLAG = "ERV_RUN_E2E"
_TRUE_VALUES = {"1", "true", "yes", "on"}


def _flag_enabled(value: str | None) -> bool:
    if value is None:
        return False
    return value.strip().lower() in _TRUE_VALUES


def _verify_operator_installed(clients: KubernetesClients) -> None:
    crd_name = f"{ETCD_CLUSTER_PLURAL}.{ETCD_CLUSTER_GROUP}"
    try:
        client.ApiextensionsV1Api(clients.api_client).read_custom_resource_definition(crd_name)
    except ApiException as error:
        pytest.skip(
            f"etcd operator CRD {crd_name} is not available on the target cluster: {error_message(error)}.",
            allow_module_level=True,
        )


def _collect_diagnostics(clients: KubernetesClients, namespace: str) -> str:
    sections: list[str] = []
    try:
        pods = clients.core_api.list_namespaced_pod(namespace=namespace).items
        rendered = [f"{pod.metadata.name} {pod.status.phase} {pod.status.pod_ip or '<no ip>'}" for pod in pods]
        sections.append("[pods]\n" + ("\n".join(rendered) or "<none>"))

        events = clients.core_api.list_namespaced_event(namespace=namespace).items
        recent = [f"{event.reason}: {event.message}" for event in events[-20:]]
        sections.append("[events]\n" + ("\n".join(recent) or "<none>"))
    except ApiException as error:
        sections.append(f"[diagnostics unavailable]\n{error_message(error)}")
    return "\n\n".join(sections)


@pytest.fixture(scope="session")
def e2e_config() -> VerificationConfig:
    if not _flag_enabled(os.getenv(_ENV_RUN_FLAG)):
        pytest.skip(
            "etcd restore e2e tests are disabled by default. "
            f"Set {_ENV_RUN_FLAG}=1 to run them against a cluster with the etcd operator installed.",
            allow_module_level=True,
        )
    config = load_config()
    configure_logging(config.log_level, json_output=config.log_json)
    return config


@pytest.fixture(scope="session")
def e2e_clients(e2e_config: VerificationConfig) -> Iterator[KubernetesClients]:
    try:
        clients = load_kubernetes_clients(
            kubeconfig_path=e2e_config.kubeconfig_path,
            context=e2e_config.context,
            in_cluster=e2e_config.in_cluster,
        )
    except KubernetesAuthenticationError as error:
        pytest.skip(f"Kubernetes is not reachable for e2e tests: {error}", allow_module_level=True)

    try:
        _verify_operator_installed(clients)
        yield clients
    finally:
        clients.api_client.close()


@pytest.fixture
def diagnostics(e2e_config: VerificationConfig, e2e_clients: KubernetesClients) -> Callable[[], str]:
    return lambda: _collect_diagnostics(e2e_clients, e2e_config.namespace)


@pytest.fixture(scope="session")
def scenario_runner(e2e_config: VerificationConfig, e2e_clients: KubernetesClients) -> Iterator[ScenarioRunner]:
    s3_client = None
    if e2e_config.aws_test_enabled and e2e_config.s3_bucket:
        s3_client = build_s3_client(region=e2e_config.s3_region, endpoint_url=e2e_config.s3_endpoint_url)

    runner = build_scenario_runner(e2e_config, clients=e2e_clients, s3_client=s3_client)
    try:
        yield runner
    finally:
        runner.close()
