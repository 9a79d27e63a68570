from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import os
import tempfile

from kubernetes import client, config
from kubernetes.client import ApiException


@dataclass(frozen=True)
class KubernetesClients:
    api_client: client.ApiClient
    core_api: client.CoreV1Api
    apps_api: client.AppsV1Api
    custom_api: client.CustomObjectsApi


class KubernetesAuthenticationError(RuntimeError):
    """Raised when Kubernetes authentication configuration fails."""


def persist_kubeconfig_content(kubeconfig_content: str) -> str:
    with tempfile.NamedTemporaryFile(mode="w", suffix=".yaml", delete=False) as handle:
        handle.write(kubeconfig_content)
        path = Path(handle.name)
    os.chmod(path, 0o600)
    return str(path)


def load_kubernetes_clients(
    *,
    kubeconfig_path: str | None,
    context: str | None,
    in_cluster: bool,
) -> KubernetesClients:
    expanded = _expand_kubeconfig_path(kubeconfig_path)
    try:
        if in_cluster:
            config.load_incluster_config()
        else:
            config.load_kube_config(config_file=expanded, context=context)
    except Exception as error:  # pylint: disable=broad-except
        raise KubernetesAuthenticationError(
            _format_authentication_error(
                in_cluster=in_cluster,
                kubeconfig_path=expanded,
                context=context,
                error=error,
            )
        ) from error

    api_client = client.ApiClient()
    return KubernetesClients(
        api_client=api_client,
        core_api=client.CoreV1Api(api_client),
        apps_api=client.AppsV1Api(api_client),
        custom_api=client.CustomObjectsApi(api_client),
    )


def list_context_names(kubeconfig_path: str | None = None) -> list[str]:
    expanded = _expand_kubeconfig_path(kubeconfig_path)
    try:
        contexts, _ = config.list_kube_config_contexts(config_file=expanded)
    except Exception as error:  # pylint: disable=broad-except
        reason = str(error).strip() or error.__class__.__name__
        source = expanded or "default kubeconfig search path"
        raise KubernetesAuthenticationError(
            f"Unable to list kubeconfig contexts from '{source}': {reason}. "
            "Verify the kubeconfig path is readable and valid."
        ) from error
    if not contexts:
        return []
    return sorted(context["name"] for context in contexts)


def is_not_found(error: Exception) -> bool:
    return isinstance(error, ApiException) and error.status == 404


def format_api_exception_message(*, operation: str, error: ApiException) -> str:
    status = error.status if error.status is not None else "unknown"
    reason = error.reason or "no reason provided"
    message = f"Kubernetes API call failed while trying to {operation}: API status {status} ({reason})"
    body = _api_exception_body(error)
    return f"{message}: {body}" if body else message


def error_message(error: Exception) -> str:
    if isinstance(error, ApiException):
        status = error.status if error.status is not None else "unknown"
        return f"API status {status} ({error.reason or 'no reason provided'})"
    message = str(error).strip()
    return message or error.__class__.__name__


def _api_exception_body(error: ApiException) -> str:
    body = error.body
    if isinstance(body, bytes):
        body = body.decode("utf-8", errors="replace")
    if not isinstance(body, str):
        return ""
    return body.strip()[:300]


def _expand_kubeconfig_path(kubeconfig_path: str | None) -> str | None:
    if kubeconfig_path is None:
        return None
    stripped = kubeconfig_path.strip()
    if not stripped:
        return None
    return str(Path(stripped).expanduser())


def _format_authentication_error(
    *,
    in_cluster: bool,
    kubeconfig_path: str | None,
    context: str | None,
    error: Exception,
) -> str:
    reason = str(error).strip() or error.__class__.__name__
    if in_cluster:
        return (
            "Kubernetes authentication setup failed while loading in-cluster service account credentials: "
            f"{reason}. Ensure the pod has a mounted service account token and Kubernetes service host "
            "environment variables."
        )

    kubeconfig_source = kubeconfig_path or "default kubeconfig search path"
    context_message = f" with context '{context}'" if context else ""
    return (
        "Kubernetes authentication setup failed while loading kubeconfig "
        f"from '{kubeconfig_source}'{context_message}: {reason}. "
        "Verify the kubeconfig path and context are valid."
    )
