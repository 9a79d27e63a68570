from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping
import os

_TRUE_VALUES = {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class VerificationConfig:
    namespace: str = "default"
    kubeconfig_path: str | None = None
    context: str | None = None
    in_cluster: bool = False
    cloud_provider: str = ""
    aws_test_enabled: bool = False
    parallel: bool = False
    max_parallel_scenarios: int = 4
    s3_bucket: str = ""
    aws_secret: str = ""
    s3_region: str | None = None
    s3_endpoint_url: str | None = None
    s3_prefix_template: str = "{namespace}/{cluster}/"
    cluster_size: int = 3
    cluster_name_prefix: str = "test-etcd-"
    create_timeout_seconds: int = 60
    backup_agent_timeout_seconds: int = 60
    backup_artifact_timeout_seconds: int = 60
    confirm_backup_artifact: bool = True
    settle_seconds: float = 5.0
    restore_base_timeout_seconds: int = 60
    restore_clone_extra_seconds: int = 60
    teardown_timeout_seconds: int = 60
    poll_interval_seconds: float = 5.0
    probe_timeout_seconds: float = 5.0
    etcd_gateway_prefix: str = "/v3"
    log_level: str = "INFO"
    log_json: bool = False

    def __post_init__(self) -> None:
        positive_fields = (
            "max_parallel_scenarios",
            "cluster_size",
            "create_timeout_seconds",
            "backup_agent_timeout_seconds",
            "backup_artifact_timeout_seconds",
            "restore_base_timeout_seconds",
            "restore_clone_extra_seconds",
            "teardown_timeout_seconds",
            "poll_interval_seconds",
            "probe_timeout_seconds",
        )
        for field_name in positive_fields:
            if getattr(self, field_name) <= 0:
                raise ValueError(f"{field_name} must be positive")
        if self.settle_seconds < 0:
            raise ValueError("settle_seconds must not be negative")
        if not self.namespace.strip():
            raise ValueError("namespace must not be empty")
        if not self.etcd_gateway_prefix.strip("/ "):
            raise ValueError("etcd_gateway_prefix must name a gateway path")

    @property
    def pod_ip_reachable(self) -> bool:
        # Pod IPs are not routable from the test runner on AWS-hosted clusters.
        return self.cloud_provider.strip().lower() != "aws"


def load_config(environ: Mapping[str, str] | None = None) -> VerificationConfig:
    env = os.environ if environ is None else environ
    defaults = VerificationConfig()
    return VerificationConfig(
        namespace=env.get("ERV_NAMESPACE", defaults.namespace),
        kubeconfig_path=_optional(env.get("ERV_KUBECONFIG")),
        context=_optional(env.get("ERV_KUBE_CONTEXT")),
        in_cluster=_flag(env.get("ERV_IN_CLUSTER")),
        cloud_provider=env.get("ERV_CLOUD_PROVIDER", defaults.cloud_provider).strip(),
        aws_test_enabled=_flag(env.get("ERV_AWS_TEST_ENABLED")),
        parallel=_flag(env.get("ERV_PARALLEL_TEST")),
        max_parallel_scenarios=_int(env, "ERV_MAX_PARALLEL_SCENARIOS", defaults.max_parallel_scenarios),
        s3_bucket=env.get("ERV_S3_BUCKET", defaults.s3_bucket).strip(),
        aws_secret=env.get("ERV_AWS_SECRET", defaults.aws_secret).strip(),
        s3_region=_optional(env.get("ERV_S3_REGION")),
        s3_endpoint_url=_optional(env.get("ERV_S3_ENDPOINT_URL")),
        s3_prefix_template=env.get("ERV_S3_PREFIX_TEMPLATE", defaults.s3_prefix_template),
        cluster_size=_int(env, "ERV_CLUSTER_SIZE", defaults.cluster_size),
        cluster_name_prefix=env.get("ERV_CLUSTER_NAME_PREFIX", defaults.cluster_name_prefix),
        create_timeout_seconds=_int(env, "ERV_CREATE_TIMEOUT_SECONDS", defaults.create_timeout_seconds),
        backup_agent_timeout_seconds=_int(
            env, "ERV_BACKUP_AGENT_TIMEOUT_SECONDS", defaults.backup_agent_timeout_seconds
        ),
        backup_artifact_timeout_seconds=_int(
            env, "ERV_BACKUP_ARTIFACT_TIMEOUT_SECONDS", defaults.backup_artifact_timeout_seconds
        ),
        confirm_backup_artifact=_flag(env.get("ERV_CONFIRM_BACKUP_ARTIFACT"), default=True),
        settle_seconds=_float(env, "ERV_SETTLE_SECONDS", defaults.settle_seconds),
        restore_base_timeout_seconds=_int(
            env, "ERV_RESTORE_BASE_TIMEOUT_SECONDS", defaults.restore_base_timeout_seconds
        ),
        restore_clone_extra_seconds=_int(
            env, "ERV_RESTORE_CLONE_EXTRA_SECONDS", defaults.restore_clone_extra_seconds
        ),
        teardown_timeout_seconds=_int(env, "ERV_TEARDOWN_TIMEOUT_SECONDS", defaults.teardown_timeout_seconds),
        poll_interval_seconds=_float(env, "ERV_POLL_INTERVAL_SECONDS", defaults.poll_interval_seconds),
        probe_timeout_seconds=_float(env, "ERV_PROBE_TIMEOUT_SECONDS", defaults.probe_timeout_seconds),
        etcd_gateway_prefix=env.get("ERV_ETCD_GATEWAY_PREFIX", "").strip() or defaults.etcd_gateway_prefix,
        log_level=env.get("ERV_LOG_LEVEL", defaults.log_level).strip().upper() or defaults.log_level,
        log_json=_flag(env.get("ERV_LOG_JSON")),
    )


def _flag(value: str | None, *, default: bool = False) -> bool:
    if value is None or not value.strip():
        return default
    return value.strip().lower() in _TRUE_VALUES


def _optional(value: str | None) -> str | None:
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None


def _int(env: Mapping[str, str], key: str, default: int) -> int:
    raw = env.get(key)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as error:
        raise ValueError(f"{key} must be an integer, got {raw!r}") from error


def _float(env: Mapping[str, str], key: str, default: float) -> float:
    raw = env.get(key)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError as error:
        raise ValueError(f"{key} must be a number, got {raw!r}") from error
