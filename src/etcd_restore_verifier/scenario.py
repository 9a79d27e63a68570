from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Callable
import time

import structlog

from .backup import BackupOrchestrator
from .config import VerificationConfig
from .descriptor import (
    new_cluster,
    new_operator_s3_backup_policy,
    new_pv_backup_policy,
    new_s3_backup_policy,
    with_backup,
)
from .errors import DataMismatch, VerificationError
from .k8s import KubernetesClients, error_message
from .lifecycle import ClusterLease, ClusterLifecycleController
from .models import BackupPolicy, BackupStorageType, S3Scope, ScenarioResult
from .probe import DataProbe
from .restore import RestoreOrchestrator, build_restore_descriptor
from .storage import BackupStore, select_backup_store
from .teardown import TeardownVerifier

logger = structlog.get_logger(__name__)

StoreFactory = Callable[[BackupStorageType], BackupStore]


@dataclass(frozen=True)
class RestoreScenario:
    name: str
    storage_type: BackupStorageType
    needs_clone: bool
    s3_scope: S3Scope | None = None


def build_scenario_matrix() -> list[RestoreScenario]:
    scenarios = [
        RestoreScenario("pv/same-name", BackupStorageType.PERSISTENT_VOLUME, needs_clone=False),
        RestoreScenario("pv/different-name", BackupStorageType.PERSISTENT_VOLUME, needs_clone=True),
    ]
    for needs_clone, label in ((False, "same-name"), (True, "different-name")):
        for scope, scope_label in ((S3Scope.PER_CLUSTER, "per-cluster"), (S3Scope.OPERATOR_WIDE, "operator-wide")):
            scenarios.append(
                RestoreScenario(f"s3/{label}/{scope_label}", BackupStorageType.S3, needs_clone, s3_scope=scope)
            )
    return scenarios


def skip_reason(scenario: RestoreScenario, config: VerificationConfig) -> str | None:
    if not config.pod_ip_reachable:
        return f"pod IPs are not reachable from the runner on cloud provider '{config.cloud_provider}'"
    if scenario.storage_type.resolved() is BackupStorageType.S3:
        if not config.aws_test_enabled:
            return "S3 scenarios are disabled; set ERV_AWS_TEST_ENABLED=true to run them"
        if not config.s3_bucket:
            return "S3 scenarios need ERV_S3_BUCKET to verify backup objects"
        if scenario.s3_scope is S3Scope.PER_CLUSTER and not config.aws_secret:
            return "per-cluster S3 scenarios need ERV_AWS_SECRET"
    return None


def backup_policy_for(scenario: RestoreScenario, config: VerificationConfig) -> BackupPolicy:
    if scenario.storage_type.resolved() is BackupStorageType.PERSISTENT_VOLUME:
        return new_pv_backup_policy()
    if scenario.s3_scope is S3Scope.PER_CLUSTER:
        return new_s3_backup_policy(bucket=config.s3_bucket, aws_secret=config.aws_secret)
    return new_operator_s3_backup_policy()


class ScenarioRunner:
    def __init__(
        self,
        *,
        config: VerificationConfig,
        lifecycle: ClusterLifecycleController,
        probe: DataProbe,
        backup: BackupOrchestrator,
        restore: RestoreOrchestrator,
        teardown: TeardownVerifier,
        store_factory: StoreFactory,
    ) -> None:
        self.config = config
        self.lifecycle = lifecycle
        self.probe = probe
        self.backup = backup
        self.restore = restore
        self.teardown = teardown
        self.store_factory = store_factory

    def execute(self, scenario: RestoreScenario) -> str:
        """Run one scenario end to end and return the restored cluster name.

        Verification errors propagate after every provisioned cluster has been
        deleted.
        """
        config = self.config
        policy = backup_policy_for(scenario, config)
        store = self.store_factory(policy.storage_type)
        original = with_backup(new_cluster(config.cluster_name_prefix, config.cluster_size), policy)
        log = logger.bind(scenario=scenario.name)

        with self.lifecycle.provisioned(original) as source:
            endpoints = self.lifecycle.await_size(source.name, original.size, config.create_timeout_seconds)
            self.probe.seed(endpoints[0], cluster_name=source.name)
            self.backup.await_backup_agent_ready(source.name, config.backup_agent_timeout_seconds)
            previous_backup = None
            if config.confirm_backup_artifact:
                previous_backup = self.backup.recent_backup(source.name)
            self.backup.trigger_backup(source.name)
            if config.confirm_backup_artifact:
                self.backup.await_backup_artifact(
                    source.name,
                    store,
                    config.backup_artifact_timeout_seconds,
                    previous_backup=previous_backup,
                )
            self.teardown.delete_and_verify(source, policy, store)
        log.info("source_cluster_removed", cluster=source.name)

        # Let the API server finish its own deletion bookkeeping.
        time.sleep(config.settle_seconds)

        restore_descriptor = build_restore_descriptor(
            original,
            needs_clone=scenario.needs_clone,
            backup_cluster_name=source.name,
            backup_policy=policy,
        )

        def release(restored: ClusterLease) -> None:
            self.teardown.delete_and_verify(restored, restore_descriptor.backup, store)

        with self.restore.execute(
            restore_descriptor,
            needs_clone=scenario.needs_clone,
            release=release,
        ) as (restored, restored_endpoints):
            self.probe.verify(restored_endpoints[0], cluster_name=restored.name)
            restored_name = restored.name
        log.info("scenario_passed", source=source.name, restored=restored_name)
        return restored_name

    def run(self, scenario: RestoreScenario) -> ScenarioResult:
        started_at = _utc_now_iso()
        reason = skip_reason(scenario, self.config)
        if reason:
            logger.info("scenario_skipped", scenario=scenario.name, reason=reason)
            return ScenarioResult(
                scenario=scenario.name,
                status="skipped",
                started_at=started_at,
                finished_at=_utc_now_iso(),
                message=reason,
            )

        try:
            restored_name = self.execute(scenario)
        except VerificationError as error:
            logger.error("scenario_failed", scenario=scenario.name, phase=error.phase, error=str(error))
            return ScenarioResult(
                scenario=scenario.name,
                status="failed",
                started_at=started_at,
                finished_at=_utc_now_iso(),
                cluster_name=error.cluster_name,
                phase=error.phase,
                data_matched=False if isinstance(error, DataMismatch) else None,
                message=_message_with_notes(error),
            )
        except Exception as error:  # pylint: disable=broad-except
            logger.error("scenario_failed", scenario=scenario.name, phase="unexpected", error=error_message(error))
            return ScenarioResult(
                scenario=scenario.name,
                status="failed",
                started_at=started_at,
                finished_at=_utc_now_iso(),
                phase="unexpected",
                message=f"unexpected failure: {_message_with_notes(error)}",
            )

        return ScenarioResult(
            scenario=scenario.name,
            status="passed",
            started_at=started_at,
            finished_at=_utc_now_iso(),
            cluster_name=restored_name,
            data_matched=True,
        )

    def run_many(self, scenarios: list[RestoreScenario]) -> list[ScenarioResult]:
        if not self.config.parallel or len(scenarios) <= 1:
            return [self.run(scenario) for scenario in scenarios]

        workers = min(self.config.max_parallel_scenarios, len(scenarios))
        logger.info("scenarios_running_in_parallel", count=len(scenarios), workers=workers)
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="restore-scenario") as executor:
            return list(executor.map(self.run, scenarios))

    def close(self) -> None:
        self.probe.close()
        self.backup.close()


def build_scenario_runner(
    config: VerificationConfig,
    *,
    clients: KubernetesClients,
    s3_client: Any = None,
) -> ScenarioRunner:
    lifecycle = ClusterLifecycleController(
        clients=clients,
        namespace=config.namespace,
        poll_interval_seconds=config.poll_interval_seconds,
    )

    def store_factory(storage_type: BackupStorageType) -> BackupStore:
        return select_backup_store(
            storage_type,
            clients=clients,
            namespace=config.namespace,
            s3_client=s3_client,
            s3_bucket=config.s3_bucket,
            s3_prefix_template=config.s3_prefix_template,
        )

    return ScenarioRunner(
        config=config,
        lifecycle=lifecycle,
        probe=DataProbe(
            gateway_prefix=config.etcd_gateway_prefix,
            timeout_seconds=config.probe_timeout_seconds,
        ),
        backup=BackupOrchestrator(
            clients=clients,
            namespace=config.namespace,
            poll_interval_seconds=config.poll_interval_seconds,
        ),
        restore=RestoreOrchestrator(
            lifecycle=lifecycle,
            base_timeout_seconds=config.restore_base_timeout_seconds,
            clone_extra_seconds=config.restore_clone_extra_seconds,
        ),
        teardown=TeardownVerifier(
            lifecycle=lifecycle,
            clients=clients,
            namespace=config.namespace,
            timeout_seconds=config.teardown_timeout_seconds,
            poll_interval_seconds=config.poll_interval_seconds,
        ),
        store_factory=store_factory,
    )


def _message_with_notes(error: BaseException) -> str:
    message = error_message(error) if isinstance(error, Exception) else str(error)
    notes = getattr(error, "__notes__", None) or []
    return "; ".join([message, *notes])


def _utc_now_iso() -> str:
    return datetime.now(tz=UTC).replace(microsecond=0).isoformat()
