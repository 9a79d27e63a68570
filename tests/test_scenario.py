from __future__ import annotations

from dataclasses import replace
from unittest.mock import Mock

import pytest

from etcd_restore_verifier.config import VerificationConfig
from etcd_restore_verifier.errors import ConvergenceTimeout, DataMismatch, TeardownVerificationError
from etcd_restore_verifier.k8s import KubernetesClients
from etcd_restore_verifier.lifecycle import ClusterLease, ClusterLifecycleController
from etcd_restore_verifier.models import BackupStorageType, MemberEndpoint, S3Scope
from etcd_restore_verifier.restore import RestoreOrchestrator
from etcd_restore_verifier.scenario import (
    RestoreScenario,
    ScenarioRunner,
    backup_policy_for,
    build_scenario_matrix,
    build_scenario_runner,
    skip_reason,
)

PV_SAME_NAME = RestoreScenario("pv/same-name", BackupStorageType.PERSISTENT_VOLUME, needs_clone=False)
PV_CLONE = RestoreScenario("pv/different-name", BackupStorageType.PERSISTENT_VOLUME, needs_clone=True)


class _RecordingLifecycle(ClusterLifecycleController):
    """Keeps the real lease handling but records API traffic instead of sending it."""

    def __init__(self, events: list[tuple], *, generated_names: list[str]) -> None:
        super().__init__(clients=Mock(), namespace="e2e", poll_interval_seconds=1)
        self.events = events
        self.generated_names = iter(generated_names)
        self.descriptors = []
        self.await_size_failures: dict[str, Exception] = {}

    def provision(self, descriptor) -> str:
        name = descriptor.name or next(self.generated_names)
        self.descriptors.append(descriptor)
        self.events.append(("provision", name))
        return name

    def delete(self, name: str) -> None:
        self.events.append(("delete", name))

    def await_size(self, name: str, target_count: int, timeout_seconds: float) -> list[MemberEndpoint]:
        self.events.append(("await_size", name, timeout_seconds))
        if name in self.await_size_failures:
            raise self.await_size_failures[name]
        return [
            MemberEndpoint(name=f"{name}-{index}", pod_ip=f"10.0.0.{index}", client_url=f"http://10.0.0.{index}:2379")
            for index in range(1, target_count + 1)
        ]


def _runner(
    *,
    config: VerificationConfig | None = None,
    generated_names: list[str] | None = None,
) -> tuple[ScenarioRunner, _RecordingLifecycle, list[tuple], Mock]:
    events: list[tuple] = []
    lifecycle = _RecordingLifecycle(events, generated_names=generated_names or ["test-etcd-abcde", "test-etcd-fghij"])

    probe = Mock()
    probe.seed.side_effect = lambda endpoint, *, cluster_name: events.append(("seed", cluster_name))
    probe.verify.side_effect = lambda endpoint, *, cluster_name: events.append(("verify", cluster_name))

    backup = Mock()
    backup.await_backup_agent_ready.side_effect = lambda name, timeout: events.append(("agent_ready", name))
    backup.trigger_backup.side_effect = lambda name: events.append(("backup", name))

    def recent_backup(name: str) -> str:
        events.append(("recent_backup", name))
        return "2026-10-19T10:00:00Z@rev4"

    backup.recent_backup.side_effect = recent_backup
    backup.await_backup_artifact.side_effect = lambda name, store, timeout, *, previous_backup: events.append(
        ("artifact", name, previous_backup)
    )

    def delete_and_verify(lease: ClusterLease, policy, store) -> None:
        events.append(("teardown", lease.name, policy.cleanup_backups_on_cluster_delete))
        lease.released = True

    teardown = Mock()
    teardown.delete_and_verify.side_effect = delete_and_verify

    store_factory = Mock(return_value=Mock(kind="persistent-volume"))
    runner = ScenarioRunner(
        config=config or VerificationConfig(settle_seconds=0),
        lifecycle=lifecycle,
        probe=probe,
        backup=backup,
        restore=RestoreOrchestrator(lifecycle=lifecycle, base_timeout_seconds=60, clone_extra_seconds=60),
        teardown=teardown,
        store_factory=store_factory,
    )
    return runner, lifecycle, events, probe


@pytest.fixture(autouse=True)
def _no_sleep(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("etcd_restore_verifier.scenario.time.sleep", lambda _: None)


def test_build_scenario_matrix_covers_storage_clone_and_scope_combinations() -> None:
    scenarios = build_scenario_matrix()

    assert [scenario.name for scenario in scenarios] == [
        "pv/same-name",
        "pv/different-name",
        "s3/same-name/per-cluster",
        "s3/same-name/operator-wide",
        "s3/different-name/per-cluster",
        "s3/different-name/operator-wide",
    ]
    assert all(scenario.s3_scope is None for scenario in scenarios[:2])
    assert {scenario.s3_scope for scenario in scenarios[2:]} == {S3Scope.PER_CLUSTER, S3Scope.OPERATOR_WIDE}


def test_skip_reason_with_aws_provider_skips_every_scenario() -> None:
    config = VerificationConfig(cloud_provider="aws", aws_test_enabled=True, s3_bucket="b", aws_secret="s")

    assert all(skip_reason(scenario, config) for scenario in build_scenario_matrix())


def test_skip_reason_with_s3_disabled_skips_only_s3_scenarios() -> None:
    reasons = {scenario.name: skip_reason(scenario, VerificationConfig()) for scenario in build_scenario_matrix()}

    assert reasons["pv/same-name"] is None
    assert reasons["pv/different-name"] is None
    assert "ERV_AWS_TEST_ENABLED" in reasons["s3/same-name/operator-wide"]


def test_skip_reason_with_per_cluster_scope_requires_aws_secret() -> None:
    config = VerificationConfig(aws_test_enabled=True, s3_bucket="etcd-backups")
    per_cluster, operator_wide = build_scenario_matrix()[2:4]

    assert "ERV_AWS_SECRET" in skip_reason(per_cluster, config)
    assert skip_reason(operator_wide, config) is None


def test_backup_policy_for_per_cluster_s3_uses_configured_bucket_and_secret() -> None:
    config = VerificationConfig(aws_test_enabled=True, s3_bucket="etcd-backups", aws_secret="aws-creds")

    policy = backup_policy_for(build_scenario_matrix()[2], config)

    assert policy.storage_type is BackupStorageType.S3
    assert policy.s3_bucket == "etcd-backups"
    assert policy.aws_secret == "aws-creds"


def test_execute_with_same_name_restore_runs_steps_in_order() -> None:
    runner, lifecycle, events, _ = _runner()

    restored_name = runner.execute(PV_SAME_NAME)

    assert restored_name == "test-etcd-abcde"
    assert events == [
        ("provision", "test-etcd-abcde"),
        ("await_size", "test-etcd-abcde", 60),
        ("seed", "test-etcd-abcde"),
        ("agent_ready", "test-etcd-abcde"),
        ("recent_backup", "test-etcd-abcde"),
        ("backup", "test-etcd-abcde"),
        ("artifact", "test-etcd-abcde", "2026-10-19T10:00:00Z@rev4"),
        ("teardown", "test-etcd-abcde", False),
        ("provision", "test-etcd-abcde"),
        ("await_size", "test-etcd-abcde", 60),
        ("verify", "test-etcd-abcde"),
        ("teardown", "test-etcd-abcde", True),
    ]
    restored = lifecycle.descriptors[1]
    assert restored.generate_name is None
    assert restored.restore.backup_cluster_name == "test-etcd-abcde"


def test_execute_with_clone_restores_under_new_name_with_longer_wait() -> None:
    runner, lifecycle, events, _ = _runner()

    restored_name = runner.execute(PV_CLONE)

    assert restored_name == "test-etcd-fghij"
    assert ("await_size", "test-etcd-fghij", 120) in events
    assert events[-1] == ("teardown", "test-etcd-fghij", True)
    restored = lifecycle.descriptors[1]
    assert restored.generate_name == "test-etcd-"
    assert restored.restore.backup_cluster_name == "test-etcd-abcde"


def test_execute_waits_settle_period_between_source_teardown_and_restore(monkeypatch: pytest.MonkeyPatch) -> None:
    runner, _, events, _ = _runner(config=VerificationConfig())
    monkeypatch.setattr("etcd_restore_verifier.scenario.time.sleep", lambda seconds: events.append(("sleep", seconds)))

    runner.execute(PV_SAME_NAME)

    settle = events.index(("sleep", 5.0))
    assert events[settle - 1] == ("teardown", "test-etcd-abcde", False)
    assert events[settle + 1] == ("provision", "test-etcd-abcde")
    assert events.count(("sleep", 5.0)) == 1


def test_execute_without_artifact_confirmation_skips_artifact_poll() -> None:
    runner, _, events, _ = _runner(config=VerificationConfig(settle_seconds=0, confirm_backup_artifact=False))

    runner.execute(PV_SAME_NAME)

    assert not any(event[0] in {"recent_backup", "artifact"} for event in events)


def test_run_with_passing_scenario_returns_passed_result() -> None:
    runner, _, _, _ = _runner()

    result = runner.run(PV_CLONE)

    assert result.passed is True
    assert result.cluster_name == "test-etcd-fghij"
    assert result.data_matched is True
    assert result.phase is None


def test_run_with_source_convergence_timeout_fails_and_deletes_source() -> None:
    runner, lifecycle, events, _ = _runner()
    lifecycle.await_size_failures["test-etcd-abcde"] = ConvergenceTimeout(
        phase="await-size",
        cluster_name="test-etcd-abcde",
        reason="cluster did not reach 3 ready member(s) within 60s",
    )

    result = runner.run(PV_SAME_NAME)

    assert result.status == "failed"
    assert result.phase == "await-size"
    assert result.cluster_name == "test-etcd-abcde"
    assert result.data_matched is None
    assert events[-1] == ("delete", "test-etcd-abcde")
    assert not any(event[0] == "seed" for event in events)


def test_run_with_data_mismatch_reports_unmatched_data_and_tears_down_restored_cluster() -> None:
    runner, _, events, probe = _runner()

    def verify(endpoint, *, cluster_name):
        raise DataMismatch(phase="verify", cluster_name=cluster_name, expected="bar", observed=None)

    probe.verify.side_effect = verify

    result = runner.run(PV_CLONE)

    assert result.status == "failed"
    assert result.phase == "verify"
    assert result.data_matched is False
    assert "expected 'bar', observed <absent>" in result.message
    assert events[-1] == ("teardown", "test-etcd-fghij", True)


def test_run_with_teardown_failure_after_failed_verify_attaches_cleanup_note() -> None:
    runner, _, _, probe = _runner()
    probe.verify.side_effect = DataMismatch(
        phase="verify",
        cluster_name="test-etcd-fghij",
        expected="bar",
        observed="baz",
    )
    original_teardown = runner.teardown.delete_and_verify.side_effect

    def delete_and_verify(lease, policy, store):
        original_teardown(lease, policy, store)
        if policy.cleanup_backups_on_cluster_delete:
            raise TeardownVerificationError(phase="teardown", cluster_name=lease.name, reason="backups survived")

    runner.teardown.delete_and_verify.side_effect = delete_and_verify

    result = runner.run(PV_CLONE)

    assert result.phase == "verify"
    assert "cleanup of cluster 'test-etcd-fghij' failed" in result.message
    assert "backups survived" in result.message


def test_run_with_unexpected_error_reports_unexpected_phase() -> None:
    runner, _, _, probe = _runner()
    probe.seed.side_effect = KeyError("kvs")

    result = runner.run(PV_SAME_NAME)

    assert result.status == "failed"
    assert result.phase == "unexpected"
    assert result.message.startswith("unexpected failure:")


def test_run_with_skipped_scenario_does_not_touch_cluster() -> None:
    runner, _, events, _ = _runner()
    s3_scenario = build_scenario_matrix()[3]

    result = runner.run(s3_scenario)

    assert result.status == "skipped"
    assert "ERV_AWS_TEST_ENABLED" in result.message
    assert events == []


def test_run_many_in_parallel_preserves_scenario_order() -> None:
    config = replace(VerificationConfig(settle_seconds=0), parallel=True, max_parallel_scenarios=2)
    runner, _, _, _ = _runner(config=config)
    runner.run = Mock(side_effect=lambda scenario: scenario.name)
    scenarios = build_scenario_matrix()

    results = runner.run_many(scenarios)

    assert results == [scenario.name for scenario in scenarios]


def test_run_many_sequentially_runs_each_scenario_once() -> None:
    runner, _, _, _ = _runner()
    runner.run = Mock(side_effect=lambda scenario: scenario.name)

    results = runner.run_many([PV_SAME_NAME, PV_CLONE])

    assert results == ["pv/same-name", "pv/different-name"]
    assert runner.run.call_count == 2


def test_close_releases_http_clients() -> None:
    runner, _, _, probe = _runner()

    runner.close()

    probe.close.assert_called_once()
    runner.backup.close.assert_called_once()


def test_build_scenario_runner_with_gateway_prefix_configures_probe() -> None:
    clients = KubernetesClients(api_client=Mock(), core_api=Mock(), apps_api=Mock(), custom_api=Mock())

    runner = build_scenario_runner(VerificationConfig(etcd_gateway_prefix="/v3beta"), clients=clients)

    try:
        assert runner.probe.gateway_prefix == "/v3beta"
    finally:
        runner.close()
