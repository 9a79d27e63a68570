from __future__ import annotations

from dataclasses import replace
from pathlib import Path
import os

import streamlit as st
import yaml

from etcd_restore_verifier.config import VerificationConfig, load_config
from etcd_restore_verifier.k8s import (
    KubernetesAuthenticationError,
    list_context_names,
    load_kubernetes_clients,
    persist_kubeconfig_content,
)
from etcd_restore_verifier.logs import configure_logging
from etcd_restore_verifier.models import ScenarioResult
from etcd_restore_verifier.restore import calculate_restore_wait_time
from etcd_restore_verifier.scenario import (
    RestoreScenario,
    build_scenario_matrix,
    build_scenario_runner,
    skip_reason,
)
from etcd_restore_verifier.storage import build_s3_client

_AUTH_MODE_USE_KUBECONFIG_PATH = "Use kubeconfig path"
_AUTH_MODE_PASTE_KUBECONFIG = "Paste kubeconfig"
_AUTH_MODE_IN_CLUSTER = "In-cluster service account"

_EXECUTION_SEQUENTIAL_LABEL = "Sequential"
_EXECUTION_PARALLEL_LABEL = "Parallel"

_WORKFLOW_STATE_LABELS = {
    "done": "Done",
    "active": "Ready",
    "blocked": "Waiting",
}

_PHASE_HINTS: dict[str, str] = {
    "provision": "Check that the EtcdCluster CRD is installed and RBAC allows creating etcdclusters.",
    "await-size": "Inspect operator logs and member pod events; slow image pulls may need a longer timeout.",
    "seed": "Confirm pod IPs are routable from this runner and port 2379 is reachable.",
    "backup-agent": "Inspect the backup sidecar deployment and its pod events.",
    "backup": "Check the backup sidecar logs for the rejected backup request.",
    "backup-artifact": "Verify the backup PVC or S3 bucket is writable by the backup sidecar.",
    "teardown": "Review cleanupBackupsOnClusterDelete handling and leftover PVCs or S3 objects.",
    "verify": "The restored data differs from the seeded data; inspect operator restore logs.",
    "unexpected": "Inspect application logs for the full error.",
}


def _initialize_state() -> None:
    defaults = {
        "connected": False,
        "clients": None,
        "last_results": [],
        "selected_scenarios": [],
    }
    for key, value in defaults.items():
        if key not in st.session_state:
            st.session_state[key] = value


def _build_scenario_rows(scenarios: list[RestoreScenario], config: VerificationConfig) -> list[dict[str, str]]:
    rows: list[dict[str, str]] = []
    for scenario in scenarios:
        reason = skip_reason(scenario, config)
        restore_timeout = calculate_restore_wait_time(
            scenario.needs_clone,
            base_seconds=config.restore_base_timeout_seconds,
            clone_extra_seconds=config.restore_clone_extra_seconds,
        )
        rows.append(
            {
                "scenario": scenario.name,
                "storage": scenario.storage_type.value or "Default",
                "s3_scope": scenario.s3_scope.value if scenario.s3_scope else "",
                "data_clone": "yes" if scenario.needs_clone else "no",
                "restore_timeout": f"{restore_timeout}s",
                "runnable": "no" if reason else "yes",
                "skip_reason": reason or "",
            }
        )
    return rows


def _actionable_next_step(result: ScenarioResult) -> str:
    if result.status == "passed":
        return "Restore verified: seeded data was read back from the restored cluster."
    if result.status == "skipped":
        return f"Skipped: {result.message}"

    message = result.message.strip() or "scenario failed without a message"
    hint = _PHASE_HINTS.get(result.phase or "", _PHASE_HINTS["unexpected"])
    return f"{message} | Next step: {hint}"


def _build_result_rows(results: list[ScenarioResult]) -> list[dict[str, str]]:
    rows: list[dict[str, str]] = []
    for result in results:
        data_matched = "" if result.data_matched is None else ("yes" if result.data_matched else "no")
        rows.append(
            {
                "scenario": result.scenario,
                "status": result.status,
                "cluster": result.cluster_name or "",
                "phase": result.phase or "",
                "data_matched": data_matched,
                "finished_at": result.finished_at,
                "actionable_message": _actionable_next_step(result),
            }
        )
    return rows


def _build_workflow_rows(*, connected: bool, selected_count: int, results_count: int) -> list[dict[str, str]]:
    connect_state = "done" if connected else "active"
    select_state = "done" if selected_count > 0 else ("active" if connected else "blocked")
    run_state = "done" if results_count > 0 else ("active" if selected_count > 0 else "blocked")
    review_state = "done" if results_count > 0 else "blocked"

    return [
        {
            "step": "1. Connect",
            "state": _WORKFLOW_STATE_LABELS[connect_state],
            "description": "Authenticate to the cluster running the etcd operator.",
        },
        {
            "step": "2. Select",
            "state": _WORKFLOW_STATE_LABELS[select_state],
            "description": "Choose restore scenarios from the matrix.",
        },
        {
            "step": "3. Run",
            "state": _WORKFLOW_STATE_LABELS[run_state],
            "description": "Provision, back up, tear down, restore, and verify each scenario.",
        },
        {
            "step": "4. Review",
            "state": _WORKFLOW_STATE_LABELS[review_state],
            "description": "Inspect pass/fail outcomes and follow-up hints.",
        },
    ]


def _validate_connection_inputs(*, auth_mode: str, kubeconfig_path_input: str, kubeconfig_text_input: str) -> str | None:
    if auth_mode == _AUTH_MODE_USE_KUBECONFIG_PATH:
        return _validate_kubeconfig_path_input(kubeconfig_path_input)

    if auth_mode == _AUTH_MODE_PASTE_KUBECONFIG:
        kubeconfig_text = kubeconfig_text_input.strip()
        if not kubeconfig_text:
            return "Paste kubeconfig content before connecting."
        return _validate_kubeconfig_content(
            kubeconfig_content=kubeconfig_text,
            source_label="Pasted kubeconfig",
        )

    if auth_mode == _AUTH_MODE_IN_CLUSTER and not _is_incluster_service_account_environment():
        return (
            "In-cluster service account mode requires Kubernetes pod environment variables and the "
            "service-account token mount."
        )

    return None


def _validate_run_settings(config: VerificationConfig, scenarios: list[RestoreScenario]) -> list[str]:
    errors: list[str] = []
    if not config.namespace.strip():
        errors.append("Namespace is required.")
    if any(scenario.s3_scope is not None for scenario in scenarios) and config.aws_test_enabled:
        if not config.s3_bucket:
            errors.append("S3 bucket is required to verify S3 backups.")
    return errors


def _default_auth_mode(config: VerificationConfig) -> str:
    if config.in_cluster or _is_incluster_service_account_environment():
        return _AUTH_MODE_IN_CLUSTER
    return _AUTH_MODE_USE_KUBECONFIG_PATH


def _is_incluster_service_account_environment() -> bool:
    return bool(
        os.getenv("KUBERNETES_SERVICE_HOST")
        and Path("/var/run/secrets/kubernetes.io/serviceaccount/token").exists()
    )


def _auth_mode_guidance(auth_mode: str) -> str:
    if auth_mode == _AUTH_MODE_IN_CLUSTER:
        return (
            "Uses ServiceAccount credentials from the running pod. Pod IPs of etcd members must be "
            "routable from this pod."
        )
    if auth_mode == _AUTH_MODE_USE_KUBECONFIG_PATH:
        return "Use for local runs against a test cluster. Provide a readable kubeconfig file path."
    return (
        "Use only for short-lived troubleshooting. Paste a full kubeconfig with apiVersion, clusters, "
        "contexts, and users."
    )


def _context_options(kubeconfig_path_input: str) -> list[str]:
    try:
        return list_context_names(kubeconfig_path_input)
    except KubernetesAuthenticationError:
        return []


def _validate_kubeconfig_path_input(kubeconfig_path_input: str) -> str | None:
    path_value = kubeconfig_path_input.strip()
    if not path_value:
        return "Kubeconfig path is required when using kubeconfig path authentication."

    expanded_path = Path(path_value).expanduser()
    if not expanded_path.exists():
        return f"Kubeconfig path does not exist: {expanded_path}"
    if not expanded_path.is_file():
        return f"Kubeconfig path must point to a file: {expanded_path}"

    try:
        kubeconfig_content = expanded_path.read_text(encoding="utf-8")
    except UnicodeDecodeError:
        return f"Kubeconfig path must reference a UTF-8 text file: {expanded_path}"
    except OSError as error:
        return f"Unable to read kubeconfig path {expanded_path}: {error}"

    return _validate_kubeconfig_content(
        kubeconfig_content=kubeconfig_content,
        source_label=f"Kubeconfig file '{expanded_path}'",
    )


def _validate_kubeconfig_content(*, kubeconfig_content: str, source_label: str) -> str | None:
    try:
        parsed = yaml.safe_load(kubeconfig_content)
    except yaml.YAMLError as error:
        return f"{source_label} must be valid YAML: {error.__class__.__name__}."

    if not isinstance(parsed, dict):
        return f"{source_label} must be a YAML mapping."

    required_fields = ("apiVersion", "clusters", "contexts", "users")
    missing_fields = [field for field in required_fields if field not in parsed]
    if missing_fields:
        missing_fields_csv = ", ".join(missing_fields)
        return f"{source_label} is missing required field(s): {missing_fields_csv}."

    for list_field in ("clusters", "contexts", "users"):
        values = parsed.get(list_field)
        if not isinstance(values, list) or not values:
            return f"{source_label} must include at least one '{list_field}' entry."

    return None


def main() -> None:
    st.set_page_config(page_title="etcd Restore Verifier", layout="wide")
    _initialize_state()

    base_config = load_config()
    configure_logging(base_config.log_level, json_output=base_config.log_json)

    st.title("etcd Restore Verifier")
    st.caption("Back up an etcd cluster, tear it down, restore it, and verify the data survived.")
    st.subheader("Workflow Status")
    st.dataframe(
        _build_workflow_rows(
            connected=bool(st.session_state.connected and st.session_state.clients is not None),
            selected_count=len(st.session_state.selected_scenarios),
            results_count=len(st.session_state.last_results),
        ),
        use_container_width=True,
        hide_index=True,
    )

    st.sidebar.header("Cluster Connection")
    auth_options = [_AUTH_MODE_USE_KUBECONFIG_PATH, _AUTH_MODE_PASTE_KUBECONFIG, _AUTH_MODE_IN_CLUSTER]
    auth_mode = st.sidebar.radio(
        "Authentication",
        options=auth_options,
        index=auth_options.index(_default_auth_mode(base_config)),
    )
    st.sidebar.caption(_auth_mode_guidance(auth_mode))

    kubeconfig_path_input = base_config.kubeconfig_path or "~/.kube/config"
    kubeconfig_text_input = ""
    context = ""
    if auth_mode == _AUTH_MODE_USE_KUBECONFIG_PATH:
        kubeconfig_path_input = st.sidebar.text_input("Kubeconfig path", value=kubeconfig_path_input)
        contexts = _context_options(kubeconfig_path_input)
        if contexts:
            default_index = contexts.index(base_config.context) if base_config.context in contexts else 0
            context = st.sidebar.selectbox("Kubernetes context", options=contexts, index=default_index)
    elif auth_mode == _AUTH_MODE_PASTE_KUBECONFIG:
        kubeconfig_text_input = st.sidebar.text_area("Kubeconfig content", height=220)
        context = st.sidebar.text_input("Kubernetes context (optional)", value="")

    st.sidebar.header("Run Settings")
    namespace = st.sidebar.text_input("Namespace", value=base_config.namespace)
    cloud_provider = st.sidebar.text_input(
        "Cloud provider",
        value=base_config.cloud_provider,
        help="Set to 'aws' when pod IPs are not routable from this runner; all scenarios are then skipped.",
    )
    aws_test_enabled = st.sidebar.checkbox("Run S3 scenarios", value=base_config.aws_test_enabled)
    s3_bucket = st.sidebar.text_input("S3 bucket", value=base_config.s3_bucket, disabled=not aws_test_enabled)
    aws_secret = st.sidebar.text_input(
        "AWS secret name (per-cluster policy)",
        value=base_config.aws_secret,
        disabled=not aws_test_enabled,
    )
    execution_label = st.sidebar.selectbox(
        "Execution mode",
        options=[_EXECUTION_SEQUENTIAL_LABEL, _EXECUTION_PARALLEL_LABEL],
        index=1 if base_config.parallel else 0,
        help="Parallel scenarios use distinct generated cluster names and share only API clients.",
    )
    max_workers = int(
        st.sidebar.number_input(
            "Max parallel scenarios",
            min_value=1,
            max_value=16,
            value=base_config.max_parallel_scenarios,
            step=1,
            disabled=execution_label == _EXECUTION_SEQUENTIAL_LABEL,
        )
    )

    try:
        run_config = replace(
            base_config,
            namespace=namespace.strip(),
            cloud_provider=cloud_provider.strip(),
            aws_test_enabled=aws_test_enabled,
            s3_bucket=s3_bucket.strip(),
            aws_secret=aws_secret.strip(),
            parallel=execution_label == _EXECUTION_PARALLEL_LABEL,
            max_parallel_scenarios=max_workers,
        )
    except ValueError as error:
        st.sidebar.error(f"Invalid run settings: {error}")
        return

    if st.sidebar.button("Connect", type="primary"):
        connection_error = _validate_connection_inputs(
            auth_mode=auth_mode,
            kubeconfig_path_input=kubeconfig_path_input,
            kubeconfig_text_input=kubeconfig_text_input,
        )
        if connection_error:
            st.sidebar.error(connection_error)
        else:
            try:
                kubeconfig_path: str | None = None
                if auth_mode == _AUTH_MODE_USE_KUBECONFIG_PATH:
                    kubeconfig_path = str(Path(kubeconfig_path_input).expanduser())
                elif auth_mode == _AUTH_MODE_PASTE_KUBECONFIG:
                    kubeconfig_path = persist_kubeconfig_content(kubeconfig_text_input)

                st.session_state.clients = load_kubernetes_clients(
                    kubeconfig_path=kubeconfig_path,
                    context=context or None,
                    in_cluster=auth_mode == _AUTH_MODE_IN_CLUSTER,
                )
                st.session_state.connected = True
                st.session_state.last_results = []
                st.success("Connected to Kubernetes cluster.")
            except KubernetesAuthenticationError as error:
                st.session_state.connected = False
                st.session_state.clients = None
                st.error(f"Connection failed: {error}")

    if st.sidebar.button("Disconnect"):
        st.session_state.connected = False
        st.session_state.clients = None
        st.session_state.last_results = []
        st.session_state.selected_scenarios = []

    scenarios = build_scenario_matrix()
    st.subheader("Scenario Matrix")
    st.dataframe(_build_scenario_rows(scenarios, run_config), use_container_width=True, hide_index=True)

    if not st.session_state.connected or st.session_state.clients is None:
        st.info("Connect to a cluster from the sidebar to run restore scenarios.")
        return

    by_name = {scenario.name: scenario for scenario in scenarios}
    selected_names = st.multiselect(
        "Choose scenarios to run",
        options=list(by_name),
        key="selected_scenarios",
    )

    if st.button("Run selected scenarios"):
        selected = [by_name[name] for name in selected_names]
        settings_errors = _validate_run_settings(run_config, selected)
        if not selected:
            st.warning("Select at least one scenario.")
        elif settings_errors:
            for error in settings_errors:
                st.error(error)
        else:
            s3_client = None
            if run_config.aws_test_enabled and run_config.s3_bucket:
                s3_client = build_s3_client(region=run_config.s3_region, endpoint_url=run_config.s3_endpoint_url)
            runner = build_scenario_runner(run_config, clients=st.session_state.clients, s3_client=s3_client)
            try:
                with st.spinner(f"Running {len(selected)} scenario(s)..."):
                    st.session_state.last_results = runner.run_many(selected)
            finally:
                runner.close()

            failed = [result for result in st.session_state.last_results if result.status == "failed"]
            if failed:
                st.error(f"{len(failed)} of {len(selected)} scenario(s) failed. Review the hints below.")
            else:
                st.success("All selected scenarios passed or were skipped.")

    if st.session_state.last_results:
        st.subheader("Latest Run")
        rows = _build_result_rows(st.session_state.last_results)
        st.dataframe(rows, use_container_width=True, hide_index=True)
        for row in rows:
            if row["status"] == "failed":
                st.error(f"{row['scenario']}: {row['actionable_message']}")


if __name__ == "__main__":
    main()
