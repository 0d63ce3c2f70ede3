from __future__ import annotations

from pathlib import Path
from typing import Any
import os

import streamlit as st
import yaml

from nerdy_solr_backup_manager.config import AppConfig, ensure_directories
from nerdy_solr_backup_manager.k8s import (
    KubernetesReconcileError,
    list_backup_objects,
    load_kubernetes_clients,
    persist_kubeconfig_content,
)
from nerdy_solr_backup_manager.manifest import (
    InvalidBackupRequestError,
    backup_request_from_object,
    format_time,
    status_from_object,
)
from nerdy_solr_backup_manager.metadata import BackupJournal
from nerdy_solr_backup_manager.models import BackupRequest, BackupRequestStatus, BackupRun, InconsistentStateError

_AUTH_MODE_USE_KUBECONFIG_PATH = "Use kubeconfig path"
_AUTH_MODE_PASTE_KUBECONFIG = "Paste kubeconfig"
_AUTH_MODE_IN_CLUSTER = "In-cluster service account"

_FAILURE_HINTS: tuple[tuple[str, str], ...] = (
    (
        "start backup of collection",
        "Check that the collection exists and the backup repository is configured on the SolrCloud.",
    ),
    (
        "poll backup request",
        "Solr did not answer the status call; it is retried on the next reconcile.",
    ),
    (
        "backup request reported failure",
        "Inspect the Solr overseer logs for the async request id shown in this row.",
    ),
    (
        "run exceeded ceiling",
        "The run stayed open past the configured ceiling; check Solr node health before the next run.",
    ),
    (
        "delete backup point",
        "The artifact was dropped from status but may still exist in the repository; remove it manually.",
    ),
    (
        "list backup points",
        "The artifact could not be listed for cleanup; verify the repository location is reachable.",
    ),
    (
        "invalid schedule",
        "Fix spec.recurrence.schedule; no run is scheduled until it parses.",
    ),
)


def _initialize_state() -> None:
    defaults = {
        "connected": False,
        "clients": None,
        "backup_entries": [],
        "load_errors": [],
    }
    for key, value in defaults.items():
        if key not in st.session_state:
            st.session_state[key] = value


def _actionable_next_step(message: str) -> str:
    normalized = message.strip()
    if not normalized:
        return "No follow-up action required."

    for marker, hint in _FAILURE_HINTS:
        if marker in normalized:
            return f"{normalized} | Next step: {hint}"
    return f"{normalized} | Next step: Inspect controller logs for more detail."


def _run_state_label(run: BackupRun | None) -> str:
    if run is None:
        return "Never run"
    if not run.finished:
        return "Running"
    return "Succeeded" if run.success else "Failed"


def _recurrence_label(request: BackupRequest) -> str:
    if request.recurrence is None:
        return "One-shot"
    if request.recurrence.disabled:
        return f"Disabled ({request.recurrence.schedule})"
    return f"{request.recurrence.schedule} (keep {request.recurrence.max_saved})"


def _load_backup_entries(
    objects: list[dict[str, Any]],
) -> tuple[list[tuple[BackupRequest, BackupRequestStatus]], list[str]]:
    entries: list[tuple[BackupRequest, BackupRequestStatus]] = []
    errors: list[str] = []
    for obj in objects:
        try:
            entries.append((backup_request_from_object(obj), status_from_object(obj)))
        except (InvalidBackupRequestError, InconsistentStateError) as error:
            errors.append(str(error))
    return entries, errors


def _build_request_rows(
    entries: list[tuple[BackupRequest, BackupRequestStatus]],
    last_success_map: dict[tuple[str, str], str] | None = None,
) -> list[dict[str, str]]:
    last_success_map = last_success_map or {}
    rows: list[dict[str, str]] = []
    for request, status in entries:
        current = status.current
        rows.append(
            {
                "namespace": request.namespace,
                "backup": request.name,
                "solr_cloud": request.solr_cloud,
                "collections": ",".join(request.collections) or "all",
                "recurrence": _recurrence_label(request),
                "state": _run_state_label(current),
                "started": format_time(current.started_at) if current else "",
                "finished": format_time(current.finished_at) if current and current.finished_at else "",
                "next_scheduled": format_time(status.next_scheduled_time) or "",
                "saved_runs": str(len(status.history)),
                "last_success": last_success_map.get(request.key, "never"),
                "error": status.error or "",
            }
        )
    return rows


def _build_collection_rows(run: BackupRun) -> list[dict[str, str]]:
    rows: list[dict[str, str]] = []
    for status in run.collections:
        if status.finished:
            state = "succeeded" if status.success else "failed"
        elif status.in_progress:
            state = "running"
        else:
            state = "pending"

        actionable_message = "Backup completed successfully." if status.success else ""
        if status.message:
            actionable_message = _actionable_next_step(status.message)

        rows.append(
            {
                "collection": status.collection,
                "state": state,
                "backup_name": status.backup_name,
                "async_request_id": status.handle or "",
                "async_status": status.async_status,
                "started": format_time(status.started_at) or "",
                "finished": format_time(status.finished_at) or "",
                "actionable_message": actionable_message,
            }
        )
    return rows


def _build_history_rows(status: BackupRequestStatus) -> list[dict[str, str]]:
    rows: list[dict[str, str]] = []
    for run in reversed(status.history):
        failed = [entry.collection for entry in run.collections if not entry.success]
        rows.append(
            {
                "sequence": str(run.sequence),
                "run_id": run.run_id,
                "state": _run_state_label(run),
                "solr_version": run.cluster_version or "unknown",
                "started": format_time(run.started_at) or "",
                "finished": format_time(run.finished_at) or "",
                "failed_collections": ",".join(failed),
            }
        )
    return rows


def _build_eviction_rows(rows: list[dict[str, Any]]) -> list[dict[str, str]]:
    return [
        {
            "backup": f"{row.get('namespace', '')}/{row.get('request_name', '')}",
            "run_id": str(row.get("run_id", "")),
            "backup_name": str(row.get("backup_name", "")),
            "recorded_at": str(row.get("recorded_at", "")),
            "actionable_message": _actionable_next_step(str(row.get("message", "") or "")),
        }
        for row in rows
    ]


def _validate_connection_inputs(*, auth_mode: str, kubeconfig_path_input: str, kubeconfig_text_input: str) -> str | None:
    if auth_mode == _AUTH_MODE_USE_KUBECONFIG_PATH:
        path_value = kubeconfig_path_input.strip()
        if not path_value:
            return "Kubeconfig path is required when using kubeconfig path authentication."
        expanded_path = Path(path_value).expanduser()
        if not expanded_path.is_file():
            return f"Kubeconfig path must point to an existing file: {expanded_path}"
        try:
            content = expanded_path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as error:
            return f"Unable to read kubeconfig path {expanded_path}: {error}"
        return _validate_kubeconfig_content(kubeconfig_content=content, source_label=f"Kubeconfig file '{expanded_path}'")

    if auth_mode == _AUTH_MODE_PASTE_KUBECONFIG:
        kubeconfig_text = kubeconfig_text_input.strip()
        if not kubeconfig_text:
            return "Paste kubeconfig content before connecting."
        return _validate_kubeconfig_content(kubeconfig_content=kubeconfig_text, source_label="Pasted kubeconfig")

    if auth_mode == _AUTH_MODE_IN_CLUSTER and not os.getenv("KUBERNETES_SERVICE_HOST"):
        return "In-cluster service account mode requires Kubernetes pod environment variables."

    return None


def _validate_kubeconfig_content(*, kubeconfig_content: str, source_label: str) -> str | None:
    try:
        parsed = yaml.safe_load(kubeconfig_content)
    except yaml.YAMLError as error:
        return f"{source_label} must be valid YAML: {error.__class__.__name__}."

    if not isinstance(parsed, dict):
        return f"{source_label} must be a YAML mapping."

    missing_fields = [field for field in ("apiVersion", "clusters", "contexts", "users") if field not in parsed]
    if missing_fields:
        return f"{source_label} is missing required field(s): {', '.join(missing_fields)}."
    return None


def main() -> None:
    st.set_page_config(page_title="Nerdy Solr Backup Manager", layout="wide")
    _initialize_state()

    base_config = AppConfig()
    ensure_directories(base_config)
    journal = BackupJournal(base_config.journal_db_path)
    journal.initialize()

    st.title("Nerdy Solr Backup Manager")
    st.caption("Recurring SolrCloud backups: current runs, schedules, and retained history.")

    st.sidebar.header("Cluster Connection")
    auth_options = [_AUTH_MODE_USE_KUBECONFIG_PATH, _AUTH_MODE_PASTE_KUBECONFIG, _AUTH_MODE_IN_CLUSTER]
    default_index = 2 if base_config.in_cluster else 0
    auth_mode = st.sidebar.radio("Authentication", options=auth_options, index=default_index)
    context = st.sidebar.text_input("Kubernetes context (optional)", value=base_config.context or "")
    namespace = st.sidebar.text_input("Namespace (blank for all)", value=base_config.namespace or "")

    kubeconfig_path_input = base_config.kubeconfig_path or "~/.kube/config"
    kubeconfig_text_input = ""
    if auth_mode == _AUTH_MODE_USE_KUBECONFIG_PATH:
        kubeconfig_path_input = st.sidebar.text_input("Kubeconfig path", value=kubeconfig_path_input)
    elif auth_mode == _AUTH_MODE_PASTE_KUBECONFIG:
        kubeconfig_text_input = st.sidebar.text_area("Kubeconfig content", height=220)

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
                st.success("Connected to Kubernetes cluster.")
            except Exception as error:  # pylint: disable=broad-except
                st.session_state.connected = False
                st.session_state.clients = None
                st.error(f"Connection failed: {error}")

    if not st.session_state.connected or st.session_state.clients is None:
        st.info("Connect to a cluster from the sidebar to inspect SolrBackup objects.")
    else:
        if st.button("Refresh backups"):
            try:
                objects = list_backup_objects(st.session_state.clients, namespace=namespace.strip() or None)
                st.session_state.backup_entries, st.session_state.load_errors = _load_backup_entries(objects)
            except KubernetesReconcileError as error:
                st.error(str(error))

        for load_error in st.session_state.load_errors:
            st.warning(load_error)

        entries: list[tuple[BackupRequest, BackupRequestStatus]] = st.session_state.backup_entries
        if entries:
            st.subheader("Backups")
            st.dataframe(
                _build_request_rows(entries, journal.get_last_success_map()),
                use_container_width=True,
                hide_index=True,
            )

            labels = [f"{request.namespace}/{request.name}" for request, _ in entries]
            selected = st.selectbox("Inspect backup", options=labels)
            request, status = entries[labels.index(selected)]
            if status.error:
                st.error(_actionable_next_step(status.error))
            if status.current is not None:
                st.markdown(f"**Current run** `{status.current.run_id}` ({_run_state_label(status.current)})")
                st.dataframe(_build_collection_rows(status.current), use_container_width=True, hide_index=True)
            if status.history:
                st.markdown("**Saved runs**")
                st.dataframe(_build_history_rows(status), use_container_width=True, hide_index=True)
        else:
            st.info("Click 'Refresh backups' to load SolrBackup objects.")

    st.subheader("Run Journal")
    journal_rows = journal.get_recent_runs(limit=100)
    if journal_rows:
        st.dataframe(journal_rows, use_container_width=True, hide_index=True)
    else:
        st.info("No finished runs recorded yet.")

    eviction_rows = _build_eviction_rows(journal.get_eviction_failures(limit=50))
    if eviction_rows:
        st.subheader("Artifacts Awaiting Manual Cleanup")
        st.dataframe(eviction_rows, use_container_width=True, hide_index=True)


if __name__ == "__main__":
    main()
