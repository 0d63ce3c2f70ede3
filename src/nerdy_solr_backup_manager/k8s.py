from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import os
import tempfile
from typing import Any, Callable, TypeVar

from kubernetes import client, config
from kubernetes.client import ApiException

SOLR_BACKUP_GROUP = "solr.apache.org"
SOLR_BACKUP_VERSION = "v1beta1"
SOLR_BACKUP_PLURAL = "solrbackups"
DEFAULT_REQUEST_TIMEOUT_SECONDS = 20
T = TypeVar("T")


@dataclass(frozen=True)
class KubernetesClients:
    api_client: client.ApiClient
    custom_objects_api: client.CustomObjectsApi


class KubernetesReconcileError(RuntimeError):
    """Raised when reading or writing SolrBackup objects fails."""


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
        custom_objects_api=client.CustomObjectsApi(api_client),
    )


def list_backup_objects(
    clients: KubernetesClients,
    *,
    namespace: str | None = None,
    request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS,
) -> list[dict[str, Any]]:
    if request_timeout_seconds <= 0:
        raise ValueError("request_timeout_seconds must be positive")

    api = clients.custom_objects_api
    if namespace:
        response = _safe_kubernetes_call(
            operation=f"list SolrBackups in namespace '{namespace}'",
            hint="Check the namespace spelling and RBAC verbs for solrbackups.",
            func=lambda: api.list_namespaced_custom_object(
                SOLR_BACKUP_GROUP,
                SOLR_BACKUP_VERSION,
                namespace,
                SOLR_BACKUP_PLURAL,
                _request_timeout=request_timeout_seconds,
            ),
        )
    else:
        response = _safe_kubernetes_call(
            operation="list SolrBackups across all namespaces",
            hint="Confirm the SolrBackup CRD is installed and RBAC allows cluster-wide list on solrbackups.",
            func=lambda: api.list_cluster_custom_object(
                SOLR_BACKUP_GROUP,
                SOLR_BACKUP_VERSION,
                SOLR_BACKUP_PLURAL,
                _request_timeout=request_timeout_seconds,
            ),
        )

    items = list(response.get("items") or [])
    items.sort(key=lambda item: ((item.get("metadata") or {}).get("namespace", ""), (item.get("metadata") or {}).get("name", "")))
    return items


def patch_backup_status(
    clients: KubernetesClients,
    *,
    namespace: str,
    name: str,
    status: dict[str, Any],
) -> dict[str, Any]:
    return _safe_kubernetes_call(
        operation=f"update status of SolrBackup '{namespace}/{name}'",
        hint="Verify RBAC allows patch on solrbackups/status.",
        func=lambda: clients.custom_objects_api.patch_namespaced_custom_object_status(
            SOLR_BACKUP_GROUP,
            SOLR_BACKUP_VERSION,
            namespace,
            SOLR_BACKUP_PLURAL,
            name,
            {"status": status},
        ),
    )


def clear_deprecated_persistence(clients: KubernetesClients, *, namespace: str, name: str) -> dict[str, Any]:
    # A merge patch with null removes the field from the stored spec.
    return _safe_kubernetes_call(
        operation=f"clear deprecated persistence of SolrBackup '{namespace}/{name}'",
        hint="Verify RBAC allows patch on solrbackups.",
        func=lambda: clients.custom_objects_api.patch_namespaced_custom_object(
            SOLR_BACKUP_GROUP,
            SOLR_BACKUP_VERSION,
            namespace,
            SOLR_BACKUP_PLURAL,
            name,
            {"spec": {"persistence": None}},
        ),
    )


def _safe_kubernetes_call(*, operation: str, hint: str, func: Callable[[], T]) -> T:
    try:
        return func()
    except ApiException as error:
        raise KubernetesReconcileError(
            _format_api_exception_message(
                operation=operation,
                hint=hint,
                error=error,
            )
        ) from error
    except Exception as error:
        raise KubernetesReconcileError(f"Kubernetes call failed while trying to {operation}: {error}. {hint}") from error


def _format_api_exception_message(*, operation: str, hint: str, error: ApiException) -> str:
    status = error.status if error.status is not None else "unknown"
    reason = error.reason or "no reason provided"
    return f"Kubernetes call failed while trying to {operation}: API status {status} ({reason}). {hint}"


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
