from __future__ import annotations

from datetime import datetime
import logging
from typing import Any, Protocol

import httpx

from .models import BackupJobState, BackupPoint

logger = logging.getLogger(__name__)

COLLECTIONS_API_PATH = "/solr/admin/collections"
SYSTEM_INFO_PATH = "/solr/admin/info/system"
DEFAULT_SOLR_URL_TEMPLATE = "http://{cloud}-solrcloud-common.{namespace}"
DEFAULT_REQUEST_TIMEOUT_SECONDS = 30

_SUCCEEDED_STATES = {"completed"}
_FAILED_STATES = {"failed", "notfound"}


class ExternalCallError(RuntimeError):
    def __init__(self, *, operation: str, reason: str) -> None:
        normalized_reason = reason.strip() or "unknown error"
        super().__init__(f"{operation} failed: {normalized_reason}")
        self.operation = operation
        self.reason = normalized_reason


class BackupApi(Protocol):
    def start_backup(self, collection: str, repository: str, location: str, run_id: str) -> str: ...

    def poll_backup(self, handle: str) -> BackupJobState: ...

    def list_backups(self, repository: str, location: str, name: str) -> list[BackupPoint]: ...

    def delete_backup(self, repository: str, location: str, name: str, backup_id: int) -> None: ...

    def list_collections(self) -> list[str]: ...

    def cluster_version(self) -> str: ...


def backup_artifact_name(run_id: str, collection: str) -> str:
    return f"{run_id}-{collection}"


def solr_base_url(*, cloud: str, namespace: str, template: str = DEFAULT_SOLR_URL_TEMPLATE) -> str:
    return template.format(cloud=cloud, namespace=namespace).rstrip("/")


class SolrAdminClient:
    """Backup capability backed by the Solr Collections API.

    Each collection backup in a run is its own named incremental backup, so an
    evicted run is removed by deleting every backup point listed under that name.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
        http_client: httpx.Client | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._client = http_client or httpx.Client(base_url=self.base_url, timeout=timeout_seconds)

    def close(self) -> None:
        self._client.close()

    def start_backup(self, collection: str, repository: str, location: str, run_id: str) -> str:
        name = backup_artifact_name(run_id, collection)
        params = {
            "action": "BACKUP",
            "name": name,
            "collection": collection,
            "repository": repository,
            "incremental": "true",
            "async": name,
        }
        if location:
            params["location"] = location
        self._collections_call(operation=f"start backup of collection '{collection}'", params=params)
        logger.info("Submitted backup of collection %s as async request %s", collection, name)
        return name

    def poll_backup(self, handle: str) -> BackupJobState:
        payload = self._collections_call(
            operation=f"poll backup request '{handle}'",
            params={"action": "REQUESTSTATUS", "requestid": handle},
        )
        status = payload.get("status")
        state = str(status.get("state", "")).strip().lower() if isinstance(status, dict) else ""
        if state in _SUCCEEDED_STATES:
            return BackupJobState.SUCCEEDED
        if state in _FAILED_STATES:
            message = status.get("msg", "") if isinstance(status, dict) else ""
            logger.warning("Backup request %s reported state %s: %s", handle, state, message)
            return BackupJobState.FAILED
        return BackupJobState.RUNNING

    def list_backups(self, repository: str, location: str, name: str) -> list[BackupPoint]:
        params = {"action": "LISTBACKUP", "name": name, "repository": repository}
        if location:
            params["location"] = location
        payload = self._collections_call(operation=f"list backup points of '{name}'", params=params)

        points: list[BackupPoint] = []
        for entry in payload.get("backups") or []:
            if not isinstance(entry, dict) or "backupId" not in entry:
                continue
            points.append(BackupPoint(id=int(entry["backupId"]), timestamp=_parse_solr_time(entry.get("startTime"))))
        points.sort(key=lambda point: point.id)
        return points

    def delete_backup(self, repository: str, location: str, name: str, backup_id: int) -> None:
        params = {
            "action": "DELETEBACKUP",
            "name": name,
            "repository": repository,
            "backupId": str(backup_id),
        }
        if location:
            params["location"] = location
        self._collections_call(operation=f"delete backup point {backup_id} of '{name}'", params=params)

    def list_collections(self) -> list[str]:
        payload = self._collections_call(operation="list collections", params={"action": "LIST"})
        collections = payload.get("collections") or []
        return sorted(str(collection) for collection in collections)

    def cluster_version(self) -> str:
        payload = self._get(operation="read cluster version", path=SYSTEM_INFO_PATH, params={"wt": "json"})
        lucene = payload.get("lucene")
        if not isinstance(lucene, dict):
            return ""
        return str(lucene.get("solr-spec-version", "") or "")

    def _collections_call(self, *, operation: str, params: dict[str, str]) -> dict[str, Any]:
        return self._get(operation=operation, path=COLLECTIONS_API_PATH, params={**params, "wt": "json"})

    def _get(self, *, operation: str, path: str, params: dict[str, str]) -> dict[str, Any]:
        try:
            response = self._client.get(path, params=params)
        except httpx.HTTPError as error:
            raise ExternalCallError(operation=operation, reason=_error_message(error)) from error

        try:
            payload = response.json()
        except ValueError:
            payload = None

        if response.status_code >= 400:
            raise ExternalCallError(
                operation=operation,
                reason=f"HTTP {response.status_code} ({_solr_error_message(payload) or response.reason_phrase})",
            )
        if not isinstance(payload, dict):
            raise ExternalCallError(operation=operation, reason="response body is not a JSON object")

        header = payload.get("responseHeader")
        if isinstance(header, dict) and header.get("status") not in (None, 0):
            raise ExternalCallError(
                operation=operation,
                reason=f"Solr status {header.get('status')} ({_solr_error_message(payload) or 'no message'})",
            )
        return payload


def _solr_error_message(payload: Any) -> str:
    if not isinstance(payload, dict):
        return ""
    error = payload.get("error")
    if isinstance(error, dict):
        return str(error.get("msg", "") or "").strip()
    exception = payload.get("exception")
    if isinstance(exception, dict):
        return str(exception.get("msg", "") or "").strip()
    return ""


def _parse_solr_time(value: Any) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value))
    except ValueError:
        return None


def _error_message(error: Exception) -> str:
    message = str(error).strip()
    return message or error.__class__.__name__
