"""Translation between SolrBackup resource objects and the backup model.

Objects arrive as the plain dictionaries returned by the Kubernetes custom
objects API; status is written back in the same camelCase layout.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import UTC, datetime
import re
from typing import Any, Mapping

from .models import (
    DEFAULT_MAX_SAVED,
    DEFAULT_REPOSITORY_NAME,
    BackupRequest,
    BackupRequestStatus,
    BackupRun,
    CollectionOutcome,
    CollectionRunStatus,
    Finished,
    InconsistentStateError,
    Pending,
    PersistenceSource,
    RecurrencePolicy,
    Running,
    S3PersistenceSource,
    VolumePersistenceSource,
)

_SOLR_CLOUD_PATTERN = re.compile(r"[a-z0-9]([-a-z0-9]*[a-z0-9])?")
_REPOSITORY_PATTERN = re.compile(r"[a-zA-Z0-9]([-_a-zA-Z0-9]*[a-zA-Z0-9])?")


class InvalidBackupRequestError(ValueError):
    """Raised when a SolrBackup object cannot be read as a backup request."""


def with_defaults(request: BackupRequest) -> tuple[BackupRequest, bool]:
    changed = False
    if request.persistence is not None:
        request = replace(request, persistence=None)
        changed = True
    if not request.repository_name:
        request = replace(request, repository_name=DEFAULT_REPOSITORY_NAME)
        changed = True
    return request, changed


def backup_request_from_object(obj: Mapping[str, Any]) -> BackupRequest:
    metadata = obj.get("metadata") or {}
    spec = obj.get("spec") or {}
    name = str(metadata.get("name") or "")
    if not name:
        raise InvalidBackupRequestError("backup object is missing metadata.name")

    solr_cloud = str(spec.get("solrCloud") or "")
    _require_pattern(name, "spec.solrCloud", solr_cloud, _SOLR_CLOUD_PATTERN, max_length=63)

    repository_name = str(spec.get("repositoryName") or DEFAULT_REPOSITORY_NAME)
    _require_pattern(name, "spec.repositoryName", repository_name, _REPOSITORY_PATTERN, max_length=100)

    collections = spec.get("collections") or []
    if not isinstance(collections, list):
        raise InvalidBackupRequestError(f"backup '{name}': spec.collections must be a list")

    return BackupRequest(
        name=name,
        namespace=str(metadata.get("namespace") or "default"),
        solr_cloud=solr_cloud,
        repository_name=repository_name,
        collections=tuple(str(collection) for collection in collections if str(collection).strip()),
        location=str(spec.get("location") or ""),
        recurrence=_recurrence_from_spec(name, spec.get("recurrence")),
        persistence=_persistence_from_spec(spec.get("persistence")),
        creation_timestamp=parse_time(metadata.get("creationTimestamp")),
    )


def status_from_object(obj: Mapping[str, Any]) -> BackupRequestStatus:
    status = obj.get("status") or {}
    current = _run_from_status(status) if status.get("startTimestamp") else None
    history = tuple(_run_from_status(entry) for entry in status.get("history") or [])

    last_sequence = int(status.get("lastRunSequence") or 0)
    known_sequences = [run.sequence for run in history] + ([current.sequence] if current else [])
    if known_sequences:
        last_sequence = max(last_sequence, *known_sequences)

    return BackupRequestStatus(
        current=current,
        history=history,
        next_scheduled_time=parse_time(status.get("nextScheduledTime")),
        last_sequence=last_sequence,
        error=status.get("error") or None,
    )


def status_to_object(status: BackupRequestStatus) -> dict[str, Any]:
    body: dict[str, Any] = _run_to_status(status.current) if status.current else {}
    body["history"] = [_run_to_status(run) for run in status.history]
    body["nextScheduledTime"] = format_time(status.next_scheduled_time)
    body["lastRunSequence"] = status.last_sequence
    body["error"] = status.error
    return body


def parse_time(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError as error:
            raise InvalidBackupRequestError(f"invalid timestamp '{value}'") from error
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def format_time(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def _require_pattern(name: str, field_name: str, value: str, pattern: re.Pattern[str], *, max_length: int) -> None:
    if not value:
        raise InvalidBackupRequestError(f"backup '{name}': {field_name} is required")
    if len(value) > max_length:
        raise InvalidBackupRequestError(f"backup '{name}': {field_name} must be at most {max_length} characters")
    if not pattern.fullmatch(value):
        raise InvalidBackupRequestError(f"backup '{name}': {field_name} '{value}' does not match {pattern.pattern}")


def _recurrence_from_spec(name: str, recurrence: Any) -> RecurrencePolicy | None:
    if not recurrence:
        return None
    if not isinstance(recurrence, Mapping):
        raise InvalidBackupRequestError(f"backup '{name}': spec.recurrence must be an object")

    max_saved = recurrence.get("maxSaved")
    max_saved = DEFAULT_MAX_SAVED if max_saved in (None, 0) else int(max_saved)
    if max_saved < 1:
        raise InvalidBackupRequestError(f"backup '{name}': spec.recurrence.maxSaved must be >= 1")

    return RecurrencePolicy(
        schedule=str(recurrence.get("schedule") or ""),
        max_saved=max_saved,
        disabled=bool(recurrence.get("disabled", False)),
    )


def _persistence_from_spec(persistence: Any) -> PersistenceSource | None:
    if not isinstance(persistence, Mapping) or not persistence:
        return None

    s3 = persistence.get("S3")
    volume = persistence.get("volume")
    return PersistenceSource(
        s3=S3PersistenceSource(
            bucket=str(s3.get("bucket") or ""),
            endpoint_url=str(s3.get("endpointUrl") or ""),
            region=str(s3.get("region") or ""),
            key=str(s3.get("key") or ""),
            retries=s3.get("retries"),
            secret_name=str((s3.get("secrets") or {}).get("fromSecret") or ""),
        )
        if isinstance(s3, Mapping)
        else None,
        volume=VolumePersistenceSource(
            source=dict(volume.get("source") or {}),
            path=str(volume.get("path") or ""),
            filename=str(volume.get("filename") or ""),
        )
        if isinstance(volume, Mapping)
        else None,
    )


def _run_from_status(entry: Mapping[str, Any]) -> BackupRun:
    started_at = parse_time(entry.get("startTimestamp"))
    if started_at is None:
        raise InconsistentStateError("backup status entry has no startTimestamp")

    finished = bool(entry.get("finished", False))
    successful = entry.get("successful")
    if finished and successful is None:
        raise InconsistentStateError(f"backup run started {format_time(started_at)} is finished without a result")
    if not finished and successful is not None:
        raise InconsistentStateError(f"backup run started {format_time(started_at)} has a result but is not finished")

    sequence = int(entry.get("runSequence") or 0)
    run = BackupRun(
        sequence=sequence,
        run_id=str(entry.get("runId") or ""),
        started_at=started_at,
        cluster_version=str(entry.get("solrVersion") or ""),
        collections=tuple(_collection_from_status(item) for item in entry.get("collectionBackupStatuses") or []),
        finished_at=(parse_time(entry.get("finishTimestamp")) or started_at) if finished else None,
        success=bool(successful) if finished else None,
    )
    run.validate()
    return run


def _collection_from_status(entry: Mapping[str, Any]) -> CollectionRunStatus:
    collection = str(entry.get("collection") or "")
    finished = bool(entry.get("finished", False))
    successful = entry.get("successful")
    handle = entry.get("asyncRequestId") or None
    started_at = parse_time(entry.get("startTimestamp"))
    async_status = str(entry.get("asyncBackupStatus") or "")
    message = str(entry.get("message") or "")

    outcome: CollectionOutcome
    if finished:
        if successful is None:
            raise InconsistentStateError(f"collection '{collection}' is finished without a result")
        outcome = Finished(
            success=bool(successful),
            finished_at=parse_time(entry.get("finishTimestamp")) or started_at or datetime.now(tz=UTC),
            started_at=started_at,
            handle=handle,
            async_status=async_status,
            message=message,
        )
    elif successful is not None:
        raise InconsistentStateError(f"collection '{collection}' has a result but is not finished")
    elif handle:
        outcome = Running(
            handle=str(handle),
            started_at=started_at or datetime.now(tz=UTC),
            async_status=async_status,
            message=message,
        )
    else:
        outcome = Pending()

    return CollectionRunStatus(collection=collection, backup_name=str(entry.get("backupName") or ""), outcome=outcome)


def _run_to_status(run: BackupRun) -> dict[str, Any]:
    return {
        "runSequence": run.sequence,
        "runId": run.run_id,
        "solrVersion": run.cluster_version,
        "startTimestamp": format_time(run.started_at),
        "collectionBackupStatuses": [_collection_to_status(status) for status in run.collections],
        "finishTimestamp": format_time(run.finished_at),
        "successful": run.success,
        "finished": run.finished,
    }


def _collection_to_status(status: CollectionRunStatus) -> dict[str, Any]:
    return {
        "collection": status.collection,
        "backupName": status.backup_name,
        "asyncRequestId": status.handle,
        "asyncBackupStatus": status.async_status,
        "inProgress": status.in_progress,
        "startTimestamp": format_time(status.started_at),
        "finishTimestamp": format_time(status.finished_at),
        "finished": status.finished,
        "successful": status.success,
        "message": status.message,
    }
