from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Union

DEFAULT_REPOSITORY_NAME = "legacy_local_repository"
DEFAULT_MAX_SAVED = 5


class InconsistentStateError(RuntimeError):
    """Raised when a backup run violates its finished/success invariants."""


class BackupJobState(str, Enum):
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True)
class BackupPoint:
    id: int
    timestamp: datetime | None = None


@dataclass(frozen=True)
class RecurrencePolicy:
    schedule: str
    max_saved: int = DEFAULT_MAX_SAVED
    disabled: bool = False

    @property
    def enabled(self) -> bool:
        return not self.disabled


@dataclass(frozen=True)
class S3PersistenceSource:
    bucket: str
    endpoint_url: str = ""
    region: str = ""
    key: str = ""
    retries: int | None = None
    secret_name: str = ""


@dataclass(frozen=True)
class VolumePersistenceSource:
    source: dict[str, Any] = field(default_factory=dict)
    path: str = ""
    filename: str = ""


@dataclass(frozen=True)
class PersistenceSource:
    # Deprecated: accepted on input, always cleared by with_defaults().
    s3: S3PersistenceSource | None = None
    volume: VolumePersistenceSource | None = None


@dataclass(frozen=True)
class BackupRequest:
    name: str
    namespace: str
    solr_cloud: str
    repository_name: str = DEFAULT_REPOSITORY_NAME
    collections: tuple[str, ...] = ()
    location: str = ""
    recurrence: RecurrencePolicy | None = None
    persistence: PersistenceSource | None = None
    creation_timestamp: datetime | None = None

    @property
    def key(self) -> tuple[str, str]:
        return self.namespace, self.name

    @property
    def recurrence_enabled(self) -> bool:
        return self.recurrence is not None and self.recurrence.enabled


@dataclass(frozen=True)
class Pending:
    pass


@dataclass(frozen=True)
class Running:
    handle: str
    started_at: datetime
    async_status: str = ""
    message: str = ""


@dataclass(frozen=True)
class Finished:
    success: bool
    finished_at: datetime
    started_at: datetime | None = None
    handle: str | None = None
    async_status: str = ""
    message: str = ""


CollectionOutcome = Union[Pending, Running, Finished]


@dataclass(frozen=True)
class CollectionRunStatus:
    collection: str
    backup_name: str
    outcome: CollectionOutcome = field(default_factory=Pending)

    @property
    def finished(self) -> bool:
        return isinstance(self.outcome, Finished)

    @property
    def in_progress(self) -> bool:
        return isinstance(self.outcome, Running)

    @property
    def success(self) -> bool | None:
        if isinstance(self.outcome, Finished):
            return self.outcome.success
        return None

    @property
    def handle(self) -> str | None:
        if isinstance(self.outcome, (Running, Finished)):
            return self.outcome.handle
        return None

    @property
    def started_at(self) -> datetime | None:
        if isinstance(self.outcome, (Running, Finished)):
            return self.outcome.started_at
        return None

    @property
    def finished_at(self) -> datetime | None:
        if isinstance(self.outcome, Finished):
            return self.outcome.finished_at
        return None

    @property
    def async_status(self) -> str:
        if isinstance(self.outcome, (Running, Finished)):
            return self.outcome.async_status
        return ""

    @property
    def message(self) -> str:
        if isinstance(self.outcome, (Running, Finished)):
            return self.outcome.message
        return ""


@dataclass(frozen=True)
class BackupRun:
    sequence: int
    run_id: str
    started_at: datetime
    cluster_version: str = ""
    collections: tuple[CollectionRunStatus, ...] = ()
    finished_at: datetime | None = None
    success: bool | None = None

    @property
    def finished(self) -> bool:
        return self.success is not None

    @property
    def sort_key(self) -> tuple[datetime, int]:
        return self.started_at, self.sequence

    def validate(self) -> None:
        if (self.finished_at is None) != (self.success is None):
            raise InconsistentStateError(
                f"backup run {self.run_id} has finish time and success flag out of step"
            )
        if not self.finished:
            return
        unfinished = [status.collection for status in self.collections if not status.finished]
        if unfinished:
            raise InconsistentStateError(
                f"backup run {self.run_id} is finished but collections are still open: {', '.join(unfinished)}"
            )
        if self.success and not all(status.success for status in self.collections):
            raise InconsistentStateError(
                f"backup run {self.run_id} is marked successful but has failed collections"
            )


@dataclass(frozen=True)
class BackupRequestStatus:
    current: BackupRun | None = None
    history: tuple[BackupRun, ...] = ()
    next_scheduled_time: datetime | None = None
    last_sequence: int = 0
    error: str | None = None

    @property
    def run_in_progress(self) -> bool:
        return self.current is not None and not self.current.finished
