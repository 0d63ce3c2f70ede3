from __future__ import annotations

from dataclasses import replace
from datetime import UTC, datetime, timedelta
from unittest.mock import Mock

import pytest

from nerdy_solr_backup_manager.models import (
    BackupJobState,
    BackupPoint,
    BackupRequest,
    BackupRequestStatus,
    BackupRun,
    CollectionRunStatus,
    Finished,
    PersistenceSource,
    RecurrencePolicy,
    S3PersistenceSource,
)
from nerdy_solr_backup_manager.orchestrator import BackupOrchestrator
from nerdy_solr_backup_manager.solr import ExternalCallError

_T0 = datetime(2026, 2, 23, 9, 0, tzinfo=UTC)


class _FakeSolr:
    """In-memory backup API whose jobs complete on the first poll."""

    def __init__(self, collections: tuple[str, ...] = ("books", "authors")) -> None:
        self.collections = list(collections)
        self.failing_collections: set[str] = set()
        self.jobs: dict[str, BackupJobState] = {}
        self.points: dict[str, list[int]] = {}
        self.started: list[tuple[str, str]] = []
        self.deleted: list[tuple[str, int]] = []

    def start_backup(self, collection: str, repository: str, location: str, run_id: str) -> str:
        if collection in self.failing_collections:
            raise ExternalCallError(operation=f"start backup of collection '{collection}'", reason="HTTP 400")
        name = f"{run_id}-{collection}"
        self.started.append((run_id, collection))
        self.jobs[name] = BackupJobState.RUNNING
        return name

    def poll_backup(self, handle: str) -> BackupJobState:
        if self.jobs[handle] is BackupJobState.RUNNING:
            self.jobs[handle] = BackupJobState.SUCCEEDED
            self.points.setdefault(handle, []).append(0)
        return self.jobs[handle]

    def list_backups(self, repository: str, location: str, name: str) -> list[BackupPoint]:
        return [BackupPoint(id=point) for point in self.points.get(name, [])]

    def delete_backup(self, repository: str, location: str, name: str, backup_id: int) -> None:
        self.points[name].remove(backup_id)
        self.deleted.append((name, backup_id))

    def list_collections(self) -> list[str]:
        return list(self.collections)

    def cluster_version(self) -> str:
        return "9.6.1"


def _request(
    *,
    schedule: str | None = "@every 10s",
    max_saved: int = 3,
    disabled: bool = False,
    collections: tuple[str, ...] = ("books", "authors"),
) -> BackupRequest:
    return BackupRequest(
        name="nightly",
        namespace="search",
        solr_cloud="example",
        collections=collections,
        recurrence=RecurrencePolicy(schedule=schedule, max_saved=max_saved, disabled=disabled) if schedule else None,
        creation_timestamp=_T0,
    )


def _drive(
    orchestrator: BackupOrchestrator,
    request: BackupRequest,
    status: BackupRequestStatus,
    *,
    seconds: int,
    start: datetime = _T0,
) -> BackupRequestStatus:
    for offset in range(seconds + 1):
        status = orchestrator.reconcile(request, status, now=start + timedelta(seconds=offset)).status
    return status


def test_reconcile_with_recurring_schedule_keeps_only_max_saved_runs() -> None:
    solr = _FakeSolr()
    orchestrator = BackupOrchestrator(solr)

    status = _drive(orchestrator, _request(), BackupRequestStatus(), seconds=45)

    assert len(status.history) == 3
    assert status.last_sequence >= 4
    assert [run.sequence for run in status.history] == sorted(run.sequence for run in status.history)
    assert all(run.success for run in status.history)
    assert status.current is not None and status.current.sequence == status.last_sequence
    # Runs fire at t0+10s, +20s, +30s and +40s; the first one was evicted.
    assert [run.started_at for run in status.history] == [_T0 + timedelta(seconds=s) for s in (20, 30, 40)]
    assert ("nightly-1-20260223090010-books", 0) in solr.deleted
    assert ("nightly-1-20260223090010-authors", 0) in solr.deleted
    assert status.error is None


def test_reconcile_with_recurring_schedule_reports_next_trigger_time() -> None:
    orchestrator = BackupOrchestrator(_FakeSolr())

    result = orchestrator.reconcile(_request(), BackupRequestStatus(), now=_T0 + timedelta(seconds=3))

    assert result.started_run is None
    assert result.status.current is None
    assert result.status.next_scheduled_time == _T0 + timedelta(seconds=10)
    assert result.requeue_after == timedelta(seconds=7)


def test_reconcile_with_recurrence_disabled_mid_schedule_stops_new_runs() -> None:
    solr = _FakeSolr()
    orchestrator = BackupOrchestrator(solr)
    status = _drive(orchestrator, _request(), BackupRequestStatus(), seconds=25)
    sequence_before = status.last_sequence

    disabled = _request(disabled=True)
    status = _drive(orchestrator, disabled, status, seconds=60, start=_T0 + timedelta(seconds=26))

    assert status.last_sequence == sequence_before
    assert status.current is not None and status.current.finished
    assert status.next_scheduled_time is None


def test_reconcile_with_disabled_recurrence_still_finishes_open_run() -> None:
    solr = _FakeSolr()
    orchestrator = BackupOrchestrator(solr)
    started = orchestrator.reconcile(_request(), BackupRequestStatus(), now=_T0 + timedelta(seconds=10)).status
    assert started.run_in_progress

    finished = orchestrator.reconcile(_request(disabled=True), started, now=_T0 + timedelta(seconds=11)).status

    assert finished.current is not None
    assert finished.current.success is True
    assert len(finished.history) == 1


def test_reconcile_with_one_failing_collection_fails_run_after_other_completes() -> None:
    solr = _FakeSolr()
    solr.failing_collections.add("books")
    orchestrator = BackupOrchestrator(solr)

    first = orchestrator.reconcile(_request(), BackupRequestStatus(), now=_T0 + timedelta(seconds=10))
    second = orchestrator.reconcile(_request(), first.status, now=_T0 + timedelta(seconds=11))

    assert first.started_run is not None
    assert first.status.run_in_progress
    assert first.requeue_after == orchestrator.poll_interval
    assert second.finished_run is not None
    run = second.finished_run
    assert run.success is False
    by_name = {status.collection: status for status in run.collections}
    assert by_name["books"].success is False
    assert by_name["authors"].success is True
    assert [collection for _, collection in solr.started] == ["authors"]


def test_reconcile_with_finished_one_shot_request_never_runs_again() -> None:
    solr = _FakeSolr()
    orchestrator = BackupOrchestrator(solr)
    request = _request(schedule=None)

    status = _drive(orchestrator, request, BackupRequestStatus(), seconds=30)

    assert status.last_sequence == 1
    assert status.current is not None and status.current.success is True
    assert status.history == (status.current,)
    assert status.next_scheduled_time is None
    assert len(solr.started) == 2
    assert solr.deleted == []


def test_reconcile_with_one_shot_request_runs_immediately() -> None:
    orchestrator = BackupOrchestrator(_FakeSolr())

    result = orchestrator.reconcile(_request(schedule=None), BackupRequestStatus(), now=_T0)

    assert result.started_run is not None
    assert result.started_run.sequence == 1
    assert result.status.run_in_progress


def test_reconcile_with_invalid_schedule_records_error_without_starting_run() -> None:
    solr = _FakeSolr()
    orchestrator = BackupOrchestrator(solr)

    result = orchestrator.reconcile(_request(schedule="every tuesday"), BackupRequestStatus(), now=_T0 + timedelta(hours=1))

    assert result.started_run is None
    assert result.status.error is not None
    assert result.status.error.startswith("invalid schedule:")
    assert result.requeue_after is None
    assert solr.started == []


def test_reconcile_without_collections_backs_up_every_cluster_collection() -> None:
    solr = _FakeSolr(collections=("alpha", "beta", "gamma"))
    orchestrator = BackupOrchestrator(solr)

    result = orchestrator.reconcile(_request(collections=()), BackupRequestStatus(), now=_T0 + timedelta(seconds=10))

    assert result.started_run is not None
    assert [status.collection for status in result.started_run.collections] == ["alpha", "beta", "gamma"]
    assert result.started_run.cluster_version == "9.6.1"


def test_reconcile_with_collection_listing_failure_records_error_and_starts_nothing() -> None:
    api = Mock()
    api.list_collections.side_effect = ExternalCallError(operation="list collections", reason="connection refused")
    orchestrator = BackupOrchestrator(api)

    result = orchestrator.reconcile(_request(collections=()), BackupRequestStatus(), now=_T0 + timedelta(seconds=10))

    assert result.started_run is None
    assert result.status.current is None
    assert result.status.last_sequence == 0
    assert "connection refused" in (result.status.error or "")
    api.start_backup.assert_not_called()


def test_reconcile_with_cluster_version_failure_still_starts_run() -> None:
    solr = _FakeSolr()
    solr.cluster_version = Mock(side_effect=ExternalCallError(operation="read cluster version", reason="HTTP 503"))
    orchestrator = BackupOrchestrator(solr)

    result = orchestrator.reconcile(_request(), BackupRequestStatus(), now=_T0 + timedelta(seconds=10))

    assert result.started_run is not None
    assert result.started_run.cluster_version == ""


def test_reconcile_with_run_ceiling_fails_stalled_run() -> None:
    api = Mock()
    api.start_backup.return_value = "async-1"
    api.poll_backup.return_value = BackupJobState.RUNNING
    api.cluster_version.return_value = "9.6.1"
    orchestrator = BackupOrchestrator(api, run_ceiling=timedelta(minutes=5))
    request = _request(schedule="@daily", collections=("books",))

    trigger = datetime(2026, 2, 24, 0, 0, tzinfo=UTC)

    started = orchestrator.reconcile(request, BackupRequestStatus(), now=trigger)
    within = orchestrator.reconcile(request, started.status, now=trigger + timedelta(minutes=2))
    stalled = orchestrator.reconcile(request, within.status, now=trigger + timedelta(minutes=6))

    assert started.status.run_in_progress
    assert within.status.run_in_progress
    assert within.finished_run is None
    assert stalled.finished_run is not None
    assert stalled.finished_run.success is False
    assert "exceeded ceiling of 300s" in stalled.finished_run.collections[0].message
    assert stalled.status.history == (stalled.finished_run,)


def test_reconcile_with_inconsistent_current_run_records_error_and_changes_nothing() -> None:
    api = Mock()
    open_collection = CollectionRunStatus(collection="books", backup_name="b")
    broken = BackupRun(
        sequence=1,
        run_id="nightly-1",
        started_at=_T0,
        collections=(open_collection,),
        finished_at=_T0,
        success=True,
    )
    status = BackupRequestStatus(current=broken, last_sequence=1)

    result = BackupOrchestrator(api).reconcile(_request(), status, now=_T0 + timedelta(hours=1))

    assert result.status.current is broken
    assert "collections are still open" in (result.status.error or "")
    api.start_backup.assert_not_called()


def test_reconcile_with_deprecated_persistence_uses_defaults_for_the_run() -> None:
    api = Mock()
    api.start_backup.return_value = "async-1"
    api.cluster_version.return_value = "9.6.1"
    request = replace(
        _request(schedule=None, collections=("books",)),
        repository_name="",
        persistence=PersistenceSource(s3=S3PersistenceSource(bucket="old-bucket")),
    )

    BackupOrchestrator(api).reconcile(request, BackupRequestStatus(), now=_T0)

    collection, repository, _, _ = api.start_backup.call_args.args
    assert collection == "books"
    assert repository == "legacy_local_repository"


def test_reconcile_with_finished_run_already_recorded_does_not_duplicate_history() -> None:
    done = BackupRun(
        sequence=1,
        run_id="nightly-1",
        started_at=_T0,
        collections=(
            CollectionRunStatus(
                collection="books",
                backup_name="nightly-1-books",
                outcome=Finished(success=True, finished_at=_T0, handle="h"),
            ),
        ),
        finished_at=_T0,
        success=True,
    )
    status = BackupRequestStatus(current=done, history=(done,), last_sequence=1)

    result = BackupOrchestrator(Mock()).reconcile(_request(schedule=None), status, now=_T0 + timedelta(hours=1))

    assert result.status.history == (done,)
    assert result.finished_run is None
    assert result.started_run is None


@pytest.mark.parametrize("max_saved", [1, 2, 5])
def test_reconcile_with_max_saved_never_keeps_more_runs_than_allowed(max_saved: int) -> None:
    orchestrator = BackupOrchestrator(_FakeSolr())

    status = _drive(orchestrator, _request(max_saved=max_saved), BackupRequestStatus(), seconds=70)

    assert len(status.history) == min(max_saved, 6)


def test_reconcile_with_cron_that_never_fires_records_error_without_starting_run() -> None:
    solr = _FakeSolr()

    result = BackupOrchestrator(solr).reconcile(
        _request(schedule="0 0 30 2 *"), BackupRequestStatus(), now=_T0 + timedelta(seconds=1)
    )

    assert result.started_run is None
    assert result.status.error is not None
    assert result.status.error.startswith("invalid schedule:")
    assert "never fires" in result.status.error
    assert result.status.next_scheduled_time is None
    assert solr.started == []


def test_reconcile_with_naive_now_treats_it_as_utc() -> None:
    orchestrator = BackupOrchestrator(_FakeSolr())

    result = orchestrator.reconcile(_request(), BackupRequestStatus(), now=datetime(2026, 2, 23, 9, 0, 10))

    assert result.started_run is not None
    assert result.started_run.started_at == _T0 + timedelta(seconds=10)
    assert result.status.next_scheduled_time == _T0 + timedelta(seconds=20)
