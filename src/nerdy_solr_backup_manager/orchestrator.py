from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import UTC, datetime, timedelta
import logging
from typing import Callable

from .coordinator import advance, fail_stalled, start_run
from .manifest import with_defaults
from .models import BackupRequest, BackupRequestStatus, BackupRun, InconsistentStateError
from .retention import EvictionFailure, RetentionManager
from .schedule import InvalidScheduleError, is_due, next_due
from .solr import BackupApi, ExternalCallError

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = timedelta(seconds=5)


@dataclass(frozen=True)
class ReconcileResult:
    status: BackupRequestStatus
    started_run: BackupRun | None = None
    finished_run: BackupRun | None = None
    evicted: tuple[BackupRun, ...] = ()
    eviction_failures: tuple[EvictionFailure, ...] = ()
    requeue_after: timedelta | None = None


class BackupOrchestrator:
    """Reconciles one backup request per call into a freshly built status.

    Calls for the same request must be serialized by the caller; calls for
    different requests share nothing.
    """

    def __init__(
        self,
        api: BackupApi,
        *,
        run_ceiling: timedelta | None = None,
        poll_interval: timedelta = DEFAULT_POLL_INTERVAL,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.api = api
        self.run_ceiling = run_ceiling
        self.poll_interval = poll_interval
        self.retention = RetentionManager(api)
        self._clock = clock or (lambda: datetime.now(tz=UTC))

    def reconcile(
        self,
        request: BackupRequest,
        status: BackupRequestStatus,
        now: datetime | None = None,
    ) -> ReconcileResult:
        request, _ = with_defaults(request)
        now = now or self._clock()
        if now.tzinfo is None:
            now = now.replace(tzinfo=UTC)
        error: str | None = None
        started_run: BackupRun | None = None
        finished_run: BackupRun | None = None
        result_evicted: tuple[BackupRun, ...] = ()
        failures: tuple[EvictionFailure, ...] = ()

        current = status.current
        history = status.history
        last_sequence = status.last_sequence

        if current is not None:
            try:
                current.validate()
            except InconsistentStateError as exc:
                logger.error("Backup %s/%s has inconsistent status: %s", request.namespace, request.name, exc)
                return ReconcileResult(status=replace(status, error=str(exc)))

        if current is None or current.finished:
            try:
                due = self._run_due(request, status, now)
            except InvalidScheduleError as exc:
                logger.error("Backup %s/%s has an invalid schedule: %s", request.namespace, request.name, exc)
                due = False
                error = f"invalid schedule: {exc}"

            if due:
                try:
                    started_run = self._start_run(request, last_sequence + 1, now)
                except ExternalCallError as exc:
                    logger.warning("Backup %s/%s could not start a run: %s", request.namespace, request.name, exc)
                    error = str(exc)
                else:
                    current = started_run
                    last_sequence = started_run.sequence

        if current is not None and not current.finished:
            if self.run_ceiling is not None:
                current = fail_stalled(current, now=now, ceiling=self.run_ceiling)
            try:
                current = advance(
                    current,
                    self.api,
                    repository=request.repository_name,
                    location=request.location,
                    now=now,
                )
            except InconsistentStateError as exc:
                logger.error("Backup %s/%s run could not advance: %s", request.namespace, request.name, exc)
                return ReconcileResult(status=replace(status, error=str(exc)))

            if current.finished:
                finished_run = current
                history = history + (current,)
                if request.recurrence is not None:
                    retention = self.retention.apply(
                        history,
                        request.recurrence.max_saved,
                        repository=request.repository_name,
                        location=request.location,
                    )
                    history = retention.kept
                    result_evicted = retention.evicted
                    failures = retention.failures

        next_scheduled_time = None
        if request.recurrence_enabled and error is None:
            try:
                next_scheduled_time = self._next_scheduled_time(request, current, now)
            except InvalidScheduleError as exc:
                logger.error("Backup %s/%s has an invalid schedule: %s", request.namespace, request.name, exc)
                error = f"invalid schedule: {exc}"

        new_status = BackupRequestStatus(
            current=current,
            history=history,
            next_scheduled_time=next_scheduled_time,
            last_sequence=last_sequence,
            error=error,
        )
        return ReconcileResult(
            status=new_status,
            started_run=started_run,
            finished_run=finished_run,
            evicted=result_evicted,
            eviction_failures=failures,
            requeue_after=self._requeue_after(new_status, now),
        )

    def _run_due(self, request: BackupRequest, status: BackupRequestStatus, now: datetime) -> bool:
        if request.recurrence is None:
            # One-shot requests run exactly once.
            return status.current is None and status.last_sequence == 0
        if request.recurrence.disabled:
            return False

        reference = self._schedule_reference(request, status.current)
        if reference is None:
            return True
        return is_due(request.recurrence.schedule, reference, now)

    def _next_scheduled_time(self, request: BackupRequest, current: BackupRun | None, now: datetime) -> datetime | None:
        assert request.recurrence is not None
        reference = self._schedule_reference(request, current)
        return next_due(request.recurrence.schedule, reference or now)

    @staticmethod
    def _schedule_reference(request: BackupRequest, current: BackupRun | None) -> datetime | None:
        if current is not None:
            return current.started_at
        return request.creation_timestamp

    def _start_run(self, request: BackupRequest, sequence: int, now: datetime) -> BackupRun:
        collections = request.collections or tuple(self.api.list_collections())
        try:
            cluster_version = self.api.cluster_version()
        except ExternalCallError as exc:
            logger.warning("Could not read cluster version for %s/%s: %s", request.namespace, request.name, exc)
            cluster_version = ""

        run = start_run(
            request_name=request.name,
            sequence=sequence,
            collections=collections,
            cluster_version=cluster_version,
            now=now,
        )
        logger.info(
            "Started backup run %s for %s/%s covering %d collection(s)",
            run.run_id,
            request.namespace,
            request.name,
            len(run.collections),
        )
        return run

    def _requeue_after(self, status: BackupRequestStatus, now: datetime) -> timedelta | None:
        if status.run_in_progress:
            return self.poll_interval
        if status.next_scheduled_time is not None:
            return max(timedelta(0), status.next_scheduled_time - now)
        return None
