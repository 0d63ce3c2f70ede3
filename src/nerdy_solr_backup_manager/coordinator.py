from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta
import logging
from typing import Iterable

from .models import BackupRun, CollectionRunStatus, Finished, Running
from .solr import BackupApi, backup_artifact_name
from .stepper import step_collection

logger = logging.getLogger(__name__)


def run_identifier(request_name: str, sequence: int, started_at: datetime) -> str:
    return f"{request_name}-{sequence}-{started_at.strftime('%Y%m%d%H%M%S')}"


def start_run(
    *,
    request_name: str,
    sequence: int,
    collections: Iterable[str],
    cluster_version: str,
    now: datetime,
) -> BackupRun:
    run_id = run_identifier(request_name, sequence, now)
    statuses: list[CollectionRunStatus] = []
    seen: set[str] = set()
    for collection in collections:
        if collection in seen:
            continue
        seen.add(collection)
        statuses.append(CollectionRunStatus(collection=collection, backup_name=backup_artifact_name(run_id, collection)))

    return BackupRun(
        sequence=sequence,
        run_id=run_id,
        started_at=now,
        cluster_version=cluster_version,
        collections=tuple(statuses),
    )


def advance(
    run: BackupRun,
    api: BackupApi,
    *,
    repository: str,
    location: str,
    now: datetime,
) -> BackupRun:
    run.validate()
    if run.finished:
        return run

    statuses = tuple(
        step_collection(
            status,
            api,
            repository=repository,
            location=location,
            run_id=run.run_id,
            now=now,
        )
        for status in run.collections
    )
    return _conclude(replace(run, collections=statuses), now)


def fail_stalled(run: BackupRun, *, now: datetime, ceiling: timedelta) -> BackupRun:
    if run.finished or now - run.started_at <= ceiling:
        return run

    logger.warning("Backup run %s has been open longer than %s; failing unfinished collections", run.run_id, ceiling)
    message = f"run exceeded ceiling of {int(ceiling.total_seconds())}s"
    statuses: list[CollectionRunStatus] = []
    for status in run.collections:
        if status.finished:
            statuses.append(status)
            continue
        outcome = status.outcome
        statuses.append(
            replace(
                status,
                outcome=Finished(
                    success=False,
                    finished_at=now,
                    started_at=status.started_at,
                    handle=outcome.handle if isinstance(outcome, Running) else None,
                    async_status=status.async_status,
                    message=message,
                ),
            )
        )
    return _conclude(replace(run, collections=tuple(statuses)), now)


def _conclude(run: BackupRun, now: datetime) -> BackupRun:
    if not all(status.finished for status in run.collections):
        return run

    success = all(status.success for status in run.collections)
    logger.info("Backup run %s finished (%s)", run.run_id, "succeeded" if success else "failed")
    return replace(run, finished_at=now, success=success)
