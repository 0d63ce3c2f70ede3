from __future__ import annotations

from dataclasses import replace
from datetime import datetime
import logging

from .models import BackupJobState, CollectionRunStatus, Finished, Pending, Running
from .solr import BackupApi, ExternalCallError

logger = logging.getLogger(__name__)


def step_collection(
    status: CollectionRunStatus,
    api: BackupApi,
    *,
    repository: str,
    location: str,
    run_id: str,
    now: datetime,
) -> CollectionRunStatus:
    """Advance one collection by at most one external call.

    Pending collections are submitted, running ones are polled once, and
    finished ones are returned untouched.
    """
    outcome = status.outcome
    if isinstance(outcome, Finished):
        return status
    if isinstance(outcome, Pending):
        return _trigger(status, api, repository=repository, location=location, run_id=run_id, now=now)
    return _poll(status, outcome, api, now=now)


def _trigger(
    status: CollectionRunStatus,
    api: BackupApi,
    *,
    repository: str,
    location: str,
    run_id: str,
    now: datetime,
) -> CollectionRunStatus:
    try:
        handle = api.start_backup(status.collection, repository, location, run_id)
    except ExternalCallError as error:
        logger.warning("Backup of collection %s in run %s could not be submitted: %s", status.collection, run_id, error)
        return replace(
            status,
            outcome=Finished(success=False, finished_at=now, started_at=now, message=str(error)),
        )

    return replace(status, outcome=Running(handle=handle, started_at=now, async_status="submitted"))


def _poll(status: CollectionRunStatus, outcome: Running, api: BackupApi, *, now: datetime) -> CollectionRunStatus:
    try:
        state = api.poll_backup(outcome.handle)
    except ExternalCallError as error:
        logger.warning("Polling backup of collection %s (%s) failed: %s", status.collection, outcome.handle, error)
        return replace(status, outcome=replace(outcome, message=str(error)))

    if state is BackupJobState.RUNNING:
        if outcome.async_status == state.value and not outcome.message:
            return status
        return replace(status, outcome=replace(outcome, async_status=state.value, message=""))

    success = state is BackupJobState.SUCCEEDED
    logger.info(
        "Backup of collection %s finished (%s)",
        status.collection,
        "succeeded" if success else "failed",
    )
    return replace(
        status,
        outcome=Finished(
            success=success,
            finished_at=now,
            started_at=outcome.started_at,
            handle=outcome.handle,
            async_status=state.value,
            message="" if success else "backup request reported failure",
        ),
    )
