from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Sequence

from .models import BackupRun
from .solr import BackupApi, ExternalCallError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EvictionFailure:
    run_id: str
    backup_name: str
    message: str


@dataclass(frozen=True)
class RetentionResult:
    kept: tuple[BackupRun, ...]
    evicted: tuple[BackupRun, ...]
    failures: tuple[EvictionFailure, ...] = ()


def trim(history: Sequence[BackupRun], max_saved: int) -> tuple[tuple[BackupRun, ...], tuple[BackupRun, ...]]:
    if max_saved < 1:
        raise ValueError("max_saved must be >= 1")

    ordered = sorted(history, key=lambda run: run.sort_key)
    excess = max(0, len(ordered) - max_saved)
    return tuple(ordered[excess:]), tuple(ordered[:excess])


class RetentionManager:
    def __init__(self, api: BackupApi) -> None:
        self.api = api

    def apply(
        self,
        history: Sequence[BackupRun],
        max_saved: int,
        *,
        repository: str,
        location: str,
    ) -> RetentionResult:
        kept, evicted = trim(history, max_saved)
        failures: list[EvictionFailure] = []
        for run in evicted:
            logger.info("Evicting backup run %s (started %s)", run.run_id, run.started_at.isoformat())
            failures.extend(self.delete_run_artifacts(run, repository=repository, location=location))
        return RetentionResult(kept=kept, evicted=evicted, failures=tuple(failures))

    def delete_run_artifacts(self, run: BackupRun, *, repository: str, location: str) -> list[EvictionFailure]:
        failures: list[EvictionFailure] = []
        for status in run.collections:
            # Collections that were never submitted left nothing behind.
            if status.handle is None:
                continue
            try:
                points = self.api.list_backups(repository, location, status.backup_name)
                for point in points:
                    self.api.delete_backup(repository, location, status.backup_name, point.id)
            except ExternalCallError as error:
                logger.warning("Could not delete backup artifact %s of run %s: %s", status.backup_name, run.run_id, error)
                failures.append(EvictionFailure(run_id=run.run_id, backup_name=status.backup_name, message=str(error)))
        return failures
