from __future__ import annotations

from pathlib import Path
import sqlite3
from typing import Any, Iterable

from .manifest import format_time
from .models import BackupRun
from .retention import EvictionFailure


class BackupJournal:
    """Local audit trail of finished runs and artifact deletions that failed.

    The status subresource only keeps the newest ``maxSaved`` runs; this
    journal keeps a longer trail for the dashboard and the ``history`` command.
    """

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    def initialize(self) -> None:
        with sqlite3.connect(self.db_path) as connection:
            connection.execute(
                """
                CREATE TABLE IF NOT EXISTS run_history (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    namespace TEXT NOT NULL,
                    request_name TEXT NOT NULL,
                    run_id TEXT NOT NULL,
                    sequence INTEGER NOT NULL,
                    status TEXT NOT NULL,
                    cluster_version TEXT,
                    collections TEXT NOT NULL,
                    failed_collections TEXT NOT NULL,
                    started_at TEXT NOT NULL,
                    finished_at TEXT NOT NULL
                )
                """
            )
            connection.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_run_history_lookup
                ON run_history(namespace, request_name, status, finished_at)
                """
            )
            connection.execute(
                """
                CREATE TABLE IF NOT EXISTS eviction_failures (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    namespace TEXT NOT NULL,
                    request_name TEXT NOT NULL,
                    run_id TEXT NOT NULL,
                    backup_name TEXT NOT NULL,
                    message TEXT NOT NULL,
                    recorded_at TEXT NOT NULL
                )
                """
            )
            connection.commit()

    def record_run(self, *, namespace: str, request_name: str, run: BackupRun) -> None:
        if not run.finished:
            raise ValueError(f"backup run {run.run_id} has not finished")

        failed = [status.collection for status in run.collections if not status.success]
        with sqlite3.connect(self.db_path) as connection:
            connection.execute(
                """
                INSERT INTO run_history (
                    namespace,
                    request_name,
                    run_id,
                    sequence,
                    status,
                    cluster_version,
                    collections,
                    failed_collections,
                    started_at,
                    finished_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    namespace,
                    request_name,
                    run.run_id,
                    run.sequence,
                    "success" if run.success else "failed",
                    run.cluster_version,
                    ",".join(status.collection for status in run.collections),
                    ",".join(failed),
                    format_time(run.started_at),
                    format_time(run.finished_at),
                ),
            )
            connection.commit()

    def record_eviction_failures(
        self,
        *,
        namespace: str,
        request_name: str,
        failures: Iterable[EvictionFailure],
        recorded_at: str,
    ) -> None:
        rows = [
            (namespace, request_name, failure.run_id, failure.backup_name, failure.message, recorded_at)
            for failure in failures
        ]
        if not rows:
            return

        with sqlite3.connect(self.db_path) as connection:
            connection.executemany(
                """
                INSERT INTO eviction_failures (
                    namespace,
                    request_name,
                    run_id,
                    backup_name,
                    message,
                    recorded_at
                ) VALUES (?, ?, ?, ?, ?, ?)
                """,
                rows,
            )
            connection.commit()

    def get_last_success_map(self) -> dict[tuple[str, str], str]:
        with sqlite3.connect(self.db_path) as connection:
            cursor = connection.execute(
                """
                SELECT namespace, request_name, MAX(finished_at)
                FROM run_history
                WHERE status = 'success'
                GROUP BY namespace, request_name
                """
            )
            rows = cursor.fetchall()

        return {(namespace, request_name): last_success for namespace, request_name, last_success in rows}

    def get_recent_runs(self, limit: int = 50) -> list[dict[str, Any]]:
        if limit <= 0:
            return []

        with sqlite3.connect(self.db_path) as connection:
            cursor = connection.execute(
                """
                SELECT namespace, request_name, run_id, sequence, status, cluster_version,
                       collections, failed_collections, started_at, finished_at
                FROM run_history
                ORDER BY finished_at DESC, id DESC
                LIMIT ?
                """,
                (limit,),
            )
            rows = cursor.fetchall()

        return [
            {
                "namespace": row[0],
                "request_name": row[1],
                "run_id": row[2],
                "sequence": row[3],
                "status": row[4],
                "cluster_version": row[5],
                "collections": row[6],
                "failed_collections": row[7],
                "started_at": row[8],
                "finished_at": row[9],
            }
            for row in rows
        ]

    def get_eviction_failures(self, limit: int = 50) -> list[dict[str, Any]]:
        if limit <= 0:
            return []

        with sqlite3.connect(self.db_path) as connection:
            cursor = connection.execute(
                """
                SELECT namespace, request_name, run_id, backup_name, message, recorded_at
                FROM eviction_failures
                ORDER BY recorded_at DESC, id DESC
                LIMIT ?
                """,
                (limit,),
            )
            rows = cursor.fetchall()

        return [
            {
                "namespace": row[0],
                "request_name": row[1],
                "run_id": row[2],
                "backup_name": row[3],
                "message": row[4],
                "recorded_at": row[5],
            }
            for row in rows
        ]

    def count_runs(self) -> int:
        with sqlite3.connect(self.db_path) as connection:
            cursor = connection.execute("SELECT COUNT(*) FROM run_history")
            row = cursor.fetchone()

        return int(row[0]) if row else 0

    def get_retention_candidate_ids(self, keep_latest: int) -> list[int]:
        if keep_latest < 0:
            raise ValueError("keep_latest must be >= 0")

        with sqlite3.connect(self.db_path) as connection:
            cursor = connection.execute(
                """
                SELECT id
                FROM run_history
                ORDER BY finished_at DESC, id DESC
                LIMIT -1 OFFSET ?
                """,
                (keep_latest,),
            )
            rows = cursor.fetchall()

        return [int(row[0]) for row in rows]

    def prune(self, keep_latest: int) -> int:
        candidate_ids = self.get_retention_candidate_ids(keep_latest)
        if not candidate_ids:
            return 0

        with sqlite3.connect(self.db_path) as connection:
            connection.executemany("DELETE FROM run_history WHERE id = ?", [(run_id,) for run_id in candidate_ids])
            connection.commit()
        return len(candidate_ids)
