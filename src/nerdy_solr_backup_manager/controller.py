from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from datetime import UTC, datetime, timedelta
import logging
import threading
from typing import Any, Callable

from .config import AppConfig
from .k8s import (
    KubernetesClients,
    KubernetesReconcileError,
    clear_deprecated_persistence,
    list_backup_objects,
    patch_backup_status,
)
from .manifest import (
    InvalidBackupRequestError,
    backup_request_from_object,
    format_time,
    status_from_object,
    status_to_object,
    with_defaults,
)
from .metadata import BackupJournal
from .models import BackupRequest, InconsistentStateError
from .orchestrator import BackupOrchestrator, ReconcileResult
from .solr import BackupApi, SolrAdminClient, solr_base_url

logger = logging.getLogger(__name__)

ApiFactory = Callable[[BackupRequest], BackupApi]


class BackupController:
    """Level-triggered reconcile loop over every SolrBackup object in scope."""

    def __init__(
        self,
        *,
        clients: KubernetesClients,
        config: AppConfig,
        journal: BackupJournal | None = None,
        api_factory: ApiFactory | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.clients = clients
        self.config = config
        self.journal = journal
        self.api_factory = api_factory or self._solr_api_for
        self._clock = clock or (lambda: datetime.now(tz=UTC))
        self._locks: dict[tuple[str, str], threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def reconcile_all(self) -> list[ReconcileResult]:
        try:
            objects = list_backup_objects(self.clients, namespace=self.config.namespace)
        except KubernetesReconcileError as error:
            logger.error("Skipping reconcile pass: %s", error)
            return []

        if not objects:
            return []

        workers = max(1, min(self.config.max_concurrent_reconciles, len(objects)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="nsbm-reconcile") as executor:
            outcomes = list(executor.map(self.reconcile_object, objects))
        return [outcome for outcome in outcomes if outcome is not None]

    def reconcile_object(self, obj: dict[str, Any]) -> ReconcileResult | None:
        try:
            request = backup_request_from_object(obj)
        except InvalidBackupRequestError as error:
            logger.error("Ignoring SolrBackup object: %s", error)
            return None

        with self._lock_for(request.key):
            try:
                return self._reconcile_locked(request, obj)
            except Exception:  # pylint: disable=broad-except
                logger.exception("Reconcile of SolrBackup %s/%s failed", request.namespace, request.name)
                return None

    def run_forever(self, stop_event: threading.Event) -> None:
        logger.info(
            "Backup controller started (namespace=%s, resync=%ss)",
            self.config.namespace or "<all>",
            int(self.config.resync_interval.total_seconds()),
        )
        while not stop_event.is_set():
            results = self.reconcile_all()
            delay = self.next_delay(results)
            logger.debug("Next reconcile pass in %.1fs", delay.total_seconds())
            stop_event.wait(delay.total_seconds())
        logger.info("Backup controller stopped")

    def next_delay(self, results: list[ReconcileResult]) -> timedelta:
        delay = self.config.resync_interval
        for result in results:
            if result.requeue_after is not None and result.requeue_after < delay:
                delay = result.requeue_after
        return max(delay, timedelta(seconds=1))

    def _reconcile_locked(self, request: BackupRequest, obj: dict[str, Any]) -> ReconcileResult | None:
        request, changed = with_defaults(request)
        if changed and (obj.get("spec") or {}).get("persistence") is not None:
            logger.info("Clearing deprecated persistence settings from %s/%s", request.namespace, request.name)
            try:
                clear_deprecated_persistence(self.clients, namespace=request.namespace, name=request.name)
            except KubernetesReconcileError as error:
                logger.warning("%s", error)

        try:
            status = status_from_object(obj)
        except (InconsistentStateError, InvalidBackupRequestError) as error:
            logger.error("SolrBackup %s/%s has unreadable status: %s", request.namespace, request.name, error)
            self._patch_status(request, {"error": f"unreadable status: {error}"})
            return None

        api = self.api_factory(request)
        try:
            orchestrator = BackupOrchestrator(
                api,
                run_ceiling=self.config.run_ceiling,
                poll_interval=self.config.poll_interval,
                clock=self._clock,
            )
            result = orchestrator.reconcile(request, status)
        finally:
            close = getattr(api, "close", None)
            if callable(close):
                close()

        self._patch_status(request, status_to_object(result.status))
        self._record(request, result)
        return result

    def _patch_status(self, request: BackupRequest, body: dict[str, Any]) -> None:
        try:
            patch_backup_status(self.clients, namespace=request.namespace, name=request.name, status=body)
        except KubernetesReconcileError as error:
            logger.error("%s", error)

    def _record(self, request: BackupRequest, result: ReconcileResult) -> None:
        if self.journal is None:
            return
        if result.finished_run is not None:
            self.journal.record_run(namespace=request.namespace, request_name=request.name, run=result.finished_run)
            self.journal.prune(self.config.journal_keep_latest)
        if result.eviction_failures:
            self.journal.record_eviction_failures(
                namespace=request.namespace,
                request_name=request.name,
                failures=result.eviction_failures,
                recorded_at=format_time(self._clock()) or "",
            )

    def _lock_for(self, key: tuple[str, str]) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    def _solr_api_for(self, request: BackupRequest) -> BackupApi:
        base_url = solr_base_url(
            cloud=request.solr_cloud,
            namespace=request.namespace,
            template=self.config.solr_url_template,
        )
        return SolrAdminClient(base_url, timeout_seconds=self.config.solr_timeout_seconds)
