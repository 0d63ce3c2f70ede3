from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
import os

from .solr import DEFAULT_REQUEST_TIMEOUT_SECONDS, DEFAULT_SOLR_URL_TEMPLATE


def _env_str(name: str, default: str) -> str:
    return os.getenv(name, default).strip() or default


def _env_optional(name: str) -> str | None:
    value = os.getenv(name, "").strip()
    return value or None


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name, "").strip()
    return int(value) if value else default


def _env_flag(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class AppConfig:
    namespace: str | None = field(default_factory=lambda: _env_optional("NSBM_NAMESPACE"))
    kubeconfig_path: str | None = field(default_factory=lambda: _env_optional("NSBM_KUBECONFIG"))
    context: str | None = field(default_factory=lambda: _env_optional("NSBM_CONTEXT"))
    in_cluster: bool = field(default_factory=lambda: _env_flag("NSBM_IN_CLUSTER"))
    solr_url_template: str = field(
        default_factory=lambda: _env_str("NSBM_SOLR_URL_TEMPLATE", DEFAULT_SOLR_URL_TEMPLATE)
    )
    solr_timeout_seconds: int = field(
        default_factory=lambda: _env_int("NSBM_SOLR_TIMEOUT_SECONDS", DEFAULT_REQUEST_TIMEOUT_SECONDS)
    )
    resync_interval_seconds: int = field(default_factory=lambda: _env_int("NSBM_RESYNC_INTERVAL_SECONDS", 60))
    poll_interval_seconds: int = field(default_factory=lambda: _env_int("NSBM_POLL_INTERVAL_SECONDS", 5))
    max_concurrent_reconciles: int = field(default_factory=lambda: _env_int("NSBM_MAX_CONCURRENT_RECONCILES", 4))
    run_ceiling_seconds: int = field(default_factory=lambda: _env_int("NSBM_RUN_CEILING_SECONDS", 0))
    journal_db_path: Path = field(
        default_factory=lambda: Path(_env_str("NSBM_JOURNAL_DB_PATH", "./data/backup-journal.db"))
    )
    journal_keep_latest: int = field(default_factory=lambda: _env_int("NSBM_JOURNAL_KEEP_LATEST", 1000))
    log_level: str = field(default_factory=lambda: _env_str("NSBM_LOG_LEVEL", "INFO").upper())

    @property
    def run_ceiling(self) -> timedelta | None:
        if self.run_ceiling_seconds <= 0:
            return None
        return timedelta(seconds=self.run_ceiling_seconds)

    @property
    def poll_interval(self) -> timedelta:
        return timedelta(seconds=max(1, self.poll_interval_seconds))

    @property
    def resync_interval(self) -> timedelta:
        return timedelta(seconds=max(1, self.resync_interval_seconds))


def ensure_directories(config: AppConfig) -> None:
    config.journal_db_path.parent.mkdir(parents=True, exist_ok=True)
