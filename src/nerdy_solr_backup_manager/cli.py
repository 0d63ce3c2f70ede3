from __future__ import annotations

import argparse
from datetime import UTC, datetime
import logging
import signal
import sys
import threading
from typing import Sequence

from .config import AppConfig, ensure_directories
from .controller import BackupController
from .k8s import KubernetesAuthenticationError, load_kubernetes_clients
from .manifest import InvalidBackupRequestError, format_time, parse_time
from .metadata import BackupJournal
from .schedule import InvalidScheduleError, upcoming

logger = logging.getLogger(__name__)

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str) -> None:
    logging.basicConfig(level=level.upper(), format=_LOG_FORMAT, stream=sys.stderr, force=True)
    # The Kubernetes client logs every request at DEBUG.
    logging.getLogger("kubernetes").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="nsbm", description="Recurring SolrCloud backup controller.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Reconcile SolrBackup objects until interrupted.")
    run_parser.add_argument("--once", action="store_true", help="Run a single reconcile pass and exit.")

    next_parser = subparsers.add_parser("next-due", help="Print upcoming trigger times for a schedule.")
    next_parser.add_argument("schedule", help='Schedule expression, e.g. "@every 1h" or "CRON_TZ=UTC 0 6 * * *".')
    next_parser.add_argument("--from", dest="reference", default=None, help="Reference time (RFC 3339). Defaults to now.")
    next_parser.add_argument("--count", type=int, default=5, help="Number of trigger times to print.")

    history_parser = subparsers.add_parser("history", help="Show recently finished runs from the local journal.")
    history_parser.add_argument("--limit", type=int, default=20)

    return parser


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    config = AppConfig()
    configure_logging(config.log_level)

    if args.command == "next-due":
        return _print_next_due(args.schedule, reference=args.reference, count=args.count)
    if args.command == "history":
        return _print_history(config, limit=args.limit)
    return _run_controller(config, once=args.once)


def _print_next_due(schedule: str, *, reference: str | None, count: int) -> int:
    try:
        reference_time = parse_time(reference) or datetime.now(tz=UTC)
        trigger_times = upcoming(schedule, reference_time, count)
    except (InvalidScheduleError, InvalidBackupRequestError) as error:
        print(f"error: {error}", file=sys.stderr)
        return 2

    for trigger_time in trigger_times:
        print(format_time(trigger_time))
    return 0


def _print_history(config: AppConfig, *, limit: int) -> int:
    ensure_directories(config)
    journal = BackupJournal(config.journal_db_path)
    journal.initialize()
    rows = journal.get_recent_runs(limit=limit)
    if not rows:
        print("No finished backup runs recorded yet.")
        return 0

    for row in rows:
        failed = f" failed={row['failed_collections']}" if row["failed_collections"] else ""
        print(
            f"{row['finished_at']} {row['namespace']}/{row['request_name']} "
            f"#{row['sequence']} {row['status']} collections={row['collections']}{failed}"
        )
    return 0


def _run_controller(config: AppConfig, *, once: bool) -> int:
    ensure_directories(config)
    try:
        clients = load_kubernetes_clients(
            kubeconfig_path=config.kubeconfig_path,
            context=config.context,
            in_cluster=config.in_cluster,
        )
    except KubernetesAuthenticationError as error:
        logger.error("%s", error)
        return 1

    journal = BackupJournal(config.journal_db_path)
    journal.initialize()
    controller = BackupController(clients=clients, config=config, journal=journal)

    if once:
        results = controller.reconcile_all()
        logger.info("Reconciled %d SolrBackup object(s)", len(results))
        return 0

    stop_event = threading.Event()

    def _stop(signum: int, _frame: object) -> None:
        logger.info("Received signal %s, shutting down", signum)
        stop_event.set()

    signal.signal(signal.SIGTERM, _stop)
    signal.signal(signal.SIGINT, _stop)
    controller.run_forever(stop_event)
    return 0


if __name__ == "__main__":
    sys.exit(main())
