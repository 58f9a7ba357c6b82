from __future__ import annotations

from typing import Sequence
import argparse
import logging
import signal
import sys
import threading

from .backup import BackupOrchestrator
from .config import AppConfig, ConfigurationError
from .k8s import KubernetesAuthenticationError, discover_volumes, load_kubernetes_clients
from .logging_setup import configure_logging
from .restic import ResticClient, ResticCommandError
from .scheduler import BackupScheduler

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="local-pvc-backup",
        description="Back up local-path PVCs of this node to an S3 restic repository.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Run the backup service")
    run_parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single backup cycle and exit",
    )

    # Arguments after "restic" bypass argparse so restic receives its own flags, --help included.
    subparsers.add_parser(
        "restic",
        help="Execute a restic command with the repository environment injected",
        add_help=False,
    )
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    arguments = list(sys.argv[1:] if argv is None else argv)
    restic_args: list[str] | None = None
    if arguments and arguments[0] == "restic":
        restic_args = arguments[1:]
        arguments = arguments[:1]
    args = build_parser().parse_args(arguments)

    try:
        app_config = AppConfig.from_env()
    except ConfigurationError as error:
        configure_logging("info")
        logger.error("Failed to load configuration: %s", error)
        return 1

    configure_logging(app_config.log_level)

    if args.command == "restic":
        return run_restic_passthrough(app_config, restic_args or [])
    return run_backup_service(app_config, once=args.once)


def run_restic_passthrough(app_config: AppConfig, restic_args: Sequence[str]) -> int:
    if not restic_args:
        logger.error("Please provide a restic command")
        return 2

    client = ResticClient(target=app_config.repository, binary=app_config.restic_binary)
    try:
        return client.passthrough(restic_args)
    except ResticCommandError as error:
        logger.error("Failed to execute restic command: %s", error)
        return 1


def run_backup_service(
    app_config: AppConfig,
    *,
    once: bool = False,
    stop_event: threading.Event | None = None,
) -> int:
    try:
        clients = load_kubernetes_clients(
            mode=app_config.kube_auth_mode,
            kubeconfig_path=app_config.kubeconfig_path,
            context=app_config.kube_context,
        )
    except KubernetesAuthenticationError as error:
        logger.error("Failed to create Kubernetes client: %s", error)
        return 1

    restic = ResticClient(target=app_config.repository, binary=app_config.restic_binary)
    try:
        restic.ensure_repository()
    except ResticCommandError as error:
        logger.error("Failed to ensure restic repository: %s", error)
        return 1

    orchestrator = BackupOrchestrator(
        discover=lambda: discover_volumes(
            clients,
            node_name=app_config.node_name,
            storage_path=app_config.storage_path,
            request_timeout_seconds=app_config.request_timeout_seconds,
        ),
        restic=restic,
        retention=app_config.retention,
    )
    scheduler = BackupScheduler(
        cycle=lambda: _log_cycle_report(orchestrator),
        interval_seconds=app_config.interval_seconds,
        stop_event=stop_event,
    )
    if stop_event is None:
        _install_signal_handlers(scheduler)

    logger.info("Starting backup service on node %s, repository %s", app_config.node_name, restic.repository)
    scheduler.run(max_cycles=1 if once else None)
    logger.info("Backup service stopped")
    return 0


def _log_cycle_report(orchestrator: BackupOrchestrator) -> None:
    report = orchestrator.perform_backup_cycle()
    logger.info(
        "Backup cycle finished: %d PVC(s) backed up, cleanup %s",
        report.backed_up_count,
        report.cleanup_status,
    )


def _install_signal_handlers(scheduler: BackupScheduler) -> None:
    def _handle(signum: int, _frame: object) -> None:
        logger.info("Received shutdown signal: %s", signal.Signals(signum).name)
        scheduler.stop()

    signal.signal(signal.SIGINT, _handle)
    signal.signal(signal.SIGTERM, _handle)
