"""Command line interface for ClickHouse disaster recovery.

Usage:
    ch-dr backup
    ch-dr --k8s backup --databases db1,db2 --strict
    ch-dr --ssh restore clickhouse_ssh_backup_20250101_020000.tar.gz
    ch-dr list
    ch-dr verify
    ch-dr create-config ./ch-dr-config.yaml
    ch-dr serve

Commands:
    backup         - Back up databases into a new artifact
    restore        - Restore databases from an artifact
    list           - List artifacts in the backup directory and on S3
    verify         - Check that ClickHouse is reachable on the target
    create-config  - Write a sample configuration file
    serve          - Run scheduled backups with a health endpoint

Exit codes:
    0    success
    1    fatal error
    2    completed with failures (with --strict or fail_on_partial)
    130  cancelled
"""

import argparse
import contextlib
import logging
import signal
import threading
from typing import Iterator, Optional

from rich.console import Console
from rich.table import Table

from chdr import configure_logging, create_app
from chdr.config import DEFAULT_CONFIG_FILE, Config, ConfigError, create_sample_config, load_config
from chdr.models import ExecutionTarget, TargetKind, Tier
from chdr.backup.catalog import ArtifactNotFoundError, Catalog
from chdr.backup.compression import CompressionError
from chdr.backup.engine import BackupEngine, BackupError, RunCancelled
from chdr.backup.restore import RestoreEngine, RestoreError
from chdr.backup.storage import LocalStorage, StorageError, create_s3_storage
from chdr.backup.targets import ExecutorError, create_executor

console = Console()
logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_PARTIAL = 2
EXIT_CANCELLED = 130


# ============================================================================
# Helpers
# ============================================================================


def _target(args: argparse.Namespace) -> ExecutionTarget:
    return ExecutionTarget(kind=TargetKind(args.target))


@contextlib.contextmanager
def _cancel_on_signals(cancel_event: threading.Event) -> Iterator[None]:
    """Set cancel_event on SIGINT/SIGTERM while the block runs."""

    def _handler(signum, frame):
        logger.warning(f"Received {signal.Signals(signum).name}, cancelling")
        cancel_event.set()

    previous = {}
    for signum in (signal.SIGINT, signal.SIGTERM):
        previous[signum] = signal.signal(signum, _handler)

    try:
        yield
    finally:
        for signum, handler in previous.items():
            signal.signal(signum, handler)


def _format_size(size: Optional[int]) -> str:
    if size is None:
        return "-"
    return f"{size / 1024 / 1024:.2f} MB"


def _print_failures(failures: list) -> None:
    if not failures:
        return
    console.print(f"\n[bold yellow]{len(failures)} failure(s):[/bold yellow]")
    for failure in failures:
        console.print(f"  [red]-[/red] {failure}")


def _print_backup_summary(manifest) -> None:
    summary = manifest.summary()

    table = Table(title="Backup Summary", show_header=False)
    table.add_column("Key", style="dim")
    table.add_column("Value")

    table.add_row("Environment", summary['environment'])
    table.add_row("Timestamp", summary['timestamp'])
    table.add_row("Databases attempted", str(summary['databases_attempted']))
    table.add_row("Databases backed up", str(summary['databases_backed_up']))
    table.add_row("Databases skipped", str(summary['databases_skipped']))
    table.add_row("Databases failed", str(summary['databases_failed']))
    table.add_row("Tables attempted", str(summary['tables_attempted']))
    table.add_row("Tables failed", str(summary['tables_failed']))
    table.add_row("Archive", summary['archive_path'] or "-")
    if summary['remote_key']:
        table.add_row("S3 key", summary['remote_key'])

    console.print(table)
    _print_failures(summary['failures'])


def _print_restore_summary(report) -> None:
    summary = report.summary()

    table = Table(title="Restore Summary")
    table.add_column("Database")
    table.add_column("Strategy", style="dim")
    table.add_column("Tables", justify="right")
    table.add_column("Failed", justify="right")

    for database in report.databases:
        failed = len([t for t in database.tables if t.errors])
        table.add_row(
            database.name,
            database.strategy.value,
            str(len(database.tables)),
            f"[red]{failed}[/red]" if failed or database.errors else "0",
        )

    console.print(table)
    console.print(
        f"Artifact: [bold]{summary['artifact']}[/bold] "
        f"([dim]{summary['source_tier'] or 'unknown'} tier[/dim])"
    )
    _print_failures(summary['failures'])


def _exit_code(has_failures: bool, strict: bool) -> int:
    if has_failures and strict:
        return EXIT_PARTIAL
    return EXIT_OK


# ============================================================================
# Command implementations
# ============================================================================


def cmd_backup(args: argparse.Namespace, config: Config) -> int:
    """Run one backup.

    Returns:
        Exit code.
    """
    selection = [db.strip() for db in (args.databases or "").split(",") if db.strip()]
    executor = create_executor(_target(args), config)
    cancel_event = threading.Event()
    engine = None

    try:
        # BackupEngine.run verifies the target; retention runs even when that fails
        console.print(f"Connecting to ClickHouse ({executor.describe()})...", style="dim")
        engine = BackupEngine(
            config,
            executor,
            LocalStorage(config.backup_dir),
            create_s3_storage(config),
            cancel_event=cancel_event,
        )
        with _cancel_on_signals(cancel_event):
            manifest = engine.run(selection)

    except RunCancelled:
        console.print("[bold yellow]Backup cancelled[/bold yellow]")
        return EXIT_CANCELLED
    except (ExecutorError, BackupError, CompressionError, StorageError) as e:
        console.print(f"[bold red]x[/bold red] Backup failed: {e}")
        if engine is not None and engine.manifest is not None:
            _print_backup_summary(engine.manifest)
        return EXIT_FATAL
    finally:
        executor.cleanup()

    _print_backup_summary(manifest)

    if manifest.has_failures:
        console.print("[yellow]Backup completed with failures[/yellow]")
    else:
        console.print(f"[bold green]v[/bold green] Backup completed: {manifest.archive_path}")

    return _exit_code(manifest.has_failures, args.strict or config.fail_on_partial)


def cmd_restore(args: argparse.Namespace, config: Config) -> int:
    """Restore from an artifact.

    Returns:
        Exit code.
    """
    executor = create_executor(_target(args), config)
    cancel_event = threading.Event()
    engine = None

    try:
        console.print(f"Connecting to ClickHouse ({executor.describe()})...", style="dim")
        executor.verify()

        catalog = Catalog(LocalStorage(config.backup_dir), create_s3_storage(config), config.s3_path)
        engine = RestoreEngine(config, executor, catalog, cancel_event=cancel_event)
        with _cancel_on_signals(cancel_event):
            report = engine.run(args.artifact)

    except RunCancelled:
        console.print("[bold yellow]Restore cancelled[/bold yellow]")
        return EXIT_CANCELLED
    except ArtifactNotFoundError as e:
        console.print(f"[bold red]x[/bold red] {e}")
        return EXIT_FATAL
    except (ExecutorError, RestoreError, CompressionError, StorageError) as e:
        console.print(f"[bold red]x[/bold red] Restore failed: {e}")
        if engine is not None and engine.report is not None and engine.report.databases:
            _print_restore_summary(engine.report)
        return EXIT_FATAL
    finally:
        executor.cleanup()

    _print_restore_summary(report)

    if report.has_failures:
        console.print("[yellow]Restore completed with failures[/yellow]")
    else:
        console.print("[bold green]v[/bold green] Restore completed")

    return _exit_code(report.has_failures, args.strict or config.fail_on_partial)


def cmd_list(args: argparse.Namespace, config: Config) -> int:
    """List artifacts on both tiers.

    Returns:
        0 on success, 1 if the local backup directory cannot be read.
    """
    try:
        catalog = Catalog(LocalStorage(config.backup_dir), create_s3_storage(config), config.s3_path)
        artifacts = catalog.list_artifacts(Tier.LOCAL)
    except StorageError as e:
        console.print(f"[bold red]x[/bold red] {e}")
        return EXIT_FATAL

    if catalog.s3_storage is not None:
        try:
            artifacts += catalog.list_artifacts(Tier.REMOTE)
        except StorageError as e:
            console.print(f"[yellow]Could not list S3 backups: {e}[/yellow]")

    if not artifacts:
        console.print("[yellow]No backups found.[/yellow]")
        return EXIT_OK

    table = Table(title="Backups")
    table.add_column("Name")
    table.add_column("Tier", style="dim")
    table.add_column("Timestamp")
    table.add_column("Size", justify="right")

    for artifact in sorted(artifacts, key=lambda a: (a.timestamp, a.tier.value), reverse=True):
        table.add_row(
            artifact.name,
            artifact.tier.value,
            artifact.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            _format_size(artifact.size),
        )

    console.print(table)
    return EXIT_OK


def cmd_verify(args: argparse.Namespace, config: Config) -> int:
    """Check the execution target and S3 access.

    Returns:
        0 when everything configured is reachable, 1 otherwise.
    """
    executor = create_executor(_target(args), config)
    ok = True

    try:
        executor.verify()
        console.print(f"[bold green]v[/bold green] ClickHouse reachable ({executor.describe()})")
    except ExecutorError as e:
        console.print(f"[bold red]x[/bold red] ClickHouse unreachable: {e}")
        ok = False
    finally:
        executor.cleanup()

    if config.use_s3:
        try:
            create_s3_storage(config).test_connection()
            console.print(f"[bold green]v[/bold green] S3 bucket reachable ({config.s3_bucket})")
        except StorageError as e:
            console.print(f"[bold red]x[/bold red] S3 check failed: {e}")
            ok = False

    return EXIT_OK if ok else EXIT_FATAL


def cmd_create_config(args: argparse.Namespace) -> int:
    """Write a sample configuration file.

    Returns:
        0 on success, 1 on failure.
    """
    try:
        path = create_sample_config(args.path)
    except ConfigError as e:
        console.print(f"[bold red]x[/bold red] {e}")
        return EXIT_FATAL

    console.print(f"Sample configuration created at [bold]{path}[/bold]")
    console.print("[dim]Edit it and save it as[/dim] [cyan]./ch-dr-config.yaml[/cyan]")
    return EXIT_OK


def cmd_serve(args: argparse.Namespace, config: Config) -> int:
    """Run the scheduler and health endpoint until interrupted.

    Returns:
        Exit code.
    """
    from chdr.scheduler import init_scheduler, start_scheduler, stop_scheduler, trigger_backup_now

    app = create_app(config)

    init_scheduler(config, _target(args))
    try:
        start_scheduler()
        if config.backup_on_start:
            trigger_backup_now()

        console.print(f"Health endpoint listening on port {config.health_port}", style="dim")
        app.run(host="0.0.0.0", port=config.health_port)
    finally:
        stop_scheduler()

    return EXIT_OK


# ============================================================================
# Entry point
# ============================================================================


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ch-dr",
        description="ClickHouse disaster recovery: backup and restore",
    )

    parser.add_argument(
        "--config",
        "-c",
        default=DEFAULT_CONFIG_FILE,
        help=f"Configuration file (default: {DEFAULT_CONFIG_FILE})",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging",
    )

    target_group = parser.add_mutually_exclusive_group()
    target_group.add_argument(
        "--target",
        choices=[kind.value for kind in TargetKind],
        default=TargetKind.LOCAL.value,
        help="Where clickhouse-client runs (default: local)",
    )
    target_group.add_argument(
        "--onprem",
        dest="target",
        action="store_const",
        const=TargetKind.LOCAL.value,
        help="Shortcut for --target local",
    )
    target_group.add_argument(
        "--k8s",
        dest="target",
        action="store_const",
        const=TargetKind.KUBERNETES.value,
        help="Shortcut for --target k8s",
    )
    target_group.add_argument(
        "--ssh",
        dest="target",
        action="store_const",
        const=TargetKind.SSH.value,
        help="Shortcut for --target ssh",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # backup command
    p_backup = subparsers.add_parser("backup", help="Back up databases")
    p_backup.add_argument(
        "--databases",
        "-d",
        help="Comma-separated databases (default: configured list, or all)",
    )
    p_backup.add_argument(
        "--strict",
        action="store_true",
        help="Exit with code 2 when any table or database failed",
    )
    p_backup.set_defaults(func=cmd_backup)

    # restore command
    p_restore = subparsers.add_parser("restore", help="Restore from a backup artifact")
    p_restore.add_argument("artifact", help="Artifact path, file name or S3 object name")
    p_restore.add_argument(
        "--strict",
        action="store_true",
        help="Exit with code 2 when any table or database failed",
    )
    p_restore.set_defaults(func=cmd_restore)

    # list command
    p_list = subparsers.add_parser("list", help="List available backups")
    p_list.set_defaults(func=cmd_list)

    # verify command
    p_verify = subparsers.add_parser("verify", help="Check connectivity")
    p_verify.set_defaults(func=cmd_verify)

    # create-config command
    p_create = subparsers.add_parser("create-config", help="Write a sample configuration file")
    p_create.add_argument("path", nargs="?", help=f"Output path (default: {DEFAULT_CONFIG_FILE}.sample)")
    p_create.set_defaults(func=cmd_create_config, needs_config=False)

    # serve command
    p_serve = subparsers.add_parser("serve", help="Run scheduled backups with a health endpoint")
    p_serve.set_defaults(func=cmd_serve)

    return parser


def main(argv: Optional[list] = None) -> int:
    """Main CLI entry point.

    Parses command line arguments and dispatches to appropriate handler.

    Returns:
        Exit code (0 for success, non-zero for errors).
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    if not getattr(args, "needs_config", True):
        return args.func(args)

    try:
        config = load_config(args.config)
    except ConfigError as e:
        console.print(f"[bold red]x[/bold red] {e}")
        return EXIT_FATAL

    configure_logging(config.log_file, debug=args.debug or config.debug)

    return args.func(args, config)
