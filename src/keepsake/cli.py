"""
Command-line interface for Keepsake.

Provides commands to find target volumes, create, list, inspect, verify,
restore and delete backups, and to manage the configuration.

Uses Python's argparse module (no external CLI libraries).
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
import threading
from pathlib import Path
from typing import Any, NoReturn

from keepsake import __version__
from keepsake.backup.engine import BackupEngine
from keepsake.backup.pipeline import BackupResult, PipelineState
from keepsake.config.settings import (
    ConfigurationError,
    Settings,
    get_config_path,
    load_config,
    save_config,
    settings_to_dict,
)
from keepsake.errors import BackupNotFoundError, KeepsakeError, TargetBusyError
from keepsake.events import BACKUP_LOG, BACKUP_PROGRESS, EventChannel

# Set up logging
logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2
EXIT_CANCELLED = 130

# Global verbosity settings (set during main() based on args)
_quiet_mode = False
_verbose_level = 0


def set_output_mode(quiet: bool = False, verbose: int = 0) -> None:
    """
    Set the output mode for the CLI.

    Args:
        quiet: If True, suppress non-essential output.
        verbose: Verbosity level (0=normal, 1+=verbose).
    """
    global _quiet_mode, _verbose_level
    _quiet_mode = quiet
    _verbose_level = verbose


def output(message: str = "", force: bool = False) -> None:
    """
    Print a message to stdout, respecting quiet mode.

    Args:
        message: The message to print.
        force: If True, print even in quiet mode (for essential output like JSON).
    """
    if force or not _quiet_mode:
        print(message)


def output_verbose(message: str, level: int = 1) -> None:
    """Print a message only if verbosity is at least level."""
    if _verbose_level >= level and not _quiet_mode:
        print(message)


def output_error(message: str) -> None:
    """Print an error message (always shown, even in quiet mode)."""
    print(message, file=sys.stderr)


def output_json(data: Any) -> None:
    output(json.dumps(data, indent=2), force=True)


def format_size(size_bytes: int) -> str:
    """Human-readable byte count."""
    size = float(size_bytes)
    for unit in ("B", "KB", "MB", "GB"):
        if size < 1024 or unit == "GB":
            return f"{size:.0f} {unit}" if unit == "B" else f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} GB"


def create_parser() -> argparse.ArgumentParser:
    """Create and configure the argument parser for the Keepsake CLI."""
    parser = argparse.ArgumentParser(
        prog="keepsake",
        description="Back up directories and machine state to a target volume",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"keepsake {__version__}",
    )

    parser.add_argument(
        "--config",
        metavar="PATH",
        help="Override config file location (default: ~/.keepsake/config.yaml)",
    )

    parser.add_argument(
        "-v", "--verbose",
        action="count",
        default=0,
        help="Increase output verbosity (can be repeated)",
    )

    parser.add_argument(
        "-q", "--quiet",
        action="store_true",
        help="Suppress non-essential output",
    )

    subparsers = parser.add_subparsers(
        title="commands",
        dest="command",
        metavar="<command>",
    )

    def add_target(sub: argparse.ArgumentParser) -> None:
        sub.add_argument(
            "-t", "--target",
            metavar="PATH",
            help="Target directory (default: configured target volume)",
        )

    def add_json(sub: argparse.ArgumentParser) -> None:
        sub.add_argument("--json", action="store_true", help="Output as JSON")

    # volumes command
    volumes_parser = subparsers.add_parser(
        "volumes",
        help="List volumes usable as backup targets",
    )
    volumes_parser.add_argument(
        "--all",
        action="store_true",
        help="Include read-only volumes",
    )
    add_json(volumes_parser)
    volumes_parser.set_defaults(func=cmd_volumes)

    # check command
    check_parser = subparsers.add_parser(
        "check",
        help="Check that a path is readable",
    )
    check_parser.add_argument("path", help="Path to check (may start with ~)")
    check_parser.set_defaults(func=cmd_check)

    # backup command
    backup_parser = subparsers.add_parser(
        "backup",
        help="Create a backup",
        description="Back up directories and enabled special sources. "
        "Press Ctrl-C to cancel; a cancelled backup leaves nothing behind.",
    )
    backup_parser.add_argument(
        "directories",
        nargs="*",
        metavar="DIR",
        help="Directories to back up (default: configured directories)",
    )
    add_target(backup_parser)
    backup_parser.set_defaults(func=cmd_backup)

    # list command
    list_parser = subparsers.add_parser("list", help="List backups on the target")
    add_target(list_parser)
    add_json(list_parser)
    list_parser.set_defaults(func=cmd_list)

    # show command
    show_parser = subparsers.add_parser("show", help="Show the contents of a backup")
    show_parser.add_argument("timestamp", help="Backup timestamp (YYYYMMDD-HHMMSS)")
    add_target(show_parser)
    add_json(show_parser)
    show_parser.set_defaults(func=cmd_show)

    # verify command
    verify_parser = subparsers.add_parser(
        "verify",
        help="Verify archive digests of a backup",
    )
    verify_parser.add_argument("timestamp", help="Backup timestamp (YYYYMMDD-HHMMSS)")
    add_target(verify_parser)
    add_json(verify_parser)
    verify_parser.set_defaults(func=cmd_verify)

    # restore command
    restore_parser = subparsers.add_parser(
        "restore",
        help="Restore items from a backup",
    )
    restore_parser.add_argument("timestamp", help="Backup timestamp (YYYYMMDD-HHMMSS)")
    restore_parser.add_argument(
        "items",
        nargs="*",
        metavar="ITEM",
        help="Logical paths to restore, as shown by 'keepsake show'",
    )
    restore_parser.add_argument(
        "--all",
        action="store_true",
        help="Restore every item in the backup",
    )
    restore_parser.add_argument(
        "--overwrite",
        action="store_true",
        help="Replace existing files and reinstall existing packages",
    )
    restore_parser.add_argument(
        "--restore-root",
        metavar="DIR",
        help="Restore under this directory instead of the original locations",
    )
    add_target(restore_parser)
    add_json(restore_parser)
    restore_parser.set_defaults(func=cmd_restore)

    # quick-restore command
    quick_parser = subparsers.add_parser(
        "quick-restore",
        help="Reinstall only the essential Homebrew packages of a backup",
    )
    quick_parser.add_argument("timestamp", help="Backup timestamp (YYYYMMDD-HHMMSS)")
    add_target(quick_parser)
    add_json(quick_parser)
    quick_parser.set_defaults(func=cmd_quick_restore)

    # delete command
    delete_parser = subparsers.add_parser("delete", help="Delete a backup")
    delete_parser.add_argument("timestamp", help="Backup timestamp (YYYYMMDD-HHMMSS)")
    delete_parser.add_argument(
        "-f", "--force",
        action="store_true",
        help="Do not ask for confirmation",
    )
    add_target(delete_parser)
    delete_parser.set_defaults(func=cmd_delete)

    # manual-apps command
    manual_parser = subparsers.add_parser(
        "manual-apps",
        help="List apps that must be reinstalled by hand",
    )
    manual_parser.add_argument("timestamp", help="Backup timestamp (YYYYMMDD-HHMMSS)")
    add_target(manual_parser)
    add_json(manual_parser)
    manual_parser.set_defaults(func=cmd_manual_apps)

    # config command
    config_parser = subparsers.add_parser("config", help="Show or edit configuration")
    config_sub = config_parser.add_subparsers(dest="config_action", metavar="<action>")
    config_sub.add_parser("show", help="Print the effective configuration")
    config_init = config_sub.add_parser("init", help="Write a default config file")
    config_init.add_argument(
        "--target",
        metavar="PATH",
        help="Target volume to record in the new config",
    )
    config_init.add_argument(
        "-f", "--force",
        action="store_true",
        help="Overwrite an existing config file",
    )
    add_dir = config_sub.add_parser("add-dir", help="Add a directory to back up")
    add_dir.add_argument("path")
    remove_dir = config_sub.add_parser("remove-dir", help="Stop backing up a directory")
    remove_dir.add_argument("path")
    config_parser.set_defaults(func=cmd_config)

    return parser


def setup_logging(verbose: int, quiet: bool) -> None:
    """Configure logging based on verbosity level."""
    if quiet:
        level = logging.WARNING
    elif verbose == 0:
        level = logging.INFO
    else:
        level = logging.DEBUG

    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _load_settings(args: argparse.Namespace) -> Settings:
    config_path = Path(args.config) if args.config else None
    settings = load_config(config_path)
    if not args.quiet and not args.verbose:
        logging.getLogger().setLevel(settings.log_level)
    return settings


def _resolve_target(args: argparse.Namespace, settings: Settings) -> Path:
    if getattr(args, "target", None):
        return Path(args.target).expanduser()
    target = settings.target_path
    if target is None:
        raise ConfigurationError(
            "No target configured. Pass --target or set target.volume in the config file."
        )
    return target


def cmd_volumes(args: argparse.Namespace) -> int:
    """List volumes usable as backup targets."""
    from keepsake.system.volumes import list_volumes

    volumes = list_volumes(include_readonly=args.all)
    if args.json:
        output_json([v.to_dict() for v in volumes])
        return EXIT_OK

    if not volumes:
        output("No external volumes found.")
        return EXIT_OK

    output(f"{'Name':<30} {'Free':>10}  {'Flags':<20} Path")
    output("-" * 80)
    for volume in volumes:
        flags = []
        if volume.is_internal:
            flags.append("internal")
        if not volume.writable:
            flags.append("read-only")
        output(
            f"{volume.name:<30} {volume.free_space_gb:>7.1f} GB  "
            f"{','.join(flags):<20} {volume.path}"
        )
    return EXIT_OK


def cmd_check(args: argparse.Namespace) -> int:
    """Check read permission for a path."""
    engine = BackupEngine(_load_settings(args))
    result = engine.check_read_permission(args.path)
    if result.readable:
        output(f"{args.path}: readable")
        return EXIT_OK
    output_error(f"{args.path}: {result.error_message}")
    return EXIT_FAILURE


def cmd_backup(args: argparse.Namespace) -> int:
    """Create a backup, printing progress until it finishes."""
    settings = _load_settings(args)
    target = _resolve_target(args, settings)
    directories = args.directories or settings.backup_directories()
    engine = BackupEngine(settings)
    channel = EventChannel(settings.events.buffer_size)

    output("Keepsake Backup")
    output("=" * 50)
    output(f"Target: {target}")
    output("Directories:")
    for directory in directories:
        output(f"  - {directory}")
    output()

    outcome: dict[str, Any] = {}

    def run() -> None:
        try:
            outcome["result"] = engine.create_backup(target, directories, events=channel)
        except BaseException as e:
            outcome["error"] = e
        finally:
            channel.close()

    worker = threading.Thread(target=run, name="keepsake-backup", daemon=True)
    worker.start()

    cancel_requested = False
    while True:
        try:
            event = channel.get(timeout=0.5)
            if event is None:
                if channel.closed:
                    break
                continue
            if event.kind == BACKUP_PROGRESS:
                output(f"[{event.payload['progress']:>3}%] {event.payload['message']}")
            elif event.kind == BACKUP_LOG:
                output_verbose(f"       {event.payload['message']}")
        except KeyboardInterrupt:
            if cancel_requested:
                output_error("Waiting for the current archive to stop...")
                continue
            cancel_requested = True
            output_error("\nCancelling backup...")
            engine.cancel_backup()

    worker.join()
    if channel.dropped:
        output_verbose(f"({channel.dropped} progress events dropped)")

    if "error" in outcome:
        raise outcome["error"]
    return _report_backup(outcome["result"])


def _report_backup(result: BackupResult) -> int:
    for path, reason in result.skipped:
        output(f"Skipped {path}: {reason}")

    if result.state == PipelineState.COMPLETED and result.manifest is not None:
        manifest = result.manifest
        output()
        output("Backup created successfully!")
        output()
        output(f"  Timestamp: {manifest.timestamp}")
        output(f"  Items: {len(manifest.items)}")
        output(f"  Source size: {format_size(manifest.total_source_size_bytes)}")
        output(f"  Archive size: {format_size(manifest.total_archive_size_bytes)}")
        output(f"  Duration: {manifest.duration_seconds}s")
        output()
        output("To verify this backup, run:")
        output(f"  keepsake verify {manifest.timestamp}")
        return EXIT_OK

    if result.state == PipelineState.CANCELLED:
        output_error("Backup cancelled. No partial backup was kept.")
        return EXIT_CANCELLED

    output_error(f"Backup failed: {result.error}")
    for path in result.failed_paths:
        output_error(f"  - {path}")
    return EXIT_FAILURE


def cmd_list(args: argparse.Namespace) -> int:
    """List backups on the target."""
    settings = _load_settings(args)
    target = _resolve_target(args, settings)
    summaries = BackupEngine(settings).list_backups(target)

    if args.json:
        output_json([s.to_dict() for s in summaries])
        return EXIT_OK

    if not summaries:
        output(f"No backups found on {target}")
        return EXIT_OK

    output(f"{'Timestamp':<17} {'Items':>5} {'Source':>10} {'Archive':>10}  Verified")
    output("-" * 60)
    for summary in summaries:
        output(
            f"{summary.timestamp:<17} {summary.item_count:>5} "
            f"{format_size(summary.total_source_size_bytes):>10} "
            f"{format_size(summary.total_archive_size_bytes):>10}  "
            f"{'yes' if summary.hash_verified else 'no'}"
        )
    return EXIT_OK


def cmd_show(args: argparse.Namespace) -> int:
    """Show the entries of a backup."""
    settings = _load_settings(args)
    target = _resolve_target(args, settings)
    manifest = BackupEngine(settings).get_backup_details(target, args.timestamp)

    if args.json:
        output_json(manifest.to_dict())
        return EXIT_OK

    output(f"Backup {manifest.timestamp}")
    output("=" * 50)
    output(f"  Started: {manifest.start_time}")
    output(f"  Duration: {manifest.duration_seconds}s")
    output(f"  Verified: {'yes' if manifest.hash_verified else 'no'}")
    output(f"  Signed: {'yes' if manifest.signature else 'no'}")
    output(f"  Source size: {format_size(manifest.total_source_size_bytes)}")
    output(f"  Archive size: {format_size(manifest.total_archive_size_bytes)}")
    output()
    for item in manifest.items:
        output(f"  {item.path}")
        output_verbose(f"      {item.kind.value}, {item.archive}, sha256 {item.hash[:16]}...")
        output(
            f"      {format_size(item.source_size_bytes)} -> "
            f"{format_size(item.archive_size_bytes)}"
        )
    return EXIT_OK


def cmd_verify(args: argparse.Namespace) -> int:
    """Verify a backup."""
    settings = _load_settings(args)
    target = _resolve_target(args, settings)
    result = BackupEngine(settings).verify_backup(target, args.timestamp)

    if args.json:
        output_json(result.to_dict())
        return EXIT_OK if result.success else EXIT_FAILURE

    if result.success:
        signed = " (signature ok)" if result.signed else ""
        output(f"Backup {args.timestamp} verified: {result.message}{signed}")
        return EXIT_OK

    output_error(f"Verification failed: {result.message}")
    for path in result.failed_paths:
        output_error(f"  - {path}: {result.failures.get(path, '')}")
    return EXIT_FAILURE


def cmd_restore(args: argparse.Namespace) -> int:
    """Restore items from a backup."""
    settings = _load_settings(args)
    target = _resolve_target(args, settings)

    if not args.items and not args.all:
        output_error("Name the items to restore, or pass --all.")
        return EXIT_USAGE

    restore_root = Path(args.restore_root).expanduser() if args.restore_root else None
    engine = BackupEngine(settings)
    result = engine.restore_items(
        target,
        args.timestamp,
        None if args.all else args.items,
        overwrite=args.overwrite,
        restore_root=restore_root,
    )

    if args.json:
        output_json(result.to_dict())
    else:
        for path in result.restored:
            output(f"Restored: {path}")
        for path in result.skipped:
            output(f"Skipped (exists): {path}")
        for error in result.errors:
            output_error(f"Error: {error}")
        output()
        output(
            f"{result.restored_count} restored, {result.skipped_count} skipped, "
            f"{result.error_count} errors"
        )
    return EXIT_FAILURE if result.error_count else EXIT_OK


def cmd_quick_restore(args: argparse.Namespace) -> int:
    """Install the essential Homebrew packages recorded in a backup."""
    settings = _load_settings(args)
    target = _resolve_target(args, settings)
    result = BackupEngine(settings).quick_restore_essentials(target, args.timestamp)

    if args.json:
        output_json(result.to_dict())
    else:
        for details in result.details.values():
            for package in details.get("installed", []):
                output(f"Installed: {package}")
            for package in details.get("already_installed", []):
                output(f"Already installed: {package}")
            for package, reason in details.get("failed", {}).items():
                output_error(f"Failed: {package}: {reason}")
            output(details.get("message", ""))
        for error in result.errors:
            output_error(f"Error: {error}")
    return EXIT_FAILURE if result.error_count else EXIT_OK


def cmd_delete(args: argparse.Namespace) -> int:
    """Delete a backup."""
    settings = _load_settings(args)
    target = _resolve_target(args, settings)

    if not args.force:
        response = input(f"Delete backup {args.timestamp} from {target}? [y/N]: ").strip().lower()
        if response not in ("y", "yes"):
            output("Delete cancelled.")
            return EXIT_OK

    BackupEngine(settings).delete_backup(target, args.timestamp)
    output(f"Deleted backup {args.timestamp}")
    return EXIT_OK


def cmd_manual_apps(args: argparse.Namespace) -> int:
    """List apps recorded as manually installed."""
    settings = _load_settings(args)
    target = _resolve_target(args, settings)
    apps = BackupEngine(settings).get_manual_apps(target, args.timestamp)

    if args.json:
        output_json(apps)
        return EXIT_OK

    if not apps:
        output("No manually installed apps recorded.")
        return EXIT_OK
    for app in apps:
        output(app)
    return EXIT_OK


def cmd_config(args: argparse.Namespace) -> int:
    """Show or edit the configuration file."""
    config_path = Path(args.config) if args.config else get_config_path()
    action = args.config_action or "show"

    if action == "init":
        if config_path.exists() and not args.force:
            output_error(f"Config file already exists: {config_path} (use --force)")
            return EXIT_FAILURE
        settings = Settings()
        if args.target:
            settings.target_volume = str(Path(args.target).expanduser())
        save_config(settings, config_path)
        output(f"Configuration file created: {config_path}")
        return EXIT_OK

    settings = load_config(config_path)

    if action == "show":
        output(json.dumps(settings_to_dict(settings), indent=2), force=True)
        return EXIT_OK

    directories = settings.backup_directories()
    if action == "add-dir":
        if args.path in directories:
            output(f"Already configured: {args.path}")
            return EXIT_OK
        settings.directories = directories + [args.path]
    elif action == "remove-dir":
        if args.path not in directories:
            output_error(f"Not configured: {args.path}")
            return EXIT_FAILURE
        settings.directories = [d for d in directories if d != args.path]

    save_config(settings, config_path)
    output(f"Directories: {', '.join(settings.backup_directories()) or '(none)'}")
    return EXIT_OK


def main(argv: list[str] | None = None) -> NoReturn:
    """Main entry point for the Keepsake CLI."""
    parser = create_parser()
    args = parser.parse_args(argv)

    # Set up logging and output mode
    setup_logging(args.verbose, args.quiet)
    set_output_mode(args.quiet, args.verbose)

    if args.command is None:
        parser.print_help()
        sys.exit(EXIT_OK)

    try:
        exit_code = args.func(args)
        sys.exit(exit_code)
    except KeyboardInterrupt:
        output("\nOperation cancelled.")
        sys.exit(EXIT_CANCELLED)
    except ConfigurationError as e:
        output_error(f"Configuration error: {e}")
        sys.exit(EXIT_USAGE)
    except TargetBusyError as e:
        output_error(f"Target busy: {e}")
        sys.exit(EXIT_USAGE)
    except BackupNotFoundError as e:
        output_error(f"Not found: {e}")
        sys.exit(EXIT_FAILURE)
    except KeepsakeError as e:
        output_error(f"Error: {e}")
        for path in e.paths:
            output_error(f"  - {path}")
        sys.exit(EXIT_FAILURE)
    except Exception as e:
        if args.verbose > 0:
            raise
        output_error(f"Error: {e}")
        sys.exit(EXIT_FAILURE)


if __name__ == "__main__":
    main()
