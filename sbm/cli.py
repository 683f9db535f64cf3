"""CLI entry point for stack-backup-manager."""
from __future__ import annotations

import argparse
import os
import sys

from sbm.config import ConfigError, find_config, load_config
from sbm.executor import LocalExecutor
from sbm.supervisor import ComposeSupervisor


def _load(root: str, args):
    """Load the stack config for root, or print the error and return None."""
    try:
        return load_config(find_config(root, args.config))
    except (ConfigError, OSError) as e:
        print(f"Config error: {e}", file=sys.stderr)
        return None


def _supervisor(root: str, config, verbose: bool) -> ComposeSupervisor:
    return ComposeSupervisor(LocalExecutor(), root, config, verbose=verbose)


def cmd_build_snapshot(args) -> int:
    from sbm.fsutil import format_size
    from sbm.models import SnapshotOptions
    from sbm.snapshot import SnapshotError, build_snapshot

    root = os.path.abspath(args.root)
    config = _load(root, args)
    if config is None:
        return 1

    options = SnapshotOptions(
        include_bulk_data=args.include_bulk_data,
        compress=not args.no_compress,
        retention_days=(args.retention_days if args.retention_days is not None
                        else config.retention_days),
        migration_metadata=args.migration,
        export_secrets=args.export_secrets,
        anonymize_secrets=args.anonymize_secrets,
    )
    executor = LocalExecutor()
    supervisor = ComposeSupervisor(executor, root, config, verbose=args.verbose)
    try:
        result = build_snapshot(root, config, options, supervisor, executor)
    except SnapshotError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1

    print(f"\n{'='*60}")
    print(f"Snapshot: {result.snapshot.path}")
    print(f"Size:     {format_size(result.size_bytes)}")
    if result.partial:
        print("Partial:  yes (see warnings above)")
    if result.secrets_file:
        print(f"Secrets:  {result.secrets_file}")
        print("          Keep this file secure and delete it after use.")
    return 0


def cmd_restore(args) -> int:
    from sbm.console import Prompter
    from sbm.restore import RestoreOptions, restore_snapshot

    dest = os.path.abspath(args.dest)
    config = _load(dest, args)
    if config is None:
        return 1

    interactive = not args.yes
    options = RestoreOptions(
        interactive=interactive,
        force=args.force,
        start_services=not args.no_start,
    )
    outcome = restore_snapshot(
        args.backup, dest, config, _supervisor(dest, config, args.verbose),
        options, Prompter(interactive),
    )
    return outcome.exit_code


def cmd_migrate(args) -> int:
    from sbm.console import Prompter
    from sbm.migrate import run_migration
    from sbm.models import MigrationPlan

    source = os.path.abspath(args.source)
    config = _load(source, args)
    if config is None:
        return 1

    plan = MigrationPlan(
        migration_type=args.type,
        source=source,
        destination=args.dest or "",
        remote_host=args.remote or "",
        remote_user=args.user or "",
        remote_port=args.port,
        include_bulk_data=args.include_bulk_data,
        validate=not args.skip_validation,
        backup_name=args.name or "",
    )
    executor = LocalExecutor()
    outcome = run_migration(
        plan, config,
        supervisor=ComposeSupervisor(executor, source, config, verbose=args.verbose),
        executor=executor,
        prompter=Prompter(not args.yes),
    )
    return outcome.exit_code


def cmd_validate(args) -> int:
    from sbm.validate import print_summary, run_validation, write_report

    root = os.path.abspath(args.root)
    config = _load(root, args)
    if config is None:
        return 1

    report = run_validation(root, config, _supervisor(root, config, args.verbose),
                            quick=args.quick)
    print_summary(report)
    if args.report:
        print(f"Detailed report saved: {write_report(report, root)}")
    return report.exit_code


def cmd_list(args) -> int:
    """List snapshots in the backup directory with their retention class."""
    from sbm.fsutil import dir_size, format_size
    from sbm.snapshot import list_snapshots

    root = os.path.abspath(args.root)
    config = _load(root, args)
    if config is None:
        return 1

    backup_root = os.path.join(root, config.layout.backup_dir)
    snaps = list_snapshots(backup_root)
    if not snaps:
        print(f"No snapshots in {backup_root}")
        return 0

    print(f"{'Snapshot':<45} {'Created':<20} {'Size':>10} {'Retention':>10}")
    print("-" * 88)
    for snap in snaps:
        created = snap.created_at.strftime("%Y-%m-%d %H:%M:%S")
        size = format_size(dir_size(snap.path))
        print(f"{snap.name:<45} {created:<20} {size:>10} "
              f"{snap.retention_class(config.retention_days):>10}")
    return 0


def main(argv=None) -> None:
    parser = argparse.ArgumentParser(
        prog="sbm",
        description="Stack Backup Manager: back up, restore and migrate a compose stack",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    # Shared options
    def add_common(p):
        p.add_argument("--config", "-c", default=None,
                       help="Path to sbm.yaml (default: <stack dir>/sbm.yaml if present)")
        p.add_argument("--verbose", "-v", action="store_true",
                       help="Echo executed compose commands")

    p_build = sub.add_parser("build-snapshot", help="Create a backup of the stack")
    add_common(p_build)
    p_build.add_argument("--root", default=".", help="Stack directory (default: .)")
    p_build.add_argument("--include-bulk-data", action="store_true",
                         help="Include the data directory (WARNING: can be very large)")
    p_build.add_argument("--no-compress", action="store_true",
                         help="Leave the snapshot as a directory")
    p_build.add_argument("--retention-days", type=int, default=None,
                         help="Delete snapshots older than N days; 0 disables (default from config)")
    p_build.add_argument("--migration", action="store_true",
                         help="Record migration metadata and space requirements")
    p_build.add_argument("--export-secrets", action="store_true",
                         help="Export secret-like lines to an owner-only file")
    p_build.add_argument("--anonymize-secrets", action="store_true",
                         help="Replace secret values in the snapshot copy with placeholders")
    p_build.set_defaults(func=cmd_build_snapshot)

    p_restore = sub.add_parser("restore", help="Restore the stack from a snapshot")
    add_common(p_restore)
    p_restore.add_argument("--backup", "-b", required=True,
                           help="Snapshot archive or directory to restore")
    p_restore.add_argument("--dest", default=".", help="Stack directory to restore into (default: .)")
    p_restore.add_argument("--yes", "-y", action="store_true",
                           help="Non-interactive: answer every prompt with its default")
    p_restore.add_argument("--force", "-f", action="store_true",
                           help="Skip confirmations and override the disk space check")
    p_restore.add_argument("--no-start", action="store_true",
                           help="Do not start services after restoring")
    p_restore.set_defaults(func=cmd_restore)

    p_migrate = sub.add_parser("migrate", help="Move the stack to a new location or host")
    add_common(p_migrate)
    p_migrate.add_argument("--type", "-t", choices=["local", "remote", "manual"],
                           default="local", help="Migration type (default: local)")
    p_migrate.add_argument("--source", "-s", default=".", help="Source stack directory (default: .)")
    p_migrate.add_argument("--dest", "-d", default=None, help="Target path")
    p_migrate.add_argument("--remote", "-r", default=None, help="Remote host (user@hostname)")
    p_migrate.add_argument("--user", "-u", default=None, help="Remote user")
    p_migrate.add_argument("--port", "-p", type=int, default=22, help="SSH port (default: 22)")
    p_migrate.add_argument("--name", "-n", default=None, help="Custom backup name")
    p_migrate.add_argument("--include-bulk-data", action="store_true",
                           help="Include the data directory (WARNING: can be very large)")
    p_migrate.add_argument("--skip-validation", action="store_true",
                           help="Skip post-migration validation")
    p_migrate.add_argument("--yes", "-y", action="store_true",
                           help="Non-interactive: answer every prompt with its default")
    p_migrate.set_defaults(func=cmd_migrate)

    p_validate = sub.add_parser("validate", help="Check the health of a running stack")
    add_common(p_validate)
    p_validate.add_argument("--root", default=".", help="Stack directory (default: .)")
    p_validate.add_argument("--report", "-r", action="store_true",
                            help="Write validation-report-<timestamp>.txt")
    p_validate.add_argument("--quick", "-q", action="store_true",
                            help="Prerequisites and service status only")
    p_validate.set_defaults(func=cmd_validate)

    p_list = sub.add_parser("list", help="List snapshots and their retention class")
    add_common(p_list)
    p_list.add_argument("--root", default=".", help="Stack directory (default: .)")
    p_list.set_defaults(func=cmd_list)

    args = parser.parse_args(argv)
    sys.exit(args.func(args))


if __name__ == "__main__":
    main()
