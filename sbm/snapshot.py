"""Snapshot builder: materialize a point-in-time backup of the stack."""
from __future__ import annotations

import math
import os
import platform
import shutil
import socket
import sys
import tarfile
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING

import yaml

from sbm import secrets
from sbm.console import RESET, YELLOW, error, info, warning
from sbm.envfile import read_env
from sbm.executor import ExecutorError
from sbm.fsutil import dir_size, format_size
from sbm.models import (
    ARCHIVE_PREFIX,
    ARCHIVE_SUFFIX,
    ID_FORMAT,
    ID_RE,
    BuildResult,
    Snapshot,
)

if TYPE_CHECKING:
    from sbm.executor import Executor
    from sbm.models import SnapshotOptions, StackConfig
    from sbm.supervisor import StackSupervisor

# Section names inside a snapshot
CONFIG_SECTION = "config"
DATA_SECTION = "data"
SCRIPTS_SECTION = "scripts"
BACKUP_INFO = "backup_info.txt"
MIGRATION_INFO = "migration_info.txt"
SPACE_REQUIREMENTS = "space_requirements.yaml"
SECRETS_EXPORT = "secrets_export.txt"
RESTORE_INSTRUCTIONS = "RESTORE_INSTRUCTIONS.md"


class SnapshotError(Exception):
    pass


def is_snapshot_name(name: str) -> bool:
    if name.startswith(ARCHIVE_PREFIX) and name.endswith(ARCHIVE_SUFFIX):
        name = name[len(ARCHIVE_PREFIX):-len(ARCHIVE_SUFFIX)]
    return bool(ID_RE.fullmatch(name))


def list_snapshots(backup_root: str) -> list[Snapshot]:
    """Return snapshots under backup_root, oldest first."""
    if not os.path.isdir(backup_root):
        return []
    snaps = []
    for name in os.listdir(backup_root):
        path = os.path.join(backup_root, name)
        if not is_snapshot_name(name):
            continue
        if name.endswith(ARCHIVE_SUFFIX) != os.path.isfile(path):
            continue
        snaps.append(Snapshot.parse(path))
    return sorted(snaps, key=lambda s: (s.created_at, s.id))


def _new_id(backup_root: str, now: datetime) -> str:
    base = now.strftime(ID_FORMAT)
    candidate, n = base, 0
    while (os.path.exists(os.path.join(backup_root, candidate))
           or os.path.exists(os.path.join(backup_root, f"{ARCHIVE_PREFIX}{candidate}{ARCHIVE_SUFFIX}"))):
        n += 1
        candidate = f"{base}_{n}"
    return candidate


def resume_command(archive_name: str, dest: str | None = None) -> str:
    cmd = f"sbm restore --backup {archive_name}"
    return f"{cmd} --dest {dest}" if dest else cmd


def _safe_run(executor: "Executor", cmd: list[str]) -> str:
    try:
        return executor.run(cmd).strip()
    except ExecutorError:
        return "Not available"


def _os_identity() -> str:
    try:
        with open("/etc/os-release") as f:
            for line in f:
                if line.startswith("PRETTY_NAME="):
                    return line.split("=", 1)[1].strip().strip('"')
    except OSError:
        pass
    return platform.platform()


def _service_table(config: "StackConfig", supervisor: "StackSupervisor") -> list[str]:
    observed = {s.name: s for s in supervisor.list_services()}
    lines = []
    for svc in config.services:
        status = observed.get(svc.name)
        if status is None:
            lines.append(f"{svc.name}: not found")
        else:
            state = "running" if status.running else "stopped"
            health = status.health or "no healthcheck"
            lines.append(f"{svc.name}: {state} ({health})")
    return lines


def _write_backup_info(path, config, supervisor, sections, warnings, partial, now):
    lines = [
        "# Stack Backup Information",
        f"# Generated: {now.isoformat(timespec='seconds')}",
        f"# Hostname: {socket.gethostname()}",
        "",
        "## Compose Version",
        supervisor.version(),
        "",
        "## Service Status at Backup Time",
        *_service_table(config, supervisor),
        "",
        "## System Information",
        f"Kernel: {platform.release()}",
        f"Architecture: {platform.machine()}",
        "",
        "## Sections",
        *[f"- {s}" for s in sections],
        "",
        f"Partial: {'yes' if partial else 'no'}",
    ]
    if warnings:
        lines += ["", "## Warnings", *[f"- {w}" for w in warnings]]
    with open(path, "w") as f:
        f.write("\n".join(lines) + "\n")


def _write_migration_info(path, root, config, supervisor, executor, now):
    env_path = os.path.join(root, config.layout.env_file)
    env_values = read_env(env_path) if os.path.isfile(env_path) else {}
    usage = shutil.disk_usage(root)
    lines = [
        "# Migration Information",
        f"# Generated: {now.isoformat(timespec='seconds')}",
        f"Source host: {socket.gethostname()}",
        f"Source path: {os.path.abspath(root)}",
        "",
        "## Operating System",
        _os_identity(),
        f"Kernel: {platform.release()} ({platform.machine()})",
        "",
        "## Container Runtime",
        _safe_run(executor, ["docker", "--version"]),
        supervisor.version(),
        "",
        "## Network Interfaces",
        _safe_run(executor, ["ip", "-brief", "address"]),
        "",
        "## Disk Usage",
        f"Total: {format_size(usage.total)}  Used: {format_size(usage.used)}  "
        f"Free: {format_size(usage.free)}",
        "",
        "## Environment (secret-like keys omitted)",
        *[f"{k}={v}" for k, v in sorted(env_values.items()) if not secrets.classify(k)],
        "",
        "## Services",
        *_service_table(config, supervisor),
    ]
    with open(path, "w") as f:
        f.write("\n".join(lines) + "\n")


def _write_space_requirements(path, config_bytes, data_bytes, multiplier):
    payload = config_bytes + data_bytes
    record = {
        "config_bytes": config_bytes,
        "data_bytes": data_bytes,
        "payload_bytes": payload,
        "safety_multiplier": multiplier,
        "min_target_bytes": math.ceil(payload * multiplier),
    }
    with open(path, "w") as f:
        f.write("# Minimum free space needed on the migration target\n")
        f.write(f"# Payload: {format_size(payload)}, target needs at least "
                f"{format_size(record['min_target_bytes'])}\n")
        yaml.safe_dump(record, f, sort_keys=False)


def _write_restore_instructions(path, snap_id, config, compressed):
    archive = f"{ARCHIVE_PREFIX}{snap_id}{ARCHIVE_SUFFIX}" if compressed else snap_id
    layout = config.layout
    sensitive = ", ".join(f"`{layout.config_dir}/{p}`" for p in config.sensitive_files) or "none"
    text = f"""# Stack Restore Instructions

Snapshot: {snap_id}

## Automated restore
Copy the backup and sbm.yaml (if used) to the target stack directory, then run:

    {resume_command(archive)}

Add `--yes` for a non-interactive restore, then verify with:

    sbm validate

## Manual restore
1. Stop running services: `docker compose down`
2. Copy `{CONFIG_SECTION}/` to `{layout.config_dir}/`, `{layout.compose_file}` and
   `{layout.env_file}` to the stack directory, `{SCRIPTS_SECTION}/*` to the stack directory.
3. Set ownership: `chown -R PUID:PGID {layout.config_dir} {layout.data_dir}`
4. Restrict sensitive files to mode 600: {sensitive}
5. Review `{layout.env_file}` (DOMAIN, EMAIL, TZ, PUID, PGID).
6. Start the stack.

## Important
- If `{SECRETS_EXPORT}` is present, re-apply API keys manually and delete it.
- Files ending in `.original` hold unmodified copies of anonymized files.
- Update DNS entries, VPN settings and API keys as needed.
"""
    with open(path, "w") as f:
        f.write(text)


def _compress(snap_dir: str, backup_root: str, snap_id: str) -> str:
    """Bundle snap_dir into a tar.gz and read it back. snap_dir is left in place."""
    archive = os.path.join(backup_root, f"{ARCHIVE_PREFIX}{snap_id}{ARCHIVE_SUFFIX}")
    try:
        with tarfile.open(archive, "w:gz") as tar:
            tar.add(snap_dir, arcname=snap_id)
        with tarfile.open(archive, "r:gz") as tar:
            tar.getnames()
    except (OSError, tarfile.TarError):
        if os.path.exists(archive):
            os.remove(archive)
        raise
    return archive


def sweep_expired(
    backup_root: str,
    retention_days: int,
    keep: str | None = None,
    now: datetime | None = None,
) -> list[str]:
    """Delete snapshots older than retention_days. Return removed paths."""
    if retention_days <= 0:
        return []
    removed = []
    for snap in list_snapshots(backup_root):
        if keep and os.path.abspath(snap.path) == os.path.abspath(keep):
            continue
        if snap.retention_class(retention_days, now) != "expired":
            continue
        try:
            if snap.compressed:
                os.remove(snap.path)
            else:
                shutil.rmtree(snap.path)
        except OSError as e:
            print(f"  {YELLOW}Could not remove {snap.path}: {e}{RESET}", file=sys.stderr)
            continue
        removed.append(snap.path)
    return removed


@dataclass
class _Contents:
    """What _fill put into a snapshot directory."""
    sections: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    partial: bool = False
    secrets_file: str | None = None
    anonymized: list[str] = field(default_factory=list)


def _copy_optional(src: str, dst: str, label: str, contents: _Contents) -> bool:
    """Copy one optional file; a failure is recorded as a warning."""
    try:
        shutil.copy2(src, dst)
    except OSError as e:
        contents.warnings.append(f"could not copy {label}: {e}")
        contents.partial = True
        return False
    return True


def _fill(root, snap_dir, snap_id, config, options, supervisor, executor, now) -> _Contents:
    layout = config.layout
    contents = _Contents()
    sections = contents.sections
    warnings = contents.warnings

    # --- configuration (required) ---
    try:
        shutil.copytree(os.path.join(root, layout.config_dir),
                        os.path.join(snap_dir, CONFIG_SECTION), symlinks=True)
    except (OSError, shutil.Error) as e:
        raise SnapshotError(f"Failed to copy configuration: {e}") from e
    sections.append(CONFIG_SECTION)
    config_bytes = dir_size(os.path.join(snap_dir, CONFIG_SECTION))
    print(f"  Configuration copied ({format_size(config_bytes)})")

    # --- stack definition / environment (optional) ---
    for name in (layout.compose_file, layout.env_file):
        src = os.path.join(root, name)
        if not os.path.isfile(src):
            warnings.append(f"{name} not found")
            contents.partial = True
        elif _copy_optional(src, os.path.join(snap_dir, os.path.basename(name)), name, contents):
            sections.append(os.path.basename(name))

    # --- management scripts (optional) ---
    found_scripts = [s for s in layout.scripts if os.path.isfile(os.path.join(root, s))]
    if found_scripts:
        scripts_dir = os.path.join(snap_dir, SCRIPTS_SECTION)
        os.makedirs(scripts_dir)
        copied = [s for s in found_scripts
                  if _copy_optional(os.path.join(root, s), scripts_dir, s, contents)]
        if copied:
            sections.append(SCRIPTS_SECTION)
    elif layout.scripts:
        warnings.append("management scripts not found")
        contents.partial = True

    # --- bulk data (optional, potentially huge) ---
    data_bytes = 0
    if options.include_bulk_data:
        data_src = os.path.join(root, layout.data_dir)
        if os.path.isdir(data_src):
            data_bytes = dir_size(data_src)
            print(f"\n{YELLOW}WARNING: Including bulk data ({format_size(data_bytes)}) "
                  f"from {data_src}. This may take a very long time!{RESET}\n")
            try:
                shutil.copytree(data_src, os.path.join(snap_dir, DATA_SECTION), symlinks=True)
            except (OSError, shutil.Error) as e:
                raise SnapshotError(f"Failed to copy bulk data: {e}") from e
            sections.append(DATA_SECTION)
        else:
            warnings.append(f"{layout.data_dir} directory not found")
            contents.partial = True

    # --- secrets ---
    snap_config = os.path.join(snap_dir, CONFIG_SECTION)
    if options.export_secrets:
        contents.secrets_file = os.path.join(snap_dir, SECRETS_EXPORT)
        records = secrets.export_secrets(snap_config, contents.secrets_file, relative_to=snap_dir)
        sections.append(SECRETS_EXPORT)
        print(f"  {YELLOW}Exported {len(records)} secret-like line(s) to {SECRETS_EXPORT} "
              f"(owner-only){RESET}")
    if options.anonymize_secrets:
        contents.anonymized = secrets.anonymize_tree(snap_config)
        print(f"  Anonymized {len(contents.anonymized)} file(s); "
              f"originals kept as *{secrets.ORIGINAL_SUFFIX}")

    # --- metadata ---
    if options.migration_metadata:
        _write_migration_info(os.path.join(snap_dir, MIGRATION_INFO),
                              root, config, supervisor, executor, now)
        _write_space_requirements(os.path.join(snap_dir, SPACE_REQUIREMENTS),
                                  config_bytes, data_bytes, config.safety_multiplier)
        sections += [MIGRATION_INFO, SPACE_REQUIREMENTS]
    _write_backup_info(os.path.join(snap_dir, BACKUP_INFO),
                       config, supervisor, sections, warnings, contents.partial, now)
    _write_restore_instructions(os.path.join(snap_dir, RESTORE_INSTRUCTIONS),
                                snap_id, config, options.compress)
    return contents


def build_snapshot(
    root: str,
    config: "StackConfig",
    options: "SnapshotOptions",
    supervisor: "StackSupervisor",
    executor: "Executor",
    now: datetime | None = None,
) -> BuildResult:
    """Build one snapshot of the stack at root. Raise SnapshotError on hard failure.

    A hard failure removes the partially built snapshot directory.
    """
    now = now or datetime.now()
    layout = config.layout
    config_src = os.path.join(root, layout.config_dir)
    if not os.path.isdir(config_src):
        raise SnapshotError(f"Configuration directory not found: {config_src}")

    backup_root = os.path.join(root, layout.backup_dir)
    try:
        os.makedirs(backup_root, exist_ok=True)
        snap_id = _new_id(backup_root, now)
        snap_dir = os.path.join(backup_root, snap_id)
        os.makedirs(snap_dir)
    except OSError as e:
        raise SnapshotError(f"Cannot create snapshot directory: {e}") from e

    info(f"Creating snapshot {snap_id} in {backup_root}")
    try:
        contents = _fill(root, snap_dir, snap_id, config, options, supervisor, executor, now)
    except (SnapshotError, KeyboardInterrupt):
        shutil.rmtree(snap_dir, ignore_errors=True)
        raise
    except (OSError, shutil.Error) as e:
        shutil.rmtree(snap_dir, ignore_errors=True)
        raise SnapshotError(f"Failed to build snapshot: {e}") from e
    sections = contents.sections
    warnings = contents.warnings
    partial = contents.partial
    secrets_file = contents.secrets_file
    anonymized = contents.anonymized

    for w in warnings:
        warning(w)

    # --- compression ---
    deliverable = snap_dir
    if options.compress:
        print("  Compressing snapshot...")
        try:
            deliverable = _compress(snap_dir, backup_root, snap_id)
        except (OSError, tarfile.TarError) as e:
            warnings.append(f"compression failed, keeping uncompressed snapshot: {e}")
            error(f"Compression failed ({e}); keeping {snap_dir}")
            if secrets_file:
                secrets_file = os.path.join(snap_dir, SECRETS_EXPORT)
        else:
            shutil.rmtree(snap_dir, ignore_errors=True)
            if os.path.exists(snap_dir):
                warnings.append(f"archive verified but {snap_dir} could not be fully removed; "
                                "delete it manually")
                warning(f"could not remove {snap_dir}")
            if secrets_file:
                secrets_file = f"{deliverable}:{snap_id}/{SECRETS_EXPORT}"

    snapshot = Snapshot.parse(deliverable)
    swept = sweep_expired(backup_root, options.retention_days, keep=deliverable, now=now)
    for path in swept:
        print(f"  Removed expired snapshot: {os.path.basename(path)}")

    return BuildResult(
        snapshot=snapshot,
        size_bytes=dir_size(deliverable),
        sections=sections,
        warnings=warnings,
        partial=partial,
        secrets_file=secrets_file,
        anonymized=[os.path.relpath(p, snap_dir) for p in anonymized],
        swept=swept,
    )
