"""Restore engine: rebuild a stack directory from a snapshot.

Checkpoints, in order:

    prerequisites -> gate -> backup_existing -> stop_existing -> extract
    -> restore_bulk_data -> reconcile_environment -> secrets_review
    -> apply_ownership -> start_services

``plan_restore`` is the decision layer: given the options and what is on
disk it returns the checkpoints to run and the answer each one defaults
to. ``restore_snapshot`` is the I/O layer that asks the operator (via a
Prompter) and performs the work.
"""
from __future__ import annotations

import os
import shutil
import stat
import tarfile
import tempfile
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING

from sbm import envfile
from sbm.console import GREEN, RESET, RULE, YELLOW, error, info, success, warning
from sbm.fsutil import format_size
from sbm.gate import IntegrityError, check_capacity, check_integrity
from sbm.models import StageResult, StageStatus
from sbm.secrets import ORIGINAL_SUFFIX
from sbm.snapshot import (
    CONFIG_SECTION,
    DATA_SECTION,
    SCRIPTS_SECTION,
    SECRETS_EXPORT,
)

if TYPE_CHECKING:
    from sbm.console import Prompter
    from sbm.gate import Inventory
    from sbm.models import StackConfig
    from sbm.supervisor import StackSupervisor

IDENTITY_KEYS = ("PUID", "PGID")


class RestoreError(Exception):
    pass


@dataclass
class RestoreOptions:
    interactive: bool = True
    force: bool = False
    start_services: bool = True


@dataclass
class RestoreEvidence:
    """On-disk facts the decision layer needs; gathered before anything changes."""
    existing_tree: bool = False
    compose_present: bool = False
    bulk_data: bool = False
    secrets_export: bool = False


@dataclass(frozen=True)
class Step:
    name: str
    prompt: str = ""       # empty: no question, use default
    default: bool = True


@dataclass
class RestoreOutcome:
    exit_code: int
    stages: list[StageResult] = field(default_factory=list)
    secrets_file: str | None = None
    interrupted: bool = False

    @property
    def warnings(self) -> list[str]:
        return [f"{s.stage}: {issue}" for s in self.stages for issue in s.issues]


def plan_restore(options: RestoreOptions, evidence: RestoreEvidence) -> list[Step]:
    """Return the checkpoints to run. Pure: no I/O."""
    ask = options.interactive and not options.force

    def step(name: str, prompt: str, default: bool = True) -> Step:
        return Step(name, prompt if ask else "", default)

    steps = []
    if evidence.existing_tree:
        steps.append(step("backup_existing", "Backup existing configuration before restore?"))
    if evidence.compose_present:
        steps.append(step("stop_existing", "Stop existing services?"))
    steps.append(Step("extract"))
    if evidence.bulk_data:
        steps.append(step("restore_bulk_data",
                          "Restore bulk data? (This may take a long time)"))
    # Non-interactive runs keep the values captured in the snapshot
    steps.append(step("reconcile_environment",
                      "Update environment variables interactively?", default=False))
    if evidence.secrets_export:
        steps.append(step("secrets_review", "Display secrets file for review?", default=False))
    steps.append(Step("apply_ownership"))
    if options.start_services:
        steps.append(step("start_services", "Start services now?"))
    return steps


def resolve_backup(path: str, dest: str, config: "StackConfig") -> str:
    """Find the backup: as given, relative to dest, or inside dest's backup dir."""
    candidates = [path]
    if not os.path.isabs(path):
        candidates += [
            os.path.join(dest, path),
            os.path.join(dest, config.layout.backup_dir, path),
        ]
    for candidate in candidates:
        if os.path.exists(candidate):
            return candidate
    return path


def gather_evidence(dest: str, config: "StackConfig", inv: "Inventory") -> RestoreEvidence:
    layout = config.layout
    existing = any(
        os.path.exists(os.path.join(dest, p))
        for p in (layout.config_dir, layout.data_dir, layout.env_file)
    )
    return RestoreEvidence(
        existing_tree=existing,
        compose_present=os.path.isfile(os.path.join(dest, layout.compose_file)),
        bulk_data=inv.has(DATA_SECTION),
        secrets_export=inv.has(SECRETS_EXPORT),
    )


# ---------------------------------------------------------------------------
# Payload access: archives are extracted lazily into a work dir on the
# destination filesystem; directory snapshots are read in place.
# ---------------------------------------------------------------------------

class _Payload:
    def __init__(self, inv: "Inventory", workdir: str | None):
        self.inv = inv
        self.workdir = workdir
        self._extracted: set[str] = set()

    def section(self, name: str) -> str | None:
        """Return a local path for a snapshot section, or None if absent."""
        if not self.inv.has(name):
            return None
        if not self.inv.compressed:
            return os.path.join(self.inv.path, name)
        if name not in self._extracted:
            self._extract(name)
            self._extracted.add(name)
        return os.path.join(self.workdir, name)

    def _extract(self, name: str) -> None:
        with tarfile.open(self.inv.path, "r:*") as tar:
            members = []
            for member in tar.getmembers():
                parts = member.name.split("/", 1)
                if len(parts) < 2 or parts[1].split("/", 1)[0] != name:
                    continue
                member.name = parts[1]
                if member.islnk():
                    member.linkname = member.linkname.split("/", 1)[-1]
                members.append(member)
            tar.extractall(self.workdir, members=members, filter="data")

    def place(self, name: str, target: str) -> bool:
        """Put section ``name`` at ``target``, replacing what is there."""
        src = self.section(name)
        if src is None:
            return False
        if os.path.isdir(target) and not os.path.islink(target):
            shutil.rmtree(target)
        elif os.path.lexists(target):
            os.remove(target)
        os.makedirs(os.path.dirname(os.path.abspath(target)), exist_ok=True)
        if self.inv.compressed:
            shutil.move(src, target)
        elif os.path.isdir(src):
            shutil.copytree(src, target, symlinks=True)
        else:
            shutil.copy2(src, target)
        return True


# ---------------------------------------------------------------------------
# Checkpoints
# ---------------------------------------------------------------------------

def _backup_existing(dest: str, config: "StackConfig", now: datetime) -> StageResult:
    result = StageResult(stage="backup_existing")
    layout = config.layout
    target = os.path.join(dest, layout.backup_dir, f"pre-restore-{now.strftime('%Y%m%d_%H%M%S')}")
    os.makedirs(target, exist_ok=True)
    for name in (layout.config_dir, layout.data_dir, layout.env_file, layout.compose_file):
        src = os.path.join(dest, name)
        dst = os.path.join(target, os.path.basename(name))
        try:
            if os.path.isdir(src):
                shutil.copytree(src, dst, symlinks=True)
            elif os.path.isfile(src):
                shutil.copy2(src, dst)
        except (OSError, shutil.Error) as e:
            raise RestoreError(f"Could not back up existing {name}: {e}") from e
    result.artifacts["pre_restore"] = target
    print(f"  {GREEN}Existing configuration backed up to: {target}{RESET}")
    return result


def _stop_existing(supervisor: "StackSupervisor") -> StageResult:
    result = StageResult(stage="stop_existing")
    print("  Stopping existing services...")
    if not supervisor.stop(graceful=True):
        result.warn("existing services did not stop cleanly")
    return result


def _extract(payload: _Payload, dest: str, config: "StackConfig") -> StageResult:
    result = StageResult(stage="extract")
    layout = config.layout

    payload.place(CONFIG_SECTION, os.path.join(dest, layout.config_dir))
    print(f"  {GREEN}Configuration files restored{RESET}")

    for name in (layout.compose_file, layout.env_file):
        if payload.place(os.path.basename(name), os.path.join(dest, name)):
            print(f"  {GREEN}{name} restored{RESET}")
        else:
            result.warn(f"{name} not in backup")

    scripts = payload.section(SCRIPTS_SECTION)
    if scripts is None:
        result.warn("management scripts not in backup")
    else:
        for script in sorted(os.listdir(scripts)):
            target = os.path.join(dest, script)
            shutil.copy2(os.path.join(scripts, script), target)
            mode = os.stat(target).st_mode
            os.chmod(target, mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        print(f"  {GREEN}Management scripts restored{RESET}")
    return result


def _restore_bulk_data(payload: _Payload, dest: str, config: "StackConfig") -> StageResult:
    result = StageResult(stage="restore_bulk_data")
    print(f"  Restoring bulk data ({format_size(payload.inv.data_bytes)})...")
    payload.place(DATA_SECTION, os.path.join(dest, config.layout.data_dir))
    print(f"  {GREEN}Bulk data restored{RESET}")
    return result


def _reconcile_environment(dest: str, config: "StackConfig", prompter: "Prompter",
                           go: bool) -> StageResult:
    result = StageResult(stage="reconcile_environment")
    env_path = os.path.join(dest, config.layout.env_file)
    if not os.path.isfile(env_path):
        result.warn(f"{config.layout.env_file} not found; create it before starting the stack")
        return result

    with open(env_path) as f:
        text = f.read()
    shown = list(dict.fromkeys([*IDENTITY_KEYS, *config.reconcile_keys]))
    print("  Environment values that commonly differ between hosts:")
    for line in envfile.matching_lines(text, shown):
        print(f"    {line}")
    if not go:
        return result

    current = envfile.parse_env(text)
    overrides = {}
    for key in config.reconcile_keys:
        value = prompter.ask(f"  {key}", current.get(key, ""))
        if value != current.get(key, ""):
            overrides[key] = value
    if overrides:
        with open(env_path, "w") as f:
            f.write(envfile.apply_overrides(text, overrides))
        print(f"  {GREEN}Updated: {', '.join(overrides)}{RESET}")
    return result


def _secrets_review(payload: _Payload, dest: str, display: bool) -> StageResult:
    """Surface the exported secrets. Values are never applied automatically."""
    result = StageResult(stage="secrets_review")
    src = payload.section(SECRETS_EXPORT)
    target = os.path.join(dest, SECRETS_EXPORT)
    shutil.copyfile(src, target)
    os.chmod(target, 0o600)
    result.artifacts["secrets_file"] = target
    result.warn(f"secrets export present at {target}: re-apply API keys manually, then delete it")
    print(f"  {YELLOW}Secrets export copied to {target} (owner-only){RESET}")
    if display:
        with open(target) as f:
            print(f.read())
    return result


def resolve_identity(dest: str, config: "StackConfig") -> tuple[int, int]:
    """PUID/PGID from the restored env file, else the configured identity."""
    uid, gid = config.identity.uid, config.identity.gid
    env_path = os.path.join(dest, config.layout.env_file)
    if os.path.isfile(env_path):
        values = envfile.read_env(env_path)
        try:
            uid = int(values.get("PUID", uid))
            gid = int(values.get("PGID", gid))
        except ValueError:
            pass
    return uid, gid


def _apply_ownership(dest: str, config: "StackConfig") -> StageResult:
    result = StageResult(stage="apply_ownership")
    layout = config.layout
    ident = config.identity
    uid, gid = resolve_identity(dest, config)
    chown_ok = True

    for top in (layout.config_dir, layout.data_dir):
        root = os.path.join(dest, top)
        if not os.path.isdir(root):
            continue
        for dirpath, dirnames, filenames in os.walk(root):
            entries = [(dirpath, True)] + [(os.path.join(dirpath, n), False) for n in filenames]
            entries += [(os.path.join(dirpath, n), False) for n in dirnames
                        if os.path.islink(os.path.join(dirpath, n))]
            for path, is_dir in entries:
                if chown_ok:
                    try:
                        os.chown(path, uid, gid, follow_symlinks=False)
                    except PermissionError:
                        chown_ok = False
                        result.warn(f"could not set ownership to {uid}:{gid}; "
                                    "run as root or adjust permissions manually")
                if os.path.islink(path):
                    continue
                if is_dir:
                    mode = ident.dir_mode
                elif path.endswith(ORIGINAL_SUFFIX):
                    mode = 0o600
                else:
                    # executables (container init hooks and the like) stay executable
                    mode = ident.file_mode | (os.stat(path).st_mode & 0o111)
                os.chmod(path, mode)

    for rel in config.sensitive_files:
        path = os.path.join(dest, layout.config_dir, rel)
        if os.path.isfile(path):
            os.chmod(path, 0o600)
    return result


def _start_services(supervisor: "StackSupervisor") -> StageResult:
    result = StageResult(stage="start_services")
    print("  Starting services...")
    if not supervisor.start():
        result.warn("services failed to start; restored files remain in place")
    return result


# ---------------------------------------------------------------------------
# Driver
# ---------------------------------------------------------------------------

def restore_snapshot(
    backup: str,
    dest: str,
    config: "StackConfig",
    supervisor: "StackSupervisor",
    options: RestoreOptions,
    prompter: "Prompter",
    now: datetime | None = None,
) -> RestoreOutcome:
    now = now or datetime.now()
    outcome = RestoreOutcome(exit_code=1)
    dest = os.path.abspath(dest)

    # --- prerequisites ---
    pre = StageResult(stage="prerequisites")
    outcome.stages.append(pre)
    backup = resolve_backup(backup, dest, config)
    if not os.path.exists(backup):
        pre.fail(f"Backup not found: {backup}")
    elif not supervisor.available():
        pre.fail("Docker / Docker Compose is not available")
    if not pre.ok:
        error(pre.error)
        return outcome

    # --- gate ---
    gate = StageResult(stage="gate")
    outcome.stages.append(gate)
    info(f"Validating backup: {backup}")
    try:
        inv = check_integrity(backup)
    except IntegrityError as e:
        gate.fail(str(e))
        error(str(e))
        return outcome
    capacity = check_capacity(inv, dest, config.safety_multiplier)
    print(f"  Payload {format_size(capacity.payload_bytes)}, "
          f"need {format_size(capacity.required_bytes)} "
          f"(x{capacity.multiplier}), available {format_size(capacity.available_bytes)}")
    if not capacity.sufficient:
        message = (f"insufficient disk space: need {format_size(capacity.required_bytes)}, "
                   f"have {format_size(capacity.available_bytes)}")
        try:
            override = options.force or (options.interactive and prompter.confirm(
                f"{YELLOW}{message}.{RESET} Proceed anyway?", default=False))
        except KeyboardInterrupt:
            return _interrupted(outcome, gate)
        if options.force:
            gate.warn(f"{message} (overridden by --force)")
        elif override:
            gate.warn(f"{message} (overridden by operator)")
        else:
            gate.fail(message)
            error(message)
            return outcome

    evidence = gather_evidence(dest, config, inv)
    steps = plan_restore(options, evidence)
    os.makedirs(dest, exist_ok=True)

    with tempfile.TemporaryDirectory(prefix=".sbm-restore-", dir=dest) as workdir:
        payload = _Payload(inv, workdir if inv.compressed else None)
        for step in steps:
            try:
                go = prompter.confirm(step.prompt, step.default) if step.prompt else step.default
                print(f"\n{RULE}\n{step.name.replace('_', ' ').capitalize()}")
                stage = _run_step(step.name, go, payload, dest, config, supervisor, prompter, now)
            except KeyboardInterrupt:
                stopped = StageResult(stage=step.name)
                outcome.stages.append(stopped)
                return _interrupted(outcome, stopped)
            except (RestoreError, OSError, shutil.Error, tarfile.TarError) as e:
                failed = StageResult(stage=step.name).fail(str(e))
                outcome.stages.append(failed)
                error(f"{step.name} failed: {e}")
                return outcome
            outcome.stages.append(stage)
            if stage.artifacts.get("secrets_file"):
                outcome.secrets_file = stage.artifacts["secrets_file"]
            for issue in stage.issues:
                warning(issue)

    outcome.exit_code = 0
    _print_completion(outcome)
    return outcome


def _interrupted(outcome: RestoreOutcome, stage: StageResult) -> RestoreOutcome:
    """Record an operator interrupt. Nothing after the current step runs."""
    stage.fail("interrupted by operator")
    outcome.interrupted = True
    error(f"Restore interrupted at {stage.stage}; no further steps were run")
    return outcome


def _run_step(name, go, payload, dest, config, supervisor, prompter, now) -> StageResult:
    if name == "reconcile_environment":
        return _reconcile_environment(dest, config, prompter, go)
    if name == "secrets_review":
        return _secrets_review(payload, dest, display=go)
    if not go:
        print("  Skipped")
        return StageResult(stage=name, status=StageStatus.SKIPPED)
    if name == "backup_existing":
        return _backup_existing(dest, config, now)
    if name == "stop_existing":
        return _stop_existing(supervisor)
    if name == "extract":
        return _extract(payload, dest, config)
    if name == "restore_bulk_data":
        return _restore_bulk_data(payload, dest, config)
    if name == "apply_ownership":
        return _apply_ownership(dest, config)
    if name == "start_services":
        return _start_services(supervisor)
    raise RestoreError(f"Unknown restore step: {name}")


def _print_completion(outcome: RestoreOutcome) -> None:
    print(f"\n{RULE}")
    success("Restore complete.")
    warnings = outcome.warnings
    if warnings:
        print(f"  {len(warnings)} warning(s):")
        for w in warnings:
            print(f"    {YELLOW}{w}{RESET}")
    print("\nNext steps:")
    print("  1. Wait a few minutes for services to initialize")
    print("  2. Run `sbm validate` to verify the stack")
    print("  3. Reconfigure API keys and service connections")
    if outcome.secrets_file:
        print(f"  4. Delete {outcome.secrets_file} once credentials are re-applied")
