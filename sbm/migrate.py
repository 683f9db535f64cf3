"""Migration orchestration: build -> transfer -> restore -> validate -> report."""
from __future__ import annotations

import os
import shutil
import sys
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING

from sbm import transport
from sbm.console import GREEN, RESET, RULE, YELLOW, Prompter, error, step, success
from sbm.executor import ExecutorError, SSHExecutor
from sbm.fsutil import format_size
from sbm.models import Outcome, SnapshotOptions, StageResult, StageStatus
from sbm.restore import RestoreOptions, restore_snapshot
from sbm.snapshot import SECRETS_EXPORT, SnapshotError, build_snapshot
from sbm.supervisor import ComposeSupervisor
from sbm.validate import print_summary, run_validation

if TYPE_CHECKING:
    import httpx

    from sbm.executor import Executor
    from sbm.models import BuildResult, MigrationPlan, StackConfig
    from sbm.supervisor import StackSupervisor

MIGRATION_TYPES = ("local", "remote", "manual")

INSTALL_HINT = "pip install stack-backup-manager"

FOLLOW_UP = [
    "Rotate credentials: re-enter API keys and passwords in every service",
    "Re-test service integrations (indexers, download client, media server)",
    "Update DNS records, hardcoded IP addresses and hostnames",
    "Reconfigure external access (port forwarding, VPN, firewall)",
    "Point backup schedules at the new location",
]


@dataclass
class MigrationOutcome:
    plan: "MigrationPlan"
    stages: list[StageResult] = field(default_factory=list)
    exit_code: int = 1
    build: "BuildResult | None" = None
    remote_archive: str = ""
    sensitive: list[str] = field(default_factory=list)
    report_path: str | None = None
    interrupted: bool = False

    @property
    def failed_stage(self) -> str:
        for stage in self.stages:
            if stage.status is StageStatus.FAILED:
                return stage.stage
        return ""

    @property
    def warnings(self) -> list[str]:
        return [f"{s.stage}: {issue}" for s in self.stages for issue in s.issues]

    def stage(self, name: str) -> StageResult | None:
        for s in self.stages:
            if s.stage == name:
                return s
        return None


def check_prerequisites(plan: "MigrationPlan", supervisor: "StackSupervisor",
                        config: "StackConfig") -> StageResult:
    result = StageResult(stage="prerequisites")
    problems = []
    if plan.migration_type not in MIGRATION_TYPES:
        problems.append(f"unknown migration type: {plan.migration_type}")
    if not supervisor.available():
        problems.append("Docker / Docker Compose is not available")
    if not os.path.isfile(os.path.join(plan.source, config.layout.compose_file)):
        problems.append(f"{config.layout.compose_file} not found in {plan.source}")
    if plan.is_remote:
        for tool in ("ssh", "scp"):
            if shutil.which(tool) is None:
                problems.append(f"{tool} is required for remote migration")
    if problems:
        result.fail("; ".join(problems))
    return result


def gather_plan(plan: "MigrationPlan", prompter: "Prompter", now: datetime) -> StageResult:
    """Fill in whatever the flags left out, asking the operator when possible."""
    result = StageResult(stage="plan")
    if not plan.backup_name:
        plan.backup_name = f"migration-{now.strftime('%Y%m%d_%H%M%S')}"
    if plan.is_remote and not plan.remote_host:
        plan.remote_host = prompter.ask("Remote host (user@hostname)")
        if not plan.remote_host:
            return result.fail("remote host is required for remote migration")
    if plan.migration_type in ("local", "remote") and not plan.destination:
        plan.destination = prompter.ask("Target path")
        if not plan.destination:
            return result.fail(f"destination path is required for {plan.migration_type} migration")
    if plan.migration_type == "local":
        plan.destination = os.path.abspath(plan.destination)
        if plan.destination == os.path.abspath(plan.source):
            return result.fail("destination must differ from the source")
    return result


def describe_plan(plan: "MigrationPlan") -> list[str]:
    lines = [
        f"Type:              {plan.migration_type}",
        f"Source:            {plan.source}",
    ]
    if plan.is_remote:
        lines.append(f"Remote host:       {plan.remote_target}:{plan.remote_port}")
    if plan.destination:
        lines.append(f"Destination:       {plan.destination}")
    lines += [
        f"Backup name:       {plan.backup_name}",
        f"Include bulk data: {'yes' if plan.include_bulk_data else 'no'}",
        f"Validate:          {'yes' if plan.validate else 'no'}",
    ]
    return lines


def _build(plan, config, supervisor, executor, now) -> tuple[StageResult, "BuildResult | None"]:
    result = StageResult(stage="build_snapshot")
    options = SnapshotOptions(
        include_bulk_data=plan.include_bulk_data,
        compress=True,
        retention_days=config.retention_days,
        migration_metadata=True,
        export_secrets=True,
    )
    try:
        build = build_snapshot(plan.source, config, options, supervisor, executor, now=now)
    except SnapshotError as e:
        return result.fail(str(e)), None
    for w in build.warnings:
        result.warn(w)
    result.artifacts["snapshot"] = build.snapshot.path
    return result, build


def _transfer(plan, config, build, ssh) -> StageResult:
    companions = [os.path.join(plan.source, c) for c in config.transport.companions]
    if plan.migration_type == "manual":
        return transport.prepare_manual(build.snapshot, companions)
    if plan.migration_type == "local":
        return transport.transfer_local(build.snapshot, plan.destination, companions)
    return transport.transfer_remote(build.snapshot, ssh, plan.destination, companions)


def _restore_local(archive, plan, config, dest_supervisor) -> StageResult:
    outcome = restore_snapshot(
        archive, plan.destination, config, dest_supervisor,
        RestoreOptions(interactive=False), Prompter(interactive=False),
    )
    if outcome.interrupted:
        raise KeyboardInterrupt
    result = StageResult(stage="restore")
    for s in outcome.stages:
        for issue in s.issues:
            result.warn(f"{s.stage}: {issue}")
    if outcome.secrets_file:
        result.artifacts["secrets_file"] = outcome.secrets_file
    if outcome.exit_code != 0:
        failed = next((s for s in outcome.stages if s.status is StageStatus.FAILED), None)
        return result.fail(f"{failed.stage}: {failed.error}" if failed else "restore failed")
    return result


def _restore_remote(archive, plan, ssh) -> StageResult:
    result = StageResult(stage="restore")
    cmd = ["sbm", "restore", "--backup", archive, "--dest", plan.destination, "--yes"]
    print(f"  [{ssh.label}] {' '.join(cmd)}")
    try:
        output = ssh.run(cmd)
    except ExecutorError as e:
        return result.fail(f"remote restore failed: {e}")
    print(output, end="")
    if SECRETS_EXPORT in output:
        result.artifacts["secrets_file"] = f"{ssh.destination}:{plan.destination}/{SECRETS_EXPORT}"
    return result


def _validate_local(plan, config, dest_supervisor, http_client) -> StageResult:
    result = StageResult(stage="validate")
    report = run_validation(plan.destination, config, dest_supervisor, http_client=http_client)
    print_summary(report)
    result.artifacts["success_rate"] = f"{report.success_rate * 100:.0f}% ({report.band})"
    for r in report.results:
        if r.outcome is Outcome.WARN:
            result.warn(f"{r.category}/{r.name}: {r.message}")
    if report.failed:
        return result.fail(f"validation reported {report.failed} failure(s)")
    return result


def _check_remote(ssh) -> StageResult:
    """Reach the target and find sbm there before anything is built or copied."""
    result = StageResult(stage="remote_prerequisites")
    try:
        ssh.check_connection()
    except ExecutorError as e:
        return result.fail(f"cannot reach {ssh.destination}: {e}")
    try:
        ssh.run(["command", "-v", "sbm"])
    except ExecutorError:
        return result.fail(f"sbm is not installed on {ssh.destination}; install it there "
                           f"({INSTALL_HINT}) or use --type manual")
    return result


def _validate_remote(plan, ssh) -> StageResult:
    result = StageResult(stage="validate")
    cmd = ["sbm", "validate", "--root", plan.destination]
    print(f"  [{ssh.label}] {' '.join(cmd)}")
    try:
        print(ssh.run(cmd), end="")
        return result
    except ExecutorError as e:
        if e.returncode != 127:
            return result.fail(f"remote validation failed: {e}")
    # sbm vanished from the target: fall back to the container list
    ps = ["docker", "compose", "--project-directory", plan.destination, "ps"]
    print(f"  [{ssh.label}] {' '.join(ps)}")
    try:
        print(ssh.run(ps), end="")
    except ExecutorError as e:
        return result.fail(f"remote validation failed: {e}")
    result.warn("sbm not found on target; only the container list was checked")
    return result


def _cleanup(build: "BuildResult", prompter: "Prompter") -> StageResult:
    """Offer to delete the local archive. Default is keep."""
    result = StageResult(stage="cleanup")
    path = build.snapshot.path
    if not os.path.isfile(path):
        return result
    if not prompter.confirm(f"Delete local backup file? ({path})", default=False):
        result.status = StageStatus.SKIPPED
        print(f"  Keeping {path}")
        return result
    os.remove(path)
    result.artifacts["deleted"] = path
    print(f"  {GREEN}Local backup file deleted{RESET}")
    return result


def write_report(outcome: MigrationOutcome, now: datetime) -> str:
    """Write migration-report-<timestamp>.txt into the source root."""
    plan = outcome.plan
    path = os.path.join(plan.source, f"migration-report-{now.strftime('%Y%m%d_%H%M%S')}.txt")
    if outcome.interrupted:
        state = "interrupted"
    elif outcome.exit_code == 0:
        state = "completed"
    else:
        state = "failed"

    lines = [
        "# Stack Migration Report",
        f"# Generated: {now.isoformat(timespec='seconds')}",
        "",
        f"Status: {state}",
        "",
        "## Migration Details",
        *describe_plan(plan),
        "",
        "## Backup",
    ]
    if outcome.build is not None:
        lines += [
            f"Archive: {outcome.build.snapshot.path}",
            f"Snapshot id: {outcome.build.snapshot.id}",
            f"Size: {format_size(outcome.build.size_bytes)}",
        ]
        if outcome.remote_archive:
            lines.append(f"Delivered as: {outcome.remote_archive}")
    else:
        lines.append("No backup was produced")

    lines += ["", "## Stages"]
    for s in outcome.stages:
        line = f"- {s.stage}: {s.status.value}"
        if s.error:
            line += f" ({s.error})"
        lines.append(line)
    if outcome.failed_stage:
        lines.append(f"Failed at: {outcome.failed_stage}. Resume manually from this stage.")

    lines += ["", "## Warnings"]
    lines += [f"- {w}" for w in outcome.warnings] or ["none"]

    transfer = outcome.stage("transfer")
    if plan.migration_type == "manual" and transfer and transfer.ok:
        lines += ["", "## Resume On Target"]
        lines += [f"Copy: {p}" for k, p in transfer.artifacts.items() if k != "resume_command"]
        lines.append(f"The target needs sbm installed: {INSTALL_HINT}")
        lines.append(f"Then run in the target directory: {transfer.artifacts['resume_command']}")

    lines += ["", "## Manual Follow-up"]
    lines += [f"{i}. {item}" for i, item in enumerate(FOLLOW_UP, 1)]

    lines += ["", "## Sensitive Files Awaiting Deletion"]
    lines += [f"- {p}" for p in outcome.sensitive] or ["none"]

    with open(path, "w") as f:
        f.write("\n".join(lines) + "\n")
    return path


def _plan_and_confirm(outcome: MigrationOutcome, prompter: "Prompter", now: datetime) -> bool:
    """Complete the plan and ask for the go-ahead. False: stop without side effects."""
    plan = outcome.plan
    gathered = gather_plan(plan, prompter, now)
    outcome.stages.append(gathered)
    if not gathered.ok:
        error(gathered.error)
        return False

    step("Migration plan")
    for line in describe_plan(plan):
        print(f"  {line}")
    if plan.include_bulk_data:
        print(f"  {YELLOW}Bulk data is included: this may take a very long time{RESET}")
    if not prompter.confirm("Proceed with migration?", default=True):
        print("Migration cancelled.")
        outcome.exit_code = 0
        return False
    return True


def run_migration(
    plan: "MigrationPlan",
    config: "StackConfig",
    supervisor: "StackSupervisor",
    executor: "Executor",
    prompter: "Prompter",
    dest_supervisor: "StackSupervisor | None" = None,
    ssh: SSHExecutor | None = None,
    http_client: "httpx.Client | None" = None,
    now: datetime | None = None,
) -> MigrationOutcome:
    """Run one migration. The outcome carries the exit code and report path.

    ``dest_supervisor`` drives the stack at a local destination; ``ssh`` is
    built from the plan when not supplied.
    """
    now = now or datetime.now()
    outcome = MigrationOutcome(plan=plan)

    # --- prerequisites and plan: no side effects ---
    step("Validating prerequisites")
    pre = check_prerequisites(plan, supervisor, config)
    outcome.stages.append(pre)
    if not pre.ok:
        error(pre.error)
        return outcome

    try:
        if not _plan_and_confirm(outcome, prompter, now):
            return outcome
        if plan.is_remote and ssh is None:
            ssh = SSHExecutor(plan.remote_target, port=plan.remote_port,
                              connect_timeout=config.transport.ssh_timeout)
        if plan.migration_type == "local" and dest_supervisor is None:
            dest_supervisor = ComposeSupervisor(executor, plan.destination, config)
        _run_pipeline(outcome, config, supervisor, executor, prompter,
                      dest_supervisor, ssh, http_client, now)
    except KeyboardInterrupt:
        outcome.interrupted = True
        outcome.exit_code = 1
        print(f"\n{YELLOW}Migration interrupted; no rollback performed{RESET}", file=sys.stderr)

    if outcome.build is not None and outcome.build.secrets_file:
        outcome.sensitive.insert(0, outcome.build.secrets_file)
    outcome.report_path = write_report(outcome, now)
    print(f"\n{RULE}")
    print(f"Migration report: {outcome.report_path}")
    if outcome.exit_code == 0:
        success(f"Migration {'prepared' if plan.migration_type == 'manual' else 'complete'}.")
    else:
        error(f"Migration did not complete ({outcome.failed_stage or 'interrupted'}).")
    return outcome


def _run_pipeline(outcome, config, supervisor, executor, prompter, dest_supervisor,
                  ssh, http_client, now) -> None:
    plan = outcome.plan

    if plan.is_remote:
        step("Checking remote target")
        stage = _check_remote(ssh)
        outcome.stages.append(stage)
        if not stage.ok:
            error(stage.error)
            return

    step("Creating migration backup")
    stage, outcome.build = _build(plan, config, supervisor, executor, now)
    outcome.stages.append(stage)
    if not stage.ok:
        error(stage.error)
        return

    step("Transferring files")
    stage = _transfer(plan, config, outcome.build, ssh)
    outcome.stages.append(stage)
    if not stage.ok:
        error(stage.error)
        return
    if plan.migration_type == "manual":
        outcome.exit_code = 0
        return
    archive = stage.artifacts[outcome.build.snapshot.name]
    outcome.remote_archive = archive if plan.is_remote else ""

    step("Restoring on target")
    if plan.is_remote:
        stage = _restore_remote(archive, plan, ssh)
    else:
        stage = _restore_local(archive, plan, config, dest_supervisor)
    outcome.stages.append(stage)
    if stage.artifacts.get("secrets_file"):
        outcome.sensitive.append(stage.artifacts["secrets_file"])
    if not stage.ok:
        error(stage.error)
        return

    if plan.validate:
        step("Validating migration")
        if plan.is_remote:
            stage = _validate_remote(plan, ssh)
        else:
            stage = _validate_local(plan, config, dest_supervisor, http_client)
    else:
        stage = StageResult(stage="validate", status=StageStatus.SKIPPED)
        print("Skipping validation as requested")
    outcome.stages.append(stage)

    if plan.cleanup:
        outcome.stages.append(_cleanup(outcome.build, prompter))
        if outcome.stage("cleanup").artifacts.get("deleted") and outcome.build.secrets_file:
            outcome.build.secrets_file = None

    outcome.exit_code = 0 if all(s.ok for s in outcome.stages) else 1
