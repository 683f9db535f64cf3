"""Move a snapshot and its companion files to a migration destination."""
from __future__ import annotations

import os
import shlex
from typing import TYPE_CHECKING

from sbm.console import GREEN, RESET, YELLOW, error
from sbm.executor import ExecutorError, LocalExecutor
from sbm.models import StageResult, StageStatus
from sbm.snapshot import resume_command

if TYPE_CHECKING:
    from sbm.executor import Executor, SSHExecutor
    from sbm.models import Snapshot


class TransportError(Exception):
    def __init__(self, artifact: str, message: str):
        self.artifact = artifact
        super().__init__(f"{artifact}: {message}")


def _existing_companions(companions: list[str], result: StageResult) -> list[str]:
    found = []
    for path in companions:
        if os.path.isfile(path):
            found.append(path)
        else:
            result.warn(f"companion file not found: {path}")
    return found


def _deliver(
    executor: "Executor",
    snapshot: "Snapshot",
    dest: str,
    companions: list[str],
    result: StageResult,
) -> StageResult:
    if not os.path.isfile(snapshot.path):
        return result.fail(f"{snapshot.path}: only compressed snapshots can be transferred")
    try:
        result.artifacts[snapshot.name] = executor.put(snapshot.path, dest)
        print(f"  {GREEN}Transferred {snapshot.name}{RESET}")
    except ExecutorError as e:
        error(f"transfer of {snapshot.name} failed")
        return result.fail(str(TransportError(snapshot.name, str(e))))

    for path in _existing_companions(companions, result):
        name = os.path.basename(path)
        try:
            result.artifacts[name] = executor.put(path, dest)
            print(f"  {GREEN}Transferred {name}{RESET}")
        except ExecutorError as e:
            return result.fail(str(TransportError(name, str(e))))
    return result


def transfer_local(snapshot: "Snapshot", dest: str, companions: list[str]) -> StageResult:
    """Copy the archive and companions into dest (created if absent). Source is untouched."""
    result = StageResult(stage="transfer")
    print(f"Copying {snapshot.name} to {dest}")
    try:
        os.makedirs(dest, exist_ok=True)
    except OSError as e:
        return result.fail(f"cannot create {dest}: {e}")
    return _deliver(LocalExecutor(), snapshot, dest, companions, result)


def transfer_remote(
    snapshot: "Snapshot",
    executor: "SSHExecutor",
    dest: str,
    companions: list[str],
) -> StageResult:
    """Check the remote host is reachable, then copy archive and companions over scp.

    Nothing is written remotely unless the connection check succeeds.
    """
    result = StageResult(stage="transfer")
    print(f"Testing SSH connection to {executor.label}...")
    try:
        executor.check_connection()
    except ExecutorError as e:
        error("SSH connection failed")
        return result.fail(f"connection check to {executor.destination} failed: {e}")

    try:
        executor.run(["mkdir", "-p", dest])
    except ExecutorError as e:
        return result.fail(f"cannot create remote directory {dest}: {e}")
    return _deliver(executor, snapshot, dest, companions, result)


def prepare_manual(snapshot: "Snapshot", companions: list[str]) -> StageResult:
    """No transfer: list what the operator must move and how to resume."""
    result = StageResult(stage="transfer", status=StageStatus.OK)
    result.artifacts[snapshot.name] = snapshot.path
    for path in _existing_companions(companions, result):
        result.artifacts[os.path.basename(path)] = path
    result.artifacts["resume_command"] = resume_command(shlex.quote(snapshot.name))

    print(f"{YELLOW}Transfer the following files to the target machine:{RESET}")
    for name, path in result.artifacts.items():
        if name != "resume_command":
            print(f"  - {path}")
    print("On the target machine, run:")
    print(f"  {result.artifacts['resume_command']}")
    return result
