"""Executor protocol and implementations (local, SSH)."""
from __future__ import annotations

import os
import shlex
import shutil
import subprocess
from typing import Protocol, runtime_checkable


class ExecutorError(Exception):
    """Raised when a command exits with a non-zero status or cannot be started."""
    def __init__(self, cmd: list[str], returncode: int, stderr: str):
        self.cmd = cmd
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(
            f"Command {shlex.join(cmd)!r} exited {returncode}: {stderr.strip()}"
        )


@runtime_checkable
class Executor(Protocol):
    @property
    def label(self) -> str:
        """Short label for display (e.g. 'local', 'ssh://host')."""
        raise NotImplementedError

    def run(self, cmd: list[str], timeout: float | None = None) -> str:
        """Run a command, return stdout. Raise ExecutorError on failure."""
        raise NotImplementedError

    def put(self, local_path: str, dest_dir: str) -> str:
        """Copy a local file into dest_dir on the executor's host. Return the new path."""
        raise NotImplementedError


def _run(cmd: list[str], timeout: float | None, display: list[str] | None = None) -> str:
    try:
        result = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            check=False,
            timeout=timeout,
        )
    except FileNotFoundError as e:
        raise ExecutorError(display or cmd, 127, str(e)) from e
    except subprocess.TimeoutExpired as e:
        raise ExecutorError(display or cmd, 124, f"timed out after {timeout}s") from e
    if result.returncode != 0:
        raise ExecutorError(display or cmd, result.returncode, result.stderr)
    return result.stdout


class LocalExecutor:
    """Run commands on the local machine."""

    @property
    def label(self) -> str:
        return "local"

    def run(self, cmd: list[str], timeout: float | None = None) -> str:
        return _run(cmd, timeout)

    def put(self, local_path: str, dest_dir: str) -> str:
        os.makedirs(dest_dir, exist_ok=True)
        target = os.path.join(dest_dir, os.path.basename(local_path))
        try:
            shutil.copy2(local_path, target)
        except OSError as e:
            raise ExecutorError(["cp", local_path, target], 1, str(e)) from e
        return target


class SSHExecutor:
    """Run commands on a remote host via SSH; copy files with scp."""

    def __init__(self, host: str, user: str | None = None, port: int = 22,
                 connect_timeout: int = 10):
        if user is None and "@" in host:
            user, host = host.split("@", 1)
        self.host = host
        self.user = user
        self.port = port
        self.connect_timeout = connect_timeout

    @property
    def destination(self) -> str:
        return f"{self.user}@{self.host}" if self.user else self.host

    @property
    def label(self) -> str:
        return f"ssh://{self.destination}:{self.port}"

    def _options(self) -> list[str]:
        return [
            "-o", "BatchMode=yes",
            "-o", "StrictHostKeyChecking=accept-new",
            "-o", f"ConnectTimeout={self.connect_timeout}",
        ]

    def _ssh_prefix(self) -> list[str]:
        return ["ssh", *self._options(), "-p", str(self.port), self.destination]

    def run(self, cmd: list[str], timeout: float | None = None) -> str:
        full_cmd = self._ssh_prefix() + [shlex.join(cmd)]
        return _run(full_cmd, timeout)

    def check_connection(self) -> None:
        """Non-interactive reachability check bounded by ConnectTimeout."""
        self.run(["true"], timeout=self.connect_timeout + 5)

    def put(self, local_path: str, dest_dir: str) -> str:
        target = f"{dest_dir.rstrip('/')}/{os.path.basename(local_path)}"
        cmd = [
            "scp", *self._options(), "-P", str(self.port),
            local_path, f"{self.destination}:{shlex.quote(dest_dir.rstrip('/') + '/')}",
        ]
        _run(cmd, None)
        return target
