"""Stack supervisor: stop/start the compose stack and report service status."""
from __future__ import annotations

import json
import os
import time
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from sbm.executor import ExecutorError
from sbm.models import ServiceStatus

if TYPE_CHECKING:
    from sbm.executor import Executor
    from sbm.models import StackConfig


@runtime_checkable
class StackSupervisor(Protocol):
    def available(self) -> bool:
        raise NotImplementedError

    def version(self) -> str:
        raise NotImplementedError

    def stop(self, graceful: bool = True) -> bool:
        raise NotImplementedError

    def start(self) -> bool:
        raise NotImplementedError

    def list_services(self) -> list[ServiceStatus]:
        raise NotImplementedError


def parse_ps_output(output: str) -> list[ServiceStatus]:
    """Parse `compose ps --format json`.

    Compose v2 before 2.21 prints one JSON array; later versions print one
    object per line.
    """
    output = output.strip()
    if not output:
        return []
    if output.startswith("["):
        rows = json.loads(output)
    else:
        rows = [json.loads(line) for line in output.splitlines() if line.strip()]

    services = []
    for row in rows:
        name = row.get("Service") or row.get("Name") or ""
        state = str(row.get("State", "")).lower()
        ports = tuple(sorted({
            int(p["PublishedPort"])
            for p in row.get("Publishers") or []
            if p.get("PublishedPort")
        }))
        services.append(ServiceStatus(
            name=name,
            running=state == "running",
            health=str(row.get("Health", "") or "").lower(),
            ports=ports,
        ))
    return services


class ComposeSupervisor:
    """Drives `docker compose` (or legacy `docker-compose`) for one project directory."""

    def __init__(self, executor: "Executor", project_dir: str, config: "StackConfig",
                 verbose: bool = False):
        self.executor = executor
        self.project_dir = project_dir
        self.config = config
        self.verbose = verbose
        self._compose_cmd: list[str] | None = None

    @property
    def compose_file(self) -> str:
        return os.path.join(self.project_dir, self.config.layout.compose_file)

    def compose_cmd(self) -> list[str]:
        """Detect the compose command. Raise ExecutorError if neither is installed."""
        if self._compose_cmd is None:
            for candidate in (["docker", "compose"], ["docker-compose"]):
                try:
                    self.executor.run(candidate + ["version"])
                except ExecutorError:
                    continue
                self._compose_cmd = candidate
                break
            else:
                raise ExecutorError(["docker", "compose", "version"], 127,
                                    "Docker Compose is not available")
        return self._compose_cmd

    def _compose(self, *args: str) -> str:
        cmd = self.compose_cmd() + [
            "--project-directory", self.project_dir, "-f", self.compose_file, *args,
        ]
        if self.verbose:
            print(f"  [{self.executor.label}] {' '.join(cmd)}")
        return self.executor.run(cmd)

    def available(self) -> bool:
        try:
            self.executor.run(["docker", "info"])
            self.compose_cmd()
        except ExecutorError:
            return False
        return True

    def version(self) -> str:
        try:
            return self.executor.run(self.compose_cmd() + ["version"]).strip()
        except ExecutorError:
            return "Not available"

    def stop(self, graceful: bool = True) -> bool:
        args = ["down", "--remove-orphans"]
        args += ["--timeout", str(self.config.supervisor.stop_timeout if graceful else 0)]
        try:
            self._compose(*args)
        except ExecutorError as e:
            print(f"  stop failed: {e}")
            return False
        return True

    def start(self) -> bool:
        phases = self.config.supervisor.phases
        try:
            if not phases:
                self._compose("up", "-d")
                return True
            for index, phase in enumerate(phases, start=1):
                print(f"  Starting phase {index}: {', '.join(phase)}")
                self._compose("up", "-d", *phase)
                if index < len(phases) and self.config.supervisor.phase_delay:
                    time.sleep(self.config.supervisor.phase_delay)
        except ExecutorError as e:
            print(f"  start failed: {e}")
            return False
        return True

    def list_services(self) -> list[ServiceStatus]:
        try:
            output = self._compose("ps", "--all", "--format", "json")
        except ExecutorError:
            return []
        try:
            return parse_ps_output(output)
        except (ValueError, TypeError, KeyError):
            return []
