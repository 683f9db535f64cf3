"""Tests for sbm.supervisor module."""
from __future__ import annotations

import json

from sbm.executor import ExecutorError
from sbm.models import ServiceStatus, StackConfig, SupervisorConfig
from sbm.supervisor import ComposeSupervisor, parse_ps_output
from tests.conftest import MockExecutor

PROJECT = "/srv/stack"
COMPOSE = ["docker", "compose", "--project-directory", PROJECT, "-f", f"{PROJECT}/docker-compose.yml"]

PS_ROWS = [
    {"Service": "radarr", "State": "running", "Health": "healthy",
     "Publishers": [{"PublishedPort": 7878}, {"PublishedPort": 7878}]},
    {"Service": "sonarr", "State": "exited", "Health": "", "Publishers": None},
    {"Service": "bazarr", "State": "running", "Health": "starting",
     "Publishers": [{"PublishedPort": 0}]},
]


class TestParsePsOutput:
    def test_json_array(self):
        services = parse_ps_output(json.dumps(PS_ROWS))
        assert services[0] == ServiceStatus("radarr", True, "healthy", (7878,))
        assert services[1] == ServiceStatus("sonarr", False, "", ())
        assert services[2].health == "starting"
        assert services[2].ports == ()

    def test_one_object_per_line(self):
        text = "\n".join(json.dumps(r) for r in PS_ROWS) + "\n"
        assert [s.name for s in parse_ps_output(text)] == ["radarr", "sonarr", "bazarr"]

    def test_empty(self):
        assert parse_ps_output("") == []
        assert parse_ps_output("[]") == []


def _supervisor(responses, phases=None, phase_delay=0.0):
    config = StackConfig(supervisor=SupervisorConfig(phases=phases or [],
                                                     phase_delay=phase_delay))
    base = {("docker", "compose", "version"): "Docker Compose version v2.29.1\n"}
    base.update(responses)
    executor = MockExecutor(base)
    return ComposeSupervisor(executor, PROJECT, config), executor


class TestComposeSupervisor:
    def test_detects_plugin(self):
        sup, _ = _supervisor({})
        assert sup.compose_cmd() == ["docker", "compose"]

    def test_falls_back_to_legacy(self):
        executor = MockExecutor({
            ("docker", "compose", "version"): ExecutorError(["docker"], 1, "unknown command"),
            ("docker-compose", "version"): "docker-compose version 1.29.2\n",
        })
        sup = ComposeSupervisor(executor, PROJECT, StackConfig())
        assert sup.compose_cmd() == ["docker-compose"]

    def test_unavailable_without_docker(self):
        sup, _ = _supervisor({
            ("docker", "info"): ExecutorError(["docker", "info"], 1, "Cannot connect"),
        })
        assert sup.available() is False

    def test_stop_graceful_and_forced(self):
        sup, executor = _supervisor({
            tuple(COMPOSE + ["down", "--remove-orphans", "--timeout", "30"]): "",
            tuple(COMPOSE + ["down", "--remove-orphans", "--timeout", "0"]): "",
        })
        assert sup.stop(graceful=True)
        assert sup.stop(graceful=False)
        assert executor.calls[-1][-1] == "0"

    def test_start_all_at_once(self):
        sup, _ = _supervisor({tuple(COMPOSE + ["up", "-d"]): ""})
        assert sup.start()

    def test_start_in_phases(self):
        sup, executor = _supervisor({
            tuple(COMPOSE + ["up", "-d", "radarr"]): "",
            tuple(COMPOSE + ["up", "-d", "sonarr", "bazarr"]): "",
        }, phases=[["radarr"], ["sonarr", "bazarr"]])
        assert sup.start()
        ups = [c for c in executor.calls if "up" in c]
        assert ups[0][-1] == "radarr"
        assert ups[1][-2:] == ["sonarr", "bazarr"]

    def test_start_failure_reported(self):
        sup, _ = _supervisor({
            tuple(COMPOSE + ["up", "-d"]): ExecutorError(COMPOSE, 1, "pull access denied"),
        })
        assert sup.start() is False

    def test_list_services(self):
        sup, _ = _supervisor({
            tuple(COMPOSE + ["ps", "--all", "--format", "json"]): json.dumps(PS_ROWS),
        })
        assert [s.running for s in sup.list_services()] == [True, False, True]
