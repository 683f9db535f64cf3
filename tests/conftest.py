"""MockExecutor, FakeSupervisor and shared fixtures for testing."""
from __future__ import annotations

import os
import shlex

import pytest

from sbm.models import IdentityConfig, ServiceConfig, ServiceStatus, StackConfig


class MockExecutor:
    """
    Executor that returns pre-scripted responses for commands.

    responses: dict mapping tuple(cmd) -> stdout string, or an Exception to raise.
    If the command isn't found, raises KeyError (to catch unexpected calls in tests).

    put() records (local_path, dest_dir) and returns the remote path; put_errors
    maps a file basename to the Exception its transfer should raise.
    """

    def __init__(self, responses: dict | None = None, is_verbose: bool = False,
                 label: str = "mock", put_errors: dict | None = None):
        self.responses: dict = responses or {}
        self.verbose = is_verbose
        self._label = label
        self.put_errors: dict = put_errors or {}
        self.calls: list[list[str]] = []  # record of all commands run
        self.puts: list[tuple[str, str]] = []

    @property
    def label(self) -> str:
        return self._label

    def run(self, cmd: list[str], timeout: float | None = None) -> str:
        self.calls.append(cmd)
        key = tuple(cmd)
        if self.verbose:
            print(f"  [mock.run] {shlex.join(cmd)}")
        if key not in self.responses:
            raise KeyError(f"MockExecutor: unexpected command: {cmd}")
        result = self.responses[key]
        if isinstance(result, Exception):
            raise result
        return result

    def put(self, local_path: str, dest_dir: str) -> str:
        name = os.path.basename(local_path)
        if name in self.put_errors:
            raise self.put_errors[name]
        self.puts.append((local_path, dest_dir))
        return f"{dest_dir.rstrip('/')}/{name}"


class MockSSHExecutor(MockExecutor):
    """MockExecutor with the SSH-only surface used by remote transfers."""

    def __init__(self, responses: dict | None = None, destination: str = "deploy@newhost",
                 **kwargs):
        super().__init__(responses, label=f"ssh://{destination}:22", **kwargs)
        self.destination = destination

    def check_connection(self) -> None:
        self.run(["true"])


class FakeSupervisor:
    """In-memory StackSupervisor that records stop/start calls."""

    def __init__(self, services: list[ServiceStatus] | None = None, available: bool = True,
                 start_ok: bool = True, stop_ok: bool = True):
        self.services = services or []
        self._available = available
        self.start_ok = start_ok
        self.stop_ok = stop_ok
        self.calls: list = []

    def available(self) -> bool:
        return self._available

    def version(self) -> str:
        return "Docker Compose version v2.29.1"

    def stop(self, graceful: bool = True) -> bool:
        self.calls.append(("stop", graceful))
        return self.stop_ok

    def start(self) -> bool:
        self.calls.append("start")
        return self.start_ok

    def list_services(self) -> list[ServiceStatus]:
        return list(self.services)


# ---------------------------------------------------------------------------
# A small stack on disk
# ---------------------------------------------------------------------------

SQLITE_BYTES = b"SQLite format 3\x00" + b"\x00" * 84

RADARR_XML = (
    "<Config>\n"
    "  <Port>7878</Port>\n"
    "  <ApiKey>0123456789abcdef</ApiKey>\n"
    "  <AuthenticationMethod>None</AuthenticationMethod>\n"
    "</Config>\n"
)

SETTINGS_YML = (
    "server:\n"
    "  host: 0.0.0.0\n"
    "  password: hunter2\n"
)


def make_config(**overrides) -> StackConfig:
    """Two-service config owned by the current user, so chown never fails."""
    config = StackConfig(
        services=[
            ServiceConfig("radarr", 7878, config_file="radarr/config.xml",
                          database="radarr/radarr.db"),
            ServiceConfig("sonarr", 8989, config_file="sonarr/config.xml",
                          database="sonarr/sonarr.db"),
        ],
        identity=IdentityConfig(uid=os.getuid(), gid=os.getgid()),
    )
    for key, value in overrides.items():
        setattr(config, key, value)
    return config


def env_text(**overrides) -> str:
    values = {
        "PUID": str(os.getuid()),
        "PGID": str(os.getgid()),
        "TZ": "Europe/Berlin",
        "DOMAIN": "media.example.org",
        "EMAIL": "ops@example.org",
    }
    values.update(overrides)
    return "# stack settings\n" + "".join(f"{k}={v}\n" for k, v in values.items())


def make_stack(root, with_data: bool = True) -> str:
    """Create a stack tree under root (a pathlib.Path). Return str(root)."""
    config = root / "config"
    (config / "radarr").mkdir(parents=True)
    (config / "radarr" / "config.xml").write_text(RADARR_XML)
    (config / "radarr" / "radarr.db").write_bytes(SQLITE_BYTES)
    (config / "sonarr").mkdir()
    (config / "sonarr" / "config.xml").write_text("<Config><Port>8989</Port></Config>\n")
    (config / "app").mkdir()
    (config / "app" / "settings.yml").write_text(SETTINGS_YML)
    (config / "traefik").mkdir()
    (config / "traefik" / "acme.json").write_text('{"letsencrypt": {}}\n')

    if with_data:
        media = root / "data" / "media" / "movies"
        media.mkdir(parents=True)
        (media / "film.mkv").write_bytes(b"\x1a\x45\xdf\xa3" + b"\x00" * 1024)
        for sub in ("movies", "tv", "music"):
            (root / "data" / "torrents" / sub).mkdir(parents=True)

    (root / "docker-compose.yml").write_text("services:\n  radarr:\n    image: radarr\n")
    (root / ".env").write_text(env_text())
    (root / "start.sh").write_text("#!/bin/sh\ndocker compose up -d\n")
    (root / "stop.sh").write_text("#!/bin/sh\ndocker compose down\n")
    return str(root)


def tree_bytes(top) -> dict[str, bytes]:
    """Map relative path -> content for every regular file under top."""
    files = {}
    for dirpath, _dirnames, filenames in os.walk(top):
        for filename in filenames:
            path = os.path.join(dirpath, filename)
            with open(path, "rb") as f:
                files[os.path.relpath(path, top)] = f.read()
    return files


@pytest.fixture
def stack(tmp_path):
    return make_stack(tmp_path / "stack")


@pytest.fixture
def config():
    return make_config()

