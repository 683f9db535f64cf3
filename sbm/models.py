"""Data models for stack-backup-manager."""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

ARCHIVE_PREFIX = "stack-backup-"
ARCHIVE_SUFFIX = ".tar.gz"
ID_FORMAT = "%Y%m%d_%H%M%S"

ID_RE = re.compile(r"(\d{8}_\d{6})(?:_\d+)?")


@dataclass(frozen=True)
class Snapshot:
    """A point-in-time backup: either <root>/<id>/ or <root>/stack-backup-<id>.tar.gz."""
    id: str
    path: str
    compressed: bool
    created_at: datetime

    @property
    def name(self) -> str:
        return os.path.basename(self.path)

    @classmethod
    def parse(cls, path: str) -> "Snapshot":
        name = os.path.basename(path.rstrip("/"))
        compressed = name.endswith(ARCHIVE_SUFFIX)
        if compressed:
            if not name.startswith(ARCHIVE_PREFIX):
                raise ValueError(f"Not a snapshot archive: {path!r}")
            snap_id = name[len(ARCHIVE_PREFIX):-len(ARCHIVE_SUFFIX)]
        else:
            snap_id = name
        match = ID_RE.fullmatch(snap_id)
        if match:
            created = datetime.strptime(match.group(1), ID_FORMAT)
        elif os.path.exists(path):
            created = datetime.fromtimestamp(os.path.getmtime(path))
        else:
            raise ValueError(f"Not a snapshot: {path!r}")
        return cls(id=snap_id, path=path, compressed=compressed, created_at=created)

    def age_days(self, now: datetime | None = None) -> float:
        now = now or datetime.now()
        return (now - self.created_at).total_seconds() / 86400

    def retention_class(self, retention_days: int, now: datetime | None = None) -> str:
        """'expired' when older than the window; a window <= 0 keeps everything."""
        if retention_days <= 0:
            return "retained"
        return "expired" if self.age_days(now) > retention_days else "retained"


@dataclass
class SnapshotOptions:
    include_bulk_data: bool = False
    compress: bool = True
    retention_days: int = 30
    migration_metadata: bool = False
    export_secrets: bool = False
    anonymize_secrets: bool = False


@dataclass
class BuildResult:
    snapshot: Snapshot
    size_bytes: int
    sections: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    partial: bool = False
    secrets_file: str | None = None
    anonymized: list[str] = field(default_factory=list)
    swept: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class SecretRecord:
    """One line in a configuration file that looks like it holds a secret."""
    path: str
    pattern: str       # api_key | password | token | secret
    line_number: int
    value: str         # the raw line, stripped


@dataclass
class CapacityReport:
    payload_bytes: int
    required_bytes: int
    available_bytes: int
    multiplier: float
    from_record: bool = False

    @property
    def sufficient(self) -> bool:
        return self.available_bytes >= self.required_bytes

    @property
    def verdict(self) -> str:
        return "sufficient" if self.sufficient else "insufficient"


class Outcome(str, Enum):
    PASS = "pass"
    WARN = "warn"
    FAIL = "fail"


@dataclass(frozen=True)
class CheckResult:
    category: str
    name: str
    outcome: Outcome
    message: str = ""


@dataclass
class ValidationReport:
    """Accumulated check results. Counts are always derived from ``results``."""
    results: list[CheckResult] = field(default_factory=list)
    halted: bool = False

    def extend(self, results: list[CheckResult]) -> "ValidationReport":
        self.results.extend(results)
        return self

    def _count(self, outcome: Outcome) -> int:
        return sum(1 for r in self.results if r.outcome is outcome)

    @property
    def total(self) -> int:
        return len(self.results)

    @property
    def passed(self) -> int:
        return self._count(Outcome.PASS)

    @property
    def warned(self) -> int:
        return self._count(Outcome.WARN)

    @property
    def failed(self) -> int:
        return self._count(Outcome.FAIL)

    @property
    def success_rate(self) -> float:
        return self.passed / self.total if self.total else 0.0

    @property
    def band(self) -> str:
        pct = self.success_rate * 100
        if pct >= 90:
            return "excellent"
        if pct >= 80:
            return "good"
        if pct >= 70:
            return "needs-attention"
        return "significant-issues"

    def by_category(self) -> dict[str, tuple[int, int]]:
        """Map category -> (passed, total)."""
        stats: dict[str, tuple[int, int]] = {}
        for r in self.results:
            passed, total = stats.get(r.category, (0, 0))
            stats[r.category] = (passed + (r.outcome is Outcome.PASS), total + 1)
        return stats

    @property
    def exit_code(self) -> int:
        return 1 if self.failed else 0


class StageStatus(str, Enum):
    OK = "ok"
    WARN = "warn"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class StageResult:
    """Status plus every issue recorded while running one pipeline stage."""
    stage: str
    status: StageStatus = StageStatus.OK
    issues: list[str] = field(default_factory=list)
    error: str = ""
    artifacts: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status in (StageStatus.OK, StageStatus.WARN, StageStatus.SKIPPED)

    def warn(self, message: str) -> None:
        self.issues.append(message)
        if self.status is StageStatus.OK:
            self.status = StageStatus.WARN

    def fail(self, message: str) -> "StageResult":
        self.error = message
        self.status = StageStatus.FAILED
        return self


@dataclass(frozen=True)
class ServiceStatus:
    name: str
    running: bool
    health: str = ""   # healthy | unhealthy | starting | "" (no health check)
    ports: tuple[int, ...] = ()


@dataclass
class MigrationPlan:
    migration_type: str            # local | remote | manual
    source: str
    destination: str = ""
    remote_host: str = ""
    remote_user: str = ""
    remote_port: int = 22
    include_bulk_data: bool = False
    validate: bool = True
    cleanup: bool = True
    backup_name: str = ""

    @property
    def is_remote(self) -> bool:
        return self.migration_type == "remote"

    @property
    def remote_target(self) -> str:
        """user@host, combining --user only when the host carries no user part."""
        if self.remote_user and "@" not in self.remote_host:
            return f"{self.remote_user}@{self.remote_host}"
        return self.remote_host


# ---------------------------------------------------------------------------
# Stack configuration (loaded from sbm.yaml by sbm.config)
# ---------------------------------------------------------------------------

@dataclass
class ServiceConfig:
    name: str
    port: int | None = None
    path: str = "/"
    config_file: str | None = None   # relative to the config directory
    database: str | None = None      # relative to the config directory


@dataclass
class LayoutConfig:
    config_dir: str = "config"
    data_dir: str = "data"
    backup_dir: str = "backups"
    compose_file: str = "docker-compose.yml"
    env_file: str = ".env"
    scripts: list[str] = field(
        default_factory=lambda: ["start.sh", "stop.sh", "update.sh", "backup.sh"]
    )


@dataclass
class IdentityConfig:
    uid: int = 1000
    gid: int = 1000
    dir_mode: int = 0o755
    file_mode: int = 0o644


@dataclass
class SupervisorConfig:
    phases: list[list[str]] = field(default_factory=list)
    phase_delay: float = 30.0
    stop_timeout: int = 30


@dataclass
class TransportConfig:
    ssh_timeout: int = 10
    companions: list[str] = field(default_factory=lambda: ["sbm.yaml"])


@dataclass
class ValidationConfig:
    http_host: str = "localhost"
    http_timeout: float = 5.0
    required_env: list[str] = field(
        default_factory=lambda: ["PUID", "PGID", "TZ", "DOMAIN", "EMAIL"]
    )
    media_subdirs: list[str] = field(
        default_factory=lambda: ["movies", "tv", "music", "books"]
    )
    media_extensions: list[str] = field(
        default_factory=lambda: [".mp4", ".mkv", ".avi", ".mp3", ".flac"]
    )
    download_dirs: list[str] = field(
        default_factory=lambda: ["torrents", "torrents/movies", "torrents/tv", "torrents/music"]
    )
    disk_pass_gb: float = 10.0
    disk_warn_gb: float = 5.0


@dataclass
class StackConfig:
    layout: LayoutConfig = field(default_factory=LayoutConfig)
    identity: IdentityConfig = field(default_factory=IdentityConfig)
    supervisor: SupervisorConfig = field(default_factory=SupervisorConfig)
    transport: TransportConfig = field(default_factory=TransportConfig)
    validation: ValidationConfig = field(default_factory=ValidationConfig)
    services: list[ServiceConfig] = field(default_factory=list)
    retention_days: int = 30
    safety_multiplier: float = 1.5
    reconcile_keys: list[str] = field(default_factory=lambda: ["DOMAIN", "EMAIL", "TZ"])
    sensitive_files: list[str] = field(default_factory=lambda: ["traefik/acme.json"])
    source_path: str | None = None   # file this config was loaded from, if any
