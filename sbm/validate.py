"""Post-operation validation: a battery of pass/warn/fail checks over a stack."""
from __future__ import annotations

import os
import socket
import sys
from datetime import datetime
from typing import TYPE_CHECKING, Callable

import httpx

from sbm.console import GREEN, RED, RESET, RULE, YELLOW
from sbm.envfile import read_env
from sbm.fsutil import free_bytes
from sbm.models import CheckResult, Outcome, ValidationReport
from sbm.snapshot import SECRETS_EXPORT

if TYPE_CHECKING:
    from sbm.models import ServiceStatus, StackConfig
    from sbm.supervisor import StackSupervisor

GIB = 1024 ** 3
SQLITE_HEADER = b"SQLite format 3\x00"

_MARKS = {
    Outcome.PASS: f"{GREEN}PASS{RESET}",
    Outcome.WARN: f"{YELLOW}WARN{RESET}",
    Outcome.FAIL: f"{RED}FAIL{RESET}",
}


def _pass(category: str, name: str, message: str = "") -> CheckResult:
    return CheckResult(category, name, Outcome.PASS, message)


def _warn(category: str, name: str, message: str) -> CheckResult:
    return CheckResult(category, name, Outcome.WARN, message)


def _fail(category: str, name: str, message: str) -> CheckResult:
    return CheckResult(category, name, Outcome.FAIL, message)


# ---------------------------------------------------------------------------
# Checks
# ---------------------------------------------------------------------------

def check_prerequisites(root: str, config: "StackConfig",
                        supervisor: "StackSupervisor") -> list[CheckResult]:
    """Every prerequisite runs; the caller halts if any failed."""
    cat = "prerequisite"
    results = []
    if supervisor.available():
        results.append(_pass(cat, "container runtime", "Docker and Docker Compose available"))
    else:
        results.append(_fail(cat, "container runtime",
                             "Docker is not running or Docker Compose is not installed"))
    for name in (config.layout.compose_file, config.layout.env_file):
        if os.path.isfile(os.path.join(root, name)):
            results.append(_pass(cat, name, f"{name} found"))
        else:
            results.append(_fail(cat, name, f"{name} missing"))
    return results


def check_services_running(config: "StackConfig",
                           observed: dict[str, "ServiceStatus"]) -> list[CheckResult]:
    results = []
    for svc in config.services:
        status = observed.get(svc.name)
        if status is not None and status.running:
            results.append(_pass("service_running", svc.name, "running"))
        else:
            results.append(_fail("service_running", svc.name, "not running"))
    return results


def check_services_healthy(config: "StackConfig",
                           observed: dict[str, "ServiceStatus"]) -> list[CheckResult]:
    """Explicit health status wins; without a health check, running counts as healthy."""
    cat = "service_healthy"
    results = []
    for svc in config.services:
        status = observed.get(svc.name)
        if status is None or not status.running:
            results.append(_fail(cat, svc.name, "not running"))
        elif status.health == "healthy":
            results.append(_pass(cat, svc.name, "healthy"))
        elif status.health == "":
            results.append(_pass(cat, svc.name, "running (no health check)"))
        else:
            results.append(_warn(cat, svc.name, f"health: {status.health}"))
    return results


def check_environment(root: str, config: "StackConfig") -> list[CheckResult]:
    cat = "environment"
    env_path = os.path.join(root, config.layout.env_file)
    if not os.path.isfile(env_path):
        return [_fail(cat, config.layout.env_file, "not found")]
    values = read_env(env_path)
    results = []
    for key in config.validation.required_env:
        if key not in values:
            results.append(_fail(cat, key, "missing"))
        elif not values[key]:
            results.append(_warn(cat, key, "empty"))
        else:
            results.append(_pass(cat, key, "set"))
    return results


def check_directories(root: str, config: "StackConfig") -> list[CheckResult]:
    cat = "directory"
    results = []
    for name in (config.layout.config_dir, config.layout.data_dir):
        path = os.path.join(root, name)
        if not os.path.isdir(path):
            results.append(_fail(cat, name, "missing"))
        elif os.access(path, os.R_OK | os.W_OK):
            results.append(_pass(cat, name, "exists, readable and writable"))
        else:
            results.append(_warn(cat, name, "permissions may be incorrect"))
    data = os.path.join(root, config.layout.data_dir)
    for sub in ("media", "torrents"):
        if os.path.isdir(os.path.join(data, sub)):
            results.append(_pass(cat, f"{config.layout.data_dir}/{sub}", "exists"))
        else:
            results.append(_warn(cat, f"{config.layout.data_dir}/{sub}",
                                 "missing (will be created by services)"))
    return results


def check_http(config: "StackConfig", observed: dict[str, "ServiceStatus"],
               client: httpx.Client) -> list[CheckResult]:
    cat = "http"
    v = config.validation
    results = []
    for svc in config.services:
        if svc.port is None:
            continue
        status = observed.get(svc.name)
        if status is None or not status.running:
            results.append(_fail(cat, svc.name, "not running"))
            continue
        url = f"http://{v.http_host}:{svc.port}{svc.path}"
        try:
            response = client.get(url, timeout=v.http_timeout)
        except httpx.HTTPError as e:
            results.append(_warn(cat, svc.name,
                                 f"{url} not responding ({type(e).__name__}); "
                                 "may still be initializing"))
            continue
        if response.status_code < 400:
            results.append(_pass(cat, svc.name, f"{url} -> {response.status_code}"))
        else:
            results.append(_warn(cat, svc.name, f"{url} -> {response.status_code}; "
                                                "may still be initializing"))
    return results


def check_config_files(root: str, config: "StackConfig") -> list[CheckResult]:
    results = []
    for svc in config.services:
        if not svc.config_file:
            continue
        path = os.path.join(root, config.layout.config_dir, svc.config_file)
        if os.path.isfile(path):
            results.append(_pass("config_file", svc.name, "present"))
        else:
            results.append(_warn("config_file", svc.name,
                                 f"{svc.config_file} missing (may need initial setup)"))
    return results


def is_sqlite(path: str) -> bool:
    with open(path, "rb") as f:
        return f.read(len(SQLITE_HEADER)) == SQLITE_HEADER


def check_databases(root: str, config: "StackConfig") -> list[CheckResult]:
    """Signature check only; it does not verify database consistency."""
    results = []
    for svc in config.services:
        if not svc.database:
            continue
        path = os.path.join(root, config.layout.config_dir, svc.database)
        if not os.path.isfile(path):
            results.append(_warn("database", svc.name, "not found (may be first run)"))
            continue
        try:
            valid = is_sqlite(path)
        except OSError as e:
            results.append(_fail("database", svc.name, f"unreadable: {e}"))
            continue
        if valid:
            results.append(_pass("database", svc.name, "SQLite signature OK"))
        else:
            results.append(_fail("database", svc.name, "file appears corrupted"))
    return results


def check_media(root: str, config: "StackConfig") -> list[CheckResult]:
    v = config.validation
    media = os.path.join(root, config.layout.data_dir, "media")
    present = [s for s in v.media_subdirs if os.path.isdir(os.path.join(media, s))]
    if present:
        results = [_pass("media", "library directories", ", ".join(present))]
    else:
        results = [_warn("media", "library directories", "no media library directories")]

    extensions = tuple(e.lower() for e in v.media_extensions)
    count = 0
    for _dirpath, _dirnames, filenames in os.walk(media):
        count += sum(1 for f in filenames if f.lower().endswith(extensions))
    if count:
        results.append(_pass("media", "media content", f"{count} media file(s)"))
    else:
        results.append(_warn("media", "media content", "no media files (library may be empty)"))
    return results


def check_downloads(root: str, config: "StackConfig") -> list[CheckResult]:
    data = os.path.join(root, config.layout.data_dir)
    missing = [d for d in config.validation.download_dirs
               if not os.path.isdir(os.path.join(data, d))]
    if missing:
        return [_warn("downloads", "download directories", "missing: " + ", ".join(missing))]
    return [_pass("downloads", "download directories", "present")]


def port_in_use(port: int, host: str = "0.0.0.0") -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind((host, port))
        except OSError:
            return True
    return False


def check_ports(config: "StackConfig", observed: dict[str, "ServiceStatus"],
                in_use: Callable[[int], bool] = port_in_use) -> list[CheckResult]:
    """Configured ports held by something other than the stack are conflicts."""
    published = {p for s in observed.values() for p in s.ports}
    conflicts = []
    for svc in config.services:
        if svc.port is None or svc.port in published:
            continue
        if in_use(svc.port):
            conflicts.append(f"{svc.port} ({svc.name})")
    if conflicts:
        return [_warn("port", "port conflicts",
                      "in use by external process: " + ", ".join(conflicts))]
    return [_pass("port", "port conflicts", "none")]


def check_disk_space(root: str, config: "StackConfig",
                     available: int | None = None) -> list[CheckResult]:
    v = config.validation
    if available is None:
        available = free_bytes(root)
    gb = available / GIB
    if gb > v.disk_pass_gb:
        return [_pass("disk_space", "free space", f"{gb:.1f} GiB available")]
    if gb > v.disk_warn_gb:
        return [_warn("disk_space", "free space", f"low disk space ({gb:.1f} GiB remaining)")]
    return [_fail("disk_space", "free space", f"very low disk space ({gb:.1f} GiB remaining)")]


def check_leftover_secrets(root: str) -> list[CheckResult]:
    if os.path.exists(os.path.join(root, SECRETS_EXPORT)):
        return [_warn("secrets", SECRETS_EXPORT,
                      "still present; delete it after updating API keys")]
    return [_pass("secrets", "security cleanup", "no sensitive files left behind")]


# ---------------------------------------------------------------------------
# Driver and reporting
# ---------------------------------------------------------------------------

def _print_results(results: list[CheckResult]) -> None:
    for r in results:
        line = f"  {_MARKS[r.outcome]}  [{r.category}] {r.name}"
        if r.message:
            line += f": {r.message}"
        print(line)


def run_validation(
    root: str,
    config: "StackConfig",
    supervisor: "StackSupervisor",
    quick: bool = False,
    http_client: httpx.Client | None = None,
    disk_available: int | None = None,
    port_check: Callable[[int], bool] = port_in_use,
) -> ValidationReport:
    report = ValidationReport()

    print("Validating prerequisites...")
    prereqs = check_prerequisites(root, config, supervisor)
    _print_results(prereqs)
    report.extend(prereqs)
    if report.failed:
        report.halted = True
        print(f"{RED}Prerequisite checks failed; skipping remaining checks{RESET}",
              file=sys.stderr)
        return report

    observed = {s.name: s for s in supervisor.list_services()}
    phases: list[tuple[str, Callable[[], list[CheckResult]]]] = [
        ("service status", lambda: check_services_running(config, observed)),
    ]
    if not quick:
        phases += [
            ("environment", lambda: check_environment(root, config)),
            ("directories", lambda: check_directories(root, config)),
            ("service health", lambda: check_services_healthy(config, observed)),
            ("HTTP endpoints", lambda: check_http(config, observed, http_client)),
            ("configuration files", lambda: check_config_files(root, config)),
            ("databases", lambda: check_databases(root, config)),
            ("media library", lambda: check_media(root, config)),
            ("download directories", lambda: check_downloads(root, config)),
            ("port conflicts", lambda: check_ports(config, observed, port_check)),
            ("disk space", lambda: check_disk_space(root, config, disk_available)),
            ("leftover secrets", lambda: check_leftover_secrets(root)),
        ]

    own_client = http_client is None and not quick
    if own_client:
        http_client = httpx.Client(timeout=config.validation.http_timeout)
    try:
        for title, check in phases:
            print(f"Validating {title}...")
            results = check()
            _print_results(results)
            report.extend(results)
    finally:
        if own_client:
            http_client.close()
    return report


def remediation(report: ValidationReport) -> list[str]:
    """Checklist for the operator, based on which categories did not pass."""
    bad = {r.category for r in report.results if r.outcome is not Outcome.PASS}
    steps = []
    if "prerequisite" in bad:
        steps.append("Install/start Docker and Docker Compose; make sure the compose and env files exist")
    if bad & {"service_running", "service_healthy", "http"}:
        steps.append("Check service logs: docker compose logs <service>; "
                     "restart with docker compose restart")
    if "environment" in bad:
        steps.append("Verify .env configuration (PUID, PGID, TZ, DOMAIN, EMAIL)")
    if bad & {"directory", "database", "config_file"}:
        steps.append("Ensure proper file ownership and permissions under config/ and data/")
    if "disk_space" in bad:
        steps.append("Free up disk space")
    if "port" in bad:
        steps.append("Stop external processes holding the stack's ports")
    if "secrets" in bad:
        steps.append(f"Re-apply API keys, then delete {SECRETS_EXPORT}")
    return steps


def print_summary(report: ValidationReport) -> None:
    print(f"\n{RULE}")
    print("Validation Summary")
    print(RULE)
    print(f"Total checks: {report.total}")
    print(f"  Passed:   {report.passed}")
    print(f"  Warnings: {report.warned}")
    print(f"  Failed:   {report.failed}")
    for category, (passed, total) in report.by_category().items():
        print(f"    {category}: {passed}/{total}")
    print(f"Success rate: {report.success_rate * 100:.0f}% ({report.band})")
    if report.halted:
        print(f"{RED}Validation halted after prerequisite failure{RESET}")

    if report.failed == 0 and report.warned == 0:
        print(f"{GREEN}All validations passed.{RESET}")
    elif report.failed == 0:
        print(f"{YELLOW}All critical validations passed with {report.warned} warning(s).{RESET}")
        print("  Services may need time to fully initialize; API keys may need to be reconfigured.")
    else:
        print(f"{RED}{report.failed} critical validation(s) failed.{RESET}")
    steps = remediation(report)
    if steps:
        print("\nRecommended actions:")
        for i, s in enumerate(steps, 1):
            print(f"  {i}. {s}")


def write_report(report: ValidationReport, root: str, now: datetime | None = None) -> str:
    """Write validation-report-<timestamp>.txt into root and return its path."""
    now = now or datetime.now()
    path = os.path.join(root, f"validation-report-{now.strftime('%Y%m%d_%H%M%S')}.txt")
    lines = [
        "# Stack Validation Report",
        f"# Generated: {now.isoformat(timespec='seconds')}",
        f"# Hostname: {socket.gethostname()}",
        "",
        "## Summary",
        f"Total: {report.total}",
        f"Passed: {report.passed}",
        f"Warnings: {report.warned}",
        f"Failed: {report.failed}",
        f"Success rate: {report.success_rate * 100:.0f}% ({report.band})",
        "",
        "## Results",
        *[f"[{r.outcome.value.upper()}] {r.category}/{r.name}: {r.message}" for r in report.results],
        "",
        "## Next Steps",
    ]
    steps = remediation(report)
    lines += [f"{i}. {s}" for i, s in enumerate(steps, 1)] or ["No action required"]
    with open(path, "w") as f:
        f.write("\n".join(lines) + "\n")
    return path
