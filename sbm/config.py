"""Load and validate the YAML stack configuration (sbm.yaml)."""
from __future__ import annotations

import os

import yaml

from sbm.models import (
    IdentityConfig,
    LayoutConfig,
    ServiceConfig,
    StackConfig,
    SupervisorConfig,
    TransportConfig,
    ValidationConfig,
)

DEFAULT_CONFIG_NAME = "sbm.yaml"

# The media stack this tool was written for. Used when sbm.yaml has no
# 'services' list.
DEFAULT_SERVICES = [
    ServiceConfig("jellyfin", 8096, config_file="jellyfin/config/system.xml",
                  database="jellyfin/data/jellyfin.db"),
    ServiceConfig("jellyseerr", 5055, database="jellyseerr/db/db.sqlite3"),
    ServiceConfig("prowlarr", 9696, config_file="prowlarr/config.xml",
                  database="prowlarr/prowlarr.db"),
    ServiceConfig("radarr", 7878, config_file="radarr/config.xml",
                  database="radarr/radarr.db"),
    ServiceConfig("sonarr", 8989, config_file="sonarr/config.xml",
                  database="sonarr/sonarr.db"),
    ServiceConfig("lidarr", 8686, config_file="lidarr/config.xml",
                  database="lidarr/lidarr.db"),
    ServiceConfig("bazarr", 6767, config_file="bazarr/config.xml",
                  database="bazarr/db/bazarr.db"),
    ServiceConfig("qbittorrent", 8080,
                  config_file="qbittorrent/qBittorrent/qBittorrent.conf"),
    ServiceConfig("flaresolverr", 8191),
    ServiceConfig("unpackerr"),
    ServiceConfig("heimdall", 8082),
]

DEFAULT_PHASES = [
    ["jellyfin", "jellyseerr"],
    ["prowlarr", "radarr", "sonarr", "lidarr", "bazarr"],
    ["qbittorrent", "flaresolverr", "unpackerr"],
    ["heimdall"],
]


class ConfigError(Exception):
    pass


def _section(raw: dict, key: str) -> dict:
    value = raw.get(key) or {}
    if not isinstance(value, dict):
        raise ConfigError(f"'{key}' must be a mapping")
    return value


def _str_list(value, key: str) -> list[str]:
    if not isinstance(value, list):
        raise ConfigError(f"'{key}' must be a list")
    items = []
    for item in value:
        text = str(item).strip() if item is not None else ""
        if not text:
            raise ConfigError(f"Invalid entry in '{key}': {item!r}")
        items.append(text)
    return items


def _int(value, key: str, minimum: int | None = None) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"'{key}' must be an integer, got {value!r}")
    if minimum is not None and number < minimum:
        raise ConfigError(f"'{key}' must be >= {minimum}, got {number}")
    return number


def _float(value, key: str, minimum: float = 0.0) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ConfigError(f"'{key}' must be a number, got {value!r}")
    if number < minimum:
        raise ConfigError(f"'{key}' must be >= {minimum}, got {number}")
    return number


def _mode(value, key: str) -> int:
    # YAML reads 0755 as the decimal 755, so accept octal strings too
    if isinstance(value, str):
        try:
            return int(value, 8)
        except ValueError:
            raise ConfigError(f"'{key}' must be an octal mode, got {value!r}")
    return _int(value, key, minimum=0)


def _load_services(raw_services) -> list[ServiceConfig]:
    if not isinstance(raw_services, list):
        raise ConfigError("'services' must be a list")
    services = []
    seen: set[str] = set()
    for entry in raw_services:
        if isinstance(entry, str):
            entry = {"name": entry}
        if not isinstance(entry, dict) or not entry.get("name"):
            raise ConfigError(f"Each service needs a 'name': {entry!r}")
        name = str(entry["name"])
        if name in seen:
            raise ConfigError(f"Duplicate service: {name}")
        seen.add(name)
        port = entry.get("port")
        if port is not None:
            port = _int(port, f"services.{name}.port", minimum=1)
            if port > 65535:
                raise ConfigError(f"'services.{name}.port' out of range: {port}")
        services.append(ServiceConfig(
            name=name,
            port=port,
            path=str(entry.get("path", "/")),
            config_file=entry.get("config_file"),
            database=entry.get("database"),
        ))
    return services


def load_config(path: str | None = None) -> StackConfig:
    """Load sbm.yaml. No path yields the defaults; a path that does not exist is an error."""
    if path is None:
        return StackConfig(
            services=list(DEFAULT_SERVICES),
            supervisor=SupervisorConfig(phases=[list(p) for p in DEFAULT_PHASES]),
        )
    if not os.path.exists(path):
        raise ConfigError(f"Config file not found: {path}")

    with open(path) as f:
        try:
            raw = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(raw, dict):
        raise ConfigError(f"Config must be a YAML mapping: {path}")

    # --- layout ---
    layout_raw = _section(raw, "layout")
    layout = LayoutConfig()
    for key in ("config_dir", "data_dir", "backup_dir", "compose_file", "env_file"):
        if key in layout_raw:
            value = str(layout_raw[key] or "").strip()
            if not value:
                raise ConfigError(f"layout.{key} must not be empty")
            setattr(layout, key, value)
    if "scripts" in layout_raw:
        layout.scripts = _str_list(layout_raw["scripts"] or [], "layout.scripts")

    # --- identity ---
    ident_raw = _section(raw, "identity")
    identity = IdentityConfig(
        uid=_int(ident_raw.get("uid", 1000), "identity.uid", minimum=0),
        gid=_int(ident_raw.get("gid", 1000), "identity.gid", minimum=0),
        dir_mode=_mode(ident_raw.get("dir_mode", 0o755), "identity.dir_mode"),
        file_mode=_mode(ident_raw.get("file_mode", 0o644), "identity.file_mode"),
    )

    # --- supervisor ---
    sup_raw = _section(raw, "supervisor")
    phases_raw = sup_raw.get("phases")
    if phases_raw is None:
        # default phases only make sense for the default service list
        phases_raw = [] if "services" in raw else DEFAULT_PHASES
    phases = []
    for phase in phases_raw or []:
        phases.append(_str_list(phase, "supervisor.phases"))
    supervisor = SupervisorConfig(
        phases=phases,
        phase_delay=_float(sup_raw.get("phase_delay", 30), "supervisor.phase_delay"),
        stop_timeout=_int(sup_raw.get("stop_timeout", 30), "supervisor.stop_timeout", minimum=0),
    )

    # --- transport ---
    tr_raw = _section(raw, "transport")
    transport = TransportConfig(
        ssh_timeout=_int(tr_raw.get("ssh_timeout", 10), "transport.ssh_timeout", minimum=1),
        companions=_str_list(tr_raw.get("companions", [DEFAULT_CONFIG_NAME]) or [],
                             "transport.companions"),
    )

    # --- validation ---
    val_raw = _section(raw, "validation")
    defaults = ValidationConfig()
    validation = ValidationConfig(
        http_host=str(val_raw.get("http_host", defaults.http_host)),
        http_timeout=_float(val_raw.get("http_timeout", defaults.http_timeout),
                            "validation.http_timeout"),
        disk_pass_gb=_float(val_raw.get("disk_pass_gb", defaults.disk_pass_gb),
                            "validation.disk_pass_gb"),
        disk_warn_gb=_float(val_raw.get("disk_warn_gb", defaults.disk_warn_gb),
                            "validation.disk_warn_gb"),
    )
    for key in ("required_env", "media_subdirs", "media_extensions", "download_dirs"):
        if key in val_raw:
            setattr(validation, key, _str_list(val_raw[key] or [], f"validation.{key}"))
    if validation.disk_warn_gb > validation.disk_pass_gb:
        raise ConfigError("validation.disk_warn_gb must not exceed validation.disk_pass_gb")

    # --- services ---
    if "services" in raw:
        services = _load_services(raw["services"] or [])
    else:
        services = list(DEFAULT_SERVICES)

    known = {s.name for s in services}
    for phase in phases:
        for name in phase:
            if name not in known:
                raise ConfigError(f"Unknown service in supervisor.phases: {name}")

    multiplier = _float(raw.get("safety_multiplier", 1.5), "safety_multiplier")
    if multiplier < 1.0:
        raise ConfigError(f"safety_multiplier must be >= 1.0, got {multiplier}")

    config = StackConfig(
        layout=layout,
        identity=identity,
        supervisor=supervisor,
        transport=transport,
        validation=validation,
        services=services,
        retention_days=_int(raw.get("retention_days", 30), "retention_days"),
        safety_multiplier=multiplier,
        source_path=os.path.abspath(path),
    )
    if "reconcile_keys" in raw:
        config.reconcile_keys = _str_list(raw["reconcile_keys"] or [], "reconcile_keys")
    if "sensitive_files" in raw:
        config.sensitive_files = _str_list(raw["sensitive_files"] or [], "sensitive_files")
    return config


def find_config(root: str, explicit: str | None = None) -> str | None:
    """Return the config path to load: --config wins, else <root>/sbm.yaml if present."""
    if explicit:
        return explicit
    candidate = os.path.join(root, DEFAULT_CONFIG_NAME)
    return candidate if os.path.exists(candidate) else None
