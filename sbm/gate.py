"""Integrity and capacity checks run before a restore touches the destination."""
from __future__ import annotations

import math
import os
import tarfile
from dataclasses import dataclass, field

import yaml

from sbm.fsutil import dir_size, free_bytes
from sbm.models import CapacityReport
from sbm.snapshot import (
    CONFIG_SECTION,
    DATA_SECTION,
    SPACE_REQUIREMENTS,
)


class IntegrityError(Exception):
    pass


@dataclass
class Inventory:
    """What a snapshot contains, read without extracting it."""
    path: str
    compressed: bool
    entries: set[str] = field(default_factory=set)   # top-level names
    config_bytes: int = 0
    data_bytes: int = 0
    raw_bytes: int = 0
    record: dict | None = None

    @property
    def payload_bytes(self) -> int:
        return self.config_bytes + self.data_bytes

    def has(self, name: str) -> bool:
        return name in self.entries


def _strip_top(name: str) -> str | None:
    parts = name.split("/", 1)
    return parts[1] if len(parts) == 2 and parts[1] else None


def _load_record(text: str | bytes) -> dict | None:
    try:
        record = yaml.safe_load(text)
    except yaml.YAMLError:
        return None
    if isinstance(record, dict) and isinstance(record.get("payload_bytes"), int):
        return record
    return None


def _inspect_archive(path: str) -> Inventory:
    inv = Inventory(path=path, compressed=True, raw_bytes=os.path.getsize(path))
    try:
        with tarfile.open(path, "r:*") as tar:
            members = tar.getmembers()
            tops = {m.name.split("/", 1)[0] for m in members}
            if len(tops) != 1:
                raise IntegrityError(f"Expected one top-level directory in {path}, found {len(tops)}")
            for member in members:
                if member.name.startswith("/") or ".." in member.name.split("/"):
                    raise IntegrityError(f"Unsafe path in archive: {member.name}")
                rel = _strip_top(member.name)
                if rel is None:
                    continue
                section = rel.split("/", 1)[0]
                inv.entries.add(section)
                if member.isfile():
                    if section == CONFIG_SECTION:
                        inv.config_bytes += member.size
                    elif section == DATA_SECTION:
                        inv.data_bytes += member.size
                    elif rel == SPACE_REQUIREMENTS:
                        f = tar.extractfile(member)
                        if f is not None:
                            inv.record = _load_record(f.read())
    except (tarfile.TarError, OSError, EOFError) as e:
        raise IntegrityError(f"Unreadable archive {path}: {e}") from e
    return inv


def _inspect_directory(path: str) -> Inventory:
    inv = Inventory(path=path, compressed=False, entries=set(os.listdir(path)))
    if inv.has(CONFIG_SECTION):
        inv.config_bytes = dir_size(os.path.join(path, CONFIG_SECTION))
    if inv.has(DATA_SECTION):
        inv.data_bytes = dir_size(os.path.join(path, DATA_SECTION))
    inv.raw_bytes = dir_size(path)
    record_path = os.path.join(path, SPACE_REQUIREMENTS)
    if os.path.isfile(record_path):
        with open(record_path) as f:
            inv.record = _load_record(f.read())
    return inv


def check_integrity(path: str) -> Inventory:
    """Validate structure and return the inventory. Raise IntegrityError on failure."""
    if os.path.isfile(path):
        inv = _inspect_archive(path)
    elif os.path.isdir(path):
        inv = _inspect_directory(path)
    else:
        raise IntegrityError(f"Backup not found: {path}")
    if not inv.has(CONFIG_SECTION):
        raise IntegrityError(f"Backup has no '{CONFIG_SECTION}' section: {path}")
    return inv


def check_capacity(inv: Inventory, dest: str, multiplier: float,
                   available: int | None = None) -> CapacityReport:
    """Compare the space a restore needs with free space at dest.

    With a space_requirements record the recorded payload is the base;
    otherwise the raw archive size is. The measured payload is used when it
    is larger, so the multiplier always covers the bytes being written.
    """
    if inv.record is not None:
        base = max(inv.record["payload_bytes"], inv.payload_bytes)
    else:
        base = max(inv.raw_bytes, inv.payload_bytes)
    if available is None:
        available = free_bytes(dest)
    return CapacityReport(
        payload_bytes=inv.payload_bytes,
        required_bytes=math.ceil(base * multiplier),
        available_bytes=available,
        multiplier=multiplier,
        from_record=inv.record is not None,
    )
