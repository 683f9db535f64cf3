"""Read and rewrite KEY=VALUE environment files (.env)."""
from __future__ import annotations

import re

_LINE_RE = re.compile(r"^\s*(?:export\s+)?([A-Za-z_][A-Za-z0-9_]*)\s*=\s*(.*)$")


def parse_env(text: str) -> dict[str, str]:
    """Return KEY -> VALUE for every assignment line. Later lines win."""
    values: dict[str, str] = {}
    for line in text.splitlines():
        if line.lstrip().startswith("#"):
            continue
        match = _LINE_RE.match(line)
        if not match:
            continue
        value = match.group(2).strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in "'\"":
            value = value[1:-1]
        values[match.group(1)] = value
    return values


def read_env(path: str) -> dict[str, str]:
    with open(path) as f:
        return parse_env(f.read())


def matching_lines(text: str, keys: list[str]) -> list[str]:
    """Lines assigning any of ``keys``, in file order."""
    wanted = set(keys)
    lines = []
    for line in text.splitlines():
        match = _LINE_RE.match(line)
        if match and match.group(1) in wanted and not line.lstrip().startswith("#"):
            lines.append(line)
    return lines


def apply_overrides(text: str, overrides: dict[str, str]) -> str:
    """Replace the value of existing assignments; append keys that are absent.

    Every other line, including comments and ordering, is preserved.
    """
    remaining = dict(overrides)
    out = []
    for line in text.splitlines():
        match = _LINE_RE.match(line)
        if match and not line.lstrip().startswith("#") and match.group(1) in overrides:
            key = match.group(1)
            out.append(f"{key}={overrides[key]}")
            remaining.pop(key, None)
        else:
            out.append(line)
    for key, value in remaining.items():
        out.append(f"{key}={value}")
    result = "\n".join(out)
    if text.endswith("\n") or remaining:
        result += "\n"
    return result
