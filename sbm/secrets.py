"""Find, export and anonymize secret-looking values in configuration files.

Detection is a case-insensitive key-name match. It over-matches (any key
containing "token") and under-matches (secrets under unrelated key names);
the output is meant for operator review, not as a security boundary.
"""
from __future__ import annotations

import os
import re

from sbm.models import SecretRecord

ORIGINAL_SUFFIX = ".original"

# Classification order matters: "api_key" must win over "secret" etc.
PATTERNS: list[tuple[str, tuple[str, ...]]] = [
    ("api_key", ("api_key", "apikey")),
    ("password", ("password",)),
    ("token", ("token",)),
    ("secret", ("secret",)),
]

PLACEHOLDERS = {
    "api_key": "PLACEHOLDER_API_KEY",
    "password": "PLACEHOLDER_PASSWORD",
    "token": "PLACEHOLDER_TOKEN",
    "secret": "PLACEHOLDER_SECRET",
}

FORMATS = {
    ".xml": "markup",
    ".json": "json",
    ".yml": "kv",
    ".yaml": "kv",
    ".ini": "kv",
    ".conf": "kv",
    ".cfg": "kv",
}

_MARKUP_RE = re.compile(r"<(?P<key>[\w:.-]+)(?P<attrs>[^>]*)>(?P<value>[^<]*)</(?P=key)>")
_JSON_RE = re.compile(r'"(?P<key>[^"]+)"(?P<sep>\s*:\s*)"(?P<value>(?:[^"\\]|\\.)*)"')
_KV_RE = re.compile(r"^(?P<lead>\s*-?\s*)(?P<key>[^\s:=#;][^:=]*?)(?P<sep>\s*[:=]\s*)(?P<value>.*?)(?P<trail>\s*)$")


def classify(text: str) -> str | None:
    """Return the pattern class a key or line belongs to, or None."""
    lowered = text.lower()
    for pattern, tokens in PATTERNS:
        if any(token in lowered for token in tokens):
            return pattern
    return None


def file_format(path: str) -> str | None:
    if path.endswith(ORIGINAL_SUFFIX):
        return None
    return FORMATS.get(os.path.splitext(path)[1].lower())


def iter_config_files(tree: str):
    """Yield paths of scannable files under tree, sorted for stable output."""
    for dirpath, dirnames, filenames in os.walk(tree):
        dirnames.sort()
        for filename in sorted(filenames):
            path = os.path.join(dirpath, filename)
            if file_format(path) and not os.path.islink(path):
                yield path


def _read_text(path: str) -> str | None:
    try:
        with open(path, encoding="utf-8", newline="") as f:
            return f.read()
    except (UnicodeDecodeError, OSError):
        return None


def scan_file(path: str) -> list[SecretRecord]:
    text = _read_text(path)
    if text is None:
        return []
    records = []
    for number, line in enumerate(text.splitlines(), start=1):
        pattern = classify(line)
        if pattern:
            records.append(SecretRecord(path=path, pattern=pattern,
                                        line_number=number, value=line.strip()))
    return records


def scan_tree(tree: str) -> list[SecretRecord]:
    records = []
    for path in iter_config_files(tree):
        records.extend(scan_file(path))
    return records


def export_secrets(tree: str, out_file: str, relative_to: str | None = None) -> list[SecretRecord]:
    """Write every match under tree to out_file (mode 0600). Return the matches."""
    records = scan_tree(tree)
    base = relative_to or os.path.dirname(tree)
    fd = os.open(out_file, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    os.chmod(out_file, 0o600)
    with os.fdopen(fd, "w") as f:
        f.write("# Secrets exported from configuration files\n")
        f.write("# Review, re-apply manually on the target, then DELETE this file.\n")
        current = None
        for record in records:
            rel = os.path.relpath(record.path, base)
            if rel != current:
                f.write(f"\n## {rel}\n")
                current = rel
            f.write(f"line {record.line_number} [{record.pattern}]: {record.value}\n")
    return records


def _replace_markup(match: re.Match) -> str:
    pattern = classify(match.group("key"))
    if not pattern or not match.group("value").strip():
        return match.group(0)
    key = match.group("key")
    return f"<{key}{match.group('attrs')}>{PLACEHOLDERS[pattern]}</{key}>"


def _replace_json(match: re.Match) -> str:
    pattern = classify(match.group("key"))
    if not pattern or not match.group("value"):
        return match.group(0)
    return f'"{match.group("key")}"{match.group("sep")}"{PLACEHOLDERS[pattern]}"'


def anonymize_line(line: str, fmt: str) -> str:
    """Return line with secret values replaced; keys and layout are preserved."""
    if fmt == "markup":
        return _MARKUP_RE.sub(_replace_markup, line)
    if fmt == "json":
        return _JSON_RE.sub(_replace_json, line)

    stripped = line.strip()
    if not stripped or stripped[0] in "#;[":
        return line
    match = _KV_RE.match(line)
    if not match or not match.group("value"):
        return line
    pattern = classify(match.group("key"))
    if not pattern:
        return line
    value = match.group("value")
    quote = value[0] if value[0] in "'\"" and value.endswith(value[0]) and len(value) > 1 else ""
    placeholder = f"{quote}{PLACEHOLDERS[pattern]}{quote}"
    return f"{match.group('lead')}{match.group('key')}{match.group('sep')}{placeholder}{match.group('trail')}"


def anonymize_file(path: str) -> bool:
    """Anonymize path in place, keeping an unmodified copy at <path>.original.

    Returns True if the file changed. An existing .original is never
    overwritten, so repeated runs keep the first unmodified copy.
    """
    fmt = file_format(path)
    text = _read_text(path)
    if fmt is None or text is None:
        return False
    new_text = "".join(
        anonymize_line(line[:-len(ending)] if ending else line, fmt) + ending
        for line, ending in ((ln, _line_ending(ln)) for ln in text.splitlines(keepends=True))
    )
    if new_text == text:
        return False

    original = path + ORIGINAL_SUFFIX
    if not os.path.exists(original):
        with open(original, "w", encoding="utf-8", newline="") as f:
            f.write(text)
        os.chmod(original, 0o600)
    with open(path, "w", encoding="utf-8", newline="") as f:
        f.write(new_text)
    return True


def _line_ending(line: str) -> str:
    for ending in ("\r\n", "\n", "\r"):
        if line.endswith(ending):
            return ending
    return ""


def anonymize_tree(tree: str) -> list[str]:
    """Anonymize every scannable file under tree. Return the modified paths."""
    return [path for path in iter_config_files(tree) if anonymize_file(path)]
