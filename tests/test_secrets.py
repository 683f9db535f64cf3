"""Tests for sbm.secrets module."""
from __future__ import annotations

import os
import stat

import pytest

from sbm import secrets


class TestClassify:
    @pytest.mark.parametrize("text,expected", [
        ("ApiKey", "api_key"),
        ("api_key: x", "api_key"),
        ("X_API_KEY_SECRET", "api_key"),
        ("db_password", "password"),
        ("refresh_token", "token"),
        ("client_secret", "secret"),
        ("hostname", None),
    ])
    def test_patterns(self, text, expected):
        assert secrets.classify(text) == expected


class TestAnonymizeLine:
    def test_markup(self):
        line = "  <ApiKey>0123456789abcdef</ApiKey>"
        assert secrets.anonymize_line(line, "markup") == "  <ApiKey>PLACEHOLDER_API_KEY</ApiKey>"

    def test_markup_other_tag_untouched(self):
        line = "  <Port>7878</Port>"
        assert secrets.anonymize_line(line, "markup") == line

    def test_json(self):
        line = '  "password": "s3cr3t", "user": "bob"'
        assert secrets.anonymize_line(line, "json") == \
            '  "password": "PLACEHOLDER_PASSWORD", "user": "bob"'

    def test_kv_yaml(self):
        assert secrets.anonymize_line("  password: hunter2", "kv") == \
            "  password: PLACEHOLDER_PASSWORD"

    def test_kv_ini_quoted(self):
        assert secrets.anonymize_line('token = "abc"', "kv") == 'token = "PLACEHOLDER_TOKEN"'

    def test_kv_comment_untouched(self):
        assert secrets.anonymize_line("# password: hunter2", "kv") == "# password: hunter2"

    def test_kv_empty_value_untouched(self):
        assert secrets.anonymize_line("secret:", "kv") == "secret:"


def test_file_format_skips_originals():
    assert secrets.file_format("a/config.xml") == "markup"
    assert secrets.file_format("a/config.xml.original") is None
    assert secrets.file_format("a/notes.txt") is None


def test_scan_tree(tmp_path):
    (tmp_path / "app").mkdir()
    (tmp_path / "app" / "settings.yml").write_text("user: bob\npassword: hunter2\n")
    (tmp_path / "readme.txt").write_text("password: not scanned\n")
    records = secrets.scan_tree(str(tmp_path))
    assert len(records) == 1
    assert records[0].pattern == "password"
    assert records[0].line_number == 2
    assert records[0].value == "password: hunter2"


def test_export_secrets_is_owner_only(tmp_path):
    tree = tmp_path / "config"
    (tree / "radarr").mkdir(parents=True)
    (tree / "radarr" / "config.xml").write_text("<ApiKey>abc</ApiKey>\n")
    out = tmp_path / "secrets_export.txt"

    records = secrets.export_secrets(str(tree), str(out), relative_to=str(tmp_path))

    assert len(records) == 1
    assert stat.S_IMODE(os.stat(out).st_mode) == 0o600
    text = out.read_text()
    assert "## config/radarr/config.xml" in text
    assert "line 1 [api_key]: <ApiKey>abc</ApiKey>" in text


class TestAnonymizeFile:
    def test_keeps_original(self, tmp_path):
        path = tmp_path / "settings.yml"
        path.write_text("server:\n  password: hunter2\n")

        assert secrets.anonymize_file(str(path)) is True

        assert path.read_text() == "server:\n  password: PLACEHOLDER_PASSWORD\n"
        original = tmp_path / "settings.yml.original"
        assert original.read_text() == "server:\n  password: hunter2\n"
        assert stat.S_IMODE(os.stat(original).st_mode) == 0o600

    def test_idempotent(self, tmp_path):
        path = tmp_path / "settings.yml"
        path.write_text("password: hunter2\n")
        secrets.anonymize_file(str(path))
        first = path.read_text()

        assert secrets.anonymize_file(str(path)) is False
        assert path.read_text() == first
        assert (tmp_path / "settings.yml.original").read_text() == "password: hunter2\n"

    def test_no_secrets_no_sibling(self, tmp_path):
        path = tmp_path / "settings.yml"
        path.write_text("host: 0.0.0.0\n")
        assert secrets.anonymize_file(str(path)) is False
        assert not (tmp_path / "settings.yml.original").exists()

    def test_preserves_crlf(self, tmp_path):
        path = tmp_path / "app.ini"
        path.write_bytes(b"[auth]\r\npassword = hunter2\r\n")
        secrets.anonymize_file(str(path))
        assert path.read_bytes() == b"[auth]\r\npassword = PLACEHOLDER_PASSWORD\r\n"


def test_anonymize_tree_every_change_has_sibling(tmp_path):
    (tmp_path / "a").mkdir()
    (tmp_path / "a" / "config.xml").write_text("<Config><ApiKey>k</ApiKey></Config>\n")
    (tmp_path / "b.json").write_text('{"token": "t"}\n')
    (tmp_path / "c.yml").write_text("name: x\n")

    changed = secrets.anonymize_tree(str(tmp_path))

    assert sorted(os.path.relpath(p, tmp_path) for p in changed) == ["a/config.xml", "b.json"]
    for path in changed:
        assert os.path.isfile(path + secrets.ORIGINAL_SUFFIX)
    assert secrets.anonymize_tree(str(tmp_path)) == []
