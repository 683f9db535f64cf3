"""Tests for sbm.snapshot module."""
from __future__ import annotations

import os
import shutil
import stat
import tarfile
from datetime import datetime, timedelta

import pytest
import yaml

from sbm.models import SnapshotOptions
from sbm.snapshot import (
    SnapshotError,
    build_snapshot,
    is_snapshot_name,
    list_snapshots,
    resume_command,
    sweep_expired,
)
from tests.conftest import FakeSupervisor, MockExecutor

NOW = datetime(2026, 3, 1, 12, 0, 0)


def _executor():
    return MockExecutor({
        ("docker", "--version"): "Docker version 27.1.1\n",
        ("ip", "-brief", "address"): "eth0 UP 192.168.1.10/24\n",
    })


def _build(stack, config, **opts):
    return build_snapshot(stack, config, SnapshotOptions(**opts), FakeSupervisor(),
                          _executor(), now=NOW)


def _names(archive):
    with tarfile.open(archive, "r:gz") as tar:
        return tar.getnames()


class TestBuildSnapshot:
    def test_compressed_layout(self, stack, config):
        result = _build(stack, config)

        assert result.snapshot.compressed
        assert result.snapshot.name == "stack-backup-20260301_120000.tar.gz"
        assert not os.path.exists(os.path.join(stack, "backups", "20260301_120000"))
        names = _names(result.snapshot.path)
        assert all(n == "20260301_120000" or n.startswith("20260301_120000/") for n in names)
        for member in ("config/radarr/config.xml", "docker-compose.yml", ".env",
                       "scripts/start.sh", "backup_info.txt", "RESTORE_INSTRUCTIONS.md"):
            assert f"20260301_120000/{member}" in names
        assert result.size_bytes == os.path.getsize(result.snapshot.path)

    def test_bulk_data_excluded_by_default(self, stack, config):
        result = _build(stack, config)
        assert not any("/data/" in n or n.endswith("/data") for n in _names(result.snapshot.path))
        assert "data" not in result.sections

    def test_bulk_data_included_with_warning(self, stack, config, capsys):
        result = _build(stack, config, include_bulk_data=True)
        assert "20260301_120000/data/media/movies/film.mkv" in _names(result.snapshot.path)
        assert "Including bulk data" in capsys.readouterr().out

    def test_uncompressed(self, stack, config):
        result = _build(stack, config, compress=False)
        assert not result.snapshot.compressed
        assert os.path.isdir(os.path.join(result.snapshot.path, "config", "radarr"))

    def test_missing_config_is_hard_error(self, tmp_path, config):
        (tmp_path / "docker-compose.yml").write_text("services: {}\n")
        with pytest.raises(SnapshotError, match="Configuration directory not found"):
            _build(str(tmp_path), config)
        assert not (tmp_path / "backups").exists() or not os.listdir(tmp_path / "backups")

    def test_missing_optional_sections_are_partial(self, stack, config):
        os.remove(os.path.join(stack, ".env"))
        os.remove(os.path.join(stack, "start.sh"))
        os.remove(os.path.join(stack, "stop.sh"))
        result = _build(stack, config, compress=False)
        assert result.partial
        assert ".env not found" in result.warnings
        assert "management scripts not found" in result.warnings
        info = open(os.path.join(result.snapshot.path, "backup_info.txt")).read()
        assert "Partial: yes" in info

    def test_migration_metadata(self, stack, config):
        result = _build(stack, config, compress=False, migration_metadata=True)
        snap = result.snapshot.path
        with open(os.path.join(snap, "space_requirements.yaml")) as f:
            record = yaml.safe_load(f)
        assert record["payload_bytes"] == record["config_bytes"] + record["data_bytes"]
        assert record["data_bytes"] == 0
        assert record["min_target_bytes"] >= record["payload_bytes"] * 1.5
        info = open(os.path.join(snap, "migration_info.txt")).read()
        assert "Docker version 27.1.1" in info
        assert "DOMAIN=media.example.org" in info

    def test_export_and_anonymize(self, stack, config):
        result = _build(stack, config, compress=False,
                        export_secrets=True, anonymize_secrets=True)
        snap = result.snapshot.path

        exported = os.path.join(snap, "secrets_export.txt")
        assert stat.S_IMODE(os.stat(exported).st_mode) == 0o600
        assert "password: hunter2" in open(exported).read()

        settings = os.path.join(snap, "config", "app", "settings.yml")
        assert "password: PLACEHOLDER_PASSWORD" in open(settings).read()
        assert "password: hunter2" in open(settings + ".original").read()
        assert "config/app/settings.yml" in result.anonymized
        # live tree untouched
        assert "hunter2" in open(os.path.join(stack, "config", "app", "settings.yml")).read()

    def test_anonymize_without_export(self, stack, config):
        result = _build(stack, config, compress=False, anonymize_secrets=True)
        assert result.secrets_file is None
        assert not os.path.exists(os.path.join(result.snapshot.path, "secrets_export.txt"))
        assert result.anonymized

    def test_secrets_file_points_into_archive(self, stack, config):
        result = _build(stack, config, export_secrets=True)
        assert result.secrets_file == \
            f"{result.snapshot.path}:20260301_120000/secrets_export.txt"

    def test_ids_unique_within_second(self, stack, config):
        first = _build(stack, config)
        second = _build(stack, config)
        assert first.snapshot.id == "20260301_120000"
        assert second.snapshot.id == "20260301_120000_1"


class TestBuildFailures:
    def test_bulk_data_failure_leaves_no_snapshot(self, stack, config, monkeypatch):
        real_copytree = shutil.copytree

        def copytree(src, dst, *args, **kwargs):
            if os.path.basename(dst) == "data":
                raise OSError(28, "No space left on device")
            return real_copytree(src, dst, *args, **kwargs)

        monkeypatch.setattr(shutil, "copytree", copytree)
        with pytest.raises(SnapshotError, match="bulk data"):
            _build(stack, config, include_bulk_data=True)

        backups = os.path.join(stack, "backups")
        assert list_snapshots(backups) == []
        assert os.listdir(backups) == []

    def test_interrupt_leaves_no_snapshot(self, stack, config):
        class Interrupting(FakeSupervisor):
            def version(self):
                raise KeyboardInterrupt

        with pytest.raises(KeyboardInterrupt):
            build_snapshot(stack, config, SnapshotOptions(), Interrupting(), _executor(), now=NOW)
        assert os.listdir(os.path.join(stack, "backups")) == []

    def test_unreadable_compose_file_is_warning(self, stack, config, monkeypatch):
        real_copy2 = shutil.copy2

        def copy2(src, dst, *args, **kwargs):
            if os.path.basename(src) == "docker-compose.yml":
                raise PermissionError(13, "Permission denied", src)
            return real_copy2(src, dst, *args, **kwargs)

        monkeypatch.setattr(shutil, "copy2", copy2)
        result = _build(stack, config)

        assert result.partial
        assert any(w.startswith("could not copy docker-compose.yml") for w in result.warnings)
        assert "docker-compose.yml" not in result.sections
        assert ".env" in result.sections

    def test_leftover_directory_after_compression(self, stack, config, monkeypatch):
        monkeypatch.setattr(shutil, "rmtree", lambda path, ignore_errors=False: None)

        result = _build(stack, config)

        assert result.snapshot.compressed
        assert os.path.isfile(result.snapshot.path)
        assert not any("compression failed" in w for w in result.warnings)
        assert any("could not be fully removed" in w for w in result.warnings)


class TestRetention:
    def _make(self, backup_root, snap_id, compressed=True):
        os.makedirs(backup_root, exist_ok=True)
        if compressed:
            path = os.path.join(backup_root, f"stack-backup-{snap_id}.tar.gz")
            with tarfile.open(path, "w:gz"):
                pass
        else:
            path = os.path.join(backup_root, snap_id)
            os.makedirs(path)
        return path

    def test_sweep_removes_only_expired(self, tmp_path):
        root = str(tmp_path)
        old = self._make(root, "20260101_000000")
        old_dir = self._make(root, "20260102_000000", compressed=False)
        recent = self._make(root, "20260225_000000")
        (tmp_path / "notes.txt").write_text("keep me")

        removed = sweep_expired(root, 30, now=NOW)

        assert sorted(removed) == sorted([old, old_dir])
        assert os.path.exists(recent)
        assert (tmp_path / "notes.txt").exists()

    def test_zero_disables_sweep(self, tmp_path):
        old = self._make(str(tmp_path), "20200101_000000")
        assert sweep_expired(str(tmp_path), 0, now=NOW) == []
        assert os.path.exists(old)

    def test_keep_is_never_removed(self, tmp_path):
        old = self._make(str(tmp_path), "20200101_000000")
        assert sweep_expired(str(tmp_path), 1, keep=old, now=NOW) == []

    def test_build_runs_sweep(self, stack, config):
        old = self._make(os.path.join(stack, "backups"), "20251201_000000")
        result = _build(stack, config, retention_days=30)
        assert result.swept == [old]
        assert os.path.exists(result.snapshot.path)

    def test_list_snapshots_oldest_first(self, tmp_path):
        root = str(tmp_path)
        self._make(root, "20260210_000000")
        self._make(root, "20260101_000000", compressed=False)
        (tmp_path / "pre-restore-20260101_000000").mkdir()
        snaps = list_snapshots(root)
        assert [s.id for s in snaps] == ["20260101_000000", "20260210_000000"]
        assert snaps[0].age_days(NOW) > 59
        assert snaps[1].retention_class(30, NOW + timedelta(days=40)) == "expired"


def test_is_snapshot_name():
    assert is_snapshot_name("stack-backup-20260301_120000.tar.gz")
    assert is_snapshot_name("20260301_120000_2")
    assert not is_snapshot_name("pre-restore-20260301_120000")
    assert not is_snapshot_name("stack-backup-latest.tar.gz")


def test_resume_command():
    assert resume_command("stack-backup-x.tar.gz") == "sbm restore --backup stack-backup-x.tar.gz"
    assert resume_command("a.tar.gz", "/srv/stack") == "sbm restore --backup a.tar.gz --dest /srv/stack"
