"""Tests for sbm.transport module."""
from __future__ import annotations

import os

from sbm.executor import ExecutorError
from sbm.models import Snapshot, StageStatus
from sbm.transport import prepare_manual, transfer_local, transfer_remote
from tests.conftest import MockSSHExecutor

ARCHIVE = "stack-backup-20260301_120000.tar.gz"


def _snapshot(tmp_path):
    backups = tmp_path / "src" / "backups"
    backups.mkdir(parents=True)
    archive = backups / ARCHIVE
    archive.write_bytes(b"archive-bytes")
    return Snapshot.parse(str(archive))


def _companion(tmp_path):
    path = tmp_path / "src" / "sbm.yaml"
    path.write_text("retention_days: 7\n")
    return str(path)


class TestLocal:
    def test_copies_and_keeps_source(self, tmp_path):
        snap = _snapshot(tmp_path)
        dest = tmp_path / "new" / "stack"

        result = transfer_local(snap, str(dest), [_companion(tmp_path)])

        assert result.status is StageStatus.OK
        assert (dest / ARCHIVE).read_bytes() == b"archive-bytes"
        assert (dest / "sbm.yaml").exists()
        assert os.path.exists(snap.path)
        assert result.artifacts[ARCHIVE] == str(dest / ARCHIVE)

    def test_missing_companion_is_warning(self, tmp_path):
        snap = _snapshot(tmp_path)
        result = transfer_local(snap, str(tmp_path / "dest"), [str(tmp_path / "absent.yaml")])
        assert result.ok
        assert result.status is StageStatus.WARN
        assert "companion file not found" in result.issues[0]

    def test_directory_snapshot_rejected(self, tmp_path):
        snap_dir = tmp_path / "20260301_120000"
        snap_dir.mkdir()
        result = transfer_local(Snapshot.parse(str(snap_dir)), str(tmp_path / "dest"), [])
        assert result.status is StageStatus.FAILED
        assert "only compressed snapshots" in result.error


class TestRemote:
    def test_connection_check_then_copy(self, tmp_path):
        snap = _snapshot(tmp_path)
        ssh = MockSSHExecutor({
            ("true",): "",
            ("mkdir", "-p", "/srv/stack"): "",
        })
        result = transfer_remote(snap, ssh, "/srv/stack", [_companion(tmp_path)])

        assert result.status is StageStatus.OK
        assert ssh.calls[0] == ["true"]
        assert [os.path.basename(p) for p, _ in ssh.puts] == [ARCHIVE, "sbm.yaml"]
        assert result.artifacts[ARCHIVE] == f"/srv/stack/{ARCHIVE}"

    def test_unreachable_host_copies_nothing(self, tmp_path):
        snap = _snapshot(tmp_path)
        ssh = MockSSHExecutor({
            ("true",): ExecutorError(["ssh"], 255, "Connection timed out"),
        })
        result = transfer_remote(snap, ssh, "/srv/stack", [])

        assert result.status is StageStatus.FAILED
        assert "connection check" in result.error
        assert ssh.calls == [["true"]]
        assert ssh.puts == []

    def test_failure_names_the_artifact(self, tmp_path):
        snap = _snapshot(tmp_path)
        ssh = MockSSHExecutor(
            {("true",): "", ("mkdir", "-p", "/srv/stack"): ""},
            put_errors={"sbm.yaml": ExecutorError(["scp"], 1, "Permission denied")},
        )
        result = transfer_remote(snap, ssh, "/srv/stack", [_companion(tmp_path)])

        assert result.status is StageStatus.FAILED
        assert result.error.startswith("sbm.yaml:")
        assert ARCHIVE in result.artifacts


def test_manual_lists_artifacts_and_resume_command(tmp_path, capsys):
    snap = _snapshot(tmp_path)
    companion = _companion(tmp_path)

    result = prepare_manual(snap, [companion])

    assert result.ok
    assert result.artifacts[ARCHIVE] == snap.path
    assert result.artifacts["sbm.yaml"] == companion
    assert result.artifacts["resume_command"] == f"sbm restore --backup {ARCHIVE}"
    out = capsys.readouterr().out
    assert snap.path in out
    assert f"sbm restore --backup {ARCHIVE}" in out
