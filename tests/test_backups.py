"""Tests for the append-only config backup store."""

from __future__ import annotations

from pathlib import Path

from velociraptor_deployer.backups import FAILED_KIND, ConfigBackupStore


def test_create_returns_none_for_missing_source(tmp_path: Path) -> None:
    assert ConfigBackupStore().create(tmp_path / "server.config.yaml") is None
    assert list(tmp_path.iterdir()) == []


def test_backups_accumulate_and_latest_is_newest(tmp_path: Path) -> None:
    store = ConfigBackupStore()
    config = tmp_path / "server.config.yaml"
    config.write_text("one\n", encoding="utf-8")
    first = store.create(config)
    config.write_text("two\n", encoding="utf-8")
    second = store.create(config)

    history = store.history(config)

    assert first is not None and second is not None
    assert [item.backup_path for item in history] == [first.backup_path, second.backup_path]
    assert store.latest(config) == second
    assert first.backup_path.read_text(encoding="utf-8") == "one\n"


def test_failed_snapshots_are_not_restore_candidates(tmp_path: Path) -> None:
    store = ConfigBackupStore()
    config = tmp_path / "server.config.yaml"
    config.write_text("good\n", encoding="utf-8")
    good = store.create(config)
    config.write_text("bad\n", encoding="utf-8")
    failed = store.create(config, kind=FAILED_KIND)

    assert failed is not None and failed.kind == FAILED_KIND
    assert store.latest(config) == good
    assert len(store.history(config, kind=None)) == 2


def test_history_ignores_unrelated_files(tmp_path: Path) -> None:
    config = tmp_path / "server.config.yaml"
    (tmp_path / "server.config.yaml.backup.not-a-time").write_text("x", encoding="utf-8")
    (tmp_path / "server.config.yaml.generating").write_text("x", encoding="utf-8")

    assert ConfigBackupStore().history(config) == []
