"""Record store semantics shared by the in-memory and SQLite backends."""

from __future__ import annotations

import sqlite3
import threading
from typing import TYPE_CHECKING

import pytest

from formula_orchestrator.constants import RECORD_STORE_SCHEMA_VERSION
from formula_orchestrator.persistence.store import (
    InMemoryRecordStore,
    RecordStore,
    RecordStoreCorruptionError,
    RecordStoreMigrationError,
    SQLiteRecordStore,
    canonical_json,
)

if TYPE_CHECKING:
    from pathlib import Path


@pytest.fixture(params=["memory", "sqlite"])
def store(request: pytest.FixtureRequest, tmp_path: Path) -> RecordStore:
    if request.param == "memory":
        return InMemoryRecordStore()
    return SQLiteRecordStore(tmp_path / "state" / "formulas.sqlite3")


def test_put_get_roundtrip_and_upsert(store: RecordStore) -> None:
    assert store.get("formulas", "fee") is None

    store.put("formulas", "fee", {"id": "fee", "version": "1.0.0"})
    store.put("formulas", "fee", {"id": "fee", "version": "1.1.0"})

    assert store.get("formulas", "fee") == {"id": "fee", "version": "1.1.0"}
    assert isinstance(store, RecordStore)


def test_namespaces_are_isolated(store: RecordStore) -> None:
    store.put("formulas", "fee", {"kind": "formula"})
    store.put("bundles", "fee", {"kind": "bundle"})

    assert store.get("formulas", "fee") == {"kind": "formula"}
    assert store.clear("bundles") == 1
    assert store.get("bundles", "fee") is None
    assert store.get("formulas", "fee") == {"kind": "formula"}


def test_delete_reports_whether_a_record_existed(store: RecordStore) -> None:
    store.put("bundles", "fee:1", {"v": 1})
    assert store.delete("bundles", "fee:1")
    assert not store.delete("bundles", "fee:1")


def test_scan_by_prefix_is_sorted(store: RecordStore) -> None:
    for key in ("fee:2", "fee:1", "fees:1", "margin:1"):
        store.put("bundles", key, {"key": key})

    assert [key for key, _ in store.scan("bundles", "fee:")] == ["fee:1", "fee:2"]
    assert [key for key, _ in store.scan("bundles")] == ["fee:1", "fee:2", "fees:1", "margin:1"]
    assert store.scan("empty") == []


def test_payloads_keep_nested_json(store: RecordStore) -> None:
    record = {"inputs": [{"key": "size", "default": None}], "hint": {"scale": 2}, "flag": True}
    store.put("formulas", "nested", record)
    assert store.get("formulas", "nested") == record


def test_sqlite_migrations_are_idempotent(tmp_path: Path) -> None:
    store = SQLiteRecordStore(tmp_path / "formulas.sqlite3")

    assert store.migrate() == RECORD_STORE_SCHEMA_VERSION
    assert store.migrate() == RECORD_STORE_SCHEMA_VERSION

    with store.connection() as conn:
        tables = {
            str(row[0])
            for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'").fetchall()
        }
        journal_mode = conn.execute("PRAGMA journal_mode").fetchone()[0]
    assert {"schema_versions", "records"} <= tables
    assert str(journal_mode).lower() == "wal"
    assert store.integrity_check() == ()


def test_sqlite_records_survive_a_new_instance(tmp_path: Path) -> None:
    path = tmp_path / "formulas.sqlite3"
    SQLiteRecordStore(path).put("formulas", "fee", {"id": "fee"})
    assert SQLiteRecordStore(path).get("formulas", "fee") == {"id": "fee"}


def test_sqlite_rejects_newer_schema(tmp_path: Path) -> None:
    path = tmp_path / "formulas.sqlite3"
    SQLiteRecordStore(path).migrate()
    with sqlite3.connect(path) as conn:
        conn.execute(
            "INSERT INTO schema_versions (version, name, checksum, applied_at) VALUES (?, ?, ?, ?)",
            (RECORD_STORE_SCHEMA_VERSION + 1, "future", "0" * 64, "2030-01-01T00:00:00Z"),
        )
    conn.close()

    with pytest.raises(RecordStoreMigrationError, match="newer"):
        SQLiteRecordStore(path).migrate()


def test_sqlite_detects_checksum_drift(tmp_path: Path) -> None:
    path = tmp_path / "formulas.sqlite3"
    SQLiteRecordStore(path).migrate()
    with sqlite3.connect(path) as conn:
        conn.execute("UPDATE schema_versions SET checksum = ? WHERE version = 1", ("f" * 64,))
    conn.close()

    with pytest.raises(RecordStoreMigrationError, match="checksum mismatch"):
        SQLiteRecordStore(path).migrate()


def test_sqlite_corrupt_payload_is_reported(tmp_path: Path) -> None:
    path = tmp_path / "formulas.sqlite3"
    store = SQLiteRecordStore(path)
    store.put("formulas", "fee", {"id": "fee"})
    with sqlite3.connect(path) as conn:
        conn.execute("UPDATE records SET payload_json = '[1, 2]' WHERE key = 'fee'")
    conn.close()

    with pytest.raises(RecordStoreCorruptionError):
        store.get("formulas", "fee")


def test_sqlite_concurrent_writers(tmp_path: Path) -> None:
    store = SQLiteRecordStore(tmp_path / "formulas.sqlite3")
    store.migrate()
    errors: list[BaseException] = []

    def writer(worker: int) -> None:
        try:
            for index in range(10):
                store.put("bundles", f"w{worker}:{index}", {"worker": worker, "index": index})
        except BaseException as exc:  # pragma: no cover
            errors.append(exc)

    threads = [threading.Thread(target=writer, args=(worker,)) for worker in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    assert len(store.scan("bundles")) == 40


def test_sqlite_rejects_invalid_options(tmp_path: Path) -> None:
    with pytest.raises(ValueError):
        SQLiteRecordStore(tmp_path / "x.sqlite3", busy_retry_limit=-1)


def test_canonical_json_is_sorted_and_compact() -> None:
    assert canonical_json({"b": 1, "a": [1, "é"]}) == '{"a":[1,"é"],"b":1}'
