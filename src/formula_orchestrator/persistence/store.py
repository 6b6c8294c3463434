"""
formula-orchestrator — record store

File: src/formula_orchestrator/persistence/store.py

Purpose
- Namespaced key/value records for formula definitions and remote bundle
  cache entries, with get/put/delete/range-by-prefix semantics.

What is included in this file
- ``RecordStore`` protocol the rest of the package depends on.
- ``InMemoryRecordStore`` for tests and ephemeral runtimes.
- ``SQLiteRecordStore``: schema version table with checksummed migrations,
  WAL journal, bounded busy retries, actionable error classes.

Functional requirements
- Writes are idempotent upserts keyed by ``(namespace, key)``.
- Payloads are stored as canonical JSON objects.
"""

from __future__ import annotations

import hashlib
import json
import sqlite3
import threading
import time
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Final, Protocol, runtime_checkable

from formula_orchestrator.constants import RECORD_STORE_SCHEMA_VERSION

SQLValue = str | int | float | bytes | None
SQLParams = Sequence[SQLValue]
Record = dict[str, Any]

DEFAULT_BUSY_TIMEOUT_MS: Final[int] = 5_000
DEFAULT_BUSY_RETRY_LIMIT: Final[int] = 4
DEFAULT_BUSY_RETRY_BACKOFF_MS: Final[int] = 25


@runtime_checkable
class RecordStore(Protocol):
    """Storage-agnostic record persistence used by repositories."""

    def get(self, namespace: str, key: str) -> Record | None: ...

    def put(self, namespace: str, key: str, record: Mapping[str, Any]) -> None: ...

    def delete(self, namespace: str, key: str) -> bool: ...

    def scan(self, namespace: str, prefix: str = "") -> list[tuple[str, Record]]: ...

    def clear(self, namespace: str) -> int: ...


class RecordStoreError(RuntimeError):
    """Base class for record store failures."""


class RecordStoreBusyError(RecordStoreError):
    """Raised when bounded busy retries are exhausted."""


class RecordStoreMigrationError(RecordStoreError):
    """Raised when migrations cannot be applied safely."""


class RecordStoreCorruptionError(RecordStoreError):
    """Raised when SQLite reports possible corruption."""


class InMemoryRecordStore:
    """Thread-safe dictionary-backed record store."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._data: dict[str, dict[str, str]] = {}

    def get(self, namespace: str, key: str) -> Record | None:
        with self._lock:
            raw = self._data.get(namespace, {}).get(key)
        return None if raw is None else _decode_payload(raw, namespace, key)

    def put(self, namespace: str, key: str, record: Mapping[str, Any]) -> None:
        payload = canonical_json(dict(record))
        with self._lock:
            self._data.setdefault(namespace, {})[key] = payload

    def delete(self, namespace: str, key: str) -> bool:
        with self._lock:
            return self._data.get(namespace, {}).pop(key, None) is not None

    def scan(self, namespace: str, prefix: str = "") -> list[tuple[str, Record]]:
        with self._lock:
            items = sorted(
                (key, raw)
                for key, raw in self._data.get(namespace, {}).items()
                if key.startswith(prefix)
            )
        return [(key, _decode_payload(raw, namespace, key)) for key, raw in items]

    def clear(self, namespace: str) -> int:
        with self._lock:
            removed = self._data.pop(namespace, {})
        return len(removed)


_SCHEMA_VERSIONS_TABLE_SQL: Final[str] = """
CREATE TABLE IF NOT EXISTS schema_versions (
    version INTEGER PRIMARY KEY CHECK (version > 0),
    name TEXT NOT NULL,
    checksum TEXT NOT NULL CHECK (length(checksum) = 64),
    applied_at TEXT NOT NULL
)
"""

_MIGRATION_0001_STATEMENTS: Final[tuple[str, ...]] = (
    _SCHEMA_VERSIONS_TABLE_SQL,
    """
    CREATE TABLE IF NOT EXISTS records (
        namespace TEXT NOT NULL CHECK (length(namespace) > 0),
        key TEXT NOT NULL CHECK (length(key) > 0),
        payload_json TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        PRIMARY KEY (namespace, key)
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_records_namespace_updated
    ON records(namespace, updated_at DESC)
    """,
)


@dataclass(frozen=True, slots=True)
class MigrationRecord:
    version: int
    name: str
    checksum: str
    applied_at: str


@dataclass(frozen=True, slots=True)
class _Migration:
    version: int
    name: str
    statements: tuple[str, ...]
    checksum: str


def _migration_checksum(version: int, name: str, statements: Sequence[str]) -> str:
    digest = hashlib.sha256()
    digest.update(f"{version}:{name}\n".encode())
    for statement in statements:
        normalized = "\n".join(line.rstrip() for line in statement.strip().splitlines())
        digest.update(normalized.encode("utf-8"))
        digest.update(b"\n--\n")
    return digest.hexdigest()


_MIGRATIONS: Final[tuple[_Migration, ...]] = (
    _Migration(
        version=1,
        name="initial_record_schema",
        statements=_MIGRATION_0001_STATEMENTS,
        checksum=_migration_checksum(1, "initial_record_schema", _MIGRATION_0001_STATEMENTS),
    ),
)

_SQLITE_BUSY_CODES: Final[frozenset[int]] = frozenset(
    code
    for code in (
        getattr(sqlite3, "SQLITE_BUSY", None),
        getattr(sqlite3, "SQLITE_BUSY_RECOVERY", None),
        getattr(sqlite3, "SQLITE_BUSY_SNAPSHOT", None),
        getattr(sqlite3, "SQLITE_LOCKED", None),
        getattr(sqlite3, "SQLITE_LOCKED_SHAREDCACHE", None),
    )
    if isinstance(code, int)
)

_SQLITE_CORRUPTION_CODES: Final[frozenset[int]] = frozenset(
    code
    for code in (
        getattr(sqlite3, "SQLITE_CORRUPT", None),
        getattr(sqlite3, "SQLITE_NOTADB", None),
    )
    if isinstance(code, int)
)

_BUSY_SUBSTRINGS: Final[tuple[str, ...]] = (
    "database is locked",
    "database table is locked",
    "database schema is locked",
)

_CORRUPTION_SUBSTRINGS: Final[tuple[str, ...]] = (
    "database disk image is malformed",
    "malformed database",
    "file is not a database",
)


class SQLiteRecordStore:
    """SQLite-backed record store with deterministic migrations and safe helpers.

    Connections are short-lived; the schema is migrated lazily on first use.
    """

    def __init__(
        self,
        path: str | Path,
        *,
        busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
        busy_retry_limit: int = DEFAULT_BUSY_RETRY_LIMIT,
        busy_retry_backoff_ms: int = DEFAULT_BUSY_RETRY_BACKOFF_MS,
    ) -> None:
        if busy_timeout_ms < 0:
            raise ValueError("busy_timeout_ms must be >= 0")
        if busy_retry_limit < 0:
            raise ValueError("busy_retry_limit must be >= 0")
        if busy_retry_backoff_ms < 0:
            raise ValueError("busy_retry_backoff_ms must be >= 0")

        self._path = Path(path).expanduser()
        self._busy_timeout_ms = busy_timeout_ms
        self._busy_retry_limit = busy_retry_limit
        self._busy_retry_backoff_ms = busy_retry_backoff_ms
        self._migrate_lock = threading.Lock()
        self._migrated = False

    @property
    def path(self) -> Path:
        return self._path

    def connect(self) -> sqlite3.Connection:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        try:
            conn = sqlite3.connect(
                self._path,
                timeout=self._busy_timeout_ms / 1000.0,
                isolation_level=None,
                check_same_thread=False,
            )
        except sqlite3.Error as exc:
            self._raise_actionable_error(exc, operation="connect")
            raise
        conn.row_factory = sqlite3.Row
        self._configure_connection(conn)
        return conn

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        conn = self.connect()
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(self, conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
        """Run statements inside an immediate transaction."""

        self._execute_with_retry(conn, "BEGIN IMMEDIATE", (), operation="begin transaction")
        try:
            yield conn
        except Exception:
            self._execute_with_retry(conn, "ROLLBACK", (), operation="rollback transaction")
            raise
        else:
            self._execute_with_retry(conn, "COMMIT", (), operation="commit transaction")

    def migrate(self) -> int:
        """Apply migrations idempotently and return current schema version."""

        with self._migrate_lock, self.connection() as conn:
            self._execute_with_retry(
                conn,
                _SCHEMA_VERSIONS_TABLE_SQL,
                (),
                operation="create schema_versions table",
            )
            applied = self._load_applied_migrations(conn)
            current_version = max(applied, default=0)
            if current_version > RECORD_STORE_SCHEMA_VERSION:
                raise RecordStoreMigrationError(
                    "database schema is newer than supported by this build "
                    f"(db={current_version}, code={RECORD_STORE_SCHEMA_VERSION})"
                )

            for migration in _MIGRATIONS:
                if migration.version > RECORD_STORE_SCHEMA_VERSION:
                    continue
                record = applied.get(migration.version)
                if record is not None:
                    if record.checksum != migration.checksum:
                        raise RecordStoreMigrationError(
                            "migration checksum mismatch for version "
                            f"{migration.version}: db={record.checksum} code={migration.checksum}"
                        )
                    continue

                with self.transaction(conn) as tx:
                    for statement in migration.statements:
                        self._execute_with_retry(
                            tx,
                            statement,
                            (),
                            operation=f"apply migration {migration.version}",
                        )
                    self._execute_with_retry(
                        tx,
                        """
                        INSERT INTO schema_versions (version, name, checksum, applied_at)
                        VALUES (?, ?, ?, ?)
                        """,
                        (migration.version, migration.name, migration.checksum, _utc_now_iso()),
                        operation=f"record migration {migration.version}",
                    )

            self._migrated = True
            row = self._execute_with_retry(
                conn,
                "SELECT COALESCE(MAX(version), 0) AS version FROM schema_versions",
                (),
                operation="read schema version",
            ).fetchone()
            return int(row["version"]) if row is not None else 0

    def get(self, namespace: str, key: str) -> Record | None:
        self._ensure_schema()
        with self.connection() as conn:
            row = self._execute_with_retry(
                conn,
                "SELECT payload_json FROM records WHERE namespace = ? AND key = ?",
                (namespace, key),
                operation="get record",
            ).fetchone()
        if row is None:
            return None
        return _decode_payload(row["payload_json"], namespace, key)

    def put(self, namespace: str, key: str, record: Mapping[str, Any]) -> None:
        self._ensure_schema()
        payload = canonical_json(dict(record))
        with self.connection() as conn, self.transaction(conn) as tx:
            self._execute_with_retry(
                tx,
                """
                INSERT INTO records (namespace, key, payload_json, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(namespace, key) DO UPDATE SET
                    payload_json = excluded.payload_json,
                    updated_at = excluded.updated_at
                """,
                (namespace, key, payload, _utc_now_iso()),
                operation="put record",
            )

    def delete(self, namespace: str, key: str) -> bool:
        self._ensure_schema()
        with self.connection() as conn, self.transaction(conn) as tx:
            cursor = self._execute_with_retry(
                tx,
                "DELETE FROM records WHERE namespace = ? AND key = ?",
                (namespace, key),
                operation="delete record",
            )
            return cursor.rowcount > 0

    def scan(self, namespace: str, prefix: str = "") -> list[tuple[str, Record]]:
        self._ensure_schema()
        with self.connection() as conn:
            rows = self._execute_with_retry(
                conn,
                """
                SELECT key, payload_json
                FROM records
                WHERE namespace = ? AND substr(key, 1, ?) = ?
                ORDER BY key ASC
                """,
                (namespace, len(prefix), prefix),
                operation="scan records",
            ).fetchall()
        return [
            (str(row["key"]), _decode_payload(row["payload_json"], namespace, str(row["key"])))
            for row in rows
        ]

    def clear(self, namespace: str) -> int:
        self._ensure_schema()
        with self.connection() as conn, self.transaction(conn) as tx:
            cursor = self._execute_with_retry(
                tx,
                "DELETE FROM records WHERE namespace = ?",
                (namespace,),
                operation="clear namespace",
            )
            return cursor.rowcount

    def integrity_check(self, *, max_errors: int = 100) -> tuple[str, ...]:
        with self.connection() as conn:
            rows = conn.execute(f"PRAGMA integrity_check({int(max_errors)})").fetchall()
        messages = tuple(str(row[0]) for row in rows)
        if messages == ("ok",):
            return ()
        return messages

    def _ensure_schema(self) -> None:
        if not self._migrated:
            self.migrate()

    def _configure_connection(self, conn: sqlite3.Connection) -> None:
        conn.execute(f"PRAGMA busy_timeout={self._busy_timeout_ms}")
        journal_row = conn.execute("PRAGMA journal_mode=WAL").fetchone()
        if journal_row is None:
            raise RecordStoreError("failed to configure journal_mode")

    def _load_applied_migrations(self, conn: sqlite3.Connection) -> dict[int, MigrationRecord]:
        cursor = self._execute_with_retry(
            conn,
            """
            SELECT version, name, checksum, applied_at
            FROM schema_versions
            ORDER BY version ASC
            """,
            (),
            operation="load schema_versions",
        )
        out: dict[int, MigrationRecord] = {}
        for row in cursor.fetchall():
            if not isinstance(row["version"], int):
                raise RecordStoreMigrationError("schema_versions.version must be integer")
            out[row["version"]] = MigrationRecord(
                version=row["version"],
                name=str(row["name"]),
                checksum=str(row["checksum"]),
                applied_at=str(row["applied_at"]),
            )
        return out

    def _execute_with_retry(
        self,
        conn: sqlite3.Connection,
        sql: str,
        params: SQLParams,
        *,
        operation: str,
    ) -> sqlite3.Cursor:
        for attempt in range(self._busy_retry_limit + 1):
            try:
                return conn.execute(sql, tuple(params))
            except sqlite3.IntegrityError:
                raise
            except sqlite3.Error as exc:
                if self._is_busy_error(exc) and attempt < self._busy_retry_limit:
                    time.sleep((self._busy_retry_backoff_ms / 1000.0) * float(2**attempt))
                    continue
                self._raise_actionable_error(exc, operation=operation)
        raise RecordStoreBusyError(f"{operation} exhausted retries unexpectedly")

    def _is_busy_error(self, exc: sqlite3.Error) -> bool:
        code = getattr(exc, "sqlite_errorcode", None)
        if isinstance(code, int) and code in _SQLITE_BUSY_CODES:
            return True
        message = str(exc).lower()
        return any(fragment in message for fragment in _BUSY_SUBSTRINGS)

    def _is_corruption_error(self, exc: sqlite3.Error) -> bool:
        code = getattr(exc, "sqlite_errorcode", None)
        if isinstance(code, int) and code in _SQLITE_CORRUPTION_CODES:
            return True
        message = str(exc).lower()
        return any(fragment in message for fragment in _CORRUPTION_SUBSTRINGS)

    def _raise_actionable_error(self, exc: sqlite3.Error, *, operation: str) -> None:
        if self._is_corruption_error(exc):
            raise RecordStoreCorruptionError(
                f"{operation} failed for {self._path}: {exc}. "
                "Run `SQLiteRecordStore.integrity_check()` or delete the cache database."
            ) from exc
        if self._is_busy_error(exc):
            raise RecordStoreBusyError(
                f"{operation} hit SQLITE_BUSY for {self._path} after "
                f"{self._busy_retry_limit + 1} attempt(s): {exc}"
            ) from exc
        raise RecordStoreError(f"{operation} failed for {self._path}: {exc}") from exc


def _decode_payload(raw: object, namespace: str, key: str) -> Record:
    if not isinstance(raw, str):
        raise RecordStoreCorruptionError(f"{namespace}/{key}: payload must be text")
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise RecordStoreCorruptionError(f"{namespace}/{key}: invalid JSON payload: {exc}") from exc
    if not isinstance(parsed, dict):
        raise RecordStoreCorruptionError(f"{namespace}/{key}: payload must be a JSON object")
    return parsed


def _utc_now_iso() -> str:
    return datetime.now(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


def canonical_json(value: object) -> str:
    """Deterministic JSON for persistence payloads."""

    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


__all__ = [
    "DEFAULT_BUSY_RETRY_BACKOFF_MS",
    "DEFAULT_BUSY_RETRY_LIMIT",
    "DEFAULT_BUSY_TIMEOUT_MS",
    "InMemoryRecordStore",
    "MigrationRecord",
    "Record",
    "RecordStore",
    "RecordStoreBusyError",
    "RecordStoreCorruptionError",
    "RecordStoreError",
    "RecordStoreMigrationError",
    "SQLiteRecordStore",
    "canonical_json",
]
