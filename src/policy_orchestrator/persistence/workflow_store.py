"""
policy-orchestrator — workflow store

File: src/policy_orchestrator/persistence/workflow_store.py

Purpose
- Persist workflow snapshots between CLI invocations (``run`` writes,
  ``status`` reads, ``approve`` reads, signals, resumes and writes).

Functional requirements
- Schema version table with checksummed, idempotent migrations.
- Busy timeout plus bounded retry on ``SQLITE_BUSY``.
- Every verification report is appended to ``health_reports`` once per
  (workflow, fingerprint) so repeated identical runs do not duplicate rows.

Non-functional requirements
- Short-lived connections; no lock is held between operations.
"""

from __future__ import annotations

import hashlib
import json
import sqlite3
import time
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Final

from policy_orchestrator.constants import WORKFLOW_STORE_SCHEMA_VERSION
from policy_orchestrator.control_plane.workflow_engine import WorkflowSnapshot
from policy_orchestrator.domain.models import WorkflowState
from policy_orchestrator.verification_plane.report import fingerprint

SQLValue = str | int | float | bytes | None

DEFAULT_BUSY_TIMEOUT_MS: Final[int] = 5_000
DEFAULT_BUSY_RETRY_LIMIT: Final[int] = 4
DEFAULT_BUSY_RETRY_BACKOFF_MS: Final[int] = 25

_SCHEMA_VERSIONS_TABLE_SQL: Final[str] = """
CREATE TABLE IF NOT EXISTS schema_versions (
    version INTEGER PRIMARY KEY CHECK (version > 0),
    name TEXT NOT NULL,
    checksum TEXT NOT NULL CHECK (length(checksum) = 64),
    applied_at TEXT NOT NULL
)
"""

_STATE_VALUES: Final[str] = ",".join(f"'{item.value}'" for item in sorted(WorkflowState))

_MIGRATION_0001_STATEMENTS: Final[tuple[str, ...]] = (
    _SCHEMA_VERSIONS_TABLE_SQL,
    f"""
    CREATE TABLE IF NOT EXISTS workflows (
        id TEXT PRIMARY KEY,
        state TEXT NOT NULL CHECK (state IN ({_STATE_VALUES})),
        block_reason TEXT,
        definition_digest TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        payload_json TEXT NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_workflows_state_updated
    ON workflows(state, updated_at)
    """,
    """
    CREATE TABLE IF NOT EXISTS health_reports (
        workflow_id TEXT NOT NULL,
        fingerprint TEXT NOT NULL CHECK (length(fingerprint) = 64),
        total REAL NOT NULL CHECK (total >= 0 AND total <= 100),
        no_checks_run INTEGER NOT NULL CHECK (no_checks_run IN (0, 1)),
        recorded_at TEXT NOT NULL,
        payload_json TEXT NOT NULL,
        PRIMARY KEY (workflow_id, fingerprint),
        FOREIGN KEY(workflow_id) REFERENCES workflows(id) ON DELETE CASCADE
    )
    """,
)


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
        name="initial_workflow_schema",
        statements=_MIGRATION_0001_STATEMENTS,
        checksum=_migration_checksum(1, "initial_workflow_schema", _MIGRATION_0001_STATEMENTS),
    ),
)

_BUSY_SUBSTRINGS: Final[tuple[str, ...]] = (
    "database is locked",
    "database table is locked",
    "database schema is locked",
)


class WorkflowStoreError(RuntimeError):
    """Base class for workflow store failures."""


class WorkflowStoreBusyError(WorkflowStoreError):
    """The database stayed locked through every retry."""


class WorkflowStoreMigrationError(WorkflowStoreError):
    """Schema history does not match this version of the code."""


class WorkflowNotFoundError(WorkflowStoreError, LookupError):
    def __init__(self, workflow_id: str) -> None:
        self.workflow_id = workflow_id
        super().__init__(f"workflow {workflow_id!r} not found")


@dataclass(frozen=True, slots=True)
class WorkflowSummary:
    workflow_id: str
    state: WorkflowState
    block_reason: str | None
    updated_at: str


@dataclass(frozen=True, slots=True)
class HealthReportRecord:
    fingerprint: str
    total: float
    no_checks_run: bool
    recorded_at: str


class WorkflowStore:
    """SQLite-backed snapshot store; safe to share across processes."""

    def __init__(
        self,
        path: str | Path,
        *,
        busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
        busy_retry_limit: int = DEFAULT_BUSY_RETRY_LIMIT,
        busy_retry_backoff_ms: int = DEFAULT_BUSY_RETRY_BACKOFF_MS,
    ) -> None:
        if busy_timeout_ms < 0 or busy_retry_limit < 0 or busy_retry_backoff_ms < 0:
            raise ValueError("busy settings must be >= 0")
        self._path = Path(path)
        self._busy_timeout_ms = busy_timeout_ms
        self._busy_retry_limit = busy_retry_limit
        self._busy_retry_backoff_ms = busy_retry_backoff_ms

    @property
    def path(self) -> Path:
        return self._path

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(
            self._path,
            timeout=self._busy_timeout_ms / 1000.0,
            isolation_level=None,
        )
        conn.row_factory = sqlite3.Row
        try:
            conn.execute("PRAGMA foreign_keys=ON")
            conn.execute(f"PRAGMA busy_timeout={self._busy_timeout_ms}")
            conn.execute("PRAGMA journal_mode=WAL")
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(self, conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
        self._execute(conn, "BEGIN IMMEDIATE", (), operation="begin transaction")
        try:
            yield conn
        except Exception:
            self._execute(conn, "ROLLBACK", (), operation="rollback transaction")
            raise
        else:
            self._execute(conn, "COMMIT", (), operation="commit transaction")

    def migrate(self) -> int:
        """Apply migrations idempotently and return the schema version."""

        with self.connection() as conn:
            self._execute(conn, _SCHEMA_VERSIONS_TABLE_SQL, (), operation="create schema_versions")
            applied = {
                row["version"]: row["checksum"]
                for row in self._execute(
                    conn, "SELECT version, checksum FROM schema_versions", (), operation="load"
                ).fetchall()
            }
            current = max(applied, default=0)
            if current > WORKFLOW_STORE_SCHEMA_VERSION:
                raise WorkflowStoreMigrationError(
                    "database schema is newer than supported "
                    f"(db={current}, code={WORKFLOW_STORE_SCHEMA_VERSION})"
                )
            for migration in _MIGRATIONS:
                recorded = applied.get(migration.version)
                if recorded is not None:
                    if recorded != migration.checksum:
                        raise WorkflowStoreMigrationError(
                            f"migration checksum mismatch for version {migration.version}: "
                            f"db={recorded} code={migration.checksum}"
                        )
                    continue
                with self.transaction(conn) as tx:
                    for statement in migration.statements:
                        self._execute(
                            tx, statement, (), operation=f"apply migration {migration.version}"
                        )
                    self._execute(
                        tx,
                        "INSERT INTO schema_versions (version, name, checksum, applied_at) "
                        "VALUES (?, ?, ?, ?)",
                        (migration.version, migration.name, migration.checksum, _utc_now_iso()),
                        operation=f"record migration {migration.version}",
                    )
            return self.schema_version(conn=conn)

    def schema_version(self, *, conn: sqlite3.Connection | None = None) -> int:
        if conn is None:
            with self.connection() as owned:
                return self.schema_version(conn=owned)
        row = self._execute(
            conn,
            "SELECT COALESCE(MAX(version), 0) AS version FROM schema_versions",
            (),
            operation="read schema version",
        ).fetchone()
        return int(row["version"]) if row is not None else 0

    def save(self, snapshot: WorkflowSnapshot) -> None:
        payload = snapshot.to_dict()
        with self.connection() as conn, self.transaction(conn) as tx:
            self._execute(
                tx,
                """
                INSERT INTO workflows (
                    id, state, block_reason, definition_digest, created_at, updated_at, payload_json
                )
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    state = excluded.state,
                    block_reason = excluded.block_reason,
                    definition_digest = excluded.definition_digest,
                    updated_at = excluded.updated_at,
                    payload_json = excluded.payload_json
                """,
                (
                    snapshot.workflow_id,
                    snapshot.state.value,
                    snapshot.block.reason.value if snapshot.block is not None else None,
                    snapshot.definition_digest,
                    snapshot.created_at.isoformat(),
                    snapshot.updated_at.isoformat(),
                    _canonical_json(payload),
                ),
                operation="save workflow",
            )
            report = snapshot.health_report
            if report is not None:
                self._execute(
                    tx,
                    """
                    INSERT OR IGNORE INTO health_reports (
                        workflow_id, fingerprint, total, no_checks_run, recorded_at, payload_json
                    )
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        snapshot.workflow_id,
                        fingerprint(report),
                        report.total,
                        1 if report.no_checks_run else 0,
                        report.timestamp.isoformat(),
                        _canonical_json(report.to_dict()),
                    ),
                    operation="record health report",
                )

    def get(self, workflow_id: str) -> WorkflowSnapshot | None:
        with self.connection() as conn:
            row = self._execute(
                conn,
                "SELECT payload_json FROM workflows WHERE id = ?",
                (workflow_id,),
                operation="load workflow",
            ).fetchone()
        if row is None:
            return None
        return WorkflowSnapshot.from_dict(json.loads(row["payload_json"]))

    def load(self, workflow_id: str) -> WorkflowSnapshot:
        snapshot = self.get(workflow_id)
        if snapshot is None:
            raise WorkflowNotFoundError(workflow_id)
        return snapshot

    def list_workflows(
        self, *, state: WorkflowState | None = None, limit: int = 50
    ) -> list[WorkflowSummary]:
        if limit <= 0:
            raise ValueError("limit must be > 0")
        sql = "SELECT id, state, block_reason, updated_at FROM workflows"
        params: tuple[SQLValue, ...] = ()
        if state is not None:
            sql += " WHERE state = ?"
            params = (state.value,)
        sql += " ORDER BY updated_at DESC, id ASC LIMIT ?"
        with self.connection() as conn:
            rows = self._execute(conn, sql, (*params, limit), operation="list workflows").fetchall()
        return [
            WorkflowSummary(
                workflow_id=row["id"],
                state=WorkflowState(row["state"]),
                block_reason=row["block_reason"],
                updated_at=row["updated_at"],
            )
            for row in rows
        ]

    def health_history(self, workflow_id: str) -> list[HealthReportRecord]:
        with self.connection() as conn:
            rows = self._execute(
                conn,
                """
                SELECT fingerprint, total, no_checks_run, recorded_at
                FROM health_reports
                WHERE workflow_id = ?
                ORDER BY recorded_at ASC, fingerprint ASC
                """,
                (workflow_id,),
                operation="load health history",
            ).fetchall()
        return [
            HealthReportRecord(
                fingerprint=row["fingerprint"],
                total=float(row["total"]),
                no_checks_run=bool(row["no_checks_run"]),
                recorded_at=row["recorded_at"],
            )
            for row in rows
        ]

    def _execute(
        self,
        conn: sqlite3.Connection,
        sql: str,
        params: Sequence[SQLValue],
        *,
        operation: str,
    ) -> sqlite3.Cursor:
        for attempt in range(self._busy_retry_limit + 1):
            try:
                return conn.execute(sql, tuple(params))
            except sqlite3.IntegrityError:
                raise
            except sqlite3.Error as exc:
                busy = any(fragment in str(exc).lower() for fragment in _BUSY_SUBSTRINGS)
                if busy and attempt < self._busy_retry_limit:
                    time.sleep((self._busy_retry_backoff_ms / 1000.0) * float(2**attempt))
                    continue
                if busy:
                    raise WorkflowStoreBusyError(
                        f"{operation} hit SQLITE_BUSY for {self._path} after "
                        f"{attempt + 1} attempt(s): {exc}"
                    ) from exc
                raise WorkflowStoreError(f"{operation} failed for {self._path}: {exc}") from exc
        raise WorkflowStoreBusyError(f"{operation} exhausted retries unexpectedly")


def _utc_now_iso() -> str:
    return datetime.now(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


def _canonical_json(value: object) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


__all__ = [
    "DEFAULT_BUSY_RETRY_BACKOFF_MS",
    "DEFAULT_BUSY_RETRY_LIMIT",
    "DEFAULT_BUSY_TIMEOUT_MS",
    "HealthReportRecord",
    "WorkflowNotFoundError",
    "WorkflowStore",
    "WorkflowStoreBusyError",
    "WorkflowStoreError",
    "WorkflowStoreMigrationError",
    "WorkflowSummary",
]
