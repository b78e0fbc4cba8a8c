"""SQLite storage backend for coordinator jobs.

Three related tables keyed by ``job_id`` (jobs, assignments, results) plus an
append-only transition log. Every operation opens its own connection, so the
backend is safe to share across worker threads; conditional status updates
give each transition a single-row compare-and-set.
"""

import contextlib
import json
import logging
import sqlite3
from pathlib import Path
from typing import Any, Dict, List, Optional

from coordinator.jobs.models import (
    Assignment,
    Job,
    JobResult,
    JobStateTransition,
    JobStatus,
)
from coordinator.jobs.storage import StorageError, check_update_fields

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 2

SCHEMA = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

CREATE TABLE IF NOT EXISTS jobs (
    job_id TEXT PRIMARY KEY,
    requester_addr TEXT NOT NULL,
    price_eth TEXT NOT NULL,
    status TEXT NOT NULL,
    spec_json TEXT,
    fund_tx TEXT,
    pending_action TEXT,
    settlement_tx TEXT,
    pending_tx TEXT,
    pending_since TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs(status);
CREATE INDEX IF NOT EXISTS idx_jobs_pending ON jobs(pending_action)
    WHERE pending_action IS NOT NULL;

CREATE TABLE IF NOT EXISTS assignments (
    job_id TEXT PRIMARY KEY REFERENCES jobs(job_id) ON DELETE CASCADE,
    provider_addr TEXT NOT NULL,
    assigned_at TEXT NOT NULL,
    started_at TEXT,
    ended_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_assignments_provider ON assignments(provider_addr COLLATE NOCASE);

CREATE TABLE IF NOT EXISTS results (
    job_id TEXT PRIMARY KEY REFERENCES jobs(job_id) ON DELETE CASCADE,
    result_json TEXT NOT NULL,
    artifact_hash TEXT,
    runtime_sec REAL,
    exit_code INTEGER,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS job_state_transitions (
    id TEXT PRIMARY KEY,
    job_id TEXT NOT NULL REFERENCES jobs(job_id) ON DELETE CASCADE,
    from_status TEXT,
    to_status TEXT NOT NULL,
    actor TEXT,
    tx_hash TEXT,
    metadata TEXT,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_transitions_job ON job_state_transitions(job_id);
"""

# Model attribute -> jobs column
_JOB_COLUMNS = {
    "status": "status",
    "fund_tx": "fund_tx",
    "pending_action": "pending_action",
    "settlement_tx": "settlement_tx",
    "pending_tx": "pending_tx",
    "pending_since": "pending_since",
    "updated_at": "updated_at",
}

# Columns added after version 1, with their declarations
_ADDED_JOB_COLUMNS = {
    "pending_tx": "TEXT",
    "pending_since": "TEXT",
}


def _to_db(value: Any) -> Any:
    if isinstance(value, JobStatus):
        return value.value
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return value


def _row_to_job(row: sqlite3.Row) -> Job:
    return Job.from_dict(
        {
            "id": row["job_id"],
            "requester_addr": row["requester_addr"],
            "price_cap": row["price_eth"],
            "status": row["status"],
            "spec": row["spec_json"],
            "fund_tx": row["fund_tx"],
            "pending_action": row["pending_action"],
            "settlement_tx": row["settlement_tx"],
            "pending_tx": row["pending_tx"],
            "pending_since": row["pending_since"],
            "created_at": row["created_at"],
            "updated_at": row["updated_at"],
        }
    )


def _row_to_transition(row: sqlite3.Row) -> JobStateTransition:
    return JobStateTransition.from_dict(dict(row))


class SQLiteJobStorage:
    """Durable job storage on a local SQLite database."""

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=5.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=5000")
        conn.execute("PRAGMA foreign_keys=ON")
        return conn

    @contextlib.contextmanager
    def _connect(self):
        """Context manager that commits on success, rolls back on error and
        always closes the connection. sqlite3 errors surface as StorageError.
        """
        try:
            conn = self._get_conn()
        except sqlite3.Error as e:
            raise StorageError(f"Cannot open job store: {e}") from e
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            logger.debug(f"Transaction failed, rolling back: {e}")
            conn.rollback()
            raise StorageError(str(e)) from e
        except Exception as e:
            logger.debug(f"Transaction failed, rolling back: {e}")
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.executescript(SCHEMA)
            row = conn.execute("SELECT MAX(version) AS v FROM schema_version").fetchone()
            if row["v"] is None:
                conn.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
            elif row["v"] < SCHEMA_VERSION:
                self._migrate(conn, row["v"])

    def _migrate(self, conn: sqlite3.Connection, from_version: int) -> None:
        existing = {r["name"] for r in conn.execute("PRAGMA table_info(jobs)").fetchall()}
        for name, declaration in _ADDED_JOB_COLUMNS.items():
            if name not in existing:
                conn.execute(f"ALTER TABLE jobs ADD COLUMN {name} {declaration}")
        conn.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
        logger.info(f"Job store migrated | from={from_version} | to={SCHEMA_VERSION}")

    def close(self):
        """Connections are per-operation; nothing to release."""
        pass

    # === Jobs ===

    def create_job(self, job: Job, transition: Optional[JobStateTransition] = None) -> str:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO jobs (job_id, requester_addr, price_eth, status, spec_json,
                                      fund_tx, pending_action, settlement_tx,
                                      pending_tx, pending_since, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        job.id,
                        job.requester_addr,
                        job.price_cap,
                        job.status,
                        json.dumps(job.spec.to_dict()) if job.spec else None,
                        job.fund_tx,
                        job.pending_action,
                        job.settlement_tx,
                        job.pending_tx,
                        _to_db(job.pending_since),
                        _to_db(job.created_at),
                        _to_db(job.updated_at or job.created_at),
                    ),
                )
                if transition is not None:
                    self._insert_transition(conn, transition)
        except StorageError as e:
            if isinstance(e.__cause__, sqlite3.IntegrityError):
                raise StorageError(f"Job {job.id} already exists: {e.__cause__}") from e.__cause__
            raise
        return job.id

    def get_job(self, job_id: str) -> Optional[Job]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM jobs WHERE job_id = ?", (job_id,)).fetchone()
        return _row_to_job(row) if row else None

    def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        provider_addr: Optional[str] = None,
        requester_addr: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Job]:
        query = "SELECT j.* FROM jobs j"
        clauses = []
        params: List[Any] = []

        if provider_addr is not None:
            query += " JOIN assignments a ON a.job_id = j.job_id"
            clauses.append("a.provider_addr = ? COLLATE NOCASE")
            params.append(provider_addr)
        if status is not None:
            clauses.append("j.status = ?")
            params.append(_to_db(status))
        if requester_addr is not None:
            clauses.append("j.requester_addr = ? COLLATE NOCASE")
            params.append(requester_addr)

        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY j.created_at DESC LIMIT ? OFFSET ?"
        params.extend([limit, offset])

        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_job(r) for r in rows]

    def list_pending_settlements(self) -> List[Job]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM jobs WHERE pending_action IS NOT NULL ORDER BY updated_at"
            ).fetchall()
        return [_row_to_job(r) for r in rows]

    def apply_transition(
        self,
        job_id: str,
        expected_status: str,
        updates: Dict[str, Any],
        *,
        assignment: Optional[Assignment] = None,
        result: Optional[JobResult] = None,
        transition: Optional[JobStateTransition] = None,
    ) -> bool:
        check_update_fields(updates)

        with self._connect() as conn:
            if updates:
                assignments = ", ".join(f"{_JOB_COLUMNS[name]} = ?" for name in updates)
                params = [_to_db(v) for v in updates.values()]
                cursor = conn.execute(
                    f"UPDATE jobs SET {assignments} WHERE job_id = ? AND status = ?",
                    (*params, job_id, _to_db(expected_status)),
                )
            else:
                # Nothing to change on the header; still hold the status guard
                cursor = conn.execute(
                    "UPDATE jobs SET status = status WHERE job_id = ? AND status = ?",
                    (job_id, _to_db(expected_status)),
                )
            if cursor.rowcount != 1:
                return False

            if assignment is not None:
                conn.execute(
                    """
                    INSERT INTO assignments (job_id, provider_addr, assigned_at, started_at, ended_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (
                        assignment.job_id,
                        assignment.provider_addr,
                        _to_db(assignment.assigned_at),
                        _to_db(assignment.started_at),
                        _to_db(assignment.ended_at),
                    ),
                )
            if result is not None:
                conn.execute(
                    """
                    INSERT OR REPLACE INTO results
                        (job_id, result_json, artifact_hash, runtime_sec, exit_code, created_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        result.job_id,
                        result.result_json,
                        result.artifact_hash,
                        result.runtime_sec,
                        result.exit_code,
                        _to_db(result.created_at),
                    ),
                )
            if transition is not None:
                self._insert_transition(conn, transition)
        return True

    # === Assignments ===

    def get_assignment(self, job_id: str) -> Optional[Assignment]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM assignments WHERE job_id = ?", (job_id,)).fetchone()
        return Assignment.from_dict(dict(row)) if row else None

    # === Results ===

    def get_result(self, job_id: str) -> Optional[JobResult]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM results WHERE job_id = ?", (job_id,)).fetchone()
        return JobResult.from_dict(dict(row)) if row else None

    # === Transitions ===

    def _insert_transition(self, conn: sqlite3.Connection, transition: JobStateTransition):
        conn.execute(
            """
            INSERT INTO job_state_transitions
                (id, job_id, from_status, to_status, actor, tx_hash, metadata, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                transition.id,
                transition.job_id,
                transition.from_status,
                transition.to_status,
                transition.actor,
                transition.tx_hash,
                json.dumps(transition.metadata),
                _to_db(transition.created_at),
            ),
        )

    def save_transition(self, transition: JobStateTransition) -> str:
        with self._connect() as conn:
            self._insert_transition(conn, transition)
        return transition.id

    def get_transitions(self, job_id: str) -> List[JobStateTransition]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM job_state_transitions WHERE job_id = ? ORDER BY created_at, rowid",
                (job_id,),
            ).fetchall()
        return [_row_to_transition(r) for r in rows]
