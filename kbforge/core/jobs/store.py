"""
SQLite persistence for jobs and batches.

Methods are async for use from the dispatch loop but run short, blocking
sqlite3 transactions. The only way to change a job's status is
transition(), a conditional UPDATE that succeeds for exactly one caller.
"""

import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Protocol, Sequence, cast

from kbforge.core.jobs.models import (
    BatchRecord,
    Job,
    JobStatus,
    JobType,
    TERMINAL_STATUSES,
    to_iso,
)


class JobStore(Protocol):
    """Abstract interface for job storage backends."""

    async def create(self, job: Job) -> str:
        ...

    async def create_many(
        self, jobs: Sequence[Job], batch: Optional[BatchRecord] = None
    ) -> List[str]:
        ...

    async def get(self, job_id: str) -> Optional[Job]:
        ...

    async def update(self, job_id: str, patch: Dict[str, Any]) -> None:
        ...

    async def find_next_eligible(self, now: datetime) -> Optional[Job]:
        ...

    async def transition(self, job_id: str, from_status: JobStatus, patch: Dict[str, Any]) -> bool:
        ...

    async def recover_stale(self, started_before: datetime) -> int:
        ...


def _to_column(value: Any) -> Any:
    """Convert a patch value to its column representation."""
    if isinstance(value, (JobStatus, JobType)):
        return value.value
    if isinstance(value, datetime):
        return to_iso(value)
    if isinstance(value, bool):
        return int(value)
    return value


class SQLiteJobStore:
    """
    SQLite-backed job store for lightweight deployments.

    Jobs and batches persisted in one SQLite file, behind async methods.
    """

    SCHEMA = """
    CREATE TABLE IF NOT EXISTS jobs (
        id TEXT PRIMARY KEY,
        type TEXT NOT NULL,
        tenant_id TEXT NOT NULL,
        user_id TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending',
        priority INTEGER DEFAULT 0,
        payload TEXT NOT NULL,
        batch_id TEXT,
        progress TEXT,
        result TEXT,
        error TEXT,
        attempts INTEGER DEFAULT 0,
        max_attempts INTEGER DEFAULT 3,
        scheduled_for TEXT,
        cancel_requested INTEGER DEFAULT 0,
        created_at TEXT NOT NULL,
        started_at TEXT,
        completed_at TEXT
    );

    CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs(status);
    CREATE INDEX IF NOT EXISTS idx_jobs_dispatch
        ON jobs(status, priority DESC, created_at ASC);
    CREATE INDEX IF NOT EXISTS idx_jobs_tenant ON jobs(tenant_id);
    CREATE INDEX IF NOT EXISTS idx_jobs_batch ON jobs(batch_id);

    CREATE TABLE IF NOT EXISTS batches (
        batch_id TEXT PRIMARY KEY,
        tenant_id TEXT NOT NULL,
        user_id TEXT NOT NULL,
        kind TEXT NOT NULL,
        job_ids TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'queued',
        created_at TEXT NOT NULL,
        started_at TEXT,
        completed_at TEXT
    );

    CREATE INDEX IF NOT EXISTS idx_batches_tenant ON batches(tenant_id);
    """

    def __init__(self, db_path: Path) -> None:
        """
        Initialize the SQLite job store.

        Args:
            db_path: Path to the SQLite database file.
        """
        self.db_path = Path(db_path)
        self._init_schema()

    def _init_schema(self) -> None:
        """Create tables and indexes on first open."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._connection() as conn:
            conn.executescript(self.SCHEMA)

    def _get_connection(self) -> sqlite3.Connection:
        """Open a short-lived connection with Row access."""
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        """One transaction; committed on success, rolled back on error."""
        conn = self._get_connection()
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    @staticmethod
    def _insert(conn: sqlite3.Connection, job: Job) -> None:
        data = job.to_dict()
        columns = ", ".join(data.keys())
        placeholders = ", ".join("?" * len(data))
        conn.execute(f"INSERT INTO jobs ({columns}) VALUES ({placeholders})", list(data.values()))

    async def create(self, job: Job) -> str:
        """Add a job."""
        with self._connection() as conn:
            self._insert(conn, job)
        return job.id

    async def create_many(
        self, jobs: Sequence[Job], batch: Optional[BatchRecord] = None
    ) -> List[str]:
        """
        Add several jobs in one transaction; none are stored if one fails.

        A batch record passed along is written in the same transaction.
        """
        with self._connection() as conn:
            for job in jobs:
                self._insert(conn, job)
            if batch is not None:
                self._insert_batch(conn, batch)
        return [job.id for job in jobs]

    async def get(self, job_id: str) -> Optional[Job]:
        """Get a job by ID."""
        with self._connection() as conn:
            row = conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
        return Job.from_dict(dict(row)) if row else None

    async def get_many(self, job_ids: Iterable[str]) -> List[Job]:
        """Get jobs by ID, in the order given; unknown ids are skipped."""
        ids = list(job_ids)
        if not ids:
            return []
        placeholders = ", ".join("?" * len(ids))
        with self._connection() as conn:
            rows = conn.execute(f"SELECT * FROM jobs WHERE id IN ({placeholders})", ids).fetchall()
        by_id = {row["id"]: Job.from_dict(dict(row)) for row in rows}
        return [by_id[job_id] for job_id in ids if job_id in by_id]

    async def update(self, job_id: str, patch: Dict[str, Any]) -> None:
        """Apply a column patch unconditionally (progress, result)."""
        if not patch:
            return
        updates = ", ".join(f"{column} = ?" for column in patch)
        values = [_to_column(v) for v in patch.values()]
        values.append(job_id)
        with self._connection() as conn:
            conn.execute(f"UPDATE jobs SET {updates} WHERE id = ?", values)

    async def transition(self, job_id: str, from_status: JobStatus, patch: Dict[str, Any]) -> bool:
        """
        Apply patch only if the job is currently in from_status.

        Returns:
            True if this call changed the row
        """
        updates = ", ".join(f"{column} = ?" for column in patch)
        values = [_to_column(v) for v in patch.values()]
        values.extend([job_id, from_status.value])
        with self._connection() as conn:
            result = conn.execute(
                f"UPDATE jobs SET {updates} WHERE id = ? AND status = ?",
                values,
            )
        return result.rowcount > 0

    async def find_next_eligible(self, now: datetime) -> Optional[Job]:
        """Highest-priority, oldest PENDING job that is due at ``now``."""
        with self._connection() as conn:
            row = conn.execute(
                """
                SELECT * FROM jobs
                WHERE status = ?
                AND (scheduled_for IS NULL OR scheduled_for <= ?)
                ORDER BY priority DESC, created_at ASC, rowid ASC
                LIMIT 1
                """,
                (JobStatus.PENDING.value, to_iso(now)),
            ).fetchone()
        return Job.from_dict(dict(row)) if row else None

    @staticmethod
    def _conditions(
        status: Optional[JobStatus],
        tenant_id: Optional[str],
        job_type: Optional[JobType] = None,
        batch_id: Optional[str] = None,
    ) -> tuple:
        conditions = []
        params: List[Any] = []

        if status:
            conditions.append("status = ?")
            params.append(status.value)

        if tenant_id:
            conditions.append("tenant_id = ?")
            params.append(tenant_id)

        if job_type:
            conditions.append("type = ?")
            params.append(job_type.value)

        if batch_id:
            conditions.append("batch_id = ?")
            params.append(batch_id)

        where = " WHERE " + " AND ".join(conditions) if conditions else ""
        return where, params

    async def count(
        self, status: Optional[JobStatus] = None, tenant_id: Optional[str] = None
    ) -> int:
        """Number of jobs with the given status and type."""
        where, params = self._conditions(status, tenant_id)
        with self._connection() as conn:
            row = conn.execute(f"SELECT COUNT(*) FROM jobs{where}", params).fetchone()
        return cast(int, row[0]) if row else 0

    async def count_by_status(self, tenant_id: Optional[str] = None) -> Dict[JobStatus, int]:
        """Job counts grouped by status; every status is present."""
        where, params = self._conditions(None, tenant_id)
        with self._connection() as conn:
            rows = conn.execute(
                f"SELECT status, COUNT(*) AS n FROM jobs{where} GROUP BY status", params
            ).fetchall()
        counts = {status: 0 for status in JobStatus}
        for row in rows:
            counts[JobStatus(row["status"])] = row["n"]
        return counts

    async def list(
        self,
        status: Optional[JobStatus] = None,
        tenant_id: Optional[str] = None,
        job_type: Optional[JobType] = None,
        limit: int = 100,
    ) -> List[Job]:
        """List jobs with optional filters, newest first."""
        where, params = self._conditions(status, tenant_id, job_type)
        params.append(limit)
        with self._connection() as conn:
            rows = conn.execute(
                f"SELECT * FROM jobs{where} ORDER BY created_at DESC, rowid DESC LIMIT ?",
                params,
            ).fetchall()
        return [Job.from_dict(dict(row)) for row in rows]

    async def delete_older_than(
        self, cutoff: datetime, statuses: Iterable[JobStatus] = TERMINAL_STATUSES
    ) -> int:
        """Remove jobs in ``statuses`` that completed before ``cutoff``."""
        values = [status.value for status in statuses]
        if not values:
            return 0
        placeholders = ", ".join("?" * len(values))
        with self._connection() as conn:
            result = conn.execute(
                f"""
                DELETE FROM jobs
                WHERE status IN ({placeholders})
                AND completed_at < ?
                """,
                (*values, to_iso(cutoff)),
            )
        return result.rowcount

    async def recover_stale(self, started_before: datetime) -> int:
        """
        Return PROCESSING jobs claimed before ``started_before`` to PENDING.

        Only a starting worker calls this. Opening the store never touches
        PROCESSING rows, since another process may still be running them.
        """
        with self._connection() as conn:
            result = conn.execute(
                """
                UPDATE jobs
                SET status = ?, started_at = NULL, cancel_requested = 0
                WHERE status = ?
                AND (started_at IS NULL OR started_at < ?)
                """,
                (JobStatus.PENDING.value, JobStatus.PROCESSING.value, to_iso(started_before)),
            )
        return result.rowcount

    # ------------------------------------------------------------------
    # Batches
    # ------------------------------------------------------------------

    @staticmethod
    def _insert_batch(conn: sqlite3.Connection, batch: BatchRecord) -> None:
        data = batch.to_dict()
        columns = ", ".join(data.keys())
        placeholders = ", ".join("?" * len(data))
        conn.execute(
            f"INSERT OR REPLACE INTO batches ({columns}) VALUES ({placeholders})",
            list(data.values()),
        )

    async def save_batch(self, batch: BatchRecord) -> str:
        with self._connection() as conn:
            self._insert_batch(conn, batch)
        return batch.batch_id

    async def get_batch(self, batch_id: str) -> Optional[BatchRecord]:
        with self._connection() as conn:
            row = conn.execute("SELECT * FROM batches WHERE batch_id = ?", (batch_id,)).fetchone()
        return BatchRecord.from_dict(dict(row)) if row else None

    async def update_batch(
        self, batch_id: str, patch: Dict[str, Any], from_status: Optional[str] = None
    ) -> bool:
        """
        Patch a batch row.

        With from_status, the update only applies while the batch is in that
        status, so lifecycle events are recorded once.
        """
        updates = ", ".join(f"{column} = ?" for column in patch)
        values = [_to_column(v) for v in patch.values()]
        query = f"UPDATE batches SET {updates} WHERE batch_id = ?"
        values.append(batch_id)
        if from_status is not None:
            query += " AND status = ?"
            values.append(from_status)
        with self._connection() as conn:
            result = conn.execute(query, values)
        return result.rowcount > 0

    async def list_batch_jobs(self, batch_id: str) -> List[Job]:
        """Jobs of a batch, in submission order."""
        batch = await self.get_batch(batch_id)
        if batch is None:
            return []
        return await self.get_many(batch.job_ids)

    async def list_batches(self, tenant_id: Optional[str] = None) -> List[BatchRecord]:
        query = "SELECT * FROM batches"
        params: List[Any] = []
        if tenant_id:
            query += " WHERE tenant_id = ?"
            params.append(tenant_id)
        query += " ORDER BY created_at DESC"
        with self._connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [BatchRecord.from_dict(dict(row)) for row in rows]
