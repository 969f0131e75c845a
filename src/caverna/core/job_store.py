"""SQLite persistence for generation jobs.

The ``generation_jobs`` table is keyed by ``job_id`` with a secondary index
on ``(owner_id, fingerprint, status)`` for the coalescing lookup and the
per-user listing.  A partial unique index allows at most one PENDING row per
``(owner_id, fingerprint)``, so a duplicate in-flight job cannot be created
even by a second process sharing the database.

Every terminal transition is a single conditional ``UPDATE`` guarded by
``status = 'PENDING'`` (and, for provider results, by the dispatch attempt
number).  A reader therefore never observes a half-applied terminal state,
and a second transition attempt simply matches no rows.

Timestamps are stored as UTC ISO-8601 strings.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class JobStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETE = "COMPLETE"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self is not JobStatus.PENDING


TERMINAL_STATUSES: tuple[JobStatus, ...] = (JobStatus.COMPLETE, JobStatus.FAILED)


class GenerationJob(BaseModel):
    """One generation request and its lifecycle state.

    ``public_url`` is only ever populated while the job is COMPLETE and
    ``error_message`` only while it is FAILED.
    """

    job_id: str
    owner_id: str
    fingerprint: str
    status: JobStatus
    selection: dict[str, Any] = Field(default_factory=dict)
    positive_prompt: str
    negative_prompt: str
    created_at: datetime
    dispatched_at: datetime
    completed_at: datetime | None = None
    public_url: str | None = None
    error_message: str | None = None
    service_used: str | None = None
    generation_time_ms: int | None = None
    attempts: int = 1

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _ts(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _from_ts(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _row_to_job(row: sqlite3.Row) -> GenerationJob:
    return GenerationJob(
        job_id=row["job_id"],
        owner_id=row["owner_id"],
        fingerprint=row["fingerprint"],
        status=JobStatus(row["status"]),
        selection=json.loads(row["selection"]) if row["selection"] else {},
        positive_prompt=row["positive_prompt"],
        negative_prompt=row["negative_prompt"],
        created_at=_from_ts(row["created_at"]),
        dispatched_at=_from_ts(row["dispatched_at"]),
        completed_at=_from_ts(row["completed_at"]),
        public_url=row["public_url"],
        error_message=row["error_message"],
        service_used=row["service_used"],
        generation_time_ms=row["generation_time_ms"],
        attempts=row["attempts"],
    )


class JobStore:
    """Manage the generation jobs table.

    Each operation opens its own short-lived connection, so one store can be
    shared across the request threads and the dispatch pool.

    Args:
        db_path: Path to the SQLite database file.  Parent directories are
            created on demand.
    """

    def __init__(self, db_path: Path | str, timeout: float = 30.0) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._timeout = timeout
        self._initialize_db()
        logger.info("Initialized job store at %s", self.db_path)

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.db_path, timeout=self._timeout)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except BaseException:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _initialize_db(self) -> None:
        """Create the schema if it doesn't exist."""
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("""
                CREATE TABLE IF NOT EXISTS generation_jobs (
                    job_id TEXT PRIMARY KEY,
                    owner_id TEXT NOT NULL,
                    fingerprint TEXT NOT NULL,
                    status TEXT NOT NULL
                        CHECK (status IN ('PENDING', 'COMPLETE', 'FAILED')),
                    selection TEXT NOT NULL,
                    positive_prompt TEXT NOT NULL,
                    negative_prompt TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    dispatched_at TEXT NOT NULL,
                    completed_at TEXT,
                    public_url TEXT,
                    error_message TEXT,
                    service_used TEXT,
                    generation_time_ms INTEGER,
                    attempts INTEGER NOT NULL DEFAULT 1
                )
                """)

            # Coalescing lookup and per-user listing
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_jobs_owner_fingerprint_status
                ON generation_jobs(owner_id, fingerprint, status)
                """)

            # At most one in-flight job per key
            conn.execute("""
                CREATE UNIQUE INDEX IF NOT EXISTS idx_jobs_one_pending
                ON generation_jobs(owner_id, fingerprint)
                WHERE status = 'PENDING'
                """)

            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_jobs_status_created
                ON generation_jobs(status, created_at)
                """)

    # -- Writes -------------------------------------------------------------

    def insert(self, job: GenerationJob) -> None:
        """Insert a new job.

        Raises:
            sqlite3.IntegrityError: If the id already exists, or if *job* is
                PENDING and another PENDING job holds the same key.
        """
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO generation_jobs (
                    job_id, owner_id, fingerprint, status, selection,
                    positive_prompt, negative_prompt, created_at, dispatched_at,
                    completed_at, public_url, error_message, service_used,
                    generation_time_ms, attempts
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    job.job_id,
                    job.owner_id,
                    job.fingerprint,
                    job.status.value,
                    json.dumps(job.selection, separators=(",", ":")),
                    job.positive_prompt,
                    job.negative_prompt,
                    _ts(job.created_at),
                    _ts(job.dispatched_at),
                    _ts(job.completed_at),
                    job.public_url,
                    job.error_message,
                    job.service_used,
                    job.generation_time_ms,
                    job.attempts,
                ),
            )

    def mark_complete(
        self,
        job_id: str,
        *,
        attempt: int,
        public_url: str,
        service_used: str | None,
        generation_time_ms: int | None,
        completed_at: datetime | None = None,
    ) -> bool:
        """Apply the COMPLETE transition for dispatch *attempt*.

        Returns:
            ``True`` if the row moved to COMPLETE, ``False`` if the job was
            already terminal, re-dispatched, or gone.
        """
        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE generation_jobs
                SET status = 'COMPLETE',
                    public_url = ?,
                    service_used = ?,
                    generation_time_ms = ?,
                    completed_at = ?,
                    error_message = NULL
                WHERE job_id = ? AND status = 'PENDING' AND attempts = ?
                """,
                (
                    public_url,
                    service_used,
                    generation_time_ms,
                    _ts(completed_at or utcnow()),
                    job_id,
                    attempt,
                ),
            )
            return cursor.rowcount > 0

    def mark_failed(
        self,
        job_id: str,
        error_message: str,
        *,
        attempt: int | None = None,
        dispatched_before: datetime | None = None,
        service_used: str | None = None,
        completed_at: datetime | None = None,
    ) -> bool:
        """Apply the FAILED transition.

        Args:
            job_id: Job to fail.
            error_message: Reason shown to the owner.  Must be non-empty.
            attempt: When given, only fail if the job is still on this
                dispatch attempt.
            dispatched_before: When given, only fail if the current dispatch
                started before this instant (watchdog guard).
            service_used: Last provider tried, if any.
            completed_at: Transition time; defaults to now.

        Returns:
            ``True`` if the row moved to FAILED.
        """
        if not error_message:
            raise ValueError("error_message must be non-empty")

        query = """
            UPDATE generation_jobs
            SET status = 'FAILED',
                error_message = ?,
                service_used = COALESCE(?, service_used),
                completed_at = ?,
                public_url = NULL
            WHERE job_id = ? AND status = 'PENDING'
            """
        params: list[Any] = [error_message, service_used, _ts(completed_at or utcnow()), job_id]
        if attempt is not None:
            query += " AND attempts = ?"
            params.append(attempt)
        if dispatched_before is not None:
            query += " AND dispatched_at < ?"
            params.append(_ts(dispatched_before))

        with self._connect() as conn:
            cursor = conn.execute(query, params)
            return cursor.rowcount > 0

    def requeue(self, job_id: str, dispatched_at: datetime | None = None) -> GenerationJob | None:
        """Move a FAILED job back to PENDING for another dispatch.

        The terminal fields are cleared and ``attempts`` is incremented.

        Returns:
            The updated job, or ``None`` if the job was not FAILED.

        Raises:
            sqlite3.IntegrityError: If another PENDING job holds the same key.
        """
        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE generation_jobs
                SET status = 'PENDING',
                    attempts = attempts + 1,
                    dispatched_at = ?,
                    completed_at = NULL,
                    public_url = NULL,
                    error_message = NULL,
                    service_used = NULL,
                    generation_time_ms = NULL
                WHERE job_id = ? AND status = 'FAILED'
                """,
                (_ts(dispatched_at or utcnow()), job_id),
            )
            if cursor.rowcount == 0:
                return None
            row = conn.execute(
                "SELECT * FROM generation_jobs WHERE job_id = ?", (job_id,)
            ).fetchone()
            return _row_to_job(row)

    def delete(self, job_id: str) -> GenerationJob | None:
        """Remove a job record.  Returns the deleted job, or ``None``."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM generation_jobs WHERE job_id = ?", (job_id,)
            ).fetchone()
            if row is None:
                return None
            conn.execute("DELETE FROM generation_jobs WHERE job_id = ?", (job_id,))
            return _row_to_job(row)

    def delete_terminal_older_than(
        self,
        cutoff: datetime,
        statuses: Iterable[JobStatus] = TERMINAL_STATUSES,
    ) -> list[GenerationJob]:
        """Delete terminal jobs created before *cutoff*.

        PENDING rows are never matched, whatever *statuses* contains.

        Returns:
            The deleted jobs, so callers can release their assets.
        """
        wanted = [JobStatus(s).value for s in statuses if JobStatus(s).is_terminal]
        if not wanted:
            return []
        placeholders = ", ".join("?" for _ in wanted)
        condition = f"status IN ({placeholders}) AND status != 'PENDING' AND created_at < ?"
        params = [*wanted, _ts(cutoff)]

        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            rows = conn.execute(
                f"SELECT * FROM generation_jobs WHERE {condition}", params
            ).fetchall()
            conn.execute(f"DELETE FROM generation_jobs WHERE {condition}", params)
        return [_row_to_job(row) for row in rows]

    # -- Reads --------------------------------------------------------------

    def get(self, job_id: str) -> GenerationJob | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM generation_jobs WHERE job_id = ?", (job_id,)
            ).fetchone()
            return _row_to_job(row) if row else None

    def find_active(self, owner_id: str, fingerprint: str) -> GenerationJob | None:
        """The PENDING job for ``(owner_id, fingerprint)``, if any."""
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM generation_jobs
                WHERE owner_id = ? AND fingerprint = ? AND status = 'PENDING'
                LIMIT 1
                """,
                (owner_id, fingerprint),
            ).fetchone()
            return _row_to_job(row) if row else None

    def find_latest_complete(self, owner_id: str, fingerprint: str) -> GenerationJob | None:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM generation_jobs
                WHERE owner_id = ? AND fingerprint = ? AND status = 'COMPLETE'
                ORDER BY completed_at DESC
                LIMIT 1
                """,
                (owner_id, fingerprint),
            ).fetchone()
            return _row_to_job(row) if row else None

    def list_for_owner(
        self,
        owner_id: str,
        *,
        status: JobStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[GenerationJob]:
        """The owner's jobs, newest first."""
        query = "SELECT * FROM generation_jobs WHERE owner_id = ?"
        params: list[Any] = [owner_id]
        if status is not None:
            query += " AND status = ?"
            params.append(JobStatus(status).value)
        query += " ORDER BY created_at DESC, job_id LIMIT ? OFFSET ?"
        params.extend([limit, offset])

        with self._connect() as conn:
            return [_row_to_job(row) for row in conn.execute(query, params).fetchall()]

    def list_stale_pending(self, dispatched_before: datetime) -> list[GenerationJob]:
        """PENDING jobs whose current dispatch started before the cutoff."""
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM generation_jobs
                WHERE status = 'PENDING' AND dispatched_at < ?
                ORDER BY dispatched_at
                """,
                (_ts(dispatched_before),),
            ).fetchall()
            return [_row_to_job(row) for row in rows]

    def stats(self) -> dict[str, Any]:
        """Aggregate counts by status and provider."""
        with self._connect() as conn:
            by_status = {status.value: 0 for status in JobStatus}
            for row in conn.execute(
                "SELECT status, COUNT(*) AS n FROM generation_jobs GROUP BY status"
            ):
                by_status[row["status"]] = row["n"]

            by_provider: dict[str, dict[str, int]] = {}
            for row in conn.execute(
                """
                SELECT service_used, status, COUNT(*) AS n FROM generation_jobs
                WHERE service_used IS NOT NULL
                GROUP BY service_used, status
                """
            ):
                by_provider.setdefault(row["service_used"], {})[row["status"]] = row["n"]

            avg_row = conn.execute(
                """
                SELECT AVG(generation_time_ms) AS avg_ms FROM generation_jobs
                WHERE status = 'COMPLETE' AND generation_time_ms IS NOT NULL
                """
            ).fetchone()

        return {
            "total": sum(by_status.values()),
            "by_status": by_status,
            "by_provider": by_provider,
            "average_generation_time_ms": (
                round(avg_row["avg_ms"]) if avg_row and avg_row["avg_ms"] is not None else None
            ),
        }
