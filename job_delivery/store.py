"""Database store layer for the job record store."""

import json
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Optional
from uuid import UUID

import asyncpg

from job_delivery.errors import JobNotFoundError
from job_delivery.models import Job, JobStatus

DUE_STATUSES = [JobStatus.PENDING.value, JobStatus.RETRYING.value]


class JobStore:
    """Database layer for job operations.

    Every method accepts an optional ``conn`` so that callers holding a
    transaction (the due-job sweep) can keep all mutations of a claimed row
    on the connection that locked it.
    """

    def __init__(self, db_pool: asyncpg.Pool):
        self.db_pool = db_pool

    @asynccontextmanager
    async def _connection(
        self, conn: Optional[asyncpg.Connection] = None
    ) -> AsyncIterator[asyncpg.Connection]:
        if conn is not None:
            yield conn
            return
        async with self.db_pool.acquire() as acquired:
            yield acquired

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[asyncpg.Connection]:
        """Acquire a connection and open a transaction on it."""
        async with self.db_pool.acquire() as conn:
            async with conn.transaction():
                yield conn

    async def insert_job(
        self,
        id: UUID,
        execution_type: str,
        message: dict[str, Any],
        message_group_id: str,
        tenant_id: Optional[str] = None,
        status: JobStatus = JobStatus.PENDING,
        retry_count: int = 0,
        max_retries: int = 10,
        next_retry_at: Optional[datetime] = None,
        last_error: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        conn: Optional[asyncpg.Connection] = None,
    ) -> Job:
        """Insert a new job into the database."""
        async with self._connection(conn) as c:
            row = await c.fetchrow(
                """
                INSERT INTO jobs (
                    id, tenant_id, execution_type, status, message,
                    retry_count, max_retries, next_retry_at, last_error,
                    idempotency_key, message_group_id
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
                RETURNING *
                """,
                id,
                tenant_id,
                execution_type,
                status.value,
                json.dumps(message),
                retry_count,
                max_retries,
                next_retry_at,
                last_error,
                idempotency_key,
                message_group_id,
            )

        return self._row_to_job(row)

    async def get_job(
        self, job_id: UUID, conn: Optional[asyncpg.Connection] = None
    ) -> Job:
        """Get a job by ID."""
        async with self._connection(conn) as c:
            row = await c.fetchrow("SELECT * FROM jobs WHERE id = $1", job_id)

        if not row:
            raise JobNotFoundError(str(job_id))

        return self._row_to_job(row)

    async def list_jobs(
        self,
        tenant_id: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 50,
    ) -> list[Job]:
        """List jobs with optional filters."""
        query = "SELECT * FROM jobs WHERE 1=1"
        params = []
        param_idx = 1

        if tenant_id:
            query += f" AND tenant_id = ${param_idx}"
            params.append(tenant_id)
            param_idx += 1

        if status:
            query += f" AND status = ${param_idx}"
            params.append(status)
            param_idx += 1

        query += f" ORDER BY created_at DESC LIMIT ${param_idx}"
        params.append(limit)

        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch(query, *params)

        return [self._row_to_job(row) for row in rows]

    async def find_in_flight_job(
        self, tenant_id: Optional[str], idempotency_key: str
    ) -> Optional[Job]:
        """Find a pending or retrying job with the same tenant and idempotency key."""
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT * FROM jobs
                WHERE tenant_id IS NOT DISTINCT FROM $1
                  AND idempotency_key = $2
                  AND status = ANY($3::text[])
                ORDER BY created_at ASC
                LIMIT 1
                """,
                tenant_id,
                idempotency_key,
                DUE_STATUSES,
            )

        return self._row_to_job(row) if row else None

    async def has_succeeded_job(
        self,
        tenant_id: Optional[str],
        idempotency_key: str,
        exclude_id: Optional[UUID] = None,
        conn: Optional[asyncpg.Connection] = None,
    ) -> bool:
        """Check whether the logical operation already completed once."""
        async with self._connection(conn) as c:
            found = await c.fetchval(
                """
                SELECT EXISTS (
                    SELECT 1 FROM jobs
                    WHERE tenant_id IS NOT DISTINCT FROM $1
                      AND idempotency_key = $2
                      AND status = $3
                      AND ($4::uuid IS NULL OR id <> $4::uuid)
                )
                """,
                tenant_id,
                idempotency_key,
                JobStatus.SUCCEEDED.value,
                exclude_id,
            )
        return bool(found)

    async def claim_due_jobs(
        self, conn: asyncpg.Connection, limit: int, now: datetime
    ) -> list[Job]:
        """
        Lock due jobs for processing.

        Must run inside a transaction on ``conn``. Uses FOR UPDATE SKIP LOCKED
        so concurrent sweeps never receive the same row and never wait on
        each other. Rows stay locked until the transaction ends.
        """
        rows = await conn.fetch(
            """
            SELECT * FROM jobs
            WHERE status = ANY($1::text[])
              AND next_retry_at <= $2
            ORDER BY next_retry_at ASC
            LIMIT $3
            FOR UPDATE SKIP LOCKED
            """,
            DUE_STATUSES,
            now,
            limit,
        )

        return [self._row_to_job(row) for row in rows]

    async def update_job_success(
        self,
        job_id: UUID,
        external_ref: Optional[str] = None,
        conn: Optional[asyncpg.Connection] = None,
    ) -> None:
        """Mark a job as succeeded."""
        async with self._connection(conn) as c:
            await c.execute(
                """
                UPDATE jobs
                SET status = $1,
                    next_retry_at = NULL,
                    last_error = NULL,
                    external_ref = COALESCE($2, external_ref),
                    updated_at = now()
                WHERE id = $3
                """,
                JobStatus.SUCCEEDED.value,
                external_ref,
                job_id,
            )

    async def update_job_retry(
        self,
        job_id: UUID,
        retry_count: int,
        next_retry_at: datetime,
        error: str,
        conn: Optional[asyncpg.Connection] = None,
    ) -> None:
        """Schedule the next attempt of a job."""
        async with self._connection(conn) as c:
            await c.execute(
                """
                UPDATE jobs
                SET status = $1,
                    retry_count = $2,
                    next_retry_at = $3,
                    last_error = $4,
                    updated_at = now()
                WHERE id = $5
                """,
                JobStatus.RETRYING.value,
                retry_count,
                next_retry_at,
                error,
                job_id,
            )

    async def update_job_failed(
        self,
        job_id: UUID,
        retry_count: int,
        error: str,
        conn: Optional[asyncpg.Connection] = None,
    ) -> None:
        """Mark a job as failed (no further automatic attempts)."""
        async with self._connection(conn) as c:
            await c.execute(
                """
                UPDATE jobs
                SET status = $1,
                    retry_count = $2,
                    next_retry_at = NULL,
                    last_error = $3,
                    updated_at = now()
                WHERE id = $4
                """,
                JobStatus.FAILED.value,
                retry_count,
                error,
                job_id,
            )

    async def update_job_error(self, job_id: UUID, error: str) -> None:
        """Record a newer error on a job without changing its schedule."""
        async with self.db_pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE jobs
                SET last_error = $1,
                    updated_at = now()
                WHERE id = $2
                """,
                error,
                job_id,
            )

    async def complete_in_flight_jobs(
        self, tenant_id: Optional[str], idempotency_key: str
    ) -> int:
        """
        Mark pending/retrying copies of an operation as succeeded.

        Rows currently locked by a sweep are skipped; that sweep resolves
        them through its own duplicate check.

        Returns the number of rows completed.
        """
        async with self.db_pool.acquire() as conn:
            result = await conn.execute(
                """
                UPDATE jobs
                SET status = $1,
                    next_retry_at = NULL,
                    last_error = NULL,
                    updated_at = now()
                WHERE id IN (
                    SELECT id FROM jobs
                    WHERE tenant_id IS NOT DISTINCT FROM $2
                      AND idempotency_key = $3
                      AND status = ANY($4::text[])
                    FOR UPDATE SKIP LOCKED
                )
                """,
                JobStatus.SUCCEEDED.value,
                tenant_id,
                idempotency_key,
                DUE_STATUSES,
            )

        # Extract count from result string like "UPDATE 5"
        return int(result.split()[-1]) if result else 0

    async def reset_job_for_retry(self, job_id: UUID, now: datetime) -> Job:
        """Reopen a job for immediate processing with a fresh retry budget."""
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                UPDATE jobs
                SET status = $1,
                    retry_count = 0,
                    next_retry_at = $2,
                    last_error = NULL,
                    updated_at = now()
                WHERE id = $3
                RETURNING *
                """,
                JobStatus.PENDING.value,
                now,
                job_id,
            )

        if not row:
            raise JobNotFoundError(str(job_id))

        return self._row_to_job(row)

    async def update_job_dead(self, job_id: UUID) -> Job:
        """Mark a job as dead."""
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                UPDATE jobs
                SET status = $1,
                    next_retry_at = NULL,
                    updated_at = now()
                WHERE id = $2
                RETURNING *
                """,
                JobStatus.DEAD.value,
                job_id,
            )

        if not row:
            raise JobNotFoundError(str(job_id))

        return self._row_to_job(row)

    def _row_to_job(self, row: asyncpg.Record) -> Job:
        """Convert a database row to a Job model."""
        return Job(
            id=row["id"],
            tenant_id=row["tenant_id"],
            execution_type=row["execution_type"],
            status=JobStatus(row["status"]),
            message=json.loads(row["message"])
            if isinstance(row["message"], str)
            else row["message"],
            retry_count=row["retry_count"],
            max_retries=row["max_retries"],
            next_retry_at=row["next_retry_at"],
            last_error=row["last_error"],
            idempotency_key=row["idempotency_key"],
            message_group_id=row["message_group_id"],
            external_ref=row["external_ref"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )
