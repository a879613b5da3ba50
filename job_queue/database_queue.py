"""
Relational fallback queue — the ``queue_jobs`` table.

Used when the primary broker is unreachable. Several process instances may
poll the same table: a job moves waiting → active only through
``UPDATE ... WHERE id = ? AND state = 'waiting'``, so exactly one poller
wins each row.
"""
from __future__ import annotations

import asyncio
import structlog
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from sqlalchemy import select, update, delete, func
from sqlalchemy.exc import IntegrityError

from database.models import QueueJobRow, ensure_utc
from database.session import get_session
from job_queue.message_queue import JobHandler, QueueJob, QueuePolicy
from models.schemas import JobState

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DatabaseQueueBackend:
    """Polling queue stored in the application database."""

    kind = "database"

    def __init__(self, queue_name: str, policy: QueuePolicy = None, poll_interval: float = 1.0):
        self.queue_name = queue_name
        self.policy = policy or QueuePolicy()
        self.poll_interval = poll_interval

    # ── Producer ──────────────────────────────────────────────

    async def add(self, job: QueueJob) -> QueueJob:
        """Insert the job; a job id that already exists is a no-op."""
        job.backend = self.kind
        try:
            async with get_session() as db:
                if await db.get(QueueJobRow, job.job_id) is not None:
                    logger.info("job_deduplicated", queue=self.queue_name,
                                job_id=job.job_id, backend=self.kind)
                    return job
                db.add(QueueJobRow(
                    id=job.job_id,
                    queue_name=self.queue_name,
                    job_name=job.name,
                    payload=job.payload,
                    state=JobState.WAITING.value,
                    attempts=job.attempt,
                    max_attempts=job.max_attempts,
                    scheduled_for=job.scheduled_datetime,
                ))
        except IntegrityError:
            # Concurrent insert of the same id won the race
            logger.info("job_deduplicated", queue=self.queue_name,
                        job_id=job.job_id, backend=self.kind)
            return job

        logger.info("job_published",
                     queue=self.queue_name,
                     job_id=job.job_id,
                     job_name=job.name,
                     backend=self.kind)
        return job

    # ── Claiming ──────────────────────────────────────────────

    async def claim_next(self, limit: int = 1) -> list[QueueJob]:
        """Claim up to ``limit`` due jobs; rows lost to another poller are skipped."""
        now = _utcnow()
        async with get_session() as db:
            result = await db.execute(
                select(QueueJobRow.id)
                .where(
                    QueueJobRow.queue_name == self.queue_name,
                    QueueJobRow.state == JobState.WAITING.value,
                    QueueJobRow.scheduled_for <= now,
                )
                .order_by(QueueJobRow.scheduled_for, QueueJobRow.created_at)
                .limit(limit)
            )
            candidates = list(result.scalars().all())

        claimed = []
        for job_id in candidates:
            job = await self._claim(job_id)
            if job is not None:
                claimed.append(job)
        return claimed

    async def _claim(self, job_id: str) -> Optional[QueueJob]:
        async with get_session() as db:
            result = await db.execute(
                update(QueueJobRow)
                .where(QueueJobRow.id == job_id, QueueJobRow.state == JobState.WAITING.value)
                .values(state=JobState.ACTIVE.value, started_at=_utcnow())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                logger.debug("job_claim_lost", queue=self.queue_name, job_id=job_id)
                return None
            row = await db.get(QueueJobRow, job_id)
            return self._to_job(row)

    def _to_job(self, row: QueueJobRow) -> QueueJob:
        created = ensure_utc(row.created_at)
        scheduled = ensure_utc(row.scheduled_for)
        return QueueJob(
            queue=row.queue_name,
            name=row.job_name,
            payload=dict(row.payload or {}),
            attempt=row.attempts,
            max_attempts=row.max_attempts,
            scheduled_at=scheduled.isoformat() if scheduled else "",
            created_at=created.isoformat() if created else "",
            job_id=row.id,
            backend=self.kind,
        )

    # ── Outcomes ──────────────────────────────────────────────

    async def complete(self, job: QueueJob):
        async with get_session() as db:
            await db.execute(
                update(QueueJobRow)
                .where(QueueJobRow.id == job.job_id)
                .values(state=JobState.COMPLETED.value, finished_at=_utcnow(),
                        attempts=job.attempt + 1)
                .execution_options(synchronize_session=False)
            )
        await self.prune(JobState.COMPLETED, self.policy.remove_on_complete)

    async def fail(self, job: QueueJob, error: Exception):
        """Reschedule with backoff, or mark failed once retries are exhausted."""
        if self.policy.should_retry(job, error):
            delay = self.policy.backoff_seconds(job.attempt)
            async with get_session() as db:
                await db.execute(
                    update(QueueJobRow)
                    .where(QueueJobRow.id == job.job_id)
                    .values(
                        state=JobState.WAITING.value,
                        attempts=job.attempt + 1,
                        scheduled_for=_utcnow() + timedelta(seconds=delay),
                        last_error=str(error)[:2000],
                    )
                    .execution_options(synchronize_session=False)
                )
            logger.info("job_scheduled_for_retry",
                        queue=self.queue_name,
                        job_id=job.job_id,
                        attempt=job.attempt + 1,
                        delay_seconds=delay)
            return

        async with get_session() as db:
            await db.execute(
                update(QueueJobRow)
                .where(QueueJobRow.id == job.job_id)
                .values(
                    state=JobState.FAILED.value,
                    attempts=job.attempt + 1,
                    finished_at=_utcnow(),
                    last_error=str(error)[:2000],
                )
                .execution_options(synchronize_session=False)
            )
        logger.warning("job_failed_permanently",
                       queue=self.queue_name,
                       job_id=job.job_id,
                       attempts=job.attempt + 1)
        await self.prune(JobState.FAILED, self.policy.remove_on_fail)

    async def prune(self, state: JobState, keep: int) -> int:
        """Delete the oldest finished jobs beyond the retention count."""
        async with get_session() as db:
            result = await db.execute(
                select(QueueJobRow.id)
                .where(QueueJobRow.queue_name == self.queue_name,
                       QueueJobRow.state == state.value)
                .order_by(QueueJobRow.finished_at.desc())
                .offset(keep)
            )
            stale = list(result.scalars().all())
            if stale:
                await db.execute(
                    delete(QueueJobRow)
                    .where(QueueJobRow.id.in_(stale))
                    .execution_options(synchronize_session=False)
                )
        return len(stale)

    async def recover_stalled(self, older_than: timedelta = timedelta(minutes=10)) -> int:
        """Return jobs left active by a crashed worker to the waiting state."""
        cutoff = _utcnow() - older_than
        async with get_session() as db:
            result = await db.execute(
                update(QueueJobRow)
                .where(
                    QueueJobRow.queue_name == self.queue_name,
                    QueueJobRow.state == JobState.ACTIVE.value,
                    QueueJobRow.started_at < cutoff,
                )
                .values(state=JobState.WAITING.value)
                .execution_options(synchronize_session=False)
            )
        if result.rowcount:
            logger.warning("stalled_jobs_recovered", queue=self.queue_name, count=result.rowcount)
        return result.rowcount

    # ── Consumer ──────────────────────────────────────────────

    async def consume_batch(self, handler: JobHandler, consumer_name: str = "") -> int:
        jobs = await self.claim_next(self.policy.concurrency)
        if not jobs:
            return 0
        await asyncio.gather(*(self._run(job, handler) for job in jobs))
        return len(jobs)

    async def _run(self, job: QueueJob, handler: JobHandler):
        try:
            await handler(job)
        except Exception as e:
            logger.error("job_handler_error",
                         queue=self.queue_name,
                         job_id=job.job_id,
                         attempt=job.attempt,
                         error=str(e))
            await self.fail(job, e)
        else:
            await self.complete(job)

    # ── Introspection ─────────────────────────────────────────

    async def get_job(self, job_id: str) -> Optional[dict[str, Any]]:
        async with get_session() as db:
            row = await db.get(QueueJobRow, job_id)
            if row is None:
                return None
            return {
                "id": row.id,
                "queue": row.queue_name,
                "name": row.job_name,
                "payload": row.payload,
                "state": row.state,
                "attempts": row.attempts,
                "max_attempts": row.max_attempts,
                "last_error": row.last_error,
            }

    async def get_stats(self) -> dict[str, int]:
        async with get_session() as db:
            result = await db.execute(
                select(QueueJobRow.state, func.count())
                .where(QueueJobRow.queue_name == self.queue_name)
                .group_by(QueueJobRow.state)
            )
            counts = {state: count for state, count in result.all()}
        return {state.value: counts.get(state.value, 0) for state in JobState}

    async def close(self) -> None:
        logger.info("database_queue_closed", queue=self.queue_name)
