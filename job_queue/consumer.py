"""
Queue Worker — pulls jobs from one logical queue and routes them to handlers.

Runs as async tasks inside the pipeline process. For horizontal scaling,
run more processes: the Redis consumer group hands each stream entry to one
consumer, and the fallback table is claimed row by row with a
compare-and-swap, so no job runs twice concurrently.

Topology:
  ┌──────────────┐   add()   ┌────────────────────┐
  │  Scheduler   │──────────▶│ ResilientQueue      │
  │  Dispatcher  │           │  primary (Redis)    │──┐
  │  Poller      │           │  fallback (table)   │──┤
  └──────────────┘           └────────────────────┘  │ consume_batch
                                                      ▼
                                             ┌──────────────────┐
                                             │   QueueWorker    │
                                             │ job.name→handler │
                                             └────────┬─────────┘
                              retry (backoff) ◀───────┤ exception
                              failed (retained)◀──────┘ exhausted / non-retryable
"""
from __future__ import annotations

import asyncio
import uuid
import structlog
from typing import Optional

from core.errors import QueueUnavailableError
from job_queue.message_queue import JobHandler, NonRetryableJobError, QueueJob
from job_queue.resilient import ResilientQueue

logger = structlog.get_logger()


class QueueWorker:
    """
    Consumes one logical queue from both of its backends.

    Usage:
        worker = QueueWorker(queue, {"send-sms": sender.handle_send})
        await worker.start_background()
        await worker.stop()
    """

    def __init__(
        self,
        queue: ResilientQueue,
        handlers: dict[str, JobHandler],
        consumer_name: str = "",
        concurrency: Optional[int] = None,
        idle_sleep: float = 1.0,
    ):
        self.queue = queue
        self.handlers = dict(handlers)
        self.consumer_name = consumer_name or f"worker_{uuid.uuid4().hex[:8]}"
        self.concurrency = concurrency or queue.policy.concurrency
        self.idle_sleep = idle_sleep
        self._semaphore = asyncio.Semaphore(self.concurrency)
        self._tasks: list[asyncio.Task] = []
        self._running = False
        self.stats = {"processed": 0, "failed": 0}

    async def start_background(self) -> list[asyncio.Task]:
        """Start the consumer loops as background tasks."""
        self._running = True
        if self.queue.primary is not None:
            self._tasks.append(asyncio.create_task(self._primary_loop()))
        self._tasks.append(asyncio.create_task(self._fallback_loop()))
        logger.info("queue_worker_started",
                    queue=self.queue.name,
                    consumer=self.consumer_name,
                    concurrency=self.concurrency,
                    handlers=sorted(self.handlers))
        return self._tasks

    async def stop(self):
        """Gracefully stop all consumer tasks."""
        self._running = False
        for task in self._tasks:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()
        logger.info("queue_worker_stopped", queue=self.queue.name, **self.stats)

    async def _primary_loop(self):
        primary = self.queue.primary
        health = self.queue.health
        while self._running:
            if not health.available:
                await asyncio.sleep(self.idle_sleep)
                continue
            try:
                await primary.consume_batch(self._handle_job, self.consumer_name)
            except asyncio.CancelledError:
                raise
            except QueueUnavailableError as e:
                health.mark_unavailable(str(e))
                logger.warning("primary_consumer_unavailable", queue=self.queue.name, error=str(e))
                await asyncio.sleep(self.idle_sleep)
            except Exception as e:
                logger.error("consumer_error", queue=self.queue.name, backend=primary.kind, error=str(e))
                await asyncio.sleep(self.idle_sleep)

    async def _fallback_loop(self):
        fallback = self.queue.fallback
        await fallback.recover_stalled()
        while self._running:
            try:
                count = await fallback.consume_batch(self._handle_job, self.consumer_name)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("consumer_error", queue=self.queue.name, backend=fallback.kind, error=str(e))
                count = 0
            if not count:
                await asyncio.sleep(fallback.poll_interval)

    async def drain_fallback(self, max_batches: int = 100) -> int:
        """Process due fallback jobs until none are left. Returns jobs handled."""
        handled = 0
        for _ in range(max_batches):
            count = await self.queue.fallback.consume_batch(self._handle_job, self.consumer_name)
            if not count:
                break
            handled += count
        return handled

    async def _handle_job(self, job: QueueJob):
        handler = self.handlers.get(job.name)
        if handler is None:
            logger.error("unknown_job_name", queue=self.queue.name, job_id=job.job_id, job_name=job.name)
            raise NonRetryableJobError(f"No handler for job {job.name}")

        async with self._semaphore:
            logger.info("processing_job",
                        queue=self.queue.name,
                        job_id=job.job_id,
                        job_name=job.name,
                        attempt=job.attempt,
                        backend=job.backend)
            try:
                await handler(job)
            except Exception:
                self.stats["failed"] += 1
                raise  # backend routes to retry / failed
            self.stats["processed"] += 1
