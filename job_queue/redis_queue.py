"""
Redis Streams backend — the primary broker.

Per logical queue:
  queue:{name}              stream consumed through a consumer group
  queue:{name}:delayed      sorted set of retries (score = due timestamp)
  queue:{name}:job:{id}     SET NX marker so a job id is only accepted once
  queue:{name}:completed    list trimmed to policy.remove_on_complete
  queue:{name}:failed       list trimmed to policy.remove_on_fail

Every Redis round-trip goes through _call(), which bounds it with
asyncio.wait_for and turns timeouts/connection errors into
QueueUnavailableError so the resilient queue can reroute.

A retry that cannot be published because the broker dropped mid-job is
handed to ``reroute`` (the fallback table's add). Entries read but never
acknowledged, because the consumer crashed or lost the broker, are taken
over with XAUTOCLAIM once idle for ``stalled_after`` seconds.
"""
from __future__ import annotations

import asyncio
import json
import uuid
import structlog
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from core.errors import QueueUnavailableError
from job_queue.message_queue import DEDUP_TTL_SECONDS, JobHandler, QueueJob, QueuePolicy

logger = structlog.get_logger()


def connect_redis(redis_url: str = "redis://localhost:6379") -> aioredis.Redis:
    """Create a client; no connection is opened until the first command."""
    return aioredis.from_url(
        redis_url,
        decode_responses=True,
        max_connections=20,
    )


class RedisQueueBackend:
    """Production queue backed by Redis Streams + Sorted Sets."""

    kind = "redis"

    def __init__(
        self,
        redis: aioredis.Redis,
        queue_name: str,
        policy: QueuePolicy = None,
        consumer_group: str = "sms-workers",
        operation_timeout: float = 5.0,
        block_ms: int = 2000,
        owns_client: bool = True,
        stalled_after: float = 600,
        reroute: Optional[Callable[[QueueJob], Awaitable[Any]]] = None,
    ):
        self._redis = redis
        self.owns_client = owns_client
        self.queue_name = queue_name
        self.policy = policy or QueuePolicy()
        self.consumer_group = consumer_group
        self.operation_timeout = operation_timeout
        self.block_ms = block_ms
        self.stalled_after = stalled_after
        self.reroute = reroute
        self._group_ready = False

        self.stream_key = f"queue:{queue_name}"
        self.delayed_key = f"queue:{queue_name}:delayed"
        self.completed_key = f"queue:{queue_name}:completed"
        self.failed_key = f"queue:{queue_name}:failed"

    def _dedup_key(self, job_id: str) -> str:
        return f"queue:{self.queue_name}:job:{job_id}"

    async def _call(self, awaitable: Awaitable, timeout: float = None) -> Any:
        try:
            return await asyncio.wait_for(awaitable, timeout or self.operation_timeout)
        except asyncio.TimeoutError:
            raise QueueUnavailableError(self.kind, "operation timed out")
        except (RedisError, OSError) as e:
            raise QueueUnavailableError(self.kind, str(e)) from e

    async def ping(self) -> bool:
        return bool(await self._call(self._redis.ping()))

    # ── Producer ──────────────────────────────────────────────

    async def add(self, job: QueueJob) -> QueueJob:
        accepted = await self._call(
            self._redis.set(self._dedup_key(job.job_id), job.created_at,
                            nx=True, ex=DEDUP_TTL_SECONDS)
        )
        if not accepted:
            logger.info("job_deduplicated", queue=self.queue_name, job_id=job.job_id, backend=self.kind)
            return job

        job.backend = self.kind
        try:
            await self._publish(job)
        except QueueUnavailableError:
            # Release the marker so the job id is not blocked on this broker
            try:
                await self._call(self._redis.delete(self._dedup_key(job.job_id)))
            except QueueUnavailableError:
                pass
            raise

        logger.info("job_published",
                     queue=self.queue_name,
                     job_id=job.job_id,
                     job_name=job.name,
                     backend=self.kind)
        return job

    async def _publish(self, job: QueueJob):
        if job.is_scheduled_now:
            await self._call(self._redis.xadd(self.stream_key, job.to_dict()))
        else:
            score = job.scheduled_datetime.timestamp()
            await self._call(self._redis.zadd(self.delayed_key, {json.dumps(job.to_dict()): score}))

    async def promote_delayed(self) -> int:
        """Move retries whose due time has arrived back onto the stream."""
        now = datetime.now(timezone.utc).timestamp()
        items = await self._call(
            self._redis.zrangebyscore(self.delayed_key, "-inf", now, start=0, num=100)
        )
        promoted = 0
        for payload in items:
            # Only the consumer that removes the entry republishes it
            if await self._call(self._redis.zrem(self.delayed_key, payload)):
                await self._call(self._redis.xadd(self.stream_key, json.loads(payload)))
                promoted += 1
        if promoted:
            logger.info("delayed_jobs_promoted", queue=self.queue_name, count=promoted)
        return promoted

    # ── Consumer ──────────────────────────────────────────────

    async def _ensure_group(self):
        if self._group_ready:
            return
        try:
            await self._call(
                self._redis.xgroup_create(self.stream_key, self.consumer_group, id="0", mkstream=True)
            )
        except QueueUnavailableError as e:
            if "BUSYGROUP" not in str(e):
                raise
        self._group_ready = True

    async def claim_stalled(self, consumer_name: str) -> list[tuple[str, QueueJob]]:
        """Take over entries another consumer read but never acknowledged."""
        result = await self._call(
            self._redis.xautoclaim(
                self.stream_key,
                self.consumer_group,
                consumer_name,
                min_idle_time=int(self.stalled_after * 1000),
                start_id="0-0",
                count=self.policy.concurrency,
            )
        )
        entries = result[1] if result else []
        claimed = []
        for message_id, fields in entries:
            if message_id is None:
                continue
            if fields:
                claimed.append((message_id, QueueJob.from_dict(fields)))
            else:
                # Deleted from the stream while still pending
                await self._call(self._redis.xack(self.stream_key, self.consumer_group, message_id))
        if claimed:
            logger.warning("stalled_jobs_reclaimed",
                           queue=self.queue_name,
                           consumer=consumer_name,
                           job_ids=[job.job_id for _, job in claimed])
        return claimed

    async def consume_batch(self, handler: JobHandler, consumer_name: str = "") -> int:
        """Run stalled entries first, otherwise read up to ``policy.concurrency`` new jobs."""
        if not consumer_name:
            consumer_name = f"worker_{uuid.uuid4().hex[:8]}"

        await self._ensure_group()
        await self.promote_delayed()

        batch = await self.claim_stalled(consumer_name)
        if not batch:
            messages = await self._call(
                self._redis.xreadgroup(
                    groupname=self.consumer_group,
                    consumername=consumer_name,
                    streams={self.stream_key: ">"},
                    count=self.policy.concurrency,
                    block=self.block_ms,
                ),
                timeout=self.operation_timeout + self.block_ms / 1000.0,
            )
            if not messages:
                return 0
            batch = [
                (message_id, QueueJob.from_dict(fields))
                for _, stream_messages in messages
                for message_id, fields in stream_messages
            ]

        await asyncio.gather(*(self._run(message_id, job, handler) for message_id, job in batch))
        return len(batch)

    async def _run(self, message_id: str, job: QueueJob, handler: JobHandler):
        try:
            await handler(job)
        except Exception as e:
            logger.error("job_handler_error",
                         queue=self.queue_name,
                         job_id=job.job_id,
                         attempt=job.attempt,
                         error=str(e))
            await self._on_failure(job, e)
        else:
            await self._record(self.completed_key, job, self.policy.remove_on_complete)
            logger.debug("job_acked", job_id=job.job_id, message_id=message_id)

        # Left pending when the broker is gone; claim_stalled() picks it up later
        await self._call(self._redis.xack(self.stream_key, self.consumer_group, message_id))
        await self._call(self._redis.xdel(self.stream_key, message_id))

    async def _on_failure(self, job: QueueJob, error: Exception):
        if not self.policy.should_retry(job, error):
            await self._record(self.failed_key, job, self.policy.remove_on_fail, error=str(error))
            logger.warning("job_failed_permanently",
                           queue=self.queue_name,
                           job_id=job.job_id,
                           attempts=job.attempt + 1)
            return

        retry_job = job.next_retry_job(self.policy.backoff_seconds(job.attempt))
        try:
            await self._publish(retry_job)
        except QueueUnavailableError as e:
            if self.reroute is None:
                raise
            await self.reroute(retry_job)
            logger.warning("job_retry_rerouted",
                           queue=self.queue_name,
                           job_id=job.job_id,
                           attempt=retry_job.attempt,
                           error=str(e))
            return
        logger.info("job_scheduled_for_retry",
                    queue=self.queue_name,
                    job_id=job.job_id,
                    attempt=retry_job.attempt,
                    scheduled_at=retry_job.scheduled_at)

    async def _record(self, key: str, job: QueueJob, keep: int, error: str = ""):
        entry = json.dumps({"job_id": job.job_id, "name": job.name,
                            "attempt": job.attempt, "error": error})
        pipe = self._redis.pipeline(transaction=False)
        pipe.lpush(key, entry)
        pipe.ltrim(key, 0, max(keep, 1) - 1)
        try:
            await self._call(pipe.execute())
        except QueueUnavailableError as e:
            logger.warning("job_history_not_recorded", queue=self.queue_name, job_id=job.job_id, error=str(e))

    # ── Introspection ─────────────────────────────────────────

    async def get_stats(self) -> dict[str, int]:
        pipe = self._redis.pipeline(transaction=False)
        pipe.xlen(self.stream_key)
        pipe.zcard(self.delayed_key)
        pipe.llen(self.completed_key)
        pipe.llen(self.failed_key)
        length, delayed, completed, failed = await self._call(pipe.execute())

        active = 0
        if length:
            try:
                pending = await self._call(self._redis.xpending(self.stream_key, self.consumer_group))
                active = int(pending.get("pending", 0)) if pending else 0
            except QueueUnavailableError:
                active = 0  # group not created yet

        return {
            "waiting": max(length - active, 0),
            "delayed": delayed,
            "active": active,
            "completed": completed,
            "failed": failed,
        }

    async def close(self) -> None:
        if self.owns_client:
            await self._redis.aclose()
        logger.info("redis_queue_closed", queue=self.queue_name)
