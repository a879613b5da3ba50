"""
Job model, retry policies and the in-memory backend.

Queue Topology:
  sms-send            — one job per outbound message (campaign recipient)
  campaign-send       — one job per claimed campaign (expansion + fan-out)
  automation-trigger  — one job per deduplicated business event

Every backend (Redis, in-memory, relational fallback) exposes the same
capability set (add, get_stats, close, plus consume_batch for workers)
as plain duck-typed objects described by the QueueBackend protocol.

Message Schema:
  {
      "job_id":        unique (optionally deterministic) job identifier,
      "queue":         logical queue name,
      "name":          job name used to route to a handler,
      "payload":       dict handed to the handler,
      "attempt":       zero-based number of previous attempts,
      "max_attempts":  ceiling before the job is marked failed,
      "scheduled_at":  ISO timestamp when the job should execute,
      "created_at":    ISO timestamp when the job was enqueued,
  }
"""
from __future__ import annotations

import asyncio
import json
import time
import uuid
import structlog
from collections import OrderedDict, deque
from dataclasses import dataclass, field, asdict
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional, Protocol

from config.settings import QueuePolicyConfig

logger = structlog.get_logger()

JobHandler = Callable[["QueueJob"], Awaitable[Any]]

# How long an accepted job id blocks a re-enqueue of the same id
DEDUP_TTL_SECONDS = 24 * 3600


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Queue Names
# ──────────────────────────────────────────────────────────────

class Queues:
    SEND = "sms-send"
    CAMPAIGN = "campaign-send"
    AUTOMATION = "automation-trigger"

    ALL = (SEND, CAMPAIGN, AUTOMATION)


class JobNames:
    SEND_CAMPAIGN = "send-campaign"
    SEND_SMS = "send-sms"


class NonRetryableJobError(Exception):
    """Raised by a handler when retrying the job cannot help."""
    pass


# ──────────────────────────────────────────────────────────────
#  Job Model
# ──────────────────────────────────────────────────────────────

@dataclass
class QueueJob:
    """A unit of work on the queue."""
    queue: str
    name: str
    payload: dict[str, Any] = field(default_factory=dict)
    attempt: int = 0
    max_attempts: int = 3
    scheduled_at: str = ""
    created_at: str = ""
    job_id: str = ""
    backend: str = ""

    def __post_init__(self):
        if not self.job_id:
            self.job_id = f"job_{uuid.uuid4().hex[:12]}"
        if not self.created_at:
            self.created_at = _utcnow().isoformat()
        if not self.scheduled_at:
            self.scheduled_at = self.created_at

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["payload"] = json.dumps(d["payload"])
        d["attempt"] = str(d["attempt"])
        d["max_attempts"] = str(d["max_attempts"])
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> QueueJob:
        data = dict(data)  # copy
        if isinstance(data.get("payload"), str):
            data["payload"] = json.loads(data["payload"])
        data["attempt"] = int(data.get("attempt", 0))
        data["max_attempts"] = int(data.get("max_attempts", 3))
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})

    @property
    def scheduled_datetime(self) -> datetime:
        target = datetime.fromisoformat(self.scheduled_at)
        if target.tzinfo is None:
            target = target.replace(tzinfo=timezone.utc)
        return target

    @property
    def is_scheduled_now(self) -> bool:
        try:
            return _utcnow() >= self.scheduled_datetime
        except ValueError:
            return True

    @property
    def is_last_attempt(self) -> bool:
        return self.attempt + 1 >= self.max_attempts

    def next_retry_job(self, delay_seconds: float) -> QueueJob:
        """Create a copy with incremented attempt, due after ``delay_seconds``."""
        retry_at = _utcnow() + timedelta(seconds=delay_seconds)
        return QueueJob(
            queue=self.queue,
            name=self.name,
            payload=self.payload,
            attempt=self.attempt + 1,
            max_attempts=self.max_attempts,
            scheduled_at=retry_at.isoformat(),
            created_at=self.created_at,
            job_id=self.job_id,  # same job_id across retries for tracing
            backend=self.backend,
        )


# ──────────────────────────────────────────────────────────────
#  Retry policy
# ──────────────────────────────────────────────────────────────

@dataclass
class QueuePolicy:
    """Per-queue retry, retention and concurrency settings."""
    attempts: int = 3
    backoff_type: str = "exponential"
    backoff_delay: int = 2000       # ms
    max_backoff: int = 60000        # ms
    remove_on_complete: int = 100
    remove_on_fail: int = 50
    concurrency: int = 5

    @classmethod
    def from_config(cls, config: QueuePolicyConfig) -> QueuePolicy:
        return cls(**{k: getattr(config, k) for k in cls.__dataclass_fields__})

    def backoff_seconds(self, attempt: int) -> float:
        """Delay before retrying a job whose ``attempt``-th try just failed."""
        if self.backoff_type == "fixed":
            return self.backoff_delay / 1000.0
        delay = min(self.backoff_delay * (2 ** attempt), self.max_backoff)
        return delay / 1000.0

    def should_retry(self, job: QueueJob, error: BaseException) -> bool:
        if isinstance(error, NonRetryableJobError):
            return False
        return not job.is_last_attempt


# ──────────────────────────────────────────────────────────────
#  Backend capability set
# ──────────────────────────────────────────────────────────────

class QueueBackend(Protocol):
    """What the resilient queue and workers need from a backend."""

    kind: str

    async def add(self, job: QueueJob) -> QueueJob: ...

    async def get_stats(self) -> dict[str, int]: ...

    async def close(self) -> None: ...

    async def consume_batch(self, handler: JobHandler, consumer_name: str = "") -> int: ...


# ──────────────────────────────────────────────────────────────
#  In-Memory Implementation (Development)
# ──────────────────────────────────────────────────────────────

class InMemoryQueueBackend:
    """
    Development/test queue backed by asyncio primitives.
    Single-process only: no consumer groups, no persistence.
    """

    kind = "memory"

    def __init__(self, queue_name: str, policy: QueuePolicy = None,
                 dedup_ttl: float = DEDUP_TTL_SECONDS, max_seen: int = 100_000):
        self.queue_name = queue_name
        self.policy = policy or QueuePolicy()
        self.dedup_ttl = dedup_ttl
        self.max_seen = max_seen
        self._queue: asyncio.Queue[QueueJob] = asyncio.Queue()
        self._delayed: list[tuple[float, QueueJob]] = []  # (timestamp, job)
        self._seen: OrderedDict[str, float] = OrderedDict()  # job_id -> accepted at
        self._active = 0
        self._completed: deque[QueueJob] = deque(maxlen=max(self.policy.remove_on_complete, 1))
        self._failed: deque[QueueJob] = deque(maxlen=max(self.policy.remove_on_fail, 1))

    async def ping(self) -> bool:
        return True

    def _accept_id(self, job_id: str) -> bool:
        """Record ``job_id``; False if it was already accepted within the TTL."""
        now = time.monotonic()
        while self._seen:
            oldest = next(iter(self._seen.values()))
            if now - oldest < self.dedup_ttl and len(self._seen) < self.max_seen:
                break
            self._seen.popitem(last=False)
        if job_id in self._seen:
            return False
        self._seen[job_id] = now
        return True

    async def add(self, job: QueueJob) -> QueueJob:
        if not self._accept_id(job.job_id):
            logger.info("job_deduplicated", queue=self.queue_name, job_id=job.job_id, backend=self.kind)
            return job
        job.backend = self.kind
        await self._put(job)
        logger.info("job_published",
                     queue=self.queue_name,
                     job_id=job.job_id,
                     job_name=job.name,
                     backend=self.kind)
        return job

    async def _put(self, job: QueueJob):
        if job.is_scheduled_now:
            await self._queue.put(job)
        else:
            self._delayed.append((job.scheduled_datetime.timestamp(), job))
            self._delayed.sort(key=lambda x: x[0])

    async def promote_delayed(self):
        now = _utcnow().timestamp()
        ready = [(ts, job) for ts, job in self._delayed if ts <= now]
        self._delayed = [(ts, job) for ts, job in self._delayed if ts > now]
        for _, job in ready:
            await self._queue.put(job)
        if ready:
            logger.info("delayed_jobs_promoted", queue=self.queue_name, count=len(ready))

    async def consume_batch(self, handler: JobHandler, consumer_name: str = "") -> int:
        await self.promote_delayed()
        try:
            first = await asyncio.wait_for(self._queue.get(), timeout=1.0)
        except asyncio.TimeoutError:
            return 0

        batch = [first]
        while len(batch) < self.policy.concurrency and not self._queue.empty():
            batch.append(self._queue.get_nowait())

        await asyncio.gather(*(self._run(job, handler) for job in batch))
        return len(batch)

    async def _run(self, job: QueueJob, handler: JobHandler):
        self._active += 1
        try:
            await handler(job)
            self._completed.append(job)
        except Exception as e:
            logger.error("job_handler_error",
                         queue=self.queue_name,
                         job_id=job.job_id,
                         attempt=job.attempt,
                         error=str(e))
            if self.policy.should_retry(job, e):
                await self._put(job.next_retry_job(self.policy.backoff_seconds(job.attempt)))
            else:
                self._failed.append(job)
                logger.warning("job_failed_permanently",
                               queue=self.queue_name,
                               job_id=job.job_id,
                               attempts=job.attempt + 1)
        finally:
            self._active -= 1

    async def get_stats(self) -> dict[str, int]:
        return {
            "waiting": self._queue.qsize(),
            "delayed": len(self._delayed),
            "active": self._active,
            "completed": len(self._completed),
            "failed": len(self._failed),
        }

    async def close(self) -> None:
        logger.info("inmemory_queue_closed", queue=self.queue_name)
