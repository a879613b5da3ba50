"""
Resilient queue — primary broker with relational fallback.

    add() ──▶ health.available? ──yes──▶ primary.add() ──ok──▶ handle
                   │                          │
                   no                      failure → health.mark_unavailable()
                   │                          │
                   └──────────────▶ fallback.add() ──▶ handle

A job is only lost if both backends reject it, in which case the fallback's
storage error propagates to the caller. Retries of jobs that fail on the
primary while the broker is down land in the fallback the same way.
"""
from __future__ import annotations

import asyncio
import structlog
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from config.settings import Settings
from job_queue.database_queue import DatabaseQueueBackend
from job_queue.health import BrokerHealth
from job_queue.message_queue import (
    InMemoryQueueBackend, QueueBackend, QueueJob, QueuePolicy, Queues,
)
from job_queue.redis_queue import RedisQueueBackend, connect_redis

logger = structlog.get_logger()


class ResilientQueue:
    """One logical queue routed across a primary and a fallback backend."""

    def __init__(
        self,
        name: str,
        primary: Optional[QueueBackend],
        fallback: DatabaseQueueBackend,
        health: BrokerHealth,
        policy: QueuePolicy = None,
    ):
        self.name = name
        self.primary = primary
        self.fallback = fallback
        self.health = health
        self.policy = policy or QueuePolicy()

    async def add(
        self,
        job_name: str,
        payload: dict[str, Any],
        job_id: Optional[str] = None,
        delay: float = 0,
        attempts: Optional[int] = None,
    ) -> QueueJob:
        """Enqueue a job; ``job_id`` makes the enqueue idempotent."""
        job = QueueJob(
            queue=self.name,
            name=job_name,
            payload=payload,
            job_id=job_id or "",
            max_attempts=attempts or self.policy.attempts,
        )
        if delay:
            job.scheduled_at = (datetime.now(timezone.utc) + timedelta(seconds=delay)).isoformat()

        await self.health.check()
        if self.primary is not None and self.health.available:
            try:
                return await self.primary.add(job)
            except Exception as e:
                self.health.mark_unavailable(str(e))
                logger.warning("primary_queue_add_failed",
                               queue=self.name,
                               job_id=job.job_id,
                               error=str(e))

        logger.info("queue_fallback_used", queue=self.name, job_id=job.job_id)
        return await self.fallback.add(job)

    async def get_stats(self) -> dict[str, Any]:
        if self.primary is not None and self.health.available:
            try:
                stats = await self.primary.get_stats()
                return {**stats, "type": self.primary.kind, "queue": self.name}
            except Exception as e:
                self.health.mark_unavailable(str(e))
                logger.warning("primary_queue_stats_failed", queue=self.name, error=str(e))

        stats = await self.fallback.get_stats()
        return {**stats, "type": self.fallback.kind, "queue": self.name}

    async def close(self):
        if self.primary is not None:
            try:
                await self.primary.close()
            except Exception as e:
                logger.error("primary_queue_close_failed", queue=self.name, error=str(e))
        await self.fallback.close()


# ──────────────────────────────────────────────────────────────
#  Registry
# ──────────────────────────────────────────────────────────────

@dataclass
class QueueRegistry:
    """The three logical queues of a process, sharing one BrokerHealth."""
    health: BrokerHealth
    queues: dict[str, ResilientQueue] = field(default_factory=dict)
    redis: Any = None

    def __getitem__(self, name: str) -> ResilientQueue:
        return self.queues[name]

    @property
    def send(self) -> ResilientQueue:
        return self.queues[Queues.SEND]

    @property
    def campaign(self) -> ResilientQueue:
        return self.queues[Queues.CAMPAIGN]

    @property
    def automation(self) -> ResilientQueue:
        return self.queues[Queues.AUTOMATION]

    async def get_stats(self) -> dict[str, dict[str, Any]]:
        return {name: await queue.get_stats() for name, queue in self.queues.items()}

    async def close(self):
        await self.health.stop()
        for queue in self.queues.values():
            await queue.close()
        if self.redis is not None:
            await self.redis.aclose()
        logger.info("queues_closed")


async def _always_available() -> bool:
    return True


def create_queues(settings: Settings) -> QueueRegistry:
    """
    Build the logical queues from settings.

    Config:
        queue.backend: "redis" | "memory"
        queue.redis_url: "redis://localhost:6379"
    """
    cfg = settings.queue
    backend = cfg.backend.lower()

    redis = None
    if backend == "redis":
        redis = connect_redis(cfg.redis_url)

        async def ping() -> bool:
            return bool(await asyncio.wait_for(redis.ping(), cfg.operation_timeout))

        health = BrokerHealth(ping, min_interval=cfg.health_check_interval)
    elif backend == "memory":
        health = BrokerHealth(_always_available, min_interval=cfg.health_check_interval)
    else:
        raise ValueError(f"Unknown queue backend: {cfg.backend}")

    registry = QueueRegistry(health=health, redis=redis)
    for name in Queues.ALL:
        policy = QueuePolicy.from_config(cfg.policies[name])
        fallback = DatabaseQueueBackend(name, policy, poll_interval=cfg.poll_interval)
        if redis is not None:
            primary = RedisQueueBackend(
                redis, name, policy,
                consumer_group=cfg.consumer_group,
                operation_timeout=cfg.operation_timeout,
                owns_client=False,
                stalled_after=cfg.stalled_after,
                reroute=fallback.add,
            )
        else:
            primary = InMemoryQueueBackend(name, policy)
        registry.queues[name] = ResilientQueue(name, primary, fallback, health, policy)

    logger.info("queues_created", backend=backend, queues=list(registry.queues))
    return registry
