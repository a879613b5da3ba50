"""
Pipeline runtime — wires settings into every component and owns the
background tasks of one process.

    settings ─▶ database engine
             ─▶ CreditLedger
             ─▶ SMS gateway
             ─▶ queues (primary broker + fallback table, shared BrokerHealth)
             ─▶ workers: campaign-send / sms-send / automation-trigger
             ─▶ periodic: scheduler, delivery status sync, event poller

start() and stop() mirror an application lifespan; every periodic service
is safe to run in several processes at once.
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

from backend.connector import EventFeedConnector, create_event_feed_connector
from backend.event_ledger import EventDeduplicationLedger
from backend.poller import EventPoller
from billing.ledger import CreditLedger
from channels.sms_gateway import SmsGateway, create_sms_gateway
from config.settings import Settings, get_settings
from core.delivery_status import DeliveryStatusSynchronizer
from core.dispatcher import AutomationRunner, CampaignDispatcher, MessageSender
from core.scheduler import CampaignScheduler
from database.session import close_db, get_engine, init_db
from job_queue.consumer import QueueWorker
from job_queue.message_queue import JobNames
from job_queue.resilient import QueueRegistry, create_queues
from rules.automations import RULES

logger = structlog.get_logger()


class Pipeline:
    """All pipeline components for one process."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        gateway: Optional[SmsGateway] = None,
        connector: Optional[EventFeedConnector] = None,
        queues: Optional[QueueRegistry] = None,
    ):
        self.settings = settings or get_settings()
        s = self.settings

        self.ledger = CreditLedger()
        self.gateway = gateway or create_sms_gateway(s.gateway)
        self.queues = queues or create_queues(s)

        self.dispatcher = CampaignDispatcher(self.ledger, self.queues.send)
        self.sender = MessageSender(self.gateway, self.ledger, default_sender=s.gateway.sender)
        self.automations = AutomationRunner(self.gateway, self.ledger,
                                            default_sender=s.gateway.sender,
                                            templates=s.events.templates)

        self.workers = [
            QueueWorker(self.queues.campaign,
                        {JobNames.SEND_CAMPAIGN: self.dispatcher.handle_campaign_send}),
            QueueWorker(self.queues.send,
                        {JobNames.SEND_SMS: self.sender.handle_send}),
            QueueWorker(self.queues.automation,
                        {rule.job_name: self.automations.handle_automation for rule in RULES.values()}),
        ]

        self.scheduler = CampaignScheduler(self.queues.campaign, s.scheduler)
        self.synchronizer = DeliveryStatusSynchronizer(self.gateway, s.delivery_sync)
        self.poller: Optional[EventPoller] = None
        if s.events.enabled:
            self.poller = EventPoller(
                connector or create_event_feed_connector(s.events),
                self.queues.automation,
                EventDeduplicationLedger(s.events),
                s.events,
            )
        self._started = False

    @property
    def periodic_services(self) -> list:
        services = [self.scheduler, self.synchronizer]
        if self.poller is not None:
            services.append(self.poller)
        return services

    async def start(self, workers: bool = True, periodic: bool = True) -> None:
        get_engine(self.settings.database.url)
        await init_db()

        self.queues.health.start()
        if workers:
            for worker in self.workers:
                await worker.start_background()
        if periodic:
            for service in self.periodic_services:
                await service.start()

        self._started = True
        logger.info("pipeline_started",
                    queue_backend=self.settings.queue.backend,
                    gateway=self.gateway.name,
                    workers=workers,
                    periodic=periodic,
                    events_enabled=self.poller is not None)

    async def stop(self) -> None:
        for service in self.periodic_services:
            if service.running:
                await service.stop()
        for worker in self.workers:
            await worker.stop()
        await self.queues.close()
        await self.gateway.close()
        if self.poller is not None:
            await self.poller.connector.close()
        await close_db()
        self._started = False
        logger.info("pipeline_stopped")

    async def stats(self) -> dict[str, Any]:
        return {
            "broker_available": self.queues.health.available,
            "queues": await self.queues.get_stats(),
            "workers": {w.queue.name: dict(w.stats) for w in self.workers},
        }
