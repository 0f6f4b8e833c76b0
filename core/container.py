"""
Service container — builds and owns every long-lived component.

    services = build_services(get_settings())
    await services.start()       # database, schedulers
    ...
    await services.stop()        # schedulers, timers, clients, database

Nothing here is a module-level singleton apart from the store factory's
instance; the API lifespan keeps the Services object on ``app.state``.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import structlog

from backend.indiamart import IndiaMartClient
from channels.base import MessageDeduplicator, WhatsAppClient
from channels.manager import ClientFactory, WhatsAppSessionManager
from channels.whatsapp_cloud import CloudApiClient
from config.settings import Settings
from core.orchestrator import Orchestrator
from database.session import close_db, init_db
from database.store_base import BaseFlowStore
from database.store_factory import create_store
from flows.executor import FlowExecutor
from flows.sessions import ContactLocks, SessionManager
from scheduler.leads import LeadFetchScheduler
from scheduler.messages import ScheduledMessageDispatcher
from scheduler.sessions import SessionTimeoutSweeper

logger = structlog.get_logger()


def cloud_client_factory(settings: Settings) -> ClientFactory:
    """Every instance connects through the configured Cloud API number."""
    wa = settings.whatsapp

    def factory(client_id: str, tenant_id: str, instance_id: str) -> WhatsAppClient:
        return CloudApiClient(
            client_id,
            access_token=wa.access_token,
            phone_number_id=wa.phone_number_id,
            base_url=wa.base_url,
            verify_token=wa.verify_token,
            timeout=wa.request_timeout_seconds,
        )

    return factory


@dataclass
class Services:
    settings: Settings
    store: BaseFlowStore
    whatsapp: WhatsAppSessionManager
    executor: FlowExecutor
    sessions: SessionManager
    orchestrator: Orchestrator
    messages: ScheduledMessageDispatcher
    leads: LeadFetchScheduler
    timeouts: SessionTimeoutSweeper
    indiamart: IndiaMartClient

    @property
    def uses_sql(self) -> bool:
        return self.settings.database.store_backend == "sql"

    async def start(self) -> None:
        if self.uses_sql:
            await init_db()
        await self.timeouts.start()
        if self.settings.scheduler.enabled:
            await self.messages.start()
        if self.settings.lead_fetch.enabled:
            await self.leads.start()
        logger.info("services_started", store_backend=self.settings.database.store_backend)

    async def stop(self) -> None:
        await self.leads.stop()
        await self.messages.stop()
        await self.timeouts.stop()
        await self.orchestrator.drain()
        await self.whatsapp.shutdown()
        await self.executor.close()
        await self.indiamart.close()
        if self.uses_sql:
            await close_db()
        logger.info("services_stopped")


def build_services(
    settings: Settings,
    store: Optional[BaseFlowStore] = None,
    client_factory: Optional[ClientFactory] = None,
) -> Services:
    store = store or create_store(settings.database)
    engine_cfg = settings.flow_engine
    sched_cfg = settings.scheduler
    lead_cfg = settings.lead_fetch

    whatsapp = WhatsAppSessionManager(
        store,
        client_factory or cloud_client_factory(settings),
        init_timeout_seconds=settings.whatsapp.init_timeout_seconds,
    )
    executor = FlowExecutor(
        store,
        whatsapp,
        max_node_visits=engine_cfg.max_node_visits,
        max_delay_seconds=engine_cfg.max_delay_seconds,
        default_timeout_minutes=engine_cfg.default_timeout_minutes,
        webhook_timeout_seconds=engine_cfg.webhook_timeout_seconds,
    )
    locks = ContactLocks()
    sessions = SessionManager(store, executor,
                              max_invalid_responses=engine_cfg.max_invalid_responses,
                              locks=locks)
    orchestrator = Orchestrator(store, executor, sessions,
                                dedup=MessageDeduplicator(), locks=locks)
    whatsapp.set_inbound_handler(orchestrator.enqueue)

    indiamart = IndiaMartClient(
        api_url=lead_cfg.api_url,
        timeout=lead_cfg.request_timeout_seconds,
        timezone=settings.timezone,
    )
    return Services(
        settings=settings,
        store=store,
        whatsapp=whatsapp,
        executor=executor,
        sessions=sessions,
        orchestrator=orchestrator,
        messages=ScheduledMessageDispatcher(
            store, whatsapp,
            interval_s=sched_cfg.message_interval_seconds,
            startup_delay_s=sched_cfg.startup_delay_seconds,
            stale_after_s=sched_cfg.sending_stale_seconds,
            wakeup_horizon_s=sched_cfg.wakeup_horizon_seconds,
        ),
        leads=LeadFetchScheduler(
            store, indiamart,
            config_refresh_s=lead_cfg.config_refresh_seconds,
            retry_interval_s=lead_cfg.retry_interval_seconds,
            first_run_lookback_hours=lead_cfg.first_run_lookback_hours,
            overdue_delay_s=lead_cfg.overdue_fetch_delay_seconds,
        ),
        timeouts=SessionTimeoutSweeper(sessions, interval_s=engine_cfg.timeout_sweep_seconds),
        indiamart=indiamart,
    )
