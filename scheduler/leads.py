"""
Lead Fetch Scheduler — periodic IndiaMART lead sync per tenant.

Flow:
    refresh_schedules (every config_refresh_s)
      → one interval loop per active config with auto_fetch
      → fetch_for_tenant: pending log → API call over the overlap window
        → dedupe by unique_query_id → insert leads → config counters + log

Each run leaves a LeadFetchLog, failed runs included. A failed run is
retried after ``retry_interval_s`` up to the config's ``max_retries``;
every retry writes its own ``error_retry`` log pointing at its parent.
"""
from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Any, Optional

import structlog

from backend.indiamart import (
    USER_AGENT, IndiaMartClient, LeadFetchError, format_indiamart_datetime, normalize_lead,
)
from database.store_base import BaseFlowStore
from models.schemas import (
    FetchLogAction, FetchLogStatus, LeadFetchLog, LeadSourceConfig, utcnow,
)
from scheduler.base import PeriodicTask

logger = structlog.get_logger()


def _elapsed_ms(start: datetime, end: datetime) -> int:
    return int((end - start).total_seconds() * 1000)


class LeadFetchScheduler:

    def __init__(
        self,
        store: BaseFlowStore,
        client: IndiaMartClient,
        config_refresh_s: float = 300,
        retry_interval_s: float = 300,
        first_run_lookback_hours: int = 24,
        overdue_delay_s: float = 1.0,
    ):
        self.store = store
        self.client = client
        self.retry_interval_s = retry_interval_s
        self.first_run_lookback = timedelta(hours=first_run_lookback_hours)
        self.overdue_delay_s = overdue_delay_s
        self._refresh = PeriodicTask(
            "lead_config_refresh", self.refresh_schedules,
            interval_s=config_refresh_s, initial_delay_s=config_refresh_s,
        )
        self._tasks: dict[str, asyncio.Task] = {}        # tenant_id → interval loop
        self._intervals: dict[str, int] = {}             # tenant_id → minutes
        self._retry_tasks: set[asyncio.Task] = set()
        self._running = False

    # ── Lifecycle ─────────────────────────────────────────────

    async def start(self) -> None:
        if self._running:
            logger.info("lead_scheduler_already_running")
            return
        self._running = True
        await self.refresh_schedules()
        await self._refresh.start()
        logger.info("lead_scheduler_started", tenants=len(self._tasks))

    async def stop(self) -> None:
        self._running = False
        await self._refresh.stop()
        tasks = list(self._tasks.values()) + list(self._retry_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        self._intervals.clear()
        self._retry_tasks.clear()
        logger.info("lead_scheduler_stopped")

    def status(self) -> dict[str, Any]:
        return {
            "is_running": self._running,
            "active_tenants": len(self._tasks),
            "active_tenant_ids": sorted(self._tasks),
            "pending_retries": len(self._retry_tasks),
        }

    @property
    def pending_retries(self) -> list[asyncio.Task]:
        return list(self._retry_tasks)

    # ── Schedules ─────────────────────────────────────────────

    async def refresh_schedules(self) -> dict[str, int]:
        """Start loops for new configs, stop loops for removed ones."""
        configs = [c for c in await self.store.list_lead_configs(active_only=True) if c.auto_fetch]
        wanted = {c.tenant_id: c for c in configs}
        stats = {"added": 0, "removed": 0, "rescheduled": 0}

        for tenant_id in list(self._tasks):
            config = wanted.get(tenant_id)
            if config is None:
                self._unschedule(tenant_id)
                stats["removed"] += 1
            elif config.fetch_interval_minutes != self._intervals.get(tenant_id):
                self._unschedule(tenant_id)
                self._schedule(config)
                stats["rescheduled"] += 1

        for tenant_id, config in wanted.items():
            if tenant_id not in self._tasks:
                self._schedule(config)
                stats["added"] += 1

        if any(stats.values()):
            logger.info("lead_schedules_refreshed", **stats)
        return stats

    def _schedule(self, config: LeadSourceConfig) -> None:
        interval_s = config.fetch_interval_minutes * 60
        overdue = config.next_fetch_time is not None and utcnow() >= config.next_fetch_time
        first_delay = self.overdue_delay_s if overdue else interval_s
        self._tasks[config.tenant_id] = asyncio.create_task(
            self._tenant_loop(config.tenant_id, interval_s, first_delay),
            name=f"lead_fetch:{config.tenant_id}",
        )
        self._intervals[config.tenant_id] = config.fetch_interval_minutes
        logger.info("lead_schedule_created", tenant_id=config.tenant_id,
                    interval_minutes=config.fetch_interval_minutes, overdue=overdue)

    def _unschedule(self, tenant_id: str) -> None:
        task = self._tasks.pop(tenant_id, None)
        self._intervals.pop(tenant_id, None)
        if task:
            task.cancel()
        logger.info("lead_schedule_cleared", tenant_id=tenant_id)

    async def _tenant_loop(self, tenant_id: str, interval_s: float, first_delay_s: float) -> None:
        await asyncio.sleep(first_delay_s)
        while True:
            try:
                await self.fetch_for_tenant(tenant_id)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("lead_fetch_loop_error", tenant_id=tenant_id, error=str(e), exc_info=True)
            await asyncio.sleep(interval_s)

    # ── Fetch ─────────────────────────────────────────────────

    async def trigger_fetch(self, tenant_id: str) -> Optional[LeadFetchLog]:
        """Run a manual sync now."""
        logger.info("lead_fetch_triggered", tenant_id=tenant_id)
        return await self.fetch_for_tenant(tenant_id, action=FetchLogAction.MANUAL_SYNC)

    async def fetch_for_tenant(
        self,
        tenant_id: str,
        action: FetchLogAction = FetchLogAction.SCHEDULED_SYNC,
        retry_count: int = 0,
        parent_log_id: Optional[str] = None,
    ) -> Optional[LeadFetchLog]:
        """
        Fetch and store new leads for one tenant.

        Returns the finished fetch log, or None when the tenant has no
        active config.
        """
        started = utcnow()
        config = await self.store.get_lead_config(tenant_id)
        if config is None or not config.is_active:
            logger.info("lead_config_not_active", tenant_id=tenant_id)
            return None

        log = LeadFetchLog(
            tenant_id=tenant_id,
            action=action,
            status=FetchLogStatus.PENDING,
            start_time=started,
            retry_count=retry_count,
            parent_log_id=parent_log_id,
            metadata={"crm_key": config.masked_key, "user_agent": USER_AGENT},
        )
        await self.store.create_fetch_log(log)

        if config.last_fetch_time:
            window_start = config.last_fetch_time - timedelta(minutes=config.overlap_minutes)
        else:
            window_start = started - self.first_run_lookback
        metadata = {
            **log.metadata,
            "start_timestamp": format_indiamart_datetime(window_start, self.client.timezone),
            "end_timestamp": format_indiamart_datetime(started, self.client.timezone),
        }

        try:
            result = await self.client.fetch_leads(config.crm_key, window_start, started)
            metadata["request_url"] = result.request_url
            counts = await self._store_leads(tenant_id, result.records)
        except Exception as e:
            if not isinstance(e, LeadFetchError):
                logger.error("lead_fetch_unexpected_error", tenant_id=tenant_id,
                             error=str(e), exc_info=True)
            await self._record_failure(config, log, e, started, metadata)
            return await self.store.get_fetch_log(log.id)

        finished = utcnow()
        await self.store.increment_lead_counters(
            tenant_id, api_calls=1, leads_fetched=counts["processed"],
        )
        await self.store.update_lead_config(
            tenant_id,
            last_fetch_time=started,
            next_fetch_time=started + timedelta(minutes=config.fetch_interval_minutes),
            last_api_call_status="success",
            last_api_call_error=None,
        )
        await self.store.update_fetch_log(
            log.id,
            status=FetchLogStatus.SUCCESS,
            end_time=finished,
            duration_ms=_elapsed_ms(started, finished),
            records_pulled=len(result.records),
            records_processed=counts["processed"],
            records_skipped=counts["skipped"],
            records_errors=counts["errors"],
            metadata=metadata,
            api_response={
                "status_code": result.status_code,
                "message": "Success",
                "data": {"record_count": len(result.records)},
            },
        )
        logger.info("lead_fetch_completed", tenant_id=tenant_id, action=action.value,
                    pulled=len(result.records), **counts)
        return await self.store.get_fetch_log(log.id)

    async def _store_leads(self, tenant_id: str, records: list[dict[str, Any]]) -> dict[str, int]:
        counts = {"processed": 0, "skipped": 0, "errors": 0}
        for raw in records:
            try:
                lead = normalize_lead(tenant_id, raw) if isinstance(raw, dict) else None
                if lead is None:
                    counts["skipped"] += 1
                    continue
                if await self.store.lead_exists(lead.unique_query_id):
                    counts["skipped"] += 1
                    continue
                if await self.store.insert_lead(lead):
                    counts["processed"] += 1
                else:
                    counts["skipped"] += 1
            except Exception as e:
                logger.error("lead_processing_error", tenant_id=tenant_id, error=str(e))
                counts["errors"] += 1
        return counts

    async def _record_failure(
        self,
        config: LeadSourceConfig,
        log: LeadFetchLog,
        error: Exception,
        started: datetime,
        metadata: dict[str, Any],
    ) -> None:
        finished = utcnow()
        error_code = getattr(error, "error_code", "UNKNOWN")
        logger.warning("lead_fetch_failed", tenant_id=config.tenant_id,
                       error=str(error), error_code=error_code, retry_count=log.retry_count)

        await self.store.increment_lead_counters(config.tenant_id, api_calls=1)
        await self.store.update_lead_config(
            config.tenant_id,
            last_api_call_status="error",
            last_api_call_error=str(error),
        )
        await self.store.update_fetch_log(
            log.id,
            status=FetchLogStatus.ERROR,
            end_time=finished,
            duration_ms=_elapsed_ms(started, finished),
            error=str(error),
            error_code=error_code,
            metadata=metadata,
            api_response={
                "status_code": getattr(error, "status_code", 0),
                "message": str(error),
                "data": getattr(error, "data", None),
            },
        )

        if config.retry_failed_calls and log.retry_count < config.max_retries:
            self._schedule_retry(config.tenant_id, log)

    def _schedule_retry(self, tenant_id: str, failed: LeadFetchLog) -> None:
        attempt = failed.retry_count + 1
        logger.info("lead_fetch_retry_scheduled", tenant_id=tenant_id, attempt=attempt,
                    delay_s=self.retry_interval_s)

        async def _retry() -> None:
            await asyncio.sleep(self.retry_interval_s)
            await self.fetch_for_tenant(
                tenant_id, action=FetchLogAction.ERROR_RETRY,
                retry_count=attempt, parent_log_id=failed.id,
            )

        task = asyncio.create_task(_retry(), name=f"lead_fetch_retry:{tenant_id}:{attempt}")
        self._retry_tasks.add(task)
        task.add_done_callback(self._retry_tasks.discard)
