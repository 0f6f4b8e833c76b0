"""
Tests for IndiaMART lead ingestion.

Covers:
  - IndiaMartClient against a mocked HTTP transport
  - normalize_lead / format_indiamart_datetime
  - LeadFetchScheduler: dedup, counters, fetch logs, retries, schedules
"""
import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import httpx
import pytest

from backend.indiamart import (
    FetchResult, IndiaMartClient, LeadFetchError, format_indiamart_datetime, normalize_lead,
)
from models.schemas import FetchLogAction, FetchLogStatus, LeadSourceConfig, utcnow
from scheduler.leads import LeadFetchScheduler

TENANT = "t1"

RAW_LEAD = {
    "UNIQUE_QUERY_ID": "Q1001",
    "QUERY_TYPE": "W",
    "QUERY_TIME": "2025-03-05 14:07:09",
    "SENDER_NAME": "Ravi Kumar",
    "SENDER_MOBILE": "+91-9876543210",
    "SENDER_EMAIL": "ravi@example.com",
    "SENDER_COMPANY": "Kumar Traders",
    "SENDER_CITY": "Pune",
    "QUERY_PRODUCT_NAME": "Steel Pipes",
    "QUERY_MESSAGE": "Need 200 units",
}


def _lead(unique_id: str) -> dict:
    return {**RAW_LEAD, "UNIQUE_QUERY_ID": unique_id}


# ──────────────────────────────────────────────────────────────
#  Helpers
# ──────────────────────────────────────────────────────────────

class TestHelpers:
    def test_format_datetime_in_ist(self):
        dt = datetime(2025, 3, 5, 8, 37, 9, tzinfo=timezone.utc)
        assert format_indiamart_datetime(dt) == "05-Mar-2025 14:07:09"

    def test_format_naive_datetime_unchanged(self):
        assert format_indiamart_datetime(datetime(2025, 1, 2, 3, 4, 5)) == "02-Jan-2025 03:04:05"

    def test_normalize_lead(self):
        lead = normalize_lead(TENANT, RAW_LEAD)
        assert lead.unique_query_id == "Q1001"
        assert lead.sender_name == "Ravi Kumar"
        assert lead.sender_mobile == "+91-9876543210"
        assert lead.product_name == "Steel Pipes"
        assert lead.raw == RAW_LEAD

    def test_normalize_without_id(self):
        assert normalize_lead(TENANT, {"SENDER_NAME": "x"}) is None


# ──────────────────────────────────────────────────────────────
#  IndiaMartClient
# ──────────────────────────────────────────────────────────────

def _client(handler) -> IndiaMartClient:
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return IndiaMartClient(api_url="https://mapi.test/crm", http_client=http)


class TestIndiaMartClient:
    @pytest.mark.asyncio
    async def test_envelope_response(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["params"] = dict(request.url.params)
            return httpx.Response(200, json={"CODE": 200, "STATUS": "SUCCESS",
                                             "RESPONSE": [RAW_LEAD]})

        client = _client(handler)
        start = datetime(2025, 3, 5, 8, 0, tzinfo=timezone.utc)
        result = await client.fetch_leads("secret-key", start, start + timedelta(minutes=15))
        await client.close()

        assert result.status_code == 200
        assert result.records == [RAW_LEAD]
        assert seen["params"]["glusr_crm_key"] == "secret-key"
        assert seen["params"]["start_time"] == "05-Mar-2025 13:30:00"
        assert seen["params"]["end_time"] == "05-Mar-2025 13:45:00"
        assert "secret-key" not in result.request_url

    @pytest.mark.asyncio
    async def test_bare_list_response(self):
        client = _client(lambda request: httpx.Response(200, json=[RAW_LEAD]))
        result = await client.fetch_leads("k", utcnow(), utcnow())
        await client.close()
        assert len(result.records) == 1

    @pytest.mark.asyncio
    async def test_error_envelope(self):
        client = _client(lambda request: httpx.Response(
            200, json={"CODE": 429, "MESSAGE": "Too many requests"}))
        with pytest.raises(LeadFetchError) as exc:
            await client.fetch_leads("k", utcnow(), utcnow())
        await client.close()
        assert exc.value.error_code == "429"
        assert str(exc.value) == "Too many requests"

    @pytest.mark.asyncio
    async def test_http_error_status(self):
        client = _client(lambda request: httpx.Response(503, text="maintenance"))
        with pytest.raises(LeadFetchError) as exc:
            await client.fetch_leads("k", utcnow(), utcnow())
        await client.close()
        assert exc.value.error_code == "503"
        assert exc.value.status_code == 503

    @pytest.mark.asyncio
    async def test_non_json_body(self):
        client = _client(lambda request: httpx.Response(200, text="<html>oops</html>"))
        with pytest.raises(LeadFetchError) as exc:
            await client.fetch_leads("k", utcnow(), utcnow())
        await client.close()
        assert exc.value.error_code == "UNKNOWN"


# ──────────────────────────────────────────────────────────────
#  LeadFetchScheduler
# ──────────────────────────────────────────────────────────────

@pytest.fixture
def indiamart():
    client = AsyncMock(spec=IndiaMartClient)
    client.timezone = "Asia/Kolkata"
    client.fetch_leads.return_value = FetchResult(
        status_code=200, records=[_lead("Q1"), _lead("Q2")], request_url="https://mapi.test/crm",
    )
    return client


@pytest.fixture
def scheduler(store, indiamart):
    return LeadFetchScheduler(store, indiamart, retry_interval_s=0)


async def _configure(store, **kwargs) -> LeadSourceConfig:
    return await store.save_lead_config(
        LeadSourceConfig(tenant_id=TENANT, crm_key="abcd1234efgh", **kwargs)
    )


class TestLeadFetch:
    @pytest.mark.asyncio
    async def test_no_config(self, scheduler):
        assert await scheduler.fetch_for_tenant(TENANT) is None

    @pytest.mark.asyncio
    async def test_inactive_config(self, scheduler, store):
        await _configure(store, is_active=False)
        assert await scheduler.trigger_fetch(TENANT) is None

    @pytest.mark.asyncio
    async def test_successful_fetch(self, scheduler, store, indiamart):
        await _configure(store, fetch_interval_minutes=10)
        log = await scheduler.fetch_for_tenant(TENANT)

        assert log.status == FetchLogStatus.SUCCESS
        assert log.action == FetchLogAction.SCHEDULED_SYNC
        assert log.records_pulled == 2
        assert log.records_processed == 2
        assert log.records_skipped == 0
        assert log.metadata["crm_key"] == "****efgh"
        assert log.api_response["data"] == {"record_count": 2}
        assert log.duration_ms is not None

        leads = await store.list_leads(TENANT)
        assert {l.unique_query_id for l in leads} == {"Q1", "Q2"}

        config = await store.get_lead_config(TENANT)
        assert config.total_leads_fetched == 2
        assert config.total_api_calls == 1
        assert config.last_api_call_status == "success"
        assert config.next_fetch_time - config.last_fetch_time == timedelta(minutes=10)

    @pytest.mark.asyncio
    async def test_first_run_uses_lookback(self, scheduler, store, indiamart):
        await _configure(store)
        await scheduler.fetch_for_tenant(TENANT)
        _, start, end = indiamart.fetch_leads.call_args.args
        assert end - start == timedelta(hours=24)

    @pytest.mark.asyncio
    async def test_window_overlaps_last_fetch(self, scheduler, store, indiamart):
        last = utcnow() - timedelta(minutes=15)
        await _configure(store, last_fetch_time=last, overlap_minutes=5)
        await scheduler.fetch_for_tenant(TENANT)
        _, start, _ = indiamart.fetch_leads.call_args.args
        assert start == last - timedelta(minutes=5)

    @pytest.mark.asyncio
    async def test_duplicates_skipped(self, scheduler, store, indiamart):
        await _configure(store)
        await scheduler.fetch_for_tenant(TENANT)
        indiamart.fetch_leads.return_value = FetchResult(
            status_code=200, records=[_lead("Q2"), _lead("Q3"), {"NO_ID": True}],
        )
        log = await scheduler.trigger_fetch(TENANT)

        assert log.action == FetchLogAction.MANUAL_SYNC
        assert log.records_processed == 1
        assert log.records_skipped == 2
        config = await store.get_lead_config(TENANT)
        assert config.total_leads_fetched == 3
        assert config.total_api_calls == 2

    @pytest.mark.asyncio
    async def test_counters_survive_overlapping_fetch(self, scheduler, store, indiamart):
        await _configure(store)
        result = indiamart.fetch_leads.return_value

        async def fetch_with_overlap(*args):
            # another run for the tenant finishes while this one is in flight
            await store.increment_lead_counters(TENANT, api_calls=1, leads_fetched=4)
            return result

        indiamart.fetch_leads.side_effect = fetch_with_overlap
        await scheduler.fetch_for_tenant(TENANT)

        config = await store.get_lead_config(TENANT)
        assert config.total_api_calls == 2
        assert config.total_leads_fetched == 6

    @pytest.mark.asyncio
    async def test_failure_logged(self, store, indiamart):
        scheduler = LeadFetchScheduler(store, indiamart)
        await _configure(store, retry_failed_calls=False)
        indiamart.fetch_leads.side_effect = LeadFetchError(
            "IndiaMART API returned HTTP 500", error_code="500", status_code=500,
        )
        log = await scheduler.fetch_for_tenant(TENANT)

        assert log.status == FetchLogStatus.ERROR
        assert log.error_code == "500"
        assert log.api_response["status_code"] == 500
        assert scheduler.pending_retries == []

        config = await store.get_lead_config(TENANT)
        assert config.last_api_call_status == "error"
        assert config.total_api_calls == 1
        assert config.last_fetch_time is None

    @pytest.mark.asyncio
    async def test_unexpected_error_is_unknown(self, scheduler, store, indiamart):
        await _configure(store, retry_failed_calls=False)
        indiamart.fetch_leads.side_effect = RuntimeError("boom")
        log = await scheduler.fetch_for_tenant(TENANT)
        assert log.status == FetchLogStatus.ERROR
        assert log.error_code == "UNKNOWN"

    @pytest.mark.asyncio
    async def test_failure_retried(self, scheduler, store, indiamart):
        await _configure(store, max_retries=2)
        indiamart.fetch_leads.side_effect = [
            LeadFetchError("down"),
            FetchResult(status_code=200, records=[_lead("Q9")]),
        ]
        failed = await scheduler.fetch_for_tenant(TENANT)
        assert len(scheduler.pending_retries) == 1
        await asyncio.gather(*scheduler.pending_retries)

        logs = await store.list_fetch_logs(TENANT)
        retry = next(l for l in logs if l.id != failed.id)
        assert retry.action == FetchLogAction.ERROR_RETRY
        assert retry.retry_count == 1
        assert retry.parent_log_id == failed.id
        assert retry.status == FetchLogStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_retries_capped(self, scheduler, store, indiamart):
        await _configure(store, max_retries=1)
        indiamart.fetch_leads.side_effect = LeadFetchError("down")
        await scheduler.fetch_for_tenant(TENANT)
        while scheduler.pending_retries:
            await asyncio.gather(*scheduler.pending_retries)

        logs = await store.list_fetch_logs(TENANT)
        assert len(logs) == 2
        assert indiamart.fetch_leads.await_count == 2


class TestSchedules:
    @pytest.mark.asyncio
    async def test_refresh_adds_and_removes(self, scheduler, store):
        await _configure(store)
        stats = await scheduler.refresh_schedules()
        assert stats == {"added": 1, "removed": 0, "rescheduled": 0}
        assert scheduler.status()["active_tenant_ids"] == [TENANT]

        await store.update_lead_config(TENANT, is_active=False)
        stats = await scheduler.refresh_schedules()
        assert stats["removed"] == 1
        assert scheduler.status()["active_tenants"] == 0
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_interval_change_reschedules(self, scheduler, store):
        await _configure(store, fetch_interval_minutes=15)
        await scheduler.refresh_schedules()
        await store.update_lead_config(TENANT, fetch_interval_minutes=30)
        stats = await scheduler.refresh_schedules()
        assert stats["rescheduled"] == 1
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_manual_only_config_not_scheduled(self, scheduler, store):
        await _configure(store, auto_fetch=False)
        stats = await scheduler.refresh_schedules()
        assert stats["added"] == 0

    @pytest.mark.asyncio
    async def test_overdue_config_fetches_promptly(self, store, indiamart):
        scheduler = LeadFetchScheduler(store, indiamart, overdue_delay_s=0)
        await _configure(store, next_fetch_time=utcnow() - timedelta(minutes=1))
        await scheduler.start()
        await asyncio.sleep(0.05)
        await scheduler.stop()

        indiamart.fetch_leads.assert_awaited()
        assert not scheduler.status()["is_running"]
