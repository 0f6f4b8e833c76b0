"""
IndiaMART Connector — pulls buyer enquiries from the IndiaMART CRM listing API.

    GET {api_url}?glusr_crm_key=…&start_time=DD-Mon-YYYY HH:MM:SS&end_time=…

The API answers either with a bare JSON array of leads or with an envelope
``{"CODE": 200, "STATUS": "SUCCESS", "RESPONSE": [...]}``; both are accepted.
Lead fields arrive in SCREAMING_CASE and are normalized into models.schemas.Lead.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional
from zoneinfo import ZoneInfo

import httpx
import structlog
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from models.schemas import Lead

logger = structlog.get_logger()

DEFAULT_API_URL = "https://mapi.indiamart.com/wservce/crm/crmListing/v2/"
USER_AGENT = "WAFlow-IndiaMart-Integration-Scheduler"

# API field → Lead field
_FIELD_MAP = {
    "QUERY_TYPE": "query_type",
    "QUERY_TIME": "query_time",
    "QUERY_MESSAGE": "query_message",
    "SENDER_NAME": "sender_name",
    "SENDER_MOBILE": "sender_mobile",
    "SENDER_EMAIL": "sender_email",
    "SENDER_COMPANY": "sender_company",
    "SENDER_ADDRESS": "sender_address",
    "SENDER_CITY": "sender_city",
    "SENDER_STATE": "sender_state",
    "SENDER_PINCODE": "sender_pincode",
    "SENDER_COUNTRY_ISO": "sender_country_iso",
    "SENDER_MOBILE_ALT": "sender_mobile_alt",
    "SENDER_EMAIL_ALT": "sender_email_alt",
    "SUBJECT": "subject",
    "QUERY_PRODUCT_NAME": "product_name",
    "PRODUCT_NAME": "product_name",
    "CALL_DURATION": "call_duration",
    "RECEIVER_MOBILE": "receiver_mobile",
}


class LeadFetchError(Exception):
    """A lead-fetch call failed. ``error_code`` is the HTTP/API status or UNKNOWN."""

    def __init__(self, message: str, error_code: str = "UNKNOWN",
                 status_code: int = 0, data: Any = None):
        self.error_code = error_code
        self.status_code = status_code
        self.data = data
        super().__init__(message)


@dataclass
class FetchResult:
    status_code: int
    records: list[dict[str, Any]] = field(default_factory=list)
    request_url: str = ""


def format_indiamart_datetime(dt: datetime, tz: str = "Asia/Kolkata") -> str:
    """Render ``dt`` as the API expects, e.g. ``05-Mar-2025 14:07:09``."""
    if dt.tzinfo is not None:
        dt = dt.astimezone(ZoneInfo(tz))
    return dt.strftime("%d-%b-%Y %H:%M:%S")


def normalize_lead(tenant_id: str, raw: dict[str, Any]) -> Optional[Lead]:
    """Build a Lead from one API record, or None when it has no UNIQUE_QUERY_ID."""
    unique_id = raw.get("UNIQUE_QUERY_ID")
    if not unique_id:
        return None
    values: dict[str, Any] = {}
    for api_key, name in _FIELD_MAP.items():
        value = raw.get(api_key)
        if value not in (None, "") and not values.get(name):
            values[name] = str(value)
    return Lead(tenant_id=tenant_id, unique_query_id=str(unique_id), raw=raw, **values)


def _extract_records(payload: Any) -> list[dict[str, Any]]:
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        code = payload.get("CODE")
        if code is not None and str(code) != "200":
            raise LeadFetchError(
                payload.get("MESSAGE") or f"IndiaMART API returned code {code}",
                error_code=str(code), status_code=200, data=payload,
            )
        records = payload.get("RESPONSE")
        return records if isinstance(records, list) else []
    return []


class IndiaMartClient:
    """Thin async client for the CRM listing endpoint."""

    def __init__(
        self,
        api_url: str = DEFAULT_API_URL,
        timeout: float = 30.0,
        timezone: str = "Asia/Kolkata",
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_url = api_url
        self.timezone = timezone
        self._client = http_client or httpx.AsyncClient(
            timeout=timeout, headers={"User-Agent": USER_AGENT},
        )

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        reraise=True,
    )
    async def _get(self, params: dict[str, str]) -> httpx.Response:
        return await self._client.get(self.api_url, params=params)

    async def fetch_leads(self, crm_key: str, start: datetime, end: datetime) -> FetchResult:
        """
        Fetch leads received between ``start`` and ``end``.

        Raises LeadFetchError on transport failure, a non-2xx status, an
        unparseable body or an error envelope.
        """
        params = {
            "glusr_crm_key": crm_key,
            "start_time": format_indiamart_datetime(start, self.timezone),
            "end_time": format_indiamart_datetime(end, self.timezone),
        }
        masked_url = str(httpx.URL(self.api_url, params={**params, "glusr_crm_key": "***"}))

        try:
            response = await self._get(params)
        except httpx.HTTPError as e:
            raise LeadFetchError(f"IndiaMART request failed: {e}") from e

        if response.status_code >= 400:
            raise LeadFetchError(
                f"IndiaMART API returned HTTP {response.status_code}",
                error_code=str(response.status_code),
                status_code=response.status_code,
                data=response.text[:500],
            )
        try:
            payload = response.json()
        except ValueError as e:
            raise LeadFetchError(
                "IndiaMART API returned a non-JSON body",
                status_code=response.status_code, data=response.text[:500],
            ) from e

        records = _extract_records(payload)
        logger.debug("indiamart_leads_fetched", records=len(records),
                     start=params["start_time"], end=params["end_time"])
        return FetchResult(status_code=response.status_code, records=records,
                           request_url=masked_url)

    async def close(self) -> None:
        await self._client.aclose()
