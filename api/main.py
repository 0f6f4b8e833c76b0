"""
FastAPI Application — webhooks, instance management and scheduler control.

Provides:
- WhatsApp Cloud API webhook (verification + inbound messages) per instance
- Instance lifecycle: create / destroy / status / QR
- Flow and lead-source configuration upserts
- Scheduled messages: schedule / cancel
- Lead fetch: manual trigger, scheduler status
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Optional

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

import structlog
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, Field

from channels.base import ChannelError
from channels.whatsapp_cloud import CloudApiClient
from config.settings import get_settings
from core.container import Services, build_services
from models.schemas import Flow, InstanceStatus, LeadSourceConfig, WhatsAppInstance
from scheduler.messages import InstanceNotFoundError
from utils.logging_config import configure_logging

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Request Models
# ──────────────────────────────────────────────────────────────

class CreateInstanceRequest(BaseModel):
    name: str = ""


class ScheduleMessageRequest(BaseModel):
    tenant_id: str = Field(alias="tenantId")
    instance_id: str = Field(alias="instanceId")
    to: str
    message: str
    scheduled_at: datetime = Field(alias="scheduledAt")

    model_config = {"populate_by_name": True}


# ──────────────────────────────────────────────────────────────
#  App
# ──────────────────────────────────────────────────────────────

def create_app(services: Optional[Services] = None) -> FastAPI:
    """Build the API. ``services`` is built from settings when omitted."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.services = services or build_services(get_settings())
        settings = app.state.services.settings
        configure_logging(settings.logging.level, settings.logging.json)
        await app.state.services.start()
        logger.info("waflow_started", store_backend=settings.database.store_backend)
        yield
        await app.state.services.stop()
        logger.info("waflow_stopped")

    settings = get_settings()
    app = FastAPI(
        title=f"{settings.app_name} API",
        description="WhatsApp automation: flows, scheduled messages, lead ingestion",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    _register_routes(app)
    return app


def _services(request: Request) -> Services:
    return request.app.state.services


def _cloud_client(services: Services, tenant_id: str, instance_id: str) -> CloudApiClient:
    client = services.whatsapp.get_client(tenant_id, instance_id)
    if not isinstance(client, CloudApiClient):
        raise HTTPException(404, "WhatsApp instance not connected")
    return client


def _register_routes(app: FastAPI) -> None:

    # ══════════════════════════════════════════════════════════
    #  HEALTH
    # ══════════════════════════════════════════════════════════

    @app.get("/health")
    async def health(request: Request):
        services = _services(request)
        return {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "store_backend": services.settings.database.store_backend,
            "clients": services.whatsapp.status_summary(),
        }

    # ══════════════════════════════════════════════════════════
    #  WEBHOOKS: WhatsApp Cloud API
    # ══════════════════════════════════════════════════════════

    @app.get("/webhooks/whatsapp/{tenant_id}/{instance_id}")
    async def whatsapp_verify(tenant_id: str, instance_id: str, request: Request):
        client = _cloud_client(_services(request), tenant_id, instance_id)
        challenge = client.verify_webhook(dict(request.query_params))
        if challenge is None:
            raise HTTPException(403, "Verification failed")
        return PlainTextResponse(challenge)

    @app.post("/webhooks/whatsapp/{tenant_id}/{instance_id}")
    async def whatsapp_webhook(tenant_id: str, instance_id: str, request: Request):
        client = _cloud_client(_services(request), tenant_id, instance_id)
        try:
            payload = await request.json()
        except ValueError:
            raise HTTPException(400, "Invalid JSON body")
        messages = await client.handle_webhook(payload)
        return {"status": "ok", "messages": len(messages)}

    # ══════════════════════════════════════════════════════════
    #  INSTANCES
    # ══════════════════════════════════════════════════════════

    @app.post("/api/v1/instances/{tenant_id}/{instance_id}")
    async def create_instance(
        tenant_id: str, instance_id: str, request: Request,
        body: Optional[CreateInstanceRequest] = None,
    ):
        services = _services(request)
        name = body.name if body else ""
        instance = await services.store.get_instance(instance_id)
        if instance is None:
            instance = await services.store.upsert_instance(
                WhatsAppInstance(instance_id=instance_id, tenant_id=tenant_id, name=name)
            )
        elif instance.tenant_id != tenant_id:
            raise HTTPException(404, "WhatsApp instance not found")

        try:
            await services.whatsapp.create_client(tenant_id, instance_id, name or instance.name)
        except ChannelError as e:
            raise HTTPException(502, str(e))

        return {
            "instance_id": instance_id,
            "status": services.whatsapp.get_client_status(tenant_id, instance_id).value,
            "qr": services.whatsapp.get_qr_code(instance_id),
        }

    @app.delete("/api/v1/instances/{tenant_id}/{instance_id}")
    async def destroy_instance(tenant_id: str, instance_id: str, request: Request):
        services = _services(request)
        await services.whatsapp.destroy_client(tenant_id, instance_id)
        await services.store.update_instance(
            instance_id,
            status=InstanceStatus.DISCONNECTED,
            is_active=False,
            disconnected_at=datetime.now(timezone.utc),
        )
        return {"instance_id": instance_id, "status": InstanceStatus.DISCONNECTED.value}

    @app.get("/api/v1/instances/{tenant_id}/{instance_id}/status")
    async def instance_status(tenant_id: str, instance_id: str, request: Request):
        services = _services(request)
        instance = await services.store.get_instance(instance_id)
        if instance is None or instance.tenant_id != tenant_id:
            raise HTTPException(404, "WhatsApp instance not found")
        return {
            "status": services.whatsapp.get_client_status(tenant_id, instance_id).value,
            "instance": instance,
        }

    @app.get("/api/v1/instances/{tenant_id}/{instance_id}/qr")
    async def instance_qr(tenant_id: str, instance_id: str, request: Request):
        qr = _services(request).whatsapp.get_qr_code(instance_id)
        if qr is None:
            raise HTTPException(404, "No QR code available")
        return qr

    # ══════════════════════════════════════════════════════════
    #  FLOWS
    # ══════════════════════════════════════════════════════════

    @app.put("/api/v1/flows")
    async def save_flow(flow: Flow, request: Request):
        return await _services(request).store.save_flow(flow)

    @app.get("/api/v1/flows/{flow_id}")
    async def get_flow(flow_id: str, request: Request):
        flow = await _services(request).store.get_flow(flow_id)
        if flow is None:
            raise HTTPException(404, "Flow not found")
        return flow

    # ══════════════════════════════════════════════════════════
    #  SCHEDULED MESSAGES
    # ══════════════════════════════════════════════════════════

    @app.post("/api/v1/messages/schedule")
    async def schedule_message(body: ScheduleMessageRequest, request: Request):
        try:
            record = await _services(request).messages.schedule_message(
                body.tenant_id, body.instance_id, body.to, body.message, body.scheduled_at,
            )
        except InstanceNotFoundError as e:
            raise HTTPException(404, str(e))
        except ValueError as e:
            raise HTTPException(400, str(e))
        return {"success": True, "id": record.id, "scheduled_at": record.due_at}

    @app.delete("/api/v1/messages/{record_id}")
    async def cancel_message(record_id: str, request: Request):
        if not await _services(request).messages.cancel_message(record_id):
            raise HTTPException(404, "Scheduled message not found or already processed")
        return {"success": True, "id": record_id}

    # ══════════════════════════════════════════════════════════
    #  LEADS
    # ══════════════════════════════════════════════════════════

    @app.put("/api/v1/leads/config")
    async def save_lead_config(config: LeadSourceConfig, request: Request):
        saved = await _services(request).store.save_lead_config(config)
        data: dict[str, Any] = saved.model_dump(mode="json", by_alias=True, exclude={"crm_key"})
        data["crmKey"] = saved.masked_key
        return data

    @app.post("/api/v1/leads/{tenant_id}/fetch")
    async def trigger_lead_fetch(tenant_id: str, request: Request):
        log = await _services(request).leads.trigger_fetch(tenant_id)
        if log is None:
            raise HTTPException(404, "No active IndiaMART configuration")
        return log

    @app.get("/api/v1/leads/{tenant_id}")
    async def list_leads(tenant_id: str, request: Request, limit: int = 100):
        return await _services(request).store.list_leads(tenant_id, limit=limit)

    @app.get("/api/v1/scheduler/status")
    async def scheduler_status(request: Request):
        services = _services(request)
        return {
            "leads": services.leads.status(),
            "messages": {"pending_timers": services.messages.pending_timers},
            "session_timeouts": {"running": services.timeouts.running,
                                 "cycles": services.timeouts.cycles},
        }


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
