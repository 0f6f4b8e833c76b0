"""
WhatsApp Session Manager — registry of connected numbers.

One WhatsAppClient per (tenant, instance), keyed "{tenant_id}_{instance_id}".
The manager owns the client lifecycle:

    create_client → initializing → (qr_ready) → authenticated → ready
                                               ↘ auth_failed
    ready → disconnected (remote logout / network) → destroy_client

It also stores every inbound message (the unique channel message id
makes webhook re-deliveries no-ops) before handing it to the flow engine,
and implements OutboundChannel so the engine and the schedulers can send
through whichever client serves a tenant's instance.

Created once by the service container and injected; there is no module
level instance.
"""
from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

import structlog

from channels.base import (
    ChannelError, ChannelUnavailableError, ClientEvent, OutboundChannel,
    WhatsAppClient, fetch_media,
)
from database.store_base import BaseFlowStore
from models.schemas import (
    InboundMessage, InstanceStatus, MessageContent, MessageDirection,
    MessageRecord, MessageStatus,
)
from utils.contacts import get_contact_name, is_group_chat

logger = structlog.get_logger()

ClientFactory = Callable[[str, str, str], WhatsAppClient]      # (client_id, tenant_id, instance_id)
InboundHandler = Callable[[InboundMessage, str, str], Awaitable[None]]


class WhatsAppSessionManager(OutboundChannel):

    def __init__(
        self,
        store: BaseFlowStore,
        client_factory: ClientFactory,
        init_timeout_seconds: float = 120.0,
        media_timeout_seconds: float = 30.0,
    ):
        self.store = store
        self._factory = client_factory
        self.init_timeout_seconds = init_timeout_seconds
        self.media_timeout_seconds = media_timeout_seconds
        self._clients: dict[str, WhatsAppClient] = {}
        self._status: dict[str, InstanceStatus] = {}
        self._qr_codes: dict[str, dict[str, Any]] = {}       # instance_id → {"qr", "timestamp"}
        self._inbound_handler: Optional[InboundHandler] = None

    @staticmethod
    def client_key(tenant_id: str, instance_id: str) -> str:
        return f"{tenant_id}_{instance_id}"

    def set_inbound_handler(self, handler: InboundHandler) -> None:
        self._inbound_handler = handler

    # ── Lifecycle ─────────────────────────────────────────────

    async def create_client(self, tenant_id: str, instance_id: str, name: str = "") -> WhatsAppClient:
        """
        Start (or reuse) the client for an instance.

        Raises ChannelError when initialization fails or exceeds the timeout;
        the half-built client is destroyed and forgotten in that case.
        """
        key = self.client_key(tenant_id, instance_id)
        existing = self._clients.get(key)
        if existing is not None and self._status.get(key) not in (
            InstanceStatus.DISCONNECTED, InstanceStatus.AUTH_FAILED,
        ):
            return existing
        if existing is not None:
            await self.destroy_client(tenant_id, instance_id)

        client = self._factory(key, tenant_id, instance_id)
        self._wire_events(client, tenant_id, instance_id, name or instance_id)
        self._clients[key] = client
        self._status[key] = InstanceStatus.INITIALIZING
        await self.store.update_instance(instance_id, status=InstanceStatus.INITIALIZING)
        logger.info("whatsapp_client_initializing", client_id=key)

        try:
            await asyncio.wait_for(client.initialize(), timeout=self.init_timeout_seconds)
        except Exception as e:
            logger.error("whatsapp_client_init_failed", client_id=key, error=str(e))
            self._clients.pop(key, None)
            self._status.pop(key, None)
            try:
                await client.destroy()
            except Exception as destroy_error:
                logger.warning("whatsapp_client_destroy_failed", client_id=key,
                               error=str(destroy_error))
            if isinstance(e, asyncio.TimeoutError):
                raise ChannelError(
                    f"Client initialization timeout after {self.init_timeout_seconds:g}s",
                    retryable=True,
                ) from e
            if isinstance(e, ChannelError):
                raise
            raise ChannelError(f"Client initialization failed: {e}") from e

        logger.info("whatsapp_client_initialized", client_id=key,
                    status=self._status.get(key, InstanceStatus.INITIALIZING).value)
        return client

    async def destroy_client(self, tenant_id: str, instance_id: str) -> None:
        key = self.client_key(tenant_id, instance_id)
        client = self._clients.pop(key, None)
        if client is not None:
            try:
                await client.destroy()
                logger.info("whatsapp_client_destroyed", client_id=key)
            except Exception as e:
                logger.error("whatsapp_client_destroy_failed", client_id=key, error=str(e))
        self._status.pop(key, None)
        self._qr_codes.pop(instance_id, None)

    async def shutdown(self) -> None:
        """Destroy every client. Errors are logged per client."""
        logger.info("whatsapp_manager_shutting_down", clients=len(self._clients))
        for key, client in list(self._clients.items()):
            try:
                await client.destroy()
            except Exception as e:
                logger.error("whatsapp_client_destroy_failed", client_id=key, error=str(e))
        self._clients.clear()
        self._status.clear()
        self._qr_codes.clear()

    # ── Lookups ───────────────────────────────────────────────

    def get_client(self, tenant_id: str, instance_id: str) -> Optional[WhatsAppClient]:
        return self._clients.get(self.client_key(tenant_id, instance_id))

    def get_client_status(self, tenant_id: str, instance_id: str) -> InstanceStatus:
        return self._status.get(self.client_key(tenant_id, instance_id), InstanceStatus.NOT_INITIALIZED)

    def get_qr_code(self, instance_id: str) -> Optional[dict[str, Any]]:
        return self._qr_codes.get(instance_id)

    def status_summary(self) -> dict[str, str]:
        return {key: status.value for key, status in self._status.items()}

    # ── Events ────────────────────────────────────────────────

    def _wire_events(self, client: WhatsAppClient, tenant_id: str, instance_id: str, name: str) -> None:
        key = client.client_id

        async def on_qr(qr: str) -> None:
            self._qr_codes[instance_id] = {"qr": qr, "timestamp": datetime.now(timezone.utc)}
            self._status[key] = InstanceStatus.QR_READY
            await self.store.update_instance(instance_id, status=InstanceStatus.QR_READY)
            logger.info("whatsapp_qr_ready", client_id=key, instance=name)

        async def on_authenticated(*_: Any) -> None:
            self._status[key] = InstanceStatus.AUTHENTICATED
            self._qr_codes.pop(instance_id, None)
            logger.info("whatsapp_authenticated", client_id=key)

        async def on_ready(info: Optional[dict[str, Any]] = None) -> None:
            self._status[key] = InstanceStatus.READY
            fields: dict[str, Any] = {
                "status": InstanceStatus.READY,
                "is_active": True,
                "connected_at": datetime.now(timezone.utc),
            }
            if info and info.get("phone_number"):
                fields["phone_number"] = info["phone_number"]
            await self.store.update_instance(instance_id, **fields)
            logger.info("whatsapp_ready", client_id=key, phone=fields.get("phone_number"))

        async def on_disconnected(reason: str = "") -> None:
            self._status[key] = InstanceStatus.DISCONNECTED
            await self.store.update_instance(
                instance_id,
                status=InstanceStatus.DISCONNECTED,
                is_active=False,
                disconnected_at=datetime.now(timezone.utc),
            )
            logger.warning("whatsapp_disconnected", client_id=key, reason=reason)

        async def on_auth_failure(reason: str = "") -> None:
            self._status[key] = InstanceStatus.AUTH_FAILED
            self._qr_codes.pop(instance_id, None)
            await self.store.update_instance(
                instance_id, status=InstanceStatus.AUTH_FAILED, last_error=reason,
            )
            logger.error("whatsapp_auth_failed", client_id=key, reason=reason)

        async def on_message(message: InboundMessage) -> None:
            await self.handle_incoming_message(message, tenant_id, instance_id)

        client.on(ClientEvent.QR, on_qr)
        client.on(ClientEvent.AUTHENTICATED, on_authenticated)
        client.on(ClientEvent.READY, on_ready)
        client.on(ClientEvent.DISCONNECTED, on_disconnected)
        client.on(ClientEvent.AUTH_FAILURE, on_auth_failure)
        client.on(ClientEvent.MESSAGE, on_message)

    # ── Inbound ───────────────────────────────────────────────

    async def handle_incoming_message(
        self, message: InboundMessage, tenant_id: str, instance_id: str,
    ) -> bool:
        """
        Store an inbound message and hand it to the flow engine.

        Returns False when the message was a duplicate (already stored) or
        could not be stored.
        """
        try:
            instance = await self.store.get_instance(instance_id)
            if instance is None:
                logger.error("inbound_instance_unknown", instance_id=instance_id)
                return False

            group = is_group_chat(message)
            record = MessageRecord(
                message_id=message.id,
                tenant_id=tenant_id,
                instance_id=instance_id,
                direction=MessageDirection.INCOMING,
                from_number=message.from_number,
                to=message.to,
                type=message.type if message.has_media else "text",
                content=MessageContent(
                    text=message.body,
                    caption=message.body if message.has_media else "",
                    media_url=message.media_url,
                    mime_type=message.mime_type,
                ),
                is_group=group,
                group_id=message.from_number if group else None,
                contact_name=get_contact_name(message),
                status=MessageStatus.RECEIVED,
                timestamp=message.timestamp,
            )
            if not await self.store.add_message(record):
                logger.info("duplicate_inbound_message", message_id=message.id)
                return False
        except Exception as e:
            logger.error("inbound_store_failed", message_id=message.id, error=str(e), exc_info=True)
            return False

        if self._inbound_handler is not None:
            await self._inbound_handler(message, tenant_id, instance_id)
        return True

    # ── Outbound (OutboundChannel) ────────────────────────────

    def _ready_client(self, tenant_id: str, instance_id: str) -> WhatsAppClient:
        key = self.client_key(tenant_id, instance_id)
        client = self._clients.get(key)
        status = self._status.get(key, InstanceStatus.NOT_INITIALIZED)
        if client is None or status != InstanceStatus.READY:
            raise ChannelUnavailableError(key, status.value)
        return client

    async def send_text(self, tenant_id: str, instance_id: str, chat_id: str, text: str) -> str:
        client = self._ready_client(tenant_id, instance_id)
        message_id = await client.send_message(chat_id, text)
        logger.info("message_sent", client_id=client.client_id, to=chat_id, message_id=message_id)
        return message_id

    async def send_media_from_url(
        self, tenant_id: str, instance_id: str, chat_id: str, url: str, caption: str = "",
    ) -> str:
        client = self._ready_client(tenant_id, instance_id)
        media = await fetch_media(url, timeout=self.media_timeout_seconds)
        message_id = await client.send_media(chat_id, media, caption=caption)
        logger.info("media_sent", client_id=client.client_id, to=chat_id,
                    kind=media.kind, message_id=message_id)
        return message_id
