"""Fakes and flow builders shared by the test modules."""
from __future__ import annotations

import asyncio
from typing import Any, Optional

from channels.base import ChannelError, ClientEvent, MediaPayload, OutboundChannel, WhatsAppClient
from models.schemas import Flow, InboundMessage, InstanceStatus

TENANT = "t1"
INSTANCE = "inst1"
CONTACT = "919876543210"


# ──────────────────────────────────────────────────────────────
#  Fakes
# ──────────────────────────────────────────────────────────────

class FakeChannel(OutboundChannel):
    """Records every send. Set ``fail_with`` to make sends raise."""

    def __init__(self):
        self.sent: list[dict[str, Any]] = []
        self.fail_with: Optional[Exception] = None

    async def send_text(self, tenant_id: str, instance_id: str, chat_id: str, text: str) -> str:
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append({"kind": "text", "tenant_id": tenant_id, "instance_id": instance_id,
                          "chat_id": chat_id, "text": text})
        return f"wamid.{len(self.sent)}"

    async def send_media_from_url(
        self, tenant_id: str, instance_id: str, chat_id: str, url: str, caption: str = "",
    ) -> str:
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append({"kind": "media", "tenant_id": tenant_id, "instance_id": instance_id,
                          "chat_id": chat_id, "url": url, "caption": caption})
        return f"wamid.{len(self.sent)}"

    @property
    def texts(self) -> list[str]:
        return [s["text"] for s in self.sent if s["kind"] == "text"]


class GatedChannel(FakeChannel):
    """Holds text sends containing ``gate`` until ``release`` is set."""

    def __init__(self, gate: str = ""):
        super().__init__()
        self.gate = gate
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def send_text(self, tenant_id: str, instance_id: str, chat_id: str, text: str) -> str:
        if self.gate in text and not self.release.is_set():
            self.entered.set()
            await self.release.wait()
        return await super().send_text(tenant_id, instance_id, chat_id, text)


class FakeWhatsAppClient(WhatsAppClient):
    """Pairs through a QR code, then reports ready with a phone number."""

    def __init__(self, client_id: str, with_qr: bool = True, fail_init: bool = False):
        super().__init__(client_id)
        self.with_qr = with_qr
        self.fail_init = fail_init
        self.sent: list[tuple[str, str]] = []
        self.destroyed = False

    async def initialize(self) -> None:
        if self.fail_init:
            raise ChannelError("browser crashed")
        if self.with_qr:
            await self.emit(ClientEvent.QR, "qr-data")
        await self.emit(ClientEvent.AUTHENTICATED)
        self.status = InstanceStatus.READY
        await self.emit(ClientEvent.READY, {"phone_number": "919800000000"})

    async def destroy(self) -> None:
        self.destroyed = True

    async def send_message(self, chat_id: str, text: str) -> str:
        self.sent.append((chat_id, text))
        return f"fake.{len(self.sent)}"

    async def send_media(self, chat_id: str, media: MediaPayload, caption: str = "") -> str:
        self.sent.append((chat_id, caption))
        return f"fake.{len(self.sent)}"


# ──────────────────────────────────────────────────────────────
#  Builders
# ──────────────────────────────────────────────────────────────

def make_message(body: str = "hello", id: str = "m1", sender: str = CONTACT, **kwargs) -> InboundMessage:
    return InboundMessage(id=id, from_number=sender, body=body, **kwargs)


def trigger(node_id: str, trigger_type: str, text: str = "", **config) -> dict:
    return {"id": node_id, "type": "trigger",
            "data": {"config": {"triggerType": trigger_type, "text": text, **config}}}


def send(node_id: str, message: str) -> dict:
    return {"id": node_id, "type": "action",
            "data": {"config": {"actionType": "send_message", "message": message}}}


def set_var(node_id: str, name: str, value: Any) -> dict:
    return {"id": node_id, "type": "action",
            "data": {"config": {"actionType": "set_variable", "variableName": name, "value": value}}}


def condition(node_id: str, variable: str, operator: str, value: Any) -> dict:
    return {"id": node_id, "type": "condition",
            "data": {"config": {"variable": variable, "operator": operator, "value": value}}}


def response(node_id: str, message: str, response_type: str = "any", **config) -> dict:
    return {"id": node_id, "type": "response",
            "data": {"config": {"message": message, "responseType": response_type, **config}}}


def edge(source: str, target: str, handle: Optional[str] = None) -> dict:
    data = {"id": f"{source}-{target}", "source": source, "target": target}
    if handle is not None:
        data["sourceHandle"] = handle
    return data


def make_flow(nodes: list[dict], edges: list[dict], id: str = "f1", **kwargs) -> Flow:
    return Flow.model_validate({
        "id": id, "tenantId": TENANT, "instanceId": INSTANCE, "name": kwargs.pop("name", id),
        "nodes": nodes, "edges": edges, **kwargs,
    })


