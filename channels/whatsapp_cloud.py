"""
WhatsApp Business Cloud API client.

Provides:
- Credential check on initialize (GET /{phone_number_id}) → authenticated, ready
- Outbound text and media (media is uploaded to /{phone_number_id}/media and
  sent by id)
- Webhook verification (hub.verify_token challenge)
- Inbound parsing: text, interactive (button_reply, list_reply), image,
  document, audio, video, sticker, location → InboundMessage → "message" event
- Status-only webhooks (sent/delivered/read) are ignored
"""
from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any, Optional

import httpx
import structlog
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from channels.base import (
    ChannelError, CircuitBreaker, ClientEvent, MediaPayload,
    WhatsAppClient,
)
from models.schemas import InboundMessage, InstanceStatus

logger = structlog.get_logger()

DEFAULT_BASE_URL = "https://graph.facebook.com/v18.0"

_MEDIA_TYPES = ("image", "document", "audio", "video", "sticker")
_CAPTIONED = ("image", "document", "video")


def _to_number(chat_id: str) -> str:
    return re.sub(r"\D", "", chat_id.split("@", 1)[0])


class CloudApiClient(WhatsAppClient):
    """
    A WhatsApp number connected through the Business Cloud API.

    Pairing happens in Meta's console, so this client never emits "qr";
    it goes straight from initializing to authenticated and ready.
    """

    def __init__(
        self,
        client_id: str,
        access_token: str,
        phone_number_id: str,
        base_url: str = DEFAULT_BASE_URL,
        verify_token: str = "",
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 15.0,
    ):
        super().__init__(client_id)
        self.access_token = access_token
        self.phone_number_id = phone_number_id
        self.base_url = base_url.rstrip("/")
        self.verify_token = verify_token
        self.timeout = timeout
        self.phone_number = ""
        self._http = http_client
        self._breaker = CircuitBreaker(client_id)

    async def _get_http(self) -> httpx.AsyncClient:
        if self._http is None or self._http.is_closed:
            self._http = httpx.AsyncClient(
                base_url=self.base_url,
                headers={"Authorization": f"Bearer {self.access_token}"},
                timeout=self.timeout,
            )
        return self._http

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        reraise=True,
    )
    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        client = await self._get_http()
        return await client.request(method, path, **kwargs)

    @staticmethod
    def _error_text(response: httpx.Response) -> str:
        try:
            return (response.json().get("error") or {}).get("message", response.text)
        except ValueError:
            return response.text

    # ── Lifecycle ─────────────────────────────────────────────

    async def initialize(self) -> None:
        self.status = InstanceStatus.INITIALIZING
        if not self.access_token or not self.phone_number_id:
            await self._auth_failed("missing access token or phone number id")

        try:
            response = await self._request(
                "GET", f"/{self.phone_number_id}",
                params={"fields": "display_phone_number,verified_name"},
            )
        except httpx.HTTPError as e:
            self.status = InstanceStatus.DISCONNECTED
            raise ChannelError(f"Cloud API unreachable: {e}", retryable=True) from e

        if response.status_code in (401, 403):
            await self._auth_failed(self._error_text(response))
        if response.status_code >= 400:
            self.status = InstanceStatus.DISCONNECTED
            raise ChannelError(
                f"Cloud API returned {response.status_code}: {self._error_text(response)}",
                retryable=response.status_code >= 500,
            )

        info = response.json()
        self.phone_number = _to_number(info.get("display_phone_number", ""))
        self.status = InstanceStatus.AUTHENTICATED
        await self.emit(ClientEvent.AUTHENTICATED)
        self.status = InstanceStatus.READY
        await self.emit(ClientEvent.READY, {
            "phone_number": self.phone_number,
            "name": info.get("verified_name", ""),
        })
        logger.info("cloud_client_ready", client_id=self.client_id, phone=self.phone_number)

    async def _auth_failed(self, reason: str) -> None:
        self.status = InstanceStatus.AUTH_FAILED
        await self.emit(ClientEvent.AUTH_FAILURE, reason)
        raise ChannelError(f"Authentication failed: {reason}")

    async def destroy(self) -> None:
        if self._http is not None and not self._http.is_closed:
            await self._http.aclose()
        self.status = InstanceStatus.DISCONNECTED
        logger.info("cloud_client_destroyed", client_id=self.client_id)

    # ── Send ──────────────────────────────────────────────────

    async def send_message(self, chat_id: str, text: str) -> str:
        return await self._send({
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": _to_number(chat_id),
            "type": "text",
            "text": {"body": text[:4096]},
        })

    async def send_media(self, chat_id: str, media: MediaPayload, caption: str = "") -> str:
        media_id = await self._upload(media)
        kind = media.kind
        body: dict[str, Any] = {"id": media_id}
        if caption and kind in _CAPTIONED:
            body["caption"] = caption[:1024]
        if kind == "document":
            body["filename"] = media.filename
        return await self._send({
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": _to_number(chat_id),
            "type": kind,
            kind: body,
        })

    async def _upload(self, media: MediaPayload) -> str:
        try:
            response = await self._request(
                "POST", f"/{self.phone_number_id}/media",
                data={"messaging_product": "whatsapp", "type": media.mimetype},
                files={"file": (media.filename, media.raw, media.mimetype)},
            )
        except httpx.HTTPError as e:
            raise ChannelError(f"Media upload failed: {e}", retryable=True) from e
        if response.status_code >= 400:
            raise ChannelError(f"Media upload failed: {self._error_text(response)}")
        return response.json()["id"]

    async def _send(self, payload: dict[str, Any]) -> str:
        self._breaker.check()
        try:
            response = await self._request("POST", f"/{self.phone_number_id}/messages", json=payload)
        except httpx.HTTPError as e:
            self._breaker.record_failure()
            raise ChannelError(f"Send failed: {e}", retryable=True) from e

        if response.status_code >= 400:
            transient = response.status_code >= 500 or response.status_code == 429
            if transient:
                self._breaker.record_failure()
            error = self._error_text(response)
            logger.error("cloud_send_failed", client_id=self.client_id,
                         to=payload.get("to"), status=response.status_code, error=error)
            raise ChannelError(f"Send failed ({response.status_code}): {error}",
                               retryable=transient)

        self._breaker.record_success()
        message_id = (response.json().get("messages") or [{}])[0].get("id", "")
        logger.info("cloud_message_sent", client_id=self.client_id,
                    to=payload.get("to"), type=payload.get("type"), message_id=message_id)
        return message_id

    # ── Webhooks ──────────────────────────────────────────────

    def verify_webhook(self, params: dict[str, Any]) -> Optional[str]:
        """Return the challenge string on success, None on failure."""
        mode = params.get("hub.mode", "")
        token = params.get("hub.verify_token", "")
        if mode == "subscribe" and self.verify_token and token == self.verify_token:
            return params.get("hub.challenge", "")
        return None

    async def handle_webhook(self, payload: dict[str, Any]) -> list[InboundMessage]:
        """Parse a webhook delivery and emit one "message" event per message."""
        messages = parse_webhook(payload)
        for message in messages:
            await self.emit(ClientEvent.MESSAGE, message)
        return messages


def parse_webhook(payload: dict[str, Any]) -> list[InboundMessage]:
    """Convert a Cloud API webhook payload into InboundMessages."""
    parsed: list[InboundMessage] = []
    for entry in payload.get("entry") or []:
        for change in entry.get("changes") or []:
            value = change.get("value") or {}
            names = {
                c.get("wa_id", ""): (c.get("profile") or {}).get("name", "")
                for c in value.get("contacts") or []
            }
            own_number = (value.get("metadata") or {}).get("display_phone_number", "")
            for msg in value.get("messages") or []:
                message = _parse_message(msg, names, own_number)
                if message is not None:
                    parsed.append(message)
    return parsed


def _parse_message(
    msg: dict[str, Any], names: dict[str, str], own_number: str,
) -> Optional[InboundMessage]:
    sender = msg.get("from", "")
    msg_id = msg.get("id", "")
    if not sender or not msg_id:
        return None

    msg_type = msg.get("type", "text")
    body = ""
    mime_type = ""

    if msg_type == "text":
        body = (msg.get("text") or {}).get("body", "")

    elif msg_type == "interactive":
        interactive = msg.get("interactive") or {}
        reply = interactive.get(interactive.get("type", ""), {}) or {}
        # Reply ids are what flows match choice values against
        body = reply.get("id") or reply.get("title", "")

    elif msg_type == "button":
        body = (msg.get("button") or {}).get("text", "")

    elif msg_type in _MEDIA_TYPES:
        media = msg.get(msg_type) or {}
        body = media.get("caption", "")
        mime_type = media.get("mime_type", "")

    elif msg_type == "location":
        loc = msg.get("location") or {}
        body = f"Location: {loc.get('latitude', 0)}, {loc.get('longitude', 0)}"

    timestamp = datetime.now(timezone.utc)
    if msg.get("timestamp"):
        try:
            timestamp = datetime.fromtimestamp(int(msg["timestamp"]), tz=timezone.utc)
        except (TypeError, ValueError):
            pass

    return InboundMessage(
        id=msg_id,
        from_number=sender,
        to=own_number,
        body=body,
        type=msg_type,
        has_media=msg_type in _MEDIA_TYPES,
        mime_type=mime_type,
        push_name=names.get(sender, ""),
        timestamp=timestamp,
    )
