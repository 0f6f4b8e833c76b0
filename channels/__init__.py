"""WhatsApp channel: client contract, Cloud API client and session manager."""
from channels.base import (
    ChannelError,
    ChannelUnavailableError,
    CircuitBreaker,
    CircuitOpenError,
    ClientEvent,
    MediaFetchError,
    MediaPayload,
    MessageDeduplicator,
    OutboundChannel,
    WhatsAppClient,
    fetch_media,
)
from channels.manager import WhatsAppSessionManager
from channels.whatsapp_cloud import CloudApiClient, parse_webhook

__all__ = [
    "ChannelError", "ChannelUnavailableError", "CircuitBreaker", "CircuitOpenError", "ClientEvent",
    "MediaFetchError", "MediaPayload", "MessageDeduplicator", "OutboundChannel",
    "WhatsAppClient", "fetch_media",
    "WhatsAppSessionManager", "CloudApiClient", "parse_webhook",
]
