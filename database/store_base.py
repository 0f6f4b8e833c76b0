"""
Abstract Flow Store — Interface for all storage backends.

Implementations:
  - SqlFlowStore      (PostgreSQL / MySQL / SQLite via SQLAlchemy)
  - InMemoryFlowStore (dict-based, single-process, no persistence)

Every mutation is a single-record update keyed by id or by the
(tenant, instance, contact) compound key; no operation spans documents.
The invariants the engine relies on are enforced here:
  - at most one active ConversationSession per (tenant, instance, contact)
  - channel message ids are unique (inbound re-deliveries are rejected)
  - lead unique_query_id values are unique
  - scheduled-message status changes are compare-and-set
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional

from models.schemas import (
    ConversationSession, Flow, Lead, LeadFetchLog, LeadSourceConfig,
    MessageRecord, MessageStatus, WhatsAppInstance,
)


class ActiveSessionExistsError(Exception):
    """A second active session was requested for the same contact."""

    def __init__(self, tenant_id: str, instance_id: str, contact_number: str):
        self.key = (tenant_id, instance_id, contact_number)
        super().__init__(
            f"active session already exists for {tenant_id}/{instance_id}/{contact_number}"
        )


class BaseFlowStore(ABC):
    """Interface that all flow store backends must implement."""

    # ── Flows ─────────────────────────────────────────────────

    @abstractmethod
    async def get_flow(self, flow_id: str) -> Optional[Flow]:
        ...

    @abstractmethod
    async def list_active_flows(self, tenant_id: str, instance_id: str) -> list[Flow]:
        """Active flows of an instance, oldest first."""
        ...

    @abstractmethod
    async def save_flow(self, flow: Flow) -> Flow:
        ...

    @abstractmethod
    async def record_flow_triggered(self, flow_id: str, at: datetime) -> None:
        """Increment trigger_count and stamp last_triggered_at."""
        ...

    # ── Conversation sessions ─────────────────────────────────

    @abstractmethod
    async def get_session(self, session_id: str) -> Optional[ConversationSession]:
        ...

    @abstractmethod
    async def find_active_session(
        self, tenant_id: str, instance_id: str, contact_number: str,
    ) -> Optional[ConversationSession]:
        ...

    @abstractmethod
    async def create_session(self, session: ConversationSession) -> ConversationSession:
        """Insert a new active session. Raises ActiveSessionExistsError."""
        ...

    @abstractmethod
    async def save_session(self, session: ConversationSession) -> None:
        ...

    @abstractmethod
    async def list_waiting_sessions(self, limit: int = 500) -> list[ConversationSession]:
        """Active sessions waiting for a reply, least recently active first."""
        ...

    # ── Messages ──────────────────────────────────────────────

    @abstractmethod
    async def add_message(self, record: MessageRecord) -> bool:
        """Insert a message. Returns False if its message_id is already stored."""
        ...

    @abstractmethod
    async def get_message(self, record_id: str) -> Optional[MessageRecord]:
        ...

    @abstractmethod
    async def list_due_messages(self, now: datetime, limit: int = 100) -> list[MessageRecord]:
        """Scheduled messages with due_at <= now, earliest first."""
        ...

    @abstractmethod
    async def transition_message(
        self, record_id: str, expected: MessageStatus, new: MessageStatus, **fields: Any,
    ) -> bool:
        """
        Compare-and-set the status of a message.

        Applies ``new`` and ``fields`` only when the current status equals
        ``expected``; returns whether the update happened.
        """
        ...

    @abstractmethod
    async def update_message(self, record_id: str, **fields: Any) -> bool:
        ...

    @abstractmethod
    async def list_stale_sending(self, claimed_before: datetime) -> list[MessageRecord]:
        """Messages claimed for sending before ``claimed_before`` and never resolved."""
        ...

    # ── WhatsApp instances ────────────────────────────────────

    @abstractmethod
    async def get_instance(self, instance_id: str) -> Optional[WhatsAppInstance]:
        ...

    @abstractmethod
    async def upsert_instance(self, instance: WhatsAppInstance) -> WhatsAppInstance:
        ...

    @abstractmethod
    async def update_instance(self, instance_id: str, **fields: Any) -> bool:
        ...

    @abstractmethod
    async def increment_messages_sent(self, instance_id: str, count: int = 1) -> None:
        ...

    # ── Lead source configs ───────────────────────────────────

    @abstractmethod
    async def list_lead_configs(self, active_only: bool = True) -> list[LeadSourceConfig]:
        ...

    @abstractmethod
    async def get_lead_config(self, tenant_id: str) -> Optional[LeadSourceConfig]:
        ...

    @abstractmethod
    async def save_lead_config(self, config: LeadSourceConfig) -> LeadSourceConfig:
        ...

    @abstractmethod
    async def update_lead_config(self, tenant_id: str, **fields: Any) -> bool:
        ...

    @abstractmethod
    async def increment_lead_counters(
        self, tenant_id: str, api_calls: int = 0, leads_fetched: int = 0,
    ) -> None:
        """Add to total_api_calls / total_leads_fetched without a read-modify-write."""
        ...

    # ── Leads ─────────────────────────────────────────────────

    @abstractmethod
    async def lead_exists(self, unique_query_id: str) -> bool:
        ...

    @abstractmethod
    async def insert_lead(self, lead: Lead) -> bool:
        """Insert a lead. Returns False if its unique_query_id is already stored."""
        ...

    @abstractmethod
    async def list_leads(self, tenant_id: str, limit: int = 100) -> list[Lead]:
        ...

    # ── Lead fetch logs ───────────────────────────────────────

    @abstractmethod
    async def create_fetch_log(self, log: LeadFetchLog) -> LeadFetchLog:
        ...

    @abstractmethod
    async def update_fetch_log(self, log_id: str, **fields: Any) -> None:
        ...

    @abstractmethod
    async def get_fetch_log(self, log_id: str) -> Optional[LeadFetchLog]:
        ...

    @abstractmethod
    async def list_fetch_logs(self, tenant_id: str, limit: int = 50) -> list[LeadFetchLog]:
        """Most recent first."""
        ...
