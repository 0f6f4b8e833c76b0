"""
InMemoryFlowStore — Dict-backed store for development and testing.

Features:
  - Zero infrastructure (no database)
  - Full interface compatibility with SqlFlowStore
  - Safe under a single event loop: no operation awaits between its
    read and its write, so each call is atomic
  - All data lost on process restart

Stored models are copied on the way in and on the way out, so callers
never hold a reference into the store.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

import structlog
from pydantic import BaseModel

from database.store_base import ActiveSessionExistsError, BaseFlowStore
from models.schemas import (
    ConversationSession, Flow, Lead, LeadFetchLog, LeadSourceConfig,
    MessageRecord, MessageStatus, WhatsAppInstance, utcnow,
)

logger = structlog.get_logger()


def _copy(model):
    return model.model_copy(deep=True) if model is not None else None


def _apply(model: BaseModel, fields: dict[str, Any]) -> None:
    for name, value in fields.items():
        if name not in type(model).model_fields:
            raise KeyError(f"{type(model).__name__} has no field '{name}'")
        setattr(model, name, value)


class InMemoryFlowStore(BaseFlowStore):
    """Full-featured in-memory store with the same interface as SqlFlowStore."""

    def __init__(self):
        self._flows: dict[str, Flow] = {}
        self._sessions: dict[str, ConversationSession] = {}
        self._messages: dict[str, MessageRecord] = {}
        self._instances: dict[str, WhatsAppInstance] = {}
        self._lead_configs: dict[str, LeadSourceConfig] = {}     # tenant_id → config
        self._leads: dict[str, Lead] = {}
        self._fetch_logs: dict[str, LeadFetchLog] = {}

        # Indexes
        self._active_index: dict[tuple[str, str, str], str] = {}  # contact key → session id
        self._message_id_index: dict[str, str] = {}                # channel message id → record id
        self._lead_index: set[str] = set()                         # unique_query_id
        logger.info("inmemory_store_initialized")

    # ── Flows ─────────────────────────────────────────────

    async def get_flow(self, flow_id: str) -> Optional[Flow]:
        return _copy(self._flows.get(flow_id))

    async def list_active_flows(self, tenant_id: str, instance_id: str) -> list[Flow]:
        flows = [
            f for f in self._flows.values()
            if f.tenant_id == tenant_id and f.instance_id == instance_id and f.is_active
        ]
        flows.sort(key=lambda f: f.created_at)
        return [_copy(f) for f in flows]

    async def save_flow(self, flow: Flow) -> Flow:
        flow.updated_at = utcnow()
        self._flows[flow.id] = _copy(flow)
        return flow

    async def record_flow_triggered(self, flow_id: str, at: datetime) -> None:
        flow = self._flows.get(flow_id)
        if flow:
            flow.trigger_count += 1
            flow.last_triggered_at = at

    # ── Sessions ──────────────────────────────────────────

    async def get_session(self, session_id: str) -> Optional[ConversationSession]:
        return _copy(self._sessions.get(session_id))

    async def find_active_session(
        self, tenant_id: str, instance_id: str, contact_number: str,
    ) -> Optional[ConversationSession]:
        sid = self._active_index.get((tenant_id, instance_id, contact_number))
        return _copy(self._sessions.get(sid)) if sid else None

    async def create_session(self, session: ConversationSession) -> ConversationSession:
        key = session.contact_key
        if session.is_active:
            if key in self._active_index:
                raise ActiveSessionExistsError(*key)
            self._active_index[key] = session.id
        self._sessions[session.id] = _copy(session)
        return session

    async def save_session(self, session: ConversationSession) -> None:
        key = session.contact_key
        owner = self._active_index.get(key)
        if session.is_active:
            if owner is not None and owner != session.id:
                raise ActiveSessionExistsError(*key)
            self._active_index[key] = session.id
        elif owner == session.id:
            del self._active_index[key]
        self._sessions[session.id] = _copy(session)

    async def list_waiting_sessions(self, limit: int = 500) -> list[ConversationSession]:
        waiting = [
            s for s in self._sessions.values()
            if s.is_active and s.is_waiting_for_response
        ]
        waiting.sort(key=lambda s: s.last_activity_at)
        return [_copy(s) for s in waiting[:limit]]

    # ── Messages ──────────────────────────────────────────

    async def add_message(self, record: MessageRecord) -> bool:
        if record.message_id and record.message_id in self._message_id_index:
            return False
        self._messages[record.id] = _copy(record)
        if record.message_id:
            self._message_id_index[record.message_id] = record.id
        return True

    async def get_message(self, record_id: str) -> Optional[MessageRecord]:
        return _copy(self._messages.get(record_id))

    async def list_due_messages(self, now: datetime, limit: int = 100) -> list[MessageRecord]:
        due = [
            m for m in self._messages.values()
            if m.status == MessageStatus.SCHEDULED and m.due_at is not None and m.due_at <= now
        ]
        due.sort(key=lambda m: m.due_at)
        return [_copy(m) for m in due[:limit]]

    async def transition_message(
        self, record_id: str, expected: MessageStatus, new: MessageStatus, **fields: Any,
    ) -> bool:
        record = self._messages.get(record_id)
        if record is None or record.status != expected:
            return False
        return await self.update_message(record_id, status=new, **fields)

    async def update_message(self, record_id: str, **fields: Any) -> bool:
        record = self._messages.get(record_id)
        if record is None:
            return False
        new_mid = fields.get("message_id")
        if new_mid and self._message_id_index.get(new_mid, record_id) != record_id:
            logger.warning("message_id_conflict", record_id=record_id, message_id=new_mid)
            return False
        _apply(record, fields)
        if new_mid:
            self._message_id_index[new_mid] = record_id
        return True

    async def list_stale_sending(self, claimed_before: datetime) -> list[MessageRecord]:
        return [
            _copy(m) for m in self._messages.values()
            if m.status == MessageStatus.SENDING
            and m.claimed_at is not None and m.claimed_at < claimed_before
        ]

    # ── Instances ─────────────────────────────────────────

    async def get_instance(self, instance_id: str) -> Optional[WhatsAppInstance]:
        return _copy(self._instances.get(instance_id))

    async def upsert_instance(self, instance: WhatsAppInstance) -> WhatsAppInstance:
        self._instances[instance.instance_id] = _copy(instance)
        return instance

    async def update_instance(self, instance_id: str, **fields: Any) -> bool:
        instance = self._instances.get(instance_id)
        if instance is None:
            return False
        _apply(instance, fields)
        return True

    async def increment_messages_sent(self, instance_id: str, count: int = 1) -> None:
        instance = self._instances.get(instance_id)
        if instance:
            instance.messages_sent += count

    # ── Lead configs ──────────────────────────────────────

    async def list_lead_configs(self, active_only: bool = True) -> list[LeadSourceConfig]:
        return [
            _copy(c) for c in self._lead_configs.values()
            if c.is_active or not active_only
        ]

    async def get_lead_config(self, tenant_id: str) -> Optional[LeadSourceConfig]:
        return _copy(self._lead_configs.get(tenant_id))

    async def save_lead_config(self, config: LeadSourceConfig) -> LeadSourceConfig:
        existing = self._lead_configs.get(config.tenant_id)
        if existing is not None:
            config.id = existing.id
        self._lead_configs[config.tenant_id] = _copy(config)
        return config

    async def update_lead_config(self, tenant_id: str, **fields: Any) -> bool:
        config = self._lead_configs.get(tenant_id)
        if config is None:
            return False
        _apply(config, fields)
        return True

    async def increment_lead_counters(
        self, tenant_id: str, api_calls: int = 0, leads_fetched: int = 0,
    ) -> None:
        config = self._lead_configs.get(tenant_id)
        if config:
            config.total_api_calls += api_calls
            config.total_leads_fetched += leads_fetched

    # ── Leads ─────────────────────────────────────────────

    async def lead_exists(self, unique_query_id: str) -> bool:
        return unique_query_id in self._lead_index

    async def insert_lead(self, lead: Lead) -> bool:
        if lead.unique_query_id in self._lead_index:
            return False
        self._lead_index.add(lead.unique_query_id)
        self._leads[lead.id] = _copy(lead)
        return True

    async def list_leads(self, tenant_id: str, limit: int = 100) -> list[Lead]:
        leads = [l for l in self._leads.values() if l.tenant_id == tenant_id]
        leads.sort(key=lambda l: l.fetched_at, reverse=True)
        return [_copy(l) for l in leads[:limit]]

    # ── Fetch logs ────────────────────────────────────────

    async def create_fetch_log(self, log: LeadFetchLog) -> LeadFetchLog:
        self._fetch_logs[log.id] = _copy(log)
        return log

    async def update_fetch_log(self, log_id: str, **fields: Any) -> None:
        log = self._fetch_logs.get(log_id)
        if log is not None:
            _apply(log, fields)

    async def get_fetch_log(self, log_id: str) -> Optional[LeadFetchLog]:
        return _copy(self._fetch_logs.get(log_id))

    async def list_fetch_logs(self, tenant_id: str, limit: int = 50) -> list[LeadFetchLog]:
        logs = [l for l in self._fetch_logs.values() if l.tenant_id == tenant_id]
        logs.sort(key=lambda l: l.start_time, reverse=True)
        return [_copy(l) for l in logs[:limit]]
