"""
SQLAlchemy ORM models — Cross-database compatible.

Supports: PostgreSQL, MySQL 8+, SQLite.

Key design decisions:
  - JSON type for nested documents (flow graph, session variables,
    message content); on PG the dialect maps JSON to jsonb, on MySQL it
    uses native JSON, on SQLite it serializes to TEXT.
  - Column attribute names match the pydantic field names in
    models.schemas, so rows convert to models without a mapping table.
  - Uniqueness lives in plain unique constraints that every backend
    supports:
      sessions.active_key      "{tenant}:{instance}:{contact}" while the
                               session is active, NULL afterwards
      messages.message_id      channel message id, NULL until known
      leads.unique_query_id
      lead_configs.tenant_id
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import JSON, Boolean, DateTime, Index, Integer, String, Text
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from models.schemas import new_id, utcnow


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models."""
    pass


# ──────────────────────────────────────────────────────────────
#  Flows
# ──────────────────────────────────────────────────────────────

class FlowRow(Base):
    __tablename__ = "flows"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    instance_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    nodes: Mapped[Any] = mapped_column(JSON, default=list)
    edges: Mapped[Any] = mapped_column(JSON, default=list)

    trigger_count: Mapped[int] = mapped_column(Integer, default=0)
    last_triggered_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_flows_tenant_instance_active", "tenant_id", "instance_id", "is_active"),
    )


# ──────────────────────────────────────────────────────────────
#  Conversation sessions
# ──────────────────────────────────────────────────────────────

class SessionRow(Base):
    __tablename__ = "conversation_sessions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    flow_id: Mapped[str] = mapped_column(String(64), nullable=False)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    instance_id: Mapped[str] = mapped_column(String(64), nullable=False)
    contact_number: Mapped[str] = mapped_column(String(32), nullable=False)
    contact_name: Mapped[str] = mapped_column(String(256), default="")

    active_key: Mapped[Optional[str]] = mapped_column(String(200), unique=True, nullable=True)

    current_node_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    is_waiting_for_response: Mapped[bool] = mapped_column(Boolean, default=False)
    variables: Mapped[Any] = mapped_column(JSON, default=dict)
    expected_response: Mapped[Any] = mapped_column(JSON, default=dict)
    status: Mapped[str] = mapped_column(String(32), default="active")

    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    last_activity_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    message_count: Mapped[int] = mapped_column(Integer, default=0)
    response_count: Mapped[int] = mapped_column(Integer, default=0)
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("ix_sessions_contact", "tenant_id", "instance_id", "contact_number"),
        Index("ix_sessions_waiting", "is_active", "is_waiting_for_response", "last_activity_at"),
    )


# ──────────────────────────────────────────────────────────────
#  Messages
# ──────────────────────────────────────────────────────────────

class MessageRow(Base):
    __tablename__ = "messages"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    message_id: Mapped[Optional[str]] = mapped_column(String(256), unique=True, nullable=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    instance_id: Mapped[str] = mapped_column(String(64), nullable=False)
    direction: Mapped[str] = mapped_column(String(16), nullable=False)
    from_number: Mapped[str] = mapped_column(String(64), default="")
    to: Mapped[str] = mapped_column(String(64), default="")
    type: Mapped[str] = mapped_column(String(32), default="text")
    content: Mapped[Any] = mapped_column(JSON, default=dict)
    is_group: Mapped[bool] = mapped_column(Boolean, default=False)
    group_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    contact_name: Mapped[str] = mapped_column(String(256), default="")

    status: Mapped[str] = mapped_column(String(32), default="sent")
    due_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    claimed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        Index("ix_messages_status_due", "status", "due_at"),
        Index("ix_messages_tenant_ts", "tenant_id", "timestamp"),
    )


# ──────────────────────────────────────────────────────────────
#  WhatsApp instances
# ──────────────────────────────────────────────────────────────

class InstanceRow(Base):
    __tablename__ = "whatsapp_instances"

    instance_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(256), default="")
    phone_number: Mapped[str] = mapped_column(String(32), default="")
    status: Mapped[str] = mapped_column(String(32), default="created")
    is_active: Mapped[bool] = mapped_column(Boolean, default=False)
    connected_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    disconnected_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    messages_sent: Mapped[int] = mapped_column(Integer, default=0)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


# ──────────────────────────────────────────────────────────────
#  IndiaMART leads
# ──────────────────────────────────────────────────────────────

class LeadConfigRow(Base):
    __tablename__ = "lead_configs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    tenant_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    crm_key: Mapped[str] = mapped_column(String(256), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    fetch_interval_minutes: Mapped[int] = mapped_column(Integer, default=15)
    overlap_minutes: Mapped[int] = mapped_column(Integer, default=5)
    last_fetch_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    next_fetch_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    total_leads_fetched: Mapped[int] = mapped_column(Integer, default=0)
    total_api_calls: Mapped[int] = mapped_column(Integer, default=0)
    last_api_call_status: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    last_api_call_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    auto_fetch: Mapped[bool] = mapped_column(Boolean, default=True)
    retry_failed_calls: Mapped[bool] = mapped_column(Boolean, default=True)
    max_retries: Mapped[int] = mapped_column(Integer, default=3)


class LeadRow(Base):
    __tablename__ = "leads"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    unique_query_id: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    query_type: Mapped[str] = mapped_column(String(16), default="")
    query_time: Mapped[str] = mapped_column(String(32), default="")
    query_message: Mapped[str] = mapped_column(Text, default="")
    sender_name: Mapped[str] = mapped_column(String(256), default="")
    sender_mobile: Mapped[str] = mapped_column(String(32), default="")
    sender_email: Mapped[str] = mapped_column(String(256), default="")
    sender_company: Mapped[str] = mapped_column(String(256), default="")
    sender_address: Mapped[str] = mapped_column(Text, default="")
    sender_city: Mapped[str] = mapped_column(String(128), default="")
    sender_state: Mapped[str] = mapped_column(String(128), default="")
    sender_pincode: Mapped[str] = mapped_column(String(16), default="")
    sender_country_iso: Mapped[str] = mapped_column(String(8), default="")
    sender_mobile_alt: Mapped[str] = mapped_column(String(32), default="")
    sender_email_alt: Mapped[str] = mapped_column(String(256), default="")
    subject: Mapped[str] = mapped_column(Text, default="")
    product_name: Mapped[str] = mapped_column(String(256), default="")
    call_duration: Mapped[str] = mapped_column(String(16), default="")
    receiver_mobile: Mapped[str] = mapped_column(String(32), default="")
    status: Mapped[str] = mapped_column(String(32), default="new")
    raw: Mapped[Any] = mapped_column(JSON, default=dict)
    fetched_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        Index("ix_leads_tenant_fetched", "tenant_id", "fetched_at"),
    )


class FetchLogRow(Base):
    __tablename__ = "lead_fetch_logs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    action: Mapped[str] = mapped_column(String(32), default="scheduled_sync")
    status: Mapped[str] = mapped_column(String(16), default="pending")
    start_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    end_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    duration_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    records_pulled: Mapped[int] = mapped_column(Integer, default=0)
    records_processed: Mapped[int] = mapped_column(Integer, default=0)
    records_skipped: Mapped[int] = mapped_column(Integer, default=0)
    records_errors: Mapped[int] = mapped_column(Integer, default=0)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_code: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    parent_log_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    metadata_: Mapped[Any] = mapped_column("metadata", JSON, default=dict)
    api_response: Mapped[Any] = mapped_column(JSON, nullable=True)

    __table_args__ = (
        Index("ix_fetch_logs_tenant_start", "tenant_id", "start_time"),
    )
