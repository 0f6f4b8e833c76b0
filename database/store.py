"""
SqlFlowStore — Portable SQL queries for PostgreSQL, MySQL, SQLite.

Uniqueness (one active session per contact, unique channel message ids,
unique lead ids) is enforced by unique constraints; an IntegrityError on
insert is translated into the store-level result. Scheduled-message
claims are a conditional UPDATE whose rowcount decides the winner.
"""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

import structlog
from pydantic import BaseModel
from pydantic_core import to_jsonable_python
from sqlalchemy import and_, select, update
from sqlalchemy.exc import IntegrityError

from database.models import (
    FetchLogRow, FlowRow, InstanceRow, LeadConfigRow, LeadRow, MessageRow, SessionRow,
)
from database.session import db_session
from database.store_base import ActiveSessionExistsError, BaseFlowStore
from models.schemas import (
    ConversationSession, Flow, Lead, LeadFetchLog, LeadSourceConfig,
    MessageRecord, MessageStatus, WhatsAppInstance, utcnow,
)

logger = structlog.get_logger()


# ── Row ↔ model conversion ────────────────────────────────────

def _db_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if value is None or isinstance(value, (str, int, float, bool, datetime)):
        return value
    # Nested documents go into JSON columns
    return to_jsonable_python(value, by_alias=False)


def _attr_name(row_cls, name: str) -> str:
    attrs = row_cls.__mapper__.column_attrs
    if name in attrs:
        return name
    if f"{name}_" in attrs:
        return f"{name}_"
    raise KeyError(f"{row_cls.__name__} has no column '{name}'")


def _column_values(row_cls, fields: dict[str, Any]) -> dict[str, Any]:
    return {_attr_name(row_cls, k): _db_value(v) for k, v in fields.items()}


def _model_columns(model: BaseModel, row_cls) -> dict[str, Any]:
    model_fields = type(model).model_fields
    values = {}
    for attr in row_cls.__mapper__.column_attrs:
        name = attr.key.rstrip("_")
        if name in model_fields:
            values[attr.key] = _db_value(getattr(model, name))
    return values


def _row_values(row) -> dict[str, Any]:
    values = {}
    for attr in row.__mapper__.column_attrs:
        value = getattr(row, attr.key)
        # SQLite hands datetimes back naive; everything is stored as UTC
        if isinstance(value, datetime) and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        values[attr.key.rstrip("_")] = value
    return values


def _active_key(session: ConversationSession) -> Optional[str]:
    if not session.is_active:
        return None
    return ":".join(session.contact_key)


class SqlFlowStore(BaseFlowStore):
    """
    Persistent flow store backed by any SQLAlchemy-supported database.
    Works with PostgreSQL, MySQL 8+, and SQLite.
    """

    # ── Flows ──────────────────────────────────────────────

    async def get_flow(self, flow_id: str) -> Optional[Flow]:
        async with db_session() as db:
            row = await db.get(FlowRow, flow_id)
            return self._row_to_flow(row) if row else None

    async def list_active_flows(self, tenant_id: str, instance_id: str) -> list[Flow]:
        async with db_session() as db:
            stmt = (
                select(FlowRow)
                .where(and_(
                    FlowRow.tenant_id == tenant_id,
                    FlowRow.instance_id == instance_id,
                    FlowRow.is_active.is_(True),
                ))
                .order_by(FlowRow.created_at)
            )
            result = await db.execute(stmt)
            return [self._row_to_flow(r) for r in result.scalars().all()]

    async def save_flow(self, flow: Flow) -> Flow:
        flow.updated_at = utcnow()
        await self._upsert(FlowRow, flow.id, _model_columns(flow, FlowRow))
        return flow

    async def record_flow_triggered(self, flow_id: str, at: datetime) -> None:
        async with db_session() as db:
            await db.execute(
                update(FlowRow)
                .where(FlowRow.id == flow_id)
                .values(trigger_count=FlowRow.trigger_count + 1, last_triggered_at=at)
            )

    # ── Sessions ───────────────────────────────────────────

    async def get_session(self, session_id: str) -> Optional[ConversationSession]:
        async with db_session() as db:
            row = await db.get(SessionRow, session_id)
            return self._row_to_session(row) if row else None

    async def find_active_session(
        self, tenant_id: str, instance_id: str, contact_number: str,
    ) -> Optional[ConversationSession]:
        key = ":".join((tenant_id, instance_id, contact_number))
        async with db_session() as db:
            result = await db.execute(select(SessionRow).where(SessionRow.active_key == key))
            row = result.scalar_one_or_none()
            return self._row_to_session(row) if row else None

    async def create_session(self, session: ConversationSession) -> ConversationSession:
        try:
            async with db_session() as db:
                db.add(SessionRow(**self._session_columns(session)))
                await db.flush()
        except IntegrityError as e:
            raise ActiveSessionExistsError(*session.contact_key) from e
        return session

    async def save_session(self, session: ConversationSession) -> None:
        try:
            await self._upsert(SessionRow, session.id, self._session_columns(session))
        except IntegrityError as e:
            raise ActiveSessionExistsError(*session.contact_key) from e

    async def list_waiting_sessions(self, limit: int = 500) -> list[ConversationSession]:
        async with db_session() as db:
            stmt = (
                select(SessionRow)
                .where(and_(
                    SessionRow.is_active.is_(True),
                    SessionRow.is_waiting_for_response.is_(True),
                ))
                .order_by(SessionRow.last_activity_at)
                .limit(limit)
            )
            result = await db.execute(stmt)
            return [self._row_to_session(r) for r in result.scalars().all()]

    # ── Messages ───────────────────────────────────────────

    async def add_message(self, record: MessageRecord) -> bool:
        try:
            async with db_session() as db:
                db.add(MessageRow(**_model_columns(record, MessageRow)))
                await db.flush()
        except IntegrityError:
            return False
        return True

    async def get_message(self, record_id: str) -> Optional[MessageRecord]:
        async with db_session() as db:
            row = await db.get(MessageRow, record_id)
            return self._row_to_message(row) if row else None

    async def list_due_messages(self, now: datetime, limit: int = 100) -> list[MessageRecord]:
        async with db_session() as db:
            stmt = (
                select(MessageRow)
                .where(and_(
                    MessageRow.status == MessageStatus.SCHEDULED.value,
                    MessageRow.due_at <= now,
                ))
                .order_by(MessageRow.due_at)
                .limit(limit)
            )
            result = await db.execute(stmt)
            return [self._row_to_message(r) for r in result.scalars().all()]

    async def transition_message(
        self, record_id: str, expected: MessageStatus, new: MessageStatus, **fields: Any,
    ) -> bool:
        values = _column_values(MessageRow, {**fields, "status": new})
        try:
            async with db_session() as db:
                result = await db.execute(
                    update(MessageRow)
                    .where(and_(MessageRow.id == record_id, MessageRow.status == expected.value))
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                updated = result.rowcount == 1
        except IntegrityError:
            logger.warning("message_id_conflict", record_id=record_id,
                           message_id=fields.get("message_id"))
            return False
        return updated

    async def update_message(self, record_id: str, **fields: Any) -> bool:
        values = _column_values(MessageRow, fields)
        try:
            async with db_session() as db:
                result = await db.execute(
                    update(MessageRow)
                    .where(MessageRow.id == record_id)
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                updated = result.rowcount > 0
        except IntegrityError:
            logger.warning("message_id_conflict", record_id=record_id,
                           message_id=fields.get("message_id"))
            return False
        return updated

    async def list_stale_sending(self, claimed_before: datetime) -> list[MessageRecord]:
        async with db_session() as db:
            stmt = select(MessageRow).where(and_(
                MessageRow.status == MessageStatus.SENDING.value,
                MessageRow.claimed_at < claimed_before,
            ))
            result = await db.execute(stmt)
            return [self._row_to_message(r) for r in result.scalars().all()]

    # ── Instances ──────────────────────────────────────────

    async def get_instance(self, instance_id: str) -> Optional[WhatsAppInstance]:
        async with db_session() as db:
            row = await db.get(InstanceRow, instance_id)
            return WhatsAppInstance.model_validate(_row_values(row)) if row else None

    async def upsert_instance(self, instance: WhatsAppInstance) -> WhatsAppInstance:
        await self._upsert(InstanceRow, instance.instance_id, _model_columns(instance, InstanceRow))
        return instance

    async def update_instance(self, instance_id: str, **fields: Any) -> bool:
        return await self._update_where(InstanceRow, InstanceRow.instance_id == instance_id, fields)

    async def increment_messages_sent(self, instance_id: str, count: int = 1) -> None:
        async with db_session() as db:
            await db.execute(
                update(InstanceRow)
                .where(InstanceRow.instance_id == instance_id)
                .values(messages_sent=InstanceRow.messages_sent + count)
            )

    # ── Lead configs ───────────────────────────────────────

    async def list_lead_configs(self, active_only: bool = True) -> list[LeadSourceConfig]:
        async with db_session() as db:
            stmt = select(LeadConfigRow)
            if active_only:
                stmt = stmt.where(LeadConfigRow.is_active.is_(True))
            result = await db.execute(stmt)
            return [LeadSourceConfig.model_validate(_row_values(r)) for r in result.scalars().all()]

    async def get_lead_config(self, tenant_id: str) -> Optional[LeadSourceConfig]:
        async with db_session() as db:
            result = await db.execute(
                select(LeadConfigRow).where(LeadConfigRow.tenant_id == tenant_id)
            )
            row = result.scalar_one_or_none()
            return LeadSourceConfig.model_validate(_row_values(row)) if row else None

    async def save_lead_config(self, config: LeadSourceConfig) -> LeadSourceConfig:
        async with db_session() as db:
            result = await db.execute(
                select(LeadConfigRow).where(LeadConfigRow.tenant_id == config.tenant_id)
            )
            row = result.scalar_one_or_none()
            if row:
                config.id = row.id
                for k, v in _model_columns(config, LeadConfigRow).items():
                    setattr(row, k, v)
            else:
                db.add(LeadConfigRow(**_model_columns(config, LeadConfigRow)))
        return config

    async def update_lead_config(self, tenant_id: str, **fields: Any) -> bool:
        return await self._update_where(LeadConfigRow, LeadConfigRow.tenant_id == tenant_id, fields)

    async def increment_lead_counters(
        self, tenant_id: str, api_calls: int = 0, leads_fetched: int = 0,
    ) -> None:
        async with db_session() as db:
            await db.execute(
                update(LeadConfigRow)
                .where(LeadConfigRow.tenant_id == tenant_id)
                .values(
                    total_api_calls=LeadConfigRow.total_api_calls + api_calls,
                    total_leads_fetched=LeadConfigRow.total_leads_fetched + leads_fetched,
                )
            )

    # ── Leads ──────────────────────────────────────────────

    async def lead_exists(self, unique_query_id: str) -> bool:
        async with db_session() as db:
            result = await db.execute(
                select(LeadRow.id).where(LeadRow.unique_query_id == unique_query_id)
            )
            return result.first() is not None

    async def insert_lead(self, lead: Lead) -> bool:
        try:
            async with db_session() as db:
                db.add(LeadRow(**_model_columns(lead, LeadRow)))
                await db.flush()
        except IntegrityError:
            return False
        return True

    async def list_leads(self, tenant_id: str, limit: int = 100) -> list[Lead]:
        async with db_session() as db:
            stmt = (
                select(LeadRow)
                .where(LeadRow.tenant_id == tenant_id)
                .order_by(LeadRow.fetched_at.desc())
                .limit(limit)
            )
            result = await db.execute(stmt)
            return [Lead.model_validate(_row_values(r)) for r in result.scalars().all()]

    # ── Fetch logs ─────────────────────────────────────────

    async def create_fetch_log(self, log: LeadFetchLog) -> LeadFetchLog:
        async with db_session() as db:
            db.add(FetchLogRow(**_model_columns(log, FetchLogRow)))
        return log

    async def update_fetch_log(self, log_id: str, **fields: Any) -> None:
        await self._update_where(FetchLogRow, FetchLogRow.id == log_id, fields)

    async def get_fetch_log(self, log_id: str) -> Optional[LeadFetchLog]:
        async with db_session() as db:
            row = await db.get(FetchLogRow, log_id)
            return LeadFetchLog.model_validate(_row_values(row)) if row else None

    async def list_fetch_logs(self, tenant_id: str, limit: int = 50) -> list[LeadFetchLog]:
        async with db_session() as db:
            stmt = (
                select(FetchLogRow)
                .where(FetchLogRow.tenant_id == tenant_id)
                .order_by(FetchLogRow.start_time.desc())
                .limit(limit)
            )
            result = await db.execute(stmt)
            return [LeadFetchLog.model_validate(_row_values(r)) for r in result.scalars().all()]

    # ── Helpers ────────────────────────────────────────────

    async def _upsert(self, row_cls, pk: str, values: dict[str, Any]) -> None:
        async with db_session() as db:
            row = await db.get(row_cls, pk)
            if row:
                for k, v in values.items():
                    setattr(row, k, v)
            else:
                db.add(row_cls(**values))
            await db.flush()

    async def _update_where(self, row_cls, condition, fields: dict[str, Any]) -> bool:
        if not fields:
            return False
        async with db_session() as db:
            result = await db.execute(
                update(row_cls)
                .where(condition)
                .values(**_column_values(row_cls, fields))
                .execution_options(synchronize_session=False)
            )
            return result.rowcount > 0

    @staticmethod
    def _session_columns(session: ConversationSession) -> dict[str, Any]:
        values = _model_columns(session, SessionRow)
        values["active_key"] = _active_key(session)
        return values

    @staticmethod
    def _row_to_flow(row: FlowRow) -> Flow:
        return Flow.model_validate(_row_values(row))

    @staticmethod
    def _row_to_session(row: SessionRow) -> ConversationSession:
        values = _row_values(row)
        values.pop("active_key", None)
        return ConversationSession.model_validate(values)

    @staticmethod
    def _row_to_message(row: MessageRow) -> MessageRecord:
        return MessageRecord.model_validate(_row_values(row))
