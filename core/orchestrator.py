"""
Orchestrator — The entry point for every inbound WhatsApp message.

Flow:
    channel webhook → WhatsAppSessionManager (stores message, drops re-deliveries)
      → Orchestrator.enqueue (fire-and-forget task)
      → on_inbound_message:
          group chat / empty sender → ignored
          per-contact lock (one execution in flight per contact)
          active session waiting for a reply → SessionManager.handle_response
          otherwise → scan active flows, run every flow whose trigger matches

Errors never propagate out of on_inbound_message: one failing flow does
not stop the scan of the others, and anything else is logged with the
traceback.
"""
from __future__ import annotations

import asyncio
from typing import Optional

import structlog

from channels.base import MessageDeduplicator
from database.store_base import BaseFlowStore
from flows.executor import FlowContext, FlowExecutor, initial_variables
from flows.sessions import ContactLocks, SessionManager
from flows.triggers import first_matching_trigger
from models.schemas import InboundMessage, utcnow
from utils.contacts import contact_number, get_contact_name, is_group_chat

logger = structlog.get_logger()


class Orchestrator:

    def __init__(
        self,
        store: BaseFlowStore,
        executor: FlowExecutor,
        sessions: SessionManager,
        dedup: Optional[MessageDeduplicator] = None,
        locks: Optional[ContactLocks] = None,
    ):
        self.store = store
        self.executor = executor
        self.sessions = sessions
        self.dedup = MessageDeduplicator() if dedup is None else dedup
        self.locks = sessions.locks if locks is None else locks
        self._inflight: set[asyncio.Task] = set()

    # ══════════════════════════════════════════════════════════
    #  INBOUND
    # ══════════════════════════════════════════════════════════

    async def enqueue(self, message: InboundMessage, tenant_id: str, instance_id: str) -> None:
        """Inbound handler for the session manager: process in the background."""
        self.dispatch(message, tenant_id, instance_id)

    def dispatch(self, message: InboundMessage, tenant_id: str, instance_id: str) -> asyncio.Task:
        task = asyncio.create_task(
            self.on_inbound_message(message, tenant_id, instance_id),
            name=f"inbound:{message.id}",
        )
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return task

    async def drain(self) -> None:
        """Wait for in-flight inbound processing (shutdown)."""
        if self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    async def on_inbound_message(
        self, message: InboundMessage, tenant_id: str, instance_id: str,
    ) -> None:
        try:
            await self._process(message, tenant_id, instance_id)
        except Exception as e:
            logger.error("inbound_processing_failed", message_id=message.id,
                         tenant_id=tenant_id, instance_id=instance_id,
                         error=str(e), exc_info=True)

    async def _process(self, message: InboundMessage, tenant_id: str, instance_id: str) -> None:
        if is_group_chat(message):
            logger.debug("group_message_ignored", message_id=message.id)
            return
        contact = contact_number(message.from_number)
        if not contact:
            logger.debug("message_without_sender_ignored", message_id=message.id)
            return
        if self.dedup.is_duplicate(f"{tenant_id}:{instance_id}:{message.id}"):
            logger.info("duplicate_inbound_message", message_id=message.id)
            return

        with structlog.contextvars.bound_contextvars(
            tenant_id=tenant_id, instance_id=instance_id, contact=contact,
        ):
            async with self.locks.hold((tenant_id, instance_id, contact)):
                session = await self.store.find_active_session(tenant_id, instance_id, contact)
                if session is not None and session.is_waiting_for_response:
                    logger.info("session_reply_received", session_id=session.id,
                                message_id=message.id)
                    await self.sessions.handle_response(session, message)
                    return
                await self.run_triggers(message, tenant_id, instance_id)

    async def run_triggers(self, message: InboundMessage, tenant_id: str, instance_id: str) -> int:
        """Run every active flow whose trigger matches. Returns how many ran."""
        flows = await self.store.list_active_flows(tenant_id, instance_id)
        sender_name = get_contact_name(message)
        triggered = 0

        for flow in flows:
            try:
                trigger = first_matching_trigger(flow, message)
                if trigger is None:
                    continue
                logger.info("flow_triggered", flow_id=flow.id, flow_name=flow.name,
                            trigger_node=trigger.id, message_id=message.id)
                await self.store.record_flow_triggered(flow.id, utcnow())
                context = FlowContext(
                    message=message,
                    tenant_id=tenant_id,
                    instance_id=instance_id,
                    variables=initial_variables(message, sender_name),
                )
                await self.executor.run(trigger, flow, context)
                triggered += 1
            except Exception as e:
                logger.error("flow_execution_failed", flow_id=flow.id,
                             error=str(e), exc_info=True)

        if not triggered:
            logger.debug("no_flow_triggered", message_id=message.id, flows=len(flows))
        return triggered
