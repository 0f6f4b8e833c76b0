"""
Session Lifecycle Manager — resumes paused conversations.

A session is created by the executor when a flow reaches a `response` node.
Every later inbound message from that contact lands here instead of the
trigger scan:

  1. locate the node the session is paused on (missing → end "error")
  2. choice replies match choices[].value, trimmed and case-insensitive
  3. other replies go through validate_response; valid text becomes
     variables.lastResponse
  4. invalid → re-prompt, session unchanged (optionally capped by
     max_invalid_responses, after which the session is "abandoned")
  5. valid with a next node → advance and run the executor from it
  6. valid without a next node → end "completed"

Timeouts are enforced by sweep_timeouts(), driven by the scheduler. The
sweep takes the same per-contact lock as inbound processing, so a reply
and a timeout for one contact never run at the same time.
"""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Optional

import structlog

from channels.base import ChannelError
from database.store_base import BaseFlowStore
from flows.executor import FlowContext, FlowExecutor
from flows.validation import validate_response, validation_error_message
from models.schemas import (
    ConversationSession, Flow, InboundMessage, ResponseChoice, ResponseType,
    SessionStatus, utcnow,
)

logger = structlog.get_logger()

ContactKey = tuple[str, str, str]      # (tenant_id, instance_id, contact_number)


class ContactLocks:
    """
    One asyncio.Lock per contact, created on demand.

    A lock is discarded once nobody holds or waits for it, so the table
    only grows with the number of contacts currently being served.
    """

    def __init__(self):
        self._locks: dict[ContactKey, asyncio.Lock] = {}
        self._users: dict[ContactKey, int] = {}

    @asynccontextmanager
    async def hold(self, key: ContactKey) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                self._locks.pop(key, None)

    def __len__(self) -> int:
        return len(self._locks)


class SessionManager:
    """Owns the reply-handling and timeout paths of conversation sessions."""

    def __init__(
        self,
        store: BaseFlowStore,
        executor: FlowExecutor,
        max_invalid_responses: int = 0,
        locks: Optional[ContactLocks] = None,
    ):
        self.store = store
        self.executor = executor
        self.max_invalid_responses = max_invalid_responses
        self.locks = ContactLocks() if locks is None else locks

    async def end_session(
        self, session: ConversationSession, status: SessionStatus, error: Optional[str] = None,
    ) -> None:
        await self.executor.end_session(session, status, error=error)

    # ── Replies ──────────────────────────────────────────────

    async def handle_response(self, session: ConversationSession, message: InboundMessage) -> None:
        """Continue ``session`` with the contact's reply ``message``."""
        try:
            await self._handle_response(session, message)
        except Exception as e:
            logger.error("session_response_failed", session_id=session.id,
                         error=str(e), exc_info=True)
            if session.is_active:
                await self.end_session(session, SessionStatus.ERROR, error=str(e))

    async def _handle_response(self, session: ConversationSession, message: InboundMessage) -> None:
        reply = message.body or ""
        session.last_activity_at = utcnow()
        session.response_count += 1

        flow = await self.store.get_flow(session.flow_id)
        current = flow.get_node(session.current_node_id) if flow else None
        if flow is None or current is None:
            logger.error("session_node_missing", session_id=session.id,
                         flow_id=session.flow_id, node_id=session.current_node_id)
            await self.end_session(session, SessionStatus.ERROR,
                                   error=f"node '{session.current_node_id}' not found")
            return

        context = FlowContext(
            message=message,
            tenant_id=session.tenant_id,
            instance_id=session.instance_id,
            variables=dict(session.variables),
            session=session,
        )

        expected = session.expected_response
        valid = False
        next_node_id: Optional[str] = None

        if expected.type == ResponseType.CHOICE and expected.choices:
            choice = self._match_choice(reply, expected.choices)
            if choice is not None:
                valid = True
                next_node_id = self._choice_target(flow, current.id, choice)
                logger.info("session_choice_selected", session_id=session.id,
                            choice=choice.value, next_node_id=next_node_id)
        else:
            valid = validate_response(reply, expected, has_media=message.has_media)
            if valid:
                context.variables["lastResponse"] = reply
                next_node_id = self._first_successor(flow, current.id)

        if not valid:
            await self._reject(session, context)
            return

        session.variables = context.variables
        session.retry_count = 0

        if not next_node_id:
            await self.end_session(session, SessionStatus.COMPLETED)
            return

        next_node = flow.get_node(next_node_id)
        if next_node is None:
            logger.error("session_next_node_missing", session_id=session.id,
                         node_id=next_node_id)
            await self.end_session(session, SessionStatus.ERROR,
                                   error=f"node '{next_node_id}' not found")
            return

        session.is_waiting_for_response = False
        session.current_node_id = next_node_id
        await self.store.save_session(session)

        completed = await self.executor.run(next_node, flow, context)
        if completed and session.is_active and not session.is_waiting_for_response:
            # Ran off the end of the graph without pausing again
            await self.end_session(session, SessionStatus.COMPLETED)

    @staticmethod
    def _match_choice(reply: str, choices: list[ResponseChoice]) -> Optional[ResponseChoice]:
        normalized = reply.strip().lower()
        return next((c for c in choices if c.value.strip().lower() == normalized), None)

    @staticmethod
    def _first_successor(flow: Flow, node_id: str) -> Optional[str]:
        edges = flow.outgoing_edges(node_id)
        return edges[0].target if edges else None

    def _choice_target(self, flow: Flow, node_id: str, choice: ResponseChoice) -> Optional[str]:
        """targetNodeId, else the edge tagged with the choice value, else the first edge."""
        if choice.target_node_id:
            return choice.target_node_id
        for edge in flow.outgoing_edges(node_id):
            if edge.source_handle == choice.value:
                return edge.target
        return self._first_successor(flow, node_id)

    async def _reject(self, session: ConversationSession, context: FlowContext) -> None:
        session.retry_count += 1
        if self.max_invalid_responses and session.retry_count >= self.max_invalid_responses:
            logger.info("session_retries_exhausted", session_id=session.id,
                        retries=session.retry_count)
            await self.end_session(session, SessionStatus.ABANDONED,
                                   error="too many invalid responses")
            return

        await self.store.save_session(session)
        text = validation_error_message(session.expected_response)
        try:
            await self.executor.channel.send_text(
                session.tenant_id, session.instance_id, context.chat_id, text,
            )
        except ChannelError as e:
            logger.warning("validation_prompt_failed", session_id=session.id, error=str(e))
        logger.info("session_response_invalid", session_id=session.id,
                    retry_count=session.retry_count)

    # ── Timeouts ─────────────────────────────────────────────

    async def sweep_timeouts(self, now: Optional[datetime] = None) -> dict[str, int]:
        """
        Expire sessions that have waited longer than their timeout.

        Sessions with a timeoutNodeId are routed into that node; the rest end
        with status "timeout". Each candidate is re-read under its contact lock,
        so a reply that landed after the listing wins over the timeout.
        Returns {"checked", "routed", "expired", "errors"}.
        """
        now = now or utcnow()
        stats = {"checked": 0, "routed": 0, "expired": 0, "errors": 0}

        for candidate in await self.store.list_waiting_sessions():
            stats["checked"] += 1
            if not candidate.is_timed_out(now):
                continue
            try:
                async with self.locks.hold(candidate.contact_key):
                    session = await self.store.get_session(candidate.id)
                    if not _still_timed_out(session, now):
                        logger.debug("session_timeout_superseded", session_id=candidate.id)
                        continue
                    if await self._route_timeout(session):
                        stats["routed"] += 1
                    else:
                        stats["expired"] += 1
            except Exception as e:
                stats["errors"] += 1
                logger.error("session_timeout_failed", session_id=candidate.id,
                             error=str(e), exc_info=True)

        if stats["routed"] or stats["expired"]:
            logger.info("session_timeout_sweep", **stats)
        return stats

    async def _route_timeout(self, session: ConversationSession) -> bool:
        target_id = session.expected_response.timeout.timeout_node_id
        flow = await self.store.get_flow(session.flow_id) if target_id else None
        target = flow.get_node(target_id) if flow else None

        if target is None:
            await self.end_session(session, SessionStatus.TIMEOUT)
            return False

        # Synthetic message so downstream nodes can address the contact
        message = InboundMessage(
            id=f"timeout-{session.id}",
            from_number=session.contact_number,
            contact_name=session.contact_name,
        )
        context = FlowContext(
            message=message,
            tenant_id=session.tenant_id,
            instance_id=session.instance_id,
            variables=dict(session.variables),
            session=session,
        )
        session.is_waiting_for_response = False
        session.current_node_id = target.id
        session.last_activity_at = utcnow()
        await self.store.save_session(session)
        logger.info("session_timeout_routed", session_id=session.id, node_id=target.id)

        completed = await self.executor.run(target, flow, context)
        if completed and session.is_active and not session.is_waiting_for_response:
            await self.end_session(session, SessionStatus.TIMEOUT)
        return True


def _still_timed_out(session: Optional[ConversationSession], now: datetime) -> bool:
    return session is not None and session.is_timed_out(now)
