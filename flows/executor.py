"""
Flow Graph Executor — walks a flow's nodes and edges.

Node semantics:
  trigger    → no side effect, continue to successors
  action     → send_message | send_image | send_document | set_variable | webhook
  condition  → compare a variable, follow the matching "true"/"false" edges
  delay      → sleep `duration` seconds, then continue
  response   → send a prompt, pause the conversation in a session

Successors of a node are the targets of its outgoing edges, executed one at
a time in edge-declaration order so side effects (two consecutive sends) keep
their order. A `response` node ends its branch; the conversation resumes from
SessionManager when the contact replies.

Errors:
  - ChannelError / FlowExecutionError abort the run. When a session is
    attached it is ended with status "error".
  - Webhook failures are logged and the run continues.
  - Edges pointing at a missing node are logged and skipped.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

import httpx
import structlog

from channels.base import ChannelError, OutboundChannel
from database.store_base import ActiveSessionExistsError, BaseFlowStore
from models.schemas import (
    ActionConfig, ActionType, ConversationSession, ExpectedResponse, Flow,
    FlowEdge, FlowNode, InboundMessage, NodeType, ResponseNode, ResponseTimeout,
    SessionStatus, utcnow,
)
from utils.conditions import evaluate_condition, resolve_placeholders
from utils.contacts import contact_number, format_chat_id

logger = structlog.get_logger()


class FlowExecutionError(Exception):
    """Unrecoverable problem while running a flow (missing node, runaway graph)."""


@dataclass
class FlowContext:
    """State carried through one flow invocation."""
    message: InboundMessage
    tenant_id: str
    instance_id: str
    variables: dict[str, Any] = field(default_factory=dict)
    session: Optional[ConversationSession] = None
    visits: int = 0

    @property
    def chat_id(self) -> str:
        return format_chat_id(self.message.from_number)

    @property
    def contact_number(self) -> str:
        return contact_number(self.message.from_number)


def initial_variables(message: InboundMessage, sender_name: str) -> dict[str, Any]:
    """Variables every triggered run starts with."""
    return {
        "messageText": message.body or "",
        "senderNumber": message.from_number,
        "senderName": sender_name or "Unknown",
        "timestamp": utcnow().isoformat(),
    }


def select_condition_edges(edges: list[FlowEdge], result: bool) -> list[FlowEdge]:
    """
    Edges to follow out of a condition node.

    Edges tagged with the result ("true"/"false") win; untagged edges are
    only followed when no tagged edge matches.
    """
    handle = "true" if result else "false"
    tagged = [e for e in edges if e.source_handle == handle]
    if tagged:
        return tagged
    return [e for e in edges if not e.source_handle]


class FlowExecutor:
    """
    Interprets flow graphs against an outbound channel and the session store.

    One executor is shared by all tenants; all per-run state lives in
    FlowContext.
    """

    def __init__(
        self,
        store: BaseFlowStore,
        channel: OutboundChannel,
        http_client: Optional[httpx.AsyncClient] = None,
        max_node_visits: int = 200,
        max_delay_seconds: float = 300.0,
        default_timeout_minutes: int = 30,
        webhook_timeout_seconds: float = 10.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.store = store
        self.channel = channel
        self.max_node_visits = max_node_visits
        self.max_delay_seconds = max_delay_seconds
        self.default_timeout_minutes = default_timeout_minutes
        self.webhook_timeout_seconds = webhook_timeout_seconds
        self._http = http_client
        self._owns_http = http_client is None
        self._sleep = sleep

    async def _get_http(self) -> httpx.AsyncClient:
        if self._http is None or self._http.is_closed:
            self._http = httpx.AsyncClient(timeout=self.webhook_timeout_seconds)
            self._owns_http = True
        return self._http

    async def close(self) -> None:
        if self._owns_http and self._http is not None and not self._http.is_closed:
            await self._http.aclose()

    # ── Entry points ─────────────────────────────────────────

    async def run(self, node: FlowNode, flow: Flow, context: FlowContext) -> bool:
        """
        Execute ``node`` and everything reachable from it.

        Returns False when the run was aborted by an execution error; the
        attached session (if any) has then been ended with status "error".
        """
        try:
            await self.execute_node(node, flow, context)
            return True
        except (ChannelError, FlowExecutionError) as e:
            logger.error(
                "flow_run_failed",
                flow_id=flow.id, node_id=node.id,
                error=str(e), error_type=type(e).__name__,
            )
            if context.session is not None and context.session.is_active:
                await self.end_session(context.session, SessionStatus.ERROR, error=str(e))
            return False

    async def execute_node(self, node: FlowNode, flow: Flow, context: FlowContext) -> None:
        context.visits += 1
        if context.visits > self.max_node_visits:
            raise FlowExecutionError(
                f"node visit limit ({self.max_node_visits}) exceeded at '{node.id}'"
            )

        logger.debug("node_executing", flow_id=flow.id, node_id=node.id,
                     node_type=node.type, label=node.data.label)

        if node.type == NodeType.TRIGGER:
            await self._execute_successors(flow.outgoing_edges(node.id), flow, context)

        elif node.type == NodeType.ACTION:
            await self._execute_action(node.config, context)
            await self._execute_successors(flow.outgoing_edges(node.id), flow, context)

        elif node.type == NodeType.CONDITION:
            config = node.config
            result = evaluate_condition(
                config.operator, context.variables.get(config.variable), config.value,
            )
            logger.debug("condition_evaluated", node_id=node.id,
                         variable=config.variable, result=result)
            edges = select_condition_edges(flow.outgoing_edges(node.id), result)
            await self._execute_successors(edges, flow, context)

        elif node.type == NodeType.DELAY:
            duration = min(node.config.duration, self.max_delay_seconds)
            await self._sleep(duration)
            await self._execute_successors(flow.outgoing_edges(node.id), flow, context)

        elif node.type == NodeType.RESPONSE:
            await self._pause_for_response(node, flow, context)

    async def _execute_successors(
        self, edges: list[FlowEdge], flow: Flow, context: FlowContext,
    ) -> None:
        for edge in edges:
            target = flow.get_node(edge.target)
            if target is None:
                logger.warning("edge_target_missing", flow_id=flow.id,
                               edge_id=edge.id, target=edge.target)
                continue
            await self.execute_node(target, flow, context)

    # ── Actions ──────────────────────────────────────────────

    async def _execute_action(self, config: ActionConfig, context: FlowContext) -> None:
        variables = context.variables

        if config.action_type == ActionType.SEND_MESSAGE:
            text = resolve_placeholders(config.message, variables)
            await self.channel.send_text(
                context.tenant_id, context.instance_id, context.chat_id, text,
            )

        elif config.action_type == ActionType.SEND_IMAGE:
            await self.channel.send_media_from_url(
                context.tenant_id, context.instance_id, context.chat_id,
                resolve_placeholders(config.image_url, variables),
                caption=resolve_placeholders(config.caption, variables),
            )

        elif config.action_type == ActionType.SEND_DOCUMENT:
            await self.channel.send_media_from_url(
                context.tenant_id, context.instance_id, context.chat_id,
                resolve_placeholders(config.document_url, variables),
                caption=resolve_placeholders(config.caption, variables),
            )

        elif config.action_type == ActionType.SET_VARIABLE:
            variables[config.variable_name] = resolve_placeholders(config.value, variables)

        elif config.action_type == ActionType.WEBHOOK:
            await self._call_webhook(config, context)

    async def _call_webhook(self, config: ActionConfig, context: FlowContext) -> None:
        url = resolve_placeholders(config.webhook_url, context.variables)
        payload = {
            "message": context.message.body,
            "from": context.message.from_number,
            "variables": context.variables,
            "timestamp": utcnow().isoformat(),
        }
        headers = {"Content-Type": "application/json", **config.headers}
        try:
            client = await self._get_http()
            response = await client.request(config.method, url, json=payload, headers=headers)
            logger.info("webhook_called", url=url, method=config.method,
                        status=response.status_code)
        except (httpx.HTTPError, TypeError, ValueError) as e:
            logger.warning("webhook_failed", url=url, method=config.method, error=str(e))

    # ── Response nodes / sessions ────────────────────────────

    async def _pause_for_response(
        self, node: ResponseNode, flow: Flow, context: FlowContext,
    ) -> None:
        config = node.config
        await self.channel.send_text(
            context.tenant_id, context.instance_id, context.chat_id,
            resolve_placeholders(config.message, context.variables),
        )

        expected = ExpectedResponse(
            type=config.response_type,
            choices=config.choices,
            validation=config.validation,
            timeout=config.timeout or ResponseTimeout(minutes=self.default_timeout_minutes),
        )
        now = utcnow()

        session = context.session
        if session is None:
            session = await self.store.find_active_session(
                context.tenant_id, context.instance_id, context.contact_number,
            )

        if session is None:
            session = ConversationSession(
                flow_id=flow.id,
                tenant_id=context.tenant_id,
                instance_id=context.instance_id,
                contact_number=context.contact_number,
                contact_name=str(context.variables.get("senderName", "")),
                current_node_id=node.id,
                variables=dict(context.variables),
                expected_response=expected,
                is_waiting_for_response=True,
                message_count=1,
                started_at=now,
                last_activity_at=now,
            )
            try:
                session = await self.store.create_session(session)
            except ActiveSessionExistsError as e:
                raise FlowExecutionError(str(e)) from e
            logger.info("session_started", session_id=session.id, flow_id=flow.id,
                        node_id=node.id, contact=session.contact_number)
        else:
            session.flow_id = flow.id
            session.current_node_id = node.id
            session.variables = {**session.variables, **context.variables}
            session.expected_response = expected
            session.is_waiting_for_response = True
            session.last_activity_at = now
            session.message_count += 1
            session.retry_count = 0
            await self.store.save_session(session)
            logger.info("session_waiting", session_id=session.id, node_id=node.id,
                        expected=expected.type.value)

        context.session = session

    async def end_session(
        self,
        session: ConversationSession,
        status: SessionStatus,
        error: Optional[str] = None,
    ) -> None:
        session.is_active = False
        session.is_waiting_for_response = False
        session.status = status
        session.completed_at = utcnow()
        if error:
            session.last_error = error
        await self.store.save_session(session)
        logger.info("session_ended", session_id=session.id, status=status.value,
                    error=error)
