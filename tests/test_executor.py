"""
Tests for the flow graph executor.

Covers:
  - action nodes (send, media, set_variable, webhook)
  - condition routing with tagged / untagged edges
  - delay capping
  - response nodes opening and reusing sessions
  - error paths (channel failure, runaway graph, missing edge target)
"""
import json

import httpx
import pytest
from unittest.mock import AsyncMock

from channels.base import ChannelError
from flows.executor import (
    FlowContext, FlowExecutor, initial_variables, select_condition_edges,
)
from models.schemas import ConversationSession, FlowEdge, SessionStatus
from tests.builders import (
    CONTACT, INSTANCE, TENANT, condition, edge, make_flow, make_message, response, send,
    set_var, trigger,
)


def _context(body: str = "hello", **variables) -> FlowContext:
    message = make_message(body, push_name="Asha")
    return FlowContext(
        message=message, tenant_id=TENANT, instance_id=INSTANCE,
        variables={**initial_variables(message, "Asha"), **variables},
    )


async def _run(executor, flow, context=None, start="t"):
    context = context or _context()
    ok = await executor.run(flow.get_node(start), flow, context)
    return ok, context


# ──────────────────────────────────────────────────────────────
#  Helpers
# ──────────────────────────────────────────────────────────────

class TestHelpers:
    def test_initial_variables(self):
        message = make_message("Hi there")
        variables = initial_variables(message, "")
        assert variables["messageText"] == "Hi there"
        assert variables["senderNumber"] == CONTACT
        assert variables["senderName"] == "Unknown"
        assert "timestamp" in variables

    def test_tagged_condition_edges_win(self):
        edges = [FlowEdge(source="c", target="a"),
                 FlowEdge(source="c", target="b", source_handle="true"),
                 FlowEdge(source="c", target="d", source_handle="false")]
        assert [e.target for e in select_condition_edges(edges, True)] == ["b"]
        assert [e.target for e in select_condition_edges(edges, False)] == ["d"]

    def test_untagged_edges_are_fallback(self):
        edges = [FlowEdge(source="c", target="a"),
                 FlowEdge(source="c", target="b", source_handle="true")]
        assert [e.target for e in select_condition_edges(edges, False)] == ["a"]


# ──────────────────────────────────────────────────────────────
#  Actions
# ──────────────────────────────────────────────────────────────

class TestActions:
    @pytest.mark.asyncio
    async def test_send_message_resolves_placeholders(self, executor, channel, greeting_flow):
        ok, _ = await _run(executor, greeting_flow)
        assert ok
        assert channel.sent == [{
            "kind": "text", "tenant_id": TENANT, "instance_id": INSTANCE,
            "chat_id": f"{CONTACT}@c.us", "text": "Hi Asha!",
        }]

    @pytest.mark.asyncio
    async def test_successors_run_in_edge_order(self, executor, channel):
        flow = make_flow(
            [trigger("t", "any_message"), send("a", "first"), send("b", "second")],
            [edge("t", "a"), edge("t", "b")],
        )
        await _run(executor, flow)
        assert channel.texts == ["first", "second"]

    @pytest.mark.asyncio
    async def test_set_variable_then_use(self, executor, channel):
        flow = make_flow(
            [trigger("t", "any_message"), set_var("v", "greeting", "Hello {{senderName}}"),
             send("a", "{{greeting}}!")],
            [edge("t", "v"), edge("v", "a")],
        )
        ok, context = await _run(executor, flow)
        assert context.variables["greeting"] == "Hello Asha"
        assert channel.texts == ["Hello Asha!"]

    @pytest.mark.asyncio
    async def test_send_image_and_document(self, executor, channel):
        flow = make_flow(
            [
                trigger("t", "any_message"),
                {"id": "img", "type": "action", "data": {"config": {
                    "actionType": "send_image", "imageUrl": "https://cdn/x.png",
                    "caption": "For {{senderName}}"}}},
                {"id": "doc", "type": "action", "data": {"config": {
                    "actionType": "send_document", "documentUrl": "https://cdn/a.pdf"}}},
            ],
            [edge("t", "img"), edge("img", "doc")],
        )
        await _run(executor, flow)
        assert [(s["url"], s["caption"]) for s in channel.sent] == [
            ("https://cdn/x.png", "For Asha"), ("https://cdn/a.pdf", ""),
        ]

    @pytest.mark.asyncio
    async def test_webhook_posts_payload(self, store, channel):
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["method"] = request.method
            captured["url"] = str(request.url)
            captured["headers"] = request.headers
            captured["body"] = json.loads(request.content)
            return httpx.Response(200, json={"ok": True})

        http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        executor = FlowExecutor(store, channel, http_client=http, sleep=AsyncMock())
        flow = make_flow(
            [
                trigger("t", "any_message"),
                {"id": "w", "type": "action", "data": {"config": {
                    "actionType": "webhook", "webhookUrl": "https://hooks.test/{{senderNumber}}",
                    "headers": {"X-Token": "abc"}}}},
                send("a", "done"),
            ],
            [edge("t", "w"), edge("w", "a")],
        )
        ok, _ = await _run(executor, flow)
        await http.aclose()

        assert ok
        assert captured["method"] == "POST"
        assert captured["url"] == f"https://hooks.test/{CONTACT}"
        assert captured["headers"]["x-token"] == "abc"
        assert captured["headers"]["content-type"] == "application/json"
        assert captured["body"]["message"] == "hello"
        assert captured["body"]["from"] == CONTACT
        assert captured["body"]["variables"]["senderName"] == "Asha"
        assert channel.texts == ["done"]

    @pytest.mark.asyncio
    async def test_webhook_failure_does_not_stop_flow(self, store, channel):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        executor = FlowExecutor(store, channel, http_client=http, sleep=AsyncMock())
        flow = make_flow(
            [trigger("t", "any_message"),
             {"id": "w", "type": "action", "data": {"config": {
                 "actionType": "webhook", "webhookUrl": "https://down.test"}}},
             send("a", "still here")],
            [edge("t", "w"), edge("w", "a")],
        )
        ok, _ = await _run(executor, flow)
        await http.aclose()
        assert ok
        assert channel.texts == ["still here"]


# ──────────────────────────────────────────────────────────────
#  Conditions and delays
# ──────────────────────────────────────────────────────────────

class TestConditionsAndDelays:
    @pytest.fixture
    def vip_flow(self):
        return make_flow(
            [trigger("t", "any_message"), condition("c", "tier", "equals", "vip"),
             send("yes", "Welcome back VIP"), send("no", "Welcome")],
            [edge("t", "c"), edge("c", "yes", "true"), edge("c", "no", "false")],
        )

    @pytest.mark.asyncio
    async def test_true_branch(self, executor, channel, vip_flow):
        await _run(executor, vip_flow, _context(tier="vip"))
        assert channel.texts == ["Welcome back VIP"]

    @pytest.mark.asyncio
    async def test_false_branch_when_variable_missing(self, executor, channel, vip_flow):
        await _run(executor, vip_flow)
        assert channel.texts == ["Welcome"]

    @pytest.mark.asyncio
    async def test_delay_is_capped(self, store, channel):
        sleep = AsyncMock()
        executor = FlowExecutor(store, channel, max_delay_seconds=10, sleep=sleep)
        flow = make_flow(
            [trigger("t", "any_message"),
             {"id": "d", "type": "delay", "data": {"config": {"duration": 3600}}},
             send("a", "later")],
            [edge("t", "d"), edge("d", "a")],
        )
        await _run(executor, flow)
        sleep.assert_awaited_once_with(10)
        assert channel.texts == ["later"]


# ──────────────────────────────────────────────────────────────
#  Response nodes
# ──────────────────────────────────────────────────────────────

class TestResponseNodes:
    @pytest.mark.asyncio
    async def test_opens_waiting_session(self, executor, channel, store, signup_flow):
        ok, context = await _run(executor, signup_flow)
        assert ok
        assert channel.texts == ["Your email?"]

        session = await store.find_active_session(TENANT, INSTANCE, CONTACT)
        assert session is not None
        assert session.id == context.session.id
        assert session.is_waiting_for_response
        assert session.current_node_id == "ask"
        assert session.expected_response.type.value == "email"
        assert session.expected_response.timeout.minutes == 30
        assert session.variables["senderName"] == "Asha"
        assert session.contact_name == "Asha"

    @pytest.mark.asyncio
    async def test_response_branch_stops_traversal(self, executor, channel, signup_flow):
        await _run(executor, signup_flow)
        assert "Thanks" not in " ".join(channel.texts)

    @pytest.mark.asyncio
    async def test_reuses_existing_session(self, executor, store, signup_flow):
        existing = ConversationSession(
            flow_id="old", tenant_id=TENANT, instance_id=INSTANCE, contact_number=CONTACT,
            variables={"keep": "me"},
        )
        await store.create_session(existing)

        await _run(executor, signup_flow)
        session = await store.find_active_session(TENANT, INSTANCE, CONTACT)
        assert session.id == existing.id
        assert session.flow_id == signup_flow.id
        assert session.variables["keep"] == "me"
        assert session.is_waiting_for_response


# ──────────────────────────────────────────────────────────────
#  Errors
# ──────────────────────────────────────────────────────────────

class TestErrors:
    @pytest.mark.asyncio
    async def test_channel_error_aborts_run(self, executor, channel, greeting_flow):
        channel.fail_with = ChannelError("not ready")
        ok, _ = await _run(executor, greeting_flow)
        assert ok is False

    @pytest.mark.asyncio
    async def test_channel_error_ends_attached_session(self, executor, channel, store, greeting_flow):
        session = ConversationSession(
            flow_id=greeting_flow.id, tenant_id=TENANT, instance_id=INSTANCE,
            contact_number=CONTACT,
        )
        await store.create_session(session)
        context = _context()
        context.session = session
        channel.fail_with = ChannelError("not ready")

        ok, _ = await _run(executor, greeting_flow, context)
        assert ok is False
        stored = await store.get_session(session.id)
        assert stored.status == SessionStatus.ERROR
        assert stored.last_error == "not ready"
        assert await store.find_active_session(TENANT, INSTANCE, CONTACT) is None

    @pytest.mark.asyncio
    async def test_cycle_hits_visit_limit(self, store, channel):
        executor = FlowExecutor(store, channel, max_node_visits=5, sleep=AsyncMock())
        flow = make_flow(
            [trigger("t", "any_message"), set_var("a", "x", "1"), set_var("b", "y", "2")],
            [edge("t", "a"), edge("a", "b"), edge("b", "a")],
        )
        ok, context = await _run(executor, flow)
        assert ok is False
        assert context.visits == 6

    @pytest.mark.asyncio
    async def test_missing_edge_target_skipped(self, executor, channel):
        flow = make_flow([trigger("t", "any_message"), send("a", "ok")], [edge("t", "a")])
        flow.edges.insert(0, FlowEdge(source="t", target="ghost"))
        ok, _ = await _run(executor, flow)
        assert ok
        assert channel.texts == ["ok"]
