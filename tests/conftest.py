"""Shared test fixtures for WAFlow."""
from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from core.orchestrator import Orchestrator
from database.store_memory import InMemoryFlowStore
from flows.executor import FlowExecutor
from flows.sessions import SessionManager
from models.schemas import Flow, InstanceStatus, WhatsAppInstance
from tests.builders import (
    INSTANCE, TENANT, FakeChannel, edge, make_flow, response, send, trigger,
)


# ──────────────────────────────────────────────────────────────
#  Fixtures
# ──────────────────────────────────────────────────────────────

@pytest.fixture
def store() -> InMemoryFlowStore:
    return InMemoryFlowStore()


@pytest.fixture
def channel() -> FakeChannel:
    return FakeChannel()


@pytest.fixture
def executor(store, channel) -> FlowExecutor:
    return FlowExecutor(store, channel, sleep=AsyncMock())


@pytest.fixture
def sessions(store, executor) -> SessionManager:
    return SessionManager(store, executor)


@pytest.fixture
def orchestrator(store, executor, sessions) -> Orchestrator:
    return Orchestrator(store, executor, sessions)


@pytest.fixture
def greeting_flow() -> Flow:
    """hello → 'Hi {{senderName}}!'"""
    return make_flow(
        [trigger("t", "text_contains", "hello"), send("a", "Hi {{senderName}}!")],
        [edge("t", "a")],
        id="greeting",
    )


@pytest.fixture
def menu_flow() -> Flow:
    """menu → choice prompt → sales / support branches."""
    return make_flow(
        [
            trigger("t", "text_equals", "menu"),
            response("ask", "Reply 1 for Sales, 2 for Support", "choice", choices=[
                {"value": "1", "label": "Sales", "targetNodeId": "sales"},
                {"value": "2", "label": "Support"},
            ]),
            send("sales", "Sales will call you"),
            send("support", "Support ticket opened"),
        ],
        [edge("t", "ask"), edge("ask", "sales", "1"), edge("ask", "support", "2")],
        id="menu",
    )


@pytest.fixture
def signup_flow() -> Flow:
    """signup → ask email → thank with the captured reply."""
    return make_flow(
        [
            trigger("t", "text_equals", "signup"),
            response("ask", "Your email?", "email"),
            send("thanks", "Thanks {{lastResponse}}"),
        ],
        [edge("t", "ask"), edge("ask", "thanks")],
        id="signup",
    )


@pytest.fixture
def ready_instance() -> WhatsAppInstance:
    return WhatsAppInstance(instance_id=INSTANCE, tenant_id=TENANT, name="Main",
                            phone_number="919800000000", status=InstanceStatus.READY,
                            is_active=True)
