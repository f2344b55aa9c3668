"""
Unit tests for plan parsing and the conversation state machine.
"""
import pytest

from conftest import FakeLLM
from orderdesk.app.core.exceptions import InvalidTransitionError, PlanParseError
from orderdesk.app.models import ConversationState
from orderdesk.app.services.conversation_state import (
    ConversationPlanner,
    ConversationStateMachine,
    Plan,
    parse_plan,
)
from orderdesk.app.services.llm_adapter import ChatMessage

S = ConversationState


def test_parse_plan_accepts_fenced_json():
    plan = parse_plan('```json\n{"action": "confirm", "message": "Great, confirmed!", "status": "Completed"}\n```')
    assert plan.action == "CONFIRM"
    assert plan.status == "completed"
    assert plan.message == "Great, confirmed!"


def test_parse_plan_rejects_garbage():
    with pytest.raises(PlanParseError) as exc:
        parse_plan("sure, I'll confirm it")
    assert exc.value.raw_text == "sure, I'll confirm it"


@pytest.mark.parametrize("payload", [
    '{"action": "SHIP_IT", "message": "ok"}',
    '{"action": "CONFIRM"}',
    '{"action": "CONFIRM", "message": "ok", "status": "shipped"}',
    '{"message": "hello"}',
])
def test_parse_plan_rejects_invalid_shapes(payload):
    with pytest.raises(PlanParseError):
        parse_plan(payload)


def test_close_needs_no_message():
    assert parse_plan('{"action": "CLOSE"}').message == ""


@pytest.mark.parametrize("state,action,expected", [
    (S.AWAIT_CHOICE, "CONFIRM", S.CONFIRMED),
    (S.AWAIT_CHOICE, "CANCEL", S.CANCELLED),
    (S.AWAIT_CHOICE, "ASK_MORE_INFO", S.CLARIFY),
    (S.AWAIT_CHOICE, "REQUEST_LOCATION", S.ADDRESS_CHANGE),
    (S.AWAIT_CHOICE, "ASK_CHOICE", S.AWAIT_CHOICE),
    (S.INIT, "CONFIRM", S.CONFIRMED),
    (S.CLARIFY, "CANCEL", S.CANCELLED),
    (S.ADDRESS_CHANGE, "ACK_LOCATION", S.AWAIT_CHOICE),
    (S.ADDRESS_CHANGE, "REQUEST_LOCATION", S.ADDRESS_CHANGE),
    (S.ADDRESS_CHANGE, "CLOSE", S.CLOSED),
])
def test_allowed_transitions(state, action, expected):
    plan = Plan(action=action, message="ok")
    assert ConversationStateMachine().next_state(state, plan) == expected


def test_address_change_cannot_confirm():
    with pytest.raises(InvalidTransitionError) as exc:
        ConversationStateMachine().next_state(S.ADDRESS_CHANGE, Plan(action="CONFIRM", message="ok"))
    assert exc.value.state == "address_change"
    assert exc.value.action == "CONFIRM"


@pytest.mark.parametrize("state", [S.CONFIRMED, S.CANCELLED, S.CLOSED])
def test_terminal_states_accept_nothing(state):
    machine = ConversationStateMachine()
    assert machine.is_terminal(state)
    with pytest.raises(InvalidTransitionError):
        machine.next_state(state, Plan(action="ASK_CHOICE", message="again?"))


def test_order_status_for_plan():
    machine = ConversationStateMachine()
    assert machine.order_status_for(Plan(action="CONFIRM", message="ok")) == "processing"
    assert machine.order_status_for(Plan(action="CONFIRM", message="ok", status="completed")) == "completed"
    assert machine.order_status_for(Plan(action="CANCEL", message="ok")) == "cancelled"
    assert machine.order_status_for(Plan(action="ASK_CHOICE", message="ok")) is None


def test_derive_state():
    derive = ConversationStateMachine.derive_state
    assert derive({"state": "clarify"}, "new", True) == S.CLARIFY
    assert derive({}, "completed", True) == S.CONFIRMED
    assert derive(None, "refunded", True) == S.CANCELLED
    assert derive({}, "new", True) == S.AWAIT_CHOICE
    assert derive({}, None, False) == S.INIT
    assert derive({"state": "bogus"}, None, True) == S.AWAIT_CHOICE


@pytest.mark.asyncio
async def test_planner_sends_system_prompt_context_and_history():
    llm = FakeLLM(['{"action": "ASK_CHOICE", "message": "Confirm, cancel or more info?"}'])
    planner = ConversationPlanner(llm, temperature=0.2, max_tokens=200)
    history = [
        ChatMessage(role="assistant", content="Hi! Do you confirm order A1?"),
        ChatMessage(role="user", content="hmm"),
    ]
    plan = await planner.plan("Atlas Shop", "fr", history, "Store: Atlas Shop")

    assert plan.action == "ASK_CHOICE"
    sent = llm.calls[0]
    assert sent[0].role == "system" and "Atlas Shop" in sent[0].content and "(fr)" in sent[0].content
    assert sent[1].content == "Context:\nStore: Atlas Shop"
    assert [m.content for m in sent[2:]] == ["Hi! Do you confirm order A1?", "hmm"]
