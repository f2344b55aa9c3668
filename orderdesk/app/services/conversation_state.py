"""
Conversation State Machine.

Each buyer turn is decided by exactly one language-model call returning a
plan {action, message, status?, need?, address_text?}. The machine accepts
the plan only if it parses and its action is allowed from the current
state:

    init / await_choice --CONFIRM--> confirmed
                        --CANCEL--> cancelled
                        --ASK_MORE_INFO--> clarify
                        --REQUEST_LOCATION--> address_change
                        --ASK_CHOICE / ACK_LOCATION--> await_choice
    clarify             (buyer answered) -> evaluated as await_choice
    address_change      --ACK_LOCATION--> await_choice
                        --REQUEST_LOCATION--> address_change
                        --CANCEL--> cancelled
    any non-terminal    --CLOSE--> closed

confirmed, cancelled and closed are terminal. A plan that fails to parse
or asks for a forbidden action changes nothing and sends nothing.
"""

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ValidationError, field_validator, model_validator

from orderdesk.app.core.exceptions import InvalidTransitionError, PlanParseError
from orderdesk.app.core.logging import get_logger
from orderdesk.app.models import ConversationState, OrderStatus, TERMINAL_STATES
from orderdesk.app.services.conversation_prompts import system_prompt
from orderdesk.app.services.llm_adapter import ChatMessage, LLMAdapter
from orderdesk.app.services.row_normalizer import extract_json_object

logger = get_logger(__name__)

PlanAction = Literal[
    "ASK_CHOICE", "CONFIRM", "CANCEL", "ASK_MORE_INFO", "REQUEST_LOCATION", "ACK_LOCATION", "CLOSE"
]


class Plan(BaseModel):
    """Structured decision for one conversational turn."""

    action: PlanAction
    message: str = ""
    status: Optional[Literal["processing", "completed", "cancelled"]] = None
    need: Optional[List[str]] = None  # address | note | other
    address_text: Optional[str] = None

    @field_validator("action", mode="before")
    @classmethod
    def _upper_action(cls, v: Any) -> Any:
        return v.strip().upper() if isinstance(v, str) else v

    @field_validator("status", mode="before")
    @classmethod
    def _lower_status(cls, v: Any) -> Any:
        if isinstance(v, str):
            v = v.strip().lower()
            return v or None
        return v

    @model_validator(mode="after")
    def _message_required(self) -> "Plan":
        self.message = (self.message or "").strip()
        if not self.message and self.action != "CLOSE":
            raise ValueError(f"{self.action} plan needs a message")
        return self


def parse_plan(text: str) -> Plan:
    """
    Parse model output into a Plan.

    Raises:
        PlanParseError: no JSON object, or one that does not match the plan shape
    """
    data = extract_json_object(text)
    if data is None:
        raise PlanParseError("Model output contains no JSON object", raw_text=text)
    try:
        return Plan.model_validate(data)
    except ValidationError as e:
        raise PlanParseError(f"Model output is not a valid plan: {e.error_count()} errors", raw_text=text) from e


_CHOICE_TRANSITIONS: Dict[str, ConversationState] = {
    "CONFIRM": ConversationState.CONFIRMED,
    "CANCEL": ConversationState.CANCELLED,
    "ASK_MORE_INFO": ConversationState.CLARIFY,
    "REQUEST_LOCATION": ConversationState.ADDRESS_CHANGE,
    "ASK_CHOICE": ConversationState.AWAIT_CHOICE,
    "ACK_LOCATION": ConversationState.AWAIT_CHOICE,
    "CLOSE": ConversationState.CLOSED,
}

TRANSITIONS: Dict[ConversationState, Dict[str, ConversationState]] = {
    ConversationState.AWAIT_CHOICE: _CHOICE_TRANSITIONS,
    ConversationState.ADDRESS_CHANGE: {
        "ACK_LOCATION": ConversationState.AWAIT_CHOICE,
        "REQUEST_LOCATION": ConversationState.ADDRESS_CHANGE,
        "CANCEL": ConversationState.CANCELLED,
        "CLOSE": ConversationState.CLOSED,
    },
}

_ACTION_ORDER_STATUS = {
    "CONFIRM": OrderStatus.PROCESSING.value,
    "CANCEL": OrderStatus.CANCELLED.value,
}


class ConversationStateMachine:
    """Pure transition logic; persistence lives in the worker."""

    @staticmethod
    def is_terminal(state: ConversationState) -> bool:
        return ConversationState(state) in TERMINAL_STATES

    def next_state(self, state: ConversationState, plan: Plan) -> ConversationState:
        """
        State reached by applying `plan` in `state`.

        Raises:
            InvalidTransitionError: terminal state, or an action the state forbids
        """
        state = ConversationState(state)
        if state in TERMINAL_STATES:
            raise InvalidTransitionError(state.value, plan.action)
        # A buyer reply to a greeting or a clarifying question is a fresh choice
        if state in (ConversationState.INIT, ConversationState.CLARIFY):
            state = ConversationState.AWAIT_CHOICE

        target = TRANSITIONS[state].get(plan.action)
        if target is None:
            raise InvalidTransitionError(state.value, plan.action)
        return target

    @staticmethod
    def order_status_for(plan: Plan) -> Optional[str]:
        """Order status implied by a plan; an explicit plan status wins."""
        if plan.status:
            return plan.status
        return _ACTION_ORDER_STATUS.get(plan.action)

    @staticmethod
    def derive_state(
        meta: Optional[Dict[str, Any]],
        order_status: Optional[str] = None,
        has_messages: bool = False,
    ) -> ConversationState:
        """
        Current state of a conversation. Stored state wins; otherwise it is
        derived from the linked order status and whether anything was said.
        """
        stored = (meta or {}).get("state")
        if stored:
            try:
                return ConversationState(stored)
            except ValueError:
                logger.warning(f"Unknown stored conversation state {stored!r}; deriving instead")

        if order_status in (OrderStatus.PROCESSING.value, OrderStatus.CONFIRMED.value, OrderStatus.COMPLETED.value):
            return ConversationState.CONFIRMED
        if order_status in (OrderStatus.CANCELLED.value, OrderStatus.REFUNDED.value):
            return ConversationState.CANCELLED
        return ConversationState.AWAIT_CHOICE if has_messages else ConversationState.INIT


class ConversationPlanner:
    """One language-model round trip per buyer turn."""

    def __init__(self, llm: LLMAdapter, temperature: float = 0.2, max_tokens: int = 200):
        self.llm = llm
        self.temperature = temperature
        self.max_tokens = max_tokens

    def build_messages(
        self, store_name: str, locale: str, history: List[ChatMessage], context_text: Optional[str] = None
    ) -> List[ChatMessage]:
        messages = [ChatMessage(role="system", content=system_prompt(store_name, locale))]
        if context_text:
            messages.append(ChatMessage(role="system", content=f"Context:\n{context_text}"))
        messages.extend(history)
        return messages

    async def plan(
        self, store_name: str, locale: str, history: List[ChatMessage], context_text: Optional[str] = None
    ) -> Plan:
        """
        Ask the model for the next plan.

        Raises:
            PlanParseError: the answer is not a valid plan
            TransientError: the model could not be reached in time
        """
        response = await self.llm.chat(
            self.build_messages(store_name, locale, history, context_text),
            temperature=self.temperature,
            max_tokens=self.max_tokens,
        )
        plan = parse_plan(response.text)
        logger.info(f"Plan parsed: {plan.action}")
        return plan
