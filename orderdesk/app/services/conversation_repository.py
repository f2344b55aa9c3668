"""
Conversation Repository - database operations for conversations and turns.

Find-or-create semantics keep at most one open conversation per
(store, customer, origin). Turns are append-only.
"""

from typing import Any, Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from orderdesk.app.core.exceptions import ConversationNotFoundError
from orderdesk.app.models import (
    ConversationORM,
    ConversationState,
    ConversationStatus,
    CustomerORM,
    MessageORM,
    MessageRole,
)
from orderdesk.app.services.llm_adapter import ChatMessage

_OPEN_STATUSES = (ConversationStatus.OPEN.value, ConversationStatus.ACTIVE.value)


class ConversationRepository:
    """Repository for conversation and message database operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def find_or_create_customer(
        self, store_id: str, phone: str, customer_id: Optional[str] = None
    ) -> CustomerORM:
        """Customer by explicit id (same store only), else by phone, else a new one."""
        if customer_id:
            customer = await self.session.get(CustomerORM, customer_id)
            if customer is not None and customer.store_id == store_id:
                return customer

        result = await self.session.execute(
            select(CustomerORM)
            .where(CustomerORM.store_id == store_id, CustomerORM.phone == phone)
            .order_by(CustomerORM.created_at, CustomerORM.id)
            .limit(1)
        )
        customer = result.scalars().first()
        if customer is None:
            customer = CustomerORM(store_id=store_id, phone=phone)
            self.session.add(customer)
            await self.session.flush()
        return customer

    async def get(self, store_id: str, conversation_id: str) -> ConversationORM:
        """
        Raises:
            ConversationNotFoundError: unknown id, or one that belongs to another store
        """
        conversation = await self.session.get(ConversationORM, conversation_id)
        if conversation is None or conversation.store_id != store_id:
            raise ConversationNotFoundError(f"Conversation {conversation_id} not found for store {store_id}")
        return conversation

    async def find_or_create(
        self,
        store_id: str,
        customer_id: Optional[str],
        origin: str = "whatsapp",
        order_id: Optional[str] = None,
        to: Optional[str] = None,
    ) -> ConversationORM:
        """
        Oldest open/active conversation for (store, customer, origin), or a new
        one in state `init`. An order is linked when the conversation has none.
        """
        result = await self.session.execute(
            select(ConversationORM)
            .where(
                ConversationORM.store_id == store_id,
                ConversationORM.customer_id == customer_id,
                ConversationORM.origin == origin,
                ConversationORM.status.in_(_OPEN_STATUSES),
            )
            .order_by(ConversationORM.created_at, ConversationORM.id)
            .limit(1)
        )
        conversation = result.scalars().first()
        if conversation is not None:
            if order_id and conversation.order_id is None:
                conversation.order_id = order_id
            return conversation

        meta: Dict[str, Any] = {"state": ConversationState.INIT.value, "address_ok": False}
        if to:
            meta["to"] = to
        conversation = ConversationORM(
            store_id=store_id,
            customer_id=customer_id,
            order_id=order_id,
            origin=origin,
            status=ConversationStatus.OPEN.value,
            meta=meta,
        )
        self.session.add(conversation)
        await self.session.flush()
        return conversation

    async def latest_for_customer(
        self, store_id: str, customer_id: str, origin: str = "whatsapp"
    ) -> Optional[ConversationORM]:
        """Most recent conversation with the buyer, closed ones included. Inbound messages land here."""
        result = await self.session.execute(
            select(ConversationORM)
            .where(
                ConversationORM.store_id == store_id,
                ConversationORM.customer_id == customer_id,
                ConversationORM.origin == origin,
            )
            .order_by(ConversationORM.created_at.desc(), ConversationORM.id.desc())
            .limit(1)
        )
        return result.scalars().first()

    async def for_order(self, store_id: str, order_id: str) -> Optional[ConversationORM]:
        result = await self.session.execute(
            select(ConversationORM)
            .where(ConversationORM.store_id == store_id, ConversationORM.order_id == order_id)
            .order_by(ConversationORM.created_at)
            .limit(1)
        )
        return result.scalars().first()

    def update_meta(self, conversation: ConversationORM, **changes: Any) -> None:
        # Reassign so the JSON column is flagged dirty
        conversation.meta = {**(conversation.meta or {}), **changes}

    async def save_turn(
        self,
        conversation_id: str,
        role: MessageRole,
        content: str,
        meta: Optional[Dict[str, Any]] = None,
    ) -> MessageORM:
        turn = MessageORM(
            conversation_id=conversation_id,
            role=MessageRole(role).value,
            content=content,
            meta=meta or {},
        )
        self.session.add(turn)
        await self.session.flush()
        return turn

    async def count_turns(self, conversation_id: str, role: Optional[MessageRole] = None) -> int:
        stmt = select(func.count(MessageORM.id)).where(MessageORM.conversation_id == conversation_id)
        if role is not None:
            stmt = stmt.where(MessageORM.role == MessageRole(role).value)
        result = await self.session.execute(stmt)
        return int(result.scalar_one())

    async def find_turn_for_event(
        self, conversation_id: str, event_id: str, role: MessageRole = MessageRole.USER, key: str = "event_id"
    ) -> Optional[MessageORM]:
        """Turn already written for a (redelivered) event, if any."""
        result = await self.session.execute(
            select(MessageORM)
            .where(MessageORM.conversation_id == conversation_id, MessageORM.role == MessageRole(role).value)
            .order_by(MessageORM.id.desc())
            .limit(50)
        )
        for turn in result.scalars().all():
            if (turn.meta or {}).get(key) == event_id:
                return turn
        return None

    async def history(self, conversation_id: str, limit: int = 20) -> List[ChatMessage]:
        """Last `limit` buyer/assistant turns, oldest first. System and agent notes stay internal."""
        result = await self.session.execute(
            select(MessageORM)
            .where(
                MessageORM.conversation_id == conversation_id,
                MessageORM.role.in_([MessageRole.USER.value, MessageRole.ASSISTANT.value]),
            )
            .order_by(MessageORM.id.desc())
            .limit(limit)
        )
        turns = list(reversed(result.scalars().all()))
        return [ChatMessage(role=t.role, content=t.content) for t in turns]
