"""
Handler Registry and event handlers for the OrderDesk queues.

Maps event types to coroutine handlers:
- ingestion.tick            -> IngestionPipeline.poll_once
- order.upserted            -> ConversationWorker.handle_order_upserted
- conversation.start        -> ConversationWorker.handle_start
- conversation.user_message -> ConversationWorker.handle_user_message

Handlers raise; the consumer decides between redelivery and dropping.
"""
import asyncio
import logging
import weakref
from typing import Any, Awaitable, Callable, Dict, Optional

from orderdesk.app.core.database import Database
from orderdesk.app.core.exceptions import ConfigurationError, InvalidTransitionError, PlanParseError
from orderdesk.app.core.logging import mask_phone, store_id_ctx
from orderdesk.app.events.bus import EventBus
from orderdesk.app.events.schemas import (
    BaseEvent,
    ConversationStartEvent,
    ConversationUserMessageEvent,
    OrderUpsertedEvent,
)
from orderdesk.app.models import (
    ConversationState,
    ConversationStatus,
    CustomerORM,
    MessageRole,
    OrderORM,
    OrderStatus,
    StoreORM,
    TERMINAL_STATES,
)
from orderdesk.app.services.conversation_prompts import context_brief, detect_locale, greeting, normalize_locale
from orderdesk.app.services.conversation_repository import ConversationRepository
from orderdesk.app.services.conversation_state import ConversationPlanner, ConversationStateMachine
from orderdesk.app.services.ingestion_pipeline import IngestionPipeline
from orderdesk.app.services.messaging import MessageSender, MessagingDispatcher
from orderdesk.app.services.similarity import SimilarityIndexer

logger = logging.getLogger(__name__)

Handler = Callable[[BaseEvent], Awaitable[Any]]


class HandlerRegistry:
    """event_type -> handler function."""

    def __init__(self):
        self._handlers: Dict[str, Handler] = {}

    def register_handler(self, event_type: str, handler: Handler) -> None:
        self._handlers[event_type] = handler
        logger.info(f"Handler registered: {event_type} → {getattr(handler, '__name__', handler)}")

    def get_handler(self, event_type: str) -> Optional[Handler]:
        return self._handlers.get(event_type)

    def has_handler(self, event_type: str) -> bool:
        return event_type in self._handlers

    async def handle_event(self, event: BaseEvent) -> None:
        """Dispatch event to its registered handler. Handler errors propagate."""
        handler = self.get_handler(event.event_type)
        if not handler:
            logger.debug(f"No handler for event type: {event.event_type}")
            return
        await handler(event)
        logger.debug(f"Event handled: {event.event_type} (id={event.event_id[:8]}...)")


def _order_summary(order: Optional[OrderORM]) -> Optional[Dict[str, Any]]:
    if order is None:
        return None
    return {
        "external_key": order.external_key,
        "status": order.status,
        "total": order.total,
        "currency": order.currency,
        "items": [
            {"sku": i.sku, "title": i.title, "qty": i.qty, "price": i.price, "currency": i.currency}
            for i in order.items
        ],
    }


class ConversationWorker:
    """
    Drives buyer conversations from queue events.

    Turns for one buyer are serialized by a per-(store, phone) lock, so
    replies are persisted and dispatched in the order they were decided.
    No database transaction is held across a model or provider call.
    """

    def __init__(
        self,
        db: Database,
        bus: EventBus,
        dispatcher: MessagingDispatcher,
        planner: ConversationPlanner,
        state_machine: Optional[ConversationStateMachine] = None,
        indexer: Optional[SimilarityIndexer] = None,
        history_limit: int = 20,
        default_locale: str = "en",
        auto_start: bool = True,
    ):
        self.db = db
        self.bus = bus
        self.dispatcher = dispatcher
        self.planner = planner
        self.state_machine = state_machine or ConversationStateMachine()
        self.indexer = indexer
        self.history_limit = history_limit
        self.default_locale = default_locale
        self.auto_start = auto_start
        # Entries vanish once no handler holds or awaits the lock
        self._locks: weakref.WeakValueDictionary = weakref.WeakValueDictionary()

    def _lock_for(self, store_id: str, to: str) -> asyncio.Lock:
        key = (store_id, to)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def register(self, registry: HandlerRegistry) -> None:
        registry.register_handler("order.upserted", self.handle_order_upserted)
        registry.register_handler("conversation.start", self.handle_start)
        registry.register_handler("conversation.user_message", self.handle_user_message)

    async def _store(self, session, store_id: str) -> StoreORM:
        store = await session.get(StoreORM, store_id)
        if store is None:
            raise ConfigurationError(f"Unknown store {store_id}")
        return store

    async def handle_order_upserted(self, event: OrderUpsertedEvent) -> None:
        """Publish conversation.start for an order nobody has contacted yet."""
        if not self.auto_start:
            return
        async with self.db.session() as session:
            order = await session.get(OrderORM, event.order_id)
            if order is None or order.store_id != event.store_id:
                logger.warning(f"order.upserted for unknown order {event.order_id}")
                return
            if order.status != OrderStatus.NEW.value or order.customer_id is None:
                return
            customer = await session.get(CustomerORM, order.customer_id)
            if customer is None or not customer.phone:
                return
            if await ConversationRepository(session).for_order(event.store_id, order.id) is not None:
                return
            start = ConversationStartEvent(
                store_id=event.store_id,
                to=customer.phone,
                customer_id=customer.id,
                order_id=order.id,
            )
        await self.bus.publish(start)
        logger.info(f"Conversation start queued for order {event.external_key}")

    async def handle_start(self, event: ConversationStartEvent) -> None:
        token = store_id_ctx.set(event.store_id)
        try:
            async with self._lock_for(event.store_id, event.to):
                await self._start(event)
        finally:
            store_id_ctx.reset(token)

    async def _start(self, event: ConversationStartEvent) -> None:
        sender = await self.dispatcher.resolve_sender(event.store_id)
        buyer_text = (event.buyer_text or "").strip()

        async with self.db.session() as session:
            repo = ConversationRepository(session)
            store = await self._store(session, event.store_id)
            customer = await repo.find_or_create_customer(event.store_id, event.to, event.customer_id)
            conversation = await repo.find_or_create(
                event.store_id, customer.id, order_id=event.order_id, to=event.to
            )
            if await repo.count_turns(conversation.id) > 0:
                logger.info(f"Conversation {conversation.id} already started; skipping")
                return

            locale = normalize_locale(event.locale or store.locale, self.default_locale)
            order = await session.get(OrderORM, conversation.order_id) if conversation.order_id else None
            conversation_id = conversation.id
            store_name = store.name

            if buyer_text:
                await repo.save_turn(conversation_id, MessageRole.USER, buyer_text, {"event_id": event.event_id})
                repo.update_meta(conversation, to=event.to, preferred_locale=detect_locale(buyer_text) or locale)
            else:
                text = greeting(store_name, locale, order.external_key if order else None)
                await repo.save_turn(conversation_id, MessageRole.ASSISTANT, text, {"event_id": event.event_id})
                repo.update_meta(
                    conversation,
                    to=event.to,
                    preferred_locale=locale,
                    state=ConversationState.AWAIT_CHOICE.value,
                )
                conversation.status = ConversationStatus.ACTIVE.value

        if buyer_text:
            await self._respond(event.store_id, conversation_id, event.to, sender, event.event_id, event.context)
        else:
            await self._dispatch(event.store_id, conversation_id, event.to, text, sender)

    async def handle_user_message(self, event: ConversationUserMessageEvent) -> None:
        token = store_id_ctx.set(event.store_id)
        try:
            async with self._lock_for(event.store_id, event.to):
                await self._user_message(event)
        finally:
            store_id_ctx.reset(token)

    async def _user_message(self, event: ConversationUserMessageEvent) -> None:
        sender = await self.dispatcher.resolve_sender(event.store_id)
        text = (event.text or "").strip()
        location = (event.context or {}).get("location")

        async with self.db.session() as session:
            repo = ConversationRepository(session)
            store = await self._store(session, event.store_id)
            if event.conversation_id:
                conversation = await repo.get(event.store_id, event.conversation_id)
            else:
                customer = await repo.find_or_create_customer(event.store_id, event.to)
                conversation = await repo.latest_for_customer(event.store_id, customer.id)
                if conversation is None:
                    conversation = await repo.find_or_create(event.store_id, customer.id, to=event.to)
            conversation_id = conversation.id

            if await repo.find_turn_for_event(conversation_id, event.event_id, MessageRole.ASSISTANT, "reply_to"):
                logger.info(f"Event {event.event_id[:8]} already answered; skipping")
                return
            if await repo.find_turn_for_event(conversation_id, event.event_id) is None:
                await repo.save_turn(
                    conversation_id,
                    MessageRole.USER,
                    text,
                    {"event_id": event.event_id, **({"location": location} if location else {})},
                )

            changes: Dict[str, Any] = {"to": event.to}
            detected = detect_locale(text) or (normalize_locale(event.locale) if event.locale else None)
            if detected:
                changes["preferred_locale"] = detected
            if location:
                changes["address_ok"] = True
                changes["location"] = location
            repo.update_meta(conversation, **changes)

            order = await session.get(OrderORM, conversation.order_id) if conversation.order_id else None
            state = self.state_machine.derive_state(
                conversation.meta, order.status if order else None, has_messages=True
            )
            if state in TERMINAL_STATES or conversation.status == ConversationStatus.CLOSED.value:
                logger.info(f"Conversation {conversation_id} is {state.value}; no automated reply")
                return

        await self._respond(event.store_id, conversation_id, event.to, sender, event.event_id, event.context)

    async def _respond(
        self,
        store_id: str,
        conversation_id: str,
        to: str,
        sender: MessageSender,
        event_id: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Plan the next turn, persist it atomically with its effects, then dispatch."""
        async with self.db.session() as session:
            repo = ConversationRepository(session)
            conversation = await repo.get(store_id, conversation_id)
            store = await self._store(session, store_id)
            order = await session.get(OrderORM, conversation.order_id) if conversation.order_id else None
            history = await repo.history(conversation_id, self.history_limit)
            state = self.state_machine.derive_state(conversation.meta, order.status if order else None, has_messages=True)
            locale = (conversation.meta or {}).get("preferred_locale") or normalize_locale(store.locale, self.default_locale)
            store_name = store.name
            summary = _order_summary(order)

        last_user = next((m.content for m in reversed(history) if m.role == "user"), "")
        similar = []
        if self.indexer is not None and last_user:
            similar = await self.indexer.find_similar_rows(store_id, last_user, k=3)
        extra = {k: v for k, v in (context or {}).items() if k not in ("provider", "message_id")}
        context_text = context_brief(store_name, summary, similar, extra or None)

        try:
            plan = await self.planner.plan(store_name, locale, history, context_text)
            next_state = self.state_machine.next_state(state, plan)
        except (PlanParseError, InvalidTransitionError) as e:
            logger.warning(f"Plan rejected for conversation {conversation_id}: {e}")
            async with self.db.session() as session:
                await ConversationRepository(session).save_turn(
                    conversation_id,
                    MessageRole.SYSTEM,
                    f"Plan rejected: {e}",
                    {"reply_to": event_id, "raw": getattr(e, "raw_text", "")[:2000], "state": state.value},
                )
            return

        order_status = self.state_machine.order_status_for(plan)
        async with self.db.session() as session:
            repo = ConversationRepository(session)
            conversation = await repo.get(store_id, conversation_id)
            await repo.save_turn(
                conversation_id,
                MessageRole.ASSISTANT,
                plan.message,
                {"reply_to": event_id, "action": plan.action, "status": plan.status, "need": plan.need},
            )
            meta_changes: Dict[str, Any] = {"state": next_state.value, "last_action": plan.action}
            if plan.address_text:
                meta_changes["address_text"] = plan.address_text
            if plan.need and "address" in plan.need:
                meta_changes["address_needed"] = True
            repo.update_meta(conversation, **meta_changes)
            conversation.status = (
                ConversationStatus.CLOSED.value if next_state in TERMINAL_STATES else ConversationStatus.ACTIVE.value
            )
            if conversation.order_id and order_status:
                order = await session.get(OrderORM, conversation.order_id)
                if order is not None:
                    order.status = order_status
                    order.decision_by = "ai"
                    order.decision_result = plan.model_dump()

        logger.info(
            f"Conversation {conversation_id}: {state.value} --{plan.action}--> {next_state.value}",
            extra={"extra_data": {"to": mask_phone(to), "order_status": order_status}},
        )
        if plan.message:
            await self._dispatch(store_id, conversation_id, to, plan.message, sender)

    async def _dispatch(self, store_id: str, conversation_id: str, to: str, body: str, sender: MessageSender) -> None:
        result = await self.dispatcher.send_text(store_id, to, body, sender=sender)
        async with self.db.session() as session:
            repo = ConversationRepository(session)
            if result.ok:
                conversation = await repo.get(store_id, conversation_id)
                repo.update_meta(conversation, last_message_id=result.id, delivery_ok=True)
            else:
                await repo.save_turn(
                    conversation_id,
                    MessageRole.SYSTEM,
                    f"Send failed: {result.error}",
                    {"provider": sender.provider},
                )


def build_ingestion_handler(pipeline: IngestionPipeline) -> Handler:
    async def handle_ingestion_tick(event: BaseEvent) -> None:
        await pipeline.poll_once()

    return handle_ingestion_tick
