"""
Integration tests for the conversation worker: greeting, plan application,
rejections, delivery failures and redelivered events.
"""
import asyncio
import json

import pytest
from google.genai.errors import ServerError
from sqlalchemy import select

from conftest import FakeLLM, seed_store
from orderdesk.app.core.exceptions import ChannelConfigurationError
from orderdesk.app.events.bus import CONVERSATION_QUEUE
from orderdesk.app.events.schemas import ConversationStartEvent, ConversationUserMessageEvent, OrderUpsertedEvent
from orderdesk.app.models import ConversationORM, MessageORM, OrderORM
from orderdesk.app.models.normalized_order import NormalizedCustomer, NormalizedItem, NormalizedOrder
from orderdesk.app.services.conversation_state import ConversationPlanner
from orderdesk.app.services.order_upsert import OrderUpsertEngine
from orderdesk.app.workers.consumer import EventConsumer
from orderdesk.app.workers.handlers import ConversationWorker, HandlerRegistry

PHONE = "+212612345678"
CONFIRM = json.dumps({"action": "CONFIRM", "message": "Great, confirmed!", "status": "completed"})


async def _order(db, store_id, key="A1", phone=PHONE) -> OrderORM:
    order = NormalizedOrder(
        external_key=key,
        customer=NormalizedCustomer(name="Sara", phone=phone),
        items=[NormalizedItem(title="Widget", qty=2, price=19.99)],
        currency="MAD",
    )
    return await OrderUpsertEngine(db).upsert(store_id, order, raw_payload={"order_id": key})


def _worker(db, bus, dispatcher, llm) -> ConversationWorker:
    return ConversationWorker(db, bus, dispatcher, ConversationPlanner(llm), history_limit=20)


async def _conversation(db) -> ConversationORM:
    async with db.session() as session:
        return (await session.execute(select(ConversationORM))).scalars().one()


async def _turns(db, role=None):
    async with db.session() as session:
        stmt = select(MessageORM).order_by(MessageORM.id)
        if role:
            stmt = stmt.where(MessageORM.role == role)
        return (await session.execute(stmt)).scalars().all()


async def _order_status(db, order_id) -> str:
    async with db.session() as session:
        return (await session.get(OrderORM, order_id)).status


async def _started(db, bus, dispatcher, llm):
    store_id = await seed_store(db)
    order = await _order(db, store_id)
    worker = _worker(db, bus, dispatcher, llm)
    await worker.handle_start(ConversationStartEvent(
        store_id=store_id, to=PHONE, customer_id=order.customer_id, order_id=order.id,
    ))
    return store_id, order, worker


@pytest.mark.asyncio
async def test_start_greets_the_buyer_about_the_order(db, bus, dispatcher, outbox):
    store_id, order, _ = await _started(db, bus, dispatcher, FakeLLM())

    conversation = await _conversation(db)
    assert conversation.order_id == order.id
    assert conversation.status == "active"
    assert conversation.meta["state"] == "await_choice"
    assert conversation.meta["to"] == PHONE
    assert conversation.meta["delivery_ok"] is True
    assert conversation.meta["last_message_id"] == "wamid.1"

    assert outbox.sent[0][0] == PHONE
    assert outbox.bodies()[0].startswith("Hi! This is Atlas Shop. Do you confirm order A1?")
    assert [t.role for t in await _turns(db)] == ["assistant"]


@pytest.mark.asyncio
async def test_start_is_skipped_once_the_conversation_has_turns(db, bus, dispatcher, outbox):
    store_id, order, worker = await _started(db, bus, dispatcher, FakeLLM())
    await worker.handle_start(ConversationStartEvent(
        store_id=store_id, to=PHONE, customer_id=order.customer_id, order_id=order.id,
    ))
    assert len(outbox.sent) == 1
    assert len(await _turns(db)) == 1


@pytest.mark.asyncio
async def test_buyer_confirms_the_order(db, bus, dispatcher, outbox):
    llm = FakeLLM([CONFIRM])
    store_id, order, worker = await _started(db, bus, dispatcher, llm)

    await worker.handle_user_message(ConversationUserMessageEvent(store_id=store_id, to=PHONE, text="yes please confirm"))

    conversation = await _conversation(db)
    assert conversation.meta["state"] == "confirmed"
    assert conversation.meta["preferred_locale"] == "en"
    assert conversation.status == "closed"

    async with db.session() as session:
        stored = await session.get(OrderORM, order.id)
    assert stored.status == "completed"
    assert stored.decision_by == "ai"
    assert stored.decision_result["action"] == "CONFIRM"

    assistant = await _turns(db, "assistant")
    assert [t.content for t in assistant][1:] == ["Great, confirmed!"]
    assert outbox.bodies()[-1] == "Great, confirmed!"

    # The model saw the greeting and the buyer's reply, plus the order context
    sent = llm.calls[0]
    assert [m.role for m in sent[2:]] == ["assistant", "user"]
    assert "Order A1: status=new" in sent[1].content


@pytest.mark.asyncio
async def test_redelivered_message_is_answered_once(db, bus, dispatcher, outbox):
    llm = FakeLLM([json.dumps({"action": "ASK_MORE_INFO", "message": "Which size?", "need": ["other"]})])
    store_id, _, worker = await _started(db, bus, dispatcher, llm)
    event = ConversationUserMessageEvent(store_id=store_id, to=PHONE, text="I want to change it")

    await worker.handle_user_message(event)
    await worker.handle_user_message(event)

    assert len(llm.calls) == 1
    assert [t.role for t in await _turns(db)] == ["assistant", "user", "assistant"]
    assert outbox.bodies().count("Which size?") == 1
    assert (await _conversation(db)).meta["state"] == "clarify"


@pytest.mark.asyncio
async def test_unparseable_plan_changes_nothing(db, bus, dispatcher, outbox):
    llm = FakeLLM(["Sure, I will confirm that for you!"])
    store_id, order, worker = await _started(db, bus, dispatcher, llm)

    await worker.handle_user_message(ConversationUserMessageEvent(store_id=store_id, to=PHONE, text="yes"))

    assert [t.role for t in await _turns(db)] == ["assistant", "user", "system"]
    system = (await _turns(db, "system"))[0]
    assert system.content.startswith("Plan rejected:")
    assert system.meta["raw"] == "Sure, I will confirm that for you!"
    assert (await _conversation(db)).meta["state"] == "await_choice"
    assert await _order_status(db, order.id) == "new"
    assert len(outbox.sent) == 1


@pytest.mark.asyncio
async def test_forbidden_transition_changes_nothing(db, bus, dispatcher, outbox):
    llm = FakeLLM([json.dumps({"action": "REQUEST_LOCATION", "message": "Please share your location."}), CONFIRM])
    store_id, order, worker = await _started(db, bus, dispatcher, llm)

    await worker.handle_user_message(ConversationUserMessageEvent(store_id=store_id, to=PHONE, text="new address"))
    assert (await _conversation(db)).meta["state"] == "address_change"

    await worker.handle_user_message(ConversationUserMessageEvent(store_id=store_id, to=PHONE, text="yes"))

    assert (await _conversation(db)).meta["state"] == "address_change"
    assert await _order_status(db, order.id) == "new"
    assert (await _turns(db, "system"))[-1].content == "Plan rejected: Action CONFIRM is not allowed in state address_change"
    assert outbox.bodies()[-1] == "Please share your location."


@pytest.mark.asyncio
async def test_location_marks_address_ok(db, bus, dispatcher, outbox):
    llm = FakeLLM([
        json.dumps({"action": "REQUEST_LOCATION", "message": "Please share your location."}),
        json.dumps({"action": "ACK_LOCATION", "message": "Thanks, got it.", "address_text": "Maarif, Casablanca"}),
    ])
    store_id, _, worker = await _started(db, bus, dispatcher, llm)

    await worker.handle_user_message(ConversationUserMessageEvent(store_id=store_id, to=PHONE, text="new address"))
    await worker.handle_user_message(ConversationUserMessageEvent(
        store_id=store_id, to=PHONE, text="LOCATION 33.57,-7.59",
        context={"provider": "meta", "location": {"latitude": 33.57, "longitude": -7.59}},
    ))

    meta = (await _conversation(db)).meta
    assert meta["state"] == "await_choice"
    assert meta["address_ok"] is True
    assert meta["address_text"] == "Maarif, Casablanca"
    assert meta["location"] == {"latitude": 33.57, "longitude": -7.59}
    # The location reached the model as extra context
    assert "latitude" in llm.calls[1][1].content


@pytest.mark.asyncio
async def test_failed_delivery_is_recorded_not_rolled_back(db, bus, dispatcher, outbox):
    outbox.fail = "HTTP 500: provider down"
    store_id, _, _ = await _started(db, bus, dispatcher, FakeLLM())

    turns = await _turns(db)
    assert [t.role for t in turns] == ["assistant", "system"]
    assert turns[1].content == "Send failed: HTTP 500: provider down"
    conversation = await _conversation(db)
    assert conversation.meta["state"] == "await_choice"
    assert "delivery_ok" not in conversation.meta


@pytest.mark.asyncio
async def test_terminal_conversation_only_records_the_buyer(db, bus, dispatcher, outbox):
    llm = FakeLLM([CONFIRM])
    store_id, _, worker = await _started(db, bus, dispatcher, llm)
    await worker.handle_user_message(ConversationUserMessageEvent(store_id=store_id, to=PHONE, text="yes please confirm"))
    sent_before = len(outbox.sent)

    await worker.handle_user_message(ConversationUserMessageEvent(store_id=store_id, to=PHONE, text="thanks!"))

    assert len(llm.calls) == 1
    assert len(outbox.sent) == sent_before
    assert (await _turns(db, "user"))[-1].content == "thanks!"


@pytest.mark.asyncio
async def test_store_without_channel_fails_permanently(db, bus, dispatcher, outbox):
    store_id = await seed_store(db, channel=None)
    worker = _worker(db, bus, dispatcher, FakeLLM())

    with pytest.raises(ChannelConfigurationError):
        await worker.handle_start(ConversationStartEvent(store_id=store_id, to=PHONE))
    assert await _turns(db) == []
    assert outbox.sent == []


@pytest.mark.asyncio
async def test_buyer_initiated_start_is_answered_in_their_language(db, bus, dispatcher, outbox):
    llm = FakeLLM([json.dumps({"action": "ASK_CHOICE", "message": "Bonjour ! Confirmer ou annuler ?"})])
    store_id = await seed_store(db, locale="en")
    worker = _worker(db, bus, dispatcher, llm)

    await worker.handle_start(ConversationStartEvent(store_id=store_id, to=PHONE, buyer_text="Bonjour, ma commande ?"))

    conversation = await _conversation(db)
    assert conversation.meta["preferred_locale"] == "fr"
    assert conversation.order_id is None
    assert [t.role for t in await _turns(db)] == ["user", "assistant"]
    assert "(fr)" in llm.calls[0][0].content
    assert outbox.bodies() == ["Bonjour ! Confirmer ou annuler ?"]


@pytest.mark.asyncio
async def test_new_order_with_phone_queues_a_start(db, bus, dispatcher):
    store_id = await seed_store(db)
    order = await _order(db, store_id)
    worker = _worker(db, bus, dispatcher, FakeLLM())
    registry = HandlerRegistry()
    worker.register(registry)

    await registry.handle_event(OrderUpsertedEvent(store_id=store_id, order_id=order.id, external_key="A1"))

    queue = bus.queue(CONVERSATION_QUEUE)
    assert queue.qsize() == 1
    start = queue.get_nowait()
    assert isinstance(start, ConversationStartEvent)
    assert (start.to, start.order_id, start.customer_id) == (PHONE, order.id, order.customer_id)

    # Once the conversation exists the order is not announced again
    await worker.handle_start(start)
    await registry.handle_event(OrderUpsertedEvent(store_id=store_id, order_id=order.id, external_key="A1"))
    assert queue.qsize() == 0


@pytest.mark.asyncio
async def test_orders_without_phone_or_from_other_stores_are_ignored(db, bus, dispatcher):
    store_id = await seed_store(db)
    other_store = await seed_store(db, name="Other Shop")
    worker = _worker(db, bus, dispatcher, FakeLLM())

    no_phone = await OrderUpsertEngine(db).upsert(
        store_id,
        NormalizedOrder(external_key="B1", customer=NormalizedCustomer(email="b@example.com")),
        raw_payload={},
    )
    await worker.handle_order_upserted(OrderUpsertedEvent(store_id=store_id, order_id=no_phone.id, external_key="B1"))
    order = await _order(db, store_id)
    await worker.handle_order_upserted(OrderUpsertedEvent(store_id=other_store, order_id=order.id, external_key="A1"))

    assert bus.queue(CONVERSATION_QUEUE).qsize() == 0


async def _wait_for(predicate, timeout=2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.mark.asyncio
async def test_overloaded_model_redelivers_the_buyer_message(db, bus, dispatcher, outbox):
    overloaded = ServerError(503, {"error": {"code": 503, "message": "overloaded", "status": "UNAVAILABLE"}})
    llm = FakeLLM([overloaded, CONFIRM])
    store_id, order, worker = await _started(db, bus, dispatcher, llm)
    registry = HandlerRegistry()
    worker.register(registry)
    consumer = EventConsumer(bus, CONVERSATION_QUEUE, registry, max_redeliveries=3, redelivery_delay_seconds=0)
    consumer.start()
    try:
        await bus.publish(ConversationUserMessageEvent(store_id=store_id, to=PHONE, text="yes please confirm"))
        await _wait_for(lambda: len(outbox.sent) == 2)
    finally:
        await consumer.stop()

    assert len(llm.calls) == 2
    assert outbox.bodies()[-1] == "Great, confirmed!"
    # The redelivered event does not store the buyer's text twice
    assert [t.role for t in await _turns(db)] == ["assistant", "user", "assistant"]
    assert await _order_status(db, order.id) == "completed"


class SlowLLM(FakeLLM):
    async def _chat(self, messages, temperature, max_tokens):
        await asyncio.sleep(0.05)
        return await super()._chat(messages, temperature, max_tokens)


@pytest.mark.asyncio
async def test_concurrent_messages_from_one_buyer_are_handled_in_turn(db, bus, dispatcher, outbox):
    llm = SlowLLM([
        json.dumps({"action": "ASK_MORE_INFO", "message": "Which size?"}),
        json.dumps({"action": "ASK_CHOICE", "message": "Confirm or cancel?"}),
    ])
    store_id, _, worker = await _started(db, bus, dispatcher, llm)

    await asyncio.gather(
        worker.handle_user_message(ConversationUserMessageEvent(store_id=store_id, to=PHONE, text="I want a change")),
        worker.handle_user_message(ConversationUserMessageEvent(store_id=store_id, to=PHONE, text="size M please")),
    )

    turns = [(t.role, t.content) for t in await _turns(db)]
    assert [role for role, _ in turns] == ["assistant", "user", "assistant", "user", "assistant"]
    assert [content for _, content in turns[1:]] == [
        "I want a change", "Which size?", "size M please", "Confirm or cancel?",
    ]
    assert outbox.bodies()[1:] == ["Which size?", "Confirm or cancel?"]
    # The second plan saw the first exchange
    assert [m.content for m in llm.calls[1][-3:]] == ["I want a change", "Which size?", "size M please"]
    # Buyer locks are released once nobody needs them
    assert len(worker._locks) == 0
