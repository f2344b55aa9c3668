"""
Order Upsert Engine.

Reconciles one NormalizedOrder against the store's customers and orders:

1. Resolve the customer by phone, then email; create when neither matches.
2. Resolve the order by (store_id, external_key); update it or insert it
   with status `new`.
3. Replace the order's items with the freshly normalized set.

All three steps run in one transaction. `order.upserted` is published only
after the commit, so no consumer ever sees a partially applied order.
"""

from typing import Any, Dict, Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from orderdesk.app.core.database import Database
from orderdesk.app.core.logging import get_logger, mask_phone
from orderdesk.app.events.bus import EventBus
from orderdesk.app.events.schemas import OrderUpsertedEvent
from orderdesk.app.models import CustomerORM, OrderItemORM, OrderORM, OrderStatus
from orderdesk.app.models.normalized_order import NormalizedCustomer, NormalizedOrder

logger = get_logger(__name__)


async def find_or_create_customer(
    session: AsyncSession, store_id: str, customer: Optional[NormalizedCustomer]
) -> Optional[CustomerORM]:
    """Phone match wins over email match; None when the order carries no contact."""
    if customer is None or not customer.has_contact:
        return None

    found = None
    if customer.phone:
        result = await session.execute(
            select(CustomerORM)
            .where(CustomerORM.store_id == store_id, CustomerORM.phone == customer.phone)
            .order_by(CustomerORM.created_at, CustomerORM.id)
            .limit(1)
        )
        found = result.scalars().first()
    if found is None and customer.email:
        result = await session.execute(
            select(CustomerORM)
            .where(CustomerORM.store_id == store_id, CustomerORM.email == customer.email)
            .order_by(CustomerORM.created_at, CustomerORM.id)
            .limit(1)
        )
        found = result.scalars().first()

    if found is not None:
        # Fill gaps only; never overwrite what the seller already has
        if customer.name and not found.name:
            found.name = customer.name
        if customer.phone and not found.phone:
            found.phone = customer.phone
        if customer.email and not found.email:
            found.email = customer.email
        return found

    created = CustomerORM(store_id=store_id, name=customer.name, phone=customer.phone, email=customer.email)
    session.add(created)
    await session.flush()
    logger.info(f"Customer created ({mask_phone(customer.phone)})")
    return created


class OrderUpsertEngine:
    """Atomic customer/order/items upsert keyed by (store_id, external_key)."""

    def __init__(self, db: Database, bus: Optional[EventBus] = None):
        self.db = db
        self.bus = bus

    async def upsert(
        self,
        store_id: str,
        order: NormalizedOrder,
        raw_payload: Dict[str, Any],
        default_external_key: Optional[str] = None,
    ) -> OrderORM:
        """
        Apply `order` for `store_id` and return the stored order.

        A concurrent insert of the same external key surfaces as an
        IntegrityError; the whole unit is retried once, at which point the
        other writer's row is found and updated instead.
        """
        external_key = order.external_key or default_external_key
        if not external_key:
            raise ValueError("Order has no external key")

        try:
            stored = await self._apply(store_id, external_key, order, raw_payload)
        except IntegrityError:
            logger.info(f"Concurrent upsert of order {external_key}; retrying once")
            stored = await self._apply(store_id, external_key, order, raw_payload)

        if self.bus is not None:
            await self.bus.publish(OrderUpsertedEvent(
                store_id=store_id,
                order_id=stored.id,
                external_key=stored.external_key,
            ))
        return stored

    async def _apply(
        self, store_id: str, external_key: str, order: NormalizedOrder, raw_payload: Dict[str, Any]
    ) -> OrderORM:
        async with self.db.session_factory() as session:
            async with session.begin():
                customer = await find_or_create_customer(session, store_id, order.customer)

                result = await session.execute(
                    select(OrderORM).where(OrderORM.store_id == store_id, OrderORM.external_key == external_key)
                )
                stored = result.scalars().first()
                if stored is None:
                    stored = OrderORM(
                        store_id=store_id,
                        external_key=external_key,
                        status=OrderStatus.NEW.value,
                        raw_payload=raw_payload,
                    )
                    session.add(stored)
                    created = True
                else:
                    stored.raw_payload = raw_payload
                    created = False

                if customer is not None:
                    stored.customer_id = customer.id
                stored.total = order.total
                stored.currency = order.currency
                stored.notes = order.notes
                await session.flush()

                await session.execute(delete(OrderItemORM).where(OrderItemORM.order_id == stored.id))
                for position, item in enumerate(order.items):
                    session.add(OrderItemORM(
                        order_id=stored.id,
                        position=position,
                        sku=item.sku,
                        title=item.title,
                        qty=item.qty,
                        price=item.price,
                        currency=item.currency or order.currency,
                    ))
                await session.flush()

            await session.refresh(stored, attribute_names=["items"])

        logger.info(
            f"Order {'created' if created else 'updated'}: {external_key} ({len(order.items)} items)",
            extra={"extra_data": {"order_id": stored.id}},
        )
        return stored
