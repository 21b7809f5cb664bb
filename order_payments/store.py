"""
Order persistence with optimistic concurrency.

Writes go through `mutate`, which reads the row with its version, lets the
caller change it, and commits an UPDATE conditioned on that version. A
conflicting writer makes the flush fail with StaleDataError, and the whole
read-modify-write restarts from a fresh read.
"""

import json
import logging
from typing import Awaitable, Callable, Sequence, TypeVar
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt

from order_payments.errors import ConcurrentUpdate, OrderNotFound
from order_payments.models import HoldState, Order, OrderStatus
from order_payments.schemas import LineItem

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_ATTEMPTS = 3


class OrderStore:
    def __init__(self, session_factory: async_sessionmaker, max_attempts: int = MAX_ATTEMPTS):
        self.session_factory = session_factory
        self.max_attempts = max_attempts

    async def create(
        self,
        customer_id: str,
        seller_id: str,
        line_items: Sequence[LineItem],
        currency: str = "CLP",
    ) -> Order:
        order = Order(
            id=str(uuid4()),
            customer_id=customer_id,
            seller_id=seller_id,
            items=json.dumps([item.model_dump() for item in line_items]),
            total_amount=sum(item.quantity * item.unit_price for item in line_items),
            currency=currency,
            status=OrderStatus.PENDING,
            hold_state=HoldState.NONE,
            authorized_amount=0,
            refunded_amount=0,
        )
        async with self.session_factory() as session:
            session.add(order)
            await session.commit()
        logger.info("Order %s created, total %s %s", order.id, order.total_amount, currency)
        return order

    @staticmethod
    async def get(session: AsyncSession, order_id: str) -> Order:
        result = await session.execute(select(Order).where(Order.id == order_id))
        order = result.scalar_one_or_none()
        if order is None:
            raise OrderNotFound(f"Order {order_id} not found")
        return order

    async def load(self, order_id: str) -> Order:
        async with self.session_factory() as session:
            return await self.get(session, order_id)

    async def mutate(
        self,
        order_id: str,
        change: Callable[[AsyncSession, Order], Awaitable[T]],
    ) -> T:
        """Run `change` against a freshly read order and commit it under version check.

        `change` may be called more than once; anything it raises other than a
        version conflict aborts the write and propagates unchanged.
        """
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.max_attempts),
                retry=retry_if_exception_type(StaleDataError),
                reraise=True,
            ):
                with attempt:
                    if attempt.retry_state.attempt_number > 1:
                        logger.info("Version conflict on order %s, re-reading (attempt %d)",
                                    order_id, attempt.retry_state.attempt_number)
                    async with self.session_factory() as session:
                        order = await self.get(session, order_id)
                        result = await change(session, order)
                        await session.commit()
                        return result
        except StaleDataError as exc:
            logger.warning("Giving up on order %s after %d version conflicts", order_id, self.max_attempts)
            raise ConcurrentUpdate(
                f"Order {order_id} kept changing underneath the update"
            ) from exc
