"""
OrderLifecycleController: the entry point used by the API and operator tooling.

Every failure is raised as a PaymentError carrying the order's current view
(`error.order`), which is the state left in place by the failed call.
"""

import logging
from typing import Iterable, Optional, Tuple

from pydantic import ValidationError

from order_payments.errors import InvalidRequest, InvalidState, InvalidTransition, OrderNotFound, PaymentError
from order_payments.holds import HoldManager
from order_payments.messaging import publish_event
from order_payments.models import HoldState, OrderStatus
from order_payments.schemas import OrderCreate, OrderRead, ReturnUrls
from order_payments.state_machine import CAPTURED_STATES, check_fulfillment_transition, is_forward
from order_payments.store import OrderStore

logger = logging.getLogger(__name__)


class OrderLifecycleController:
    def __init__(
        self,
        store: OrderStore,
        holds: HoldManager,
        public_base_url: str = "http://localhost:8000",
        currency: str = "CLP",
    ):
        self.store = store
        self.holds = holds
        self.public_base_url = public_base_url
        self.currency = currency

    async def create_held_order(
        self,
        customer_id: str,
        seller_id: str,
        line_items: Iterable,
        return_urls: Optional[ReturnUrls] = None,
    ) -> Tuple[OrderRead, str]:
        try:
            request = OrderCreate(customer_id=customer_id, seller_id=seller_id, items=list(line_items))
        except ValidationError as exc:
            raise InvalidRequest(f"Invalid order: {exc.errors(include_url=False)}") from exc

        order = await self.store.create(request.customer_id, request.seller_id, request.items, self.currency)
        await publish_event("order_exchange", "order.created", {
            "event_type": "OrderCreated",
            "order_id": order.id,
            "customer_id": order.customer_id,
            "seller_id": order.seller_id,
            "total_amount": order.total_amount,
        })
        return await self._open_checkout(order.id, request.items, return_urls)

    async def retry_checkout(self, order_id: str, return_urls: Optional[ReturnUrls] = None) -> Tuple[OrderRead, str]:
        """Create the preference again for an order whose first attempt failed."""
        order = await self._load(order_id)
        items = OrderRead.from_order(order).items
        return await self._open_checkout(order_id, items, return_urls)

    async def capture(self, order_id: str, amount: Optional[int] = None) -> OrderRead:
        order = await self._guard(order_id, self.holds.capture(order_id, amount))
        await self._announce(order, "hold.captured", "PaymentCaptured", amount=order.captured_amount)
        return OrderRead.from_order(order)

    async def cancel(self, order_id: str) -> OrderRead:
        order = await self._guard(order_id, self.holds.cancel(order_id))
        if order.hold_state == HoldState.CANCELLED:
            await self._announce(order, "hold.cancelled", "PaymentCancelled")
        await self._announce(order, "order.status_changed", "OrderStatusChanged", status=order.status.value)
        return OrderRead.from_order(order)

    async def refund(self, order_id: str, amount: Optional[int] = None) -> OrderRead:
        order = await self._guard(order_id, self.holds.refund(order_id, amount))
        await self._announce(order, "hold.refunded", "PaymentRefunded",
                             refunded_amount=order.refunded_amount, hold_state=order.hold_state.value)
        return OrderRead.from_order(order)

    async def sync_payment(self, order_id: str) -> OrderRead:
        order = await self._guard(order_id, self.holds.sync(order_id))
        return OrderRead.from_order(order)

    async def get_order(self, order_id: str) -> OrderRead:
        return OrderRead.from_order(await self._load(order_id))

    async def advance_fulfillment(self, order_id: str, status: OrderStatus) -> OrderRead:
        """Kitchen/driver progress: preparing, ready, delivering, delivered."""
        if status == OrderStatus.CANCELLED:
            raise InvalidRequest("Use cancel to cancel an order", order=await self._view(order_id))

        async def change(session, order):
            check_fulfillment_transition(order.status, status)
            if not is_forward(order.status, status):
                raise InvalidTransition(
                    f"Order {order_id} cannot go back from {order.status.value} to {status.value}"
                )
            if status == OrderStatus.DELIVERED and order.hold_state not in CAPTURED_STATES:
                raise InvalidState(
                    f"Order {order_id} cannot be delivered while its payment is {order.hold_state.value}"
                )
            order.status = status
            return order

        order = await self._guard(order_id, self.store.mutate(order_id, change))
        await self._announce(order, "order.status_changed", "OrderStatusChanged", status=status.value)
        return OrderRead.from_order(order)

    # ── Internals ────────────────────────────────────

    async def _open_checkout(self, order_id, items, return_urls) -> Tuple[OrderRead, str]:
        urls = return_urls or ReturnUrls.for_order(self.public_base_url, order_id)
        try:
            order = await self.holds.open_hold(order_id, items, urls)
        except PaymentError as exc:
            # The order stays pending/none so it can be reconciled or retried
            logger.error("Order %s: could not create payment preference: %s", order_id, exc)
            exc.order = await self._view(order_id)
            raise
        return OrderRead.from_order(order), order.checkout_url

    async def _guard(self, order_id: str, operation):
        try:
            return await operation
        except PaymentError as exc:
            logger.warning("Order %s: %s failed: %s", order_id, exc.kind, exc)
            if exc.order is None:
                exc.order = await self._view(order_id)
            raise

    async def _load(self, order_id: str):
        return await self.store.load(order_id)

    async def _view(self, order_id: str) -> Optional[OrderRead]:
        try:
            return OrderRead.from_order(await self.store.load(order_id))
        except OrderNotFound:
            return None

    async def _announce(self, order, routing_key: str, event_type: str, **extra) -> None:
        await publish_event("order_exchange", routing_key, {
            "event_type": event_type,
            "order_id": order.id,
            **extra,
        })
