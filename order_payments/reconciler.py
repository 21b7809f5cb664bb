"""
WebhookReconciler turns an untrusted, at-least-once payment notification
into at most one order update.

The notification only says "payment X changed". Amounts and status always
come from a fresh `get_payment`, so redelivered or reordered notifications
converge on whatever the processor reports now.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from order_payments.errors import InvalidRequest, OrderNotFound
from order_payments.gateway import PaymentGatewayClient
from order_payments.ledger import IdempotencyLedger, event_key
from order_payments.messaging import publish_event
from order_payments.schemas import WebhookNotification
from order_payments.state_machine import apply_snapshot
from order_payments.store import OrderStore

logger = logging.getLogger(__name__)

APPLIED = "applied"
DUPLICATE = "duplicate"
IGNORED = "ignored"


@dataclass
class ReconcileResult:
    outcome: str
    order_id: Optional[str] = None
    event_key: Optional[str] = None


class WebhookReconciler:
    def __init__(self, gateway: PaymentGatewayClient, store: OrderStore, ledger: IdempotencyLedger):
        self.gateway = gateway
        self.store = store
        self.ledger = ledger

    async def handle(self, notification: WebhookNotification) -> ReconcileResult:
        """Process one notification.

        Raises GatewayUnavailable or ConcurrentUpdate when the processor
        should redeliver; nothing is recorded in that case.
        """
        if notification.type != "payment":
            logger.info("Ignoring %r notification", notification.type)
            return ReconcileResult(IGNORED)
        payment_id = notification.data.id
        if not payment_id:
            raise InvalidRequest("Payment notification without data.id")
        return await self.reconcile_payment(payment_id)

    async def reconcile_payment(self, payment_id: str) -> ReconcileResult:
        snapshot = await self.gateway.get_payment(payment_id)
        key = event_key(snapshot)
        order_id = snapshot.external_reference
        logger.info("Payment %s is %s (%s) for order %s", payment_id, snapshot.status,
                    snapshot.amount, order_id)
        if not order_id:
            logger.warning("Payment %s has no external reference, ignoring", payment_id)
            return ReconcileResult(IGNORED, event_key=key)

        async def change(session, order):
            if not await self.ledger.record(session, key, order.id, snapshot):
                return DUPLICATE, None, None
            if order.external_payment_id not in (None, snapshot.id):
                logger.warning("Order %s is tied to payment %s, not %s; recording without changes",
                               order.id, order.external_payment_id, snapshot.id)
                return APPLIED, None, None
            before = (order.status, order.hold_state)
            apply_snapshot(order, snapshot)
            return APPLIED, before, order

        try:
            outcome, before, order = await self.store.mutate(order_id, change)
        except OrderNotFound:
            logger.warning("Payment %s references unknown order %s", payment_id, order_id)
            return ReconcileResult(IGNORED, order_id=order_id, event_key=key)

        if outcome == APPLIED and before is not None:
            await self._announce(order, before)
        return ReconcileResult(outcome, order_id=order_id, event_key=key)

    async def _announce(self, order, before) -> None:
        order_id = order.id
        status_before, hold_before = before
        if order.hold_state != hold_before:
            await publish_event("order_exchange", f"hold.{order.hold_state.value}", {
                "event_type": "PaymentHoldChanged",
                "order_id": order_id,
                "hold_state": order.hold_state.value,
                "external_payment_id": order.external_payment_id,
            })
        if order.status != status_before:
            await publish_event("order_exchange", "order.status_changed", {
                "event_type": "OrderStatusChanged",
                "order_id": order_id,
                "status": order.status.value,
            })
