"""
HoldManager: authorization holds and their capture/cancel/refund.

Every operation follows the same shape:

    1. read the order (with its version)
    2. re-fetch the processor snapshot and correct the local hold if it lags
    3. check the operation against the (corrected) state
    4. call the processor, at most once per operation
    5. apply the outcome and commit under the version check

A version conflict in step 5 restarts from step 1, but a processor call that
already happened is not repeated: its outcome is applied to the re-read order.
"""

import logging
from typing import Any, Callable, Optional, Sequence

from order_payments.errors import InvalidRequest, InvalidState, InvalidTransition, PaymentError
from order_payments.gateway import PaymentGatewayClient
from order_payments.models import HoldState, Order, OrderStatus, utcnow
from order_payments.schemas import LineItem, PaymentSnapshot, RefundSnapshot, ReturnUrls
from order_payments.state_machine import (
    CAPTURED_STATES,
    TERMINAL_STATUSES,
    advance_hold,
    apply_snapshot,
    check_amounts,
    check_fulfillment_transition,
    check_hold_transition,
    hold_path,
    set_hold_state,
)
from order_payments.store import OrderStore

logger = logging.getLogger(__name__)


class HoldManager:
    def __init__(self, gateway: PaymentGatewayClient, store: OrderStore):
        self.gateway = gateway
        self.store = store

    # ── Preference ───────────────────────────────────

    async def open_hold(
        self,
        order_id: str,
        line_items: Sequence[LineItem],
        return_urls: ReturnUrls,
    ) -> Order:
        """Create the authorize-only preference and remember it on the order."""
        order = await self.store.load(order_id)
        if order.hold_state != HoldState.NONE or order.status != OrderStatus.PENDING:
            raise InvalidTransition(
                f"Order {order_id} already has a payment ({order.hold_state.value}, {order.status.value})"
            )
        preference = await self.gateway.create_authorization_preference(order, line_items, return_urls)

        async def record(session, order):
            order.preference_id = preference.preference_id
            order.checkout_url = preference.checkout_url
            return order

        order = await self.store.mutate(order_id, record)
        logger.info("Order %s: preference %s created", order_id, preference.preference_id)
        return order

    # ── Capture / cancel / refund ────────────────────

    async def capture(self, order_id: str, amount: Optional[int] = None) -> Order:
        def prepare(order: Order) -> int:
            check_hold_transition(order.hold_state, HoldState.CAPTURED)
            if order.status == OrderStatus.CANCELLED:
                raise InvalidTransition(f"Order {order_id} is cancelled; its hold cannot be captured")
            requested = amount if amount is not None else order.authorized_amount
            if requested <= 0 or requested > order.authorized_amount:
                raise InvalidRequest(
                    f"Capture amount {requested} must be between 1 and the authorized {order.authorized_amount}"
                )
            return requested

        async def execute(order: Order, requested: int) -> PaymentSnapshot:
            return await self.gateway.capture_payment(order.external_payment_id, requested)

        def apply(order: Order, requested: int, snapshot: PaymentSnapshot) -> None:
            order.last_processor_status = snapshot.status
            if order.hold_state in CAPTURED_STATES:
                # A notification got there first
                return
            set_hold_state(order, HoldState.CAPTURED, captured_amount=requested)

        order = await self._run(order_id, "capture", prepare, execute, apply)
        logger.info("Order %s: captured %s", order_id, order.captured_amount)
        return order

    async def cancel(self, order_id: str) -> Order:
        def prepare(order: Order) -> bool:
            if order.status in TERMINAL_STATUSES:
                if order.status == OrderStatus.CANCELLED and order.hold_state == HoldState.AUTHORIZED:
                    # Authorized after the order was cancelled; release it
                    return True
                raise InvalidTransition(f"Order {order_id} is already {order.status.value}")
            if order.hold_state == HoldState.NONE:
                # Nothing is held at the processor yet
                return False
            check_hold_transition(order.hold_state, HoldState.CANCELLED)
            return True

        async def execute(order: Order, void_hold: bool) -> Optional[PaymentSnapshot]:
            if not void_hold:
                return None
            return await self.gateway.cancel_payment(order.external_payment_id)

        def apply(order: Order, void_hold: bool, snapshot: Optional[PaymentSnapshot]) -> None:
            if snapshot is not None:
                order.last_processor_status = snapshot.status
                if order.hold_state != HoldState.CANCELLED:
                    set_hold_state(order, HoldState.CANCELLED)
            if order.status != OrderStatus.CANCELLED:
                check_fulfillment_transition(order.status, OrderStatus.CANCELLED)
                order.status = OrderStatus.CANCELLED

        order = await self._run(order_id, "cancel", prepare, execute, apply)
        logger.info("Order %s: cancelled (hold %s)", order_id, order.hold_state.value)
        return order

    async def refund(self, order_id: str, amount: Optional[int] = None) -> Order:
        def prepare(order: Order) -> dict:
            if order.hold_state not in (HoldState.CAPTURED, HoldState.PARTIALLY_REFUNDED):
                raise InvalidTransition(
                    f"Payment hold cannot be refunded from {order.hold_state.value}"
                )
            captured = order.captured_amount or 0
            remaining = captured - order.refunded_amount
            requested = amount if amount is not None else remaining
            if requested <= 0 or requested > remaining:
                raise InvalidRequest(
                    f"Refund amount {requested} must be between 1 and the refundable {remaining}"
                )
            return {
                "requested": requested,
                "remaining": remaining,
                "baseline": order.refunded_amount,
                "full": order.refunded_amount == 0 and requested == captured,
            }

        async def execute(order: Order, plan: dict) -> RefundSnapshot:
            return await self.gateway.refund_payment(
                order.external_payment_id,
                amount=None if plan["full"] else plan["requested"],
                captured_amount=plan["remaining"],
            )

        def apply(order: Order, plan: dict, refund: RefundSnapshot) -> None:
            refunded = plan["baseline"] + (refund.amount or plan["requested"])
            # A notification may already have counted this refund
            refunded = max(refunded, order.refunded_amount)
            captured = order.captured_amount or 0
            target = HoldState.REFUNDED if refunded >= captured else HoldState.PARTIALLY_REFUNDED
            if order.hold_state == target == HoldState.PARTIALLY_REFUNDED:
                check_amounts(order.authorized_amount, order.captured_amount, refunded)
                order.refunded_amount = refunded
                order.refunded_at = utcnow()
                return
            path = hold_path(order.hold_state, target)
            if path is None:
                raise InvalidTransition(
                    f"Payment hold cannot move from {order.hold_state.value} to {target.value}"
                )
            if path:
                advance_hold(order, path, refunded_amount=refunded)

        order = await self._run(order_id, "refund", prepare, execute, apply)
        logger.info("Order %s: refunded %s of %s", order_id, order.refunded_amount, order.captured_amount)
        return order

    # ── Manual reconciliation ────────────────────────

    async def sync(self, order_id: str) -> Order:
        """Pull the processor's current view of the order's payment into the order."""

        async def change(session, order):
            if not order.external_payment_id:
                raise InvalidState(f"Order {order_id} has no processor payment yet")
            snapshot = await self.gateway.get_payment(order.external_payment_id)
            apply_snapshot(order, snapshot)
            return order

        return await self.store.mutate(order_id, change)

    # ── Internals ────────────────────────────────────

    async def _resync(self, order: Order) -> bool:
        """Correct the local hold from a fresh snapshot; True if anything moved."""
        if not order.external_payment_id:
            return False
        snapshot = await self.gateway.get_payment(order.external_payment_id)
        before = (order.hold_state, order.status, order.refunded_amount)
        apply_snapshot(order, snapshot)
        corrected = (order.hold_state, order.status, order.refunded_amount) != before
        if corrected:
            logger.info("Order %s: resynced from processor, hold %s -> %s",
                        order.id, before[0].value, order.hold_state.value)
        return corrected

    async def _run(
        self,
        order_id: str,
        action: str,
        prepare: Callable[[Order], Any],
        execute: Callable[[Order, Any], Any],
        apply: Callable[[Order, Any, Any], None],
    ) -> Order:
        done = {}

        async def change(session, order):
            if "outcome" not in done:
                corrected = await self._resync(order)
                try:
                    params = prepare(order)
                except PaymentError as exc:
                    if not corrected:
                        raise
                    # Keep the correction, report the rejection after commit
                    return order, exc
                outcome = await execute(order, params)
                if outcome is not None:
                    done["params"], done["outcome"] = params, outcome
            else:
                params, outcome = done["params"], done["outcome"]
                logger.info("Order %s: re-applying %s outcome after a version conflict", order_id, action)
            apply(order, params, outcome)
            return order, None

        order, rejection = await self.store.mutate(order_id, change)
        if rejection is not None:
            raise rejection
        return order
