import pytest
from sqlalchemy import func, select

from order_payments.errors import (
    GatewayUnavailable,
    InvalidRequest,
    InvalidState,
    InvalidTransition,
    OrderNotFound,
)
from order_payments.models import HoldState, Order, OrderStatus
from tests.conftest import SCENARIO_ITEMS, payment_notification


async def count_orders(session_factory):
    async with session_factory() as session:
        return await session.scalar(select(func.count()).select_from(Order))


@pytest.mark.asyncio
async def test_create_held_order(controller, gateway):
    order, checkout_url = await controller.create_held_order("customer-1", "cook-1", SCENARIO_ITEMS)

    assert order.total_amount == 2500
    assert order.status == OrderStatus.PENDING
    assert order.payment.state == HoldState.NONE
    assert order.payment.preference_id == f"pref-{order.id}"
    assert checkout_url == f"https://checkout.example/{order.id}"
    assert [item.id for item in order.items] == ["a", "b"]
    assert gateway.count("create_preference") == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("customer_id, items", [
    ("customer-1", []),
    ("customer-1", [{"id": "a", "quantity": 0, "unit_price": 1000}]),
    ("customer-1", [{"id": "a", "quantity": 1, "unit_price": -1}]),
    ("", SCENARIO_ITEMS),
])
async def test_create_rejects_invalid_orders(controller, gateway, session_factory, customer_id, items):
    with pytest.raises(InvalidRequest):
        await controller.create_held_order(customer_id, "cook-1", items)

    assert await count_orders(session_factory) == 0
    assert gateway.calls == []


@pytest.mark.asyncio
async def test_failed_preference_keeps_order_for_retry(controller, gateway):
    gateway.preference_error = GatewayUnavailable("processor down")

    with pytest.raises(GatewayUnavailable) as excinfo:
        await controller.create_held_order("customer-1", "cook-1", SCENARIO_ITEMS)

    order = excinfo.value.order
    assert order.status == OrderStatus.PENDING
    assert order.payment.state == HoldState.NONE
    assert order.payment.checkout_url is None

    gateway.preference_error = None
    retried, checkout_url = await controller.retry_checkout(order.id)
    assert checkout_url == f"https://checkout.example/{order.id}"
    assert retried.payment.preference_id == f"pref-{order.id}"


@pytest.mark.asyncio
async def test_checkout_cannot_be_reopened_once_authorized(controller, held_order):
    with pytest.raises(InvalidTransition):
        await controller.retry_checkout(held_order)


@pytest.mark.asyncio
async def test_approved_notification_authorizes_hold(controller, held_order):
    order = await controller.get_order(held_order)

    assert order.status == OrderStatus.ACCEPTED
    assert order.payment.state == HoldState.AUTHORIZED
    assert order.payment.authorized_amount == 2500
    assert order.payment.external_payment_id == "pay-1"
    assert order.payment.authorized_at is not None


@pytest.mark.asyncio
async def test_capture_then_recapture(controller, gateway, held_order):
    order = await controller.capture(held_order)

    assert order.payment.state == HoldState.CAPTURED
    assert order.payment.captured_amount == 2500
    assert gateway.count("capture") == 1

    with pytest.raises(InvalidTransition) as excinfo:
        await controller.capture(held_order)

    assert excinfo.value.order.payment.state == HoldState.CAPTURED
    assert excinfo.value.order.payment.captured_amount == 2500
    assert gateway.count("capture") == 1


@pytest.mark.asyncio
async def test_partial_capture(controller, held_order):
    order = await controller.capture(held_order, 2000)

    assert order.payment.captured_amount == 2000
    assert order.payment.authorized_amount == 2500


@pytest.mark.asyncio
@pytest.mark.parametrize("amount", [0, 2501])
async def test_capture_amount_out_of_range(controller, gateway, held_order, amount):
    with pytest.raises(InvalidRequest) as excinfo:
        await controller.capture(held_order, amount)

    assert excinfo.value.order.payment.state == HoldState.AUTHORIZED
    assert gateway.count("capture") == 0


@pytest.mark.asyncio
async def test_partial_refunds_until_fully_refunded(controller, gateway, held_order):
    await controller.capture(held_order)

    order = await controller.refund(held_order, 1000)
    assert order.payment.state == HoldState.PARTIALLY_REFUNDED
    assert order.payment.refunded_amount == 1000

    order = await controller.refund(held_order, 1500)
    assert order.payment.state == HoldState.REFUNDED
    assert order.payment.refunded_amount == 2500

    with pytest.raises(InvalidTransition) as excinfo:
        await controller.refund(held_order, 1)
    assert excinfo.value.order.payment.state == HoldState.REFUNDED
    assert gateway.count("refund") == 2


@pytest.mark.asyncio
async def test_full_refund_omits_amount(controller, gateway, held_order):
    await controller.capture(held_order)

    order = await controller.refund(held_order)

    assert order.payment.state == HoldState.REFUNDED
    assert order.payment.refunded_amount == 2500
    assert gateway.calls[-1] == ("refund", "pay-1", None)


@pytest.mark.asyncio
async def test_refund_over_remaining_amount(controller, gateway, held_order):
    await controller.capture(held_order)
    await controller.refund(held_order, 2000)

    with pytest.raises(InvalidRequest):
        await controller.refund(held_order, 501)
    assert gateway.count("refund") == 1


@pytest.mark.asyncio
async def test_refund_before_capture(controller, held_order):
    with pytest.raises(InvalidTransition):
        await controller.refund(held_order, 1000)


@pytest.mark.asyncio
async def test_cancel_authorized_hold(controller, gateway, held_order):
    order = await controller.cancel(held_order)

    assert order.payment.state == HoldState.CANCELLED
    assert order.status == OrderStatus.CANCELLED
    assert order.payment.cancelled_at is not None
    assert gateway.payments["pay-1"]["status"] == "cancelled"

    with pytest.raises(InvalidTransition):
        await controller.cancel(held_order)
    with pytest.raises(InvalidTransition):
        await controller.capture(held_order)
    assert gateway.count("cancel") == 1


@pytest.mark.asyncio
async def test_cancel_before_payment_skips_processor(controller, gateway):
    order, _ = await controller.create_held_order("customer-1", "cook-1", SCENARIO_ITEMS)

    cancelled = await controller.cancel(order.id)

    assert cancelled.status == OrderStatus.CANCELLED
    assert cancelled.payment.state == HoldState.NONE
    assert gateway.count("cancel") == 0


@pytest.mark.asyncio
async def test_cancel_after_capture_requires_refund(controller, held_order):
    await controller.capture(held_order)

    with pytest.raises(InvalidTransition) as excinfo:
        await controller.cancel(held_order)

    assert excinfo.value.order.status == OrderStatus.ACCEPTED


@pytest.mark.asyncio
async def test_capture_resyncs_stale_hold_first(controller, gateway, held_order):
    # The processor rejected the payment but the notification never arrived
    gateway.payments["pay-1"]["status"] = "rejected"

    with pytest.raises(InvalidTransition) as excinfo:
        await controller.capture(held_order)

    assert excinfo.value.order.payment.state == HoldState.FAILED
    order = await controller.get_order(held_order)
    assert order.payment.state == HoldState.FAILED
    assert order.status == OrderStatus.CANCELLED
    assert gateway.count("capture") == 0


@pytest.mark.asyncio
async def test_sync_payment(controller, gateway, held_order):
    gateway.payments["pay-1"]["captured"] = True

    order = await controller.sync_payment(held_order)

    assert order.payment.state == HoldState.CAPTURED
    assert order.payment.captured_amount == 2500


@pytest.mark.asyncio
async def test_sync_without_payment(controller):
    order, _ = await controller.create_held_order("customer-1", "cook-1", SCENARIO_ITEMS)

    with pytest.raises(InvalidState):
        await controller.sync_payment(order.id)


@pytest.mark.asyncio
async def test_unknown_order(controller):
    with pytest.raises(OrderNotFound):
        await controller.get_order("missing")
    with pytest.raises(OrderNotFound) as excinfo:
        await controller.capture("missing")
    assert excinfo.value.order is None


@pytest.mark.asyncio
async def test_fulfillment_progress_to_delivery(controller, held_order):
    for status in (OrderStatus.PREPARING, OrderStatus.READY, OrderStatus.DELIVERING):
        order = await controller.advance_fulfillment(held_order, status)
        assert order.status == status

    with pytest.raises(InvalidState):
        await controller.advance_fulfillment(held_order, OrderStatus.DELIVERED)

    await controller.capture(held_order)
    order = await controller.advance_fulfillment(held_order, OrderStatus.DELIVERED)
    assert order.status == OrderStatus.DELIVERED

    with pytest.raises(InvalidTransition):
        await controller.advance_fulfillment(held_order, OrderStatus.READY)


@pytest.mark.asyncio
async def test_fulfillment_never_goes_back(controller, held_order):
    await controller.advance_fulfillment(held_order, OrderStatus.READY)

    with pytest.raises(InvalidTransition) as excinfo:
        await controller.advance_fulfillment(held_order, OrderStatus.PREPARING)
    assert excinfo.value.order.status == OrderStatus.READY


@pytest.mark.asyncio
async def test_fulfillment_cannot_cancel(controller, held_order):
    with pytest.raises(InvalidRequest):
        await controller.advance_fulfillment(held_order, OrderStatus.CANCELLED)


@pytest.mark.asyncio
async def test_late_webhook_does_not_undo_progress(controller, reconciler, gateway, held_order):
    await controller.advance_fulfillment(held_order, OrderStatus.PREPARING)
    gateway.payments["pay-1"]["status"] = "in_process"

    await reconciler.handle(payment_notification("pay-1"))

    order = await controller.get_order(held_order)
    assert order.status == OrderStatus.PREPARING
    assert order.payment.state == HoldState.AUTHORIZED


@pytest.mark.asyncio
async def test_late_authorization_after_cancel_is_released(controller, reconciler, gateway):
    order, _ = await controller.create_held_order("customer-1", "cook-1", SCENARIO_ITEMS)
    await controller.cancel(order.id)
    # The customer finishes checkout from the old link afterwards
    gateway.set_payment("pay-1", order.id, 2500)
    await reconciler.handle(payment_notification("pay-1"))
    stranded = await controller.get_order(order.id)
    assert (stranded.status, stranded.payment.state) == (OrderStatus.CANCELLED, HoldState.AUTHORIZED)

    released = await controller.cancel(order.id)

    assert released.status == OrderStatus.CANCELLED
    assert released.payment.state == HoldState.CANCELLED
    assert gateway.payments["pay-1"]["status"] == "cancelled"
    assert gateway.count("cancel") == 1

    with pytest.raises(InvalidTransition):
        await controller.cancel(order.id)
    assert gateway.count("cancel") == 1


@pytest.mark.asyncio
async def test_refund_catches_up_with_unreported_refund(controller, gateway, held_order):
    await controller.capture(held_order)
    await controller.refund(held_order, 1000)
    gateway.payments["pay-1"]["refunded_amount"] = 1500

    with pytest.raises(InvalidRequest) as excinfo:
        await controller.refund(held_order, 1001)

    # The correction is kept even though the refund was refused
    assert excinfo.value.order.payment.refunded_amount == 1500
    assert (await controller.get_order(held_order)).payment.refunded_amount == 1500
    assert gateway.count("refund") == 1
