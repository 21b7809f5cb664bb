import pytest
import pytest_asyncio
from sqlalchemy import func, select

from order_payments.controller import OrderLifecycleController
from order_payments.database import init_db, make_engine, make_session_factory
from order_payments.errors import GatewayUnavailable, InvalidState, PaymentNotFound
from order_payments.holds import HoldManager
from order_payments.ledger import IdempotencyLedger
from order_payments.models import ProcessedEvent
from order_payments.reconciler import WebhookReconciler
from order_payments.schemas import PaymentSnapshot, PreferenceResult, RefundSnapshot, WebhookNotification
from order_payments.store import OrderStore

SCENARIO_ITEMS = [
    {"id": "a", "quantity": 2, "unit_price": 1000},
    {"id": "b", "quantity": 1, "unit_price": 500},
]


class FakeGateway:
    """In-memory processor exposing the same five operations as PaymentGatewayClient."""

    def __init__(self):
        self.payments = {}
        self.calls = []
        self.unavailable = False
        self.preference_error = None
        self.before_cancel = None

    def set_payment(self, payment_id, order_id, amount, status="approved", captured=False, refunded_amount=0):
        self.payments[payment_id] = {
            "status": status,
            "amount": amount,
            "external_reference": order_id,
            "captured": captured,
            "refunded_amount": refunded_amount,
        }

    def snapshot(self, payment_id) -> PaymentSnapshot:
        p = self.payments[payment_id]
        return PaymentSnapshot(
            id=payment_id,
            status=p["status"],
            amount=p["amount"],
            currency="CLP",
            external_reference=p["external_reference"],
            captured=p["captured"],
            refunded_amount=p["refunded_amount"],
        )

    def count(self, operation):
        return sum(1 for call in self.calls if call[0] == operation)

    async def create_authorization_preference(self, order, line_items, return_urls):
        self.calls.append(("create_preference", order.id))
        if self.preference_error is not None:
            raise self.preference_error
        return PreferenceResult(
            preference_id=f"pref-{order.id}",
            checkout_url=f"https://checkout.example/{order.id}",
        )

    async def get_payment(self, payment_id):
        self.calls.append(("get_payment", payment_id))
        if self.unavailable:
            raise GatewayUnavailable("processor down")
        if payment_id not in self.payments:
            raise PaymentNotFound(f"Payment {payment_id} not found")
        return self.snapshot(payment_id)

    async def capture_payment(self, payment_id, amount):
        self.calls.append(("capture", payment_id, amount))
        p = self.payments[payment_id]
        if p["status"] not in ("approved", "authorized") or p["captured"]:
            raise InvalidState(f"Payment {payment_id} is {p['status']}")
        p.update(status="approved", captured=True, amount=amount)
        return self.snapshot(payment_id)

    async def cancel_payment(self, payment_id):
        self.calls.append(("cancel", payment_id))
        if self.before_cancel is not None:
            await self.before_cancel()
        self.payments[payment_id]["status"] = "cancelled"
        return self.snapshot(payment_id)

    async def refund_payment(self, payment_id, amount=None, captured_amount=None):
        self.calls.append(("refund", payment_id, amount))
        p = self.payments[payment_id]
        refunded = amount if amount is not None else p["amount"] - p["refunded_amount"]
        p["refunded_amount"] += refunded
        if p["refunded_amount"] >= p["amount"]:
            p["status"] = "refunded"
        return RefundSnapshot(refund_id=f"rf-{len(self.calls)}", payment_id=payment_id, amount=refunded)


def payment_notification(payment_id):
    return WebhookNotification(type="payment", data={"id": payment_id})


async def count_processed_events(session_factory):
    async with session_factory() as session:
        return await session.scalar(select(func.count()).select_from(ProcessedEvent))


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = make_engine(f"sqlite+aiosqlite:///{tmp_path / 'orders.db'}")
    await init_db(engine)
    yield make_session_factory(engine)
    await engine.dispose()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def store(session_factory):
    return OrderStore(session_factory)


@pytest.fixture
def holds(gateway, store):
    return HoldManager(gateway, store)


@pytest.fixture
def controller(store, holds):
    return OrderLifecycleController(store, holds, public_base_url="https://shop.example")


@pytest.fixture
def reconciler(gateway, store):
    return WebhookReconciler(gateway, store, IdempotencyLedger())


@pytest_asyncio.fixture
async def held_order(controller, reconciler, gateway):
    """Order for the two scenario items, authorized for 2500 through a webhook."""
    order, _ = await controller.create_held_order("customer-1", "cook-1", SCENARIO_ITEMS)
    gateway.set_payment("pay-1", order.id, 2500)
    await reconciler.handle(payment_notification("pay-1"))
    return order.id
