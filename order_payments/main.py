import asyncio
import logging
from typing import Optional
import uvicorn
from fastapi import FastAPI, Depends, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from order_payments.config import load_settings
from order_payments.consumer import start_consumer
from order_payments.controller import OrderLifecycleController
from order_payments.database import init_db, make_engine, make_session_factory
from order_payments.errors import (
    ConcurrentUpdate,
    GatewayUnavailable,
    InvalidRequest,
    InvalidState,
    InvalidTransition,
    OrderNotFound,
    PaymentError,
    PaymentNotFound,
)
from order_payments.gateway import PaymentGatewayClient
from order_payments.holds import HoldManager
from order_payments.ledger import IdempotencyLedger
from order_payments.messaging import close_rabbitmq, setup_rabbitmq
from order_payments.reconciler import IGNORED, WebhookReconciler
from order_payments.schemas import (
    CaptureRequest,
    ErrorRead,
    FulfillmentUpdate,
    HeldOrderRead,
    OrderCreate,
    OrderRead,
    ReconcileRead,
    RefundRequest,
    WebhookData,
    WebhookNotification,
)
from order_payments.store import OrderStore

logger = logging.getLogger(__name__)

app = FastAPI(title="Order Payments Service")

ERROR_STATUS = [
    (OrderNotFound, 404),
    (InvalidRequest, 400),
    (PaymentNotFound, 404),
    (InvalidTransition, 409),
    (InvalidState, 409),
    (ConcurrentUpdate, 409),
    (GatewayUnavailable, 503),
]


def status_for(exc: PaymentError) -> int:
    for error_type, status_code in ERROR_STATUS:
        if isinstance(exc, error_type):
            return status_code
    return 500


@app.on_event("startup")
async def startup_event():
    settings = load_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    engine = make_engine(settings.database_url)
    await init_db(engine)
    session_factory = make_session_factory(engine)

    gateway = PaymentGatewayClient(settings.gateway)
    store = OrderStore(session_factory)
    holds = HoldManager(gateway, store)
    app.state.gateway = gateway
    app.state.controller = OrderLifecycleController(
        store, holds, settings.public_base_url, settings.gateway.currency
    )
    app.state.reconciler = WebhookReconciler(gateway, store, IdempotencyLedger())

    await setup_rabbitmq(settings.rabbitmq_url)
    app.state.consumer_task = asyncio.create_task(
        start_consumer(app.state.controller, settings.rabbitmq_url)
    )


@app.on_event("shutdown")
async def shutdown_event():
    app.state.consumer_task.cancel()
    await close_rabbitmq()
    await app.state.gateway.aclose()


def get_controller(request: Request) -> OrderLifecycleController:
    return request.app.state.controller


def get_reconciler(request: Request) -> WebhookReconciler:
    return request.app.state.reconciler


@app.exception_handler(PaymentError)
async def payment_error_handler(request: Request, exc: PaymentError):
    body = ErrorRead(error=exc.kind, detail=exc.message, order=exc.order)
    return JSONResponse(status_code=status_for(exc), content=body.model_dump(mode="json"))


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    body = ErrorRead(error=InvalidRequest.kind, detail=str(exc.errors()))
    return JSONResponse(status_code=400, content=body.model_dump(mode="json"))


# ── Operator / client endpoints ──────────────────

@app.post("/api/orders", response_model=HeldOrderRead, status_code=201)
async def create_order(order_data: OrderCreate, controller: OrderLifecycleController = Depends(get_controller)):
    order, checkout_url = await controller.create_held_order(
        order_data.customer_id, order_data.seller_id, order_data.items
    )
    return HeldOrderRead(order=order, checkout_url=checkout_url)


@app.get("/api/orders/{order_id}", response_model=OrderRead)
async def get_order(order_id: str, controller: OrderLifecycleController = Depends(get_controller)):
    return await controller.get_order(order_id)


@app.post("/api/orders/{order_id}/capture", response_model=OrderRead)
async def capture_order(order_id: str, body: Optional[CaptureRequest] = None,
                        controller: OrderLifecycleController = Depends(get_controller)):
    return await controller.capture(order_id, body.amount if body else None)


@app.post("/api/orders/{order_id}/cancel", response_model=OrderRead)
async def cancel_order(order_id: str, controller: OrderLifecycleController = Depends(get_controller)):
    return await controller.cancel(order_id)


@app.post("/api/orders/{order_id}/refund", response_model=OrderRead)
async def refund_order(order_id: str, body: Optional[RefundRequest] = None,
                       controller: OrderLifecycleController = Depends(get_controller)):
    return await controller.refund(order_id, body.amount if body else None)


@app.post("/api/orders/{order_id}/sync", response_model=OrderRead)
async def sync_order(order_id: str, controller: OrderLifecycleController = Depends(get_controller)):
    return await controller.sync_payment(order_id)


@app.post("/api/orders/{order_id}/checkout", response_model=HeldOrderRead)
async def retry_checkout(order_id: str, controller: OrderLifecycleController = Depends(get_controller)):
    order, checkout_url = await controller.retry_checkout(order_id)
    return HeldOrderRead(order=order, checkout_url=checkout_url)


@app.patch("/api/orders/{order_id}/status", response_model=OrderRead)
async def update_status(order_id: str, body: FulfillmentUpdate,
                        controller: OrderLifecycleController = Depends(get_controller)):
    return await controller.advance_fulfillment(order_id, body.status)


# ── Processor webhook ────────────────────────────

async def read_notification(request: Request) -> WebhookNotification:
    """Accept both the JSON body and the query-string form of a notification."""
    try:
        payload = await request.json()
    except ValueError:
        payload = {}
    if not isinstance(payload, dict):
        payload = {}
    params = request.query_params
    data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
    return WebhookNotification(
        type=payload.get("type") or params.get("type") or params.get("topic"),
        action=payload.get("action"),
        data=WebhookData(id=data.get("id") or params.get("data.id") or params.get("id")),
    )


@app.post("/api/webhooks/payments", response_model=ReconcileRead)
async def payment_webhook(request: Request, reconciler: WebhookReconciler = Depends(get_reconciler)):
    notification = await read_notification(request)
    try:
        result = await reconciler.handle(notification)
    except PaymentNotFound as exc:
        logger.error("Notification for unknown payment %s: %s", notification.data.id, exc)
        return ReconcileRead(outcome=IGNORED)
    except PaymentError as exc:
        if not exc.retryable:
            raise
        logger.warning("Retryable failure for payment %s: %s", notification.data.id, exc)
        return JSONResponse(
            status_code=503,
            content={"received": False, "error": exc.kind, "detail": exc.message},
        )
    return ReconcileRead(outcome=result.outcome, order_id=result.order_id)


@app.get("/health")
async def health():
    return {"status": "ok", "service": "order-payments"}


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
