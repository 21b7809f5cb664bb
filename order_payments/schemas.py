from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import List, Any, Optional
import json
from datetime import datetime
from order_payments.models import HoldState, OrderStatus


class LineItem(BaseModel):
    id: str = Field(..., min_length=1, examples=["dish-1"])
    title: Optional[str] = None
    quantity: int = Field(..., ge=1, examples=[2])
    unit_price: int = Field(..., ge=0, examples=[1000])


class OrderCreate(BaseModel):
    customer_id: str = Field(..., min_length=1, examples=["customer-123"])
    seller_id: str = Field(..., min_length=1, examples=["cook-7"])
    items: List[LineItem] = Field(..., min_length=1)


class ReturnUrls(BaseModel):
    success: str
    failure: str
    pending: str

    @classmethod
    def for_order(cls, base_url: str, order_id: str) -> "ReturnUrls":
        return cls(
            success=f"{base_url}/payment/success?hold=true&order_id={order_id}",
            failure=f"{base_url}/payment/failure?order_id={order_id}",
            pending=f"{base_url}/payment/pending?hold=true&order_id={order_id}",
        )


class PaymentHoldRead(BaseModel):
    state: HoldState
    preference_id: Optional[str] = None
    checkout_url: Optional[str] = None
    external_payment_id: Optional[str] = None
    authorized_amount: int
    captured_amount: Optional[int] = None
    refunded_amount: int
    last_processor_status: Optional[str] = None
    authorized_at: Optional[datetime] = None
    captured_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None


class OrderRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    customer_id: str
    seller_id: str
    items: List[LineItem]
    total_amount: int
    currency: str
    status: OrderStatus
    created_at: datetime
    updated_at: datetime
    version: int
    payment: PaymentHoldRead

    @field_validator('items', mode='before')
    @classmethod
    def parse_items(cls, v: Any) -> List[LineItem]:
        if isinstance(v, str):
            return json.loads(v)
        return v

    @classmethod
    def from_order(cls, order) -> "OrderRead":
        payment = PaymentHoldRead(
            state=order.hold_state,
            preference_id=order.preference_id,
            checkout_url=order.checkout_url,
            external_payment_id=order.external_payment_id,
            authorized_amount=order.authorized_amount,
            captured_amount=order.captured_amount,
            refunded_amount=order.refunded_amount,
            last_processor_status=order.last_processor_status,
            authorized_at=order.authorized_at,
            captured_at=order.captured_at,
            cancelled_at=order.cancelled_at,
            refunded_at=order.refunded_at,
            failed_at=order.failed_at,
        )
        return cls(
            id=order.id,
            customer_id=order.customer_id,
            seller_id=order.seller_id,
            items=order.items,
            total_amount=order.total_amount,
            currency=order.currency,
            status=order.status,
            created_at=order.created_at,
            updated_at=order.updated_at,
            version=order.version,
            payment=payment,
        )


class HeldOrderRead(BaseModel):
    order: OrderRead
    checkout_url: Optional[str] = None


class CaptureRequest(BaseModel):
    amount: Optional[int] = Field(None, gt=0)


class RefundRequest(BaseModel):
    amount: Optional[int] = Field(None, gt=0)


class FulfillmentUpdate(BaseModel):
    status: OrderStatus


class ErrorRead(BaseModel):
    error: str
    detail: str
    order: Optional[OrderRead] = None


# Processor-side views, mapped from the REST responses

class PreferenceResult(BaseModel):
    preference_id: str
    checkout_url: str


class PaymentSnapshot(BaseModel):
    id: str
    status: str
    status_detail: Optional[str] = None
    amount: int
    currency: Optional[str] = None
    external_reference: Optional[str] = None
    captured: bool = False
    refunded_amount: int = 0


class RefundSnapshot(BaseModel):
    refund_id: str
    payment_id: str
    amount: int
    status: Optional[str] = None


class WebhookData(BaseModel):
    id: Optional[str] = None

    @field_validator('id', mode='before')
    @classmethod
    def stringify(cls, v: Any) -> Optional[str]:
        return None if v is None else str(v)


class WebhookNotification(BaseModel):
    type: Optional[str] = None
    action: Optional[str] = None
    data: WebhookData = Field(default_factory=WebhookData)


class ReconcileRead(BaseModel):
    received: bool = True
    outcome: str
    order_id: Optional[str] = None
