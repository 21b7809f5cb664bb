from sqlalchemy import Column, String, Integer, DateTime, Enum
from sqlalchemy.orm import declarative_base
from datetime import datetime, timezone
import enum

Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OrderStatus(enum.Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    PREPARING = "preparing"
    READY = "ready"
    DELIVERING = "delivering"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class HoldState(enum.Enum):
    NONE = "none"
    AUTHORIZED = "authorized"
    CAPTURED = "captured"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"
    FAILED = "failed"


class Order(Base):
    __tablename__ = "orders"

    id = Column(String, primary_key=True, index=True)
    customer_id = Column(String, index=True, nullable=False)
    seller_id = Column(String, index=True, nullable=False)
    items = Column(String, nullable=False) # JSON-encoded line items
    total_amount = Column(Integer, nullable=False) # smallest currency unit
    currency = Column(String(3), nullable=False, default="CLP")
    status = Column(Enum(OrderStatus), default=OrderStatus.PENDING, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)
    version = Column(Integer, nullable=False)

    # Payment hold, one-to-one with the order
    preference_id = Column(String, nullable=True)
    checkout_url = Column(String, nullable=True)
    external_payment_id = Column(String, index=True, nullable=True)
    hold_state = Column(Enum(HoldState), default=HoldState.NONE, nullable=False)
    authorized_amount = Column(Integer, nullable=False, default=0)
    captured_amount = Column(Integer, nullable=True)
    refunded_amount = Column(Integer, nullable=False, default=0)
    last_processor_status = Column(String, nullable=True) # diagnostic only
    authorized_at = Column(DateTime(timezone=True), nullable=True)
    captured_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    refunded_at = Column(DateTime(timezone=True), nullable=True)
    failed_at = Column(DateTime(timezone=True), nullable=True)

    # Every UPDATE is conditioned on the version read with the row
    __mapper_args__ = {"version_id_col": version}


class ProcessedEvent(Base):
    __tablename__ = "processed_events"

    event_key = Column(String, primary_key=True) # unique marker per applied notification
    order_id = Column(String, index=True, nullable=False)
    external_payment_id = Column(String, nullable=False)
    processor_status = Column(String, nullable=False)
    recorded_at = Column(DateTime(timezone=True), default=utcnow, index=True, nullable=False)
