"""
Payment-hold and fulfillment state machines.

Hold transitions are monotonic; nothing here ever moves a hold backwards.

    none               -> authorized
    authorized         -> captured | cancelled | failed
    captured           -> refunded | partially_refunded
    partially_refunded -> refunded
"""

import logging
from collections import deque
from typing import List, Optional

from order_payments.errors import InvalidState, InvalidTransition
from order_payments.models import HoldState, Order, OrderStatus, utcnow
from order_payments.schemas import PaymentSnapshot

logger = logging.getLogger(__name__)

HOLD_TRANSITIONS = {
    HoldState.NONE: {HoldState.AUTHORIZED},
    HoldState.AUTHORIZED: {HoldState.CAPTURED, HoldState.CANCELLED, HoldState.FAILED},
    HoldState.CAPTURED: {HoldState.REFUNDED, HoldState.PARTIALLY_REFUNDED},
    HoldState.PARTIALLY_REFUNDED: {HoldState.REFUNDED},
    HoldState.CANCELLED: set(),
    HoldState.REFUNDED: set(),
    HoldState.FAILED: set(),
}

FULFILLMENT_SEQUENCE = [
    OrderStatus.PENDING,
    OrderStatus.ACCEPTED,
    OrderStatus.PREPARING,
    OrderStatus.READY,
    OrderStatus.DELIVERING,
    OrderStatus.DELIVERED,
]
TERMINAL_STATUSES = {OrderStatus.DELIVERED, OrderStatus.CANCELLED}
CAPTURED_STATES = {HoldState.CAPTURED, HoldState.PARTIALLY_REFUNDED, HoldState.REFUNDED}

PROCESSOR_TO_FULFILLMENT = {
    "approved": OrderStatus.ACCEPTED,
    "authorized": OrderStatus.ACCEPTED,
    "pending": OrderStatus.PENDING,
    "in_process": OrderStatus.PENDING,
    "rejected": OrderStatus.CANCELLED,
    "cancelled": OrderStatus.CANCELLED,
}


# ── Payment hold ─────────────────────────────────

def can_transition(current: HoldState, target: HoldState) -> bool:
    return target in HOLD_TRANSITIONS[current]


def check_hold_transition(current: HoldState, target: HoldState) -> None:
    if not can_transition(current, target):
        raise InvalidTransition(
            f"Payment hold cannot move from {current.value} to {target.value}"
        )


def hold_path(current: HoldState, target: HoldState) -> Optional[List[HoldState]]:
    """Shortest chain of legal transitions leading from `current` to `target`.

    Returns `[]` when already there and `None` when `target` is unreachable
    (which includes every backward move).
    """
    if current == target:
        return []
    queue = deque([(current, [])])
    seen = {current}
    while queue:
        state, path = queue.popleft()
        for nxt in HOLD_TRANSITIONS[state]:
            if nxt in seen:
                continue
            if nxt == target:
                return path + [nxt]
            seen.add(nxt)
            queue.append((nxt, path + [nxt]))
    return None


def implied_hold_state(snapshot: PaymentSnapshot) -> Optional[HoldState]:
    """Hold state the processor's snapshot stands for, or None if it implies nothing yet."""
    status = snapshot.status
    if status in ("authorized", "approved"):
        if not snapshot.captured:
            return HoldState.AUTHORIZED
        if snapshot.refunded_amount <= 0:
            return HoldState.CAPTURED
        if snapshot.refunded_amount < snapshot.amount:
            return HoldState.PARTIALLY_REFUNDED
        return HoldState.REFUNDED
    if status in ("refunded", "charged_back"):
        return HoldState.REFUNDED
    if status == "rejected":
        return HoldState.FAILED
    if status == "cancelled":
        return HoldState.CANCELLED
    return None


TIMESTAMP_FIELDS = {
    HoldState.AUTHORIZED: "authorized_at",
    HoldState.CAPTURED: "captured_at",
    HoldState.PARTIALLY_REFUNDED: "refunded_at",
    HoldState.REFUNDED: "refunded_at",
    HoldState.CANCELLED: "cancelled_at",
    HoldState.FAILED: "failed_at",
}


def check_amounts(authorized: int, captured: Optional[int], refunded: int) -> None:
    if captured is not None and captured > authorized:
        raise InvalidState(f"Captured amount {captured} exceeds authorized amount {authorized}")
    if refunded > (captured or 0):
        raise InvalidState(f"Refunded amount {refunded} exceeds captured amount {captured or 0}")


def advance_hold(
    order: Order,
    steps: List[HoldState],
    *,
    authorized_amount: Optional[int] = None,
    captured_amount: Optional[int] = None,
    refunded_amount: Optional[int] = None,
) -> None:
    """Apply a chain of hold transitions to `order`, all or nothing.

    `refunded_amount` is cumulative. A capture without an explicit amount
    captures the whole authorization; a full refund without an explicit
    amount refunds everything captured.
    """
    state = order.hold_state
    for step in steps:
        check_hold_transition(state, step)
        state = step

    authorized, captured, refunded = order.authorized_amount, order.captured_amount, order.refunded_amount
    for step in steps:
        if step == HoldState.AUTHORIZED and authorized_amount is not None:
            authorized = authorized_amount
        elif step == HoldState.CAPTURED:
            captured = captured_amount if captured_amount is not None else authorized
        elif step == HoldState.PARTIALLY_REFUNDED and refunded_amount is not None:
            refunded = refunded_amount
        elif step == HoldState.REFUNDED:
            refunded = refunded_amount if refunded_amount is not None else (captured or 0)
    check_amounts(authorized, captured, refunded)

    now = utcnow()
    for step in steps:
        setattr(order, TIMESTAMP_FIELDS[step], now)
    order.authorized_amount = authorized
    order.captured_amount = captured
    order.refunded_amount = refunded
    order.hold_state = state


def set_hold_state(order: Order, target: HoldState, **amounts) -> None:
    advance_hold(order, [target], **amounts)


def converge_hold(order: Order, snapshot: PaymentSnapshot) -> bool:
    """Walk the hold forward to the state implied by `snapshot`.

    When the state already matches, a larger cumulative refund is still
    taken over. Returns True if the order changed. Raises InvalidTransition
    when the snapshot implies a state that is behind or beside the local one.
    """
    target = implied_hold_state(snapshot)
    if target is None:
        return False
    path = hold_path(order.hold_state, target)
    if path is None:
        raise InvalidTransition(
            f"Processor reports {snapshot.status} (hold {target.value}) "
            f"but local hold is {order.hold_state.value}"
        )
    if not path:
        return _catch_up_refunds(order, target, snapshot)
    if order.hold_state == HoldState.NONE and target == HoldState.FAILED:
        # Declined at checkout: nothing was ever held
        advance_hold(order, path, authorized_amount=0)
        order.authorized_at = None
        return True
    advance_hold(
        order,
        path,
        authorized_amount=snapshot.amount,
        captured_amount=snapshot.amount,
        refunded_amount=snapshot.refunded_amount or None,
    )
    return True


def _catch_up_refunds(order: Order, target: HoldState, snapshot: PaymentSnapshot) -> bool:
    """Raise the cumulative refunded amount when the hold state already matches.

    A second partial refund leaves the hold `partially_refunded`, so only the
    amount tells the two apart. The amount never goes down.
    """
    if target not in (HoldState.PARTIALLY_REFUNDED, HoldState.REFUNDED):
        return False
    if snapshot.refunded_amount <= order.refunded_amount:
        return False
    check_amounts(order.authorized_amount, order.captured_amount, snapshot.refunded_amount)
    order.refunded_amount = snapshot.refunded_amount
    order.refunded_at = utcnow()
    return True


# ── Fulfillment ──────────────────────────────────

def check_fulfillment_transition(current: OrderStatus, target: OrderStatus) -> None:
    if current in TERMINAL_STATUSES:
        raise InvalidTransition(
            f"Order is already {current.value}; cannot move to {target.value}"
        )


def is_forward(current: OrderStatus, target: OrderStatus) -> bool:
    """True if `target` advances the order; cancellation always does."""
    if target == OrderStatus.CANCELLED:
        return current != OrderStatus.CANCELLED
    if current == OrderStatus.CANCELLED:
        return False
    return FULFILLMENT_SEQUENCE.index(target) > FULFILLMENT_SEQUENCE.index(current)


def fulfillment_for(processor_status: str) -> OrderStatus:
    status = PROCESSOR_TO_FULFILLMENT.get(processor_status)
    if status is None:
        logger.warning("Unmapped processor status %r, treating as pending", processor_status)
        return OrderStatus.PENDING
    return status


# ── Snapshot reconciliation ──────────────────────

def apply_snapshot(order: Order, snapshot: PaymentSnapshot) -> bool:
    """Bring `order` in line with an authoritative processor snapshot.

    Moves only forward: a hold transition the graph does not allow and a
    fulfillment status behind the current one are logged and skipped, as is
    any update to a terminal order. Returns True if hold or status changed.
    """
    changed = False
    if order.external_payment_id is None:
        order.external_payment_id = snapshot.id
        changed = True
    order.last_processor_status = snapshot.status

    try:
        changed = converge_hold(order, snapshot) or changed
    except (InvalidTransition, InvalidState) as exc:
        logger.warning("Order %s: ignoring hold update from payment %s: %s",
                       order.id, snapshot.id, exc)

    target = fulfillment_for(snapshot.status)
    if target != order.status:
        try:
            check_fulfillment_transition(order.status, target)
        except InvalidTransition as exc:
            logger.warning("Order %s: %s", order.id, exc)
        else:
            if is_forward(order.status, target):
                logger.info("Order %s: %s -> %s", order.id, order.status.value, target.value)
                order.status = target
                changed = True
            else:
                logger.info("Order %s: stale status %s ignored (currently %s)",
                            order.id, target.value, order.status.value)

    if order.status == OrderStatus.CANCELLED and order.hold_state == HoldState.AUTHORIZED:
        logger.error("Order %s is cancelled but payment %s is still authorized; release it",
                     order.id, order.external_payment_id)
    return changed
