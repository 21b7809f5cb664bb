import json
import pytest
from unittest.mock import AsyncMock, MagicMock

from order_payments.consumer import process_fulfillment_update
from order_payments.errors import ConcurrentUpdate, InvalidTransition
from order_payments.models import OrderStatus


@pytest.fixture
def mock_message_context():
    """Async context manager standing in for message.process()"""
    class AsyncContextManager:
        async def __aenter__(self):
            return self

        async def __aexit__(self, exc_type, exc_val, exc_tb):
            pass

    return AsyncContextManager()


def make_message(context, payload):
    mock_message = AsyncMock()
    mock_message.routing_key = "fulfillment.progress"
    mock_message.body = payload if isinstance(payload, bytes) else json.dumps(payload).encode("utf-8")
    mock_message.process = MagicMock(return_value=context)
    return mock_message


@pytest.mark.asyncio
async def test_fulfillment_update_advances_order(mock_message_context):
    controller = MagicMock()
    controller.advance_fulfillment = AsyncMock()
    message = make_message(mock_message_context, {"order_id": "order-1", "status": "preparing"})

    await process_fulfillment_update(message, controller)

    message.process.assert_called_once_with(requeue=True)
    controller.advance_fulfillment.assert_awaited_once_with("order-1", OrderStatus.PREPARING)


@pytest.mark.asyncio
async def test_malformed_fulfillment_update_is_discarded(mock_message_context):
    controller = MagicMock()
    controller.advance_fulfillment = AsyncMock()

    for payload in (b"not json", {"status": "ready"}, {"order_id": "order-1", "status": "teleported"}):
        await process_fulfillment_update(make_message(mock_message_context, payload), controller)

    controller.advance_fulfillment.assert_not_awaited()


@pytest.mark.asyncio
async def test_rejected_fulfillment_update_is_acknowledged(mock_message_context):
    controller = MagicMock()
    controller.advance_fulfillment = AsyncMock(side_effect=InvalidTransition("already delivered"))
    message = make_message(mock_message_context, {"order_id": "order-1", "status": "ready"})

    # Swallowed: a stale progress event must not be redelivered forever
    await process_fulfillment_update(message, controller)

    controller.advance_fulfillment.assert_awaited_once()


@pytest.mark.asyncio
async def test_retryable_failure_is_redelivered(mock_message_context):
    controller = MagicMock()
    controller.advance_fulfillment = AsyncMock(side_effect=ConcurrentUpdate("busy"))
    message = make_message(mock_message_context, {"order_id": "order-1", "status": "ready"})

    with pytest.raises(ConcurrentUpdate):
        await process_fulfillment_update(message, controller)
