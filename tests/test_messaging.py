import json
import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from order_payments import messaging


@pytest.mark.asyncio
async def test_publish_without_broker_is_a_no_op():
    with patch("order_payments.messaging.channel", None):
        await messaging.publish_event("order_exchange", "order.created", {"event_type": "OrderCreated"})


@pytest.mark.asyncio
async def test_publish_event_adds_envelope():
    exchange = AsyncMock()
    mock_channel = MagicMock()
    mock_channel.get_exchange = AsyncMock(return_value=exchange)

    with patch("order_payments.messaging.channel", mock_channel):
        await messaging.publish_event("order_exchange", "hold.captured", {
            "event_type": "PaymentCaptured",
            "order_id": "order-1",
        })

    mock_channel.get_exchange.assert_awaited_once_with("order_exchange")
    message = exchange.publish.call_args.args[0]
    assert exchange.publish.call_args.kwargs["routing_key"] == "hold.captured"
    payload = json.loads(message.body)
    assert payload["order_id"] == "order-1"
    assert payload["event_id"]
    assert payload["timestamp"]


@pytest.mark.asyncio
async def test_publish_failures_are_not_raised():
    mock_channel = MagicMock()
    mock_channel.get_exchange = AsyncMock(side_effect=RuntimeError("channel closed"))

    with patch("order_payments.messaging.channel", mock_channel):
        await messaging.publish_event("order_exchange", "hold.failed", {"event_type": "PaymentHoldChanged"})
