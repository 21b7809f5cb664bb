import asyncio
import json
import logging
import aio_pika
from order_payments.controller import OrderLifecycleController
from order_payments.errors import PaymentError
from order_payments.models import OrderStatus
from order_payments.messaging import RABBITMQ_URL

logger = logging.getLogger(__name__)

FULFILLMENT_EXCHANGE = "fulfillment_exchange"


async def process_fulfillment_update(message: aio_pika.IncomingMessage, controller: OrderLifecycleController):
    """Apply a kitchen/driver progress event ({order_id, status}) to the order."""
    async with message.process(requeue=True):
        try:
            event_data = json.loads(message.body.decode())
            order_id = event_data["order_id"]
            status = OrderStatus(event_data["status"])
        except (ValueError, KeyError) as e:
            logger.error("Discarding malformed fulfillment event %r: %s", message.routing_key, e)
            return

        logger.info("Fulfillment update for order %s: %s", order_id, status.value)
        try:
            await controller.advance_fulfillment(order_id, status)
        except PaymentError as e:
            if e.retryable:
                logger.warning("Fulfillment update for order %s will be redelivered: %s", order_id, e)
                raise
            # Stale or out-of-order progress events are expected
            logger.warning("Fulfillment update for order %s rejected (%s): %s", order_id, e.kind, e)


async def start_consumer(controller: OrderLifecycleController, url: str = RABBITMQ_URL):
    connection = await aio_pika.connect_robust(url)
    async with connection:
        channel = await connection.channel()

        fulfillment_exchange = await channel.declare_exchange(
            FULFILLMENT_EXCHANGE, aio_pika.ExchangeType.TOPIC, durable=True
        )

        queue = await channel.declare_queue("order_payments_fulfillment_q", durable=True)
        await queue.bind(fulfillment_exchange, "fulfillment.#")

        logger.info("Fulfillment consumer is listening for events...")

        async def on_message(message: aio_pika.IncomingMessage):
            await process_fulfillment_update(message, controller)

        await queue.consume(on_message, no_ack=False)

        # Keep the task running
        await asyncio.Future()
