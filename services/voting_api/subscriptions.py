"""
Scoped subscriptions to the table change feed using aio-pika.

Each subscription declares an exclusive, auto-deleted queue bound to
``<table>.*`` on the change exchange. Entering the subscription starts the
consumer; leaving it cancels the consumer and closes the channel, whatever
the exit path.
"""
import json
import logging
from typing import Awaitable, Callable, Optional

import aio_pika
from aio_pika import connect_robust
from aio_pika.abc import (
    AbstractChannel,
    AbstractIncomingMessage,
    AbstractQueue,
    AbstractRobustConnection,
)

from shared import ChangeEvent, Table, get_binding_key
from .config import settings

logger = logging.getLogger(__name__)

ChangeHandler = Callable[[ChangeEvent], Awaitable[None]]


class ChangeSubscription:
    """Consumer of one table's change events, usable as an async context manager."""

    def __init__(self, connection: AbstractRobustConnection, table: Table, handler: ChangeHandler):
        self.connection = connection
        self.table = Table(table)
        self.handler = handler
        self.channel: Optional[AbstractChannel] = None
        self.queue: Optional[AbstractQueue] = None
        self.consumer_tag: Optional[str] = None

    async def _on_message(self, message: AbstractIncomingMessage):
        """
        Callback for RabbitMQ messages.

        Args:
            message: Incoming change event
        """
        try:
            event = ChangeEvent.from_json(message.body.decode())
        except (json.JSONDecodeError, KeyError, TypeError, UnicodeDecodeError) as e:
            logger.error(f"Failed to decode change event: {e}")
            await message.reject(requeue=False)
            return

        is_valid, error = event.validate()
        if not is_valid:
            logger.warning(f"Dropping invalid change event: {error}")
            await message.reject(requeue=False)
            return

        logger.debug(f"{self.table.value} changed: {event.event_type} {event.record_id}")

        try:
            await self.handler(event)
            await message.ack()
        except Exception as e:
            logger.error(f"Error handling {event.routing_key}: {e}", exc_info=True)
            await message.nack(requeue=False)

    async def __aenter__(self) -> 'ChangeSubscription':
        self.channel = await self.connection.channel()
        try:
            exchange = await self.channel.declare_exchange(
                settings.RABBITMQ_EXCHANGE,
                aio_pika.ExchangeType.TOPIC,
                durable=True
            )
            self.queue = await self.channel.declare_queue(exclusive=True, auto_delete=True)
            await self.queue.bind(exchange, routing_key=get_binding_key(self.table))
            self.consumer_tag = await self.queue.consume(self._on_message)
        except Exception:
            await self.channel.close()
            raise

        logger.info(f"Subscribed to {self.table.value} changes")
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        try:
            if self.queue and self.consumer_tag:
                await self.queue.cancel(self.consumer_tag)
        except Exception as e:
            logger.error(f"Error cancelling {self.table.value} consumer: {e}")
        finally:
            if self.channel and not self.channel.is_closed:
                await self.channel.close()
            self.consumer_tag = None
            logger.info(f"Unsubscribed from {self.table.value} changes")


class ChangeFeed:
    """Robust RabbitMQ connection that hands out change subscriptions."""

    def __init__(self, url: Optional[str] = None):
        self.url = url or settings.rabbitmq_url
        self.connection: Optional[AbstractRobustConnection] = None

    async def connect(self):
        """Establish connection to RabbitMQ."""
        try:
            self.connection = await connect_robust(
                self.url,
                client_properties={'connection_name': f'{settings.SERVICE_NAME}-changes'}
            )
            logger.info(f"Change feed connected: {settings.RABBITMQ_HOST}:{settings.RABBITMQ_PORT}")
        except Exception as e:
            logger.error(f"Failed to connect change feed: {e}")
            raise

    def subscribe(self, table: Table, handler: ChangeHandler) -> ChangeSubscription:
        """Create a subscription; enter it with ``async with`` to start consuming."""
        if not self.connection:
            raise RuntimeError("Change feed is not connected")
        return ChangeSubscription(self.connection, table, handler)

    async def close(self):
        """Close RabbitMQ connection."""
        try:
            if self.connection and not self.connection.is_closed:
                await self.connection.close()
                logger.info("Change feed connection closed")
        except Exception as e:
            logger.error(f"Error closing change feed connection: {e}")

    async def __aenter__(self) -> 'ChangeFeed':
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
