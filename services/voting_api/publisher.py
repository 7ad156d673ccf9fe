"""RabbitMQ publisher for table change events."""
from typing import Optional
from datetime import datetime, timezone
import aio_pika
from aio_pika import connect_robust, Message, DeliveryMode
from aio_pika.abc import AbstractChannel, AbstractRobustConnection
from aio_pika.pool import Pool
import logging

from shared import ChangeEvent
from .config import settings

logger = logging.getLogger(__name__)


class ChangePublisher:
    """Async RabbitMQ publisher with connection pooling."""

    def __init__(self):
        self.connection_pool: Optional[Pool] = None
        self.channel_pool: Optional[Pool] = None

    async def get_connection(self) -> AbstractRobustConnection:
        """Get a connection from the pool."""
        return await connect_robust(settings.rabbitmq_url)

    async def get_channel(self) -> AbstractChannel:
        """Get a channel from the pool."""
        async with self.connection_pool.acquire() as connection:
            return await connection.channel()

    async def initialize(self):
        """Initialize connection and channel pools and declare the exchange."""
        try:
            self.connection_pool = Pool(
                self.get_connection,
                max_size=settings.RABBITMQ_POOL_SIZE
            )

            self.channel_pool = Pool(
                self.get_channel,
                max_size=settings.RABBITMQ_POOL_SIZE
            )

            async with self.channel_pool.acquire() as channel:
                await channel.declare_exchange(
                    settings.RABBITMQ_EXCHANGE,
                    aio_pika.ExchangeType.TOPIC,
                    durable=True
                )

            logger.info("RabbitMQ publisher initialized successfully")

        except Exception as e:
            logger.error(f"Failed to initialize RabbitMQ publisher: {e}")
            raise

    async def publish_change(self, event: ChangeEvent) -> bool:
        """
        Publish a change event.

        Args:
            event: Change to announce

        Returns:
            bool: True if published successfully, False otherwise
        """
        try:
            async with self.channel_pool.acquire() as channel:
                exchange = await channel.get_exchange(settings.RABBITMQ_EXCHANGE)

                message = Message(
                    body=event.to_json().encode(),
                    delivery_mode=DeliveryMode.NOT_PERSISTENT,
                    content_type="application/json",
                    timestamp=datetime.now(timezone.utc)
                )

                await exchange.publish(message, routing_key=event.routing_key)

                logger.info(
                    f"Published change: {event.routing_key} record={event.record_id}"
                )
                return True

        except Exception as e:
            logger.error(f"Failed to publish change {event.routing_key}: {e}")
            return False

    async def check_health(self) -> bool:
        """
        Check RabbitMQ connection health.

        Returns:
            bool: True if healthy, False otherwise
        """
        try:
            async with self.channel_pool.acquire() as channel:
                await channel.get_exchange(settings.RABBITMQ_EXCHANGE)
                return True
        except Exception as e:
            logger.error(f"RabbitMQ health check failed: {e}")
            return False

    async def close(self):
        """Close all connections and channels."""
        try:
            if self.channel_pool:
                await self.channel_pool.close()
            if self.connection_pool:
                await self.connection_pool.close()
            logger.info("RabbitMQ publisher closed successfully")
        except Exception as e:
            logger.error(f"Error closing RabbitMQ publisher: {e}")


# Global publisher instance
publisher = ChangePublisher()
