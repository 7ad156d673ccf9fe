"""
Shared utilities and models for the school voting service.

This package contains common code used by the publisher and the subscribers:
- Data models (ChangeEvent, enums)
- Redis key helpers
- RabbitMQ routing constants
"""

from .models import (
    ChangeEvent,
    ChangeType,
    Table,
    create_change_event,
    get_current_timestamp,
    get_redis_key,
    get_routing_key,
    get_binding_key,
    REDIS_KEYS,
    RABBITMQ_CONFIG,
)

__all__ = [
    'ChangeEvent',
    'ChangeType',
    'Table',
    'create_change_event',
    'get_current_timestamp',
    'get_redis_key',
    'get_routing_key',
    'get_binding_key',
    'REDIS_KEYS',
    'RABBITMQ_CONFIG',
]

__version__ = '1.0.0'
