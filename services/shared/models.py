"""
Shared data models and utilities for the school voting service.

This module contains:
- ChangeEvent: Data structure for table change messages passed through RabbitMQ
- Table and change-type enums
- Redis key and RabbitMQ routing helpers
"""

import json
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from typing import Optional, Dict, Any
from enum import Enum


class Table(str, Enum):
    """Data store tables that publish change events."""
    SCHOOLS = "schools"
    CANDIDATES = "candidates"
    VOTES = "votes"


class ChangeType(str, Enum):
    """Kind of mutation carried by a change event."""
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


@dataclass
class ChangeEvent:
    """
    Data structure for change notifications passed through RabbitMQ.

    Attributes:
        table: Table that changed (schools, candidates, votes)
        event_type: Mutation kind (insert, update, delete)
        record_id: Primary key of the affected row, if known
        timestamp: ISO format timestamp when the change was made
    """
    table: str
    event_type: str
    record_id: Optional[str] = None
    timestamp: str = ""

    def __post_init__(self):
        if not self.timestamp:
            self.timestamp = get_current_timestamp()

    @property
    def routing_key(self) -> str:
        return get_routing_key(self.table, self.event_type)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return asdict(self)

    def to_json(self) -> str:
        """Convert to JSON string for message queue."""
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ChangeEvent':
        """Create ChangeEvent from dictionary."""
        return cls(
            table=data["table"],
            event_type=data["event_type"],
            record_id=data.get("record_id"),
            timestamp=data.get("timestamp", ""),
        )

    @classmethod
    def from_json(cls, json_str: str) -> 'ChangeEvent':
        """Create ChangeEvent from JSON string."""
        data = json.loads(json_str)
        return cls.from_dict(data)

    def validate(self) -> tuple[bool, Optional[str]]:
        """
        Validate change event data.

        Returns:
            tuple: (is_valid, error_message)
        """
        if self.table not in [t.value for t in Table]:
            return False, f"Unknown table '{self.table}'"

        if self.event_type not in [c.value for c in ChangeType]:
            return False, f"Unknown change type '{self.event_type}'"

        return True, None


def create_change_event(
    table: Table,
    event_type: ChangeType,
    record_id: Optional[Any] = None
) -> ChangeEvent:
    """
    Create a ChangeEvent stamped with the current time.

    Args:
        table: Table that changed
        event_type: Mutation kind
        record_id: Primary key of the affected row

    Returns:
        ChangeEvent: Constructed change event
    """
    return ChangeEvent(
        table=Table(table).value,
        event_type=ChangeType(event_type).value,
        record_id=str(record_id) if record_id is not None else None,
    )


def get_current_timestamp() -> str:
    """
    Get current UTC timestamp in ISO format.

    Returns:
        str: ISO format timestamp with Z suffix
    """
    return datetime.now(timezone.utc).replace(tzinfo=None).isoformat() + 'Z'


# Redis key templates for session data
REDIS_KEYS = {
    'voter_session': 'voter_session:{}',   # HASH {fingerprint, has_voted}
}


def get_redis_key(key_type: str, *args) -> str:
    """
    Get formatted Redis key.

    Args:
        key_type: Type of key from REDIS_KEYS
        *args: Arguments to format into key

    Returns:
        str: Formatted Redis key
    """
    key_template = REDIS_KEYS.get(key_type)
    if key_template and '{}' in key_template:
        return key_template.format(*args)
    return key_template


# RabbitMQ exchange and routing patterns for the change feed
RABBITMQ_CONFIG = {
    'exchange': 'election.changes',
    'routing_keys': {
        'change': '{}.{}',      # <table>.<event_type>
        'table': '{}.*',        # every change on <table>
    }
}


def get_routing_key(table: str, event_type: str) -> str:
    """
    Get the routing key a change event is published under.

    Args:
        table: Table name
        event_type: Change type

    Returns:
        str: Routing key, e.g. ``votes.insert``
    """
    return RABBITMQ_CONFIG['routing_keys']['change'].format(
        Table(table).value, ChangeType(event_type).value
    )


def get_binding_key(table: str) -> str:
    """
    Get the binding pattern matching every change on a table.

    Args:
        table: Table name

    Returns:
        str: Binding key, e.g. ``votes.*``
    """
    return RABBITMQ_CONFIG['routing_keys']['table'].format(Table(table).value)
