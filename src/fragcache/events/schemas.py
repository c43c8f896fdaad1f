"""Record lifecycle event schemas.

A RecordEvent carries a domain record that was created, updated or
destroyed, plus the attribute changes for updates. Events are published on
the RecordEventBus after the unit of work that produced them commits.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import uuid4


class RecordEventType(str, Enum):
    """Type of record lifecycle event."""

    CREATED = "created"
    UPDATED = "updated"
    DESTROYED = "destroyed"


def record_type_of(record: Any) -> str:
    """The record class name used to key subscriptions."""
    return type(record).__name__


@dataclass(frozen=True, slots=True)
class RecordEvent:
    """Event for a domain record change."""

    event_type: RecordEventType
    record: Any
    changes: dict[str, tuple[Any, Any]] = field(default_factory=dict)  # name -> (old, new)
    event_id: str = field(default_factory=lambda: str(uuid4()))
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def record_type(self) -> str:
        return record_type_of(self.record)
