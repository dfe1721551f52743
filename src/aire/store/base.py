"""
Base persistence interfaces

Defines the abstract interface for history store backends. Records are plain
JSON-compatible dicts indexed by kind, id and a timestamp.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from typing import Any, Optional


class RecordKind(Enum):
    """Types of persisted records"""

    ALERT = "alert"
    NOTIFICATION = "notification"
    INCIDENT = "incident"
    ACTION_EXECUTION = "action_execution"
    SNAPSHOT = "snapshot"


class StoreBackend(ABC):
    """
    Abstract base class for history store backends

    Runtime decisions never read from a store; it only serves history,
    audit and reporting.
    """

    @abstractmethod
    async def append(
        self,
        kind: RecordKind,
        record_id: str,
        record: dict[str, Any],
        timestamp: datetime,
    ) -> None:
        """
        Write a record, replacing any earlier version with the same id

        Args:
            kind: Record kind
            record_id: Record identifier, unique within its kind
            record: JSON-compatible record body
            timestamp: Time the record is indexed under
        """

    @abstractmethod
    async def update(
        self, kind: RecordKind, record_id: str, fields: dict[str, Any]
    ) -> bool:
        """
        Merge fields into an existing record

        Returns:
            True if the record existed, False otherwise
        """

    @abstractmethod
    async def get(self, kind: RecordKind, record_id: str) -> Optional[dict[str, Any]]:
        """Fetch one record by id"""

    @abstractmethod
    async def query(
        self,
        kind: RecordKind,
        since: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> list[dict[str, Any]]:
        """
        Records of a kind in timestamp order

        Args:
            kind: Record kind
            since: Only records indexed at or after this time
            limit: Keep only the most recent ``limit`` records
        """

    @abstractmethod
    async def purge(self, kind: RecordKind, before: datetime) -> int:
        """Delete records indexed before a point in time; returns the count"""

    @abstractmethod
    async def get_stats(self) -> dict[str, Any]:
        """Backend statistics"""

    async def close(self) -> None:
        """Release backend resources"""
