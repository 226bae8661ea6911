"""
Queue items, delivery outcomes and pipeline statistics.
"""

import json
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, FrozenSet, Mapping, Optional


class SyncPriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    SyncPriority.LOW: 0,
    SyncPriority.NORMAL: 1,
    SyncPriority.HIGH: 2,
    SyncPriority.CRITICAL: 3,
}


class SendOutcome(str, Enum):
    SUCCESS = "success"
    TRANSIENT_FAILURE = "transient_failure"
    PERMANENT_FAILURE = "permanent_failure"


@dataclass(frozen=True)
class DeliveryReport:
    """
    Batch outcome plus the ids the sink refused individually.

    ``rejected_ids`` is only meaningful for SUCCESS: those items were
    permanently refused while the rest of the batch was accepted.
    """
    outcome: SendOutcome
    rejected_ids: FrozenSet[str] = frozenset()


@dataclass(frozen=True)
class SyncItem:
    """
    One unit of data waiting for delivery.

    Items are immutable; the pipeline replaces an item with a copy carrying
    ``retry_count + 1`` when it is re-queued after a failure.
    ``enqueued_at`` is stamped by the pipeline when left unset.
    """
    item_id: str
    payload: Mapping[str, Any]
    priority: SyncPriority = SyncPriority.NORMAL
    enqueued_at: Optional[float] = None
    retry_count: int = 0

    def with_retry(self) -> "SyncItem":
        return replace(self, retry_count=self.retry_count + 1)

    def with_payload(self, payload: Mapping[str, Any]) -> "SyncItem":
        return replace(self, payload=payload)

    @property
    def size_bytes(self) -> int:
        return len(json.dumps(dict(self.payload), default=str).encode("utf-8"))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "item_id": self.item_id,
            "payload": dict(self.payload),
            "priority": self.priority.value,
            "enqueued_at": self.enqueued_at,
            "retry_count": self.retry_count,
        }


@dataclass
class SyncResult:
    """Outcome of one flush call."""
    attempted: int = 0
    sent: int = 0
    requeued: int = 0
    dropped: int = 0
    compacted: int = 0
    outcome: Optional[SendOutcome] = None
    skipped_reason: Optional[str] = None
    duration: float = 0.0

    @classmethod
    def skipped(cls, reason: str) -> "SyncResult":
        return cls(skipped_reason=reason)

    @property
    def success(self) -> bool:
        return self.outcome == SendOutcome.SUCCESS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attempted": self.attempted,
            "sent": self.sent,
            "requeued": self.requeued,
            "dropped": self.dropped,
            "compacted": self.compacted,
            "outcome": self.outcome.value if self.outcome else None,
            "skipped_reason": self.skipped_reason,
            "duration": round(self.duration, 4),
        }


@dataclass
class SyncStatistics:
    """Counters kept by the pipeline over its lifetime."""
    connectivity_changes: int = 0
    total_sync_attempts: int = 0
    successful_syncs: int = 0
    failed_syncs: int = 0
    permanent_failures: int = 0
    items_queued: int = 0
    items_synced: int = 0
    items_requeued: int = 0
    items_dropped: int = 0
    items_compacted: int = 0
    items_evicted: int = 0
    duplicates_ignored: int = 0
    total_sync_duration: float = 0.0
    last_sync_time: Optional[float] = None
    last_success_time: Optional[float] = None
    failures_by_code: Dict[str, int] = field(default_factory=dict)

    @property
    def average_sync_duration(self) -> float:
        if self.total_sync_attempts == 0:
            return 0.0
        return self.total_sync_duration / self.total_sync_attempts

    @property
    def sync_success_rate(self) -> float:
        if self.total_sync_attempts == 0:
            return 0.0
        return self.successful_syncs / self.total_sync_attempts

    def count_failure(self, code: str) -> None:
        self.failures_by_code[code] = self.failures_by_code.get(code, 0) + 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "connectivity_changes": self.connectivity_changes,
            "total_sync_attempts": self.total_sync_attempts,
            "successful_syncs": self.successful_syncs,
            "failed_syncs": self.failed_syncs,
            "permanent_failures": self.permanent_failures,
            "items_queued": self.items_queued,
            "items_synced": self.items_synced,
            "items_requeued": self.items_requeued,
            "items_dropped": self.items_dropped,
            "items_compacted": self.items_compacted,
            "items_evicted": self.items_evicted,
            "duplicates_ignored": self.duplicates_ignored,
            "total_sync_duration": round(self.total_sync_duration, 4),
            "average_sync_duration": round(self.average_sync_duration, 4),
            "sync_success_rate": round(self.sync_success_rate, 4),
            "last_sync_time": self.last_sync_time,
            "last_success_time": self.last_success_time,
            "failures_by_code": dict(self.failures_by_code),
        }
