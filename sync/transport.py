"""
Transmitter port used by the sync pipeline.

send() reports SUCCESS, TRANSIENT_FAILURE or PERMANENT_FAILURE for a
whole batch, either as a SendOutcome or as a DeliveryReport that also names
items refused individually within an accepted batch. A plain bool is
accepted (True = success, False = transient).
Raised exceptions count as transient failures, except
PermanentDeliveryError which marks the batch as rejected.
"""

import logging
from abc import ABC, abstractmethod
from collections import deque
from typing import Any, Deque, Dict, List, Sequence, Union

from sync.models import DeliveryReport, SendOutcome, SyncItem

logger = logging.getLogger(__name__)


class PermanentDeliveryError(Exception):
    """The sink rejected the batch; retrying will not help."""


class Transmitter(ABC):
    """Delivers a batch of items to the remote sink."""

    name = "transmitter"

    @abstractmethod
    async def send(self, batch: Sequence[SyncItem]) -> Union[DeliveryReport, SendOutcome, bool]:
        pass

    async def health_check(self) -> bool:
        return True

    async def close(self) -> None:
        pass


def normalize_report(result: Any) -> DeliveryReport:
    if isinstance(result, DeliveryReport):
        return result
    if isinstance(result, SendOutcome):
        return DeliveryReport(result)
    if isinstance(result, bool):
        return DeliveryReport(SendOutcome.SUCCESS if result else SendOutcome.TRANSIENT_FAILURE)
    logger.warning(
        "Transmitter returned an unexpected result, treating as transient failure",
        extra={"extra_data": {"result_type": type(result).__name__}},
    )
    return DeliveryReport(SendOutcome.TRANSIENT_FAILURE)


class InMemoryTransmitter(Transmitter):
    """
    Keeps delivered batches in memory.

    Used by the HTTP host when no remote sink is configured, and by tests.
    """

    name = "memory"

    def __init__(self, max_batches: int = 1000):
        self.batches: Deque[List[Dict[str, Any]]] = deque(maxlen=max_batches)

    async def send(self, batch: Sequence[SyncItem]) -> SendOutcome:
        self.batches.append([item.to_dict() for item in batch])
        logger.debug("Stored batch of %d items in memory", len(batch))
        return SendOutcome.SUCCESS

    @property
    def delivered_count(self) -> int:
        return sum(len(batch) for batch in self.batches)
