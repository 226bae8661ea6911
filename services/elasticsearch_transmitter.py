"""
Elasticsearch sink for the sync pipeline.

Each batch is written with a single bulk request. Item ids are used as
document ids, so a batch that is retried after a transient failure
overwrites instead of duplicating. Calls go through a circuit breaker so
that an unreachable cluster fails fast while it recovers.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from elasticsearch import Elasticsearch
from elasticsearch.helpers import bulk

from resilience.circuit_breaker import CircuitBreaker, CircuitBreakerConfig, CircuitOpenException
from sync.models import DeliveryReport, SendOutcome, SyncItem
from sync.transport import Transmitter

logger = logging.getLogger(__name__)


POSITIONS_MAPPING = {
    "mappings": {
        "properties": {
            "item_id": {"type": "keyword"},
            "priority": {"type": "keyword"},
            "retry_count": {"type": "integer"},
            "enqueued_at": {"type": "double"},
            "synced_at": {"type": "date"},
            "location": {"type": "geo_point"},
            "payload": {"type": "object", "dynamic": True},
        }
    }
}


def extract_bulk_error_info(error: Dict[str, Any]) -> Dict[str, Any]:
    """
    Pull id, status and reason out of one bulk error entry.

    Entries look like ``{"index": {"_id": ..., "status": 400, "error": {...}}}``;
    anything else is reported with its string form as the reason.
    """
    info: Dict[str, Any] = {"doc_id": None, "status": None, "error_type": None, "reason": None}
    for operation_type in ("index", "create", "update", "delete"):
        op_result = error.get(operation_type) if isinstance(error, dict) else None
        if op_result is None:
            continue
        info["doc_id"] = op_result.get("_id")
        info["status"] = op_result.get("status")
        detail = op_result.get("error")
        if isinstance(detail, dict):
            info["error_type"] = detail.get("type")
            info["reason"] = detail.get("reason")
        elif detail is not None:
            info["reason"] = str(detail)
        break
    if info["reason"] is None and info["error_type"] is None:
        info["reason"] = str(error)
    return info


def extract_location(payload: Dict[str, Any]) -> Optional[Dict[str, float]]:
    """Geo point from a payload's own coordinates or its nested sample/location."""
    for candidate in (payload, payload.get("sample"), payload.get("location")):
        if isinstance(candidate, dict) and "latitude" in candidate and "longitude" in candidate:
            return {"lat": candidate["latitude"], "lon": candidate["longitude"]}
    return None


def classify_bulk_errors(errors: List[Dict[str, Any]], batch_size: int) -> SendOutcome:
    """
    Map bulk errors onto a batch outcome.

    Throttling (429) or server errors make the whole batch retryable. When
    every document was rejected with a client error the batch is permanently
    refused. A partial client-side rejection keeps the batch successful;
    the caller reports the refused documents individually.
    """
    if not errors:
        return SendOutcome.SUCCESS
    statuses = [extract_bulk_error_info(error)["status"] for error in errors]
    if any(status is None or status == 429 or status >= 500 for status in statuses):
        return SendOutcome.TRANSIENT_FAILURE
    if len(errors) >= batch_size:
        return SendOutcome.PERMANENT_FAILURE
    return SendOutcome.SUCCESS


class ElasticsearchTransmitter(Transmitter):
    """
    Transmitter that bulk-indexes batches into one Elasticsearch index.

    Args:
        endpoint: Cluster URL
        index: Target index name
        api_key: Optional API key
        request_timeout: Per-request timeout in seconds
        circuit_config: Circuit breaker settings
        client: Pre-built client (tests inject a mock here)
    """

    name = "elasticsearch"

    def __init__(
        self,
        endpoint: str,
        index: str = "position-updates",
        api_key: Optional[str] = None,
        request_timeout: float = 30.0,
        circuit_config: Optional[CircuitBreakerConfig] = None,
        client: Optional[Elasticsearch] = None,
    ):
        self.endpoint = endpoint
        self.index = index
        self.api_key = api_key
        self.request_timeout = request_timeout
        self.client = client
        self._circuit_breaker = CircuitBreaker(
            name="elasticsearch",
            config=circuit_config or CircuitBreakerConfig(failure_threshold=3),
        )

    @property
    def circuit_breaker(self) -> CircuitBreaker:
        return self._circuit_breaker

    def connect(self) -> None:
        """Create the client and make sure the target index exists."""
        if self.client is None:
            kwargs: Dict[str, Any] = {"request_timeout": self.request_timeout}
            if self.api_key:
                kwargs["api_key"] = self.api_key.strip('"')
            self.client = Elasticsearch(self.endpoint.strip('"'), **kwargs)

        if self.client.indices.exists(index=self.index):
            return
        self.client.indices.create(index=self.index, mappings=POSITIONS_MAPPING["mappings"])
        logger.info("Created index '%s'", self.index)

    def _require_client(self) -> Elasticsearch:
        if self.client is None:
            raise RuntimeError("Elasticsearch client not connected. Call connect() first.")
        return self.client

    def _build_actions(self, batch: Sequence[SyncItem]) -> List[Dict[str, Any]]:
        synced_at = datetime.now(timezone.utc).isoformat()
        actions = []
        for item in batch:
            source = item.to_dict()
            source["synced_at"] = synced_at
            location = extract_location(source["payload"])
            if location is not None:
                source["location"] = location
            actions.append({"_index": self.index, "_id": item.item_id, "_source": source})
        return actions

    async def send(self, batch: Sequence[SyncItem]) -> DeliveryReport:
        """
        Bulk-index a batch.

        Returns:
            DeliveryReport whose ``rejected_ids`` lists documents refused with
            a client error when the rest of the batch was indexed

        Raises:
            CircuitOpenException: While the circuit is open
            Exception: Transport errors, counted by the circuit breaker
        """
        client = self._require_client()
        actions = self._build_actions(batch)

        async def _do_bulk():
            return await asyncio.to_thread(
                bulk, client, actions, raise_on_error=False, stats_only=False
            )

        try:
            success_count, errors = await self._circuit_breaker.execute(_do_bulk)
        except CircuitOpenException as e:
            logger.warning("Elasticsearch circuit open, batch deferred", extra={"extra_data": {
                "circuit_name": e.circuit_name,
                "time_until_retry": e.time_until_retry,
                "batch_size": len(batch),
            }})
            raise

        outcome = classify_bulk_errors(errors, len(batch))
        rejected_ids = set()
        for error in errors:
            info = extract_bulk_error_info(error)
            if info["doc_id"] is not None:
                rejected_ids.add(info["doc_id"])
            logger.error("Bulk indexing failed for document", extra={"extra_data": {
                "index": self.index,
                **info,
            }})
        if errors:
            logger.warning(
                "Bulk indexing to '%s' completed with failures: %d/%d indexed",
                self.index, success_count, len(batch),
                extra={"extra_data": {"outcome": outcome.value}},
            )
        else:
            logger.debug("Bulk indexed %d documents to %s", success_count, self.index)
        if outcome != SendOutcome.SUCCESS:
            return DeliveryReport(outcome)
        return DeliveryReport(outcome, frozenset(rejected_ids))

    async def health_check(self) -> bool:
        if self.client is None:
            return False
        try:
            return bool(await asyncio.to_thread(self.client.ping))
        except Exception as e:
            logger.warning("Elasticsearch ping failed: %s", e)
            return False

    async def close(self) -> None:
        if self.client is not None:
            await asyncio.to_thread(self.client.close)
            self.client = None
