"""
Reliable delivery of queued samples under variable network conditions.

SyncPipeline owns a priority queue of SyncItems (critical > high >
normal > low, FIFO by enqueue time within a priority) and delivers it in
batches through a Transmitter:

- a flush runs only when can_sync_now() allows it (connectivity, quality
  and metered policies, measured bandwidth, retry cooldown)
- batches are shaped for the current network quality before sending;
  the queue itself is never modified by shaping
- success clears the cooldown (items the sink refused individually are
  dropped and counted); a transient failure re-queues every item
  with ``retry_count + 1`` (dropping items whose budget is spent) and
  starts an exponentially growing cooldown; a permanent failure drops and
  counts the batch
- coming back online clears the cooldown and flushes immediately, as do
  high/critical enqueues and a full batch
- at most one flush is in flight; cancelling it returns the batch to the
  queue unchanged

Delivery faults are absorbed into statistics and logs; nothing is raised
to the producers.
"""

import asyncio
import contextlib
import heapq
import itertools
import logging
import time
from collections import deque
from dataclasses import dataclass, field, replace
from typing import Any, Deque, Dict, FrozenSet, List, Optional, Set, Tuple

from errors.codes import ErrorCode
from errors.exceptions import require
from resilience.retry import calculate_delay
from signals.models import ConnectivityState, NetworkQuality
from signals.ports import EventStream, SignalSource, Subscription
from signals.scheduler import PeriodicTimer, Scheduler, TimerHandle
from sync.bandwidth import BandwidthMonitor
from sync.models import SendOutcome, SyncItem, SyncPriority, SyncResult, SyncStatistics
from sync.shaping import ShapingConfig, shape_batch
from sync.transport import PermanentDeliveryError, Transmitter, normalize_report

logger = logging.getLogger(__name__)

_URGENT_PRIORITIES = frozenset({SyncPriority.HIGH, SyncPriority.CRITICAL})


@dataclass
class SyncConfig:
    """
    Delivery policy.

    Attributes:
        max_batch_size: Items popped per flush
        max_retries: Re-queues allowed per item after transient failures
        sync_interval: Periodic flush interval (s)
        allow_poor_quality_sync: Flush on poor networks
        allow_metered_sync: Flush on metered connections
        min_bandwidth_kbps: Minimum estimated throughput to flush (0 disables)
        cooldown_floor: Cooldown after the first consecutive failure (s)
        cooldown_ceiling: Upper bound of the doubling cooldown (s)
        backoff_base: Cooldown growth factor per consecutive failure
        transmit_timeout: Seconds before a send counts as a transient failure
        max_queue_size: Queue bound; the oldest lowest-priority item is evicted
        shutdown_flush_timeout: Grace given to a final flush on stop() (s, 0 disables)
        delivered_id_memory: Recently delivered ids remembered for dedupe
        flush_on_priority: Flush immediately on high/critical enqueues
        shaping: Compression levels for fair/poor networks
    """
    max_batch_size: int = 10
    max_retries: int = 3
    sync_interval: float = 15.0
    allow_poor_quality_sync: bool = False
    allow_metered_sync: bool = True
    min_bandwidth_kbps: float = 0.0
    cooldown_floor: float = 1.0
    cooldown_ceiling: float = 300.0
    backoff_base: float = 2.0
    transmit_timeout: float = 30.0
    max_queue_size: int = 10_000
    shutdown_flush_timeout: float = 5.0
    delivered_id_memory: int = 10_000
    flush_on_priority: bool = True
    shaping: ShapingConfig = field(default_factory=ShapingConfig)

    def __post_init__(self) -> None:
        require(self.max_batch_size >= 1, "max_batch_size", "must be at least 1", self.max_batch_size)
        require(self.max_retries >= 0, "max_retries", "must not be negative", self.max_retries)
        require(self.sync_interval > 0, "sync_interval", "must be positive", self.sync_interval)
        require(self.min_bandwidth_kbps >= 0, "min_bandwidth_kbps", "must not be negative",
                self.min_bandwidth_kbps)
        require(0 < self.cooldown_floor <= self.cooldown_ceiling, "cooldown_floor",
                "must be positive and not exceed cooldown_ceiling", self.cooldown_floor)
        require(self.backoff_base >= 1, "backoff_base", "must be at least 1", self.backoff_base)
        require(self.transmit_timeout > 0, "transmit_timeout", "must be positive", self.transmit_timeout)
        require(self.max_queue_size >= self.max_batch_size, "max_queue_size",
                "must be at least max_batch_size", self.max_queue_size)
        require(self.shutdown_flush_timeout >= 0, "shutdown_flush_timeout", "must not be negative",
                self.shutdown_flush_timeout)
        require(self.delivered_id_memory >= 0, "delivered_id_memory", "must not be negative",
                self.delivered_id_memory)


class SyncPipeline:
    """
    Priority queue plus batched delivery through a Transmitter.

    Args:
        transmitter: Sink port
        scheduler: Clock and timer port (periodic flush, cooldown)
        config: Delivery policy; defaults when omitted
        connectivity_source: Optional connectivity source subscribed on start()
        bandwidth_monitor: Optional shared BandwidthMonitor
        telemetry: Optional TelemetryService for metrics and spans
    """

    def __init__(
        self,
        transmitter: Transmitter,
        scheduler: Scheduler,
        config: Optional[SyncConfig] = None,
        connectivity_source: Optional[SignalSource[ConnectivityState]] = None,
        bandwidth_monitor: Optional[BandwidthMonitor] = None,
        telemetry: Optional[Any] = None,
    ):
        self.config = config or SyncConfig()
        self._transmitter = transmitter
        self._scheduler = scheduler
        self._connectivity_source = connectivity_source
        self._bandwidth = bandwidth_monitor or BandwidthMonitor()
        self._telemetry = telemetry

        self._heap: List[Tuple[int, float, int, SyncItem]] = []
        self._seq = itertools.count()
        self._queued_ids: Set[str] = set()
        self._in_flight: List[SyncItem] = []
        self._delivered_order: Deque[str] = deque(maxlen=self.config.delivered_id_memory)
        self._delivered_ids: Set[str] = set()

        self._connectivity: Optional[ConnectivityState] = None
        self._consecutive_failures = 0
        self._cooldown_until: Optional[float] = None
        self._retry_timer: Optional[TimerHandle] = None

        self._flushing = False
        self._drain_task: Optional[asyncio.Task] = None
        self._flush_again = False
        self._timer = PeriodicTimer(scheduler, self.config.sync_interval, self.request_flush, "sync.interval")
        self._subscriptions: List[Subscription] = []
        self._started = False
        self._stopped = False

        self._stats = SyncStatistics()
        self.on_result: EventStream[SyncResult] = EventStream("sync.result")

    # Lifecycle

    def start(self) -> None:
        if self._started or self._stopped:
            return
        self._started = True
        if self._connectivity_source is not None:
            self._subscriptions.append(self._connectivity_source.subscribe(
                self.on_connectivity_change, self._connectivity_failed
            ))
            if self._connectivity_source.latest is not None:
                self.on_connectivity_change(self._connectivity_source.latest)
        self._timer.start()
        logger.info("Sync pipeline started", extra={"extra_data": {
            "transmitter": self._transmitter.name,
            "queue_size": len(self._heap),
        }})
        if self._heap:
            self.request_flush()

    async def stop(self) -> None:
        """
        Cancel timers and subscriptions, give the queue one final flush
        bounded by ``shutdown_flush_timeout``, then cancel whatever is still
        in flight. Items left over stay queued.
        """
        if self._stopped:
            return
        self._timer.cancel()
        for subscription in self._subscriptions:
            subscription.cancel()
        self._subscriptions.clear()
        await self._final_flush()

        self._stopped = True
        self._cancel_retry_timer()
        task = self._drain_task
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self.on_result.clear()
        logger.info("Sync pipeline stopped", extra={"extra_data": {
            "queue_size": len(self._heap),
        }})

    async def _final_flush(self) -> None:
        timeout = self.config.shutdown_flush_timeout
        if timeout <= 0 or not self._started:
            return
        if self._heap:
            self.request_flush()
        task = self._drain_task
        if task is None or task.done():
            return
        done, _ = await asyncio.wait({task}, timeout=timeout)
        if not done:
            logger.warning("Final flush did not complete before stop", extra={"extra_data": {
                "timeout_seconds": timeout,
                "queue_size": len(self._heap),
                "in_flight": len(self._in_flight),
            }})

    # Queue

    @property
    def queue_size(self) -> int:
        return len(self._heap)

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    def pending_items(self) -> List[SyncItem]:
        """Queued items in delivery order."""
        return [entry[3] for entry in sorted(self._heap)]

    def enqueue(self, item: SyncItem) -> bool:
        """
        Add an item to the queue without blocking.

        Returns:
            False when the item was ignored (duplicate id, stopped pipeline,
            or evicted immediately by a full queue)
        """
        if self._stopped:
            logger.warning("Enqueue after stop ignored", extra={"extra_data": {"item_id": item.item_id}})
            return False
        if self._is_known(item.item_id):
            self._stats.duplicates_ignored += 1
            logger.debug("Duplicate sync item ignored", extra={"extra_data": {"item_id": item.item_id}})
            return False

        if item.enqueued_at is None:
            item = replace(item, enqueued_at=self._scheduler.now())
        if len(self._heap) >= self.config.max_queue_size and not self._evict_for(item):
            return False

        self._push(item)
        self._stats.items_queued += 1

        urgent = self.config.flush_on_priority and item.priority in _URGENT_PRIORITIES
        if urgent or len(self._heap) >= self.config.max_batch_size:
            self.request_flush()
        return True

    def _is_known(self, item_id: str) -> bool:
        return (
            item_id in self._queued_ids
            or item_id in self._delivered_ids
            or any(item.item_id == item_id for item in self._in_flight)
        )

    def _push(self, item: SyncItem) -> None:
        heapq.heappush(self._heap, (-item.priority.rank, item.enqueued_at, next(self._seq), item))
        self._queued_ids.add(item.item_id)

    def _pop_batch(self, limit: int) -> List[SyncItem]:
        batch = []
        while self._heap and len(batch) < limit:
            item = heapq.heappop(self._heap)[3]
            self._queued_ids.discard(item.item_id)
            batch.append(item)
        return batch

    def _evict_for(self, incoming: SyncItem) -> bool:
        victim_index = min(
            range(len(self._heap)),
            key=lambda i: (self._heap[i][3].priority.rank, self._heap[i][1], self._heap[i][2]),
        )
        victim = self._heap[victim_index][3]
        self._stats.items_evicted += 1

        if incoming.priority.rank < victim.priority.rank:
            logger.warning("Queue full, incoming item evicted", extra={"extra_data": {
                "item_id": incoming.item_id,
                "priority": incoming.priority.value,
            }})
            return False

        self._heap[victim_index] = self._heap[-1]
        self._heap.pop()
        heapq.heapify(self._heap)
        self._queued_ids.discard(victim.item_id)
        logger.warning("Queue full, oldest lowest-priority item evicted", extra={"extra_data": {
            "item_id": victim.item_id,
            "priority": victim.priority.value,
        }})
        return True

    def _remember_delivered(self, item_id: str) -> None:
        if self._delivered_order.maxlen == 0:
            return
        if len(self._delivered_order) == self._delivered_order.maxlen:
            self._delivered_ids.discard(self._delivered_order[0])
        self._delivered_order.append(item_id)
        self._delivered_ids.add(item_id)

    # Gating

    @property
    def network_quality(self) -> NetworkQuality:
        conn = self._connectivity
        if conn is not None and not conn.is_connected:
            return NetworkQuality.NONE
        if conn is not None and conn.quality is not None:
            return conn.quality
        return self._bandwidth.estimated_quality()

    def blocked_reason(self) -> Optional[str]:
        """Why a flush would be refused right now, or None."""
        conn = self._connectivity
        if conn is not None and not conn.is_connected:
            return "offline"
        if self.network_quality == NetworkQuality.POOR and not self.config.allow_poor_quality_sync:
            return "poor_quality"
        if conn is not None and conn.is_metered and not self.config.allow_metered_sync:
            return "metered"
        if self.config.min_bandwidth_kbps > 0:
            estimate = self._bandwidth.estimated_kbps
            if estimate is not None and estimate < self.config.min_bandwidth_kbps:
                return "insufficient_bandwidth"
        if self._cooldown_until is not None and self._scheduler.monotonic() < self._cooldown_until:
            return "cooldown"
        return None

    def can_sync_now(self) -> bool:
        return self.blocked_reason() is None

    @property
    def cooldown_remaining(self) -> float:
        if self._cooldown_until is None:
            return 0.0
        return max(0.0, self._cooldown_until - self._scheduler.monotonic())

    # Connectivity

    def on_connectivity_change(self, state: ConnectivityState) -> None:
        if self._stopped:
            return
        previous = self._connectivity
        self._connectivity = state
        self._bandwidth.report(state.bandwidth_kbps)
        if previous == state:
            return

        self._stats.connectivity_changes += 1
        came_online = state.is_connected and (previous is None or not previous.is_connected)
        went_offline = not state.is_connected and (previous is None or previous.is_connected)

        if came_online:
            self._consecutive_failures = 0
            self._cooldown_until = None
            self._cancel_retry_timer()
            logger.info("Connectivity available, flushing queue", extra={"extra_data": {
                "transport": state.transport.value,
                "quality": self.network_quality.value,
                "queue_size": len(self._heap),
            }})
            self.request_flush()
        elif went_offline:
            logger.info("Connectivity lost, holding queue", extra={"extra_data": {
                "queue_size": len(self._heap),
            }})

    def _connectivity_failed(self, error: Exception) -> None:
        logger.warning("Connectivity signal unavailable", extra={"extra_data": {
            "error_code": ErrorCode.SIGNAL_UNAVAILABLE.value,
            "error": str(error),
        }})

    # Flushing

    def request_flush(self) -> None:
        """Schedule an out-of-band flush; coalesces with one already running."""
        if self._stopped or not self._started:
            return
        if self._drain_task is not None and not self._drain_task.done():
            self._flush_again = True
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop, flush request deferred to the periodic timer")
            return
        self._drain_task = loop.create_task(self._drain())
        self._drain_task.add_done_callback(self._on_drain_done)

    async def _drain(self) -> None:
        while not self._stopped:
            self._flush_again = False
            result = await self.flush()
            if result.success and self._heap and self.can_sync_now():
                continue
            if self._flush_again:
                continue
            break

    def _on_drain_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("Background flush failed", exc_info=error)

    async def wait_for_flush(self) -> None:
        """Wait until no background flush is running."""
        while self._drain_task is not None and not self._drain_task.done():
            await asyncio.wait({self._drain_task})

    async def flush(self, max_batch: Optional[int] = None) -> SyncResult:
        """
        Deliver one batch if delivery is currently allowed.

        Args:
            max_batch: Batch size override; ``config.max_batch_size`` when omitted

        Returns:
            SyncResult describing the attempt, or why it was skipped
        """
        if self._stopped:
            return SyncResult.skipped("stopped")
        if self._flushing:
            return SyncResult.skipped("in_flight")
        reason = self.blocked_reason()
        if reason is not None:
            return SyncResult.skipped(reason)
        if not self._heap:
            return SyncResult.skipped("empty")

        batch = self._pop_batch(max_batch or self.config.max_batch_size)
        self._flushing = True
        self._in_flight = batch
        try:
            result = await self._deliver(batch)
        except asyncio.CancelledError:
            for item in batch:
                self._push(item)
            logger.info("Flush cancelled, batch returned to queue", extra={"extra_data": {
                "items": len(batch),
            }})
            raise
        finally:
            self._flushing = False
            self._in_flight = []

        self.on_result.emit(result)
        return result

    def _span(self, batch_size: int, quality: NetworkQuality):
        if self._telemetry is None:
            return contextlib.nullcontext()
        return self._telemetry.create_external_service_span(
            self._transmitter.name, "send",
            {"batch.size": batch_size, "network.quality": quality.value},
        )

    async def _deliver(self, batch: List[SyncItem]) -> SyncResult:
        quality = self.network_quality
        shaped = shape_batch(batch, quality, self.config.shaping)
        self._stats.total_sync_attempts += 1
        error: Optional[str] = None
        rejected_ids: FrozenSet[str] = frozenset()

        started = time.perf_counter()
        with self._span(len(shaped.items), quality):
            try:
                raw = await asyncio.wait_for(
                    self._transmitter.send(shaped.items),
                    timeout=self.config.transmit_timeout,
                )
                report = normalize_report(raw)
                outcome = report.outcome
                rejected_ids = report.rejected_ids
            except asyncio.TimeoutError:
                outcome = SendOutcome.TRANSIENT_FAILURE
                error = "transmit timed out"
            except PermanentDeliveryError as e:
                outcome = SendOutcome.PERMANENT_FAILURE
                error = str(e)
            except Exception as e:
                outcome = SendOutcome.TRANSIENT_FAILURE
                error = f"{type(e).__name__}: {e}"
        duration = time.perf_counter() - started

        self._stats.total_sync_duration += duration
        self._stats.last_sync_time = self._scheduler.now()
        result = SyncResult(attempted=len(batch), outcome=outcome, duration=duration)

        if outcome == SendOutcome.SUCCESS:
            self._bandwidth.record(shaped.size_bytes, duration)
            self._handle_success(batch, shaped.items, shaped.compacted, rejected_ids, result)
        elif outcome == SendOutcome.TRANSIENT_FAILURE:
            self._handle_transient_failure(batch, error, result)
        else:
            self._handle_permanent_failure(batch, error, result)

        if self._telemetry is not None:
            self._telemetry.record_metric("sync.batch_duration_ms", duration * 1000, {
                "outcome": outcome.value,
                "quality": quality.value,
            })
        return result

    def _handle_success(self, batch, sent, compacted, rejected_ids, result: SyncResult) -> None:
        rejected = [item.item_id for item in sent if item.item_id in rejected_ids]
        for item in batch:
            if item.item_id not in rejected_ids:
                self._remember_delivered(item.item_id)
        delivered = len(sent) - len(rejected)
        result.sent = delivered
        result.dropped = len(rejected)
        result.compacted = len(compacted)
        self._stats.successful_syncs += 1
        self._stats.items_synced += delivered
        self._stats.items_compacted += len(compacted)
        self._stats.last_success_time = self._scheduler.now()
        self._consecutive_failures = 0
        self._cooldown_until = None
        if rejected:
            self._stats.items_dropped += len(rejected)
            self._stats.count_failure(ErrorCode.PERMANENT_DELIVERY_FAILURE.value)
            logger.error("Items refused by sink, dropped", extra={"extra_data": {
                "error_code": ErrorCode.PERMANENT_DELIVERY_FAILURE.value,
                "item_ids": rejected,
            }})
        self._cancel_retry_timer()
        logger.debug("Batch delivered", extra={"extra_data": {
            "sent": delivered,
            "compacted": len(compacted),
            "queue_size": len(self._heap),
        }})

    def _handle_transient_failure(self, batch, error: Optional[str], result: SyncResult) -> None:
        self._stats.failed_syncs += 1
        self._stats.count_failure(ErrorCode.TRANSIENT_DELIVERY_FAILURE.value)
        self._consecutive_failures += 1

        for item in batch:
            if item.retry_count >= self.config.max_retries:
                result.dropped += 1
                self._stats.items_dropped += 1
                self._stats.count_failure(ErrorCode.RETRY_BUDGET_EXHAUSTED.value)
                logger.warning("Sync item dropped after exhausting retries", extra={"extra_data": {
                    "error_code": ErrorCode.RETRY_BUDGET_EXHAUSTED.value,
                    "item_id": item.item_id,
                    "retry_count": item.retry_count,
                }})
            else:
                self._push(item.with_retry())
                result.requeued += 1
                self._stats.items_requeued += 1

        cooldown = calculate_delay(
            self._consecutive_failures - 1,
            self.config.cooldown_floor,
            self.config.backoff_base,
            self.config.cooldown_ceiling,
        )
        self._cooldown_until = self._scheduler.monotonic() + cooldown
        self._cancel_retry_timer()
        self._retry_timer = self._scheduler.call_later(cooldown, self._cooldown_elapsed)

        logger.warning("Transient delivery failure", extra={"extra_data": {
            "error_code": ErrorCode.TRANSIENT_DELIVERY_FAILURE.value,
            "error": error,
            "requeued": result.requeued,
            "dropped": result.dropped,
            "consecutive_failures": self._consecutive_failures,
            "cooldown_seconds": cooldown,
        }})

    def _handle_permanent_failure(self, batch, error: Optional[str], result: SyncResult) -> None:
        self._stats.failed_syncs += 1
        self._stats.permanent_failures += 1
        self._stats.items_dropped += len(batch)
        self._stats.count_failure(ErrorCode.PERMANENT_DELIVERY_FAILURE.value)
        result.dropped = len(batch)
        logger.error("Batch rejected by sink, items dropped", extra={"extra_data": {
            "error_code": ErrorCode.PERMANENT_DELIVERY_FAILURE.value,
            "error": error,
            "item_ids": [item.item_id for item in batch],
        }})

    def _cooldown_elapsed(self) -> None:
        self._retry_timer = None
        self.request_flush()

    def _cancel_retry_timer(self) -> None:
        if self._retry_timer is not None:
            self._retry_timer.cancel()
            self._retry_timer = None

    # Introspection

    def statistics(self) -> Dict[str, Any]:
        data = self._stats.to_dict()
        conn = self._connectivity
        data.update({
            "queue_size": len(self._heap),
            "in_flight": len(self._in_flight),
            "consecutive_failures": self._consecutive_failures,
            "cooldown_remaining": round(self.cooldown_remaining, 3),
            "network_quality": self.network_quality.value,
            "connectivity": None if conn is None else {
                "transport": conn.transport.value,
                "metered": conn.is_metered,
                "connected": conn.is_connected,
            },
            "bandwidth": self._bandwidth.to_dict(),
            "blocked_reason": self.blocked_reason(),
        })
        return data

    @property
    def stats(self) -> SyncStatistics:
        return self._stats
