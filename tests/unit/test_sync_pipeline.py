"""
Unit tests for the sync pipeline.

Tests cover:
- Exactly-once delivery with an always-succeeding transmitter
- Retry budget and drop accounting for failing items
- Priority + FIFO ordering
- Gating (offline, poor quality, metered, cooldown)
- Connectivity-triggered flushes
- Cancellation of an in-flight flush
"""

import asyncio

import pytest
from hypothesis import given, strategies as st

from errors.exceptions import InvalidConfigurationError
from signals.models import ConnectivityState, NetworkCost, NetworkQuality, TransportType
from signals.ports import PushSource
from sync.models import DeliveryReport, SendOutcome, SyncItem, SyncPriority
from sync.pipeline import SyncConfig, SyncPipeline
from sync.transport import InMemoryTransmitter, PermanentDeliveryError, Transmitter
from tests.fakes import ManualScheduler, ScriptedTransmitter


WIFI = ConnectivityState(TransportType.WIFI, NetworkCost.FREE, NetworkQuality.EXCELLENT)


def item(item_id, priority=SyncPriority.NORMAL, **payload):
    return SyncItem(item_id=item_id, payload=payload or {"value": item_id}, priority=priority)


class BlockingTransmitter(Transmitter):
    """Never completes a send until released."""

    def __init__(self):
        self.started = asyncio.Event()
        self.release = asyncio.Event()
        self.batches = []

    async def send(self, batch):
        self.batches.append([i.item_id for i in batch])
        self.started.set()
        await self.release.wait()
        return SendOutcome.SUCCESS


class TestSyncConfig:

    def test_defaults(self):
        config = SyncConfig()
        assert config.max_batch_size == 10
        assert config.max_retries == 3

    @pytest.mark.parametrize("kwargs", [
        {"max_batch_size": 0},
        {"max_retries": -1},
        {"cooldown_floor": 10.0, "cooldown_ceiling": 5.0},
        {"max_queue_size": 5, "max_batch_size": 10},
        {"transmit_timeout": 0},
    ])
    def test_invalid_values_rejected(self, kwargs):
        with pytest.raises(InvalidConfigurationError):
            SyncConfig(**kwargs)


class TestQueue:

    def test_priority_then_fifo_order(self, scheduler):
        pipeline = SyncPipeline(ScriptedTransmitter(), scheduler)
        pipeline.enqueue(item("n1"))
        scheduler.advance(1)
        pipeline.enqueue(item("c1", SyncPriority.CRITICAL))
        scheduler.advance(1)
        pipeline.enqueue(item("l1", SyncPriority.LOW))
        scheduler.advance(1)
        pipeline.enqueue(item("n2"))
        scheduler.advance(1)
        pipeline.enqueue(item("c2", SyncPriority.CRITICAL))
        pipeline.enqueue(item("h1", SyncPriority.HIGH))

        order = [queued.item_id for queued in pipeline.pending_items()]
        assert order == ["c1", "c2", "h1", "n1", "n2", "l1"]

    def test_enqueue_stamps_time(self, scheduler):
        pipeline = SyncPipeline(ScriptedTransmitter(), scheduler)
        pipeline.enqueue(item("a"))
        assert pipeline.pending_items()[0].enqueued_at == scheduler.now()

    def test_duplicate_ids_ignored(self, scheduler):
        pipeline = SyncPipeline(ScriptedTransmitter(), scheduler)
        assert pipeline.enqueue(item("a")) is True
        assert pipeline.enqueue(item("a")) is False
        assert pipeline.queue_size == 1
        assert pipeline.stats.duplicates_ignored == 1

    def test_full_queue_evicts_oldest_lowest_priority(self, scheduler):
        config = SyncConfig(max_batch_size=2, max_queue_size=2)
        pipeline = SyncPipeline(ScriptedTransmitter(), scheduler, config)
        pipeline.enqueue(item("old"))
        scheduler.advance(1)
        pipeline.enqueue(item("new"))
        scheduler.advance(1)

        assert pipeline.enqueue(item("urgent", SyncPriority.HIGH)) is True
        assert pipeline.enqueue(item("low", SyncPriority.LOW)) is False

        assert [queued.item_id for queued in pipeline.pending_items()] == ["urgent", "new"]
        assert pipeline.stats.items_evicted == 2


class TestFlush:

    @pytest.mark.asyncio
    async def test_empty_queue_is_skipped(self, scheduler):
        pipeline = SyncPipeline(ScriptedTransmitter(), scheduler)
        result = await pipeline.flush()
        assert result.skipped_reason == "empty"

    @pytest.mark.asyncio
    async def test_success_delivers_batch_in_order(self, scheduler):
        transmitter = ScriptedTransmitter()
        pipeline = SyncPipeline(transmitter, scheduler, SyncConfig(max_batch_size=2))
        for name in ("a", "b", "c"):
            pipeline.enqueue(item(name))

        result = await pipeline.flush()

        assert result.success
        assert result.sent == 2
        assert transmitter.batches == [["a", "b"]]
        assert pipeline.queue_size == 1
        assert pipeline.stats.items_synced == 2

    @pytest.mark.asyncio
    async def test_max_batch_override(self, scheduler):
        transmitter = ScriptedTransmitter()
        pipeline = SyncPipeline(transmitter, scheduler, SyncConfig(max_batch_size=2))
        for name in ("a", "b", "c"):
            pipeline.enqueue(item(name))

        await pipeline.flush(max_batch=3)
        assert transmitter.batches == [["a", "b", "c"]]

    @pytest.mark.asyncio
    async def test_always_failing_item_retried_max_retries_then_dropped(self, scheduler):
        transmitter = ScriptedTransmitter(default=SendOutcome.TRANSIENT_FAILURE)
        config = SyncConfig(max_retries=3, cooldown_floor=1.0, cooldown_ceiling=8.0)
        pipeline = SyncPipeline(transmitter, scheduler, config)
        pipeline.enqueue(item("doomed"))

        for _ in range(10):
            await pipeline.flush()
            scheduler.advance(config.cooldown_ceiling)

        assert transmitter.sent_ids == ["doomed"] * 4
        assert pipeline.stats.items_dropped == 1
        assert pipeline.stats.items_requeued == 3
        assert pipeline.queue_size == 0

    @pytest.mark.asyncio
    async def test_transient_failure_requeues_with_retry_count(self, scheduler):
        transmitter = ScriptedTransmitter([SendOutcome.TRANSIENT_FAILURE])
        pipeline = SyncPipeline(transmitter, scheduler)
        pipeline.enqueue(item("a"))

        result = await pipeline.flush()

        assert result.requeued == 1
        assert pipeline.pending_items()[0].retry_count == 1

    @pytest.mark.asyncio
    async def test_cooldown_doubles_until_ceiling(self, scheduler):
        transmitter = ScriptedTransmitter(default=False)
        config = SyncConfig(max_retries=10, cooldown_floor=1.0, cooldown_ceiling=4.0)
        pipeline = SyncPipeline(transmitter, scheduler, config)
        pipeline.enqueue(item("a"))

        cooldowns = []
        for _ in range(4):
            await pipeline.flush()
            cooldowns.append(pipeline.cooldown_remaining)
            blocked = await pipeline.flush()
            assert blocked.skipped_reason == "cooldown"
            scheduler.advance(pipeline.cooldown_remaining)

        assert cooldowns == [1.0, 2.0, 4.0, 4.0]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("jump", [-3600.0, 3600.0])
    async def test_cooldown_ignores_wall_clock_jumps(self, jump):
        class JumpingWallClock(ManualScheduler):
            offset = 0.0

            def now(self):
                return super().now() + self.offset

        scheduler = JumpingWallClock()
        transmitter = ScriptedTransmitter([SendOutcome.TRANSIENT_FAILURE])
        config = SyncConfig(cooldown_floor=2.0, cooldown_ceiling=8.0)
        pipeline = SyncPipeline(transmitter, scheduler, config)
        pipeline.enqueue(item("a"))
        await pipeline.flush()

        scheduler.offset = jump

        assert pipeline.cooldown_remaining == 2.0
        assert (await pipeline.flush()).skipped_reason == "cooldown"
        scheduler.advance(2.0)
        assert pipeline.cooldown_remaining == 0.0
        assert (await pipeline.flush()).success

    @pytest.mark.asyncio
    async def test_success_clears_cooldown(self, scheduler):
        transmitter = ScriptedTransmitter([SendOutcome.TRANSIENT_FAILURE])
        pipeline = SyncPipeline(transmitter, scheduler)
        pipeline.enqueue(item("a"))
        await pipeline.flush()
        scheduler.advance(pipeline.cooldown_remaining)

        result = await pipeline.flush()

        assert result.success
        assert pipeline.statistics()["consecutive_failures"] == 0
        assert pipeline.cooldown_remaining == 0.0

    @pytest.mark.asyncio
    async def test_raised_exception_is_transient(self, scheduler):
        transmitter = ScriptedTransmitter([ConnectionError("reset by peer")])
        pipeline = SyncPipeline(transmitter, scheduler)
        pipeline.enqueue(item("a"))

        result = await pipeline.flush()

        assert result.outcome == SendOutcome.TRANSIENT_FAILURE
        assert pipeline.queue_size == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("failure", [
        SendOutcome.PERMANENT_FAILURE,
        PermanentDeliveryError("mapping rejected"),
    ])
    async def test_permanent_failure_drops_batch(self, scheduler, failure):
        transmitter = ScriptedTransmitter([failure])
        pipeline = SyncPipeline(transmitter, scheduler)
        pipeline.enqueue(item("a"))
        pipeline.enqueue(item("b"))

        result = await pipeline.flush()

        assert result.dropped == 2
        assert pipeline.queue_size == 0
        assert pipeline.stats.permanent_failures == 1
        assert pipeline.stats.items_dropped == 2
        assert pipeline.cooldown_remaining == 0.0

    @pytest.mark.asyncio
    async def test_items_refused_within_accepted_batch_are_dropped(self, scheduler):
        report = DeliveryReport(SendOutcome.SUCCESS, frozenset({"i1"}))
        transmitter = ScriptedTransmitter([report])
        pipeline = SyncPipeline(transmitter, scheduler)
        for name in ("i1", "i2", "i3"):
            pipeline.enqueue(item(name))

        result = await pipeline.flush()

        assert result.success
        assert result.sent == 2
        assert result.dropped == 1
        stats = pipeline.statistics()
        assert stats["items_synced"] == 2
        assert stats["items_dropped"] == 1
        assert stats["failures_by_code"] == {"PERMANENT_DELIVERY_FAILURE": 1}
        assert pipeline.enqueue(item("i2")) is False
        assert pipeline.enqueue(item("i1")) is True

    @pytest.mark.asyncio
    async def test_slow_transmit_times_out(self, scheduler):
        class SlowTransmitter(Transmitter):
            async def send(self, batch):
                await asyncio.sleep(5)
                return True

        pipeline = SyncPipeline(SlowTransmitter(), scheduler, SyncConfig(transmit_timeout=0.01))
        pipeline.enqueue(item("a"))

        result = await pipeline.flush()

        assert result.outcome == SendOutcome.TRANSIENT_FAILURE
        assert pipeline.queue_size == 1

    @pytest.mark.asyncio
    async def test_delivered_ids_are_not_delivered_again(self, scheduler):
        transmitter = ScriptedTransmitter()
        pipeline = SyncPipeline(transmitter, scheduler)
        pipeline.enqueue(item("a"))
        await pipeline.flush()

        assert pipeline.enqueue(item("a")) is False
        assert transmitter.sent_ids == ["a"]

    @given(st.lists(
        st.one_of(
            st.tuples(st.just("enqueue"), st.sampled_from(list(SyncPriority))),
            st.tuples(st.just("flush"), st.integers(min_value=1, max_value=5)),
        ),
        max_size=60,
    ))
    def test_every_item_delivered_exactly_once(self, operations):
        async def scenario():
            scheduler = ManualScheduler()
            transmitter = ScriptedTransmitter()
            pipeline = SyncPipeline(transmitter, scheduler, SyncConfig(max_batch_size=3))
            enqueued = []
            for index, (op, arg) in enumerate(operations):
                if op == "enqueue":
                    item_id = f"item-{index}"
                    pipeline.enqueue(item(item_id, arg))
                    enqueued.append(item_id)
                else:
                    await pipeline.flush(arg)
            while pipeline.queue_size:
                await pipeline.flush()
            return enqueued, transmitter.sent_ids

        enqueued, sent = asyncio.run(scenario())
        assert sorted(sent) == sorted(enqueued)
        assert len(sent) == len(set(sent))


class TestGating:

    @pytest.mark.asyncio
    async def test_offline_blocks_flush(self, scheduler):
        pipeline = SyncPipeline(ScriptedTransmitter(), scheduler)
        pipeline.enqueue(item("a"))
        pipeline.on_connectivity_change(ConnectivityState.offline())

        result = await pipeline.flush()

        assert result.skipped_reason == "offline"
        assert pipeline.network_quality == NetworkQuality.NONE

    @pytest.mark.asyncio
    async def test_poor_quality_blocked_unless_allowed(self, scheduler):
        poor = ConnectivityState(TransportType.WIFI, NetworkCost.FREE, NetworkQuality.POOR)
        blocked = SyncPipeline(ScriptedTransmitter(), scheduler)
        blocked.on_connectivity_change(poor)
        allowed = SyncPipeline(ScriptedTransmitter(), scheduler, SyncConfig(allow_poor_quality_sync=True))
        allowed.on_connectivity_change(poor)

        assert blocked.blocked_reason() == "poor_quality"
        assert allowed.can_sync_now()

    def test_metered_blocked_when_disallowed(self, scheduler):
        pipeline = SyncPipeline(ScriptedTransmitter(), scheduler, SyncConfig(allow_metered_sync=False))
        pipeline.on_connectivity_change(ConnectivityState(TransportType.CELLULAR, quality=NetworkQuality.GOOD))
        assert pipeline.blocked_reason() == "metered"

    def test_insufficient_reported_bandwidth(self, scheduler):
        pipeline = SyncPipeline(ScriptedTransmitter(), scheduler, SyncConfig(min_bandwidth_kbps=100))
        pipeline.on_connectivity_change(
            ConnectivityState(TransportType.WIFI, NetworkCost.FREE, NetworkQuality.GOOD, bandwidth_kbps=20)
        )
        assert pipeline.blocked_reason() == "insufficient_bandwidth"

    @pytest.mark.asyncio
    async def test_quality_change_only_affects_later_batches(self, scheduler):
        transmitter = InMemoryTransmitter()
        pipeline = SyncPipeline(transmitter, scheduler, SyncConfig(allow_poor_quality_sync=True))
        pipeline.on_connectivity_change(WIFI)
        pipeline.enqueue(item("first", latitude=37.7749295))
        await pipeline.flush()

        pipeline.on_connectivity_change(
            ConnectivityState(TransportType.WIFI, NetworkCost.FREE, NetworkQuality.POOR)
        )
        pipeline.enqueue(item("second", latitude=37.7749295))
        await pipeline.flush()

        first, second = transmitter.batches
        assert first[0]["payload"]["latitude"] == 37.7749295
        assert second[0]["payload"]["latitude"] == 37.775


class TestBackgroundFlushing:

    @pytest.mark.asyncio
    async def test_coming_online_flushes_queue(self, scheduler):
        connectivity = PushSource("connectivity")
        transmitter = ScriptedTransmitter()
        pipeline = SyncPipeline(transmitter, scheduler, connectivity_source=connectivity)
        connectivity.push(ConnectivityState.offline())
        pipeline.start()
        pipeline.enqueue(item("a"))
        pipeline.enqueue(item("b"))

        connectivity.push(WIFI)
        await pipeline.wait_for_flush()

        assert transmitter.sent_ids == ["a", "b"]
        assert pipeline.stats.connectivity_changes == 2
        await pipeline.stop()

    @pytest.mark.asyncio
    async def test_urgent_item_triggers_flush(self, scheduler):
        transmitter = ScriptedTransmitter()
        pipeline = SyncPipeline(transmitter, scheduler)
        pipeline.start()

        pipeline.enqueue(item("normal"))
        await pipeline.wait_for_flush()
        assert transmitter.batches == []

        pipeline.enqueue(item("alert", SyncPriority.CRITICAL))
        await pipeline.wait_for_flush()

        assert transmitter.batches == [["alert", "normal"]]
        await pipeline.stop()

    @pytest.mark.asyncio
    async def test_periodic_timer_requests_flush(self, scheduler):
        transmitter = ScriptedTransmitter()
        pipeline = SyncPipeline(transmitter, scheduler, SyncConfig(sync_interval=15.0))
        pipeline.start()
        pipeline.enqueue(item("a"))

        scheduler.advance(15.0)
        await pipeline.wait_for_flush()

        assert transmitter.sent_ids == ["a"]
        await pipeline.stop()


class TestCancellation:

    @pytest.mark.asyncio
    async def test_cancelled_flush_returns_batch_unchanged(self, scheduler):
        transmitter = BlockingTransmitter()
        pipeline = SyncPipeline(transmitter, scheduler)
        pipeline.enqueue(item("a"))
        pipeline.enqueue(item("b"))

        task = asyncio.create_task(pipeline.flush())
        await transmitter.started.wait()
        assert pipeline.in_flight == 2
        assert (await pipeline.flush()).skipped_reason == "in_flight"

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert [queued.item_id for queued in pipeline.pending_items()] == ["a", "b"]
        assert all(queued.retry_count == 0 for queued in pipeline.pending_items())
        assert pipeline.in_flight == 0

    @pytest.mark.asyncio
    async def test_stop_cancels_background_flush_and_timers(self, scheduler):
        transmitter = BlockingTransmitter()
        pipeline = SyncPipeline(transmitter, scheduler, SyncConfig(shutdown_flush_timeout=0.05))
        pipeline.start()
        pipeline.enqueue(item("a", SyncPriority.HIGH))
        await transmitter.started.wait()

        await pipeline.stop()

        assert pipeline.queue_size == 1
        assert scheduler.pending() == 0
        assert pipeline.enqueue(item("b")) is False
        assert (await pipeline.flush()).skipped_reason == "stopped"

    @pytest.mark.asyncio
    async def test_stop_gives_queued_items_a_final_flush(self, scheduler):
        transmitter = ScriptedTransmitter()
        pipeline = SyncPipeline(transmitter, scheduler)
        pipeline.start()
        pipeline.enqueue(item("closing", SyncPriority.HIGH))

        await pipeline.stop()

        assert transmitter.sent_ids == ["closing"]
        assert pipeline.queue_size == 0
        assert pipeline.stats.items_synced == 1

    @pytest.mark.asyncio
    async def test_stop_without_grace_leaves_items_queued(self, scheduler):
        transmitter = ScriptedTransmitter()
        pipeline = SyncPipeline(transmitter, scheduler, SyncConfig(shutdown_flush_timeout=0))
        pipeline.start()
        pipeline.enqueue(item("closing"))

        await pipeline.stop()

        assert transmitter.sent_ids == []
        assert pipeline.queue_size == 1
