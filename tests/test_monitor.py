"""Tests for the monitor loop."""

import asyncio
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from nft_whale_tracker.alerter.engine import AlertRuleEngine
from nft_whale_tracker.ingestor.models import ZERO_ADDRESS, EventSourceError, TransferEvent
from nft_whale_tracker.monitor import (
    TRANSACTION_EVENT_TYPE,
    CursorError,
    MonitorConfig,
    MonitorLoop,
    MonitorStartupError,
    MonitorState,
    build_transaction_envelope,
)

ADDR1 = "0x" + "1" * 40
ADDR2 = "0x" + "2" * 40
ADDR3 = "0x" + "3" * 40
NOW = datetime(2026, 3, 1, 14, 0, tzinfo=UTC)


class FakeSource:
    """In-memory event source with a settable head and failure injection."""

    def __init__(self, head: int = 100) -> None:
        self.head = head
        self.events: list[TransferEvent] = []
        self.fail_height: Exception | None = None
        self.fail_fetches = 0
        self.fetched: list[tuple[int, int]] = []
        self.gate: asyncio.Event | None = None
        self.fetch_started = asyncio.Event()

    async def current_height(self) -> int:
        if self.fail_height is not None:
            raise self.fail_height
        return self.head

    async def events_in_range(self, from_block: int, to_block: int) -> list[TransferEvent]:
        self.fetched.append((from_block, to_block))
        self.fetch_started.set()
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_fetches:
            self.fail_fetches -= 1
            raise EventSourceError("rpc timeout")
        return sorted(
            (e for e in self.events if from_block <= e.block_number <= to_block),
            key=lambda e: e.sort_key,
        )


@pytest.fixture
def source() -> FakeSource:
    return FakeSource()


@pytest.fixture
def engine() -> AlertRuleEngine:
    return AlertRuleEngine(clock=lambda: NOW)


@pytest.fixture
def dispatcher() -> MagicMock:
    mock = MagicMock()
    mock.broadcast = AsyncMock(return_value=True)
    return mock


@pytest.fixture
def config() -> MonitorConfig:
    # Timers never fire during a test; ticks are driven explicitly.
    return MonitorConfig(poll_interval_seconds=3600, slow_interval_seconds=3600, whale_threshold=2)


@pytest.fixture
async def monitor(source, engine, dispatcher, config):
    loop = MonitorLoop(source, engine, dispatcher=dispatcher, config=config, clock=lambda: NOW)
    yield loop
    await loop.stop()


class TestLifecycle:
    """Tests for start/stop behaviour."""

    @pytest.mark.asyncio
    async def test_start_at_head(self, monitor: MonitorLoop) -> None:
        await monitor.start()

        assert monitor.state == MonitorState.RUNNING
        assert monitor.is_running
        assert monitor.cursor == 100
        assert monitor.stats.started_at == NOW

    @pytest.mark.asyncio
    async def test_start_and_stop_are_idempotent(self, monitor: MonitorLoop) -> None:
        await monitor.start()
        await monitor.start()
        assert monitor.is_running

        await monitor.stop()
        await monitor.stop()
        assert monitor.state == MonitorState.STOPPED

    @pytest.mark.asyncio
    async def test_startup_failure(self, monitor: MonitorLoop, source: FakeSource) -> None:
        source.fail_height = ConnectionError("no rpc")

        with pytest.raises(MonitorStartupError):
            await monitor.start()

        assert monitor.state == MonitorState.ERROR
        assert monitor.cursor is None
        await monitor.stop()
        assert monitor.state == MonitorState.STOPPED

    @pytest.mark.asyncio
    async def test_start_from_genesis(self, source, engine) -> None:
        config = MonitorConfig(poll_interval_seconds=3600, slow_interval_seconds=3600, genesis_block=50)
        loop = MonitorLoop(source, engine, config=config)
        await loop.start(from_genesis=True)
        try:
            assert loop.cursor == 49
        finally:
            await loop.stop()

    @pytest.mark.asyncio
    async def test_restart_resumes_cursor(self, monitor: MonitorLoop, source: FakeSource) -> None:
        await monitor.start()
        await monitor.stop()
        source.head = 120

        await monitor.start()

        assert monitor.cursor == 100

    @pytest.mark.asyncio
    async def test_cursor_never_moves_backwards(self, monitor: MonitorLoop) -> None:
        await monitor.start()
        await monitor.stop()

        with pytest.raises(CursorError):
            await monitor.start(cursor=90)
        assert monitor.cursor == 100

    @pytest.mark.asyncio
    async def test_tick_before_start(self, monitor: MonitorLoop) -> None:
        with pytest.raises(RuntimeError):
            await monitor.tick()

    @pytest.mark.asyncio
    async def test_context_manager(self, source, engine, config) -> None:
        async with MonitorLoop(source, engine, config=config) as loop:
            assert loop.is_running
        assert loop.state == MonitorState.STOPPED


class TestTick:
    """Tests for a single pipeline pass."""

    @pytest.mark.asyncio
    async def test_idle_tick(self, monitor: MonitorLoop, source: FakeSource) -> None:
        await monitor.start()

        assert await monitor.tick() is False

        assert monitor.stats.idle_ticks == 1
        assert monitor.cursor == 100
        assert source.fetched == []

    @pytest.mark.asyncio
    async def test_processes_new_blocks(self, monitor: MonitorLoop, source: FakeSource, make_event) -> None:
        await monitor.start()
        source.events = [
            make_event(1, ZERO_ADDRESS, ADDR1, block=101),
            make_event(1, ADDR1, ADDR2, block=102),
            make_event(2, ADDR3, ADDR2, block=103, price="2.5"),
        ]
        source.head = 105

        assert await monitor.tick() is True

        assert source.fetched == [(101, 105)]
        assert monitor.cursor == 105
        assert monitor.holders.get(ADDR2).token_ids == {1, 2}
        assert monitor.holders.get(ADDR1).count == 0
        assert len(monitor.recent_events) == 3
        assert monitor.stats.events_processed == 3

    @pytest.mark.asyncio
    async def test_failed_fetch_keeps_cursor_and_retries_range(
        self, monitor: MonitorLoop, source: FakeSource, make_event
    ) -> None:
        """Test that a failed tick is retried without double counting."""
        await monitor.start()
        source.events = [make_event(1, ZERO_ADDRESS, ADDR1, block=101)]
        source.head = 101
        source.fail_fetches = 1

        assert await monitor.tick() is False
        assert monitor.cursor == 100
        assert monitor.stats.failed_ticks == 1
        assert monitor.stats.last_error == "rpc timeout"
        assert monitor.holders.total_supply == 0

        assert await monitor.tick() is True
        assert source.fetched == [(101, 101), (101, 101)]
        assert monitor.cursor == 101
        assert monitor.holders.total_supply == 1

    @pytest.mark.asyncio
    async def test_holder_map_is_replaced_not_mutated(
        self, monitor: MonitorLoop, source: FakeSource, make_event
    ) -> None:
        await monitor.start()
        before = monitor.holders
        source.events = [make_event(1, ZERO_ADDRESS, ADDR1, block=101)]
        source.head = 101

        await monitor.tick()

        assert monitor.holders is not before
        assert before.total_supply == 0

    @pytest.mark.asyncio
    async def test_broadcasts_transactions(
        self, monitor: MonitorLoop, source: FakeSource, dispatcher: MagicMock, make_event
    ) -> None:
        await monitor.start()
        source.events = [
            make_event(1, ZERO_ADDRESS, ADDR1, block=101),
            make_event(2, ZERO_ADDRESS, ADDR1, block=101, log_index=1),
            make_event(3, ZERO_ADDRESS, ADDR2, block=102),
        ]
        source.head = 102

        await monitor.tick()

        envelopes = [c.args[0] for c in dispatcher.broadcast.await_args_list]
        assert [e["type"] for e in envelopes] == [TRANSACTION_EVENT_TYPE] * 3
        assert [e["data"]["is_whale_transaction"] for e in envelopes] == [True, True, False]
        assert envelopes[0]["timestamp"] == int(NOW.timestamp() * 1000)

    @pytest.mark.asyncio
    async def test_rules_fire(
        self, monitor: MonitorLoop, source: FakeSource, engine: AlertRuleEngine, make_event
    ) -> None:
        volume = engine.create_rule(name="Volume", metric="volume", condition="above", threshold=2)
        floor = engine.create_rule(name="Floor", metric="price", condition="below", threshold=3)
        whale = engine.create_rule(name="Whale", metric="whale", condition="above", threshold=1)
        await monitor.start()
        source.events = [
            make_event(1, ZERO_ADDRESS, ADDR1, block=101),
            make_event(2, ZERO_ADDRESS, ADDR1, block=101, log_index=1),
            make_event(3, ADDR3, ADDR2, block=102, price="2.5"),
        ]
        source.head = 102

        await monitor.tick()

        assert volume.trigger_count == 1
        assert floor.trigger_count == 1
        assert whale.trigger_count == 1
        assert whale.last_value == 2
        assert monitor.stats.alerts_fired == 3

    @pytest.mark.asyncio
    async def test_price_rules_need_a_sale_in_batch(
        self, monitor: MonitorLoop, source: FakeSource, engine: AlertRuleEngine, make_event
    ) -> None:
        floor = engine.create_rule(name="Floor", metric="price", condition="below", threshold=3)
        await monitor.start()
        source.events = [make_event(1, ZERO_ADDRESS, ADDR1, block=101)]
        source.head = 101

        await monitor.tick()

        assert floor.last_value is None

    @pytest.mark.asyncio
    async def test_writes_metrics_to_cache(self, source, engine, config, make_event) -> None:
        cache = MagicMock()
        cache.set = AsyncMock(return_value=True)
        loop = MonitorLoop(source, engine, cache=cache, config=config, clock=lambda: NOW)
        await loop.start()
        source.events = [make_event(1, ADDR3, ADDR2, block=101, price="1.25")]
        source.head = 101

        try:
            await loop.tick()
        finally:
            await loop.stop()

        calls = {(c.args[0], c.args[1]): c.args[2] for c in cache.set.await_args_list}
        assert calls[("holder_stats", "current")]["total_holders"] == 1
        assert calls[("trading_metrics", "24h")]["volume"] == "1.2500"


class TestSlowTick:
    """Tests for the slow tick."""

    @pytest.mark.asyncio
    async def test_listing_and_price_rules(self, source, engine, config, make_event) -> None:
        listing = engine.create_rule(name="Listings", metric="listing", condition="above", threshold=5)
        floor = engine.create_rule(name="Floor", metric="price", condition="above", threshold=1)
        counter = AsyncMock(return_value=7)
        loop = MonitorLoop(source, engine, config=config, listing_counter=counter, clock=lambda: NOW)
        await loop.start()
        source.events = [make_event(1, ADDR3, ADDR2, block=101, price="2")]
        source.head = 101

        try:
            await loop.tick()
            await loop.slow_tick()
        finally:
            await loop.stop()

        assert listing.trigger_count == 1
        assert listing.last_value == 7
        assert floor.trigger_count == 2

    @pytest.mark.asyncio
    async def test_prunes_old_events(self, source, engine, config, make_event) -> None:
        clock = {"now": NOW}
        loop = MonitorLoop(source, engine, config=config, clock=lambda: clock["now"])
        await loop.start()
        source.events = [make_event(1, ZERO_ADDRESS, ADDR1, block=101)]
        source.head = 101

        try:
            await loop.tick()
            clock["now"] = NOW + timedelta(days=8)
            await loop.slow_tick()
        finally:
            await loop.stop()

        assert loop.recent_events == ()

    @pytest.mark.asyncio
    async def test_listing_counter_failure(self, source, engine, config) -> None:
        counter = AsyncMock(side_effect=RuntimeError("marketplace down"))
        loop = MonitorLoop(source, engine, config=config, listing_counter=counter, clock=lambda: NOW)

        await loop.slow_tick()

        assert loop.stats.alerts_fired == 0


class TestRebuildFromHistory:
    """Tests for rebuild_from_history."""

    @pytest.mark.asyncio
    async def test_rebuild_leaves_live_state(self, monitor: MonitorLoop, source: FakeSource, make_event) -> None:
        source.events = [
            make_event(1, ZERO_ADDRESS, ADDR1, block=10),
            make_event(2, ZERO_ADDRESS, ADDR2, block=20),
            make_event(3, ZERO_ADDRESS, ADDR2, block=30),
        ]

        result = await monitor.rebuild_from_history(0, 25)

        assert result.applied == 2
        assert result.holders.total_supply == 2
        assert monitor.holders.total_supply == 0
        assert source.fetched == [(0, 25)]

    @pytest.mark.asyncio
    async def test_defaults_to_genesis_and_head(self, source: FakeSource, engine) -> None:
        loop = MonitorLoop(source, engine, config=MonitorConfig(genesis_block=5))

        await loop.rebuild_from_history()

        assert source.fetched == [(5, 100)]


def test_build_transaction_envelope(make_event) -> None:
    event = make_event(7, ADDR1, ADDR2, price="1.5")

    envelope = build_transaction_envelope(event, frozenset({ADDR2}), now=NOW)

    assert envelope["type"] == "transaction:new"
    assert envelope["data"]["token_id"] == 7
    assert envelope["data"]["price_eth"] == str(Decimal("1.5"))
    assert envelope["data"]["whale_from"] is False
    assert envelope["data"]["whale_to"] is True
    assert envelope["data"]["is_whale_transaction"] is True


class TestTickSerialization:
    """Tests that ticks never overlap and stop() waits for the running one."""

    @pytest.mark.asyncio
    async def test_concurrent_ticks_run_one_at_a_time(
        self, monitor: MonitorLoop, source: FakeSource, make_event
    ) -> None:
        await monitor.start()
        source.events = [make_event(1, ZERO_ADDRESS, ADDR1, block=101)]
        source.head = 101
        source.gate = asyncio.Event()

        ticks = asyncio.gather(monitor.tick(), monitor.tick())
        await source.fetch_started.wait()
        slow = asyncio.create_task(monitor.slow_tick())
        await asyncio.sleep(0.01)

        assert source.fetched == [(101, 101)]
        assert not slow.done()

        source.gate.set()
        assert sorted(await ticks) == [False, True]
        await slow

        assert source.fetched == [(101, 101)]
        assert monitor.cursor == 101
        assert monitor.holders.get(ADDR1).token_ids == {1}
        assert monitor.holders.total_supply == 1
        assert monitor.stats.events_processed == 1

    @pytest.mark.asyncio
    async def test_stop_lets_in_flight_tick_commit(self, source: FakeSource, engine, make_event) -> None:
        config = MonitorConfig(poll_interval_seconds=0.01, slow_interval_seconds=3600)
        loop = MonitorLoop(source, engine, config=config, clock=lambda: NOW)
        await loop.start()
        source.events = [make_event(1, ZERO_ADDRESS, ADDR1, block=101)]
        source.head = 101
        source.gate = asyncio.Event()

        await asyncio.wait_for(source.fetch_started.wait(), timeout=1)
        stopping = asyncio.create_task(loop.stop())
        await asyncio.sleep(0.01)
        assert not stopping.done()

        source.gate.set()
        await stopping

        assert loop.state == MonitorState.STOPPED
        assert loop.cursor == 101
        assert loop.holders.get(ADDR1).count == 1
        assert source.fetched == [(101, 101)]
