"""Monitor loop: the scheduler that drives ingestion, replay and alerting.

This module provides the MonitorLoop class, which owns the block cursor and
the live holder map and runs one pass of the pipeline per tick:

    Event Source -> Ledger Replay -> Metrics -> Alert Rules -> Dispatcher

Ticks never overlap. The holder map and cursor are committed together, at
the very end of a successful tick, so a failed or abandoned tick leaves
both untouched and the same block range is fetched again next time.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any

from nft_whale_tracker.alerter.engine import AlertRuleEngine
from nft_whale_tracker.alerter.formatter import truncate_address
from nft_whale_tracker.alerter.models import MetricType
from nft_whale_tracker.analytics.metrics import (
    WHALE_THRESHOLD,
    TradingMetrics,
    calculate_trading_metrics,
    detect_whale_activity,
    holder_stats,
    whale_addresses,
)
from nft_whale_tracker.ingestor.models import TransferEvent
from nft_whale_tracker.ingestor.source import EventSource
from nft_whale_tracker.ledger.models import HolderMap
from nft_whale_tracker.ledger.replay import ReplayResult, replay

if TYPE_CHECKING:
    from nft_whale_tracker.alerter.dispatcher import NotificationDispatcher
    from nft_whale_tracker.config import Settings
    from nft_whale_tracker.storage.cache import MetricsCache

logger = logging.getLogger(__name__)

TRANSACTION_EVENT_TYPE = "transaction:new"
DEFAULT_STOP_TIMEOUT_SECONDS = 30.0


class MonitorStartupError(RuntimeError):
    """Raised when the monitor cannot start because the event source is unusable."""


class CursorError(RuntimeError):
    """Raised on an attempt to move the cursor backwards."""


class MonitorState(str, Enum):
    """Monitor lifecycle states."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


@dataclass
class MonitorStats:
    """Statistics for the monitor loop."""

    started_at: datetime | None = None
    ticks: int = 0
    idle_ticks: int = 0
    failed_ticks: int = 0
    events_processed: int = 0
    malformed_events: int = 0
    corrections: int = 0
    alerts_fired: int = 0
    last_tick_at: datetime | None = None
    last_error: str | None = None


@dataclass
class MonitorCursor:
    """Highest block whose events are fully incorporated into state."""

    block: int

    def advance(self, to_block: int) -> None:
        if to_block < self.block:
            raise CursorError(f"cursor cannot move backwards ({self.block} -> {to_block})")
        self.block = to_block


@dataclass(frozen=True)
class MonitorConfig:
    poll_interval_seconds: float = 12.0
    slow_interval_seconds: float = 300.0
    whale_threshold: int = WHALE_THRESHOLD
    metrics_window: timedelta = timedelta(hours=24)
    event_retention: timedelta = timedelta(hours=168)
    genesis_block: int = 0
    stop_timeout_seconds: float = DEFAULT_STOP_TIMEOUT_SECONDS

    @classmethod
    def from_settings(cls, settings: Settings) -> MonitorConfig:
        monitor = settings.monitor
        return cls(
            poll_interval_seconds=monitor.poll_interval_seconds,
            slow_interval_seconds=monitor.slow_interval_seconds,
            whale_threshold=monitor.whale_threshold,
            metrics_window=timedelta(hours=monitor.metrics_window_hours),
            event_retention=timedelta(hours=monitor.event_retention_hours),
            genesis_block=settings.chain.genesis_block,
        )


def build_transaction_envelope(
    event: TransferEvent,
    whales: frozenset[str],
    *,
    now: datetime,
) -> dict[str, Any]:
    """Broadcast envelope for one new transfer, flagged with whale involvement."""
    whale_from = event.from_address in whales
    whale_to = event.to_address in whales
    data: dict[str, Any] = event.to_dict()
    data.update(
        {
            "is_whale_transaction": whale_from or whale_to,
            "whale_from": whale_from,
            "whale_to": whale_to,
        }
    )
    return {
        "type": TRANSACTION_EVENT_TYPE,
        "data": data,
        "timestamp": int(now.timestamp() * 1000),
    }


class MonitorLoop:
    """Polls the event source and keeps holder state and alerts current.

    The loop exclusively owns the cursor and the live holder map. Readers get
    the committed HolderMap object, which is replaced wholesale on every
    successful tick and never mutated afterwards.

    Example:
        ```python
        monitor = MonitorLoop(source, engine, dispatcher=dispatcher)

        await monitor.start()
        # Monitor runs until stop() is called
        await monitor.stop()
        ```

    Tests drive it without timers by calling `tick()` directly.
    """

    def __init__(
        self,
        source: EventSource,
        engine: AlertRuleEngine,
        *,
        dispatcher: NotificationDispatcher | None = None,
        cache: MetricsCache | None = None,
        config: MonitorConfig | None = None,
        listing_counter: Callable[[], Awaitable[int]] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize the monitor.

        Args:
            source: Event source adapter.
            engine: Alert rule engine evaluated on every tick.
            dispatcher: Receives transaction broadcasts.
            cache: Metrics cache refreshed after every tick.
            config: Intervals, windows and thresholds.
            listing_counter: Optional provider of the active listing count,
                polled by the slow tick for `listing` rules.
            clock: Wall clock used for metric windows.
        """
        self._source = source
        self._engine = engine
        self._dispatcher = dispatcher
        self._cache = cache
        self._config = config or MonitorConfig()
        self._listing_counter = listing_counter
        self._clock = clock or (lambda: datetime.now(UTC))

        self._state = MonitorState.STOPPED
        self._stats = MonitorStats()
        self._cursor: MonitorCursor | None = None
        self._holders = HolderMap()
        self._recent_events: tuple[TransferEvent, ...] = ()

        # Synchronization
        self._tick_lock = asyncio.Lock()
        self._stop_event: asyncio.Event | None = None
        self._poll_task: asyncio.Task[None] | None = None
        self._slow_task: asyncio.Task[None] | None = None

    @property
    def state(self) -> MonitorState:
        return self._state

    @property
    def stats(self) -> MonitorStats:
        return self._stats

    @property
    def is_running(self) -> bool:
        return self._state == MonitorState.RUNNING

    @property
    def cursor(self) -> int | None:
        """Last fully processed block, or None before the first start."""
        return self._cursor.block if self._cursor else None

    @property
    def holders(self) -> HolderMap:
        """Committed holder map. Treat as read-only."""
        return self._holders

    @property
    def recent_events(self) -> tuple[TransferEvent, ...]:
        """Events within the retention window, oldest first."""
        return self._recent_events

    # === Lifecycle ===

    async def start(
        self,
        cursor: int | None = None,
        *,
        from_genesis: bool = False,
        prior: HolderMap | None = None,
    ) -> None:
        """Start the monitor.

        Args:
            cursor: Resume after this block instead of the chain head.
            from_genesis: Replay the whole collection history, starting after
                `genesis_block - 1`.
            prior: Holder map matching `cursor`, when resuming.

        Raises:
            MonitorStartupError: If the event source cannot report the head.
            CursorError: If `cursor` is behind an already established cursor.
        """
        if self._state == MonitorState.RUNNING:
            logger.warning("Monitor already running")
            return

        self._state = MonitorState.STARTING
        logger.info("Starting monitor...")

        try:
            head = await self._source.current_height()
        except Exception as e:
            self._state = MonitorState.ERROR
            self._stats.last_error = str(e)
            logger.error("Failed to start monitor: %s", e)
            raise MonitorStartupError(f"event source cannot report chain head: {e}") from e

        if cursor is not None:
            start_block = cursor
        elif from_genesis:
            start_block = self._config.genesis_block - 1
        elif self._cursor is not None:
            start_block = self._cursor.block
        else:
            start_block = head

        if self._cursor is None or from_genesis:
            self._cursor = MonitorCursor(start_block)
            self._holders = prior.copy() if prior is not None else HolderMap()
            self._recent_events = ()
        else:
            try:
                self._cursor.advance(start_block)
            except CursorError:
                self._state = MonitorState.STOPPED
                raise
            if prior is not None:
                self._holders = prior.copy()

        self._stop_event = asyncio.Event()
        self._poll_task = asyncio.create_task(
            self._run_timer(self._config.poll_interval_seconds, self.tick)
        )
        self._slow_task = asyncio.create_task(
            self._run_timer(self._config.slow_interval_seconds, self.slow_tick)
        )
        self._stats.started_at = self._clock()
        self._state = MonitorState.RUNNING
        logger.info(
            "Monitor started from block %d (head %d, polling every %.1fs)",
            start_block,
            head,
            self._config.poll_interval_seconds,
        )

    async def stop(self) -> None:
        """Stop the monitor, letting an in-flight tick finish."""
        if self._state in (MonitorState.STOPPED, MonitorState.ERROR):
            self._state = MonitorState.STOPPED
            return

        self._state = MonitorState.STOPPING
        logger.info("Stopping monitor...")

        if self._stop_event:
            self._stop_event.set()

        for task in (self._poll_task, self._slow_task):
            if task is None:
                continue
            try:
                await asyncio.wait_for(asyncio.shield(task), timeout=self._config.stop_timeout_seconds)
            except TimeoutError:
                logger.warning("Monitor task did not finish in time; cancelling")
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task

        self._poll_task = None
        self._slow_task = None
        self._state = MonitorState.STOPPED
        logger.info("Monitor stopped at block %s", self.cursor)

    async def _run_timer(self, interval: float, step: Callable[[], Awaitable[Any]]) -> None:
        """Run `step` every `interval` seconds, scheduling only after it completes."""
        if not self._stop_event:
            return
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
                break
            except TimeoutError:
                pass
            try:
                await step()
            except Exception as e:
                self._stats.last_error = str(e)
                logger.error("Monitor step failed: %s", e)

    # === Ticks ===

    async def tick(self) -> bool:
        """Run one pass of the pipeline.

        Returns:
            True if new blocks were processed and the cursor advanced.

        Raises:
            RuntimeError: If the monitor has never been started.
        """
        if self._cursor is None:
            raise RuntimeError("Monitor has no cursor; call start() first")

        async with self._tick_lock:
            self._stats.ticks += 1
            self._stats.last_tick_at = self._clock()
            from_block = self._cursor.block + 1

            try:
                head = await self._source.current_height()
                if head < from_block:
                    self._stats.idle_ticks += 1
                    logger.debug("No new blocks (head %d, cursor %d)", head, self._cursor.block)
                    return False

                events = await self._source.events_in_range(from_block, head)
                result = replay(events, prior=self._holders)
                now = self._clock()
                recent = self._retain_recent(events, now)
                whales = whale_addresses(self._holders, self._config.whale_threshold) | whale_addresses(
                    result.holders, self._config.whale_threshold
                )
                metrics = calculate_trading_metrics(
                    recent, start=now - self._config.metrics_window, end=now
                )

                fired = await self._evaluate_rules(events, result, metrics, whales)
                await self._broadcast(events, whales, now)
                await self._write_through(result.holders, metrics)
            except Exception as e:
                self._stats.failed_ticks += 1
                self._stats.last_error = str(e)
                logger.error("Tick failed for blocks from %d: %s", from_block, e)
                return False

            # Commit: holder map and cursor move together.
            self._holders = result.holders
            self._recent_events = recent
            self._cursor.advance(head)

            self._stats.events_processed += result.applied
            self._stats.malformed_events += result.skipped
            self._stats.corrections += result.corrections
            self._stats.alerts_fired += fired
            logger.info(
                "Processed blocks %d..%d: %d events, %d alerts",
                from_block,
                head,
                result.applied,
                fired,
            )
            return True

    async def slow_tick(self) -> None:
        """Re-check slow-moving metrics that do not depend on new blocks."""
        async with self._tick_lock:
            now = self._clock()
            self._recent_events = tuple(self._prune(self._recent_events, now))
            metrics = calculate_trading_metrics(
                self._recent_events, start=now - self._config.metrics_window, end=now
            )
            fired = 0
            if metrics.floor_price is not None:
                fired += len(await self._engine.evaluate_metric(MetricType.PRICE, metrics.floor_price))

            if self._listing_counter is not None:
                try:
                    listings = await self._listing_counter()
                except Exception as e:
                    logger.warning("Listing count unavailable: %s", e)
                else:
                    fired += len(await self._engine.evaluate_metric(MetricType.LISTING, listings))

            self._stats.alerts_fired += fired
            logger.debug("Slow tick done (floor=%s, alerts=%d)", metrics.floor_price, fired)

    # === Tick helpers ===

    def _prune(self, events: Sequence[TransferEvent], now: datetime) -> list[TransferEvent]:
        cutoff = now - self._config.event_retention
        return [e for e in events if e.timestamp >= cutoff]

    def _retain_recent(self, new_events: Sequence[TransferEvent], now: datetime) -> tuple[TransferEvent, ...]:
        return tuple(self._prune([*self._recent_events, *new_events], now))

    async def _evaluate_rules(
        self,
        events: Sequence[TransferEvent],
        result: ReplayResult,
        metrics: TradingMetrics,
        whales: frozenset[str],
    ) -> int:
        if not events:
            return 0

        fired = 0
        if metrics.floor_price is not None and any(e.is_sale for e in events):
            fired += len(await self._engine.evaluate_metric(MetricType.PRICE, metrics.floor_price))

        fired += len(await self._engine.evaluate_metric(MetricType.VOLUME, metrics.volume))

        # Whales before or after the batch, so a whale that sold out still counts.
        whale_moves = detect_whale_activity(
            (h for h in result.holders if h.address in whales),
            events,
            min_tokens=0,
        )
        if whale_moves:
            logger.info(
                "Whale activity: %d transfer(s) in batch (%s)",
                len(whale_moves),
                ", ".join(sorted({truncate_address(m.address) for m in whale_moves})),
            )
            fired += len(await self._engine.evaluate_metric(MetricType.WHALE, len(whale_moves)))
        return fired

    async def _broadcast(
        self,
        events: Sequence[TransferEvent],
        whales: frozenset[str],
        now: datetime,
    ) -> None:
        if self._dispatcher is None:
            return
        for event in events:
            await self._dispatcher.broadcast(build_transaction_envelope(event, whales, now=now))

    async def _write_through(self, holders: HolderMap, metrics: TradingMetrics) -> None:
        if self._cache is None:
            return
        window_tag = f"{int(self._config.metrics_window.total_seconds() // 3600)}h"
        await self._cache.set("holder_stats", "current", holder_stats(holders).to_dict())
        await self._cache.set("trading_metrics", window_tag, metrics.to_dict())

    # === Historical replay ===

    async def rebuild_from_history(
        self,
        from_block: int | None = None,
        to_block: int | None = None,
    ) -> ReplayResult:
        """Replay a historical range into a fresh holder map.

        Live state is not touched. Defaults cover genesis to the current head.
        """
        start = self._config.genesis_block if from_block is None else from_block
        end = await self._source.current_height() if to_block is None else to_block
        events = await self._source.events_in_range(start, end)
        result = replay(events)
        logger.info(
            "Rebuilt holder map from blocks %d..%d: %d holders, %d events",
            start,
            end,
            len(result.holders.active_holders()),
            result.applied,
        )
        return result

    # === Convenience ===

    async def run(self, cursor: int | None = None, *, from_genesis: bool = False) -> None:
        """Start the monitor and run until stop() is called or the task is cancelled."""
        await self.start(cursor, from_genesis=from_genesis)

        try:
            if self._stop_event:
                await self._stop_event.wait()
        except asyncio.CancelledError:
            pass
        finally:
            await self.stop()

    async def __aenter__(self) -> MonitorLoop:
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.stop()
