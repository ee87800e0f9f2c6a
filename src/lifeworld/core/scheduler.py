"""
Scheduled Auto-Convergence
==========================
Periodic driver for reactive convergence, gated by the merge ledger.

  - ``last_run`` is seeded from the newest ledger row at ``initialize()`` and
    updated in memory after every run.
  - The loop wakes every ``check_interval_seconds`` (hourly by default) and
    runs convergence when ``interval_hours`` have elapsed since ``last_run``.
  - A tick never raises: failures are logged and the next tick proceeds.
  - A tick that fires while a run is still in flight is skipped.

Clock and sleep are injectable so time-gating can be tested deterministically.
"""

from __future__ import annotations

import asyncio
import time
from datetime import datetime
from typing import Awaitable, Callable, List, Optional

import numpy as np
from loguru import logger

from ._utils import Clock, RingBuffer, hours_between, utc_now
from .config import SchedulerConfig
from .convergence import ReactiveConvergenceEngine, event_compression_rates
from .exceptions import StoreUnavailableError
from .models import ConvergenceRunMetrics, SchedulerStatus, TemporalCoherence

from lifeworld.storage.base import ConceptStore

Sleeper = Callable[[float], Awaitable[None]]


def temporal_coherence(events) -> TemporalCoherence:
    """
    Trend statistics over newest-first ledger rows.

    recent = newest 7 rates, older = the 7 before that.
    """
    if len(events) < 2:
        return TemporalCoherence(
            avg_compression_rate=0.0,
            trend="insufficient_data",
            stability=0.0,
            total_concept_reduction=0,
        )

    rates = event_compression_rates(events)
    recent, older = rates[:7], rates[7:14]
    recent_avg = float(np.mean(recent)) if recent else 0.0
    older_avg = float(np.mean(older)) if older else 0.0

    if recent_avg > older_avg * 1.2:
        trend = "accelerating"
    elif recent_avg < 0.01:
        trend = "stagnant"
    else:
        trend = "stabilizing"

    variance = float(np.mean([(r - recent_avg) ** 2 for r in recent])) if recent else 0.0

    return TemporalCoherence(
        avg_compression_rate=float(np.mean(rates)),
        trend=trend,
        stability=max(0.0, 1.0 - float(np.sqrt(variance)) * 10),
        total_concept_reduction=events[-1].total_concepts_before - events[0].total_concepts_after,
    )


class ConvergenceScheduler:
    """Owns the background task, the last-run timestamp and the run history."""

    def __init__(
        self,
        convergence: ReactiveConvergenceEngine,
        store: ConceptStore,
        config: Optional[SchedulerConfig] = None,
        clock: Optional[Clock] = None,
        sleep: Optional[Sleeper] = None,
    ):
        self.convergence = convergence
        self.store = store
        self.cfg = config or SchedulerConfig()
        self.clock: Clock = clock or utc_now
        self._sleep: Sleeper = sleep or asyncio.sleep
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self._in_flight = False
        self.last_run: Optional[datetime] = None
        self.history: RingBuffer[ConvergenceRunMetrics] = RingBuffer(self.cfg.run_history_size)

    # ---- Lifecycle ----------------------------------------------- #

    async def initialize(self) -> None:
        """Seed ``last_run`` from the newest ledger row."""
        if self.last_run is not None:
            return
        try:
            latest = await self.store.list_merge_events(limit=1)
        except StoreUnavailableError as e:
            logger.warning(f"[SAC] Could not seed last run from ledger: {e}")
            return
        if latest:
            self.last_run = latest[0].merged_at
            logger.debug(f"[SAC] Last convergence seeded from ledger: {self.last_run.isoformat()}")

    async def start(self) -> None:
        """Launch the background scheduler loop."""
        if not self.cfg.enabled:
            logger.info("[SAC] Scheduled auto-convergence disabled by config.")
            return
        if self.is_running:
            logger.warning("[SAC] Scheduler already running")
            return
        await self.initialize()
        self._running = True
        self._task = asyncio.create_task(self._schedule_loop(), name="scheduled_convergence")
        logger.info(f"[SAC] Initialized scheduled auto-convergence (interval: {self.cfg.interval_hours}h)")

    async def stop(self) -> None:
        """
        Stop future ticks.

        An in-flight run is cancelled: the merge it was applying rolls back,
        merges it already committed stay.
        """
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        logger.info("[SAC] Scheduled auto-convergence stopped")

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    # ---- Scheduler ----------------------------------------------- #

    async def _schedule_loop(self) -> None:
        if self.cfg.run_on_startup:
            await self.tick()
        while self._running:
            try:
                await self._sleep(self.cfg.check_interval_seconds)
                if self._running:
                    await self.tick()
            except asyncio.CancelledError:
                break

    async def should_run(self) -> bool:
        """True with an empty ledger, or once ``interval_hours`` have passed since the last run."""
        last = self.last_run
        if last is None:
            latest = await self.store.list_merge_events(limit=1)
            if not latest:
                return True
            last = latest[0].merged_at
        return hours_between(self.clock(), last) >= self.cfg.interval_hours

    async def tick(self) -> Optional[ConvergenceRunMetrics]:
        """One scheduler wake-up. Never raises."""
        if self._in_flight:
            logger.debug("[SAC] Previous run still in flight, skipping tick")
            return None
        # Held across the ledger check and the run
        self._in_flight = True
        try:
            if await self.should_run():
                logger.info("[SAC] Interval elapsed, triggering auto-convergence...")
                return await self._run()
        except Exception as e:
            logger.exception(f"[SAC] Error in scheduled convergence: {e}")
        finally:
            self._in_flight = False
        return None

    async def trigger_now(self) -> Optional[ConvergenceRunMetrics]:
        """Run immediately regardless of the interval. None if a run is already in flight."""
        if self._in_flight:
            logger.warning("[SAC] Manual trigger ignored, a run is already in flight")
            return None
        return await self.execute_convergence()

    # ---- Main pass ----------------------------------------------- #

    async def execute_convergence(self) -> ConvergenceRunMetrics:
        self._in_flight = True
        try:
            return await self._run()
        finally:
            self._in_flight = False

    async def _run(self) -> ConvergenceRunMetrics:
        logger.info("[SAC] Starting auto-convergence...")
        started = time.perf_counter()
        before = await self.store.count_concepts()
        result = await self.convergence.run_convergence(self.cfg.similarity_threshold)
        after = await self.store.count_concepts()
        duration_ms = (time.perf_counter() - started) * 1000

        self.last_run = self.clock()
        metrics = ConvergenceRunMetrics(
            concept_count_before=before,
            concept_count_after=after,
            merge_count=result.merged_count,
            compression_rate=result.compression_rate,
            timestamp=self.last_run,
            duration_ms=duration_ms,
        )
        self.history.append(metrics)
        logger.info(f"[SAC] Completed in {duration_ms:.0f}ms: {before} -> {after} concepts")
        return metrics

    # ---- Reporting ----------------------------------------------- #

    async def calculate_temporal_coherence(self) -> TemporalCoherence:
        try:
            events = await self.store.list_merge_events(limit=self.cfg.coherence_window)
        except StoreUnavailableError as e:
            logger.warning(f"[SAC] Ledger unavailable for coherence: {e}")
            events = []
        return temporal_coherence(events)

    def next_run_in(self) -> str:
        if self.last_run is None:
            return "unknown"
        remaining = max(0.0, self.cfg.interval_hours - hours_between(self.clock(), self.last_run))
        return f"{remaining:.1f} hours"

    def get_run_history(self, limit: Optional[int] = None) -> List[ConvergenceRunMetrics]:
        return self.history.latest(limit)

    async def get_status(self) -> SchedulerStatus:
        return SchedulerStatus(
            is_running=self.is_running,
            last_run=self.last_run,
            next_run_in=self.next_run_in(),
            stats=await self.convergence.get_convergence_stats(),
            temporal_coherence=await self.calculate_temporal_coherence(),
        )
