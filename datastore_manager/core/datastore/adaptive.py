"""
AdaptiveController: closed-loop tuning of a DataStoreAccessLayer.

Purpose
-------
Periodically inspect the layer's metrics and nudge its tunables: cache
capacity, inter-request delay (adaptive throttling) and list page size.

Responsibilities
----------------
- Sample metrics every `sampling_interval` over an `aggregation_window`
- Grow / shrink the cache within byte headroom and an entry ceiling
- Raise / relax the inter-request delay from the error rate
- Lower / raise the list page size from latency and throughput
- Purge expired cache entries every `cleanup_interval`
- Keep a bounded history of applied optimizations

Non-Responsibilities
--------------------
- Correctness: every adjustment is advisory and bounded; a failing tick is
  logged and skipped, never surfaced to the access layer

Lifecycle
---------
    controller = AdaptiveController(layer)
    controller.start()          # background asyncio task
    ...
    await controller.stop()     # cancels and awaits the task

or `async with AdaptiveController(layer): ...`
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Optional

from datastore_manager.core import constants as C
from datastore_manager.core.logging.logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class Optimization:
    action: str
    description: str
    timestamp: float
    data: Dict[str, Any] = field(default_factory=dict)


class AdaptiveController:
    """
    Best-effort feedback loop over one access layer.

    Example
    -------
    >>> async with AdaptiveController(layer, sampling_interval=1.0):
    ...     await serve_requests()
    """

    def __init__(
        self,
        layer: Any,
        *,
        sampling_interval: float = C.DEFAULT_SAMPLING_INTERVAL_SECONDS,
        aggregation_window: float = C.DEFAULT_AGGREGATION_WINDOW_SECONDS,
        cleanup_interval: float = C.DEFAULT_CACHE_CLEANUP_INTERVAL_SECONDS,
        max_entries_ceiling: int = C.CACHE_MAX_ENTRIES_CEILING,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if sampling_interval <= 0:
            raise ValueError("sampling_interval must be positive")

        self.layer = layer
        self.sampling_interval = sampling_interval
        self.aggregation_window = aggregation_window
        self.cleanup_interval = cleanup_interval
        self.max_entries_ceiling = max_entries_ceiling
        self._clock = clock

        self._history: Deque[Optimization] = deque(maxlen=C.OPTIMIZATION_HISTORY_LIMIT)
        self._last_cleanup = clock()
        self._task: Optional[asyncio.Task[None]] = None
        self.ticks = 0
        self.failed_ticks = 0

    # ═══════════════════════════════════════════════════════════════════════
    # LIFECYCLE
    # ═══════════════════════════════════════════════════════════════════════

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Spawn the sampling loop on the running event loop (idempotent)."""
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(
            self._run(), name="datastore-adaptive-controller"
        )
        logger.info(
            "Adaptive controller started",
            extra={"sampling_interval": self.sampling_interval},
        )

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info(
            "Adaptive controller stopped",
            extra={"ticks": self.ticks, "optimizations": len(self._history)},
        )

    async def __aenter__(self) -> "AdaptiveController":
        self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.sampling_interval)
            self.tick()

    # ═══════════════════════════════════════════════════════════════════════
    # EVALUATION
    # ═══════════════════════════════════════════════════════════════════════

    def tick(self) -> List[Optimization]:
        """Run one evaluation; returns the optimizations applied."""
        self.ticks += 1
        try:
            return self._evaluate()
        except Exception:
            self.failed_ticks += 1
            logger.exception("Adaptive controller tick failed")
            return []

    def history(self, limit: int = C.OPTIMIZATION_HISTORY_LIMIT) -> List[Optimization]:
        """Most recent optimizations first."""
        return list(self._history)[-limit:][::-1]

    def _evaluate(self) -> List[Optimization]:
        applied: List[Optimization] = []
        metrics = self.layer.metrics
        summary = metrics.summary(self.aggregation_window)

        # Cache sizing
        cache = self.layer.cache
        memory_ratio = cache.size_bytes / cache.max_bytes if cache.max_bytes else 0.0
        if memory_ratio > C.CACHE_MEMORY_WARNING_RATIO:
            new_size = max(1, int(cache.max_entries * C.CACHE_SHRINK_FACTOR))
            if new_size < cache.max_entries:
                old_size = cache.max_entries
                evicted = cache.resize(max_entries=new_size)
                applied.append(self._note(
                    "shrink_cache",
                    f"Cache memory at {memory_ratio:.0%}, max entries {old_size} -> {new_size}",
                    old=old_size, new=new_size, evicted=evicted,
                ))
        elif (
            metrics.cache_lookups() > 0
            and metrics.cache_hit_rate() < C.CACHE_HIT_RATE_TARGET
            and cache.max_entries < self.max_entries_ceiling
        ):
            old_size = cache.max_entries
            new_size = min(self.max_entries_ceiling, max(old_size + 1, int(old_size * C.CACHE_GROWTH_FACTOR)))
            cache.resize(max_entries=new_size)
            applied.append(self._note(
                "grow_cache",
                f"Cache hit rate {metrics.cache_hit_rate():.0%}, max entries {old_size} -> {new_size}",
                old=old_size, new=new_size,
            ))

        if summary.total:
            # Adaptive throttling
            delay = self.layer.inter_request_delay
            if summary.error_rate > C.ERROR_RATE_HIGH and delay < C.MAX_INTER_REQUEST_DELAY_SECONDS:
                self.layer.set_inter_request_delay(delay + C.INTER_REQUEST_DELAY_STEP_SECONDS)
                applied.append(self._note(
                    "increase_throttling",
                    f"Error rate {summary.error_rate:.1%}, inter-request delay raised",
                    old=delay, new=self.layer.inter_request_delay,
                ))
            elif (
                summary.error_rate < C.ERROR_RATE_LOW
                and summary.p95_ms < C.LATENCY_LOW_MS
                and delay > 0
            ):
                self.layer.set_inter_request_delay(delay - C.INTER_REQUEST_DELAY_STEP_SECONDS)
                applied.append(self._note(
                    "relax_throttling",
                    "Error rate and latency low, inter-request delay relaxed",
                    old=delay, new=self.layer.inter_request_delay,
                ))

            # Page size
            page_size = self.layer.list_page_size
            if summary.p95_ms > C.LATENCY_HIGH_MS and page_size > C.MIN_LIST_PAGE_SIZE:
                self.layer.set_list_page_size(page_size - C.PAGE_SIZE_STEP)
                applied.append(self._note(
                    "decrease_page_size",
                    f"p95 latency {summary.p95_ms:.0f}ms, page size reduced",
                    old=page_size, new=self.layer.list_page_size,
                ))
            elif (
                summary.p95_ms < C.LATENCY_LOW_MS
                and summary.throughput_per_second < C.LOW_THROUGHPUT_OPS
                and page_size < C.MAX_LIST_PAGE_SIZE
            ):
                self.layer.set_list_page_size(page_size + C.PAGE_SIZE_STEP)
                applied.append(self._note(
                    "increase_page_size",
                    "Latency low with spare throughput, page size raised",
                    old=page_size, new=self.layer.list_page_size,
                ))

        # Expired entry cleanup
        now = self._clock()
        if now - self._last_cleanup >= self.cleanup_interval:
            self._last_cleanup = now
            purged = cache.purge_expired()
            if purged:
                logger.debug("Purged expired cache entries", extra={"purged": purged})

        return applied

    def _note(self, action: str, description: str, **data: Any) -> Optimization:
        optimization = Optimization(
            action=action, description=description, timestamp=self._clock(), data=data
        )
        self._history.append(optimization)
        logger.info(
            "Applied datastore optimization",
            extra={"action": action, "detail": description, **data},
        )
        return optimization
