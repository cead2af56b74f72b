"""
Polling Scheduler

Owns at most one recurring fetch task. The stored task handle is the sole
source of truth for "is polling active".

    start(interval_ms, cycle)  -> retire old handle, schedule new one
    stop()                     -> cancel handle (no-op when idle)
    is_active                  -> handle present

The first cycle runs one full interval after start. A cycle that raises or
misses its deadline is logged and the schedule keeps its cadence. Cycles
never overlap; ticks missed while a cycle overruns are skipped.
"""
import asyncio
from typing import Awaitable, Callable, Optional

import structlog

logger = structlog.get_logger("polling")

CycleFn = Callable[[], Awaitable[None]]


class PollingScheduler:
    """Single-handle periodic scheduler on the running event loop."""

    def __init__(self, cycle_timeout_s: Optional[float] = None):
        self.cycle_timeout_s = cycle_timeout_s
        self._handle: Optional[asyncio.Task] = None
        self._generation = 0
        self._failures = 0

    @property
    def is_active(self) -> bool:
        return self._handle is not None

    @property
    def consecutive_failures(self) -> int:
        return self._failures

    def start(self, interval_ms: int, cycle: CycleFn) -> None:
        """Schedule `cycle` every `interval_ms`, replacing any running schedule."""
        if interval_ms <= 0:
            raise ValueError(f"interval_ms must be positive, got {interval_ms}")

        self.stop()
        self._generation += 1
        self._failures = 0
        self._handle = asyncio.get_running_loop().create_task(
            self._run(interval_ms / 1000.0, cycle, self._generation),
            name=f"polling-{self._generation}",
        )
        logger.info(
            "[POLLING] Schedule started",
            generation=self._generation,
            interval_ms=interval_ms,
        )

    def stop(self) -> None:
        """Cancel the recurring schedule if one exists."""
        if self._handle is None:
            return
        self._handle.cancel()
        self._handle = None
        logger.info("[POLLING] Schedule stopped", generation=self._generation)

    async def aclose(self) -> None:
        """Stop and wait for the cancelled task to unwind."""
        handle = self._handle
        self.stop()
        if handle is not None:
            try:
                await handle
            except asyncio.CancelledError:
                pass

    async def _run(self, interval_s: float, cycle: CycleFn, generation: int) -> None:
        loop = asyncio.get_running_loop()
        next_tick = loop.time() + interval_s

        while True:
            await asyncio.sleep(max(0.0, next_tick - loop.time()))
            await self._run_cycle(cycle, generation)

            # Stay on the start-aligned cadence; drop ticks missed by a slow cycle
            next_tick += interval_s
            now = loop.time()
            if next_tick <= now:
                skipped = int((now - next_tick) // interval_s) + 1
                next_tick += skipped * interval_s
                logger.debug("[POLLING] Skipped ticks after slow cycle", skipped=skipped)

    async def _run_cycle(self, cycle: CycleFn, generation: int) -> None:
        try:
            if self.cycle_timeout_s:
                await asyncio.wait_for(cycle(), timeout=self.cycle_timeout_s)
            else:
                await cycle()
        except asyncio.CancelledError:
            raise
        except asyncio.TimeoutError:
            self._failures += 1
            logger.warning(
                "[POLLING] Cycle deadline exceeded",
                generation=generation,
                timeout_s=self.cycle_timeout_s,
                consecutive_failures=self._failures,
            )
        except Exception as e:
            self._failures += 1
            logger.warning(
                "[POLLING] Cycle failed",
                generation=generation,
                error=str(e),
                error_type=type(e).__name__,
                consecutive_failures=self._failures,
            )
        else:
            self._failures = 0
