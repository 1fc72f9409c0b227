"""
Virtual user lifecycle management.

Two ways to drive VUs:

    Staged (closed model):
        manager.ensure_concurrency(target)
        Each live VU is a task looping over iterations until it is retired or
        admission closes. Scale-down marks VUs for retirement; a VU that is
        mid-iteration finishes that iteration first.

    Arrival rate (open model):
        manager.preallocate(n)
        manager.dispatch_arrival()
        Each arrival borrows an idle VU from the pool for one iteration. An
        empty pool grows up to max_vus; beyond that the arrival is dropped and
        counted on ``dropped_iterations``.

State machine per VU:

    IDLE -> RUNNING -> IDLE -> ... -> RETIRING -> GONE

RETIRING is only reachable from IDLE.
"""
from __future__ import annotations

import asyncio
import heapq
import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Deque, Dict, List, Optional, Set

from loadrig.exceptions import InvalidTransition
from loadrig.metrics import MetricCollector, MetricKind

logger = logging.getLogger(__name__)


class VUState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    RETIRING = "retiring"
    GONE = "gone"


_TRANSITIONS: Dict[VUState, Set[VUState]] = {
    VUState.IDLE: {VUState.RUNNING, VUState.RETIRING},
    VUState.RUNNING: {VUState.IDLE},
    VUState.RETIRING: {VUState.GONE},
    VUState.GONE: set(),
}


@dataclass
class VirtualUser:
    """
    One simulated client.

    Attributes:
        vu_id: Stable identity, 1-based.
        iteration: Number of the current (or last) iteration; the first
            iteration is 1.
        state: Lifecycle state.
        retire_requested: Set by scale-down; honoured between iterations.
    """

    vu_id: int
    iteration: int = 0
    state: VUState = VUState.IDLE
    retire_requested: bool = field(default=False, repr=False)

    def transition(self, new_state: VUState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise InvalidTransition(
                f"VU {self.vu_id}: {self.state.value} -> {new_state.value} not allowed",
                details={"vu_id": self.vu_id, "from": self.state.value, "to": new_state.value},
            )
        self.state = new_state

    def begin_iteration(self) -> int:
        self.transition(VUState.RUNNING)
        self.iteration += 1
        return self.iteration

    def end_iteration(self) -> None:
        self.transition(VUState.IDLE)

    @property
    def live(self) -> bool:
        return self.state in (VUState.IDLE, VUState.RUNNING) and not self.retire_requested


@dataclass
class PoolStats:
    """Snapshot of lifecycle manager state."""

    live: int
    running: int
    allocated: int
    max_vus: Optional[int]
    dropped: int
    peak_running: int


IterationFn = Callable[[VirtualUser], Awaitable[object]]


class VUManager:
    """
    Owns every virtual user of a run.

    Spawn, retire and pool-pull operations are serialized by one lock so the
    driver loop and arrival dispatch never see a half-updated pool.

    Args:
        collector: Receives ``vus``, ``vus_max`` and ``dropped_iterations``.
            The gauges keep their last load-phase reading after admission
            closes.
        iterate: Coroutine function running one iteration for a VU.
        max_vus: Hard cap on allocated VUs (arrival mode). None = unbounded.
    """

    def __init__(
        self,
        collector: MetricCollector,
        iterate: IterationFn,
        *,
        max_vus: Optional[int] = None,
    ) -> None:
        if max_vus is not None and max_vus < 1:
            raise ValueError("max_vus must be >= 1")
        self._collector = collector
        self._iterate = iterate
        self._max_vus = max_vus

        self._lock = threading.Lock()
        self._vus: Dict[int, VirtualUser] = {}
        self._free_ids: List[int] = []
        self._next_id = 1

        # Staged mode: one looping task per VU.
        self._loops: Dict[int, asyncio.Task] = {}
        # Arrival mode: idle pool and one task per in-flight arrival.
        self._idle: Deque[VirtualUser] = deque()
        self._inflight: Set[asyncio.Task] = set()

        self._admitting = True
        self._running = 0
        self._peak_running = 0
        self._dropped = 0

    # ------------------------------------------------------------------
    # Staged mode
    # ------------------------------------------------------------------

    def ensure_concurrency(self, target: int) -> int:
        """
        Bring the live VU count to ``target``.

        Scale-up first revives VUs still waiting to retire, then spawns new
        ones with the lowest free identities. Scale-down retires the
        highest identities; idle ones leave at once, running ones after
        their current iteration.

        Returns:
            The live count after reconciliation.
        """
        if target < 0:
            raise ValueError("target must be >= 0")
        with self._lock:
            if not self._admitting:
                return self._live_count()
            live = [vu for vu in self._vus.values() if vu.live]
            diff = target - len(live)

            if diff > 0:
                pending = sorted(
                    (
                        vu
                        for vu in self._vus.values()
                        if vu.retire_requested and vu.state in (VUState.IDLE, VUState.RUNNING)
                    ),
                    key=lambda vu: vu.vu_id,
                )
                for vu in pending[:diff]:
                    vu.retire_requested = False
                    diff -= 1
                for _ in range(diff):
                    vu = self._allocate()
                    self._loops[vu.vu_id] = asyncio.create_task(
                        self._vu_loop(vu), name=f"vu-{vu.vu_id}"
                    )
                if diff > 0:
                    logger.debug("Spawned %d VUs (target=%d)", diff, target)
            elif diff < 0:
                excess = sorted(live, key=lambda vu: vu.vu_id, reverse=True)[: -diff]
                for vu in excess:
                    vu.retire_requested = True
                logger.debug("Retiring %d VUs (target=%d)", len(excess), target)

            live_count = self._live_count()
        self._publish_gauges(live_count)
        return live_count

    async def _vu_loop(self, vu: VirtualUser) -> None:
        try:
            while self._admitting and not vu.retire_requested:
                with self._lock:
                    vu.begin_iteration()
                    self._mark_running(+1)
                try:
                    await self._iterate(vu)
                finally:
                    with self._lock:
                        vu.end_iteration()
                        self._mark_running(-1)
                # Yield so a workload that never awaits cannot starve the loop.
                await asyncio.sleep(0)
        finally:
            with self._lock:
                self._retire(vu)
                self._loops.pop(vu.vu_id, None)
                live_count = self._live_count()
            self._publish_gauges(live_count)

    # ------------------------------------------------------------------
    # Arrival-rate mode
    # ------------------------------------------------------------------

    def preallocate(self, count: int) -> None:
        """Create ``count`` idle VUs for arrival dispatch."""
        with self._lock:
            for _ in range(count):
                if self._max_vus is not None and len(self._vus) >= self._max_vus:
                    break
                self._idle.append(self._allocate())
        self._publish_gauges(0)

    def dispatch_arrival(self) -> bool:
        """
        Start one iteration on an idle VU.

        Returns:
            True if the arrival was accepted; False if it was dropped
            because the pool is exhausted at the cap (or admission closed).
        """
        dropped = 0
        running = 0
        with self._lock:
            if not self._admitting:
                return False
            if self._idle:
                vu = self._idle.popleft()
            elif self._max_vus is None or len(self._vus) < self._max_vus:
                vu = self._allocate()
                logger.debug("Pool empty, allocated VU %d", vu.vu_id)
            else:
                self._dropped += 1
                dropped = self._dropped
                vu = None
            if vu is not None:
                vu.begin_iteration()
                self._mark_running(+1)
                running = self._running

        if vu is None:
            self._collector.record("dropped_iterations", MetricKind.COUNTER, 1)
            if dropped == 1 or dropped % 100 == 0:
                logger.warning(
                    "Arrival dropped: %d VUs busy at cap (dropped so far: %d)",
                    self._max_vus,
                    dropped,
                )
            return False

        task = asyncio.create_task(self._iterate(vu), name=f"arrival-vu-{vu.vu_id}")
        self._inflight.add(task)
        # A done callback also fires for tasks cancelled before they started.
        task.add_done_callback(lambda done, vu=vu: self._finish_arrival(vu, done))
        self._publish_gauges(running)
        return True

    def _finish_arrival(self, vu: VirtualUser, task: asyncio.Task) -> None:
        self._inflight.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Arrival on VU %d crashed: %r", vu.vu_id, task.exception())
        with self._lock:
            vu.end_iteration()
            self._mark_running(-1)
            running = self._running
            if self._admitting:
                self._idle.append(vu)
            else:
                self._retire(vu)
        self._publish_gauges(running)

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    def stop_admission(self) -> None:
        """No new iterations start after this call."""
        with self._lock:
            self._admitting = False

    @property
    def admitting(self) -> bool:
        return self._admitting

    async def drain(self, grace_period: float) -> int:
        """
        Wait for in-flight iterations, cancelling whatever outlives the grace
        period.

        Returns:
            Number of tasks that had to be cancelled.
        """
        tasks = list(self._loops.values()) + list(self._inflight)
        if not tasks:
            return 0
        _, pending = await asyncio.wait(tasks, timeout=max(0.0, grace_period))
        for task in pending:
            task.cancel()
        if pending:
            logger.warning(
                "%d iterations still running after %.1fs grace period; cancelled",
                len(pending),
                grace_period,
            )
            await asyncio.gather(*pending, return_exceptions=True)
        return len(pending)

    def shutdown(self) -> None:
        """Retire every idle VU. Call after drain()."""
        with self._lock:
            while self._idle:
                self._retire(self._idle.popleft())
            for vu in list(self._vus.values()):
                if vu.state is VUState.IDLE:
                    self._retire(vu)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def stats(self) -> PoolStats:
        with self._lock:
            return PoolStats(
                live=self._live_count(),
                running=self._running,
                allocated=len(self._vus),
                max_vus=self._max_vus,
                dropped=self._dropped,
                peak_running=self._peak_running,
            )

    def get(self, vu_id: int) -> Optional[VirtualUser]:
        with self._lock:
            return self._vus.get(vu_id)

    @property
    def live_count(self) -> int:
        with self._lock:
            return self._live_count()

    @property
    def dropped(self) -> int:
        with self._lock:
            return self._dropped

    # ------------------------------------------------------------------
    # Internals (caller holds self._lock)
    # ------------------------------------------------------------------

    def _allocate(self) -> VirtualUser:
        if self._free_ids:
            vu_id = heapq.heappop(self._free_ids)
        else:
            vu_id = self._next_id
            self._next_id += 1
        vu = VirtualUser(vu_id=vu_id)
        self._vus[vu_id] = vu
        return vu

    def _retire(self, vu: VirtualUser) -> None:
        if vu.state is VUState.GONE:
            return
        vu.transition(VUState.RETIRING)
        vu.transition(VUState.GONE)
        self._vus.pop(vu.vu_id, None)
        heapq.heappush(self._free_ids, vu.vu_id)

    def _live_count(self) -> int:
        return sum(1 for vu in self._vus.values() if vu.live)

    def _mark_running(self, delta: int) -> None:
        self._running += delta
        if self._running > self._peak_running:
            self._peak_running = self._running

    def _publish_gauges(self, active: int) -> None:
        # Gauges keep their last load-phase reading once admission closes.
        if not self._admitting:
            return
        self._collector.record("vus", MetricKind.GAUGE, active)
        self._collector.record("vus_max", MetricKind.GAUGE, len(self._vus))
