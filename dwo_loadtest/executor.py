"""
Virtual-user executors
Each virtual user (VU) runs iterations back to back; the executor decides how
many VUs are active and when they stop
"""

import asyncio
import itertools
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional

from .console import ComponentLogger

IterationFn = Callable[[int, int], Awaitable[object]]

# Ramp profile: (minutes, share of max VUs)
RAMP_PROFILE = [(2, 0.25), (5, 0.5), (8, 0.75), (10, 1.0)]


@dataclass
class Stage:
    duration: float  # seconds
    target: int


def generate_load_test_stages(max_vus: int, duration_minutes: float) -> List[Stage]:
    """Ramp to max VUs over 25 minutes, then hold for the rest of the run"""
    ramp_minutes = sum(minutes for minutes, _ in RAMP_PROFILE)
    scale = min(1.0, duration_minutes / ramp_minutes)
    stages = [Stage(minutes * 60 * scale, int(max_vus * share)) for minutes, share in RAMP_PROFILE]
    steady = duration_minutes - ramp_minutes
    if steady > 0:
        stages.append(Stage(steady * 60, max_vus))
    return stages


class IterationBudget:
    """Shared iteration counter; a limit below zero means unlimited"""

    def __init__(self, limit: int = -1):
        self.limit = limit
        self._counter = itertools.count()
        self.claimed = 0

    def claim(self) -> bool:
        index = next(self._counter)
        if 0 <= self.limit <= index:
            return False
        self.claimed = index + 1
        return True

    @property
    def exhausted(self) -> bool:
        return 0 <= self.limit <= self.claimed


class _Executor:
    def __init__(self, console: Optional[ComponentLogger] = None):
        self.console = console or ComponentLogger()
        self.iterations_started = 0
        self.active_vus = 0
        self.peak_vus = 0

    async def _iterate(self, iteration_fn: IterationFn, vu_id: int, iteration: int):
        self.iterations_started += 1
        try:
            await iteration_fn(vu_id, iteration)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.console.log_error(f"Load test for {vu_id}-{iteration} failed: {e}", "EXECUTOR")

    def _vu_started(self):
        self.active_vus += 1
        self.peak_vus = max(self.peak_vus, self.active_vus)

    def _vu_stopped(self):
        self.active_vus -= 1


class SharedIterationsExecutor(_Executor):
    """A fixed pool of VUs drains a shared iteration budget within a maximum duration"""

    def __init__(self, vus: int, iterations: int = -1, max_duration: float = 3 * 3600,
                 console: Optional[ComponentLogger] = None):
        super().__init__(console)
        self.vus = vus
        self.budget = IterationBudget(iterations)
        self.max_duration = max_duration

    async def _run_vu(self, vu_id: int, iteration_fn: IterationFn):
        self._vu_started()
        try:
            for iteration in itertools.count():
                if not self.budget.claim():
                    return
                await self._iterate(iteration_fn, vu_id, iteration)
        finally:
            self._vu_stopped()

    async def run(self, iteration_fn: IterationFn):
        tasks = [asyncio.ensure_future(self._run_vu(vu_id, iteration_fn)) for vu_id in range(1, self.vus + 1)]
        done, pending = await asyncio.wait(tasks, timeout=self.max_duration)
        if pending:
            self.console.log_warn(
                f"Max duration {self.max_duration:.0f}s reached, interrupting {len(pending)} VUs", "EXECUTOR")
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)


class RampingVUsExecutor(_Executor):
    """VU count follows linear ramps between stage targets, starting from zero"""

    def __init__(self, stages: List[Stage], graceful_ramp_down: float = 60.0, max_iterations: int = -1,
                 tick: float = 1.0, start_vus: int = 0, console: Optional[ComponentLogger] = None):
        super().__init__(console)
        self.stages = stages
        self.graceful_ramp_down = graceful_ramp_down
        self.budget = IterationBudget(max_iterations)
        self.tick = tick
        self.start_vus = start_vus
        self._next_iteration: Dict[int, int] = {}

    @property
    def total_duration(self) -> float:
        return sum(stage.duration for stage in self.stages)

    def target_at(self, elapsed: float) -> int:
        """Number of VUs that should be active after `elapsed` seconds"""
        previous = self.start_vus
        for stage in self.stages:
            if elapsed < stage.duration:
                if stage.duration <= 0:
                    return stage.target
                progress = elapsed / stage.duration
                return int(previous + (stage.target - previous) * progress)
            elapsed -= stage.duration
            previous = stage.target
        return previous

    async def _run_vu(self, vu_id: int, stop: asyncio.Event, iteration_fn: IterationFn):
        # a restarted VU continues its iteration numbering so names stay unique
        iteration = self._next_iteration.get(vu_id, 0)
        self._vu_started()
        try:
            while not stop.is_set() and self.budget.claim():
                self._next_iteration[vu_id] = iteration + 1
                await self._iterate(iteration_fn, vu_id, iteration)
                iteration += 1
        finally:
            self._vu_stopped()

    async def run(self, iteration_fn: IterationFn):
        loop = asyncio.get_running_loop()
        started = loop.time()
        vus: Dict[int, tuple] = {}
        all_tasks: List[asyncio.Future] = []

        while True:
            elapsed = loop.time() - started
            if elapsed >= self.total_duration:
                break
            if self.budget.exhausted:
                self.console.log_info(f"Iteration limit {self.budget.limit} reached, ending ramp", "EXECUTOR")
                break

            running = {vu_id: entry for vu_id, entry in vus.items()
                       if not entry[0].done() and not entry[1].is_set()}
            target = self.target_at(elapsed)

            if len(running) < target:
                for vu_id in itertools.count(1):
                    if len(running) >= target:
                        break
                    if vu_id in vus and not vus[vu_id][0].done():
                        continue
                    stop = asyncio.Event()
                    task = asyncio.ensure_future(self._run_vu(vu_id, stop, iteration_fn))
                    all_tasks.append(task)
                    vus[vu_id] = running[vu_id] = (task, stop)
            elif len(running) > target:
                for vu_id in sorted(running, reverse=True)[:len(running) - target]:
                    running[vu_id][1].set()

            await asyncio.sleep(self.tick)

        for _, stop in vus.values():
            stop.set()
        tasks = [task for task in all_tasks if not task.done()]
        if not tasks:
            return
        done, pending = await asyncio.wait(tasks, timeout=self.graceful_ramp_down)
        if pending:
            self.console.log_warn(
                f"Graceful ramp-down of {self.graceful_ramp_down:.0f}s elapsed, interrupting {len(pending)} VUs",
                "EXECUTOR")
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
