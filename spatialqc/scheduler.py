"""
Adaptive Concurrency Scheduler
==============================

Runs the work units of one stage on a bounded thread pool and resizes the
number of concurrently active units from periodic resource samples.

Sizing rules, applied on every tick:
- memory at or above ``high_memory_percent``: halve the target
- CPU or memory above their limits: one worker fewer
- otherwise: one worker more
The target always stays within ``[min_workers, max_workers]``. Units that
are already running finish; a new unit starts only while the active count
is below the target.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, List, NamedTuple, Optional, Sequence

import psutil

from .criteria import PerformanceSettings
from .exceptions import RunCancelledError
from .models import UnitStatus, WorkUnitResult


@dataclass
class ResourceSample:
    """System load observed at one tick."""

    cpu_percent: float
    memory_percent: float
    process_memory_mb: float
    timestamp: float


def sample_resources() -> ResourceSample:
    """Read CPU and memory load with psutil."""
    memory = psutil.virtual_memory()
    return ResourceSample(
        cpu_percent=psutil.cpu_percent(interval=None),
        memory_percent=memory.percent,
        process_memory_mb=psutil.Process().memory_info().rss / 1024 / 1024,
        timestamp=time.time(),
    )


class CancellationToken:
    """Cooperative cancellation flag shared by a run's work units."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise RunCancelledError("Run cancelled")


class WorkUnit(NamedTuple):
    """A named unit of work returning the number of findings it emitted."""

    name: str
    run: Callable[[], int]


class AdaptiveScheduler:
    """
    Resource-aware executor for stage work units.

    Args:
        settings: Parallelism bounds and resource limits
        probe: Callable returning a ResourceSample (defaults to psutil)
        logger: Logger instance for output
    """

    def __init__(
        self,
        settings: Optional[PerformanceSettings] = None,
        probe: Optional[Callable[[], ResourceSample]] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.settings = (settings or PerformanceSettings()).validate()
        self.probe = probe or sample_resources
        self.logger = logger or logging.getLogger(__name__)
        self._cond = threading.Condition()
        self._target = self.settings.max_workers
        self._active = 0
        self.peak_active = 0
        self.last_sample: Optional[ResourceSample] = None

    @property
    def target_workers(self) -> int:
        with self._cond:
            return self._target

    @property
    def active_workers(self) -> int:
        with self._cond:
            return self._active

    def next_target(self, current: int, sample: ResourceSample) -> int:
        """Worker target after one sample, before clamping."""
        s = self.settings
        if sample.memory_percent >= s.high_memory_percent:
            return current // 2
        if sample.cpu_percent > s.cpu_limit_percent or sample.memory_percent > s.memory_limit_percent:
            return current - 1
        return current + 1

    def tick(self, sample: Optional[ResourceSample] = None) -> int:
        """
        Take one resource sample and adjust the worker target.

        Args:
            sample: Sample to use instead of probing

        Returns:
            The new worker target
        """
        if sample is None:
            try:
                sample = self.probe()
            except psutil.Error as e:
                self.logger.warning(f"Resource sampling failed, keeping {self._target} workers: {e}")
                return self.target_workers
        self.last_sample = sample
        with self._cond:
            previous = self._target
            proposed = self.next_target(previous, sample)
            self._target = max(self.settings.min_workers, min(self.settings.max_workers, proposed))
            if self._target != previous:
                self.logger.info(
                    f"Worker target {previous} -> {self._target} "
                    f"(cpu {sample.cpu_percent:.0f}%, memory {sample.memory_percent:.0f}%)"
                )
            self._cond.notify_all()
            return self._target

    def _acquire(self, token: Optional[CancellationToken]) -> bool:
        with self._cond:
            while self._active >= self._target:
                if token is not None and token.is_cancelled:
                    return False
                self._cond.wait(timeout=0.1)
            if token is not None and token.is_cancelled:
                return False
            self._active += 1
            self.peak_active = max(self.peak_active, self._active)
            return True

    def _release(self) -> None:
        with self._cond:
            self._active -= 1
            self._cond.notify_all()

    def _execute(self, unit: WorkUnit, stage: str, token: Optional[CancellationToken]) -> WorkUnitResult:
        if not self._acquire(token):
            return WorkUnitResult(unit.name, stage, UnitStatus.CANCELLED)
        start = time.time()
        try:
            count = unit.run()
            return WorkUnitResult(
                unit.name, stage, UnitStatus.COMPLETED,
                elapsed_seconds=time.time() - start, findings_count=count or 0,
            )
        except RunCancelledError:
            return WorkUnitResult(
                unit.name, stage, UnitStatus.CANCELLED, elapsed_seconds=time.time() - start
            )
        except Exception as e:
            self.logger.error(f"{stage} unit '{unit.name}' failed: {e}")
            return WorkUnitResult(
                unit.name, stage, UnitStatus.FAILED, error=str(e), elapsed_seconds=time.time() - start
            )
        finally:
            self._release()

    def _monitor(self, stop: threading.Event) -> None:
        while not stop.wait(self.settings.resource_sampling_interval):
            self.tick()

    def run(
        self,
        units: Sequence[WorkUnit],
        stage: str = "",
        token: Optional[CancellationToken] = None,
        on_complete: Optional[Callable[[WorkUnitResult], None]] = None,
    ) -> List[WorkUnitResult]:
        """
        Execute work units under the adaptive concurrency limit.

        A failing unit is marked failed and the others continue. After
        cancellation no new unit starts and the rest are marked cancelled.

        Args:
            units: Work units of one stage
            stage: Stage name for results and logs
            token: Cancellation token
            on_complete: Called with each unit's result as it finishes

        Returns:
            One WorkUnitResult per unit, in input order
        """
        if not units:
            return []
        stop = threading.Event()
        monitor = threading.Thread(
            target=self._monitor, args=(stop,), name=f"spatialqc-monitor-{stage}", daemon=True
        )
        monitor.start()
        try:
            with ThreadPoolExecutor(
                max_workers=self.settings.max_workers, thread_name_prefix=f"spatialqc-{stage}"
            ) as executor:
                futures = [executor.submit(self._execute, unit, stage, token) for unit in units]
                if on_complete is not None:
                    for future in futures:
                        future.add_done_callback(lambda f: on_complete(f.result()))
                results = [future.result() for future in futures]
        finally:
            stop.set()
            monitor.join()
        self.logger.debug(f"Stage {stage}: peak {self.peak_active} active workers")
        return results
