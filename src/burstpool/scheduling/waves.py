"""Quota-aware wave planning and sequential wave execution."""

from __future__ import annotations

import logging
import math
from collections import deque
from collections.abc import Callable, Iterable
from concurrent.futures import Executor, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

from burstpool.coordination.models import TaskError
from burstpool.errors import QuotaExceededError
from burstpool.scheduling.quota import QuotaOracle, suggest_quota
from burstpool.worker.executor import error_from_exception

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(slots=True, frozen=True)
class WavePlan:
    """How ``total_workers`` split into waves that each fit the available quota."""

    total_workers: int
    workers_per_wave: int
    num_waves: int
    units_per_worker: int
    quota_available: int

    @property
    def quota_limited(self) -> bool:
        return self.num_waves > 1

    @property
    def units_needed(self) -> int:
        return self.total_workers * self.units_per_worker

    def wave_sizes(self) -> list[int]:
        sizes: list[int] = []
        remaining = self.total_workers
        while remaining > 0:
            size = min(self.workers_per_wave, remaining)
            sizes.append(size)
            remaining -= size
        return sizes


def plan_waves(
    total_workers: int,
    quota_available: int,
    units_per_worker: int = 1,
    *,
    resource_class: str = "vcpu",
) -> WavePlan:
    """Split workers into the fewest waves whose units fit ``quota_available``."""

    if total_workers < 1:
        raise ValueError(f"total_workers must be at least 1: {total_workers}")
    if units_per_worker < 1:
        raise ValueError(f"units_per_worker must be at least 1: {units_per_worker}")
    capacity = quota_available // units_per_worker
    if capacity < 1:
        raise QuotaExceededError(resource_class, quota_available, units_per_worker)
    if total_workers <= capacity:
        return WavePlan(
            total_workers=total_workers,
            workers_per_wave=total_workers,
            num_waves=1,
            units_per_worker=units_per_worker,
            quota_available=quota_available,
        )
    return WavePlan(
        total_workers=total_workers,
        workers_per_wave=capacity,
        num_waves=math.ceil(total_workers / capacity),
        units_per_worker=units_per_worker,
        quota_available=quota_available,
    )


@dataclass(slots=True, frozen=True)
class WaveItemResult:
    index: int
    wave: int
    ok: bool
    value: Any = None
    error: TaskError | None = None


@dataclass(slots=True)
class WaveRunReport:
    plan: WavePlan | None
    results: list[WaveItemResult] = field(default_factory=list)
    increase_request_id: str | None = None

    @property
    def values(self) -> list[Any]:
        return [result.value for result in self.results]

    @property
    def failed(self) -> list[WaveItemResult]:
        return [result for result in self.results if not result.ok]


class WaveQueue(Generic[T]):
    """FIFO of pending items released one wave at a time."""

    def __init__(self, items: Iterable[T], workers_per_wave: int) -> None:
        if workers_per_wave < 1:
            raise ValueError("workers_per_wave must be at least 1")
        self.workers_per_wave = workers_per_wave
        self._pending: deque[tuple[int, T]] = deque(enumerate(items))
        self.current_wave = 0
        self.completed = 0

    def __len__(self) -> int:
        return len(self._pending)

    def next_wave(self) -> list[tuple[int, T]]:
        batch: list[tuple[int, T]] = []
        while self._pending and len(batch) < self.workers_per_wave:
            batch.append(self._pending.popleft())
        if batch:
            self.current_wave += 1
        return batch

    def mark_completed(self, count: int) -> None:
        self.completed += count


def _thread_pool(max_workers: int) -> Executor:
    return ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="burstpool-wave")


class WaveScheduler:
    """Runs a function over items in quota-sized waves, one wave at a time.

    Wave n+1 is submitted only after every future of wave n has resolved.
    Item failures are recorded and never stop later waves.
    """

    def __init__(
        self,
        oracle: QuotaOracle,
        *,
        resource_class: str = "vcpu",
        units_per_worker: int = 1,
        executor_factory: Callable[[int], Executor] = _thread_pool,
        request_increase: bool = False,
    ) -> None:
        self.oracle = oracle
        self.resource_class = resource_class
        self.units_per_worker = units_per_worker
        self.executor_factory = executor_factory
        self.request_increase = request_increase

    def plan(self, total_workers: int) -> WavePlan:
        return plan_waves(
            total_workers,
            self.oracle.available(self.resource_class),
            self.units_per_worker,
            resource_class=self.resource_class,
        )

    def map(self, fn: Callable[[T], Any], items: Iterable[T]) -> WaveRunReport:
        pending = list(items)
        if not pending:
            return WaveRunReport(plan=None)
        plan = self.plan(len(pending))
        report = WaveRunReport(plan=plan)
        if plan.quota_limited:
            logger.info(
                "Quota-limited: %d items need %d %s units, %d available; running %d waves of %d",
                plan.total_workers,
                plan.units_needed,
                self.resource_class,
                plan.quota_available,
                plan.num_waves,
                plan.workers_per_wave,
            )
            if self.request_increase:
                report.increase_request_id = self._request_increase(plan)

        queue = WaveQueue(pending, plan.workers_per_wave)
        results: dict[int, WaveItemResult] = {}
        while len(queue):
            batch = queue.next_wave()
            logger.info(
                "Starting wave %d/%d: %d items (%d pending, %d completed)",
                queue.current_wave,
                plan.num_waves,
                len(batch),
                len(queue),
                queue.completed,
            )
            for result in self._run_wave(fn, batch, queue.current_wave):
                results[result.index] = result
            queue.mark_completed(len(batch))
        report.results = [results[index] for index in range(len(pending))]
        return report

    def _run_wave(
        self,
        fn: Callable[[T], Any],
        batch: list[tuple[int, T]],
        wave: int,
    ) -> list[WaveItemResult]:
        with self.executor_factory(len(batch)) as pool:
            futures: dict[Future[Any], int] = {pool.submit(fn, item): index for index, item in batch}
            wait(futures)
        results: list[WaveItemResult] = []
        for future, index in futures.items():
            error = future.exception()
            if error is None:
                results.append(WaveItemResult(index=index, wave=wave, ok=True, value=future.result()))
            else:
                logger.info("Item %d failed in wave %d: %s", index, wave, error)
                results.append(
                    WaveItemResult(
                        index=index,
                        wave=wave,
                        ok=False,
                        error=error_from_exception(error),
                    ),
                )
        return results

    def _request_increase(self, plan: WavePlan) -> str | None:
        desired = suggest_quota(plan.units_needed)
        try:
            return self.oracle.request_increase(self.resource_class, desired)
        except Exception as error:  # noqa: BLE001
            logger.warning(
                "Quota increase request for %s to %d failed: %s",
                self.resource_class,
                desired,
                error,
            )
            return None
