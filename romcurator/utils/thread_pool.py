#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""ROM Curator - bounded worker pool.

CPU-bound work (hashing, compression) runs on a fixed number of worker
threads. Container open/close is additionally gated by an I/O semaphore so
that a wide pool cannot exhaust file descriptors. Admission stops as soon as
the cancel token fires; tasks already running are allowed to finish.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, Iterable, Iterator, List, Optional, TypeVar

import psutil

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


def default_worker_count() -> int:
    """Logical CPU count, at least 1."""
    return max(1, psutil.cpu_count(logical=True) or 1)


@dataclass(frozen=True)
class TaskOutcome(Generic[T, R]):
    index: int
    item: T
    result: Optional[R] = None
    error: Optional[BaseException] = None
    started: bool = True

    @property
    def ok(self) -> bool:
        return self.started and self.error is None


@dataclass(frozen=True)
class PoolRun(Generic[T, R]):
    outcomes: List[TaskOutcome[T, R]]
    cancelled: bool


class BoundedWorkerPool:
    def __init__(
        self,
        workers: Optional[int] = None,
        io_limit: int = 16,
        cancel_token: Optional[Any] = None,
        name_prefix: str = "curator",
    ) -> None:
        self.workers = int(workers) if workers else default_worker_count()
        self.io_limit = max(1, int(io_limit))
        self.cancel_token = cancel_token
        self.name_prefix = name_prefix
        self._io_semaphore = threading.BoundedSemaphore(self.io_limit)

    def _is_cancelled(self) -> bool:
        token = self.cancel_token
        return bool(token is not None and token.is_cancelled())

    @contextmanager
    def io_slot(self) -> Iterator[None]:
        """Hold one of the ``io_limit`` container-open slots."""
        self._io_semaphore.acquire()
        try:
            yield
        finally:
            self._io_semaphore.release()

    def run(
        self,
        fn: Callable[[T], R],
        items: Iterable[T],
        progress_cb: Optional[Callable[[int, int], None]] = None,
    ) -> PoolRun[T, R]:
        """Apply ``fn`` to every item and return outcomes in input order.

        Exceptions raised by ``fn`` are captured per item in
        ``TaskOutcome.error``. Items never admitted because of cancellation
        come back with ``started=False``.
        """
        work = list(items)
        total = len(work)
        outcomes: List[Optional[TaskOutcome[T, R]]] = [None] * total
        pending: Dict[Future, int] = {}
        window = self.workers * 2
        next_index = 0
        finished = 0
        cancelled = False

        with ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix=self.name_prefix) as executor:
            while True:
                while not cancelled and next_index < total and len(pending) < window:
                    if self._is_cancelled():
                        cancelled = True
                        logger.info("Cancellation requested; %d task(s) not admitted", total - next_index)
                        break
                    pending[executor.submit(fn, work[next_index])] = next_index
                    next_index += 1

                if not pending:
                    break

                done, _ = wait(list(pending), return_when=FIRST_COMPLETED)
                for future in done:
                    idx = pending.pop(future)
                    error = future.exception()
                    outcomes[idx] = TaskOutcome(
                        index=idx,
                        item=work[idx],
                        result=None if error is not None else future.result(),
                        error=error,
                    )
                    finished += 1
                    if progress_cb is not None:
                        progress_cb(finished, total)

        final: List[TaskOutcome[T, R]] = []
        for idx, outcome in enumerate(outcomes):
            if outcome is None:
                outcome = TaskOutcome(index=idx, item=work[idx], started=False)
            final.append(outcome)
        return PoolRun(outcomes=final, cancelled=cancelled)
