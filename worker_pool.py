"""
Bounded worker pool over an ordered item sequence.
"""

import logging
import threading
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from typing import TypeVar

from export_coordinator import CancellationToken

log = logging.getLogger(__name__)

T = TypeVar('T')


class ClaimCursor:
    """
    Hands out ascending indices, each exactly once, to concurrent workers.
    """

    def __init__(self, length: int) -> None:
        self.length: int = length
        self._next: int = 0
        self._lock = threading.Lock()

    def claim(self) -> int | None:
        with self._lock:
            if self._next >= self.length:
                return None
            index: int = self._next
            self._next += 1
            return index

    @property
    def claimed(self) -> int:
        with self._lock:
            return min(self._next, self.length)


def run_pool(
    items: Sequence[T],
    task: Callable[[T], None],
    concurrency: int,
    cancel: CancellationToken,
) -> int:
    """
    Runs `task` over `items` with `concurrency` worker threads sharing one claim cursor.
    Workers check `cancel` before every claim; a claimed item always runs to completion.
    The pool never retries. Returns the number of items claimed.
    Called by: ArchiveExporter.run()
    """
    cursor = ClaimCursor(len(items))

    def worker() -> None:
        while not cancel.cancelled:
            index: int | None = cursor.claim()
            if index is None:
                return
            task(items[index])

    workers: int = max(1, min(concurrency, len(items))) if items else 1
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix='export-worker') as executor:
        futures = [executor.submit(worker) for _ in range(workers)]
    ## the executor has joined every worker here; surface the first task failure, if any
    for future in futures:
        future.result()
    log.debug(f'pool finished; claimed {cursor.claimed}/{len(items)} item(s)')
    return cursor.claimed
