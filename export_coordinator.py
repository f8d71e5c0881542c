"""
Cancellation token and progress tracker threaded through every export stage.
"""

import threading
from collections.abc import Callable

ProgressCallback = Callable[[float, str], None]

## share of the progress range used by item collection in zip mode; the archive build gets the rest
ZIP_COLLECT_SHARE: float = 0.8
ZIP_BUILD_END: float = 0.98


class CancellationToken:
    """
    Cooperative stop flag.
    Setting it never interrupts a request in flight; stages check it before starting new work.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


class ProgressTracker:
    """
    Counts resolved items and reports progress as a fraction.
    - `collect_share` is the slice of [0, 1] the item phase maps onto (1.0 for batch mode).
    - `record_build_step()` spreads the archive build across [collect_share, ZIP_BUILD_END].
    - Counter updates happen under a lock so workers can report concurrently.
    """

    def __init__(self, total: int, on_change: ProgressCallback | None = None, collect_share: float = 1.0) -> None:
        self.total: int = total
        self.finished: int = 0
        self.succeeded: int = 0
        self.collect_share: float = collect_share
        self._on_change = on_change
        self._lock = threading.Lock()

    def _report(self, fraction: float, status: str) -> None:
        if self._on_change is not None:
            self._on_change(max(0.0, min(1.0, fraction)), status)

    def record(self, succeeded: bool, label: str = 'Exporting') -> None:
        with self._lock:
            self.finished += 1
            if succeeded:
                self.succeeded += 1
            fraction: float = (self.finished / self.total) * self.collect_share if self.total else self.collect_share
            status: str = f'{label}... {self.finished}/{self.total} (success {self.succeeded})'
            self._report(fraction, status)

    def record_build_step(self, done: int, total: int, name: str) -> None:
        span: float = ZIP_BUILD_END - self.collect_share
        fraction: float = self.collect_share + (done / total) * span if total else ZIP_BUILD_END
        self._report(fraction, f'ZIP: {done}/{total} | {name}')

    def complete(self, status: str) -> None:
        self._report(1.0, status)
