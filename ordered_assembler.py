"""
Puts out-of-order worker results back into listing order and groups them into batch parts.
"""

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import Generic, TypeVar

from export_coordinator import CancellationToken

log = logging.getLogger(__name__)

V = TypeVar('V')


@dataclass(frozen=True)
class FetchOutcome:
    index: int
    succeeded: bool
    content: str | None = None
    error_detail: str | None = None
    title: str | None = None


class OrderedReassemblyBuffer(Generic[V]):
    """
    Sparse index -> value map with a drain pointer.
    `drain()` releases values only while the next expected index is present,
    so values come out in ascending index order no matter the insertion order.
    """

    def __init__(self) -> None:
        self._pending: dict[int, V] = {}
        self.next_index: int = 0

    def insert(self, index: int, value: V) -> None:
        if index < self.next_index or index in self._pending:
            raise ValueError(f'index {index} was already inserted')
        self._pending[index] = value

    def drain(self) -> list[V]:
        ready: list[V] = []
        while self.next_index in self._pending:
            ready.append(self._pending.pop(self.next_index))
            self.next_index += 1
        return ready

    def __len__(self) -> int:
        return len(self._pending)


class BatchAssembler:
    """
    Emits batch parts whose concatenation follows the original listing order.
    - Accepts FetchOutcomes in any order, from any worker thread.
    - Failed outcomes add nothing but still advance the drain pointer.
    - Flushes a part as soon as `batch_size` bodies are buffered; part numbers start at 1.
    - Checks the cancellation token before every flush; once cancelled it stops emitting.
    """

    def __init__(
        self,
        batch_size: int,
        emit: Callable[[int, list[str]], None],
        cancel: CancellationToken,
    ) -> None:
        self.batch_size: int = batch_size
        self._emit = emit
        self._cancel = cancel
        self._reassembly: OrderedReassemblyBuffer[FetchOutcome] = OrderedReassemblyBuffer()
        self.buffer: list[str] = []
        self.part_number: int = 1
        self.parts_emitted: int = 0
        self._lock = threading.Lock()

    def _flush(self) -> None:
        if self._cancel.cancelled:
            return
        ## trimmed only after emit returns
        contents: list[str] = self.buffer[: self.batch_size]
        self._emit(self.part_number, contents)
        del self.buffer[: len(contents)]
        self.part_number += 1
        self.parts_emitted += 1

    def accept(self, outcome: FetchOutcome) -> None:
        with self._lock:
            self._reassembly.insert(outcome.index, outcome)
            for ready in self._reassembly.drain():
                if ready.succeeded and ready.content is not None:
                    self.buffer.append(ready.content)
            while len(self.buffer) >= self.batch_size and not self._cancel.cancelled:
                self._flush()

    def finish(self) -> None:
        with self._lock:
            if len(self._reassembly):
                log.debug(f'{len(self._reassembly)} outcome(s) still waiting on an earlier index')
            while self.buffer and not self._cancel.cancelled:
                self._flush()
