import random
import threading
import time
import unittest

from export_coordinator import CancellationToken, ProgressTracker
from worker_pool import ClaimCursor, run_pool


class TestRunPool(unittest.TestCase):
    """
    Tests claim-once semantics, the concurrency bound, and cooperative cancellation.
    """

    def test_each_item_runs_exactly_once(self) -> None:
        """
        Checks that with several workers and random latencies every item runs once.
        """
        items: list[int] = list(range(60))
        seen: list[int] = []
        lock = threading.Lock()

        def task(item: int) -> None:
            time.sleep(random.uniform(0, 0.003))
            with lock:
                seen.append(item)

        claimed: int = run_pool(items, task, 5, CancellationToken())
        self.assertEqual(claimed, 60)
        self.assertEqual(sorted(seen), items)

    def test_concurrency_bound(self) -> None:
        """
        Checks that no more than `concurrency` tasks are ever active together.
        """
        active: list[int] = [0]
        peak: list[int] = [0]
        lock = threading.Lock()

        def task(item: int) -> None:
            with lock:
                active[0] += 1
                peak[0] = max(peak[0], active[0])
            time.sleep(0.002)
            with lock:
                active[0] -= 1

        run_pool(list(range(30)), task, 3, CancellationToken())
        self.assertLessEqual(peak[0], 3)

    def test_cancel_stops_new_claims(self) -> None:
        """
        Checks that after cancellation no new item is claimed, while the in-flight item still completes.
        """
        cancel = CancellationToken()
        done: list[int] = []

        def task(item: int) -> None:
            if item == 2:
                cancel.cancel()
            done.append(item)

        claimed: int = run_pool(list(range(10)), task, 1, cancel)
        self.assertEqual(done, [0, 1, 2])
        self.assertEqual(claimed, 3)

    def test_cancelled_before_start(self) -> None:
        cancel = CancellationToken()
        cancel.cancel()
        done: list[int] = []
        self.assertEqual(run_pool([1, 2, 3], done.append, 4, cancel), 0)
        self.assertEqual(done, [])

    def test_empty_items(self) -> None:
        self.assertEqual(run_pool([], lambda item: None, 4, CancellationToken()), 0)

    def test_task_exception_propagates(self) -> None:
        def task(item: int) -> None:
            if item == 4:
                raise RuntimeError('boom')

        with self.assertRaises(RuntimeError):
            run_pool(list(range(8)), task, 2, CancellationToken())


class TestClaimCursor(unittest.TestCase):
    def test_claims_ascend_then_stop(self) -> None:
        cursor = ClaimCursor(3)
        computed: list[int | None] = [cursor.claim() for _ in range(5)]
        expected: list[int | None] = [0, 1, 2, None, None]
        self.assertEqual(computed, expected)
        self.assertEqual(cursor.claimed, 3)


class TestProgressTracker(unittest.TestCase):
    """
    Tests progress fractions for both modes.
    """

    def test_batch_fractions(self) -> None:
        reports: list[tuple[float, str]] = []
        tracker = ProgressTracker(4, lambda f, s: reports.append((f, s)))
        tracker.record(True)
        tracker.record(False)
        self.assertEqual([f for f, _s in reports], [0.25, 0.5])
        self.assertEqual(tracker.succeeded, 1)
        self.assertIn('2/4', reports[-1][1])

    def test_zip_reserves_tail_for_build(self) -> None:
        """
        Checks that collection tops out at 0.8 and the archive build spans up to 0.98.
        """
        reports: list[float] = []
        tracker = ProgressTracker(2, lambda f, s: reports.append(f), collect_share=0.8)
        tracker.record(True)
        tracker.record(True)
        tracker.record_build_step(1, 2, 'a.md')
        tracker.record_build_step(2, 2, 'b.md')
        tracker.complete('done')
        self.assertAlmostEqual(reports[1], 0.8)
        self.assertAlmostEqual(reports[2], 0.89)
        self.assertAlmostEqual(reports[3], 0.98)
        self.assertEqual(reports[4], 1.0)


if __name__ == '__main__':
    unittest.main()
