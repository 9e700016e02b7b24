import unittest
from datetime import datetime, timedelta, timezone
from doubleplay.config import settings
from doubleplay.models import DatasetWindow
from doubleplay.progress import ProgressMonitor
from doubleplay.scan_state import ScanStateRecorder

T0 = datetime(2025, 8, 20, 0, 0, tzinfo=timezone.utc)
DAY = timedelta(days=1)


class FakeQueue:
    def __init__(self, floor):
        self.data = DatasetWindow(start_time=T0, end_time=T0)
        self.state = ScanStateRecorder()
        self.floor = floor

    def snapshot(self):
        return self.state.snapshot()

    def historical_floor(self):
        return self.floor


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class TestProgressMonitor(unittest.TestCase):
    def setUp(self):
        self._block_days = settings.PROGRESS_BLOCK_DAYS
        settings.PROGRESS_BLOCK_DAYS = 7
        self.clock = FakeClock()

    def tearDown(self):
        settings.PROGRESS_BLOCK_DAYS = self._block_days

    def test_idle(self):
        queue = FakeQueue(T0 - 30 * DAY)
        queue.state.set_queue_length(2)
        report = ProgressMonitor(queue, clock=self.clock).report()
        self.assertEqual(report.direction, "idle")
        self.assertEqual(report.action, "Idle (2 queued)")

    def test_forward_percentage_and_eta(self):
        queue = FakeQueue(T0 - 30 * DAY)
        queue.state.update_scan_job("forward", T0, T0 + timedelta(hours=4))
        monitor = ProgressMonitor(queue, clock=self.clock)

        first = monitor.report()
        self.assertEqual(first.percentage, 0.0)
        self.assertIsNone(first.eta_seconds)

        queue.data.end_time = T0 + timedelta(hours=1)
        queue.state.increment_requests()
        self.clock.now += 60
        second = monitor.report()

        self.assertEqual(second.direction, "forward")
        self.assertEqual(second.percentage, 25.0)
        self.assertAlmostEqual(second.eta_seconds, 180.0)
        self.assertEqual(second.requests, 1)

    def test_backward_progress_moves_through_blocks(self):
        queue = FakeQueue(T0 - 30 * DAY)
        queue.state.update_scan_job("backward", T0 - timedelta(hours=1), T0)
        queue.state.increment_requests(5)
        monitor = ProgressMonitor(queue, clock=self.clock)

        first = monitor.report()
        self.assertEqual((first.block_start, first.block_end), (T0 - 7 * DAY, T0))
        self.assertEqual(first.percentage, 0.0)
        self.assertEqual(first.requests, 0)

        queue.data.start_time = T0 - timedelta(days=3, hours=12)
        queue.state.increment_requests(2)
        second = monitor.report()
        self.assertEqual(second.percentage, 50.0)
        self.assertEqual(second.requests, 2)

        queue.data.start_time = T0 - 7 * DAY
        third = monitor.report()
        self.assertEqual((third.block_start, third.block_end), (T0 - 14 * DAY, T0 - 7 * DAY))
        self.assertEqual(third.percentage, 0.0)
        self.assertEqual(third.requests, 0)
        # Reporting never writes to the queue-owned scan state
        self.assertEqual(queue.snapshot().backward_requests, 7)

    def test_last_block_is_clipped_to_floor(self):
        floor = T0 - 3 * DAY
        queue = FakeQueue(floor)
        queue.state.update_scan_job("backward", T0 - timedelta(hours=1), T0)
        monitor = ProgressMonitor(queue, clock=self.clock)

        self.assertEqual(monitor.report().block_start, floor)

        queue.data.start_time = floor
        for _ in range(2):
            report = monitor.report()
            self.assertEqual(report.block_start, floor)
            self.assertEqual(report.percentage, 100.0)


if __name__ == '__main__':
    unittest.main()
