import asyncio
import logging
import time
from datetime import datetime, timedelta
from typing import Callable, Optional
from .config import settings
from .models import ProgressReport

logger = logging.getLogger(__name__)

TIME_FMT = "%b %d %H:%M"


def _fraction(done: timedelta, total: timedelta) -> float:
    if total.total_seconds() <= 0:
        return 1.0
    return min(max(done / total, 0.0), 1.0)


def _eta(started_at: Optional[float], fraction: float, now: float) -> Optional[float]:
    if started_at is None or fraction <= 0 or fraction >= 1:
        return None
    elapsed = now - started_at
    return elapsed * (1 - fraction) / fraction


class ProgressMonitor:
    """
    Percentage/ETA view over a ScanQueue. Backward progress is tracked through
    fixed historical blocks so the bar doesn't crawl across a whole year.
    """

    def __init__(self, queue, clock: Callable[[], float] = time.monotonic):
        self.queue = queue
        self._clock = clock
        self._task: Optional[asyncio.Task] = None

        self.block_start: Optional[datetime] = None
        self.block_end: Optional[datetime] = None
        self._block_started_at: Optional[float] = None
        self._block_requests_base = 0

        self._forward_origin: Optional[datetime] = None
        self._forward_started_at: Optional[float] = None

    def _start_block(self):
        data_start = self.queue.data.start_time
        floor = self.queue.historical_floor()
        self.block_end = data_start
        self.block_start = max(floor, data_start - timedelta(days=settings.PROGRESS_BLOCK_DAYS))
        self._block_started_at = self._clock()
        # Counted from an offset, scan state is read-only here
        self._block_requests_base = self.queue.snapshot().backward_requests
        logger.info(f"New historical block: {self.block_start.strftime(TIME_FMT)} -> {self.block_end.strftime(TIME_FMT)}")

    def report(self) -> ProgressReport:
        snap = self.queue.snapshot()
        data = self.queue.data
        now = self._clock()

        if snap.current_scan_type != "forward":
            self._forward_origin = None

        if snap.current_scan_type == "forward":
            if self._forward_origin is None:
                self._forward_origin = snap.current_scan_start or data.end_time
                self._forward_started_at = now
            target = snap.current_scan_end or data.end_time
            fraction = _fraction(data.end_time - self._forward_origin, target - self._forward_origin)
            return ProgressReport(
                action="Forward scan",
                direction="forward",
                percentage=round(fraction * 100, 1),
                eta_seconds=_eta(self._forward_started_at, fraction, now),
                time_range=f"{data.end_time.strftime(TIME_FMT)} -> {target.strftime('%H:%M')}",
                requests=snap.forward_requests,
                queue_length=snap.queue_length
            )

        if snap.current_scan_type == "backward":
            block_done = self.block_start is not None and data.start_time <= self.block_start
            if self.block_start is None or (block_done and data.start_time > self.queue.historical_floor()):
                self._start_block()
            fraction = _fraction(self.block_end - data.start_time, self.block_end - self.block_start)
            return ProgressReport(
                action="Historical scan",
                direction="backward",
                percentage=round(fraction * 100, 1),
                eta_seconds=_eta(self._block_started_at, fraction, now),
                time_range=f"{self.block_start.strftime(TIME_FMT)} -> {self.block_end.strftime(TIME_FMT)}",
                requests=snap.backward_requests - self._block_requests_base,
                queue_length=snap.queue_length,
                block_start=self.block_start,
                block_end=self.block_end
            )

        return ProgressReport(
            action=f"Idle ({snap.queue_length} queued)",
            direction="idle",
            time_range="Waiting for next scan...",
            queue_length=snap.queue_length
        )

    def start(self):
        if settings.PROGRESS_ENABLED and self._task is None:
            self._task = asyncio.create_task(self._run())

    def stop(self):
        if self._task:
            self._task.cancel()
            self._task = None

    async def _run(self):
        while True:
            await asyncio.sleep(settings.PROGRESS_INTERVAL_SECONDS)
            r = self.report()
            eta = f"{r.eta_seconds / 60:.1f}m ETA" if r.eta_seconds is not None else "ETA n/a"
            logger.info(f"{r.action}: {r.percentage:.0f}% | {r.time_range} | {r.requests} requests | {eta}")
